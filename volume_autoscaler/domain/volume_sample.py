from dataclasses import dataclass
from typing import Optional


@dataclass
class VolumeSample:
    usage_bytes: int
    inode_percent: Optional[float] = None
