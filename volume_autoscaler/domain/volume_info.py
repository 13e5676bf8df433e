from dataclasses import dataclass, field
from typing import Dict, Optional

RESIZING_CONDITIONS = ("Resizing", "FileSystemResizePending")


@dataclass
class VolumeInfo:
    """
    The parts of a PersistentVolumeClaim the autoscaler looks at.
    `capacity` is the provisioned size from status, `requested` the spec request.
    """
    name: str
    namespace: str
    capacity: int
    requested: int
    resource_version: str = ""
    storage_class: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    resizing: bool = False

    @property
    def current_size(self) -> int:
        # an expansion in flight shows up in the request before the capacity
        return max(self.capacity, self.requested)
