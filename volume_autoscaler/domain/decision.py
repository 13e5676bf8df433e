from dataclasses import dataclass
from enum import Enum
from typing import Optional

from volume_autoscaler.domain.status import VolumeObservation


class Action(str, Enum):
    NOOP = "NoOp"
    EXPAND = "Expand"


class Reason(str, Enum):
    BELOW_THRESHOLD = "BelowThreshold"
    COOLING_DOWN = "CoolingDown"
    AT_MAX_SIZE = "AtMaxSize"
    CAPACITY_UNKNOWN = "CapacityUnknown"
    USAGE_ABOVE_THRESHOLD = "UsageAboveThreshold"
    INODES_ABOVE_THRESHOLD = "InodeUsageAboveThreshold"
    # executor outcomes
    EXPANDED = "Expanded"
    NOT_EXPANDABLE = "NotExpandable"
    CONFLICT = "Conflict"
    RESIZE_IN_PROGRESS = "ResizeInProgress"
    RESIZE_FAILED = "ResizeFailed"
    DRY_RUN = "DryRun"
    NO_METRICS = "NoMetrics"
    DEADLINE_EXCEEDED = "DeadlineExceeded"


@dataclass
class ScaleDecision:
    action: Action
    reason: Reason
    message: str
    observation: VolumeObservation
    new_size: Optional[int] = None
    usage_percent: float = 0.0
    inode_percent: Optional[float] = None

    @property
    def should_expand(self) -> bool:
        return self.action is Action.EXPAND
