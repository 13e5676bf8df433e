import logging
from dataclasses import dataclass
from typing import Dict, Optional

from volume_autoscaler.domain.errors import NotExpandable, ResizeConflict, ResizeError, ResizeInProgress
from volume_autoscaler.domain.quantity import format_bytes
from volume_autoscaler.domain.volume_backend import VolumeBackend
from volume_autoscaler.domain.volume_info import VolumeInfo

logger = logging.getLogger(__name__)


@dataclass
class ResizeResult:
    volume: VolumeInfo
    patched: bool


class ResizeExecutor:
    """
    Applies capacity changes to PVCs. One instance per reconcile cycle, so
    the StorageClass cache never outlives the cycle.
    """

    def __init__(self, backend: VolumeBackend, max_conflict_retries: int = 1) -> None:
        self.backend = backend
        self.max_conflict_retries = max_conflict_retries
        self._expandable: Dict[str, Optional[bool]] = {}

    def _check_expandable(self, volume: VolumeInfo) -> None:
        sc = volume.storage_class
        if not sc:
            return
        if sc not in self._expandable:
            self._expandable[sc] = self.backend.storage_class_allows_expansion(sc)
        allowed = self._expandable[sc]
        if allowed is None:
            raise NotExpandable(f"StorageClass {sc} not found")
        if not allowed:
            raise NotExpandable(f"StorageClass {sc} does not allow volume expansion")

    def _preflight(self, volume: VolumeInfo, new_size: int, max_size: int) -> bool:
        if new_size > max_size:
            raise ResizeError(f"refusing to grow {volume.name} to {format_bytes(new_size)}, above maxSize {format_bytes(max_size)}")
        if volume.resizing:
            raise ResizeInProgress(f"PVC {volume.namespace}/{volume.name} is already being resized")
        self._check_expandable(volume)
        # never shrink, and don't re-issue a request that is already in place
        return new_size > volume.requested

    def expand(self, volume: VolumeInfo, new_size: int, max_size: int) -> ResizeResult:
        """
        Raises NotExpandable, ResizeInProgress, ResizeConflict (after the retry
        budget is spent) or ResizeError for any other API failure.
        """
        current = volume
        attempts = 0
        while True:
            if not self._preflight(current, new_size, max_size):
                logger.info(f"PVC {current.namespace}/{current.name} already requests {format_bytes(current.requested)}")
                return ResizeResult(volume=current, patched=False)
            try:
                updated = self.backend.patch_volume_size(current.namespace, current.name, new_size, current.resource_version)
                return ResizeResult(volume=updated, patched=True)
            except ResizeConflict:
                if attempts >= self.max_conflict_retries:
                    raise
                attempts += 1
                logger.info(f"Conflict patching {current.namespace}/{current.name}; re-reading and retrying")
                fresh = self.backend.get_volume(current.namespace, current.name)
                if fresh is None:
                    raise ResizeError(f"PVC {current.namespace}/{current.name} disappeared during resize")
                current = fresh
