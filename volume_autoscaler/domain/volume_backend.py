from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from volume_autoscaler.domain.intent import Intent
from volume_autoscaler.domain.volume_info import VolumeInfo


class VolumeBackend(ABC):
    """
    Everything the reconciler needs from the orchestration platform.
    Implemented by KubernetesClient; tests provide in-memory fakes.
    """

    @abstractmethod
    def get_intent(self, namespace: str, name: str) -> Optional[dict[str, Any]]:
        pass

    @abstractmethod
    def list_intents(self, namespace: Optional[str] = None) -> List[dict[str, Any]]:
        pass

    @abstractmethod
    def get_volume(self, namespace: str, name: str) -> Optional[VolumeInfo]:
        pass

    @abstractmethod
    def list_volumes(self, namespace: str, label_selector: str) -> List[VolumeInfo]:
        pass

    @abstractmethod
    def storage_class_allows_expansion(self, name: str) -> Optional[bool]:
        """Returns None when the class does not exist."""

    @abstractmethod
    def patch_volume_size(self, namespace: str, name: str, size: int, resource_version: str) -> VolumeInfo:
        pass

    @abstractmethod
    def patch_intent_status(self, namespace: str, name: str, status: dict) -> None:
        pass

    @abstractmethod
    def record_event(self, intent: Intent, event_type: str, reason: str, message: str) -> None:
        pass

    def with_deadline(self, deadline: float) -> VolumeBackend:
        """
        Returns a view whose platform calls share one budget ending at `deadline`
        (a `time.monotonic()` value). Each call gets the time still left.
        """
        return self

    def expired(self) -> bool:
        return False


class MetricsSource(ABC):
    @abstractmethod
    def query_scalar(self, expr: str) -> float:
        pass

    @abstractmethod
    def query_vector(self, expr: str, label_key: str) -> Dict[str, float]:
        pass
