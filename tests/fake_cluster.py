import copy
import re
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from volume_autoscaler.domain.errors import DeadlineExceeded, NoResult, ResizeConflict, TransportError
from volume_autoscaler.domain.intent import Intent
from volume_autoscaler.domain.volume_backend import MetricsSource, VolumeBackend
from volume_autoscaler.domain.volume_info import VolumeInfo

Gi = 1024 ** 3


def make_intent_obj(name: str = "data", namespace: str = "default", **spec: Any) -> dict:
    base = {"target": {"volumeName": "pvc-0"}, "maxSize": "200Gi"}
    base.update(spec)
    return {
        "apiVersion": "autoscaling.volume-autoscaler.io/v1alpha1",
        "kind": "VolumeAutoscaler",
        "metadata": {"name": name, "namespace": namespace, "generation": 1, "uid": "uid-1"},
        "spec": base,
    }


class FakeCluster(VolumeBackend):
    """In-memory stand-in for the Kubernetes API. Resizes complete instantly."""

    def __init__(self) -> None:
        self.intents: Dict[Tuple[str, str], dict] = {}
        self.volumes: Dict[Tuple[str, str], VolumeInfo] = {}
        self.storage_classes: Dict[str, bool] = {"standard": True}
        self.events: List[Tuple[str, str, str]] = []
        self.patches: List[Tuple[str, int]] = []
        self.status_writes: List[dict] = []
        self.sc_lookups: List[str] = []
        self.conflicts_to_raise = 0
        self.fail_status_write = False
        # number of API calls left in the cycle budget; None is unbounded
        self.calls_left: Optional[int] = None
        self.deadlines: List[float] = []

    # --- setup helpers ---
    def add_intent(self, obj: dict) -> None:
        meta = obj["metadata"]
        self.intents[(meta["namespace"], meta["name"])] = obj

    def add_volume(self, name: str, size: int, namespace: str = "default",
                   storage_class: Optional[str] = "standard", labels: Optional[dict] = None,
                   resizing: bool = False) -> None:
        self.volumes[(namespace, name)] = VolumeInfo(
            name=name,
            namespace=namespace,
            capacity=size,
            requested=size,
            resource_version="1",
            storage_class=storage_class,
            labels=labels or {},
            resizing=resizing,
        )

    def size_of(self, name: str, namespace: str = "default") -> int:
        return self.volumes[(namespace, name)].requested

    def _spend(self) -> None:
        if self.calls_left is None:
            return
        if self.calls_left <= 0:
            raise DeadlineExceeded("budget spent")
        self.calls_left -= 1

    def with_deadline(self, deadline: float) -> "FakeCluster":
        self.deadlines.append(deadline)
        if self.calls_left == 0:
            self.calls_left = None
        return self

    def expired(self) -> bool:
        return self.calls_left == 0

    # --- VolumeBackend ---
    def get_intent(self, namespace: str, name: str) -> Optional[dict]:
        self._spend()
        obj = self.intents.get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def list_intents(self, namespace: Optional[str] = None) -> List[dict]:
        self._spend()
        return [copy.deepcopy(o) for (ns, _), o in sorted(self.intents.items()) if namespace in (None, ns)]

    def get_volume(self, namespace: str, name: str) -> Optional[VolumeInfo]:
        self._spend()
        v = self.volumes.get((namespace, name))
        return replace(v) if v else None

    def list_volumes(self, namespace: str, label_selector: str) -> List[VolumeInfo]:
        self._spend()
        wanted = dict(p.split("=", 1) for p in label_selector.split(",") if "=" in p)
        return [
            replace(v) for (ns, _), v in reversed(list(self.volumes.items()))
            if ns == namespace and all(v.labels.get(k) == val for k, val in wanted.items())
        ]

    def storage_class_allows_expansion(self, name: str) -> Optional[bool]:
        self._spend()
        self.sc_lookups.append(name)
        return self.storage_classes.get(name)

    def patch_volume_size(self, namespace: str, name: str, size: int, resource_version: str) -> VolumeInfo:
        self._spend()
        current = self.volumes[(namespace, name)]
        if self.conflicts_to_raise > 0:
            self.conflicts_to_raise -= 1
            self.volumes[(namespace, name)] = replace(current, resource_version=str(int(current.resource_version) + 1))
            raise ResizeConflict(f"{name} changed")
        if resource_version != current.resource_version:
            raise ResizeConflict(f"{name} changed")
        updated = replace(current, capacity=size, requested=size, resource_version=str(int(resource_version) + 1))
        self.volumes[(namespace, name)] = updated
        self.patches.append((name, size))
        return replace(updated)

    def patch_intent_status(self, namespace: str, name: str, status: dict) -> None:
        self._spend()
        if self.fail_status_write:
            raise RuntimeError("status write refused")
        self.status_writes.append(copy.deepcopy(status))
        if (namespace, name) in self.intents:
            self.intents[(namespace, name)]["status"] = copy.deepcopy(status)

    def record_event(self, intent: Intent, event_type: str, reason: str, message: str) -> None:
        self._spend()
        self.events.append((event_type, reason, message))


class FakePrometheus(MetricsSource):
    def __init__(self, usage: Optional[Dict[str, float]] = None, inodes: Optional[Dict[str, float]] = None) -> None:
        self.usage = usage or {}
        self.inodes = inodes or {}
        self.queries: List[str] = []
        self.fail = False

    def _series_for(self, expr: str) -> Dict[str, float]:
        if self.fail:
            raise TransportError("connection refused")
        return self.inodes if "inodes" in expr else self.usage

    def query_scalar(self, expr: str) -> float:
        self.queries.append(expr)
        series = self._series_for(expr)
        pvc = re.search(r'persistentvolumeclaim="([^"]+)"', expr).group(1)
        if pvc not in series:
            raise NoResult(expr)
        return series[pvc]

    def query_vector(self, expr: str, label_key: str) -> Dict[str, float]:
        self.queries.append(expr)
        return dict(self._series_for(expr))
