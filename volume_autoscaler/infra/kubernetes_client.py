from __future__ import annotations

import copy
import logging
import time
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from kubernetes import client, config
from kubernetes.client import V1PersistentVolumeClaim
from kubernetes.client.rest import ApiException

from volume_autoscaler.domain.errors import DeadlineExceeded, ResizeConflict, ResizeError
from volume_autoscaler.domain.intent import Intent
from volume_autoscaler.domain.quantity import format_bytes, to_bytes
from volume_autoscaler.domain.volume_backend import VolumeBackend
from volume_autoscaler.domain.volume_info import RESIZING_CONDITIONS, VolumeInfo

logger = logging.getLogger(__name__)

GROUP = "autoscaling.volume-autoscaler.io"
VERSION = "v1alpha1"
PLURAL = "volumeautoscalers"
KIND = "VolumeAutoscaler"
COMPONENT = "volume-autoscaler"


def load_config() -> None:
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def _storage(resources: Optional[Mapping[str, Any]]) -> int:
    if not resources or "storage" not in resources:
        return 0
    return to_bytes(resources["storage"])


def to_volume_info(pvc: V1PersistentVolumeClaim) -> VolumeInfo:
    status = pvc.status
    requests = pvc.spec.resources.requests if pvc.spec and pvc.spec.resources else None
    resizing = any(
        c.type in RESIZING_CONDITIONS and c.status == "True"
        for c in (status.conditions or [] if status else [])
    )
    return VolumeInfo(
        name=pvc.metadata.name,
        namespace=pvc.metadata.namespace,
        capacity=_storage(status.capacity if status else None),
        requested=_storage(requests),
        resource_version=pvc.metadata.resource_version or "",
        storage_class=pvc.spec.storage_class_name if pvc.spec else None,
        labels=dict(pvc.metadata.labels or {}),
        resizing=resizing,
    )


class KubernetesClient(VolumeBackend):
    def __init__(self, deadline: Optional[float] = None) -> None:
        self.v1 = client.CoreV1Api()
        self.storage = client.StorageV1Api()
        self.custom = client.CustomObjectsApi()
        self.deadline = deadline

    def with_deadline(self, deadline: float) -> KubernetesClient:
        """Shallow copy sharing the API clients, bounded by one monotonic deadline."""
        bounded = copy.copy(self)
        bounded.deadline = deadline
        return bounded

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def _kwargs(self) -> dict[str, Any]:
        if self.deadline is None:
            return {}
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            raise DeadlineExceeded("cycle deadline exceeded, not issuing further API calls")
        return {"_request_timeout": remaining}

    # ─────────────────────────── volumes ────────────────────────────
    def get_volume(self, namespace: str, name: str) -> Optional[VolumeInfo]:
        try:
            pvc = self.v1.read_namespaced_persistent_volume_claim(name=name, namespace=namespace, **self._kwargs())
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return to_volume_info(pvc)

    def list_volumes(self, namespace: str, label_selector: str) -> List[VolumeInfo]:
        pvcs = self.v1.list_namespaced_persistent_volume_claim(
            namespace=namespace,
            label_selector=label_selector,
            **self._kwargs(),
        ).items
        return [to_volume_info(p) for p in pvcs]

    def storage_class_allows_expansion(self, name: str) -> Optional[bool]:
        try:
            sc = self.storage.read_storage_class(name=name, **self._kwargs())
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return bool(sc.allow_volume_expansion)

    def patch_volume_size(self, namespace: str, name: str, size: int, resource_version: str) -> VolumeInfo:
        # resourceVersion in the body turns the patch into a compare-and-swap
        patch: Mapping[str, Any] = {
            "metadata": {"resourceVersion": resource_version},
            "spec": {"resources": {"requests": {"storage": format_bytes(size)}}},
        }
        try:
            pvc = self.v1.patch_namespaced_persistent_volume_claim(
                name=name,
                namespace=namespace,
                body=patch,
                _content_type="application/merge-patch+json",
                **self._kwargs(),
            )
        except ApiException as exc:
            if exc.status == 409:
                raise ResizeConflict(f"PVC {namespace}/{name} changed since resourceVersion {resource_version}") from exc
            raise ResizeError(f"Failed to patch PVC {namespace}/{name}: {exc.status} {exc.reason}") from exc

        logger.info(f"[scaler] pvc={namespace}/{name} storage request -> {format_bytes(size)}")
        return to_volume_info(pvc)

    # ─────────────────────────── intents ────────────────────────────
    def get_intent(self, namespace: str, name: str) -> Optional[dict[str, Any]]:
        try:
            return self.custom.get_namespaced_custom_object(
                GROUP, VERSION, namespace, PLURAL, name, **self._kwargs()
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def list_intents(self, namespace: Optional[str] = None) -> List[dict[str, Any]]:
        if namespace:
            resp = self.custom.list_namespaced_custom_object(GROUP, VERSION, namespace, PLURAL, **self._kwargs())
        else:
            resp = self.custom.list_cluster_custom_object(GROUP, VERSION, PLURAL, **self._kwargs())
        return resp.get("items", [])

    def patch_intent_status(self, namespace: str, name: str, status: dict) -> None:
        self.custom.patch_namespaced_custom_object_status(
            GROUP,
            VERSION,
            namespace,
            PLURAL,
            name,
            {"status": status},
            **self._kwargs(),
        )

    def record_event(self, intent: Intent, event_type: str, reason: str, message: str) -> None:
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{intent.name}.", namespace=intent.namespace),
            involved_object=client.V1ObjectReference(
                api_version=f"{GROUP}/{VERSION}",
                kind=KIND,
                name=intent.name,
                namespace=intent.namespace,
                uid=intent.uid or None,
            ),
            type=event_type,
            reason=reason,
            message=message,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
            source=client.V1EventSource(component=COMPONENT),
            reporting_component=COMPONENT,
        )
        try:
            self.v1.create_namespaced_event(namespace=intent.namespace, body=event, **self._kwargs())
        except ApiException as exc:
            logger.warning(f"Failed to record event {reason} for {intent.namespace}/{intent.name}: {exc.reason}")
