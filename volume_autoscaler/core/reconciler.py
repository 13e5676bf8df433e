# volume_autoscaler/core/reconciler.py
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from volume_autoscaler.core.decision_engine import decide
from volume_autoscaler.core.resize_executor import ResizeExecutor
from volume_autoscaler.core.target_resolver import resolve_targets
from volume_autoscaler.domain.decision import Reason, ScaleDecision
from volume_autoscaler.domain.errors import (
    DeadlineExceeded,
    InvalidIntent,
    InvalidTarget,
    MetricsError,
    NoResult,
    NotExpandable,
    ResizeConflict,
    ResizeError,
    ResizeInProgress,
)
from volume_autoscaler.domain.intent import DEFAULT_METRICS_ENDPOINT, Intent
from volume_autoscaler.domain.intent_loader import intent_from_object
from volume_autoscaler.domain.quantity import format_bytes
from volume_autoscaler.domain.status import (
    CONDITION_AT_MAX_SIZE,
    CONDITION_READY,
    Condition,
    IntentStatus,
    VolumeObservation,
)
from volume_autoscaler.domain.volume_backend import MetricsSource, VolumeBackend
from volume_autoscaler.domain.volume_info import VolumeInfo
from volume_autoscaler.domain.volume_sample import VolumeSample
from volume_autoscaler.infra.prometheus_client import get_client
from volume_autoscaler.observability import metrics

logger = logging.getLogger(__name__)

PVC_LABEL = "persistentvolumeclaim"
USED_BYTES = "kubelet_volume_stats_used_bytes"
INODES_USED = "kubelet_volume_stats_inodes_used"
INODES_TOTAL = "kubelet_volume_stats_inodes"

# upper bound on the extra time a status write may take once the cycle budget is spent
STATUS_WRITE_GRACE_SECONDS = 5.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _settled_reason(prior: Optional[VolumeObservation]) -> str:
    """Reason of the last cycle that actually evaluated the PVC."""
    if prior is None:
        return ""
    if prior.reason in (Reason.NO_METRICS.value, Reason.DEADLINE_EXCEEDED.value):
        return prior.last_evaluated_reason
    return prior.reason


class Reconciler:
    """
    One reconcile cycle for one VolumeAutoscaler:

    1.  Parse the spec and resolve the target PVCs.
    2.  Sample usage (and inode usage if enabled) in at most two queries.
    3.  Run the decision engine per PVC and resize where it says so.
    4.  Write the status subresource back.

    A failure is scoped to the smallest unit that can absorb it: a single PVC
    for resize errors, the current cycle for config and metrics errors.
    """

    def __init__(
            self,
            backend: VolumeBackend,
            metrics_factory: Callable[[str], MetricsSource] = get_client,
            clock: Callable[[], datetime] = _utcnow,
            dry_run: bool = False,
            default_metrics_endpoint: str = DEFAULT_METRICS_ENDPOINT,
    ) -> None:
        self.backend = backend
        self.metrics_factory = metrics_factory
        self.clock = clock
        self.dry_run = dry_run
        self.default_metrics_endpoint = default_metrics_endpoint

    # ─────────────────────────── entry point ────────────────────────────
    def reconcile(self, obj: dict[str, Any], cancelled: Callable[[], bool] = lambda: False) -> IntentStatus:
        start = time.monotonic()
        try:
            return self._reconcile(obj, cancelled)
        except DeadlineExceeded as exc:
            # nothing was changed yet, so the previous status stays as it is
            meta = obj.get("metadata") or {}
            namespace, name = meta.get("namespace", "default"), meta.get("name", "")
            logger.warning(f"[{namespace}/{name}] {exc}")
            metrics.record_poll_error(namespace, name, "deadline_exceeded")
            return IntentStatus.from_dict(obj.get("status"))
        finally:
            metrics.RECONCILE_DURATION_SECONDS.observe(time.monotonic() - start)

    def _reconcile(self, obj: dict[str, Any], cancelled: Callable[[], bool]) -> IntentStatus:
        meta = obj.get("metadata") or {}
        namespace = meta.get("namespace", "default")
        name = meta.get("name", "")
        now = self.clock()

        status = IntentStatus.from_dict(obj.get("status"))
        status.last_poll_time = now

        try:
            intent = intent_from_object(obj, self.default_metrics_endpoint)
        except InvalidIntent as exc:
            logger.error(f"[{namespace}/{name}] invalid spec: {exc}")
            metrics.record_poll_error(namespace, name, "invalid_spec")
            self._set_ready(status, False, "InvalidSpec", str(exc), now, int(meta.get("generation", 0)))
            return self._write(namespace, name, status, cancelled)

        status.observed_generation = intent.generation

        try:
            volumes = resolve_targets(self.backend, intent.target, intent.namespace)
        except InvalidTarget as exc:
            logger.error(f"[{namespace}/{name}] invalid target: {exc}")
            metrics.record_poll_error(namespace, name, "invalid_target")
            self._set_ready(status, False, "InvalidTarget", str(exc), now, intent.generation)
            return self._write(namespace, name, status, cancelled)
        except DeadlineExceeded:
            raise
        except Exception as exc:
            logger.exception(f"[{namespace}/{name}] failed to resolve PVCs")
            metrics.record_poll_error(namespace, name, "resolve_volumes")
            self._set_ready(status, False, "ResolveFailed", str(exc), now, intent.generation)
            return self._write(namespace, name, status, cancelled)

        if not volumes:
            logger.info(f"[{namespace}/{name}] no PVCs found for target, will retry")
            status.volumes = []
            metrics.forget_usage(namespace, name)
            self._set_ready(status, False, "NoVolumesFound", "no matching PVCs found", now, intent.generation)
            return self._write(namespace, name, status, cancelled)

        if self.backend.expired():
            raise DeadlineExceeded("cycle deadline exceeded before querying metrics")

        try:
            samples = self._sample(intent, volumes)
        except MetricsError as exc:
            # keep the previous observations; this cycle just didn't happen
            logger.error(f"[{namespace}/{name}] metrics query failed: {exc}")
            metrics.record_poll_error(namespace, name, "metrics_query")
            self._set_ready(status, False, "MetricsUnavailable", str(exc), now, intent.generation)
            return self._write(namespace, name, status, cancelled)

        executor = ResizeExecutor(self.backend)
        observations: List[VolumeObservation] = []
        at_max: List[str] = []
        failed: List[str] = []
        out_of_time = False

        for volume in volumes:
            if cancelled():
                logger.info(f"[{namespace}/{name}] cancelled mid-cycle, status not written")
                return status

            prior = status.observation_for(volume.name)
            if out_of_time or self.backend.expired():
                out_of_time = True
                observations.append(self._carry_forward(
                    volume, prior, Reason.DEADLINE_EXCEEDED, "cycle deadline exceeded before this PVC was evaluated"))
                continue

            sample = samples.get(volume.name)
            if sample is None:
                logger.info(f"No usage metrics for PVC {volume.namespace}/{volume.name} yet")
                observations.append(self._carry_forward(
                    volume, prior, Reason.NO_METRICS, "no usage sample returned by the metrics backend"))
                continue

            decision = decide(intent, volume, sample, prior, now)
            metrics.record_usage(namespace, volume.name, name, decision.usage_percent)

            if decision.reason is Reason.AT_MAX_SIZE:
                at_max.append(volume.name)
                if _settled_reason(prior) != Reason.AT_MAX_SIZE.value:
                    self._event(intent, "Warning", "MaxSizeReached",
                                f"PVC {namespace}/{volume.name} has reached maxSize {format_bytes(intent.max_size)}")

            observation = decision.observation
            if decision.should_expand:
                try:
                    observation = self._expand(intent, executor, volume, decision, now, status, failed)
                except DeadlineExceeded:
                    out_of_time = True
                    observation = self._carry_forward(
                        volume, prior, Reason.DEADLINE_EXCEEDED, "cycle deadline exceeded before the PVC was patched")
            observations.append(observation)

        status.volumes = observations
        metrics.forget_usage(namespace, name, keep=[v.name for v in volumes])

        if out_of_time:
            logger.warning(f"[{namespace}/{name}] cycle deadline exceeded, remaining PVCs deferred to the next poll")
            metrics.record_poll_error(namespace, name, "deadline_exceeded")
            self._set_ready(status, False, "DeadlineExceeded", "cycle deadline exceeded", now, intent.generation)
        elif failed:
            self._set_ready(status, False, "ResizeFailed", f"failed to expand: {', '.join(failed)}", now, intent.generation)
        else:
            self._set_ready(status, True, "Polling", "successfully polling volume metrics", now, intent.generation)

        if at_max:
            status.set_condition(Condition(
                type=CONDITION_AT_MAX_SIZE,
                status="True",
                reason="AtMaxSize",
                message=f"at maxSize: {', '.join(at_max)}",
                observed_generation=intent.generation,
            ), now)
        else:
            status.set_condition(Condition(
                type=CONDITION_AT_MAX_SIZE,
                status="False",
                reason="BelowMaxSize",
                message="no volume is blocked by maxSize",
                observed_generation=intent.generation,
            ), now)

        if out_of_time:
            # expansions already applied this cycle must still reach the status,
            # so the write gets a short budget of its own
            grace = min(STATUS_WRITE_GRACE_SECONDS, intent.poll_interval.total_seconds() * 0.1)
            return self._write(namespace, name, status, cancelled,
                               backend=self.backend.with_deadline(time.monotonic() + grace))
        return self._write(namespace, name, status, cancelled)

    # ─────────────────────────── helpers ────────────────────────────
    def _sample(self, intent: Intent, volumes: List[VolumeInfo]) -> Dict[str, VolumeSample]:
        """
        Usage in one round trip, inode usage in a second one when enabled.
        A named target uses exact-match scalar queries so duplicate series surface
        as AmbiguousResult instead of being averaged away.
        """
        client = self.metrics_factory(intent.metrics_endpoint)
        ns = _label_value(intent.namespace)

        if intent.target.volume_name:
            pvc = volumes[0].name
            sel = f'namespace="{ns}",{PVC_LABEL}="{_label_value(pvc)}"'
            usage = self._scalar_or_empty(client, f"{USED_BYTES}{{{sel}}}", pvc)
            inodes = {}
            if intent.inode_check_enabled:
                inodes = self._scalar_or_empty(client, f"{INODES_USED}{{{sel}}} / {INODES_TOTAL}{{{sel}}} * 100", pvc)
        else:
            sel = f'namespace="{ns}"'
            usage = client.query_vector(f"max by ({PVC_LABEL}) ({USED_BYTES}{{{sel}}})", PVC_LABEL)
            inodes = {}
            if intent.inode_check_enabled:
                inodes = client.query_vector(
                    f"max by ({PVC_LABEL}) ({INODES_USED}{{{sel}}} / {INODES_TOTAL}{{{sel}}}) * 100",
                    PVC_LABEL,
                )

        return {
            v.name: VolumeSample(usage_bytes=int(usage[v.name]), inode_percent=inodes.get(v.name))
            for v in volumes
            if v.name in usage
        }

    @staticmethod
    def _scalar_or_empty(client: MetricsSource, expr: str, pvc: str) -> Dict[str, float]:
        try:
            return {pvc: client.query_scalar(expr)}
        except NoResult:
            return {}

    @staticmethod
    def _carry_forward(
            volume: VolumeInfo, prior: Optional[VolumeObservation], reason: Reason, message: str
    ) -> VolumeObservation:
        """Observation for a PVC that was not evaluated this cycle."""
        return VolumeObservation(
            name=volume.name,
            current_size=volume.current_size,
            usage_bytes=prior.usage_bytes if prior else 0,
            usage_percent=prior.usage_percent if prior else 0,
            last_scale_time=prior.last_scale_time if prior else None,
            last_scale_size=prior.last_scale_size if prior else None,
            reason=reason.value,
            message=message,
            last_evaluated_reason=_settled_reason(prior),
        )

    def _expand(
            self,
            intent: Intent,
            executor: ResizeExecutor,
            volume: VolumeInfo,
            decision: ScaleDecision,
            now: datetime,
            status: IntentStatus,
            failed: List[str],
    ) -> VolumeObservation:
        observation = decision.observation
        ns, pvc = volume.namespace, volume.name
        logger.info(
            f"[{ns}/{intent.name}] Scaling triggered: pvc={pvc}, "
            f"usage={decision.usage_percent:.1f}%, {decision.message}"
        )

        if self.dry_run:
            observation.reason = Reason.DRY_RUN.value
            observation.message = f"dry run: would {decision.message}"
            return observation

        try:
            result = executor.expand(volume, decision.new_size, intent.max_size)
        except NotExpandable as exc:
            logger.warning(f"[{ns}/{intent.name}] {exc}")
            metrics.record_poll_error(ns, intent.name, "not_expandable")
            self._event(intent, "Warning", "StorageClassNotExpandable", str(exc))
            return self._with_reason(observation, Reason.NOT_EXPANDABLE, str(exc))
        except ResizeInProgress as exc:
            logger.info(f"[{ns}/{intent.name}] {exc}, skipping expansion")
            return self._with_reason(observation, Reason.RESIZE_IN_PROGRESS, str(exc))
        except ResizeConflict as exc:
            logger.warning(f"[{ns}/{intent.name}] {exc}; deferring to next poll")
            metrics.record_poll_error(ns, intent.name, "conflict")
            return self._with_reason(observation, Reason.CONFLICT, str(exc))
        except ResizeError as exc:
            logger.error(f"[{ns}/{intent.name}] {exc}")
            metrics.record_poll_error(ns, intent.name, "patch_pvc")
            self._event(intent, "Warning", "ExpandFailed", f"Failed to expand PVC {ns}/{pvc}: {exc}")
            failed.append(pvc)
            return self._with_reason(observation, Reason.RESIZE_FAILED, str(exc))
        except DeadlineExceeded:
            raise
        except Exception as exc:
            logger.exception(f"[{ns}/{intent.name}] unexpected error expanding {pvc}")
            metrics.record_poll_error(ns, intent.name, "patch_pvc")
            self._event(intent, "Warning", "ExpandFailed", f"Failed to expand PVC {ns}/{pvc}: {exc}")
            failed.append(pvc)
            return self._with_reason(observation, Reason.RESIZE_FAILED, str(exc))

        observation.current_size = result.volume.current_size
        if not result.patched:
            return observation

        observation.last_scale_time = now
        observation.last_scale_size = decision.new_size
        observation.reason = Reason.EXPANDED.value
        status.total_scale_events += 1
        metrics.record_scale_event(ns, pvc, intent.name)
        self._event(
            intent, "Normal", "Expanded",
            f"Expanded PVC {ns}/{pvc} from {format_bytes(volume.current_size)} to "
            f"{format_bytes(decision.new_size)} (usage: {decision.usage_percent:.0f}%)",
        )
        return observation

    @staticmethod
    def _with_reason(observation: VolumeObservation, reason: Reason, message: str) -> VolumeObservation:
        observation.reason = reason.value
        observation.message = message
        return observation

    def _event(self, intent: Intent, event_type: str, reason: str, message: str) -> None:
        try:
            self.backend.record_event(intent, event_type, reason, message)
        except Exception as exc:
            logger.warning(f"Failed to record event {reason}: {exc}")

    @staticmethod
    def _set_ready(status: IntentStatus, ready: bool, reason: str, message: str, now: datetime, generation: int) -> None:
        status.set_condition(Condition(
            type=CONDITION_READY,
            status="True" if ready else "False",
            reason=reason,
            message=message,
            observed_generation=generation,
        ), now)

    def _write(
            self,
            namespace: str,
            name: str,
            status: IntentStatus,
            cancelled: Callable[[], bool],
            backend: Optional[VolumeBackend] = None,
    ) -> IntentStatus:
        if cancelled():
            logger.info(f"[{namespace}/{name}] cancelled, status not written")
            return status
        try:
            (backend or self.backend).patch_intent_status(namespace, name, status.to_dict())
        except Exception as exc:
            logger.error(f"[{namespace}/{name}] failed to update status: {exc}")
            metrics.record_poll_error(namespace, name, "status_update")
        return status
