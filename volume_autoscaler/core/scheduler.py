import logging
import threading
import time
from datetime import timedelta
from functools import partial
from typing import Any, Callable, Dict, Optional, Tuple

from volume_autoscaler.config.settings import Settings
from volume_autoscaler.core.reconciler import Reconciler
from volume_autoscaler.domain.errors import InvalidIntent
from volume_autoscaler.domain.intent import DEFAULT_POLL_INTERVAL
from volume_autoscaler.domain.quantity import parse_duration
from volume_autoscaler.domain.volume_backend import VolumeBackend
from volume_autoscaler.infra.prometheus_client import get_client
from volume_autoscaler.observability import metrics

logger = logging.getLogger(__name__)

IntentKey = Tuple[str, str]


def poll_interval_of(obj: dict[str, Any]) -> timedelta:
    raw = (obj.get("spec") or {}).get("pollInterval")
    if not raw:
        return DEFAULT_POLL_INTERVAL
    try:
        interval = parse_duration(raw)
    except InvalidIntent:
        return DEFAULT_POLL_INTERVAL
    return interval if interval.total_seconds() > 0 else DEFAULT_POLL_INTERVAL


class PollLoop(threading.Thread):
    """
    Timer-driven loop for a single VolumeAutoscaler. Re-reads the object every
    tick so spec edits apply on the next cycle, and exits once the object is gone.
    """

    def __init__(
            self,
            key: IntentKey,
            backend: VolumeBackend,
            reconciler_factory: Callable[[VolumeBackend], Reconciler],
            parent_stop: threading.Event,
            deadline_fraction: float = 0.8,
    ) -> None:
        super().__init__(name=f"poll-{key[0]}/{key[1]}", daemon=True)
        self.key = key
        self.backend = backend
        self.reconciler_factory = reconciler_factory
        self.deadline_fraction = deadline_fraction
        self._parent_stop = parent_stop
        self._stop_event = threading.Event()
        self.cycles = 0
        self._interval = DEFAULT_POLL_INTERVAL

    def stop(self) -> None:
        self._stop_event.set()

    def stopped(self) -> bool:
        return self._stop_event.is_set() or self._parent_stop.is_set()

    def _deadline(self, started: float, interval: timedelta) -> float:
        return started + interval.total_seconds() * self.deadline_fraction

    def run_once(self) -> Optional[timedelta]:
        """Runs one cycle; returns the interval to sleep, or None when the intent is gone."""
        namespace, name = self.key
        started = time.monotonic()
        # the intent read is bounded by the last known interval; the new one applies from here on
        obj = self.backend.with_deadline(self._deadline(started, self._interval)).get_intent(namespace, name)
        if obj is None:
            logger.info(f"[{namespace}/{name}] VolumeAutoscaler deleted, stopping poll loop")
            metrics.forget_usage(namespace, name)
            return None

        interval = poll_interval_of(obj)
        self._interval = interval
        bounded = self.backend.with_deadline(self._deadline(started, interval))
        self.reconciler_factory(bounded).reconcile(obj, cancelled=self.stopped)
        self.cycles += 1
        return interval

    def run(self) -> None:
        namespace, name = self.key
        logger.info(f"[{namespace}/{name}] starting poll loop")
        while not self.stopped():
            interval = poll_interval_of({})
            try:
                next_interval = self.run_once()
                if next_interval is None:
                    break
                interval = next_interval
            except Exception:
                logger.exception(f"[{namespace}/{name}] reconcile cycle failed")
                metrics.record_poll_error(namespace, name, "unexpected")
            self._stop_event.wait(interval.total_seconds())
        logger.info(f"[{namespace}/{name}] poll loop exited")


class Scheduler:
    """
    Keeps one PollLoop per VolumeAutoscaler. A discovery pass every
    `resync_interval_seconds` starts loops for new objects and stops loops
    whose object disappeared. stop() cancels every loop at once.
    """

    def __init__(
            self,
            backend: VolumeBackend,
            settings: Settings,
            reconciler_factory: Optional[Callable[[VolumeBackend], Reconciler]] = None,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self.reconciler_factory = reconciler_factory or self._default_reconciler
        self._stop_event = threading.Event()
        self._loops: Dict[IntentKey, PollLoop] = {}

    def _default_reconciler(self, backend: VolumeBackend) -> Reconciler:
        return Reconciler(
            backend,
            metrics_factory=partial(get_client, timeout=self.settings.metrics_timeout_seconds),
            dry_run=self.settings.dry_run,
            default_metrics_endpoint=self.settings.default_metrics_endpoint,
        )

    @property
    def loops(self) -> Dict[IntentKey, PollLoop]:
        return dict(self._loops)

    def sync_once(self) -> None:
        items = self.backend.list_intents(self.settings.namespace or None)
        wanted = {
            (obj["metadata"].get("namespace", "default"), obj["metadata"]["name"])
            for obj in items
        }

        for key, loop in list(self._loops.items()):
            if key not in wanted or not loop.is_alive():
                loop.stop()
                del self._loops[key]
                if key not in wanted:
                    metrics.forget_usage(*key)

        for key in sorted(wanted - self._loops.keys()):
            loop = PollLoop(
                key,
                self.backend,
                self.reconciler_factory,
                self._stop_event,
                deadline_fraction=self.settings.cycle_deadline_fraction,
            )
            self._loops[key] = loop
            loop.start()

    def run(self) -> None:
        logger.info(f"Scheduler started (namespace={self.settings.namespace or '*'})")
        try:
            while not self._stop_event.is_set():
                try:
                    self.sync_once()
                except Exception:
                    logger.exception("Failed to list VolumeAutoscalers")
                self._stop_event.wait(self.settings.resync_interval_seconds)
        finally:
            self.stop()
            for loop in list(self._loops.values()):
                loop.join(timeout=self.settings.metrics_timeout_seconds + 5)
            logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stop_event.set()
        for loop in list(self._loops.values()):
            loop.stop()
