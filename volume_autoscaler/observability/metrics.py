"""Prometheus metrics exported by the autoscaler.

All collectors live in the default registry; `start_metrics_server` exposes
them for scraping. prometheus_client synchronises updates internally, so the
per-intent loops update them without any extra locking. Only the record of
which usage series exist, used to remove stale ones, takes a lock.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, Set, Tuple

from prometheus_client import Counter, Gauge, Histogram, start_http_server

SCALE_EVENTS_TOTAL = Counter(
    "volume_autoscaler_scale_events_total",
    "Total number of PVC expansion events",
    ["namespace", "pvc", "volumeautoscaler"],
)

PVC_USAGE_PERCENT = Gauge(
    "volume_autoscaler_pvc_usage_percent",
    "Current usage percentage of managed PVCs",
    ["namespace", "pvc", "volumeautoscaler"],
)

POLL_ERRORS_TOTAL = Counter(
    "volume_autoscaler_poll_errors_total",
    "Total number of poll errors",
    ["namespace", "volumeautoscaler", "reason"],
)

RECONCILE_DURATION_SECONDS = Histogram(
    "volume_autoscaler_reconcile_duration_seconds",
    "Duration of reconcile loops in seconds",
)


def record_scale_event(namespace: str, pvc: str, intent: str) -> None:
    SCALE_EVENTS_TOTAL.labels(namespace=namespace, pvc=pvc, volumeautoscaler=intent).inc()


_usage_series: Dict[Tuple[str, str], Set[str]] = {}
_usage_lock = threading.Lock()


def record_usage(namespace: str, pvc: str, intent: str, percent: float) -> None:
    with _usage_lock:
        _usage_series.setdefault((namespace, intent), set()).add(pvc)
    PVC_USAGE_PERCENT.labels(namespace=namespace, pvc=pvc, volumeautoscaler=intent).set(percent)


def forget_usage(namespace: str, intent: str, keep: Iterable[str] = ()) -> None:
    """Drops the usage series of PVCs the intent no longer manages (all of them by default)."""
    keep = set(keep)
    with _usage_lock:
        tracked = _usage_series.get((namespace, intent), set())
        stale = tracked - keep
        if keep & tracked:
            _usage_series[(namespace, intent)] = tracked & keep
        else:
            _usage_series.pop((namespace, intent), None)
    for pvc in stale:
        try:
            PVC_USAGE_PERCENT.remove(namespace, pvc, intent)
        except KeyError:
            pass  # never set, or already removed by another thread


def record_poll_error(namespace: str, intent: str, reason: str) -> None:
    POLL_ERRORS_TOTAL.labels(namespace=namespace, volumeautoscaler=intent, reason=reason).inc()


def start_metrics_server(port: int) -> None:
    start_http_server(port)
