import json
from typing import Any, Optional

from volume_autoscaler.domain.errors import InvalidIntent
from volume_autoscaler.domain.intent import (
    DEFAULT_COOLDOWN_PERIOD,
    DEFAULT_INCREASE_PERCENT,
    DEFAULT_METRICS_ENDPOINT,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_THRESHOLD_PERCENT,
    Intent,
    LabelSelector,
    SelectorRequirement,
    VolumeTarget,
)
from volume_autoscaler.domain.quantity import parse_duration, to_bytes


def _int_in_range(spec: dict, key: str, default: int, low: int, high: int) -> int:
    raw = spec.get(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidIntent(f"{key} must be an integer, got {raw!r}") from exc
    if not low <= value <= high:
        raise InvalidIntent(f"{key} must be within [{low}, {high}], got {value}")
    return value


def _parse_selector(raw: dict) -> LabelSelector:
    expressions = [
        SelectorRequirement(
            key=expr.get("key", ""),
            operator=expr.get("operator", ""),
            values=list(expr.get("values") or []),
        )
        for expr in raw.get("matchExpressions") or []
    ]
    return LabelSelector(
        match_labels=dict(raw.get("matchLabels") or {}),
        match_expressions=expressions,
    )


def _parse_target(raw: Optional[dict]) -> VolumeTarget:
    # validity (exactly one of the two) is checked by the target resolver each cycle
    raw = raw or {}
    selector = raw.get("selector")
    return VolumeTarget(
        volume_name=raw.get("volumeName") or None,
        selector=_parse_selector(selector) if selector is not None else None,
    )


def intent_from_object(obj: dict[str, Any], default_metrics_endpoint: str = DEFAULT_METRICS_ENDPOINT) -> Intent:
    """
    Builds an Intent from a VolumeAutoscaler object as returned by the
    CustomObjectsApi (or read from a JSON file).
    """
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}

    if spec.get("maxSize") in (None, ""):
        raise InvalidIntent("maxSize is required")
    max_size = to_bytes(spec["maxSize"])
    if max_size <= 0:
        raise InvalidIntent("maxSize must be positive")

    increase_minimum = to_bytes(spec["increaseMinimum"]) if spec.get("increaseMinimum") is not None else 0
    if increase_minimum < 0:
        raise InvalidIntent("increaseMinimum must not be negative")

    poll_interval = parse_duration(spec["pollInterval"]) if spec.get("pollInterval") else DEFAULT_POLL_INTERVAL
    if poll_interval.total_seconds() <= 0:
        raise InvalidIntent("pollInterval must be positive")
    cooldown = parse_duration(spec["cooldownPeriod"]) if spec.get("cooldownPeriod") else DEFAULT_COOLDOWN_PERIOD
    if cooldown.total_seconds() < 0:
        raise InvalidIntent("cooldownPeriod must not be negative")

    return Intent(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", "default"),
        generation=int(metadata.get("generation", 0)),
        uid=metadata.get("uid", ""),
        target=_parse_target(spec.get("target")),
        max_size=max_size,
        threshold_percent=_int_in_range(spec, "thresholdPercent", DEFAULT_THRESHOLD_PERCENT, 1, 99),
        inode_threshold_percent=_int_in_range(spec, "inodeThresholdPercent", 0, 0, 99),
        increase_percent=_int_in_range(spec, "increasePercent", DEFAULT_INCREASE_PERCENT, 1, 100),
        increase_minimum=increase_minimum,
        poll_interval=poll_interval,
        cooldown_period=cooldown,
        metrics_endpoint=spec.get("metricsEndpoint") or default_metrics_endpoint,
    )


def load_intent(path: str) -> dict[str, Any]:
    with open(path, 'r') as f:
        return json.load(f)
