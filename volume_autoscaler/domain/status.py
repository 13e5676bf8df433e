from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, List, Optional

from volume_autoscaler.domain.quantity import format_bytes, to_bytes

CONDITION_READY = "Ready"
CONDITION_AT_MAX_SIZE = "AtMaxSize"


def format_time(value: datetime) -> str:
    """
    RFC3339 in UTC. Sub-second precision is kept when present, so a stored
    lastScaleTime never reads back earlier than it happened.
    """
    value = value.astimezone(timezone.utc)
    if value.microsecond:
        return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))


@dataclass
class Condition:
    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: Optional[datetime] = None
    observed_generation: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": format_time(self.last_transition_time) if self.last_transition_time else None,
            "observedGeneration": self.observed_generation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        return cls(
            type=data["type"],
            status=data.get("status", "Unknown"),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=parse_time(data.get("lastTransitionTime")),
            observed_generation=data.get("observedGeneration", 0),
        )


@dataclass
class VolumeObservation:
    name: str
    current_size: int
    usage_bytes: int = 0
    usage_percent: int = 0
    last_scale_time: Optional[datetime] = None
    last_scale_size: Optional[int] = None
    reason: str = ""
    message: str = ""
    # set only while the PVC is carried forward without being evaluated
    last_evaluated_reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "currentSize": format_bytes(self.current_size),
            "usageBytes": self.usage_bytes,
            "usagePercent": self.usage_percent,
            "reason": self.reason,
            "message": self.message,
        }
        if self.last_scale_time is not None:
            out["lastScaleTime"] = format_time(self.last_scale_time)
        if self.last_scale_size is not None:
            out["lastScaleSize"] = format_bytes(self.last_scale_size)
        if self.last_evaluated_reason:
            out["lastEvaluatedReason"] = self.last_evaluated_reason
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VolumeObservation:
        last_size = data.get("lastScaleSize")
        return cls(
            name=data["name"],
            current_size=to_bytes(data.get("currentSize", 0)),
            usage_bytes=int(data.get("usageBytes", 0)),
            usage_percent=int(data.get("usagePercent", 0)),
            last_scale_time=parse_time(data.get("lastScaleTime")),
            last_scale_size=to_bytes(last_size) if last_size is not None else None,
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_evaluated_reason=data.get("lastEvaluatedReason", ""),
        )


@dataclass
class IntentStatus:
    conditions: List[Condition] = field(default_factory=list)
    last_poll_time: Optional[datetime] = None
    volumes: List[VolumeObservation] = field(default_factory=list)
    total_scale_events: int = 0
    observed_generation: int = 0

    def observation_for(self, name: str) -> Optional[VolumeObservation]:
        return next((v for v in self.volumes if v.name == name), None)

    def condition(self, condition_type: str) -> Optional[Condition]:
        return next((c for c in self.conditions if c.type == condition_type), None)

    def set_condition(self, new: Condition, now: datetime) -> None:
        """
        Adds or updates a condition by type. The transition time moves only
        when the status value actually changes.
        """
        for idx, existing in enumerate(self.conditions):
            if existing.type != new.type:
                continue
            transition = existing.last_transition_time
            if existing.status != new.status or transition is None:
                transition = now
            self.conditions[idx] = replace(new, last_transition_time=transition)
            return
        self.conditions.append(replace(new, last_transition_time=new.last_transition_time or now))

    def to_dict(self) -> dict[str, Any]:
        return {
            "conditions": [c.to_dict() for c in self.conditions],
            "lastPollTime": format_time(self.last_poll_time) if self.last_poll_time else None,
            "volumes": [v.to_dict() for v in self.volumes],
            "totalScaleEvents": self.total_scale_events,
            "observedGeneration": self.observed_generation,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> IntentStatus:
        data = data or {}
        return cls(
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            last_poll_time=parse_time(data.get("lastPollTime")),
            volumes=[VolumeObservation.from_dict(v) for v in data.get("volumes") or []],
            total_scale_events=int(data.get("totalScaleEvents", 0)),
            observed_generation=int(data.get("observedGeneration", 0)),
        )
