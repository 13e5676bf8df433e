"""Threshold / cooldown / cap decision for a single volume.

Pure and deterministic: no I/O, no clock reads. The caller passes `now`.
"""
from dataclasses import replace
from datetime import datetime
from typing import Optional

from volume_autoscaler.domain.decision import Action, Reason, ScaleDecision
from volume_autoscaler.domain.intent import Intent
from volume_autoscaler.domain.quantity import format_bytes, format_duration
from volume_autoscaler.domain.status import VolumeObservation
from volume_autoscaler.domain.volume_info import VolumeInfo
from volume_autoscaler.domain.volume_sample import VolumeSample


def compute_new_size(current_size: int, intent: Intent) -> int:
    """
    min(maxSize, current + max(current * increasePercent / 100, increaseMinimum)).
    Integer bytes throughout; the percentage part is rounded up so it never
    truncates to zero. The larger delta wins, they are never summed.
    """
    percent_delta = -(-current_size * intent.increase_percent // 100)
    delta = max(percent_delta, intent.increase_minimum)
    return min(current_size + delta, intent.max_size)


def _trigger_reason(intent: Intent, usage_percent: float, inode_percent: Optional[float]) -> Optional[Reason]:
    usage_margin = usage_percent - intent.threshold_percent
    inode_margin = None
    if intent.inode_check_enabled and inode_percent is not None:
        inode_margin = inode_percent - intent.inode_threshold_percent

    usage_hit = usage_margin >= 0
    inode_hit = inode_margin is not None and inode_margin >= 0

    if usage_hit and inode_hit:
        # both fired: report whichever is further past its threshold
        return Reason.INODES_ABOVE_THRESHOLD if inode_margin > usage_margin else Reason.USAGE_ABOVE_THRESHOLD
    if usage_hit:
        return Reason.USAGE_ABOVE_THRESHOLD
    if inode_hit:
        return Reason.INODES_ABOVE_THRESHOLD
    return None


def decide(
        intent: Intent,
        volume: VolumeInfo,
        sample: VolumeSample,
        prior: Optional[VolumeObservation],
        now: datetime,
) -> ScaleDecision:
    current_size = volume.current_size
    observation = VolumeObservation(
        name=volume.name,
        current_size=current_size,
        usage_bytes=sample.usage_bytes,
        last_scale_time=prior.last_scale_time if prior else None,
        last_scale_size=prior.last_scale_size if prior else None,
    )

    def noop(reason: Reason, message: str, usage: float = 0.0) -> ScaleDecision:
        return ScaleDecision(
            action=Action.NOOP,
            reason=reason,
            message=message,
            observation=replace(observation, reason=reason.value, message=message),
            usage_percent=usage,
            inode_percent=sample.inode_percent,
        )

    capacity = volume.capacity or volume.requested
    if capacity <= 0:
        return noop(Reason.CAPACITY_UNKNOWN, "volume reports no capacity")

    usage_percent = sample.usage_bytes / capacity * 100
    observation.usage_percent = int(round(usage_percent))

    trigger = _trigger_reason(intent, usage_percent, sample.inode_percent)
    if trigger is None:
        return noop(Reason.BELOW_THRESHOLD, f"usage {usage_percent:.1f}% below {intent.threshold_percent}%", usage_percent)

    # the ceiling outranks cooldown: a capped volume always reports AtMaxSize
    if current_size >= intent.max_size:
        return noop(Reason.AT_MAX_SIZE, f"already at maxSize {format_bytes(intent.max_size)}", usage_percent)

    last = observation.last_scale_time
    if last is not None and now - last < intent.cooldown_period:
        remaining = intent.cooldown_period - (now - last)
        return noop(Reason.COOLING_DOWN, f"cooling down, {format_duration(remaining)} remaining", usage_percent)

    new_size = compute_new_size(current_size, intent)

    message = f"expand {format_bytes(current_size)} -> {format_bytes(new_size)}"
    return ScaleDecision(
        action=Action.EXPAND,
        reason=trigger,
        message=message,
        observation=replace(observation, reason=trigger.value, message=message),
        new_size=new_size,
        usage_percent=usage_percent,
        inode_percent=sample.inode_percent,
    )
