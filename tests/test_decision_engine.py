from datetime import datetime, timedelta, timezone

import pytest

from volume_autoscaler.core.decision_engine import compute_new_size, decide
from volume_autoscaler.domain.decision import Action, Reason
from volume_autoscaler.domain.intent import Intent, VolumeTarget
from volume_autoscaler.domain.status import VolumeObservation
from volume_autoscaler.domain.volume_info import VolumeInfo
from volume_autoscaler.domain.volume_sample import VolumeSample

Gi = 1024 ** 3
NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)


def build_intent(**overrides) -> Intent:
    params = dict(
        name="data",
        namespace="default",
        target=VolumeTarget(volume_name="pvc-0"),
        max_size=200 * Gi,
        threshold_percent=80,
        increase_percent=20,
        increase_minimum=10 * Gi,
        cooldown_period=timedelta(minutes=5),
    )
    params.update(overrides)
    return Intent(**params)


def volume(size: int) -> VolumeInfo:
    return VolumeInfo(name="pvc-0", namespace="default", capacity=size, requested=size)


def prior(minutes_ago: float) -> VolumeObservation:
    return VolumeObservation(
        name="pvc-0",
        current_size=100 * Gi,
        last_scale_time=NOW - timedelta(minutes=minutes_ago),
        last_scale_size=100 * Gi,
    )


@pytest.mark.parametrize("usage_percent", [0, 10, 50, 79, 79.9])
def test_below_threshold_is_noop(usage_percent):
    size = 100 * Gi
    d = decide(build_intent(), volume(size), VolumeSample(int(size * usage_percent / 100)), None, NOW)
    assert d.action is Action.NOOP
    assert d.reason is Reason.BELOW_THRESHOLD


def test_below_both_thresholds_with_inode_check_is_noop():
    intent = build_intent(inode_threshold_percent=90)
    d = decide(intent, volume(100 * Gi), VolumeSample(50 * Gi, inode_percent=89.0), None, NOW)
    assert d.action is Action.NOOP
    assert d.reason is Reason.BELOW_THRESHOLD


def test_inode_percent_ignored_when_disabled():
    d = decide(build_intent(), volume(100 * Gi), VolumeSample(10 * Gi, inode_percent=99.0), None, NOW)
    assert d.reason is Reason.BELOW_THRESHOLD


def test_inode_threshold_triggers_expansion():
    intent = build_intent(inode_threshold_percent=90)
    d = decide(intent, volume(100 * Gi), VolumeSample(10 * Gi, inode_percent=95.0), None, NOW)
    assert d.action is Action.EXPAND
    assert d.reason is Reason.INODES_ABOVE_THRESHOLD


@pytest.mark.parametrize("usage_gi,inode_pct,expected", [
    (99, 91.0, Reason.USAGE_ABOVE_THRESHOLD),   # usage +19 vs inodes +1
    (81, 99.0, Reason.INODES_ABOVE_THRESHOLD),  # usage +1 vs inodes +9
    (90, 100.0, Reason.USAGE_ABOVE_THRESHOLD),  # tie goes to usage
])
def test_both_triggers_report_larger_margin(usage_gi, inode_pct, expected):
    intent = build_intent(inode_threshold_percent=90)
    d = decide(intent, volume(100 * Gi), VolumeSample(usage_gi * Gi, inode_percent=inode_pct), None, NOW)
    assert d.reason is expected


@pytest.mark.parametrize("usage_percent", [80, 85, 99, 100, 150])
@pytest.mark.parametrize("minutes_ago", [0, 1, 4.99])
def test_cooldown_blocks_regardless_of_usage(usage_percent, minutes_ago):
    d = decide(build_intent(), volume(100 * Gi), VolumeSample(usage_percent * Gi), prior(minutes_ago), NOW)
    assert d.action is Action.NOOP
    assert d.reason is Reason.COOLING_DOWN


def test_cooldown_elapsed_allows_expansion():
    d = decide(build_intent(), volume(100 * Gi), VolumeSample(90 * Gi), prior(5), NOW)
    assert d.action is Action.EXPAND


def test_first_expansion_not_blocked_without_last_scale_time():
    no_history = VolumeObservation(name="pvc-0", current_size=100 * Gi)
    d = decide(build_intent(), volume(100 * Gi), VolumeSample(90 * Gi), no_history, NOW)
    assert d.action is Action.EXPAND


def test_scenario_a_expands_to_120gi():
    d = decide(build_intent(), volume(100 * Gi), VolumeSample(85 * Gi), None, NOW)
    assert d.action is Action.EXPAND
    assert d.new_size == 120 * Gi
    assert d.observation.usage_percent == 85


def test_scenario_b_clamps_to_max_size_then_reports_at_max():
    d = decide(build_intent(), volume(190 * Gi), VolumeSample(180 * Gi), None, NOW)
    assert d.action is Action.EXPAND
    assert d.new_size == 200 * Gi

    after = d.observation
    after.last_scale_time = NOW
    later = NOW + timedelta(minutes=1)
    d2 = decide(build_intent(), volume(200 * Gi), VolumeSample(190 * Gi), after, later)
    assert d2.action is Action.NOOP
    assert d2.reason is Reason.AT_MAX_SIZE


@pytest.mark.parametrize("minutes_later", [1, 10, 1000])
def test_at_max_size_is_stable(minutes_later):
    at_max = VolumeObservation(name="pvc-0", current_size=200 * Gi, last_scale_time=NOW)
    d = decide(build_intent(), volume(200 * Gi), VolumeSample(199 * Gi), at_max,
               NOW + timedelta(minutes=minutes_later))
    assert d.reason is Reason.AT_MAX_SIZE
    assert d.new_size is None


def test_beyond_max_size_never_shrinks():
    d = decide(build_intent(), volume(250 * Gi), VolumeSample(240 * Gi), None, NOW)
    assert d.action is Action.NOOP
    assert d.reason is Reason.AT_MAX_SIZE


@pytest.mark.parametrize("current,percent,minimum,max_size,expected", [
    (100 * Gi, 20, 10 * Gi, 200 * Gi, 120 * Gi),
    (10 * Gi, 10, 5 * Gi, 100 * Gi, 15 * Gi),   # floor wins
    (10 * Gi, 50, 0, 12 * Gi, 12 * Gi),         # cap wins
    (100 * Gi, 50, 1 * Gi, 1000 * Gi, 150 * Gi),
    (190 * Gi, 20, 10 * Gi, 200 * Gi, 200 * Gi),
])
def test_new_size_formula(current, percent, minimum, max_size, expected):
    intent = build_intent(increase_percent=percent, increase_minimum=minimum, max_size=max_size)
    assert compute_new_size(current, intent) == expected
    assert expected == min(max_size, current + max(current * percent // 100, minimum))


def test_small_volume_delta_never_truncates_to_zero():
    intent = build_intent(increase_percent=1, increase_minimum=0, max_size=Gi)
    assert compute_new_size(50, intent) > 50


def test_zero_capacity_is_noop():
    d = decide(build_intent(), volume(0), VolumeSample(10), None, NOW)
    assert d.reason is Reason.CAPACITY_UNKNOWN


def test_last_scale_carried_into_observation():
    p = prior(60)
    d = decide(build_intent(), volume(100 * Gi), VolumeSample(10 * Gi), p, NOW)
    assert d.observation.last_scale_time == p.last_scale_time
    assert d.observation.last_scale_size == p.last_scale_size
