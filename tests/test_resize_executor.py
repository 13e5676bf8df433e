import pytest

from fake_cluster import FakeCluster, Gi
from volume_autoscaler.core.resize_executor import ResizeExecutor
from volume_autoscaler.domain.errors import NotExpandable, ResizeConflict, ResizeError, ResizeInProgress

MAX = 200 * Gi


@pytest.fixture
def cluster():
    c = FakeCluster()
    c.storage_classes.update({"fixed": False})
    c.add_volume("pvc-0", 100 * Gi)
    c.add_volume("pvc-1", 100 * Gi)
    c.add_volume("pvc-fixed", 100 * Gi, storage_class="fixed")
    return c


def test_expand_patches_capacity(cluster):
    result = ResizeExecutor(cluster).expand(cluster.get_volume("default", "pvc-0"), 120 * Gi, MAX)
    assert result.patched
    assert cluster.patches == [("pvc-0", 120 * Gi)]
    assert cluster.size_of("pvc-0") == 120 * Gi


def test_storage_class_not_expandable(cluster):
    with pytest.raises(NotExpandable):
        ResizeExecutor(cluster).expand(cluster.get_volume("default", "pvc-fixed"), 120 * Gi, MAX)
    assert cluster.patches == []


def test_missing_storage_class_fails_closed(cluster):
    cluster.add_volume("pvc-ghost", 100 * Gi, storage_class="ghost")
    with pytest.raises(NotExpandable):
        ResizeExecutor(cluster).expand(cluster.get_volume("default", "pvc-ghost"), 120 * Gi, MAX)


def test_volume_without_storage_class_is_not_checked(cluster):
    cluster.add_volume("pvc-static", 100 * Gi, storage_class=None)
    result = ResizeExecutor(cluster).expand(cluster.get_volume("default", "pvc-static"), 120 * Gi, MAX)
    assert result.patched
    assert cluster.sc_lookups == []


def test_storage_class_looked_up_once_per_cycle(cluster):
    executor = ResizeExecutor(cluster)
    executor.expand(cluster.get_volume("default", "pvc-0"), 120 * Gi, MAX)
    executor.expand(cluster.get_volume("default", "pvc-1"), 120 * Gi, MAX)
    assert cluster.sc_lookups == ["standard"]

    ResizeExecutor(cluster).expand(cluster.get_volume("default", "pvc-0"), 150 * Gi, MAX)
    assert cluster.sc_lookups == ["standard", "standard"]


def test_conflict_retried_once_then_succeeds(cluster):
    cluster.conflicts_to_raise = 1
    result = ResizeExecutor(cluster).expand(cluster.get_volume("default", "pvc-0"), 120 * Gi, MAX)
    assert result.patched
    assert cluster.patches == [("pvc-0", 120 * Gi)]


def test_persistent_conflict_is_reported(cluster):
    cluster.conflicts_to_raise = 2
    with pytest.raises(ResizeConflict):
        ResizeExecutor(cluster).expand(cluster.get_volume("default", "pvc-0"), 120 * Gi, MAX)
    assert cluster.patches == []


def test_stale_read_already_grown_elsewhere_is_not_patched(cluster):
    stale = cluster.get_volume("default", "pvc-0")
    cluster.patch_volume_size("default", "pvc-0", 130 * Gi, stale.resource_version)
    cluster.patches.clear()

    result = ResizeExecutor(cluster).expand(stale, 120 * Gi, MAX)
    assert not result.patched
    assert result.volume.requested == 130 * Gi
    assert cluster.patches == []


def test_resize_in_progress_is_skipped(cluster):
    cluster.add_volume("pvc-busy", 100 * Gi, resizing=True)
    with pytest.raises(ResizeInProgress):
        ResizeExecutor(cluster).expand(cluster.get_volume("default", "pvc-busy"), 120 * Gi, MAX)


def test_never_exceeds_max_size(cluster):
    with pytest.raises(ResizeError):
        ResizeExecutor(cluster).expand(cluster.get_volume("default", "pvc-0"), MAX + 1, MAX)
    assert cluster.patches == []


def test_never_shrinks(cluster):
    result = ResizeExecutor(cluster).expand(cluster.get_volume("default", "pvc-0"), 50 * Gi, MAX)
    assert not result.patched
    assert cluster.size_of("pvc-0") == 100 * Gi
