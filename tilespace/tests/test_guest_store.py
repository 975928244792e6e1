"""
Guest workspace cache: sliding TTL, sweep and copy isolation.
"""
import pytest

from tilespace.core.errors import NotFoundError
from tilespace.core.metrics import guest_cache_entries
from tilespace.features.workspaces.guest_store import GuestWorkspaceCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return GuestWorkspaceCache(ttl_seconds=60, time_fn=clock)


def test_entries_expire_after_ttl(cache, clock):
    cache.put("g1", [{"id": "ws1"}])

    clock.now += 61

    assert cache.get("g1") is None
    assert len(cache) == 0


def test_reads_extend_the_ttl(cache, clock):
    cache.put("g1", [{"id": "ws1"}])

    clock.now += 50
    assert cache.get("g1") == [{"id": "ws1"}]
    clock.now += 50

    assert cache.get("g1") == [{"id": "ws1"}]


def test_sweep_removes_only_expired(cache, clock):
    cache.put("old", [])
    clock.now += 45
    cache.put("new", [])
    clock.now += 30

    assert cache.sweep() == 1
    assert cache.get("old") is None
    assert cache.get("new") == []
    assert guest_cache_entries.value() == 1


def test_returned_data_is_a_copy(cache):
    cache.put("g1", [{"id": "ws1", "dashboards": []}])

    cache.get("g1")[0]["dashboards"].append({"id": "sneaky"})

    assert cache.get("g1")[0]["dashboards"] == []


def test_update_applies_mutation(cache):
    def add_workspace(workspaces):
        workspaces.append({"id": "ws2"})
        return workspaces[-1]

    created = cache.update("g1", add_workspace)

    assert created == {"id": "ws2"}
    assert cache.get("g1") == [{"id": "ws2"}]


def test_failed_update_leaves_entry_unchanged(cache):
    cache.put("g1", [{"id": "ws1"}])

    def broken(workspaces):
        workspaces.clear()
        raise NotFoundError("Dashboard not found")

    with pytest.raises(NotFoundError):
        cache.update("g1", broken)

    assert cache.get("g1") == [{"id": "ws1"}]


def test_delete(cache):
    cache.put("g1", [])
    cache.delete("g1")
    cache.delete("never-there")

    assert cache.get("g1") is None
    assert guest_cache_entries.value() == 0
