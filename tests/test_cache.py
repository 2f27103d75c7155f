from __future__ import annotations

import pytest

from ward_allocation.services.cache_service import ScheduleCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_entry_is_served_until_ttl_expires() -> None:
    clock = FakeClock()
    cache: ScheduleCache[str] = ScheduleCache(ttl_seconds=10, clock=clock)
    cache.put("2026-03-02", "calculations")

    clock.now += 10
    assert cache.get("2026-03-02") == "calculations"

    clock.now += 0.5
    assert cache.get("2026-03-02") is None


def test_epoch_bump_drops_every_entry() -> None:
    cache: ScheduleCache[int] = ScheduleCache(clock=FakeClock())
    cache.put("a", 1)
    cache.put("b", 2)

    assert cache.bump_epoch() == 1
    assert cache.get("a") is None
    assert cache.get("b") is None

    cache.put("a", 3)
    assert cache.get("a") == 3


def test_invalidate_removes_single_key() -> None:
    cache: ScheduleCache[int] = ScheduleCache(clock=FakeClock())
    cache.put("a", 1)
    cache.put("b", 2)

    cache.invalidate("a")
    cache.invalidate("missing")

    assert cache.get("a") is None
    assert cache.get("b") == 2


def test_negative_ttl_is_rejected() -> None:
    with pytest.raises(ValueError):
        ScheduleCache(ttl_seconds=-1)


def test_put_prunes_expired_entries() -> None:
    clock = FakeClock()
    cache: ScheduleCache[int] = ScheduleCache(ttl_seconds=10, clock=clock)
    cache.put("old-1", 1)
    cache.put("old-2", 2)

    clock.now += 11
    cache.put("fresh", 3)

    assert len(cache) == 1
    assert cache.get("fresh") == 3


def test_least_recently_used_entry_is_evicted_at_capacity() -> None:
    cache: ScheduleCache[int] = ScheduleCache(clock=FakeClock(), max_entries=2)
    cache.put("a", 1)
    cache.put("b", 2)
    assert cache.get("a") == 1

    cache.put("c", 3)

    assert len(cache) == 2
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3


def test_zero_capacity_is_rejected() -> None:
    with pytest.raises(ValueError):
        ScheduleCache(max_entries=0)
