"""
Tests for the shared telemetry snapshot cache.

Covers:
- TTL freshness driven by a manual clock
- Refresh coalescing for concurrent callers
- Subscribers and unsubscribe
- Failed refreshes keep the previous value, up to max_stale_seconds
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from core.clock import ManualClock
from core.domain.errors import CollectorUnavailable
from core.services.snapshot_cache import SnapshotCache
from core.services.telemetry_collector import Result


class CountingFetch:
    def __init__(self, delay_seconds: float = 0.0) -> None:
        self.calls = 0
        self.delay_seconds = delay_seconds
        self.fail = False

    async def __call__(self) -> Result[int]:
        self.calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail:
            return Result.err(CollectorUnavailable("mock"))
        return Result.ok(self.calls)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def cache(clock: ManualClock) -> SnapshotCache[int]:
    return SnapshotCache(ttl_seconds=30, clock=clock)


def test_ttl_must_be_positive() -> None:
    with pytest.raises(ValueError):
        SnapshotCache(ttl_seconds=0)


async def test_value_reused_within_ttl(cache: SnapshotCache[int], clock: ManualClock) -> None:
    fetch = CountingFetch()

    first = await cache.get(fetch)
    clock.advance(seconds=29)
    second = await cache.get(fetch)

    assert first.unwrap() == second.unwrap() == 1
    assert fetch.calls == 1
    assert cache.fetched_at == clock.now() - timedelta(seconds=29)


async def test_refresh_after_ttl(cache: SnapshotCache[int], clock: ManualClock) -> None:
    fetch = CountingFetch()

    await cache.get(fetch)
    clock.advance(seconds=30)
    result = await cache.get(fetch)

    assert result.unwrap() == 2
    assert fetch.calls == 2


async def test_invalidate_forces_refresh(cache: SnapshotCache[int]) -> None:
    fetch = CountingFetch()

    await cache.get(fetch)
    cache.invalidate()

    assert not cache.is_fresh()
    assert (await cache.get(fetch)).unwrap() == 2


async def test_concurrent_callers_share_one_refresh(cache: SnapshotCache[int]) -> None:
    fetch = CountingFetch(delay_seconds=0.05)

    results = await asyncio.gather(*(cache.get(fetch) for _ in range(5)))

    assert fetch.calls == 1
    assert all(r.unwrap() == 1 for r in results)


async def test_failed_refresh_keeps_previous_value(
    cache: SnapshotCache[int], clock: ManualClock
) -> None:
    fetch = CountingFetch()
    await cache.get(fetch)

    fetch.fail = True
    clock.advance(minutes=5)
    result = await cache.get(fetch)

    assert result.is_ok()
    assert result.unwrap() == 1
    assert cache.value == 1


async def test_failed_refresh_without_value_reports_error(cache: SnapshotCache[int]) -> None:
    fetch = CountingFetch()
    fetch.fail = True

    result = await cache.get(fetch)

    assert result.is_err()
    assert cache.value is None


async def test_subscribers_notified_on_refresh(cache: SnapshotCache[int]) -> None:
    seen: list[int] = []
    unsubscribe = cache.subscribe(seen.append)
    fetch = CountingFetch()

    await cache.get(fetch)
    await cache.get(fetch)  # cached, no notification
    unsubscribe()
    cache.invalidate()
    await cache.get(fetch)

    assert seen == [1]


async def test_failing_subscriber_does_not_break_refresh(cache: SnapshotCache[int]) -> None:
    def broken(value: int) -> None:
        raise RuntimeError("boom")

    seen: list[int] = []
    cache.subscribe(broken)
    cache.subscribe(seen.append)

    result = await cache.get(CountingFetch())

    assert result.unwrap() == 1
    assert seen == [1]


def test_max_stale_cannot_undercut_ttl() -> None:
    with pytest.raises(ValueError):
        SnapshotCache(ttl_seconds=30, max_stale_seconds=10)


async def test_stale_value_served_only_within_bound(clock: ManualClock) -> None:
    cache: SnapshotCache[int] = SnapshotCache(ttl_seconds=30, clock=clock, max_stale_seconds=60)
    fetch = CountingFetch()
    await cache.get(fetch)
    fetched_at = cache.fetched_at

    fetch.fail = True
    clock.advance(seconds=45)
    within = await cache.get(fetch)

    assert within.unwrap() == 1
    assert cache.stale

    clock.advance(seconds=16)
    beyond = await cache.get(fetch)

    assert beyond.is_err()
    assert cache.stale
    assert cache.fetched_at == fetched_at

    fetch.fail = False
    recovered = await cache.get(fetch)

    assert recovered.unwrap() == 4
    assert not cache.stale


async def test_invalidated_value_still_covers_a_failed_refresh(
    cache: SnapshotCache[int],
) -> None:
    fetch = CountingFetch()
    await cache.get(fetch)

    cache.invalidate()
    fetch.fail = True
    result = await cache.get(fetch)

    assert result.unwrap() == 1
    assert cache.stale
    assert not cache.is_fresh()
