"""
Shared time-to-live cache for telemetry snapshots.

One instance is constructed per engine and handed to whoever needs node
data, so the heuristic loop and the AI loop never hit the collectors twice
within the TTL window.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Generic, TypeVar

import structlog

from core.clock import Clock, SystemClock
from core.services.telemetry_collector import Result

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Subscriber = Callable[[T], None]


class SnapshotCache(Generic[T]):
    """
    TTL cache with refresh coalescing and change subscribers.

    When a refresh fails the previous value keeps being served, but only
    while it is younger than `max_stale_seconds` (unbounded when None).
    `stale` tells callers they are looking at such a fallback.
    """

    def __init__(
        self,
        ttl_seconds: float = 30.0,
        clock: Clock | None = None,
        max_stale_seconds: float | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_stale_seconds is not None and max_stale_seconds < ttl_seconds:
            raise ValueError("max_stale_seconds must be at least ttl_seconds")
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_stale = timedelta(seconds=max_stale_seconds) if max_stale_seconds is not None else None
        self.clock = clock or SystemClock()
        self._value: T | None = None
        self._fetched_at: datetime | None = None
        self._invalidated = False
        self._stale = False
        self._lock = asyncio.Lock()
        self._subscribers: list[Subscriber[T]] = []
        self.logger = logger.bind(component="snapshot_cache")

    @property
    def value(self) -> T | None:
        return self._value

    @property
    def fetched_at(self) -> datetime | None:
        return self._fetched_at

    @property
    def stale(self) -> bool:
        """True while refreshes fail; the cached value, if any, is out of date."""
        return self._stale

    def is_fresh(self) -> bool:
        if self._invalidated or self._fetched_at is None:
            return False
        return self.clock.now() - self._fetched_at < self.ttl

    def invalidate(self) -> None:
        self._invalidated = True

    def _can_fall_back(self) -> bool:
        if self._value is None or self._fetched_at is None:
            return False
        return self.max_stale is None or self.clock.now() - self._fetched_at <= self.max_stale

    def subscribe(self, callback: Subscriber[T]) -> Callable[[], None]:
        """Register a callback for every refresh. Returns the unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def get(self, fetch: Callable[[], Awaitable[Result[T]]]) -> Result[T]:
        """
        Return the cached value, refreshing it through `fetch` once expired.

        Concurrent callers wait on the same refresh. A failed refresh keeps
        the previous value while it is within `max_stale`, and reports the
        failure once there is nothing usable to fall back to.
        """
        if self.is_fresh():
            return Result.ok(self._value)  # type: ignore[arg-type]

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self.is_fresh():
                return Result.ok(self._value)  # type: ignore[arg-type]

            result = await fetch()
            if result.is_err():
                self._stale = True
                if self._can_fall_back():
                    self.logger.warning(
                        "snapshot_refresh_failed_serving_stale",
                        error=str(result.unwrap_err()),
                        fetched_at=self._fetched_at.isoformat() if self._fetched_at else None,
                    )
                    return Result.ok(self._value)  # type: ignore[arg-type]
                self.logger.warning("snapshot_refresh_failed", error=str(result.unwrap_err()))
                return result

            self._value = result.unwrap()
            self._fetched_at = self.clock.now()
            self._invalidated = False
            self._stale = False
            self.logger.debug("snapshot_refreshed", subscribers=len(self._subscribers))
            self._notify(self._value)
            return result

    def _notify(self, value: T) -> None:
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception as e:
                self.logger.exception("snapshot_subscriber_failed", error=str(e))
