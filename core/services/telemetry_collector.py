"""
Telemetry collection from the console's cluster collectors.

Key patterns:
- Protocol-based sources, so any collector (live API, file replay,
  simulation) plugs in without inheritance
- Result type for expected failures (an unreachable cluster is not a bug)
- Structured concurrency with asyncio.TaskGroup and per-source timeouts
- Partial failures degrade the snapshot, they never fail the cycle
"""

import asyncio
import time
from typing import Generic, Protocol, TypeVar

import structlog
from pydantic import BaseModel, Field

from adapters.kubernetes.domain import TelemetrySnapshot
from core.domain.errors import CollectorUnavailable

logger = structlog.get_logger(__name__)

ValueT = TypeVar("ValueT")


class Result(Generic[ValueT]):
    """
    Outcome of a collection attempt: a value or the error that prevented it.

    Makes error paths visible in the type system and forces handling
    decisions. Use it when failure is expected business logic, not exceptional.
    """

    def __init__(self, value: ValueT | None = None, error: BaseException | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: BaseException | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: BaseException) -> "Result[ValueT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> BaseException:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error


class TelemetrySource(Protocol):
    """
    A collector of cluster telemetry.

    Returns the part of the snapshot it knows about; fields it does not
    cover stay None so they are treated as unavailable. A source may also
    expose a `clusters` list; when it fails, only those clusters count as
    unobserved. Without one, a failure hides every cluster.
    """

    source_name: str

    async def collect(self) -> Result[TelemetrySnapshot]:
        """
        Collect one snapshot.

        Returns:
            Result[TelemetrySnapshot]: the partial snapshot or the failure.
        """
        ...


class TelemetryCollectorConfig(BaseModel):
    timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Timeout for one source in seconds.",
    )


class TelemetryCollector:
    """
    Collects one merged snapshot from every registered source.

    Design principles:
    - Fail fast on registration (protocol check)
    - Graceful degradation during runtime (partial failures OK)
    - Observable (structured logging per source)
    """

    def __init__(self, config: TelemetryCollectorConfig | None = None) -> None:
        self.config = config or TelemetryCollectorConfig()
        self.sources: list[TelemetrySource] = []
        self.logger = logger.bind(component="telemetry_collector")

    def add_source(self, source: TelemetrySource) -> None:
        """Add a telemetry source. Validates source implements protocol correctly."""
        if not hasattr(source, "collect"):
            raise TypeError(f"Source {source} must implement TelemetrySource protocol")
        self.sources.append(source)
        self.logger.info("source_added", source=source.source_name)

    def remove_source(self, source: TelemetrySource) -> None:
        self.sources.remove(source)
        self.logger.info("source_removed", source=source.source_name)

    async def _collect_source(self, source: TelemetrySource) -> Result[TelemetrySnapshot]:
        try:
            return await asyncio.wait_for(source.collect(), timeout=self.config.timeout_seconds)
        except TimeoutError:
            self.logger.warning("source_collection_timeout", source=source.source_name)
            return Result.err(CollectorUnavailable(source.source_name, "collection timed out"))
        except Exception as e:
            self.logger.exception(
                "unexpected_source_collection_error", source=source.source_name, error=str(e)
            )
            return Result.err(CollectorUnavailable(source.source_name, str(e)))

    async def collect_once(self) -> Result[TelemetrySnapshot]:
        """
        Collect from all sources with structured concurrency.

        Returns Result.err only when every source failed; otherwise the
        merged snapshot of the sources that answered.
        """
        if not self.sources:
            return Result.err(CollectorUnavailable("all", "no telemetry sources configured"))

        start_time = time.perf_counter()

        async with asyncio.TaskGroup() as task_group:
            tasks = [
                (source, task_group.create_task(self._collect_source(source)))
                for source in self.sources
            ]

        snapshot = TelemetrySnapshot()
        successful = 0
        failed: list[TelemetrySource] = []
        for source, task in tasks:
            result = task.result()
            if result.is_ok():
                snapshot = snapshot.merge(result.unwrap())
                successful += 1
            else:
                failed.append(source)
                self.logger.warning(
                    "source_collection_failed",
                    source=source.source_name,
                    error=str(result.unwrap_err()),
                )

        # One dead collector only blinds us to its own clusters
        for source in failed:
            snapshot = snapshot.with_failed_source(source.source_name, getattr(source, "clusters", None))

        self.logger.info(
            "telemetry_collection_completed",
            successful_sources=successful,
            total_sources=len(self.sources),
            unavailable=snapshot.unavailable(),
            failed_sources=snapshot.failed_sources,
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )

        if successful == 0:
            return Result.err(CollectorUnavailable("all", "every telemetry source failed"))
        return Result.ok(snapshot)
