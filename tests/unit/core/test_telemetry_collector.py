"""
Tests for telemetry collection.

Testing philosophy:
- Simulated latency stays in milliseconds
- Test doubles implement the protocol, no mocking frameworks
- Partial failures must degrade the snapshot, never fail the cycle
- A failed source marks its own clusters as unobserved
"""

import asyncio

import pytest

from adapters.kubernetes.domain import ClusterStats, PodIssue, TelemetrySnapshot
from core.domain.errors import CollectorUnavailable
from core.services.telemetry_collector import (
    Result,
    TelemetryCollector,
    TelemetryCollectorConfig,
)


class TestResult:
    """Ok and error outcomes of a collection attempt."""

    def test_result_ok_creates_successful_result(self) -> None:
        result: Result[str] = Result.ok("success")
        assert result.is_ok()
        assert not result.is_err()
        assert result.unwrap() == "success"

    def test_result_error_creates_failed_result(self) -> None:
        result: Result[str] = Result.err(ValueError("test error"))
        assert result.is_err()
        assert result.unwrap_or("default") == "default"
        assert isinstance(result.unwrap_err(), ValueError)

    def test_unwrap_raises_on_error_result(self) -> None:
        result: Result[str] = Result.err(ValueError("test error"))

        with pytest.raises(ValueError, match="test error"):
            result.unwrap()

    def test_result_requires_exactly_one_side(self) -> None:
        with pytest.raises(ValueError):
            Result()
        with pytest.raises(ValueError):
            Result(value="x", error=ValueError("y"))

    def test_unwrap_err_on_ok_raises(self) -> None:
        with pytest.raises(ValueError):
            Result.ok(1).unwrap_err()


class MockTelemetrySource:
    """Test double that implements TelemetrySource protocol."""

    def __init__(
        self,
        should_fail: bool = False,
        delay_seconds: float = 0.0,
        source_name: str = "mock-source",
        raise_error: bool = False,
        snapshot: TelemetrySnapshot | None = None,
        clusters: list[str] | None = None,
    ) -> None:
        self.should_fail = should_fail
        self.delay_seconds = delay_seconds
        self.source_name = source_name
        self.raise_error = raise_error
        self.snapshot = snapshot
        self.clusters = clusters
        self.call_count = 0

    async def collect(self) -> Result[TelemetrySnapshot]:
        self.call_count += 1

        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)

        if self.raise_error:
            raise RuntimeError("collector crashed")
        if self.should_fail:
            return Result.err(CollectorUnavailable(self.source_name, "Mock failure"))

        return Result.ok(
            self.snapshot
            or TelemetrySnapshot(
                pods=[PodIssue(name=f"{self.source_name}-pod", cluster="c1", restarts=1)]
            )
        )


class TestTelemetrySnapshot:
    def test_merge_keeps_unavailable_only_when_both_missing(self) -> None:
        pods = TelemetrySnapshot(pods=[PodIssue(name="a", restarts=1)])
        clusters = TelemetrySnapshot(clusters=[ClusterStats(name="c1")], pods=[])

        merged = pods.merge(clusters)

        assert [p.name for p in merged.pods or []] == ["a"]
        assert merged.clusters is not None
        assert merged.nodes is None
        assert "nodes" in merged.unavailable()
        assert "pods" not in merged.unavailable()

    def test_observed_depends_on_feed_and_failure_scope(self) -> None:
        snapshot = TelemetrySnapshot(pods=[]).with_failed_source("east", ["prod-east"])

        assert snapshot.observed(["pods"], "prod-west")
        assert not snapshot.observed(["pods"], "prod-east")
        assert not snapshot.observed(["nodes"], "prod-west")
        assert not snapshot.observed(["pods"], None)

    def test_failure_of_unknown_scope_blinds_every_cluster(self) -> None:
        snapshot = TelemetrySnapshot(pods=[]).with_failed_source("legacy", None)

        assert snapshot.all_clusters_unavailable
        assert not snapshot.observed(["pods"], "prod-west")
        assert TelemetrySnapshot(pods=[]).observed(["pods"], None)

    def test_merge_combines_failures(self) -> None:
        east = TelemetrySnapshot().with_failed_source("east", ["prod-east"])
        west = TelemetrySnapshot(pods=[]).with_failed_source("west", ["prod-west", "prod-east"])

        merged = east.merge(west)

        assert merged.failed_sources == ["east", "west"]
        assert merged.unavailable_clusters == ["prod-east", "prod-west"]
        assert not merged.all_clusters_unavailable

    def test_camel_case_payload(self) -> None:
        snapshot = TelemetrySnapshot.model_validate(
            {"gpuNodes": [{"name": "gpu-1", "gpuCount": 4, "gpuAllocated": 4}], "unknown": 1}
        )
        assert snapshot.gpu_nodes is not None
        assert snapshot.gpu_nodes[0].gpu_allocated == 4


class TestTelemetryCollector:
    """Test the collector with various scenarios."""

    @pytest.fixture
    def collector(self) -> TelemetryCollector:
        return TelemetryCollector(TelemetryCollectorConfig(timeout_seconds=0.5))

    def test_invalid_config_raises_validation_error(self) -> None:
        with pytest.raises(ValueError):
            TelemetryCollectorConfig(timeout_seconds=0)

    def test_add_source_validates_protocol(self, collector: TelemetryCollector) -> None:
        with pytest.raises(TypeError):
            collector.add_source(object())  # type: ignore[arg-type]

    @pytest.mark.parametrize("success_count,fail_count", [(2, 1), (0, 2), (3, 0)])
    @pytest.mark.asyncio
    async def test_collect_once_with_mixed_sources(
        self,
        collector: TelemetryCollector,
        success_count: int,
        fail_count: int,
    ) -> None:
        """Healthy collectors still contribute when others fail."""
        for i in range(success_count):
            collector.add_source(MockTelemetrySource(source_name=f"ok-{i}"))
        for i in range(fail_count):
            collector.add_source(MockTelemetrySource(should_fail=True, source_name=f"bad-{i}"))

        result = await collector.collect_once()

        if success_count > 0:
            assert result.is_ok()
            assert len(result.unwrap().pods or []) == success_count
        else:
            assert result.is_err()
            assert isinstance(result.unwrap_err(), CollectorUnavailable)

    async def test_no_sources_is_unavailable(self, collector: TelemetryCollector) -> None:
        result = await collector.collect_once()
        assert result.is_err()

    async def test_timeout_and_exception_are_fail_soft(self, collector: TelemetryCollector) -> None:
        collector.add_source(MockTelemetrySource(delay_seconds=2.0, source_name="hung"))
        collector.add_source(MockTelemetrySource(raise_error=True, source_name="crashing"))
        collector.add_source(MockTelemetrySource(source_name="healthy"))

        result = await collector.collect_once()

        assert result.is_ok()
        assert [p.name for p in result.unwrap().pods or []] == ["healthy-pod"]

    async def test_failed_source_scope_is_recorded(self, collector: TelemetryCollector) -> None:
        collector.add_source(MockTelemetrySource(source_name="west", clusters=["prod-west"]))
        collector.add_source(
            MockTelemetrySource(should_fail=True, source_name="east", clusters=["prod-east"])
        )

        snapshot = (await collector.collect_once()).unwrap()

        assert snapshot.failed_sources == ["east"]
        assert snapshot.unavailable_clusters == ["prod-east"]
        assert not snapshot.all_clusters_unavailable
        assert snapshot.observed(["pods"], "prod-west")
        assert not snapshot.observed(["pods"], "prod-east")

    async def test_crashing_source_without_scope(self, collector: TelemetryCollector) -> None:
        collector.add_source(MockTelemetrySource(source_name="healthy"))
        collector.add_source(MockTelemetrySource(raise_error=True, source_name="crashing"))

        snapshot = (await collector.collect_once()).unwrap()

        assert snapshot.failed_sources == ["crashing"]
        assert snapshot.all_clusters_unavailable
        assert not snapshot.observed(["pods"], "c1")

    async def test_remove_source(self, collector: TelemetryCollector) -> None:
        source = MockTelemetrySource()
        collector.add_source(source)
        collector.remove_source(source)

        assert collector.sources == []

    @pytest.mark.parametrize("source_count", [1, 5, 10])
    @pytest.mark.asyncio
    async def test_concurrent_source_execution(
        self, collector: TelemetryCollector, source_count: int
    ) -> None:
        """Sources are collected concurrently, not one after another."""
        for i in range(source_count):
            collector.add_source(MockTelemetrySource(delay_seconds=0.1, source_name=f"source-{i}"))

        start_time = asyncio.get_running_loop().time()
        result = await collector.collect_once()
        duration = asyncio.get_running_loop().time() - start_time

        assert duration < 0.5, f"Expected concurrent execution, took {duration:.2f}s"
        assert result.is_ok()
        assert len(result.unwrap().pods or []) == source_count


class TestPerformanceRegression:
    """Timing baselines for fleets of collectors."""

    @pytest.mark.performance
    @pytest.mark.asyncio
    async def test_collection_performance_baseline(self) -> None:
        collector = TelemetryCollector(TelemetryCollectorConfig(timeout_seconds=1.0))
        for i in range(5):
            collector.add_source(MockTelemetrySource(delay_seconds=0.01, source_name=f"perf-{i}"))

        start_time = asyncio.get_running_loop().time()
        result = await collector.collect_once()
        duration = asyncio.get_running_loop().time() - start_time

        assert result.is_ok()
        assert duration < 0.5, f"Collection took too long: {duration:.3f}s"
