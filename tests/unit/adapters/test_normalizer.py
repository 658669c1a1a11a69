"""
Tests for the Kubernetes signal normalizer.

Covers:
- Absent metrics produce no signals (never a zero value)
- Node readiness, cordoning and pressure conditions
- Duplicate node entries across kube contexts
- GPU allocation, anomalies and GPU memory
- Degraded deployments and security findings
- Which risks a partial snapshot could have reported
"""

from __future__ import annotations

from adapters.kubernetes.domain import (
    ClusterStats,
    DeploymentIssue,
    GPUNodeInfo,
    NodeCondition,
    NodeInfo,
    PodIssue,
    SecurityIssue,
    TelemetrySnapshot,
)
from adapters.kubernetes.normalizer import FEEDS_BY_RISK_TYPE, dedupe_nodes, normalize, observed
from core.domain.models import RiskKind, RiskType


def kinds(snapshot: TelemetrySnapshot) -> list[RiskKind]:
    return [s.kind for s in normalize(snapshot)]


class TestAbsentData:
    def test_empty_snapshot_yields_nothing(self) -> None:
        assert normalize(TelemetrySnapshot()) == []

    def test_cluster_without_cpu_usage_is_not_zero_percent(self) -> None:
        snapshot = TelemetrySnapshot(
            clusters=[ClusterStats(name="prod", cpu_cores=64, memory_gb=256, memory_usage_gb=128)]
        )

        signals = normalize(snapshot)

        assert [s.dimension for s in signals] == ["memory"]
        assert signals[0].metric_value == 50.0

    def test_pod_without_restart_count_skipped(self) -> None:
        snapshot = TelemetrySnapshot(pods=[PodIssue(name="a"), PodIssue(name="b", restarts=0)])

        signals = normalize(snapshot)

        assert [s.resource_name for s in signals] == ["b"]

    def test_node_without_status_is_unknown(self) -> None:
        assert normalize(TelemetrySnapshot(nodes=[NodeInfo(name="n1")])) == []


class TestNodes:
    def test_not_ready_node_with_root_cause(self) -> None:
        node = NodeInfo(
            name="n1",
            cluster="prod",
            status="NotReady",
            conditions=[NodeCondition(type="Ready", status="False", message="kubelet stopped posting")],
        )

        signal = normalize(TelemetrySnapshot(nodes=[node]))[0]

        assert signal.kind is RiskKind.NODE_OFFLINE
        assert signal.reason == "NotReady"
        assert signal.attributes["root_cause"] == "kubelet stopped posting"

    def test_cordoned_ready_node(self) -> None:
        node = NodeInfo(name="n1", status="Ready", unschedulable=True)

        signal = normalize(TelemetrySnapshot(nodes=[node]))[0]

        assert signal.kind is RiskKind.NODE_OFFLINE
        assert signal.reason == "Cordoned"

    def test_pressure_conditions(self) -> None:
        node = NodeInfo(
            name="n1",
            status="Ready",
            conditions=[
                NodeCondition(type="Ready", status="True"),
                NodeCondition(type="MemoryPressure", status="True"),
                NodeCondition(type="DiskPressure", status="False"),
            ],
        )

        signals = normalize(TelemetrySnapshot(nodes=[node]))

        assert [s.kind for s in signals] == [RiskKind.NODE_PRESSURE]
        assert signals[0].reason == "MemoryPressure"

    def test_dedupe_prefers_shortest_cluster_name(self) -> None:
        nodes = [
            NodeInfo(name="n1", cluster="arn:aws:eks:us-east-1:prod", status="NotReady"),
            NodeInfo(name="n1", cluster="prod", status="NotReady"),
            NodeInfo(name="n2", cluster="prod", status="Ready"),
        ]

        deduped = dedupe_nodes(nodes)
        signals = normalize(TelemetrySnapshot(nodes=nodes))

        assert [(n.name, n.cluster) for n in deduped] == [("n1", "prod"), ("n2", "prod")]
        assert [(s.resource_name, s.cluster) for s in signals] == [("n1", "prod")]


class TestGPUNodes:
    def test_allocation_and_memory(self) -> None:
        node = GPUNodeInfo(
            name="gpu-1",
            cluster="ml",
            gpu_type="nvidia-a100",
            gpu_count=8,
            gpu_allocated=8,
            gpu_memory_used_percent=91.5,
        )

        signals = normalize(TelemetrySnapshot(gpu_nodes=[node]))

        assert [s.kind for s in signals] == [RiskKind.GPU_EXHAUSTION, RiskKind.RESOURCE_EXHAUSTION]
        assert signals[0].capacity == 8
        assert signals[0].attributes == {"gpu_type": "nvidia-a100"}
        assert signals[1].dimension == "gpu_memory"

    def test_labelled_node_without_gpus(self) -> None:
        node = GPUNodeInfo(name="gpu-2", gpu_type="nvidia-l4", gpu_count=0)

        signal = normalize(TelemetrySnapshot(gpu_nodes=[node]))[0]

        assert signal.kind is RiskKind.GPU_EXHAUSTION
        assert signal.capacity == 0

    def test_unknown_allocation_skipped(self) -> None:
        node = GPUNodeInfo(name="gpu-3", gpu_count=8)
        assert normalize(TelemetrySnapshot(gpu_nodes=[node])) == []


class TestWorkloads:
    def test_degraded_deployment(self) -> None:
        snapshot = TelemetrySnapshot(
            deployments=[
                DeploymentIssue(name="checkout", replicas=3, ready_replicas=1),
                DeploymentIssue(name="healthy", replicas=2, ready_replicas=2),
                DeploymentIssue(name="no-status", replicas=2),
            ]
        )

        signals = normalize(snapshot)

        assert [(s.resource_name, s.metric_value) for s in signals] == [("checkout", 2), ("no-status", 2)]
        assert signals[0].reason == "1/3 replicas ready"

    def test_security_severity_lowercased(self) -> None:
        issue = SecurityIssue(name="agent", issue="Privileged container", severity="HIGH")

        signal = normalize(TelemetrySnapshot(security_issues=[issue]))[0]

        assert signal.kind is RiskKind.SECURITY
        assert signal.attributes == {"severity": "high"}
        assert signal.reason == "Privileged container"


def test_signal_order_follows_payload_sections() -> None:
    snapshot = TelemetrySnapshot(
        security_issues=[SecurityIssue(name="s", issue="x")],
        pods=[PodIssue(name="p", restarts=4)],
        clusters=[ClusterStats(name="c", cpu_cores=10, cpu_usage_cores=9)],
    )

    assert kinds(snapshot) == [RiskKind.POD_RESTART, RiskKind.RESOURCE_EXHAUSTION, RiskKind.SECURITY]


class TestObserved:
    def test_each_heuristic_type_needs_its_feed(self) -> None:
        snapshot = TelemetrySnapshot(pods=[], nodes=[])

        assert observed(snapshot, RiskType.POD_CRASH.value, "prod")
        assert observed(snapshot, RiskType.NODE_PRESSURE.value, "prod")
        assert not observed(snapshot, RiskType.GPU_EXHAUSTION.value, "prod")
        assert not observed(snapshot, RiskType.RESOURCE_EXHAUSTION.value, "prod")
        assert not observed(snapshot, RiskType.SECURITY.value, "prod")

    def test_every_heuristic_type_is_mapped(self) -> None:
        provider_categories = {RiskType.RESOURCE_TREND, RiskType.CAPACITY_RISK, RiskType.ANOMALY}

        assert set(FEEDS_BY_RISK_TYPE) == {t.value for t in RiskType if t not in provider_categories}

    def test_failed_region_is_not_observed(self) -> None:
        snapshot = TelemetrySnapshot(pods=[]).with_failed_source("east", ["prod-east"])

        assert observed(snapshot, RiskType.POD_CRASH.value, "prod-west")
        assert not observed(snapshot, RiskType.POD_CRASH.value, "prod-east")

    def test_provider_category_only_needs_its_cluster(self) -> None:
        snapshot = TelemetrySnapshot().with_failed_source("east", ["prod-east"])

        assert observed(snapshot, "resource-trend", "prod-west")
        assert not observed(snapshot, "resource-trend", "prod-east")
        assert observed(TelemetrySnapshot(), "resource-trend", None)
