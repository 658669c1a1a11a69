"""
Telemetry sources implementing the TelemetrySource protocol.

SimulatedClusterSource generates realistic, occasionally unhealthy fleet
data for demos and soak tests (in production this would be the console's
cluster API). SnapshotFileSource replays a JSON snapshot captured from a
real fleet, which is handy for reproducing a recommendation offline.
"""

import asyncio
import random
from pathlib import Path

import structlog
from pydantic import ValidationError

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
from core.domain.errors import CollectorUnavailable
from core.services.telemetry_collector import Result

logger = structlog.get_logger(__name__)

_CRASH_REASONS = ["CrashLoopBackOff", "OOMKilled", "Error", "ImagePullBackOff"]
_GPU_TYPES = ["nvidia-a100", "nvidia-h100", "nvidia-l4"]
_SECURITY_FINDINGS = [
    ("Privileged container", "high"),
    ("Running as root", "medium"),
    ("Host network enabled", "high"),
    ("Missing resource limits", "low"),
]


class SimulatedClusterSource:
    """
    Simulated multi-cluster telemetry.

    Has a configurable failure rate to simulate an unreachable cluster API.
    Pass a seed for reproducible output.
    """

    def __init__(
        self,
        source_name: str,
        clusters: list[str] | None = None,
        *,
        failure_rate: float = 0.05,
        seed: int | None = None,
        latency_seconds: tuple[float, float] = (0.05, 0.3),
    ) -> None:
        self.source_name = source_name
        self.clusters = clusters or ["prod-east", "prod-west", "staging"]
        self.failure_rate = failure_rate
        self.latency_seconds = latency_seconds
        self._random = random.Random(seed)
        self.logger = logger.bind(source=source_name, clusters=len(self.clusters))

    def _pods(self, cluster: str) -> list[PodIssue]:
        pods = []
        for i in range(self._random.randint(2, 6)):
            restarts = self._random.choices([0, 1, 2, 3, 4, 6, 9], weights=[40, 20, 12, 10, 8, 6, 4])[0]
            pods.append(
                PodIssue(
                    name=f"api-{cluster}-{i}",
                    namespace=self._random.choice(["default", "payments", "ml"]),
                    cluster=cluster,
                    restarts=restarts,
                    status="Running" if restarts < 3 else "CrashLoopBackOff",
                    reason=self._random.choice(_CRASH_REASONS) if restarts >= 3 else None,
                )
            )
        return pods

    def _nodes(self, cluster: str) -> list[NodeInfo]:
        nodes = []
        for i in range(self._random.randint(2, 4)):
            ready = self._random.random() > 0.08
            conditions = [NodeCondition(type="Ready", status="True" if ready else "False")]
            if self._random.random() < 0.1:
                conditions.append(NodeCondition(type="MemoryPressure", status="True"))
            nodes.append(
                NodeInfo(
                    name=f"{cluster}-node-{i}",
                    cluster=cluster,
                    status="Ready" if ready else "NotReady",
                    unschedulable=self._random.random() < 0.05,
                    conditions=conditions,
                    roles=["worker"],
                )
            )
        return nodes

    def _gpu_nodes(self, cluster: str) -> list[GPUNodeInfo]:
        gpu_nodes = []
        for i in range(self._random.randint(0, 2)):
            count = self._random.choice([0, 4, 8]) if self._random.random() < 0.1 else 8
            gpu_nodes.append(
                GPUNodeInfo(
                    name=f"{cluster}-gpu-{i}",
                    cluster=cluster,
                    gpu_type=self._random.choice(_GPU_TYPES),
                    gpu_count=count,
                    gpu_allocated=self._random.randint(0, count) if count else 0,
                    gpu_memory_used_percent=round(self._random.uniform(20, 99), 1),
                )
            )
        return gpu_nodes

    def _cluster_stats(self, cluster: str) -> ClusterStats:
        cpu_cores = float(self._random.choice([64, 128, 256]))
        memory_gb = float(self._random.choice([256, 512, 1024]))
        return ClusterStats(
            name=cluster,
            cpu_cores=cpu_cores,
            cpu_usage_cores=round(cpu_cores * self._random.uniform(0.3, 0.97), 1),
            memory_gb=memory_gb,
            memory_usage_gb=round(memory_gb * self._random.uniform(0.4, 0.98), 1),
            healthy=True,
            reachable=True,
        )

    def _deployments(self, cluster: str) -> list[DeploymentIssue]:
        if self._random.random() > 0.3:
            return []
        replicas = self._random.randint(1, 5)
        return [
            DeploymentIssue(
                name=f"checkout-{cluster}",
                namespace="payments",
                cluster=cluster,
                replicas=replicas,
                ready_replicas=self._random.randint(0, replicas - 1),
            )
        ]

    def _security_issues(self, cluster: str) -> list[SecurityIssue]:
        if self._random.random() > 0.2:
            return []
        issue, severity = self._random.choice(_SECURITY_FINDINGS)
        return [
            SecurityIssue(
                name=f"legacy-agent-{cluster}",
                namespace="kube-system",
                cluster=cluster,
                issue=issue,
                severity=severity,
            )
        ]

    def generate(self) -> TelemetrySnapshot:
        """Build one snapshot synchronously (no latency, no failures)."""
        return TelemetrySnapshot(
            pods=[p for c in self.clusters for p in self._pods(c)],
            nodes=[n for c in self.clusters for n in self._nodes(c)],
            gpu_nodes=[g for c in self.clusters for g in self._gpu_nodes(c)],
            clusters=[self._cluster_stats(c) for c in self.clusters],
            deployments=[d for c in self.clusters for d in self._deployments(c)],
            security_issues=[s for c in self.clusters for s in self._security_issues(c)],
        )

    async def collect(self) -> Result[TelemetrySnapshot]:
        try:
            await asyncio.sleep(self._random.uniform(*self.latency_seconds))

            if self._random.random() < self.failure_rate:
                raise ConnectionError(f"Failed to reach cluster API via {self.source_name}")

            snapshot = self.generate()
            self.logger.info(
                "telemetry_collected",
                pods=len(snapshot.pods or []),
                nodes=len(snapshot.nodes or []),
                gpu_nodes=len(snapshot.gpu_nodes or []),
            )
            return Result.ok(snapshot)

        except Exception as e:
            self.logger.error("telemetry_collection_failed", error=str(e))
            return Result.err(CollectorUnavailable(self.source_name, str(e)))


class SnapshotFileSource:
    """Replays a TelemetrySnapshot stored as JSON (camelCase field names)."""

    def __init__(self, path: Path | str, source_name: str | None = None) -> None:
        self.path = Path(path)
        self.source_name = source_name or f"file:{self.path.name}"
        self.logger = logger.bind(source=self.source_name)

    async def collect(self) -> Result[TelemetrySnapshot]:
        try:
            raw = await asyncio.to_thread(self.path.read_bytes)
            snapshot = TelemetrySnapshot.model_validate_json(raw)
        except (OSError, ValidationError) as e:
            self.logger.error("snapshot_file_unreadable", path=str(self.path), error=str(e))
            return Result.err(CollectorUnavailable(self.source_name, str(e)))

        self.logger.info("snapshot_file_loaded", path=str(self.path), unavailable=snapshot.unavailable())
        return Result.ok(snapshot)
