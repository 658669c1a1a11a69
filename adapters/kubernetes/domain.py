"""
Kubernetes-specific payload models fed into the prediction engine.

These mirror what the console's cluster collectors report:
- Pods with restart counts
- Nodes with readiness, cordon state and pressure conditions
- GPU nodes with capacity, allocation and GPU memory usage
- Cluster-level CPU / memory capacity and usage
- Deployments with desired vs ready replicas
- Security findings

The models are deliberately lenient (unknown fields ignored, everything
optional except the resource name) because collectors report partial data.
A missing value means "unknown", never zero.
"""

from collections.abc import Iterable
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

_PAYLOAD_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class NodeConditionType(str, Enum):
    """Node conditions the normalizer understands."""

    READY = "Ready"
    MEMORY_PRESSURE = "MemoryPressure"
    DISK_PRESSURE = "DiskPressure"
    PID_PRESSURE = "PIDPressure"
    NETWORK_UNAVAILABLE = "NetworkUnavailable"


# Conditions that indicate trouble when their status is "True"
PRESSURE_CONDITIONS = (
    NodeConditionType.MEMORY_PRESSURE,
    NodeConditionType.DISK_PRESSURE,
    NodeConditionType.PID_PRESSURE,
    NodeConditionType.NETWORK_UNAVAILABLE,
)


class PodIssue(BaseModel):
    model_config = _PAYLOAD_CONFIG

    name: str = Field(min_length=1)
    namespace: str | None = None
    cluster: str | None = None
    restarts: int | None = Field(None, ge=0)
    status: str | None = None
    reason: str | None = None


class NodeCondition(BaseModel):
    model_config = _PAYLOAD_CONFIG

    type: str
    status: str
    reason: str | None = None
    message: str | None = None

    @property
    def is_true(self) -> bool:
        return self.status.lower() == "true"


class NodeInfo(BaseModel):
    model_config = _PAYLOAD_CONFIG

    name: str = Field(min_length=1)
    cluster: str | None = None
    status: str | None = None
    unschedulable: bool = False
    conditions: list[NodeCondition] = Field(default_factory=list)
    roles: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def is_ready(self) -> bool:
        return self.status == NodeConditionType.READY.value

    def active_pressure_conditions(self) -> list[NodeCondition]:
        pressure_types = {c.value for c in PRESSURE_CONDITIONS}
        return [c for c in self.conditions if c.type in pressure_types and c.is_true]


class GPUNodeInfo(BaseModel):
    model_config = _PAYLOAD_CONFIG

    name: str = Field(min_length=1)
    cluster: str | None = None
    gpu_type: str | None = None
    gpu_count: int | None = Field(None, ge=0)
    gpu_allocated: int | None = Field(None, ge=0)
    gpu_memory_used_percent: float | None = Field(None, ge=0.0)


class ClusterStats(BaseModel):
    """Aggregated capacity and usage for one cluster."""

    model_config = _PAYLOAD_CONFIG

    name: str = Field(min_length=1)
    cpu_cores: float | None = None
    cpu_usage_cores: float | None = None
    memory_gb: float | None = None
    memory_usage_gb: float | None = None
    healthy: bool | None = None
    reachable: bool | None = None
    node_count: int | None = None

    @staticmethod
    def _percent(used: float | None, capacity: float | None) -> float | None:
        if used is None or capacity is None or used <= 0 or capacity <= 0:
            return None
        return used / capacity * 100

    @property
    def cpu_percent(self) -> float | None:
        return self._percent(self.cpu_usage_cores, self.cpu_cores)

    @property
    def memory_percent(self) -> float | None:
        return self._percent(self.memory_usage_gb, self.memory_gb)


class DeploymentIssue(BaseModel):
    model_config = _PAYLOAD_CONFIG

    name: str = Field(min_length=1)
    namespace: str | None = None
    cluster: str | None = None
    replicas: int | None = Field(None, ge=0)
    ready_replicas: int | None = Field(None, ge=0)


class SecurityIssue(BaseModel):
    model_config = _PAYLOAD_CONFIG

    name: str = Field(min_length=1)
    namespace: str | None = None
    cluster: str | None = None
    issue: str
    severity: str = "low"


# Per-kind payload lists, in the order the normalizer reads them
TELEMETRY_FEEDS = ("pods", "nodes", "gpu_nodes", "clusters", "deployments", "security_issues")


class TelemetrySnapshot(BaseModel):
    """
    Everything the collectors reported for one cycle.

    A list is None when its collector was unavailable, which is different
    from an empty list (collector answered, nothing to report). When only
    some sources failed, the lists hold what the others reported and the
    failure fields say which clusters went unobserved.
    """

    model_config = _PAYLOAD_CONFIG

    pods: list[PodIssue] | None = None
    nodes: list[NodeInfo] | None = None
    gpu_nodes: list[GPUNodeInfo] | None = None
    clusters: list[ClusterStats] | None = None
    deployments: list[DeploymentIssue] | None = None
    security_issues: list[SecurityIssue] | None = None

    failed_sources: list[str] = Field(default_factory=list)
    unavailable_clusters: list[str] = Field(default_factory=list)
    # Set when a failed source did not declare which clusters it serves
    all_clusters_unavailable: bool = False

    def merge(self, other: "TelemetrySnapshot") -> "TelemetrySnapshot":
        """Combine two partial snapshots; a list stays None only if both lack it."""
        merged: dict = {}
        for field_name in TELEMETRY_FEEDS:
            mine = getattr(self, field_name)
            theirs = getattr(other, field_name)
            if mine is None:
                merged[field_name] = theirs
            elif theirs is None:
                merged[field_name] = mine
            else:
                merged[field_name] = [*mine, *theirs]
        return TelemetrySnapshot(
            **merged,
            failed_sources=[*self.failed_sources, *other.failed_sources],
            unavailable_clusters=sorted({*self.unavailable_clusters, *other.unavailable_clusters}),
            all_clusters_unavailable=self.all_clusters_unavailable or other.all_clusters_unavailable,
        )

    def with_failed_source(self, source_name: str, clusters: list[str] | None) -> "TelemetrySnapshot":
        """Record a source that did not answer. clusters=None means its scope is unknown."""
        return self.model_copy(
            update={
                "failed_sources": [*self.failed_sources, source_name],
                "unavailable_clusters": sorted({*self.unavailable_clusters, *(clusters or [])}),
                "all_clusters_unavailable": self.all_clusters_unavailable or clusters is None,
            }
        )

    def unavailable(self) -> list[str]:
        return [name for name in TELEMETRY_FEEDS if getattr(self, name) is None]

    def observed(self, feeds: Iterable[str], cluster: str | None) -> bool:
        """
        Whether this snapshot actually looked at `feeds` for `cluster`.

        False means a risk from those feeds may still exist but nobody could
        check, so its absence from this cycle proves nothing.
        """
        if any(getattr(self, feed) is None for feed in feeds):
            return False
        if not self.failed_sources:
            return True
        if self.all_clusters_unavailable or cluster is None:
            return False
        return cluster not in self.unavailable_clusters
