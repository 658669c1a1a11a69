"""
Signal normalizer: raw Kubernetes payloads -> RiskSignal.

This is the only place that looks at collector payload shapes. Everything
downstream works on the closed RiskKind union. Pure functions, no I/O.

Absent data produces no signal. A cluster without CPU usage is "unknown",
not "0% CPU", and a collector that was unavailable (list is None) yields
no signals of its kinds at all.
"""

from collections.abc import Iterable

import structlog

from adapters.kubernetes.domain import (
    ClusterStats,
    DeploymentIssue,
    GPUNodeInfo,
    NodeConditionType,
    NodeInfo,
    PodIssue,
    SecurityIssue,
    TelemetrySnapshot,
)
from core.domain.models import RiskKind, RiskSignal, RiskType

logger = structlog.get_logger(__name__)

CORDONED_REASON = "Cordoned"

# Payload lists each heuristic risk type is derived from
FEEDS_BY_RISK_TYPE: dict[str, tuple[str, ...]] = {
    RiskType.POD_CRASH.value: ("pods",),
    RiskType.RESOURCE_EXHAUSTION.value: ("clusters",),
    RiskType.GPU_EXHAUSTION.value: ("gpu_nodes",),
    RiskType.GPU_NODE_ANOMALY.value: ("gpu_nodes",),
    RiskType.NODE_OFFLINE.value: ("nodes",),
    RiskType.NODE_PRESSURE.value: ("nodes",),
    RiskType.DEPLOYMENT_DEGRADED.value: ("deployments",),
    RiskType.SECURITY.value: ("security_issues",),
}


def normalize(snapshot: TelemetrySnapshot) -> list[RiskSignal]:
    """Convert one telemetry snapshot into risk signals, in input order."""
    signals: list[RiskSignal] = []
    signals.extend(_pod_signals(snapshot.pods or []))
    signals.extend(_node_signals(dedupe_nodes(snapshot.nodes or [])))
    signals.extend(_gpu_signals(snapshot.gpu_nodes or []))
    signals.extend(_cluster_signals(snapshot.clusters or []))
    signals.extend(_deployment_signals(snapshot.deployments or []))
    signals.extend(_security_signals(snapshot.security_issues or []))

    logger.debug(
        "signals_normalized",
        signal_count=len(signals),
        unavailable=snapshot.unavailable(),
    )
    return signals


def dedupe_nodes(nodes: Iterable[NodeInfo]) -> list[NodeInfo]:
    """
    Collapse duplicate node entries reported through several kube contexts.

    The same physical node shows up once per context alias; the entry under
    the shortest cluster name wins (first one on a tie).
    """
    chosen: dict[str, NodeInfo] = {}
    for node in nodes:
        current = chosen.get(node.name)
        if current is None or len(node.cluster or "") < len(current.cluster or ""):
            chosen[node.name] = node
    return list(chosen.values())


def _pod_signals(pods: Iterable[PodIssue]) -> list[RiskSignal]:
    return [
        RiskSignal(
            kind=RiskKind.POD_RESTART,
            resource_name=pod.name,
            cluster=pod.cluster,
            namespace=pod.namespace,
            metric_value=pod.restarts,
            reason=pod.reason or pod.status,
        )
        for pod in pods
        if pod.restarts is not None
    ]


def _root_cause(node: NodeInfo) -> str | None:
    """Best explanation for why a node is not Ready, taken from its conditions."""
    active = node.active_pressure_conditions()
    if active:
        return ", ".join(c.type for c in active)
    for condition in node.conditions:
        if condition.type == NodeConditionType.READY.value and not condition.is_true:
            return condition.message or condition.reason
    return None


def _node_signals(nodes: Iterable[NodeInfo]) -> list[RiskSignal]:
    signals = []
    for node in nodes:
        # A node without a reported status is unknown, not offline
        not_ready = node.status is not None and not node.is_ready
        if not_ready or node.unschedulable:
            reason = node.status if not_ready else CORDONED_REASON
            attributes = {}
            root_cause = _root_cause(node)
            if root_cause:
                attributes["root_cause"] = root_cause
            signals.append(
                RiskSignal(
                    kind=RiskKind.NODE_OFFLINE,
                    resource_name=node.name,
                    cluster=node.cluster,
                    reason=reason,
                    attributes=attributes,
                )
            )

        pressure = node.active_pressure_conditions()
        if pressure:
            signals.append(
                RiskSignal(
                    kind=RiskKind.NODE_PRESSURE,
                    resource_name=node.name,
                    cluster=node.cluster,
                    metric_value=len(pressure),
                    reason=", ".join(c.type for c in pressure),
                )
            )
    return signals


def _gpu_signals(gpu_nodes: Iterable[GPUNodeInfo]) -> list[RiskSignal]:
    signals = []
    for node in gpu_nodes:
        attributes = {"gpu_type": node.gpu_type} if node.gpu_type else {}

        if node.gpu_count is not None and node.gpu_count > 0 and node.gpu_allocated is not None:
            signals.append(
                RiskSignal(
                    kind=RiskKind.GPU_EXHAUSTION,
                    resource_name=node.name,
                    cluster=node.cluster,
                    metric_value=node.gpu_allocated,
                    capacity=node.gpu_count,
                    attributes=attributes,
                )
            )
        elif node.gpu_type and node.gpu_count == 0:
            # Labelled as a GPU node but advertising no GPUs
            signals.append(
                RiskSignal(
                    kind=RiskKind.GPU_EXHAUSTION,
                    resource_name=node.name,
                    cluster=node.cluster,
                    metric_value=0,
                    capacity=0,
                    attributes=attributes,
                )
            )

        if node.gpu_memory_used_percent is not None:
            signals.append(
                RiskSignal(
                    kind=RiskKind.RESOURCE_EXHAUSTION,
                    resource_name=node.name,
                    cluster=node.cluster,
                    metric_value=node.gpu_memory_used_percent,
                    dimension="gpu_memory",
                    attributes=attributes,
                )
            )
    return signals


def _cluster_signals(clusters: Iterable[ClusterStats]) -> list[RiskSignal]:
    signals = []
    for cluster in clusters:
        for dimension, percent in (("cpu", cluster.cpu_percent), ("memory", cluster.memory_percent)):
            if percent is None:
                continue
            signals.append(
                RiskSignal(
                    kind=RiskKind.RESOURCE_EXHAUSTION,
                    resource_name=cluster.name,
                    cluster=cluster.name,
                    metric_value=percent,
                    dimension=dimension,
                )
            )
    return signals


def _deployment_signals(deployments: Iterable[DeploymentIssue]) -> list[RiskSignal]:
    signals = []
    for deployment in deployments:
        if deployment.replicas is None:
            continue
        ready = deployment.ready_replicas or 0
        if deployment.replicas > ready:
            signals.append(
                RiskSignal(
                    kind=RiskKind.DEPLOYMENT_DEGRADED,
                    resource_name=deployment.name,
                    cluster=deployment.cluster,
                    namespace=deployment.namespace,
                    metric_value=deployment.replicas - ready,
                    capacity=deployment.replicas,
                    reason=f"{ready}/{deployment.replicas} replicas ready",
                )
            )
    return signals


def _security_signals(issues: Iterable[SecurityIssue]) -> list[RiskSignal]:
    return [
        RiskSignal(
            kind=RiskKind.SECURITY,
            resource_name=issue.name,
            cluster=issue.cluster,
            namespace=issue.namespace,
            reason=issue.issue,
            attributes={"severity": issue.severity.lower()},
        )
        for issue in issues
    ]


def observed(snapshot: TelemetrySnapshot, risk_type: str, cluster: str | None) -> bool:
    """
    Whether `snapshot` could have reported a risk of this type on `cluster`.

    Provider categories outside the heuristic types are not tied to one
    feed; for those only the cluster has to have been observed.
    """
    feeds = FEEDS_BY_RISK_TYPE.get(risk_type, ())
    return snapshot.observed(feeds, cluster)
