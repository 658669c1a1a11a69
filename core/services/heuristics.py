"""
Heuristic risk evaluation: static, user-tunable thresholds over risk signals.

Every rule is a plain function from one signal to at most one risk. Rules
are grouped by signal kind; each group is one "rule pass" and never emits
two risks with the same (type, name, cluster) key. Overlap between passes
(e.g. GPU allocation and GPU memory on the same node) is resolved by the
ranker, not here.

Heuristic risks always carry source="heuristic" and confidence=1.0.
"""

from collections.abc import Callable, Iterable

import structlog

from core.domain.models import (
    HEURISTIC_SOURCE,
    PredictedRisk,
    RiskKey,
    RiskKind,
    RiskSignal,
    RiskType,
    Severity,
    ThresholdConfig,
)

logger = structlog.get_logger(__name__)

# Fixed critical sub-thresholds
CPU_CRITICAL_PERCENT = 90.0
MEMORY_CRITICAL_PERCENT = 95.0
GPU_MEMORY_CRITICAL_PERCENT = 98.0

SECURITY_CRITICAL_LEVELS = frozenset({"high", "critical"})

Rule = Callable[[RiskSignal, ThresholdConfig], PredictedRisk | None]


def _risk(
    signal: RiskSignal,
    risk_type: RiskType,
    severity: Severity,
    reason: str,
    *,
    metric: str | None = None,
    reason_detailed: str | None = None,
) -> PredictedRisk:
    return PredictedRisk(
        type=risk_type.value,
        severity=severity,
        name=signal.resource_name,
        cluster=signal.cluster,
        namespace=signal.namespace,
        reason=reason,
        reason_detailed=reason_detailed,
        metric=metric,
        confidence=1.0,
        source=HEURISTIC_SOURCE,
    )


def pod_crash_rule(signal: RiskSignal, cfg: ThresholdConfig) -> PredictedRisk | None:
    restarts = signal.metric_value
    if restarts is None or restarts < cfg.high_restart_count:
        return None

    count = int(restarts)
    severity = (
        Severity.CRITICAL if restarts >= cfg.critical_restart_threshold() else Severity.WARNING
    )
    detail = (
        f"Pod has restarted {count} times, which indicates instability "
        "(OOMKill, application bugs or misconfiguration). Check the pod logs "
        "and recent events, and review its resource limits."
    )
    if signal.reason:
        detail = f"{detail} Last reported reason: {signal.reason}."
    return _risk(
        signal,
        RiskType.POD_CRASH,
        severity,
        f"{count} restarts - likely to crash",
        metric=f"{count} restarts",
        reason_detailed=detail,
    )


def resource_exhaustion_rule(signal: RiskSignal, cfg: ThresholdConfig) -> PredictedRisk | None:
    percent = signal.metric_value
    if percent is None:
        return None

    if signal.dimension == "cpu":
        if percent < cfg.cpu_pressure_percent:
            return None
        severity = Severity.CRITICAL if percent >= CPU_CRITICAL_PERCENT else Severity.WARNING
        return _risk(
            signal,
            RiskType.RESOURCE_EXHAUSTION,
            severity,
            f"CPU at {percent:.0f}% - risk of throttling",
            metric=f"{percent:.0f}% CPU",
            reason_detailed=(
                f"Cluster CPU utilization is at {percent:.1f}%, above the "
                f"{cfg.cpu_pressure_percent:g}% warning threshold. Workloads may be "
                "throttled; consider scaling up nodes or setting CPU limits."
            ),
        )

    if signal.dimension == "memory":
        if percent < cfg.memory_pressure_percent:
            return None
        severity = Severity.CRITICAL if percent >= MEMORY_CRITICAL_PERCENT else Severity.WARNING
        return _risk(
            signal,
            RiskType.RESOURCE_EXHAUSTION,
            severity,
            f"Memory at {percent:.0f}% - risk of OOM",
            metric=f"{percent:.0f}% memory",
            reason_detailed=(
                f"Cluster memory utilization is at {percent:.1f}%, above the "
                f"{cfg.memory_pressure_percent:g}% warning threshold. Pods may be "
                "OOMKilled and new deployments may fail to schedule."
            ),
        )

    if signal.dimension == "gpu_memory":
        if percent < cfg.gpu_memory_pressure_percent:
            return None
        severity = (
            Severity.CRITICAL if percent >= GPU_MEMORY_CRITICAL_PERCENT else Severity.WARNING
        )
        return _risk(
            signal,
            RiskType.GPU_EXHAUSTION,
            severity,
            f"GPU memory at {percent:.0f}%",
            metric=f"{percent:.0f}% GPU memory",
        )

    logger.debug("unknown_resource_dimension", dimension=signal.dimension)
    return None


def gpu_allocation_rule(signal: RiskSignal, cfg: ThresholdConfig) -> PredictedRisk | None:
    allocated, count = signal.metric_value, signal.capacity
    if allocated is None or count is None:
        return None

    if count == 0:
        gpu_type = signal.attributes.get("gpu_type")
        if not gpu_type:
            return None
        return _risk(
            signal,
            RiskType.GPU_NODE_ANOMALY,
            Severity.WARNING,
            f"Labelled {gpu_type} but reports 0 GPUs",
            metric="0 GPUs",
            reason_detailed=(
                "The node carries a GPU type label but advertises no GPUs. The device "
                "plugin may be down or the driver failed to load."
            ),
        )

    if allocated < count:
        return None
    return _risk(
        signal,
        RiskType.GPU_EXHAUSTION,
        Severity.WARNING,
        f"All {count:.0f} GPUs allocated - no capacity",
        metric=f"{allocated:.0f}/{count:.0f} GPUs",
        reason_detailed=(
            f"All {count:.0f} GPUs on this node are allocated. New GPU workloads "
            "will not schedule here until capacity is freed or added."
        ),
    )


def node_offline_rule(signal: RiskSignal, cfg: ThresholdConfig) -> PredictedRisk | None:
    reason = signal.reason or "NotReady"
    return _risk(
        signal,
        RiskType.NODE_OFFLINE,
        Severity.CRITICAL,
        f"Node {reason}",
        metric=reason,
        reason_detailed=signal.attributes.get("root_cause"),
    )


def node_pressure_rule(signal: RiskSignal, cfg: ThresholdConfig) -> PredictedRisk | None:
    return _risk(
        signal,
        RiskType.NODE_PRESSURE,
        Severity.WARNING,
        f"Node under pressure: {signal.reason or 'unknown condition'}",
    )


def deployment_degraded_rule(signal: RiskSignal, cfg: ThresholdConfig) -> PredictedRisk | None:
    unavailable, replicas = signal.metric_value, signal.capacity
    if unavailable is None or unavailable <= 0:
        return None

    no_ready = replicas is not None and unavailable >= replicas
    return _risk(
        signal,
        RiskType.DEPLOYMENT_DEGRADED,
        Severity.CRITICAL if no_ready else Severity.WARNING,
        f"{unavailable:.0f} replicas unavailable",
        metric=signal.reason,
    )


def security_rule(signal: RiskSignal, cfg: ThresholdConfig) -> PredictedRisk | None:
    if signal.attributes.get("severity") not in SECURITY_CRITICAL_LEVELS:
        return None
    return _risk(
        signal,
        RiskType.SECURITY,
        Severity.CRITICAL,
        signal.reason or "Security issue",
    )


DEFAULT_RULES: dict[RiskKind, Rule] = {
    RiskKind.POD_RESTART: pod_crash_rule,
    RiskKind.RESOURCE_EXHAUSTION: resource_exhaustion_rule,
    RiskKind.GPU_EXHAUSTION: gpu_allocation_rule,
    RiskKind.NODE_OFFLINE: node_offline_rule,
    RiskKind.NODE_PRESSURE: node_pressure_rule,
    RiskKind.DEPLOYMENT_DEGRADED: deployment_degraded_rule,
    RiskKind.SECURITY: security_rule,
}


class HeuristicEvaluator:
    """Applies one rule per signal kind and de-duplicates within each pass."""

    def __init__(self, rules: dict[RiskKind, Rule] | None = None) -> None:
        self.rules = dict(DEFAULT_RULES if rules is None else rules)
        self.logger = logger.bind(component="heuristic_evaluator")

    def evaluate(self, signals: Iterable[RiskSignal], cfg: ThresholdConfig) -> list[PredictedRisk]:
        passes: dict[RiskKind, dict[RiskKey, PredictedRisk]] = {}

        for signal in signals:
            rule = self.rules.get(signal.kind)
            if rule is None:
                continue
            risk = rule(signal, cfg)
            if risk is None:
                continue

            seen = passes.setdefault(signal.kind, {})
            existing = seen.get(risk.key)
            # Same key within one pass: keep the more severe one
            if existing is None or risk.severity.rank > existing.severity.rank:
                seen[risk.key] = risk

        risks = [risk for seen in passes.values() for risk in seen.values()]
        self.logger.debug("heuristics_evaluated", risk_count=len(risks))
        return risks


_default_evaluator = HeuristicEvaluator()


def evaluate(signals: Iterable[RiskSignal], cfg: ThresholdConfig) -> list[PredictedRisk]:
    """Evaluate signals with the default rule set."""
    return _default_evaluator.evaluate(signals, cfg)
