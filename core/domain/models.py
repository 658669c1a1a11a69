"""
Domain models for predictive failure detection.

These models represent the core business concepts and are framework-agnostic.
Signals and risks are rebuilt on every evaluation cycle and are immutable;
recommendations are immutable snapshots too, the lifecycle manager swaps in
a new copy on every state change.

JSON field names are camelCase (resourceName, snoozedUntil, ...) so the same
models serve the HTTP surface and the on-disk state files.
"""

import hashlib
import math
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

HEURISTIC_SOURCE = "heuristic"
CONSENSUS_SOURCE = "consensus"
PROVIDER_SOURCE_PREFIX = "provider:"

# (type, name, cluster) identifies one underlying problem across sources
RiskKey = tuple[str, str, str]


def provider_source(provider_id: str) -> str:
    return f"{PROVIDER_SOURCE_PREFIX}{provider_id}"


class RiskKind(str, Enum):
    """Closed set of normalized telemetry facts."""

    POD_RESTART = "pod-restart"
    NODE_OFFLINE = "node-offline"
    NODE_PRESSURE = "node-pressure"
    GPU_EXHAUSTION = "gpu-exhaustion"
    RESOURCE_EXHAUSTION = "resource-exhaustion"
    SECURITY = "security"
    DEPLOYMENT_DEGRADED = "deployment-degraded"


class RiskType(str, Enum):
    """Known risk types. Providers may report categories outside this list."""

    POD_CRASH = "pod-crash"
    RESOURCE_EXHAUSTION = "resource-exhaustion"
    GPU_EXHAUSTION = "gpu-exhaustion"
    GPU_NODE_ANOMALY = "gpu-node-anomaly"
    NODE_OFFLINE = "node-offline"
    NODE_PRESSURE = "node-pressure"
    DEPLOYMENT_DEGRADED = "deployment-degraded"
    SECURITY = "security"
    # Categories produced by AI providers
    RESOURCE_TREND = "resource-trend"
    CAPACITY_RISK = "capacity-risk"
    ANOMALY = "anomaly"


class Severity(str, Enum):
    """Risk severity. Critical always outranks warning."""

    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return 2 if self is Severity.CRITICAL else 1


class RecommendationState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"
    SNOOZED = "snoozed"


_MODEL_CONFIG = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class RiskSignal(BaseModel):
    """One normalized telemetry fact, produced only by the signal normalizer."""

    model_config = _MODEL_CONFIG

    kind: RiskKind
    resource_name: str = Field(min_length=1)
    cluster: str | None = None
    namespace: str | None = None
    metric_value: float | None = None
    reason: str | None = None

    # Which resource a resource-exhaustion signal measures: cpu, memory, gpu_memory
    dimension: str | None = None
    # Upper bound the metric is measured against (GPU count, desired replicas)
    capacity: float | None = None
    attributes: dict[str, str] = Field(default_factory=dict)


class PredictedRisk(BaseModel):
    """A candidate problem from the heuristics, one provider, or provider consensus."""

    model_config = _MODEL_CONFIG

    type: str = Field(min_length=1)
    severity: Severity
    name: str = Field(min_length=1)
    cluster: str | None = None
    namespace: str | None = None
    reason: str
    reason_detailed: str | None = None
    metric: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    source: str
    providers: tuple[str, ...] = ()

    @field_validator("type", mode="before")
    @classmethod
    def _enum_to_value(cls, v: Any) -> Any:
        return v.value if isinstance(v, Enum) else v

    @field_validator("source")
    @classmethod
    def _validate_source(cls, v: str) -> str:
        if v in (HEURISTIC_SOURCE, CONSENSUS_SOURCE):
            return v
        if v.startswith(PROVIDER_SOURCE_PREFIX) and len(v) > len(PROVIDER_SOURCE_PREFIX):
            return v
        raise ValueError(f"source must be heuristic, consensus or provider:<id>, got {v!r}")

    @property
    def key(self) -> RiskKey:
        return (self.type, self.name, self.cluster or "")

    @property
    def is_heuristic(self) -> bool:
        return self.source == HEURISTIC_SOURCE

    @property
    def effective_confidence(self) -> float:
        """Confidence used for ranking; heuristic risks count as certain."""
        return 1.0 if self.is_heuristic else self.confidence

    @property
    def feedback_provider(self) -> str:
        """Name feedback on this risk is attributed to."""
        if self.source.startswith(PROVIDER_SOURCE_PREFIX):
            return self.source[len(PROVIDER_SOURCE_PREFIX) :]
        return self.source


def recommendation_id(risk_type: str, name: str, cluster: str | None) -> str:
    """Stable id for a risk identity. Confidence is deliberately left out."""
    raw = f"{risk_type}|{name}|{cluster or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class Recommendation(PredictedRisk):
    """A predicted risk promoted for user display, with interaction state."""

    id: str
    state: RecommendationState = RecommendationState.PENDING
    snoozed_until: datetime | None = None
    first_seen: datetime
    last_seen: datetime
    missed_cycles: int = Field(default=0, ge=0)

    @classmethod
    def from_risk(cls, risk: PredictedRisk, now: datetime) -> "Recommendation":
        return cls(
            **risk.model_dump(),
            id=recommendation_id(risk.type, risk.name, risk.cluster),
            first_seen=now,
            last_seen=now,
        )

    def with_risk(self, risk: PredictedRisk, now: datetime) -> "Recommendation":
        """Refresh the risk fields from this cycle, keeping interaction state."""
        return self.model_copy(update={**risk.model_dump(), "last_seen": now, "missed_cycles": 0})

    def snooze_expired(self, now: datetime) -> bool:
        return (
            self.state is RecommendationState.SNOOZED
            and self.snoozed_until is not None
            and now >= self.snoozed_until
        )

    def effective_state(self, now: datetime) -> RecommendationState:
        if self.snooze_expired(now):
            return RecommendationState.PENDING
        return self.state


def _clamp(value: Any, low: float, high: float | None = None, *, integral: bool = False) -> Any:
    """
    Clamp numeric input into [low, high]; non-numeric input is left to validation.

    With integral=True the clamped number is rounded to the nearest int.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return value
        value = int(number) if number.is_integer() else number
    if not isinstance(value, int | float) or math.isnan(value):
        return value
    if value < low:
        value = type(value)(low)
    if high is not None and value > high:
        value = type(value)(high)
    if integral and math.isfinite(value):
        value = round(value)
    return value


class ThresholdConfig(BaseModel):
    """
    User-tunable prediction settings.

    Out-of-range values are clamped to the documented range instead of being
    rejected, so a bad settings file never disables predictions.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    # Heuristic thresholds
    high_restart_count: int = Field(default=3, description="Restarts that trigger a pod-crash warning")
    restart_critical_mode: Literal["fixed", "multiple"] = Field(
        default="fixed",
        description="fixed: critical at critical_restart_count; multiple: at high_restart_count x multiplier",
    )
    critical_restart_count: int = Field(default=5, description="Restarts that make a pod-crash critical")
    critical_restart_multiplier: float = Field(default=2.0)
    cpu_pressure_percent: float = Field(default=80.0)
    memory_pressure_percent: float = Field(default=85.0)
    gpu_memory_pressure_percent: float = Field(default=90.0)

    # AI settings
    ai_enabled: bool = True
    interval_minutes: int = Field(default=10, description="Minutes between AI analyses")
    min_confidence_percent: int = Field(default=60, description="Provider output below this is dropped")
    max_predictions: int = Field(default=10, description="Max AI predictions kept per analysis")
    consensus_mode: bool = False

    @field_validator("high_restart_count", "critical_restart_count", mode="before")
    @classmethod
    def _clamp_restart_counts(cls, v: Any) -> Any:
        return _clamp(v, 1, integral=True)

    @field_validator("critical_restart_multiplier", mode="before")
    @classmethod
    def _clamp_multiplier(cls, v: Any) -> Any:
        return _clamp(v, 1.0, 10.0)

    @field_validator(
        "cpu_pressure_percent", "memory_pressure_percent", "gpu_memory_pressure_percent", mode="before"
    )
    @classmethod
    def _clamp_percent(cls, v: Any) -> Any:
        return _clamp(v, 1, 100)

    @field_validator("interval_minutes", mode="before")
    @classmethod
    def _clamp_interval(cls, v: Any) -> Any:
        return _clamp(v, 5, 30, integral=True)

    @field_validator("min_confidence_percent", mode="before")
    @classmethod
    def _clamp_min_confidence(cls, v: Any) -> Any:
        return _clamp(v, 50, 90, integral=True)

    @field_validator("max_predictions", mode="before")
    @classmethod
    def _clamp_max_predictions(cls, v: Any) -> Any:
        return _clamp(v, 1, 50, integral=True)

    def critical_restart_threshold(self) -> int:
        if self.restart_critical_mode == "multiple":
            return math.ceil(self.high_restart_count * self.critical_restart_multiplier)
        return self.critical_restart_count

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.interval_minutes)

    @property
    def min_confidence(self) -> float:
        return self.min_confidence_percent / 100


class FeedbackRecord(BaseModel):
    """One user verdict on a recommendation. Never edited after it is written."""

    model_config = _MODEL_CONFIG

    recommendation_id: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    accurate: bool
    risk_type: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ProviderAccuracy(BaseModel):
    model_config = _MODEL_CONFIG

    accurate: int = 0
    total: int = 0
    accuracy_rate: float = 0.0


class FeedbackStats(BaseModel):
    model_config = _MODEL_CONFIG

    total_predictions: int = 0
    accurate_count: int = 0
    inaccurate_count: int = 0
    accuracy_rate: float = 0.0
    by_provider: dict[str, ProviderAccuracy] = Field(default_factory=dict)


class ActionContext(BaseModel):
    """Payload handed to the external action runner when a recommendation is accepted."""

    model_config = _MODEL_CONFIG

    recommendation_id: str
    type: str
    severity: Severity
    name: str
    cluster: str | None = None
    namespace: str | None = None
    reason: str
    reason_detailed: str | None = None
    metric: str | None = None
    source: str
    summary: str

    @classmethod
    def from_recommendation(cls, rec: Recommendation) -> "ActionContext":
        location = f"{rec.namespace}/{rec.name}" if rec.namespace else rec.name
        where = f" in cluster {rec.cluster}" if rec.cluster else ""
        summary = (
            f"Investigate {rec.severity.value} {rec.type} risk on {location}{where}: {rec.reason}"
        )
        if rec.metric:
            summary += f" ({rec.metric})"
        return cls(
            recommendation_id=rec.id,
            type=rec.type,
            severity=rec.severity,
            name=rec.name,
            cluster=rec.cluster,
            namespace=rec.namespace,
            reason=rec.reason,
            reason_detailed=rec.reason_detailed,
            metric=rec.metric,
            source=rec.source,
            summary=summary,
        )
