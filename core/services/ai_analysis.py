"""
AI-powered risk prediction using Pydantic AI.

Key architectural decisions:
- One agent per provider: every configured model is an independent analyzer
- Type-safe AI responses: provider output is validated with Pydantic, items
  that fail validation are dropped instead of failing the whole answer
- Bounded context: only counts plus a capped sample of signals is sent
- Fail-soft: a provider that errors or times out contributes nothing for
  the cycle, and a provider that keeps failing is skipped by its circuit
  breaker for a while
- Structured concurrency: all providers run inside one asyncio.TaskGroup,
  so cancelling the cycle cancels every in-flight call and no partial
  result is ever returned
"""

import asyncio
import json
import time
from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any, Literal, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_ai import Agent

from core.clock import Clock, SystemClock
from core.config import AIProviderConfig
from core.domain.errors import ProviderError
from core.domain.models import (
    PredictedRisk,
    RiskSignal,
    RiskType,
    Severity,
    ThresholdConfig,
    provider_source,
)

logger = structlog.get_logger(__name__)

AI_CATEGORIES = ", ".join(t.value for t in RiskType)


class ProviderPrediction(BaseModel):
    """One prediction as returned on the wire by a provider."""

    category: str = Field(min_length=1, description="Risk type, e.g. pod-crash or resource-trend")
    severity: Literal["warning", "critical"]
    name: str = Field(min_length=1, description="Affected resource name")
    cluster: str | None = None
    namespace: str | None = None
    reason: str = Field(min_length=1, description="Short, human-readable summary")
    reason_detailed: str | None = Field(None, description="Explanation and suggested actions")
    metric: str | None = None
    confidence: float = Field(ge=0.0, le=100.0, description="Confidence percentage 0-100")

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, v: Any) -> Any:
        return v.strip().lower().replace("_", "-") if isinstance(v, str) else v

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class ProviderAnalysis(BaseModel):
    """Structured output every provider agent must produce."""

    predictions: list[ProviderPrediction] = Field(default_factory=list)

    @field_validator("predictions", mode="before")
    @classmethod
    def _drop_invalid(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return v
        kept = []
        for item in v:
            try:
                kept.append(ProviderPrediction.model_validate(item))
            except ValidationError as e:
                logger.debug("provider_prediction_dropped", errors=e.error_count())
        return kept


class AnalysisContext(BaseModel):
    """Summary sent alongside the signals: counts, clusters and a capped sample."""

    model_config = ConfigDict(frozen=True)

    total_signals: int
    counts_by_kind: dict[str, int]
    clusters: list[str]
    samples: list[RiskSignal]

    @classmethod
    def from_signals(cls, signals: Sequence[RiskSignal], limit: int = 20) -> "AnalysisContext":
        counts = Counter(s.kind.value for s in signals)
        clusters = sorted({s.cluster for s in signals if s.cluster})
        return cls(
            total_signals=len(signals),
            counts_by_kind=dict(sorted(counts.items())),
            clusters=clusters,
            samples=list(signals[:limit]),
        )


class AnalysisProvider(Protocol):
    """An external analyzer. Returns provider-scoped risks with confidence in [0, 1]."""

    provider_id: str

    async def analyze(
        self, signals: Sequence[RiskSignal], context: AnalysisContext
    ) -> list[PredictedRisk]: ...


class AIAnalysisConfig(BaseModel):
    """Configuration for one provider agent with smart defaults."""

    model_name: str = "openai:gpt-4o-mini"
    max_tokens: int = Field(default=2000, gt=100)
    temperature: float = Field(default=0.1, ge=0.0, le=1.0)  # Low for consistent analysis
    max_retries: int = Field(default=1, ge=0)


class PydanticAIProvider:
    """
    Provider backed by a pydantic-ai Agent with structured output.

    Design principles:
    - Single responsibility: predicts risks, never decides what is shown
    - Context-aware: sees totals and cluster names, not just the sample
    - Explainable: every prediction carries a reason
    """

    def __init__(self, provider_id: str, config: AIAnalysisConfig) -> None:
        self.provider_id = provider_id
        self.config = config
        self.logger = logger.bind(component="ai_provider", provider=provider_id)

        # Model is resolved on first run so a missing key only fails this provider
        self.agent = Agent(
            model=config.model_name,
            output_type=ProviderAnalysis,
            system_prompt=self._build_system_prompt(),
            model_settings={"temperature": config.temperature, "max_tokens": config.max_tokens},
            retries=config.max_retries,
            defer_model_check=True,
        )

    def _build_system_prompt(self) -> str:
        """Build system prompt that creates an expert Kubernetes SRE personality."""
        return f"""You are a Senior Site Reliability Engineer operating many Kubernetes
clusters. You predict failures BEFORE they cause outages.

You receive normalized risk signals (pod restarts, node state, GPU allocation,
cluster resource usage, degraded deployments, security findings).

Key principles:
1. Only report risks you are confident about (confidence 60-100)
2. Look for PATTERNS across signals, not just single values
3. Name the exact resource and cluster affected
4. Give ACTIONABLE reasons, not just "CPU is high"

Use one of these categories when it fits: {AI_CATEGORIES}.
Severity is "critical" only when failure is imminent, otherwise "warning".
If nothing is at risk, return an empty predictions list."""

    def build_user_prompt(self, context: AnalysisContext) -> str:
        """Build the analysis prompt. Only the capped sample is embedded."""
        samples = [
            s.model_dump(by_alias=True, exclude_none=True, exclude_defaults=True, mode="json")
            for s in context.samples
        ]
        counts = "\n".join(f"- {kind}: {count}" for kind, count in context.counts_by_kind.items())

        return f"""Analyze this cluster telemetry for upcoming failures.

TOTAL SIGNALS: {context.total_signals}
CLUSTERS: {", ".join(context.clusters) or "unknown"}

SIGNAL COUNTS:
{counts or "No signals"}

SAMPLE SIGNALS ({len(samples)} of {context.total_signals}):
{json.dumps(samples, indent=2)}

Return predictions with category, severity, name, cluster, namespace, reason,
reason_detailed and confidence (60-100)."""

    def _to_risk(self, prediction: ProviderPrediction) -> PredictedRisk | None:
        try:
            return PredictedRisk(
                type=prediction.category,
                severity=Severity(prediction.severity),
                name=prediction.name,
                cluster=prediction.cluster,
                namespace=prediction.namespace,
                reason=prediction.reason,
                reason_detailed=prediction.reason_detailed,
                metric=prediction.metric,
                confidence=prediction.confidence / 100,
                source=provider_source(self.provider_id),
            )
        except ValidationError as e:
            self.logger.debug("provider_prediction_invalid", errors=e.error_count())
            return None

    async def analyze(
        self, signals: Sequence[RiskSignal], context: AnalysisContext
    ) -> list[PredictedRisk]:
        start_time = time.perf_counter()
        try:
            result = await self.agent.run(self.build_user_prompt(context))
        except Exception as e:
            raise ProviderError(self.provider_id, str(e)) from e

        analysis: ProviderAnalysis = result.output
        risks = [r for r in (self._to_risk(p) for p in analysis.predictions) if r is not None]

        self.logger.info(
            "provider_analysis_completed",
            predictions=len(risks),
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )
        return risks


class CircuitBreakerState:
    """Simple circuit breaker for provider calls."""

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: float = 300.0,
        clock: Clock | None = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock or SystemClock()
        self.failure_count = 0
        self.last_failure_time: datetime | None = None
        self.state = "closed"  # closed, open, half-open

    def can_execute(self) -> bool:
        """Check if operation can execute based on circuit breaker state."""
        if self.state == "open":
            if self.last_failure_time is not None:
                time_since_failure = self.clock.now() - self.last_failure_time
                if time_since_failure.total_seconds() >= self.recovery_timeout:
                    self.state = "half-open"
                    return True
            return False
        return True

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = "closed"

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self.clock.now()

        # A failed trial call reopens immediately
        if self.state == "half-open" or self.failure_count >= self.failure_threshold:
            self.state = "open"


class ProviderResults(BaseModel):
    """Outcome of one AI analysis cycle."""

    model_config = ConfigDict(frozen=True)

    by_provider: dict[str, list[PredictedRisk]] = Field(default_factory=dict)
    used_providers: list[str] = Field(default_factory=list)
    failed_providers: list[str] = Field(default_factory=list)
    analyzed_at: datetime

    @property
    def total_predictions(self) -> int:
        return sum(len(risks) for risks in self.by_provider.values())

    def is_stale(self, now: datetime, interval: timedelta) -> bool:
        return now - self.analyzed_at > 2 * interval


class AIAnalysisAdapter:
    """
    Runs every enabled provider concurrently and filters their output.

    The cycle result is assembled only after every provider has returned,
    failed or timed out.
    """

    def __init__(
        self,
        providers: Iterable[AnalysisProvider],
        *,
        timeout_seconds: float = 15.0,
        context_item_limit: int = 20,
        failure_threshold: int = 3,
        recovery_seconds: float = 300.0,
        clock: Clock | None = None,
    ) -> None:
        self.providers = list(providers)
        self.timeout_seconds = timeout_seconds
        self.context_item_limit = context_item_limit
        self.clock = clock or SystemClock()
        self.breakers = {
            p.provider_id: CircuitBreakerState(failure_threshold, recovery_seconds, self.clock)
            for p in self.providers
        }
        self.logger = logger.bind(component="ai_analysis_adapter")

    @property
    def provider_ids(self) -> list[str]:
        return sorted(p.provider_id for p in self.providers)

    async def _run_provider(
        self,
        provider: AnalysisProvider,
        signals: Sequence[RiskSignal],
        context: AnalysisContext,
    ) -> list[PredictedRisk] | None:
        """Returns None when the provider failed this cycle."""
        breaker = self.breakers[provider.provider_id]
        try:
            risks = await asyncio.wait_for(
                provider.analyze(signals, context), timeout=self.timeout_seconds
            )
        except TimeoutError:
            self.logger.warning(
                "provider_analysis_timeout",
                provider=provider.provider_id,
                timeout_seconds=self.timeout_seconds,
            )
            breaker.record_failure()
            return None
        except Exception as e:
            self.logger.error("provider_analysis_failed", provider=provider.provider_id, error=str(e))
            breaker.record_failure()
            return None

        breaker.record_success()
        source = provider_source(provider.provider_id)
        return [r if r.source == source else r.model_copy(update={"source": source}) for r in risks]

    async def analyze(self, signals: Sequence[RiskSignal], cfg: ThresholdConfig) -> ProviderResults:
        start_time = time.perf_counter()
        context = AnalysisContext.from_signals(signals, self.context_item_limit)

        runnable = []
        skipped = []
        for provider in self.providers:
            if self.breakers[provider.provider_id].can_execute():
                runnable.append(provider)
            else:
                skipped.append(provider.provider_id)
                self.logger.warning("provider_circuit_open", provider=provider.provider_id)

        async with asyncio.TaskGroup() as task_group:
            tasks = {
                provider.provider_id: task_group.create_task(
                    self._run_provider(provider, signals, context)
                )
                for provider in runnable
            }

        by_provider: dict[str, list[PredictedRisk]] = {}
        failed = list(skipped)
        for provider_id, task in tasks.items():
            risks = task.result()
            if risks is None:
                failed.append(provider_id)
                continue
            confident = [r for r in risks if r.confidence >= cfg.min_confidence]
            confident.sort(key=lambda r: -r.confidence)
            by_provider[provider_id] = confident[: cfg.max_predictions]

        results = ProviderResults(
            by_provider=by_provider,
            used_providers=sorted(by_provider),
            failed_providers=sorted(failed),
            analyzed_at=self.clock.now(),
        )
        self.logger.info(
            "ai_analysis_completed",
            used_providers=results.used_providers,
            failed_providers=results.failed_providers,
            predictions=results.total_predictions,
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )
        return results


def build_providers(config: AIProviderConfig) -> list[PydanticAIProvider]:
    """One PydanticAIProvider per provider that has a usable API key."""
    return [
        PydanticAIProvider(
            provider_id,
            AIAnalysisConfig(
                model_name=model_name,
                max_tokens=config.default_max_tokens,
                temperature=config.default_temperature,
                max_retries=config.default_max_retries,
            ),
        )
        for provider_id, model_name in config.enabled_providers().items()
    ]
