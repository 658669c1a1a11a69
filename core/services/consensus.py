"""
Consensus scoring across AI providers.

When consensus mode is on, provider risks that share a (type, name, cluster)
key are merged into one "consensus" risk whose confidence is boosted by the
number of agreeing providers:

    confidence = min(1.0, max(member confidences) + bonus)
    bonus      = min(max_bonus, per_provider_bonus * (providers - 1))

Severity is decided by majority vote. A tie is settled by the heuristic
severity for the same key when there is one, otherwise by the more severe
value. Wording (reason, metric, namespace) comes from the most confident
member.

Heuristic risks are only consulted for tie-breaking; they are never merged
here (the ranker does that).
"""

from collections import Counter
from collections.abc import Iterable, Mapping, Sequence

import structlog

from core.domain.models import (
    CONSENSUS_SOURCE,
    PredictedRisk,
    RiskKey,
    Severity,
)

logger = structlog.get_logger(__name__)

DEFAULT_PER_PROVIDER_BONUS = 0.05
DEFAULT_MAX_BONUS = 0.15


def agreement_bonus(
    provider_count: int,
    per_provider_bonus: float = DEFAULT_PER_PROVIDER_BONUS,
    max_bonus: float = DEFAULT_MAX_BONUS,
) -> float:
    if provider_count < 2:
        return 0.0
    return min(max_bonus, per_provider_bonus * (provider_count - 1))


def _vote_severity(members: Sequence[PredictedRisk], heuristic: Severity | None) -> Severity:
    votes = Counter(m.severity for m in members)
    top = max(votes.values())
    leaders = [severity for severity, count in votes.items() if count == top]
    if len(leaders) == 1:
        return leaders[0]
    if heuristic is not None and heuristic in leaders:
        return heuristic
    return max(leaders, key=lambda s: s.rank)


def _best_per_provider(risks: Iterable[PredictedRisk]) -> dict[RiskKey, PredictedRisk]:
    """One risk per key for a single provider, keeping the most confident."""
    best: dict[RiskKey, PredictedRisk] = {}
    for risk in risks:
        current = best.get(risk.key)
        if current is None or risk.confidence > current.confidence:
            best[risk.key] = risk
    return best


class ConsensusScorer:
    """Merges per-provider outputs into the AI risk list handed to the ranker."""

    def __init__(
        self,
        per_provider_bonus: float = DEFAULT_PER_PROVIDER_BONUS,
        max_bonus: float = DEFAULT_MAX_BONUS,
    ) -> None:
        self.per_provider_bonus = per_provider_bonus
        self.max_bonus = max_bonus
        self.logger = logger.bind(component="consensus_scorer")

    def score(
        self,
        heuristic: Sequence[PredictedRisk],
        by_provider: Mapping[str, Sequence[PredictedRisk]],
        consensus_mode: bool,
    ) -> list[PredictedRisk]:
        provider_ids = sorted(by_provider)

        if not consensus_mode:
            return [risk for pid in provider_ids for risk in by_provider[pid]]

        # Heuristic severity per key; most severe if the heuristics disagree
        heuristic_severity: dict[RiskKey, Severity] = {}
        for risk in heuristic:
            current = heuristic_severity.get(risk.key)
            if current is None or risk.severity.rank > current.rank:
                heuristic_severity[risk.key] = risk.severity

        groups: dict[RiskKey, list[PredictedRisk]] = {}
        for pid in provider_ids:
            for key, risk in _best_per_provider(by_provider[pid]).items():
                groups.setdefault(key, []).append(risk)

        scored: list[PredictedRisk] = []
        merged_count = 0
        for key, members in groups.items():
            providers = sorted({m.feedback_provider for m in members})
            if len(providers) < 2:
                scored.extend(members)
                continue

            best = max(members, key=lambda m: m.confidence)
            bonus = agreement_bonus(len(providers), self.per_provider_bonus, self.max_bonus)
            scored.append(
                best.model_copy(
                    update={
                        "severity": _vote_severity(members, heuristic_severity.get(key)),
                        "confidence": min(1.0, best.confidence + bonus),
                        "source": CONSENSUS_SOURCE,
                        "providers": tuple(providers),
                    }
                )
            )
            merged_count += 1

        self.logger.debug(
            "consensus_scored",
            groups=len(groups),
            merged=merged_count,
            providers=provider_ids,
        )
        return scored


def score(
    heuristic: Sequence[PredictedRisk],
    by_provider: Mapping[str, Sequence[PredictedRisk]],
    consensus_mode: bool,
) -> list[PredictedRisk]:
    """Score with the default agreement bonus."""
    return ConsensusScorer().score(heuristic, by_provider, consensus_mode)
