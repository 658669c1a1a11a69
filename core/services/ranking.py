"""
Deduplication and ranking of heuristic and AI risks.

Risks collapse on (type, name, cluster). On a collision the more severe
entry wins; equal severity keeps the higher effective confidence (heuristic
risks count as 1.0); a full tie keeps the entry seen first, and heuristics
are always seen before AI risks.

Output is ordered by a total key, so identical input always yields the same
order and equal-priority items do not shuffle between cycles.
"""

from collections.abc import Iterable

from core.domain.models import PredictedRisk, RiskKey


def priority_key(risk: PredictedRisk) -> tuple:
    """Sort key: severity desc, effective confidence desc, then stable tie-breakers."""
    return (
        -risk.severity.rank,
        -risk.effective_confidence,
        risk.name,
        risk.cluster or "",
        risk.type,
        risk.source,
    )


def _wins(candidate: PredictedRisk, incumbent: PredictedRisk) -> bool:
    if candidate.severity.rank != incumbent.severity.rank:
        return candidate.severity.rank > incumbent.severity.rank
    return candidate.effective_confidence > incumbent.effective_confidence


def dedupe(risks: Iterable[PredictedRisk]) -> list[PredictedRisk]:
    survivors: dict[RiskKey, PredictedRisk] = {}
    for risk in risks:
        incumbent = survivors.get(risk.key)
        if incumbent is None or _wins(risk, incumbent):
            survivors[risk.key] = risk
    return list(survivors.values())


def rank(
    heuristic: Iterable[PredictedRisk],
    ai: Iterable[PredictedRisk],
    limit: int | None,
) -> list[PredictedRisk]:
    """
    Merge, de-duplicate, sort and truncate.

    `limit=None` returns the full ordering; the lifecycle layer uses that so
    dismissed or snoozed recommendations never take a display slot.
    """
    if limit is not None and limit < 0:
        raise ValueError("limit must be >= 0")

    ranked = sorted(dedupe([*heuristic, *ai]), key=priority_key)
    return ranked if limit is None else ranked[:limit]
