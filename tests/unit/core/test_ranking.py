"""
Tests for deduplication and ranking.

Property-based tests cover the ordering guarantees; example tests cover
the collision rules between heuristic and AI risks.
"""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from core.domain.models import PredictedRisk, Severity
from core.services.ranking import dedupe, priority_key, rank

risks_strategy = st.lists(
    st.builds(
        PredictedRisk,
        type=st.sampled_from(["pod-crash", "node-offline", "resource-exhaustion"]),
        severity=st.sampled_from(list(Severity)),
        name=st.sampled_from(["api", "db", "cache", "node-1"]),
        cluster=st.sampled_from([None, "prod", "staging"]),
        reason=st.just("reason"),
        confidence=st.floats(min_value=0.0, max_value=1.0),
        source=st.sampled_from(["heuristic", "consensus", "provider:openai", "provider:claude"]),
    ),
    max_size=30,
)


def make(source: str, severity: Severity, confidence: float = 1.0, name: str = "api") -> PredictedRisk:
    return PredictedRisk(
        type="pod-crash",
        severity=severity,
        name=name,
        cluster="prod",
        reason=f"from {source}",
        confidence=confidence,
        source=source,
    )


class TestRankProperties:
    @given(risks=risks_strategy, limit=st.integers(min_value=0, max_value=10))
    def test_length_never_exceeds_limit(self, risks: list[PredictedRisk], limit: int) -> None:
        assert len(rank(risks, [], limit)) <= limit

    @given(risks=risks_strategy)
    def test_output_is_sorted_and_unique(self, risks: list[PredictedRisk]) -> None:
        ranked = rank(risks, [], None)

        keys = [priority_key(r) for r in ranked]
        assert keys == sorted(keys)
        assert len({r.key for r in ranked}) == len(ranked)

    @given(risks=risks_strategy)
    def test_ranking_is_idempotent(self, risks: list[PredictedRisk]) -> None:
        once = rank(risks, [], None)
        assert rank(once, [], None) == once

    @given(risks=risks_strategy)
    def test_critical_always_before_warning(self, risks: list[PredictedRisk]) -> None:
        severities = [r.severity for r in rank(risks, [], None)]
        if Severity.WARNING in severities:
            first_warning = severities.index(Severity.WARNING)
            assert Severity.CRITICAL not in severities[first_warning:]


class TestCollisions:
    def test_more_severe_ai_risk_replaces_heuristic(self) -> None:
        heuristic = [make("heuristic", Severity.WARNING)]
        ai = [make("provider:openai", Severity.CRITICAL, confidence=0.7)]

        ranked = rank(heuristic, ai, 5)

        assert len(ranked) == 1
        assert ranked[0].source == "provider:openai"

    def test_equal_severity_keeps_heuristic(self) -> None:
        heuristic = [make("heuristic", Severity.WARNING)]
        ai = [make("provider:openai", Severity.WARNING, confidence=0.99)]

        assert rank(heuristic, ai, 5)[0].source == "heuristic"

    def test_equal_severity_higher_confidence_wins(self) -> None:
        risks = [make("provider:a", Severity.WARNING, 0.7), make("provider:b", Severity.WARNING, 0.8)]

        assert dedupe(risks)[0].source == "provider:b"

    def test_heuristic_outranks_ai_of_same_severity(self) -> None:
        ranked = rank(
            [make("heuristic", Severity.WARNING, name="zeta")],
            [make("provider:openai", Severity.WARNING, 0.95, name="alpha")],
            None,
        )

        assert [r.name for r in ranked] == ["zeta", "alpha"]

    def test_negative_limit_rejected(self) -> None:
        with pytest.raises(ValueError):
            rank([], [], -1)

    def test_zero_limit_is_empty(self) -> None:
        assert rank([make("heuristic", Severity.CRITICAL)], [], 0) == []
