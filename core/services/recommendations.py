"""
Recommendation lifecycle: pending -> accepted | dismissed | snoozed.

The manager owns the map of recommendations by id. Both the periodic
re-evaluation (reconcile) and user actions go through the same re-entrant
lock, so a dismiss can never be undone by a concurrent cycle. The manager
performs no I/O; persistence is the caller's job (see snapshot/restore).
"""

import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

import structlog

from core.domain.errors import InvalidTransition, RecommendationNotFound
from core.domain.models import (
    PredictedRisk,
    Recommendation,
    RecommendationState,
    recommendation_id,
)
from core.services.ranking import priority_key

logger = structlog.get_logger(__name__)


def _expire_snooze(rec: Recommendation, now: datetime) -> Recommendation:
    if rec.snooze_expired(now):
        return rec.model_copy(update={"state": RecommendationState.PENDING, "snoozed_until": None})
    return rec


class RecommendationManager:
    """
    Tracks user-facing recommendations across evaluation cycles.

    A recommendation whose risk stops appearing is kept for
    `retention_cycles` missed cycles before it is dropped, so one flaky
    collector poll does not make items flicker. Once dropped, a reappearing
    risk starts over as a fresh pending recommendation under the same id.
    """

    def __init__(
        self,
        retention_cycles: int = 1,
        default_snooze: timedelta = timedelta(hours=1),
    ) -> None:
        if retention_cycles < 0:
            raise ValueError("retention_cycles must be >= 0")
        self.retention_cycles = retention_cycles
        self.default_snooze = default_snooze
        self.lock = threading.RLock()
        self._records: dict[str, Recommendation] = {}
        self.logger = logger.bind(component="recommendation_manager")

    def __len__(self) -> int:
        return len(self._records)

    def reconcile(
        self,
        ranked: Iterable[PredictedRisk],
        now: datetime,
        unobserved: Callable[[Recommendation], bool] | None = None,
    ) -> list[Recommendation]:
        """
        Match this cycle's risks against existing recommendations by id.

        Records for which `unobserved` returns True were not looked at this
        cycle (their collector was down), so they keep their state and do
        not count a missed cycle.
        """
        with self.lock:
            seen: set[str] = set()
            created = 0

            for risk in ranked:
                rid = recommendation_id(risk.type, risk.name, risk.cluster)
                if rid in seen:
                    continue
                seen.add(rid)

                existing = self._records.get(rid)
                if existing is None:
                    self._records[rid] = Recommendation.from_risk(risk, now)
                    created += 1
                else:
                    self._records[rid] = _expire_snooze(existing.with_risk(risk, now), now)

            removed = []
            held = 0
            for rid, rec in list(self._records.items()):
                if rid in seen:
                    continue
                if unobserved is not None and unobserved(rec):
                    self._records[rid] = _expire_snooze(rec, now)
                    held += 1
                    continue
                missed = rec.missed_cycles + 1
                if missed > self.retention_cycles:
                    del self._records[rid]
                    removed.append(rid)
                else:
                    self._records[rid] = _expire_snooze(
                        rec.model_copy(update={"missed_cycles": missed}), now
                    )

            self.logger.info(
                "recommendations_reconciled",
                active=len(seen),
                created=created,
                removed=len(removed),
                held=held,
                total=len(self._records),
            )
            return list(self._records.values())

    def pending(self, limit: int | None, now: datetime) -> list[Recommendation]:
        """Top-N pending recommendations. Dismissed and snoozed ones never take a slot."""
        with self.lock:
            self._expire_all(now)
            candidates = [
                rec for rec in self._records.values() if rec.state is RecommendationState.PENDING
            ]
        candidates.sort(key=priority_key)
        return candidates if limit is None else candidates[:limit]

    def get(self, rec_id: str) -> Recommendation:
        with self.lock:
            try:
                return self._records[rec_id]
            except KeyError:
                raise RecommendationNotFound(rec_id) from None

    def accept(self, rec_id: str, now: datetime) -> Recommendation:
        return self._transition(rec_id, "accept", now, {"state": RecommendationState.ACCEPTED})

    def dismiss(self, rec_id: str, now: datetime) -> Recommendation:
        return self._transition(rec_id, "dismiss", now, {"state": RecommendationState.DISMISSED})

    def snooze(
        self, rec_id: str, now: datetime, duration: timedelta | None = None
    ) -> Recommendation:
        duration = duration if duration is not None else self.default_snooze
        if duration <= timedelta(0):
            raise ValueError("snooze duration must be positive")
        return self._transition(
            rec_id,
            "snooze",
            now,
            {"state": RecommendationState.SNOOZED, "snoozed_until": now + duration},
        )

    def _transition(
        self, rec_id: str, action: str, now: datetime, update: dict
    ) -> Recommendation:
        with self.lock:
            rec = _expire_snooze(self.get(rec_id), now)
            if rec.state is not RecommendationState.PENDING:
                raise InvalidTransition(rec_id, rec.state.value, action)

            updated = rec.model_copy(update=update)
            self._records[rec_id] = updated

        self.logger.info(
            "recommendation_transitioned",
            recommendation_id=rec_id,
            action=action,
            state=updated.state.value,
            type=updated.type,
            name=updated.name,
        )
        return updated

    def _expire_all(self, now: datetime) -> None:
        for rid, rec in list(self._records.items()):
            self._records[rid] = _expire_snooze(rec, now)

    def snapshot(self) -> list[Recommendation]:
        with self.lock:
            return list(self._records.values())

    def restore(self, records: Iterable[Recommendation]) -> None:
        with self.lock:
            self._records = {rec.id: rec for rec in records}
