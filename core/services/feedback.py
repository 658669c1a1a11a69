"""Append-only feedback log and accuracy statistics."""

import threading
from collections.abc import Iterable
from datetime import datetime

import structlog

from core.domain.models import FeedbackRecord, FeedbackStats, ProviderAccuracy

logger = structlog.get_logger(__name__)


def _rate(accurate: int, total: int) -> float:
    return accurate / total if total else 0.0


class FeedbackTracker:
    """Records user verdicts per recommendation and aggregates them on read."""

    def __init__(self, records: Iterable[FeedbackRecord] = ()) -> None:
        self._records: list[FeedbackRecord] = list(records)
        self._lock = threading.Lock()
        self.logger = logger.bind(component="feedback_tracker")

    def __len__(self) -> int:
        return len(self._records)

    def record(
        self,
        recommendation_id: str,
        provider: str,
        accurate: bool,
        now: datetime,
        risk_type: str | None = None,
    ) -> FeedbackRecord:
        entry = FeedbackRecord(
            recommendation_id=recommendation_id,
            provider=provider,
            accurate=accurate,
            risk_type=risk_type,
            timestamp=now,
        )
        with self._lock:
            self._records.append(entry)
        self.logger.info(
            "feedback_recorded",
            recommendation_id=recommendation_id,
            provider=provider,
            accurate=accurate,
        )
        return entry

    def discard_last(self, entry: FeedbackRecord) -> None:
        """Undo the most recent record. Only used to roll back a failed write."""
        with self._lock:
            if self._records and self._records[-1] is entry:
                self._records.pop()

    def records(self) -> list[FeedbackRecord]:
        with self._lock:
            return list(self._records)

    def stats(self) -> FeedbackStats:
        with self._lock:
            records = list(self._records)

        per_provider: dict[str, list[int]] = {}
        accurate_count = 0
        for entry in records:
            counts = per_provider.setdefault(entry.provider, [0, 0])
            counts[1] += 1
            if entry.accurate:
                counts[0] += 1
                accurate_count += 1

        total = len(records)
        return FeedbackStats(
            total_predictions=total,
            accurate_count=accurate_count,
            inaccurate_count=total - accurate_count,
            accuracy_rate=_rate(accurate_count, total),
            by_provider={
                provider: ProviderAccuracy(
                    accurate=accurate, total=count, accuracy_rate=_rate(accurate, count)
                )
                for provider, (accurate, count) in sorted(per_provider.items())
            },
        )

    def clear(self) -> list[FeedbackRecord]:
        """Bulk clear. Returns what was removed so callers can roll back."""
        with self._lock:
            removed, self._records = self._records, []
        self.logger.info("feedback_cleared", removed=len(removed))
        return removed

    def restore(self, records: Iterable[FeedbackRecord]) -> None:
        with self._lock:
            self._records = list(records)
