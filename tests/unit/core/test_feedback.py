"""Tests for the feedback log and accuracy statistics."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from core.services.feedback import FeedbackTracker

NOW = datetime(2025, 1, 1, tzinfo=UTC)


@pytest.fixture
def tracker() -> FeedbackTracker:
    return FeedbackTracker()


def test_empty_stats(tracker: FeedbackTracker) -> None:
    stats = tracker.stats()

    assert stats.total_predictions == 0
    assert stats.accuracy_rate == 0.0
    assert stats.by_provider == {}


def test_accuracy_rate(tracker: FeedbackTracker) -> None:
    for accurate in (True, True, True, False):
        tracker.record("rec-1", "openai", accurate, NOW)

    stats = tracker.stats()

    assert stats.total_predictions == 4
    assert stats.accurate_count == 3
    assert stats.inaccurate_count == 1
    assert stats.accuracy_rate == pytest.approx(0.75)


def test_per_provider_breakdown(tracker: FeedbackTracker) -> None:
    tracker.record("rec-1", "openai", True, NOW, risk_type="pod-crash")
    tracker.record("rec-2", "heuristic", False, NOW)
    tracker.record("rec-3", "heuristic", True, NOW)

    stats = tracker.stats()

    assert list(stats.by_provider) == ["heuristic", "openai"]
    assert stats.by_provider["heuristic"].total == 2
    assert stats.by_provider["heuristic"].accuracy_rate == pytest.approx(0.5)
    assert stats.by_provider["openai"].accuracy_rate == 1.0


def test_records_are_append_only_snapshots(tracker: FeedbackTracker) -> None:
    entry = tracker.record("rec-1", "openai", True, NOW, risk_type="pod-crash")

    records = tracker.records()
    records.clear()

    assert tracker.records() == [entry]
    assert entry.risk_type == "pod-crash"
    assert entry.timestamp == NOW


def test_discard_last_only_removes_matching_entry(tracker: FeedbackTracker) -> None:
    first = tracker.record("rec-1", "openai", True, NOW)
    second = tracker.record("rec-2", "openai", False, NOW)

    tracker.discard_last(first)
    assert len(tracker) == 2

    tracker.discard_last(second)
    assert tracker.records() == [first]


def test_clear_returns_removed_records(tracker: FeedbackTracker) -> None:
    tracker.record("rec-1", "openai", True, NOW)

    removed = tracker.clear()

    assert len(removed) == 1
    assert tracker.stats().total_predictions == 0

    tracker.restore(removed)
    assert len(tracker) == 1
