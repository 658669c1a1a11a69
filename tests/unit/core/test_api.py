"""
Tests for the HTTP surface.

Covers:
- camelCase payloads for recommendations, feedback and settings
- Error mapping: 404 unknown id, 409 invalid transition, 422 bad settings, 503 persistence
- 201 on feedback creation, 204 on feedback clear
- AI status and manual analysis without providers
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from core.api import create_app
from core.clock import ManualClock
from core.domain.errors import PersistenceError
from core.domain.models import PredictedRisk, Recommendation, Severity
from core.services.engine import PredictionEngine
from core.services.telemetry_collector import TelemetryCollector
from core.storage import InMemoryConfigStore, InMemoryStateStore


class FailingStateStore(InMemoryStateStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    def save_recommendations(self, records: list[Recommendation]) -> None:
        if self.fail:
            raise PersistenceError("disk full")
        super().save_recommendations(records)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def state_store() -> FailingStateStore:
    return FailingStateStore()


@pytest.fixture
def engine(clock: ManualClock, state_store: FailingStateStore) -> PredictionEngine:
    engine = PredictionEngine(TelemetryCollector(), InMemoryConfigStore(), state_store, clock=clock)
    risks = [
        PredictedRisk(
            type="pod-crash",
            severity=Severity.CRITICAL,
            name="api-1",
            cluster="prod",
            namespace="payments",
            reason="8 restarts - likely to crash",
            reason_detailed="Pod has restarted 8 times.",
            metric="8 restarts",
            confidence=1.0,
            source="heuristic",
        ),
        PredictedRisk(
            type="node-offline",
            severity=Severity.CRITICAL,
            name="node-3",
            cluster="prod",
            reason="Node NotReady",
            confidence=1.0,
            source="heuristic",
        ),
    ]
    engine.recommendations.reconcile(risks, clock.now())
    return engine


@pytest.fixture
def client(engine: PredictionEngine) -> TestClient:
    return TestClient(create_app(engine, manage_engine=False))


def first_id(client: TestClient) -> str:
    return client.get("/predictions/recommendations").json()[0]["id"]


class TestRecommendations:
    def test_list_uses_camel_case(self, client: TestClient) -> None:
        response = client.get("/predictions/recommendations")

        assert response.status_code == 200
        body = response.json()
        assert [r["name"] for r in body] == ["api-1", "node-3"]
        assert body[0]["reasonDetailed"] == "Pod has restarted 8 times."
        assert body[0]["state"] == "pending"
        assert "firstSeen" in body[0]

    def test_accept(self, client: TestClient) -> None:
        rec_id = first_id(client)

        response = client.post(f"/predictions/recommendations/{rec_id}/accept")

        assert response.status_code == 200
        assert response.json()["state"] == "accepted"
        assert rec_id not in [r["id"] for r in client.get("/predictions/recommendations").json()]

    def test_unknown_id_is_404(self, client: TestClient) -> None:
        response = client.post("/predictions/recommendations/nope/dismiss")

        assert response.status_code == 404
        assert "nope" in response.json()["detail"]

    def test_second_transition_is_409(self, client: TestClient) -> None:
        rec_id = first_id(client)

        assert client.post(f"/predictions/recommendations/{rec_id}/dismiss").status_code == 200
        assert client.post(f"/predictions/recommendations/{rec_id}/snooze").status_code == 409

    def test_snooze_with_duration(self, client: TestClient, clock: ManualClock) -> None:
        rec_id = first_id(client)

        response = client.post(f"/predictions/recommendations/{rec_id}/snooze", json={"minutes": 5})

        assert response.status_code == 200
        body = response.json()
        assert body["state"] == "snoozed"
        assert body["snoozedUntil"].startswith("2025-01-01T00:05:00")

    def test_snooze_rejects_non_positive_minutes(self, client: TestClient) -> None:
        rec_id = first_id(client)

        response = client.post(f"/predictions/recommendations/{rec_id}/snooze", json={"minutes": 0})

        assert response.status_code == 422

    def test_persistence_failure_is_503(
        self, client: TestClient, state_store: FailingStateStore
    ) -> None:
        rec_id = first_id(client)
        state_store.fail = True

        response = client.post(f"/predictions/recommendations/{rec_id}/dismiss")

        assert response.status_code == 503
        assert rec_id in [r["id"] for r in client.get("/predictions/recommendations").json()]


class TestFeedback:
    def test_record_stats_and_clear(self, client: TestClient) -> None:
        rec_id = first_id(client)

        created = client.post(
            "/predictions/feedback", json={"recommendationId": rec_id, "accurate": True}
        )
        assert created.status_code == 201
        assert created.json()["provider"] == "heuristic"
        assert created.json()["riskType"] == "pod-crash"

        stats = client.get("/predictions/stats").json()
        assert stats["totalPredictions"] == 1
        assert stats["accuracyRate"] == 1.0
        assert stats["byProvider"]["heuristic"]["total"] == 1

        assert client.delete("/predictions/feedback").status_code == 204
        assert client.get("/predictions/stats").json()["totalPredictions"] == 0

    def test_feedback_for_unknown_recommendation(self, client: TestClient) -> None:
        response = client.post(
            "/predictions/feedback", json={"recommendationId": "nope", "accurate": False}
        )
        assert response.status_code == 404


class TestSettingsAndAI:
    def test_settings_round_trip(self, client: TestClient) -> None:
        assert client.get("/predictions/settings").json()["highRestartCount"] == 3

        response = client.put(
            "/predictions/settings", json={"highRestartCount": 4, "minConfidencePercent": 10}
        )

        assert response.status_code == 200
        assert response.json()["highRestartCount"] == 4
        assert response.json()["minConfidencePercent"] == 50
        assert client.get("/predictions/settings").json()["highRestartCount"] == 4

    def test_fractional_interval_is_rounded(self, client: TestClient) -> None:
        response = client.put("/predictions/settings", json={"intervalMinutes": 7.5})

        assert response.status_code == 200
        assert response.json()["intervalMinutes"] == 8

    @pytest.mark.parametrize("value", ["maybe", [True], {"on": True}])
    def test_invalid_flag_is_422(self, client: TestClient, value: object) -> None:
        before = client.get("/predictions/settings").json()

        response = client.put(
            "/predictions/settings", json={"consensusMode": value, "highRestartCount": 9}
        )

        assert response.status_code == 422
        assert len(response.json()["detail"]) == 1
        assert client.get("/predictions/settings").json() == before

    def test_ai_status_without_providers(self, client: TestClient) -> None:
        body = client.get("/predictions/ai").json()

        assert body["enabled"] is False
        assert body["providers"] == []
        assert body["analysisRunning"] is False

    def test_analyze_without_providers(self, client: TestClient) -> None:
        response = client.post("/predictions/analyze")

        assert response.status_code == 200
        assert response.json()["started"] is False
