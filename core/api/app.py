"""
JSON-over-HTTP surface for the prediction engine.

Field names on the wire are camelCase, matching the persisted state files.
Error mapping:
    RecommendationNotFound              -> 404
    InvalidTransition, AnalysisInProgress -> 409
    PersistenceError                    -> 503
    ValidationError (settings values)   -> 422
"""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from adapters.kubernetes.sources import SimulatedClusterSource, SnapshotFileSource
from core.config import configure_logging, get_config
from core.domain.errors import (
    AnalysisInProgress,
    InvalidTransition,
    PersistenceError,
    RecommendationNotFound,
)
from core.domain.models import FeedbackRecord, FeedbackStats, Recommendation, ThresholdConfig
from core.services.engine import AIStatus, PredictionEngine

logger = structlog.get_logger(__name__)

_REQUEST_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SnoozeRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    minutes: float | None = Field(None, gt=0, description="Snooze duration; default from config")


class FeedbackRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    recommendation_id: str = Field(min_length=1)
    accurate: bool


class AnalyzeResponse(BaseModel):
    model_config = _REQUEST_CONFIG

    started: bool
    status: AIStatus


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app(
    engine: PredictionEngine,
    *,
    allowed_origins: list[str] | None = None,
    manage_engine: bool = True,
) -> FastAPI:
    """Build the app. With manage_engine the engine's loops follow the app lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_engine:
            engine.start()
        try:
            yield
        finally:
            if manage_engine:
                await engine.close()

    app = FastAPI(title="Predictive Cluster Health", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine

    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(RecommendationNotFound)
    async def not_found_handler(request: Request, exc: RecommendationNotFound) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(InvalidTransition)
    async def invalid_transition_handler(request: Request, exc: InvalidTransition) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(AnalysisInProgress)
    async def in_progress_handler(request: Request, exc: AnalysisInProgress) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("api_persistence_error", path=request.url.path, error=str(exc))
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)

    @app.exception_handler(ValidationError)
    async def invalid_settings_handler(request: Request, exc: ValidationError) -> JSONResponse:
        logger.info("api_invalid_settings", path=request.url.path, errors=exc.error_count())
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": exc.errors(include_url=False, include_context=False, include_input=False)
            },
        )

    @app.get("/predictions/recommendations", response_model=list[Recommendation])
    async def list_recommendations() -> list[Recommendation]:
        return engine.get_pending_recommendations()

    @app.post("/predictions/recommendations/{rec_id}/accept", response_model=Recommendation)
    async def accept(rec_id: str) -> Recommendation:
        return engine.accept(rec_id)

    @app.post("/predictions/recommendations/{rec_id}/dismiss", response_model=Recommendation)
    async def dismiss(rec_id: str) -> Recommendation:
        return engine.dismiss(rec_id)

    @app.post("/predictions/recommendations/{rec_id}/snooze", response_model=Recommendation)
    async def snooze(rec_id: str, body: SnoozeRequest | None = None) -> Recommendation:
        duration = timedelta(minutes=body.minutes) if body and body.minutes else None
        return engine.snooze(rec_id, duration)

    @app.post(
        "/predictions/feedback",
        response_model=FeedbackRecord,
        status_code=status.HTTP_201_CREATED,
    )
    async def record_feedback(body: FeedbackRequest) -> FeedbackRecord:
        return engine.record_feedback(body.recommendation_id, body.accurate)

    @app.get("/predictions/stats", response_model=FeedbackStats)
    async def stats() -> FeedbackStats:
        return engine.get_stats()

    @app.delete("/predictions/feedback", status_code=status.HTTP_204_NO_CONTENT)
    async def clear_feedback() -> None:
        engine.clear_feedback()

    @app.get("/predictions/ai", response_model=AIStatus)
    async def ai_status() -> AIStatus:
        return engine.ai_status()

    @app.post("/predictions/analyze", response_model=AnalyzeResponse)
    async def analyze() -> AnalyzeResponse:
        results = await engine.trigger_analysis()
        return AnalyzeResponse(started=results is not None, status=engine.ai_status())

    @app.get("/predictions/settings", response_model=ThresholdConfig)
    async def get_settings() -> ThresholdConfig:
        return engine.get_settings()

    @app.put("/predictions/settings", response_model=ThresholdConfig)
    async def update_settings(values: dict[str, Any]) -> ThresholdConfig:
        return engine.update_settings(values)

    return app


def main() -> None:
    """Run the engine and API with uvicorn."""
    config = get_config()
    configure_logging(config.logging)

    snapshot_file = os.getenv("PREDICTION_SNAPSHOT_FILE")
    sources = (
        [SnapshotFileSource(snapshot_file)]
        if snapshot_file
        else [SimulatedClusterSource("simulated-fleet", failure_rate=0.0)]
    )
    engine = PredictionEngine.from_config(sources, config)
    app = create_app(engine, allowed_origins=config.api.allowed_origins)

    logger.info("api_starting", host=config.api.host, port=config.api.port)
    uvicorn.run(app, host=config.api.host, port=config.api.port)


if __name__ == "__main__":
    main()
