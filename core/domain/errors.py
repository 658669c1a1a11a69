"""
Error taxonomy for the prediction engine.

Only PersistenceError, RecommendationNotFound, InvalidTransition and
AnalysisInProgress ever reach callers. Collector and provider failures are
expected at runtime: they are logged and degrade the cycle instead of
propagating. Invalid threshold values are clamped, never rejected.
"""


class PredictionEngineError(Exception):
    """Base class for engine errors."""


class CollectorUnavailable(PredictionEngineError):
    """A telemetry source failed; its signal kinds are absent for the cycle."""

    def __init__(self, source: str, message: str = "") -> None:
        self.source = source
        super().__init__(message or f"Telemetry source {source} is unavailable")


class ProviderError(PredictionEngineError):
    """An AI provider call failed or returned an unusable answer."""

    def __init__(self, provider: str, message: str = "") -> None:
        self.provider = provider
        super().__init__(message or f"AI provider {provider} failed")


class PersistenceError(PredictionEngineError):
    """Recommendation state or feedback could not be written or read."""


class RecommendationNotFound(PredictionEngineError, KeyError):
    def __init__(self, recommendation_id: str) -> None:
        self.recommendation_id = recommendation_id
        super().__init__(f"Unknown recommendation id: {recommendation_id}")

    def __str__(self) -> str:
        return str(self.args[0])


class InvalidTransition(PredictionEngineError, ValueError):
    def __init__(self, recommendation_id: str, current: str, action: str) -> None:
        self.recommendation_id = recommendation_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} recommendation {recommendation_id} in state {current}")


class AnalysisInProgress(PredictionEngineError):
    """A manual analysis was requested while another one is still running."""
