"""
Core services for the prediction engine.

This package contains the telemetry collection, evaluation, AI analysis,
ranking and recommendation lifecycle services, plus the engine that wires
them together.
"""

from .ai_analysis import AIAnalysisAdapter, AnalysisProvider, ProviderResults, PydanticAIProvider
from .consensus import ConsensusScorer
from .engine import PeriodicTask, PredictionEngine
from .feedback import FeedbackTracker
from .heuristics import HeuristicEvaluator
from .ranking import priority_key, rank
from .recommendations import RecommendationManager
from .snapshot_cache import SnapshotCache
from .telemetry_collector import Result, TelemetryCollector, TelemetrySource

__all__ = [
    "AIAnalysisAdapter",
    "AnalysisProvider",
    "ConsensusScorer",
    "FeedbackTracker",
    "HeuristicEvaluator",
    "PeriodicTask",
    "PredictionEngine",
    "ProviderResults",
    "PydanticAIProvider",
    "RecommendationManager",
    "Result",
    "SnapshotCache",
    "TelemetryCollector",
    "TelemetrySource",
    "priority_key",
    "rank",
]
