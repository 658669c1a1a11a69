"""
Prediction engine: the end-to-end pipeline behind the recommendations panel.

    collectors -> snapshot cache -> normalizer -> heuristics --+
                                                               +-> ranker -> lifecycle
    latest signals -> AI adapter -> consensus scorer ----------+

Two periodic tasks drive it: the heuristic cycle on every collector poll,
and the AI cycle on the coarser user-configured interval. Both tasks, and
every user action, are safe to interleave: the lifecycle manager serialises
all mutations on its lock.

Failure policy:
- Collector and provider failures degrade the cycle, they never raise
- A failed state write during a cycle is logged and retried next cycle
- A failed state write during a user action rolls the action back and
  raises PersistenceError to the caller
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel, to_snake

from adapters.kubernetes.domain import TelemetrySnapshot
from adapters.kubernetes.normalizer import normalize, observed
from core.clock import Clock, SystemClock
from core.config import AppConfig, EngineConfig, get_config
from core.domain.errors import AnalysisInProgress, PersistenceError
from core.domain.models import (
    ActionContext,
    FeedbackRecord,
    FeedbackStats,
    PredictedRisk,
    Recommendation,
    RiskSignal,
    ThresholdConfig,
)
from core.services.ai_analysis import AIAnalysisAdapter, ProviderResults, build_providers
from core.services.consensus import ConsensusScorer
from core.services.feedback import FeedbackTracker
from core.services.heuristics import HeuristicEvaluator
from core.services.ranking import rank
from core.services.recommendations import RecommendationManager
from core.services.snapshot_cache import SnapshotCache
from core.services.telemetry_collector import (
    Result,
    TelemetryCollector,
    TelemetryCollectorConfig,
    TelemetrySource,
)
from core.storage.json_store import ConfigStore, JsonStateStore, StateStore

logger = structlog.get_logger(__name__)

ActionRunner = Callable[[ActionContext], Awaitable[Any] | None]
Sleep = Callable[[float], Awaitable[Any]]


class AIStatus(BaseModel):
    """What the AI side of the engine last did."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    enabled: bool
    providers: list[str] = Field(default_factory=list)
    analysis_running: bool = False
    last_analyzed_at: datetime | None = None
    stale: bool = False
    telemetry_fetched_at: datetime | None = None
    telemetry_stale: bool = False
    used_providers: list[str] = Field(default_factory=list)
    failed_providers: list[str] = Field(default_factory=list)
    predictions: list[PredictedRisk] = Field(default_factory=list)


class PeriodicTask:
    """
    Runs an async job forever at a fixed (or dynamically computed) interval.

    The sleep function is injectable so tests can drive the loop without
    waiting on the wall clock.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[Any]],
        interval: float | Callable[[], float],
        *,
        initial_delay: float = 0.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.name = name
        self.job = job
        self._interval = interval
        self.initial_delay = initial_delay
        self.sleep = sleep
        self.runs = 0
        self._task: asyncio.Task | None = None
        self.logger = logger.bind(component="periodic_task", task=name)

    @property
    def interval(self) -> float:
        return self._interval() if callable(self._interval) else self._interval

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        self.logger.info("periodic_task_started", interval_seconds=self.interval)

    async def _run(self) -> None:
        if self.initial_delay > 0:
            await self.sleep(self.initial_delay)
        while True:
            try:
                await self.job()
            except Exception as e:
                self.logger.exception("periodic_task_failed", error=str(e))
            self.runs += 1
            await self.sleep(self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.logger.info("periodic_task_stopped", runs=self.runs)


class PredictionEngine:
    """
    Orchestrates collection, evaluation, ranking and the recommendation lifecycle.

    All collaborators are injected; `from_config` wires the production set.
    """

    def __init__(
        self,
        collector: TelemetryCollector,
        config_store: ConfigStore,
        state_store: StateStore,
        *,
        adapter: AIAnalysisAdapter | None = None,
        engine_config: EngineConfig | None = None,
        clock: Clock | None = None,
        action_runner: ActionRunner | None = None,
        cache: SnapshotCache[TelemetrySnapshot] | None = None,
        evaluator: HeuristicEvaluator | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = engine_config or EngineConfig()
        self.clock = clock or SystemClock()
        self.collector = collector
        self.config_store = config_store
        self.state_store = state_store
        self.adapter = adapter
        self.action_runner = action_runner
        self.sleep = sleep
        self.logger = logger.bind(component="prediction_engine")

        self.cache: SnapshotCache[TelemetrySnapshot] = cache or SnapshotCache(
            ttl_seconds=self.config.node_cache_ttl_seconds,
            clock=self.clock,
            max_stale_seconds=max(
                self.config.snapshot_max_stale_seconds, self.config.node_cache_ttl_seconds
            ),
        )
        self.evaluator = evaluator or HeuristicEvaluator()
        self.scorer = ConsensusScorer(
            per_provider_bonus=self.config.consensus_bonus_per_provider,
            max_bonus=self.config.consensus_max_bonus,
        )
        self.recommendations = RecommendationManager(
            retention_cycles=self.config.retention_cycles,
            default_snooze=timedelta(minutes=self.config.snooze_minutes),
        )
        self.feedback = FeedbackTracker()

        self._latest_snapshot: TelemetrySnapshot | None = None
        self._latest_signals: list[RiskSignal] | None = None
        self._ai_results: ProviderResults | None = None
        self._analysis_lock = asyncio.Lock()
        self._action_tasks: set[asyncio.Task] = set()
        self._analysis_tasks: set[asyncio.Task] = set()
        self._tasks: list[PeriodicTask] = []

        # Every refresh of the shared snapshot updates the signals the AI loop sees
        self.cache.subscribe(self._on_snapshot)

    @classmethod
    def from_config(
        cls,
        sources: Sequence[TelemetrySource],
        config: AppConfig | None = None,
        *,
        action_runner: ActionRunner | None = None,
        clock: Clock | None = None,
    ) -> "PredictionEngine":
        config = config or get_config()
        clock = clock or SystemClock()

        collector = TelemetryCollector(
            TelemetryCollectorConfig(timeout_seconds=config.engine.collection_timeout_seconds)
        )
        for source in sources:
            collector.add_source(source)

        providers = build_providers(config.ai_provider)
        adapter = (
            AIAnalysisAdapter(
                providers,
                timeout_seconds=config.ai_provider.provider_timeout_seconds,
                context_item_limit=config.engine.context_item_limit,
                failure_threshold=config.engine.provider_failure_threshold,
                recovery_seconds=config.engine.provider_recovery_seconds,
                clock=clock,
            )
            if providers
            else None
        )

        store = JsonStateStore(config.storage.data_dir)
        return cls(
            collector,
            store,
            store,
            adapter=adapter,
            engine_config=config.engine,
            clock=clock,
            action_runner=action_runner,
        )

    # -- state ---------------------------------------------------------------

    def load_state(self) -> None:
        """Restore recommendations and feedback. Unreadable state starts empty."""
        try:
            self.recommendations.restore(self.state_store.load_recommendations())
            self.feedback.restore(self.state_store.load_feedback())
        except PersistenceError as e:
            self.logger.error("state_load_failed", error=str(e))
            return
        self.logger.info(
            "state_loaded",
            recommendations=len(self.recommendations),
            feedback=len(self.feedback),
        )

    def _save_recommendations_or_rollback(self, before: list[Recommendation]) -> None:
        try:
            self.state_store.save_recommendations(self.recommendations.snapshot())
        except PersistenceError:
            self.recommendations.restore(before)
            raise

    # -- telemetry -----------------------------------------------------------

    def _on_snapshot(self, snapshot: TelemetrySnapshot) -> None:
        self._latest_snapshot = snapshot
        self._latest_signals = normalize(snapshot)

    async def _collect(self) -> TelemetrySnapshot | None:
        """Snapshot for this cycle, or None when there is no telemetry at all."""
        result: Result[TelemetrySnapshot] = await self.cache.get(self.collector.collect_once)
        if result.is_err():
            self.logger.warning("telemetry_unavailable", error=str(result.unwrap_err()))
            return None
        snapshot = result.unwrap()
        if snapshot is not self._latest_snapshot:
            self._on_snapshot(snapshot)
        return snapshot

    async def _collect_signals(self) -> list[RiskSignal] | None:
        if await self._collect() is None:
            return None
        return self._latest_signals

    # -- cycles --------------------------------------------------------------

    def _ai_risks(
        self, heuristic: list[PredictedRisk], cfg: ThresholdConfig, now: datetime
    ) -> list[PredictedRisk]:
        results = self._ai_results
        if not cfg.ai_enabled or results is None:
            return []
        if results.is_stale(now, cfg.interval):
            self.logger.info("ai_results_stale", analyzed_at=results.analyzed_at.isoformat())
            return []

        # Threshold may have been raised since the analysis ran
        by_provider = {
            pid: [r for r in risks if r.confidence >= cfg.min_confidence]
            for pid, risks in results.by_provider.items()
        }
        return self.scorer.score(heuristic, by_provider, cfg.consensus_mode)

    async def run_heuristic_cycle(self) -> list[Recommendation]:
        """
        One evaluation cycle. Never raises for collector, rule or storage
        failures; the worst case is "no new recommendations this cycle".
        """
        try:
            cfg = self.config_store.load_thresholds()
            snapshot = await self._collect()
            if snapshot is None:
                # Absence of telemetry is not an all-clear: keep current state
                return self.get_pending_recommendations()

            signals = self._latest_signals or []
            now = self.clock.now()
            heuristic = self.evaluator.evaluate(signals, cfg)
            ai = self._ai_risks(heuristic, cfg, now)
            ranked = rank(heuristic, ai, None)

            def unobserved(rec: Recommendation) -> bool:
                return not observed(snapshot, rec.type, rec.cluster)

            with self.recommendations.lock:
                self.recommendations.reconcile(ranked, now, unobserved=unobserved)
                try:
                    self.state_store.save_recommendations(self.recommendations.snapshot())
                except PersistenceError as e:
                    self.logger.error("cycle_state_save_failed", error=str(e))

            self.logger.info(
                "heuristic_cycle_completed",
                signals=len(signals),
                heuristic_risks=len(heuristic),
                ai_risks=len(ai),
                ranked=len(ranked),
                failed_sources=snapshot.failed_sources,
                telemetry_stale=self.cache.stale,
            )
        except Exception as e:
            self.logger.exception("heuristic_cycle_failed", error=str(e))
        return self.get_pending_recommendations()

    def _ai_available(self, cfg: ThresholdConfig) -> bool:
        return cfg.ai_enabled and self.adapter is not None and bool(self.adapter.providers)

    async def _analyze(self, cfg: ThresholdConfig) -> ProviderResults | None:
        if self.adapter is None:
            return None

        signals = self._latest_signals
        if signals is None:
            signals = await self._collect_signals()
        if signals is None:
            self.logger.warning("ai_cycle_skipped_no_telemetry")
            return None

        self._ai_results = await self.adapter.analyze(signals, cfg)
        return self._ai_results

    async def run_ai_cycle(self) -> ProviderResults | None:
        """Scheduled AI analysis. Skipped when disabled, unconfigured or already running."""
        try:
            cfg = self.config_store.load_thresholds()
            if not self._ai_available(cfg):
                self.logger.debug("ai_cycle_skipped", ai_enabled=cfg.ai_enabled)
                return None
            if self._analysis_lock.locked():
                self.logger.info("ai_cycle_skipped_in_progress")
                return None

            async with self._analysis_lock:
                results = await self._analyze(cfg)
        except Exception as e:
            self.logger.exception("ai_cycle_failed", error=str(e))
            return None

        if results is not None:
            await self.run_heuristic_cycle()
        return results

    async def _manual_analysis(self, cfg: ThresholdConfig) -> ProviderResults | None:
        async with self._analysis_lock:
            self.logger.info("manual_analysis_started")
            # Fresh telemetry for a user-requested analysis
            self.cache.invalidate()
            self._latest_snapshot = None
            self._latest_signals = None
            results = await self._analyze(cfg)

        if results is not None:
            await self.run_heuristic_cycle()
        return results

    async def trigger_analysis(self) -> ProviderResults | None:
        """
        Manual analysis. Raises AnalysisInProgress if one is already running.

        The analysis runs as a task owned by the engine, so close() cancels
        it together with the periodic loops.
        """
        if self._analysis_lock.locked() or self._analysis_tasks:
            raise AnalysisInProgress("An AI analysis is already running")

        cfg = self.config_store.load_thresholds()
        if not self._ai_available(cfg):
            self.logger.info("manual_analysis_unavailable", ai_enabled=cfg.ai_enabled)
            return None

        task = asyncio.create_task(self._manual_analysis(cfg))
        self._analysis_tasks.add(task)
        task.add_done_callback(self._analysis_tasks.discard)
        return await task

    # -- exposed operations --------------------------------------------------

    def get_pending_recommendations(self) -> list[Recommendation]:
        return self.recommendations.pending(self.config.display_limit, self.clock.now())

    def accept(self, rec_id: str) -> Recommendation:
        with self.recommendations.lock:
            before = self.recommendations.snapshot()
            rec = self.recommendations.accept(rec_id, self.clock.now())
            self._save_recommendations_or_rollback(before)

        self._dispatch_action(ActionContext.from_recommendation(rec))
        return rec

    def dismiss(self, rec_id: str) -> Recommendation:
        with self.recommendations.lock:
            before = self.recommendations.snapshot()
            rec = self.recommendations.dismiss(rec_id, self.clock.now())
            self._save_recommendations_or_rollback(before)
        return rec

    def snooze(self, rec_id: str, duration: timedelta | None = None) -> Recommendation:
        with self.recommendations.lock:
            before = self.recommendations.snapshot()
            rec = self.recommendations.snooze(rec_id, self.clock.now(), duration)
            self._save_recommendations_or_rollback(before)
        return rec

    def record_feedback(self, rec_id: str, accurate: bool) -> FeedbackRecord:
        rec = self.recommendations.get(rec_id)
        entry = self.feedback.record(
            rec.id, rec.feedback_provider, accurate, self.clock.now(), risk_type=rec.type
        )
        try:
            self.state_store.save_feedback(self.feedback.records())
        except PersistenceError:
            self.feedback.discard_last(entry)
            raise
        return entry

    def get_stats(self) -> FeedbackStats:
        return self.feedback.stats()

    def clear_feedback(self) -> None:
        removed = self.feedback.clear()
        try:
            self.state_store.save_feedback([])
        except PersistenceError:
            self.feedback.restore(removed)
            raise

    def get_settings(self) -> ThresholdConfig:
        return self.config_store.load_thresholds()

    def update_settings(self, values: dict[str, Any]) -> ThresholdConfig:
        """Merge partial settings (camelCase or snake_case keys); values are clamped."""
        current = self.config_store.load_thresholds().model_dump()
        updates = {to_snake(key): value for key, value in values.items()}
        merged = ThresholdConfig.model_validate({**current, **updates})
        self.config_store.save_thresholds(merged)
        self.logger.info("settings_updated", keys=sorted(values))
        return merged

    def ai_status(self) -> AIStatus:
        cfg = self.config_store.load_thresholds()
        results = self._ai_results
        status = AIStatus(
            enabled=self._ai_available(cfg),
            providers=self.adapter.provider_ids if self.adapter else [],
            analysis_running=self._analysis_lock.locked() or bool(self._analysis_tasks),
            telemetry_fetched_at=self.cache.fetched_at,
            telemetry_stale=self.cache.stale,
        )
        if results is None:
            return status
        return status.model_copy(
            update={
                "last_analyzed_at": results.analyzed_at,
                "stale": results.is_stale(self.clock.now(), cfg.interval),
                "used_providers": results.used_providers,
                "failed_providers": results.failed_providers,
                "predictions": [r for risks in results.by_provider.values() for r in risks],
            }
        )

    # -- action runner -------------------------------------------------------

    def _dispatch_action(self, context: ActionContext) -> None:
        """Hand the accepted recommendation to the runner without waiting for it."""
        if self.action_runner is None:
            return
        try:
            outcome = self.action_runner(context)
        except Exception as e:
            self.logger.error(
                "action_runner_failed", recommendation_id=context.recommendation_id, error=str(e)
            )
            return

        if not inspect.isawaitable(outcome):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.error(
                "action_runner_needs_event_loop", recommendation_id=context.recommendation_id
            )
            if inspect.iscoroutine(outcome):
                outcome.close()
            return

        task = loop.create_task(self._await_action(context, outcome))
        self._action_tasks.add(task)
        task.add_done_callback(self._action_tasks.discard)

    async def _await_action(self, context: ActionContext, outcome: Awaitable[Any]) -> None:
        try:
            await outcome
        except Exception as e:
            self.logger.error(
                "action_runner_failed", recommendation_id=context.recommendation_id, error=str(e)
            )
        else:
            self.logger.info("action_dispatched", recommendation_id=context.recommendation_id)

    # -- scheduling ----------------------------------------------------------

    def _ai_interval_seconds(self) -> float:
        return self.config_store.load_thresholds().interval.total_seconds()

    def start(self) -> None:
        """Load persisted state and start both periodic loops."""
        if self._tasks:
            return
        self.load_state()

        self._tasks = [
            PeriodicTask(
                "heuristic_cycle",
                self.run_heuristic_cycle,
                self.config.poll_interval_seconds,
                sleep=self.sleep,
            )
        ]
        if self.adapter is not None and self.adapter.providers:
            self._tasks.append(
                PeriodicTask(
                    "ai_cycle",
                    self.run_ai_cycle,
                    self._ai_interval_seconds,
                    initial_delay=self.config.initial_analysis_delay_seconds,
                    sleep=self.sleep,
                )
            )
        for task in self._tasks:
            task.start()
        self.logger.info("prediction_engine_started", tasks=[t.name for t in self._tasks])

    async def close(self) -> None:
        """Stop both loops and any manual analysis, cancelling in-flight provider calls."""
        for task in self._tasks:
            await task.stop()
        self._tasks = []

        analyses = list(self._analysis_tasks)
        for analysis in analyses:
            analysis.cancel()
        # Cancelled analyses never publish partial results
        await asyncio.gather(*analyses, return_exceptions=True)

        for action in list(self._action_tasks):
            action.cancel()
        self.logger.info("prediction_engine_stopped")
