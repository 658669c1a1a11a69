"""
Complete system check demonstrating the full prediction pipeline.

This script checks:
1. Configuration loading and validation
2. Telemetry collection from a simulated fleet
3. Heuristic evaluation, ranking and the recommendation lifecycle
4. AI analysis (only when a provider key is configured)
5. Fail-soft behavior when every collector is down

Run with: uv run python system_check.py
"""

import asyncio
import tempfile
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.kubernetes.normalizer import normalize
from adapters.kubernetes.sources import SimulatedClusterSource
from core.config import get_config, print_config_summary, validate_config
from core.domain.models import Recommendation, Severity
from core.services.engine import PredictionEngine
from core.services.telemetry_collector import TelemetryCollector
from core.storage import InMemoryConfigStore, InMemoryStateStore, JsonStateStore

console = Console()


def build_engine(source: SimulatedClusterSource) -> PredictionEngine:
    collector = TelemetryCollector()
    collector.add_source(source)
    return PredictionEngine(collector, InMemoryConfigStore(), InMemoryStateStore())


def recommendations_table(title: str, recommendations: list[Recommendation]) -> Table:
    table = Table(title=title)
    table.add_column("Severity", style="bold")
    table.add_column("Type", style="cyan")
    table.add_column("Resource", style="white")
    table.add_column("Cluster", style="magenta")
    table.add_column("Reason", style="white")
    table.add_column("Source", style="green")

    for rec in recommendations:
        style = "red" if rec.severity is Severity.CRITICAL else "yellow"
        table.add_row(
            f"[{style}]{rec.severity.value}[/{style}]",
            rec.type,
            rec.name,
            rec.cluster or "-",
            rec.reason,
            rec.source,
        )
    return table


async def check_configuration() -> bool:
    """Check configuration loading."""

    console.print(Panel("Checking Configuration", style="blue"))

    try:
        validate_config()
        print_config_summary()
        console.print("Configuration loaded successfully", style="green")
        return True

    except Exception as e:
        console.print(f"Configuration check failed: {e}", style="red")
        return False


async def check_telemetry_collection() -> bool:
    """Check collection and normalization from a simulated fleet."""

    console.print(Panel("Checking Telemetry Collection", style="blue"))

    try:
        collector = TelemetryCollector()
        collector.add_source(SimulatedClusterSource("fleet-a", failure_rate=0.0, seed=11))
        collector.add_source(SimulatedClusterSource("fleet-b", ["edge-1"], failure_rate=0.0, seed=12))

        result = await collector.collect_once()
        if result.is_err():
            console.print(f"Collection failed: {result.unwrap_err()}", style="red")
            return False

        signals = normalize(result.unwrap())
        counts: dict[str, int] = {}
        for signal in signals:
            counts[signal.kind.value] = counts.get(signal.kind.value, 0) + 1

        table = Table(title="Normalized Signals")
        table.add_column("Kind", style="cyan")
        table.add_column("Count", style="white")
        for kind, count in sorted(counts.items()):
            table.add_row(kind, str(count))
        console.print(table)
        return bool(signals)

    except Exception as e:
        console.print(f"Telemetry collection check failed: {e}", style="red")
        return False


async def check_recommendation_lifecycle() -> bool:
    """Check one evaluation cycle, a snooze and a feedback entry."""

    console.print(Panel("Checking Recommendation Lifecycle", style="blue"))

    try:
        engine = build_engine(SimulatedClusterSource("fleet", failure_rate=0.0, seed=3))

        pending = await engine.run_heuristic_cycle()
        console.print(recommendations_table("Top Recommendations", pending))
        if not pending:
            console.print("Fleet is healthy, nothing to act on", style="green")
            return True

        first = pending[0]
        engine.snooze(first.id)
        console.print(f"Snoozed {first.name}", style="yellow")

        after = engine.get_pending_recommendations()
        if first.id in [r.id for r in after]:
            console.print("Snoozed recommendation is still shown", style="red")
            return False

        engine.record_feedback(first.id, accurate=True)
        stats = engine.get_stats()
        console.print(
            f"Feedback recorded: {stats.accurate_count}/{stats.total_predictions} accurate",
            style="green",
        )
        return True

    except Exception as e:
        console.print(f"Lifecycle check failed: {e}", style="red")
        return False


async def check_ai_analysis() -> bool:
    """Check AI analysis when a provider is configured."""

    console.print(Panel("Checking AI Analysis", style="blue"))

    config = get_config()
    if not config.ai_provider.enabled_providers():
        console.print("No AI provider key configured, skipping", style="yellow")
        return True

    try:
        with tempfile.TemporaryDirectory() as data_dir:
            config = config.model_copy(
                update={"storage": config.storage.model_copy(update={"data_dir": Path(data_dir)})}
            )
            engine = PredictionEngine.from_config(
                [SimulatedClusterSource("fleet", failure_rate=0.0, seed=5)], config
            )
            console.print("Analyzing telemetry with AI...", style="yellow")
            results = await engine.trigger_analysis()

        if results is None:
            console.print("AI analysis did not run", style="red")
            return False

        table = Table(title="AI Analysis")
        table.add_column("Provider", style="cyan")
        table.add_column("Predictions", style="white")
        for provider_id in results.used_providers:
            table.add_row(provider_id, str(len(results.by_provider[provider_id])))
        for provider_id in results.failed_providers:
            table.add_row(provider_id, "[red]failed[/red]")
        console.print(table)
        console.print(recommendations_table("Ranked With AI", engine.get_pending_recommendations()))
        return bool(results.used_providers)

    except Exception as e:
        console.print(f"AI analysis check failed: {e}", style="red")
        return False


async def check_error_handling() -> bool:
    """Check that a dead collector keeps existing recommendations."""

    console.print(Panel("Checking Error Handling", style="blue"))

    try:
        with tempfile.TemporaryDirectory() as data_dir:
            store = JsonStateStore(data_dir)

            collector = TelemetryCollector()
            collector.add_source(SimulatedClusterSource("fleet", failure_rate=0.0, seed=3))
            healthy = PredictionEngine(collector, InMemoryConfigStore(), store)
            before = await healthy.run_heuristic_cycle()

            broken_collector = TelemetryCollector()
            broken_collector.add_source(SimulatedClusterSource("down", failure_rate=1.0))
            broken = PredictionEngine(broken_collector, InMemoryConfigStore(), store)
            broken.load_state()

            console.print("Running a cycle with every collector down...", style="yellow")
            after = await broken.run_heuristic_cycle()

        if [r.id for r in after] == [r.id for r in before]:
            console.print("Recommendations survived the outage", style="green")
            return True

        console.print("Recommendations changed during the outage", style="red")
        return False

    except Exception as e:
        console.print(f"Error handling check failed: {e}", style="red")
        return False


async def run_all_checks() -> None:
    """Run all system checks."""

    console.print(Panel("Predictive Cluster Health - System Checks", style="bold blue"))

    checks = [
        ("Configuration", check_configuration),
        ("Telemetry Collection", check_telemetry_collection),
        ("Recommendation Lifecycle", check_recommendation_lifecycle),
        ("AI Analysis", check_ai_analysis),
        ("Error Handling", check_error_handling),
    ]

    results = []

    for check_name, check_func in checks:
        console.print(f"\n{'=' * 60}")
        try:
            result = await check_func()
            results.append((check_name, result))
        except KeyboardInterrupt:
            console.print("\nChecks interrupted by user", style="yellow")
            break

    console.print(f"\n{'=' * 60}")
    console.print(Panel("Check Results Summary", style="bold"))

    summary_table = Table()
    summary_table.add_column("Check", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for check_name, result in results:
        if result:
            summary_table.add_row(check_name, "[green]PASSED[/green]")
            passed += 1
        else:
            summary_table.add_row(check_name, "[red]FAILED[/red]")

    console.print(summary_table)
    console.print(f"\nResults: {passed}/{len(results)} checks passed")


if __name__ == "__main__":
    try:
        asyncio.run(run_all_checks())
    except KeyboardInterrupt:
        console.print("\nChecks stopped by user", style="yellow")
