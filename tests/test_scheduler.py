"""
Tests for Execution Scheduler
=============================
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from core.events import EventType
from core.market import MarketSnapshot
from core.scheduler import ExecutionScheduler, SchedulerConfig
from core.strategy_types import StrategyType
from core.venue import VenueFailure


async def start_all(registry):
    for strategy in registry.all_strategies():
        await strategy.initialize()
        await strategy.start()


class TestTick:
    """Test a single tick."""

    @pytest.fixture
    def registry(self, recording_registry):
        for account_id in ("a", "b"):
            recording_registry.register(account_id)
            recording_registry.bind_strategy(account_id, StrategyType.SETTLEMENT_CLAIM)
            recording_registry.bind_strategy(account_id, StrategyType.HOURLY_ARBITRAGE)
        return recording_registry

    @pytest.fixture
    def scheduler(self, registry, paper_venue, event_bus):
        config = SchedulerConfig(interval_seconds=0.01, max_concurrent_executions=1, execution_risk_cost=10.0)
        return ExecutionScheduler(registry, paper_venue, config, event_bus)

    @pytest.mark.asyncio
    async def test_tick_runs_every_pair(self, scheduler, registry):
        await start_all(registry)

        report = await scheduler.tick()

        assert report.tick_id == 1
        assert report.launched == 3
        assert report.succeeded == 3
        assert sorted(name for name, _ in report.results) == [
            "hourly_arbitrage", "settlement_claim:a", "settlement_claim:b",
        ]
        assert scheduler.stats.total_executions == 1
        assert scheduler.stats.successful_executions == 3
        assert scheduler.stats.active_executions == 0

    @pytest.mark.asyncio
    async def test_one_snapshot_per_tick(self, scheduler, registry, paper_venue):
        end_time = datetime.now(timezone.utc) + timedelta(minutes=30)
        paper_venue.set_markets([MarketSnapshot("m1", end_time), MarketSnapshot("m2", end_time)])
        await start_all(registry)

        report = await scheduler.tick()

        strategies = registry.all_strategies()
        snapshots = {id(s.snapshots[-1]) for s in strategies}
        assert report.snapshot_markets == 2
        assert len(snapshots) == 1
        assert paper_venue.get_statistics()["fetches"] == 1
        assert scheduler.latest_snapshot is strategies[0].snapshots[-1]

    @pytest.mark.asyncio
    async def test_tick_at_cap_is_skipped(self, scheduler, registry, event_bus):
        """A tick beyond the concurrency cap is dropped without error."""
        await start_all(registry)
        blocking = registry.get("a").bindings[StrategyType.SETTLEMENT_CLAIM]
        blocking.gate = asyncio.Event()
        blocking.entered.clear()

        first = asyncio.create_task(scheduler.tick())
        await blocking.entered.wait()

        skipped = await scheduler.tick()

        assert skipped is None
        assert scheduler.stats.total_executions == 1
        assert scheduler.stats.skipped_ticks == 1

        blocking.gate.set()
        report = await first

        assert report.succeeded == 3
        assert scheduler.stats.active_executions == 0
        assert len(event_bus.get_event_history(EventType.TICK_SKIPPED)) == 1
        assert len(event_bus.get_event_history(EventType.TICK_COMPLETED)) == 1

    @pytest.mark.asyncio
    async def test_risk_rejection_skips_pair(self, scheduler, registry):
        await start_all(registry)
        registry.get("a").risk.total = 5.0

        report = await scheduler.tick()

        assert report.risk_rejected == 1
        assert report.launched == 2
        assert scheduler.stats.risk_rejections == 1

    @pytest.mark.asyncio
    async def test_execution_risk_released_after_tick(self, scheduler, registry):
        await start_all(registry)

        await scheduler.tick()

        assert registry.get("a").risk.used == 0.0
        assert registry.get("b").risk.used == 0.0

    @pytest.mark.asyncio
    async def test_failed_execution_counted(self, scheduler, registry):
        await start_all(registry)
        registry.get("b").bindings[StrategyType.SETTLEMENT_CLAIM].fail_on_execute = True

        report = await scheduler.tick()

        assert report.failed == 1
        assert report.succeeded == 2
        assert scheduler.stats.failed_executions == 1

    @pytest.mark.asyncio
    async def test_in_flight_strategy_rejected(self, scheduler, registry):
        await start_all(registry)
        shared = registry.shared_strategies()[StrategyType.HOURLY_ARBITRAGE]
        shared.gate = asyncio.Event()
        shared.entered.clear()

        manual = asyncio.create_task(shared.execute())
        await shared.entered.wait()
        report = await scheduler.tick()
        shared.gate.set()
        await manual

        assert report.rejected == 1
        assert report.succeeded == 2
        assert scheduler.stats.rejected_executions == 1

    @pytest.mark.asyncio
    async def test_stopped_strategies_not_launched(self, scheduler, registry):
        report = await scheduler.tick()

        assert report.launched == 0

    @pytest.mark.asyncio
    async def test_inactive_accounts_not_launched(self, scheduler, registry):
        await start_all(registry)
        registry.deactivate("a")

        report = await scheduler.tick()

        assert report.launched == 2

    @pytest.mark.asyncio
    async def test_fetch_failure_gives_empty_snapshot(self, scheduler, registry, paper_venue):
        await start_all(registry)
        paper_venue.enable_failure(VenueFailure.FETCH_ERROR, 1.0)

        report = await scheduler.tick()

        strategy = registry.get("a").bindings[StrategyType.SETTLEMENT_CLAIM]
        assert report.snapshot_markets == 0
        assert report.succeeded == 3
        assert strategy.snapshots[-1].fetch_error == "simulated market fetch failure"
        assert scheduler.latest_snapshot is None

    @pytest.mark.asyncio
    async def test_execution_timeout(self, registry, paper_venue):
        config = SchedulerConfig(execution_risk_cost=0, execution_timeout_seconds=0.01)
        scheduler = ExecutionScheduler(registry, paper_venue, config)
        await start_all(registry)
        slow = registry.get("a").bindings[StrategyType.SETTLEMENT_CLAIM]
        slow.gate = asyncio.Event()

        report = await scheduler.tick()

        assert report.failed == 1
        assert report.succeeded == 2

    @pytest.mark.asyncio
    async def test_metrics(self, scheduler, registry):
        await start_all(registry)
        await scheduler.tick()
        await scheduler.tick()

        metrics = scheduler.get_metrics()

        assert metrics["ticks"] == 2
        assert metrics["total_executions"] == 2
        assert metrics["success_rate"] == 1.0
        assert set(metrics["tick_latency_ms"]) == {"mean", "p50", "p95", "max"}

    def test_metrics_before_first_tick(self, scheduler):
        metrics = scheduler.get_metrics()

        assert "tick_latency_ms" not in metrics
        assert metrics["success_rate"] is None


class TestSchedulerLoop:
    """Test the periodic loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, recording_registry, paper_venue):
        recording_registry.register("a")
        recording_registry.bind_strategy("a", StrategyType.SETTLEMENT_CLAIM)
        await start_all(recording_registry)
        scheduler = ExecutionScheduler(
            recording_registry,
            paper_venue,
            SchedulerConfig(interval_seconds=0.01, execution_risk_cost=0),
        )

        task = scheduler.start()
        assert scheduler.start() is task
        await asyncio.sleep(0.1)
        await scheduler.stop()

        ticks = scheduler.stats.total_executions
        assert ticks >= 2
        assert not scheduler.is_running
        await asyncio.sleep(0.03)
        assert scheduler.stats.total_executions == ticks

    @pytest.mark.asyncio
    async def test_stop_without_start(self, recording_registry, paper_venue):
        scheduler = ExecutionScheduler(recording_registry, paper_venue)

        await scheduler.stop()

        assert not scheduler.is_running
