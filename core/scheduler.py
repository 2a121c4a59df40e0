"""
Execution Scheduler
===================

Fixed-interval tick driver. Each tick fetches one market snapshot, then
fans strategy executions out across every (account, strategy) pair and
joins them before the tick completes.

A tick that would exceed max_concurrent_executions is dropped, not
queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import numpy as np

from core.account_registry import AccountNotFoundError, AccountRegistry, RiskLimitExceededError
from core.events import TickEvent
from core.logger import clear_correlation_id, set_correlation_id
from core.market import TickSnapshot
from core.strategy_base import BaseStrategy, ExecutionResult, ReentrancyRejection, StrategyStateError

if TYPE_CHECKING:
    from core.event_bus import EventBus
    from core.venue import VenueClient


logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    """Configuration for the execution scheduler."""
    interval_seconds: float = 60.0
    max_concurrent_executions: int = 10
    execution_risk_cost: float = 100.0
    execution_timeout_seconds: float | None = None
    latency_window: int = 500


@dataclass
class ExecutionStats:
    """Engine-wide counters. Reset on restart."""
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    rejected_executions: int = 0
    skipped_ticks: int = 0
    risk_rejections: int = 0
    active_executions: int = 0
    last_execution_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_executions": self.total_executions,
            "successful_executions": self.successful_executions,
            "failed_executions": self.failed_executions,
            "rejected_executions": self.rejected_executions,
            "skipped_ticks": self.skipped_ticks,
            "risk_rejections": self.risk_rejections,
            "active_executions": self.active_executions,
            "last_execution_time": (
                self.last_execution_time.isoformat() if self.last_execution_time else None
            ),
        }


@dataclass
class TickReport:
    """Tally of one completed tick."""
    tick_id: int
    snapshot_markets: int = 0
    launched: int = 0
    succeeded: int = 0
    failed: int = 0
    rejected: int = 0
    risk_rejected: int = 0
    duration_ms: float = 0.0
    results: list[tuple[str, ExecutionResult]] = field(default_factory=list)


class ExecutionScheduler:
    """
    Drives periodic ticks over the account registry.

    The active-execution gauge counts ticks in flight; it is always
    decremented when a tick ends, whatever its outcome.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        venue: VenueClient,
        config: SchedulerConfig | None = None,
        event_bus: EventBus | None = None,
    ):
        self._registry = registry
        self._venue = venue
        self._config = config or SchedulerConfig()
        self._event_bus = event_bus
        self._stats = ExecutionStats()
        self._tick_counter = 0
        self._latest_snapshot: TickSnapshot | None = None
        self._tick_durations: deque[float] = deque(maxlen=self._config.latency_window)
        self._running = False
        self._loop_task: asyncio.Task | None = None
        self._tick_tasks: set[asyncio.Task] = set()

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def stats(self) -> ExecutionStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def latest_snapshot(self) -> TickSnapshot | None:
        return self._latest_snapshot

    async def fetch_snapshot(self, tick_id: int = 0) -> TickSnapshot:
        """Fetch markets once. A failed fetch yields an empty snapshot."""
        try:
            records = await self._venue.fetch_markets()
        except Exception as e:
            logger.warning(f"Market fetch failed, tick {tick_id} sees no opportunities: {e}")
            return TickSnapshot.empty(tick_id, error=str(e))

        snapshot = TickSnapshot.from_records(tick_id, list(records or []))
        self._latest_snapshot = snapshot
        return snapshot

    async def tick(self) -> TickReport | None:
        """
        Run one tick.

        Returns:
            The tick report, or None when the tick was skipped because
            max_concurrent_executions ticks are already in flight
        """
        if self._stats.active_executions >= self._config.max_concurrent_executions:
            self._stats.skipped_ticks += 1
            logger.warning(
                f"Skipping tick: {self._stats.active_executions} executions active "
                f"(max {self._config.max_concurrent_executions})"
            )
            await self._publish(TickEvent(
                source="scheduler",
                tick_id=self._tick_counter,
                skipped=True,
                reason="max concurrent executions reached",
            ))
            return None

        self._stats.active_executions += 1
        self._stats.total_executions += 1
        self._tick_counter += 1
        report = TickReport(tick_id=self._tick_counter)
        set_correlation_id(f"tick-{report.tick_id}")
        started = time.monotonic()
        reserved_risk: list[str] = []

        try:
            snapshot = await self.fetch_snapshot(report.tick_id)
            report.snapshot_markets = len(snapshot)

            launched: list[tuple[str, asyncio.Task]] = []
            for account, strategy in self._registry.execution_pairs():
                if not strategy.is_running:
                    continue

                if account is not None and self._config.execution_risk_cost > 0:
                    try:
                        await self._registry.check_risk_limit(
                            account.account_id, self._config.execution_risk_cost
                        )
                    except RiskLimitExceededError as e:
                        self._stats.risk_rejections += 1
                        report.risk_rejected += 1
                        logger.info(f"Skipping {strategy.name} this tick: {e}")
                        continue
                    except AccountNotFoundError:
                        continue
                    reserved_risk.append(account.account_id)

                launched.append((strategy.name, asyncio.create_task(self._execute(strategy, snapshot))))

            report.launched = len(launched)
            outcomes = await asyncio.gather(*(task for _, task in launched), return_exceptions=True)

            for (name, _), outcome in zip(launched, outcomes):
                self._tally(report, name, outcome)

        finally:
            for account_id in reserved_risk:
                await self._registry.release_risk(account_id, self._config.execution_risk_cost)
            self._stats.active_executions -= 1
            self._stats.last_execution_time = datetime.now(timezone.utc)
            report.duration_ms = (time.monotonic() - started) * 1000
            self._tick_durations.append(report.duration_ms)
            clear_correlation_id()

        logger.info(
            f"Tick {report.tick_id}: {report.launched} launched, {report.succeeded} ok, "
            f"{report.failed} failed, {report.rejected} rejected ({report.duration_ms:.0f}ms)"
        )
        await self._publish(TickEvent(
            source="scheduler",
            tick_id=report.tick_id,
            launched=report.launched,
            succeeded=report.succeeded,
            failed=report.failed,
            rejected=report.rejected,
            risk_rejected=report.risk_rejected,
            duration_ms=report.duration_ms,
        ))
        return report

    async def _execute(self, strategy: BaseStrategy, snapshot: TickSnapshot) -> ExecutionResult:
        timeout = self._config.execution_timeout_seconds
        if timeout is None:
            return await strategy.execute(snapshot)
        return await asyncio.wait_for(strategy.execute(snapshot), timeout=timeout)

    def _tally(self, report: TickReport, name: str, outcome: Any) -> None:
        if isinstance(outcome, ExecutionResult):
            report.results.append((name, outcome))
            if outcome.success:
                report.succeeded += 1
                self._stats.successful_executions += 1
            else:
                report.failed += 1
                self._stats.failed_executions += 1
        elif isinstance(outcome, (ReentrancyRejection, StrategyStateError)):
            report.rejected += 1
            self._stats.rejected_executions += 1
            logger.debug(f"Execution of {name} rejected: {outcome}")
        elif isinstance(outcome, asyncio.TimeoutError):
            report.failed += 1
            self._stats.failed_executions += 1
            logger.error(f"Execution of {name} timed out")
        else:
            report.failed += 1
            self._stats.failed_executions += 1
            logger.error(f"Execution of {name} raised: {outcome}")

    async def _guarded_tick(self) -> None:
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Tick failed: {e}", exc_info=True)

    async def run(self) -> None:
        """Launch a tick every interval until stop() is called."""
        self._running = True
        logger.info(
            f"Scheduler started (interval={self._config.interval_seconds}s, "
            f"max concurrent={self._config.max_concurrent_executions})"
        )
        try:
            while self._running:
                task = asyncio.create_task(self._guarded_tick())
                self._tick_tasks.add(task)
                task.add_done_callback(self._tick_tasks.discard)
                await asyncio.sleep(self._config.interval_seconds)
        finally:
            self._running = False

    def start(self) -> asyncio.Task:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self.run(), name="execution-scheduler")
        return self._loop_task

    async def stop(self) -> None:
        """Stop launching ticks and wait for the ones in flight."""
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        if self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks), return_exceptions=True)
        logger.info("Scheduler stopped")

    async def _publish(self, event: TickEvent) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(event)

    def get_metrics(self) -> dict[str, Any]:
        """Counters plus tick latency percentiles."""
        metrics: dict[str, Any] = {
            **self._stats.to_dict(),
            "ticks": self._tick_counter,
            "in_flight_ticks": len(self._tick_tasks),
        }
        if self._tick_durations:
            durations = np.array(self._tick_durations)
            metrics["tick_latency_ms"] = {
                "mean": round(float(durations.mean()), 2),
                "p50": round(float(np.percentile(durations, 50)), 2),
                "p95": round(float(np.percentile(durations, 95)), 2),
                "max": round(float(durations.max()), 2),
            }
        total = self._stats.successful_executions + self._stats.failed_executions
        metrics["success_rate"] = (
            round(self._stats.successful_executions / total, 4) if total else None
        )
        return metrics
