"""
Pytest Configuration
====================

Shared fixtures for testing.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from core.account_registry import AccountRegistry
from core.config import AccountConfig, EngineConfig, LoggingConfig
from core.event_bus import EventBus
from core.market import MarketSnapshot, OutcomePrices
from core.scheduler import SchedulerConfig
from core.state_store import StateStoreConfig
from core.strategy_base import (
    BaseStrategy,
    ExecutionResult,
    ParameterSpec,
    StrategyConfig,
    StrategyContext,
)
from core.strategy_types import StrategyFactory, StrategyType
from core.venue import PaperVenue


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class RecordingStrategy(BaseStrategy):
    """
    Controllable strategy double.

    Set `gate` to an asyncio.Event to hold on_execute until it is set;
    `entered` is set as soon as on_execute starts.
    `init_gate` and `start_gate` hold on_initialize and on_start the same way.
    """

    PARAMETERS = {
        "threshold": ParameterSpec(float, 1.0, min_value=0.0, max_value=10.0),
        "window": ParameterSpec(int, 5, min_value=1),
        "verbose": ParameterSpec(bool, False),
    }

    def __init__(self, config, context):
        super().__init__(config, context)
        self.gate = None
        self.init_gate = None
        self.start_gate = None
        self.entered = asyncio.Event()
        self.fail_on: set[str] = set()
        self.fail_on_execute = False
        self.snapshots = []
        self.execute_calls = 0
        self.stop_calls = 0

    async def on_initialize(self):
        if self.init_gate is not None:
            await self.init_gate.wait()
        if "initialize" in self.fail_on:
            raise RuntimeError("initialize failed")

    async def on_start(self):
        if self.start_gate is not None:
            await self.start_gate.wait()
        if "start" in self.fail_on:
            raise RuntimeError("start failed")

    async def on_execute(self, snapshot):
        self.execute_calls += 1
        self.snapshots.append(snapshot)
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_on_execute:
            raise RuntimeError("execute failed")
        return ExecutionResult(action="noop", payload={"calls": self.execute_calls})

    async def on_stop(self):
        self.stop_calls += 1
        if "stop" in self.fail_on:
            raise RuntimeError("stop failed")


@pytest.fixture
def paper_venue():
    """Paper venue with a fixed seed."""
    return PaperVenue(seed=7)


@pytest.fixture
def event_bus():
    return EventBus(max_queue_size=1000)


@pytest.fixture
def strategy_context(paper_venue, event_bus):
    return StrategyContext(venue=paper_venue, event_bus=event_bus)


@pytest.fixture
def registry(strategy_context):
    """Registry building the real strategy kinds."""
    return AccountRegistry(StrategyFactory(strategy_context))


@pytest.fixture
def recording_builders():
    return {strategy_type: RecordingStrategy for strategy_type in StrategyType}


@pytest.fixture
def recording_registry(strategy_context, recording_builders):
    """Registry whose every kind is built as a RecordingStrategy."""
    return AccountRegistry(StrategyFactory(strategy_context, recording_builders))


@pytest.fixture
def make_strategy(strategy_context):
    """Build standalone RecordingStrategy instances."""
    def _make(name="recording", account_id=None, parameters=None, context=None):
        config = StrategyConfig(
            name=name,
            strategy_type="recording",
            account_id=account_id,
            parameters=parameters or {},
        )
        return RecordingStrategy(config, context or strategy_context)
    return _make


@pytest.fixture
def make_market():
    """Build a market settling `minutes_to_expiry` after `now`."""
    def _make(market_id="market-1", minutes_to_expiry=30.0, now=NOW, yes=None, no=None, **kwargs):
        prices = OutcomePrices(yes=yes, no=no) if yes is not None or no is not None else None
        return MarketSnapshot(
            market_id=market_id,
            end_time=now + timedelta(minutes=minutes_to_expiry),
            prices=prices,
            **kwargs,
        )
    return _make


@pytest.fixture
def engine_config(tmp_path):
    """Engine configuration writing state and audit files under tmp_path."""
    logs_dir = tmp_path / "logs"
    return EngineConfig(
        name="test-engine",
        mode="paper",
        persist_interval_seconds=3600.0,
        scheduler=SchedulerConfig(
            interval_seconds=3600.0,
            max_concurrent_executions=2,
            execution_risk_cost=10.0,
        ),
        state=StateStoreConfig(state_dir=str(tmp_path / "state"), stats_save_every_ticks=1),
        logging=LoggingConfig(
            log_dir=str(logs_dir),
            audit_file=str(logs_dir / "audit.jsonl"),
            trade_file=str(logs_dir / "trades.jsonl"),
        ),
        accounts=[
            AccountConfig(account_id="acct-1", name="One", max_risk=500.0, strategies=["settlement_claim"]),
            AccountConfig(account_id="acct-2", name="Two", strategies=["settlement_claim", "hourly_arbitrage"]),
        ],
    )


@pytest.fixture
def temp_logs_dir(tmp_path):
    """Create temporary logs directory."""
    logs_dir = tmp_path / "logs"
    logs_dir.mkdir()
    return logs_dir


@pytest.fixture
def failing_builder():
    """Builder of RecordingStrategy instances that fail at the given lifecycle stage."""
    def _for_stage(stage):
        def _build(config, context):
            strategy = RecordingStrategy(config, context)
            strategy.fail_on.add(stage)
            return strategy
        return _build
    return _for_stage
