"""
Orchestration Engine
====================

Composes the account registry, the strategy factory, the execution
scheduler and the state store, and is the single aggregator of the
event bus.

Startup order:
1. State store loaded
2. Accounts restored from state, configured accounts added
3. Every strategy initialized (an InitializationError halts bring-up)
4. Strategies started on a first market snapshot, scheduler started

Shutdown stops the scheduler, then every strategy, then persists state
one last time.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from core.account_registry import Account, AccountRegistry, DuplicateAccountError
from core.event_bus import EventBus
from core.events import (
    AccountAction,
    AccountEvent,
    Event,
    EventType,
    PersistenceEvent,
)
from core.logger import AuditLogger
from core.scheduler import ExecutionScheduler
from core.state_store import (
    ACCOUNTS_SECTION,
    ENGINE_SECTION,
    EXECUTION_STATS_SECTION,
    PersistenceFailure,
    StateStore,
)
from core.strategy_base import BaseStrategy, StrategyContext, StrategyState
from core.strategy_types import StrategyBuilder, StrategyFactory, StrategyType

if TYPE_CHECKING:
    from core.config import AccountConfig, EngineConfig
    from core.venue import VenueClient


logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Engine lifecycle call made in the wrong state."""


class OrchestrationEngine:
    """
    Wires accounts to strategies and runs them on the scheduler.

    Usage:
        engine = OrchestrationEngine(config, PaperVenue())
        await engine.initialize()
        await engine.start()
        await engine.wait_for_shutdown()
        await engine.stop()
    """

    RECENT_ERRORS = 50

    def __init__(
        self,
        config: EngineConfig,
        venue: VenueClient,
        event_bus: EventBus | None = None,
        state_store: StateStore | None = None,
        audit_logger: AuditLogger | None = None,
        builders: dict[StrategyType, StrategyBuilder] | None = None,
    ):
        self._config = config
        self._venue = venue
        self._event_bus = event_bus or EventBus(max_queue_size=config.event_bus.max_queue_size)
        self._store = state_store or StateStore(config.state)
        self._audit = audit_logger or AuditLogger(
            audit_file=config.logging.audit_file,
            trade_file=config.logging.trade_file,
        )

        self._context = StrategyContext(venue=venue, event_bus=self._event_bus)
        self._factory = StrategyFactory(self._context, builders)
        self._registry = AccountRegistry(self._factory)
        self._scheduler = ExecutionScheduler(
            self._registry, venue, config.scheduler, self._event_bus
        )
        self._context.snapshot_provider = lambda: self._scheduler.latest_snapshot

        self._event_bus.subscribe_all(self._on_event)

        self._initialized = False
        self._running = False
        self._started_at: datetime | None = None
        self._shutdown_event = asyncio.Event()
        self._bus_task: asyncio.Task | None = None
        self._persist_task: asyncio.Task | None = None

        self._event_counts: Counter[str] = Counter()
        self._recent_errors: deque[dict[str, Any]] = deque(maxlen=self.RECENT_ERRORS)
        self._ticks_since_stats_save = 0
        self._persistence_failures = 0
        self._start_count = 0

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def registry(self) -> AccountRegistry:
        return self._registry

    @property
    def scheduler(self) -> ExecutionScheduler:
        return self._scheduler

    @property
    def state_store(self) -> StateStore:
        return self._store

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def event_counts(self) -> dict[str, int]:
        return dict(self._event_counts)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Load state, register accounts and initialize every strategy.

        Raises:
            InitializationError: a strategy failed to initialize
        """
        if self._initialized:
            logger.warning("Engine already initialized")
            return

        logger.info(f"Initializing engine '{self._config.name}' ({self._config.mode} mode)")
        await self._store.initialize()

        engine_doc = self._store.get(ENGINE_SECTION, {})
        self._start_count = int(engine_doc.get("start_count", 0))

        self.restore_accounts_from_state()
        for account_config in self._config.accounts:
            if account_config.account_id in self._registry:
                logger.info(
                    f"Account {account_config.account_id} restored from state, "
                    f"configured bindings not re-applied"
                )
                continue
            self._register_configured(account_config)

        for strategy in self._registry.all_strategies():
            if strategy.state in (StrategyState.CREATED, StrategyState.STOPPED):
                await strategy.initialize()

        self._initialized = True
        await self.persist_state()
        logger.info(
            f"Engine initialized: {len(self._registry)} account(s), "
            f"{len(self._registry.all_strategies())} strategy instance(s)"
        )

    def restore_accounts_from_state(self) -> list[Account]:
        """Rebuild accounts and their bindings from the accounts section."""
        documents = self._store.get(ACCOUNTS_SECTION, [])
        if not isinstance(documents, list):
            logger.error(f"Ignoring malformed accounts section: {type(documents).__name__}")
            return []

        restored = self._registry.restore(documents)
        for account in restored:
            account.client = self._venue
        return restored

    def _register_configured(self, account_config: AccountConfig) -> tuple[Account, list[BaseStrategy]]:
        account = self._registry.register(account_config.account_id, account_config, client=self._venue)
        strategies = [
            self._registry.bind_strategy(account.account_id, binding.strategy_type, binding.parameters)
            for binding in self._config.bindings_for(account_config)
        ]
        return account, strategies

    async def start(self) -> None:
        """Start the event bus, every strategy and the scheduler."""
        if not self._initialized:
            raise EngineError("Engine must be initialized before start()")
        if self._running:
            logger.warning("Engine already running")
            return

        self._running = True
        self._shutdown_event.clear()
        self._started_at = datetime.now(timezone.utc)
        self._start_count += 1

        self._bus_task = asyncio.create_task(self._event_bus.start(), name="event-bus")
        await self._audit.start_async_writer()

        snapshot = await self._scheduler.fetch_snapshot(0)
        for strategy in self._registry.all_strategies():
            await self._start_strategy(strategy, snapshot)

        self._scheduler.start()
        self._persist_task = asyncio.create_task(self._persist_loop(), name="state-persist")

        self._audit.log_system_event("engine_started", {
            "name": self._config.name,
            "mode": self._config.mode,
            "accounts": len(self._registry),
            "strategies": [s.name for s in self._registry.all_strategies()],
        })
        logger.info(f"Engine started (interval {self._scheduler.config.interval_seconds}s)")

    async def _start_strategy(self, strategy: BaseStrategy, snapshot: Any = None) -> None:
        if strategy.state != StrategyState.INITIALIZED:
            return
        try:
            await strategy.start(snapshot)
        except Exception as e:
            # strategy is in ERROR and excluded from eligibility; the engine keeps going
            logger.error(f"Failed to start strategy {strategy.name}: {e}", exc_info=True)

    async def stop(self) -> None:
        """Stop everything and persist state. Safe to call more than once."""
        if not self._initialized:
            return

        was_running = self._running
        self._running = False
        self._shutdown_event.set()

        if self._persist_task is not None:
            self._persist_task.cancel()
            await asyncio.gather(self._persist_task, return_exceptions=True)
            self._persist_task = None

        await self._scheduler.stop()

        strategies = self._registry.all_strategies()
        outcomes = await asyncio.gather(*(s.stop() for s in strategies), return_exceptions=True)
        for strategy, outcome in zip(strategies, outcomes):
            if isinstance(outcome, Exception):
                logger.error(f"Error stopping strategy {strategy.name}: {outcome}")

        await self.persist_state()

        if was_running:
            self._audit.log_system_event("engine_stopped", {
                "name": self._config.name,
                "execution_stats": self._scheduler.stats.to_dict(),
            })

        await self._event_bus.stop()
        if self._bus_task is not None:
            self._bus_task.cancel()
            await asyncio.gather(self._bus_task, return_exceptions=True)
            self._bus_task = None
        await self._audit.stop_async_writer()

        self._initialized = False
        logger.info("Engine stopped")

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    # ------------------------------------------------------------------
    # Runtime account management
    # ------------------------------------------------------------------

    async def add_account(self, account_config: AccountConfig) -> Account:
        """
        Register and bind a new account while the engine runs.

        New strategy instances are initialized (and started, when the
        engine is running). Shared instances already running are simply
        joined.

        Raises:
            DuplicateAccountError: the account already exists
            UnknownStrategyTypeError, StrategyConfigError: a binding is invalid
        """
        if account_config.account_id in self._registry:
            raise DuplicateAccountError(f"Account {account_config.account_id} is already registered")
        try:
            account, strategies = self._register_configured(account_config)
        except Exception:
            if account_config.account_id in self._registry:
                await self._registry.remove(account_config.account_id)
            raise

        if self._initialized:
            for strategy in strategies:
                if strategy.state in (StrategyState.CREATED, StrategyState.STOPPED):
                    await strategy.initialize()
                if self._running:
                    await self._start_strategy(strategy, self._scheduler.latest_snapshot)

        await self._publish(AccountEvent(
            source="engine", account_id=account.account_id, action=AccountAction.ADDED
        ))
        await self._persist_section(ACCOUNTS_SECTION, self._registry.to_state())
        return account

    async def remove_account(self, account_id: str) -> Account:
        """Stop the account's strategies and delete it from the registry and state."""
        self._registry.get(account_id)  # AccountNotFoundError before any side effect
        await self._withdraw_from_shared(account_id)
        account = await self._registry.remove(account_id)
        await self._publish(AccountEvent(
            source="engine", account_id=account_id, action=AccountAction.REMOVED
        ))
        await self._persist_section(ACCOUNTS_SECTION, self._registry.to_state())
        return account

    async def activate_account(self, account_id: str) -> Account:
        account = self._registry.activate(account_id)
        await self._publish(AccountEvent(
            source="engine", account_id=account_id, action=AccountAction.ACTIVATED
        ))
        await self._persist_section(ACCOUNTS_SECTION, self._registry.to_state())
        return account

    async def deactivate_account(self, account_id: str) -> Account:
        account = self._registry.deactivate(account_id)
        await self._withdraw_from_shared(account_id)
        await self._publish(AccountEvent(
            source="engine", account_id=account_id, action=AccountAction.DEACTIVATED
        ))
        await self._persist_section(ACCOUNTS_SECTION, self._registry.to_state())
        return account

    async def _withdraw_from_shared(self, account_id: str) -> None:
        for strategy in self._registry.shared_strategies().values():
            try:
                await strategy.on_account_withdrawn(account_id)
            except Exception as e:
                logger.error(f"Failed to withdraw account {account_id} from {strategy.name}: {e}")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def persist_state(self) -> bool:
        """
        Write every section.

        Returns:
            False if any section failed; the engine keeps its in-memory
            state and the next persist retries
        """
        results = [
            await self._persist_section(ACCOUNTS_SECTION, self._registry.to_state()),
            await self._persist_section(EXECUTION_STATS_SECTION, self._stats_document()),
            await self._persist_section(ENGINE_SECTION, self._engine_document()),
        ]
        return all(results)

    async def _persist_section(self, section: str, document: Any) -> bool:
        try:
            await self._store.set(section, document)
            return True
        except PersistenceFailure as e:
            self._persistence_failures += 1
            logger.error(f"Persistence failed, continuing in memory: {e}")
            await self._publish(PersistenceEvent(source="engine", section=section, error=str(e)))
            return False

    async def _persist_loop(self) -> None:
        interval = self._config.persist_interval_seconds
        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.persist_state()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Periodic persist failed: {e}", exc_info=True)

    def _stats_document(self) -> dict[str, Any]:
        return {
            **self._scheduler.stats.to_dict(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }

    def _engine_document(self) -> dict[str, Any]:
        return {
            "name": self._config.name,
            "mode": self._config.mode,
            "start_count": self._start_count,
            "last_started_at": self._started_at.isoformat() if self._started_at else None,
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }

    # ------------------------------------------------------------------
    # Aggregator
    # ------------------------------------------------------------------

    async def _on_event(self, event: Event) -> None:
        """Single consumer of every event published on the bus."""
        event_type = event.event_type
        self._event_counts[event_type.value] += 1
        self._audit.log_event(event)

        if event_type in (
            EventType.STRATEGY_ERROR,
            EventType.TRADE_FAILED,
            EventType.RESERVATION_FAILED,
            EventType.PERSISTENCE_FAILED,
        ):
            self._recent_errors.append(event.to_audit_dict())

        if event_type == EventType.TICK_COMPLETED:
            self._ticks_since_stats_save += 1
            if self._ticks_since_stats_save >= self._config.state.stats_save_every_ticks:
                self._ticks_since_stats_save = 0
                await self._persist_section(EXECUTION_STATS_SECTION, self._stats_document())

    async def _publish(self, event: Event) -> None:
        await self._event_bus.publish(event)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict[str, Any]:
        """Engine summary for monitoring."""
        uptime = None
        if self._running and self._started_at is not None:
            uptime = (datetime.now(timezone.utc) - self._started_at).total_seconds()

        summary = self._registry.summary()
        return {
            "name": self._config.name,
            "mode": self._config.mode,
            "initialized": self._initialized,
            "running": self._running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "uptime_seconds": uptime,
            "accounts": {
                "total": summary["total"],
                "active": summary["active"],
                "inactive": summary["inactive"],
            },
            "strategies": {s.name: s.state.value for s in self._registry.all_strategies()},
            "execution": self._scheduler.get_metrics(),
            "events": dict(self._event_counts),
            "persistence_failures": self._persistence_failures,
        }

    def get_detailed_status(self) -> dict[str, Any]:
        """Summary plus per-account, per-strategy and subsystem details."""
        return {
            **self.get_status(),
            "accounts": self._registry.summary(),
            "strategy_details": [s.get_status() for s in self._registry.all_strategies()],
            "event_bus": self._event_bus.get_status(),
            "state": self._store.get_state_info(),
            "audit": self._audit.get_write_metrics(),
            "recent_errors": list(self._recent_errors),
        }
