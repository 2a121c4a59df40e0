"""
Base Strategy
=============

Lifecycle state machine shared by every strategy kind.

    CREATED -> INITIALIZING -> INITIALIZED -> STARTING -> RUNNING <-> EXECUTING
            -> STOPPING -> STOPPED

ERROR is reachable from any non-terminal state when a lifecycle call
(initialize/start/stop) fails. A failed execute() pass is contained:
it is logged and counted, and the strategy stays RUNNING.

Subclasses provide the business hooks on_initialize, on_start,
on_execute and on_stop, and own their named timers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, ClassVar

from core.events import Event, StrategyErrorEvent, StrategyExecutionEvent, StrategyStateEvent
from core.market import TickSnapshot

if TYPE_CHECKING:
    from core.account_registry import AccountRegistry
    from core.event_bus import EventBus
    from core.venue import VenueClient


logger = logging.getLogger(__name__)


class StrategyState(Enum):
    """Lifecycle states."""
    CREATED = "created"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    STARTING = "starting"
    RUNNING = "running"
    EXECUTING = "executing"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


_ALLOWED_TRANSITIONS: dict[StrategyState, set[StrategyState]] = {
    StrategyState.CREATED: {StrategyState.INITIALIZING, StrategyState.STOPPING},
    StrategyState.INITIALIZING: {StrategyState.INITIALIZED, StrategyState.ERROR},
    StrategyState.INITIALIZED: {StrategyState.STARTING, StrategyState.STOPPING, StrategyState.ERROR},
    StrategyState.STARTING: {StrategyState.RUNNING, StrategyState.ERROR},
    StrategyState.RUNNING: {StrategyState.EXECUTING, StrategyState.STOPPING, StrategyState.ERROR},
    StrategyState.EXECUTING: {StrategyState.RUNNING, StrategyState.ERROR},
    StrategyState.STOPPING: {StrategyState.STOPPED, StrategyState.ERROR},
    StrategyState.STOPPED: {StrategyState.INITIALIZING},
    StrategyState.ERROR: {StrategyState.STOPPING},
}


class StrategyError(Exception):
    """Base class for strategy lifecycle errors."""


class InitializationError(StrategyError):
    """initialize() failed or was called in the wrong state."""


class StrategyStateError(StrategyError):
    """A lifecycle call was made from a state that does not allow it."""


class ReentrancyRejection(StrategyError):
    """execute() was called while a previous pass is still in flight."""


class StrategyConfigError(ValueError):
    """Strategy parameters failed validation."""


@dataclass(frozen=True)
class ParameterSpec:
    """Declared type, default and bounds of one strategy parameter."""
    kind: type
    default: Any
    min_value: float | None = None
    max_value: float | None = None
    optional: bool = False
    description: str = ""

    def validate(self, name: str, value: Any) -> Any:
        """Return the coerced value or raise StrategyConfigError."""
        if value is None:
            if self.optional:
                return None
            raise StrategyConfigError(f"Parameter '{name}' is required")

        if self.kind is bool:
            if not isinstance(value, bool):
                raise StrategyConfigError(f"Parameter '{name}' must be a boolean, got {value!r}")
            return value

        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise StrategyConfigError(f"Parameter '{name}' must be numeric, got {value!r}")
        if self.kind is int:
            if isinstance(value, float) and not value.is_integer():
                raise StrategyConfigError(f"Parameter '{name}' must be an integer, got {value!r}")
            value = int(value)
        else:
            value = float(value)

        if self.min_value is not None and value < self.min_value:
            raise StrategyConfigError(f"Parameter '{name}'={value} below minimum {self.min_value}")
        if self.max_value is not None and value > self.max_value:
            raise StrategyConfigError(f"Parameter '{name}'={value} above maximum {self.max_value}")
        return value


@dataclass
class StrategyConfig:
    """Configuration for one strategy instance."""
    name: str
    strategy_type: str
    account_id: str | None = None
    enabled: bool = True
    parameters: dict[str, Any] = field(default_factory=dict)
    stop_timeout_seconds: float = 30.0


@dataclass
class StrategyContext:
    """Collaborators handed to a strategy at construction."""
    venue: VenueClient
    registry: AccountRegistry | None = None
    event_bus: EventBus | None = None
    snapshot_provider: Callable[[], TickSnapshot | None] | None = None


@dataclass
class ExecutionResult:
    """
    Outcome of one execute() pass.

    Always returned, so callers can tell "ran, did nothing" (success with
    an idle action) from "failed".
    """
    action: str
    payload: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error: str | None = None
    duration_ms: float = 0.0

    @classmethod
    def idle(cls, reason: str, **payload: Any) -> "ExecutionResult":
        return cls(action="idle", payload={"reason": reason, **payload})

    @classmethod
    def failure(cls, error: BaseException | str, action: str = "error") -> "ExecutionResult":
        return cls(action=action, success=False, error=str(error))

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "payload": self.payload,
            "success": self.success,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class StrategyStats:
    """Per-instance execution counters."""
    execution_count: int = 0
    success_count: int = 0
    error_count: int = 0
    rejected_count: int = 0
    timer_errors: int = 0
    last_error: str | None = None
    last_error_at: datetime | None = None
    last_execution_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_count": self.execution_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "rejected_count": self.rejected_count,
            "timer_errors": self.timer_errors,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
            "last_execution_at": self.last_execution_at.isoformat() if self.last_execution_at else None,
        }


class BaseStrategy(ABC):
    """
    Abstract base class for strategies.

    Design principles:
    - One execute() in flight per instance (reentrant calls are rejected)
    - Tick errors contained, lifecycle errors propagate
    - All state changes published on the event bus
    - Timers owned by the instance and cancelled on stop
    """

    PARAMETERS: ClassVar[dict[str, ParameterSpec]] = {}

    def __init__(self, config: StrategyConfig, context: StrategyContext):
        self._config = config
        self._context = context
        self._params = self.validate_parameters(config.parameters)
        self._state = StrategyState.CREATED
        self._stats = StrategyStats()
        self._counters: dict[str, float] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._executing_task: asyncio.Task | None = None
        self._stopping = False
        self._stop_done: asyncio.Event | None = None
        # Cleared while initialize() or start() is in progress
        self._settled = asyncio.Event()
        self._settled.set()
        self._created_at = datetime.now(timezone.utc)
        self._started_at: datetime | None = None
        self._last_result: ExecutionResult | None = None

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def strategy_type(self) -> str:
        return self._config.strategy_type

    @property
    def account_id(self) -> str | None:
        """Bound account, or None for an engine-scope instance."""
        return self._config.account_id

    @property
    def state(self) -> StrategyState:
        return self._state

    @property
    def params(self) -> dict[str, Any]:
        return dict(self._params)

    @property
    def stats(self) -> StrategyStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state in (StrategyState.RUNNING, StrategyState.EXECUTING)

    @property
    def is_executing(self) -> bool:
        return self._state == StrategyState.EXECUTING

    @property
    def timer_names(self) -> list[str]:
        return sorted(self._timers)

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    @classmethod
    def validate_parameters(cls, raw: dict[str, Any] | None) -> dict[str, Any]:
        """Merge raw values over declared defaults and validate them."""
        raw = dict(raw or {})
        unknown = set(raw) - set(cls.PARAMETERS)
        if unknown:
            raise StrategyConfigError(
                f"Unknown parameter(s) for {cls.__name__}: {', '.join(sorted(unknown))}"
            )

        validated = {}
        for name, spec in cls.PARAMETERS.items():
            validated[name] = spec.validate(name, raw.get(name, spec.default))
        cls.check_parameter_consistency(validated)
        return validated

    @classmethod
    def check_parameter_consistency(cls, params: dict[str, Any]) -> None:
        """Cross-parameter checks. Override to add rules."""

    def update_parameters(self, updates: dict[str, Any]) -> dict[str, Any]:
        """Apply a partial parameter update; nothing changes if validation fails."""
        merged = {**self._params, **updates}
        self._params = self.validate_parameters(merged)
        logger.info(f"Strategy {self.name} parameters updated: {sorted(updates)}")
        return self.params

    # ------------------------------------------------------------------
    # Business hooks
    # ------------------------------------------------------------------

    async def on_initialize(self) -> None:
        """Allocate long-lived resources."""

    async def on_start(self) -> None:
        """Register periodic timers."""

    @abstractmethod
    async def on_execute(self, snapshot: TickSnapshot) -> ExecutionResult:
        """Run one pass over the given snapshot."""

    async def on_stop(self) -> None:
        """Release resources."""

    async def on_account_withdrawn(self, account_id: str) -> None:
        """An account left the pool (removed or deactivated); drop anything held for it."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Run setup once.

        Raises:
            InitializationError: if called outside CREATED/STOPPED, or if
                setup fails (the instance then moves to ERROR)
        """
        if self._state not in (StrategyState.CREATED, StrategyState.STOPPED):
            raise InitializationError(
                f"Strategy {self.name} cannot initialize from state {self._state.value}"
            )

        self._stopping = False
        self._settled.clear()
        try:
            await self._set_state(StrategyState.INITIALIZING)
            try:
                await self.on_initialize()
            except Exception as e:
                self._record_error(e)
                await self._set_state(StrategyState.ERROR)
                await self._publish_error("initialize", e)
                raise InitializationError(f"Strategy {self.name} failed to initialize: {e}") from e

            await self._set_state(StrategyState.INITIALIZED)
        finally:
            self._settled.set()
        logger.info(f"Strategy {self.name} initialized")

    async def start(self, snapshot: TickSnapshot | None = None) -> ExecutionResult:
        """Register timers, enter RUNNING and perform one execution pass."""
        if self._state != StrategyState.INITIALIZED:
            raise StrategyStateError(
                f"Strategy {self.name} cannot start from state {self._state.value}"
            )

        self._settled.clear()
        try:
            await self._set_state(StrategyState.STARTING)
            try:
                await self.on_start()
            except Exception as e:
                self.clear_all_timers()
                self._record_error(e)
                await self._set_state(StrategyState.ERROR)
                await self._publish_error("start", e)
                raise

            self._started_at = datetime.now(timezone.utc)
            await self._set_state(StrategyState.RUNNING)
        finally:
            self._settled.set()
        logger.info(f"Strategy {self.name} started with timers {self.timer_names}")

        if self._stopping:
            return ExecutionResult.idle("stop requested during start")
        return await self.execute(snapshot if snapshot is not None else self.current_snapshot())

    async def execute(self, snapshot: TickSnapshot | None = None) -> ExecutionResult:
        """
        Run one pass of on_execute.

        Raises:
            ReentrancyRejection: a previous pass is still in flight
            StrategyStateError: the strategy is not RUNNING
        """
        if self._state == StrategyState.EXECUTING:
            self._stats.rejected_count += 1
            raise ReentrancyRejection(f"Strategy {self.name} is already executing")
        if self._state != StrategyState.RUNNING or self._stopping:
            raise StrategyStateError(
                f"Strategy {self.name} cannot execute from state {self._state.value}"
            )

        # State flips before the first await so a concurrent caller is rejected
        await self._set_state(StrategyState.EXECUTING)
        self._idle.clear()
        self._executing_task = asyncio.current_task()
        self._stats.execution_count += 1
        started = time.monotonic()

        try:
            result = await self.on_execute(snapshot if snapshot is not None else TickSnapshot.empty())
            if result is None:
                result = ExecutionResult.idle("no result")
            if result.success:
                self._stats.success_count += 1
            else:
                self._stats.error_count += 1
                self._stats.last_error = result.error
                self._stats.last_error_at = datetime.now(timezone.utc)
        except Exception as e:
            self._record_error(e)
            logger.error(f"Strategy {self.name} execution failed: {e}")
            result = ExecutionResult.failure(e)
            await self._publish_error("execute", e)
        finally:
            self._executing_task = None
            if self._state == StrategyState.EXECUTING:
                await self._set_state(StrategyState.RUNNING)
            self._idle.set()

        result.duration_ms = (time.monotonic() - started) * 1000
        self._stats.last_execution_at = datetime.now(timezone.utc)
        self._last_result = result

        await self._publish(StrategyExecutionEvent(
            source=self.name,
            strategy_name=self.name,
            account_id=self.account_id,
            action=result.action,
            success=result.success,
            duration_ms=result.duration_ms,
            details=dict(result.payload),
        ))
        return result

    async def stop(self) -> None:
        """
        Cancel timers, let an in-flight pass finish, run on_stop.

        Idempotent: calling it on a STOPPED strategy is a no-op, and a call
        made while another stop is in progress waits for that one.
        A call made while initialize() or start() is in progress lets it
        finish first, then stops the result.
        """
        if self._state == StrategyState.STOPPED:
            return
        if self._stop_done is not None:
            await self._stop_done.wait()
            return

        self._stop_done = asyncio.Event()
        self._stopping = True
        try:
            await self._settled.wait()
            await self._cancel_timers()

            current = asyncio.current_task()
            while self._state == StrategyState.EXECUTING and self._executing_task is not current:
                await self._idle.wait()

            if self._state == StrategyState.EXECUTING:
                # stop() requested from inside on_execute
                self._state = StrategyState.RUNNING

            await self._set_state(StrategyState.STOPPING)
            try:
                await self.on_stop()
            except Exception as e:
                self._record_error(e)
                await self._set_state(StrategyState.ERROR)
                await self._publish_error("stop", e)
                raise

            await self._set_state(StrategyState.STOPPED)
            logger.info(f"Strategy {self.name} stopped")
        finally:
            self._stopping = False
            done = self._stop_done
            self._stop_done = None
            done.set()

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def set_timer(
        self,
        name: str,
        callback: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        run_immediately: bool = False,
    ) -> None:
        """Run callback every interval_seconds until cleared or stopped."""
        self.clear_timer(name)
        self._timers[name] = asyncio.create_task(
            self._timer_loop(name, callback, interval_seconds, run_immediately),
            name=f"{self.name}:{name}",
        )

    def clear_timer(self, name: str) -> bool:
        task = self._timers.pop(name, None)
        if task is None:
            return False
        if task is not asyncio.current_task():
            task.cancel()
        return True

    def clear_all_timers(self) -> None:
        for name in list(self._timers):
            self.clear_timer(name)

    async def _cancel_timers(self) -> None:
        tasks = [t for t in self._timers.values() if t is not asyncio.current_task()]
        self.clear_all_timers()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _timer_loop(
        self,
        name: str,
        callback: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        run_immediately: bool,
    ) -> None:
        if not run_immediately:
            await asyncio.sleep(interval_seconds)

        me = asyncio.current_task()
        while not self._stopping and self._timers.get(name) is me:
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats.timer_errors += 1
                logger.error(f"Strategy {self.name} timer '{name}' failed: {e}")
                await self._publish_error(f"timer:{name}", e)
            await asyncio.sleep(interval_seconds)

    async def scheduled_execute(self) -> ExecutionResult | None:
        """Timer-driven pass over the latest snapshot; overlap is skipped."""
        if not self.is_running or self._stopping:
            return None
        try:
            return await self.execute(self.current_snapshot())
        except ReentrancyRejection:
            logger.debug(f"Strategy {self.name} scan skipped, pass already in flight")
            return None

    def current_snapshot(self) -> TickSnapshot:
        provider = self._context.snapshot_provider
        snapshot = provider() if provider is not None else None
        return snapshot if snapshot is not None else TickSnapshot.empty()

    # ------------------------------------------------------------------
    # Events and stats
    # ------------------------------------------------------------------

    def increment(self, counter: str, amount: float = 1) -> None:
        """Bump a strategy-specific counter."""
        self._counters[counter] = self._counters.get(counter, 0) + amount

    def _record_error(self, error: BaseException) -> None:
        self._stats.error_count += 1
        self._stats.last_error = str(error)
        self._stats.last_error_at = datetime.now(timezone.utc)

    async def _set_state(self, new_state: StrategyState) -> None:
        previous = self._state
        if new_state not in _ALLOWED_TRANSITIONS[previous]:
            raise StrategyStateError(
                f"Strategy {self.name}: illegal transition {previous.value} -> {new_state.value}"
            )
        self._state = new_state

        if StrategyState.EXECUTING in (previous, new_state):
            return
        logger.debug(f"Strategy {self.name}: {previous.value} -> {new_state.value}")
        await self._publish(StrategyStateEvent(
            source=self.name,
            strategy_name=self.name,
            account_id=self.account_id,
            previous_state=previous.value,
            new_state=new_state.value,
        ))

    async def _publish_error(self, phase: str, error: BaseException) -> None:
        await self._publish(StrategyErrorEvent(
            source=self.name,
            strategy_name=self.name,
            account_id=self.account_id,
            phase=phase,
            error=str(error),
            error_type=type(error).__name__,
        ))

    async def _publish(self, event: Event) -> None:
        if self._context.event_bus is not None:
            await self._context.event_bus.publish(event)

    def get_status(self) -> dict[str, Any]:
        """Get strategy status for monitoring."""
        return {
            "name": self.name,
            "type": self.strategy_type,
            "account_id": self.account_id,
            "state": self._state.value,
            "enabled": self._config.enabled,
            "parameters": self.params,
            "timers": self.timer_names,
            "stats": self._stats.to_dict(),
            "counters": dict(self._counters),
            "created_at": self._created_at.isoformat(),
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }
