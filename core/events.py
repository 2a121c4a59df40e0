"""
Events
======

Immutable event records published by strategies, the scheduler and the
engine, and consumed by the engine's aggregator through the event bus.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class EventType(Enum):
    """Kinds of events carried on the bus."""
    STRATEGY_STATE_CHANGED = "strategy_state_changed"
    STRATEGY_EXECUTED = "strategy_executed"
    STRATEGY_ERROR = "strategy_error"
    RESERVATION_PREPARED = "reservation_prepared"
    RESERVATION_FAILED = "reservation_failed"
    TRADE_EXECUTED = "trade_executed"
    TRADE_FAILED = "trade_failed"
    TICK_COMPLETED = "tick_completed"
    TICK_SKIPPED = "tick_skipped"
    ACCOUNT_ADDED = "account_added"
    ACCOUNT_REMOVED = "account_removed"
    ACCOUNT_STATUS_CHANGED = "account_status_changed"
    PERSISTENCE_FAILED = "persistence_failed"


def _new_event_id() -> str:
    return str(uuid.uuid4())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    """Base event. Subclasses define event_type."""
    source: str = ""
    event_id: str = field(default_factory=_new_event_id)
    timestamp: datetime = field(default_factory=_utc_now)

    @property
    def event_type(self) -> EventType:
        raise NotImplementedError

    def to_audit_dict(self) -> dict[str, Any]:
        """Flat, JSON-friendly representation for the audit trail."""
        result: dict[str, Any] = {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }
        for name in self.__dataclass_fields__:
            if name in result:
                continue
            value = getattr(self, name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            result[name] = value
        return result


@dataclass(frozen=True)
class StrategyStateEvent(Event):
    """A strategy instance moved between lifecycle states."""
    strategy_name: str = ""
    account_id: str | None = None
    previous_state: str = ""
    new_state: str = ""

    @property
    def event_type(self) -> EventType:
        return EventType.STRATEGY_STATE_CHANGED


@dataclass(frozen=True)
class StrategyExecutionEvent(Event):
    """One execute() pass completed (including "nothing to do")."""
    strategy_name: str = ""
    account_id: str | None = None
    action: str = ""
    success: bool = True
    duration_ms: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> EventType:
        return EventType.STRATEGY_EXECUTED


@dataclass(frozen=True)
class StrategyErrorEvent(Event):
    """An error was contained inside a strategy (tick, timer or lifecycle)."""
    strategy_name: str = ""
    account_id: str | None = None
    phase: str = ""
    error: str = ""
    error_type: str = ""

    @property
    def event_type(self) -> EventType:
        return EventType.STRATEGY_ERROR


@dataclass(frozen=True)
class ReservationEvent(Event):
    """Outcome of a pre-authorization attempt for one account."""
    strategy_name: str = ""
    account_id: str = ""
    opportunity_key: str = ""
    success: bool = True
    error: str = ""

    @property
    def event_type(self) -> EventType:
        return EventType.RESERVATION_PREPARED if self.success else EventType.RESERVATION_FAILED


@dataclass(frozen=True)
class TradeEvent(Event):
    """Outcome of a committed action for one account."""
    strategy_name: str = ""
    account_id: str = ""
    opportunity_key: str = ""
    success: bool = True
    amount: float = 0.0
    error: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> EventType:
        return EventType.TRADE_EXECUTED if self.success else EventType.TRADE_FAILED


@dataclass(frozen=True)
class TickEvent(Event):
    """Scheduler tick summary."""
    tick_id: int = 0
    skipped: bool = False
    reason: str = ""
    launched: int = 0
    succeeded: int = 0
    failed: int = 0
    rejected: int = 0
    risk_rejected: int = 0
    duration_ms: float = 0.0

    @property
    def event_type(self) -> EventType:
        return EventType.TICK_SKIPPED if self.skipped else EventType.TICK_COMPLETED


class AccountAction(Enum):
    ADDED = "added"
    REMOVED = "removed"
    ACTIVATED = "activated"
    DEACTIVATED = "deactivated"


@dataclass(frozen=True)
class AccountEvent(Event):
    """Account set or account status changed."""
    account_id: str = ""
    action: AccountAction = AccountAction.ADDED

    @property
    def event_type(self) -> EventType:
        if self.action == AccountAction.ADDED:
            return EventType.ACCOUNT_ADDED
        if self.action == AccountAction.REMOVED:
            return EventType.ACCOUNT_REMOVED
        return EventType.ACCOUNT_STATUS_CHANGED


@dataclass(frozen=True)
class PersistenceEvent(Event):
    """A state section could not be written."""
    section: str = ""
    error: str = ""

    @property
    def event_type(self) -> EventType:
        return EventType.PERSISTENCE_FAILED
