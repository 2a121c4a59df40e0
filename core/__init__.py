"""
Strategy Orchestrator - Core Module
===================================

Core components of the multi-account strategy orchestrator: strategy
lifecycle, account registry, candidate reservation, scheduling,
persistence and the event channel.
"""

from core.events import (
    Event,
    EventType,
    StrategyStateEvent,
    StrategyExecutionEvent,
    StrategyErrorEvent,
    ReservationEvent,
    TradeEvent,
    TickEvent,
    AccountEvent,
    PersistenceEvent,
)
from core.event_bus import EventBus
from core.logger import AuditLogger
from core.strategy_base import BaseStrategy, StrategyState, ExecutionResult
from core.strategy_types import StrategyType, StrategyFactory
from core.account_registry import AccountRegistry
from core.reservation import CandidateReservationProtocol
from core.scheduler import ExecutionScheduler
from core.state_store import StateStore
from core.engine import OrchestrationEngine

__all__ = [
    # Events
    "Event",
    "EventType",
    "StrategyStateEvent",
    "StrategyExecutionEvent",
    "StrategyErrorEvent",
    "ReservationEvent",
    "TradeEvent",
    "TickEvent",
    "AccountEvent",
    "PersistenceEvent",
    # Core components
    "EventBus",
    "AuditLogger",
    "BaseStrategy",
    "StrategyState",
    "ExecutionResult",
    "StrategyType",
    "StrategyFactory",
    "AccountRegistry",
    "CandidateReservationProtocol",
    "ExecutionScheduler",
    "StateStore",
    "OrchestrationEngine",
]
