"""
Event Bus
=========

Channel carrying lifecycle, reservation, trade, tick, account and
persistence events from their producers to the orchestration engine,
which subscribes once as the single aggregator.

Queue depth is bounded. Past the critical threshold, tick and
bookkeeping events are shed so that failures and trade outcomes still
find room; once the queue is completely full a publisher waits at most
put_timeout_seconds before its event is dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine

from core.events import Event, EventType


logger = logging.getLogger(__name__)


EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


class BackpressureLevel(Enum):
    NORMAL = "normal"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class BackpressureConfig:
    """Queue bound and the depth percentages at which each level starts."""
    max_queue_size: int = 10000
    warning_threshold_pct: float = 50.0
    high_threshold_pct: float = 75.0
    critical_threshold_pct: float = 90.0
    drop_low_priority_at_critical: bool = True
    put_timeout_seconds: float = 1.0

    def level_for(self, depth: int) -> BackpressureLevel:
        pct = 100.0 * depth / self.max_queue_size
        for threshold, level in (
            (self.critical_threshold_pct, BackpressureLevel.CRITICAL),
            (self.high_threshold_pct, BackpressureLevel.HIGH),
            (self.warning_threshold_pct, BackpressureLevel.WARNING),
        ):
            if pct >= threshold:
                return level
        return BackpressureLevel.NORMAL


@dataclass
class BackpressureMetrics:
    total_events_published: int = 0
    total_events_processed: int = 0
    total_events_dropped: int = 0
    handler_errors: int = 0
    current_queue_size: int = 0
    max_queue_size_reached: int = 0
    backpressure_level: BackpressureLevel = BackpressureLevel.NORMAL
    processing_latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "published": self.total_events_published,
            "processed": self.total_events_processed,
            "dropped": self.total_events_dropped,
            "handler_errors": self.handler_errors,
            "queue_size": self.current_queue_size,
            "peak_queue_size": self.max_queue_size_reached,
            "backpressure_level": self.backpressure_level.value,
            "dispatch_latency_ms": round(self.processing_latency_ms, 2),
        }


# Never shed at critical depth
HIGH_PRIORITY_EVENT_TYPES = frozenset({
    EventType.STRATEGY_ERROR,
    EventType.TRADE_EXECUTED,
    EventType.TRADE_FAILED,
    EventType.PERSISTENCE_FAILED,
    EventType.ACCOUNT_ADDED,
    EventType.ACCOUNT_REMOVED,
})

_LATENCY_SMOOTHING = 0.1


class EventBus:
    """
    Bounded, single-consumer event channel.

    Producers call publish(). Either the consumer loop started with
    start(), or an explicit drain(), hands each event in publish order to
    the handlers of its type and then to the catch-all handlers.
    """

    def __init__(
        self,
        max_queue_size: int = 10000,
        backpressure_config: BackpressureConfig | None = None,
        max_history: int = 1000,
    ):
        self._config = backpressure_config or BackpressureConfig(max_queue_size=max_queue_size)
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self._config.max_queue_size)
        self._handlers: dict[EventType, list[EventHandler]] = defaultdict(list)
        self._catch_all: list[EventHandler] = []
        self._history: deque[Event] = deque(maxlen=max_history)
        self._metrics = BackpressureMetrics()
        self._running = False

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        self._catch_all.append(handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, event: Event, priority: bool = False) -> bool:
        """
        Queue an event.

        Args:
            event: Event to queue
            priority: Keep the event even at critical depth

        Returns:
            False if the event was shed or timed out on a full queue
        """
        self._metrics.total_events_published += 1
        self._update_level()

        keep = priority or event.event_type in HIGH_PRIORITY_EVENT_TYPES
        if (
            self._metrics.backpressure_level == BackpressureLevel.CRITICAL
            and self._config.drop_low_priority_at_critical
            and not keep
        ):
            self._metrics.total_events_dropped += 1
            logger.warning(
                f"Shedding {event.event_type.value} at critical depth "
                f"({self._queue.qsize()}/{self._config.max_queue_size})"
            )
            return False

        if not await self._enqueue(event):
            self._metrics.total_events_dropped += 1
            logger.error(
                f"Event queue full for {self._config.put_timeout_seconds}s, "
                f"dropped {event.event_type.value} {event.event_id}"
            )
            return False

        depth = self._queue.qsize()
        self._metrics.max_queue_size_reached = max(self._metrics.max_queue_size_reached, depth)
        self._history.append(event)
        return True

    async def _enqueue(self, event: Event) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            pass
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._config.put_timeout_seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def _update_level(self) -> None:
        level = self._config.level_for(self._queue.qsize())
        previous = self._metrics.backpressure_level
        if level == previous:
            return
        self._metrics.backpressure_level = level

        depth = f"{self._queue.qsize()}/{self._config.max_queue_size}"
        if level == BackpressureLevel.CRITICAL:
            logger.critical(f"Event queue critical at {depth}, shedding low-priority events")
        elif level == BackpressureLevel.HIGH:
            logger.warning(f"Event queue high at {depth}")
        elif level == BackpressureLevel.NORMAL:
            logger.info(f"Event queue back to normal from {previous.value}")

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Consumer loop; returns once stop() has been called."""
        self._running = True
        logger.info("Event bus consumer started")

        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            try:
                await self._dispatch(event)
            except Exception as e:
                logger.error(f"Dispatch of {event.event_type.value} failed: {e}")
            finally:
                self._queue.task_done()

    async def drain(self) -> int:
        """Dispatch everything currently queued. Returns how many events were dispatched."""
        count = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._dispatch(event)
            finally:
                self._queue.task_done()
            count += 1
        return count

    async def stop(self) -> None:
        """End the consumer loop, then flush whatever is still queued."""
        self._running = False
        flushed = await self.drain()
        logger.info(f"Event bus stopped, {flushed} queued event(s) flushed")

    async def _dispatch(self, event: Event) -> None:
        handlers = [*self._handlers.get(event.event_type, ()), *self._catch_all]
        started = time.monotonic()

        if handlers:
            outcomes = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)
            for outcome in outcomes:
                if isinstance(outcome, Exception):
                    self._metrics.handler_errors += 1
                    logger.error(f"Handler failed on {event.event_type.value}: {outcome}")

        elapsed_ms = (time.monotonic() - started) * 1000
        metrics = self._metrics
        metrics.total_events_processed += 1
        metrics.current_queue_size = self._queue.qsize()
        if metrics.processing_latency_ms == 0:
            metrics.processing_latency_ms = elapsed_ms
        else:
            metrics.processing_latency_ms += _LATENCY_SMOOTHING * (elapsed_ms - metrics.processing_latency_ms)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_event_history(self, event_type: EventType | None = None, limit: int = 100) -> list[Event]:
        """Most recent queued events, oldest first."""
        events = [e for e in self._history if event_type is None or e.event_type == event_type]
        return events[-limit:]

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def metrics(self) -> BackpressureMetrics:
        self._metrics.current_queue_size = self._queue.qsize()
        return self._metrics

    def get_status(self) -> dict[str, Any]:
        depth = self._queue.qsize()
        return {
            "running": self._running,
            "queue_size": depth,
            "max_queue_size": self._config.max_queue_size,
            "utilization_pct": round(100.0 * depth / self._config.max_queue_size, 1),
            "backpressure_level": self._metrics.backpressure_level.value,
            "metrics": self.metrics.to_dict(),
            "subscribers": {t.value: len(h) for t, h in self._handlers.items() if h},
            "catch_all_subscribers": len(self._catch_all),
            "history_size": len(self._history),
        }
