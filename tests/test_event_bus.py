"""
Tests for Event Bus
===================
"""

import asyncio

import pytest

from core.event_bus import BackpressureConfig, BackpressureLevel, EventBus
from core.events import EventType, TickEvent, TradeEvent


class TestEventBus:
    """Test EventBus functionality."""

    @pytest.fixture
    def event_bus(self):
        """Create a fresh event bus."""
        return EventBus(max_queue_size=100)

    @pytest.mark.asyncio
    async def test_subscribe_and_publish(self, event_bus):
        """Test basic subscribe and publish."""
        received = []

        async def handler(event):
            received.append(event)

        event_bus.subscribe(EventType.TICK_COMPLETED, handler)
        bus_task = asyncio.create_task(event_bus.start())

        event = TickEvent(source="scheduler", tick_id=1)
        assert await event_bus.publish(event)

        await asyncio.sleep(0.1)
        await event_bus.stop()
        bus_task.cancel()

        assert received == [event]

    @pytest.mark.asyncio
    async def test_handlers_only_receive_their_type(self, event_bus):
        received = []

        async def handler(event):
            received.append(event)

        event_bus.subscribe(EventType.TRADE_FAILED, handler)
        await event_bus.publish(TickEvent(tick_id=1))
        await event_bus.publish(TradeEvent(success=False, account_id="acct-1"))
        await event_bus.drain()

        assert len(received) == 1
        assert received[0].account_id == "acct-1"

    @pytest.mark.asyncio
    async def test_subscribe_all_sees_events_in_publish_order(self, event_bus):
        seen = []

        async def aggregator(event):
            seen.append(event.tick_id)

        event_bus.subscribe_all(aggregator)
        for tick_id in range(5):
            await event_bus.publish(TickEvent(tick_id=tick_id))

        assert event_bus.queue_size == 5
        assert await event_bus.drain() == 5
        assert seen == [0, 1, 2, 3, 4]
        assert event_bus.queue_size == 0

    @pytest.mark.asyncio
    async def test_unsubscribe(self, event_bus):
        received = []

        async def handler(event):
            received.append(event)

        event_bus.subscribe(EventType.TICK_COMPLETED, handler)
        event_bus.unsubscribe(EventType.TICK_COMPLETED, handler)
        await event_bus.publish(TickEvent(tick_id=1))
        await event_bus.drain()

        assert received == []

    @pytest.mark.asyncio
    async def test_handler_errors_are_contained(self, event_bus):
        """A failing handler does not stop other handlers."""
        received = []

        async def broken(event):
            raise RuntimeError("handler failed")

        async def healthy(event):
            received.append(event)

        event_bus.subscribe(EventType.TICK_COMPLETED, broken)
        event_bus.subscribe(EventType.TICK_COMPLETED, healthy)
        await event_bus.publish(TickEvent(tick_id=1))
        await event_bus.drain()

        assert len(received) == 1
        assert event_bus.metrics.handler_errors == 1
        assert event_bus.metrics.total_events_processed == 1

    @pytest.mark.asyncio
    async def test_stop_flushes_queue(self, event_bus):
        received = []

        async def handler(event):
            received.append(event)

        event_bus.subscribe_all(handler)
        await event_bus.publish(TickEvent(tick_id=1))
        await event_bus.publish(TickEvent(tick_id=2))
        await event_bus.stop()

        assert len(received) == 2
        assert not event_bus.is_running

    @pytest.mark.asyncio
    async def test_event_history(self, event_bus):
        await event_bus.publish(TickEvent(tick_id=1))
        await event_bus.publish(TradeEvent(account_id="acct-1"))
        await event_bus.publish(TickEvent(tick_id=2))

        ticks = event_bus.get_event_history(EventType.TICK_COMPLETED)
        assert [e.tick_id for e in ticks] == [1, 2]
        assert len(event_bus.get_event_history(limit=2)) == 2

    def test_status(self, event_bus):
        status = event_bus.get_status()

        assert status["running"] is False
        assert status["max_queue_size"] == 100
        assert status["backpressure_level"] == "normal"


class TestBackpressure:
    """Test queue depth handling."""

    @pytest.fixture
    def small_bus(self):
        config = BackpressureConfig(max_queue_size=10, put_timeout_seconds=0.01)
        return EventBus(backpressure_config=config)

    @pytest.mark.asyncio
    async def test_low_priority_dropped_at_critical(self, small_bus):
        for tick_id in range(9):
            assert await small_bus.publish(TickEvent(tick_id=tick_id))

        dropped = await small_bus.publish(TickEvent(tick_id=99))

        assert dropped is False
        assert small_bus.metrics.total_events_dropped == 1
        assert small_bus.metrics.backpressure_level == BackpressureLevel.CRITICAL

    @pytest.mark.asyncio
    async def test_failures_kept_at_critical(self, small_bus):
        """Trade outcomes are queued while there is room, even at critical depth."""
        for tick_id in range(9):
            await small_bus.publish(TickEvent(tick_id=tick_id))

        assert await small_bus.publish(TradeEvent(success=False, account_id="acct-1"))
        assert small_bus.queue_size == 10

    @pytest.mark.asyncio
    async def test_full_queue_times_out(self, small_bus):
        for tick_id in range(9):
            await small_bus.publish(TickEvent(tick_id=tick_id))
        await small_bus.publish(TradeEvent(account_id="acct-1"))

        assert await small_bus.publish(TradeEvent(account_id="acct-2")) is False
        assert small_bus.metrics.total_events_dropped == 1

    @pytest.mark.asyncio
    async def test_explicit_priority_overrides_drop(self, small_bus):
        for tick_id in range(9):
            await small_bus.publish(TickEvent(tick_id=tick_id))

        assert await small_bus.publish(TickEvent(tick_id=99), priority=True)
