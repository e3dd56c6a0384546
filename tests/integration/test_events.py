"""
Integration tests for pricedesk/events.py

Tests the publish/subscribe bus used for workspace notifications.
"""
import pytest
from typing import Dict, Any, List

from pricedesk.events import EventBus, Event, StoreEvent


class TestEventBus:
    """Tests for EventBus class."""

    def setup_method(self):
        """Create fresh event bus for each test."""
        self.bus = EventBus()

    @pytest.mark.asyncio
    async def test_emit_with_no_handlers(self):
        """Emitting event with no handlers succeeds silently."""
        event = await self.bus.emit(StoreEvent.TABLE_UPLOADED, {"table_id": "t1"})
        assert event.type == StoreEvent.TABLE_UPLOADED
        assert event.data["table_id"] == "t1"

    @pytest.mark.asyncio
    async def test_subscribe_and_receive(self):
        received: List[Dict[str, Any]] = []

        @self.bus.on(StoreEvent.FEED_LOADED)
        async def handler(data: dict):
            received.append(data)

        await self.bus.emit(StoreEvent.FEED_LOADED, {"count": 10})

        assert received == [{"count": 10}]

    @pytest.mark.asyncio
    async def test_other_events_not_delivered(self):
        received = []

        @self.bus.on(StoreEvent.SAVE_FAILED)
        async def handler(data: dict):
            received.append(data)

        await self.bus.emit(StoreEvent.SAVE_COMPLETED, {})

        assert received == []

    @pytest.mark.asyncio
    async def test_wildcard_handler(self):
        """Wildcard handler receives all events."""
        received = []

        @self.bus.on()
        async def wildcard_handler(data: dict):
            received.append(data)

        await self.bus.emit(StoreEvent.TABLE_UPLOADED, {"type": "upload"})
        await self.bus.emit(StoreEvent.TABLE_DELETED, {"type": "delete"})

        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_handler_isolation(self):
        """Failing handler doesn't affect other handlers."""
        results = []

        @self.bus.on(StoreEvent.OVERRIDE_CHANGED)
        async def failing_handler(data: dict):
            raise ValueError("Handler error")

        @self.bus.on(StoreEvent.OVERRIDE_CHANGED)
        async def working_handler(data: dict):
            results.append("success")

        await self.bus.emit(StoreEvent.OVERRIDE_CHANGED, {})

        assert results == ["success"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        received = []

        async def handler(data: dict):
            received.append(data)

        self.bus.subscribe(StoreEvent.FEED_FAILED, handler)
        await self.bus.emit(StoreEvent.FEED_FAILED, {"n": 1})

        assert self.bus.unsubscribe(StoreEvent.FEED_FAILED, handler) is True
        assert self.bus.unsubscribe(StoreEvent.FEED_FAILED, handler) is False

        await self.bus.emit(StoreEvent.FEED_FAILED, {"n": 2})
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_get_history(self):
        await self.bus.emit(StoreEvent.TABLE_UPLOADED, {"n": 1})
        await self.bus.emit(StoreEvent.TABLE_DELETED, {"n": 2})
        await self.bus.emit(StoreEvent.TABLE_UPLOADED, {"n": 3})

        assert len(self.bus.get_history(limit=10)) == 3
        assert len(self.bus.get_history(event_type=StoreEvent.TABLE_UPLOADED)) == 2

    @pytest.mark.asyncio
    async def test_history_limit(self):
        """History respects max_history limit."""
        bus = EventBus(max_history=5)

        for i in range(10):
            await bus.emit(StoreEvent.SAVE_COMPLETED, {"n": i})

        history = bus.get_history()
        assert len(history) == 5
        assert history[-1]["data"]["n"] == 9

    @pytest.mark.asyncio
    async def test_clear_handlers(self):
        received = []

        @self.bus.on(StoreEvent.SAVE_FAILED)
        async def handler(data):
            received.append(data)

        self.bus.clear_handlers()
        await self.bus.emit(StoreEvent.SAVE_FAILED, {})

        assert received == []


class TestEvent:
    """Tests for Event class."""

    def test_event_to_dict(self):
        event = Event(type=StoreEvent.FEED_FAILED, data={"kind": "crm"})
        d = event.to_dict()

        assert d["event_type"] == "feed.failed"
        assert d["data"] == {"kind": "crm"}
        assert "timestamp" in d
