"""
Workspace notifications.

Simple publish/subscribe used to surface feed failures, save status and
data changes to whatever UI layer sits on top of the library.

Usage:
    from pricedesk.events import events, StoreEvent

    @events.on(StoreEvent.FEED_FAILED)
    async def notify(data: dict):
        show_toast(f"Feed {data['kind']} failed: {data['error']}")

    await events.emit(StoreEvent.FEED_FAILED, {"kind": "crm", "error": "timeout"})
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from pricedesk.observability import get_logger

logger = get_logger(__name__)

# Type for event handlers
EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class StoreEvent(Enum):
    """Events emitted by the workspace and its collaborators."""

    TABLE_UPLOADED = "table.uploaded"
    TABLE_DELETED = "table.deleted"
    OVERRIDE_CHANGED = "override.changed"

    FEED_LOADED = "feed.loaded"
    FEED_FAILED = "feed.failed"

    SAVE_COMPLETED = "save.completed"
    SAVE_FAILED = "save.failed"


@dataclass
class Event:
    """Wrapper for event data with metadata."""

    type: StoreEvent
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for logging/serialization."""
        return {
            "event_type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class EventBus:
    """
    Async event bus for publish/subscribe.

    Features:
    - Multiple handlers per event
    - Wildcard subscriptions (subscribe to all events)
    - Error isolation (one handler failure doesn't affect others)
    - Event history for debugging
    """

    def __init__(self, max_history: int = 100):
        self._handlers: Dict[StoreEvent, List[EventHandler]] = {}
        self._wildcard_handlers: List[EventHandler] = []
        self._history: List[Event] = []
        self._max_history = max_history

    def on(self, event_type: Optional[StoreEvent] = None) -> Callable[[EventHandler], EventHandler]:
        """
        Decorator to register an event handler.

        Args:
            event_type: Event type to subscribe to, or None for all events
        """

        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def subscribe(self, event_type: Optional[StoreEvent], handler: EventHandler) -> None:
        """Programmatically subscribe to an event (None for all events)."""
        if event_type is None:
            self._wildcard_handlers.append(handler)
        else:
            self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"Registered handler {getattr(handler, '__name__', handler)}")

    def unsubscribe(self, event_type: Optional[StoreEvent], handler: EventHandler) -> bool:
        """
        Unsubscribe a handler from an event.

        Returns:
            True if handler was found and removed
        """
        handlers = self._wildcard_handlers if event_type is None else self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def emit(self, event_type: StoreEvent, data: Optional[Dict[str, Any]] = None) -> Event:
        """
        Emit an event to all subscribed handlers.

        Returns:
            The emitted Event object
        """
        event = Event(type=event_type, data=data or {})

        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._wildcard_handlers)

        if not handlers:
            logger.debug(f"No handlers for event {event_type.value}")
            return event

        results = await asyncio.gather(
            *[handler(event.data) for handler in handlers],
            return_exceptions=True,
        )

        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Handler {getattr(handler, '__name__', handler)} failed for {event_type.value}: {result}",
                    extra={"event": event.to_dict()},
                )

        return event

    def get_history(self, event_type: Optional[StoreEvent] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Get recent event history, optionally filtered by type."""
        history = self._history
        if event_type:
            history = [e for e in history if e.type == event_type]
        return [e.to_dict() for e in history[-limit:]]

    def clear_handlers(self) -> None:
        """Remove all handlers (useful for testing)."""
        self._handlers.clear()
        self._wildcard_handlers.clear()


# Global event bus instance
events = EventBus()
