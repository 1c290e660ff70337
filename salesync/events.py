"""
Publish/subscribe bus decoupling sync steps from their consumers.

The result cache listens for refreshed sheets to bump its data version;
callers can listen for sync lifecycle events to update a UI or log summaries.

Usage:
    from salesync.events import events, SyncEvent

    @events.on(SyncEvent.COLLECTION_SYNCED)
    async def handle_collection(data: dict):
        print(f"{data['brand']}/{data['collection']}: {data['changed']} changed")

    await events.emit(SyncEvent.SHEET_REFRESHED, {"key": "kivosSales2025"})
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from salesync.observability import get_logger, get_run_id

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class SyncEvent(Enum):
    """Events emitted by sync and KPI operations."""

    # Orchestration lifecycle
    SYNC_STARTED = "sync.started"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"

    # Per-step events
    COLLECTION_SYNCED = "collection.synced"
    SHEET_REFRESHED = "sheet.refreshed"

    # KPI events
    KPI_COMPUTED = "kpi.computed"
    KPI_CACHE_INVALIDATED = "kpi.cache_invalidated"


@dataclass
class EventMetadata:
    """Metadata attached to every event."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: Optional[str] = field(default_factory=get_run_id)
    source: str = "salesync"


@dataclass
class Event:
    type: SyncEvent
    data: Dict[str, Any]
    metadata: EventMetadata = field(default_factory=EventMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.type.value,
            "data": self.data,
            "metadata": {
                "timestamp": self.metadata.timestamp.isoformat(),
                "run_id": self.metadata.run_id,
                "source": self.metadata.source,
            },
        }


class EventBus:
    """
    Async event bus.

    Handlers for one event run concurrently; a failing handler is logged and
    does not affect the others or the emitter.
    """

    def __init__(self, max_history: int = 100):
        self._handlers: Dict[SyncEvent, List[EventHandler]] = {}
        self._history: List[Event] = []
        self._max_history = max_history

    def on(self, event_type: SyncEvent) -> Callable[[EventHandler], EventHandler]:
        """Decorator registering a handler for event_type."""

        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def subscribe(self, event_type: SyncEvent, handler: EventHandler) -> None:
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)
            logger.debug(f"Registered handler {handler.__name__} for {event_type.value}")

    def unsubscribe(self, event_type: SyncEvent, handler: EventHandler) -> bool:
        """Returns True if the handler was registered."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def emit(
        self,
        event_type: SyncEvent,
        data: Optional[Dict[str, Any]] = None,
        source: str = "salesync",
    ) -> Event:
        """Deliver an event to every handler subscribed to its type."""
        event = Event(type=event_type, data=data or {}, metadata=EventMetadata(source=source))

        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event_type, []))
        if not handlers:
            return event

        results = await asyncio.gather(
            *[handler(event.data) for handler in handlers],
            return_exceptions=True,
        )

        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Handler {handler.__name__} failed for {event_type.value}: {result}",
                    extra={"event": event.to_dict()},
                )

        return event

    def get_history(self, event_type: Optional[SyncEvent] = None, limit: int = 20) -> List[Dict[str, Any]]:
        history = self._history
        if event_type:
            history = [e for e in history if e.type == event_type]
        return [e.to_dict() for e in history[-limit:]]

    def clear_handlers(self) -> None:
        """Remove all handlers (useful for testing)."""
        self._handlers.clear()

    def clear_history(self) -> None:
        self._history.clear()


# Global event bus instance
events = EventBus()

