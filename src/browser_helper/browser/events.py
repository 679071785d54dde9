"""
Event Bus

Fire-and-forget notifications from the background core to whatever UI or
content layer is listening. Delivery is best effort: a broadcast with no
subscribers, or a failing subscriber, never affects the sender.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Union

import structlog

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    """Event names emitted by the background core"""
    FEATURE_ACTIVATED = "feature:activated"
    FEATURE_DEACTIVATED = "feature:deactivated"
    FEATURES_RESTORED = "features:restored"
    API_READY = "api:ready"
    API_ERROR = "api:error"
    BACKGROUND_INITIALIZED = "background:initialized"
    BACKGROUND_ERROR = "background:error"


@dataclass
class Event:
    """A broadcast message"""
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, **self.payload}


EventHandler = Callable[[Event], Union[Awaitable[Any], Any]]


class EventBus:
    """Broadcasts events to subscribers without waiting for them"""

    def __init__(self, history_size: int = 100):
        self._subscribers: Dict[str, List[EventHandler]] = {}
        self._pending: Set[asyncio.Task] = set()
        self.history: Deque[Event] = deque(maxlen=history_size)

    def subscribe(self, event_type: Union[EventType, str], handler: EventHandler) -> Callable[[], None]:
        """Register a handler; '*' receives every event"""
        key = event_type.value if isinstance(event_type, EventType) else event_type
        self._subscribers.setdefault(key, []).append(handler)

        def unsubscribe():
            handlers = self._subscribers.get(key, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def broadcast(self, event_type: Union[EventType, str], **payload) -> Event:
        """Send an event; handler failures are logged and dropped"""
        key = event_type.value if isinstance(event_type, EventType) else event_type
        event = Event(type=key, payload=payload)
        self.history.append(event)

        handlers = self._subscribers.get(key, []) + self._subscribers.get("*", [])
        if not handlers:
            logger.debug("Event broadcast with no listeners", event_type=key)
            return event

        for handler in list(handlers):
            try:
                result = handler(event)
            except Exception as e:
                logger.warning("Event handler failed", event_type=key, error=str(e))
                continue
            if asyncio.iscoroutine(result):
                self._schedule(result, key)

        return event

    def _schedule(self, coro, event_type: str):
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("No running loop for async event handler", event_type=event_type)
            return
        self._pending.add(task)
        task.add_done_callback(lambda t: self._on_done(t, event_type))

    def _on_done(self, task: asyncio.Task, event_type: str):
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Async event handler failed", event_type=event_type, error=str(error))

    def events_of(self, event_type: Union[EventType, str]) -> List[Event]:
        """Recorded events of one type, oldest first"""
        key = event_type.value if isinstance(event_type, EventType) else event_type
        return [event for event in self.history if event.type == key]

    async def drain(self, timeout: Optional[float] = None):
        """Wait for in-flight async handlers"""
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=timeout)
