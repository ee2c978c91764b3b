"""
Change Notifications

Observers subscribe to named events on an engine's bus. Each engine owns
its own EventBus; there is no module-level bus.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple

import structlog


logger = structlog.get_logger(__name__)

__all__ = [
    'Event',
    'EventBus',
    'STATE_CHANGED',
    'SYNC_STATE_CHANGED',
    'ALLOCATION_REJECTED',
    'SYNC_ERROR',
]


STATE_CHANGED = "state_changed"
SYNC_STATE_CHANGED = "sync_state_changed"
ALLOCATION_REJECTED = "allocation_rejected"
SYNC_ERROR = "sync_error"


class Event(NamedTuple):
    name: str
    ts: str
    payload: dict


Handler = Callable[[Event], Any]


class EventBus:
    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = {}

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        """Register handler for name; returns a callable that unsubscribes it."""
        if name not in self._subscribers:
            self._subscribers[name] = []
        self._subscribers[name].append(handler)
        return lambda: self.unsubscribe(name, handler)

    def publish(self, name: str, payload: dict) -> List[Any]:
        if name not in self._subscribers:
            return []

        event = Event(
            name=name,
            ts=datetime.now().isoformat(),
            payload=payload
        )

        results = []
        # Copy: a handler may unsubscribe itself
        for handler in list(self._subscribers[name]):
            try:
                results.append(handler(event))
            except Exception as e:
                # A broken observer must not undo a command
                logger.error("event_handler_failed", event_name=name, error=str(e))
        return results

    def unsubscribe(self, name: str, handler: Handler) -> None:
        if name in self._subscribers:
            if handler in self._subscribers[name]:
                self._subscribers[name].remove(handler)
