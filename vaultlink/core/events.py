"""
Event Channel

Publish/subscribe channel for connection-state, session, transaction-state,
multi-signature and error notifications. Delivery is synchronous, in
subscription order, and a failing listener never affects the publisher or
the other listeners.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple


class EventType(str, Enum):
    """Kinds of notifications pushed to subscribers."""

    CONNECTION_STATE_CHANGED = "connection_state_changed"
    SESSION_CHANGED = "session_changed"
    TRANSACTION_STATE_CHANGED = "transaction_state_changed"
    MULTISIG_PROGRESS = "multisig_progress"
    BATCH_PROGRESS = "batch_progress"
    ERROR = "error"


@dataclass
class Event:
    """A single notification."""

    type: EventType
    payload: Any = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[Event], None]
Unsubscribe = Callable[[], None]


class EventBus:
    """Synchronous publish/subscribe channel."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._listeners: List[Tuple[Optional[EventType], Listener]] = []

    def subscribe(
        self,
        listener: Listener,
        event_type: Optional[EventType] = None,
    ) -> Unsubscribe:
        """
        Register a listener.

        Args:
            listener: Called with every matching Event
            event_type: Restrict to one event type (None = all events)

        Returns:
            A callable that removes the listener. Calling it twice is harmless.
        """
        entry = (event_type, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def publish(self, event_type: EventType, payload: Any = None) -> Event:
        event = Event(type=event_type, payload=payload)

        # Snapshot so listeners may unsubscribe while being notified
        for wanted, listener in list(self._listeners):
            if wanted is not None and wanted != event_type:
                continue
            try:
                listener(event)
            except Exception as e:
                self.logger.error(f"Event listener error for {event_type.value}: {e}")

        return event

    def listener_count(self, event_type: Optional[EventType] = None) -> int:
        if event_type is None:
            return len(self._listeners)
        return sum(1 for wanted, _ in self._listeners if wanted in (None, event_type))

    def clear(self) -> None:
        self._listeners.clear()
