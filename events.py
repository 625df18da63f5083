"""Observable status channel: engine events that collaborators subscribe to."""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

logger = logging.getLogger(__name__)

ALERT_RAISED = "alert_raised"
BATCH_STARTED = "batch_started"
BATCH_COMPLETED = "batch_completed"
BATCH_SKIPPED = "batch_skipped"
BATCH_FAILED = "batch_failed"
CACHE_REFRESHED = "cache_refreshed"
GENERATION_FAILED = "generation_failed"
GENERATION_TIMEOUT = "generation_timeout"
GENERATION_CANCELLED = "generation_cancelled"
DELIVERY_FAILED = "delivery_failed"


@dataclass(frozen=True)
class Event:
    type: str
    data: dict
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.type, "timestamp": self.timestamp.isoformat(), "data": self.data}


Listener = Callable[[Event], None]


class EventStream:
    """Fan-out of engine events plus a bounded buffer of recent ones."""

    def __init__(self, history_size: int = 200):
        self._listeners: list[tuple[Listener, Optional[frozenset]]] = []
        self._recent: deque = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener,
                  event_types: Optional[Iterable[str]] = None) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        entry = (listener, frozenset(event_types) if event_types is not None else None)
        with self._lock:
            self._listeners.append(entry)

        def unsubscribe():
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return unsubscribe

    def publish(self, event_type: str, data: Optional[dict] = None) -> Event:
        event = Event(event_type, dict(data or {}))
        with self._lock:
            self._recent.append(event)
            listeners = list(self._listeners)
        for listener, types in listeners:
            if types is not None and event_type not in types:
                continue
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Event listener failed for event={event_type}: {e}")
        return event

    def recent(self, event_type: Optional[str] = None, limit: Optional[int] = None) -> list[Event]:
        with self._lock:
            events = [e for e in self._recent if event_type is None or e.type == event_type]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events
