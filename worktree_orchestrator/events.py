"""Typed progress events published by the orchestrator.

Callers subscribe a handler to an :class:`EventStream`; the orchestrator
publishes to it from the scheduler thread. Handlers must be quick, and a
handler that raises is reported and skipped, never allowed to break the
scheduler.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional


class EventType(Enum):
    STARTED = "started"
    PHASE_CHANGED = "phase_changed"
    PROGRESS = "progress"
    WORKSPACE_CREATED = "workspace_created"
    WORKSTREAM_STARTED = "workstream_started"
    WORKSTREAM_COMPLETED = "workstream_completed"
    WORKSTREAM_FAILED = "workstream_failed"
    WORKSTREAM_BLOCKED = "workstream_blocked"
    MERGED = "merged"
    CONFLICT = "conflict"
    CLEANUP_COMPLETED = "cleanup_completed"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class ProgressEvent:
    type: EventType
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


Handler = Callable[[ProgressEvent], None]


class EventStream:
    """Outbound channel of :class:`ProgressEvent` objects."""

    def __init__(self, history_size: int = 500, debug: bool = False):
        self.debug = debug
        self._handlers: List[Handler] = []
        self._lock = threading.Lock()
        self._history: Deque[ProgressEvent] = deque(maxlen=history_size)

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register *handler*; returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)
        return unsubscribe

    def publish(self, event: ProgressEvent):
        with self._lock:
            self._history.append(event)
            handlers = list(self._handlers)
        if self.debug:
            print(f"[ORCH-EVENT] {event.type.value} {event.data}")
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                print(f"[ORCH] Warning: event handler failed on "
                      f"{event.type.value}: {exc}")

    def emit(self, event_type: EventType, session_id: str,
             **data) -> ProgressEvent:
        event = ProgressEvent(type=event_type, session_id=session_id,
                              data=data)
        self.publish(event)
        return event

    def history(self, event_type: Optional[EventType] = None
                ) -> List[ProgressEvent]:
        with self._lock:
            events = list(self._history)
        if event_type is None:
            return events
        return [e for e in events if e.type == event_type]
