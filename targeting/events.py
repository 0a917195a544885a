"""
Event sink contract plus an in-process bus for dashboards/notifiers.

Engines hold an injected `EventSink` and call `emit` directly. The bus fans
events out to subscribed listeners with at-least-once delivery, so listeners
must tolerate duplicates (see `DedupingListener`).
"""
from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict, defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

WILDCARD = "*"


class EventType(str, Enum):
    OPPORTUNITY_CREATED = "opportunity-created"
    OPPORTUNITY_TRANSITIONED = "opportunity-transitioned"
    READINESS_CHANGED = "readiness-changed"
    CRITERIA_UPDATED = "criteria-updated"
    REMATCH_COMPLETED = "rematch-completed"
    AUTO_APPROVAL_COMPLETED = "auto-approval-completed"


@dataclass(frozen=True)
class Event:
    type: EventType
    campaign_id: str
    organization_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = ""
    event_id: str = ""

    def __post_init__(self):
        if not self.timestamp:
            object.__setattr__(self, "timestamp", datetime.now(timezone.utc).isoformat())
        if not self.event_id:
            object.__setattr__(self, "event_id", str(uuid.uuid4()))


def make_event(
    event_type: EventType,
    *,
    campaign_id: str,
    organization_id: str,
    payload: Optional[Dict[str, Any]] = None,
    at: Optional[datetime] = None,
) -> Event:
    return Event(
        type=event_type,
        campaign_id=campaign_id,
        organization_id=organization_id,
        payload=dict(payload or {}),
        timestamp=at.isoformat() if at else "",
    )


class EventSink(Protocol):
    def emit(self, event: Event) -> None:
        ...


Listener = Callable[[Event], None]


class NullSink:
    def emit(self, event: Event) -> None:
        return None


class RecordingSink:
    """Collects emitted events; handy for tests and dry wiring."""

    def __init__(self) -> None:
        self.events: List[Event] = []
        self._lock = threading.Lock()

    def emit(self, event: Event) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: EventType) -> List[Event]:
        with self._lock:
            return [event for event in self.events if event.type == event_type]


class EventBus:
    def __init__(self, max_attempts: int = 3, history_size: int = 200) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._history: Deque[Event] = deque(maxlen=history_size)
        self._max_attempts = max(1, max_attempts)
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener, event_type: EventType | str = WILDCARD) -> None:
        key = event_type.value if isinstance(event_type, EventType) else str(event_type)
        with self._lock:
            self._listeners[key].append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            for listeners in self._listeners.values():
                if listener in listeners:
                    listeners.remove(listener)

    def emit(self, event: Event) -> None:
        with self._lock:
            targets = list(self._listeners.get(event.type.value, ())) + list(self._listeners.get(WILDCARD, ()))
            self._history.append(event)
        for listener in targets:
            self._deliver(listener, event)

    def recent(self, limit: int = 10) -> List[Event]:
        if limit <= 0:
            return []
        with self._lock:
            return list(self._history)[-limit:]

    def _deliver(self, listener: Listener, event: Event) -> None:
        for attempt in range(1, self._max_attempts + 1):
            try:
                listener(event)
                return
            except Exception as exc:
                logger.warning(
                    "Listener %s failed on %s (attempt %s/%s): %s",
                    getattr(listener, "__name__", repr(listener)),
                    event.type.value,
                    attempt,
                    self._max_attempts,
                    exc,
                )
        logger.error("Giving up delivering %s event %s", event.type.value, event.event_id)


class DedupingListener:
    """
    Wraps a listener so redelivered events are only handled once.

    Keyed on event type, campaign, the payload status (if any) and timestamp.
    """

    def __init__(self, listener: Listener, capacity: int = 1000) -> None:
        self._listener = listener
        self._capacity = capacity
        self._seen: "OrderedDict[Tuple[str, str, str, str], None]" = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def key(event: Event) -> Tuple[str, str, str, str]:
        status = str(event.payload.get("status") or event.payload.get("to_status") or "")
        return event.type.value, event.campaign_id, status, event.timestamp

    def __call__(self, event: Event) -> None:
        key = self.key(event)
        with self._lock:
            if key in self._seen:
                return
        self._listener(event)
        with self._lock:
            self._seen[key] = None
            while len(self._seen) > self._capacity:
                self._seen.popitem(last=False)
