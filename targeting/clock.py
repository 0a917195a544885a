"""
Injectable clocks so age/freshness maths stays deterministic under test.
"""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock frozen at a given instant; `advance` moves it forward."""

    def __init__(self, at: Optional[datetime] = None) -> None:
        self._now = ensure_utc(at) if at else datetime.now(timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta) -> datetime:
        with self._lock:
            self._now = self._now + delta
            return self._now


def ensure_utc(value: datetime) -> datetime:
    if not value.tzinfo:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
