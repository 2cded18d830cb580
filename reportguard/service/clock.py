from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Single time source for every expiry and lockout comparison."""

    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """Manually advanced clock for deterministic tests and replay tooling."""

    def __init__(self, start: datetime | None = None) -> None:
        start = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            raise ValueError("FrozenClock requires a timezone-aware start time")
        self._current = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def advance(self, **delta: float) -> datetime:
        with self._lock:
            self._current = self._current + timedelta(**delta)
            return self._current

    def set(self, value: datetime) -> None:
        with self._lock:
            self._current = value
