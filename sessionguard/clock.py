from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    def timestamp(self) -> float: ...


class MonotonicClock:
    """Wall-clock time that never moves backwards within a process.

    The UTC epoch offset is captured once at construction; afterwards time
    advances with ``time.monotonic()`` so NTP steps cannot make an expired
    token valid again.
    """

    def __init__(self) -> None:
        self._offset = time.time() - time.monotonic()

    def timestamp(self) -> float:
        return self._offset + time.monotonic()

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp(), tz=timezone.utc)


class ManualClock:
    """Deterministic clock for tests and replay tooling."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def timestamp(self) -> float:
        return self.now().timestamp()

    def advance(self, seconds: float = 0.0, **kwargs: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds, **kwargs)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value
