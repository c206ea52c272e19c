from __future__ import annotations

import asyncio
import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from redis.exceptions import RedisError

from sessionguard.clock import Clock, MonotonicClock
from sessionguard.logging import get_logger
from sessionguard.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitSnapshot:
    name: str
    state: CircuitState
    consecutive_failures: int
    opened_at: Optional[float]
    transitions: Dict[Tuple[str, str], int] = field(default_factory=dict)


StateListener = Callable[[str, CircuitState, CircuitState], None]


class CircuitBreaker:
    """
    In-process circuit breaker for one backing-store dependency.

    - closed: allow; consecutive failures are counted
    - open: deny until the cooldown has elapsed
    - half_open: allow one trial call; success closes, failure re-opens
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Optional[Clock] = None,
        on_state_change: Optional[StateListener] = None,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock or MonotonicClock()
        self.on_state_change = on_state_change
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._half_open_inflight = False
        self._transitions: Counter = Counter()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            return CircuitSnapshot(
                name=self.name,
                state=self._state,
                consecutive_failures=self._failures,
                opened_at=self._opened_at,
                transitions=dict(self._transitions),
            )

    def _transition(self, new_state: CircuitState) -> Optional[Tuple[CircuitState, CircuitState]]:
        # caller holds _lock
        old_state = self._state
        if old_state is new_state:
            return None
        self._state = new_state
        self._transitions[(old_state.value, new_state.value)] += 1
        return old_state, new_state

    def _notify(self, change: Optional[Tuple[CircuitState, CircuitState]]) -> None:
        if change is None:
            return
        old_state, new_state = change
        logger.warning(
            "circuit_state_changed",
            circuit=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
        )
        if self.on_state_change:
            self.on_state_change(self.name, old_state, new_state)

    def allow(self) -> bool:
        change = None
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.OPEN:
                elapsed = self.clock.timestamp() - (self._opened_at or 0.0)
                if elapsed < self.cooldown_seconds:
                    return False
                change = self._transition(CircuitState.HALF_OPEN)
                self._half_open_inflight = False
            # half open: exactly one trial call at a time
            if self._half_open_inflight:
                allowed = False
            else:
                self._half_open_inflight = True
                allowed = True
        self._notify(change)
        return allowed

    def mark_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None
            self._half_open_inflight = False
            change = self._transition(CircuitState.CLOSED)
        self._notify(change)

    def mark_failure(self) -> None:
        change = None
        with self._lock:
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN:
                change = self._transition(CircuitState.OPEN)
                self._opened_at = self.clock.timestamp()
                self._half_open_inflight = False
            elif self._state is CircuitState.CLOSED and self._failures >= self.failure_threshold:
                change = self._transition(CircuitState.OPEN)
                self._opened_at = self.clock.timestamp()
        self._notify(change)

    def release_trial(self) -> None:
        """Give back a half-open trial slot whose call never reported an outcome."""
        with self._lock:
            self._half_open_inflight = False

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None
            self._half_open_inflight = False
            self._state = CircuitState.CLOSED


class StoreGuard:
    """Bounds store coroutines with a timeout and feeds outcomes to a breaker.

    Any failure to reach the store surfaces as :class:`StoreUnavailableError`;
    callers decide whether to fail open or closed. Errors raised by the store
    for logical reasons (constraint violations, missing keys) pass through
    and count as a healthy round trip.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        *,
        timeout_seconds: float = 2.0,
    ) -> None:
        self.breaker = breaker
        self.timeout_seconds = timeout_seconds

    async def call(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        if not self.breaker.allow():
            raise StoreUnavailableError(
                f"{self.breaker.name} circuit open", store=self.breaker.name
            )
        try:
            result = await asyncio.wait_for(factory(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            self.breaker.mark_failure()
            logger.warning("store_call_timeout", store=self.breaker.name, operation=operation)
            raise StoreUnavailableError(
                f"{operation} timed out", store=self.breaker.name, timed_out=True
            ) from exc
        except (StoreUnavailableError, RedisError, OSError) as exc:
            self.breaker.mark_failure()
            logger.warning(
                "store_call_failed",
                store=self.breaker.name,
                operation=operation,
                error=str(exc),
            )
            if isinstance(exc, StoreUnavailableError):
                raise
            raise StoreUnavailableError(f"{operation} failed", store=self.breaker.name) from exc
        except Exception:
            self.breaker.mark_success()
            raise
        except BaseException:
            # Cancelled before the store answered; the store's health is unknown
            self.breaker.release_trial()
            raise
        self.breaker.mark_success()
        return result
