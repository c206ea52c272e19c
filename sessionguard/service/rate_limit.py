from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sessionguard.clock import Clock, MonotonicClock
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.circuit_breaker import StoreGuard
from sessionguard.service.events import SecurityEventLog
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import EventSeverity, SecurityEventType

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitVerdict:
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: int = 0
    degraded: bool = False


@dataclass(frozen=True)
class LockoutVerdict:
    allowed: bool
    remaining: int
    lockout_until: Optional[datetime] = None
    degraded: bool = False


def _seconds_until(target: datetime, now: datetime) -> int:
    return max(1, math.ceil((target - now).total_seconds()))


class RateLimiter:
    """Fixed-window rate limits and per-identity failed-login lockouts.

    Both checks fail open: when the counter store is unreachable the request
    is allowed and a ``store_degraded`` event is logged.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        guard: StoreGuard,
        events: SecurityEventLog,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.guard = guard
        self.events = events
        self.clock = clock or MonotonicClock()

    @staticmethod
    def _failed_key(subject: str) -> str:
        return f"failed:{subject}"

    @staticmethod
    def _lockout_key(subject: str) -> str:
        return f"lockout:{subject}"

    @staticmethod
    def _strike_key(subject: str) -> str:
        return f"lockstrikes:{subject}"

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> RateLimitVerdict:
        """Count one event against ``key`` and report whether it fits in the window."""
        now = self.clock.now()
        try:
            window = await self.guard.call(
                "increment_counter",
                lambda: self.store.increment_counter(f"rl:{key}", window_seconds, now=now),
            )
        except StoreUnavailableError as exc:
            self.events.degraded(exc.store, "check_rate_limit", key=key)
            logger.warning("rate_limit_fail_open", key=key, error=exc.message)
            return RateLimitVerdict(
                allowed=True,
                remaining=limit,
                reset_at=now + timedelta(seconds=window_seconds),
                degraded=True,
            )
        allowed = window.count <= limit
        return RateLimitVerdict(
            allowed=allowed,
            remaining=max(0, limit - window.count),
            reset_at=window.reset_at,
            retry_after=0 if allowed else _seconds_until(window.reset_at, now),
        )

    async def failed_attempts(self, subject: str) -> int:
        """Peek at the failed-login count for ``subject`` without incrementing it."""
        now = self.clock.now()
        try:
            window = await self.guard.call(
                "get_counter",
                lambda: self.store.get_counter(self._failed_key(subject), now=now),
            )
        except StoreUnavailableError as exc:
            self.events.degraded(exc.store, "failed_attempts")
            return 0
        return window.count if window else 0

    async def get_lockout(self, subject: str) -> Optional[datetime]:
        now = self.clock.now()
        try:
            return await self.guard.call(
                "get_lockout",
                lambda: self.store.get_lockout(self._lockout_key(subject), now=now),
            )
        except StoreUnavailableError as exc:
            self.events.degraded(exc.store, "get_lockout")
            logger.warning("lockout_check_fail_open", error=exc.message)
            return None

    async def check_failed_login_attempts(self, subject: str) -> LockoutVerdict:
        """Record one failed login for ``subject`` and apply the lockout policy.

        Attempts up to ``failed_login_limit`` inside the window are allowed with
        a decreasing ``remaining``; the next one locks the identity. Each new
        lockout inside the strike window doubles the duration, capped at
        ``lockout_max_seconds``.
        """
        limit = self.settings.failed_login_limit
        now = self.clock.now()
        try:
            existing = await self.guard.call(
                "get_lockout",
                lambda: self.store.get_lockout(self._lockout_key(subject), now=now),
            )
            if existing:
                return LockoutVerdict(allowed=False, remaining=0, lockout_until=existing)

            window = await self.guard.call(
                "increment_counter",
                lambda: self.store.increment_counter(
                    self._failed_key(subject),
                    self.settings.failed_login_window_seconds,
                    now=now,
                ),
            )
            if window.count <= limit:
                return LockoutVerdict(allowed=True, remaining=limit - window.count)

            strikes = await self.guard.call(
                "increment_counter",
                lambda: self.store.increment_counter(
                    self._strike_key(subject), self.settings.lockout_max_seconds, now=now
                ),
            )
            duration = min(
                self.settings.lockout_base_seconds * (2 ** (strikes.count - 1)),
                self.settings.lockout_max_seconds,
            )
            until = now + timedelta(seconds=duration)
            await self.guard.call(
                "set_lockout",
                lambda: self.store.set_lockout(self._lockout_key(subject), until, now=now),
            )
            await self.guard.call(
                "reset_counter", lambda: self.store.reset_counter(self._failed_key(subject))
            )
        except StoreUnavailableError as exc:
            self.events.degraded(exc.store, "check_failed_login_attempts")
            logger.warning("lockout_fail_open", error=exc.message)
            return LockoutVerdict(allowed=True, remaining=limit, degraded=True)

        self.events.emit(
            SecurityEventType.ACCOUNT_LOCKED,
            EventSeverity.HIGH,
            identifier=subject,
            lockout_seconds=duration,
            strikes=strikes.count,
            lockout_until=until.isoformat(),
        )
        logger.warning("account_locked", lockout_seconds=duration, strikes=strikes.count)
        return LockoutVerdict(allowed=False, remaining=0, lockout_until=until)

    async def clear_failed_logins(self, subject: str) -> None:
        try:
            await self.guard.call(
                "reset_counter", lambda: self.store.reset_counter(self._failed_key(subject))
            )
        except StoreUnavailableError as exc:
            self.events.degraded(exc.store, "clear_failed_logins")

    async def unlock_account(self, subject: str) -> bool:
        """Lift a lockout early and forget the failures and strikes behind it.

        Used by administrators after verifying the account owner; returns
        False when the counter store could not be reached.
        """
        try:
            await self.guard.call(
                "clear_lockout", lambda: self.store.clear_lockout(self._lockout_key(subject))
            )
            for key in (self._failed_key(subject), self._strike_key(subject)):
                await self.guard.call("reset_counter", lambda key=key: self.store.reset_counter(key))
        except StoreUnavailableError as exc:
            self.events.degraded(exc.store, "unlock_account")
            logger.warning("account_unlock_failed", error=exc.message)
            return False
        self.events.emit(SecurityEventType.ACCOUNT_UNLOCKED, EventSeverity.INFO, identifier=subject)
        logger.info("account_unlocked")
        return True
