from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sessionguard.clock import Clock, MonotonicClock
from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.circuit_breaker import CircuitBreaker, CircuitState, StoreGuard
from sessionguard.service.credentials import (
    CredentialVerifier,
    MFAVerifier,
    PasswordCredentialVerifier,
)
from sessionguard.service.detectors import ThreatDetector
from sessionguard.service.engine import SecurityEngine
from sessionguard.service.events import SecurityEventLog
from sessionguard.service.geo import HttpGeoResolver
from sessionguard.service.rate_limit import RateLimiter
from sessionguard.service.sessions import SessionSecurityValidator
from sessionguard.service.tokens import TokenService
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.models import EventSeverity, SecurityEventType
from sessionguard.storage.redis_cache import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, guards and services wired from :class:`Settings`."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        credentials: Optional[CredentialVerifier] = None,
        mfa: Optional[MFAVerifier] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or MonotonicClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            algorithm=self.settings.jwt_algorithm.value,
        )

        self.store = self._build_store()
        self.breakers = {
            name: CircuitBreaker(
                name,
                failure_threshold=self.settings.breaker_failure_threshold,
                cooldown_seconds=self.settings.breaker_cooldown_seconds,
                clock=self.clock,
            )
            for name in ("counters", "tokens", "sessions", "events")
        }
        guards = {
            name: StoreGuard(breaker, timeout_seconds=self.settings.store_timeout_seconds)
            for name, breaker in self.breakers.items()
        }

        self.events = SecurityEventLog(
            self.store,
            guard=guards["events"],
            buffer_size=self.settings.event_buffer_size,
            clock=self.clock,
        )
        for breaker in self.breakers.values():
            breaker.on_state_change = self._record_circuit_change

        self.rate_limiter = RateLimiter(
            self.store,
            self.settings,
            guard=guards["counters"],
            events=self.events,
            clock=self.clock,
        )
        geo = (
            HttpGeoResolver(
                self.settings.geo_lookup_url,
                timeout_seconds=self.settings.geo_lookup_timeout_seconds,
            )
            if self.settings.geo_lookup_url
            else None
        )
        self.threats = ThreatDetector(
            self.store,
            self.settings,
            guard=guards["counters"],
            events=self.events,
            geo=geo,
            clock=self.clock,
        )
        self.sessions = SessionSecurityValidator(
            self.store,
            self.settings,
            guard=guards["sessions"],
            events=self.events,
            clock=self.clock,
        )
        self.tokens = TokenService(
            self.store,
            self.settings,
            guard=guards["tokens"],
            events=self.events,
            sessions=self.sessions,
            clock=self.clock,
        )
        self.sessions.on_terminated = lambda session: self.tokens.mark_session_terminated(
            session.session_id
        )
        self.credentials = credentials or PasswordCredentialVerifier()
        self.engine = SecurityEngine(
            self.settings,
            tokens=self.tokens,
            sessions=self.sessions,
            rate_limiter=self.rate_limiter,
            threats=self.threats,
            events=self.events,
            credentials=self.credentials,
            mfa=mfa,
            clock=self.clock,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            geo_enabled=geo is not None,
            detectors=self.threats.registry.names,
            max_concurrent_sessions=self.settings.max_concurrent_sessions,
        )

    def _build_store(self):
        settings = self.settings
        retention = {
            "login_history_retention_seconds": settings.login_history_retention_seconds,
            "subject_history_retention_seconds": settings.subject_history_retention_seconds,
        }
        if settings.use_memory_store:
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryStore(**retention)

        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                store = RedisStore(
                    settings.redis_url,
                    socket_timeout=settings.store_timeout_seconds,
                    **retention,
                )
                store.verify_connection()
                logger.info(
                    "runtime_store_initialized",
                    store_type="redis",
                    redis_url=_mask_url_password(settings.redis_url),
                )
                return store
            except Exception as exc:
                redis_error = exc

        if not settings.test_mode and not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for token state, counters and sessions; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; token state, counters and "
                "sessions are in-process only."
            ),
            mode=fallback_mode,
        )
        return MemoryStore(**retention)

    def _record_circuit_change(
        self, name: str, old_state: CircuitState, new_state: CircuitState
    ) -> None:
        severity = EventSeverity.INFO if new_state is CircuitState.CLOSED else EventSeverity.DEGRADED
        self.events.emit(
            SecurityEventType.CIRCUIT_STATE_CHANGED,
            severity,
            circuit=name,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    async def close(self) -> None:
        await self.events.flush()
        if isinstance(self.store, RedisStore):
            await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
