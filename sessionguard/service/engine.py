from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

from sessionguard.clock import Clock, MonotonicClock
from sessionguard.config import SessionLimitPolicy, Settings
from sessionguard.logging import correlation_scope, get_logger
from sessionguard.service.credentials import (
    CredentialVerifier,
    MFAVerifier,
    normalize_identifier,
)
from sessionguard.service.detectors import REQUIRE_MFA, ThreatDetector
from sessionguard.service.errors import (
    GENERIC_AUTH_MESSAGE,
    AccountLockedError,
    ConcurrentSessionLimitExceededError,
    InvalidCredentialsError,
    InvalidSessionTransition,
    RateLimitedError,
    ServiceUnavailableError,
    TokenExpiredError,
    TokenMalformedError,
    TokenNotFoundError,
    TokenRevokedError,
    TokenSignatureError,
)
from sessionguard.service.events import SecurityEventLog, SecurityReport
from sessionguard.service.rate_limit import RateLimiter
from sessionguard.service.sessions import SessionSecurityValidator
from sessionguard.service.tokens import SessionMeta, TokenPair, TokenService
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import (
    AccessTokenClaims,
    EventSeverity,
    Fingerprint,
    LoginAttempt,
    SecurityEventType,
)

logger = get_logger(__name__)

_UNAUTHORIZED_ERRORS = (
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
    TokenNotFoundError,
)


@dataclass(frozen=True)
class Denied:
    """Policy denial returned to the caller; ``message`` is safe to show."""

    reason: str
    message: str = GENERIC_AUTH_MESSAGE
    retry_after: int = 0
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MFARequired:
    preauth_token: str
    expires_in: int


LoginResult = Union[TokenPair, MFARequired, Denied]


def _retry_after(until: datetime, now: datetime) -> int:
    return max(1, int((until - now).total_seconds() + 0.999))


class SecurityEngine:
    """Entry point for login, MFA completion, refresh, logout and authorization.

    Receives already-parsed request data (identifier, secret, client address
    and user agent) and returns tokens or a :class:`Denied` decision. Only
    integrity-critical refresh failures are raised: ``TokenReusedError``,
    ``TokenRevokedError``, ``SessionHijackSuspectedError`` and
    ``ServiceUnavailableError``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        tokens: TokenService,
        sessions: SessionSecurityValidator,
        rate_limiter: RateLimiter,
        threats: ThreatDetector,
        events: SecurityEventLog,
        credentials: CredentialVerifier,
        mfa: Optional[MFAVerifier] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        self.tokens = tokens
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.threats = threats
        self.events = events
        self.credentials = credentials
        self.mfa = mfa
        self.clock = clock or MonotonicClock()

    def _locked(self, until: datetime) -> Denied:
        return Denied(
            reason=AccountLockedError.error_code,
            message=AccountLockedError.public_message,
            retry_after=_retry_after(until, self.clock.now()),
        )

    async def _flush_events(self) -> None:
        await self.events.flush(max_events=self.settings.event_flush_batch_size)

    async def _record(
        self,
        *,
        identifier: str,
        ip: str,
        user_agent: Optional[str],
        success: bool,
        subject_id: Optional[str] = None,
        endpoint: str = "login",
    ) -> None:
        location = await self.threats.resolve_location(ip) if success else None
        await self.threats.record_attempt(
            LoginAttempt(
                ip=ip,
                identifier=identifier,
                success=success,
                timestamp=self.clock.now(),
                subject_id=subject_id,
                user_agent=user_agent,
                endpoint=endpoint,
                location=location,
            )
        )

    async def login(
        self,
        identifier: str,
        secret: str,
        *,
        ip: str,
        user_agent: Optional[str] = None,
        scope: Iterable[str] = (),
    ) -> LoginResult:
        with correlation_scope():
            try:
                return await self._login(
                    identifier, secret, ip=ip, user_agent=user_agent, scope=tuple(scope)
                )
            finally:
                await self._flush_events()

    async def _login(
        self,
        identifier: str,
        secret: str,
        *,
        ip: str,
        user_agent: Optional[str],
        scope: tuple,
    ) -> LoginResult:
        identity_key = normalize_identifier(identifier)

        limit = await self.rate_limiter.check_rate_limit(
            f"{ip}:login",
            self.settings.login_rate_limit,
            self.settings.login_rate_limit_window_seconds,
        )
        if not limit.allowed:
            self.events.emit(
                SecurityEventType.RATE_LIMITED,
                EventSeverity.MEDIUM,
                ip=ip,
                endpoint="login",
                retry_after=limit.retry_after,
            )
            # Throttled attempts still count towards attack detection
            await self._record(identifier=identity_key, ip=ip, user_agent=user_agent, success=False)
            assessment = await self.threats.assess(
                ip=ip, identifier=identity_key, user_agent=user_agent
            )
            if assessment.blocked:
                return Denied(
                    reason="blocked",
                    detail={"recommendation": assessment.overall.recommendation},
                )
            return Denied(
                reason=RateLimitedError.error_code,
                message=RateLimitedError.public_message,
                retry_after=limit.retry_after,
            )

        locked_until = await self.rate_limiter.get_lockout(identity_key)
        if locked_until:
            return self._locked(locked_until)
        if await self.rate_limiter.failed_attempts(identity_key) >= self.settings.failed_login_limit:
            lockout = await self.rate_limiter.check_failed_login_attempts(identity_key)
            if not lockout.allowed and lockout.lockout_until:
                return self._locked(lockout.lockout_until)

        assessment = await self.threats.assess(
            ip=ip, identifier=identity_key, user_agent=user_agent
        )
        if assessment.blocked:
            await self._record(identifier=identity_key, ip=ip, user_agent=user_agent, success=False)
            return Denied(
                reason="blocked",
                detail={"recommendation": assessment.overall.recommendation},
            )

        identity = await self.credentials.verify_credentials(identifier, secret)
        if identity is None:
            await self._record(identifier=identity_key, ip=ip, user_agent=user_agent, success=False)
            lockout = await self.rate_limiter.check_failed_login_attempts(identity_key)
            self.events.emit(
                SecurityEventType.LOGIN_FAILED,
                EventSeverity.LOW,
                ip=ip,
                remaining=lockout.remaining,
            )
            if not lockout.allowed and lockout.lockout_until:
                return self._locked(lockout.lockout_until)
            return Denied(reason=InvalidCredentialsError.error_code)

        subject_id = identity.subject_id
        await self.rate_limiter.clear_failed_logins(identity_key)
        # Compare against earlier successes before this one is recorded
        context = await self.threats.analyze_login_context(subject_id, ip, user_agent)
        await self._record(
            identifier=identity_key,
            ip=ip,
            user_agent=user_agent,
            success=True,
            subject_id=subject_id,
        )

        fingerprint = Fingerprint(ip=ip, user_agent=user_agent)
        step_up = self.mfa is not None and any(
            v.recommendation == REQUIRE_MFA for v in context.detected
        )
        if identity.mfa_enabled or step_up:
            self.events.emit(
                SecurityEventType.MFA_REQUIRED,
                EventSeverity.INFO,
                subject_id=subject_id,
                ip=ip,
                step_up=step_up,
            )
            return MFARequired(
                preauth_token=self.tokens.issue_preauth_token(subject_id, fingerprint),
                expires_in=self.settings.preauth_token_ttl_minutes * 60,
            )

        return await self._open_session(subject_id, fingerprint, scope)

    async def complete_mfa(
        self,
        preauth_token: str,
        code: str,
        *,
        ip: str,
        user_agent: Optional[str] = None,
        scope: Iterable[str] = (),
    ) -> Union[TokenPair, Denied]:
        with correlation_scope():
            try:
                return await self._complete_mfa(
                    preauth_token, code, Fingerprint(ip=ip, user_agent=user_agent), tuple(scope)
                )
            finally:
                await self._flush_events()

    async def _complete_mfa(
        self, preauth_token: str, code: str, fingerprint: Fingerprint, scope: tuple
    ) -> Union[TokenPair, Denied]:
        ip = fingerprint.ip
        try:
            claims = await self.tokens.verify_preauth_token(preauth_token, fingerprint)
        except (*_UNAUTHORIZED_ERRORS, TokenRevokedError) as exc:
            self.events.emit(
                SecurityEventType.TOKEN_REJECTED,
                EventSeverity.MEDIUM,
                ip=ip,
                token_type="preauth",
                error=exc.message,
            )
            return Denied(reason="unauthorized")
        except ServiceUnavailableError:
            return Denied(
                reason=ServiceUnavailableError.error_code,
                message=ServiceUnavailableError.public_message,
            )

        subject_id = str(claims["sub"])
        if self.mfa is None or not await self.mfa.verify(subject_id, code):
            self.events.emit(
                SecurityEventType.MFA_FAILED,
                EventSeverity.MEDIUM,
                subject_id=subject_id,
                ip=ip,
            )
            lockout = await self.rate_limiter.check_failed_login_attempts(f"mfa:{subject_id}")
            if not lockout.allowed and lockout.lockout_until:
                return self._locked(lockout.lockout_until)
            return Denied(reason="unauthorized")

        await self.rate_limiter.clear_failed_logins(f"mfa:{subject_id}")
        return await self._open_session(subject_id, fingerprint, scope)

    async def _open_session(
        self, subject_id: str, fingerprint: Fingerprint, scope: tuple
    ) -> Union[TokenPair, Denied]:
        concurrency = await self.sessions.check_concurrent_sessions(subject_id)
        if not concurrency.allowed and self.settings.session_limit_policy is SessionLimitPolicy.REJECT:
            self.events.emit(
                SecurityEventType.CONCURRENT_SESSION_LIMIT,
                EventSeverity.LOW,
                subject_id=subject_id,
                ip=fingerprint.ip,
                current_count=concurrency.current_count,
                limit=concurrency.limit,
                rejected=True,
            )
            return Denied(
                reason=ConcurrentSessionLimitExceededError.error_code,
                message="Too many active sessions",
            )
        if not concurrency.allowed:
            for session_id in concurrency.terminate_session_ids:
                await self._evict_session(session_id)
            self.events.emit(
                SecurityEventType.CONCURRENT_SESSION_LIMIT,
                EventSeverity.LOW,
                subject_id=subject_id,
                ip=fingerprint.ip,
                current_count=concurrency.current_count,
                limit=concurrency.limit,
                terminated=list(concurrency.terminate_session_ids),
            )

        try:
            pair = await self.tokens.issue_token_pair(
                subject_id,
                SessionMeta(ip=fingerprint.ip, user_agent=fingerprint.user_agent, scope=scope),
            )
        except ServiceUnavailableError:
            return Denied(
                reason=ServiceUnavailableError.error_code,
                message=ServiceUnavailableError.public_message,
            )

        try:
            await self.sessions.register_session(
                subject_id,
                fingerprint,
                token_family=pair.token_family,
                session_id=pair.session_id,
            )
        except StoreUnavailableError as exc:
            self.events.degraded(exc.store, "register_session", subject=subject_id)

        self.events.emit(
            SecurityEventType.LOGIN_SUCCEEDED,
            EventSeverity.INFO,
            subject_id=subject_id,
            ip=fingerprint.ip,
            session_id=pair.session_id,
        )
        logger.info("login_succeeded", subject_id=subject_id, session_id=pair.session_id)
        return pair

    async def _evict_session(self, session_id: str) -> None:
        try:
            terminated = await self.sessions.terminate_session(
                session_id, "concurrent_session_limit"
            )
            if terminated.token_family:
                await self.tokens.revoke_family(terminated.token_family, reason="session_limit")
        except (InvalidSessionTransition, StoreUnavailableError, ServiceUnavailableError) as exc:
            logger.warning("session_eviction_failed", session_id=session_id, error=str(exc))

    async def refresh(
        self, refresh_token: str, *, ip: str, user_agent: Optional[str] = None
    ) -> Union[TokenPair, Denied]:
        fingerprint = Fingerprint(ip=ip, user_agent=user_agent)
        with correlation_scope():
            try:
                return await self.tokens.verify_and_rotate_refresh_token(refresh_token, fingerprint)
            except _UNAUTHORIZED_ERRORS as exc:
                self.events.emit(
                    SecurityEventType.TOKEN_REJECTED,
                    EventSeverity.LOW,
                    ip=ip,
                    token_type="refresh",
                    error=exc.message,
                )
                return Denied(reason="unauthorized")
            finally:
                await self._flush_events()

    async def logout(self, refresh_token: str, *, all_sessions: bool = False) -> bool:
        """Revoke the refresh token and end its session; idempotent."""
        with correlation_scope():
            try:
                return await self._logout(refresh_token, all_sessions)
            finally:
                await self._flush_events()

    async def _logout(self, refresh_token: str, all_sessions: bool) -> bool:
        try:
            claims = self.tokens.decode_refresh_token(refresh_token, verify_exp=False)
        except (TokenMalformedError, TokenSignatureError):
            return False
        revoked = await self.tokens.revoke_token(refresh_token)
        subject_id = str(claims["sub"])
        session_id = claims.get("session_id")
        if session_id:
            await self._end_session(session_id, logout=True)
        if all_sessions:
            revoked = bool(await self.tokens.revoke_all_for_subject(subject_id)) or revoked
            try:
                active = await self.sessions.list_active_sessions(subject_id)
            except StoreUnavailableError as exc:
                self.events.degraded(exc.store, "logout_all", subject=subject_id)
                active = []
            for session in active:
                await self._end_session(session.session_id, logout=False)
        return revoked

    async def _end_session(self, session_id: str, *, logout: bool) -> None:
        try:
            if logout:
                await self.sessions.logout_session(session_id)
            else:
                await self.sessions.terminate_session(session_id, "logout_all")
        except InvalidSessionTransition:
            logger.info("session_already_ended", session_id=session_id)
        except StoreUnavailableError as exc:
            self.events.degraded(exc.store, "end_session", session_id=session_id)

    def authorize(
        self, access_token: str, required_scope: Optional[str] = None
    ) -> Union[AccessTokenClaims, Denied]:
        """Verify an access token without touching any store."""
        try:
            claims = self.tokens.verify_access_token(access_token)
        except (*_UNAUTHORIZED_ERRORS, TokenRevokedError) as exc:
            self.events.emit(
                SecurityEventType.TOKEN_REJECTED,
                EventSeverity.INFO,
                token_type="access",
                error=exc.message,
            )
            return Denied(reason="unauthorized")
        if required_scope and required_scope not in claims.scope:
            return Denied(reason="forbidden", message="Insufficient scope")
        return claims

    async def security_report(
        self,
        since: datetime,
        until: Optional[datetime] = None,
        *,
        bucket_seconds: int = 3600,
    ) -> SecurityReport:
        await self.events.flush()
        return await self.events.security_report(since, until, bucket_seconds=bucket_seconds)
