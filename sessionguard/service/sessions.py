from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from sessionguard.clock import Clock, MonotonicClock
from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.circuit_breaker import StoreGuard
from sessionguard.service.errors import InvalidSessionTransition
from sessionguard.service.events import SecurityEventLog
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import (
    EventSeverity,
    Fingerprint,
    RiskLevel,
    SecurityEventType,
    SessionFingerprint,
    SessionState,
)

logger = get_logger(__name__)

TERMINATE_SESSION = "TERMINATE_SESSION"
TERMINATE_OLDEST_SESSIONS = "TERMINATE_OLDEST_SESSIONS"
MONITOR = "MONITOR"

# ACTIVE -> TERMINATED covers eviction by the concurrent-session ceiling.
_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.CREATED: frozenset({SessionState.ACTIVE, SessionState.TERMINATED}),
    SessionState.ACTIVE: frozenset(
        {
            SessionState.ROTATED,
            SessionState.FLAGGED,
            SessionState.LOGGED_OUT,
            SessionState.TERMINATED,
        }
    ),
    SessionState.ROTATED: frozenset(
        {SessionState.ACTIVE, SessionState.FLAGGED, SessionState.TERMINATED}
    ),
    SessionState.FLAGGED: frozenset({SessionState.TERMINATED}),
    SessionState.LOGGED_OUT: frozenset({SessionState.TERMINATED}),
    SessionState.TERMINATED: frozenset(),
}


def allowed_sources(to_state: SessionState) -> Tuple[SessionState, ...]:
    return tuple(state for state, targets in _TRANSITIONS.items() if to_state in targets)


def can_transition(from_state: SessionState, to_state: SessionState) -> bool:
    return to_state in _TRANSITIONS[from_state]


@dataclass(frozen=True)
class IntegrityVerdict:
    valid: bool
    risk_level: RiskLevel
    reasons: Tuple[str, ...] = ()
    recommendation: Optional[str] = None


@dataclass(frozen=True)
class ConcurrencyVerdict:
    allowed: bool
    current_count: int
    limit: int
    recommendation: Optional[str] = None
    terminate_session_ids: Tuple[str, ...] = ()
    degraded: bool = False


TerminationListener = Callable[[SessionFingerprint], None]


class SessionSecurityValidator:
    """Session fingerprint registry, integrity checks and the session state machine.

    Transitions are compare-and-set against the store so two concurrent
    requests cannot both move a session out of the same state.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        guard: StoreGuard,
        events: SecurityEventLog,
        clock: Optional[Clock] = None,
        on_terminated: Optional[TerminationListener] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.guard = guard
        self.events = events
        self.clock = clock or MonotonicClock()
        self.on_terminated = on_terminated

    def validate_session_integrity(
        self, session: SessionFingerprint, observed: Fingerprint
    ) -> IntegrityVerdict:
        ip_changed = session.ip is not None and observed.ip != session.ip
        agent_changed = session.user_agent is not None and observed.user_agent != session.user_agent

        if ip_changed and agent_changed:
            return IntegrityVerdict(
                valid=False,
                risk_level=RiskLevel.CRITICAL,
                reasons=("IP_MISMATCH", "USER_AGENT_MISMATCH"),
                recommendation=TERMINATE_SESSION,
            )
        if agent_changed:
            return IntegrityVerdict(
                valid=True,
                risk_level=RiskLevel.HIGH,
                reasons=("USER_AGENT_MISMATCH",),
                recommendation=MONITOR,
            )
        if ip_changed:
            return IntegrityVerdict(
                valid=True,
                risk_level=RiskLevel.MEDIUM,
                reasons=("IP_MISMATCH",),
                recommendation=MONITOR,
            )
        return IntegrityVerdict(valid=True, risk_level=RiskLevel.NONE)

    async def get_session(self, session_id: str) -> Optional[SessionFingerprint]:
        return await self.guard.call("get_session", lambda: self.store.get_session(session_id))

    async def list_active_sessions(self, subject_id: str) -> List[SessionFingerprint]:
        sessions = await self.guard.call(
            "list_subject_sessions", lambda: self.store.list_subject_sessions(subject_id)
        )
        return [s for s in sessions if s.is_live]

    async def check_concurrent_sessions(self, subject_id: str) -> ConcurrencyVerdict:
        """Report whether ``subject_id`` has room for one more session."""
        limit = self.settings.max_concurrent_sessions
        try:
            active = await self.list_active_sessions(subject_id)
        except StoreUnavailableError as exc:
            self.events.degraded(exc.store, "check_concurrent_sessions", subject=subject_id)
            return ConcurrencyVerdict(allowed=True, current_count=0, limit=limit, degraded=True)

        count = len(active)
        if count < limit:
            return ConcurrencyVerdict(allowed=True, current_count=count, limit=limit)
        excess = count - limit + 1
        return ConcurrencyVerdict(
            allowed=False,
            current_count=count,
            limit=limit,
            recommendation=TERMINATE_OLDEST_SESSIONS,
            terminate_session_ids=tuple(s.session_id for s in active[:excess]),
        )

    async def register_session(
        self,
        subject_id: str,
        fingerprint: Fingerprint,
        *,
        token_family: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> SessionFingerprint:
        now = self.clock.now()
        session = SessionFingerprint(
            session_id=session_id or str(uuid.uuid4()),
            subject_id=subject_id,
            ip=fingerprint.ip,
            user_agent=fingerprint.user_agent,
            created_at=now,
            state=SessionState.CREATED,
            token_family=token_family,
            updated_at=now,
        )
        await self.guard.call("save_session", lambda: self.store.save_session(session))
        active = await self.transition(session.session_id, SessionState.ACTIVE)
        logger.info("session_registered", session_id=session.session_id, subject_id=subject_id)
        return active

    async def transition(
        self,
        session_id: str,
        to_state: SessionState,
        *,
        reason: Optional[str] = None,
        fingerprint: Optional[Fingerprint] = None,
    ) -> SessionFingerprint:
        sources = allowed_sources(to_state)
        now = self.clock.now()
        updated = await self.guard.call(
            "transition_session",
            lambda: self.store.transition_session(
                session_id,
                sources,
                to_state,
                now=now,
                reason=reason,
                ip=fingerprint.ip if fingerprint else None,
                user_agent=fingerprint.user_agent if fingerprint else None,
            ),
        )
        if updated is None:
            current = await self.get_session(session_id)
            current_state = current.state.value if current else None
            raise InvalidSessionTransition(
                f"cannot move session to {to_state.value}",
                detail={"session_id": session_id, "state": current_state, "target": to_state.value},
            )
        return updated

    async def mark_rotated(self, session_id: str, fingerprint: Fingerprint) -> SessionFingerprint:
        """ACTIVE -> ROTATED -> ACTIVE, recording the fingerprint that rotated."""
        await self.transition(session_id, SessionState.ROTATED, fingerprint=fingerprint)
        return await self.transition(session_id, SessionState.ACTIVE)

    async def flag_session(self, session_id: str, reason: str) -> SessionFingerprint:
        flagged = await self.transition(session_id, SessionState.FLAGGED, reason=reason)
        self.events.emit(
            SecurityEventType.SESSION_HIJACK_SUSPECTED,
            EventSeverity.CRITICAL,
            subject_id=flagged.subject_id,
            ip=flagged.ip,
            session_id=session_id,
            reason=reason,
        )
        logger.warning("session_flagged", session_id=session_id, reason=reason)
        return flagged

    async def terminate_session(self, session_id: str, reason: str) -> SessionFingerprint:
        terminated = await self.transition(session_id, SessionState.TERMINATED, reason=reason)
        self.events.emit(
            SecurityEventType.SESSION_TERMINATED,
            EventSeverity.MEDIUM if reason != "logout" else EventSeverity.INFO,
            subject_id=terminated.subject_id,
            session_id=session_id,
            reason=reason,
        )
        if self.on_terminated:
            self.on_terminated(terminated)
        logger.info("session_terminated", session_id=session_id, reason=reason)
        return terminated

    async def logout_session(self, session_id: str) -> SessionFingerprint:
        await self.transition(session_id, SessionState.LOGGED_OUT, reason="logout")
        return await self.terminate_session(session_id, "logout")
