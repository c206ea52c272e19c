"""Tests for session integrity checks, concurrency limits and the state machine."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from sessionguard.service.errors import InvalidSessionTransition
from sessionguard.service.sessions import (
    MONITOR,
    TERMINATE_OLDEST_SESSIONS,
    TERMINATE_SESSION,
    can_transition,
)
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import (
    Fingerprint,
    RiskLevel,
    SecurityEventType,
    SessionFingerprint,
    SessionState,
)

UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36"


@pytest.fixture
def session():
    return SessionFingerprint(
        session_id="sess-1",
        subject_id="user-1",
        ip="203.0.113.10",
        user_agent=UA,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        state=SessionState.ACTIVE,
    )


class TestIntegrity:
    def test_matching_fingerprint(self, runtime, session):
        verdict = runtime.sessions.validate_session_integrity(session, session.fingerprint)
        assert verdict.valid
        assert verdict.risk_level is RiskLevel.NONE
        assert verdict.reasons == ()

    def test_ip_and_agent_change_is_critical(self, runtime, session):
        verdict = runtime.sessions.validate_session_integrity(
            session, Fingerprint(ip="198.51.100.7", user_agent="curl/8.0")
        )
        assert not verdict.valid
        assert verdict.risk_level is RiskLevel.CRITICAL
        assert verdict.recommendation == TERMINATE_SESSION
        assert set(verdict.reasons) == {"IP_MISMATCH", "USER_AGENT_MISMATCH"}

    def test_agent_change_is_high(self, runtime, session):
        verdict = runtime.sessions.validate_session_integrity(
            session, Fingerprint(ip=session.ip, user_agent="Other/1.0 browser")
        )
        assert verdict.valid
        assert verdict.risk_level is RiskLevel.HIGH
        assert verdict.recommendation == MONITOR

    def test_ip_change_is_medium(self, runtime, session):
        """Mobile clients hop networks; an IP change alone is only monitored."""
        verdict = runtime.sessions.validate_session_integrity(
            session, Fingerprint(ip="198.51.100.7", user_agent=UA)
        )
        assert verdict.valid
        assert verdict.risk_level is RiskLevel.MEDIUM
        assert verdict.reasons == ("IP_MISMATCH",)


class TestStateMachine:
    @pytest.mark.parametrize(
        "source,target,allowed",
        [
            (SessionState.CREATED, SessionState.ACTIVE, True),
            (SessionState.ACTIVE, SessionState.ROTATED, True),
            (SessionState.ROTATED, SessionState.ACTIVE, True),
            (SessionState.ACTIVE, SessionState.FLAGGED, True),
            (SessionState.FLAGGED, SessionState.ACTIVE, False),
            (SessionState.LOGGED_OUT, SessionState.ACTIVE, False),
            (SessionState.TERMINATED, SessionState.ACTIVE, False),
            (SessionState.TERMINATED, SessionState.TERMINATED, False),
        ],
    )
    def test_transition_table(self, source, target, allowed):
        assert can_transition(source, target) is allowed

    async def test_register_activates(self, runtime):
        session = await runtime.sessions.register_session(
            "user-1", Fingerprint(ip="203.0.113.10", user_agent=UA), token_family="fam"
        )
        assert session.state is SessionState.ACTIVE
        assert session.token_family == "fam"

    async def test_terminated_is_absorbing(self, runtime):
        session = await runtime.sessions.register_session("user-1", Fingerprint(ip="203.0.113.10"))
        await runtime.sessions.terminate_session(session.session_id, "admin")

        with pytest.raises(InvalidSessionTransition):
            await runtime.sessions.transition(session.session_id, SessionState.ACTIVE)
        with pytest.raises(InvalidSessionTransition):
            await runtime.sessions.terminate_session(session.session_id, "again")

    async def test_flagged_session_can_only_terminate(self, runtime):
        session = await runtime.sessions.register_session("user-1", Fingerprint(ip="203.0.113.10"))
        await runtime.sessions.flag_session(session.session_id, "IP_MISMATCH,USER_AGENT_MISMATCH")

        with pytest.raises(InvalidSessionTransition):
            await runtime.sessions.mark_rotated(session.session_id, Fingerprint(ip="203.0.113.10"))
        terminated = await runtime.sessions.terminate_session(session.session_id, "hijack")
        assert terminated.state is SessionState.TERMINATED

        types = [e.type for e in runtime.events.pending_events()]
        assert SecurityEventType.SESSION_HIJACK_SUSPECTED in types

    async def test_logout_ends_session_and_notifies(self, runtime):
        session = await runtime.sessions.register_session("user-1", Fingerprint(ip="203.0.113.10"))
        ended = []
        runtime.sessions.on_terminated = ended.append

        result = await runtime.sessions.logout_session(session.session_id)

        assert result.state is SessionState.TERMINATED
        assert result.terminated_reason == "logout"
        assert [s.session_id for s in ended] == [session.session_id]

    async def test_unknown_session_transition(self, runtime):
        with pytest.raises(InvalidSessionTransition) as exc_info:
            await runtime.sessions.transition("missing", SessionState.ACTIVE)
        assert exc_info.value.detail["state"] is None


class TestConcurrency:
    async def _register(self, runtime, clock, count):
        ids = []
        for _ in range(count):
            session = await runtime.sessions.register_session("user-1", Fingerprint(ip="203.0.113.10"))
            ids.append(session.session_id)
            clock.advance(60)
        return ids

    async def test_room_below_limit(self, runtime, clock):
        await self._register(runtime, clock, 2)
        verdict = await runtime.sessions.check_concurrent_sessions("user-1")
        assert verdict.allowed
        assert verdict.current_count == 2
        assert verdict.limit == 3

    async def test_at_limit_names_oldest(self, runtime, clock):
        ids = await self._register(runtime, clock, 3)

        verdict = await runtime.sessions.check_concurrent_sessions("user-1")

        assert not verdict.allowed
        assert verdict.current_count == 3
        assert verdict.recommendation == TERMINATE_OLDEST_SESSIONS
        assert verdict.terminate_session_ids == (ids[0],)

    async def test_ended_sessions_do_not_count(self, runtime, clock):
        ids = await self._register(runtime, clock, 3)
        await runtime.sessions.terminate_session(ids[1], "admin")

        verdict = await runtime.sessions.check_concurrent_sessions("user-1")
        assert verdict.allowed
        assert verdict.current_count == 2

    async def test_fails_open(self, runtime):
        runtime.store.list_subject_sessions = AsyncMock(side_effect=StoreUnavailableError("down"))

        verdict = await runtime.sessions.check_concurrent_sessions("user-1")

        assert verdict.allowed
        assert verdict.degraded
