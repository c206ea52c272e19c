"""Tests for refresh token rotation, reuse detection and fail-closed behaviour.

Rotation is the only path where a store outage denies the request: a token
that cannot be checked against the arena is never exchanged.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from sessionguard.service.errors import (
    ServiceUnavailableError,
    SessionHijackSuspectedError,
    TokenNotFoundError,
    TokenReusedError,
    TokenRevokedError,
)
from sessionguard.service.tokens import TokenPair, hash_token
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import (
    EventSeverity,
    Fingerprint,
    SecurityEventType,
    SessionState,
)

IP = "203.0.113.10"
UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36"
FP = Fingerprint(ip=IP, user_agent=UA)


def events_of(runtime, event_type):
    return [e for e in runtime.events.pending_events() if e.type is event_type]


class TestRotation:
    async def test_rotation_issues_successor_in_same_family(self, runtime, open_session):
        pair = await open_session()

        rotated = await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)

        assert rotated.token_family == pair.token_family
        assert rotated.session_id == pair.session_id
        assert rotated.rotation_count == 1
        assert rotated.refresh_token != pair.refresh_token
        old = await runtime.store.get_refresh_token(hash_token(pair.refresh_token))
        assert old.revoked and old.replaced_by is not None

    async def test_rotation_preserves_scope(self, runtime, open_session):
        pair = await open_session()
        rotated = await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)
        assert runtime.tokens.verify_access_token(rotated.access_token).scope == ("user",)

    async def test_chain_of_rotations(self, runtime, open_session):
        pair = await open_session()
        for expected in (1, 2, 3):
            pair = await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)
            assert pair.rotation_count == expected

        family = await runtime.store.list_family(pair.token_family)
        assert [r.revoked for r in family] == [True, True, True, False]

    async def test_session_returns_to_active(self, runtime, open_session):
        pair = await open_session()
        await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)

        session = await runtime.store.get_session(pair.session_id)
        assert session.state is SessionState.ACTIVE

    async def test_unknown_token_rejected(self, runtime, open_session):
        pair = await open_session()
        runtime.store.refresh_tokens.clear()

        with pytest.raises(TokenNotFoundError):
            await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)


class TestReuseDetection:
    async def test_replay_revokes_family(self, runtime, open_session):
        pair = await open_session()
        successor = await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)

        with pytest.raises(TokenReusedError):
            await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)

        family = await runtime.store.list_family(pair.token_family)
        assert all(r.revoked for r in family)
        # The legitimate successor is burned along with the family
        with pytest.raises(TokenRevokedError):
            await runtime.tokens.verify_and_rotate_refresh_token(successor.refresh_token, FP)

        reused = events_of(runtime, SecurityEventType.TOKEN_REUSED)
        assert reused[-1].severity is EventSeverity.CRITICAL
        session = await runtime.store.get_session(pair.session_id)
        assert session.state is SessionState.TERMINATED

    async def test_concurrent_rotation_has_one_winner(self, runtime, open_session):
        pair = await open_session()

        results = await asyncio.gather(
            runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP),
            runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, TokenPair)]
        losers = [r for r in results if isinstance(r, TokenReusedError)]
        assert len(winners) == 1
        assert len(losers) == 1

        family = await runtime.store.list_family(pair.token_family)
        assert len(family) == 2
        assert all(r.revoked for r in family)


class TestGraceWindow:
    @pytest.fixture
    def settings_overrides(self):
        return {"rotation_grace_seconds": 2}

    async def test_replay_within_grace_keeps_family(self, runtime, clock, open_session):
        pair = await open_session()
        successor = await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)

        clock.advance(1)
        with pytest.raises(TokenReusedError) as exc_info:
            await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)
        assert exc_info.value.detail["within_grace"] is True

        # Successor still usable
        again = await runtime.tokens.verify_and_rotate_refresh_token(successor.refresh_token, FP)
        assert again.rotation_count == 2

    async def test_second_replay_within_grace_revokes(self, runtime, clock, open_session):
        pair = await open_session()
        await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)

        with pytest.raises(TokenReusedError):
            await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)
        with pytest.raises(TokenReusedError) as exc_info:
            await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)

        assert exc_info.value.detail["within_grace"] is False
        family = await runtime.store.list_family(pair.token_family)
        assert all(r.revoked for r in family)

    async def test_replay_after_grace_revokes(self, runtime, clock, open_session):
        pair = await open_session()
        await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)

        clock.advance(3)
        with pytest.raises(TokenReusedError) as exc_info:
            await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)
        assert exc_info.value.detail["within_grace"] is False

    async def test_replay_from_other_client_revokes(self, runtime, open_session):
        pair = await open_session()
        await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)

        with pytest.raises(TokenReusedError) as exc_info:
            await runtime.tokens.verify_and_rotate_refresh_token(
                pair.refresh_token, Fingerprint(ip="198.51.100.7", user_agent=UA)
            )
        assert exc_info.value.detail["within_grace"] is False


class TestSessionIntegrityOnRefresh:
    async def test_ip_and_agent_change_is_hijack(self, runtime, open_session):
        pair = await open_session()

        with pytest.raises(SessionHijackSuspectedError) as exc_info:
            await runtime.tokens.verify_and_rotate_refresh_token(
                pair.refresh_token, Fingerprint(ip="198.51.100.7", user_agent="curl/8.0")
            )

        assert exc_info.value.detail["risk_level"] == "CRITICAL"
        assert exc_info.value.detail["recommendation"] == "TERMINATE_SESSION"
        session = await runtime.store.get_session(pair.session_id)
        assert session.state is SessionState.FLAGGED
        # Token was not exchanged
        record = await runtime.store.get_refresh_token(hash_token(pair.refresh_token))
        assert not record.revoked

    async def test_flagged_session_cannot_refresh(self, runtime, open_session):
        pair = await open_session()
        with pytest.raises(SessionHijackSuspectedError):
            await runtime.tokens.verify_and_rotate_refresh_token(
                pair.refresh_token, Fingerprint(ip="198.51.100.7", user_agent="curl/8.0")
            )

        with pytest.raises(TokenRevokedError):
            await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)

    async def test_ip_change_alone_rotates_and_records_anomaly(self, runtime, open_session):
        pair = await open_session()

        rotated = await runtime.tokens.verify_and_rotate_refresh_token(
            pair.refresh_token, Fingerprint(ip="198.51.100.7", user_agent=UA)
        )

        assert rotated.rotation_count == 1
        anomalies = events_of(runtime, SecurityEventType.THREAT_DETECTED)
        assert anomalies[-1].severity is EventSeverity.MEDIUM
        assert anomalies[-1].details["reasons"] == ["IP_MISMATCH"]
        session = await runtime.store.get_session(pair.session_id)
        assert session.ip == "198.51.100.7"


class TestFailClosed:
    async def test_token_store_outage_denies_rotation(self, runtime, open_session):
        pair = await open_session()
        runtime.store.get_refresh_token = AsyncMock(
            side_effect=StoreUnavailableError("redis down", store="redis")
        )

        with pytest.raises(ServiceUnavailableError):
            await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)

    async def test_rotate_outage_leaves_token_usable(self, runtime, open_session):
        pair = await open_session()
        original = runtime.store.rotate_refresh_token
        runtime.store.rotate_refresh_token = AsyncMock(side_effect=StoreUnavailableError("down"))

        with pytest.raises(ServiceUnavailableError):
            await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)

        runtime.store.rotate_refresh_token = original
        rotated = await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)
        assert rotated.rotation_count == 1

    async def test_slow_store_times_out(self, runtime, open_session):
        pair = await open_session()
        runtime.tokens.guard.timeout_seconds = 0.01

        async def hang(_token_hash):
            await asyncio.sleep(1)

        runtime.store.get_refresh_token = hang
        with pytest.raises(ServiceUnavailableError):
            await runtime.tokens.verify_and_rotate_refresh_token(pair.refresh_token, FP)
