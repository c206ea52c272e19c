from __future__ import annotations

import threading
from collections import defaultdict, deque
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Deque, Dict, Iterable, List, Optional, Set

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import (
    CounterWindow,
    LoginAttempt,
    RefreshTokenRecord,
    SecurityEvent,
    SessionFingerprint,
    SessionState,
)


class MemoryStore:
    """In-process backing store for counters, tokens, sessions and events.

    Methods are coroutines so the store is interchangeable with
    :class:`~sessionguard.storage.redis_cache.RedisStore`, but none of them
    await: each body runs to completion under ``_data_lock``, which makes
    every read-modify-write atomic for both threads and asyncio tasks.
    """

    def __init__(
        self,
        *,
        login_history_retention_seconds: int = 24 * 60 * 60,
        subject_history_retention_seconds: int = 90 * 24 * 60 * 60,
    ) -> None:
        self.logger = get_logger(__name__)
        # RLock so helpers can be composed inside one critical section
        self._data_lock = threading.RLock()
        self.counters: Dict[str, CounterWindow] = {}
        self.lockouts: Dict[str, datetime] = {}
        # Token arena keyed by hash with secondary indexes for bulk revocation
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._family_index: Dict[str, Set[str]] = defaultdict(set)
        self._subject_index: Dict[str, Set[str]] = defaultdict(set)
        self.sessions: Dict[str, SessionFingerprint] = {}
        self._subject_sessions: Dict[str, Set[str]] = defaultdict(set)
        self.login_attempts: Deque[LoginAttempt] = deque()
        # Attempts attributed to a subject are kept longer, per subject
        self._subject_history: Dict[str, Deque[LoginAttempt]] = defaultdict(deque)
        self.security_events: List[SecurityEvent] = []
        self._history_retention = timedelta(seconds=login_history_retention_seconds)
        self._subject_retention = timedelta(seconds=subject_history_retention_seconds)

    # counters
    async def increment_counter(
        self, key: str, window_seconds: int, *, now: datetime, amount: int = 1
    ) -> CounterWindow:
        with self._data_lock:
            window = self.counters.get(key)
            if window is None or window.is_expired(now):
                window = CounterWindow(
                    key=key, window_start=now, count=0, window_seconds=window_seconds
                )
            window.count += amount
            self.counters[key] = window
            return replace(window)

    async def get_counter(self, key: str, *, now: datetime) -> Optional[CounterWindow]:
        with self._data_lock:
            window = self.counters.get(key)
            if window is None:
                return None
            if window.is_expired(now):
                self.counters.pop(key, None)
                return None
            return replace(window)

    async def reset_counter(self, key: str) -> None:
        with self._data_lock:
            self.counters.pop(key, None)

    async def set_lockout(self, key: str, until: datetime, *, now: datetime) -> None:
        with self._data_lock:
            self.lockouts[key] = until

    async def get_lockout(self, key: str, *, now: datetime) -> Optional[datetime]:
        with self._data_lock:
            until = self.lockouts.get(key)
            if until is None:
                return None
            if until <= now:
                self.lockouts.pop(key, None)
                return None
            return until

    async def clear_lockout(self, key: str) -> None:
        with self._data_lock:
            self.lockouts.pop(key, None)

    # refresh tokens
    async def create_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._data_lock:
            self._insert_token(record)

    def _insert_token(self, record: RefreshTokenRecord) -> None:
        if record.token_hash in self.refresh_tokens:
            raise ConstraintViolation(
                "refresh token hash already exists", {"token_family": record.token_family}
            )
        self.refresh_tokens[record.token_hash] = replace(record)
        self._family_index[record.token_family].add(record.token_hash)
        self._subject_index[record.subject_id].add(record.token_hash)

    async def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    async def rotate_refresh_token(
        self, old_hash: str, new_record: RefreshTokenRecord, *, now: datetime
    ) -> bool:
        """Revoke ``old_hash`` and insert its successor as one transaction.

        Returns False without side effects when the old record is missing or
        already revoked, so only one of several concurrent rotations wins.
        """
        with self._data_lock:
            old = self.refresh_tokens.get(old_hash)
            if old is None or old.revoked:
                return False
            self._insert_token(new_record)
            old.revoked = True
            old.revoked_at = now
            old.revoked_reason = "rotated"
            old.replaced_by = new_record.id
            return True

    async def revoke_refresh_token(
        self, token_hash: str, *, now: datetime, reason: str
    ) -> bool:
        with self._data_lock:
            return self._revoke_hashes([token_hash], now=now, reason=reason) == 1

    async def revoke_family(self, token_family: str, *, now: datetime, reason: str) -> int:
        with self._data_lock:
            hashes = list(self._family_index.get(token_family, ()))
            return self._revoke_hashes(hashes, now=now, reason=reason)

    async def revoke_subject_tokens(
        self, subject_id: str, *, now: datetime, reason: str
    ) -> int:
        with self._data_lock:
            hashes = list(self._subject_index.get(subject_id, ()))
            return self._revoke_hashes(hashes, now=now, reason=reason)

    def _revoke_hashes(self, hashes: Iterable[str], *, now: datetime, reason: str) -> int:
        revoked = 0
        for token_hash in hashes:
            record = self.refresh_tokens.get(token_hash)
            if record is None or record.revoked:
                continue
            record.revoked = True
            record.revoked_at = now
            record.revoked_reason = reason
            revoked += 1
        return revoked

    async def list_family(self, token_family: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [
                replace(self.refresh_tokens[h])
                for h in self._family_index.get(token_family, ())
                if h in self.refresh_tokens
            ]
        return sorted(records, key=lambda r: r.rotation_count)

    # sessions
    async def save_session(self, session: SessionFingerprint) -> None:
        with self._data_lock:
            self.sessions[session.session_id] = replace(session)
            self._subject_sessions[session.subject_id].add(session.session_id)

    async def get_session(self, session_id: str) -> Optional[SessionFingerprint]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    async def transition_session(
        self,
        session_id: str,
        from_states: Iterable[SessionState],
        to_state: SessionState,
        *,
        now: datetime,
        reason: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[SessionFingerprint]:
        """Compare-and-set the session state; None when the state did not match."""
        allowed = set(from_states)
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.state not in allowed:
                return None
            session.state = to_state
            session.updated_at = now
            if reason is not None:
                session.terminated_reason = reason
            if ip is not None:
                session.ip = ip
            if user_agent is not None:
                session.user_agent = user_agent
            return replace(session)

    async def list_subject_sessions(self, subject_id: str) -> List[SessionFingerprint]:
        with self._data_lock:
            sessions = [
                replace(self.sessions[sid])
                for sid in self._subject_sessions.get(subject_id, ())
                if sid in self.sessions
            ]
        return sorted(sessions, key=lambda s: s.created_at)

    # login history
    async def record_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(attempt)
            cutoff = attempt.timestamp - self._history_retention
            while self.login_attempts and self.login_attempts[0].timestamp < cutoff:
                self.login_attempts.popleft()
            if attempt.subject_id:
                history = self._subject_history[attempt.subject_id]
                history.append(attempt)
                cutoff = attempt.timestamp - self._subject_retention
                while history and history[0].timestamp < cutoff:
                    history.popleft()

    async def list_login_attempts(
        self,
        *,
        since: datetime,
        ip: Optional[str] = None,
        subject_id: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> List[LoginAttempt]:
        with self._data_lock:
            source = (
                self._subject_history.get(subject_id, ())
                if subject_id is not None
                else self.login_attempts
            )
            return [
                a
                for a in source
                if a.timestamp >= since
                and (ip is None or a.ip == ip)
                and (subject_id is None or a.subject_id == subject_id)
                and (identifier is None or a.identifier == identifier)
            ]

    async def get_last_successful_login(self, subject_id: str) -> Optional[LoginAttempt]:
        with self._data_lock:
            for attempt in reversed(self._subject_history.get(subject_id, ())):
                if attempt.success and attempt.subject_id == subject_id:
                    return attempt
        return None

    # security events (append-only)
    async def append_security_event(self, event: SecurityEvent) -> None:
        with self._data_lock:
            self.security_events.append(event)

    async def list_security_events(
        self, *, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> List[SecurityEvent]:
        with self._data_lock:
            return [
                e
                for e in self.security_events
                if (since is None or e.timestamp >= since)
                and (until is None or e.timestamp < until)
            ]
