from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import (
    CounterWindow,
    LoginAttempt,
    RefreshTokenRecord,
    SecurityEvent,
    SessionFingerprint,
    SessionState,
)

_PREFIX = "sg"


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_ms(value: int | str) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)


class RedisStore:
    """Redis-backed counters, token arena, sessions and event log.

    Every read-modify-write runs as a Lua script so concurrent engine
    processes never lose updates. Keys are namespaced under ``sg:``.
    Multi-key scripts assume a single Redis primary (not Redis Cluster).
    """

    # Fixed-window counter: reset to zero once the window has elapsed
    _COUNTER_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local amount = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'start', 'count')
local start = tonumber(data[1])
local count = tonumber(data[2])

if start == nil or count == nil or (now - start) >= window_ms then
  start = now
  count = 0
end

count = count + amount
redis.call('HSET', key, 'start', start, 'count', count)
redis.call('PEXPIRE', key, math.max(window_ms - (now - start), 1))
return {start, count}
"""

    # Index sets only ever lengthen their TTL so they outlive every member
    _EXTEND_TTL = """
local function extend_ttl(key, ttl)
  if redis.call('TTL', key) < ttl then
    redis.call('EXPIRE', key, ttl)
  end
end
"""

    # Add a token hash to its family and subject indexes
    _INDEX_SCRIPT = _EXTEND_TTL + """
local ttl = tonumber(ARGV[1])
redis.call('SADD', KEYS[1], ARGV[2])
extend_ttl(KEYS[1], ttl)
redis.call('SADD', KEYS[2], ARGV[2])
extend_ttl(KEYS[2], ttl)
return 1
"""

    # Conditional revoke-and-create: only one rotation of a token can win
    _ROTATE_SCRIPT = _EXTEND_TTL + """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local rec = cjson.decode(raw)
if rec['revoked'] == true then
  return 0
end
if redis.call('EXISTS', KEYS[2]) == 1 then
  return -1
end
rec['revoked'] = true
rec['revoked_at'] = ARGV[1]
rec['revoked_reason'] = 'rotated'
rec['replaced_by'] = ARGV[2]
redis.call('SET', KEYS[1], cjson.encode(rec), 'KEEPTTL')
local ttl = tonumber(ARGV[4])
redis.call('SET', KEYS[2], ARGV[3], 'EX', ttl)
redis.call('SADD', KEYS[3], ARGV[5])
extend_ttl(KEYS[3], ttl)
redis.call('SADD', KEYS[4], ARGV[5])
extend_ttl(KEYS[4], ttl)
return 1
"""

    # Revoke every member of an index set (family or subject) in one step
    _REVOKE_INDEX_SCRIPT = """
local members = redis.call('SMEMBERS', KEYS[1])
local revoked = 0
for _, token_hash in ipairs(members) do
  local key = ARGV[3] .. token_hash
  local raw = redis.call('GET', key)
  if raw then
    local rec = cjson.decode(raw)
    if rec['revoked'] ~= true then
      rec['revoked'] = true
      rec['revoked_at'] = ARGV[1]
      rec['revoked_reason'] = ARGV[2]
      redis.call('SET', key, cjson.encode(rec), 'KEEPTTL')
      revoked = revoked + 1
    end
  end
end
return revoked
"""

    _REVOKE_ONE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local rec = cjson.decode(raw)
if rec['revoked'] == true then
  return 0
end
rec['revoked'] = true
rec['revoked_at'] = ARGV[1]
rec['revoked_reason'] = ARGV[2]
redis.call('SET', KEYS[1], cjson.encode(rec), 'KEEPTTL')
return 1
"""

    # Session compare-and-set; ARGV[1] is a JSON list of accepted states
    _SESSION_CAS_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return nil
end
local sess = cjson.decode(raw)
local accepted = cjson.decode(ARGV[1])
local matched = false
for _, state in ipairs(accepted) do
  if sess['state'] == state then
    matched = true
  end
end
if not matched then
  return nil
end
local patch = cjson.decode(ARGV[2])
for k, v in pairs(patch) do
  sess[k] = v
end
local encoded = cjson.encode(sess)
redis.call('SET', KEYS[1], encoded, 'KEEPTTL')
return encoded
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 2.0,
        login_history_retention_seconds: int = 24 * 60 * 60,
        subject_history_retention_seconds: int = 90 * 24 * 60 * 60,
    ) -> None:
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._history_retention = timedelta(seconds=login_history_retention_seconds)
        self._subject_retention = timedelta(seconds=subject_history_retention_seconds)
        self._counter = self.client.register_script(self._COUNTER_SCRIPT)
        self._index = self.client.register_script(self._INDEX_SCRIPT)
        self._rotate = self.client.register_script(self._ROTATE_SCRIPT)
        self._revoke_index = self.client.register_script(self._REVOKE_INDEX_SCRIPT)
        self._revoke_one = self.client.register_script(self._REVOKE_ONE_SCRIPT)
        self._session_cas = self.client.register_script(self._SESSION_CAS_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _token_key(token_hash: str) -> str:
        return f"{_PREFIX}:rt:{token_hash}"

    @staticmethod
    def _ttl_until(expires_at: datetime, now: datetime) -> int:
        # Keep revoked records a day past expiry so late replays still match
        return max(1, int((expires_at - now).total_seconds()) + 24 * 60 * 60)

    # counters
    async def increment_counter(
        self, key: str, window_seconds: int, *, now: datetime, amount: int = 1
    ) -> CounterWindow:
        start, count = await self._counter(
            keys=[f"{_PREFIX}:counter:{key}"],
            args=[_ms(now), int(window_seconds * 1000), amount],
        )
        return CounterWindow(
            key=key,
            window_start=_from_ms(start),
            count=int(count),
            window_seconds=window_seconds,
        )

    async def get_counter(self, key: str, *, now: datetime) -> Optional[CounterWindow]:
        raw_key = f"{_PREFIX}:counter:{key}"
        start, count = await self.client.hmget(raw_key, "start", "count")
        ttl_ms = await self.client.pttl(raw_key)
        if start is None or count is None or ttl_ms is None or ttl_ms <= 0:
            return None
        window_start = _from_ms(start)
        window_seconds = max(1, int(round(((_ms(now) + ttl_ms) - int(start)) / 1000)))
        return CounterWindow(
            key=key, window_start=window_start, count=int(count), window_seconds=window_seconds
        )

    async def reset_counter(self, key: str) -> None:
        await self.client.delete(f"{_PREFIX}:counter:{key}")

    async def set_lockout(self, key: str, until: datetime, *, now: datetime) -> None:
        ttl_ms = max(1, _ms(until) - _ms(now))
        await self.client.set(f"{_PREFIX}:lockout:{key}", until.isoformat(), px=ttl_ms)

    async def get_lockout(self, key: str, *, now: datetime) -> Optional[datetime]:
        raw = await self.client.get(f"{_PREFIX}:lockout:{key}")
        if not raw:
            return None
        until = datetime.fromisoformat(raw)
        return until if until > now else None

    async def clear_lockout(self, key: str) -> None:
        await self.client.delete(f"{_PREFIX}:lockout:{key}")

    # refresh tokens
    async def create_refresh_token(self, record: RefreshTokenRecord) -> None:
        ttl = self._ttl_until(record.expires_at, record.issued_at)
        created = await self.client.set(
            self._token_key(record.token_hash), json.dumps(record.to_dict()), ex=ttl, nx=True
        )
        if not created:
            raise ConstraintViolation(
                "refresh token hash already exists", {"token_family": record.token_family}
            )
        await self._index(
            keys=[
                f"{_PREFIX}:rt:family:{record.token_family}",
                f"{_PREFIX}:rt:subject:{record.subject_id}",
            ],
            args=[ttl, record.token_hash],
        )

    async def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        raw = await self.client.get(self._token_key(token_hash))
        if not raw:
            return None
        return RefreshTokenRecord.from_dict(json.loads(raw))

    async def rotate_refresh_token(
        self, old_hash: str, new_record: RefreshTokenRecord, *, now: datetime
    ) -> bool:
        result = await self._rotate(
            keys=[
                self._token_key(old_hash),
                self._token_key(new_record.token_hash),
                f"{_PREFIX}:rt:family:{new_record.token_family}",
                f"{_PREFIX}:rt:subject:{new_record.subject_id}",
            ],
            args=[
                now.isoformat(),
                new_record.id,
                json.dumps(new_record.to_dict()),
                self._ttl_until(new_record.expires_at, now),
                new_record.token_hash,
            ],
        )
        if int(result) == -1:
            raise ConstraintViolation(
                "refresh token hash already exists", {"token_family": new_record.token_family}
            )
        return int(result) == 1

    async def revoke_refresh_token(
        self, token_hash: str, *, now: datetime, reason: str
    ) -> bool:
        result = await self._revoke_one(
            keys=[self._token_key(token_hash)], args=[now.isoformat(), reason]
        )
        return int(result) == 1

    async def revoke_family(self, token_family: str, *, now: datetime, reason: str) -> int:
        result = await self._revoke_index(
            keys=[f"{_PREFIX}:rt:family:{token_family}"],
            args=[now.isoformat(), reason, f"{_PREFIX}:rt:"],
        )
        return int(result)

    async def revoke_subject_tokens(
        self, subject_id: str, *, now: datetime, reason: str
    ) -> int:
        result = await self._revoke_index(
            keys=[f"{_PREFIX}:rt:subject:{subject_id}"],
            args=[now.isoformat(), reason, f"{_PREFIX}:rt:"],
        )
        return int(result)

    async def list_family(self, token_family: str) -> List[RefreshTokenRecord]:
        hashes = await self.client.smembers(f"{_PREFIX}:rt:family:{token_family}")
        records = []
        for token_hash in hashes:
            record = await self.get_refresh_token(token_hash)
            if record:
                records.append(record)
        return sorted(records, key=lambda r: r.rotation_count)

    # sessions
    async def save_session(self, session: SessionFingerprint) -> None:
        pipe = self.client.pipeline()
        pipe.set(f"{_PREFIX}:session:{session.session_id}", json.dumps(session.to_dict()))
        pipe.sadd(f"{_PREFIX}:session:subject:{session.subject_id}", session.session_id)
        await pipe.execute()

    async def get_session(self, session_id: str) -> Optional[SessionFingerprint]:
        raw = await self.client.get(f"{_PREFIX}:session:{session_id}")
        if not raw:
            return None
        return SessionFingerprint.from_dict(json.loads(raw))

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
        patch = {"state": to_state.value, "updated_at": now.isoformat()}
        if reason is not None:
            patch["terminated_reason"] = reason
        if ip is not None:
            patch["ip"] = ip
        if user_agent is not None:
            patch["user_agent"] = user_agent
        encoded = await self._session_cas(
            keys=[f"{_PREFIX}:session:{session_id}"],
            args=[json.dumps([s.value for s in from_states]), json.dumps(patch)],
        )
        if not encoded:
            return None
        return SessionFingerprint.from_dict(json.loads(encoded))

    async def list_subject_sessions(self, subject_id: str) -> List[SessionFingerprint]:
        session_ids = await self.client.smembers(f"{_PREFIX}:session:subject:{subject_id}")
        sessions = []
        for session_id in session_ids:
            session = await self.get_session(session_id)
            if session:
                sessions.append(session)
        return sorted(sessions, key=lambda s: s.created_at)

    # login history
    def _history_keys(self, attempt: LoginAttempt) -> List[Tuple[str, timedelta]]:
        keys = [
            (f"{_PREFIX}:login:all", self._history_retention),
            (f"{_PREFIX}:login:ip:{attempt.ip}", self._history_retention),
            (f"{_PREFIX}:login:identifier:{attempt.identifier}", self._history_retention),
        ]
        if attempt.subject_id:
            # Per-subject history feeds the device and usual-hours baselines
            keys.append((f"{_PREFIX}:login:subject:{attempt.subject_id}", self._subject_retention))
        return keys

    async def record_login_attempt(self, attempt: LoginAttempt) -> None:
        # Unique prefix so identical attempts in the same millisecond both count
        member = f"{uuid.uuid4().hex}|{json.dumps(attempt.to_dict())}"
        score = _ms(attempt.timestamp)
        pipe = self.client.pipeline()
        for key, retention in self._history_keys(attempt):
            cutoff = _ms(attempt.timestamp - retention)
            pipe.zadd(key, {member: score})
            pipe.zremrangebyscore(key, "-inf", f"({cutoff}")
            pipe.expire(key, int(retention.total_seconds()))
        if attempt.success and attempt.subject_id:
            pipe.set(
                f"{_PREFIX}:login:last_success:{attempt.subject_id}",
                json.dumps(attempt.to_dict()),
                ex=int(self._subject_retention.total_seconds()),
            )
        await pipe.execute()

    async def list_login_attempts(
        self,
        *,
        since: datetime,
        ip: Optional[str] = None,
        subject_id: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> List[LoginAttempt]:
        if ip is not None:
            key = f"{_PREFIX}:login:ip:{ip}"
        elif subject_id is not None:
            key = f"{_PREFIX}:login:subject:{subject_id}"
        elif identifier is not None:
            key = f"{_PREFIX}:login:identifier:{identifier}"
        else:
            key = f"{_PREFIX}:login:all"
        members = await self.client.zrangebyscore(key, _ms(since), "+inf")
        attempts = []
        for member in members:
            _, _, payload = member.partition("|")
            attempt = LoginAttempt.from_dict(json.loads(payload))
            if subject_id is not None and attempt.subject_id != subject_id:
                continue
            if identifier is not None and attempt.identifier != identifier:
                continue
            attempts.append(attempt)
        return attempts

    async def get_last_successful_login(self, subject_id: str) -> Optional[LoginAttempt]:
        raw = await self.client.get(f"{_PREFIX}:login:last_success:{subject_id}")
        if not raw:
            return None
        return LoginAttempt.from_dict(json.loads(raw))

    # security events (append-only list)
    async def append_security_event(self, event: SecurityEvent) -> None:
        await self.client.rpush(f"{_PREFIX}:events", json.dumps(event.to_dict(), default=str))

    async def list_security_events(
        self, *, since: Optional[datetime] = None, until: Optional[datetime] = None
    ) -> List[SecurityEvent]:
        raw_events = await self.client.lrange(f"{_PREFIX}:events", 0, -1)
        events = []
        for raw in raw_events:
            event = SecurityEvent.from_dict(json.loads(raw))
            if since is not None and event.timestamp < since:
                continue
            if until is not None and event.timestamp >= until:
                continue
            events.append(event)
        return events
