from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from sessionguard.clock import Clock, MonotonicClock
from sessionguard.config import Settings, SigningAlgorithm
from sessionguard.logging import get_logger
from sessionguard.service.circuit_breaker import StoreGuard
from sessionguard.service.errors import (
    InvalidSessionTransition,
    ServiceUnavailableError,
    SessionHijackSuspectedError,
    TokenExpiredError,
    TokenMalformedError,
    TokenNotFoundError,
    TokenReusedError,
    TokenRevokedError,
    TokenSignatureError,
)
from sessionguard.service.events import SecurityEventLog
from sessionguard.service.sessions import SessionSecurityValidator
from sessionguard.storage.errors import StoreUnavailableError
from sessionguard.storage.models import (
    AccessTokenClaims,
    EventSeverity,
    Fingerprint,
    RefreshTokenRecord,
    RiskLevel,
    SecurityEventType,
)

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
PREAUTH = "preauth"

_HMAC_DIGESTS = {
    SigningAlgorithm.HS256: hashlib.sha256,
    SigningAlgorithm.HS384: hashlib.sha384,
    SigningAlgorithm.HS512: hashlib.sha512,
}


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _fingerprint_digest(fingerprint: Fingerprint) -> str:
    raw = f"{fingerprint.ip or ''}|{fingerprint.user_agent or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class HmacSigner:
    def __init__(self, algorithm: SigningAlgorithm, secret: str) -> None:
        self.algorithm = algorithm
        self._digest = _HMAC_DIGESTS[algorithm]
        self._secret = secret.encode("utf-8")

    def sign(self, signing_input: bytes) -> bytes:
        return hmac.new(self._secret, signing_input, self._digest).digest()

    def verify(self, signing_input: bytes, signature: bytes) -> bool:
        return hmac.compare_digest(self.sign(signing_input), signature)


class RsaSigner:
    """RS256 (RSASSA-PKCS1-v1_5 with SHA-256) backed by PEM key files."""

    algorithm = SigningAlgorithm.RS256

    def __init__(self, private_key_pem: bytes, public_key_pem: bytes) -> None:
        self._private_key = serialization.load_pem_private_key(private_key_pem, password=None)
        self._public_key = serialization.load_pem_public_key(public_key_pem)

    @classmethod
    def from_paths(cls, private_key_path: str, public_key_path: str) -> "RsaSigner":
        return cls(Path(private_key_path).read_bytes(), Path(public_key_path).read_bytes())

    def sign(self, signing_input: bytes) -> bytes:
        return self._private_key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    def verify(self, signing_input: bytes, signature: bytes) -> bool:
        try:
            self._public_key.verify(signature, signing_input, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            return False
        return True


def signer_from_settings(settings: Settings):
    if settings.jwt_algorithm.is_symmetric:
        return HmacSigner(settings.jwt_algorithm, settings.jwt_secret)
    return RsaSigner.from_paths(settings.jwt_private_key_path, settings.jwt_public_key_path)


@dataclass(frozen=True)
class SessionMeta:
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    scope: Tuple[str, ...] = ()
    session_id: Optional[str] = None

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(ip=self.ip, user_agent=self.user_agent)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    subject_id: str
    session_id: str
    token_family: str
    rotation_count: int = 0
    scope: Tuple[str, ...] = field(default_factory=tuple)
    token_type: str = "bearer"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_expires_in": self.refresh_expires_in,
            "session_id": self.session_id,
            "scope": list(self.scope),
        }


class TokenService:
    """Issues, verifies, rotates and revokes signed tokens.

    Access tokens are verified from their signature and claims alone.
    Refresh tokens are additionally tracked by hash in the token store, which
    is the only authority on revocation; rotation fails closed whenever the
    store cannot answer.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        guard: StoreGuard,
        events: SecurityEventLog,
        sessions: Optional[SessionSecurityValidator] = None,
        clock: Optional[Clock] = None,
        signer=None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.guard = guard
        self.events = events
        self.sessions = sessions
        self.clock = clock or MonotonicClock()
        self.signer = signer or signer_from_settings(settings)
        self._state_lock = threading.Lock()
        # session_id -> epoch seconds until which its access tokens are refused
        self._terminated_sessions: Dict[str, float] = {}
        # rotated-away token hashes that already used their grace presentation
        self._grace_used: Dict[str, float] = {}

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    # encoding
    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding_chars = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding_chars)

    def encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": self.signer.algorithm.value, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self.signer.sign(signing_input.encode())
        return f"{signing_input}.{self._encode_segment(signature)}"

    def decode(self, token: str, expected_type: str, *, verify_exp: bool = True) -> Dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError) as exc:
            raise TokenMalformedError("token is not a three-part JWT") from exc

        try:
            header = json.loads(self._decode_segment(header_b64))
            signature = self._decode_segment(sig_b64)
        except (binascii.Error, ValueError) as exc:
            raise TokenMalformedError("token header could not be decoded") from exc
        if not isinstance(header, dict):
            raise TokenMalformedError("token header is not an object")

        # Only the configured algorithm is accepted; blocks alg=none and HS/RS confusion
        if header.get("alg") != self.signer.algorithm.value:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenSignatureError("unexpected signing algorithm")

        signing_input = f"{header_b64}.{payload_b64}".encode()
        if not self.signer.verify(signing_input, signature):
            raise TokenSignatureError("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformedError("token payload could not be decoded") from exc
        if not isinstance(payload, dict):
            raise TokenMalformedError("token payload is not an object")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenMalformedError("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenMalformedError("audience mismatch")
        if payload.get("token_type") != expected_type:
            raise TokenMalformedError(f"expected {expected_type} token")
        if not payload.get("sub") or not payload.get("jti"):
            raise TokenMalformedError("missing subject or token id")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenMalformedError("missing or invalid exp claim") from exc
        # valid iff now < exp
        if verify_exp and self.clock.timestamp() >= exp_ts:
            raise TokenExpiredError("token expired")
        return payload

    def _base_claims(self, subject_id: str, token_type: str, issued: int, ttl: timedelta) -> Dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject_id,
            "iat": issued,
            "exp": issued + int(ttl.total_seconds()),
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
        }

    def _mint_pair(
        self,
        subject_id: str,
        *,
        session_id: str,
        token_family: str,
        scope: Tuple[str, ...],
        rotation_count: int,
        fingerprint: Fingerprint,
    ) -> Tuple[TokenPair, RefreshTokenRecord]:
        now = self.clock.now()
        issued = int(now.timestamp())
        access_claims = self._base_claims(subject_id, ACCESS, issued, self.access_ttl)
        access_claims.update({"scope": list(scope), "session_id": session_id})
        refresh_claims = self._base_claims(subject_id, REFRESH, issued, self.refresh_ttl)
        refresh_claims.update(
            {"session_id": session_id, "fam": token_family, "scope": list(scope)}
        )

        access_token = self.encode(access_claims)
        refresh_token = self.encode(refresh_claims)
        record = RefreshTokenRecord.new(
            subject_id=subject_id,
            token_hash=hash_token(refresh_token),
            token_family=token_family,
            session_id=session_id,
            issued_at=datetime.fromtimestamp(issued, tz=timezone.utc),
            ttl=self.refresh_ttl,
            fingerprint=fingerprint,
            rotation_count=rotation_count,
            record_id=refresh_claims["jti"],
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_in=int(self.refresh_ttl.total_seconds()),
            subject_id=subject_id,
            session_id=session_id,
            token_family=token_family,
            rotation_count=rotation_count,
            scope=scope,
        )
        return pair, record

    async def _store_call(self, operation: str, factory):
        try:
            return await self.guard.call(operation, factory)
        except StoreUnavailableError as exc:
            logger.error("token_store_unavailable", operation=operation, error=exc.message)
            raise ServiceUnavailableError(
                "token store unavailable", detail={"operation": operation}
            ) from exc

    # issuance
    async def issue_token_pair(self, subject_id: str, session_meta: SessionMeta) -> TokenPair:
        scope = session_meta.scope or (self.settings.default_scope,)
        pair, record = self._mint_pair(
            subject_id,
            session_id=session_meta.session_id or str(uuid.uuid4()),
            token_family=str(uuid.uuid4()),
            scope=tuple(scope),
            rotation_count=0,
            fingerprint=session_meta.fingerprint,
        )
        await self._store_call("create_refresh_token", lambda: self.store.create_refresh_token(record))
        logger.info(
            "token_pair_issued",
            subject_id=subject_id,
            session_id=pair.session_id,
            token_family=pair.token_family,
        )
        return pair

    def verify_access_token(self, token: str) -> AccessTokenClaims:
        payload = self.decode(token, ACCESS)
        session_id = str(payload.get("session_id") or "")
        if self._is_session_terminated(session_id):
            raise TokenRevokedError("session terminated", detail={"session_id": session_id})
        scope = payload.get("scope") or []
        if not isinstance(scope, list):
            raise TokenMalformedError("scope claim must be a list")
        return AccessTokenClaims(
            subject_id=str(payload["sub"]),
            issued_at=datetime.fromtimestamp(float(payload.get("iat", 0)), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            scope=tuple(str(s) for s in scope),
            session_id=session_id,
            token_type=ACCESS,
            jti=str(payload["jti"]),
        )

    def decode_refresh_token(self, token: str, *, verify_exp: bool = True) -> Dict[str, Any]:
        return self.decode(token, REFRESH, verify_exp=verify_exp)

    # rotation
    async def verify_and_rotate_refresh_token(
        self, token: str, fingerprint: Fingerprint
    ) -> TokenPair:
        payload = self.decode(token, REFRESH)
        token_hash = hash_token(token)
        now = self.clock.now()

        record = await self._store_call(
            "get_refresh_token", lambda: self.store.get_refresh_token(token_hash)
        )
        if record is None:
            self.events.emit(
                SecurityEventType.TOKEN_REJECTED,
                EventSeverity.MEDIUM,
                subject_id=str(payload.get("sub")),
                ip=fingerprint.ip,
                reason="not_found",
            )
            raise TokenNotFoundError("refresh token not recognised")
        if record.is_expired(now):
            raise TokenExpiredError("refresh token expired")
        if record.revoked:
            await self._handle_revoked(record, fingerprint, now)

        if self.sessions is not None:
            await self._check_session(record, fingerprint)

        pair, successor = self._mint_pair(
            record.subject_id,
            session_id=record.session_id,
            token_family=record.token_family,
            scope=tuple(payload.get("scope") or (self.settings.default_scope,)),
            rotation_count=record.rotation_count + 1,
            fingerprint=fingerprint,
        )
        rotated = await self._store_call(
            "rotate_refresh_token",
            lambda: self.store.rotate_refresh_token(token_hash, successor, now=now),
        )
        if not rotated:
            # Another presentation won the conditional revoke; this one is a replay
            current = await self._store_call(
                "get_refresh_token", lambda: self.store.get_refresh_token(token_hash)
            )
            await self._handle_revoked(current or record, fingerprint, now)

        if self.sessions is not None:
            try:
                await self.sessions.mark_rotated(record.session_id, fingerprint)
            except (StoreUnavailableError, InvalidSessionTransition) as exc:
                logger.warning(
                    "session_rotation_mark_failed",
                    session_id=record.session_id,
                    error=str(exc),
                )

        self.events.emit(
            SecurityEventType.TOKEN_ROTATED,
            EventSeverity.INFO,
            subject_id=record.subject_id,
            ip=fingerprint.ip,
            token_family=record.token_family,
            rotation_count=successor.rotation_count,
        )
        logger.info(
            "refresh_token_rotated",
            subject_id=record.subject_id,
            token_family=record.token_family,
            rotation_count=successor.rotation_count,
        )
        return pair

    async def _check_session(self, record: RefreshTokenRecord, fingerprint: Fingerprint) -> None:
        try:
            session = await self.sessions.get_session(record.session_id)
        except StoreUnavailableError as exc:
            raise ServiceUnavailableError("session store unavailable") from exc
        if session is None:
            logger.warning("refresh_session_missing", session_id=record.session_id)
            return
        if not session.is_live:
            await self._store_call(
                "revoke_family",
                lambda: self.store.revoke_family(
                    record.token_family, now=self.clock.now(), reason="session_ended"
                ),
            )
            raise TokenRevokedError("session is no longer active")

        verdict = self.sessions.validate_session_integrity(session, fingerprint)
        if not verdict.valid:
            try:
                await self.sessions.flag_session(session.session_id, ",".join(verdict.reasons))
            except InvalidSessionTransition:
                logger.info("session_already_flagged", session_id=session.session_id)
            except StoreUnavailableError as exc:
                logger.error("session_flag_failed", session_id=session.session_id, error=exc.message)
            raise SessionHijackSuspectedError(
                "session fingerprint mismatch",
                detail={
                    "session_id": session.session_id,
                    "risk_level": verdict.risk_level.value,
                    "reasons": list(verdict.reasons),
                    "recommendation": verdict.recommendation,
                },
            )
        if verdict.risk_level > RiskLevel.NONE:
            self.events.emit(
                SecurityEventType.THREAT_DETECTED,
                EventSeverity.from_risk(verdict.risk_level),
                subject_id=session.subject_id,
                ip=fingerprint.ip,
                detector="session_integrity",
                session_id=session.session_id,
                reasons=list(verdict.reasons),
            )

    def _claim_grace(self, token_hash: str, now_ts: float) -> bool:
        grace = self.settings.rotation_grace_seconds
        with self._state_lock:
            for stale in [h for h, ts in self._grace_used.items() if now_ts - ts > grace]:
                self._grace_used.pop(stale, None)
            if token_hash in self._grace_used:
                return False
            self._grace_used[token_hash] = now_ts
            return True

    async def _handle_revoked(
        self, record: RefreshTokenRecord, fingerprint: Fingerprint, now: datetime
    ) -> None:
        if record.revoked_reason != "rotated":
            self.events.emit(
                SecurityEventType.TOKEN_REJECTED,
                EventSeverity.MEDIUM,
                subject_id=record.subject_id,
                ip=fingerprint.ip,
                reason=record.revoked_reason or "revoked",
                token_family=record.token_family,
            )
            raise TokenRevokedError("refresh token revoked", detail={"reason": record.revoked_reason})

        grace = self.settings.rotation_grace_seconds
        if (
            grace > 0
            and record.revoked_at is not None
            and (now - record.revoked_at).total_seconds() <= grace
            and record.last_used_fingerprint == fingerprint
            and self._claim_grace(record.token_hash, now.timestamp())
        ):
            self.events.emit(
                SecurityEventType.TOKEN_REUSED,
                EventSeverity.LOW,
                subject_id=record.subject_id,
                ip=fingerprint.ip,
                token_family=record.token_family,
                within_grace=True,
            )
            raise TokenReusedError("refresh token already rotated", detail={"within_grace": True})

        revoked = await self._store_call(
            "revoke_family",
            lambda: self.store.revoke_family(record.token_family, now=now, reason="reuse"),
        )
        self.events.emit(
            SecurityEventType.TOKEN_REUSED,
            EventSeverity.CRITICAL,
            subject_id=record.subject_id,
            ip=fingerprint.ip,
            token_family=record.token_family,
            revoked_tokens=revoked,
        )
        logger.warning(
            "refresh_token_reuse_detected",
            subject_id=record.subject_id,
            token_family=record.token_family,
            revoked_tokens=revoked,
        )
        if self.sessions is not None:
            try:
                await self.sessions.terminate_session(record.session_id, "token_reuse")
            except (InvalidSessionTransition, StoreUnavailableError) as exc:
                logger.info(
                    "reuse_session_termination_skipped",
                    session_id=record.session_id,
                    error=str(exc),
                )
        raise TokenReusedError("refresh token reuse detected", detail={"within_grace": False})

    # revocation
    async def revoke_token(self, refresh_token: str) -> bool:
        payload = self.decode(refresh_token, REFRESH, verify_exp=False)
        token_hash = hash_token(refresh_token)
        now = self.clock.now()
        revoked = await self._store_call(
            "revoke_refresh_token",
            lambda: self.store.revoke_refresh_token(token_hash, now=now, reason="logout"),
        )
        if revoked:
            self.events.emit(
                SecurityEventType.TOKEN_REVOKED,
                EventSeverity.INFO,
                subject_id=str(payload.get("sub")),
                reason="logout",
            )
        return revoked

    async def revoke_family(self, token_family: str, *, reason: str = "family") -> int:
        now = self.clock.now()
        return await self._store_call(
            "revoke_family",
            lambda: self.store.revoke_family(token_family, now=now, reason=reason),
        )

    async def revoke_all_for_subject(self, subject_id: str) -> int:
        now = self.clock.now()
        revoked = await self._store_call(
            "revoke_subject_tokens",
            lambda: self.store.revoke_subject_tokens(subject_id, now=now, reason="subject"),
        )
        if revoked:
            self.events.emit(
                SecurityEventType.TOKEN_REVOKED,
                EventSeverity.MEDIUM,
                subject_id=subject_id,
                reason="subject",
                revoked_tokens=revoked,
            )
        return revoked

    # terminated sessions (in-process)
    def mark_session_terminated(self, session_id: str) -> None:
        now_ts = self.clock.timestamp()
        until = now_ts + self.access_ttl.total_seconds()
        with self._state_lock:
            for stale in [sid for sid, ts in self._terminated_sessions.items() if ts <= now_ts]:
                self._terminated_sessions.pop(stale, None)
            self._terminated_sessions[session_id] = until

    def _is_session_terminated(self, session_id: str) -> bool:
        if not session_id:
            return False
        with self._state_lock:
            until = self._terminated_sessions.get(session_id)
        return until is not None and self.clock.timestamp() < until

    # MFA pre-authentication
    def issue_preauth_token(self, subject_id: str, fingerprint: Fingerprint) -> str:
        issued = int(self.clock.timestamp())
        claims = self._base_claims(
            subject_id,
            PREAUTH,
            issued,
            timedelta(minutes=self.settings.preauth_token_ttl_minutes),
        )
        claims["fp"] = _fingerprint_digest(fingerprint)
        return self.encode(claims)

    async def verify_preauth_token(
        self, token: str, fingerprint: Optional[Fingerprint] = None
    ) -> Dict[str, Any]:
        """Validate a pre-authentication token and consume it (single use)."""
        payload = self.decode(token, PREAUTH)
        if fingerprint is not None and payload.get("fp") != _fingerprint_digest(fingerprint):
            raise TokenMalformedError("pre-auth token bound to a different client")
        ttl_seconds = max(1, int(float(payload["exp"]) - self.clock.timestamp()) + 1)
        now = self.clock.now()
        window = await self._store_call(
            "increment_counter",
            lambda: self.store.increment_counter(f"preauth:{payload['jti']}", ttl_seconds, now=now),
        )
        if window.count > 1:
            raise TokenRevokedError("pre-auth token already used")
        return payload
