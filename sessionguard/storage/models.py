from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_from_str(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RiskLevel(str, Enum):
    """Ordered risk scale shared by detectors and the session validator."""

    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self]

    def __ge__(self, other: "RiskLevel") -> bool:  # type: ignore[override]
        return self.rank >= other.rank

    def __gt__(self, other: "RiskLevel") -> bool:  # type: ignore[override]
        return self.rank > other.rank

    def __le__(self, other: "RiskLevel") -> bool:  # type: ignore[override]
        return self.rank <= other.rank

    def __lt__(self, other: "RiskLevel") -> bool:  # type: ignore[override]
        return self.rank < other.rank


_RISK_ORDER = {
    RiskLevel.NONE: 0,
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}


class EventSeverity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    DEGRADED = "degraded"

    @classmethod
    def from_risk(cls, level: RiskLevel) -> "EventSeverity":
        if level is RiskLevel.NONE:
            return cls.INFO
        return cls(level.value.lower())


class SecurityEventType(str, Enum):
    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    MFA_REQUIRED = "mfa_required"
    MFA_FAILED = "mfa_failed"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    RATE_LIMITED = "rate_limited"
    THREAT_DETECTED = "threat_detected"
    TOKEN_REJECTED = "token_rejected"
    TOKEN_ROTATED = "token_rotated"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_REUSED = "token_reused"
    SESSION_HIJACK_SUSPECTED = "session_hijack_suspected"
    SESSION_TERMINATED = "session_terminated"
    CONCURRENT_SESSION_LIMIT = "concurrent_session_limit"
    STORE_DEGRADED = "store_degraded"
    CIRCUIT_STATE_CHANGED = "circuit_state_changed"


@dataclass(frozen=True)
class Fingerprint:
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"ip": self.ip, "user_agent": self.user_agent}

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["Fingerprint"]:
        if not raw:
            return None
        return cls(ip=raw.get("ip"), user_agent=raw.get("user_agent"))


@dataclass(frozen=True)
class GeoLocation:
    latitude: float
    longitude: float
    country: Optional[str] = None
    city: Optional[str] = None


@dataclass
class RefreshTokenRecord:
    id: str
    subject_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    token_family: str
    session_id: str
    revoked: bool = False
    last_used_fingerprint: Optional[Fingerprint] = None
    last_used_at: Optional[datetime] = None
    rotation_count: int = 0
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        *,
        subject_id: str,
        token_hash: str,
        token_family: str,
        session_id: str,
        issued_at: datetime,
        ttl: timedelta,
        fingerprint: Optional[Fingerprint] = None,
        rotation_count: int = 0,
        record_id: Optional[str] = None,
    ) -> "RefreshTokenRecord":
        return cls(
            id=record_id or str(uuid.uuid4()),
            subject_id=subject_id,
            token_hash=token_hash,
            issued_at=issued_at,
            expires_at=issued_at + ttl,
            token_family=token_family,
            session_id=session_id,
            last_used_fingerprint=fingerprint,
            last_used_at=issued_at,
            rotation_count=rotation_count,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "token_hash": self.token_hash,
            "issued_at": _dt_to_str(self.issued_at),
            "expires_at": _dt_to_str(self.expires_at),
            "token_family": self.token_family,
            "session_id": self.session_id,
            "revoked": self.revoked,
            "last_used_fingerprint": (
                self.last_used_fingerprint.to_dict() if self.last_used_fingerprint else None
            ),
            "last_used_at": _dt_to_str(self.last_used_at),
            "rotation_count": self.rotation_count,
            "revoked_at": _dt_to_str(self.revoked_at),
            "revoked_reason": self.revoked_reason,
            "replaced_by": self.replaced_by,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "RefreshTokenRecord":
        return cls(
            id=raw["id"],
            subject_id=raw["subject_id"],
            token_hash=raw["token_hash"],
            issued_at=_dt_from_str(raw["issued_at"]),
            expires_at=_dt_from_str(raw["expires_at"]),
            token_family=raw["token_family"],
            session_id=raw["session_id"],
            revoked=bool(raw.get("revoked")),
            last_used_fingerprint=Fingerprint.from_dict(raw.get("last_used_fingerprint")),
            last_used_at=_dt_from_str(raw.get("last_used_at")),
            rotation_count=int(raw.get("rotation_count") or 0),
            revoked_at=_dt_from_str(raw.get("revoked_at")),
            revoked_reason=raw.get("revoked_reason"),
            replaced_by=raw.get("replaced_by"),
        )


@dataclass(frozen=True)
class AccessTokenClaims:
    subject_id: str
    issued_at: datetime
    expires_at: datetime
    scope: tuple[str, ...]
    session_id: str
    token_type: str
    jti: str


@dataclass
class CounterWindow:
    key: str
    window_start: datetime
    count: int
    window_seconds: int

    @property
    def reset_at(self) -> datetime:
        return self.window_start + timedelta(seconds=self.window_seconds)

    def is_expired(self, now: datetime) -> bool:
        return (now - self.window_start).total_seconds() >= self.window_seconds


class SessionState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    ROTATED = "rotated"
    FLAGGED = "flagged"
    LOGGED_OUT = "logged_out"
    TERMINATED = "terminated"


@dataclass
class SessionFingerprint:
    session_id: str
    subject_id: str
    ip: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    state: SessionState = SessionState.CREATED
    token_family: Optional[str] = None
    updated_at: Optional[datetime] = None
    terminated_reason: Optional[str] = None

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(ip=self.ip, user_agent=self.user_agent)

    @property
    def is_live(self) -> bool:
        return self.state not in {
            SessionState.TERMINATED,
            SessionState.LOGGED_OUT,
            SessionState.FLAGGED,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "subject_id": self.subject_id,
            "ip": self.ip,
            "user_agent": self.user_agent,
            "created_at": _dt_to_str(self.created_at),
            "state": self.state.value,
            "token_family": self.token_family,
            "updated_at": _dt_to_str(self.updated_at),
            "terminated_reason": self.terminated_reason,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SessionFingerprint":
        return cls(
            session_id=raw["session_id"],
            subject_id=raw["subject_id"],
            ip=raw.get("ip"),
            user_agent=raw.get("user_agent"),
            created_at=_dt_from_str(raw["created_at"]),
            state=SessionState(raw.get("state") or SessionState.CREATED.value),
            token_family=raw.get("token_family"),
            updated_at=_dt_from_str(raw.get("updated_at")),
            terminated_reason=raw.get("terminated_reason"),
        )


@dataclass(frozen=True)
class SecurityEvent:
    id: str
    type: SecurityEventType
    severity: EventSeverity
    timestamp: datetime
    subject_id: Optional[str] = None
    ip: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        event_type: SecurityEventType,
        severity: EventSeverity,
        *,
        subject_id: Optional[str] = None,
        ip: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> "SecurityEvent":
        return cls(
            id=str(uuid.uuid4()),
            type=event_type,
            severity=severity,
            timestamp=timestamp or _utcnow(),
            subject_id=subject_id,
            ip=ip,
            details=dict(details or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        payload["severity"] = self.severity.value
        payload["timestamp"] = _dt_to_str(self.timestamp)
        return payload

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "SecurityEvent":
        return cls(
            id=raw["id"],
            type=SecurityEventType(raw["type"]),
            severity=EventSeverity(raw["severity"]),
            timestamp=_dt_from_str(raw["timestamp"]),
            subject_id=raw.get("subject_id"),
            ip=raw.get("ip"),
            details=dict(raw.get("details") or {}),
        )


@dataclass(frozen=True)
class LoginAttempt:
    ip: str
    identifier: str
    success: bool
    timestamp: datetime
    subject_id: Optional[str] = None
    user_agent: Optional[str] = None
    endpoint: str = "login"
    location: Optional[GeoLocation] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = _dt_to_str(self.timestamp)
        return payload

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "LoginAttempt":
        location = raw.get("location")
        return cls(
            ip=raw["ip"],
            identifier=raw["identifier"],
            success=bool(raw["success"]),
            timestamp=_dt_from_str(raw["timestamp"]),
            subject_id=raw.get("subject_id"),
            user_agent=raw.get("user_agent"),
            endpoint=raw.get("endpoint") or "login",
            location=GeoLocation(**location) if location else None,
        )
