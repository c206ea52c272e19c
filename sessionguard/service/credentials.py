from __future__ import annotations

import secrets
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionguard.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class VerifiedIdentity:
    subject_id: str
    mfa_enabled: bool = False


class CredentialVerifier(Protocol):
    """Checks an identifier/secret pair; returns None when it does not match."""

    async def verify_credentials(self, identifier: str, secret: str) -> Optional[VerifiedIdentity]: ...


class MFAVerifier(Protocol):
    async def verify(self, subject_id: str, code: str) -> bool: ...


def normalize_identifier(identifier: str) -> str:
    return identifier.strip().lower()


@dataclass
class _CredentialRecord:
    subject_id: str
    password_hash: str
    mfa_enabled: bool = False


class PasswordCredentialVerifier:
    """In-memory argon2id credential table for local runs and tests.

    Unknown identifiers still pay for a hash verification so response time
    does not reveal which accounts exist.
    """

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._lock = threading.Lock()
        self._records: Dict[str, _CredentialRecord] = {}
        self._dummy_hash = self._pwd_hasher.hash(uuid.uuid4().hex)

    def register(
        self,
        identifier: str,
        password: str,
        *,
        subject_id: Optional[str] = None,
        mfa_enabled: bool = False,
    ) -> VerifiedIdentity:
        record = _CredentialRecord(
            subject_id=subject_id or str(uuid.uuid4()),
            password_hash=self._pwd_hasher.hash(password),
            mfa_enabled=mfa_enabled,
        )
        with self._lock:
            self._records[normalize_identifier(identifier)] = record
        return VerifiedIdentity(subject_id=record.subject_id, mfa_enabled=mfa_enabled)

    async def verify_credentials(self, identifier: str, secret: str) -> Optional[VerifiedIdentity]:
        with self._lock:
            record = self._records.get(normalize_identifier(identifier))
        stored_hash = record.password_hash if record else self._dummy_hash
        try:
            self._pwd_hasher.verify(stored_hash, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return None
        if record is None:
            return None
        return VerifiedIdentity(subject_id=record.subject_id, mfa_enabled=record.mfa_enabled)


class StaticMFAVerifier:
    """Accepts one fixed code per subject; used by tests and the demo runtime."""

    def __init__(self, codes: Optional[Dict[str, str]] = None) -> None:
        self._codes = dict(codes or {})

    def set_code(self, subject_id: str, code: str) -> None:
        self._codes[subject_id] = code

    async def verify(self, subject_id: str, code: str) -> bool:
        expected = self._codes.get(subject_id)
        return expected is not None and secrets.compare_digest(expected, code)
