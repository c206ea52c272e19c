from __future__ import annotations

from datetime import datetime
from typing import Optional

# Message returned for every authentication failure so callers cannot tell a
# wrong password from an unknown account or a forged token from an expired one.
GENERIC_AUTH_MESSAGE = "Authentication failed"


class ServiceError(Exception):
    """Base class for engine exceptions.

    Each subclass carries a stable ``error_code`` and the HTTP status a
    transport layer should use when it maps the error onto a response:
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - rate_limited / account_locked (429)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    public_message: str = GENERIC_AUTH_MESSAGE

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Identifier/secret pair rejected by the credential verifier."""
    pass


class TokenExpiredError(AuthenticationError):
    """Token is past its ``exp`` claim."""
    pass


class TokenMalformedError(AuthenticationError):
    """Token could not be parsed, has the wrong type, or fails claim checks."""
    pass


class TokenSignatureError(AuthenticationError):
    """Signature does not verify or names an unexpected algorithm."""
    pass


class TokenNotFoundError(AuthenticationError):
    """Refresh token signature is valid but no record exists in the store."""
    pass


class TokenRevokedError(AuthenticationError):
    """Refresh token was revoked by logout or administrative action."""
    error_code = "token_revoked"


class TokenReusedError(AuthenticationError):
    """A rotated-away refresh token was presented again; family revoked."""
    error_code = "token_reused"


class SessionHijackSuspectedError(ServiceError):
    """Refresh presented from a fingerprint that does not match the session."""
    status_code = 403
    error_code = "session_hijack_suspected"


class ConcurrentSessionLimitExceededError(ServiceError):
    """Subject holds more active sessions than policy allows."""
    status_code = 409
    error_code = "concurrent_session_limit"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    public_message = "Too many requests"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class AccountLockedError(ServiceError):
    """Too many failed logins for one credential identity (429)."""
    status_code = 429
    error_code = "account_locked"
    public_message = "Account temporarily locked"

    def __init__(self, message: str, *, until: datetime, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.until = until


class InvalidSessionTransition(ServiceError):
    """Session state machine rejected a transition."""
    status_code = 409
    error_code = "conflict"


class ServiceUnavailableError(ServiceError):
    """A store required on a critical path is unavailable (503)."""
    status_code = 503
    error_code = "service_unavailable"
    public_message = "Service temporarily unavailable"


__all__ = [
    "GENERIC_AUTH_MESSAGE",
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "TokenMalformedError",
    "TokenSignatureError",
    "TokenNotFoundError",
    "TokenRevokedError",
    "TokenReusedError",
    "SessionHijackSuspectedError",
    "ConcurrentSessionLimitExceededError",
    "RateLimitedError",
    "AccountLockedError",
    "InvalidSessionTransition",
    "ServiceUnavailableError",
]
