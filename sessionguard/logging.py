from __future__ import annotations

import logging
import os
import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog

# Correlation ID shared by every log line of one login/refresh/logout call
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the correlation ID of the operation in progress, if any."""
    return correlation_id_var.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Tag log lines emitted inside the block with one correlation ID.

    An ID already set by the caller (for example a request middleware) is
    kept, so nested engine calls log under the outer request.
    """
    current = correlation_id_var.get()
    if current and correlation_id is None:
        yield current
        return
    token = correlation_id_var.set(correlation_id or uuid.uuid4().hex)
    try:
        yield correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Values under these keys are replaced outright
_SECRET_MARKERS = ("password", "secret", "authorization", "private_key", "mfa_code")
# Values under these keys are partially masked; enough to correlate, not to reuse
_MASKED_MARKERS = ("token", "identifier", "email")
# Token metadata that is safe and needed when investigating an incident
_SAFE_KEYS = frozenset({"token_type", "token_family", "token_hash", "token_rotated"})
# Compact JWS: three base64url segments, header always starts with "eyJ"
_JWT_PATTERN = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]+")


def _mask(value: str) -> str:
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}***{value[-2:]}"


def _scrub(key: str, value: Any) -> Any:
    lower_key = key.lower()
    if isinstance(value, dict):
        return {k: _scrub(str(k), v) for k, v in value.items()}
    if not isinstance(value, str) or lower_key in _SAFE_KEYS:
        return value
    if any(marker in lower_key for marker in _SECRET_MARKERS):
        return "[REDACTED]"
    if any(marker in lower_key for marker in _MASKED_MARKERS):
        return _mask(value)
    return _JWT_PATTERN.sub("[JWT]", value)


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that keeps credentials and bearer tokens out of every sink.

    Walks nested ``details`` dicts as well, since security events carry the
    identifier and client data of the request that produced them.
    """
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = _scrub(key, event_dict[key])
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog for the engine and its audit stream.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]

    if development_mode or not json_output:
        renderer = structlog.dev.ConsoleRenderer(colors=development_mode)
        processors = shared_processors + [renderer]
    else:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level.upper(), logging.INFO))


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger; correlation IDs are attached automatically."""
    return structlog.get_logger(name)


def get_audit_logger() -> structlog.stdlib.BoundLogger:
    """Logger that mirrors every security event for compliance retention."""
    return structlog.get_logger("sessionguard.audit").bind(stream="audit")
