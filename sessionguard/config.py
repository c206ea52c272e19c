from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)

# Upper bound for the rotation grace window; anything longer stops being an
# idempotency allowance and starts accepting replayed tokens.
MAX_ROTATION_GRACE_SECONDS = 5.0


class SigningAlgorithm(str, Enum):
    """Token signature algorithms the engine can be configured with."""

    HS256 = "HS256"
    HS384 = "HS384"
    HS512 = "HS512"
    RS256 = "RS256"

    @property
    def is_symmetric(self) -> bool:
        return self.value.startswith("HS")


class SessionLimitPolicy(str, Enum):
    """What happens to a login that would exceed ``max_concurrent_sessions``."""

    EVICT_OLDEST = "evict_oldest"
    REJECT = "reject"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings and security policy constants.

    Every threshold used by the detectors, limiters and token service lives
    here so operators can tune policy without code changes.
    """

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_algorithm: SigningAlgorithm = env_field(SigningAlgorithm.HS384, "JWT_ALGORITHM")
    jwt_private_key_path: str | None = env_field(None, "JWT_PRIVATE_KEY_PATH")
    jwt_public_key_path: str | None = env_field(None, "JWT_PUBLIC_KEY_PATH")
    jwt_issuer: str = env_field("sessionguard-api", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-client", "JWT_AUDIENCE")

    # Token lifetimes
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES")
    preauth_token_ttl_minutes: int = env_field(5, "PREAUTH_TOKEN_TTL_MINUTES")
    rotation_grace_seconds: float = env_field(
        0.0,
        "ROTATION_GRACE_SECONDS",
        description="Window in which a just-rotated refresh token is treated as a benign race (0 disables)",
    )
    default_scope: str = env_field("user", "DEFAULT_SCOPE")

    # Sessions
    max_concurrent_sessions: int = env_field(3, "MAX_CONCURRENT_SESSIONS")
    session_limit_policy: SessionLimitPolicy = env_field(
        SessionLimitPolicy.EVICT_OLDEST, "SESSION_LIMIT_POLICY"
    )

    # Rate limiting and lockout
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    login_rate_limit_window_seconds: int = env_field(60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    failed_login_limit: int = env_field(5, "FAILED_LOGIN_LIMIT")
    failed_login_window_seconds: int = env_field(15 * 60, "FAILED_LOGIN_WINDOW_SECONDS")
    lockout_base_seconds: int = env_field(15 * 60, "LOCKOUT_BASE_SECONDS")
    lockout_max_seconds: int = env_field(24 * 60 * 60, "LOCKOUT_MAX_SECONDS")

    # Threat detection
    brute_force_threshold: int = env_field(20, "BRUTE_FORCE_THRESHOLD")
    brute_force_window_seconds: int = env_field(60, "BRUTE_FORCE_WINDOW_SECONDS")
    stuffing_window_seconds: int = env_field(10 * 60, "STUFFING_WINDOW_SECONDS")
    stuffing_min_identifiers: int = env_field(5, "STUFFING_MIN_IDENTIFIERS")
    stuffing_min_attempts: int = env_field(15, "STUFFING_MIN_ATTEMPTS")
    stuffing_max_success_rate: float = env_field(0.1, "STUFFING_MAX_SUCCESS_RATE")
    impossible_travel_kmh: float = env_field(1000.0, "IMPOSSIBLE_TRAVEL_KMH")
    high_travel_kmh: float = env_field(500.0, "HIGH_TRAVEL_KMH")
    timing_window_seconds: int = env_field(5 * 60, "TIMING_WINDOW_SECONDS")
    timing_min_attempts: int = env_field(10, "TIMING_MIN_ATTEMPTS")
    enumeration_window_seconds: int = env_field(15 * 60, "ENUMERATION_WINDOW_SECONDS")
    enumeration_min_failures: int = env_field(20, "ENUMERATION_MIN_FAILURES")
    enumeration_min_identifiers: int = env_field(10, "ENUMERATION_MIN_IDENTIFIERS")
    login_history_retention_seconds: int = env_field(24 * 60 * 60, "LOGIN_HISTORY_RETENTION_SECONDS")
    subject_history_retention_seconds: int = env_field(
        90 * 24 * 60 * 60, "SUBJECT_HISTORY_RETENTION_SECONDS"
    )
    known_device_history_days: int = env_field(90, "KNOWN_DEVICE_HISTORY_DAYS")
    max_known_devices: int = env_field(10, "MAX_KNOWN_DEVICES")
    usual_hours_history_days: int = env_field(30, "USUAL_HOURS_HISTORY_DAYS")
    usual_hours_count: int = env_field(8, "USUAL_HOURS_COUNT")
    night_hours_start: int = env_field(2, "NIGHT_HOURS_START")
    night_hours_end: int = env_field(6, "NIGHT_HOURS_END")
    night_min_logins: int = env_field(3, "NIGHT_MIN_LOGINS")
    disabled_detectors: str = env_field(
        "",
        "DISABLED_DETECTORS",
        description="Comma-separated detector names to leave out of the registry",
    )

    # Degradation policy
    breaker_failure_threshold: int = env_field(5, "BREAKER_FAILURE_THRESHOLD")
    breaker_cooldown_seconds: float = env_field(30.0, "BREAKER_COOLDOWN_SECONDS")
    store_timeout_seconds: float = env_field(2.0, "STORE_TIMEOUT_SECONDS")
    event_buffer_size: int = env_field(1000, "EVENT_BUFFER_SIZE")
    event_flush_batch_size: int = env_field(
        50,
        "EVENT_FLUSH_BATCH_SIZE",
        description="Most buffered events a single login/refresh/logout call writes to the sink",
    )

    # Backends
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    state_dir: str = env_field("/srv/sessionguard", "SESSIONGUARD_STATE_DIR")
    geo_lookup_url: str | None = env_field(
        None,
        "GEO_LOOKUP_URL",
        description="JSON geolocation endpoint with an {ip} placeholder, e.g. http://ip-api.com/json/{ip}",
    )
    geo_lookup_timeout_seconds: float = env_field(2.0, "GEO_LOOKUP_TIMEOUT_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("jwt_algorithm", mode="before")
    @classmethod
    def _validate_algorithm(cls, value: Any) -> SigningAlgorithm:
        if isinstance(value, SigningAlgorithm):
            return value
        try:
            return SigningAlgorithm(str(value).upper())
        except ValueError as exc:
            raise ValueError(f"Unsupported JWT algorithm: {value}") from exc

    @field_validator("rotation_grace_seconds")
    @classmethod
    def _cap_grace_window(cls, value: float) -> float:
        if value < 0:
            raise ValueError("rotation_grace_seconds must be >= 0")
        if value > MAX_ROTATION_GRACE_SECONDS:
            logger.warning(
                "rotation_grace_capped",
                requested=value,
                capped_to=MAX_ROTATION_GRACE_SECONDS,
            )
            return MAX_ROTATION_GRACE_SECONDS
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "preauth_token_ttl_minutes",
        "max_concurrent_sessions",
        "login_rate_limit_window_seconds",
        "failed_login_limit",
        "failed_login_window_seconds",
        "lockout_base_seconds",
        "brute_force_threshold",
        "brute_force_window_seconds",
        "stuffing_window_seconds",
        "timing_window_seconds",
        "enumeration_window_seconds",
        "breaker_failure_threshold",
        "event_buffer_size",
        "event_flush_batch_size",
        "subject_history_retention_seconds",
        "known_device_history_days",
        "max_known_devices",
        "usual_hours_history_days",
        "usual_hours_count",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @field_validator("night_hours_start", "night_hours_end")
    @classmethod
    def _valid_hour(cls, value: int) -> int:
        if not 0 <= value <= 23:
            raise ValueError("hour must be between 0 and 23")
        return value

    @property
    def disabled_detector_names(self) -> list[str]:
        return [name.strip() for name in self.disabled_detectors.split(",") if name.strip()]

    @model_validator(mode="after")
    def _ensure_signing_material(self) -> "Settings":
        if self.night_hours_end < self.night_hours_start:
            raise ValueError("night_hours_end must be >= night_hours_start")
        if self.lockout_max_seconds < self.lockout_base_seconds:
            raise ValueError("lockout_max_seconds must be >= lockout_base_seconds")
        if self.jwt_algorithm.is_symmetric:
            if not self.jwt_secret:
                self.jwt_secret = _load_or_create_secret(Path(self.state_dir))
        elif not self.jwt_private_key_path or not self.jwt_public_key_path:
            raise ValueError(
                f"{self.jwt_algorithm.value} requires JWT_PRIVATE_KEY_PATH and JWT_PUBLIC_KEY_PATH"
            )
        return self


def _load_or_create_secret(state_dir: Path) -> str:
    """Persist a generated HMAC secret so tokens survive restarts."""
    secret_path = state_dir / ".jwt_secret"
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(state_dir, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (containers)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SESSIONGUARD_STATE_DIR writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
