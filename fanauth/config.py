from __future__ import annotations

import os
import re
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from fanauth.logging import get_logger

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "": 1,
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 60 * 60 * 24,
    "w": 60 * 60 * 24 * 7,
}
_MIN_SECRET_LENGTH = 32


def parse_duration(value: Any) -> timedelta:
    """Parse ``"15m"``, ``"7d"``, ``"24h"``, ``"90"`` (seconds) or an int into a timedelta."""

    if isinstance(value, timedelta):
        seconds = value.total_seconds()
    elif isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    elif isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        match = _DURATION_RE.match(value)
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        amount, unit = match.groups()
        seconds = float(int(amount) * _DURATION_UNITS[unit.lower()])
    else:
        raise ValueError(f"invalid duration: {value!r}")
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return timedelta(seconds=seconds)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core, loaded once and passed to services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/fanauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and in-memory fallbacks for tests",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as the client IP",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("erigga-platform", "JWT_ISSUER")
    jwt_audience: str = env_field("erigga-users", "JWT_AUDIENCE")
    jwt_expires_in: timedelta = env_field("15m", "JWT_EXPIRES_IN", validate_default=True)
    refresh_token_expires_in: timedelta = env_field(
        "7d", "REFRESH_TOKEN_EXPIRES_IN", validate_default=True
    )
    token_leeway_seconds: int = env_field(0, "TOKEN_LEEWAY_SECONDS", ge=0)
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh token on every refresh and reject replays",
    )

    # Sessions
    max_concurrent_sessions: int = env_field(3, "MAX_CONCURRENT_SESSIONS", ge=1)
    session_duration: timedelta = env_field("24h", "SESSION_DURATION", validate_default=True)
    remember_me_duration: timedelta = env_field(
        "30d", "REMEMBER_ME_DURATION", validate_default=True
    )

    # Lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_window: timedelta = env_field("15m", "LOCKOUT_WINDOW", validate_default=True)
    lockout_duration: timedelta = env_field("30m", "LOCKOUT_DURATION", validate_default=True)

    # Rate limits
    login_ip_rate_limit: int = env_field(20, "LOGIN_IP_RATE_LIMIT")
    login_identity_rate_limit: int = env_field(10, "LOGIN_IDENTITY_RATE_LIMIT")
    login_rate_window: timedelta = env_field("15m", "LOGIN_RATE_WINDOW", validate_default=True)
    register_rate_limit: int = env_field(3, "REGISTER_RATE_LIMIT")
    register_rate_window: timedelta = env_field(
        "1h", "REGISTER_RATE_WINDOW", validate_default=True
    )

    # Password hashing (argon2id)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", ge=8, description="KiB"
    )

    # New account defaults
    welcome_bonus_coins: int = env_field(500, "WELCOME_BONUS_COINS", ge=0)
    default_tier: str = env_field("grassroot", "DEFAULT_TIER")

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

    @field_validator(
        "jwt_expires_in",
        "refresh_token_expires_in",
        "session_duration",
        "remember_me_duration",
        "lockout_window",
        "lockout_duration",
        "login_rate_window",
        "register_rate_window",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value: Any) -> timedelta:
        return parse_duration(value)

    @field_validator("default_tier")
    @classmethod
    def _validate_default_tier(cls, value: str) -> str:
        from fanauth.storage.models import Tier

        return Tier(value.strip().lower()).value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value or not value.strip():
            raise ValueError("JWT_SECRET is required to sign session tokens")
        if len(value) < _MIN_SECRET_LENGTH:
            logger.warning(
                "jwt_secret_too_short",
                length=len(value),
                minimum=_MIN_SECRET_LENGTH,
            )
        return value


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
