from __future__ import annotations

import os
import re
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


_DURATION_RE = re.compile(r"^(\d+)([smhd])?$")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str, *, default_seconds: int = 3600) -> int:
    """Convert a duration such as ``15m`` or ``7d`` to seconds.

    A bare number is taken as seconds; anything unparseable falls back to
    ``default_seconds``.
    """
    match = _DURATION_RE.match((value or "").strip())
    if not match:
        return default_seconds
    amount = int(match.group(1))
    unit = match.group(2)
    return amount * _DURATION_UNITS.get(unit, 1)


class EventPublisherMode(str, Enum):
    """Where domain events are delivered."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/storeauth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(None, "REDIS_URL")
    event_publisher: EventPublisherMode = env_field(
        EventPublisherMode.MEMORY,
        "EVENT_PUBLISHER_TYPE",
        description="memory for local development and tests, redis for pub/sub delivery",
    )
    event_channel_prefix: str = env_field("events", "EVENT_CHANNEL_PREFIX")
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("auth-service", "JWT_ISSUER")
    jwt_audience: str = env_field("storefront-clients", "JWT_AUDIENCE")
    access_token_expires_in: str = env_field("15m", "JWT_ACCESS_TOKEN_EXPIRES_IN")
    refresh_token_expires_in: str = env_field("7d", "JWT_REFRESH_TOKEN_EXPIRES_IN")

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES", ge=1)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    email_verification_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1
    )
    session_ttl_hours: int = env_field(24 * 7, "SESSION_TTL_HOURS", ge=1)
    session_sweep_interval_seconds: int = env_field(
        300,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="Interval of the expired-session sweep; 0 disables it",
    )

    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=32)
    hash_timeout_seconds: float = env_field(10.0, "HASH_TIMEOUT_SECONDS", gt=0)

    mfa_issuer: str = env_field("E-Commerce Platform", "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")
    consume_backup_codes: bool = env_field(
        True,
        "MFA_CONSUME_BACKUP_CODES",
        description="Remove a backup code once it has been accepted",
    )

    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")

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

    @field_validator("event_publisher")
    @classmethod
    def _validate_publisher(cls, value: EventPublisherMode) -> EventPublisherMode:
        return EventPublisherMode(value)

    @field_validator("jwt_secret", "jwt_refresh_secret")
    @classmethod
    def _require_strong_secret(cls, value: str | None, info) -> str:
        if not value:
            raise ValueError(f"{info.field_name} must be set")
        if len(value) < 32:
            raise ValueError(f"{info.field_name} must be at least 32 characters")
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        # Access and refresh tokens must not share a trust boundary
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if self.event_publisher == EventPublisherMode.REDIS and not self.redis_url:
            raise ValueError("REDIS_URL is required when EVENT_PUBLISHER_TYPE=redis")
        return self

    @property
    def access_token_ttl_seconds(self) -> int:
        return parse_duration(self.access_token_expires_in)

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return parse_duration(self.refresh_token_expires_in)


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
