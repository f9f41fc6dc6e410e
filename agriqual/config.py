from __future__ import annotations

import os
import re
import secrets
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from agriqual.logging import get_logger

logger = get_logger(__name__)


class AccountRole(str, Enum):
    """Roles an account may hold."""

    FARMER = "farmer"
    EXPERT = "expert"
    ADMIN = "admin"


_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str | int) -> timedelta:
    """Parse ``"2h"``, ``"30m"``, ``"45s"``, ``"1d"`` or bare seconds."""

    if isinstance(value, int):
        seconds = value
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return timedelta(seconds=seconds)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the account-security service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/agriqual", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; tolerates a missing JWT secret.",
    )

    # Session tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_expires_in: str = env_field("2h", "JWT_EXPIRES_IN")
    jwt_issuer: str = env_field("agriqual", "JWT_ISSUER")
    jwt_audience: str = env_field("agriqual-clients", "JWT_AUDIENCE")

    # Lockout
    login_max_failed_attempts: int = env_field(5, "LOGIN_MAX_FAILED_ATTEMPTS", ge=1)
    login_lockout_minutes: int = env_field(15, "LOGIN_LOCKOUT_MINUTES", ge=1)
    password_change_max_failed_attempts: int = env_field(
        5, "PASSWORD_CHANGE_MAX_FAILED_ATTEMPTS", ge=1
    )
    password_change_lockout_minutes: int = env_field(
        15, "PASSWORD_CHANGE_LOCKOUT_MINUTES", ge=1
    )

    # Credential history
    password_history_depth: int = env_field(5, "PASSWORD_HISTORY_DEPTH", ge=1)
    password_history_retention: int = env_field(10, "PASSWORD_HISTORY_RETENTION", ge=1)

    # One-time codes
    otp_digits: int = env_field(6, "OTP_DIGITS", ge=4, le=10)
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", ge=1)
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS", ge=1)
    expose_debug_otp: bool = env_field(
        False,
        "EXPOSE_DEBUG_OTP",
        description="Return the OTP in the register-otp response (never in production)",
    )

    # Rate limits: (requests, window seconds)
    login_rate_limit: int = env_field(20, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(60, "LOGIN_RATE_WINDOW_SECONDS")
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    register_rate_window_seconds: int = env_field(600, "REGISTER_RATE_WINDOW_SECONDS")
    verify_otp_rate_limit: int = env_field(10, "VERIFY_OTP_RATE_LIMIT")
    verify_otp_rate_window_seconds: int = env_field(600, "VERIFY_OTP_RATE_WINDOW_SECONDS")
    password_change_rate_limit: int = env_field(5, "PASSWORD_CHANGE_RATE_LIMIT")
    password_change_rate_window_seconds: int = env_field(
        300, "PASSWORD_CHANGE_RATE_WINDOW_SECONDS"
    )
    help_ticket_max_per_window: int = env_field(5, "HELP_TICKET_MAX_PER_WINDOW")
    help_ticket_window_seconds: int = env_field(3600, "HELP_TICKET_WINDOW_SECONDS")
    diagnose_rate_limit: int = env_field(10, "DIAGNOSE_RATE_LIMIT")
    diagnose_rate_window_seconds: int = env_field(60, "DIAGNOSE_RATE_WINDOW_SECONDS")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASS")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM")
    email_from_name: str = env_field("AgriQual", "EMAIL_FROM_NAME")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_expires_in")
    @classmethod
    def _validate_expires_in(cls, value: str) -> str:
        parse_duration(value)
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET must be set outside TEST_MODE")
        # Tokens from a generated secret do not survive a restart
        logger.warning("jwt_secret_generated", reason="test_mode")
        self.jwt_secret = secrets.token_urlsafe(64)
        return self

    @property
    def token_lifetime(self) -> timedelta:
        return parse_duration(self.jwt_expires_in)


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
