from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from coopapp.logging import get_logger

logger = get_logger(__name__)

# Signing secrets shorter than this are accepted but logged as weak
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings loaded once at startup."""

    database_url: str = env_field(
        "postgresql://localhost:5432/coopapp", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/coopapp", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    # Required: a missing secret fails Settings construction, which aborts startup
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("coop-app", "JWT_ISSUER")
    session_token_ttl_minutes: int = env_field(
        24 * 60,
        "SESSION_TOKEN_TTL_MINUTES",
        description="Lifetime of issued session tokens in minutes",
    )
    two_factor_code_ttl_minutes: int = env_field(5, "TWO_FACTOR_CODE_TTL_MINUTES")
    two_factor_max_attempts: int = env_field(
        5,
        "TWO_FACTOR_MAX_ATTEMPTS",
        description="Failed code verifications before the outstanding code is discarded",
    )
    two_factor_lockout_seconds: int = env_field(300, "TWO_FACTOR_LOCKOUT_SECONDS")
    account_verification_ttl_hours: int = env_field(
        72, "ACCOUNT_VERIFICATION_TTL_HOURS"
    )
    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(
        5, "REGISTER_RATE_LIMIT_PER_MINUTE"
    )
    admin_rate_limit_per_minute: int = env_field(60, "ADMIN_RATE_LIMIT_PER_MINUTE")
    enforce_single_session: bool = env_field(
        True,
        "ENFORCE_SINGLE_SESSION",
        description="Reject tokens that no longer match the stored token reference",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    frontend_base_url: str = env_field("http://localhost:5173", "FRONTEND_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(
        "no-reply@coop-app.com", "EMAIL_FROM_ADDRESS"
    )
    email_from_name: str = env_field("Coop App", "EMAIL_FROM_NAME")
    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if value is None or not str(value).strip():
            raise ValueError(
                "JWT_SECRET must be set; the service refuses to start without a signing key"
            )
        value = str(value).strip()
        if len(value) < _MIN_SECRET_LENGTH:
            logger.warning("jwt_secret_weak", length=len(value))
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator(
        "session_token_ttl_minutes",
        "two_factor_code_ttl_minutes",
        "two_factor_max_attempts",
        "two_factor_lockout_seconds",
        "account_verification_ttl_hours",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("frontend_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


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
