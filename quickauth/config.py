from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from quickauth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session service."""

    environment: Environment = env_field(Environment.PRODUCTION, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/quickauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="JSON file backing the in-memory store; unset keeps accounts in process only.",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: in-memory fallbacks and cheap hashing allowed.",
    )

    # Session tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("quick-commerce-api", "JWT_ISSUER")
    jwt_audience: str = env_field("quick-commerce-app", "JWT_AUDIENCE")
    session_token_ttl_days: int = env_field(7, "SESSION_TOKEN_TTL_DAYS", ge=1)
    remember_me_token_ttl_days: int = env_field(30, "REMEMBER_ME_TOKEN_TTL_DAYS", ge=1)
    session_cache_ttl_seconds: int = env_field(
        24 * 60 * 60, "SESSION_CACHE_TTL_SECONDS", ge=1
    )
    remember_me_cache_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60, "REMEMBER_ME_CACHE_TTL_SECONDS", ge=1
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Lockout
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lockout_minutes: int = env_field(120, "LOCKOUT_MINUTES", ge=1)

    # Secret token lifetimes
    password_reset_ttl_minutes: int = env_field(10, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    email_verification_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1
    )
    phone_otp_ttl_minutes: int = env_field(5, "PHONE_OTP_TTL_MINUTES", ge=1)

    # Password policy and hashing cost
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=6)
    password_require_upper: bool = env_field(True, "PASSWORD_REQUIRE_UPPER")
    password_require_lower: bool = env_field(True, "PASSWORD_REQUIRE_LOWER")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST", ge=8
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)
    min_account_age_years: int = env_field(13, "MIN_ACCOUNT_AGE_YEARS", ge=0)

    # Mail dispatch
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Quick Commerce", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    # SMS dispatch
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_sender_id: str = env_field("QCOMM", "SMS_SENDER_ID")
    sms_timeout_seconds: float = env_field(10.0, "SMS_TIMEOUT_SECONDS", gt=0)

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

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32 and not self.is_relaxed:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return self
        if not self.is_relaxed:
            raise ValueError("JWT_SECRET is required outside test and development")
        # Ephemeral secret: tokens do not survive a restart
        logger.warning("jwt_secret_generated", environment=self.environment.value)
        self.jwt_secret = secrets.token_urlsafe(64)
        return self

    @property
    def is_relaxed(self) -> bool:
        return self.test_mode or self.environment in {
            Environment.DEVELOPMENT,
            Environment.TEST,
        }

    @property
    def expose_error_details(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def dev_dispatch(self) -> bool:
        """Log outbound mail and SMS instead of delivering them."""
        return self.is_relaxed


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
