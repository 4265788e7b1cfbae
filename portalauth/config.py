from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from portalauth.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_BYTES = 32


class Environment(str, Enum):
    """Deployment environments; only production forces secure cookies."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the portal auth service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    force_secure_cookies: bool = env_field(
        False,
        "FORCE_SECURE_COOKIES",
        description="Mark auth cookies Secure outside production (e.g. staging behind TLS)",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/jobportal", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Upper bound in seconds for every key-value store operation",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use in-process stores and skip external dependencies",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl_seconds: int = env_field(24 * 60 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )
    session_ttl_seconds: int = env_field(7 * 24 * 60 * 60, "SESSION_TTL_SECONDS")

    otp_ttl_seconds: int = env_field(5 * 60, "OTP_TTL_SECONDS")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    password_reset_ttl_minutes: int = env_field(15, "PASSWORD_RESET_TTL_MINUTES")
    anti_enumeration_floor_ms: int = env_field(
        800,
        "ANTI_ENUMERATION_FLOOR_MS",
        description="Minimum wall-clock duration of resend/reset requests; 0 disables",
    )

    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    auth_rate_limit_per_minute: int = env_field(
        10,
        "AUTH_RATE_LIMIT_PER_MINUTE",
        description="Requests per minute per operation, client IP and email",
    )

    # Email delivery. Resend is preferred when an API key is set, then SMTP.
    resend_api_key: str | None = env_field(None, "RESEND_API_KEY")
    resend_api_url: str = env_field("https://api.resend.com/emails", "RESEND_API_URL")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("JobSearch", "EMAIL_FROM_NAME")
    app_name: str = env_field("JobSearch", "APP_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    support_email: str = env_field("support@example.com", "SUPPORT_EMAIL")

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"],
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated list of allowed origins",
    )

    trusted_proxy_ips: list[str] = env_field(
        [],
        "TRUSTED_PROXY_IPS",
        description="Comma-separated proxy addresses or CIDR ranges whose X-Forwarded-For is honoured",
    )

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

    @property
    def secure_cookies(self) -> bool:
        return self.environment == Environment.PRODUCTION or self.force_secure_cookies

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        # Refuse to start rather than sign tokens with a weak or generated key
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value.encode()) < MIN_JWT_SECRET_BYTES:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_BYTES} bytes"
            )
        return value

    @field_validator("cors_allow_origins", "trusted_proxy_ips", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "otp_max_attempts", "login_max_attempts", "lockout_minutes", "otp_ttl_seconds"
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
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
