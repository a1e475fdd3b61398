from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from docprescrip.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments recognised by the service."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth/session kernel."""

    app_env: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    database_url: str = env_field(
        "postgresql://localhost:5432/docprescrip", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    redis_token: str | None = env_field(None, "REDIS_TOKEN")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks for the key-value store",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("doc-prescrip", "JWT_ISSUER")
    jwt_audience: str = env_field("doc-prescrip-users", "JWT_AUDIENCE")
    federated_session_secret: str | None = env_field(None, "NEXTAUTH_SECRET")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS"
    )
    federated_session_ttl_seconds: int = env_field(
        30 * 24 * 3600, "FEDERATED_SESSION_TTL_SECONDS"
    )

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    # Registration
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD")
    require_access_key: bool = env_field(True, "REQUIRE_ACCESS_KEY")
    require_email_verification: bool = env_field(False, "REQUIRE_EMAIL_VERIFICATION")
    otp_ttl_seconds: int = env_field(600, "OTP_TTL_SECONDS")

    # Per-flow lockout policies
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_window_seconds: int = env_field(15 * 60, "LOGIN_WINDOW_SECONDS")
    login_lockout_seconds: int = env_field(30 * 60, "LOGIN_LOCKOUT_SECONDS")
    registration_max_attempts: int = env_field(5, "REGISTRATION_MAX_ATTEMPTS")
    registration_window_seconds: int = env_field(30 * 60, "REGISTRATION_WINDOW_SECONDS")
    registration_lockout_seconds: int = env_field(60 * 60, "REGISTRATION_LOCKOUT_SECONDS")
    forgot_password_max_attempts: int = env_field(3, "FORGOT_PASSWORD_MAX_ATTEMPTS")
    forgot_password_window_seconds: int = env_field(
        30 * 60, "FORGOT_PASSWORD_WINDOW_SECONDS"
    )
    forgot_password_lockout_seconds: int = env_field(
        60 * 60, "FORGOT_PASSWORD_LOCKOUT_SECONDS"
    )
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_window_seconds: int = env_field(15 * 60, "OTP_WINDOW_SECONDS")
    otp_lockout_seconds: int = env_field(30 * 60, "OTP_LOCKOUT_SECONDS")

    # Site-wide PIN gate
    site_pin: str | None = env_field(None, "SITE_PIN")
    pin_max_attempts: int = env_field(5, "PIN_MAX_ATTEMPTS")
    pin_base_lockout_seconds: int = env_field(15 * 60, "PIN_BASE_LOCKOUT_SECONDS")
    pin_max_lockout_seconds: int = env_field(24 * 3600, "PIN_MAX_LOCKOUT_SECONDS")
    pin_rate_limit_requests: int = env_field(10, "PIN_RATE_LIMIT_REQUESTS")
    pin_rate_limit_window_seconds: int = env_field(60, "PIN_RATE_LIMIT_WINDOW_SECONDS")
    pin_monitoring_window_seconds: int = env_field(
        24 * 3600, "PIN_MONITORING_WINDOW_SECONDS"
    )
    pin_cookie_ttl_seconds: int = env_field(24 * 3600, "PIN_COOKIE_TTL_SECONDS")
    security_event_retention_seconds: int = env_field(
        7 * 24 * 3600, "SECURITY_EVENT_RETENTION_SECONDS"
    )
    security_event_max_entries: int = env_field(1000, "SECURITY_EVENT_MAX_ENTRIES")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Doc Prescrip", "EMAIL_FROM_NAME")

    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

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

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_env(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower() or Environment.DEVELOPMENT.value
        return Environment(value)

    @field_validator(
        "redis_url",
        "redis_token",
        "jwt_secret",
        "federated_session_secret",
        "site_pin",
        "admin_password",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
