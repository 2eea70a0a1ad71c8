from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from eventauth.logging import get_logger

logger = get_logger(__name__)

# Minimum length accepted for an operator supplied signing secret
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and session core."""

    # Token signing. Access and refresh tokens use separate secrets so a leak
    # of one family cannot be used to forge the other.
    access_secret: str | None = env_field(None, "ACCESS_SECRET")
    refresh_secret: str | None = env_field(None, "REFRESH_SECRET")
    jwt_issuer: str = env_field("eventauth", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime in minutes",
    )
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime in minutes (7 days)",
    )
    token_clock_skew_seconds: int = env_field(
        0,
        "TOKEN_CLOCK_SKEW_SECONDS",
        description="Leeway applied to token expiry checks",
    )
    # One-time codes and reset links
    otp_ttl_seconds: int = env_field(
        30,
        "OTP_TTL_SECONDS",
        description="Login code lifetime in seconds",
    )
    reset_token_ttl_minutes: int = env_field(
        15,
        "RESET_TOKEN_TTL_MINUTES",
        description="Password reset token lifetime in minutes",
    )
    # Outbound email. Unset host means codes are logged instead of sent.
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Event Signup", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cleanup_interval_minutes: int = env_field(5, "CLEANUP_INTERVAL_MINUTES")
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore", validate_default=True)

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

    @field_validator("access_secret", "refresh_secret")
    @classmethod
    def _ensure_secret(cls, value: str | None, info) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{info.field_name} must be at least {MIN_SECRET_LENGTH} characters"
                )
            return value
        # Credentials are process-local, so a generated secret only has to
        # outlive the process.
        logger.warning(
            "signing_secret_generated",
            field=info.field_name,
            message="No secret configured; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "otp_ttl_seconds",
        "reset_token_ttl_minutes",
        "cleanup_interval_minutes",
    )
    @classmethod
    def _positive_ttl(cls, value: int, info) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("token_clock_skew_seconds")
    @classmethod
    def _non_negative_skew(cls, value: int) -> int:
        if value < 0:
            raise ValueError("token_clock_skew_seconds cannot be negative")
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.access_secret == self.refresh_secret:
            raise ValueError("ACCESS_SECRET and REFRESH_SECRET must differ")
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            raise ValueError("refresh tokens must outlive access tokens")
        return self


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
