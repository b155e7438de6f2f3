from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from credgate.logging import get_logger
from credgate.service.errors import ConfigurationError

logger = get_logger(__name__)

# HS256 keys shorter than the digest size are rejected at startup
MIN_JWT_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Keep lockout counters, refresh tokens and challenges in process memory",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    bootstrap_username: str | None = env_field(
        None,
        "BOOTSTRAP_USERNAME",
        description="Seed the in-memory user store with this account at startup",
    )
    bootstrap_password: str | None = env_field(None, "BOOTSTRAP_PASSWORD")
    bootstrap_email: str | None = env_field(None, "BOOTSTRAP_EMAIL")

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("credgate", "JWT_ISSUER")
    jwt_audience: str = env_field("credgate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )

    max_login_attempts: int = env_field(
        5,
        "MAX_LOGIN_ATTEMPTS",
        description="Consecutive credential failures that lock the account",
    )
    lockout_duration_minutes: int = env_field(
        30,
        "LOCKOUT_DURATION_MINUTES",
        description="Lockout length and failed-attempt counter window",
    )

    enable_mfa: bool = env_field(
        True, "ENABLE_MFA", description="Global multi-factor authentication switch"
    )
    mfa_code_expiration_minutes: int = env_field(5, "MFA_CODE_EXPIRATION_MINUTES")
    mfa_max_challenge_attempts: int = env_field(
        5,
        "MFA_MAX_CHALLENGE_ATTEMPTS",
        description="Wrong codes accepted per challenge before it is discarded",
    )
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT")
    totp_issuer: str = env_field("credgate", "TOTP_ISSUER")

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("credgate", "EMAIL_FROM_NAME")

    sms_webhook_url: str | None = env_field(
        None, "SMS_WEBHOOK_URL", description="HTTP endpoint of the SMS provider"
    )
    sms_api_key: str | None = env_field(None, "SMS_API_KEY")
    sms_sender_id: str = env_field("credgate", "SMS_SENDER_ID")

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
        "max_login_attempts",
        "lockout_duration_minutes",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "mfa_code_expiration_minutes",
        "mfa_max_challenge_attempts",
        "backup_code_count",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    def require_signing_secret(self) -> str:
        """Return the JWT signing secret or fail startup.

        Raises:
            ConfigurationError: if the secret is missing or too short
        """
        secret = self.jwt_secret
        if not secret:
            logger.error("jwt_secret_missing")
            raise ConfigurationError("JWT_SECRET is not configured")
        if len(secret) < MIN_JWT_SECRET_LENGTH:
            logger.error("jwt_secret_too_short", length=len(secret))
            raise ConfigurationError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        return secret


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
