from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


@dataclass(frozen=True)
class OwnerBootstrap:
    """Process-wide owner bootstrap configuration, read once at startup."""

    staff_api_key: Optional[str]
    email: str
    full_name: str
    app_name: str
    app_url: str


class Settings(BaseModel):
    """Runtime settings for the token and session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    redis_url: Optional[str] = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: Optional[str] = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Directory for JSON persistence of the in-memory store; unset keeps state in process only",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets.",
    )

    # Owner bootstrap
    staff_api_key: Optional[str] = env_field(
        None,
        "STAFF_API_KEY",
        description="Shared secret guarding owner bootstrap; bootstrap is refused while unset",
    )
    owner_email: str = env_field("owner@localhost", "OWNER_EMAIL")
    owner_full_name: str = env_field("Platform Owner", "OWNER_FULL_NAME")
    owner_app_name: str = env_field("Tenant Auth", "OWNER_APP_NAME")
    owner_app_url: str = env_field("http://localhost:3000", "OWNER_APP_URL")

    # Sessions
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    default_access_token_ttl_minutes: int = env_field(
        30,
        "DEFAULT_ACCESS_TOKEN_TTL_MINUTES",
        description="Access token TTL used when a tenant does not override it",
    )
    default_refresh_token_ttl_minutes: Optional[int] = env_field(
        60 * 24 * 7,
        "DEFAULT_REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token TTL for newly provisioned tenants; empty disables refresh",
    )
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS")
    track_refresh_tokens: bool = env_field(
        False,
        "TRACK_REFRESH_TOKENS",
        description="Record issued refresh tokens so logout and password reset can revoke them",
    )

    # Ephemeral token lifetimes
    confirm_email_ttl_minutes: int = env_field(60 * 24, "CONFIRM_EMAIL_TTL_MINUTES")
    magic_login_ttl_minutes: int = env_field(30, "MAGIC_LOGIN_TTL_MINUTES")
    reset_password_ttl_minutes: int = env_field(30, "RESET_PASSWORD_TTL_MINUTES")
    invite_user_ttl_minutes: int = env_field(60 * 24 * 7, "INVITE_USER_TTL_MINUTES")
    expired_token_retention_minutes: int = env_field(
        60 * 24 * 7,
        "EXPIRED_TOKEN_RETENTION_MINUTES",
        description="How long Redis keeps a token record past expiry so expiry can still be reported",
    )

    # Email
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: Optional[str] = env_field(
        None,
        "EMAIL_FROM_NAME",
        description="Sender display name; defaults to '<app name> Team' per tenant",
    )
    auth_base_url: str = env_field("http://localhost:8000", "AUTH_BASE_URL")
    email_queue_size: int = env_field(1000, "EMAIL_QUEUE_SIZE")
    welcome_email_delay_minutes: int = env_field(60, "WELCOME_EMAIL_DELAY_MINUTES")

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

    @field_validator("redis_url", "memory_store_path", "staff_api_key", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("default_refresh_token_ttl_minutes", mode="before")
    @classmethod
    def _refresh_ttl(cls, value: Any) -> Any:
        # An empty value or a non-positive number disables refresh for new tenants
        if value is None:
            return None
        if isinstance(value, str):
            if not value.strip():
                return None
            value = int(value)
        if value <= 0:
            return None
        return value

    @field_validator("staff_api_key")
    @classmethod
    def _warn_short_staff_key(cls, value: Optional[str]) -> Optional[str]:
        if value and len(value) < 16:
            logger.warning(
                "staff_api_key_short",
                length=len(value),
                message="STAFF_API_KEY should be at least 16 characters",
            )
        return value

    def owner_bootstrap(self) -> OwnerBootstrap:
        return OwnerBootstrap(
            staff_api_key=self.staff_api_key,
            email=self.owner_email.strip().lower(),
            full_name=self.owner_full_name,
            app_name=self.owner_app_name,
            app_url=self.owner_app_url,
        )


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
