from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantguard.logging import get_logger

logger = get_logger(__name__)

# Secrets shorter than this are treated as codec misconfiguration
MIN_SECRET_LENGTH = 32


class AppEnv(str, Enum):
    """Deployment environments; local and e2e relax the Secure cookie flag."""

    LOCAL = "local"
    E2E = "e2e"
    STAGING = "staging"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs: Any):
    """``Field`` that remembers which environment variable feeds it."""
    schema_extra = dict(kwargs.pop("json_schema_extra", None) or {})
    schema_extra["env"] = env
    return Field(default, json_schema_extra=schema_extra, **kwargs)


def _env_name(attr: str, schema_extra: Any) -> str:
    if isinstance(schema_extra, dict) and schema_extra.get("env"):
        return str(schema_extra["env"])
    return attr.upper()


class Settings(BaseModel):
    """Runtime settings for the authentication and authorization layer."""

    app_env: AppEnv = env_field(AppEnv.LOCAL, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/tenantguard", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared rate limiter backend; in-process limiter when unset",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow generated secrets and runtime resets for tests",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    refresh_jwt_secret: str | None = env_field(
        None,
        "REFRESH_JWT_SECRET",
        description="Refresh token signing secret; defaults to JWT_SECRET",
    )
    jwt_issuer: str = env_field("tenantguard", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantguard-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    login_rate_limit_max: int = env_field(10, "LOGIN_RATE_LIMIT_MAX")
    login_rate_limit_window_seconds: int = env_field(
        300, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    refresh_rate_limit_max: int = env_field(30, "REFRESH_RATE_LIMIT_MAX")
    refresh_rate_limit_window_seconds: int = env_field(
        300, "REFRESH_RATE_LIMIT_WINDOW_SECONDS"
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Deadline applied to every store call made by an auth flow",
    )
    cascade_revoke_on_reuse: bool = env_field(
        False,
        "CASCADE_REVOKE_ON_REUSE",
        description="Delete every refresh token of a user when reuse is detected",
    )
    invitation_ttl_hours: int = env_field(48, "INVITATION_TTL_HOURS")
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, then ``.env``."""
        file_values = dotenv_values(".env")
        values: dict[str, Any] = {}
        for attr, info in cls.model_fields.items():
            key = _env_name(attr, info.json_schema_extra)
            raw = os.environ.get(key, file_values.get(key))
            if raw is not None:
                values[attr] = raw
        return cls(**values)

    @property
    def cookie_secure(self) -> bool:
        return self.app_env not in {AppEnv.LOCAL, AppEnv.E2E}

    @property
    def refresh_token_max_age_seconds(self) -> int:
        return self.refresh_token_ttl_days * 24 * 60 * 60

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            value = value.strip().lower() or AppEnv.LOCAL.value
        return AppEnv(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value or []

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "login_rate_limit_max",
        "login_rate_limit_window_seconds",
        "refresh_rate_limit_max",
        "refresh_rate_limit_window_seconds",
        "invitation_ttl_hours",
        "password_reset_ttl_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store_timeout_seconds must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        if not self.jwt_secret:
            if not self.test_mode:
                raise ValueError(
                    "JWT_SECRET must be provisioned outside TEST_MODE"
                )
            # Ephemeral secret; tokens will not survive a restart
            self.jwt_secret = secrets.token_urlsafe(48)
            logger.warning("jwt_secret_generated_for_test_mode")
        if len(self.jwt_secret) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
            )
        if self.refresh_jwt_secret and len(self.refresh_jwt_secret) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"REFRESH_JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
            )
        return self

    def refresh_secret(self) -> str:
        return self.refresh_jwt_secret or self.jwt_secret or ""


_cached: dict[str, Settings] = {}


def get_settings() -> Settings:
    """Process-wide settings, loaded on first use."""
    if "settings" not in _cached:
        _cached["settings"] = Settings.from_env()
    return _cached["settings"]


def reset_settings_cache() -> None:
    _cached.clear()
