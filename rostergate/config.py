from __future__ import annotations

import os
from datetime import timedelta, timezone, tzinfo
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rostergate.logging import get_logger

logger = get_logger(__name__)


def resolve_timezone(name: str) -> tzinfo:
    """Resolve an IANA zone name; UTC needs no system tz database."""
    if name.upper() in {"UTC", "Z"}:
        return timezone.utc
    return ZoneInfo(name)


class ProviderMode(str, Enum):
    """Identity provider backends the runtime can wire up."""

    MEMORY = "memory"
    FIREBASE = "firebase"


class GuardStoreMode(str, Enum):
    """Where attempt and device-trust records live."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the roster login service."""

    roster_path: str = env_field(
        "students.json",
        "ROSTER_PATH",
        description="JSON enrollment file loaded once at startup",
    )
    login_key_domain: str = env_field(
        "student.app",
        "LOGIN_KEY_DOMAIN",
        description="Domain suffix appended to identifiers to form provider login keys",
    )
    # Guard policy
    max_login_attempts: int = env_field(3, "MAX_LOGIN_ATTEMPTS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    session_timeout_minutes: int = env_field(2 * 60, "SESSION_TIMEOUT_MINUTES")
    # Device risk heuristics
    rapid_login_minutes: int = env_field(10, "RAPID_LOGIN_MINUTES")
    high_volume_login_count: int = env_field(10, "HIGH_VOLUME_LOGIN_COUNT")
    # Identity provider
    provider_mode: ProviderMode = env_field(ProviderMode.MEMORY, "IDENTITY_PROVIDER")
    firebase_api_key: str | None = env_field(None, "FIREBASE_API_KEY")
    firebase_project_id: str | None = env_field(None, "FIREBASE_PROJECT_ID")
    firebase_auth_domain: str | None = env_field(None, "FIREBASE_AUTH_DOMAIN")
    profile_collection: str = env_field("students", "PROFILE_COLLECTION")
    provider_timeout_seconds: float = env_field(
        15.0,
        "PROVIDER_TIMEOUT_SECONDS",
        description="Upper bound on each remote sign-in/provisioning call; 0 disables",
    )
    # Guard state backend
    guard_store: GuardStoreMode = env_field(GuardStoreMode.MEMORY, "GUARD_STORE")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    # Access hours policy (disabled by default)
    enforce_access_window: bool = env_field(False, "ENFORCE_ACCESS_WINDOW")
    access_window_start_hour: int = env_field(8, "ACCESS_WINDOW_START_HOUR")
    access_window_end_hour: int = env_field(18, "ACCESS_WINDOW_END_HOUR")
    access_window_weekdays_only: bool = env_field(True, "ACCESS_WINDOW_WEEKDAYS_ONLY")
    access_window_timezone: str = env_field("UTC", "ACCESS_WINDOW_TIMEZONE")
    # Bulk migration pacing
    migration_delay_ms: int = env_field(500, "MIGRATION_DELAY_MS")

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

    @field_validator("provider_mode", mode="before")
    @classmethod
    def _validate_provider_mode(cls, value: Any) -> ProviderMode:
        if isinstance(value, str):
            value = value.strip().lower()
        return ProviderMode(value)

    @field_validator("guard_store", mode="before")
    @classmethod
    def _validate_guard_store(cls, value: Any) -> GuardStoreMode:
        if isinstance(value, str):
            value = value.strip().lower()
        return GuardStoreMode(value)

    @field_validator(
        "max_login_attempts",
        "lockout_minutes",
        "session_timeout_minutes",
        "rapid_login_minutes",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("high_volume_login_count", "migration_delay_ms")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("provider_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("access_window_start_hour", "access_window_end_hour")
    @classmethod
    def _validate_hour(cls, value: int) -> int:
        if not 0 <= value <= 24:
            raise ValueError("hour must be between 0 and 24")
        return value

    @field_validator("access_window_timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            resolve_timezone(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @field_validator("login_key_domain")
    @classmethod
    def _validate_domain(cls, value: str) -> str:
        domain = value.strip().lower().lstrip("@")
        if not domain or "/" in domain or "@" in domain:
            raise ValueError("login key domain must be a bare domain name")
        return domain

    @model_validator(mode="after")
    def _validate_access_window(self) -> "Settings":
        if self.access_window_start_hour >= self.access_window_end_hour:
            raise ValueError("access window start hour must precede end hour")
        return self

    @model_validator(mode="after")
    def _warn_incomplete_provider(self) -> "Settings":
        if self.provider_mode == ProviderMode.FIREBASE and not (
            self.firebase_api_key and self.firebase_project_id
        ):
            # Provider construction refuses this; surface it while config is read
            logger.warning(
                "firebase_settings_incomplete",
                key_present=bool(self.firebase_api_key),
                project_present=bool(self.firebase_project_id),
            )
        return self

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.lockout_minutes)

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(minutes=self.session_timeout_minutes)

    @property
    def rapid_login_threshold(self) -> timedelta:
        return timedelta(minutes=self.rapid_login_minutes)


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
