from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionkeeper.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Persistent store implementations the runtime can build."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


DEFAULT_ACTIVITY_EVENTS = (
    "pointer_down",
    "pointer_move",
    "key_press",
    "scroll",
    "touch_start",
    "click",
)


@dataclass(frozen=True)
class SessionPolicy:
    """Expiry and lockout policy shared by the session machine and the ledger."""

    session_timeout: timedelta = timedelta(minutes=30)
    remember_me: timedelta = timedelta(days=30)
    max_attempts: int = 5
    lockout: timedelta = timedelta(minutes=15)
    retention: timedelta = timedelta(hours=24)

    def __post_init__(self) -> None:
        for name in ("session_timeout", "remember_me", "lockout", "retention"):
            if getattr(self, name) <= timedelta(0):
                raise ValueError(f"{name} must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @property
    def longest_session(self) -> timedelta:
        return max(self.session_timeout, self.remember_me)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session engine and its adapters."""

    # Policy
    session_timeout_seconds: int = env_field(
        30 * 60,
        "SESSION_TIMEOUT_SECONDS",
        description="Short-lived session window, also used by every extension",
    )
    remember_me_seconds: int = env_field(
        30 * 24 * 60 * 60,
        "REMEMBER_ME_SECONDS",
        description="Session window when the user asked to be remembered",
    )
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_seconds: int = env_field(15 * 60, "LOCKOUT_SECONDS")
    attempt_retention_seconds: int = env_field(
        24 * 60 * 60, "ATTEMPT_RETENTION_SECONDS"
    )
    # Timers
    session_check_interval_seconds: float = env_field(
        60, "SESSION_CHECK_INTERVAL_SECONDS"
    )
    session_countdown_interval_seconds: float = env_field(
        1,
        "SESSION_COUNTDOWN_INTERVAL_SECONDS",
        description="Countdown refresh cadence; 0 disables the countdown timer",
    )
    clock_skew_leeway_seconds: int = env_field(120, "CLOCK_SKEW_LEEWAY_SECONDS")
    # Activity
    activity_events: list[str] = env_field(
        list(DEFAULT_ACTIVITY_EVENTS),
        "ACTIVITY_EVENTS",
        description="Comma separated activity event names that count as user activity",
    )
    activity_coalesce_seconds: float = env_field(0, "ACTIVITY_COALESCE_SECONDS")
    # Storage
    store_backend: StoreBackend = env_field(StoreBackend.FILE, "STORE_BACKEND")
    state_dir: str = env_field("/var/lib/sessionkeeper", "STATE_DIR")
    redis_url: str | None = env_field(None, "REDIS_URL")
    store_key_prefix: str = env_field("sessionkeeper:", "STORE_KEY_PREFIX")
    allow_store_fallback: bool = env_field(
        False,
        "ALLOW_STORE_FALLBACK",
        description="Fall back to the file store when Redis is unreachable",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

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
        "session_timeout_seconds",
        "remember_me_seconds",
        "lockout_seconds",
        "attempt_retention_seconds",
        "session_check_interval_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("session_countdown_interval_seconds", "activity_coalesce_seconds")
    @classmethod
    def _ensure_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("max_login_attempts")
    @classmethod
    def _validate_max_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("activity_events", mode="before")
    @classmethod
    def _split_events(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("store_backend")
    @classmethod
    def _validate_store_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    def policy(self) -> SessionPolicy:
        return SessionPolicy(
            session_timeout=timedelta(seconds=self.session_timeout_seconds),
            remember_me=timedelta(seconds=self.remember_me_seconds),
            max_attempts=self.max_login_attempts,
            lockout=timedelta(seconds=self.lockout_seconds),
            retention=timedelta(seconds=self.attempt_retention_seconds),
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            store_backend=_settings_cache.store_backend.value,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
