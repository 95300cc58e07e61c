from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionlife.logging import get_logger

logger = get_logger(__name__)

# Routes on which session tracking is inert (unauthenticated pages)
DEFAULT_EXEMPT_ROUTES = ["/login", "/register", "/forgot-password", "/reset-password"]


class CredentialBackend(str, Enum):
    """Where the current credential is kept between reloads."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Session lifecycle tuning. All durations are in seconds."""

    inactivity_timeout: float = env_field(
        60 * 60,
        "SESSION_INACTIVITY_TIMEOUT",
        description="Idle time after which the session is forcibly ended",
    )
    warning_window: float = env_field(
        20 * 60,
        "SESSION_WARNING_WINDOW",
        description="Trailing part of the inactivity timeout during which a countdown is shown",
    )
    poll_interval: float = env_field(1.0, "SESSION_POLL_INTERVAL")
    keep_alive_interval: float = env_field(15 * 60, "KEEP_ALIVE_INTERVAL")
    keep_alive_initial_delay: float = env_field(
        1.0,
        "KEEP_ALIVE_INITIAL_DELAY",
        description="Grace period so the first renewal does not race the initial auth check",
    )
    min_renewal_spacing: float = env_field(30.0, "MIN_RENEWAL_SPACING")
    refresh_threshold_before_warning: float = env_field(
        10 * 60,
        "REFRESH_THRESHOLD_BEFORE_WARNING",
        description="How long before the warning point an idle session is proactively renewed",
    )
    activity_debounce: float = env_field(1.0, "ACTIVITY_DEBOUNCE")
    retry_backoff: float = env_field(10.0, "KEEP_ALIVE_RETRY_BACKOFF")
    version_step: int = env_field(
        1,
        "CREDENTIAL_VERSION_STEP",
        description="Version increment expected from each renewal; 0 for servers that keep it constant",
    )
    logout_timeout: float = env_field(5.0, "LOGOUT_TIMEOUT")
    request_timeout: float = env_field(10.0, "AUTH_REQUEST_TIMEOUT")
    exempt_route_patterns: list[str] = env_field(
        list(DEFAULT_EXEMPT_ROUTES), "EXEMPT_ROUTE_PATTERNS"
    )
    auth_base_url: str = env_field("http://localhost:3000/api", "AUTH_BASE_URL")
    credential_backend: CredentialBackend = env_field(
        CredentialBackend.MEMORY, "CREDENTIAL_BACKEND"
    )
    state_dir: str = env_field("/tmp/sessionlife", "SESSION_STATE_DIR")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_key: str = env_field("sessionlife:credential", "REDIS_CREDENTIAL_KEY")

    model_config = ConfigDict(extra="ignore")

    @property
    def warning_at(self) -> float:
        """Elapsed idle time at which the countdown starts."""
        return self.inactivity_timeout - self.warning_window

    @property
    def refresh_at(self) -> float:
        """Elapsed idle time at which a proactive renewal is attempted."""
        return self.warning_at - self.refresh_threshold_before_warning

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

    @field_validator("exempt_route_patterns", mode="before")
    @classmethod
    def _split_patterns(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("credential_backend")
    @classmethod
    def _validate_backend(cls, value: CredentialBackend) -> CredentialBackend:
        return CredentialBackend(value)

    @field_validator(
        "inactivity_timeout",
        "poll_interval",
        "keep_alive_interval",
        "activity_debounce",
        "retry_backoff",
        "logout_timeout",
        "request_timeout",
        "refresh_threshold_before_warning",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator(
        "warning_window",
        "keep_alive_initial_delay",
        "min_renewal_spacing",
    )
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("version_step")
    @classmethod
    def _valid_step(cls, value: int) -> int:
        if value < 0:
            raise ValueError("version_step must not be negative")
        return value

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        if self.warning_window >= self.inactivity_timeout:
            raise ValueError("warning_window must be shorter than inactivity_timeout")
        if self.refresh_at < 0:
            raise ValueError(
                "refresh_threshold_before_warning reaches past the start of the idle period"
            )
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            inactivity_timeout=_settings_cache.inactivity_timeout,
            warning_window=_settings_cache.warning_window,
            credential_backend=_settings_cache.credential_backend.value,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
