from __future__ import annotations

import unicodedata
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ZERO_WIDTH = ("\u200c", "\u200d", "\ufeff")
_MAX_TZ_LENGTH = 255
_TZ_ERROR = "CONFIG_TZ_INVALID: TIMEZONE must be a valid IANA timezone name"


class RedisConfig(BaseModel):
    """Shared-state store for locks, kill switch and write window."""

    dsn: str = Field(default="redis://localhost:6379/0")
    namespace: str = Field(default="stock_allocation")
    operation_timeout: float = Field(default=0.2, ge=0.05, le=2.0)


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    dsn: str = Field(default="sqlite:///./stock_allocation.db")
    echo: bool = Field(default=False)


class SafetyConfig(BaseModel):
    """Static write policy; the kill switch and write window live in Redis."""

    browse_mode: bool = Field(default=False)
    write_enabled: bool = Field(default=True)
    write_hours_start: int | None = Field(default=None, ge=0, le=23)
    write_hours_end: int | None = Field(default=None, ge=0, le=24)
    default_window_seconds: int = Field(default=900, ge=60, le=86_400)

    @model_validator(mode="after")
    def _check_hours(self) -> "SafetyConfig":
        if (self.write_hours_start is None) != (self.write_hours_end is None):
            raise ValueError("write_hours_start and write_hours_end must be set together")
        return self


class ExecutionConfig(BaseModel):
    """Orchestrator limits."""

    timeout_seconds: float = Field(default=30.0, ge=0.1, le=3600.0)
    lock_ttl_seconds: int = Field(default=120, ge=1, le=86_400)
    max_redistribution_passes: int = Field(default=10, ge=1, le=100)
    source_outlet_id: str = Field(default="warehouse", min_length=1)
    recent_limit_max: int = Field(default=200, ge=1, le=10_000)

    @model_validator(mode="after")
    def _lock_outlives_run(self) -> "ExecutionConfig":
        if self.lock_ttl_seconds <= self.timeout_seconds:
            raise ValueError("lock_ttl_seconds must exceed timeout_seconds")
        return self


class ObservabilityConfig(BaseModel):
    service_name: str = Field(default="stock-allocation")
    log_level: str = Field(default="INFO")


class AppConfig(BaseSettings):
    """Application settings loaded from ``STOCK_ALLOCATION_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="STOCK_ALLOCATION_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    redis: RedisConfig = Field(default_factory=RedisConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    timezone: str = Field(default="UTC")

    @field_validator("timezone", mode="before")
    @classmethod
    def _validate_timezone(cls, value: object) -> str:
        """Normalize and validate the configured IANA timezone name."""

        if value is None:
            raise ValueError(_TZ_ERROR)

        normalized = unicodedata.normalize("NFKC", str(value))
        for char in _ZERO_WIDTH:
            normalized = normalized.replace(char, "")
        normalized = normalized.strip()

        if not normalized or len(normalized) > _MAX_TZ_LENGTH:
            raise ValueError(_TZ_ERROR)

        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(_TZ_ERROR) from exc

        return normalized

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables deterministically."""

        return cls()  # type: ignore[call-arg]


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    return AppConfig.from_env()


__all__ = [
    "AppConfig",
    "DatabaseConfig",
    "ExecutionConfig",
    "ObservabilityConfig",
    "RedisConfig",
    "SafetyConfig",
    "get_config",
]
