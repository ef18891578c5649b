"""Runtime configuration based on environment variables."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AnyHttpUrl, BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ReservationApiSettings(BaseModel):
    base_url: AnyHttpUrl = Field(
        default="https://queuesystem-be.onrender.com/api",
        description="Root of the queue system REST API.",
    )
    admin_password: SecretStr = Field(default=SecretStr("canamadmin"))
    referer: str = "https://can-am.vercel.app/"
    request_timeout_seconds: float = Field(default=15.0, gt=0, le=120)

    def endpoint(self, path: str) -> str:
        return f"{str(self.base_url).rstrip('/')}/{path.lstrip('/')}"


class StorageSettings(BaseModel):
    backend: Literal["redis", "rest", "memory"] = "redis"
    redis_url: str = Field(default="redis://localhost:6379/0")
    rest_url: AnyHttpUrl | None = Field(
        default=None,
        description="Managed key-value service endpoint (Upstash-style REST API).",
    )
    rest_token: SecretStr | None = None
    ttl_seconds: int = Field(default=6 * 60 * 60, ge=60)
    operation_timeout_seconds: float = Field(default=5.0, gt=0, le=60)
    lock_ttl_seconds: int = Field(default=120, ge=5)
    connect_max_attempts: int = Field(default=3, ge=1, le=20)
    connect_base_delay: float = Field(default=1.0, ge=0)

    @field_validator("rest_url", "rest_token", mode="before")
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class RotationSettings(BaseModel):
    interval_minutes: int = Field(default=30, ge=1)
    user_validity_hours: int = Field(default=6, ge=1)
    rotation_settle_seconds: float = Field(default=0.5, ge=0)
    initial_settle_seconds: float = Field(default=1.0, ge=0)
    reserve_timeout_seconds: float = Field(default=20.0, gt=0)
    max_duration_hours: float = Field(default=24, gt=0)
    max_courts: int = Field(default=10, ge=1)


class SchedulerSettings(BaseModel):
    enabled: bool = True
    period_seconds: float = Field(default=30 * 60, gt=0)
    run_immediately: bool = True


class AutomationSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="COURT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    environment: Literal["dev", "staging", "prod"] = "dev"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    reservation_api: ReservationApiSettings = Field(default_factory=ReservationApiSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    rotation: RotationSettings = Field(default_factory=RotationSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)


@lru_cache
def get_settings() -> AutomationSettings:
    """Return cached settings instance."""

    return AutomationSettings()


__all__ = [
    "AutomationSettings",
    "ReservationApiSettings",
    "RotationSettings",
    "SchedulerSettings",
    "StorageSettings",
    "get_settings",
]
