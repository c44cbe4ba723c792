"""Configuration for the EquiDuty scheduling core."""

from __future__ import annotations

import logging
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PACKAGE_LOGGER = "equiduty_scheduling"


class Settings(BaseSettings):
    """Runtime settings loaded from environment."""

    api_base_url: str = "https://api.equiduty.com"
    api_prefix: str = "/api/v1"
    environment: str = "development"
    log_level: str = "INFO"

    request_timeout_connect: float = Field(default=10.0, gt=0)
    request_timeout_read: float = Field(default=30.0, gt=0)
    request_timeout_write: float = Field(default=10.0, gt=0)
    request_timeout_pool: float = Field(default=10.0, gt=0)

    permission_cache_ttl_seconds: int = Field(default=300, ge=0)
    subscription_cache_ttl_seconds: int = Field(default=300, ge=0)
    feature_toggle_cache_ttl_seconds: int = Field(default=600, ge=0)

    max_time_blocks: int = Field(default=5, ge=1)
    max_schedule_exceptions: int = Field(default=365, ge=0)
    default_slot_minutes: int = Field(default=30, ge=1)
    # IANA name; None means callers already hand the resolver facility-local dates.
    facility_timezone: Optional[str] = None

    model_config = SettingsConfigDict(env_prefix="EQUIDUTY_", env_file=".env", extra="ignore")

    @field_validator("api_prefix")
    @classmethod
    def normalize_prefix(cls, v: str) -> str:
        v = v.strip()
        if not v:
            return ""
        return "/" + v.strip("/")

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = (v or "INFO").strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {v}")
        return level


def configure_logging(settings: Settings) -> logging.Logger:
    """Apply the configured level to the package logger and return it."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(settings.log_level)
    logger.debug("logging_configured level=%s env=%s", settings.log_level, settings.environment)
    return logger
