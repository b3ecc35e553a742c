"""Application settings for the shopfront service.

Settings are read from environment variables (optionally a ``.env`` file)
and cached for the lifetime of the process.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SHOPFRONT_",
        env_file=".env",
        extra="ignore",
    )

    # Environment
    environment: str = Field(default="development", description="development, production or test")
    log_level: str = Field(default="INFO")

    # Database
    database_url: str = Field(default="postgresql+asyncpg://localhost:5432/shopfront")
    database_echo: bool = False
    database_auto_create: bool = False

    # API
    api_docs_enabled: bool = True
    verbose_errors: bool = False
    cron_api_key: Optional[str] = Field(
        default=None,
        description="Bearer token required by the auto-draw endpoint (unset = open)",
    )

    # Points
    welcome_bonus_points: int = Field(default=100, ge=0)

    # Lottery
    lottery_extension_hours: int = Field(default=24, ge=1)
    lottery_draw_on_read: bool = True
    lottery_poll_interval_seconds: int = Field(
        default=0,
        ge=0,
        description="Interval of the in-process draw poller (0 = disabled)",
    )

    # Admin-entered timestamps without an offset are read in this zone
    display_timezone: str = "Asia/Shanghai"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_testing(self) -> bool:
        return self.environment == "test"

    @property
    def verbose_errors_enabled(self) -> bool:
        """Whether internal error details may be returned to clients."""
        return self.verbose_errors and not self.is_production


@lru_cache
def get_settings() -> Settings:
    """Get the cached settings instance."""
    return Settings()
