from __future__ import annotations

import functools
import os

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_HISTORY_KEY = "gap-alert-history"
DEFAULT_HISTORY_LIMIT = 50
DEFAULT_MAX_VISIBLE = 5
DEFAULT_AUTO_DISMISS_MS = 30_000


def _default_redis_url() -> str:
    return os.getenv("REDIS_URL", "redis://localhost:6379/0")


class Settings(BaseSettings):
    """Runtime configuration of the gap alerts service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    max_visible: int = Field(
        DEFAULT_MAX_VISIBLE,
        ge=1,
        alias="GAP_ALERTS_MAX_VISIBLE",
        description="Maximum number of alerts displayed at once",
    )
    auto_dismiss_ms: int = Field(
        DEFAULT_AUTO_DISMISS_MS,
        ge=0,
        alias="GAP_ALERTS_AUTO_DISMISS_MS",
        description="Delay before an active alert dismisses itself, 0 disables it",
    )
    history_limit: int = Field(
        DEFAULT_HISTORY_LIMIT,
        ge=1,
        alias="GAP_ALERTS_HISTORY_LIMIT",
        description="Number of alerts kept in the notification history",
    )
    history_key: str = Field(DEFAULT_HISTORY_KEY, alias="GAP_ALERTS_HISTORY_KEY")
    storage_url: str = Field(
        "sqlite:///./gap_alerts.db",
        alias="GAP_ALERTS_STORAGE_URL",
        description="memory://, redis:// or any SQLAlchemy URL",
    )
    redis_url: str = Field(default_factory=_default_redis_url, alias="GAP_ALERTS_REDIS_URL")
    channel_name: str = Field("gap-alerts", alias="GAP_ALERTS_CHANNEL")
    event_name: str = Field("gap-alert", alias="GAP_ALERTS_EVENT_NAME")
    subscribe_on_startup: bool = Field(True, alias="GAP_ALERTS_SUBSCRIBE")
    log_level: str = Field("INFO", alias="GAP_ALERTS_LOG_LEVEL")

    @property
    def auto_dismiss_seconds(self) -> float:
        return self.auto_dismiss_ms / 1000


@functools.lru_cache
def get_settings() -> Settings:
    return Settings()
