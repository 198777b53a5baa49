"""Configuration settings for campus_sync."""

import logging
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from campus_sync.models.store import MergeMode, StoreConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Supabase
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None      # Publishable (anon) key
    supabase_schema: str = "public"

    # Stores
    fetch_timeout_seconds: Optional[float] = None   # None leaves fetches open-ended
    chat_history_limit: int = 500
    feed_page_size: int = 10
    conversation_scan_limit: int = 200

    # App
    log_level: str = "INFO"

    def store_config(self, merge_mode: MergeMode = MergeMode.FINE_GRAINED, **overrides) -> StoreConfig:
        """StoreConfig carrying the global fetch timeout."""
        return StoreConfig(
            merge_mode=merge_mode,
            fetch_timeout_seconds=self.fetch_timeout_seconds,
            **overrides,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Basic logging setup for applications embedding the views."""
    if level is None:
        level = get_settings().log_level
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
