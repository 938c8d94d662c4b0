"""Central configuration management using pydantic-settings.

All configuration is loaded from environment variables with sensible defaults.
Create a .env file for local development.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from feedline.ingestion.fetcher import DEFAULT_USER_AGENT


class HTTPSettings(BaseSettings):
    """Feed fetching configuration."""

    model_config = SettingsConfigDict(env_prefix="FEEDLINE_HTTP_")

    timeout_seconds: float = Field(default=30.0, description="HTTP request timeout")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent header")
    max_retries: int = Field(default=3, ge=1, description="Attempts per fetch on transport errors")


class RefreshSettings(BaseSettings):
    """Feed refresh configuration."""

    model_config = SettingsConfigDict(env_prefix="FEEDLINE_REFRESH_")

    concurrency: int = Field(default=4, ge=1, description="Max feeds refreshed in parallel")
    max_feeds: int | None = Field(default=None, ge=1, description="Cap on feeds per refresh run")
    initial_episode_limit: int = Field(
        default=3, ge=1, description="Episodes merged in the foreground on first load"
    )
    batch_size: int = Field(default=50, ge=1, description="Episodes per backlog write batch")


class ImportSettings(BaseSettings):
    """Bulk import configuration."""

    model_config = SettingsConfigDict(env_prefix="FEEDLINE_IMPORT_")

    max_concurrent: int = Field(default=5, ge=1, description="Max feeds imported in parallel")


class StorageSettings(BaseSettings):
    """Catalog storage configuration."""

    model_config = SettingsConfigDict(env_prefix="FEEDLINE_STORAGE_")

    catalog_path: Path = Field(
        default=Path("./data/catalog.json"), description="JSON catalog snapshot"
    )


class Settings(BaseSettings):
    """Main application settings aggregating all config sections."""

    model_config = SettingsConfigDict(
        env_prefix="FEEDLINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )
    json_logs: bool = Field(default=False, description="Emit JSON logs instead of console output")

    # Sub-configurations
    http: HTTPSettings = Field(default_factory=HTTPSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    imports: ImportSettings = Field(default_factory=ImportSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: Application settings loaded from environment.
    """
    return Settings()
