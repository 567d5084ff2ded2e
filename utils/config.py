"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from .env files using pydantic-settings.
Settings are resolved once per process via get_settings() and passed into
component constructors.

Usage:
    from utils.config import get_settings

    settings = get_settings()
    pipeline = build_pipeline(settings)
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

from utils.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Model Provider Configuration
    MODEL_PROVIDER: Literal["gemini", "perplexity"] = Field(default="gemini")
    GEMINI_API_KEY: str | None = Field(default=None)
    GEMINI_MODEL: str = Field(default="gemini-2.5-flash")
    PERPLEXITY_API_KEY: str | None = Field(default=None)
    PERPLEXITY_API_URL: str = Field(default="https://api.perplexity.ai/chat/completions")
    PERPLEXITY_MODEL: str = Field(default="sonar-pro")
    MODEL_TIMEOUT: int = Field(default=60)

    # Forum API Configuration
    FORUM_GRAPHQL_URL: str = Field(default="https://leetcode.com/graphql/")
    FORUM_PAGE_SIZE: int = Field(default=50, gt=0)
    FORUM_PAUSE_EVERY_PAGES: int = Field(default=4, gt=0)
    FORUM_PAUSE_SECONDS: float = Field(default=1.0, ge=0)
    FORUM_TIMEOUT: int = Field(default=30)
    FORUM_MAX_RETRIES: int = Field(default=3)

    # Pipeline Configuration
    DAILY_CALL_BUDGET: int = Field(default=240, ge=0)
    INCREMENTAL_MAX_POSTS: int = Field(default=500, gt=0)
    FULL_MAX_POSTS: int = Field(default=2000, gt=0)
    CALL_DELAY_SECONDS: float = Field(default=0.5, ge=0)
    LONG_PAUSE_EVERY_CALLS: int = Field(default=10, gt=0)
    LONG_PAUSE_SECONDS: float = Field(default=2.0, ge=0)
    EXTRACT_MAX_RETRIES: int = Field(default=3, ge=0)
    EXTRACT_BACKOFF_BASE: float = Field(default=2.0, ge=0)

    # Storage Paths
    DATASET_PATH: str = Field(default="data/parsed_comps.json")
    CURSOR_PATH: str = Field(default="data/.leetcomp_metadata.json")

    # Remote Backup (GitHub Gist)
    GIST_ID: str | None = Field(default=None)
    GITHUB_TOKEN: str | None = Field(default=None)
    GITHUB_API_BASE: str = Field(default="https://api.github.com")
    GIST_DATASET_FILENAME: str = Field(default="parsed_comps.json")
    GIST_CURSOR_FILENAME: str = Field(default=".leetcomp_metadata.json")
    GITHUB_TIMEOUT: int = Field(default=30)

    # Trigger Endpoint
    CRON_SECRET: str | None = Field(default=None)
    # Without a value, requests merely carrying the header are trusted; the
    # platform must strip it from outside traffic
    CRON_TRUSTED_HEADER: str | None = Field(default=None)
    CRON_TRUSTED_HEADER_VALUE: str | None = Field(default=None)

    # Scheduler Configuration
    EXTRACT_SCHEDULE_CRON: str = Field(default="0 3 * * *")

    # Backend API Configuration
    API_PORT: int = Field(default=8000)
    API_HOST: str = Field(default="0.0.0.0")
    API_GRACEFUL_SHUTDOWN_SECONDS: int = Field(default=10, ge=0)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: Literal["json", "text"] = Field(default="text")

    # Application Metadata
    ENVIRONMENT: str = Field(default="production")
    APP_NAME: str = Field(default="compfeed-backend")
    APP_VERSION: str = Field(default="0.1.0")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    @property
    def model_api_key(self) -> str | None:
        """API key of the configured model provider."""
        if self.MODEL_PROVIDER == "perplexity":
            return self.PERPLEXITY_API_KEY
        return self.GEMINI_API_KEY

    @property
    def gist_enabled(self) -> bool:
        return bool(self.GIST_ID)

    def require_model_api_key(self) -> str:
        """Return the model API key or fail before any network activity.

        Raises:
            ConfigurationError: If the key for MODEL_PROVIDER is not set
        """
        key = self.model_api_key
        if not key:
            env_name = "PERPLEXITY_API_KEY" if self.MODEL_PROVIDER == "perplexity" else "GEMINI_API_KEY"
            raise ConfigurationError(
                f"{env_name} environment variable is required. Please set it in your .env file."
            )
        return key


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()
