"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from .env files using pydantic-settings.
Type-safe access to all environment variables with validation.

Usage:
    from utils.config import settings

    token = settings.SLACK_USER_TOKEN
    storage = settings.STORAGE_PATH
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

# Default look-back window (days) per deployment environment
DEFAULT_DAYS_BY_ENVIRONMENT: dict[str, int] = {
    "dev": 1,
    "production": 5,
    "test": 5,
    "cloud": 14,
    "backfill": 365,
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Slack Configuration
    SLACK_API_BASE: str = Field(default="https://slack.com/api")
    SLACK_BOT_TOKEN: str = Field(default="")
    SLACK_USER_TOKEN: str = Field(default="")
    SLACK_PREFIX: str = Field(default="https://mixpanel.slack.com/archives")
    SLACK_MANAGER_FIELD_ID: str = Field(default="")
    API_TIMEOUT: int = Field(default=30)

    # Rate Limiting
    CONCURRENCY: int = Field(default=2, ge=1)
    ANALYTICS_DELAY_MIN: float = Field(default=1.5, ge=0)
    ANALYTICS_DELAY_MAX: float = Field(default=3.0, ge=0)
    RATE_LIMIT_BACKOFF: float = Field(default=60.0, ge=0)
    RATE_LIMIT_RETRIES: int = Field(default=1, ge=0)
    ENRICHMENT_DELAY_MIN: float = Field(default=0.1, ge=0)
    ENRICHMENT_DELAY_MAX: float = Field(default=0.3, ge=0)

    # Enrichment
    MAX_ENRICHMENT: Optional[int] = Field(default=None, ge=0)
    ENRICHMENT_PROGRESS_EVERY: int = Field(default=250, ge=1)

    # Filtering
    COMPANY_DOMAIN: str = Field(default="")

    # Mixpanel Configuration
    MIXPANEL_API_BASE: str = Field(default="https://api.mixpanel.com")
    MIXPANEL_TOKEN: str = Field(default="")
    MIXPANEL_SECRET: str = Field(default="")
    MIXPANEL_WORKERS: int = Field(default=100, ge=1)
    MIXPANEL_RECORDS_PER_BATCH: int = Field(default=2000, ge=1, le=2000)
    CHANNEL_GROUP_KEY: str = Field(default="channel_id")
    UPLOAD_MAX_RETRIES: int = Field(default=3, ge=1)
    UPLOAD_RETRY_DELAY: float = Field(default=2.0, ge=0)

    # Storage
    STORAGE_PATH: str = Field(default="")
    LOCAL_STORAGE_DIR: str = Field(default="./tmp")
    AWS_ENDPOINT_URL: Optional[str] = Field(default=None)

    # Scheduler Configuration
    PIPELINE_SCHEDULE_CRON: str = Field(default="0 6 * * *")

    # Backend API Configuration
    API_PORT: int = Field(default=8080)
    API_HOST: str = Field(default="0.0.0.0")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")

    # Application Metadata
    ENVIRONMENT: str = Field(default="production")
    APP_NAME: str = Field(default="slack-mixpanel-pipeline")
    APP_VERSION: str = Field(default="1.0.0")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @property
    def max_enrichment(self) -> int:
        """Effective enrichment cap (unbounded-ish in production, tiny elsewhere)."""
        if self.MAX_ENRICHMENT is not None:
            return self.MAX_ENRICHMENT
        return 1_000_000 if self.ENVIRONMENT == "production" else 10

    @property
    def is_dev(self) -> bool:
        return self.ENVIRONMENT == "dev"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
