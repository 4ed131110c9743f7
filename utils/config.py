"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from .env files using pydantic-settings.
Type-safe access to all environment variables with validation.

Usage:
    from utils.config import settings

    api_base = settings.RECORD_API_BASE
    redis_url = settings.REDIS_URL
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Remote Record API
    RECORD_API_BASE: str = Field(default="https://services.leadconnectorhq.com")
    RECORD_API_VERSION: str = Field(default="2021-07-28")
    API_TIMEOUT: int = Field(default=30)
    CONVERSATION_PAGE_SIZE: int = Field(default=100)
    MESSAGE_PAGE_SIZE: int = Field(default=500)
    PAGE_DELAY_SECONDS: float = Field(default=0.1)

    # OAuth Token Renewal
    OAUTH_TOKEN_URL: str = Field(default="https://services.leadconnectorhq.com/oauth/token")
    OAUTH_CLIENT_ID: str = Field(default="")
    OAUTH_CLIENT_SECRET: str = Field(default="")
    OAUTH_DEFAULT_TTL_SECONDS: int = Field(default=24 * 60 * 60)

    # Batch Processing
    BATCH_RECORD_QUOTA: int = Field(default=10000)
    INVOCATION_TIME_BUDGET_SECONDS: float = Field(default=900.0)
    TIME_SAFETY_BUFFER_SECONDS: float = Field(default=60.0)
    RETRY_BACKOFF_SECONDS: float = Field(default=5.0)
    EXPORT_MAX_RETRIES: int = Field(default=3)

    # Object Storage
    STORAGE_BACKEND: str = Field(default="s3")
    S3_BUCKET: str = Field(default="convo-vault-exports")
    S3_REGION: str | None = Field(default=None)
    S3_ENDPOINT_URL: str | None = Field(default=None)
    EXPORT_KEY_PREFIX: str = Field(default="exports")
    DOWNLOAD_TTL_SECONDS: int = Field(default=7 * 24 * 60 * 60)
    DOWNLOAD_BASE_URL: str = Field(default="https://downloads.example.com")
    DOWNLOAD_SIGNING_SECRET: str = Field(default="")

    # SFTP Configuration
    SFTP_HOST: str = Field(default="")
    SFTP_PORT: int = Field(default=22)
    SFTP_USERNAME: str = Field(default="")
    SFTP_KEY_PATH: str = Field(default="/run/secrets/id_rsa")
    SFTP_KEY_PASSPHRASE: str | None = Field(default=None)
    SFTP_REMOTE_BASE: str = Field(default="/upload")
    SFTP_TIMEOUT: int = Field(default=15)

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    REDIS_MAX_CONNECTIONS: int = Field(default=10)
    REDIS_CHANNEL_INVOCATIONS: str = Field(default="exports.invocations")

    # Database Configuration
    SQLITE_PATH: str = Field(default="/data/db/exports.db")

    # Notification Configuration
    NOTIFY_API_URL: str = Field(default="https://api.brevo.com/v3/smtp/email")
    NOTIFY_API_KEY: str = Field(default="")
    NOTIFY_FROM_NAME: str = Field(default="VaultSuite")
    NOTIFY_FROM_ADDRESS: str = Field(default="support@vaultsuite.store")

    # Stale Job Sweeper
    SWEEP_SCHEDULE_CRON: str = Field(default="*/10 * * * *")
    STALE_JOB_MINUTES: int = Field(default=30)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")

    # Application Metadata
    ENVIRONMENT: str = Field(default="production")
    APP_NAME: str = Field(default="export-pipeline")
    APP_VERSION: str = Field(default="0.1.0")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
