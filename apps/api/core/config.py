"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the API, the worker and beat.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins when set (tests use sqlite://).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="swim_club")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Strava API Configuration
    STRAVA_CLIENT_ID: Optional[str] = Field(default=None)
    STRAVA_CLIENT_SECRET: Optional[str] = Field(default=None)
    STRAVA_REDIRECT_URI: str = Field(default="http://localhost:8000/v1/strava/callback")
    STRAVA_WEBHOOK_VERIFY_TOKEN: Optional[str] = Field(default=None)
    STRAVA_WEBHOOK_CALLBACK_URL: Optional[str] = Field(default=None)
    STRAVA_ACTIVITIES_PER_PAGE: int = Field(default=100)

    # Webhook proxy
    # Shared secret the forwarding proxy puts in every relayed event.
    WORKER_SHARED_SECRET: Optional[str] = Field(default=None)
    # Process events in-request instead of handing them to Celery.
    WEBHOOK_PROCESS_INLINE: bool = Field(default=False)

    # Activity filter rules (deployment-time decision)
    ALLOWED_ACTIVITY_TYPES: List[str] = Field(default=["Swim"])
    ALLOWED_VISIBILITY: List[str] = Field(default=["everyone", "followers_only"])

    # Sync pipeline
    SYNC_UPDATE_INTERVAL_HOURS: float = Field(default=4)
    SYNC_DEFAULT_LOOKBACK_DAYS: int = Field(default=3)
    SYNC_FIRST_LOOKBACK_DAYS: int = Field(default=30)
    SYNC_QUEUE_MAX_USERS_PER_RUN: int = Field(default=5)
    SYNC_QUEUE_ENQUEUE_LOCK_TIMEOUT_S: float = Field(default=15)
    SYNC_QUEUE_DRAIN_LOCK_TIMEOUT_S: float = Field(default=10)
    WEBHOOK_HEALTH_THRESHOLD_HOURS: float = Field(default=24)

    # Token Encryption
    TOKEN_ENCRYPTION_KEY: Optional[str] = Field(default=None)

    # Manual operations (sync admin endpoints)
    ADMIN_API_TOKEN: Optional[str] = Field(default=None)

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Web app base URL (where the OAuth callback sends the member back to).
    WEB_APP_BASE_URL: str = Field(default="http://localhost:3000")


# Global settings instance
settings = Settings()
