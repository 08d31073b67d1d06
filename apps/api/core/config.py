"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
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
    # DATABASE_URL wins when set; otherwise the URL is built from the parts below.
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="clipin")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=10)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Peloton API Configuration
    PELOTON_API_URL: str = Field(default="https://api.onepeloton.com")
    PELOTON_GRAPHQL_URL: str = Field(
        default="https://gql-graphql-gateway.prod.k8s.onepeloton.com/graphql"
    )
    PELOTON_AUTH_TOKEN_URL: str = Field(default="https://auth.onepeloton.com/oauth/token")
    # Public client id of the Peloton web app (used for the refresh grant).
    PELOTON_CLIENT_ID: str = Field(default="WVoJxVDdPoFx4RNewvvg6ch2mZ7bwnsM")
    # Used when the identity provider omits expires_in.
    PELOTON_DEFAULT_TOKEN_LIFETIME_S: int = Field(default=48 * 60 * 60)

    # Token Encryption (base64 of exactly 32 bytes: openssl rand -base64 32)
    PELOTON_TOKEN_ENCRYPTION_KEY: Optional[str] = Field(default=None)

    # JWT Authentication - REQUIRED for token signing
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key. Must be cryptographically secure (32+ chars). "
                    "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
    )

    # Scheduler trigger shared secret (Authorization: Bearer <CRON_SECRET>)
    CRON_SECRET: Optional[str] = Field(default=None)

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)

    # Stack sync retry policy
    STACK_SYNC_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    STACK_SYNC_BASE_DELAY_S: float = Field(default=1.0, ge=0)
    STACK_SYNC_BACKOFF_MULTIPLIER: float = Field(default=2.0, ge=1)
    # Per-user sync lock TTL; must outlive the worst-case retry sequence.
    STACK_SYNC_LOCK_TTL_S: int = Field(default=300)

    # FTP history chain walk cap
    FTP_HISTORY_MAX_HOPS: int = Field(default=50, ge=1)

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    SERVICE_NAME: str = Field(default="clipin-api")
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions


# Global settings instance
settings = Settings()
