"""Configuration management using Pydantic Settings.

Loads configuration from environment variables with .env file support.
"""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration."""

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    worker_port: int = 9000
    log_level: str = "INFO"
    environment: str = "development"

    # Database Configuration
    database_url: str = "sqlite+aiosqlite:///./connector.db"

    # Redis Configuration (OAuth state, sync locks)
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_db: int = 0

    # Token encryption (Fernet key, urlsafe base64)
    token_encryption_key: Optional[str] = None

    # Google Sheets OAuth2
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_redirect_uri: Optional[str] = None

    # Youcan OAuth2
    youcan_client_id: Optional[str] = None
    youcan_client_secret: Optional[str] = None
    youcan_redirect_uri: Optional[str] = None

    # Shopify OAuth2
    shopify_client_id: Optional[str] = None
    shopify_client_secret: Optional[str] = None
    shopify_redirect_uri: Optional[str] = None

    # Schedulers
    token_refresh_interval_minutes: int = 5
    polling_sync_enabled: bool = True
    polling_sync_interval_minutes: int = 15

    # Public URL of POST /webhook/sheets; push notifications are off without it
    sheets_webhook_url: Optional[str] = None

    # GlitchTip Error Monitoring
    glitchtip_dsn: Optional[str] = None

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields from .env (e.g., worker-specific vars)


# Create a global settings instance
settings = Settings()
