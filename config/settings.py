"""
Configuration settings for the entitlement service
"""
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOGS_DIR = Path("./logs")

# Local subscription statuses
STATUS_INACTIVE = "inactive"
STATUS_TRIALING = "trialing"
STATUS_ACTIVE = "active"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Core authentication and security
    jwt_secret_key: Optional[str] = Field(default=None, alias="JWT_SECRET_KEY")
    jwt_expiry_days: int = Field(default=7, alias="JWT_EXPIRY_DAYS")

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_id: Optional[str] = Field(default=None, alias="STRIPE_PRICE_ID")

    # Infrastructure configuration
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./sql_app.db", alias="DATABASE_URL")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:3000", alias="FRONTEND_URL")

    # Trial and entitlement policy
    trial_days: int = Field(default=7, alias="TRIAL_DAYS")
    provider_timeout_seconds: float = Field(default=10.0, alias="PROVIDER_TIMEOUT_SECONDS")

    # Client entitlement cache
    entitlement_api_url: str = Field(default="http://localhost:8000", alias="ENTITLEMENT_API_URL")
    entitlement_refresh_interval_seconds: float = Field(default=60.0, alias="ENTITLEMENT_REFRESH_INTERVAL_SECONDS")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.env and settings.env.lower() == "production")
