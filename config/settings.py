"""
Configuration settings for the application
"""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOGS_DIR = Path("./logs")

# Trial is a one-time grant computed at signup
DEFAULT_TRIAL_DAYS = 7


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
    jwt_expire_days: int = Field(default=7, alias="JWT_EXPIRE_DAYS")

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_price_id: Optional[str] = Field(default=None, alias="STRIPE_PRICE_ID")
    stripe_timeout_seconds: float = Field(default=10.0, alias="STRIPE_TIMEOUT_SECONDS")

    # Entitlement lifecycle
    trial_days: int = Field(default=DEFAULT_TRIAL_DAYS, alias="TRIAL_DAYS")
    reconcile_discard_stale_updates: bool = Field(default=True, alias="RECONCILE_DISCARD_STALE_UPDATES")
    storage_retry_attempts: int = Field(default=3, alias="STORAGE_RETRY_ATTEMPTS")

    # Expiry sweeper schedule (UTC)
    sweep_enabled: bool = Field(default=True, alias="SWEEP_ENABLED")
    sweep_hour: int = Field(default=3, alias="SWEEP_HOUR")
    sweep_minute: int = Field(default=15, alias="SWEEP_MINUTE")

    # Food recognition and nutrition lookup
    vision_api_key: Optional[str] = Field(default=None, alias="VISION_API_KEY")
    fdc_api_key: Optional[str] = Field(default=None, alias="FDC_API_KEY")
    external_api_timeout_seconds: float = Field(default=8.0, alias="EXTERNAL_API_TIMEOUT_SECONDS")
    max_image_side: int = Field(default=1024, alias="MAX_IMAGE_SIDE")

    # Infrastructure configuration
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./nutriapp.db", alias="DATABASE_URL")
    rate_limit_per_minute: int = Field(default=60, alias="RATE_LIMIT_PER_MINUTE")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:5173", alias="FRONTEND_URL")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    @property
    def is_production(self) -> bool:
        return bool(self.render) or bool(self.env and self.env.lower() == "production")


@lru_cache
def get_settings() -> Settings:
    return Settings()
