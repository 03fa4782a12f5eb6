"""
ShopSmart Configuration

Uses pydantic-settings for environment variable loading (``.env`` supported).
"""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = "ShopSmart API"
    app_version: str = "1.0.0"

    # Database
    database_url: Optional[str] = None
    database_name: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    cors_origins: List[str] = ["*"]

    # Query defaults
    default_expiry_window_days: int = 30
    default_upcoming_days: int = 7

    port: int = 8000

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
