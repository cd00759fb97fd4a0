"""
API configuration settings.
"""

from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class APIConfig(BaseSettings):
    """API configuration settings."""

    # API Settings
    api_title: str = "BookFlow Sync API"
    api_version: str = "1.0.0"

    # Server Settings
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Shared secret for the trigger endpoints; empty disables the check
    token: str = ""

    # CORS Settings
    cors_origins: List[str] = ["*"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="API_",
        extra="ignore",
    )


# Global config instance
config = APIConfig()
