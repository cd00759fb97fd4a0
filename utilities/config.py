"""
Configuration management using environment variables.
Handles library credentials, sync/digest scheduling and transport settings
with proper validation and defaults.
"""

from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path


class BookflowConfig(BaseSettings):
    """
    Configuration class for the sync engine.
    Uses pydantic BaseSettings for environment variable management.
    """

    # MongoDB Configuration
    mongodb_url: str = Field(default="mongodb://localhost:27017")
    mongodb_database: str = Field(default="bookflow")
    mongodb_use_transactions: bool = Field(default=True)

    # Circulation API Configuration
    library_base_url: str = Field(default="https://lib.knue.ac.kr/pyxis-api")
    library_user_id: str = Field(default="")
    library_password: str = Field(default="")
    page_size: int = Field(default=20)

    # Fetch Client Configuration
    request_timeout_ms: int = Field(default=5000)
    retry_attempts: int = Field(default=2)
    retry_backoff_ms: int = Field(default=200)
    login_retry_attempts: int = Field(default=1)

    # Messaging Webhook Configuration
    telegram_bot_token: str = Field(default="")
    telegram_chat_id: str = Field(default="")
    telegram_api_base: str = Field(default="https://api.telegram.org")
    delivery_timeout_ms: int = Field(default=10000)
    due_soon_days: int = Field(default=3)

    # Logging Configuration
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default="logs/bookflow.log")

    # Development/Testing
    debug: bool = Field(default=False)
    test_mode: bool = Field(default=False)

    # Scheduler Configuration
    sync_schedule_hour: int = Field(default=3)
    sync_schedule_minute: int = Field(default=0)
    digest_schedule_hour: int = Field(default=3)
    digest_schedule_minute: int = Field(default=5)
    timezone: str = Field(default="Asia/Seoul")
    enable_sync_job: bool = Field(default=True)
    enable_digest_job: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra fields from .env
    )

    @field_validator('request_timeout_ms', 'delivery_timeout_ms')
    @classmethod
    def validate_timeout(cls, v):
        """Ensure timeout is reasonable."""
        if v < 100 or v > 300000:
            raise ValueError('timeouts must be between 100 and 300000 milliseconds')
        return v

    @field_validator('retry_attempts', 'login_retry_attempts')
    @classmethod
    def validate_retry_attempts(cls, v):
        """Ensure retry attempts is reasonable."""
        if v < 0 or v > 5:
            raise ValueError('retry attempts must be between 0 and 5')
        return v

    @field_validator('retry_backoff_ms')
    @classmethod
    def validate_backoff(cls, v):
        if v < 0 or v > 60000:
            raise ValueError('retry_backoff_ms must be between 0 and 60000')
        return v

    @field_validator('page_size')
    @classmethod
    def validate_page_size(cls, v):
        if v < 1 or v > 100:
            raise ValueError('page_size must be between 1 and 100')
        return v

    @field_validator('sync_schedule_hour', 'digest_schedule_hour')
    @classmethod
    def validate_hour(cls, v):
        if v < 0 or v > 23:
            raise ValueError('schedule hour must be between 0 and 23')
        return v

    @field_validator('sync_schedule_minute', 'digest_schedule_minute')
    @classmethod
    def validate_minute(cls, v):
        if v < 0 or v > 59:
            raise ValueError('schedule minute must be between 0 and 59')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Ensure log level is valid."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'log_level must be one of: {valid_levels}')
        return v.upper()

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v):
        """Ensure log format is valid."""
        valid_formats = ['json', 'console']
        if v.lower() not in valid_formats:
            raise ValueError(f'log_format must be one of: {valid_formats}')
        return v.lower()

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path as Path object."""
        if self.log_file:
            return Path(self.log_file)
        return None

    def has_library_credentials(self) -> bool:
        return bool(self.library_user_id and self.library_password)

    def has_delivery_credentials(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    def get_user_agent(self) -> str:
        """Get user agent string for requests."""
        return "BookFlow-Sync/1.0"

    def get_headers(self) -> dict:
        """Get default headers for circulation API requests."""
        return {
            "User-Agent": self.get_user_agent(),
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "ko-KR,ko;q=0.9,en-US;q=0.8",
        }


# Global configuration instance
config = BookflowConfig()
