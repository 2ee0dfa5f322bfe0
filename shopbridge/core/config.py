# shopbridge/core/config.py

import os
from functools import lru_cache
from typing import Dict, List, Optional
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


def _split_csv(value: str) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


class Settings(BaseSettings):
    """
    Application settings.
    Loads values from environment variables (.env file)
    """
    # Database settings
    DATABASE_URL: str = ""

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Public URL of the member application (callback redirects land here)
    APP_URL: str = "http://localhost:3000"
    TIKTOK_INTEGRATIONS_PATH: str = "/dashboard/integrations"

    # TikTok Shop app credentials
    TIKTOK_APP_KEY: str = ""
    TIKTOK_APP_SECRET: str = ""
    TIKTOK_API_BASE: str = "https://open-api.tiktokglobalshop.com"
    TIKTOK_AUTH_BASE: str = "https://services.tiktokshop.com"
    TIKTOK_REQUEST_TIMEOUT: float = 30.0

    # Endpoint name -> path, merged over the built-in defaults
    TIKTOK_ENDPOINT_OVERRIDES: Dict[str, str] = {}

    # Tokens are refreshed this long before they actually expire
    TIKTOK_TOKEN_REFRESH_SKEW_SECONDS: int = 300

    # Sync engine
    TIKTOK_SYNC_PAGE_CAP: int = 10
    TIKTOK_SYNC_PAGE_SIZE: int = 50
    TIKTOK_STATEMENT_PAGE_SIZE: int = 100
    TIKTOK_SYNC_MAX_RETRIES: int = 3
    TIKTOK_SYNC_RETRY_BACKOFF: float = 1.0
    TIKTOK_RETRYABLE_CODES: str = "429,36009004"
    TIKTOK_TRANSACTION_TYPE_FIELDS: str = "statement_type,type,transaction_type"
    TIKTOK_AMOUNT_FIELDS: str = "amount,total_amount,settlement_amount"

    # Sync windows
    TIKTOK_FIRST_SYNC_DAYS: int = 90
    TIKTOK_FULL_SYNC_DAYS: int = 365
    TIKTOK_INCREMENTAL_OVERLAP_HOURS: int = 24
    TIKTOK_ORDER_WINDOW_DAYS: int = 30

    # Scheduled sync
    CRON_SECRET: Optional[str] = None
    SCHEDULER_ENABLED: bool = False
    TIKTOK_SYNC_CRON_HOUR: int = 3

    model_config = ConfigDict(
        env_file=os.environ.get('ENV_FILE', '.env') if os.path.exists('.env') else None,
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def retryable_codes(self) -> List[int]:
        return [int(code) for code in _split_csv(self.TIKTOK_RETRYABLE_CODES)]

    @property
    def transaction_type_fields(self) -> List[str]:
        return _split_csv(self.TIKTOK_TRANSACTION_TYPE_FIELDS)

    @property
    def amount_fields(self) -> List[str]:
        return _split_csv(self.TIKTOK_AMOUNT_FIELDS)

    @property
    def async_database_url(self) -> str:
        """DATABASE_URL with the asyncpg driver for plain postgresql:// URLs"""
        url = self.DATABASE_URL or os.environ.get('DATABASE_URL', '')
        if url.startswith('postgresql://'):
            url = url.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return url


@lru_cache()
def get_settings():
    """Cached settings to avoid loading .env file for every request"""
    return Settings()
