"""
tuition_sync/core/config.py
Configuration settings using Pydantic
"""
from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import List
from functools import lru_cache

class Settings(BaseSettings):
    """Application settings"""

    # Application
    PROJECT_NAME: str = "Tuition Ledger Sync"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, production
    API_V1_PREFIX: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Supabase (Ledger Service storage)
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""

    # Ledger Service client
    LEDGER_API_URL: str = "http://localhost:8000/api/v1"
    LEDGER_TIMEOUT_SECONDS: float = 10.0

    # Ledger policy
    OVERPAYMENT_TOLERANCE: Decimal = Decimal("0")  # fraction of total fee, 0.05 == 5%
    DEDUPE_MONTHLY_PAYMENTS: bool = True
    DUPLICATE_WINDOW_SECONDS: int = 120

    # Reconciliation
    REFETCH_MAX_ATTEMPTS: int = 2  # first refetch + one retry
    REFETCH_RETRY_DELAY_SECONDS: float = 1.0
    REFETCH_BACKOFF_FACTOR: float = 1.0
    CACHE_MAX_ENTRIES: int = 256

    # Email (SendGrid)
    SENDGRID_API_KEY: str = ""
    FROM_EMAIL: str = "accounts@tuitiondesk.local"
    FROM_NAME: str = "Tuition Accounts"

    # CORS
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    class Config:
        env_file = ".env"
        case_sensitive = True

@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

settings = get_settings()
