"""
Application settings.

Loads configuration from environment variables using pydantic-settings.
Every variable is prefixed with ``AFFILIATE_LEDGER_``.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./affiliate_ledger.db"
    database_echo: bool = False

    # Payouts
    minimum_payout: int = Field(
        default=0,
        ge=0,
        description="Smallest payout batch total in minor units (0 disables the check)",
    )

    # System-default commission scheme, used when neither an affiliate
    # override nor a plan default exists
    default_first_payment_rate: Decimal = Field(default=Decimal("10"), ge=0, le=100)
    default_recurring_rate: Decimal = Field(default=Decimal("5"), ge=0, le=100)

    # Tracking links
    public_base_url: str = "https://example.com"

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="AFFILIATE_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
