"""
Configuration Management for the FinanceBank Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Which store backs the ledger (relational database or the local demo store),
the reporting currency and the exchange-rate table are all decided at startup,
never inside the ledger logic itself.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Rates are "1 unit of currency = N INR"
DEFAULT_RATES_TO_INR: dict[str, Decimal] = {
    "INR": Decimal("1"),
    "USD": Decimal("83.25"),
    "EUR": Decimal("90.45"),
    "GBP": Decimal("105.80"),
    "JPY": Decimal("0.56"),
    "AUD": Decimal("55.20"),
}


class DatabaseSettings(BaseSettings):
    """Relational store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_DB_",
        extra="ignore"
    )

    url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy async database URL (e.g. postgresql+asyncpg://...)"
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements"
    )
    pool_size: Optional[int] = Field(
        default=None,
        ge=1,
        description="Connection pool size (driver default when unset)"
    )
    connect_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="How many times to try reaching the database at startup"
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.url)


class CurrencySettings(BaseSettings):
    """Exchange rates used for reporting conversions."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_CURRENCY_",
        extra="ignore"
    )

    rates_to_inr: dict[str, Decimal] = Field(
        default_factory=lambda: dict(DEFAULT_RATES_TO_INR),
        description="Value of one unit of each currency in INR"
    )

    @field_validator('rates_to_inr')
    @classmethod
    def validate_rates(cls, v: dict[str, Decimal]) -> dict[str, Decimal]:
        """Rates must be positive and keyed by upper-case ISO codes."""
        normalized = {}
        for code, rate in v.items():
            if rate <= 0:
                raise ValueError(f"Exchange rate for {code} must be positive")
            normalized[code.strip().upper()] = rate
        if "INR" not in normalized:
            normalized["INR"] = Decimal("1")
        return normalized


class LedgerSettings(BaseSettings):
    """
    Main ledger settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Demo mode
    demo_fallback: bool = Field(
        default=True,
        description="Use the local store when the database is unreachable"
    )
    local_store_path: Optional[str] = Field(
        default=None,
        description="JSON file mirroring the local store (in-memory only when unset)"
    )

    # Money
    default_currency: str = Field(
        default="INR",
        min_length=3,
        max_length=3,
        description="Currency for newly provisioned accounts"
    )
    reporting_currency: str = Field(
        default="INR",
        min_length=3,
        max_length=3,
        description="Currency used for balance snapshots and reports"
    )
    max_transaction_amount: Decimal = Field(
        default=Decimal("100000000"),
        gt=0,
        description="Largest single amount the ledger accepts"
    )

    # Queries
    default_page_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Transactions returned when no limit is given"
    )
    max_page_size: int = Field(
        default=500,
        ge=1,
        description="Upper bound for list_transactions limit"
    )
    recent_items_limit: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Rows kept for recent recipient/transfer lists"
    )

    # Optimistic concurrency
    mutation_attempts: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Attempts for a mutation that loses a version race"
    )

    @field_validator('default_currency', 'reporting_currency')
    @classmethod
    def uppercase_currency(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator('local_store_path')
    @classmethod
    def validate_local_store_path(cls, v: Optional[str]) -> Optional[str]:
        """Warn if the mirror directory doesn't exist (but don't fail - might be created later)."""
        if v and not Path(v).parent.exists():
            import warnings
            warnings.warn(
                f"Directory for local store file {v} does not exist yet."
            )
        return v


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def currency(self) -> CurrencySettings:
        return CurrencySettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("database", "currency", "ledger"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
