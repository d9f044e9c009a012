"""Configuration package."""

from financebank.config.settings import (
    DEFAULT_RATES_TO_INR,
    CurrencySettings,
    DatabaseSettings,
    LedgerSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "DEFAULT_RATES_TO_INR",
    "CurrencySettings",
    "DatabaseSettings",
    "LedgerSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
