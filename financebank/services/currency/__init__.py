"""Currency services package."""

from financebank.services.currency.converter import (
    CURRENCY_SYMBOLS,
    CurrencyConverter,
    UnsupportedCurrencyError,
    format_currency,
)

__all__ = [
    "CURRENCY_SYMBOLS",
    "CurrencyConverter",
    "UnsupportedCurrencyError",
    "format_currency",
]
