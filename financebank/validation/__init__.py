"""Validation package."""

from financebank.validation.errors import (
    AccountNotEmptyError,
    CurrencyMismatchError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidDetailsError,
    InvalidRecipientError,
    InvalidStatusTransitionError,
    LedgerError,
    NotFoundError,
    SameAccountError,
)
from financebank.validation.validator import LedgerValidator

__all__ = [
    "AccountNotEmptyError",
    "CurrencyMismatchError",
    "InsufficientFundsError",
    "InvalidAmountError",
    "InvalidDetailsError",
    "InvalidRecipientError",
    "InvalidStatusTransitionError",
    "LedgerError",
    "LedgerValidator",
    "NotFoundError",
    "SameAccountError",
]
