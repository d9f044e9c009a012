"""
Ledger error taxonomy.

Every rejection the ledger produces is one of these. They are all raised
before any mutation starts, so catching one means nothing changed.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class NotFoundError(LedgerError):
    """Account or transaction missing, inactive, or not owned by the caller."""
    pass


class InvalidAmountError(LedgerError):
    """Amount is zero, negative, non-finite, a float, or too precise."""
    pass


class InsufficientFundsError(LedgerError):
    """The debit would take the account below its allowed floor."""

    def __init__(self, available: Decimal, requested: Decimal, currency: str):
        self.available = available
        self.requested = requested
        self.currency = currency
        super().__init__(
            f"Insufficient balance in source account "
            f"(available {available} {currency}, requested {requested} {currency})"
        )


class SameAccountError(LedgerError):
    """Source and destination of a transfer are the same account."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "Cannot transfer to the same account")


class InvalidRecipientError(LedgerError):
    """External recipient identifier is empty or malformed."""
    pass


class CurrencyMismatchError(LedgerError):
    """Internal transfer between accounts held in different currencies."""
    pass


class AccountNotEmptyError(LedgerError):
    """An account with money in it can't be closed."""
    pass


class InvalidStatusTransitionError(LedgerError):
    """Requested status change isn't allowed by the transaction state machine."""
    pass


class InvalidDetailsError(LedgerError):
    """Description, category or other free text is missing or too long."""
    pass
