"""
Boundary Validation for Ledger Operations

DESIGN DECISION: Everything a caller hands the ledger is checked here,
BEFORE any mutation starts:

STAGE 1 - INPUT VALIDATION (no store access):
- Amount is an exact, positive, finite number within limits
- Amount fits the currency's minor unit (no silent rounding)
- Free text is present and short enough
- External recipient looks like an email or phone number

STAGE 2 - STATE VALIDATION (against accounts read from the store):
- Account exists, is active, and belongs to the caller
- Transfer source and destination differ and share a currency
- The debit doesn't take the account below its floor

IMPORTANT: Validation NEVER silently fixes values. It raises.
"""

import re
from decimal import Decimal
from typing import Optional
from uuid import UUID

from financebank.config import get_settings
from financebank.models.ledger import Account
from financebank.models.money import check_precision, coerce_decimal
from financebank.validation.errors import (
    CurrencyMismatchError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidDetailsError,
    InvalidRecipientError,
    NotFoundError,
    SameAccountError,
)


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9\s\-()]{5,18}[0-9]$")


class LedgerValidator:
    """
    Validates ledger inputs and the account state they act on.

    Stage 1 methods need only the input.
    Stage 2 methods need accounts already read from storage.
    """

    def __init__(self, max_amount: Optional[Decimal] = None):
        self._max_amount = max_amount or get_settings().ledger.max_transaction_amount

    # =========================================================================
    # STAGE 1 - INPUT
    # =========================================================================

    def validate_amount(self, amount, currency: str) -> Decimal:
        """
        Turn a caller amount into an exact positive Decimal.

        Raises:
            InvalidAmountError: If the amount is not strictly positive, is a
                                float, is non-finite, exceeds the limit or
                                has more decimals than the currency allows
        """
        try:
            value = coerce_decimal(amount)
        except ValueError as e:
            raise InvalidAmountError(str(e))

        if value <= 0:
            raise InvalidAmountError("Amount must be greater than zero")
        if value > self._max_amount:
            raise InvalidAmountError(f"Amount exceeds the single-transaction limit of {self._max_amount}")

        try:
            return check_precision(value, currency)
        except ValueError as e:
            raise InvalidAmountError(str(e))

    def validate_text(self, value: Optional[str], field: str, max_length: int) -> str:
        text = (value or "").strip()
        if not text:
            raise InvalidDetailsError(f"{field} is required")
        if len(text) > max_length:
            raise InvalidDetailsError(f"{field} must be at most {max_length} characters")
        return text

    def validate_recipient(self, recipient: Optional[str]) -> str:
        """
        Check an external recipient identifier.

        Only the shape is checked (email or phone). Whether the recipient
        can actually receive money is the payment rail's problem.
        """
        identifier = (recipient or "").strip()
        if not identifier:
            raise InvalidRecipientError("Recipient is required")
        if len(identifier) > 255:
            raise InvalidRecipientError("Recipient identifier is too long")
        if "@" in identifier:
            if not EMAIL_PATTERN.match(identifier):
                raise InvalidRecipientError(f"Not a valid email address: {identifier}")
            return identifier.lower()
        if not PHONE_PATTERN.match(identifier):
            raise InvalidRecipientError(f"Recipient must be an email or phone number: {identifier}")
        return identifier

    # =========================================================================
    # STAGE 2 - STATE
    # =========================================================================

    def require_account(
        self,
        account: Optional[Account],
        user_id: str,
        account_id: UUID,
    ) -> Account:
        """
        Raises:
            NotFoundError: Missing, inactive, or owned by someone else
        """
        # Same message for all three so ownership can't be discovered
        if account is None or account.user_id != user_id or not account.is_active:
            raise NotFoundError(f"Account not found: {account_id}")
        return account

    def validate_transfer_accounts(self, source: Account, destination: Account) -> None:
        if source.id == destination.id:
            raise SameAccountError()
        if source.currency != destination.currency:
            raise CurrencyMismatchError(
                f"Cannot transfer between {source.currency} and {destination.currency} accounts"
            )

    def check_funds(self, account: Account, amount: Decimal) -> None:
        """
        Raises:
            InsufficientFundsError: If balance - amount would drop below
                                    the account's floor
        """
        if account.balance - amount < account.balance_floor:
            raise InsufficientFundsError(
                available=account.available_funds(),
                requested=amount,
                currency=account.currency,
            )
