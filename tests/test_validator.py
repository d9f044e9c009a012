"""
Tests for boundary validation.

Stage 1 checks need only the input; stage 2 checks need accounts.
"""

from decimal import Decimal

import pytest

from financebank.validation import (
    CurrencyMismatchError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidDetailsError,
    InvalidRecipientError,
    LedgerValidator,
    NotFoundError,
    SameAccountError,
)


@pytest.fixture
def validator():
    return LedgerValidator(max_amount=Decimal("100000"))


class TestAmountValidation:
    """Stage 1: amounts."""

    def test_valid_amount_is_normalized(self, validator):
        assert validator.validate_amount("12.5", "INR") == Decimal("12.50")

    @pytest.mark.parametrize("amount", [0, "-1", "abc", None, 3.14, "NaN"])
    def test_invalid_amounts(self, validator, amount):
        with pytest.raises(InvalidAmountError):
            validator.validate_amount(amount, "INR")

    def test_limit(self, validator):
        assert validator.validate_amount("100000", "INR") == Decimal("100000.00")
        with pytest.raises(InvalidAmountError, match="limit"):
            validator.validate_amount("100000.01", "INR")

    def test_precision_depends_on_currency(self, validator):
        assert validator.validate_amount("150", "JPY") == Decimal("150")
        with pytest.raises(InvalidAmountError):
            validator.validate_amount("150.5", "JPY")


class TestTextAndRecipient:
    """Stage 1: free text and recipients."""

    def test_text_is_trimmed(self, validator):
        assert validator.validate_text("  Rent  ", "Description", 255) == "Rent"

    def test_text_too_long(self, validator):
        with pytest.raises(InvalidDetailsError, match="at most 5"):
            validator.validate_text("abcdef", "Category", 5)

    def test_missing_text(self, validator):
        with pytest.raises(InvalidDetailsError, match="Description is required"):
            validator.validate_text(None, "Description", 255)

    def test_email_is_lowercased(self, validator):
        assert validator.validate_recipient(" Asha@Example.COM ") == "asha@example.com"

    @pytest.mark.parametrize("recipient", ["+91 98765 43210", "9876543210", "080-1234-5678"])
    def test_phone_numbers(self, validator, recipient):
        assert validator.validate_recipient(recipient) == recipient

    @pytest.mark.parametrize("recipient", [None, "", "abc", "a@b", "12345", "x" * 256])
    def test_bad_recipients(self, validator, recipient):
        with pytest.raises(InvalidRecipientError):
            validator.validate_recipient(recipient)


class TestStateValidation:
    """Stage 2: accounts."""

    def test_require_account(self, validator, make_account):
        account = make_account("Checking", "10")
        assert validator.require_account(account, "user-1", account.id) is account

    def test_missing_inactive_or_foreign_account(self, validator, make_account):
        account = make_account("Checking", "10")
        closed = make_account("Closed", "0", is_active=False)

        with pytest.raises(NotFoundError):
            validator.require_account(None, "user-1", account.id)
        with pytest.raises(NotFoundError):
            validator.require_account(account, "someone-else", account.id)
        with pytest.raises(NotFoundError):
            validator.require_account(closed, "user-1", closed.id)

    def test_transfer_accounts(self, validator, make_account):
        inr = make_account("INR", "10")
        usd = make_account("USD", "10", currency="USD")

        with pytest.raises(SameAccountError, match="Cannot transfer to the same account"):
            validator.validate_transfer_accounts(inr, inr)
        with pytest.raises(CurrencyMismatchError):
            validator.validate_transfer_accounts(inr, usd)

    def test_check_funds(self, validator, make_account):
        account = make_account("Checking", "100")

        validator.check_funds(account, Decimal("100"))
        with pytest.raises(InsufficientFundsError) as exc_info:
            validator.check_funds(account, Decimal("100.01"))

        assert exc_info.value.requested == Decimal("100.01")
        assert exc_info.value.available == Decimal("100")
        assert "Insufficient balance" in str(exc_info.value)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
