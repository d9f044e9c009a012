"""
Core Data Models for the FinanceBank Ledger

These models define the strict schemas for all data flowing through the ledger.
They are designed to:
1. Enforce type safety and money invariants at runtime
2. Provide clear validation error messages
3. Be serializable for storage, logging and the UI (model_dump(mode="json"))

DESIGN DECISION: Amounts are Decimal everywhere. A transaction's sign must
agree with its type, and a transfer must name a different destination
account. These rules live on the models so no store can persist a record
that breaks them.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from financebank.models.money import check_precision


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class AccountKind(str, Enum):
    """Kinds of account a user can hold."""
    CHECKING = "checking"
    SAVINGS = "savings"
    INVESTMENT = "investment"
    CREDIT = "credit"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class TransactionStatus(str, Enum):
    """
    Transaction status.

    Locally created transactions are written as COMPLETED. PENDING and
    the two failure states exist for a settlement rail and stay valid.
    """
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def can_transition_to(self, target: "TransactionStatus") -> bool:
        return self is TransactionStatus.PENDING and target in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
})


class TransferKind(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


# =============================================================================
# ACCOUNT
# =============================================================================

class Account(BaseModel):
    """
    A money-holding account owned by one user.

    The balance is only ever changed by the ledger's atomic apply routine;
    `version` increases by one with every change and is what optimistic
    concurrency checks compare against.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique account ID"
    )
    user_id: str = Field(
        ...,
        min_length=1,
        description="Owning user"
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Display name"
    )
    kind: AccountKind
    currency: str = Field(
        default="INR",
        pattern="^[A-Z]{3}$",
        description="ISO 4217 currency code"
    )
    balance: Decimal = Field(
        default=Decimal("0"),
        description="Current balance in the account's currency"
    )
    account_number: Optional[str] = Field(
        default=None,
        max_length=40,
        description="Display account number"
    )
    is_primary: bool = False
    is_active: bool = True
    overdraft_limit: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="How far below zero the balance may go"
    )
    version: int = Field(
        default=0,
        ge=0,
        description="Incremented on every balance change"
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        description="When the account was opened"
    )

    @field_validator('currency', mode='before')
    @classmethod
    def uppercase_currency(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @model_validator(mode='after')
    def validate_money_precision(self) -> 'Account':
        """Balance and limit must fit the currency's minor unit."""
        self.balance = check_precision(self.balance, self.currency)
        self.overdraft_limit = check_precision(self.overdraft_limit, self.currency)
        return self

    @property
    def balance_floor(self) -> Decimal:
        """Lowest balance the account may reach."""
        return -self.overdraft_limit

    def available_funds(self) -> Decimal:
        return self.balance + self.overdraft_limit


# =============================================================================
# TRANSACTION
# =============================================================================

class Transaction(BaseModel):
    """
    One logical money movement.

    Created once per transfer or payment (never per leg). Immutable after
    creation except for status transitions; never deleted.

    The amount is signed from the source account's point of view:
    income is non-negative, expenses and transfers are non-positive.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique transaction ID"
    )
    reference_number: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Externally visible, globally unique reference"
    )
    user_id: str = Field(..., min_length=1)
    account_id: UUID = Field(
        ...,
        description="Source account"
    )
    to_account_id: Optional[UUID] = Field(
        default=None,
        description="Destination account (transfers only)"
    )
    type: TransactionType
    amount: Decimal = Field(
        ...,
        description="Signed amount in the account's currency"
    )
    currency: str = Field(
        default="INR",
        pattern="^[A-Z]{3}$"
    )
    description: str = Field(
        ...,
        min_length=1,
        max_length=255
    )
    category: str = Field(
        ...,
        min_length=1,
        max_length=60
    )
    status: TransactionStatus = TransactionStatus.COMPLETED
    transaction_date: date = Field(
        default_factory=lambda: utc_now().date()
    )
    created_at: datetime = Field(
        default_factory=utc_now
    )
    balance_after: Optional[Decimal] = Field(
        default=None,
        description="Source account balance right after this transaction"
    )
    counterparty: Optional[str] = Field(
        default=None,
        max_length=255,
        description="External recipient identifier (email or phone)"
    )
    idempotency_key: Optional[str] = Field(
        default=None,
        max_length=128,
        description="Caller-supplied key that makes retries safe"
    )

    @model_validator(mode='after')
    def validate_ledger_rules(self) -> 'Transaction':
        """Sign must agree with type; transfers need a distinct destination."""
        self.amount = check_precision(self.amount, self.currency)

        if self.type == TransactionType.INCOME and self.amount < 0:
            raise ValueError("Income amount cannot be negative")
        if self.type != TransactionType.INCOME and self.amount > 0:
            raise ValueError(f"{self.type.value.capitalize()} amount cannot be positive")

        if self.type == TransactionType.TRANSFER:
            if self.to_account_id is None:
                raise ValueError("Transfer requires a destination account")
            if self.to_account_id == self.account_id:
                raise ValueError("Transfer destination must differ from source")
        elif self.to_account_id is not None:
            raise ValueError("Only transfers may reference a destination account")

        return self

    @property
    def magnitude(self) -> Decimal:
        return abs(self.amount)


class TransactionView(Transaction):
    """A transaction joined with its accounts' display names."""

    account_name: Optional[str] = None
    to_account_name: Optional[str] = None


# =============================================================================
# BALANCE POSTINGS (unit-of-work input for stores)
# =============================================================================

class BalancePosting(BaseModel):
    """
    One balance change inside an atomic apply.

    expected_version is the account version the ledger validated against;
    stores refuse the whole unit of work if it no longer matches.
    """
    model_config = ConfigDict(frozen=True)

    account_id: UUID
    delta: Decimal
    expected_version: int = Field(ge=0)


# =============================================================================
# DERIVED SUMMARIES (non-authoritative, rebuildable)
# =============================================================================

class RecentRecipient(BaseModel):
    """Someone the user has paid externally, kept for quick recall."""

    user_id: str
    identifier: str = Field(..., min_length=1, max_length=255)
    display_name: Optional[str] = None
    last_amount: Decimal
    currency: str = "INR"
    last_sent_at: datetime = Field(default_factory=utc_now)
    transfer_count: int = Field(default=1, ge=1)

    @property
    def initials(self) -> str:
        source = self.display_name or self.identifier.split("@")[0]
        parts = [p for p in source.replace(".", " ").replace("_", " ").split() if p]
        return "".join(p[0].upper() for p in parts[:2]) or "?"


class RecentTransfer(BaseModel):
    """A recent transfer, pre-formatted for the transfer screen."""

    user_id: str
    reference_number: str
    kind: TransferKind
    from_account_name: str
    to_label: str = Field(
        ...,
        description="Destination account name or external recipient"
    )
    amount: Decimal = Field(..., ge=0)
    currency: str = "INR"
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# QUERY / REPORTING MODELS
# =============================================================================

class TransactionFilters(BaseModel):
    """
    Optional narrowing of a transaction listing.

    An empty filter set matches everything.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    search: Optional[str] = Field(
        default=None,
        description="Case-insensitive match against description or category"
    )
    category: Optional[str] = None
    type: Optional[TransactionType] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    @model_validator(mode='after')
    def validate_date_range(self) -> 'TransactionFilters':
        if self.date_from and self.date_to and self.date_to < self.date_from:
            raise ValueError("date_to cannot be before date_from")
        return self

    @property
    def is_empty(self) -> bool:
        return not any((self.search, self.category, self.type, self.date_from, self.date_to))

    def matches(self, transaction: Transaction) -> bool:
        if self.search:
            needle = self.search.lower()
            if (
                needle not in transaction.description.lower()
                and needle not in transaction.category.lower()
            ):
                return False
        if self.category and transaction.category.lower() != self.category.lower():
            return False
        if self.type and transaction.type != self.type:
            return False
        if self.date_from and transaction.transaction_date < self.date_from:
            return False
        if self.date_to and transaction.transaction_date > self.date_to:
            return False
        return True


class BalanceSnapshot(BaseModel):
    """Summed balances of a user's active accounts."""

    user_id: str
    reporting_currency: str
    total_balance: Decimal
    balances_by_currency: dict[str, Decimal] = Field(default_factory=dict)
    account_count: int = Field(ge=0)
    as_of: datetime = Field(default_factory=utc_now)


class CategorySpending(BaseModel):
    category: str
    amount: Decimal = Field(..., ge=0)
    transaction_count: int = Field(ge=0)
    percentage: Decimal = Field(
        ...,
        ge=0,
        le=100,
        description="Share of the month's spending"
    )


class CashFlowSummary(BaseModel):
    """Income versus expenses for one calendar month."""

    user_id: str
    year: int
    month: int = Field(ge=1, le=12)
    currency: str
    income: Decimal
    expenses: Decimal
    transaction_count: int = Field(ge=0)

    @property
    def net(self) -> Decimal:
        return self.income - self.expenses


class TransactionCategory(BaseModel):
    name: str
    type: TransactionType
    icon: str


DEFAULT_CATEGORIES: tuple[TransactionCategory, ...] = (
    TransactionCategory(name="Salary", type=TransactionType.INCOME, icon="💰"),
    TransactionCategory(name="Food & Dining", type=TransactionType.EXPENSE, icon="🍽️"),
    TransactionCategory(name="Utilities", type=TransactionType.EXPENSE, icon="⚡"),
    TransactionCategory(name="Shopping", type=TransactionType.EXPENSE, icon="🛍️"),
    TransactionCategory(name="Transportation", type=TransactionType.EXPENSE, icon="🚗"),
    TransactionCategory(name="Investment", type=TransactionType.INCOME, icon="📈"),
)
