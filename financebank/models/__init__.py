"""
Data Models Package

This package contains all Pydantic models used by the FinanceBank ledger.
All data flowing through the ledger must conform to these schemas.
"""

from financebank.models.ledger import (
    DEFAULT_CATEGORIES,
    Account,
    AccountKind,
    BalancePosting,
    BalanceSnapshot,
    CashFlowSummary,
    CategorySpending,
    RecentRecipient,
    RecentTransfer,
    Transaction,
    TransactionCategory,
    TransactionFilters,
    TransactionStatus,
    TransactionType,
    TransactionView,
    TransferKind,
    utc_now,
)
from financebank.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "DEFAULT_CATEGORIES",
    "Account",
    "AccountKind",
    "BalancePosting",
    "BalanceSnapshot",
    "CashFlowSummary",
    "CategorySpending",
    "RecentRecipient",
    "RecentTransfer",
    "Transaction",
    "TransactionCategory",
    "TransactionFilters",
    "TransactionStatus",
    "TransactionType",
    "TransactionView",
    "TransferKind",
    "utc_now",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
