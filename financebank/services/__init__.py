"""Services package."""

from financebank.services.currency import (
    CurrencyConverter,
    UnsupportedCurrencyError,
    format_currency,
)
from financebank.services.storage import (
    AuditStorageInterface,
    ConcurrentModificationError,
    DuplicateError,
    LedgerStorageInterface,
    LocalAuditStorage,
    LocalLedgerStorage,
    LocalStore,
    RecordNotFoundError,
    SqlAuditStorage,
    SqlLedgerClient,
    SqlLedgerStorage,
    StorageError,
    StorageUnavailableError,
    create_sql_storages,
)

__all__ = [
    # Currency services
    "CurrencyConverter",
    "UnsupportedCurrencyError",
    "format_currency",
    # Storage services
    "AuditStorageInterface",
    "ConcurrentModificationError",
    "DuplicateError",
    "LedgerStorageInterface",
    "LocalAuditStorage",
    "LocalLedgerStorage",
    "LocalStore",
    "RecordNotFoundError",
    "SqlAuditStorage",
    "SqlLedgerClient",
    "SqlLedgerStorage",
    "StorageError",
    "StorageUnavailableError",
    "create_sql_storages",
]
