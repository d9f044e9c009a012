"""
Storage Services Package

Provides the abstract ledger/audit interfaces and two implementations:
a relational store (SQLAlchemy) and a local demo store. The ledger picks
one at startup and never branches on which it got.
"""

from financebank.services.storage.interface import (
    AuditStorageInterface,
    ConcurrentModificationError,
    DuplicateError,
    LedgerStorageInterface,
    RecordNotFoundError,
    StorageError,
    StorageUnavailableError,
)
from financebank.services.storage.local import (
    LocalAuditStorage,
    LocalLedgerStorage,
    LocalStore,
)
from financebank.services.storage.sql import (
    SqlAuditStorage,
    SqlLedgerClient,
    SqlLedgerStorage,
    create_sql_storages,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerStorageInterface",
    # Exceptions
    "ConcurrentModificationError",
    "DuplicateError",
    "RecordNotFoundError",
    "StorageError",
    "StorageUnavailableError",
    # Local (demo) implementation
    "LocalAuditStorage",
    "LocalLedgerStorage",
    "LocalStore",
    # Relational implementation
    "SqlAuditStorage",
    "SqlLedgerClient",
    "SqlLedgerStorage",
    "create_sql_storages",
]
