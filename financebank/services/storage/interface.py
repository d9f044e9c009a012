"""
Abstract Storage Interface

DESIGN DECISION: The ledger depends on this interface, never on a concrete
client. This allows us to:
1. Run against a relational database in production
2. Run against the local demo store when no database is reachable
3. Use a fresh in-memory store for every test

The one operation that matters most is apply_transaction: it inserts a
transaction AND applies its balance postings as a single unit of work.
Stores must never expose a state where only part of it has happened.
"""

from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from financebank.models.audit import AuditEvent
from financebank.models.ledger import (
    Account,
    BalancePosting,
    RecentRecipient,
    RecentTransfer,
    Transaction,
    TransactionFilters,
    TransactionStatus,
)


class LedgerStorageInterface(ABC):
    """
    Abstract interface for ledger storage operations.

    Any storage implementation (relational database, local demo store)
    must implement these methods.
    """

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_accounts(
        self,
        accounts: list[Account],
        opening_transactions: Optional[list[Transaction]] = None,
    ) -> list[Account]:
        """
        Insert new accounts and credit their opening balances in one unit of work.

        Each opening transaction is inserted and its amount added to the
        balance of its (new) account. A new primary account demotes the
        user's current primary.

        Returns:
            The stored accounts, balances included

        Raises:
            DuplicateError: If an account ID or reference number exists
            RecordNotFoundError: If an opening transaction names an account
                                 outside this batch
        """
        pass

    @abstractmethod
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        """
        Retrieve an account by ID, active or not.

        Returns:
            The account if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_accounts(
        self,
        user_id: str,
        include_inactive: bool = False,
    ) -> list[Account]:
        """
        List a user's accounts.

        Returns:
            Accounts with the primary account first, the rest in
            creation order
        """
        pass

    @abstractmethod
    async def set_primary_account(self, user_id: str, account_id: UUID) -> Account:
        """
        Make one account the user's only primary account.

        Raises:
            RecordNotFoundError: If the account doesn't exist for this user
        """
        pass

    @abstractmethod
    async def deactivate_account(self, account_id: UUID, expected_version: int) -> Account:
        """
        Clear the active flag (soft delete).

        Raises:
            ConcurrentModificationError: If the account changed since it was read
            RecordNotFoundError: If the account doesn't exist
        """
        pass

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @abstractmethod
    async def apply_transaction(
        self,
        transaction: Transaction,
        postings: list[BalancePosting],
    ) -> Transaction:
        """
        Atomically insert a transaction and apply its balance postings.

        Either everything is applied or nothing is.

        Args:
            transaction: The transaction record to insert
            postings: Balance deltas, each tagged with the account
                      version the caller validated against

        Returns:
            The stored transaction

        Raises:
            ConcurrentModificationError: If any account version is stale
            DuplicateError: If the reference number or idempotency key exists
            RecordNotFoundError: If a posted account doesn't exist
            StorageError: If the unit of work fails (and was rolled back)
        """
        pass

    @abstractmethod
    async def get_transaction_by_reference(
        self,
        reference_number: str,
    ) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def get_transaction_by_idempotency_key(
        self,
        user_id: str,
        idempotency_key: str,
    ) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def list_transactions(
        self,
        user_id: str,
        limit: Optional[int] = 50,
        filters: Optional[TransactionFilters] = None,
    ) -> list[Transaction]:
        """
        List a user's transactions, newest created first.

        Args:
            user_id: Owner of the transactions
            limit: Maximum number of results (None for all)
            filters: Optional narrowing of the result set

        Returns:
            List of matching transactions
        """
        pass

    @abstractmethod
    async def update_transaction_status(
        self,
        reference_number: str,
        expected_status: TransactionStatus,
        new_status: TransactionStatus,
    ) -> Transaction:
        """
        Compare-and-set a transaction's status.

        Raises:
            ConcurrentModificationError: If the status is no longer expected_status
            RecordNotFoundError: If the transaction doesn't exist
        """
        pass

    # ------------------------------------------------------------------
    # Recent activity (derived, non-authoritative)
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_recent_recipient(self, recipient: RecentRecipient) -> RecentRecipient:
        """
        Insert or refresh the (user, identifier) recipient row.

        Repeat payments bump transfer_count and replace the last amount.
        """
        pass

    @abstractmethod
    async def list_recent_recipients(self, user_id: str, limit: int = 5) -> list[RecentRecipient]:
        """Recipients ordered by most recent payment first."""
        pass

    @abstractmethod
    async def add_recent_transfer(self, transfer: RecentTransfer, keep: int = 5) -> RecentTransfer:
        """Append a transfer, keeping only the user's newest `keep` entries."""
        pass

    @abstractmethod
    async def list_recent_transfers(self, user_id: str, limit: int = 5) -> list[RecentTransfer]:
        """Transfers ordered newest first."""
        pass

    @abstractmethod
    async def replace_recent_activity(
        self,
        user_id: str,
        recipients: list[RecentRecipient],
        transfers: list[RecentTransfer],
    ) -> None:
        """Drop and rewrite a user's derived summaries."""
        pass

    async def close(self) -> None:
        """Release connections. Stores that hold none keep this default."""
        return None


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get all events for one ledger operation, in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """Get all events for a specific entity, in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get the most recent audit events (newest first)."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class RecordNotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


class ConcurrentModificationError(StorageError):
    """A record changed between read and write (optimistic check failed)."""
    pass


class StorageUnavailableError(StorageError):
    """Could not connect to storage backend."""
    pass
