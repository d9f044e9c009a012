"""
Local Storage Implementation (demo mode)

DESIGN DECISION: When no database is configured or reachable, the ledger runs
on this store. It keeps everything in process memory and, when a path is
given, mirrors the whole state to a JSON file after every unit of work (the
server-side equivalent of the browser's localStorage).

TRADEOFFS:
- Single process only (no cross-process consistency)
- Every write rewrites the mirror file (fine for one personal ledger)

Atomicity: every mutation runs inside LocalStore.unit_of_work(). The tables
are snapshotted first and restored if any step (including the file write)
fails. Concurrency: postings carry the account version that was validated;
a mismatch is a lost compare-and-swap and raises ConcurrentModificationError.
"""

import json
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union
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
from financebank.services.storage.interface import (
    AuditStorageInterface,
    ConcurrentModificationError,
    DuplicateError,
    LedgerStorageInterface,
    RecordNotFoundError,
    StorageError,
)


def _sort_accounts(accounts: list[Account]) -> list[Account]:
    return sorted(accounts, key=lambda a: (not a.is_primary, a.created_at))


class LocalStore:
    """
    In-process tables shared by the local ledger and audit storages.

    Handles snapshot/rollback and the optional JSON mirror.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self.lock = threading.RLock()

        self.accounts: dict[UUID, Account] = {}
        self.transactions: dict[str, Transaction] = {}
        self.idempotency_keys: dict[tuple[str, str], str] = {}
        self.recent_recipients: dict[tuple[str, str], RecentRecipient] = {}
        self.recent_transfers: list[RecentTransfer] = []
        self.audit_events: list[AuditEvent] = []

        if self.path and self.path.exists():
            self._load()

    _TABLES = (
        "accounts",
        "transactions",
        "idempotency_keys",
        "recent_recipients",
        "recent_transfers",
        "audit_events",
    )

    def _snapshot(self) -> dict:
        return {name: getattr(self, name).copy() for name in self._TABLES}

    def _restore(self, snapshot: dict) -> None:
        for name, table in snapshot.items():
            setattr(self, name, table)

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        """
        Run a block of mutations atomically.

        Records are replaced, never mutated in place, so a shallow copy
        of each table is a complete snapshot.
        """
        with self.lock:
            snapshot = self._snapshot()
            try:
                yield
                self.flush()
            except BaseException:
                self._restore(snapshot)
                raise

    def flush(self) -> None:
        """Write the mirror file, if one is configured."""
        if self.path is None:
            return
        document = {
            "accounts": [a.model_dump(mode="json") for a in self.accounts.values()],
            "transactions": [t.model_dump(mode="json") for t in self.transactions.values()],
            "recent_recipients": [r.model_dump(mode="json") for r in self.recent_recipients.values()],
            "recent_transfers": [t.model_dump(mode="json") for t in self.recent_transfers],
            "audit_events": [e.model_dump(mode="json") for e in self.audit_events],
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as fh:
                json.dump(document, fh)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError(f"Failed to write local store {self.path}: {e}")

    def _load(self) -> None:
        try:
            with open(self.path, encoding="utf-8") as fh:
                document = json.load(fh)
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read local store {self.path}: {e}")

        for raw in document.get("accounts", []):
            account = Account.model_validate(raw)
            self.accounts[account.id] = account
        for raw in document.get("transactions", []):
            transaction = Transaction.model_validate(raw)
            self.transactions[transaction.reference_number] = transaction
            if transaction.idempotency_key:
                key = (transaction.user_id, transaction.idempotency_key)
                self.idempotency_keys[key] = transaction.reference_number
        for raw in document.get("recent_recipients", []):
            recipient = RecentRecipient.model_validate(raw)
            self.recent_recipients[(recipient.user_id, recipient.identifier)] = recipient
        self.recent_transfers = [
            RecentTransfer.model_validate(raw) for raw in document.get("recent_transfers", [])
        ]
        self.audit_events = [
            AuditEvent.model_validate(raw) for raw in document.get("audit_events", [])
        ]


class LocalLedgerStorage(LedgerStorageInterface):
    """
    Local implementation of ledger storage.

    Mutation steps are split into small methods (_insert_transaction,
    _write_balance) so each one runs inside the same unit of work.
    """

    def __init__(self, store: Optional[LocalStore] = None):
        self._store = store or LocalStore()

    @property
    def store(self) -> LocalStore:
        return self._store

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def create_accounts(
        self,
        accounts: list[Account],
        opening_transactions: Optional[list[Transaction]] = None,
    ) -> list[Account]:
        new_ids = {account.id for account in accounts}
        with self._store.unit_of_work():
            for account in accounts:
                if account.id in self._store.accounts:
                    raise DuplicateError("id", f"Account already exists: {account.id}")
                if account.is_primary:
                    self._demote_primary(account.user_id)
                self._store.accounts[account.id] = account

            for transaction in opening_transactions or []:
                if transaction.account_id not in new_ids:
                    raise RecordNotFoundError(f"Account not in this batch: {transaction.account_id}")
                self._check_unique(transaction)
                account = self._store.accounts[transaction.account_id]
                self._insert_transaction(transaction)
                self._write_balance(BalancePosting(
                    account_id=account.id,
                    delta=transaction.amount,
                    expected_version=account.version,
                ))
            created = [self._store.accounts[account.id] for account in accounts]
        return created

    def _demote_primary(self, user_id: str) -> None:
        for account in list(self._store.accounts.values()):
            if account.user_id == user_id and account.is_primary:
                self._store.accounts[account.id] = account.model_copy(update={"is_primary": False})

    async def get_account(self, account_id: UUID) -> Optional[Account]:
        return self._store.accounts.get(account_id)

    async def list_accounts(
        self,
        user_id: str,
        include_inactive: bool = False,
    ) -> list[Account]:
        with self._store.lock:
            accounts = [
                a for a in self._store.accounts.values()
                if a.user_id == user_id and (include_inactive or a.is_active)
            ]
        return _sort_accounts(accounts)

    async def set_primary_account(self, user_id: str, account_id: UUID) -> Account:
        with self._store.unit_of_work():
            target = self._store.accounts.get(account_id)
            if target is None or target.user_id != user_id:
                raise RecordNotFoundError(f"Account not found: {account_id}")
            self._demote_primary(user_id)
            updated = target.model_copy(update={"is_primary": True})
            self._store.accounts[account_id] = updated
        return updated

    async def deactivate_account(self, account_id: UUID, expected_version: int) -> Account:
        with self._store.unit_of_work():
            account = self._store.accounts.get(account_id)
            if account is None:
                raise RecordNotFoundError(f"Account not found: {account_id}")
            if account.version != expected_version:
                raise ConcurrentModificationError(
                    f"Account {account_id} changed (version {account.version}, expected {expected_version})"
                )
            updated = account.model_copy(update={
                "is_active": False,
                "is_primary": False,
                "version": account.version + 1,
            })
            self._store.accounts[account_id] = updated
        return updated

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def apply_transaction(
        self,
        transaction: Transaction,
        postings: list[BalancePosting],
    ) -> Transaction:
        with self._store.unit_of_work():
            self._check_unique(transaction)
            for posting in postings:
                self._check_version(posting)

            self._insert_transaction(transaction)
            for posting in postings:
                self._write_balance(posting)
        return transaction

    def _check_unique(self, transaction: Transaction) -> None:
        if transaction.reference_number in self._store.transactions:
            raise DuplicateError(
                "reference_number",
                f"Reference number already issued: {transaction.reference_number}",
            )
        if transaction.idempotency_key:
            key = (transaction.user_id, transaction.idempotency_key)
            if key in self._store.idempotency_keys:
                raise DuplicateError(
                    "idempotency_key",
                    f"Idempotency key already used: {transaction.idempotency_key}",
                )

    def _check_version(self, posting: BalancePosting) -> None:
        account = self._store.accounts.get(posting.account_id)
        if account is None:
            raise RecordNotFoundError(f"Account not found: {posting.account_id}")
        if account.version != posting.expected_version:
            raise ConcurrentModificationError(
                f"Account {posting.account_id} changed "
                f"(version {account.version}, expected {posting.expected_version})"
            )

    def _insert_transaction(self, transaction: Transaction) -> None:
        self._store.transactions[transaction.reference_number] = transaction
        if transaction.idempotency_key:
            key = (transaction.user_id, transaction.idempotency_key)
            self._store.idempotency_keys[key] = transaction.reference_number

    def _write_balance(self, posting: BalancePosting) -> None:
        account = self._store.accounts[posting.account_id]
        self._store.accounts[posting.account_id] = account.model_copy(update={
            "balance": account.balance + posting.delta,
            "version": account.version + 1,
        })

    async def get_transaction_by_reference(
        self,
        reference_number: str,
    ) -> Optional[Transaction]:
        return self._store.transactions.get(reference_number)

    async def get_transaction_by_idempotency_key(
        self,
        user_id: str,
        idempotency_key: str,
    ) -> Optional[Transaction]:
        with self._store.lock:
            reference = self._store.idempotency_keys.get((user_id, idempotency_key))
            return self._store.transactions.get(reference) if reference else None

    async def list_transactions(
        self,
        user_id: str,
        limit: Optional[int] = 50,
        filters: Optional[TransactionFilters] = None,
    ) -> list[Transaction]:
        with self._store.lock:
            transactions = [
                t for t in self._store.transactions.values()
                if t.user_id == user_id and (filters is None or filters.matches(t))
            ]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions if limit is None else transactions[:limit]

    async def update_transaction_status(
        self,
        reference_number: str,
        expected_status: TransactionStatus,
        new_status: TransactionStatus,
    ) -> Transaction:
        with self._store.unit_of_work():
            transaction = self._store.transactions.get(reference_number)
            if transaction is None:
                raise RecordNotFoundError(f"Transaction not found: {reference_number}")
            if transaction.status != expected_status:
                raise ConcurrentModificationError(
                    f"Transaction {reference_number} is {transaction.status.value}, "
                    f"expected {expected_status.value}"
                )
            updated = transaction.model_copy(update={"status": new_status})
            self._store.transactions[reference_number] = updated
        return updated

    # ------------------------------------------------------------------
    # Recent activity
    # ------------------------------------------------------------------

    async def save_recent_recipient(self, recipient: RecentRecipient) -> RecentRecipient:
        key = (recipient.user_id, recipient.identifier)
        with self._store.unit_of_work():
            existing = self._store.recent_recipients.get(key)
            if existing is not None:
                recipient = recipient.model_copy(update={
                    "transfer_count": existing.transfer_count + 1,
                    "display_name": recipient.display_name or existing.display_name,
                })
            self._store.recent_recipients[key] = recipient
        return recipient

    async def list_recent_recipients(self, user_id: str, limit: int = 5) -> list[RecentRecipient]:
        with self._store.lock:
            recipients = [r for (uid, _), r in self._store.recent_recipients.items() if uid == user_id]
        recipients.sort(key=lambda r: r.last_sent_at, reverse=True)
        return recipients[:limit]

    async def add_recent_transfer(self, transfer: RecentTransfer, keep: int = 5) -> RecentTransfer:
        with self._store.unit_of_work():
            mine = [t for t in self._store.recent_transfers if t.user_id == transfer.user_id]
            mine.append(transfer)
            mine.sort(key=lambda t: t.created_at, reverse=True)
            self._store.recent_transfers = [
                t for t in self._store.recent_transfers if t.user_id != transfer.user_id
            ] + mine[:keep]
        return transfer

    async def list_recent_transfers(self, user_id: str, limit: int = 5) -> list[RecentTransfer]:
        with self._store.lock:
            transfers = [t for t in self._store.recent_transfers if t.user_id == user_id]
        transfers.sort(key=lambda t: t.created_at, reverse=True)
        return transfers[:limit]

    async def replace_recent_activity(
        self,
        user_id: str,
        recipients: list[RecentRecipient],
        transfers: list[RecentTransfer],
    ) -> None:
        with self._store.unit_of_work():
            self._store.recent_recipients = {
                key: r for key, r in self._store.recent_recipients.items() if key[0] != user_id
            }
            for recipient in recipients:
                self._store.recent_recipients[(user_id, recipient.identifier)] = recipient
            self._store.recent_transfers = [
                t for t in self._store.recent_transfers if t.user_id != user_id
            ] + list(transfers)


class LocalAuditStorage(AuditStorageInterface):
    """
    Local implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, store: Optional[LocalStore] = None):
        self._store = store or LocalStore()

    async def append_event(self, event: AuditEvent) -> bool:
        with self._store.unit_of_work():
            self._store.audit_events = self._store.audit_events + [event]
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._store.audit_events if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._store.audit_events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._store.audit_events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
