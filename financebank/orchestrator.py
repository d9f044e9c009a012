"""
Main Orchestrator for the FinanceBank Ledger

This module ties together storage, validation, reporting and auditing and
defines the end-to-end flows for:
1. Recording income and expenses
2. Internal transfers (one account to another of the same user)
3. External payments (to an email or phone recipient)
4. Account lifecycle and read-side queries

DESIGN DECISION: The orchestrator enforces the boundaries:
- Every input and every account is validated before anything is written
- Every money movement is ONE transaction applied atomically by storage
- Every write and every rejection is audited

Concurrency is optimistic: validation reads account versions, storage
refuses the write if any of them moved, and the whole read-validate-apply
cycle is retried from scratch.
"""

import secrets
import string
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar, Union
from uuid import UUID

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from financebank.audit import AuditLogger, create_correlation_id
from financebank.config import LedgerSettings, get_settings
from financebank.models.audit import AuditEventBuilder
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
from financebank.models.money import coerce_decimal
from financebank.queries import LedgerReports
from financebank.services.currency import CurrencyConverter
from financebank.services.storage import (
    ConcurrentModificationError,
    DuplicateError,
    LedgerStorageInterface,
    LocalAuditStorage,
    LocalLedgerStorage,
    LocalStore,
    RecordNotFoundError,
    StorageError,
    StorageUnavailableError,
    create_sql_storages,
)
from financebank.validation import (
    AccountNotEmptyError,
    InvalidAmountError,
    InvalidDetailsError,
    InvalidStatusTransitionError,
    LedgerError,
    LedgerValidator,
    NotFoundError,
    SameAccountError,
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSFER_CATEGORY = "Transfer"
OPENING_BALANCE_CATEGORY = "Opening Balance"

# (name, kind, account number prefix, opening balance, is_primary)
STARTER_ACCOUNTS: tuple[tuple[str, AccountKind, str, Decimal, bool], ...] = (
    ("Primary Checking", AccountKind.CHECKING, "CHK", Decimal("1032450.32"), True),
    ("Savings Account", AccountKind.SAVINGS, "SAV", Decimal("3752089.45"), False),
    ("Investment Account", AccountKind.INVESTMENT, "INV", Decimal("6548745.89"), False),
)
STARTER_CURRENCY = "INR"

_REFERENCE_ALPHABET = string.digits + string.ascii_lowercase


class LedgerClock:
    """
    Hands out strictly increasing UTC timestamps.

    Two transactions created in the same microsecond still get distinct,
    ordered created_at values, so "newest first" is never ambiguous.
    """

    def __init__(self, now: Callable[[], datetime] = utc_now):
        self._now = now
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def tick(self) -> datetime:
        with self._lock:
            current = self._now()
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current


def generate_reference_number(prefix: str, created_at: datetime) -> str:
    """
    Build a reference like TXN_1718000000000_k3j9x0a2b.

    Millisecond timestamp plus nine random base-36 characters. Storage
    enforces uniqueness; a collision is retried with a fresh suffix.
    """
    millis = int(created_at.timestamp() * 1000)
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(9))
    return f"{prefix}_{millis}_{suffix}"


def generate_account_number(prefix: str, created_at: datetime) -> str:
    millis = int(created_at.timestamp() * 1000)
    return f"{prefix}{millis % 10**8:08d}{secrets.randbelow(10**4):04d}"


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, ConcurrentModificationError):
        return True
    return isinstance(error, DuplicateError) and error.field == "reference_number"


def _as_uuid(value: Union[UUID, str], label: str = "Account") -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise NotFoundError(f"{label} not found: {value}")


class LedgerService:
    """
    Orchestrates every ledger operation.

    Mutation flow:
    1. Input validation (amount, text, recipient) - no storage access
    2. Idempotency check - a known key returns the original transaction
    3. Read accounts, validate ownership, currency and funds
    4. Build ONE Transaction plus its balance postings
    5. Storage applies both atomically, or refuses on a version conflict
       (then steps 3-5 are retried)
    6. Audit, then refresh recent-activity summaries

    Rejections raise a LedgerError after being audited. Nothing is written
    before step 5, so a rejected call leaves storage untouched.
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
        validator: Optional[LedgerValidator] = None,
        reports: Optional[LedgerReports] = None,
        settings: Optional[LedgerSettings] = None,
        clock: Optional[LedgerClock] = None,
    ):
        self._storage = storage
        self._settings = settings or get_settings().ledger
        self._audit_logger = audit_logger or AuditLogger()
        self._validator = validator or LedgerValidator(self._settings.max_transaction_amount)
        self._reports = reports or LedgerReports(
            storage,
            converter=CurrencyConverter(),
            reporting_currency=self._settings.reporting_currency,
        )
        self._clock = clock or LedgerClock()

    @property
    def storage(self) -> LedgerStorageInterface:
        return self._storage

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit_logger

    async def close(self) -> None:
        await self._storage.close()

    # =========================================================================
    # PLUMBING
    # =========================================================================

    async def _run_mutation(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run read-validate-apply, retrying lost version races and reference collisions."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._settings.mutation_attempts),
                wait=wait_exponential(multiplier=0.01, max=0.2),
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    return await operation()
        except RecordNotFoundError as e:
            raise NotFoundError(str(e))

    async def _audited(
        self,
        user_id: str,
        operation: str,
        correlation_id: UUID,
        action: Callable[[], Awaitable[T]],
    ) -> T:
        try:
            return await action()
        except (LedgerError, StorageError) as e:
            await self._audit_logger.log_rejected(user_id, operation, e, correlation_id)
            raise

    async def _find_replay(
        self,
        user_id: str,
        idempotency_key: Optional[str],
        correlation_id: UUID,
    ) -> Optional[Transaction]:
        if not idempotency_key:
            return None
        existing = await self._storage.get_transaction_by_idempotency_key(user_id, idempotency_key)
        if existing is not None:
            await self._audit_logger.log(AuditEventBuilder.transaction_replayed(
                user_id=user_id,
                reference_number=existing.reference_number,
                idempotency_key=idempotency_key,
                correlation_id=correlation_id,
            ))
        return existing

    async def _apply_once(
        self,
        user_id: str,
        idempotency_key: Optional[str],
        correlation_id: UUID,
        build: Callable[[], Awaitable[Transaction]],
    ) -> tuple[Transaction, bool]:
        """
        Apply a mutation at most once per idempotency key.

        Returns:
            (transaction, created) - created is False for a replay
        """
        replay = await self._find_replay(user_id, idempotency_key, correlation_id)
        if replay is not None:
            return replay, False

        try:
            return await self._run_mutation(build), True
        except DuplicateError as e:
            if e.field != "idempotency_key":
                raise
            # Lost the race against an identical request
            replay = await self._find_replay(user_id, idempotency_key, correlation_id)
            if replay is None:
                raise
            return replay, False

    def _normalize_key(self, idempotency_key: Optional[str]) -> Optional[str]:
        if idempotency_key is None:
            return None
        key = idempotency_key.strip()
        if not key:
            return None
        if len(key) > 128:
            raise InvalidDetailsError("Idempotency key must be at most 128 characters")
        return key

    async def _load_account(self, user_id: str, account_id: UUID) -> Account:
        account = await self._storage.get_account(account_id)
        return self._validator.require_account(account, user_id, account_id)

    async def _remember_activity(
        self,
        user_id: str,
        transaction: Transaction,
        transfer: RecentTransfer,
        recipient: Optional[RecentRecipient],
        correlation_id: UUID,
    ) -> None:
        """Best-effort update of the derived summaries; they can be rebuilt."""
        try:
            if recipient is not None:
                await self._storage.save_recent_recipient(recipient)
            await self._storage.add_recent_transfer(transfer, keep=self._settings.recent_items_limit)
        except StorageError as e:
            await self._audit_logger.log(AuditEventBuilder.recent_activity_failed(
                user_id=user_id,
                reference_number=transaction.reference_number,
                error_message=str(e),
                correlation_id=correlation_id,
            ))

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def list_accounts(self, user_id: str) -> list[Account]:
        """Active accounts, primary first."""
        return await self._storage.list_accounts(user_id)

    async def provision_starter_accounts(self, user_id: str) -> list[Account]:
        """
        Give a new user the starter account set.

        Balances are funded through opening-balance income transactions, so
        every balance is explained by history. A user that already has
        accounts is left alone and their active accounts returned.
        """
        existing = await self._storage.list_accounts(user_id, include_inactive=True)
        if existing:
            return [a for a in existing if a.is_active]

        correlation_id = create_correlation_id()

        async def create() -> list[Account]:
            accounts = []
            openings = []
            for name, kind, prefix, opening_balance, is_primary in STARTER_ACCOUNTS:
                created_at = self._clock.tick()
                account = Account(
                    user_id=user_id,
                    name=name,
                    kind=kind,
                    currency=STARTER_CURRENCY,
                    account_number=generate_account_number(prefix, created_at),
                    is_primary=is_primary,
                    created_at=created_at,
                )
                accounts.append(account)
                openings.append(self._opening_transaction(account, opening_balance))
            return await self._storage.create_accounts(accounts, openings)

        async def provision() -> list[Account]:
            accounts = await self._run_mutation(create)
            await self._audit_logger.log(AuditEventBuilder.accounts_provisioned(
                user_id=user_id,
                account_names=[a.name for a in accounts],
                correlation_id=correlation_id,
            ))
            return await self._storage.list_accounts(user_id)

        return await self._audited(user_id, "provision_starter_accounts", correlation_id, provision)

    def _opening_transaction(self, account: Account, amount: Decimal) -> Transaction:
        """Income entry that funds a brand-new account; stored with the account."""
        created_at = self._clock.tick()
        return Transaction(
            reference_number=generate_reference_number("TXN", created_at),
            user_id=account.user_id,
            account_id=account.id,
            type=TransactionType.INCOME,
            amount=amount,
            currency=account.currency,
            description="Opening balance",
            category=OPENING_BALANCE_CATEGORY,
            transaction_date=created_at.date(),
            created_at=created_at,
            balance_after=account.balance + amount,
        )

    async def open_account(
        self,
        user_id: str,
        name: str,
        kind: Union[AccountKind, str],
        currency: Optional[str] = None,
        opening_balance=Decimal("0"),
        overdraft_limit=Decimal("0"),
        is_primary: bool = False,
    ) -> Account:
        """
        Open a new account.

        The first account a user opens becomes primary. A non-zero opening
        balance is recorded as an income transaction.

        Raises:
            InvalidDetailsError: Bad name, kind or currency
            InvalidAmountError: Negative or malformed opening balance / limit
        """
        correlation_id = create_correlation_id()

        async def open_() -> Account:
            account_name = self._validator.validate_text(name, "Account name", 100)
            try:
                account_kind = AccountKind(kind)
            except ValueError:
                raise InvalidDetailsError(f"Unknown account kind: {kind}")
            account_currency = (currency or self._settings.default_currency).strip().upper()
            if account_currency not in self._reports.converter.supported_currencies:
                raise InvalidDetailsError(f"Unsupported currency: {account_currency}")

            opening = self._non_negative(opening_balance, account_currency, "Opening balance")
            limit = self._non_negative(overdraft_limit, account_currency, "Overdraft limit")

            async def create() -> Account:
                existing = await self._storage.list_accounts(user_id)
                created_at = self._clock.tick()
                account = Account(
                    user_id=user_id,
                    name=account_name,
                    kind=account_kind,
                    currency=account_currency,
                    account_number=generate_account_number(account_kind.value[:3].upper(), created_at),
                    is_primary=is_primary or not existing,
                    overdraft_limit=limit,
                    created_at=created_at,
                )
                openings = [self._opening_transaction(account, opening)] if opening > 0 else []
                created = await self._storage.create_accounts([account], openings)
                return created[0]

            account = await self._run_mutation(create)
            await self._audit_logger.log(AuditEventBuilder.account_opened(
                user_id=user_id,
                account_id=account.id,
                name=account.name,
                kind=account_kind.value,
                correlation_id=correlation_id,
            ))
            return await self._storage.get_account(account.id)

        return await self._audited(user_id, "open_account", correlation_id, open_)

    def _non_negative(self, value, currency: str, field: str) -> Decimal:
        if value is None:
            return Decimal("0")
        try:
            amount = coerce_decimal(value)
        except ValueError as e:
            raise InvalidAmountError(f"{field}: {e}")
        if amount < 0:
            raise InvalidAmountError(f"{field} cannot be negative")
        if amount == 0:
            return Decimal("0")
        return self._validator.validate_amount(amount, currency)

    async def set_primary_account(self, user_id: str, account_id: Union[UUID, str]) -> Account:
        correlation_id = create_correlation_id()

        async def change() -> Account:
            account = await self._load_account(user_id, _as_uuid(account_id))
            updated = await self._storage.set_primary_account(user_id, account.id)
            await self._audit_logger.log(AuditEventBuilder.primary_account_changed(
                user_id=user_id,
                account_id=account.id,
                correlation_id=correlation_id,
            ))
            return updated

        return await self._audited(user_id, "set_primary_account", correlation_id, change)

    async def deactivate_account(self, user_id: str, account_id: Union[UUID, str]) -> Account:
        """
        Close an empty account (soft delete).

        If the closed account was primary, the next remaining account is
        promoted.

        Raises:
            AccountNotEmptyError: If the balance isn't exactly zero
        """
        correlation_id = create_correlation_id()
        target_id = _as_uuid(account_id)

        async def deactivate() -> Account:
            account = await self._load_account(user_id, target_id)
            if account.balance != 0:
                raise AccountNotEmptyError(
                    f"Account {account.name} still holds {account.balance} {account.currency}"
                )
            return await self._storage.deactivate_account(account.id, account.version)

        async def run() -> Account:
            closed = await self._run_mutation(deactivate)
            remaining = await self._storage.list_accounts(user_id)
            if remaining and not any(a.is_primary for a in remaining):
                await self._storage.set_primary_account(user_id, remaining[0].id)
            await self._audit_logger.log(AuditEventBuilder.account_deactivated(
                user_id=user_id,
                account_id=closed.id,
                correlation_id=correlation_id,
            ))
            return closed

        return await self._audited(user_id, "deactivate_account", correlation_id, run)

    # =========================================================================
    # MONEY MOVEMENT
    # =========================================================================

    async def record_income_or_expense(
        self,
        user_id: str,
        account_id: Union[UUID, str],
        type: Union[TransactionType, str],
        amount,
        description: str,
        category: str,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        """
        Record income into, or an expense out of, one account.

        Raises:
            InvalidDetailsError: Bad type, description or category
            InvalidAmountError: Amount not strictly positive or too precise
            NotFoundError: Account missing, inactive or not the caller's
            InsufficientFundsError: Expense would go below the account floor
        """
        correlation_id = create_correlation_id()

        async def record() -> Transaction:
            try:
                txn_type = TransactionType(type)
            except ValueError:
                raise InvalidDetailsError(f"Unknown transaction type: {type}")
            if txn_type == TransactionType.TRANSFER:
                raise InvalidDetailsError("Transfers must go through transfer_internal")

            text = self._validator.validate_text(description, "Description", 255)
            label = self._validator.validate_text(category, "Category", 60)
            key = self._normalize_key(idempotency_key)
            target_id = _as_uuid(account_id)

            async def apply() -> Transaction:
                account = await self._load_account(user_id, target_id)
                value = self._validator.validate_amount(amount, account.currency)
                if txn_type == TransactionType.EXPENSE:
                    self._validator.check_funds(account, value)
                    signed = -value
                else:
                    signed = value

                created_at = self._clock.tick()
                transaction = Transaction(
                    reference_number=generate_reference_number("TXN", created_at),
                    user_id=user_id,
                    account_id=account.id,
                    type=txn_type,
                    amount=signed,
                    currency=account.currency,
                    description=text,
                    category=label,
                    transaction_date=created_at.date(),
                    created_at=created_at,
                    balance_after=account.balance + signed,
                    idempotency_key=key,
                )
                return await self._storage.apply_transaction(
                    transaction,
                    [BalancePosting(account_id=account.id, delta=signed, expected_version=account.version)],
                )

            transaction, created = await self._apply_once(user_id, key, correlation_id, apply)
            if created:
                await self._audit_logger.log_transaction_recorded(
                    user_id=user_id,
                    reference_number=transaction.reference_number,
                    transaction_type=transaction.type.value,
                    amount=transaction.amount,
                    category=transaction.category,
                    correlation_id=correlation_id,
                )
            return transaction

        return await self._audited(user_id, "record_income_or_expense", correlation_id, record)

    async def transfer_internal(
        self,
        user_id: str,
        from_account_id: Union[UUID, str],
        to_account_id: Union[UUID, str],
        amount,
        memo: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        """
        Move money between two of the caller's own accounts.

        One TRANSFER transaction is written (amount negative, from the
        source's point of view) and both balances change in the same unit
        of work.

        Raises:
            SameAccountError: Source and destination are the same account
            InvalidAmountError / NotFoundError / CurrencyMismatchError /
            InsufficientFundsError
        """
        correlation_id = create_correlation_id()

        async def transfer() -> Transaction:
            source_id = _as_uuid(from_account_id)
            destination_id = _as_uuid(to_account_id)
            if source_id == destination_id:
                raise SameAccountError()
            note = self._optional_memo(memo)
            key = self._normalize_key(idempotency_key)

            async def apply() -> Transaction:
                source = await self._load_account(user_id, source_id)
                destination = await self._load_account(user_id, destination_id)
                self._validator.validate_transfer_accounts(source, destination)
                value = self._validator.validate_amount(amount, source.currency)
                self._validator.check_funds(source, value)

                created_at = self._clock.tick()
                transaction = Transaction(
                    reference_number=generate_reference_number("TXN", created_at),
                    user_id=user_id,
                    account_id=source.id,
                    to_account_id=destination.id,
                    type=TransactionType.TRANSFER,
                    amount=-value,
                    currency=source.currency,
                    description=note or f"Transfer from {source.name} to {destination.name}",
                    category=TRANSFER_CATEGORY,
                    transaction_date=created_at.date(),
                    created_at=created_at,
                    balance_after=source.balance - value,
                    idempotency_key=key,
                )
                return await self._storage.apply_transaction(transaction, [
                    BalancePosting(account_id=source.id, delta=-value, expected_version=source.version),
                    BalancePosting(account_id=destination.id, delta=value, expected_version=destination.version),
                ])

            transaction, created = await self._apply_once(user_id, key, correlation_id, apply)
            if not created:
                return transaction

            names = {a.id: a.name for a in await self._storage.list_accounts(user_id, include_inactive=True)}
            from_name = names.get(transaction.account_id, str(transaction.account_id))
            to_name = names.get(transaction.to_account_id, str(transaction.to_account_id))
            await self._audit_logger.log_transfer_completed(
                user_id=user_id,
                reference_number=transaction.reference_number,
                from_account=from_name,
                to_account=to_name,
                amount=transaction.magnitude,
                correlation_id=correlation_id,
            )
            await self._remember_activity(
                user_id,
                transaction,
                RecentTransfer(
                    user_id=user_id,
                    reference_number=transaction.reference_number,
                    kind=TransferKind.INTERNAL,
                    from_account_name=from_name,
                    to_label=to_name,
                    amount=transaction.magnitude,
                    currency=transaction.currency,
                    created_at=transaction.created_at,
                ),
                None,
                correlation_id,
            )
            return transaction

        return await self._audited(user_id, "transfer_internal", correlation_id, transfer)

    async def transfer_external(
        self,
        user_id: str,
        from_account_id: Union[UUID, str],
        recipient: str,
        amount,
        memo: Optional[str] = None,
        recipient_name: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Transaction:
        """
        Pay someone outside the ledger.

        Recorded as an EXPENSE in category "Transfer" with the recipient as
        counterparty. Settlement is out of scope: the payment is complete
        as soon as the debit is applied.

        Raises:
            InvalidRecipientError: Recipient is not an email or phone number
            InvalidAmountError / NotFoundError / InsufficientFundsError
        """
        correlation_id = create_correlation_id()

        async def pay() -> Transaction:
            identifier = self._validator.validate_recipient(recipient)
            note = self._optional_memo(memo)
            display_name = (recipient_name or "").strip() or None
            key = self._normalize_key(idempotency_key)
            source_id = _as_uuid(from_account_id)

            description = f"Transfer to {identifier}"
            if note:
                description = f"{description} - {note}"
            description = self._validator.validate_text(description, "Description", 255)

            async def apply() -> Transaction:
                source = await self._load_account(user_id, source_id)
                value = self._validator.validate_amount(amount, source.currency)
                self._validator.check_funds(source, value)

                created_at = self._clock.tick()
                transaction = Transaction(
                    reference_number=generate_reference_number("EXT", created_at),
                    user_id=user_id,
                    account_id=source.id,
                    type=TransactionType.EXPENSE,
                    amount=-value,
                    currency=source.currency,
                    description=description,
                    category=TRANSFER_CATEGORY,
                    transaction_date=created_at.date(),
                    created_at=created_at,
                    balance_after=source.balance - value,
                    counterparty=identifier,
                    idempotency_key=key,
                )
                return await self._storage.apply_transaction(
                    transaction,
                    [BalancePosting(account_id=source.id, delta=-value, expected_version=source.version)],
                )

            transaction, created = await self._apply_once(user_id, key, correlation_id, apply)
            if not created:
                return transaction

            source = await self._storage.get_account(transaction.account_id)
            await self._audit_logger.log_external_payment(
                user_id=user_id,
                reference_number=transaction.reference_number,
                recipient=identifier,
                amount=transaction.magnitude,
                correlation_id=correlation_id,
            )
            await self._remember_activity(
                user_id,
                transaction,
                RecentTransfer(
                    user_id=user_id,
                    reference_number=transaction.reference_number,
                    kind=TransferKind.EXTERNAL,
                    from_account_name=source.name if source else str(transaction.account_id),
                    to_label=display_name or identifier,
                    amount=transaction.magnitude,
                    currency=transaction.currency,
                    created_at=transaction.created_at,
                ),
                RecentRecipient(
                    user_id=user_id,
                    identifier=identifier,
                    display_name=display_name,
                    last_amount=transaction.magnitude,
                    currency=transaction.currency,
                    last_sent_at=transaction.created_at,
                ),
                correlation_id,
            )
            return transaction

        return await self._audited(user_id, "transfer_external", correlation_id, pay)

    def _optional_memo(self, memo: Optional[str]) -> Optional[str]:
        if memo is None or not memo.strip():
            return None
        return self._validator.validate_text(memo, "Memo", 200)

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    async def list_transactions(
        self,
        user_id: str,
        limit: Optional[int] = None,
        filters: Optional[Union[TransactionFilters, dict]] = None,
    ) -> list[TransactionView]:
        """
        Newest-first transaction history with account names joined in.

        limit defaults to the configured page size and is capped at the
        configured maximum.
        """
        if limit is None:
            limit = self._settings.default_page_size
        if limit < 1:
            raise InvalidDetailsError("Limit must be at least 1")
        limit = min(limit, self._settings.max_page_size)

        if isinstance(filters, dict):
            try:
                filters = TransactionFilters.model_validate(filters)
            except ValueError as e:
                raise InvalidDetailsError(f"Invalid filters: {e}")

        transactions = await self._storage.list_transactions(user_id, limit=limit, filters=filters)
        names = {a.id: a.name for a in await self._storage.list_accounts(user_id, include_inactive=True)}

        return [
            TransactionView(
                **txn.model_dump(),
                account_name=names.get(txn.account_id),
                to_account_name=names.get(txn.to_account_id) if txn.to_account_id else None,
            )
            for txn in transactions
        ]

    async def get_transaction(self, user_id: str, reference_number: str) -> Transaction:
        transaction = await self._storage.get_transaction_by_reference(reference_number)
        if transaction is None or transaction.user_id != user_id:
            raise NotFoundError(f"Transaction not found: {reference_number}")
        return transaction

    async def update_transaction_status(
        self,
        user_id: str,
        reference_number: str,
        status: Union[TransactionStatus, str],
    ) -> Transaction:
        """
        Move a PENDING transaction to a terminal status.

        Status is bookkeeping only; balances are never touched here.

        Raises:
            InvalidStatusTransitionError: Unknown status, or the transaction
                                          is already terminal
        """
        correlation_id = create_correlation_id()

        async def change() -> Transaction:
            try:
                new_status = TransactionStatus(status)
            except ValueError:
                raise InvalidStatusTransitionError(f"Unknown status: {status}")

            async def apply() -> Transaction:
                transaction = await self.get_transaction(user_id, reference_number)
                if not transaction.status.can_transition_to(new_status):
                    raise InvalidStatusTransitionError(
                        f"Cannot move {reference_number} from "
                        f"{transaction.status.value} to {new_status.value}"
                    )
                return await self._storage.update_transaction_status(
                    reference_number, transaction.status, new_status
                )

            updated = await self._run_mutation(apply)
            # Only PENDING can move
            await self._audit_logger.log(AuditEventBuilder.transaction_status_changed(
                user_id=user_id,
                reference_number=reference_number,
                old_status=TransactionStatus.PENDING.value,
                new_status=updated.status.value,
                correlation_id=correlation_id,
            ))
            return updated

        return await self._audited(user_id, "update_transaction_status", correlation_id, change)

    def transaction_categories(self) -> list[TransactionCategory]:
        return list(DEFAULT_CATEGORIES)

    # =========================================================================
    # RECENT ACTIVITY
    # =========================================================================

    async def list_recent_recipients(self, user_id: str, limit: Optional[int] = None) -> list[RecentRecipient]:
        return await self._storage.list_recent_recipients(
            user_id, limit or self._settings.recent_items_limit
        )

    async def list_recent_transfers(self, user_id: str, limit: Optional[int] = None) -> list[RecentTransfer]:
        return await self._storage.list_recent_transfers(
            user_id, limit or self._settings.recent_items_limit
        )

    async def rebuild_recent_activity(
        self,
        user_id: str,
    ) -> tuple[list[RecentRecipient], list[RecentTransfer]]:
        """Recompute the recent summaries from transaction history."""
        accounts = await self._storage.list_accounts(user_id, include_inactive=True)
        recipients, transfers = await self._reports.derive_recent_activity(
            user_id, accounts, self._settings.recent_items_limit
        )
        await self._storage.replace_recent_activity(user_id, recipients, transfers)
        await self._audit_logger.log(AuditEventBuilder.recent_activity_rebuilt(
            user_id=user_id,
            recipients=len(recipients),
            transfers=len(transfers),
        ))
        return recipients, transfers

    # =========================================================================
    # REPORTS
    # =========================================================================

    async def get_current_balance_snapshot(self, user_id: str) -> BalanceSnapshot:
        return await self._reports.balance_snapshot(user_id)

    async def monthly_spending_by_category(
        self,
        user_id: str,
        year: Optional[int] = None,
        month: Optional[int] = None,
    ) -> list[CategorySpending]:
        year, month = self._resolve_month(year, month)
        return await self._reports.monthly_spending_by_category(user_id, year, month)

    async def cash_flow_summary(
        self,
        user_id: str,
        year: Optional[int] = None,
        month: Optional[int] = None,
    ) -> CashFlowSummary:
        year, month = self._resolve_month(year, month)
        return await self._reports.cash_flow_summary(user_id, year, month)

    def _resolve_month(self, year: Optional[int], month: Optional[int]) -> tuple[int, int]:
        today = utc_now()
        year = year or today.year
        month = month or today.month
        if not 1 <= month <= 12:
            raise InvalidDetailsError(f"Invalid month: {month}")
        return year, month


async def create_ledger_service(
    database_url: Optional[str] = None,
    local_store_path: Optional[Union[str, Path]] = None,
    demo_fallback: Optional[bool] = None,
) -> LedgerService:
    """
    Factory function to create a ready-to-use ledger service.

    Uses the relational store when a database URL is configured. If it
    can't be reached and demo fallback is enabled, the local demo store is
    used instead (and the fallback is audited).

    Args:
        database_url: Overrides LEDGER_DB_URL
        local_store_path: Overrides LEDGER_LOCAL_STORE_PATH
        demo_fallback: Overrides LEDGER_DEMO_FALLBACK

    Raises:
        StorageUnavailableError: Database unreachable and fallback disabled
    """
    settings = get_settings()
    url = database_url or settings.database.url
    allow_fallback = settings.ledger.demo_fallback if demo_fallback is None else demo_fallback
    fallback_reason = None

    if url:
        client, ledger_storage, audit_storage = create_sql_storages(url)
        try:
            await client.connect()
            return LedgerService(ledger_storage, AuditLogger(audit_storage))
        except StorageUnavailableError as e:
            if not allow_fallback:
                # Nowhere to persist yet, so this event is only logged
                await AuditLogger().log_error(
                    error_type=type(e).__name__,
                    error_message=str(e),
                    details={"demo_fallback": False},
                )
                raise
            logger.warning("storage_fallback", error=str(e))
            fallback_reason = str(e)

    store = LocalStore(local_store_path or settings.ledger.local_store_path)
    audit_logger = AuditLogger(LocalAuditStorage(store))
    if fallback_reason:
        await audit_logger.log(AuditEventBuilder.storage_fallback(fallback_reason))
    return LedgerService(LocalLedgerStorage(store), audit_logger)
