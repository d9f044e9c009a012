"""
Relational Storage Implementation

DESIGN DECISION: The hosted deployment keeps the ledger in a relational
database through SQLAlchemy's async engine. Any async driver URL works
(postgresql+asyncpg in production, sqlite+aiosqlite locally and in tests).

Money is stored as integer minor units (paise, cents, yen), never as a
floating or driver-dependent numeric type.

Every mutation runs inside one database transaction:
1. The involved account rows are locked (SELECT ... FOR UPDATE, in id order
   so two transfers can't deadlock each other)
2. Account versions are compared with the versions the ledger validated
3. The transaction row is inserted and the balances are written
Any exception rolls the whole database transaction back.
"""

import json
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from financebank.config import get_settings
from financebank.models.audit import AuditEvent, AuditEventType, AuditSeverity
from financebank.models.ledger import (
    Account,
    AccountKind,
    BalancePosting,
    RecentRecipient,
    RecentTransfer,
    Transaction,
    TransactionFilters,
    TransactionStatus,
    TransactionType,
    TransferKind,
)
from financebank.models.money import from_minor_units, to_minor_units
from financebank.services.storage.interface import (
    AuditStorageInterface,
    ConcurrentModificationError,
    DuplicateError,
    LedgerStorageInterface,
    RecordNotFoundError,
    StorageError,
    StorageUnavailableError,
)


class Base(DeclarativeBase):
    pass


class AccountRow(Base):
    __tablename__ = "ledger_accounts"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    kind = Column(String(20), nullable=False)
    currency = Column(String(3), nullable=False)
    balance_minor = Column(BigInteger, nullable=False, default=0)
    overdraft_minor = Column(BigInteger, nullable=False, default=0)
    account_number = Column(String(40))
    is_primary = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)


class TransactionRow(Base):
    __tablename__ = "ledger_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_ledger_transactions_idempotency"),
    )

    id = Column(String(36), primary_key=True)
    reference_number = Column(String(64), nullable=False, unique=True)
    user_id = Column(String(64), nullable=False, index=True)
    account_id = Column(String(36), ForeignKey("ledger_accounts.id"), nullable=False)
    to_account_id = Column(String(36), ForeignKey("ledger_accounts.id"))
    type = Column(String(20), nullable=False)
    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    description = Column(String(255), nullable=False)
    category = Column(String(60), nullable=False)
    status = Column(String(20), nullable=False)
    transaction_date = Column(Date, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    balance_after_minor = Column(BigInteger)
    counterparty = Column(String(255))
    idempotency_key = Column(String(128))


class RecentRecipientRow(Base):
    __tablename__ = "ledger_recent_recipients"

    user_id = Column(String(64), primary_key=True)
    identifier = Column(String(255), primary_key=True)
    display_name = Column(String(255))
    last_amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    last_sent_at = Column(DateTime(timezone=True), nullable=False)
    transfer_count = Column(Integer, nullable=False, default=1)


class RecentTransferRow(Base):
    __tablename__ = "ledger_recent_transfers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    reference_number = Column(String(64), nullable=False)
    kind = Column(String(20), nullable=False)
    from_account_name = Column(String(100), nullable=False)
    to_label = Column(String(255), nullable=False)
    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class AuditEventRow(Base):
    __tablename__ = "ledger_audit_events"

    event_id = Column(String(36), primary_key=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    severity = Column(String(20), nullable=False)
    user_id = Column(String(64))
    entity_type = Column(String(50))
    entity_id = Column(String(64))
    correlation_id = Column(String(36), index=True)
    description = Column(String(500), nullable=False)
    details_json = Column(Text)
    error_code = Column(String(100))
    error_message = Column(Text)
    is_user_action = Column(Boolean, nullable=False, default=False)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we write is UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SqlLedgerClient:
    """
    Low-level database wrapper.

    Owns the engine and session factory and provides retry logic for
    reaching the database at startup.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        echo: Optional[bool] = None,
        connect_attempts: Optional[int] = None,
    ):
        settings = get_settings().database
        self._url = url or settings.url
        self._echo = settings.echo if echo is None else echo
        self._pool_size = settings.pool_size
        self._connect_attempts = connect_attempts or settings.connect_attempts
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    async def connect(self) -> AsyncEngine:
        """
        Create the engine, verify the database answers, and create tables.

        Raises:
            StorageUnavailableError: If the database can't be reached
        """
        if not self._url:
            raise StorageUnavailableError("No database URL configured")

        if self._engine is None:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._connect_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type(StorageUnavailableError),
                reraise=True,
            ):
                with attempt:
                    self._engine = await self._open_engine()
            self._sessionmaker = async_sessionmaker(
                bind=self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._engine

    async def _open_engine(self) -> AsyncEngine:
        engine_kwargs = {"echo": self._echo}
        if self._pool_size is not None:
            engine_kwargs["pool_size"] = self._pool_size
        try:
            engine = create_async_engine(self._url, **engine_kwargs)
        except (SQLAlchemyError, ImportError, ValueError) as e:
            raise StorageUnavailableError(f"Invalid database URL: {e}")
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            await engine.dispose()
            raise StorageUnavailableError(f"Failed to connect to database: {e}")
        return engine

    def session(self) -> AsyncSession:
        if self._sessionmaker is None:
            raise StorageUnavailableError("Database client is not connected")
        return self._sessionmaker()

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None


class SqlLedgerStorage(LedgerStorageInterface):
    """
    Relational implementation of ledger storage.

    Rows are converted to and from the pydantic models at this boundary;
    nothing above this class sees an ORM object.
    """

    def __init__(self, client: SqlLedgerClient):
        self._client = client

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _account_to_row(account: Account) -> AccountRow:
        return AccountRow(
            id=str(account.id),
            user_id=account.user_id,
            name=account.name,
            kind=account.kind.value,
            currency=account.currency,
            balance_minor=to_minor_units(account.balance, account.currency),
            overdraft_minor=to_minor_units(account.overdraft_limit, account.currency),
            account_number=account.account_number,
            is_primary=account.is_primary,
            is_active=account.is_active,
            version=account.version,
            created_at=account.created_at,
        )

    @staticmethod
    def _row_to_account(row: AccountRow) -> Account:
        return Account(
            id=UUID(row.id),
            user_id=row.user_id,
            name=row.name,
            kind=AccountKind(row.kind),
            currency=row.currency,
            balance=from_minor_units(row.balance_minor, row.currency),
            overdraft_limit=from_minor_units(row.overdraft_minor, row.currency),
            account_number=row.account_number,
            is_primary=row.is_primary,
            is_active=row.is_active,
            version=row.version,
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _transaction_to_row(transaction: Transaction) -> TransactionRow:
        currency = transaction.currency
        return TransactionRow(
            id=str(transaction.id),
            reference_number=transaction.reference_number,
            user_id=transaction.user_id,
            account_id=str(transaction.account_id),
            to_account_id=str(transaction.to_account_id) if transaction.to_account_id else None,
            type=transaction.type.value,
            amount_minor=to_minor_units(transaction.amount, currency),
            currency=currency,
            description=transaction.description,
            category=transaction.category,
            status=transaction.status.value,
            transaction_date=transaction.transaction_date,
            created_at=transaction.created_at,
            balance_after_minor=(
                to_minor_units(transaction.balance_after, currency)
                if transaction.balance_after is not None else None
            ),
            counterparty=transaction.counterparty,
            idempotency_key=transaction.idempotency_key,
        )

    @staticmethod
    def _row_to_transaction(row: TransactionRow) -> Transaction:
        return Transaction(
            id=UUID(row.id),
            reference_number=row.reference_number,
            user_id=row.user_id,
            account_id=UUID(row.account_id),
            to_account_id=UUID(row.to_account_id) if row.to_account_id else None,
            type=TransactionType(row.type),
            amount=from_minor_units(row.amount_minor, row.currency),
            currency=row.currency,
            description=row.description,
            category=row.category,
            status=TransactionStatus(row.status),
            transaction_date=row.transaction_date,
            created_at=_aware(row.created_at),
            balance_after=(
                from_minor_units(row.balance_after_minor, row.currency)
                if row.balance_after_minor is not None else None
            ),
            counterparty=row.counterparty,
            idempotency_key=row.idempotency_key,
        )

    @staticmethod
    def _row_to_recipient(row: RecentRecipientRow) -> RecentRecipient:
        return RecentRecipient(
            user_id=row.user_id,
            identifier=row.identifier,
            display_name=row.display_name,
            last_amount=from_minor_units(row.last_amount_minor, row.currency),
            currency=row.currency,
            last_sent_at=_aware(row.last_sent_at),
            transfer_count=row.transfer_count,
        )

    @staticmethod
    def _recipient_to_row(recipient: RecentRecipient) -> RecentRecipientRow:
        return RecentRecipientRow(
            user_id=recipient.user_id,
            identifier=recipient.identifier,
            display_name=recipient.display_name,
            last_amount_minor=to_minor_units(recipient.last_amount, recipient.currency),
            currency=recipient.currency,
            last_sent_at=recipient.last_sent_at,
            transfer_count=recipient.transfer_count,
        )

    @staticmethod
    def _transfer_to_row(transfer: RecentTransfer) -> RecentTransferRow:
        return RecentTransferRow(
            user_id=transfer.user_id,
            reference_number=transfer.reference_number,
            kind=transfer.kind.value,
            from_account_name=transfer.from_account_name,
            to_label=transfer.to_label,
            amount_minor=to_minor_units(transfer.amount, transfer.currency),
            currency=transfer.currency,
            created_at=transfer.created_at,
        )

    @staticmethod
    def _row_to_transfer(row: RecentTransferRow) -> RecentTransfer:
        return RecentTransfer(
            user_id=row.user_id,
            reference_number=row.reference_number,
            kind=TransferKind(row.kind),
            from_account_name=row.from_account_name,
            to_label=row.to_label,
            amount=from_minor_units(row.amount_minor, row.currency),
            currency=row.currency,
            created_at=_aware(row.created_at),
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def create_accounts(
        self,
        accounts: list[Account],
        opening_transactions: Optional[list[Transaction]] = None,
    ) -> list[Account]:
        try:
            async with self._client.session() as session:
                async with session.begin():
                    for user_id in sorted({a.user_id for a in accounts if a.is_primary}):
                        await session.execute(
                            update(AccountRow)
                            .where(AccountRow.user_id == user_id, AccountRow.is_primary.is_(True))
                            .values(is_primary=False)
                        )
                    rows = {str(a.id): self._account_to_row(a) for a in accounts}
                    session.add_all(list(rows.values()))
                    await session.flush()

                    for transaction in opening_transactions or []:
                        row = rows.get(str(transaction.account_id))
                        if row is None:
                            raise RecordNotFoundError(
                                f"Account not in this batch: {transaction.account_id}"
                            )
                        await self._check_unique(session, transaction)
                        self._insert_transaction(session, transaction)
                        self._apply_posting(row, BalancePosting(
                            account_id=transaction.account_id,
                            delta=transaction.amount,
                            expected_version=row.version,
                        ))
                    await session.flush()
                return [self._row_to_account(rows[str(a.id)]) for a in accounts]
        except IntegrityError as e:
            field = "reference_number" if "reference_number" in str(e.orig) else "id"
            raise DuplicateError(field, f"Duplicate account or opening transaction: {e.orig}")
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create accounts: {e}")

    async def get_account(self, account_id: UUID) -> Optional[Account]:
        try:
            async with self._client.session() as session:
                row = await session.get(AccountRow, str(account_id))
                return self._row_to_account(row) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to get account: {e}")

    async def list_accounts(
        self,
        user_id: str,
        include_inactive: bool = False,
    ) -> list[Account]:
        stmt = select(AccountRow).where(AccountRow.user_id == user_id)
        if not include_inactive:
            stmt = stmt.where(AccountRow.is_active.is_(True))
        stmt = stmt.order_by(AccountRow.is_primary.desc(), AccountRow.created_at.asc())
        try:
            async with self._client.session() as session:
                result = await session.execute(stmt)
                return [self._row_to_account(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list accounts: {e}")

    async def set_primary_account(self, user_id: str, account_id: UUID) -> Account:
        try:
            async with self._client.session() as session:
                async with session.begin():
                    stmt = (
                        select(AccountRow)
                        .where(AccountRow.user_id == user_id)
                        .order_by(AccountRow.id)
                        .with_for_update()
                    )
                    rows = (await session.execute(stmt)).scalars().all()
                    target = next((r for r in rows if r.id == str(account_id)), None)
                    if target is None:
                        raise RecordNotFoundError(f"Account not found: {account_id}")
                    for row in rows:
                        row.is_primary = row.id == target.id
                return self._row_to_account(target)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to set primary account: {e}")

    async def deactivate_account(self, account_id: UUID, expected_version: int) -> Account:
        try:
            async with self._client.session() as session:
                async with session.begin():
                    row = await self._lock_account(session, account_id)
                    if row.version != expected_version:
                        raise ConcurrentModificationError(
                            f"Account {account_id} changed (version {row.version}, expected {expected_version})"
                        )
                    row.is_active = False
                    row.is_primary = False
                    row.version = row.version + 1
                return self._row_to_account(row)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to deactivate account: {e}")

    async def _lock_account(self, session: AsyncSession, account_id: UUID) -> AccountRow:
        stmt = select(AccountRow).where(AccountRow.id == str(account_id)).with_for_update()
        row = (await session.execute(stmt)).scalars().first()
        if row is None:
            raise RecordNotFoundError(f"Account not found: {account_id}")
        return row

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def apply_transaction(
        self,
        transaction: Transaction,
        postings: list[BalancePosting],
    ) -> Transaction:
        try:
            async with self._client.session() as session:
                async with session.begin():
                    await self._check_unique(session, transaction)
                    rows = await self._lock_posted_accounts(session, postings)

                    self._insert_transaction(session, transaction)
                    for posting in postings:
                        self._apply_posting(rows[str(posting.account_id)], posting)
                    await session.flush()
        except IntegrityError as e:
            field = "idempotency_key" if "idempotency" in str(e.orig) else "reference_number"
            raise DuplicateError(field, f"Duplicate transaction: {e.orig}")
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to apply transaction: {e}")
        return transaction

    async def _check_unique(self, session: AsyncSession, transaction: Transaction) -> None:
        stmt = select(TransactionRow.id).where(
            TransactionRow.reference_number == transaction.reference_number
        )
        if (await session.execute(stmt)).first() is not None:
            raise DuplicateError(
                "reference_number",
                f"Reference number already issued: {transaction.reference_number}",
            )
        if transaction.idempotency_key:
            stmt = select(TransactionRow.id).where(
                TransactionRow.user_id == transaction.user_id,
                TransactionRow.idempotency_key == transaction.idempotency_key,
            )
            if (await session.execute(stmt)).first() is not None:
                raise DuplicateError(
                    "idempotency_key",
                    f"Idempotency key already used: {transaction.idempotency_key}",
                )

    async def _lock_posted_accounts(
        self,
        session: AsyncSession,
        postings: list[BalancePosting],
    ) -> dict[str, AccountRow]:
        ids = sorted({str(p.account_id) for p in postings})
        stmt = (
            select(AccountRow)
            .where(AccountRow.id.in_(ids))
            .order_by(AccountRow.id)
            .with_for_update()
        )
        rows = {row.id: row for row in (await session.execute(stmt)).scalars().all()}
        for posting in postings:
            row = rows.get(str(posting.account_id))
            if row is None:
                raise RecordNotFoundError(f"Account not found: {posting.account_id}")
            if row.version != posting.expected_version:
                raise ConcurrentModificationError(
                    f"Account {posting.account_id} changed "
                    f"(version {row.version}, expected {posting.expected_version})"
                )
        return rows

    def _insert_transaction(self, session: AsyncSession, transaction: Transaction) -> None:
        session.add(self._transaction_to_row(transaction))

    def _apply_posting(self, row: AccountRow, posting: BalancePosting) -> None:
        row.balance_minor = row.balance_minor + to_minor_units(posting.delta, row.currency)
        row.version = row.version + 1

    async def get_transaction_by_reference(
        self,
        reference_number: str,
    ) -> Optional[Transaction]:
        stmt = select(TransactionRow).where(TransactionRow.reference_number == reference_number)
        try:
            async with self._client.session() as session:
                row = (await session.execute(stmt)).scalars().first()
                return self._row_to_transaction(row) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to get transaction: {e}")

    async def get_transaction_by_idempotency_key(
        self,
        user_id: str,
        idempotency_key: str,
    ) -> Optional[Transaction]:
        stmt = select(TransactionRow).where(
            TransactionRow.user_id == user_id,
            TransactionRow.idempotency_key == idempotency_key,
        )
        try:
            async with self._client.session() as session:
                row = (await session.execute(stmt)).scalars().first()
                return self._row_to_transaction(row) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to get transaction: {e}")

    async def list_transactions(
        self,
        user_id: str,
        limit: Optional[int] = 50,
        filters: Optional[TransactionFilters] = None,
    ) -> list[Transaction]:
        stmt = select(TransactionRow).where(TransactionRow.user_id == user_id)

        if filters is not None:
            if filters.search:
                needle = f"%{filters.search.lower()}%"
                stmt = stmt.where(or_(
                    func.lower(TransactionRow.description).like(needle),
                    func.lower(TransactionRow.category).like(needle),
                ))
            if filters.category:
                stmt = stmt.where(func.lower(TransactionRow.category) == filters.category.lower())
            if filters.type:
                stmt = stmt.where(TransactionRow.type == filters.type.value)
            if filters.date_from:
                stmt = stmt.where(TransactionRow.transaction_date >= filters.date_from)
            if filters.date_to:
                stmt = stmt.where(TransactionRow.transaction_date <= filters.date_to)

        stmt = stmt.order_by(TransactionRow.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            async with self._client.session() as session:
                result = await session.execute(stmt)
                return [self._row_to_transaction(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list transactions: {e}")

    async def update_transaction_status(
        self,
        reference_number: str,
        expected_status: TransactionStatus,
        new_status: TransactionStatus,
    ) -> Transaction:
        stmt = (
            select(TransactionRow)
            .where(TransactionRow.reference_number == reference_number)
            .with_for_update()
        )
        try:
            async with self._client.session() as session:
                async with session.begin():
                    row = (await session.execute(stmt)).scalars().first()
                    if row is None:
                        raise RecordNotFoundError(f"Transaction not found: {reference_number}")
                    if row.status != expected_status.value:
                        raise ConcurrentModificationError(
                            f"Transaction {reference_number} is {row.status}, "
                            f"expected {expected_status.value}"
                        )
                    row.status = new_status.value
                return self._row_to_transaction(row)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update transaction status: {e}")

    # ------------------------------------------------------------------
    # Recent activity
    # ------------------------------------------------------------------

    async def save_recent_recipient(self, recipient: RecentRecipient) -> RecentRecipient:
        try:
            async with self._client.session() as session:
                async with session.begin():
                    row = await session.get(
                        RecentRecipientRow,
                        (recipient.user_id, recipient.identifier),
                        with_for_update=True,
                    )
                    if row is None:
                        row = self._recipient_to_row(recipient)
                        session.add(row)
                    else:
                        row.display_name = recipient.display_name or row.display_name
                        row.last_amount_minor = to_minor_units(recipient.last_amount, recipient.currency)
                        row.currency = recipient.currency
                        row.last_sent_at = recipient.last_sent_at
                        row.transfer_count = row.transfer_count + 1
                return self._row_to_recipient(row)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to save recent recipient: {e}")

    async def list_recent_recipients(self, user_id: str, limit: int = 5) -> list[RecentRecipient]:
        stmt = (
            select(RecentRecipientRow)
            .where(RecentRecipientRow.user_id == user_id)
            .order_by(RecentRecipientRow.last_sent_at.desc())
            .limit(limit)
        )
        try:
            async with self._client.session() as session:
                result = await session.execute(stmt)
                return [self._row_to_recipient(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list recent recipients: {e}")

    async def add_recent_transfer(self, transfer: RecentTransfer, keep: int = 5) -> RecentTransfer:
        try:
            async with self._client.session() as session:
                async with session.begin():
                    session.add(self._transfer_to_row(transfer))
                    await session.flush()
                    newest = (
                        select(RecentTransferRow.id)
                        .where(RecentTransferRow.user_id == transfer.user_id)
                        .order_by(RecentTransferRow.created_at.desc(), RecentTransferRow.id.desc())
                        .limit(keep)
                    )
                    kept = (await session.execute(newest)).scalars().all()
                    await session.execute(
                        delete(RecentTransferRow).where(
                            RecentTransferRow.user_id == transfer.user_id,
                            RecentTransferRow.id.not_in(kept),
                        )
                    )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to add recent transfer: {e}")
        return transfer

    async def list_recent_transfers(self, user_id: str, limit: int = 5) -> list[RecentTransfer]:
        stmt = (
            select(RecentTransferRow)
            .where(RecentTransferRow.user_id == user_id)
            .order_by(RecentTransferRow.created_at.desc(), RecentTransferRow.id.desc())
            .limit(limit)
        )
        try:
            async with self._client.session() as session:
                result = await session.execute(stmt)
                return [self._row_to_transfer(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list recent transfers: {e}")

    async def replace_recent_activity(
        self,
        user_id: str,
        recipients: list[RecentRecipient],
        transfers: list[RecentTransfer],
    ) -> None:
        try:
            async with self._client.session() as session:
                async with session.begin():
                    await session.execute(
                        delete(RecentRecipientRow).where(RecentRecipientRow.user_id == user_id)
                    )
                    await session.execute(
                        delete(RecentTransferRow).where(RecentTransferRow.user_id == user_id)
                    )
                    session.add_all([self._recipient_to_row(r) for r in recipients])
                    session.add_all([self._transfer_to_row(t) for t in transfers])
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to rebuild recent activity: {e}")

    async def close(self) -> None:
        await self._client.close()


class SqlAuditStorage(AuditStorageInterface):
    """
    Relational implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: SqlLedgerClient):
        self._client = client

    @staticmethod
    def _event_to_row(event: AuditEvent) -> AuditEventRow:
        return AuditEventRow(
            event_id=str(event.event_id),
            timestamp=event.timestamp,
            event_type=event.event_type.value,
            severity=event.severity.value,
            user_id=event.user_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            correlation_id=str(event.correlation_id) if event.correlation_id else None,
            description=event.description,
            details_json=event.details_json() or None,
            error_code=event.error_code,
            error_message=event.error_message,
            is_user_action=event.is_user_action,
        )

    @staticmethod
    def _row_to_event(row: AuditEventRow) -> AuditEvent:
        return AuditEvent(
            event_id=UUID(row.event_id),
            timestamp=_aware(row.timestamp),
            event_type=AuditEventType(row.event_type),
            severity=AuditSeverity(row.severity),
            user_id=row.user_id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            correlation_id=UUID(row.correlation_id) if row.correlation_id else None,
            description=row.description,
            details=json.loads(row.details_json) if row.details_json else {},
            error_code=row.error_code,
            error_message=row.error_message,
            is_user_action=row.is_user_action,
        )

    async def append_event(self, event: AuditEvent) -> bool:
        async with self._client.session() as session:
            async with session.begin():
                session.add(self._event_to_row(event))
        return True

    async def _query(self, stmt) -> list[AuditEvent]:
        try:
            async with self._client.session() as session:
                result = await session.execute(stmt)
                return [self._row_to_event(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to get audit events: {e}")

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        return await self._query(
            select(AuditEventRow)
            .where(AuditEventRow.correlation_id == str(correlation_id))
            .order_by(AuditEventRow.timestamp.asc())
        )

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        return await self._query(
            select(AuditEventRow)
            .where(
                AuditEventRow.entity_type == entity_type,
                AuditEventRow.entity_id == entity_id,
            )
            .order_by(AuditEventRow.timestamp.asc())
        )

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return await self._query(
            select(AuditEventRow).order_by(AuditEventRow.timestamp.desc()).limit(limit)
        )


def create_sql_storages(
    url: Optional[str] = None,
    connect_attempts: Optional[int] = None,
) -> tuple[SqlLedgerClient, SqlLedgerStorage, SqlAuditStorage]:
    """Build a client and both storages sharing it (call client.connect() before use)."""
    client = SqlLedgerClient(url=url, connect_attempts=connect_attempts)
    return client, SqlLedgerStorage(client), SqlAuditStorage(client)
