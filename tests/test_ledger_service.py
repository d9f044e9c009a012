"""
Tests for the ledger service flows.

All tests run against the in-memory local store. Async service calls are
driven with asyncio.run so no event-loop plugin is needed.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from financebank import orchestrator
from financebank.audit import AuditLogger
from financebank.models.audit import AuditEventType
from financebank.models.ledger import (
    BalancePosting,
    Transaction,
    TransactionFilters,
    TransactionStatus,
    TransactionType,
)
from financebank.orchestrator import LedgerClock, LedgerService, generate_reference_number
from financebank.services.storage import LocalLedgerStorage, StorageError
from financebank.validation import (
    AccountNotEmptyError,
    CurrencyMismatchError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidDetailsError,
    InvalidRecipientError,
    InvalidStatusTransitionError,
    NotFoundError,
    SameAccountError,
)


USER = "user-1"

run = asyncio.run


@pytest.fixture
def accounts(ledger_storage, make_account):
    """Checking X with 1000 and savings Y with 0, both INR."""
    x = make_account("Checking X", "1000", is_primary=True)
    y = make_account("Savings Y", "0")
    run(ledger_storage.create_accounts([x, y]))
    return x, y


def balance_of(storage, account):
    return run(storage.get_account(account.id)).balance


async def audit_types(audit_storage):
    return [e.event_type for e in await audit_storage.get_recent_events(limit=1000)]


class FailingInsertStorage(LocalLedgerStorage):
    """Local storage whose nth transaction insert fails."""

    def __init__(self, store, fail_on):
        super().__init__(store)
        self.fail_on = fail_on
        self.inserts = 0

    def _insert_transaction(self, transaction):
        self.inserts += 1
        if self.inserts == self.fail_on:
            raise StorageError("disk full")
        super()._insert_transaction(transaction)


class TestRecordIncomeOrExpense:
    """Recording single-account money movement."""

    def test_expense_debits_account(self, service, ledger_storage, accounts):
        """An expense of 250 leaves 750 and one signed transaction."""
        x, _ = accounts

        txn = run(service.record_income_or_expense(
            USER, x.id, "expense", Decimal("250"), "Groceries", "Food & Dining"
        ))

        assert balance_of(ledger_storage, x) == Decimal("750")
        assert txn.amount == Decimal("-250")
        assert txn.type == TransactionType.EXPENSE
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.balance_after == Decimal("750")
        assert txn.reference_number.startswith("TXN_")
        assert len(run(service.list_transactions(USER))) == 1

    def test_income_credits_account(self, service, ledger_storage, accounts):
        x, _ = accounts

        txn = run(service.record_income_or_expense(
            USER, x.id, TransactionType.INCOME, "5000.50", "Salary", "Salary"
        ))

        assert txn.amount == Decimal("5000.50")
        assert balance_of(ledger_storage, x) == Decimal("6000.50")

    def test_expense_beyond_balance_is_rejected(self, service, ledger_storage, accounts):
        x, _ = accounts

        with pytest.raises(InsufficientFundsError):
            run(service.record_income_or_expense(
                USER, x.id, "expense", "1000.01", "Laptop", "Shopping"
            ))

        assert balance_of(ledger_storage, x) == Decimal("1000")
        assert run(service.list_transactions(USER)) == []

    def test_overdraft_limit_extends_floor(self, service, ledger_storage, make_account):
        """An account with an overdraft limit may go below zero, but not past it."""
        card = make_account("Card", "100", overdraft_limit=Decimal("500"))
        run(ledger_storage.create_accounts([card]))

        run(service.record_income_or_expense(USER, card.id, "expense", "600", "Rent", "Utilities"))
        assert balance_of(ledger_storage, card) == Decimal("-500")

        with pytest.raises(InsufficientFundsError):
            run(service.record_income_or_expense(USER, card.id, "expense", "0.01", "Tea", "Food & Dining"))

    @pytest.mark.parametrize("amount", [0, "0", "-5", Decimal("-0.01")])
    def test_non_positive_amount_rejected(self, service, accounts, amount):
        x, _ = accounts
        with pytest.raises(InvalidAmountError):
            run(service.record_income_or_expense(USER, x.id, "income", amount, "Gift", "Salary"))

    def test_float_amount_rejected(self, service, accounts):
        """Floats can't carry an exact amount."""
        x, _ = accounts
        with pytest.raises(InvalidAmountError):
            run(service.record_income_or_expense(USER, x.id, "income", 10.5, "Gift", "Salary"))

    def test_too_many_decimals_rejected(self, service, ledger_storage, accounts):
        """Amounts are never rounded on the way in."""
        x, _ = accounts
        with pytest.raises(InvalidAmountError):
            run(service.record_income_or_expense(USER, x.id, "expense", "10.005", "Tea", "Food & Dining"))
        assert balance_of(ledger_storage, x) == Decimal("1000")

    def test_transfer_type_not_accepted(self, service, accounts):
        x, _ = accounts
        with pytest.raises(InvalidDetailsError):
            run(service.record_income_or_expense(USER, x.id, "transfer", "10", "Move", "Transfer"))

    def test_blank_description_rejected(self, service, accounts):
        x, _ = accounts
        with pytest.raises(InvalidDetailsError):
            run(service.record_income_or_expense(USER, x.id, "income", "10", "   ", "Salary"))

    def test_other_users_account_not_found(self, service, accounts):
        x, _ = accounts
        with pytest.raises(NotFoundError):
            run(service.record_income_or_expense("intruder", x.id, "income", "10", "Gift", "Salary"))

    def test_malformed_account_id_not_found(self, service, accounts):
        with pytest.raises(NotFoundError):
            run(service.record_income_or_expense(USER, "not-a-uuid", "income", "10", "Gift", "Salary"))


class TestInternalTransfer:
    """Transfers between a user's own accounts."""

    def test_transfer_moves_money_atomically(self, service, ledger_storage, accounts):
        """Transfer of 300: X 1000 -> 700, Y 0 -> 300, one transaction."""
        x, y = accounts

        txn = run(service.transfer_internal(USER, x.id, y.id, Decimal("300")))

        assert balance_of(ledger_storage, x) == Decimal("700")
        assert balance_of(ledger_storage, y) == Decimal("300")
        assert txn.type == TransactionType.TRANSFER
        assert txn.amount == Decimal("-300")
        assert txn.account_id == x.id
        assert txn.to_account_id == y.id
        assert txn.category == "Transfer"
        assert txn.description == "Transfer from Checking X to Savings Y"

        history = run(service.list_transactions(USER))
        assert len(history) == 1
        assert history[0].account_name == "Checking X"
        assert history[0].to_account_name == "Savings Y"

    def test_memo_becomes_description(self, service, accounts):
        x, y = accounts
        txn = run(service.transfer_internal(USER, x.id, y.id, "10", memo="Rainy day"))
        assert txn.description == "Rainy day"

    def test_insufficient_funds_changes_nothing(self, service, ledger_storage, make_account):
        """X has 100; a transfer of 500 is refused and nothing is written."""
        x = make_account("Checking X", "100")
        y = make_account("Savings Y", "0")
        run(ledger_storage.create_accounts([x, y]))

        with pytest.raises(InsufficientFundsError) as exc_info:
            run(service.transfer_internal(USER, x.id, y.id, "500"))

        assert exc_info.value.available == Decimal("100")
        assert balance_of(ledger_storage, x) == Decimal("100")
        assert balance_of(ledger_storage, y) == Decimal("0")
        assert run(service.list_transactions(USER)) == []

    def test_same_account_rejected(self, service, ledger_storage, accounts):
        x, _ = accounts

        with pytest.raises(SameAccountError):
            run(service.transfer_internal(USER, x.id, x.id, "50"))

        assert balance_of(ledger_storage, x) == Decimal("1000")

    def test_same_account_rejected_for_string_ids(self, service, accounts):
        x, _ = accounts
        with pytest.raises(SameAccountError):
            run(service.transfer_internal(USER, str(x.id), x.id, "50"))

    def test_currency_mismatch_rejected(self, service, ledger_storage, accounts, make_account):
        x, _ = accounts
        dollars = make_account("USD Wallet", "0", currency="USD")
        run(ledger_storage.create_accounts([dollars]))

        with pytest.raises(CurrencyMismatchError):
            run(service.transfer_internal(USER, x.id, dollars.id, "10"))

    def test_destination_of_other_user_not_found(self, service, ledger_storage, accounts, make_account):
        x, _ = accounts
        foreign = make_account("Not mine", "0", user_id="user-2")
        run(ledger_storage.create_accounts([foreign]))

        with pytest.raises(NotFoundError):
            run(service.transfer_internal(USER, x.id, foreign.id, "10"))
        assert balance_of(ledger_storage, x) == Decimal("1000")

    def test_internal_transfers_conserve_total(self, service, ledger_storage, accounts):
        """Internal transfers never create or destroy money."""
        x, y = accounts

        run(service.transfer_internal(USER, x.id, y.id, "400"))
        run(service.transfer_internal(USER, y.id, x.id, "150.25"))
        run(service.transfer_internal(USER, x.id, y.id, "0.01"))

        total = balance_of(ledger_storage, x) + balance_of(ledger_storage, y)
        assert total == Decimal("1000")
        snapshot = run(service.get_current_balance_snapshot(USER))
        assert snapshot.total_balance == Decimal("1000.00")

    def test_recent_transfer_recorded(self, service, accounts):
        x, y = accounts
        txn = run(service.transfer_internal(USER, x.id, y.id, "25"))

        recent = run(service.list_recent_transfers(USER))
        assert len(recent) == 1
        assert recent[0].reference_number == txn.reference_number
        assert recent[0].from_account_name == "Checking X"
        assert recent[0].to_label == "Savings Y"
        assert recent[0].amount == Decimal("25")


class TestExternalTransfer:
    """Payments to recipients outside the ledger."""

    def test_external_payment_is_an_expense(self, service, ledger_storage, accounts):
        x, _ = accounts

        txn = run(service.transfer_external(
            USER, x.id, "Asha@Example.com", "120", memo="Dinner", recipient_name="Asha Rao"
        ))

        assert txn.type == TransactionType.EXPENSE
        assert txn.amount == Decimal("-120")
        assert txn.category == "Transfer"
        assert txn.counterparty == "asha@example.com"
        assert txn.description == "Transfer to asha@example.com - Dinner"
        assert txn.reference_number.startswith("EXT_")
        assert balance_of(ledger_storage, x) == Decimal("880")

    def test_phone_recipient_accepted(self, service, accounts):
        x, _ = accounts
        txn = run(service.transfer_external(USER, x.id, "+91 98765 43210", "1"))
        assert txn.description == "Transfer to +91 98765 43210"

    def test_zero_amount_rejected(self, service, ledger_storage, accounts):
        x, _ = accounts
        with pytest.raises(InvalidAmountError):
            run(service.transfer_external(USER, x.id, "asha@example.com", "0"))
        assert balance_of(ledger_storage, x) == Decimal("1000")

    @pytest.mark.parametrize("recipient", ["abc", "", "   ", "asha@", "12"])
    def test_malformed_recipient_rejected(self, service, accounts, recipient):
        x, _ = accounts
        with pytest.raises(InvalidRecipientError):
            run(service.transfer_external(USER, x.id, recipient, "10"))

    def test_insufficient_funds(self, service, accounts):
        x, _ = accounts
        with pytest.raises(InsufficientFundsError):
            run(service.transfer_external(USER, x.id, "asha@example.com", "5000"))

    def test_description_too_long_is_rejected(self, service, ledger_storage, accounts):
        """Recipient plus memo must fit the description column as a whole."""
        x, _ = accounts
        recipient = "a" * 240 + "@example.com"

        with pytest.raises(InvalidDetailsError, match="Description must be at most 255"):
            run(service.transfer_external(USER, x.id, recipient, "10", memo="m" * 200))

        assert balance_of(ledger_storage, x) == Decimal("1000")
        assert run(service.list_transactions(USER)) == []

    def test_recent_recipient_counts_repeat_payments(self, service, accounts):
        x, _ = accounts

        run(service.transfer_external(USER, x.id, "asha@example.com", "10", recipient_name="Asha Rao"))
        run(service.transfer_external(USER, x.id, "asha@example.com", "15"))
        run(service.transfer_external(USER, x.id, "ravi@example.com", "5"))

        recipients = run(service.list_recent_recipients(USER))
        assert [r.identifier for r in recipients] == ["ravi@example.com", "asha@example.com"]
        asha = recipients[1]
        assert asha.transfer_count == 2
        assert asha.last_amount == Decimal("15")
        assert asha.display_name == "Asha Rao"
        assert asha.initials == "AR"


class TestIdempotency:
    """Retried requests with the same key."""

    def test_replay_returns_original(self, service, ledger_storage, audit_storage, accounts):
        x, y = accounts

        first = run(service.transfer_internal(USER, x.id, y.id, "100", idempotency_key="req-1"))
        second = run(service.transfer_internal(USER, x.id, y.id, "100", idempotency_key="req-1"))

        assert second.reference_number == first.reference_number
        assert balance_of(ledger_storage, x) == Decimal("900")
        assert len(run(service.list_transactions(USER))) == 1
        assert AuditEventType.TRANSACTION_REPLAYED in run(audit_types(audit_storage))

    def test_replay_succeeds_even_when_funds_are_gone(self, service, ledger_storage, accounts):
        """A retry after success must not fail on the state the first call created."""
        x, _ = accounts

        first = run(service.record_income_or_expense(
            USER, x.id, "expense", "1000", "Rent", "Utilities", idempotency_key="rent-june"
        ))
        again = run(service.record_income_or_expense(
            USER, x.id, "expense", "1000", "Rent", "Utilities", idempotency_key="rent-june"
        ))

        assert again.reference_number == first.reference_number
        assert balance_of(ledger_storage, x) == Decimal("0")

    def test_keys_are_per_user(self, service, ledger_storage, accounts, make_account):
        x, _ = accounts
        theirs = make_account("Theirs", "50", user_id="user-2")
        run(ledger_storage.create_accounts([theirs]))

        mine = run(service.record_income_or_expense(USER, x.id, "income", "1", "a", "Salary", idempotency_key="k"))
        other = run(service.record_income_or_expense("user-2", theirs.id, "income", "1", "a", "Salary", idempotency_key="k"))

        assert mine.reference_number != other.reference_number


class TestConcurrency:
    """Optimistic version checks between validation and apply."""

    def _interfering_storage(self, store, rival_delta, account):
        """Storage that lets a rival writer debit the account just before our first apply."""
        rival = LocalLedgerStorage(store)

        class InterferingStorage(LocalLedgerStorage):
            interfered = False

            async def apply_transaction(self, transaction, postings):
                if not InterferingStorage.interfered:
                    InterferingStorage.interfered = True
                    current = await rival.get_account(account.id)
                    created_at = datetime.now(timezone.utc) - timedelta(seconds=1)
                    await rival.apply_transaction(
                        Transaction(
                            reference_number=generate_reference_number("TXN", created_at),
                            user_id=USER,
                            account_id=account.id,
                            type=TransactionType.EXPENSE,
                            amount=-rival_delta,
                            description="Rival debit",
                            category="Shopping",
                            created_at=created_at,
                        ),
                        [BalancePosting(
                            account_id=account.id,
                            delta=-rival_delta,
                            expected_version=current.version,
                        )],
                    )
                return await super().apply_transaction(transaction, postings)

        return InterferingStorage(store)

    def test_lost_race_is_retried(self, store, settings, accounts):
        x, _ = accounts
        storage = self._interfering_storage(store, Decimal("100"), x)
        service = LedgerService(storage, settings=settings)

        run(service.record_income_or_expense(USER, x.id, "expense", "250", "Shoes", "Shopping"))

        assert run(storage.get_account(x.id)).balance == Decimal("650")

    def test_reference_collision_is_retried(self, service, ledger_storage, accounts, monkeypatch):
        """A reference already issued is replaced and the transfer lands once."""
        x, y = accounts
        taken = run(service.record_income_or_expense(USER, x.id, "income", "5", "Tip", "Salary"))
        references = iter([taken.reference_number, "TXN_1_fresh0001"])
        monkeypatch.setattr(
            orchestrator, "generate_reference_number", lambda prefix, created_at: next(references)
        )

        moved = run(service.transfer_internal(USER, x.id, y.id, "100"))

        assert moved.reference_number == "TXN_1_fresh0001"
        assert balance_of(ledger_storage, x) == Decimal("905")
        assert balance_of(ledger_storage, y) == Decimal("100")
        history = run(service.list_transactions(USER))
        assert [t.reference_number for t in history] == ["TXN_1_fresh0001", taken.reference_number]

    def test_retry_revalidates_funds(self, store, settings, accounts):
        """A rival debit that drains the account makes the retry fail cleanly."""
        x, _ = accounts
        storage = self._interfering_storage(store, Decimal("900"), x)
        service = LedgerService(storage, settings=settings)

        with pytest.raises(InsufficientFundsError):
            run(service.record_income_or_expense(USER, x.id, "expense", "250", "Shoes", "Shopping"))

        assert run(storage.get_account(x.id)).balance == Decimal("100")


class TestListTransactions:
    """History listing, ordering and filters."""

    def test_newest_first(self, service, accounts):
        x, y = accounts
        refs = [
            run(service.record_income_or_expense(USER, x.id, "income", "1", "one", "Salary")).reference_number,
            run(service.transfer_internal(USER, x.id, y.id, "1")).reference_number,
            run(service.record_income_or_expense(USER, x.id, "expense", "1", "three", "Shopping")).reference_number,
        ]

        history = run(service.list_transactions(USER))

        assert [t.reference_number for t in history] == list(reversed(refs))

    def test_limit(self, service, accounts):
        x, _ = accounts
        for i in range(5):
            run(service.record_income_or_expense(USER, x.id, "income", "1", f"n{i}", "Salary"))

        assert len(run(service.list_transactions(USER, limit=3))) == 3

    def test_limit_must_be_positive(self, service):
        with pytest.raises(InvalidDetailsError):
            run(service.list_transactions(USER, limit=0))

    def test_filters(self, service, accounts):
        x, _ = accounts
        run(service.record_income_or_expense(USER, x.id, "income", "100", "June salary", "Salary"))
        run(service.record_income_or_expense(USER, x.id, "expense", "20", "Pizza night", "Food & Dining"))
        run(service.record_income_or_expense(USER, x.id, "expense", "30", "Bus pass", "Transportation"))

        by_search = run(service.list_transactions(USER, filters={"search": "pizza"}))
        by_type = run(service.list_transactions(USER, filters=TransactionFilters(type=TransactionType.EXPENSE)))
        by_category = run(service.list_transactions(USER, filters={"category": "salary"}))

        assert [t.description for t in by_search] == ["Pizza night"]
        assert len(by_type) == 2
        assert [t.description for t in by_category] == ["June salary"]

    def test_invalid_filters_rejected(self, service):
        with pytest.raises(InvalidDetailsError):
            run(service.list_transactions(USER, filters={"date_from": "2024-06-10", "date_to": "2024-06-01"}))

    def test_only_own_transactions(self, service, ledger_storage, accounts, make_account):
        x, _ = accounts
        theirs = make_account("Theirs", "50", user_id="user-2")
        run(ledger_storage.create_accounts([theirs]))
        run(service.record_income_or_expense("user-2", theirs.id, "income", "1", "theirs", "Salary"))

        assert run(service.list_transactions(USER)) == []


class TestTransactionStatus:
    """The PENDING -> terminal state machine."""

    def _pending(self, ledger_storage, account):
        created_at = datetime.now(timezone.utc)
        txn = Transaction(
            reference_number=generate_reference_number("EXT", created_at),
            user_id=USER,
            account_id=account.id,
            type=TransactionType.EXPENSE,
            amount=Decimal("-10"),
            description="Awaiting settlement",
            category="Transfer",
            status=TransactionStatus.PENDING,
            created_at=created_at,
        )
        return run(ledger_storage.apply_transaction(txn, []))

    def test_pending_can_complete(self, service, ledger_storage, accounts):
        x, _ = accounts
        pending = self._pending(ledger_storage, x)

        updated = run(service.update_transaction_status(USER, pending.reference_number, "completed"))

        assert updated.status == TransactionStatus.COMPLETED
        assert run(service.get_transaction(USER, pending.reference_number)).status == TransactionStatus.COMPLETED

    def test_terminal_status_is_final(self, service, accounts):
        x, _ = accounts
        done = run(service.record_income_or_expense(USER, x.id, "income", "1", "n", "Salary"))

        with pytest.raises(InvalidStatusTransitionError):
            run(service.update_transaction_status(USER, done.reference_number, TransactionStatus.FAILED))

    def test_unknown_status(self, service, ledger_storage, accounts):
        x, _ = accounts
        pending = self._pending(ledger_storage, x)
        with pytest.raises(InvalidStatusTransitionError):
            run(service.update_transaction_status(USER, pending.reference_number, "bounced"))

    def test_other_users_transaction_not_found(self, service, ledger_storage, accounts):
        x, _ = accounts
        pending = self._pending(ledger_storage, x)
        with pytest.raises(NotFoundError):
            run(service.get_transaction("user-2", pending.reference_number))


class TestAccounts:
    """Provisioning and account lifecycle."""

    def test_provision_starter_accounts(self, service):
        accounts = run(service.provision_starter_accounts(USER))

        assert [a.name for a in accounts] == ["Primary Checking", "Savings Account", "Investment Account"]
        assert accounts[0].is_primary
        assert [a.balance for a in accounts] == [
            Decimal("1032450.32"), Decimal("3752089.45"), Decimal("6548745.89"),
        ]
        history = run(service.list_transactions(USER))
        assert len(history) == 3
        assert all(t.category == "Opening Balance" for t in history)

        snapshot = run(service.get_current_balance_snapshot(USER))
        assert snapshot.total_balance == Decimal("11333285.66")
        assert snapshot.account_count == 3

    def test_provisioning_is_idempotent(self, service):
        first = run(service.provision_starter_accounts(USER))
        second = run(service.provision_starter_accounts(USER))

        assert [a.id for a in second] == [a.id for a in first]
        assert len(run(service.list_transactions(USER))) == 3

    def test_failed_provisioning_leaves_nothing(self, store, audit_storage, settings):
        """A fault on the second opening balance undoes the whole starter set."""
        storage = FailingInsertStorage(store, fail_on=2)
        service = LedgerService(storage, audit_logger=AuditLogger(audit_storage), settings=settings)

        with pytest.raises(StorageError):
            run(service.provision_starter_accounts(USER))

        assert run(storage.list_accounts(USER, include_inactive=True)) == []
        assert run(storage.list_transactions(USER)) == []
        assert AuditEventType.TRANSACTION_REJECTED in run(audit_types(audit_storage))

        accounts = run(service.provision_starter_accounts(USER))
        assert [a.balance for a in accounts] == [
            Decimal("1032450.32"), Decimal("3752089.45"), Decimal("6548745.89"),
        ]
        assert len(run(storage.list_transactions(USER))) == 3

    def test_failed_open_leaves_no_account(self, store, settings):
        storage = FailingInsertStorage(store, fail_on=1)
        service = LedgerService(storage, settings=settings)

        with pytest.raises(StorageError):
            run(service.open_account(USER, "Wallet", "checking", opening_balance="250"))

        assert run(storage.list_accounts(USER, include_inactive=True)) == []

        run(service.open_account(USER, "Wallet", "checking", opening_balance="250"))
        accounts = run(storage.list_accounts(USER))
        assert [(a.name, a.balance) for a in accounts] == [("Wallet", Decimal("250"))]

    def test_open_account_as_primary(self, service, accounts):
        x, _ = accounts

        wallet = run(service.open_account(USER, "Wallet", "checking", is_primary=True))

        listed = run(service.list_accounts(USER))
        assert listed[0].id == wallet.id
        assert [a.id for a in listed if a.is_primary] == [wallet.id]
        assert not run(service.storage.get_account(x.id)).is_primary

    def test_first_opened_account_is_primary(self, service):
        account = run(service.open_account(USER, "Wallet", "checking", opening_balance="250.50"))

        assert account.is_primary
        assert account.balance == Decimal("250.50")
        assert account.currency == "INR"
        assert len(run(service.list_transactions(USER))) == 1

    def test_open_account_rejects_bad_input(self, service):
        with pytest.raises(InvalidDetailsError):
            run(service.open_account(USER, "Wallet", "piggy-bank"))
        with pytest.raises(InvalidDetailsError):
            run(service.open_account(USER, "Wallet", "checking", currency="XYZ"))
        with pytest.raises(InvalidAmountError):
            run(service.open_account(USER, "Wallet", "checking", opening_balance=12.5))
        with pytest.raises(InvalidAmountError):
            run(service.open_account(USER, "Wallet", "checking", opening_balance="-1"))

    def test_set_primary_account(self, service, accounts):
        _, y = accounts

        run(service.set_primary_account(USER, y.id))

        listed = run(service.list_accounts(USER))
        assert listed[0].id == y.id
        assert [a.is_primary for a in listed] == [True, False]

    def test_deactivate_requires_empty_account(self, service, accounts):
        x, _ = accounts
        with pytest.raises(AccountNotEmptyError):
            run(service.deactivate_account(USER, x.id))

    def test_deactivate_promotes_new_primary(self, service, ledger_storage, accounts):
        x, y = accounts
        run(service.transfer_internal(USER, x.id, y.id, "1000"))

        closed = run(service.deactivate_account(USER, x.id))

        assert not closed.is_active
        listed = run(service.list_accounts(USER))
        assert [a.id for a in listed] == [y.id]
        assert listed[0].is_primary

    def test_inactive_account_cannot_move_money(self, service, accounts):
        x, y = accounts
        run(service.transfer_internal(USER, x.id, y.id, "1000"))
        run(service.deactivate_account(USER, x.id))

        with pytest.raises(NotFoundError):
            run(service.transfer_internal(USER, y.id, x.id, "1"))

    def test_names_survive_deactivation_in_history(self, service, accounts):
        x, y = accounts
        run(service.transfer_internal(USER, x.id, y.id, "1000"))
        run(service.deactivate_account(USER, x.id))

        history = run(service.list_transactions(USER))
        assert history[0].account_name == "Checking X"


class TestRecentActivity:
    """Derived summaries."""

    def test_rebuild_matches_history(self, service, store, accounts):
        x, y = accounts
        run(service.transfer_external(USER, x.id, "asha@example.com", "10"))
        run(service.transfer_internal(USER, x.id, y.id, "20"))
        run(service.transfer_external(USER, x.id, "asha@example.com", "30"))

        store.recent_recipients.clear()
        store.recent_transfers = []

        recipients, transfers = run(service.rebuild_recent_activity(USER))

        assert [r.identifier for r in recipients] == ["asha@example.com"]
        assert recipients[0].transfer_count == 2
        assert recipients[0].last_amount == Decimal("30")
        assert [t.amount for t in transfers] == [Decimal("30"), Decimal("20"), Decimal("10")]
        assert len(run(service.list_recent_transfers(USER))) == 3

    def test_summary_failure_does_not_undo_payment(self, store, audit_storage, settings, accounts):

        class BrokenSummaries(LocalLedgerStorage):
            async def add_recent_transfer(self, transfer, keep=5):
                raise StorageError("summary table offline")

        x, _ = accounts
        storage = BrokenSummaries(store)
        service = LedgerService(storage, audit_logger=AuditLogger(audit_storage), settings=settings)

        run(service.transfer_external(USER, x.id, "asha@example.com", "10"))

        assert run(storage.get_account(x.id)).balance == Decimal("990")
        assert AuditEventType.RECENT_ACTIVITY_FAILED in run(audit_types(audit_storage))


class TestAuditTrail:
    """Every write and every rejection is audited."""

    def test_rejection_is_audited(self, service, audit_storage, accounts):
        x, y = accounts
        with pytest.raises(InsufficientFundsError):
            run(service.transfer_internal(USER, x.id, y.id, "99999"))

        events = run(audit_storage.get_recent_events())
        rejected = [e for e in events if e.event_type == AuditEventType.TRANSACTION_REJECTED]
        assert len(rejected) == 1
        assert rejected[0].error_code == "InsufficientFundsError"
        assert rejected[0].entity_id == "transfer_internal"

    def test_transfer_audit_uses_reference(self, service, audit_storage, accounts):
        x, y = accounts
        txn = run(service.transfer_internal(USER, x.id, y.id, "5"))

        events = run(audit_storage.get_events_by_entity("transaction", txn.reference_number))
        assert [e.event_type for e in events] == [AuditEventType.TRANSFER_COMPLETED]


class TestLedgerClock:
    """Strictly increasing timestamps."""

    def test_same_instant_is_bumped(self):
        frozen = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        clock = LedgerClock(now=lambda: frozen)

        stamps = [clock.tick() for _ in range(3)]

        assert stamps[0] == frozen
        assert stamps[0] < stamps[1] < stamps[2]

    def test_reference_number_format(self):
        created_at = datetime(2024, 6, 1, tzinfo=timezone.utc)
        reference = generate_reference_number("TXN", created_at)

        prefix, millis, suffix = reference.split("_")
        assert prefix == "TXN"
        assert millis == str(int(created_at.timestamp() * 1000))
        assert len(suffix) == 9
        assert suffix.isalnum() and suffix == suffix.lower()


class TestCategories:
    def test_default_categories(self, service):
        names = [c.name for c in service.transaction_categories()]
        assert names == ["Salary", "Food & Dining", "Utilities", "Shopping", "Transportation", "Investment"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
