"""
Reporting Queries

DESIGN DECISION: Reports are computed DETERMINISTICALLY from what the store
returns at the moment of the call. Nothing is cached between writes, so a
summary card always reflects the latest committed balances.

Amounts in different currencies are converted to the reporting currency
with exact decimals and rounded once, at the end.
"""

import calendar
from collections import defaultdict
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from financebank.config import get_settings
from financebank.models.ledger import (
    Account,
    BalanceSnapshot,
    CashFlowSummary,
    CategorySpending,
    RecentRecipient,
    RecentTransfer,
    TransactionFilters,
    TransactionStatus,
    TransactionType,
    TransferKind,
)
from financebank.services.currency import CurrencyConverter
from financebank.services.storage import LedgerStorageInterface


def month_bounds(year: int, month: int) -> tuple[date, date]:
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


class LedgerReports:
    """
    Read-only reports over ledger storage.

    GUARANTEES:
    - Only reports what storage holds right now
    - Only completed transactions count toward totals
    - Transfers between a user's own accounts are not spending
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        converter: Optional[CurrencyConverter] = None,
        reporting_currency: Optional[str] = None,
    ):
        self._storage = storage
        self._converter = converter or CurrencyConverter()
        self._reporting_currency = (
            reporting_currency or get_settings().ledger.reporting_currency
        ).upper()

    @property
    def converter(self) -> CurrencyConverter:
        return self._converter

    @property
    def reporting_currency(self) -> str:
        return self._reporting_currency

    async def balance_snapshot(self, user_id: str) -> BalanceSnapshot:
        """Sum every active account, expressed in the reporting currency."""
        accounts = await self._storage.list_accounts(user_id)

        by_currency: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        for account in accounts:
            by_currency[account.currency] += account.balance

        return BalanceSnapshot(
            user_id=user_id,
            reporting_currency=self._reporting_currency,
            total_balance=self._converter.total_in(dict(by_currency), self._reporting_currency),
            balances_by_currency=dict(by_currency),
            account_count=len(accounts),
        )

    async def monthly_spending_by_category(
        self,
        user_id: str,
        year: int,
        month: int,
    ) -> list[CategorySpending]:
        """
        Expense totals per category for one month, largest first.

        External payments are expenses and count here.
        """
        first, last = month_bounds(year, month)
        expenses = await self._storage.list_transactions(
            user_id,
            limit=None,
            filters=TransactionFilters(
                type=TransactionType.EXPENSE,
                date_from=first,
                date_to=last,
            ),
        )

        totals: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        counts: dict[str, int] = defaultdict(int)
        for txn in expenses:
            if txn.status != TransactionStatus.COMPLETED:
                continue
            totals[txn.category] += self._converter.convert(
                txn.magnitude, txn.currency, self._reporting_currency
            )
            counts[txn.category] += 1

        grand_total = sum(totals.values(), Decimal("0"))
        spending = []
        for category, amount in totals.items():
            share = (
                (amount / grand_total * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
                if grand_total else Decimal("0")
            )
            spending.append(CategorySpending(
                category=category,
                amount=amount,
                transaction_count=counts[category],
                percentage=share,
            ))

        spending.sort(key=lambda s: (-s.amount, s.category))
        return spending

    async def cash_flow_summary(
        self,
        user_id: str,
        year: int,
        month: int,
    ) -> CashFlowSummary:
        """Income versus expenses for one month (internal transfers excluded)."""
        first, last = month_bounds(year, month)
        transactions = await self._storage.list_transactions(
            user_id,
            limit=None,
            filters=TransactionFilters(date_from=first, date_to=last),
        )

        income = Decimal("0")
        expenses = Decimal("0")
        counted = 0
        for txn in transactions:
            if txn.status != TransactionStatus.COMPLETED or txn.type == TransactionType.TRANSFER:
                continue
            converted = self._converter.convert(txn.magnitude, txn.currency, self._reporting_currency)
            if txn.type == TransactionType.INCOME:
                income += converted
            else:
                expenses += converted
            counted += 1

        return CashFlowSummary(
            user_id=user_id,
            year=year,
            month=month,
            currency=self._reporting_currency,
            income=income,
            expenses=expenses,
            transaction_count=counted,
        )

    async def derive_recent_activity(
        self,
        user_id: str,
        accounts: list[Account],
        limit: int,
    ) -> tuple[list[RecentRecipient], list[RecentTransfer]]:
        """
        Rebuild the recent-recipient and recent-transfer summaries from
        transaction history.

        Args:
            user_id: Owner of the history
            accounts: All of the user's accounts (inactive included) for names
            limit: How many transfers to keep

        Returns:
            (recipients, transfers)
        """
        names = {a.id: a.name for a in accounts}
        history = await self._storage.list_transactions(user_id, limit=None)

        recipients: dict[str, RecentRecipient] = {}
        transfers: list[RecentTransfer] = []

        # History is newest first
        for txn in history:
            if txn.status != TransactionStatus.COMPLETED:
                continue

            if txn.type == TransactionType.TRANSFER:
                kind = TransferKind.INTERNAL
                to_label = names.get(txn.to_account_id, str(txn.to_account_id))
            elif txn.type == TransactionType.EXPENSE and txn.counterparty:
                kind = TransferKind.EXTERNAL
                to_label = txn.counterparty
                existing = recipients.get(txn.counterparty)
                if existing is None:
                    recipients[txn.counterparty] = RecentRecipient(
                        user_id=user_id,
                        identifier=txn.counterparty,
                        last_amount=txn.magnitude,
                        currency=txn.currency,
                        last_sent_at=txn.created_at,
                    )
                else:
                    existing.transfer_count += 1
            else:
                continue

            if len(transfers) < limit:
                transfers.append(RecentTransfer(
                    user_id=user_id,
                    reference_number=txn.reference_number,
                    kind=kind,
                    from_account_name=names.get(txn.account_id, str(txn.account_id)),
                    to_label=to_label,
                    amount=txn.magnitude,
                    currency=txn.currency,
                    created_at=txn.created_at,
                ))

        return list(recipients.values()), transfers
