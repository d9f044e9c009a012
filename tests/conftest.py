"""
Shared fixtures.

Every test gets a fresh in-memory local store, so tests never touch a
database or the filesystem unless they ask for tmp_path themselves.
"""

from decimal import Decimal

import pytest

from financebank.audit import AuditLogger
from financebank.config import LedgerSettings
from financebank.models.ledger import Account, AccountKind
from financebank.orchestrator import LedgerService
from financebank.services.storage import LocalAuditStorage, LocalLedgerStorage, LocalStore


USER_ID = "user-1"


def _build_account(
    name: str,
    balance: str = "0",
    currency: str = "INR",
    kind: AccountKind = AccountKind.CHECKING,
    user_id: str = USER_ID,
    **extra,
) -> Account:
    return Account(
        user_id=user_id,
        name=name,
        kind=kind,
        currency=currency,
        balance=Decimal(balance),
        **extra,
    )


@pytest.fixture
def make_account():
    """Factory for accounts with a given starting balance."""
    return _build_account


@pytest.fixture
def store():
    return LocalStore()


@pytest.fixture
def ledger_storage(store):
    return LocalLedgerStorage(store)


@pytest.fixture
def audit_storage(store):
    return LocalAuditStorage(store)


@pytest.fixture
def settings():
    return LedgerSettings()


@pytest.fixture
def service(ledger_storage, audit_storage, settings):
    return LedgerService(
        ledger_storage,
        audit_logger=AuditLogger(audit_storage),
        settings=settings,
    )
