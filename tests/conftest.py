"""
Shared fixtures: an in-memory ledger with a pinned clock.

Every test gets a fresh SQLite database (StaticPool keeps the single
in-memory connection alive), a FixedClock on 2024-03-20 and a sink
that records what would have been fanned out.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from household_ledger.config import LedgerSettings
from household_ledger.ledger.clock import FixedClock
from household_ledger.ledger.events import LedgerEvent, NotificationSink
from household_ledger.models import AccountCreate, CategoryType, TransactionCreate, TransactionType
from household_ledger.orchestrator import create_ledger_components
from household_ledger.storage import SqlDatabase


class RecordingSink(NotificationSink):
    def __init__(self):
        self.events: list[LedgerEvent] = []

    def publish(self, event: LedgerEvent) -> None:
        self.events.append(event)

    def actions(self, entity_type: str) -> list[str]:
        return [e.action for e in self.events if e.entity_type == entity_type]


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 20, 9, 30))


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def settings():
    return LedgerSettings()


@pytest.fixture
def database():
    db = SqlDatabase("sqlite://")
    yield db
    db.dispose()


@pytest.fixture
def ledger(database, clock, sink, settings):
    return create_ledger_components(
        database=database,
        clock=clock,
        sink=sink,
        settings=settings,
    )


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def checking(ledger, user_id):
    return ledger.accounts.create(
        user_id, AccountCreate(name="Checking", initial_balance=Decimal("1000.00"))
    )


@pytest.fixture
def savings(ledger, user_id, checking):
    return ledger.accounts.create(
        user_id, AccountCreate(name="Savings", initial_balance=Decimal("500.00"))
    )


@pytest.fixture
def groceries(ledger, user_id):
    return ledger.accounts.add_category(user_id, "Groceries", CategoryType.EXPENSE)


@pytest.fixture
def salary(ledger, user_id):
    return ledger.accounts.add_category(user_id, "Salary", CategoryType.INCOME)


@pytest.fixture
def balance_of(ledger, user_id):
    """Current stored balance of an account."""

    def _balance(account) -> Decimal:
        return ledger.accounts.get(user_id, account.id).balance

    return _balance


@pytest.fixture
def make_entry(ledger, user_id, clock):
    """Create a ledger entry with sensible defaults."""

    def _make(account, amount, transaction_type=TransactionType.EXPENSE, **fields):
        data = TransactionCreate(
            account_id=account.id,
            type=transaction_type,
            amount=Decimal(amount),
            description=fields.pop("description", "Entry"),
            date=fields.pop("date", clock.today()),
            **fields,
        )
        return ledger.transactions.create(user_id, data)

    return _make
