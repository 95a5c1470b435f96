"""
Tests for the recurring scheduler.

The clock is pinned to 2024-03-20, so a definition on day 15 has
already missed this month and one on day 25 has not.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from household_ledger.config import LedgerSettings
from household_ledger.ledger.errors import LedgerValidationError, NotFoundError, StorageError
from household_ledger.ledger.recurring import (
    RecurringScheduler,
    compute_schedule,
    current_period,
    following_occurrence,
    month_bounds,
)
from household_ledger.ledger.transactions import TransactionService
from household_ledger.models import (
    AccountCreate,
    AuditEventType,
    MaterializationStatus,
    RecurringIncomeCreate,
    RecurringKind,
    RecurringPatch,
    RecurringTransactionCreate,
    TransactionType,
)
from household_ledger.orchestrator import create_ledger_components
from household_ledger.storage import SqlAuditStorage, SqlLedgerStore


def _expense(account, day, amount="50.00", **fields):
    return RecurringTransactionCreate(
        account_id=account.id,
        type=TransactionType.EXPENSE,
        amount=Decimal(amount),
        description=fields.pop("description", "Gym membership"),
        day_of_month=day,
        **fields,
    )


def _income(account, day, amount="2000.00", **fields):
    return RecurringIncomeCreate(
        account_id=account.id,
        amount=Decimal(amount),
        description=fields.pop("description", "Salary"),
        day_of_month=day,
        **fields,
    )


@pytest.fixture
def recurring_reads(monkeypatch):
    """Records (recurring_id, for_update) for every definition read."""
    reads = []
    original = SqlLedgerStore.get_recurring

    def recording(self, kind, recurring_id, for_update=False):
        reads.append((recurring_id, for_update))
        return original(self, kind, recurring_id, for_update=for_update)

    monkeypatch.setattr(SqlLedgerStore, "get_recurring", recording)
    return reads


class TestScheduleArithmetic:
    """Pure date rules."""

    def test_missed_day_catches_up(self):
        schedule = compute_schedule(date(2024, 3, 20), 15)
        assert schedule.catch_up_due is True
        assert schedule.current_occurrence == date(2024, 3, 15)
        assert schedule.next_run_date == date(2024, 4, 15)

    def test_upcoming_day_waits(self):
        schedule = compute_schedule(date(2024, 3, 20), 25)
        assert schedule.catch_up_due is False
        assert schedule.next_run_date == date(2024, 3, 25)

    def test_today_is_not_missed(self):
        schedule = compute_schedule(date(2024, 3, 20), 20)
        assert schedule.catch_up_due is False
        assert schedule.next_run_date == date(2024, 3, 20)

    def test_following_occurrence_rolls_year(self):
        assert following_occurrence(date(2024, 12, 5), 28) == date(2025, 1, 28)

    def test_current_period_before_day_uses_previous_month(self):
        assert current_period(date(2024, 1, 10), 15) == date(2023, 12, 15)
        assert current_period(date(2024, 3, 20), 15) == date(2024, 3, 15)

    def test_month_bounds_leap_february(self):
        assert month_bounds(date(2024, 2, 10)) == (date(2024, 2, 1), date(2024, 2, 29))


class TestCreateDefinition:
    """Creation persists first, then runs the catch-up."""

    def test_missed_expense_materializes_today(self, ledger, user_id, checking, balance_of):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 15))

        assert created.definition.next_run_date == date(2024, 4, 15)
        assert created.definition.last_run_date == date(2024, 3, 20)
        assert created.materialization.status == MaterializationStatus.CREATED
        entry = created.materialization.transaction
        assert entry.date == date(2024, 3, 20)
        assert entry.notes == "Automatic recurring expense"
        assert entry.recurring_transaction_id == created.definition.id
        assert balance_of(checking) == Decimal("950.00")

    def test_missed_income_lands_on_its_day(self, ledger, user_id, checking, balance_of):
        created = ledger.recurring.create_income_definition(user_id, _income(checking, 15))

        entry = created.materialization.transaction
        assert entry.date == date(2024, 3, 15)
        assert entry.type == TransactionType.INCOME
        assert entry.recurring_income_id == created.definition.id
        assert balance_of(checking) == Decimal("3000.00")

    def test_upcoming_day_creates_nothing(self, ledger, user_id, checking, balance_of):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 25))
        assert created.materialization is None
        assert created.definition.next_run_date == date(2024, 3, 25)
        assert balance_of(checking) == Decimal("1000.00")

    def test_past_end_date_rejected(self, ledger, user_id, checking):
        with pytest.raises(LedgerValidationError) as exc_info:
            ledger.recurring.create_transaction_definition(
                user_id, _expense(checking, 15, end_date=date(2024, 3, 1))
            )
        assert exc_info.value.issues[0].issue_type == "in_past"
        assert ledger.recurring.list_definitions(RecurringKind.TRANSACTION, user_id) == []

    def test_incompatible_category_rejected(self, ledger, user_id, checking, salary):
        with pytest.raises(LedgerValidationError):
            ledger.recurring.create_transaction_definition(
                user_id, _expense(checking, 25, category_id=salary.id)
            )

    def test_failed_catch_up_keeps_definition(self, ledger, user_id, checking, settings, clock):
        class BrokenTransactions(TransactionService):
            def create_in(self, uow, user_id, data, **kwargs):
                raise StorageError("disk full")

        scheduler = RecurringScheduler(
            ledger.database,
            BrokenTransactions(ledger.database, settings=settings),
            audit=ledger.audit,
            clock=clock,
            settings=settings,
        )
        created = scheduler.create_transaction_definition(user_id, _expense(checking, 15))

        assert created.materialization.status == MaterializationStatus.FAILED
        assert created.materialization.reason == "disk full"
        stored = ledger.recurring.get(RecurringKind.TRANSACTION, user_id, created.definition.id)
        assert stored.last_run_date is None
        events = SqlAuditStorage(ledger.database).get_events_by_entity(
            "recurring_transaction", created.definition.id
        )
        assert AuditEventType.RECURRING_FAILED in [e.event_type for e in events]

    def test_immediate_expense_setting(self, database, clock, sink, user_id):
        ledger = create_ledger_components(
            database=database,
            clock=clock,
            sink=sink,
            settings=LedgerSettings(recurring_expense_immediate=True),
        )
        account = ledger.accounts.create(
            user_id, AccountCreate(name="Checking", initial_balance=Decimal("1000.00"))
        )

        created = ledger.recurring.create_transaction_definition(user_id, _expense(account, 25))
        assert created.materialization.created
        assert created.definition.next_run_date == date(2024, 3, 25)

        # The month is already covered, so the tick only advances.
        clock.set(date(2024, 3, 25))
        report = ledger.recurring.process_due(RecurringKind.TRANSACTION)
        assert report.created == 0
        assert report.skipped == 1
        assert ledger.accounts.get(user_id, account.id).balance == Decimal("950.00")
        stored = ledger.recurring.get(RecurringKind.TRANSACTION, user_id, created.definition.id)
        assert stored.next_run_date == date(2024, 4, 25)


class TestMaterialize:
    def test_second_run_in_same_month_is_skipped(self, ledger, user_id, checking, balance_of):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 15))

        again = ledger.recurring.materialize(RecurringKind.TRANSACTION, created.definition.id)

        assert again.status == MaterializationStatus.SKIPPED
        assert "2024-03" in again.reason
        assert balance_of(checking) == Decimal("950.00")
        assert ledger.transactions.list_transactions(user_id).total == 1

    def test_skip_is_audited(self, ledger, user_id, checking):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 15))

        ledger.recurring.materialize(RecurringKind.TRANSACTION, created.definition.id)

        events = SqlAuditStorage(ledger.database).get_events_by_entity(
            "recurring_transaction", created.definition.id
        )
        skipped = [e for e in events if e.event_type == AuditEventType.RECURRING_SKIPPED]
        assert len(skipped) == 1
        assert skipped[0].details["reason"] == "Already materialized for 2024-03"
        assert skipped[0].details["period_date"] == "2024-03-15"
        assert skipped[0].is_user_action is False

    def test_definition_locked_before_guard(self, ledger, user_id, checking, recurring_reads):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 25))
        recurring_reads.clear()

        ledger.recurring.materialize(RecurringKind.TRANSACTION, created.definition.id)

        assert recurring_reads[0] == (created.definition.id, True)

    def test_locked_read_returns_definition(self, ledger, user_id, checking):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 25))

        locked = ledger.database.atomic(
            lambda uow: uow.store.get_recurring(
                RecurringKind.TRANSACTION, created.definition.id, for_update=True
            )
        )

        assert locked.id == created.definition.id
        assert locked.next_run_date == date(2024, 3, 25)

    def test_inactive_definition_is_skipped(self, ledger, user_id, checking):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 25))
        ledger.recurring.set_active(RecurringKind.TRANSACTION, user_id, created.definition.id, False)

        result = ledger.recurring.materialize(RecurringKind.TRANSACTION, created.definition.id)
        assert result.status == MaterializationStatus.SKIPPED

    def test_other_user_cannot_materialize(self, ledger, user_id, checking):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 25))
        with pytest.raises(NotFoundError):
            ledger.recurring.materialize(
                RecurringKind.TRANSACTION, created.definition.id, user_id=uuid4()
            )


class TestProcessDue:
    """The scheduler tick."""

    def test_due_definition_runs_and_advances(self, ledger, user_id, checking, clock, balance_of):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 25))
        clock.set(date(2024, 3, 25))

        report = ledger.recurring.process_due(RecurringKind.TRANSACTION)

        assert report.processed == 1
        assert report.created == 1
        assert report.results[0].next_run_date == date(2024, 4, 25)
        stored = ledger.recurring.get(RecurringKind.TRANSACTION, user_id, created.definition.id)
        assert stored.next_run_date == date(2024, 4, 25)
        assert stored.last_run_date == date(2024, 3, 25)
        assert balance_of(checking) == Decimal("950.00")

    def test_running_twice_is_safe(self, ledger, user_id, checking, clock, balance_of):
        ledger.recurring.create_transaction_definition(user_id, _expense(checking, 25))
        clock.set(date(2024, 3, 25))

        ledger.recurring.process_due(RecurringKind.TRANSACTION)
        second = ledger.recurring.process_due(RecurringKind.TRANSACTION)

        assert second.processed == 0
        assert balance_of(checking) == Decimal("950.00")

    def test_tick_locks_each_definition(self, ledger, user_id, checking, clock, recurring_reads):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 25))
        clock.set(date(2024, 3, 25))
        recurring_reads.clear()

        ledger.recurring.process_due(RecurringKind.TRANSACTION)

        assert recurring_reads[0] == (created.definition.id, True)

    def test_entry_from_overlapping_run_not_duplicated(self, ledger, user_id, checking, clock, balance_of):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 25))
        clock.set(date(2024, 3, 25))
        ledger.recurring.materialize(RecurringKind.TRANSACTION, created.definition.id)

        report = ledger.recurring.process_due(RecurringKind.TRANSACTION)

        assert report.created == 0
        assert report.skipped == 1
        assert balance_of(checking) == Decimal("950.00")
        assert ledger.transactions.list_transactions(user_id).total == 1
        stored = ledger.recurring.get(RecurringKind.TRANSACTION, user_id, created.definition.id)
        assert stored.next_run_date == date(2024, 4, 25)

    def test_last_occurrence_deactivates(self, ledger, user_id, checking, clock):
        created = ledger.recurring.create_transaction_definition(
            user_id, _expense(checking, 25, end_date=date(2024, 4, 10))
        )
        clock.set(date(2024, 3, 25))

        report = ledger.recurring.process_due(RecurringKind.TRANSACTION)

        assert report.created == 1
        stored = ledger.recurring.get(RecurringKind.TRANSACTION, user_id, created.definition.id)
        assert stored.is_active is False

    def test_past_end_date_deactivates_without_entry(self, ledger, user_id, checking, clock, balance_of):
        created = ledger.recurring.create_transaction_definition(
            user_id, _expense(checking, 25, end_date=date(2024, 3, 28))
        )
        clock.set(date(2024, 4, 1))

        report = ledger.recurring.process_due(RecurringKind.TRANSACTION)

        assert report.deactivated == 1
        assert report.created == 0
        stored = ledger.recurring.get(RecurringKind.TRANSACTION, user_id, created.definition.id)
        assert stored.is_active is False
        assert balance_of(checking) == Decimal("1000.00")

    def test_one_failure_does_not_stop_the_rest(self, ledger, user_id, checking, savings, clock, balance_of):
        ok = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 25))
        broken = ledger.recurring.create_transaction_definition(user_id, _expense(savings, 25))
        ledger.accounts.set_active(user_id, savings.id, False)
        clock.set(date(2024, 3, 25))

        report = ledger.recurring.process_due(RecurringKind.TRANSACTION)

        statuses = {item.recurring_id: item.status for item in report.results}
        assert statuses[ok.definition.id] == "created"
        assert statuses[broken.definition.id] == "error"
        assert report.failed == 1
        stored = ledger.recurring.get(RecurringKind.TRANSACTION, user_id, broken.definition.id)
        assert stored.next_run_date == date(2024, 3, 25)
        assert balance_of(checking) == Decimal("950.00")
        assert balance_of(savings) == Decimal("500.00")

    def test_income_kind_runs_separately(self, ledger, user_id, checking, clock):
        ledger.recurring.create_income_definition(user_id, _income(checking, 25))
        ledger.recurring.create_transaction_definition(user_id, _expense(checking, 25))
        clock.set(date(2024, 3, 25))

        report = ledger.recurring.process_due(RecurringKind.INCOME)

        assert report.processed == 1
        assert report.results[0].status == "created"


class TestUpdateAndDelete:
    def test_day_change_recomputes_next_run(self, ledger, user_id, checking):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 25))
        updated = ledger.recurring.update(
            RecurringKind.TRANSACTION,
            user_id,
            created.definition.id,
            RecurringPatch(day_of_month=10),
        )
        assert updated.next_run_date == date(2024, 4, 10)

    def test_amount_change_leaves_past_entries(self, ledger, user_id, checking, balance_of):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 15))
        ledger.recurring.update(
            RecurringKind.TRANSACTION,
            user_id,
            created.definition.id,
            RecurringPatch(amount=Decimal("80.00")),
        )
        entry = ledger.transactions.get(user_id, created.materialization.transaction.id)
        assert entry.amount == Decimal("50.00")
        assert balance_of(checking) == Decimal("950.00")

    def test_income_type_cannot_change(self, ledger, user_id, checking):
        created = ledger.recurring.create_income_definition(user_id, _income(checking, 25))
        with pytest.raises(LedgerValidationError):
            ledger.recurring.update(
                RecurringKind.INCOME,
                user_id,
                created.definition.id,
                RecurringPatch(type=TransactionType.EXPENSE),
            )

    def test_cascade_delete_reverses_entries(self, ledger, user_id, checking, balance_of):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 15))

        result = ledger.recurring.delete(
            RecurringKind.TRANSACTION, user_id, created.definition.id, delete_transactions=True
        )

        assert result.deleted_transactions == 1
        assert result.reversed_amount == Decimal("50.00")
        assert balance_of(checking) == Decimal("1000.00")
        assert ledger.transactions.list_transactions(user_id).total == 0

    def test_plain_delete_keeps_entries(self, ledger, user_id, checking, balance_of):
        created = ledger.recurring.create_transaction_definition(user_id, _expense(checking, 15))

        result = ledger.recurring.delete(RecurringKind.TRANSACTION, user_id, created.definition.id)

        assert result.deleted_transactions == 0
        assert balance_of(checking) == Decimal("950.00")
        remaining = ledger.transactions.list_transactions(user_id).transactions
        assert remaining[0].recurring_transaction_id == created.definition.id
        with pytest.raises(NotFoundError):
            ledger.recurring.get(RecurringKind.TRANSACTION, user_id, created.definition.id)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
