"""
Tests for the balance primitive and the unit-of-work contract around it.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from household_ledger.ledger.balance import BalanceLedger, signed_effect
from household_ledger.ledger.errors import NotFoundError
from household_ledger.models import Transaction, TransactionType, TransferRole


def _row(transaction_type, role=None, amount="25.00"):
    return Transaction(
        user_id=uuid4(),
        account_id=uuid4(),
        type=transaction_type,
        transfer_role=role,
        amount=Decimal(amount),
        description="Row",
        date=date(2024, 3, 1),
    )


class TestSignedEffect:
    """The sign each kind of row has on its own account."""

    def test_income_is_positive(self):
        assert signed_effect(_row(TransactionType.INCOME)) == Decimal("25.00")

    def test_expense_is_negative(self):
        assert signed_effect(_row(TransactionType.EXPENSE)) == Decimal("-25.00")

    def test_transfer_source_is_negative(self):
        row = _row(TransactionType.TRANSFER, TransferRole.SOURCE)
        assert signed_effect(row) == Decimal("-25.00")

    def test_transfer_destination_is_positive(self):
        row = _row(TransactionType.TRANSFER, TransferRole.DESTINATION)
        assert signed_effect(row) == Decimal("25.00")


class TestBalanceLedger:
    """apply_delta inside a unit of work."""

    def test_apply_delta_moves_balance(self, ledger, checking, balance_of):
        balance = BalanceLedger()
        new_balance = ledger.database.atomic(
            lambda uow: balance.apply_delta(uow.store, checking.id, Decimal("-12.34"))
        )
        assert new_balance == Decimal("987.66")
        assert balance_of(checking) == Decimal("987.66")

    def test_zero_delta_is_a_no_op(self, ledger, checking, balance_of):
        balance = BalanceLedger()
        result = ledger.database.atomic(
            lambda uow: balance.apply_delta(uow.store, checking.id, Decimal("0"))
        )
        assert result == Decimal("1000.00")
        assert balance_of(checking) == Decimal("1000.00")

    def test_missing_account_raises(self, ledger):
        balance = BalanceLedger()
        with pytest.raises(NotFoundError):
            ledger.database.atomic(
                lambda uow: balance.apply_delta(uow.store, uuid4(), Decimal("5"))
            )

    def test_failure_rolls_back_earlier_deltas(self, ledger, checking, balance_of):
        """A missing account later in the unit undoes the delta already applied."""
        balance = BalanceLedger()

        def work(uow):
            balance.apply_delta(uow.store, checking.id, Decimal("100"))
            balance.apply_delta(uow.store, uuid4(), Decimal("-100"))

        with pytest.raises(NotFoundError):
            ledger.database.atomic(work)
        assert balance_of(checking) == Decimal("1000.00")

    def test_money_stays_exact(self, ledger, checking, balance_of):
        balance = BalanceLedger()
        for _ in range(10):
            ledger.database.atomic(
                lambda uow: balance.apply_delta(uow.store, checking.id, Decimal("0.10"))
            )
        assert balance_of(checking) == Decimal("1001.00")


class TestPostCommitHooks:
    """Hooks run after commit only, and never undo the commit."""

    def test_hooks_skipped_on_rollback(self, ledger, checking):
        calls = []

        def work(uow):
            uow.on_commit(lambda: calls.append("ran"))
            raise NotFoundError("boom")

        with pytest.raises(NotFoundError):
            ledger.database.atomic(work)
        assert calls == []

    def test_hook_failure_keeps_committed_write(self, ledger, checking, balance_of):
        balance = BalanceLedger()

        def failing_hook():
            raise RuntimeError("sink down")

        def work(uow):
            uow.on_commit(failing_hook)
            return balance.apply_delta(uow.store, checking.id, Decimal("50"))

        assert ledger.database.atomic(work) == Decimal("1050.00")
        assert balance_of(checking) == Decimal("1050.00")
