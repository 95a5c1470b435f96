"""
Tests for BalanceAuditor: stored balances against what the entries imply.
"""

from decimal import Decimal

import pytest

from household_ledger.ledger.balance import BalanceLedger
from household_ledger.models import AuditEventType, AuditSeverity, TransactionType
from household_ledger.storage import SqlAuditStorage


def _drift(ledger, account, delta):
    """Move a stored balance without an entry behind it."""
    balance = BalanceLedger()
    ledger.database.atomic(lambda uow: balance.apply_delta(uow.store, account.id, Decimal(delta)))


class TestCheck:
    def test_fresh_accounts_are_consistent(self, ledger, user_id, checking, savings):
        checks = ledger.consistency.check(user_id)
        assert len(checks) == 2
        assert all(c.is_consistent for c in checks)

    def test_consistent_after_mixed_activity(self, ledger, user_id, checking, savings, make_entry):
        make_entry(checking, "120.00")
        make_entry(checking, "40.00", TransactionType.INCOME)
        entry = make_entry(savings, "15.00")
        ledger.transactions.delete(user_id, entry.id)

        checks = {c.account_id: c for c in ledger.consistency.check(user_id)}

        assert checks[checking.id].is_consistent
        assert checks[checking.id].expected_balance == Decimal("920.00")
        assert checks[checking.id].entry_count == 2
        assert checks[savings.id].entry_count == 0

    def test_drift_is_reported(self, ledger, user_id, checking):
        _drift(ledger, checking, "7.50")

        check = ledger.consistency.check(user_id)[0]

        assert not check.is_consistent
        assert check.stored_balance == Decimal("1007.50")
        assert check.expected_balance == Decimal("1000.00")
        assert check.drift == Decimal("7.50")

    def test_check_writes_nothing(self, ledger, user_id, checking, balance_of):
        _drift(ledger, checking, "-3.00")
        ledger.consistency.check(user_id)
        assert balance_of(checking) == Decimal("997.00")


class TestRepair:
    def test_repair_closes_drift(self, ledger, user_id, checking, savings, make_entry, balance_of):
        make_entry(checking, "100.00")
        _drift(ledger, checking, "-25.00")

        before = {c.account_id: c for c in ledger.consistency.repair(user_id)}

        assert before[checking.id].drift == Decimal("-25.00")
        assert balance_of(checking) == Decimal("900.00")
        assert balance_of(savings) == Decimal("500.00")
        assert all(c.is_consistent for c in ledger.consistency.check(user_id))

    def test_repair_is_audited(self, ledger, user_id, checking):
        _drift(ledger, checking, "12.00")

        ledger.consistency.repair(user_id)

        events = SqlAuditStorage(ledger.database).get_events_by_entity("account", checking.id)
        repaired = [e for e in events if e.event_type == AuditEventType.BALANCE_REPAIRED]
        assert len(repaired) == 1
        assert repaired[0].severity == AuditSeverity.WARNING
        assert repaired[0].details == {
            "stored_balance": "1012.00",
            "expected_balance": "1000.00",
        }

    def test_consistent_accounts_left_alone(self, ledger, user_id, checking):
        ledger.consistency.repair(user_id)

        events = SqlAuditStorage(ledger.database).get_events_by_entity("account", checking.id)
        assert not [e for e in events if e.event_type == AuditEventType.BALANCE_REPAIRED]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
