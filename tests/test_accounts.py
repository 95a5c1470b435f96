"""
Tests for AccountService.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from household_ledger.ledger.errors import NotFoundError
from household_ledger.models import AccountCreate, AccountType, AuditEventType, CategoryType
from household_ledger.storage import SqlAuditStorage


class TestAccounts:
    def test_initial_balance_is_opening_balance(self, ledger, user_id):
        account = ledger.accounts.create(
            user_id,
            AccountCreate(name="Wallet", account_type=AccountType.CASH, initial_balance=Decimal("42.10")),
        )

        assert account.balance == Decimal("42.10")
        assert account.initial_balance == Decimal("42.10")
        assert account.currency == ledger.settings.default_currency

    def test_creation_is_audited(self, ledger, checking):
        events = SqlAuditStorage(ledger.database).get_events_by_entity("account", checking.id)
        assert [e.event_type for e in events] == [AuditEventType.ACCOUNT_CREATED]

    def test_other_users_account_not_found(self, ledger, checking):
        with pytest.raises(NotFoundError):
            ledger.accounts.get(uuid4(), checking.id)

    def test_deactivation_keeps_balance(self, ledger, user_id, checking, savings):
        deactivated = ledger.accounts.set_active(user_id, savings.id, False)

        assert deactivated.is_active is False
        assert deactivated.balance == Decimal("500.00")
        assert [a.id for a in ledger.accounts.list_accounts(user_id, active_only=True)] == [checking.id]
        assert len(ledger.accounts.list_accounts(user_id)) == 2


class TestCategories:
    def test_shared_defaults_visible_to_everyone(self, ledger, user_id, groceries):
        shared = ledger.accounts.add_category(None, "Utilities", CategoryType.EXPENSE)
        ledger.accounts.add_category(uuid4(), "Private", CategoryType.BOTH)

        names = [c.name for c in ledger.accounts.list_categories(user_id)]

        assert names == ["Groceries", "Utilities"]
        assert shared.user_id is None


class TestApiTokens:
    def test_tokens_are_unique(self, ledger, user_id):
        first = ledger.accounts.issue_api_token(user_id, name="phone")
        second = ledger.accounts.issue_api_token(user_id, name="tablet")

        assert first.token != second.token
        assert first.is_active


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
