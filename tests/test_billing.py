"""
Tests for the credit card billing cycle.

The clock is pinned to 2024-03-20, so cards with billing_day=20 are due.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from household_ledger.ledger.billing import NOTIFICATION_TYPE, days_until_billing
from household_ledger.ledger.errors import LedgerValidationError, NotFoundError
from household_ledger.models import (
    AuditEventType,
    BillingStatus,
    CardTransactionStatus,
    CreditCard,
    CreditCardChargeCreate,
    CreditCardChargePatch,
    CreditCardCreate,
    TransactionType,
)
from household_ledger.storage import SqlAuditStorage


@pytest.fixture
def card(ledger, user_id, checking):
    return ledger.billing.create_card(user_id, CreditCardCreate(
        name="Visa",
        last_four_digits="4242",
        billing_day=20,
        linked_account_id=checking.id,
        credit_limit=Decimal("1000.00"),
    ))


@pytest.fixture
def charge(ledger, user_id):
    def _charge(card, amount, **fields):
        return ledger.billing.add_charge(user_id, card.id, CreditCardChargeCreate(
            amount=Decimal(amount),
            description=fields.pop("description", "Purchase"),
            date=fields.pop("date", date(2024, 3, 12)),
            **fields,
        ))

    return _charge


def _notifications(ledger, user_id):
    return ledger.database.atomic(lambda uow: uow.store.list_notifications(user_id))


class TestProcessBilling:
    """The daily settlement batch."""

    def test_pending_charges_settle_into_one_expense(self, ledger, user_id, checking, card, charge, balance_of):
        for amount in ("10.00", "25.50", "4.49"):
            charge(card, amount)

        report = ledger.billing.process_billing()

        assert report.processed == 1
        result = report.results[0]
        assert result.status == BillingStatus.SUCCESS
        assert result.amount == Decimal("39.99")
        assert result.transaction_count == 3
        assert balance_of(checking) == Decimal("960.01")

        settlement = ledger.transactions.get(user_id, result.transaction_id)
        assert settlement.type == TransactionType.EXPENSE
        assert settlement.date == date(2024, 3, 20)
        assert settlement.description == "Credit card charge – Visa ••••4242"

        charges = ledger.billing.list_charges(user_id, card.id)
        assert {c.status for c in charges} == {CardTransactionStatus.BILLED}
        assert {c.bank_transaction_id for c in charges} == {settlement.id}
        assert {c.billed_date for c in charges} == {date(2024, 3, 20)}

    def test_notification_written_with_settlement(self, ledger, user_id, card, charge):
        charge(card, "12.00")
        charge(card, "8.00")

        ledger.billing.process_billing()

        notifications = _notifications(ledger, user_id)
        assert len(notifications) == 1
        assert notifications[0].type == NOTIFICATION_TYPE
        assert notifications[0].title == "Credit Card Charged"
        assert notifications[0].message == "Your Visa card was charged 20.00 for 2 transactions."

    def test_second_run_is_skipped(self, ledger, user_id, checking, card, charge, balance_of):
        charge(card, "10.00")
        ledger.billing.process_billing()

        report = ledger.billing.process_billing()

        assert report.results[0].status == BillingStatus.SKIPPED
        assert balance_of(checking) == Decimal("990.00")
        assert ledger.transactions.list_transactions(user_id).total == 1

    def test_card_without_charges_is_skipped(self, ledger, card):
        report = ledger.billing.process_billing()
        assert report.results[0].status == BillingStatus.SKIPPED
        assert report.results[0].message == "No pending transactions"

    def test_other_billing_days_ignored(self, ledger, user_id, checking, charge):
        later = ledger.billing.create_card(user_id, CreditCardCreate(
            name="Amex",
            last_four_digits="0005",
            billing_day=25,
            linked_account_id=checking.id,
        ))
        charge(later, "10.00")

        report = ledger.billing.process_billing()

        assert report.processed == 0
        assert ledger.billing.list_charges(user_id, later.id)[0].is_pending

    def test_one_bad_card_does_not_block_others(self, ledger, user_id, checking, card, charge, balance_of):
        orphan = CreditCard(
            user_id=user_id,
            name="Orphan",
            last_four_digits="0000",
            billing_day=20,
            linked_account_id=uuid4(),
        )
        ledger.database.atomic(lambda uow: uow.store.add_card(orphan))
        charge(orphan, "99.00")
        charge(card, "10.00")

        report = ledger.billing.process_billing()

        statuses = {r.card_id: r.status for r in report.results}
        assert statuses[orphan.id] == BillingStatus.ERROR
        assert statuses[card.id] == BillingStatus.SUCCESS
        assert balance_of(checking) == Decimal("990.00")
        assert ledger.billing.list_charges(user_id, orphan.id)[0].is_pending

    def test_billing_is_audited_with_correlation(self, ledger, card, charge):
        charge(card, "10.00")
        ledger.billing.process_billing()

        events = SqlAuditStorage(ledger.database).get_events_by_entity("credit_card", card.id)
        billed = [e for e in events if e.event_type == AuditEventType.CARD_BILLED]
        assert len(billed) == 1
        assert billed[0].correlation_id is not None
        assert billed[0].details["total_amount"] == "10.00"

    def test_fan_out_event_published(self, ledger, card, charge, sink):
        charge(card, "10.00")
        ledger.billing.process_billing()
        assert "billed" in sink.actions("credit_card")


class TestPreview:
    def test_preview_writes_nothing(self, ledger, user_id, checking, card, charge, balance_of):
        charge(card, "10.00")
        charge(card, "5.00")

        preview = ledger.billing.preview()

        assert preview.billing_day == 20
        assert preview.cards_count == 1
        row = preview.preview[0]
        assert row.pending_amount == Decimal("15.00")
        assert row.pending_count == 2
        assert row.linked_account_name == "Checking"
        assert balance_of(checking) == Decimal("1000.00")
        assert all(c.is_pending for c in ledger.billing.list_charges(user_id, card.id))


class TestCharges:
    """Pending charges are editable; billed ones are not."""

    def test_charge_does_not_move_balance(self, ledger, checking, card, charge, balance_of):
        charge(card, "75.00")
        assert balance_of(checking) == Decimal("1000.00")

    def test_pending_charge_can_be_edited(self, ledger, user_id, card, charge):
        pending = charge(card, "10.00")
        updated = ledger.billing.update_charge(
            user_id, card.id, pending.id, CreditCardChargePatch(amount=Decimal("12.00"))
        )
        assert updated.amount == Decimal("12.00")

    def test_billed_charge_is_immutable(self, ledger, user_id, card, charge):
        billed = charge(card, "10.00")
        ledger.billing.process_billing()

        with pytest.raises(LedgerValidationError, match="Cannot edit a billed transaction"):
            ledger.billing.update_charge(
                user_id, card.id, billed.id, CreditCardChargePatch(amount=Decimal("1.00"))
            )
        with pytest.raises(LedgerValidationError, match="Cannot delete a billed transaction"):
            ledger.billing.delete_charge(user_id, card.id, billed.id)

    def test_pending_charge_can_be_deleted(self, ledger, user_id, card, charge):
        pending = charge(card, "10.00")
        ledger.billing.delete_charge(user_id, card.id, pending.id)
        assert ledger.billing.list_charges(user_id, card.id) == []

    def test_income_category_rejected(self, ledger, card, charge, salary):
        with pytest.raises(LedgerValidationError):
            charge(card, "10.00", category_id=salary.id)

    def test_charges_filtered_by_status(self, ledger, user_id, card, charge):
        charge(card, "10.00")
        ledger.billing.process_billing()
        charge(card, "3.00")

        pending = ledger.billing.list_charges(user_id, card.id, status=CardTransactionStatus.PENDING)
        assert [c.amount for c in pending] == [Decimal("3.00")]

    def test_other_users_card_not_found(self, ledger, card, charge):
        with pytest.raises(NotFoundError):
            ledger.billing.list_charges(uuid4(), card.id)


class TestCards:
    def test_summary(self, ledger, user_id, card, charge):
        charge(card, "200.00")
        charge(card, "55.00")

        summary = ledger.billing.get_card_summary(user_id, card.id)

        assert summary.pending_amount == Decimal("255.00")
        assert summary.pending_count == 2
        assert summary.limit_used_percent == 26
        assert summary.days_until_billing == 31
        assert summary.linked_account_name == "Checking"

    def test_card_needs_active_linked_account(self, ledger, user_id, checking):
        ledger.accounts.set_active(user_id, checking.id, False)
        with pytest.raises(LedgerValidationError):
            ledger.billing.create_card(user_id, CreditCardCreate(
                name="Visa",
                last_four_digits="4242",
                billing_day=20,
                linked_account_id=checking.id,
            ))

    def test_deactivation_refused_with_pending(self, ledger, user_id, card, charge):
        charge(card, "10.00")
        with pytest.raises(LedgerValidationError) as exc_info:
            ledger.billing.deactivate_card(user_id, card.id)
        assert exc_info.value.issues[0].issue_type == "has_pending"

    def test_forced_deactivation_stops_billing(self, ledger, user_id, card, charge):
        charge(card, "10.00")
        deactivated = ledger.billing.deactivate_card(user_id, card.id, force=True)

        assert deactivated.is_active is False
        assert ledger.billing.process_billing().processed == 0
        with pytest.raises(LedgerValidationError):
            charge(card, "1.00")

    @pytest.mark.parametrize(
        "today, billing_day, expected",
        [
            (date(2024, 3, 20), 25, 5),
            (date(2024, 3, 20), 20, 31),
            (date(2024, 12, 28), 5, 8),
        ],
    )
    def test_days_until_billing(self, today, billing_day, expected):
        assert days_until_billing(today, billing_day) == expected


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
