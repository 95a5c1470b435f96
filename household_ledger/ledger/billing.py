"""
Credit Card Billing Cycle

Daily batch that folds each due card's pending charges into one
settlement expense on the card's linked account.

FLOW (per card, one atomic unit each):
1. Fetch the card's pending charges
2. None pending -> result "skipped" (not an error)
3. Sum them
4. Create one expense entry on the linked account, dated today
5. Apply one aggregate balance delta (through the transaction store)
6. Move every pending charge to billed, stamped with the entry id
7. Store a notification for the user

Idempotency is structural: step 1 only sees pending charges, so a
second run on the same day finds nothing left to bill.

A failure on one card rolls back that card's unit only; it is reported
as an "error" result and the remaining cards are still processed.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from household_ledger.audit.logger import AuditLogger, create_correlation_id
from household_ledger.ledger.clock import Clock, SystemClock
from household_ledger.ledger.errors import LedgerError, LedgerValidationError, NotFoundError, StorageError
from household_ledger.ledger.events import (
    LedgerEvent,
    LoggingNotificationSink,
    NotificationSink,
    publish_after_commit,
)
from household_ledger.ledger.recurring import following_occurrence
from household_ledger.ledger.transactions import TransactionService
from household_ledger.models.audit import AuditEventBuilder
from household_ledger.models.billing import (
    BillingPreview,
    BillingRunReport,
    BillingStatus,
    CardBillingPreview,
    CardBillingResult,
    CardTransactionStatus,
    CreditCard,
    CreditCardChargeCreate,
    CreditCardChargePatch,
    CreditCardCreate,
    CreditCardSummary,
    CreditCardTransaction,
)
from household_ledger.models.ledger import Notification, TransactionCreate, TransactionType
from household_ledger.storage.interface import LedgerDatabase, LedgerStore, UnitOfWork
from household_ledger.validation.validator import LedgerValidator

logger = structlog.get_logger(__name__)

NOTIFICATION_TYPE = "credit_card_billed"


def _total(charges: list[CreditCardTransaction]) -> Decimal:
    return sum((charge.amount for charge in charges), Decimal("0"))


class CreditCardBillingCycle:
    """Card settlement batch plus the pending-charge bookkeeping around it."""

    def __init__(
        self,
        database: LedgerDatabase,
        transactions: TransactionService,
        validator: Optional[LedgerValidator] = None,
        audit: Optional[AuditLogger] = None,
        sink: Optional[NotificationSink] = None,
        clock: Optional[Clock] = None,
    ):
        self._database = database
        self._transactions = transactions
        self._validator = validator or LedgerValidator()
        self._audit = audit or AuditLogger()
        self._sink = sink or LoggingNotificationSink()
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def process_billing(self) -> BillingRunReport:
        """Settle every active card whose billing day is today."""
        now = self._clock.now()
        today = now.date()
        correlation_id = create_correlation_id()

        cards = self._database.atomic(lambda uow: uow.store.list_cards_due(today.day))
        logger.info(
            "billing_run_started",
            billing_day=today.day,
            cards=len(cards),
            correlation_id=str(correlation_id),
        )

        results = []
        for card in cards:
            try:
                result = self._database.atomic(
                    lambda uow, c=card: self._settle_card(uow, c, today, correlation_id)
                )
            except (LedgerError, StorageError) as e:
                logger.error(
                    "card_billing_failed",
                    card_id=str(card.id),
                    error=str(e),
                    correlation_id=str(correlation_id),
                )
                self._audit.log(AuditEventBuilder.card_billing_failed(
                    card_id=card.id,
                    user_id=card.user_id,
                    error_message=str(e),
                    correlation_id=correlation_id,
                ))
                result = CardBillingResult(
                    card_id=card.id,
                    card_name=card.name,
                    status=BillingStatus.ERROR,
                    error=str(e),
                )
            results.append(result)

        logger.info(
            "billing_run_finished",
            processed=len(cards),
            settled=sum(1 for r in results if r.status == BillingStatus.SUCCESS),
            failed=sum(1 for r in results if r.status == BillingStatus.ERROR),
            correlation_id=str(correlation_id),
        )
        return BillingRunReport(processed=len(cards), results=results, processed_at=now)

    def _settle_card(
        self,
        uow: UnitOfWork,
        card: CreditCard,
        today: date,
        correlation_id: UUID,
    ) -> CardBillingResult:
        store = uow.store
        pending = store.list_card_charges(card.id, status=CardTransactionStatus.PENDING)
        if not pending:
            return CardBillingResult(
                card_id=card.id,
                card_name=card.name,
                status=BillingStatus.SKIPPED,
                message="No pending transactions",
            )

        total = _total(pending)
        if store.get_account(card.linked_account_id) is None:
            raise NotFoundError(f"Linked account {card.linked_account_id} not found")

        settlement = self._transactions.create_in(
            uow,
            card.user_id,
            TransactionCreate(
                account_id=card.linked_account_id,
                type=TransactionType.EXPENSE,
                amount=total,
                description=card.settlement_description,
                date=today,
                notes=f"Automatic charge for {len(pending)} credit card transactions",
            ),
            source="credit_card_billing",
        )

        billed = store.mark_charges_billed(
            [charge.id for charge in pending], today, settlement.id
        )
        if billed != len(pending):
            # Another run billed some of these rows after we read them.
            raise StorageError(
                f"Expected to bill {len(pending)} charges on card {card.id}, billed {billed}"
            )

        store.add_notification(Notification(
            user_id=card.user_id,
            type=NOTIFICATION_TYPE,
            title="Credit Card Charged",
            message=(
                f"Your {card.name} card was charged {total:.2f} "
                f"for {len(pending)} transactions."
            ),
            details={
                "card_id": str(card.id),
                "card_name": card.name,
                "amount": str(total),
                "transaction_count": len(pending),
                "bank_transaction_id": str(settlement.id),
            },
        ))

        self._audit.log_after_commit(uow, AuditEventBuilder.card_billed(
            card_id=card.id,
            user_id=card.user_id,
            total=total,
            charge_count=len(pending),
            transaction_id=settlement.id,
            correlation_id=correlation_id,
        ))
        publish_after_commit(uow, self._sink, LedgerEvent(
            entity_type="credit_card",
            action="billed",
            entity_id=card.id,
            user_id=card.user_id,
            payload={
                "amount": str(total),
                "transaction_count": len(pending),
                "bank_transaction_id": str(settlement.id),
            },
        ))

        return CardBillingResult(
            card_id=card.id,
            card_name=card.name,
            status=BillingStatus.SUCCESS,
            amount=total,
            transaction_count=len(pending),
            transaction_id=settlement.id,
        )

    def preview(self) -> BillingPreview:
        """What `process_billing` would settle today. Writes nothing."""
        today = self._clock.today()

        def work(uow: UnitOfWork) -> BillingPreview:
            store = uow.store
            cards = store.list_cards_due(today.day)
            rows = []
            for card in cards:
                pending = store.list_card_charges(card.id, status=CardTransactionStatus.PENDING)
                linked = store.get_account(card.linked_account_id)
                rows.append(CardBillingPreview(
                    card_id=card.id,
                    card_name=card.name,
                    last_four_digits=card.last_four_digits,
                    linked_account_name=linked.name if linked else None,
                    pending_amount=_total(pending),
                    pending_count=len(pending),
                ))
            return BillingPreview(billing_day=today.day, cards_count=len(cards), preview=rows)

        return self._database.atomic(work)

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------

    def create_card(self, user_id: UUID, data: CreditCardCreate) -> CreditCard:
        card = CreditCard(
            user_id=user_id,
            name=data.name,
            last_four_digits=data.last_four_digits,
            billing_day=data.billing_day,
            linked_account_id=data.linked_account_id,
            credit_limit=data.credit_limit,
        )

        def work(uow: UnitOfWork) -> CreditCard:
            account = self._validator.owned_account(
                uow.store, user_id, data.linked_account_id, label="Linked account"
            )
            self._validator.raise_for(
                self._validator.check_active(account, field="linked_account_id")
            )
            uow.store.add_card(card)
            self._publish(uow, "created", card)
            return card

        return self._database.atomic(work)

    def get_card_summary(self, user_id: UUID, card_id: UUID) -> CreditCardSummary:
        today = self._clock.today()

        def work(uow: UnitOfWork) -> CreditCardSummary:
            card = self._owned_card(uow.store, user_id, card_id)
            pending = uow.store.list_card_charges(card.id, status=CardTransactionStatus.PENDING)
            linked = uow.store.get_account(card.linked_account_id)
            return CreditCardSummary(
                card=card,
                linked_account_name=linked.name if linked else None,
                pending_amount=_total(pending),
                pending_count=len(pending),
                days_until_billing=days_until_billing(today, card.billing_day),
            )

        return self._database.atomic(work)

    def deactivate_card(self, user_id: UUID, card_id: UUID, force: bool = False) -> CreditCard:
        """
        Stop billing a card.

        Refused while charges are still pending unless `force` is set;
        forced pending charges stay pending and are never settled.
        """

        def work(uow: UnitOfWork) -> CreditCard:
            card = self._owned_card(uow.store, user_id, card_id)
            pending = uow.store.list_card_charges(card.id, status=CardTransactionStatus.PENDING)
            if pending and not force:
                raise LedgerValidationError.single(
                    field="credit_card_id",
                    issue_type="has_pending",
                    message=f"Card has {len(pending)} pending transactions",
                    suggested_fix="Wait for the billing day or pass force=true",
                )
            deactivated = card.model_copy(update={"is_active": False})
            uow.store.save_card(deactivated)
            self._publish(uow, "deactivated", deactivated)
            return deactivated

        return self._database.atomic(work)

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    def list_charges(
        self,
        user_id: UUID,
        card_id: UUID,
        status: Optional[CardTransactionStatus] = None,
    ) -> list[CreditCardTransaction]:
        def work(uow: UnitOfWork) -> list[CreditCardTransaction]:
            self._owned_card(uow.store, user_id, card_id)
            return uow.store.list_card_charges(card_id, status=status)

        return self._database.atomic(work)

    def add_charge(
        self,
        user_id: UUID,
        card_id: UUID,
        data: CreditCardChargeCreate,
    ) -> CreditCardTransaction:
        """Record a charge. It stays pending and touches no balance."""

        def work(uow: UnitOfWork) -> CreditCardTransaction:
            card = self._owned_card(uow.store, user_id, card_id)
            if not card.is_active:
                raise LedgerValidationError.single(
                    field="credit_card_id",
                    issue_type="inactive",
                    message=f"Card '{card.name}' is inactive",
                )
            issues = self._validator.check_amount(data.amount)
            if data.category_id is not None:
                category = self._validator.owned_category(uow.store, user_id, data.category_id)
                issues += self._validator.check_category_type(category, TransactionType.EXPENSE)
            self._validator.raise_for(issues)

            charge = CreditCardTransaction(
                user_id=user_id,
                credit_card_id=card.id,
                amount=data.amount,
                description=data.description,
                date=data.date,
                category_id=data.category_id,
                notes=data.notes,
            )
            uow.store.add_card_charge(charge)
            self._publish(uow, "charge_added", card)
            return charge

        return self._database.atomic(work)

    def update_charge(
        self,
        user_id: UUID,
        card_id: UUID,
        charge_id: UUID,
        patch: CreditCardChargePatch,
    ) -> CreditCardTransaction:
        changes = patch.changes()

        def work(uow: UnitOfWork) -> CreditCardTransaction:
            card = self._owned_card(uow.store, user_id, card_id)
            charge = self._pending_charge(uow.store, card, charge_id, verb="edit")
            issues = self._validator.check_amount(changes["amount"]) if "amount" in changes else []
            if changes.get("category_id") is not None:
                category = self._validator.owned_category(uow.store, user_id, changes["category_id"])
                issues += self._validator.check_category_type(category, TransactionType.EXPENSE)
            self._validator.raise_for(issues)

            updated = charge.model_copy(update=changes)
            uow.store.save_card_charge(updated)
            self._publish(uow, "charge_updated", card)
            return updated

        return self._database.atomic(work)

    def delete_charge(self, user_id: UUID, card_id: UUID, charge_id: UUID) -> None:
        def work(uow: UnitOfWork) -> None:
            card = self._owned_card(uow.store, user_id, card_id)
            self._pending_charge(uow.store, card, charge_id, verb="delete")
            uow.store.delete_card_charge(charge_id)
            self._publish(uow, "charge_deleted", card)

        self._database.atomic(work)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _owned_card(self, store: LedgerStore, user_id: UUID, card_id: UUID) -> CreditCard:
        card = store.get_card(card_id)
        if card is None or card.user_id != user_id:
            raise NotFoundError("Credit card not found")
        return card

    def _pending_charge(
        self,
        store: LedgerStore,
        card: CreditCard,
        charge_id: UUID,
        verb: str,
    ) -> CreditCardTransaction:
        charge = store.get_card_charge(charge_id)
        if charge is None or charge.credit_card_id != card.id:
            raise NotFoundError("Transaction not found")
        if not charge.is_pending:
            raise LedgerValidationError.single(
                field="status",
                issue_type="immutable",
                message=f"Cannot {verb} a billed transaction",
            )
        return charge

    def _publish(self, uow: UnitOfWork, action: str, card: CreditCard) -> None:
        publish_after_commit(uow, self._sink, LedgerEvent(
            entity_type="credit_card",
            action=action,
            entity_id=card.id,
            user_id=card.user_id,
        ))


def days_until_billing(today: date, billing_day: int) -> int:
    """Days until the next billing day; a card billing today is a month away."""
    if today.day < billing_day:
        return billing_day - today.day
    return (following_occurrence(today, billing_day) - today).days
