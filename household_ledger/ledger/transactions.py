"""
Transaction Store

CRUD over ledger entries, each write paired with Balance Ledger deltas
inside one unit of work.

DESIGN DECISION: Edits are reverse-then-reapply. The stored effect is
reversed on the account it was applied to, the patch is merged, and the
new effect is applied to whichever account the merged entry names. The
difference between old and new amount is never applied on its own,
because the account may have changed too.

Transfers are two rows (source and destination) linked to each other.
They are always resolved, reversed, patched and deleted as a pair.
"""

from typing import Optional
from uuid import UUID

import structlog

from household_ledger.audit.logger import AuditLogger
from household_ledger.config import LedgerSettings, get_settings
from household_ledger.ledger.balance import BalanceLedger, signed_effect
from household_ledger.ledger.errors import (
    DuplicateError,
    IntegrityGapError,
    LedgerValidationError,
    NotFoundError,
)
from household_ledger.ledger.events import (
    LedgerEvent,
    LoggingNotificationSink,
    NotificationSink,
    publish_after_commit,
)
from household_ledger.models.audit import AuditEventBuilder
from household_ledger.models.ledger import (
    Transaction,
    TransactionCreate,
    TransactionPage,
    TransactionPatch,
    TransactionType,
    TransferPair,
    TransferRole,
    ValidationIssue,
    utcnow,
)
from household_ledger.storage.interface import LedgerDatabase, LedgerStore, UnitOfWork
from household_ledger.validation.validator import LedgerValidator

logger = structlog.get_logger(__name__)

# Fields a transfer edit copies onto the sibling row.
_SYMMETRIC_FIELDS = ("amount", "date", "description")


class TransactionService:
    """Create, update and delete ledger entries with their balance effects."""

    def __init__(
        self,
        database: LedgerDatabase,
        balance: Optional[BalanceLedger] = None,
        validator: Optional[LedgerValidator] = None,
        audit: Optional[AuditLogger] = None,
        sink: Optional[NotificationSink] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._database = database
        self._balance = balance or BalanceLedger()
        self._settings = settings or get_settings().ledger
        self._validator = validator or LedgerValidator(self._settings)
        self._audit = audit or AuditLogger()
        self._sink = sink or LoggingNotificationSink()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, user_id: UUID, transaction_id: UUID) -> Transaction:
        return self._database.atomic(
            lambda uow: self._owned(uow.store, user_id, transaction_id)
        )

    def list_transactions(
        self,
        user_id: UUID,
        account_id: Optional[UUID] = None,
        transaction_type: Optional[TransactionType] = None,
        category_id: Optional[UUID] = None,
        date_from=None,
        date_to=None,
        page: int = 1,
        limit: int = 50,
    ) -> TransactionPage:
        page = max(page, 1)
        limit = min(max(limit, 1), 500)

        def work(uow: UnitOfWork) -> TransactionPage:
            rows, total = uow.store.list_transactions(
                user_id,
                account_id=account_id,
                transaction_type=transaction_type,
                category_id=category_id,
                date_from=date_from,
                date_to=date_to,
                limit=limit,
                offset=(page - 1) * limit,
            )
            return TransactionPage(transactions=rows, page=page, limit=limit, total=total)

        return self._database.atomic(work)

    def resolve_pair(self, store: LedgerStore, transaction: Transaction) -> TransferPair:
        """Load both sides of a transfer. A missing side is left as None."""
        sibling = None
        if transaction.transfer_to_transaction_id is not None:
            sibling = store.get_transaction(transaction.transfer_to_transaction_id)
            if sibling is not None and not sibling.is_transfer:
                sibling = None

        counterpart_account_id = transaction.transfer_to_account_id
        if transaction.transfer_role == TransferRole.DESTINATION:
            return TransferPair(
                source=sibling,
                destination=transaction,
                source_account_id=counterpart_account_id,
                destination_account_id=transaction.account_id,
                amount=transaction.amount,
            )
        return TransferPair(
            source=transaction,
            destination=sibling,
            source_account_id=transaction.account_id,
            destination_account_id=counterpart_account_id,
            amount=transaction.amount,
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, user_id: UUID, data: TransactionCreate, source: str = "user") -> Transaction:
        transaction, _ = self.create_or_replay(user_id, data, source=source)
        return transaction

    def create_or_replay(
        self,
        user_id: UUID,
        data: TransactionCreate,
        source: str = "user",
    ) -> tuple[Transaction, bool]:
        """
        Create an entry, honouring its idempotency key.

        Returns:
            (entry, created) - created is False when the key was already
            used and the stored entry is returned untouched.
        """
        if data.idempotency_key:
            existing = self.replay(user_id, data.idempotency_key)
            if existing is not None:
                return existing, False

        try:
            created = self._database.atomic(
                lambda uow: self.create_in(uow, user_id, data, source=source)
            )
        except DuplicateError:
            # A concurrent request won the unique constraint.
            if not data.idempotency_key:
                raise
            existing = self.replay(user_id, data.idempotency_key)
            if existing is None:
                raise
            return existing, False
        return created, True

    def replay(self, user_id: UUID, key: str) -> Optional[Transaction]:
        """
        The entry already stored under an idempotency key, if any.

        Raises:
            DuplicateError: If the key belongs to another user's entry
        """
        existing = self._database.atomic(
            lambda uow: uow.store.get_transaction_by_idempotency_key(key)
        )
        if existing is None:
            return None
        if existing.user_id != user_id:
            raise DuplicateError("Idempotency key already used")
        logger.info(
            "transaction_replayed",
            transaction_id=str(existing.id),
            idempotency_key=key,
        )
        return existing

    def create_in(
        self,
        uow: UnitOfWork,
        user_id: UUID,
        data: TransactionCreate,
        source: str = "user",
        recurring_transaction_id: Optional[UUID] = None,
        recurring_income_id: Optional[UUID] = None,
    ) -> Transaction:
        """Write an entry and its balance effect into an open unit."""
        store = uow.store
        refs = self._validator.validate_entry(
            store,
            user_id,
            account_id=data.account_id,
            transaction_type=data.type,
            amount=data.amount,
            category_id=data.category_id,
            transfer_to_account_id=data.transfer_to_account_id,
        )

        if data.type == TransactionType.TRANSFER:
            return self._create_transfer(uow, user_id, data, refs.account.name)

        transaction = Transaction(
            user_id=user_id,
            account_id=data.account_id,
            type=data.type,
            amount=data.amount,
            description=data.description,
            date=data.date,
            notes=data.notes,
            category_id=data.category_id,
            recurring_transaction_id=recurring_transaction_id,
            recurring_income_id=recurring_income_id,
            idempotency_key=data.idempotency_key,
            external_id=data.external_id,
        )
        store.add_transaction(transaction)
        self._balance.apply_effect(store, transaction)

        self._audit.log_after_commit(uow, AuditEventBuilder.transaction_created(
            transaction_id=transaction.id,
            user_id=user_id,
            transaction_type=transaction.type.value,
            amount=transaction.amount,
            account_id=transaction.account_id,
            source=source,
        ))
        self._publish(uow, "created", transaction)
        return transaction

    def _create_transfer(
        self,
        uow: UnitOfWork,
        user_id: UUID,
        data: TransactionCreate,
        source_account_name: str,
    ) -> Transaction:
        store = uow.store
        source = Transaction(
            user_id=user_id,
            account_id=data.account_id,
            type=TransactionType.TRANSFER,
            transfer_role=TransferRole.SOURCE,
            amount=data.amount,
            description=data.description,
            date=data.date,
            notes=data.notes,
            category_id=data.category_id,
            transfer_to_account_id=data.transfer_to_account_id,
            idempotency_key=data.idempotency_key,
            external_id=data.external_id,
        )
        destination = Transaction(
            user_id=user_id,
            account_id=data.transfer_to_account_id,
            type=TransactionType.TRANSFER,
            transfer_role=TransferRole.DESTINATION,
            amount=data.amount,
            description=f"Transfer from {source_account_name}",
            date=data.date,
            notes=data.notes,
            transfer_to_account_id=data.account_id,
            transfer_to_transaction_id=source.id,
        )
        # Insert both before linking the source, the link is a foreign key.
        store.add_transaction(source)
        store.add_transaction(destination)
        source.transfer_to_transaction_id = destination.id
        store.save_transaction(source)

        self._balance.apply_effect(store, source)
        self._balance.apply_effect(store, destination)

        self._audit.log_after_commit(uow, AuditEventBuilder.transfer_created(
            source_id=source.id,
            destination_id=destination.id,
            user_id=user_id,
            amount=data.amount,
            from_account_id=source.account_id,
            to_account_id=destination.account_id,
        ))
        self._publish(uow, "created", source, destination.account_id)
        return source

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(self, user_id: UUID, transaction_id: UUID, patch: TransactionPatch) -> Transaction:
        def work(uow: UnitOfWork) -> Transaction:
            current = self._owned(uow.store, user_id, transaction_id)
            return self.update_in(uow, current, patch)

        return self._atomic_audited(work)

    def update_in(self, uow: UnitOfWork, current: Transaction, patch: TransactionPatch) -> Transaction:
        changes = patch.changes()
        new_type = changes.get("type", current.type)
        if (new_type == TransactionType.TRANSFER) != current.is_transfer:
            raise LedgerValidationError.single(
                field="type",
                issue_type="immutable",
                message=(
                    "A transfer cannot change type"
                    if current.is_transfer
                    else "An entry cannot be turned into a transfer"
                ),
                suggested_fix="Delete the entry and record it again",
            )
        if current.is_transfer:
            changes.pop("type", None)
            return self._update_transfer(uow, current, changes)

        store = uow.store
        merged = current.model_copy(update={**changes, "updated_at": utcnow()})
        self._validate_changes(store, current, merged, changes)

        old_effect = signed_effect(current)
        # Reverse on the old account, then apply on the (possibly new) one.
        self._balance.reverse_effect(store, current)
        store.save_transaction(merged)
        self._balance.apply_effect(store, merged)

        self._audit.log_after_commit(uow, AuditEventBuilder.transaction_updated(
            transaction_id=merged.id,
            user_id=merged.user_id,
            changed_fields=list(changes),
            old_effect=old_effect,
            new_effect=signed_effect(merged),
        ))
        self._publish(uow, "updated", merged, current.account_id)
        return merged

    def _validate_changes(
        self,
        store: LedgerStore,
        current: Transaction,
        merged: Transaction,
        changes: dict,
    ) -> None:
        issues: list[ValidationIssue] = []
        if "amount" in changes:
            issues += self._validator.check_amount(merged.amount)
        if merged.account_id != current.account_id:
            account = self._validator.owned_account(store, current.user_id, merged.account_id)
            issues += self._validator.check_active(account)
        if merged.category_id is not None and (
            "category_id" in changes or "type" in changes
        ):
            category = self._validator.owned_category(store, current.user_id, merged.category_id)
            issues += self._validator.check_category_type(category, merged.type)
        self._validator.raise_for(issues)

    def _update_transfer(self, uow: UnitOfWork, current: Transaction, changes: dict) -> Transaction:
        store = uow.store
        pair = self.resolve_pair(store, current)
        if not pair.is_complete:
            raise IntegrityGapError(
                f"Transfer {current.id} is missing its counterpart entry; update refused",
                entity_id=current.id,
                user_id=current.user_id,
                details={"counterpart_account_id": str(current.transfer_to_account_id)},
            )
        sibling = pair.destination if current.transfer_role == TransferRole.SOURCE else pair.source

        now = utcnow()
        merged = current.model_copy(update={**changes, "updated_at": now})
        sibling_changes = {name: changes[name] for name in _SYMMETRIC_FIELDS if name in changes}
        sibling_changes["transfer_to_account_id"] = merged.account_id
        sibling_changes["updated_at"] = now
        merged_sibling = sibling.model_copy(update=sibling_changes)

        issues = self._validator.check_amount(merged.amount) if "amount" in changes else []
        if merged.account_id != current.account_id:
            account = self._validator.owned_account(store, current.user_id, merged.account_id)
            issues += self._validator.check_active(account)
            if merged.account_id == sibling.account_id:
                issues.append(ValidationIssue(
                    field="account_id",
                    issue_type="invalid_value",
                    message="Cannot transfer to the same account",
                ))
        if "category_id" in changes and merged.category_id is not None:
            self._validator.owned_category(store, current.user_id, merged.category_id)
        self._validator.raise_for(issues)

        old_effect = signed_effect(current)
        self._balance.reverse_effect(store, current)
        self._balance.reverse_effect(store, sibling)
        store.save_transaction(merged)
        store.save_transaction(merged_sibling)
        self._balance.apply_effect(store, merged)
        self._balance.apply_effect(store, merged_sibling)

        self._audit.log_after_commit(uow, AuditEventBuilder.transaction_updated(
            transaction_id=merged.id,
            user_id=merged.user_id,
            changed_fields=list(changes),
            old_effect=old_effect,
            new_effect=signed_effect(merged),
        ))
        self._publish(uow, "updated", merged, current.account_id, sibling.account_id)
        return merged

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete(self, user_id: UUID, transaction_id: UUID) -> None:
        def work(uow: UnitOfWork) -> None:
            current = self._owned(uow.store, user_id, transaction_id)
            self.delete_in(uow, current)

        self._atomic_audited(work)

    def delete_in(self, uow: UnitOfWork, current: Transaction, reason: str = "user") -> int:
        """
        Reverse and remove an entry inside an open unit.

        Returns:
            Number of rows removed (2 for a complete transfer)
        """
        store = uow.store
        if not current.is_transfer:
            self._balance.reverse_effect(store, current)
            store.delete_transaction(current.id)
            removed = 1
            touched = [current.account_id]
        else:
            pair = self.resolve_pair(store, current)
            if pair.is_complete:
                for row in pair.rows:
                    self._balance.reverse_effect(store, row)
                for row in pair.rows:
                    store.delete_transaction(row.id)
                removed = 2
            else:
                self._delete_half_transfer(uow, current)
                removed = 1
            touched = [pair.source_account_id, pair.destination_account_id]

        self._audit.log_after_commit(uow, AuditEventBuilder.transaction_deleted(
            transaction_id=current.id,
            user_id=current.user_id,
            reversed_rows=removed,
            reason=reason,
        ))
        self._publish(uow, "deleted", current, *touched)
        return removed

    def _delete_half_transfer(self, uow: UnitOfWork, current: Transaction) -> None:
        """
        Delete a transfer whose sibling row is gone.

        Strict mode refuses. Otherwise the missing side's effect is
        reversed on the counterpart account so both balances return to
        their pre-transfer values, and the gap is audited.
        """
        store = uow.store
        counterpart_id = current.transfer_to_account_id
        gap_details = {
            "transfer_role": current.transfer_role.value if current.transfer_role else None,
            "counterpart_account_id": str(counterpart_id) if counterpart_id else None,
            "amount": str(current.amount),
        }
        logger.warning("transfer_sibling_missing", transaction_id=str(current.id), **gap_details)

        if self._settings.strict_transfer_integrity:
            raise IntegrityGapError(
                f"Transfer {current.id} is missing its counterpart entry; delete refused",
                entity_id=current.id,
                user_id=current.user_id,
                details=gap_details,
            )

        self._balance.reverse_effect(store, current)
        # The missing row had the opposite sign of this one.
        counterpart_reversal = signed_effect(current)
        if counterpart_id is not None and store.get_account(counterpart_id) is not None:
            self._balance.apply_delta(store, counterpart_id, counterpart_reversal)
            gap_details["counterpart_reversed"] = str(counterpart_reversal)
        else:
            gap_details["counterpart_reversed"] = None
        store.delete_transaction(current.id)

        event = AuditEventBuilder.integrity_gap(
            entity_type="transaction",
            entity_id=current.id,
            user_id=current.user_id,
            description="Transfer deleted without its counterpart entry",
            details=gap_details,
        )
        self._audit.log_after_commit(uow, event)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _atomic_audited(self, work):
        """Run `work`; a refused integrity gap is audited once the unit has rolled back."""
        try:
            return self._database.atomic(work)
        except IntegrityGapError as e:
            self._audit.log_integrity_gap(
                entity_type=e.entity_type,
                entity_id=e.entity_id,
                user_id=e.user_id,
                description=str(e),
                details=e.details,
            )
            raise

    def _owned(self, store: LedgerStore, user_id: UUID, transaction_id: UUID) -> Transaction:
        transaction = store.get_transaction(transaction_id)
        if transaction is None or transaction.user_id != user_id:
            raise NotFoundError("Transaction not found")
        return transaction

    def _publish(self, uow: UnitOfWork, action: str, transaction: Transaction, *account_ids) -> None:
        accounts = {str(transaction.account_id), *(str(a) for a in account_ids if a is not None)}
        publish_after_commit(uow, self._sink, LedgerEvent(
            entity_type="transaction",
            action=action,
            entity_id=transaction.id,
            user_id=transaction.user_id,
            payload={"account_ids": sorted(accounts)},
        ))
