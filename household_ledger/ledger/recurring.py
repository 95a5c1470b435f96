"""
Recurring Scheduler

RecurringTransaction (income or expense) and RecurringIncome (always
income) share one algorithm, parameterised by RecurringKind.

DESIGN DECISION: Materialization is guarded by the data, not by the
scheduler's own bookkeeping. Before an entry is created we look for an
entry linked to the same definition inside the month the new entry
would land in. If one exists, nothing is written, whoever calls.

FLOW (scheduler tick):
1. Select active definitions with next_run_date <= today
2. Past end_date -> deactivate (never delete)
3. Otherwise materialize the current period (guarded)
4. Advance next_run_date to the first occurrence after today
5. Deactivate when that occurrence falls after end_date

Each definition is processed in its own atomic unit; one failure is
reported in the run report and does not stop the others.
"""

import calendar
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from household_ledger.audit.logger import AuditLogger, create_correlation_id
from household_ledger.config import LedgerSettings, get_settings
from household_ledger.ledger.clock import Clock, SystemClock
from household_ledger.ledger.errors import LedgerError, LedgerValidationError, NotFoundError
from household_ledger.ledger.events import (
    LedgerEvent,
    LoggingNotificationSink,
    NotificationSink,
    publish_after_commit,
)
from household_ledger.ledger.transactions import TransactionService
from household_ledger.models.audit import AuditEventBuilder, AuditEventType
from household_ledger.models.ledger import TransactionCreate, TransactionType, utcnow
from household_ledger.models.scheduling import (
    MaterializationResult,
    MaterializationStatus,
    RecurringCreated,
    RecurringDefinition,
    RecurringDeleteResult,
    RecurringIncome,
    RecurringIncomeCreate,
    RecurringKind,
    RecurringPatch,
    RecurringRunItem,
    RecurringRunReport,
    RecurringTransaction,
    RecurringTransactionCreate,
    Schedule,
)
from household_ledger.storage.interface import LedgerDatabase, LedgerStore, StorageError, UnitOfWork
from household_ledger.validation.validator import LedgerValidator

logger = structlog.get_logger(__name__)


# =============================================================================
# DATE ARITHMETIC
# =============================================================================

def month_bounds(day: date) -> tuple[date, date]:
    """First and last day of the month containing `day`."""
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last)


def following_occurrence(after: date, day_of_month: int) -> date:
    """`day_of_month` in the month after `after`."""
    if after.month == 12:
        return date(after.year + 1, 1, day_of_month)
    return date(after.year, after.month + 1, day_of_month)


def compute_schedule(today: date, day_of_month: int) -> Schedule:
    """
    Next-run rule shared by creation and day-of-month edits.

    If this month's occurrence has already passed, the next run is next
    month and a catch-up for this month is due now. Otherwise the next
    run is this month's occurrence and nothing fires yet.
    """
    current = date(today.year, today.month, day_of_month)
    if current < today:
        return Schedule(
            current_occurrence=current,
            next_run_date=following_occurrence(current, day_of_month),
            catch_up_due=True,
        )
    return Schedule(current_occurrence=current, next_run_date=current, catch_up_due=False)


def current_period(today: date, day_of_month: int) -> date:
    """The latest occurrence on or before today."""
    occurrence = date(today.year, today.month, day_of_month)
    if occurrence <= today:
        return occurrence
    if today.month == 1:
        return date(today.year - 1, 12, day_of_month)
    return date(today.year, today.month - 1, day_of_month)


# =============================================================================
# SCHEDULER
# =============================================================================

class RecurringScheduler:
    """
    Owns recurring definitions and turns them into ledger entries.

    Every balance change goes through TransactionService.create_in, so
    a materialized entry is indistinguishable from a manual one apart
    from its provenance link.
    """

    def __init__(
        self,
        database: LedgerDatabase,
        transactions: TransactionService,
        validator: Optional[LedgerValidator] = None,
        audit: Optional[AuditLogger] = None,
        sink: Optional[NotificationSink] = None,
        clock: Optional[Clock] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._database = database
        self._transactions = transactions
        self._settings = settings or get_settings().ledger
        self._validator = validator or LedgerValidator(self._settings)
        self._audit = audit or AuditLogger()
        self._sink = sink or LoggingNotificationSink()
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create_transaction_definition(
        self,
        user_id: UUID,
        data: RecurringTransactionCreate,
    ) -> RecurringCreated:
        return self._create(user_id, data, RecurringKind.TRANSACTION, data.type)

    def create_income_definition(
        self,
        user_id: UUID,
        data: RecurringIncomeCreate,
    ) -> RecurringCreated:
        return self._create(user_id, data, RecurringKind.INCOME, TransactionType.INCOME)

    def _create(
        self,
        user_id: UUID,
        data: RecurringIncomeCreate,
        kind: RecurringKind,
        transaction_type: TransactionType,
    ) -> RecurringCreated:
        today = self._clock.today()
        schedule = compute_schedule(today, data.day_of_month)

        fields = dict(
            user_id=user_id,
            account_id=data.account_id,
            category_id=data.category_id,
            amount=data.amount,
            description=data.description,
            day_of_month=data.day_of_month,
            next_run_date=schedule.next_run_date,
            end_date=data.end_date,
        )
        if kind == RecurringKind.TRANSACTION:
            definition = RecurringTransaction(type=transaction_type, **fields)
        else:
            definition = RecurringIncome(**fields)

        def work(uow: UnitOfWork) -> RecurringDefinition:
            self._validate_definition(uow.store, definition, today, check_end_date=True)
            uow.store.add_recurring(definition)
            self._audit.log_after_commit(uow, AuditEventBuilder.recurring_changed(
                event_type=AuditEventType.RECURRING_CREATED,
                recurring_id=definition.id,
                user_id=user_id,
                kind=kind.value,
                details={
                    "amount": str(definition.amount),
                    "day_of_month": definition.day_of_month,
                    "next_run_date": definition.next_run_date.isoformat(),
                },
            ))
            self._publish(uow, "created", definition)
            return definition

        # The definition is persisted on its own; a failed catch-up never undoes it.
        definition = self._database.atomic(work)

        immediate = (
            self._settings.recurring_expense_immediate
            and transaction_type == TransactionType.EXPENSE
        )
        materialization = None
        if schedule.catch_up_due or immediate:
            materialization = self._materialize_safely(
                kind, definition.id, period=schedule.current_occurrence
            )
            if materialization.created:
                definition = self._database.atomic(
                    lambda uow: uow.store.get_recurring(kind, definition.id)
                )

        return RecurringCreated(definition=definition, materialization=materialization)

    # ------------------------------------------------------------------
    # Materialize
    # ------------------------------------------------------------------

    def materialize(
        self,
        kind: RecurringKind,
        recurring_id: UUID,
        user_id: Optional[UUID] = None,
        period: Optional[date] = None,
    ) -> MaterializationResult:
        """
        Create this period's entry for one definition, at most once.

        Args:
            kind: Definition flavour
            recurring_id: The definition
            user_id: When given, the definition must belong to this user
            period: Occurrence being materialized (default: current period)
        """
        today = self._clock.today()

        def work(uow: UnitOfWork) -> MaterializationResult:
            definition = self._owned(uow.store, kind, recurring_id, user_id, for_update=True)
            return self._materialize_in(uow, definition, today, period)

        return self._database.atomic(work)

    def _materialize_safely(
        self,
        kind: RecurringKind,
        recurring_id: UUID,
        period: Optional[date] = None,
    ) -> MaterializationResult:
        try:
            return self.materialize(kind, recurring_id, period=period)
        except (LedgerError, StorageError) as e:
            self._report_failure(kind, recurring_id, None, e)
            return MaterializationResult(
                recurring_id=recurring_id,
                status=MaterializationStatus.FAILED,
                reason=str(e),
            )

    def _materialize_in(
        self,
        uow: UnitOfWork,
        definition: RecurringDefinition,
        today: date,
        period: Optional[date] = None,
    ) -> MaterializationResult:
        store = uow.store
        kind = definition.kind
        period = period or current_period(today, definition.day_of_month)
        transaction_type = definition.transaction_type
        # Expenses hit the account today; income lands on its occurrence date.
        entry_date = today if transaction_type == TransactionType.EXPENSE else period

        def skipped(reason: str) -> MaterializationResult:
            logger.info(
                "recurring_skipped",
                kind=kind.value,
                recurring_id=str(definition.id),
                period=period.isoformat(),
                reason=reason,
            )
            self._audit.log_after_commit(uow, AuditEventBuilder.recurring_skipped(
                recurring_id=definition.id,
                user_id=definition.user_id,
                kind=kind.value,
                period_date=period.isoformat(),
                reason=reason,
            ))
            return MaterializationResult(
                recurring_id=definition.id,
                status=MaterializationStatus.SKIPPED,
                reason=reason,
            )

        if not definition.is_active:
            return skipped("Definition is inactive")
        if definition.end_date is not None and entry_date > definition.end_date:
            return skipped("Occurrence falls after the end date")

        # Callers hold the definition row lock across this check and the insert.
        window_start, window_end = month_bounds(entry_date)
        existing = store.find_recurring_transactions(
            kind, definition.id, date_from=window_start, date_to=window_end
        )
        if existing:
            return skipped(f"Already materialized for {window_start:%Y-%m}")

        links = {kind.link_field: definition.id}
        transaction = self._transactions.create_in(
            uow,
            definition.user_id,
            TransactionCreate(
                account_id=definition.account_id,
                type=transaction_type,
                amount=definition.amount,
                description=definition.description,
                date=entry_date,
                notes=f"Automatic recurring {transaction_type.value}",
                category_id=definition.category_id,
            ),
            source="recurring",
            **links,
        )

        stamped = definition.model_copy(update={"last_run_date": today, "updated_at": utcnow()})
        store.save_recurring(stamped)

        self._audit.log_after_commit(uow, AuditEventBuilder.recurring_materialized(
            recurring_id=definition.id,
            user_id=definition.user_id,
            kind=kind.value,
            transaction_id=transaction.id,
            amount=transaction.amount,
            period_date=period.isoformat(),
        ))
        return MaterializationResult(
            recurring_id=definition.id,
            status=MaterializationStatus.CREATED,
            transaction=transaction,
        )

    # ------------------------------------------------------------------
    # Scheduler tick
    # ------------------------------------------------------------------

    def process_due(self, kind: RecurringKind) -> RecurringRunReport:
        """Run every due definition of one kind. Never raises for a single item."""
        today = self._clock.today()
        correlation_id = create_correlation_id()
        report = RecurringRunReport(kind=kind)

        due = self._database.atomic(lambda uow: uow.store.list_due_recurring(kind, today))
        logger.info(
            "recurring_tick_started",
            kind=kind.value,
            due=len(due),
            today=today.isoformat(),
            correlation_id=str(correlation_id),
        )

        for definition in due:
            try:
                item = self._database.atomic(
                    lambda uow, d=definition: self._process_one(uow, d.id, kind, today)
                )
            except (LedgerError, StorageError) as e:
                self._report_failure(kind, definition.id, definition.user_id, e)
                item = RecurringRunItem(
                    recurring_id=definition.id,
                    status="error",
                    message=str(e),
                )
            report.record(item)

        logger.info(
            "recurring_tick_finished",
            kind=kind.value,
            created=report.created,
            skipped=report.skipped,
            deactivated=report.deactivated,
            failed=report.failed,
            correlation_id=str(correlation_id),
        )
        return report

    def _process_one(
        self,
        uow: UnitOfWork,
        recurring_id: UUID,
        kind: RecurringKind,
        today: date,
    ) -> RecurringRunItem:
        store = uow.store
        # Re-read under lock; another tick may have advanced it.
        definition = store.get_recurring(kind, recurring_id, for_update=True)
        if definition is None:
            raise NotFoundError(f"Recurring definition {recurring_id} not found")
        if not definition.is_active or definition.next_run_date > today:
            return RecurringRunItem(
                recurring_id=recurring_id,
                status="skipped",
                next_run_date=definition.next_run_date,
                message="No longer due",
            )

        if definition.end_date is not None and definition.end_date < today:
            self._deactivate(uow, definition)
            return RecurringRunItem(
                recurring_id=recurring_id,
                status="deactivated",
                message="End date has passed",
            )

        result = self._materialize_in(uow, definition, today)

        # Re-read: materialization stamped last_run_date.
        definition = store.get_recurring(kind, recurring_id)
        next_run = following_occurrence(definition.next_run_date, definition.day_of_month)
        while next_run <= today:
            next_run = following_occurrence(next_run, definition.day_of_month)

        message = result.reason
        if definition.end_date is not None and next_run > definition.end_date:
            self._deactivate(uow, definition)
            message = "Final occurrence reached; deactivated"
        else:
            store.save_recurring(definition.model_copy(update={
                "next_run_date": next_run,
                "last_run_date": definition.last_run_date or today,
                "updated_at": utcnow(),
            }))

        return RecurringRunItem(
            recurring_id=recurring_id,
            status="created" if result.created else "skipped",
            transaction_id=result.transaction.id if result.transaction else None,
            next_run_date=next_run,
            message=message,
        )

    def _deactivate(self, uow: UnitOfWork, definition: RecurringDefinition) -> None:
        uow.store.save_recurring(
            definition.model_copy(update={"is_active": False, "updated_at": utcnow()})
        )
        self._audit.log_after_commit(uow, AuditEventBuilder.recurring_changed(
            event_type=AuditEventType.RECURRING_DEACTIVATED,
            recurring_id=definition.id,
            user_id=definition.user_id,
            kind=definition.kind.value,
            details={"end_date": definition.end_date.isoformat() if definition.end_date else None},
        ))

    def _report_failure(
        self,
        kind: RecurringKind,
        recurring_id: UUID,
        user_id: Optional[UUID],
        error: Exception,
    ) -> None:
        logger.error(
            "recurring_materialization_failed",
            kind=kind.value,
            recurring_id=str(recurring_id),
            error=str(error),
        )
        self._audit.log(AuditEventBuilder.recurring_failed(
            recurring_id=recurring_id,
            user_id=user_id,
            kind=kind.value,
            error_message=str(error),
        ))

    # ------------------------------------------------------------------
    # Read / update / delete
    # ------------------------------------------------------------------

    def get(self, kind: RecurringKind, user_id: UUID, recurring_id: UUID) -> RecurringDefinition:
        return self._database.atomic(
            lambda uow: self._owned(uow.store, kind, recurring_id, user_id)
        )

    def list_definitions(
        self,
        kind: RecurringKind,
        user_id: UUID,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[RecurringDefinition]:
        return self._database.atomic(
            lambda uow: uow.store.list_recurring(kind, user_id, transaction_type)
        )

    def update(
        self,
        kind: RecurringKind,
        user_id: UUID,
        recurring_id: UUID,
        patch: RecurringPatch,
    ) -> RecurringDefinition:
        """
        Apply a partial edit.

        Only future materializations see the change; entries already
        created are never touched. A new day_of_month recomputes
        next_run_date with the creation rule.
        """
        today = self._clock.today()
        changes = patch.changes()

        if kind == RecurringKind.INCOME and "type" in changes:
            if changes.pop("type") != TransactionType.INCOME:
                raise LedgerValidationError.single(
                    field="type",
                    issue_type="invalid_value",
                    message="Recurring income is always income",
                )

        def work(uow: UnitOfWork) -> RecurringDefinition:
            current = self._owned(uow.store, kind, recurring_id, user_id)
            update = dict(changes)
            if (
                "day_of_month" in changes
                and changes["day_of_month"] != current.day_of_month
            ):
                update["next_run_date"] = compute_schedule(
                    today, changes["day_of_month"]
                ).next_run_date
            update["updated_at"] = utcnow()
            merged = current.model_copy(update=update)

            self._validate_definition(
                uow.store,
                merged,
                today,
                check_end_date="end_date" in changes,
                check_account=merged.account_id != current.account_id,
                check_category="category_id" in changes or "type" in changes,
                check_amount="amount" in changes,
            )
            uow.store.save_recurring(merged)

            self._audit.log_after_commit(uow, AuditEventBuilder.recurring_changed(
                event_type=AuditEventType.RECURRING_UPDATED,
                recurring_id=recurring_id,
                user_id=user_id,
                kind=kind.value,
                details={"changed_fields": sorted(changes)},
            ))
            self._publish(uow, "updated", merged)
            return merged

        return self._database.atomic(work)

    def set_active(
        self,
        kind: RecurringKind,
        user_id: UUID,
        recurring_id: UUID,
        is_active: bool,
    ) -> RecurringDefinition:
        return self.update(kind, user_id, recurring_id, RecurringPatch(is_active=is_active))

    def delete(
        self,
        kind: RecurringKind,
        user_id: UUID,
        recurring_id: UUID,
        delete_transactions: bool = False,
    ) -> RecurringDeleteResult:
        """
        Remove a definition.

        With `delete_transactions`, every entry it produced is reversed
        and removed in the same unit. Otherwise those entries stay as
        ordinary entries and their provenance link becomes historical.
        """

        def work(uow: UnitOfWork) -> RecurringDeleteResult:
            store = uow.store
            definition = self._owned(store, kind, recurring_id, user_id)
            deleted = 0
            reversed_amount = Decimal("0")
            if delete_transactions:
                for transaction in store.find_recurring_transactions(kind, recurring_id):
                    if transaction.user_id != user_id:
                        continue
                    deleted += self._transactions.delete_in(
                        uow, transaction, reason=f"recurring_{kind.value}_deleted"
                    )
                    reversed_amount += transaction.amount
            store.delete_recurring(kind, recurring_id)

            self._audit.log_after_commit(uow, AuditEventBuilder.recurring_changed(
                event_type=AuditEventType.RECURRING_DELETED,
                recurring_id=recurring_id,
                user_id=user_id,
                kind=kind.value,
                details={
                    "delete_transactions": delete_transactions,
                    "deleted_transactions": deleted,
                },
            ))
            self._publish(uow, "deleted", definition)
            return RecurringDeleteResult(
                recurring_id=recurring_id,
                deleted_transactions=deleted,
                reversed_amount=reversed_amount,
            )

        return self._database.atomic(work)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _owned(
        self,
        store: LedgerStore,
        kind: RecurringKind,
        recurring_id: UUID,
        user_id: Optional[UUID],
        for_update: bool = False,
    ) -> RecurringDefinition:
        definition = store.get_recurring(kind, recurring_id, for_update=for_update)
        if definition is None or (user_id is not None and definition.user_id != user_id):
            label = "Recurring income" if kind == RecurringKind.INCOME else "Recurring transaction"
            raise NotFoundError(f"{label} not found")
        return definition

    def _validate_definition(
        self,
        store: LedgerStore,
        definition: RecurringDefinition,
        today: date,
        check_end_date: bool = False,
        check_account: bool = True,
        check_category: bool = True,
        check_amount: bool = True,
    ) -> None:
        issues = []
        if check_account:
            account = self._validator.owned_account(store, definition.user_id, definition.account_id)
            issues += self._validator.check_active(account)
        if check_category and definition.category_id is not None:
            category = self._validator.owned_category(
                store, definition.user_id, definition.category_id
            )
            issues += self._validator.check_category_type(category, definition.transaction_type)
        if check_amount:
            issues += self._validator.check_amount(definition.amount)
        if check_end_date:
            issues += self._validator.check_end_date(definition.end_date, today)
        issues += self._validator.check_recurring_type(definition.transaction_type)
        self._validator.raise_for(issues)

    def _publish(self, uow: UnitOfWork, action: str, definition: RecurringDefinition) -> None:
        publish_after_commit(uow, self._sink, LedgerEvent(
            entity_type=f"recurring_{definition.kind.value}",
            action=action,
            entity_id=definition.id,
            user_id=definition.user_id,
        ))
