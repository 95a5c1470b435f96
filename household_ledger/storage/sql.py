"""
SQLAlchemy Storage Implementation

DESIGN DECISION: A relational store is the system of record.
- One logical operation = one database transaction
- Balance updates lock the account row (or hold SQLite's write lock)
- Foreign keys enforce the account/category/definition references
- Idempotency keys carry a unique constraint

TRADEOFFS:
- SQLite serializes writers; BEGIN IMMEDIATE makes that explicit so a
  read-modify-write of a balance can never interleave with another
- Money is stored as exact decimal text, so aggregates run in Python

The implementation follows the abstract interface, so the ledger
services never import SQLAlchemy.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import create_engine, event, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from household_ledger.config import get_settings
from household_ledger.models.audit import AuditEvent, AuditEventType, AuditSeverity
from household_ledger.models.billing import (
    CardTransactionStatus,
    CreditCard,
    CreditCardTransaction,
)
from household_ledger.models.ledger import (
    Account,
    ApiToken,
    Category,
    Notification,
    Transaction,
    TransactionType,
)
from household_ledger.models.scheduling import (
    RecurringDefinition,
    RecurringIncome,
    RecurringKind,
    RecurringTransaction,
)
from household_ledger.storage.interface import (
    AuditStorageInterface,
    ConflictError,
    DuplicateError,
    LedgerDatabase,
    LedgerStore,
    NotFoundError,
    StorageError,
    UnitOfWork,
)
from household_ledger.storage.tables import (
    AccountRow,
    ApiTokenRow,
    AuditLogRow,
    Base,
    CategoryRow,
    CreditCardRow,
    CreditCardTransactionRow,
    NotificationRow,
    RecurringIncomeRow,
    RecurringTransactionRow,
    TransactionRow,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_RECURRING_ROWS = {
    RecurringKind.TRANSACTION: (RecurringTransactionRow, RecurringTransaction),
    RecurringKind.INCOME: (RecurringIncomeRow, RecurringIncome),
}

_CONFLICT_MARKERS = ("database is locked", "deadlock", "could not serialize", "lock timeout")


def translate_error(exc: SQLAlchemyError) -> StorageError:
    """Map a driver error onto the storage exception family."""
    message = str(getattr(exc, "orig", None) or exc)
    lowered = message.lower()
    if isinstance(exc, IntegrityError):
        if "unique" in lowered or "duplicate" in lowered:
            return DuplicateError(message)
        return StorageError(f"Integrity constraint violated: {message}")
    if isinstance(exc, OperationalError) and any(m in lowered for m in _CONFLICT_MARKERS):
        return ConflictError(message)
    return StorageError(message)


def _copy_into(row, model) -> None:
    for name, value in model.model_dump(exclude={"id"}).items():
        setattr(row, name, value)


# =============================================================================
# DATABASE
# =============================================================================

class SqlDatabase(LedgerDatabase):
    """
    Engine plus session factory.

    Hands out units of work; one unit is one session is one database
    transaction.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        echo: Optional[bool] = None,
        busy_timeout_seconds: Optional[float] = None,
        retry_attempts: Optional[int] = None,
    ):
        settings = get_settings()
        db_settings = settings.database
        self.url = url or db_settings.url
        self._busy_timeout = (
            busy_timeout_seconds
            if busy_timeout_seconds is not None
            else db_settings.busy_timeout_seconds
        )
        self._retry_attempts = retry_attempts or settings.ledger.conflict_retry_attempts

        self.engine = self._create_engine(
            echo=db_settings.echo if echo is None else echo,
        )
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def _create_engine(self, echo: bool) -> Engine:
        if not self.is_sqlite:
            return create_engine(self.url, echo=echo, pool_pre_ping=True)

        connect_args = {"check_same_thread": False, "timeout": self._busy_timeout}
        if self.url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection keeps the in-memory database alive.
            engine = create_engine(
                self.url,
                echo=echo,
                connect_args=connect_args,
                poolclass=StaticPool,
            )
            in_memory = True
        else:
            engine = create_engine(self.url, echo=echo, connect_args=connect_args)
            in_memory = False

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, connection_record):
            # Let SQLAlchemy emit BEGIN itself (see the "begin" listener).
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={int(self._busy_timeout * 1000)}")
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            # Take the write lock up front so balance read-modify-write is serialized.
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    def create_schema(self) -> None:
        """Create every table. Idempotent."""
        Base.metadata.create_all(self.engine)
        logger.info("schema_ready", url=self.url)

    def dispose(self) -> None:
        self.engine.dispose()

    def session(self) -> Session:
        return self._sessions()

    def unit_of_work(self) -> "SqlUnitOfWork":
        return SqlUnitOfWork(self._sessions)

    def atomic(self, work: Callable[[UnitOfWork], T]) -> T:
        """
        Run `work` inside a fresh unit of work.

        The whole unit is retried when the store reports a lock conflict;
        every other error propagates after a full rollback.
        """

        @retry(
            retry=retry_if_exception_type(ConflictError),
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
            reraise=True,
        )
        def _run() -> T:
            with self.unit_of_work() as uow:
                return work(uow)

        return _run()


class SqlUnitOfWork(UnitOfWork):
    """One session, one database transaction, plus post-commit hooks."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._session: Optional[Session] = None
        self._hooks: list[Callable[[], None]] = []
        self.committed = False

    def __enter__(self) -> "SqlUnitOfWork":
        self._session = self._session_factory()
        self._hooks = []
        self.committed = False
        self.store = SqlLedgerStore(self._session)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        session = self._session
        try:
            if exc_type is None:
                try:
                    session.commit()
                except SQLAlchemyError as e:
                    session.rollback()
                    raise translate_error(e) from e
                self.committed = True
            else:
                session.rollback()
                if isinstance(exc, SQLAlchemyError):
                    raise translate_error(exc) from exc
        finally:
            session.close()
            self._session = None

        if self.committed:
            self._run_hooks()
        return False

    def on_commit(self, hook: Callable[[], None]) -> None:
        self._hooks.append(hook)

    def _run_hooks(self) -> None:
        hooks, self._hooks = self._hooks, []
        for hook in hooks:
            try:
                hook()
            except Exception as e:
                logger.error(
                    "post_commit_hook_failed",
                    hook=getattr(hook, "__qualname__", repr(hook)),
                    error=str(e),
                )


# =============================================================================
# LEDGER STORE
# =============================================================================

class SqlLedgerStore(LedgerStore):
    """SQLAlchemy implementation of the ledger store, bound to one session."""

    def __init__(self, session: Session):
        self._session = session

    def _flush(self) -> None:
        try:
            self._session.flush()
        except SQLAlchemyError as e:
            raise translate_error(e) from e

    def _add(self, row_cls, model):
        self._session.add(row_cls(**model.model_dump()))
        self._flush()
        return model

    def _save(self, row_cls, model, label: str):
        row = self._session.get(row_cls, model.id)
        if row is None:
            raise NotFoundError(f"{label} {model.id} not found")
        _copy_into(row, model)
        self._flush()
        return model

    # -- accounts ------------------------------------------------------

    def add_account(self, account: Account) -> Account:
        return self._add(AccountRow, account)

    def get_account(self, account_id: UUID) -> Optional[Account]:
        row = self._session.get(AccountRow, account_id)
        return Account.model_validate(row) if row else None

    def set_account_active(self, account_id: UUID, is_active: bool) -> None:
        row = self._session.get(AccountRow, account_id)
        if row is None:
            raise NotFoundError(f"Account {account_id} not found")
        row.is_active = is_active
        self._flush()

    def list_accounts(self, user_id: Optional[UUID] = None, active_only: bool = False) -> list[Account]:
        stmt = select(AccountRow).order_by(AccountRow.created_at, AccountRow.id)
        if user_id is not None:
            stmt = stmt.where(AccountRow.user_id == user_id)
        if active_only:
            stmt = stmt.where(AccountRow.is_active.is_(True))
        return [Account.model_validate(r) for r in self._session.scalars(stmt)]

    def apply_balance_delta(self, account_id: UUID, delta: Decimal) -> Decimal:
        stmt = (
            select(AccountRow)
            .where(AccountRow.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        try:
            row = self._session.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise translate_error(e) from e
        if row is None:
            raise NotFoundError(f"Account {account_id} not found")
        row.balance = row.balance + delta
        self._flush()
        return row.balance

    # -- categories ----------------------------------------------------

    def add_category(self, category: Category) -> Category:
        return self._add(CategoryRow, category)

    def get_category(self, category_id: UUID) -> Optional[Category]:
        row = self._session.get(CategoryRow, category_id)
        return Category.model_validate(row) if row else None

    def list_categories(self, user_id: UUID) -> list[Category]:
        stmt = (
            select(CategoryRow)
            .where((CategoryRow.user_id == user_id) | CategoryRow.user_id.is_(None))
            .order_by(CategoryRow.name)
        )
        return [Category.model_validate(r) for r in self._session.scalars(stmt)]

    # -- ledger entries ------------------------------------------------

    def add_transaction(self, transaction: Transaction) -> Transaction:
        return self._add(TransactionRow, transaction)

    def save_transaction(self, transaction: Transaction) -> Transaction:
        return self._save(TransactionRow, transaction, "Transaction")

    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        row = self._session.get(TransactionRow, transaction_id)
        return Transaction.model_validate(row) if row else None

    def get_transaction_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        row = self._session.scalars(
            select(TransactionRow).where(TransactionRow.idempotency_key == key)
        ).first()
        return Transaction.model_validate(row) if row else None

    def delete_transaction(self, transaction_id: UUID) -> None:
        row = self._session.get(TransactionRow, transaction_id)
        if row is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        # Unlink any sibling first so the in-session copy never points at a deleted row.
        self._session.execute(
            update(TransactionRow)
            .where(TransactionRow.transfer_to_transaction_id == transaction_id)
            .values(transfer_to_transaction_id=None)
        )
        self._session.delete(row)
        self._flush()

    def list_transactions(
        self,
        user_id: UUID,
        account_id: Optional[UUID] = None,
        transaction_type: Optional[TransactionType] = None,
        category_id: Optional[UUID] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        stmt = select(TransactionRow).where(TransactionRow.user_id == user_id)
        if account_id is not None:
            stmt = stmt.where(TransactionRow.account_id == account_id)
        if transaction_type is not None:
            stmt = stmt.where(TransactionRow.type == transaction_type)
        if category_id is not None:
            stmt = stmt.where(TransactionRow.category_id == category_id)
        if date_from is not None:
            stmt = stmt.where(TransactionRow.date >= date_from)
        if date_to is not None:
            stmt = stmt.where(TransactionRow.date <= date_to)

        total = self._session.scalar(select(func.count()).select_from(stmt.subquery()))
        page = self._session.scalars(
            stmt.order_by(TransactionRow.date.desc(), TransactionRow.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return [Transaction.model_validate(r) for r in page], total or 0

    def list_account_transactions(self, account_id: UUID) -> list[Transaction]:
        rows = self._session.scalars(
            select(TransactionRow)
            .where(TransactionRow.account_id == account_id)
            .order_by(TransactionRow.date, TransactionRow.created_at)
        )
        return [Transaction.model_validate(r) for r in rows]

    def find_recurring_transactions(
        self,
        kind: RecurringKind,
        recurring_id: UUID,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[Transaction]:
        link = getattr(TransactionRow, kind.link_field)
        stmt = select(TransactionRow).where(link == recurring_id)
        if date_from is not None:
            stmt = stmt.where(TransactionRow.date >= date_from)
        if date_to is not None:
            stmt = stmt.where(TransactionRow.date <= date_to)
        rows = self._session.scalars(stmt.order_by(TransactionRow.date))
        return [Transaction.model_validate(r) for r in rows]

    # -- recurring definitions -----------------------------------------

    def add_recurring(self, definition: RecurringDefinition) -> RecurringDefinition:
        row_cls, _ = _RECURRING_ROWS[definition.kind]
        return self._add(row_cls, definition)

    def save_recurring(self, definition: RecurringDefinition) -> RecurringDefinition:
        row_cls, _ = _RECURRING_ROWS[definition.kind]
        return self._save(row_cls, definition, "Recurring definition")

    def get_recurring(
        self,
        kind: RecurringKind,
        recurring_id: UUID,
        for_update: bool = False,
    ) -> Optional[RecurringDefinition]:
        row_cls, model_cls = _RECURRING_ROWS[kind]
        if not for_update:
            row = self._session.get(row_cls, recurring_id)
            return model_cls.model_validate(row) if row else None
        stmt = (
            select(row_cls)
            .where(row_cls.id == recurring_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        try:
            row = self._session.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise translate_error(e) from e
        return model_cls.model_validate(row) if row else None

    def list_recurring(
        self,
        kind: RecurringKind,
        user_id: UUID,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[RecurringDefinition]:
        row_cls, model_cls = _RECURRING_ROWS[kind]
        stmt = select(row_cls).where(row_cls.user_id == user_id)
        if transaction_type is not None and kind == RecurringKind.TRANSACTION:
            stmt = stmt.where(row_cls.type == transaction_type)
        stmt = stmt.order_by(row_cls.created_at.desc())
        return [model_cls.model_validate(r) for r in self._session.scalars(stmt)]

    def list_due_recurring(self, kind: RecurringKind, today: date) -> list[RecurringDefinition]:
        row_cls, model_cls = _RECURRING_ROWS[kind]
        stmt = (
            select(row_cls)
            .where(row_cls.is_active.is_(True), row_cls.next_run_date <= today)
            .order_by(row_cls.next_run_date, row_cls.created_at)
        )
        return [model_cls.model_validate(r) for r in self._session.scalars(stmt)]

    def delete_recurring(self, kind: RecurringKind, recurring_id: UUID) -> None:
        row_cls, _ = _RECURRING_ROWS[kind]
        row = self._session.get(row_cls, recurring_id)
        if row is None:
            raise NotFoundError(f"Recurring definition {recurring_id} not found")
        self._session.delete(row)
        self._flush()

    # -- credit cards --------------------------------------------------

    def add_card(self, card: CreditCard) -> CreditCard:
        return self._add(CreditCardRow, card)

    def save_card(self, card: CreditCard) -> CreditCard:
        return self._save(CreditCardRow, card, "Credit card")

    def get_card(self, card_id: UUID) -> Optional[CreditCard]:
        row = self._session.get(CreditCardRow, card_id)
        return CreditCard.model_validate(row) if row else None

    def list_cards_due(self, billing_day: int) -> list[CreditCard]:
        stmt = (
            select(CreditCardRow)
            .where(CreditCardRow.is_active.is_(True), CreditCardRow.billing_day == billing_day)
            .order_by(CreditCardRow.created_at, CreditCardRow.id)
        )
        return [CreditCard.model_validate(r) for r in self._session.scalars(stmt)]

    def add_card_charge(self, charge: CreditCardTransaction) -> CreditCardTransaction:
        return self._add(CreditCardTransactionRow, charge)

    def save_card_charge(self, charge: CreditCardTransaction) -> CreditCardTransaction:
        return self._save(CreditCardTransactionRow, charge, "Card transaction")

    def get_card_charge(self, charge_id: UUID) -> Optional[CreditCardTransaction]:
        row = self._session.get(CreditCardTransactionRow, charge_id)
        return CreditCardTransaction.model_validate(row) if row else None

    def delete_card_charge(self, charge_id: UUID) -> None:
        row = self._session.get(CreditCardTransactionRow, charge_id)
        if row is None:
            raise NotFoundError(f"Card transaction {charge_id} not found")
        self._session.delete(row)
        self._flush()

    def list_card_charges(
        self,
        card_id: UUID,
        status: Optional[CardTransactionStatus] = None,
    ) -> list[CreditCardTransaction]:
        stmt = select(CreditCardTransactionRow).where(
            CreditCardTransactionRow.credit_card_id == card_id
        )
        if status is not None:
            stmt = stmt.where(CreditCardTransactionRow.status == status)
        stmt = stmt.order_by(CreditCardTransactionRow.date.desc(), CreditCardTransactionRow.created_at)
        return [CreditCardTransaction.model_validate(r) for r in self._session.scalars(stmt)]

    def mark_charges_billed(
        self,
        charge_ids: list[UUID],
        billed_date: date,
        bank_transaction_id: UUID,
    ) -> int:
        if not charge_ids:
            return 0
        try:
            result = self._session.execute(
                update(CreditCardTransactionRow)
                .where(
                    CreditCardTransactionRow.id.in_(charge_ids),
                    CreditCardTransactionRow.status == CardTransactionStatus.PENDING,
                )
                .values(
                    status=CardTransactionStatus.BILLED,
                    billed_date=billed_date,
                    bank_transaction_id=bank_transaction_id,
                )
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            raise translate_error(e) from e
        return result.rowcount

    # -- notifications and tokens --------------------------------------

    def add_notification(self, notification: Notification) -> Notification:
        return self._add(NotificationRow, notification)

    def list_notifications(self, user_id: UUID) -> list[Notification]:
        stmt = (
            select(NotificationRow)
            .where(NotificationRow.user_id == user_id)
            .order_by(NotificationRow.created_at.desc())
        )
        return [Notification.model_validate(r) for r in self._session.scalars(stmt)]

    def add_api_token(self, token: ApiToken) -> ApiToken:
        return self._add(ApiTokenRow, token)

    def get_api_token(self, token: str) -> Optional[ApiToken]:
        row = self._session.scalars(select(ApiTokenRow).where(ApiTokenRow.token == token)).first()
        return ApiToken.model_validate(row) if row else None

    def touch_api_token(self, token_id: UUID, used_at: datetime) -> None:
        self._session.execute(
            update(ApiTokenRow).where(ApiTokenRow.id == token_id).values(last_used_at=used_at)
        )


# =============================================================================
# AUDIT STORAGE
# =============================================================================

class SqlAuditStorage(AuditStorageInterface):
    """
    Audit log table writer.

    Every append runs in its own short session, outside any ledger unit,
    so an audit failure can never roll back a ledger change.
    """

    def __init__(self, database: SqlDatabase):
        self._database = database

    def _event_to_row(self, event: AuditEvent) -> AuditLogRow:
        return AuditLogRow(
            event_id=event.event_id,
            timestamp=event.timestamp,
            event_type=event.event_type.value,
            severity=event.severity.value,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            user_id=event.user_id,
            correlation_id=event.correlation_id,
            description=event.description,
            details=event.details_json() or None,
            error_message=event.error_message,
            is_user_action=event.is_user_action,
        )

    def _row_to_event(self, row: AuditLogRow) -> AuditEvent:
        return AuditEvent(
            event_id=row.event_id,
            timestamp=row.timestamp,
            event_type=AuditEventType(row.event_type),
            severity=AuditSeverity(row.severity),
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            user_id=row.user_id,
            correlation_id=row.correlation_id,
            description=row.description,
            details=json.loads(row.details) if row.details else {},
            error_message=row.error_message,
            is_user_action=row.is_user_action,
        )

    def append_event(self, event: AuditEvent) -> bool:
        try:
            with self._database.session() as session, session.begin():
                session.add(self._event_to_row(event))
            return True
        except SQLAlchemyError as e:
            raise translate_error(e) from e

    def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        with self._database.session() as session:
            rows = session.scalars(
                select(AuditLogRow)
                .where(AuditLogRow.entity_type == entity_type, AuditLogRow.entity_id == entity_id)
                .order_by(AuditLogRow.timestamp)
            )
            return [self._row_to_event(r) for r in rows]

    def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        with self._database.session() as session:
            rows = session.scalars(
                select(AuditLogRow).order_by(AuditLogRow.timestamp.desc()).limit(limit)
            )
            return [self._row_to_event(r) for r in rows]
