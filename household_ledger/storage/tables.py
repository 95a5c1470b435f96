"""
Relational schema for the ledger.

Row classes mirror the pydantic entities field for field, so
`Entity.model_validate(row)` and `Row(**entity.model_dump())` are the
only conversions the store needs.
"""

import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from household_ledger.models.billing import CardTransactionStatus
from household_ledger.models.ledger import (
    AccountType,
    CategoryType,
    TransactionType,
    TransferRole,
    utcnow,
)


class Money(TypeDecorator):
    """
    Exact decimal stored as text.

    SQLite has no fixed-point type; NUMERIC affinity would round-trip
    through float. Sums are computed in Python on Decimal values.
    """

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


def _enum(enum_cls, name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    pass


class AccountRow(Base):
    __tablename__ = "account"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(_enum(AccountType, "account_type"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Money, nullable=False)
    initial_balance: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class CategoryRow(Base):
    __tablename__ = "category"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[Optional[UUID]] = mapped_column(Uuid, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(_enum(CategoryType, "category_type"), nullable=False)


class TransactionRow(Base):
    __tablename__ = "ledger_transaction"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    account_id: Mapped[UUID] = mapped_column(ForeignKey("account.id"), nullable=False)
    type: Mapped[TransactionType] = mapped_column(_enum(TransactionType, "transaction_type"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    category_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("category.id", ondelete="SET NULL"))

    # Provenance links stay as historical references after the definition is gone.
    recurring_transaction_id: Mapped[Optional[UUID]] = mapped_column(Uuid)
    recurring_income_id: Mapped[Optional[UUID]] = mapped_column(Uuid)

    transfer_to_account_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("account.id"))
    transfer_to_transaction_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("ledger_transaction.id", ondelete="SET NULL")
    )
    transfer_role: Mapped[Optional[TransferRole]] = mapped_column(_enum(TransferRole, "transfer_role"))

    idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), unique=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(200))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_ledger_transaction_user_date", "user_id", "date"),
        Index("ix_ledger_transaction_account", "account_id"),
        Index("ix_ledger_transaction_recurring", "recurring_transaction_id", "date"),
        Index("ix_ledger_transaction_recurring_income", "recurring_income_id", "date"),
        CheckConstraint(
            "(type = 'transfer') = (transfer_role IS NOT NULL)",
            name="ck_transfer_role_only_on_transfers",
        ),
    )


class _RecurringColumns:
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, index=True, nullable=False)
    account_id: Mapped[UUID] = mapped_column(ForeignKey("account.id"), nullable=False)
    category_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("category.id", ondelete="SET NULL"))
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    day_of_month: Mapped[int] = mapped_column(Integer, nullable=False)
    next_run_date: Mapped[date] = mapped_column(Date, nullable=False)
    last_run_date: Mapped[Optional[date]] = mapped_column(Date)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class RecurringTransactionRow(_RecurringColumns, Base):
    __tablename__ = "recurring_transaction"

    type: Mapped[TransactionType] = mapped_column(_enum(TransactionType, "recurring_type"), nullable=False)

    __table_args__ = (
        CheckConstraint("day_of_month BETWEEN 1 AND 28", name="ck_recurring_transaction_day"),
        CheckConstraint("type != 'transfer'", name="ck_recurring_transaction_type"),
    )


class RecurringIncomeRow(_RecurringColumns, Base):
    __tablename__ = "recurring_income"

    __table_args__ = (
        CheckConstraint("day_of_month BETWEEN 1 AND 28", name="ck_recurring_income_day"),
    )


class CreditCardRow(Base):
    __tablename__ = "credit_card"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_four_digits: Mapped[str] = mapped_column(String(4), nullable=False)
    billing_day: Mapped[int] = mapped_column(Integer, nullable=False)
    # No FK: a card whose linked account vanished must still surface as a per-card error.
    linked_account_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    credit_limit: Mapped[Optional[Decimal]] = mapped_column(Money)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("billing_day BETWEEN 1 AND 28", name="ck_credit_card_billing_day"),
        Index("ix_credit_card_due", "is_active", "billing_day"),
    )


class CreditCardTransactionRow(Base):
    __tablename__ = "credit_card_transaction"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    credit_card_id: Mapped[UUID] = mapped_column(
        ForeignKey("credit_card.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    category_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("category.id", ondelete="SET NULL"))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[CardTransactionStatus] = mapped_column(
        _enum(CardTransactionStatus, "card_transaction_status"), nullable=False
    )
    billed_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    bank_transaction_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("ledger_transaction.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_card_transaction_status", "credit_card_id", "status"),
    )


class NotificationRow(Base):
    __tablename__ = "notification"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, index=True, nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(String(1000), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class ApiTokenRow(Base):
    __tablename__ = "api_token"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    token: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class AuditLogRow(Base):
    """Append-only audit trail. Columns follow AuditEvent.to_log_dict()."""

    __tablename__ = "audit_log"

    event_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(50))
    entity_id: Mapped[Optional[UUID]] = mapped_column(Uuid)
    user_id: Mapped[Optional[UUID]] = mapped_column(Uuid)
    correlation_id: Mapped[Optional[UUID]] = mapped_column(Uuid)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    details: Mapped[Optional[str]] = mapped_column(Text)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    is_user_action: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )
