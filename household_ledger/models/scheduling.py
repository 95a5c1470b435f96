"""
Recurring Schedule Models

RecurringTransaction (income or expense) and RecurringIncome (always
income) are templates: they never touch a balance themselves, they only
describe the ledger entry to materialize once per month.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from household_ledger.models.ledger import (
    ENTITY_CONFIG,
    PatchModel,
    Transaction,
    TransactionType,
    utcnow,
)


class RecurringKind(str, Enum):
    """The two definition flavours sharing one scheduling algorithm."""
    TRANSACTION = "transaction"
    INCOME = "income"

    @property
    def link_field(self) -> str:
        """Provenance column on Transaction that points back to the definition."""
        if self is RecurringKind.INCOME:
            return "recurring_income_id"
        return "recurring_transaction_id"


def _income_or_expense(v: TransactionType) -> TransactionType:
    if v == TransactionType.TRANSFER:
        raise ValueError("Recurring definitions must be income or expense")
    return v


class RecurringDefinition(BaseModel, ABC):
    """Fields common to both recurring flavours.

    Abstract: only RecurringTransaction and RecurringIncome are
    instantiated, each supplying its kind and entry type.
    """
    model_config = ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    account_id: UUID
    category_id: Optional[UUID] = None
    amount: Decimal = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    day_of_month: int = Field(..., ge=1, le=28)
    next_run_date: date
    last_run_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    @abstractmethod
    def kind(self) -> RecurringKind:
        pass

    @property
    @abstractmethod
    def transaction_type(self) -> TransactionType:
        pass


class RecurringTransaction(RecurringDefinition):
    type: TransactionType

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: TransactionType) -> TransactionType:
        return _income_or_expense(v)

    @property
    def kind(self) -> RecurringKind:
        return RecurringKind.TRANSACTION

    @property
    def transaction_type(self) -> TransactionType:
        return self.type


class RecurringIncome(RecurringDefinition):
    @property
    def kind(self) -> RecurringKind:
        return RecurringKind.INCOME

    @property
    def transaction_type(self) -> TransactionType:
        return TransactionType.INCOME


class RecurringIncomeCreate(BaseModel):
    """Input for a new recurring income definition."""
    model_config = ENTITY_CONFIG

    account_id: UUID
    category_id: Optional[UUID] = None
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=500)
    day_of_month: int = Field(..., ge=1, le=28)
    end_date: Optional[date] = None


class RecurringTransactionCreate(RecurringIncomeCreate):
    """Input for a new recurring transaction definition."""

    type: TransactionType

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: TransactionType) -> TransactionType:
        return _income_or_expense(v)


class RecurringPatch(PatchModel):
    """
    Partial update of a recurring definition.

    `type` only applies to RecurringTransaction; `end_date` may be
    cleared with an explicit null.
    """

    REQUIRED = frozenset(
        {"type", "amount", "description", "account_id", "day_of_month", "is_active"}
    )

    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    account_id: Optional[UUID] = None
    category_id: Optional[UUID] = None
    day_of_month: Optional[int] = Field(default=None, ge=1, le=28)
    end_date: Optional[date] = None
    is_active: Optional[bool] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: Optional[TransactionType]) -> Optional[TransactionType]:
        return _income_or_expense(v) if v is not None else v


class Schedule(BaseModel):
    """Result of the next-run computation for one day-of-month."""

    current_occurrence: date
    next_run_date: date
    catch_up_due: bool


class MaterializationStatus(str, Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"


class MaterializationResult(BaseModel):
    """Outcome of materializing one definition for one period."""
    model_config = ENTITY_CONFIG

    recurring_id: UUID
    status: MaterializationStatus
    transaction: Optional[Transaction] = None
    reason: Optional[str] = None

    @property
    def created(self) -> bool:
        return self.status == MaterializationStatus.CREATED


class RecurringRunItem(BaseModel):
    """Per-definition entry of a scheduler tick report."""
    model_config = ENTITY_CONFIG

    recurring_id: UUID
    status: str  # created | skipped | deactivated | error
    transaction_id: Optional[UUID] = None
    next_run_date: Optional[date] = None
    message: Optional[str] = None


class RecurringRunReport(BaseModel):
    """Summary of one `process_due` run."""
    model_config = ENTITY_CONFIG

    kind: RecurringKind
    processed: int = 0
    created: int = 0
    skipped: int = 0
    deactivated: int = 0
    failed: int = 0
    results: list[RecurringRunItem] = Field(default_factory=list)
    processed_at: datetime = Field(default_factory=utcnow)

    def record(self, item: RecurringRunItem) -> None:
        self.results.append(item)
        self.processed += 1
        if item.status == "created":
            self.created += 1
        elif item.status == "skipped":
            self.skipped += 1
        elif item.status == "deactivated":
            self.deactivated += 1
        elif item.status == "error":
            self.failed += 1


class RecurringCreated(BaseModel):
    """A newly persisted definition plus what its catch-up run did."""
    model_config = ENTITY_CONFIG

    definition: RecurringTransaction | RecurringIncome
    materialization: Optional[MaterializationResult] = None


class RecurringDeleteResult(BaseModel):
    model_config = ENTITY_CONFIG

    recurring_id: UUID
    deleted_transactions: int = 0
    reversed_amount: Decimal = Decimal("0")
