"""
Credit Card Billing Models

A card never holds a balance. Its pending exposure is derived from the
charges still in `pending`; on the billing day those charges are folded
into one settlement entry on the linked account and move to `billed`.
"""

import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, computed_field, field_validator

from household_ledger.models.ledger import ENTITY_CONFIG, PatchModel, utcnow


class CardTransactionStatus(str, Enum):
    """
    Lifecycle of a card charge.

    pending -> billed happens exactly once, during settlement.
    """
    PENDING = "pending"
    BILLED = "billed"


class BillingStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


class CreditCard(BaseModel):
    model_config = ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    name: str = Field(..., min_length=1, max_length=100)
    last_four_digits: str = Field(..., pattern=r"^\d{4}$")
    billing_day: int = Field(..., ge=1, le=28)
    linked_account_id: UUID
    credit_limit: Optional[Decimal] = Field(default=None, gt=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def settlement_description(self) -> str:
        return f"Credit card charge – {self.name} ••••{self.last_four_digits}"


class CreditCardTransaction(BaseModel):
    """A charge made on a card. No balance effect until it is billed."""
    model_config = ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    credit_card_id: UUID
    amount: Decimal = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    date: date
    category_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    status: CardTransactionStatus = CardTransactionStatus.PENDING
    billed_date: Optional[date] = None
    bank_transaction_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.status == CardTransactionStatus.PENDING


# =============================================================================
# INPUT MODELS
# =============================================================================

class CreditCardCreate(BaseModel):
    model_config = ENTITY_CONFIG

    name: str = Field(..., min_length=1, max_length=100)
    last_four_digits: str = Field(..., pattern=r"^\d{4}$")
    billing_day: int = Field(..., ge=1, le=28)
    linked_account_id: UUID
    credit_limit: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)


class CreditCardChargeCreate(BaseModel):
    model_config = ENTITY_CONFIG

    amount: Decimal = Field(..., gt=0, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=500)
    date: date
    category_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class CreditCardChargePatch(PatchModel):
    """Partial update of a pending charge."""

    REQUIRED = frozenset({"amount", "description", "date"})

    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    date: Optional[dt.date] = None
    category_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


# =============================================================================
# RESULT MODELS
# =============================================================================

class CardBillingResult(BaseModel):
    """Outcome for one card in a billing run."""
    model_config = ENTITY_CONFIG

    card_id: UUID
    card_name: str
    status: BillingStatus
    amount: Optional[Decimal] = None
    transaction_count: int = 0
    transaction_id: Optional[UUID] = None
    message: Optional[str] = None
    error: Optional[str] = None


class BillingRunReport(BaseModel):
    model_config = ENTITY_CONFIG

    processed: int
    results: list[CardBillingResult] = Field(default_factory=list)
    processed_at: datetime = Field(default_factory=utcnow)


class CardBillingPreview(BaseModel):
    """What a billing run would settle for one card, computed read-only."""
    model_config = ENTITY_CONFIG

    card_id: UUID
    card_name: str
    last_four_digits: str
    linked_account_name: Optional[str] = None
    pending_amount: Decimal
    pending_count: int


class BillingPreview(BaseModel):
    model_config = ENTITY_CONFIG

    billing_day: int
    cards_count: int
    preview: list[CardBillingPreview] = Field(default_factory=list)


class CreditCardSummary(BaseModel):
    """A card together with its derived pending exposure."""
    model_config = ENTITY_CONFIG

    card: CreditCard
    linked_account_name: Optional[str] = None
    pending_amount: Decimal = Decimal("0")
    pending_count: int = 0
    days_until_billing: int

    @computed_field
    @property
    def limit_used_percent(self) -> Optional[int]:
        if self.card.credit_limit is None:
            return None
        return round(self.pending_amount / self.card.credit_limit * 100)

    @field_validator("days_until_billing")
    @classmethod
    def validate_days(cls, v: int) -> int:
        if v < 0:
            raise ValueError("days_until_billing cannot be negative")
        return v
