"""
Core Ledger Models for Household Ledger

These models define the strict schemas for every entity the ledger
engine reads or writes. They are designed to:
1. Enforce type safety at runtime
2. Keep money exact (Decimal everywhere, never float)
3. Be serializable for storage, logging and the HTTP surface
4. Make partial updates explicit (omitted vs. cleared)

DESIGN DECISION: Entities are plain Pydantic v2 models, separate from the
SQLAlchemy rows. The storage layer converts between the two, so business
logic never touches a session-bound object.
"""

import datetime as dt
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    model_validator,
)
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# camelCase on the wire, snake_case in Python; both accepted on input.
ENTITY_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    from_attributes=True,
    str_strip_whitespace=True,
)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """
    Kind of ledger entry.

    The type decides the sign of the entry's effect on its account.
    """
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class TransferRole(str, Enum):
    """Which side of a transfer pair a row is."""
    SOURCE = "source"            # debited side, -amount
    DESTINATION = "destination"  # credited side, +amount


class AccountType(str, Enum):
    BANK = "bank"
    CASH = "cash"
    CREDIT = "credit"


class CategoryType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    BOTH = "both"

    def accepts(self, transaction_type: TransactionType) -> bool:
        """Whether entries of the given type may use this category."""
        if self is CategoryType.BOTH:
            return True
        return self.value == transaction_type.value


# =============================================================================
# CORE ENTITIES
# =============================================================================

class Account(BaseModel):
    """
    A money container with a stored running balance.

    CRITICAL: `balance` is a derived-but-stored aggregate. It is written
    directly only once, at creation (the initial balance). Every later
    change goes through the balance ledger.
    """
    model_config = ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    name: str = Field(..., min_length=1, max_length=100)
    account_type: AccountType = AccountType.BANK
    currency: str = Field(default="USD", min_length=3, max_length=3)
    balance: Decimal = Decimal("0")
    initial_balance: Decimal = Decimal("0")
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Category(BaseModel):
    """A spending/earning category. `user_id=None` marks a shared default."""
    model_config = ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    user_id: Optional[UUID] = None
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType = CategoryType.BOTH

    def is_visible_to(self, user_id: UUID) -> bool:
        return self.user_id is None or self.user_id == user_id


class Transaction(BaseModel):
    """
    A ledger entry.

    Immutable-by-replacement: an edit reverses the stored effect and
    reapplies the new one. A transfer is two rows, tagged with
    `transfer_role` and linked to each other through
    `transfer_to_transaction_id`.
    """
    model_config = ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    account_id: UUID
    type: TransactionType
    amount: Decimal = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    date: date
    notes: Optional[str] = Field(default=None, max_length=1000)
    category_id: Optional[UUID] = None

    # Provenance
    recurring_transaction_id: Optional[UUID] = None
    recurring_income_id: Optional[UUID] = None

    # Transfer pairing
    transfer_to_account_id: Optional[UUID] = None
    transfer_to_transaction_id: Optional[UUID] = None
    transfer_role: Optional[TransferRole] = None

    # External ingestion
    idempotency_key: Optional[str] = Field(default=None, max_length=200)
    external_id: Optional[str] = Field(default=None, max_length=200)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_transfer(self) -> bool:
        return self.type == TransactionType.TRANSFER

    @model_validator(mode="after")
    def validate_transfer_shape(self) -> "Transaction":
        """A transfer row must know its role; other rows must not have one."""
        if self.type == TransactionType.TRANSFER and self.transfer_role is None:
            raise ValueError("Transfer entries need a transfer_role")
        if self.type != TransactionType.TRANSFER and self.transfer_role is not None:
            raise ValueError("Only transfer entries carry a transfer_role")
        return self


class TransferPair(BaseModel):
    """
    Both sides of a transfer, resolved together.

    Either side may be missing when the store has lost a row; that
    asymmetry is an integrity gap the caller must handle explicitly.
    """

    source: Optional[Transaction] = None
    destination: Optional[Transaction] = None
    source_account_id: UUID
    destination_account_id: UUID
    amount: Decimal

    @property
    def is_complete(self) -> bool:
        return self.source is not None and self.destination is not None

    @property
    def rows(self) -> list[Transaction]:
        return [row for row in (self.source, self.destination) if row is not None]


class Notification(BaseModel):
    """A user-facing notification persisted next to the ledger change."""
    model_config = ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    type: str = Field(..., max_length=50)
    title: str = Field(..., max_length=200)
    message: str = Field(..., max_length=1000)
    details: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class ApiToken(BaseModel):
    """Bearer token used by the external webhook integration."""
    model_config = ENTITY_CONFIG

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    token: str = Field(..., min_length=8, max_length=200)
    name: Optional[str] = None
    is_active: bool = True
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def is_usable(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        return self.expires_at is None or self.expires_at >= now


# =============================================================================
# INPUT MODELS
# =============================================================================

class AccountCreate(BaseModel):
    """Input for creating an account. The initial balance is set here only."""
    model_config = ENTITY_CONFIG

    name: str = Field(..., min_length=1, max_length=100)
    account_type: AccountType = AccountType.BANK
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    initial_balance: Decimal = Field(default=Decimal("0"), decimal_places=2)


class TransactionCreate(BaseModel):
    """Input for creating a ledger entry (direct, scheduled or ingested)."""
    model_config = ENTITY_CONFIG

    account_id: UUID
    type: TransactionType
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=500)
    date: date
    notes: Optional[str] = Field(default=None, max_length=1000)
    category_id: Optional[UUID] = None
    transfer_to_account_id: Optional[UUID] = None
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=200)
    external_id: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def validate_transfer_target(self) -> "TransactionCreate":
        """Transfers need a distinct destination; other entries must not have one."""
        if self.type == TransactionType.TRANSFER:
            if self.transfer_to_account_id is None:
                raise ValueError("Transfers require transfer_to_account_id")
            if self.transfer_to_account_id == self.account_id:
                raise ValueError("Cannot transfer to the same account")
        elif self.transfer_to_account_id is not None:
            raise ValueError("Only transfers may set transfer_to_account_id")
        return self


class PatchModel(BaseModel):
    """
    Base for partial updates.

    Only fields present in the payload are applied. `model_fields_set`
    tells "omitted" apart from "explicitly set to null"; fields listed
    in REQUIRED cannot be cleared.
    """
    model_config = ENTITY_CONFIG

    REQUIRED: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def reject_cleared_required_fields(self) -> "PatchModel":
        for name in self.model_fields_set & self.REQUIRED:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be cleared")
        return self

    def changes(self) -> dict[str, Any]:
        """The fields that were actually provided, with their values."""
        return {name: getattr(self, name) for name in self.model_fields_set}

    def has(self, name: str) -> bool:
        return name in self.model_fields_set


class TransactionPatch(PatchModel):
    """Partial update of a ledger entry."""

    REQUIRED = frozenset({"account_id", "type", "amount", "description", "date"})

    account_id: Optional[UUID] = None
    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(default=None, gt=0, decimal_places=2)
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    date: Optional[dt.date] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    category_id: Optional[UUID] = None


class TransactionPage(BaseModel):
    """One page of ledger entries."""
    model_config = ENTITY_CONFIG

    transactions: list[Transaction]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'not_found', 'in_past')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        default="error",
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )
    suggested_fix: Optional[str] = Field(
        default=None,
        description="Suggested fix if available"
    )


# =============================================================================
# CONSISTENCY MODELS
# =============================================================================

class BalanceCheck(BaseModel):
    """Stored balance of one account compared with what its entries imply."""
    model_config = ENTITY_CONFIG

    account_id: UUID
    account_name: str
    stored_balance: Decimal
    expected_balance: Decimal
    entry_count: int = 0

    @computed_field
    @property
    def drift(self) -> Decimal:
        return self.stored_balance - self.expected_balance

    @computed_field
    @property
    def is_consistent(self) -> bool:
        return self.drift == 0


# =============================================================================
# WEBHOOK MODELS
# =============================================================================

class ShortcutWebhookPayload(BaseModel):
    """
    Body posted by the phone-shortcut integration.

    Account and category are free-text names resolved server-side.
    """
    model_config = ENTITY_CONFIG

    type: TransactionType
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=500)
    category: Optional[str] = Field(default=None, max_length=100)
    account: Optional[str] = Field(default=None, max_length=100)
    date: Optional[datetime] = None
    idempotency_key: str = Field(..., min_length=1, max_length=200)

    @model_validator(mode="after")
    def reject_transfers(self) -> "ShortcutWebhookPayload":
        if self.type == TransactionType.TRANSFER:
            raise ValueError("The shortcut webhook only records income or expense")
        return self
