"""
Audit Models for Household Ledger

Every change to the ledger is logged for audit purposes: balance
movements, failed batch items and integrity gaps.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from household_ledger.models.ledger import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every ledger-changing step has its own event type.
    """
    # Ledger entries
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"
    TRANSFER_CREATED = "transfer_created"

    # Accounts
    ACCOUNT_CREATED = "account_created"
    BALANCE_REPAIRED = "balance_repaired"

    # Recurring scheduler
    RECURRING_CREATED = "recurring_created"
    RECURRING_UPDATED = "recurring_updated"
    RECURRING_DELETED = "recurring_deleted"
    RECURRING_MATERIALIZED = "recurring_materialized"
    RECURRING_SKIPPED = "recurring_skipped"
    RECURRING_FAILED = "recurring_failed"
    RECURRING_DEACTIVATED = "recurring_deactivated"

    # Credit card billing
    CARD_BILLED = "card_billed"
    CARD_BILLING_FAILED = "card_billing_failed"

    # Ingestion
    WEBHOOK_INGESTED = "webhook_ingested"

    # System events
    INTEGRITY_GAP = "integrity_gap"
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every ledger change creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'transaction', 'credit_card')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )
    user_id: Optional[UUID] = Field(
        default=None,
        description="Owner of the entity"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., every card in one billing run)"
    )

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    # Additional data (event-specific)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_message: Optional[str] = None

    # User action tracking
    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "user_id": str(self.user_id) if self.user_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def details_json(self) -> str:
        """Details serialized for a text column. Decimals and UUIDs become strings."""
        return json.dumps(self.details, default=str) if self.details else ""


def _money(value: Decimal) -> str:
    return str(value)


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_created(
            txn.id, txn.user_id, txn.type.value, txn.amount, txn.account_id
        )
        event = AuditEventBuilder.card_billed(card_id, user_id, total, count, txn_id)
    """

    @staticmethod
    def transaction_created(
        transaction_id: UUID,
        user_id: UUID,
        transaction_type: str,
        amount: Decimal,
        account_id: UUID,
        source: str = "user",
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_CREATED,
            entity_type="transaction",
            entity_id=transaction_id,
            user_id=user_id,
            description=f"{transaction_type.capitalize()} of {_money(amount)} recorded",
            details={
                "type": transaction_type,
                "amount": _money(amount),
                "account_id": str(account_id),
                "source": source,
            },
            is_user_action=source == "user",
        )

    @staticmethod
    def transfer_created(
        source_id: UUID,
        destination_id: UUID,
        user_id: UUID,
        amount: Decimal,
        from_account_id: UUID,
        to_account_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSFER_CREATED,
            entity_type="transaction",
            entity_id=source_id,
            user_id=user_id,
            description=f"Transfer of {_money(amount)} recorded",
            details={
                "destination_transaction_id": str(destination_id),
                "amount": _money(amount),
                "from_account_id": str(from_account_id),
                "to_account_id": str(to_account_id),
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_updated(
        transaction_id: UUID,
        user_id: UUID,
        changed_fields: list[str],
        old_effect: Decimal,
        new_effect: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_UPDATED,
            entity_type="transaction",
            entity_id=transaction_id,
            user_id=user_id,
            description=f"Transaction updated: {', '.join(sorted(changed_fields)) or 'no changes'}",
            details={
                "changed_fields": sorted(changed_fields),
                "old_effect": _money(old_effect),
                "new_effect": _money(new_effect),
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_deleted(
        transaction_id: UUID,
        user_id: UUID,
        reversed_rows: int,
        reason: str = "user",
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETED,
            entity_type="transaction",
            entity_id=transaction_id,
            user_id=user_id,
            description=f"Transaction deleted ({reversed_rows} row(s) reversed)",
            details={
                "reversed_rows": reversed_rows,
                "reason": reason,
            },
            is_user_action=reason == "user",
        )

    @staticmethod
    def account_created(
        account_id: UUID,
        user_id: UUID,
        name: str,
        initial_balance: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCOUNT_CREATED,
            entity_type="account",
            entity_id=account_id,
            user_id=user_id,
            description=f"Account created: {name}",
            details={"initial_balance": _money(initial_balance)},
            is_user_action=True,
        )

    @staticmethod
    def balance_repaired(
        account_id: UUID,
        user_id: UUID,
        stored: Decimal,
        expected: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCE_REPAIRED,
            severity=AuditSeverity.WARNING,
            entity_type="account",
            entity_id=account_id,
            user_id=user_id,
            description=f"Balance drift of {_money(stored - expected)} repaired",
            details={
                "stored_balance": _money(stored),
                "expected_balance": _money(expected),
            },
        )

    @staticmethod
    def recurring_changed(
        event_type: AuditEventType,
        recurring_id: UUID,
        user_id: UUID,
        kind: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        verb = event_type.value.removeprefix("recurring_")
        return AuditEvent(
            event_type=event_type,
            entity_type=f"recurring_{kind}",
            entity_id=recurring_id,
            user_id=user_id,
            description=f"Recurring {kind} {verb}",
            details=details or {},
            is_user_action=event_type != AuditEventType.RECURRING_DEACTIVATED,
        )

    @staticmethod
    def recurring_materialized(
        recurring_id: UUID,
        user_id: UUID,
        kind: str,
        transaction_id: UUID,
        amount: Decimal,
        period_date: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_MATERIALIZED,
            entity_type=f"recurring_{kind}",
            entity_id=recurring_id,
            user_id=user_id,
            description=f"Recurring {kind} materialized for {period_date}",
            details={
                "transaction_id": str(transaction_id),
                "amount": _money(amount),
                "period_date": period_date,
            },
        )

    @staticmethod
    def recurring_skipped(
        recurring_id: UUID,
        user_id: UUID,
        kind: str,
        period_date: str,
        reason: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_SKIPPED,
            entity_type=f"recurring_{kind}",
            entity_id=recurring_id,
            user_id=user_id,
            description=f"Recurring {kind} skipped for {period_date}",
            details={"period_date": period_date, "reason": reason},
            is_user_action=False,
        )

    @staticmethod
    def recurring_failed(
        recurring_id: UUID,
        user_id: Optional[UUID],
        kind: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type=f"recurring_{kind}",
            entity_id=recurring_id,
            user_id=user_id,
            description=f"Recurring {kind} materialization failed",
            error_message=error_message,
        )

    @staticmethod
    def card_billed(
        card_id: UUID,
        user_id: UUID,
        total: Decimal,
        charge_count: int,
        transaction_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CARD_BILLED,
            entity_type="credit_card",
            entity_id=card_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Card settled: {charge_count} charge(s) totalling {_money(total)}",
            details={
                "total_amount": _money(total),
                "charge_count": charge_count,
                "bank_transaction_id": str(transaction_id),
            },
        )

    @staticmethod
    def card_billing_failed(
        card_id: UUID,
        user_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CARD_BILLING_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="credit_card",
            entity_id=card_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description="Card settlement failed",
            error_message=error_message,
        )

    @staticmethod
    def webhook_ingested(
        transaction_id: UUID,
        user_id: UUID,
        token_id: UUID,
        duplicate: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.WEBHOOK_INGESTED,
            entity_type="transaction",
            entity_id=transaction_id,
            user_id=user_id,
            description=(
                "Webhook replay returned the existing transaction"
                if duplicate
                else "Transaction ingested from webhook"
            ),
            details={
                "source": "shortcut",
                "token_id": str(token_id),
                "duplicate": duplicate,
            },
        )

    @staticmethod
    def integrity_gap(
        entity_type: str,
        entity_id: UUID,
        user_id: Optional[UUID],
        description: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INTEGRITY_GAP,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            description=description,
            details=details or {},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
