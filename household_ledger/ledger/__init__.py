"""
Ledger engine package.

The services live in their own modules (transactions, recurring,
billing, consistency, accounts, webhook) and are wired together by
household_ledger.orchestrator. This package re-exports the pieces
every caller needs: the error taxonomy, the clock and the balance
primitive.
"""

from household_ledger.ledger.errors import (
    AuthenticationError,
    ConflictError,
    DuplicateError,
    IntegrityGapError,
    LedgerError,
    LedgerValidationError,
    NotFoundError,
    StorageError,
)
from household_ledger.ledger.clock import Clock, FixedClock, SystemClock
from household_ledger.ledger.balance import BalanceLedger, signed_effect
from household_ledger.ledger.events import (
    LedgerEvent,
    LoggingNotificationSink,
    NotificationSink,
)

__all__ = [
    # Errors
    "AuthenticationError",
    "ConflictError",
    "DuplicateError",
    "IntegrityGapError",
    "LedgerError",
    "LedgerValidationError",
    "NotFoundError",
    "StorageError",
    # Time
    "Clock",
    "FixedClock",
    "SystemClock",
    # Balance
    "BalanceLedger",
    "signed_effect",
    # Events
    "LedgerEvent",
    "LoggingNotificationSink",
    "NotificationSink",
]
