"""
Data Models Package

This package contains all Pydantic models used by the Household Ledger engine.
All data flowing through the system must conform to these schemas.
"""

from household_ledger.models.ledger import (
    Account,
    AccountCreate,
    AccountType,
    ApiToken,
    BalanceCheck,
    Category,
    CategoryType,
    Notification,
    PatchModel,
    ShortcutWebhookPayload,
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
from household_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Account",
    "AccountCreate",
    "AccountType",
    "ApiToken",
    "BalanceCheck",
    "Category",
    "CategoryType",
    "Notification",
    "PatchModel",
    "ShortcutWebhookPayload",
    "Transaction",
    "TransactionCreate",
    "TransactionPage",
    "TransactionPatch",
    "TransactionType",
    "TransferPair",
    "TransferRole",
    "ValidationIssue",
    "utcnow",
    # Scheduling models
    "MaterializationResult",
    "MaterializationStatus",
    "RecurringCreated",
    "RecurringDefinition",
    "RecurringDeleteResult",
    "RecurringIncome",
    "RecurringIncomeCreate",
    "RecurringKind",
    "RecurringPatch",
    "RecurringRunItem",
    "RecurringRunReport",
    "RecurringTransaction",
    "RecurringTransactionCreate",
    "Schedule",
    # Billing models
    "BillingPreview",
    "BillingRunReport",
    "BillingStatus",
    "CardBillingPreview",
    "CardBillingResult",
    "CardTransactionStatus",
    "CreditCard",
    "CreditCardChargeCreate",
    "CreditCardChargePatch",
    "CreditCardCreate",
    "CreditCardSummary",
    "CreditCardTransaction",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
