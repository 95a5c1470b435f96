"""
Ledger Input Validation

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - SCHEMA VALIDATION (pydantic, at the model boundary):
- Type checking
- Required field presence
- Ranges (dayOfMonth in 1..28, amount > 0)
- Transfer shape

STAGE 2 - SEMANTIC VALIDATION (this module, against the store):
- Referenced account/category exists and belongs to the caller
- Account is active
- Category type is compatible with the entry type
- Amount ceiling
- End dates not already in the past

Stage 2 needs the store; stage 1 does not.

IMPORTANT: Validation NEVER silently fixes issues.
Every issue found is reported together.
"""

from datetime import date
from decimal import Decimal
from typing import NamedTuple, Optional
from uuid import UUID

from household_ledger.config import LedgerSettings, get_settings
from household_ledger.ledger.errors import LedgerValidationError, NotFoundError
from household_ledger.models.ledger import (
    Account,
    Category,
    TransactionType,
    ValidationIssue,
)
from household_ledger.storage.interface import LedgerStore


class EntryReferences(NamedTuple):
    """The rows an entry points at, resolved and checked."""

    account: Account
    category: Optional[Category] = None
    destination: Optional[Account] = None


class LedgerValidator:
    """
    Semantic checks shared by the transaction store, the scheduler
    and the billing cycle.
    """

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger

    @staticmethod
    def raise_for(issues: list[ValidationIssue]) -> None:
        """Raise if any collected issue is an error (warnings pass)."""
        errors = [issue for issue in issues if issue.severity == "error"]
        if errors:
            raise LedgerValidationError(errors)

    # ------------------------------------------------------------------
    # Reference resolution
    # ------------------------------------------------------------------

    def owned_account(
        self,
        store: LedgerStore,
        user_id: UUID,
        account_id: UUID,
        label: str = "Account",
    ) -> Account:
        account = store.get_account(account_id)
        if account is None or account.user_id != user_id:
            raise NotFoundError(f"{label} not found")
        return account

    def owned_category(
        self,
        store: LedgerStore,
        user_id: UUID,
        category_id: UUID,
    ) -> Category:
        category = store.get_category(category_id)
        if category is None or not category.is_visible_to(user_id):
            raise NotFoundError("Category not found")
        return category

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check_active(self, account: Account, field: str = "account_id") -> list[ValidationIssue]:
        if account.is_active:
            return []
        return [ValidationIssue(
            field=field,
            issue_type="inactive",
            message=f"Account '{account.name}' is inactive",
            suggested_fix="Reactivate the account or choose another one",
        )]

    def check_category_type(
        self,
        category: Category,
        transaction_type: TransactionType,
    ) -> list[ValidationIssue]:
        if transaction_type == TransactionType.TRANSFER or category.type.accepts(transaction_type):
            return []
        return [ValidationIssue(
            field="category_id",
            issue_type="incompatible",
            message=(
                f"Category '{category.name}' is for {category.type.value} entries, "
                f"not {transaction_type.value}"
            ),
            suggested_fix="Pick a category of the same type or one marked 'both'",
        )]

    def check_amount(self, amount: Decimal, field: str = "amount") -> list[ValidationIssue]:
        issues = []
        if amount <= 0:
            issues.append(ValidationIssue(
                field=field,
                issue_type="invalid_value",
                message="Amount must be greater than zero",
            ))
        elif amount > self._settings.max_transaction_amount:
            issues.append(ValidationIssue(
                field=field,
                issue_type="out_of_range",
                message=(
                    f"Amount {amount} exceeds the maximum of "
                    f"{self._settings.max_transaction_amount}"
                ),
                suggested_fix="Check the amount for a misplaced decimal point",
            ))
        return issues

    def check_end_date(self, end_date: Optional[date], today: date) -> list[ValidationIssue]:
        if end_date is None or end_date >= today:
            return []
        return [ValidationIssue(
            field="end_date",
            issue_type="in_past",
            message=f"End date {end_date.isoformat()} is already in the past",
            suggested_fix="Use a future end date or leave it empty",
        )]

    def check_recurring_type(self, transaction_type: TransactionType) -> list[ValidationIssue]:
        if transaction_type != TransactionType.TRANSFER:
            return []
        return [ValidationIssue(
            field="type",
            issue_type="invalid_value",
            message="Recurring definitions must be income or expense",
        )]

    # ------------------------------------------------------------------
    # Composite
    # ------------------------------------------------------------------

    def validate_entry(
        self,
        store: LedgerStore,
        user_id: UUID,
        account_id: UUID,
        transaction_type: TransactionType,
        amount: Decimal,
        category_id: Optional[UUID] = None,
        transfer_to_account_id: Optional[UUID] = None,
    ) -> EntryReferences:
        """
        Resolve and check everything a ledger entry references.

        Raises:
            NotFoundError: A referenced account/category is missing or not the caller's
            LedgerValidationError: Every semantic issue found
        """
        account = self.owned_account(store, user_id, account_id)
        category = (
            self.owned_category(store, user_id, category_id)
            if category_id is not None
            else None
        )
        destination = None
        if transfer_to_account_id is not None:
            destination = self.owned_account(
                store, user_id, transfer_to_account_id, label="Destination account"
            )

        issues = self.check_amount(amount)
        issues += self.check_active(account)
        if category is not None:
            issues += self.check_category_type(category, transaction_type)
        if transaction_type == TransactionType.TRANSFER:
            if destination is None:
                issues.append(ValidationIssue(
                    field="transfer_to_account_id",
                    issue_type="missing",
                    message="Transfers require a destination account",
                ))
            else:
                issues += self.check_active(destination, field="transfer_to_account_id")
                if destination.id == account.id:
                    issues.append(ValidationIssue(
                        field="transfer_to_account_id",
                        issue_type="invalid_value",
                        message="Cannot transfer to the same account",
                    ))
        self.raise_for(issues)

        return EntryReferences(account=account, category=category, destination=destination)
