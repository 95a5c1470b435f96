"""
Ledger error taxonomy.

Storage-level failures (StorageError, NotFoundError, DuplicateError,
ConflictError) live in household_ledger.storage.interface and are
re-exported here so callers import one module.
"""

from typing import Optional
from uuid import UUID

from household_ledger.models.ledger import ValidationIssue
from household_ledger.storage.interface import (
    ConflictError,
    DuplicateError,
    NotFoundError,
    StorageError,
)


class LedgerError(Exception):
    """Base exception for ledger rule violations."""
    pass


class LedgerValidationError(LedgerError):
    """
    Input is well-formed but not acceptable.

    Carries every issue found, not just the first.
    """

    def __init__(self, issues: list[ValidationIssue], message: Optional[str] = None):
        self.issues = issues
        super().__init__(message or "; ".join(issue.message for issue in issues) or "Invalid input")

    @classmethod
    def single(
        cls,
        field: str,
        issue_type: str,
        message: str,
        suggested_fix: Optional[str] = None,
    ) -> "LedgerValidationError":
        return cls([
            ValidationIssue(
                field=field,
                issue_type=issue_type,
                message=message,
                suggested_fix=suggested_fix,
            )
        ])


class IntegrityGapError(LedgerError):
    """Stored data breaks a structural invariant (e.g. a transfer missing its sibling)."""

    def __init__(
        self,
        message: str,
        entity_type: str = "transaction",
        entity_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.user_id = user_id
        self.details = details or {}


class AuthenticationError(LedgerError):
    """The caller could not be resolved to a user."""
    pass


__all__ = [
    "AuthenticationError",
    "ConflictError",
    "DuplicateError",
    "IntegrityGapError",
    "LedgerError",
    "LedgerValidationError",
    "NotFoundError",
    "StorageError",
]
