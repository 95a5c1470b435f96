"""Validation package."""

from household_ledger.validation.validator import EntryReferences, LedgerValidator

__all__ = ["EntryReferences", "LedgerValidator"]
