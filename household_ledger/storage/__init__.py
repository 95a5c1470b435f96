"""
Storage Package

Provides abstract interfaces and the SQLAlchemy implementation for the
ledger's persistent state. Designed to be swappable.
"""

from household_ledger.storage.interface import (
    AuditStorageInterface,
    ConflictError,
    DuplicateError,
    LedgerDatabase,
    LedgerStore,
    NotFoundError,
    StorageError,
    UnitOfWork,
)
from household_ledger.storage.sql import (
    SqlAuditStorage,
    SqlDatabase,
    SqlLedgerStore,
    SqlUnitOfWork,
    translate_error,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerDatabase",
    "LedgerStore",
    "UnitOfWork",
    # Exceptions
    "ConflictError",
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # SQLAlchemy implementation
    "SqlAuditStorage",
    "SqlDatabase",
    "SqlLedgerStore",
    "SqlUnitOfWork",
    "translate_error",
]
