"""
Abstract Storage Interface

DESIGN DECISION: Ledger services only see these abstract operations.
- Every read and write happens inside one atomic unit of work
- Driver errors surface as the small exception family below

Narrow on purpose: not an ORM, just the operations the ledger engine needs.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional, TypeVar
from uuid import UUID

from household_ledger.models.audit import AuditEvent
from household_ledger.models.billing import (
    CardTransactionStatus,
    CreditCard,
    CreditCardTransaction,
)
from household_ledger.models.ledger import (
    Account,
    ApiToken,
    Category,
    Notification,
    Transaction,
    TransactionType,
)
from household_ledger.models.scheduling import (
    RecurringDefinition,
    RecurringKind,
)

T = TypeVar("T")


class LedgerStore(ABC):
    """
    Reads and writes bound to one open unit of work.

    Nothing here commits; the owning UnitOfWork decides that.
    """

    # ------------------------------------------------------------------
    # Accounts and categories
    # ------------------------------------------------------------------

    @abstractmethod
    def add_account(self, account: Account) -> Account:
        pass

    @abstractmethod
    def get_account(self, account_id: UUID) -> Optional[Account]:
        pass

    @abstractmethod
    def set_account_active(self, account_id: UUID, is_active: bool) -> None:
        """Flip the active flag. Never touches the balance."""
        pass

    @abstractmethod
    def list_accounts(self, user_id: Optional[UUID] = None, active_only: bool = False) -> list[Account]:
        """
        List accounts, oldest first.

        Args:
            user_id: Restrict to one owner (None = every account)
            active_only: Skip deactivated accounts
        """
        pass

    @abstractmethod
    def apply_balance_delta(self, account_id: UUID, delta: Decimal) -> Decimal:
        """
        Add `delta` to an account's stored balance under a row lock.

        Args:
            account_id: Target account
            delta: Signed amount to add

        Returns:
            The new balance

        Raises:
            NotFoundError: If the account does not exist
        """
        pass

    @abstractmethod
    def add_category(self, category: Category) -> Category:
        pass

    @abstractmethod
    def get_category(self, category_id: UUID) -> Optional[Category]:
        pass

    @abstractmethod
    def list_categories(self, user_id: UUID) -> list[Category]:
        """The user's own categories plus the shared defaults."""
        pass

    # ------------------------------------------------------------------
    # Ledger entries
    # ------------------------------------------------------------------

    @abstractmethod
    def add_transaction(self, transaction: Transaction) -> Transaction:
        """
        Insert a ledger entry.

        Raises:
            DuplicateError: If the idempotency key is already taken
        """
        pass

    @abstractmethod
    def save_transaction(self, transaction: Transaction) -> Transaction:
        """
        Overwrite a stored ledger entry with the given state.

        Raises:
            NotFoundError: If the entry doesn't exist
        """
        pass

    @abstractmethod
    def get_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        pass

    @abstractmethod
    def get_transaction_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    def delete_transaction(self, transaction_id: UUID) -> None:
        pass

    @abstractmethod
    def list_transactions(
        self,
        user_id: UUID,
        account_id: Optional[UUID] = None,
        transaction_type: Optional[TransactionType] = None,
        category_id: Optional[UUID] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        """
        List ledger entries with optional filters, newest first.

        Returns:
            (page of entries, total number of matching entries)
        """
        pass

    @abstractmethod
    def list_account_transactions(self, account_id: UUID) -> list[Transaction]:
        """Every entry posted to one account."""
        pass

    @abstractmethod
    def find_recurring_transactions(
        self,
        kind: RecurringKind,
        recurring_id: UUID,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[Transaction]:
        """
        Entries produced by one recurring definition.

        Args:
            kind: Which provenance column to match
            recurring_id: The definition
            date_from: Inclusive lower bound on the entry date
            date_to: Inclusive upper bound on the entry date
        """
        pass

    # ------------------------------------------------------------------
    # Recurring definitions
    # ------------------------------------------------------------------

    @abstractmethod
    def add_recurring(self, definition: RecurringDefinition) -> RecurringDefinition:
        pass

    @abstractmethod
    def save_recurring(self, definition: RecurringDefinition) -> RecurringDefinition:
        pass

    @abstractmethod
    def get_recurring(
        self,
        kind: RecurringKind,
        recurring_id: UUID,
        for_update: bool = False,
    ) -> Optional[RecurringDefinition]:
        """
        Load one definition.

        Args:
            for_update: Lock the row until the unit of work ends. Callers
                that check for an existing entry before materializing
                hold this lock across the check and the insert.
        """
        pass

    @abstractmethod
    def list_recurring(
        self,
        kind: RecurringKind,
        user_id: UUID,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[RecurringDefinition]:
        pass

    @abstractmethod
    def list_due_recurring(self, kind: RecurringKind, today: date) -> list[RecurringDefinition]:
        """Active definitions whose next run date is today or earlier."""
        pass

    @abstractmethod
    def delete_recurring(self, kind: RecurringKind, recurring_id: UUID) -> None:
        pass

    # ------------------------------------------------------------------
    # Credit cards
    # ------------------------------------------------------------------

    @abstractmethod
    def add_card(self, card: CreditCard) -> CreditCard:
        pass

    @abstractmethod
    def save_card(self, card: CreditCard) -> CreditCard:
        pass

    @abstractmethod
    def get_card(self, card_id: UUID) -> Optional[CreditCard]:
        pass

    @abstractmethod
    def list_cards_due(self, billing_day: int) -> list[CreditCard]:
        """Active cards whose billing day is `billing_day`."""
        pass

    @abstractmethod
    def add_card_charge(self, charge: CreditCardTransaction) -> CreditCardTransaction:
        pass

    @abstractmethod
    def save_card_charge(self, charge: CreditCardTransaction) -> CreditCardTransaction:
        pass

    @abstractmethod
    def get_card_charge(self, charge_id: UUID) -> Optional[CreditCardTransaction]:
        pass

    @abstractmethod
    def delete_card_charge(self, charge_id: UUID) -> None:
        pass

    @abstractmethod
    def list_card_charges(
        self,
        card_id: UUID,
        status: Optional[CardTransactionStatus] = None,
    ) -> list[CreditCardTransaction]:
        pass

    @abstractmethod
    def mark_charges_billed(
        self,
        charge_ids: list[UUID],
        billed_date: date,
        bank_transaction_id: UUID,
    ) -> int:
        """
        Move the given pending charges to billed.

        Only rows still pending are touched.

        Returns:
            Number of rows transitioned
        """
        pass

    # ------------------------------------------------------------------
    # Notifications and API tokens
    # ------------------------------------------------------------------

    @abstractmethod
    def add_notification(self, notification: Notification) -> Notification:
        pass

    @abstractmethod
    def list_notifications(self, user_id: UUID) -> list[Notification]:
        pass

    @abstractmethod
    def add_api_token(self, token: ApiToken) -> ApiToken:
        pass

    @abstractmethod
    def get_api_token(self, token: str) -> Optional[ApiToken]:
        pass

    @abstractmethod
    def touch_api_token(self, token_id: UUID, used_at: datetime) -> None:
        pass


class UnitOfWork(ABC):
    """
    One atomic unit against the store.

    Used as a context manager: a clean exit commits, an exception rolls
    everything back. Hooks registered with `on_commit` run only after a
    successful commit, and their failures are logged, never raised.
    """

    store: LedgerStore

    @abstractmethod
    def __enter__(self) -> "UnitOfWork":
        pass

    @abstractmethod
    def __exit__(self, exc_type, exc, tb) -> bool:
        pass

    @abstractmethod
    def on_commit(self, hook: Callable[[], None]) -> None:
        pass


class LedgerDatabase(ABC):
    """Factory for units of work."""

    @abstractmethod
    def unit_of_work(self) -> UnitOfWork:
        pass

    @abstractmethod
    def atomic(self, work: Callable[[UnitOfWork], T]) -> T:
        """Run `work` in a fresh unit, retrying the whole unit on lock conflicts."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Args:
            entity_type: Type of entity (e.g., 'transaction', 'credit_card')
            entity_id: The entity's ID

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Args:
            limit: Maximum number of events to return

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConflictError(StorageError):
    """The store refused the unit because of a lock or serialization conflict."""
    pass