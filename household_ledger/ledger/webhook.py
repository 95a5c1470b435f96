"""
Shortcut webhook ingestion.

A phone shortcut posts one income or expense with a bearer token and an
idempotency key. Account and category arrive as free text and are
resolved against the token owner's data:

- account: case-insensitive substring match among active accounts,
  falling back to the oldest active account
- category: case-insensitive substring match among categories whose
  type accepts the entry; no match leaves the entry uncategorised

The entry itself is created through the transaction store, so replays
of the same key return the stored entry and move no balance.
"""

from typing import Optional
from uuid import UUID

import structlog

from household_ledger.audit.logger import AuditLogger
from household_ledger.ledger.clock import Clock, SystemClock
from household_ledger.ledger.errors import AuthenticationError, LedgerValidationError
from household_ledger.ledger.transactions import TransactionService
from household_ledger.models.audit import AuditEventBuilder
from household_ledger.models.ledger import (
    Account,
    ApiToken,
    Category,
    ShortcutWebhookPayload,
    Transaction,
    TransactionCreate,
)
from household_ledger.storage.interface import LedgerDatabase, LedgerStore

logger = structlog.get_logger(__name__)


def _matches(needle: Optional[str], name: str) -> bool:
    return bool(needle) and needle.casefold() in name.casefold()


class ShortcutIngestion:
    def __init__(
        self,
        database: LedgerDatabase,
        transactions: TransactionService,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Clock] = None,
    ):
        self._database = database
        self._transactions = transactions
        self._audit = audit or AuditLogger()
        self._clock = clock or SystemClock()

    def authenticate(self, token: Optional[str]) -> ApiToken:
        """
        Resolve a bearer token to its ApiToken.

        Raises:
            AuthenticationError: Missing, unknown, inactive or expired token
        """
        if not token:
            raise AuthenticationError("Missing or invalid authorization header")
        api_token = self._database.atomic(lambda uow: uow.store.get_api_token(token))
        if api_token is None or not api_token.is_active:
            raise AuthenticationError("Invalid or inactive API token")
        if not api_token.is_usable(self._clock.now()):
            raise AuthenticationError("API token has expired")
        return api_token

    def ingest(self, token: Optional[str], payload: ShortcutWebhookPayload) -> tuple[Transaction, bool]:
        """
        Record one webhook entry.

        Returns:
            (entry, created) - created is False for a replayed key
        """
        api_token = self.authenticate(token)
        user_id = api_token.user_id

        transaction = self._transactions.replay(user_id, payload.idempotency_key)
        created = False
        if transaction is None:
            data = self._database.atomic(lambda uow: self._build_entry(uow.store, user_id, payload))
            transaction, created = self._transactions.create_or_replay(
                user_id, data, source="shortcut"
            )

        now = self._clock.now()
        self._database.atomic(lambda uow: uow.store.touch_api_token(api_token.id, now))

        self._audit.log(AuditEventBuilder.webhook_ingested(
            transaction_id=transaction.id,
            user_id=user_id,
            token_id=api_token.id,
            duplicate=not created,
        ))
        return transaction, created

    def _build_entry(
        self,
        store: LedgerStore,
        user_id: UUID,
        payload: ShortcutWebhookPayload,
    ) -> TransactionCreate:
        account = self._resolve_account(store, user_id, payload.account)
        category = self._resolve_category(store, user_id, payload)
        entry_date = payload.date.date() if payload.date else self._clock.today()
        return TransactionCreate(
            account_id=account.id,
            type=payload.type,
            amount=payload.amount,
            description=payload.description,
            date=entry_date,
            category_id=category.id if category else None,
            idempotency_key=payload.idempotency_key,
            external_id=f"shortcut_{payload.idempotency_key}",
        )

    def _resolve_account(self, store: LedgerStore, user_id: UUID, name: Optional[str]) -> Account:
        accounts = store.list_accounts(user_id, active_only=True)
        if not accounts:
            raise LedgerValidationError.single(
                field="account",
                issue_type="missing",
                message="No active account found. Please create an account first.",
            )
        for account in accounts:
            if _matches(name, account.name):
                return account
        if name:
            logger.info("webhook_account_fallback", user_id=str(user_id), requested=name)
        # Oldest first.
        return accounts[0]

    def _resolve_category(
        self,
        store: LedgerStore,
        user_id: UUID,
        payload: ShortcutWebhookPayload,
    ) -> Optional[Category]:
        if not payload.category:
            return None
        for category in store.list_categories(user_id):
            if category.type.accepts(payload.type) and _matches(payload.category, category.name):
                return category
        return None
