"""
Accounts, categories and webhook tokens.

The small collaborators the ledger core needs in order to have
something to post against.
"""

import secrets
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from household_ledger.audit.logger import AuditLogger
from household_ledger.config import LedgerSettings, get_settings
from household_ledger.ledger.errors import NotFoundError
from household_ledger.models.audit import AuditEventBuilder
from household_ledger.models.ledger import (
    Account,
    AccountCreate,
    ApiToken,
    Category,
    CategoryType,
)
from household_ledger.storage.interface import LedgerDatabase, UnitOfWork

logger = structlog.get_logger(__name__)


class AccountService:
    def __init__(
        self,
        database: LedgerDatabase,
        audit: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
    ):
        self._database = database
        self._audit = audit or AuditLogger()
        self._settings = settings or get_settings().ledger

    def create(self, user_id: UUID, data: AccountCreate) -> Account:
        """
        Open an account.

        This is the only place a balance is written directly: the
        stored balance starts at the initial balance.
        """
        account = Account(
            user_id=user_id,
            name=data.name,
            account_type=data.account_type,
            currency=(data.currency or self._settings.default_currency).upper(),
            balance=data.initial_balance,
            initial_balance=data.initial_balance,
        )

        def work(uow: UnitOfWork) -> Account:
            uow.store.add_account(account)
            self._audit.log_after_commit(uow, AuditEventBuilder.account_created(
                account_id=account.id,
                user_id=user_id,
                name=account.name,
                initial_balance=account.initial_balance,
            ))
            return account

        return self._database.atomic(work)

    def get(self, user_id: UUID, account_id: UUID) -> Account:
        account = self._database.atomic(lambda uow: uow.store.get_account(account_id))
        if account is None or account.user_id != user_id:
            raise NotFoundError("Account not found")
        return account

    def set_active(self, user_id: UUID, account_id: UUID, is_active: bool) -> Account:
        """Activate or deactivate an account. Its entries and balance are kept."""

        def work(uow: UnitOfWork) -> Account:
            account = uow.store.get_account(account_id)
            if account is None or account.user_id != user_id:
                raise NotFoundError("Account not found")
            uow.store.set_account_active(account_id, is_active)
            return account.model_copy(update={"is_active": is_active})

        account = self._database.atomic(work)
        logger.info("account_active_changed", account_id=str(account_id), is_active=is_active)
        return account

    def list_accounts(self, user_id: UUID, active_only: bool = False) -> list[Account]:
        return self._database.atomic(
            lambda uow: uow.store.list_accounts(user_id, active_only=active_only)
        )

    def add_category(
        self,
        user_id: Optional[UUID],
        name: str,
        category_type: CategoryType = CategoryType.BOTH,
    ) -> Category:
        """Add a category. `user_id=None` creates a shared default."""
        category = Category(user_id=user_id, name=name, type=category_type)
        return self._database.atomic(lambda uow: uow.store.add_category(category))

    def list_categories(self, user_id: UUID) -> list[Category]:
        return self._database.atomic(lambda uow: uow.store.list_categories(user_id))

    def issue_api_token(
        self,
        user_id: UUID,
        name: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> ApiToken:
        """Create a bearer token for the shortcut webhook."""
        token = ApiToken(
            user_id=user_id,
            token=secrets.token_urlsafe(32),
            name=name,
            expires_at=expires_at,
        )
        self._database.atomic(lambda uow: uow.store.add_api_token(token))
        logger.info("api_token_issued", user_id=str(user_id), token_id=str(token.id))
        return token
