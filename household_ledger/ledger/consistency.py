"""
Balance consistency checks.

Recomputes what each account's balance should be from its entries and
compares it with the stored value:

    expected = initial_balance + sum(signed_effect(entry))

Repair never writes a balance directly; drift is closed with one
Balance Ledger delta per account and audited as a balance repair.
"""

from typing import Optional
from uuid import UUID

import structlog

from household_ledger.audit.logger import AuditLogger
from household_ledger.ledger.balance import ZERO, BalanceLedger, signed_effect
from household_ledger.models.audit import AuditEventBuilder
from household_ledger.models.ledger import Account, BalanceCheck
from household_ledger.storage.interface import LedgerDatabase, LedgerStore, UnitOfWork

logger = structlog.get_logger(__name__)


class BalanceAuditor:
    def __init__(
        self,
        database: LedgerDatabase,
        balance: Optional[BalanceLedger] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self._database = database
        self._balance = balance or BalanceLedger()
        self._audit = audit or AuditLogger()

    def _check_account(self, store: LedgerStore, account: Account) -> BalanceCheck:
        entries = store.list_account_transactions(account.id)
        expected = account.initial_balance + sum(
            (signed_effect(entry) for entry in entries), ZERO
        )
        return BalanceCheck(
            account_id=account.id,
            account_name=account.name,
            stored_balance=account.balance,
            expected_balance=expected,
            entry_count=len(entries),
        )

    def check(self, user_id: Optional[UUID] = None) -> list[BalanceCheck]:
        """Stored vs. expected balance for every account (of one user, if given)."""

        def work(uow: UnitOfWork) -> list[BalanceCheck]:
            return [
                self._check_account(uow.store, account)
                for account in uow.store.list_accounts(user_id)
            ]

        checks = self._database.atomic(work)
        drifting = [c for c in checks if not c.is_consistent]
        if drifting:
            logger.warning(
                "balance_drift_detected",
                accounts=[str(c.account_id) for c in drifting],
            )
        return checks

    def repair(self, user_id: UUID) -> list[BalanceCheck]:
        """
        Bring every drifting account of `user_id` back in line.

        Returns:
            The checks as they stood before the repair
        """

        def work(uow: UnitOfWork) -> list[BalanceCheck]:
            checks = []
            for account in uow.store.list_accounts(user_id):
                check = self._check_account(uow.store, account)
                checks.append(check)
                if check.is_consistent:
                    continue
                self._balance.apply_delta(uow.store, account.id, -check.drift)
                self._audit.log_after_commit(uow, AuditEventBuilder.balance_repaired(
                    account_id=account.id,
                    user_id=user_id,
                    stored=check.stored_balance,
                    expected=check.expected_balance,
                ))
            return checks

        checks = self._database.atomic(work)
        logger.info(
            "balances_recalculated",
            user_id=str(user_id),
            accounts=len(checks),
            repaired=sum(1 for c in checks if not c.is_consistent),
        )
        return checks
