"""
Balance Ledger

The single primitive that moves an account's stored balance. Every
balance change in the system is exactly one `apply_delta` call per
logical effect, always inside the caller's unit of work.
"""

from decimal import Decimal
from uuid import UUID

import structlog

from household_ledger.models.ledger import Transaction, TransactionType, TransferRole
from household_ledger.storage.interface import LedgerStore, NotFoundError

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


def signed_effect(transaction: Transaction) -> Decimal:
    """
    Effect of one row on its own account.

    income +amount, expense -amount, transfer source -amount,
    transfer destination +amount.
    """
    if transaction.type == TransactionType.INCOME:
        return transaction.amount
    if transaction.type == TransactionType.EXPENSE:
        return -transaction.amount
    if transaction.transfer_role == TransferRole.DESTINATION:
        return transaction.amount
    return -transaction.amount


class BalanceLedger:
    """Applies signed deltas to account balances."""

    def apply_delta(self, store: LedgerStore, account_id: UUID, signed_amount: Decimal) -> Decimal:
        """
        Add `signed_amount` to the account's balance under a row lock.

        Raises:
            NotFoundError: If the account does not exist; the enclosing
                unit must roll back.
        """
        if signed_amount == ZERO:
            account = store.get_account(account_id)
            if account is None:
                raise NotFoundError(f"Account {account_id} not found")
            return account.balance

        new_balance = store.apply_balance_delta(account_id, signed_amount)
        logger.debug(
            "balance_moved",
            account_id=str(account_id),
            delta=str(signed_amount),
            balance=str(new_balance),
        )
        return new_balance

    def apply_effect(self, store: LedgerStore, transaction: Transaction) -> Decimal:
        return self.apply_delta(store, transaction.account_id, signed_effect(transaction))

    def reverse_effect(self, store: LedgerStore, transaction: Transaction) -> Decimal:
        return self.apply_delta(store, transaction.account_id, -signed_effect(transaction))
