"""
Main Orchestrator for Household Ledger

Wires the ledger components together:
1. One database, one audit logger, one clock, one notification sink
2. The transaction store, which every other writer composes with
3. The recurring scheduler, billing cycle, consistency auditor and
   webhook ingestion on top of it

DESIGN DECISION: Every component takes its collaborators as arguments.
This factory is the only place that picks the concrete ones.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from household_ledger.audit import AuditLogger
from household_ledger.config import LedgerSettings, get_settings
from household_ledger.ledger.accounts import AccountService
from household_ledger.ledger.balance import BalanceLedger
from household_ledger.ledger.billing import CreditCardBillingCycle
from household_ledger.ledger.clock import Clock, SystemClock
from household_ledger.ledger.consistency import BalanceAuditor
from household_ledger.ledger.events import LoggingNotificationSink, NotificationSink
from household_ledger.ledger.recurring import RecurringScheduler
from household_ledger.ledger.transactions import TransactionService
from household_ledger.ledger.webhook import ShortcutIngestion
from household_ledger.storage import SqlAuditStorage, SqlDatabase
from household_ledger.validation import LedgerValidator

logger = structlog.get_logger(__name__)


@dataclass
class LedgerComponents:
    """Everything the HTTP surface (or a script) needs, already wired."""

    database: SqlDatabase
    settings: LedgerSettings
    clock: Clock
    audit: AuditLogger
    accounts: AccountService
    transactions: TransactionService
    recurring: RecurringScheduler
    billing: CreditCardBillingCycle
    consistency: BalanceAuditor
    webhook: ShortcutIngestion


def create_ledger_components(
    database: Optional[SqlDatabase] = None,
    clock: Optional[Clock] = None,
    sink: Optional[NotificationSink] = None,
    settings: Optional[LedgerSettings] = None,
    create_schema: bool = True,
) -> LedgerComponents:
    """
    Factory function to create all ledger components.

    Args:
        database: Defaults to SqlDatabase() on the configured URL
        clock: Defaults to the wall clock
        sink: Defaults to the structured-log sink
        settings: Defaults to LedgerSettings from the environment
        create_schema: Create missing tables on the database

    Returns:
        LedgerComponents
    """
    database = database or SqlDatabase()
    if create_schema:
        database.create_schema()

    settings = settings or get_settings().ledger
    clock = clock or SystemClock()
    sink = sink or LoggingNotificationSink()
    audit = AuditLogger(SqlAuditStorage(database))
    validator = LedgerValidator(settings)
    balance = BalanceLedger()

    transactions = TransactionService(
        database,
        balance=balance,
        validator=validator,
        audit=audit,
        sink=sink,
        settings=settings,
    )
    components = LedgerComponents(
        database=database,
        settings=settings,
        clock=clock,
        audit=audit,
        accounts=AccountService(database, audit=audit, settings=settings),
        transactions=transactions,
        recurring=RecurringScheduler(
            database,
            transactions,
            validator=validator,
            audit=audit,
            sink=sink,
            clock=clock,
            settings=settings,
        ),
        billing=CreditCardBillingCycle(
            database,
            transactions,
            validator=validator,
            audit=audit,
            sink=sink,
            clock=clock,
        ),
        consistency=BalanceAuditor(database, balance=balance, audit=audit),
        webhook=ShortcutIngestion(database, transactions, audit=audit, clock=clock),
    )
    logger.info("ledger_components_ready", database=database.url)
    return components
