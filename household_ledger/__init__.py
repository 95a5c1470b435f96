"""
Household Ledger - Source Package

The ledger-consistency and settlement engine of a household finance
tracker: account balances, ledger entries, recurring schedules and
credit card billing cycles.

DESIGN PRINCIPLES:
1. Every balance change goes through one primitive
2. Every logical operation is one atomic unit
3. Schedulers and batches are safe to run twice
4. Side effects happen after commit, never before
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Household Ledger Team"
