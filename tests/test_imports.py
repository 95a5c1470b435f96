"""
Import smoke tests.

Service classes are evaluated at import time, so a method name that
rebinds a builtin used by a later annotation breaks the whole package.
"""

import importlib
import pkgutil

import pytest

import household_ledger


def _modules():
    yield "app.main"
    for info in pkgutil.walk_packages(household_ledger.__path__, prefix="household_ledger."):
        yield info.name


class TestImports:
    @pytest.mark.parametrize("name", list(_modules()))
    def test_module_imports(self, name):
        assert importlib.import_module(name) is not None

    def test_app_factory_available(self):
        main = importlib.import_module("app.main")
        assert callable(main.create_app)

    @pytest.mark.parametrize(
        "module, cls",
        [
            ("household_ledger.ledger.accounts", "AccountService"),
            ("household_ledger.ledger.transactions", "TransactionService"),
            ("household_ledger.ledger.recurring", "RecurringScheduler"),
            ("household_ledger.ledger.billing", "CreditCardBillingCycle"),
        ],
    )
    def test_services_do_not_rebind_builtins(self, module, cls):
        service = getattr(importlib.import_module(module), cls)
        for builtin in ("list", "dict", "set", "type"):
            assert builtin not in vars(service)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
