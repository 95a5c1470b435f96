"""
HTTP surface for Household Ledger

A thin FastAPI layer over the ledger components. Handlers translate
requests into service calls and results into camelCase JSON; every
rule lives in household_ledger.

Identity: the authentication collaborator in front of this service
resolves the caller and forwards the user id in `X-User-Id`.
Batch endpoints (recurring processing, card billing) are meant for a
daily cron and require `Authorization: Bearer <LEDGER_CRON_SECRET>`
when a secret is configured.
"""

from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Optional
from uuid import UUID

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from household_ledger import __version__
from household_ledger.config import get_settings
from household_ledger.ledger.errors import (
    AuthenticationError,
    ConflictError,
    DuplicateError,
    IntegrityGapError,
    LedgerValidationError,
    NotFoundError,
    StorageError,
)
from household_ledger.models import (
    AccountCreate,
    CardTransactionStatus,
    CreditCardChargeCreate,
    CreditCardChargePatch,
    CreditCardCreate,
    RecurringIncomeCreate,
    RecurringKind,
    RecurringPatch,
    RecurringTransactionCreate,
    ShortcutWebhookPayload,
    TransactionCreate,
    TransactionPatch,
    TransactionType,
)
from household_ledger.orchestrator import LedgerComponents, create_ledger_components

logger = structlog.get_logger(__name__)


def _dump(value: Any) -> Any:
    """camelCase JSON for a model, or a list of models."""
    if isinstance(value, list):
        return [_dump(item) for item in value]
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, mode="json")
    return value


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_components(request: Request) -> LedgerComponents:
    return request.app.state.components


def get_user_id(x_user_id: Optional[str] = Header(None, alias="x-user-id")) -> UUID:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        return UUID(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid user identity") from exc


def require_cron(authorization: Optional[str] = Header(None)) -> None:
    secret = get_settings().cron.secret
    if secret and authorization != f"Bearer {secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


# =============================================================================
# APP
# =============================================================================

def create_app(components: Optional[LedgerComponents] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        components: Pre-wired ledger components. When None they are
            created from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "components", None) is None:
            app.state.components = create_ledger_components()
        yield

    app = FastAPI(title="Household Ledger", version=__version__, lifespan=lifespan)
    app.state.components = components

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(LedgerValidationError)
    async def validation_error(request: Request, exc: LedgerValidationError):
        return _error(400, str(exc), issues=[issue.model_dump() for issue in exc.issues])

    @app.exception_handler(AuthenticationError)
    async def authentication_error(request: Request, exc: AuthenticationError):
        return _error(401, str(exc))

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(IntegrityGapError)
    async def integrity_gap(request: Request, exc: IntegrityGapError):
        return _error(409, str(exc))

    @app.exception_handler(ConflictError)
    async def conflict(request: Request, exc: ConflictError):
        return _error(409, str(exc))

    @app.exception_handler(DuplicateError)
    async def duplicate(request: Request, exc: DuplicateError):
        return _error(409, str(exc))

    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError):
        logger.error("storage_error", path=request.url.path, error=str(exc))
        return _error(503, "Storage unavailable")


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health():
        return {"status": "ok", "version": __version__}

    # -- accounts ------------------------------------------------------

    @app.post("/accounts", status_code=status.HTTP_201_CREATED)
    def create_account(
        payload: AccountCreate,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        return {"account": _dump(components.accounts.create(user_id, payload))}

    @app.get("/accounts")
    def list_accounts(
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        return {"accounts": _dump(components.accounts.list_accounts(user_id))}

    @app.get("/accounts/balance-check")
    def balance_check(
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        checks = components.consistency.check(user_id)
        return {
            "consistent": all(check.is_consistent for check in checks),
            "accounts": _dump(checks),
        }

    @app.post("/accounts/recalculate-balances")
    def recalculate_balances(
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        checks = components.consistency.repair(user_id)
        return {
            "success": True,
            "repaired": sum(1 for check in checks if not check.is_consistent),
            "accounts": _dump(checks),
        }

    @app.get("/accounts/{account_id}")
    def get_account(
        account_id: UUID,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        return {"account": _dump(components.accounts.get(user_id, account_id))}

    # -- transactions --------------------------------------------------

    @app.post("/transactions", status_code=status.HTTP_201_CREATED)
    def create_transaction(
        payload: TransactionCreate,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        transaction = components.transactions.create(user_id, payload)
        return {"transaction": _dump(transaction)}

    @app.get("/transactions")
    def list_transactions(
        account_id: Optional[UUID] = Query(None, alias="accountId"),
        transaction_type: Optional[TransactionType] = Query(None, alias="type"),
        category_id: Optional[UUID] = Query(None, alias="categoryId"),
        date_from: Optional[date] = Query(None, alias="dateFrom"),
        date_to: Optional[date] = Query(None, alias="dateTo"),
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=500),
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        result = components.transactions.list_transactions(
            user_id,
            account_id=account_id,
            transaction_type=transaction_type,
            category_id=category_id,
            date_from=date_from,
            date_to=date_to,
            page=page,
            limit=limit,
        )
        return {
            "transactions": _dump(result.transactions),
            "pagination": {
                "page": result.page,
                "limit": result.limit,
                "total": result.total,
                "totalPages": result.total_pages,
            },
        }

    @app.get("/transactions/{transaction_id}")
    def get_transaction(
        transaction_id: UUID,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        return {"transaction": _dump(components.transactions.get(user_id, transaction_id))}

    @app.api_route("/transactions/{transaction_id}", methods=["PUT", "PATCH"])
    def update_transaction(
        transaction_id: UUID,
        patch: TransactionPatch,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        transaction = components.transactions.update(user_id, transaction_id, patch)
        return {"transaction": _dump(transaction)}

    @app.delete("/transactions/{transaction_id}")
    def delete_transaction(
        transaction_id: UUID,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        components.transactions.delete(user_id, transaction_id)
        return {"success": True}

    # -- recurring -----------------------------------------------------

    _register_recurring_routes(
        app,
        prefix="/recurring-transactions",
        kind=RecurringKind.TRANSACTION,
        key="recurringTransaction",
        create_model=RecurringTransactionCreate,
    )
    _register_recurring_routes(
        app,
        prefix="/recurring-income",
        kind=RecurringKind.INCOME,
        key="recurringIncome",
        create_model=RecurringIncomeCreate,
    )

    # -- credit cards --------------------------------------------------

    @app.post("/credit-cards/process-billing", dependencies=[Depends(require_cron)])
    def process_billing(components: LedgerComponents = Depends(get_components)):
        return _dump(components.billing.process_billing())

    @app.get("/credit-cards/process-billing")
    def preview_billing(components: LedgerComponents = Depends(get_components)):
        return _dump(components.billing.preview())

    @app.post("/credit-cards", status_code=status.HTTP_201_CREATED)
    def create_card(
        payload: CreditCardCreate,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        return {"creditCard": _dump(components.billing.create_card(user_id, payload))}

    @app.get("/credit-cards/{card_id}")
    def get_card(
        card_id: UUID,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        return {"creditCard": _dump(components.billing.get_card_summary(user_id, card_id))}

    @app.delete("/credit-cards/{card_id}")
    def deactivate_card(
        card_id: UUID,
        force: bool = False,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        card = components.billing.deactivate_card(user_id, card_id, force=force)
        return {"success": True, "creditCard": _dump(card)}

    @app.get("/credit-cards/{card_id}/transactions")
    def list_card_charges(
        card_id: UUID,
        charge_status: Optional[CardTransactionStatus] = Query(None, alias="status"),
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        charges = components.billing.list_charges(user_id, card_id, status=charge_status)
        return {"transactions": _dump(charges)}

    @app.post("/credit-cards/{card_id}/transactions", status_code=status.HTTP_201_CREATED)
    def add_card_charge(
        card_id: UUID,
        payload: CreditCardChargeCreate,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        return {"transaction": _dump(components.billing.add_charge(user_id, card_id, payload))}

    @app.patch("/credit-cards/{card_id}/transactions/{charge_id}")
    def update_card_charge(
        card_id: UUID,
        charge_id: UUID,
        patch: CreditCardChargePatch,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        charge = components.billing.update_charge(user_id, card_id, charge_id, patch)
        return {"transaction": _dump(charge)}

    @app.delete("/credit-cards/{card_id}/transactions/{charge_id}")
    def delete_card_charge(
        card_id: UUID,
        charge_id: UUID,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        components.billing.delete_charge(user_id, card_id, charge_id)
        return {"success": True}

    # -- webhook -------------------------------------------------------

    @app.post("/webhook/shortcut")
    def shortcut_webhook(
        payload: ShortcutWebhookPayload,
        authorization: Optional[str] = Header(None),
        components: LedgerComponents = Depends(get_components),
    ):
        transaction, created = components.webhook.ingest(_bearer_token(authorization), payload)
        return JSONResponse(
            status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
            content={
                "success": True,
                "transaction": _dump(transaction),
                "message": (
                    "Transaction created successfully"
                    if created
                    else "Transaction already exists (idempotent)"
                ),
            },
        )


def _register_recurring_routes(
    app: FastAPI,
    prefix: str,
    kind: RecurringKind,
    key: str,
    create_model: type[BaseModel],
) -> None:
    """Both recurring flavours expose the same routes under their own prefix."""

    @app.get(prefix, name=f"list_{kind.value}_recurring")
    def list_definitions(
        transaction_type: Optional[TransactionType] = Query(None, alias="type"),
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        definitions = components.recurring.list_definitions(kind, user_id, transaction_type)
        return {f"{key}s": _dump(definitions)}

    @app.post(prefix, status_code=status.HTTP_201_CREATED, name=f"create_{kind.value}_recurring")
    def create_definition(
        payload: create_model,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        if kind == RecurringKind.INCOME:
            created = components.recurring.create_income_definition(user_id, payload)
        else:
            created = components.recurring.create_transaction_definition(user_id, payload)
        return {
            key: _dump(created.definition),
            "materialization": _dump(created.materialization),
        }

    @app.post(
        f"{prefix}/process",
        dependencies=[Depends(require_cron)],
        name=f"process_{kind.value}_recurring",
    )
    def process_due(components: LedgerComponents = Depends(get_components)):
        return _dump(components.recurring.process_due(kind))

    @app.api_route(
        f"{prefix}/{{recurring_id}}",
        methods=["PUT", "PATCH"],
        name=f"update_{kind.value}_recurring",
    )
    def update_definition(
        recurring_id: UUID,
        patch: RecurringPatch,
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        definition = components.recurring.update(kind, user_id, recurring_id, patch)
        return {key: _dump(definition)}

    @app.delete(f"{prefix}/{{recurring_id}}", name=f"delete_{kind.value}_recurring")
    def delete_definition(
        recurring_id: UUID,
        delete_transactions: bool = Query(False, alias="deleteTransactions"),
        user_id: UUID = Depends(get_user_id),
        components: LedgerComponents = Depends(get_components),
    ):
        result = components.recurring.delete(
            kind, user_id, recurring_id, delete_transactions=delete_transactions
        )
        return {"success": True, **_dump(result)}


app = create_app()
