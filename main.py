import logging
from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from cache import LedgerCache
from config import get_settings
from database import SessionLocal
from errors import LedgerError, UnauthorizedError
from identity import TokenIdentity, refresh_access_token
from models import TransactionType
from ordering import ScopeLocks
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    CategoryIn,
    CategoryNode,
    CategoryOut,
    CategoryUpdate,
    EnvelopeIn,
    EnvelopeOut,
    EnvelopeUpdate,
    IncomeSourceIn,
    IncomeSourceOut,
    IncomeSourceUpdate,
    PayeeIn,
    PayeeOut,
    PayeeUpdate,
    RefreshRequest,
    ReorderItem,
    TokenPair,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
)
from services import LedgerServices, TransactionFilters, build_services

logger = logging.getLogger(__name__)

app = FastAPI(title="Envelope Ledger")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()

ledger_cache = LedgerCache(max_entries=get_settings().cache_max_entries)
scope_locks = ScopeLocks()
scheduler_manager = SchedulerManager(cache=ledger_cache)


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()
    ledger_cache.clear()


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(
            "request_failed: path=%s code=%s", request.url.path, exc.kind.value
        )
    return JSONResponse(status_code=exc.status_code, content=exc.payload())


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_identity(
    authorization: Optional[str] = Header(default=None),
    x_refresh_token: Optional[str] = Header(default=None),
) -> TokenIdentity:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("Missing bearer token")
    return TokenIdentity(token.strip(), x_refresh_token)


def get_services(
    db: Session = Depends(get_db),
    identity: TokenIdentity = Depends(get_identity),
) -> LedgerServices:
    return build_services(db, identity, ledger_cache, scope_locks)


def no_content() -> Response:
    return Response(status_code=204)


@app.get("/api/version")
def api_version():
    return {"version": APP_VERSION}


@app.post("/api/auth/refresh", response_model=TokenPair)
def api_refresh(payload: RefreshRequest):
    return refresh_access_token(payload.refresh_token)


# Budgets


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(services: LedgerServices = Depends(get_services)):
    return services.budgets.list()


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(payload: BudgetIn, services: LedgerServices = Depends(get_services)):
    return services.budgets.create(payload)


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(budget_id: int, services: LedgerServices = Depends(get_services)):
    return services.budgets.get(budget_id)


@app.patch("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    payload: BudgetUpdate,
    services: LedgerServices = Depends(get_services),
):
    return services.budgets.update(budget_id, payload)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(budget_id: int, services: LedgerServices = Depends(get_services)):
    services.budgets.delete(budget_id)
    return no_content()


# Categories


@app.get("/api/budgets/{budget_id}/categories", response_model=list[CategoryOut])
def list_categories(budget_id: int, services: LedgerServices = Depends(get_services)):
    return services.categories.list(budget_id)


@app.get(
    "/api/budgets/{budget_id}/categories/tree", response_model=list[CategoryNode]
)
def category_tree(budget_id: int, services: LedgerServices = Depends(get_services)):
    return services.categories.tree(budget_id)


@app.post(
    "/api/budgets/{budget_id}/categories", response_model=CategoryOut, status_code=201
)
def create_category(
    budget_id: int,
    payload: CategoryIn,
    services: LedgerServices = Depends(get_services),
):
    return services.categories.create(budget_id, payload)


@app.put("/api/budgets/{budget_id}/categories/reorder", status_code=204)
def reorder_categories(
    budget_id: int,
    items: list[ReorderItem],
    services: LedgerServices = Depends(get_services),
):
    services.ordering.reorder_categories(budget_id, items)
    return no_content()


@app.get("/api/categories/{category_id}", response_model=CategoryOut)
def get_category(category_id: int, services: LedgerServices = Depends(get_services)):
    return services.categories.get(category_id)


@app.patch("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    services: LedgerServices = Depends(get_services),
):
    return services.categories.update(category_id, payload)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int, services: LedgerServices = Depends(get_services)
):
    services.categories.delete(category_id)
    return no_content()


# Envelopes


@app.get("/api/budgets/{budget_id}/envelopes", response_model=list[EnvelopeOut])
def list_envelopes(
    budget_id: int,
    category_id: Optional[int] = None,
    services: LedgerServices = Depends(get_services),
):
    if category_id is not None:
        return services.envelopes.by_category(budget_id, category_id)
    return services.envelopes.list(budget_id)


@app.get(
    "/api/budgets/{budget_id}/envelopes/low-balance", response_model=list[EnvelopeOut]
)
def low_balance_envelopes(
    budget_id: int, services: LedgerServices = Depends(get_services)
):
    return services.envelopes.low_balance(budget_id)


@app.get(
    "/api/budgets/{budget_id}/envelopes/negative", response_model=list[EnvelopeOut]
)
def negative_envelopes(
    budget_id: int, services: LedgerServices = Depends(get_services)
):
    return services.envelopes.negative(budget_id)


@app.post(
    "/api/budgets/{budget_id}/envelopes", response_model=EnvelopeOut, status_code=201
)
def create_envelope(
    budget_id: int,
    payload: EnvelopeIn,
    services: LedgerServices = Depends(get_services),
):
    return services.envelopes.create(budget_id, payload)


@app.put("/api/budgets/{budget_id}/envelopes/reorder", status_code=204)
def reorder_envelopes(
    budget_id: int,
    items: list[ReorderItem],
    services: LedgerServices = Depends(get_services),
):
    services.ordering.reorder_envelopes(budget_id, items)
    return no_content()


@app.get("/api/envelopes/{envelope_id}", response_model=EnvelopeOut)
def get_envelope(envelope_id: int, services: LedgerServices = Depends(get_services)):
    return services.envelopes.get(envelope_id)


@app.patch("/api/envelopes/{envelope_id}", response_model=EnvelopeOut)
def update_envelope(
    envelope_id: int,
    payload: EnvelopeUpdate,
    services: LedgerServices = Depends(get_services),
):
    return services.envelopes.update(envelope_id, payload)


@app.delete("/api/envelopes/{envelope_id}", status_code=204)
def delete_envelope(
    envelope_id: int, services: LedgerServices = Depends(get_services)
):
    services.envelopes.delete(envelope_id)
    return no_content()


# Payees


@app.get("/api/budgets/{budget_id}/payees", response_model=list[PayeeOut])
def list_payees(budget_id: int, services: LedgerServices = Depends(get_services)):
    return services.payees.list(budget_id)


@app.get("/api/budgets/{budget_id}/payees/search", response_model=list[PayeeOut])
def search_payees(
    budget_id: int,
    q: str = "",
    limit: int = 10,
    services: LedgerServices = Depends(get_services),
):
    return services.payees.search(budget_id, q, limit=min(max(limit, 1), 50))


@app.get("/api/budgets/{budget_id}/payees/top", response_model=list[PayeeOut])
def top_payees(
    budget_id: int,
    limit: int = 10,
    services: LedgerServices = Depends(get_services),
):
    return services.payees.top(budget_id, limit=min(max(limit, 1), 50))


@app.post("/api/budgets/{budget_id}/payees", response_model=PayeeOut, status_code=201)
def create_payee(
    budget_id: int,
    payload: PayeeIn,
    services: LedgerServices = Depends(get_services),
):
    return services.payees.create(budget_id, payload)


@app.get("/api/payees/{payee_id}", response_model=PayeeOut)
def get_payee(payee_id: int, services: LedgerServices = Depends(get_services)):
    return services.payees.get(payee_id)


@app.patch("/api/payees/{payee_id}", response_model=PayeeOut)
def update_payee(
    payee_id: int,
    payload: PayeeUpdate,
    services: LedgerServices = Depends(get_services),
):
    return services.payees.update(payee_id, payload)


@app.delete("/api/payees/{payee_id}", status_code=204)
def delete_payee(payee_id: int, services: LedgerServices = Depends(get_services)):
    services.payees.delete(payee_id)
    return no_content()


# Income sources


@app.get(
    "/api/budgets/{budget_id}/income-sources", response_model=list[IncomeSourceOut]
)
def list_income_sources(
    budget_id: int, services: LedgerServices = Depends(get_services)
):
    return services.income_sources.list(budget_id)


@app.get(
    "/api/budgets/{budget_id}/income-sources/upcoming",
    response_model=list[IncomeSourceOut],
)
def upcoming_income(
    budget_id: int,
    days: int = 30,
    services: LedgerServices = Depends(get_services),
):
    return services.income_sources.upcoming(budget_id, days=max(days, 0))


@app.get(
    "/api/budgets/{budget_id}/income-sources/overdue",
    response_model=list[IncomeSourceOut],
)
def overdue_income(budget_id: int, services: LedgerServices = Depends(get_services)):
    return services.income_sources.overdue(budget_id)


@app.post(
    "/api/budgets/{budget_id}/income-sources",
    response_model=IncomeSourceOut,
    status_code=201,
)
def create_income_source(
    budget_id: int,
    payload: IncomeSourceIn,
    services: LedgerServices = Depends(get_services),
):
    return services.income_sources.create(budget_id, payload)


@app.get("/api/income-sources/{income_source_id}", response_model=IncomeSourceOut)
def get_income_source(
    income_source_id: int, services: LedgerServices = Depends(get_services)
):
    return services.income_sources.get(income_source_id)


@app.patch("/api/income-sources/{income_source_id}", response_model=IncomeSourceOut)
def update_income_source(
    income_source_id: int,
    payload: IncomeSourceUpdate,
    services: LedgerServices = Depends(get_services),
):
    return services.income_sources.update(income_source_id, payload)


@app.delete("/api/income-sources/{income_source_id}", status_code=204)
def delete_income_source(
    income_source_id: int, services: LedgerServices = Depends(get_services)
):
    services.income_sources.delete(income_source_id)
    return no_content()


# Transactions


@app.get("/api/budgets/{budget_id}/transactions")
def list_transactions(
    budget_id: int,
    page: int = 1,
    limit: int = 50,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    transaction_type: Optional[TransactionType] = None,
    envelope_id: Optional[int] = None,
    payee_id: Optional[int] = None,
    income_source_id: Optional[int] = None,
    category_id: Optional[int] = None,
    is_cleared: Optional[bool] = None,
    is_reconciled: Optional[bool] = None,
    min_amount: Optional[Decimal] = None,
    max_amount: Optional[Decimal] = None,
    services: LedgerServices = Depends(get_services),
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    offset = (page - 1) * limit
    filters = TransactionFilters(
        start_date=start_date,
        end_date=end_date,
        transaction_type=transaction_type,
        envelope_id=envelope_id,
        payee_id=payee_id,
        income_source_id=income_source_id,
        category_id=category_id,
        is_cleared=is_cleared,
        is_reconciled=is_reconciled,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    items = services.transactions.list(
        budget_id, filters, limit=limit + 1, offset=offset
    )
    has_more = len(items) > limit
    items = items[:limit]
    return {
        "items": [
            TransactionOut.model_validate(txn).model_dump(mode="json") for txn in items
        ],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.get(
    "/api/budgets/{budget_id}/transactions/recent",
    response_model=list[TransactionOut],
)
def recent_transactions(
    budget_id: int,
    limit: int = 10,
    services: LedgerServices = Depends(get_services),
):
    return services.transactions.recent(budget_id, limit=min(max(limit, 1), 100))


@app.get(
    "/api/budgets/{budget_id}/transactions/deleted",
    response_model=list[TransactionOut],
)
def deleted_transactions(
    budget_id: int, services: LedgerServices = Depends(get_services)
):
    return services.transactions.deleted(budget_id)


@app.post(
    "/api/budgets/{budget_id}/transactions",
    response_model=TransactionOut,
    status_code=201,
)
def create_transaction(
    budget_id: int,
    payload: TransactionIn,
    services: LedgerServices = Depends(get_services),
):
    return services.transactions.create(budget_id, payload)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int, services: LedgerServices = Depends(get_services)
):
    return services.transactions.get(transaction_id)


@app.patch("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    services: LedgerServices = Depends(get_services),
):
    return services.transactions.update(transaction_id, payload)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int, services: LedgerServices = Depends(get_services)
):
    services.transactions.soft_delete(transaction_id)
    return no_content()


@app.post("/api/transactions/{transaction_id}/restore", response_model=TransactionOut)
def restore_transaction(
    transaction_id: int, services: LedgerServices = Depends(get_services)
):
    return services.transactions.restore(transaction_id)
