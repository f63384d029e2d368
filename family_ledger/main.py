from __future__ import annotations

import threading
from datetime import date, datetime
from decimal import Decimal
from typing import Callable

from fastapi import APIRouter, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from family_ledger.config import LedgerConfig, load_config
from family_ledger.currency_conversion import (
    SUPPORTED_CURRENCIES,
    ExchangeRateApiProvider,
    RateProvider,
)
from family_ledger.db import build_engine, init_db
from family_ledger.document_store import DocumentStore, SqlDocumentStore
from family_ledger.errors import (
    ApiError,
    ConfigurationError,
    NetworkError,
    RatesNotReady,
    TransactionNotFound,
    ValidationError,
)
from family_ledger.ledger import LedgerSession
from family_ledger.logger import get_logger
from family_ledger.persistence import SqlKeyValueStore
from family_ledger.recurring import RecurringItem
from family_ledger.report_engine import ReportFilters, display_amount
from family_ledger.transactions import Transaction, validate_draft

logger = get_logger(__name__)

router = APIRouter()

ANONYMOUS_CLIENT = "anonymous"


class TransactionPayload(BaseModel):
    type: str
    category: str
    original_amount: Decimal | None = None
    original_currency: str = "USD"
    transaction_date: date | None = None
    description: str | None = None


class TransactionResponse(BaseModel):
    id: str
    type: str
    category: str
    original_amount: Decimal
    original_currency: str
    transaction_date: date
    description: str
    base_currency: str
    exchange_rate_to_base: Decimal
    amount_in_base_currency: Decimal
    display_amount: Decimal | None = None
    created_at: datetime | None = None


class TransactionPageResponse(BaseModel):
    display_currency: str
    sort_key: str
    descending: bool
    page: int
    total_pages: int
    total_items: int
    transactions: list[TransactionResponse]
    has_more: bool
    oldest_loaded_month: str | None = None


class ListFiltersPayload(BaseModel):
    months: list[str] = []
    categories: list[str] = []
    description: str | None = None


class SortPayload(BaseModel):
    key: str


class PagePayload(BaseModel):
    page: int


class CategoryTotalResponse(BaseModel):
    category: str
    amount: Decimal


class MonthlyTrendResponse(BaseModel):
    month: str
    expense: Decimal
    income: Decimal


class ReportResponse(BaseModel):
    display_currency: str
    total_expense: Decimal
    total_income: Decimal
    net_balance: Decimal
    transaction_count: int
    expense_by_category: list[CategoryTotalResponse]
    monthly_trend: list[MonthlyTrendResponse]


class LoadResponse(BaseModel):
    loaded: int
    has_more: bool
    oldest_loaded_month: str | None = None


class RatesResponse(BaseModel):
    fetched_on: date
    base_currency: str
    rates: dict[str, Decimal]


class RecurringItemPayload(BaseModel):
    type: str
    category: str
    original_amount: Decimal | None = None
    original_currency: str = "USD"
    description: str | None = None


class RecurringItemResponse(BaseModel):
    id: str
    type: str
    category: str
    original_amount: Decimal
    original_currency: str
    description: str
    created_at: datetime | None = None


class PostRecurringPayload(BaseModel):
    month: str | None = None


class PostRecurringResponse(BaseModel):
    month: str
    added_count: int
    skipped_descriptions: list[str]


class ImportResponse(BaseModel):
    inserted_count: int


class WipeResponse(BaseModel):
    deleted_count: int


class NoticeResponse(BaseModel):
    level: str
    message: str


class SessionRegistry:
    """Lazily started ledger sessions, one per collection scope."""

    def __init__(
        self,
        config: LedgerConfig,
        store: DocumentStore,
        rate_provider: RateProvider,
        storage_factory: Callable[[str], SqlKeyValueStore],
        today: Callable[[], date] = date.today,
    ) -> None:
        self.config = config
        self.store = store
        self.rate_provider = rate_provider
        self.storage_factory = storage_factory
        self.today = today
        self._sessions: dict[str, LedgerSession] = {}
        self._lock = threading.Lock()

    def resolve(self, x_user_id: str | None) -> LedgerSession:
        scope_id = self.config.shared_family_id or (x_user_id or "").strip()
        if not scope_id:
            raise HTTPException(status_code=401, detail="Missing user identity.")
        with self._lock:
            session = self._sessions.get(scope_id)
            if session is None:
                session = LedgerSession(
                    self.config,
                    scope_id,
                    self.store,
                    self.rate_provider,
                    self.storage_factory(self.config.scope_root(scope_id)),
                    today=self.today,
                )
                session.start()
                self._sessions[scope_id] = session
        return session

    def close(self) -> None:
        with self._lock:
            for session in self._sessions.values():
                session.close()
            self._sessions.clear()


def get_session(request: Request, x_user_id: str | None) -> LedgerSession:
    return request.app.state.sessions.resolve(x_user_id)


def caller_id(x_user_id: str | None) -> str:
    """Client key for per-caller view state and notices within a session."""
    return (x_user_id or "").strip() or ANONYMOUS_CLIENT


def transaction_response(
    txn: Transaction, session: LedgerSession, display_currency: str | None = None
) -> TransactionResponse:
    converted = None
    if display_currency and session.rates is not None:
        converted = display_amount(txn, display_currency, session.rates)
    return TransactionResponse(
        id=txn.id,
        type=txn.type,
        category=txn.category,
        original_amount=txn.original_amount,
        original_currency=txn.original_currency,
        transaction_date=txn.transaction_date,
        description=txn.description,
        base_currency=txn.base_currency,
        exchange_rate_to_base=txn.exchange_rate_to_base,
        amount_in_base_currency=txn.amount_in_base_currency,
        display_amount=converted,
        created_at=txn.created_at,
    )


def recurring_response(item: RecurringItem) -> RecurringItemResponse:
    return RecurringItemResponse(
        id=item.id,
        type=item.type,
        category=item.category,
        original_amount=item.original_amount,
        original_currency=item.original_currency,
        description=item.description,
        created_at=item.created_at,
    )


def page_response(session: LedgerSession, client_id: str, currency: str) -> TransactionPageResponse:
    with session.lock:
        page = session.list_page(currency, client_id)
        sort = session.client(client_id).list_state.sort
        return TransactionPageResponse(
            display_currency=currency.strip().upper(),
            sort_key=sort.key,
            descending=sort.descending,
            page=page.page,
            total_pages=page.total_pages,
            total_items=page.total_items,
            transactions=[transaction_response(txn, session, currency) for txn in page.items],
            has_more=session.window.has_more,
            oldest_loaded_month=session.window.oldest_loaded_month,
        )


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/rates", response_model=RatesResponse)
def get_rates(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> RatesResponse:
    session = get_session(request, x_user_id)
    rates = session.require_rates()
    return RatesResponse(
        fetched_on=rates.fetched_on,
        base_currency=session.config.base_currency,
        rates={code: rates.rates[code] for code in SUPPORTED_CURRENCIES if code in rates.rates},
    )


@router.post("/rates/refresh", response_model=RatesResponse)
def refresh_rates(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> RatesResponse:
    session = get_session(request, x_user_id)
    session.refresh_rates()
    return get_rates(request, x_user_id)


@router.get("/categories/{txn_type}", response_model=list[str])
def list_categories(
    txn_type: str,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[str]:
    session = get_session(request, x_user_id)
    return session.category_choices(txn_type)


@router.get("/transactions", response_model=TransactionPageResponse)
def list_transactions(
    request: Request,
    currency: str = "USD",
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionPageResponse:
    session = get_session(request, x_user_id)
    return page_response(session, caller_id(x_user_id), currency)


@router.put("/transactions/view/filters", response_model=TransactionPageResponse)
def set_list_filters(
    payload: ListFiltersPayload,
    request: Request,
    currency: str = "USD",
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionPageResponse:
    session = get_session(request, x_user_id)
    client_id = caller_id(x_user_id)
    filters = ReportFilters.build(payload.months, payload.categories, payload.description)
    with session.lock:
        session.client(client_id).list_state.set_filters(filters)
        return page_response(session, client_id, currency)


@router.post("/transactions/view/sort", response_model=TransactionPageResponse)
def select_list_sort(
    payload: SortPayload,
    request: Request,
    currency: str = "USD",
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionPageResponse:
    session = get_session(request, x_user_id)
    client_id = caller_id(x_user_id)
    with session.lock:
        session.client(client_id).list_state.select_sort(payload.key)
        return page_response(session, client_id, currency)


@router.post("/transactions/view/page", response_model=TransactionPageResponse)
def select_list_page(
    payload: PagePayload,
    request: Request,
    currency: str = "USD",
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionPageResponse:
    session = get_session(request, x_user_id)
    client_id = caller_id(x_user_id)
    with session.lock:
        session.client(client_id).list_state.go_to_page(payload.page)
        return page_response(session, client_id, currency)


@router.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    session = get_session(request, x_user_id)
    draft = validate_draft(
        type=payload.type,
        category=payload.category,
        amount=payload.original_amount,
        currency=payload.original_currency,
        transaction_date=payload.transaction_date,
        description=payload.description,
    )
    doc_id = session.add_transaction(draft, client_id=caller_id(x_user_id))
    return transaction_response(session.get_transaction(doc_id, client_id=caller_id(x_user_id)), session)


@router.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: str,
    payload: TransactionPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    session = get_session(request, x_user_id)
    draft = validate_draft(
        type=payload.type,
        category=payload.category,
        amount=payload.original_amount,
        currency=payload.original_currency,
        transaction_date=payload.transaction_date,
        description=payload.description,
    )
    session.update_transaction(transaction_id, draft, client_id=caller_id(x_user_id))
    return transaction_response(session.get_transaction(transaction_id, client_id=caller_id(x_user_id)), session)


@router.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    session = get_session(request, x_user_id)
    session.delete_transaction(transaction_id, client_id=caller_id(x_user_id))
    return {"status": "deleted"}


@router.delete("/transactions", response_model=WipeResponse)
def wipe_transactions(
    request: Request,
    confirm: bool = False,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> WipeResponse:
    if not confirm:
        raise HTTPException(status_code=400, detail="Deleting all transactions requires confirm=true.")
    session = get_session(request, x_user_id)
    return WipeResponse(deleted_count=session.wipe_transactions(client_id=caller_id(x_user_id)))


@router.post("/transactions/import", response_model=ImportResponse)
async def import_transactions(
    request: Request,
    file: UploadFile = File(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ImportResponse:
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="CSV file required.")
    contents = await file.read()
    try:
        decoded = contents.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded.") from exc
    session = get_session(request, x_user_id)
    return ImportResponse(inserted_count=session.import_transactions(decoded, client_id=caller_id(x_user_id)))


@router.post("/transactions/load-more", response_model=LoadResponse)
def load_more_transactions(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> LoadResponse:
    session = get_session(request, x_user_id)
    loaded = session.load_more_month(client_id=caller_id(x_user_id))
    return LoadResponse(
        loaded=loaded,
        has_more=session.window.has_more,
        oldest_loaded_month=session.window.oldest_loaded_month,
    )


@router.post("/transactions/load-all", response_model=LoadResponse)
def load_all_transactions(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> LoadResponse:
    session = get_session(request, x_user_id)
    loaded = session.load_all(client_id=caller_id(x_user_id))
    return LoadResponse(
        loaded=loaded,
        has_more=session.window.has_more,
        oldest_loaded_month=session.window.oldest_loaded_month,
    )


@router.get("/reports/summary", response_model=ReportResponse)
def get_report(
    request: Request,
    currency: str = "USD",
    months: list[str] = Query(default=[]),
    categories: list[str] = Query(default=[]),
    description: str | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ReportResponse:
    session = get_session(request, x_user_id)
    report = session.report(ReportFilters.build(months, categories, description), currency)
    return ReportResponse(
        display_currency=report.display_currency,
        total_expense=report.total_expense,
        total_income=report.total_income,
        net_balance=report.net_balance,
        transaction_count=report.transaction_count,
        expense_by_category=[
            CategoryTotalResponse(category=item.category, amount=item.amount)
            for item in report.expense_by_category
        ],
        monthly_trend=[
            MonthlyTrendResponse(month=item.month, expense=item.expense, income=item.income)
            for item in report.monthly_trend
        ],
    )


@router.get("/reports/months", response_model=list[str])
def list_report_months(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[str]:
    return get_session(request, x_user_id).months()


@router.get("/recurring-items", response_model=list[RecurringItemResponse])
def list_recurring_items(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[RecurringItemResponse]:
    session = get_session(request, x_user_id)
    return [recurring_response(item) for item in session.list_recurring_items(client_id=caller_id(x_user_id))]


@router.post("/recurring-items", response_model=RecurringItemResponse)
def create_recurring_item(
    payload: RecurringItemPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> RecurringItemResponse:
    session = get_session(request, x_user_id)
    item = session.add_recurring_item(
        type=payload.type,
        category=payload.category,
        amount=payload.original_amount,
        currency=payload.original_currency,
        description=payload.description,
        client_id=caller_id(x_user_id),
    )
    return recurring_response(item)


@router.delete("/recurring-items/{item_id}")
def delete_recurring_item(
    item_id: str,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    session = get_session(request, x_user_id)
    session.delete_recurring_item(item_id, client_id=caller_id(x_user_id))
    return {"status": "deleted"}


@router.post("/recurring-items/post", response_model=PostRecurringResponse)
def post_recurring_items(
    payload: PostRecurringPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PostRecurringResponse:
    session = get_session(request, x_user_id)
    plan = session.post_recurring_items(payload.month, client_id=caller_id(x_user_id))
    return PostRecurringResponse(
        month=plan.target_month,
        added_count=len(plan.to_post),
        skipped_descriptions=[item.description for item in plan.skipped],
    )


@router.get("/notices", response_model=list[NoticeResponse])
def drain_notices(
    request: Request, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[NoticeResponse]:
    session = get_session(request, x_user_id)
    return [
        NoticeResponse(level=notice.level, message=notice.message)
        for notice in session.drain_notices(caller_id(x_user_id))
    ]


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


def create_app(
    config: LedgerConfig | None = None,
    rate_provider: RateProvider | None = None,
    today: Callable[[], date] = date.today,
) -> FastAPI:
    if config is None:
        try:
            config = load_config()
        except ConfigurationError as exc:
            logger.error("Startup aborted: %s", exc)
            return configuration_error_app(str(exc))

    engine = build_engine(config.database_url)
    init_db(engine)

    app = FastAPI(title="Family Ledger")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[config.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.sessions = SessionRegistry(
        config,
        SqlDocumentStore(engine),
        rate_provider or ExchangeRateApiProvider(config.rate_api_key, config.rate_api_url),
        lambda namespace: SqlKeyValueStore(engine, namespace=namespace),
        today=today,
    )
    app.add_exception_handler(ValidationError, _error_handler(400))
    app.add_exception_handler(TransactionNotFound, _error_handler(404))
    app.add_exception_handler(RatesNotReady, _error_handler(503))
    app.add_exception_handler(NetworkError, _error_handler(502))
    app.add_exception_handler(ApiError, _error_handler(502))
    app.include_router(router)

    @app.on_event("shutdown")
    def close_sessions() -> None:
        app.state.sessions.close()

    return app


def configuration_error_app(message: str) -> FastAPI:
    """An app that answers every request with the startup configuration error."""
    app = FastAPI(title="Family Ledger")

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE"])
    def configuration_error(path: str) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": message})

    return app


app = create_app()
