"""
Ledger session: one collection scope (a user or a shared family) as seen by
its clients.

The session owns the transaction window, the daily rate table and the
category usage counts, and is the only place that writes to the store.
Writes are validated before any remote call. Store and rate failures are
recorded as notices and re-raised with the session state left as it was.

Several clients may share a session (the shared family scope). Each client
keeps its own list view state and notice queue; notices about shared state,
such as the daily rates, go to every client.

Every public method runs under the session's re-entrant lock, and so does
the live snapshot listener, so the window has a single mutator at a time.
"""

from __future__ import annotations

import functools
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import date, tzinfo
from typing import Callable

from family_ledger.category_usage import CategoryUsageRanker
from family_ledger.config import LedgerConfig
from family_ledger.csv_import import parse_transactions_csv
from family_ledger.currency_conversion import RateCache, RateProvider, RateTable
from family_ledger.document_store import DocumentStore
from family_ledger.errors import (
    ApiError,
    NetworkError,
    RatesNotReady,
    TransactionNotFound,
    ValidationError,
)
from family_ledger.logger import get_logger
from family_ledger.persistence import KeyValueStore
from family_ledger.recurring import RecurringItem, RecurringPlan, plan_recurring_posts
from family_ledger.report_engine import (
    ListState,
    Page,
    ReportData,
    ReportFilters,
    available_months,
    build_report,
    list_view,
)
from family_ledger.transaction_window import TransactionWindow
from family_ledger.transactions import (
    Transaction,
    TransactionDraft,
    build_document,
    month_key,
    validate_draft,
)

logger = get_logger(__name__)

MAX_NOTICES = 50
MAX_BROADCAST_BACKLOG = 10
MAX_IMPORT_ERRORS_REPORTED = 5
LOCAL_CLIENT = "local"


@dataclass(frozen=True)
class Notice:
    level: str
    message: str


@dataclass
class ClientState:
    """What one client sees of a session: its list view and pending notices."""

    list_state: ListState = field(default_factory=ListState)
    notices: deque = field(default_factory=lambda: deque(maxlen=MAX_NOTICES))


def locked(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self.lock:
            return method(self, *args, **kwargs)

    return wrapper


class LedgerSession:
    def __init__(
        self,
        config: LedgerConfig,
        scope_id: str,
        store: DocumentStore,
        rate_provider: RateProvider,
        storage: KeyValueStore,
        today: Callable[[], date] = date.today,
        tz: tzinfo | None = None,
    ) -> None:
        self.config = config
        self.scope_id = scope_id
        self.store = store
        self.today = today
        self.lock = threading.RLock()
        self.collection = config.transactions_path(scope_id)
        self.recurring_collection = config.recurring_path(scope_id)
        self.window = TransactionWindow(
            store, self.collection, config.fetch_page_size, tz, lock=self.lock
        )
        self.rate_cache = RateCache(
            rate_provider,
            storage,
            base_currency=config.base_currency,
            on_warning=lambda message: self.notify("warning", message),
        )
        self.ranker = CategoryUsageRanker(storage)
        self.rates: RateTable | None = None
        self.rates_attempted_on: date | None = None
        self.clients: dict[str, ClientState] = {}
        self.broadcasts: deque[Notice] = deque(maxlen=MAX_BROADCAST_BACKLOG)
        self._unsubscribe: Callable[[], None] | None = None

    # -- lifecycle -----------------------------------------------------

    @locked
    def start(self) -> None:
        self.refresh_rates()
        today = self.today()
        self._remote("load transactions", lambda: self.window.fetch_initial(today))
        self._unsubscribe = self._remote(
            "subscribe to transactions", lambda: self.window.start_live(today)
        )
        self.ranker.rebuild(self.window.transactions)
        logger.info("Session %s started on %s", self.scope_id, self.collection)

    @locked
    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    @locked
    def refresh_rates(self) -> RateTable | None:
        self.rates_attempted_on = self.today()
        try:
            self.rates = self.rate_cache.get_rates(self.rates_attempted_on)
        except (NetworkError, ApiError) as exc:
            self.notify("error", f"Could not update daily rates: {exc}")
        return self.rates

    @locked
    def require_rates(self) -> RateTable:
        """Return the rate table, refreshing it at most once per day.

        A failed refresh is not retried implicitly until the next day;
        ``refresh_rates`` retries on demand.
        """
        today = self.today()
        stale = self.rates is None or self.rates.fetched_on != today
        if stale and self.rates_attempted_on != today:
            self.refresh_rates()
        if self.rates is None:
            raise RatesNotReady("Exchange rates are not loaded yet, please try again.")
        return self.rates

    # -- clients and notices -------------------------------------------

    @locked
    def client(self, client_id: str = LOCAL_CLIENT) -> ClientState:
        state = self.clients.get(client_id)
        if state is None:
            state = ClientState()
            state.notices.extend(self.broadcasts)
            self.clients[client_id] = state
        return state

    @locked
    def notify(self, level: str, message: str, client_id: str | None = None) -> None:
        """Queue a notice for ``client_id``, or for every client when None."""
        notice = Notice(level=level, message=message)
        if client_id is not None:
            self.client(client_id).notices.append(notice)
            return
        self.broadcasts.append(notice)
        for state in self.clients.values():
            state.notices.append(notice)

    @locked
    def drain_notices(self, client_id: str = LOCAL_CLIENT) -> list[Notice]:
        notices = self.client(client_id).notices
        drained = list(notices)
        notices.clear()
        return drained

    # -- transactions --------------------------------------------------

    @property
    def transactions(self) -> list[Transaction]:
        return self.window.transactions

    @locked
    def get_transaction(self, doc_id: str, client_id: str = LOCAL_CLIENT) -> Transaction:
        for txn in self.window.transactions:
            if txn.id == doc_id:
                return txn
        doc = self._remote(
            "load transaction", lambda: self.store.get(self.collection, doc_id), client_id
        )
        if doc is None:
            raise TransactionNotFound(f"Transaction {doc_id} not found.")
        return Transaction.from_document(doc.id, doc.data, tz=self.window.tz)

    @locked
    def add_transaction(self, draft: TransactionDraft, client_id: str = LOCAL_CLIENT) -> str:
        rates = self.require_rates()
        data = build_document(draft, rates, self.config.base_currency)
        doc_id = self._remote(
            "add transaction", lambda: self.store.add(self.collection, data), client_id
        )
        self._absorb([doc_id], client_id)
        self.ranker.record_use(draft.type, draft.category)
        self.notify("success", f"{draft.type} added successfully!", client_id)
        logger.info("Added %s %s in %s", draft.type, doc_id, self.collection)
        return doc_id

    @locked
    def update_transaction(
        self, doc_id: str, draft: TransactionDraft, client_id: str = LOCAL_CLIENT
    ) -> None:
        """Overwrite a transaction, re-freezing today's rate into it."""
        rates = self.require_rates()
        data = build_document(draft, rates, self.config.base_currency)
        self._remote(
            "update transaction",
            lambda: self.store.update(self.collection, doc_id, data),
            client_id,
        )
        self._absorb([doc_id], client_id)
        self.ranker.record_use(draft.type, draft.category)
        self.notify("success", "Transaction updated!", client_id)
        logger.info("Updated transaction %s in %s", doc_id, self.collection)

    @locked
    def delete_transaction(self, doc_id: str, client_id: str = LOCAL_CLIENT) -> None:
        self._remote(
            "delete transaction",
            lambda: self.store.delete(self.collection, doc_id),
            client_id,
        )
        self.window.discard(doc_id)
        self.notify("success", "Transaction deleted.", client_id)
        logger.info("Deleted transaction %s from %s", doc_id, self.collection)

    @locked
    def import_transactions(self, contents: str, client_id: str = LOCAL_CLIENT) -> int:
        """Import a CSV export. Nothing is written unless every row is valid."""
        result = parse_transactions_csv(contents, default_currency=self.config.base_currency)
        if result.errors:
            details = "; ".join(
                f"Row {error.row}: {error.message}"
                for error in result.errors[:MAX_IMPORT_ERRORS_REPORTED]
            )
            raise ValidationError(f"Import rejected. {details}")
        if not result.drafts:
            raise ValidationError("No transactions to import.")

        rates = self.require_rates()
        documents = [build_document(draft, rates, self.config.base_currency) for draft in result.drafts]
        doc_ids = self._remote(
            "import transactions",
            lambda: self.store.add_many(self.collection, documents),
            client_id,
        )
        self._absorb(doc_ids, client_id)
        for draft in result.drafts:
            self.ranker.record_use(draft.type, draft.category)
        self.notify("success", f"Imported {len(documents)} transactions.", client_id)
        logger.info("Imported %d transactions into %s", len(documents), self.collection)
        return len(documents)

    @locked
    def wipe_transactions(self, client_id: str = LOCAL_CLIENT) -> int:
        deleted = self._remote(
            "delete all transactions",
            lambda: self.store.delete_all(self.collection),
            client_id,
        )
        self._remote(
            "reload transactions",
            lambda: self.window.fetch_initial(self.today()),
            client_id,
        )
        self.ranker.rebuild(self.window.transactions)
        self.notify("success", f"Deleted {deleted} transactions.", client_id)
        logger.warning("Wiped %d transactions from %s", deleted, self.collection)
        return deleted

    # -- backfill ------------------------------------------------------

    @locked
    def load_more_month(self, client_id: str = LOCAL_CLIENT) -> int:
        loaded = self._remote(
            "load older transactions", self.window.fetch_one_more_month, client_id
        )
        self.ranker.rebuild(self.window.transactions)
        return loaded

    @locked
    def load_all(self, client_id: str = LOCAL_CLIENT) -> int:
        loaded = self._remote("load all transactions", self.window.fetch_all, client_id)
        self.ranker.rebuild(self.window.transactions)
        return loaded

    # -- recurring items -----------------------------------------------

    @locked
    def list_recurring_items(self, client_id: str = LOCAL_CLIENT) -> list[RecurringItem]:
        documents = self._remote(
            "load recurring items",
            lambda: self.store.list_documents(self.recurring_collection),
            client_id,
        )
        return [RecurringItem.from_document(doc.id, doc.data) for doc in documents]

    @locked
    def add_recurring_item(
        self,
        *,
        type: str,
        category: str,
        amount,
        currency: str,
        description: str | None = None,
        client_id: str = LOCAL_CLIENT,
    ) -> RecurringItem:
        draft = validate_draft(
            type=type,
            category=category,
            amount=amount,
            currency=currency,
            transaction_date=self.today(),
            description=description,
        )
        item = RecurringItem(
            id="",
            type=draft.type,
            category=draft.category,
            original_amount=draft.original_amount,
            original_currency=draft.original_currency,
            description=draft.description,
        )
        doc_id = self._remote(
            "add recurring item",
            lambda: self.store.add(self.recurring_collection, item.to_document()),
            client_id,
        )
        stored = self._remote(
            "load recurring item",
            lambda: self.store.get(self.recurring_collection, doc_id),
            client_id,
        )
        self.notify("success", "Recurring item added.", client_id)
        return RecurringItem.from_document(doc_id, stored.data)

    @locked
    def delete_recurring_item(self, doc_id: str, client_id: str = LOCAL_CLIENT) -> None:
        self._remote(
            "delete recurring item",
            lambda: self.store.delete(self.recurring_collection, doc_id),
            client_id,
        )
        self.notify("success", "Recurring item deleted.", client_id)

    @locked
    def post_recurring_items(
        self, target_month: str | None = None, client_id: str = LOCAL_CLIENT
    ) -> RecurringPlan:
        """Post recurring items into ``target_month`` (default: this month)."""
        month = target_month or month_key(self.today())
        oldest = self.window.oldest_loaded_month
        if oldest is not None and month < oldest:
            raise ValidationError(f"Load {month} before posting recurring items into it.")

        plan = plan_recurring_posts(
            self.list_recurring_items(client_id), self.window.transactions, month
        )
        if plan.to_post:
            rates = self.require_rates()
            drafts = [item.draft_for(plan.target_month) for item in plan.to_post]
            documents = [build_document(draft, rates, self.config.base_currency) for draft in drafts]
            doc_ids = self._remote(
                "post recurring items",
                lambda: self.store.add_many(self.collection, documents),
                client_id,
            )
            self._absorb(doc_ids, client_id)
            for draft in drafts:
                self.ranker.record_use(draft.type, draft.category)
        self.notify(
            "success",
            f"Posted {len(plan.to_post)} recurring items for {plan.target_month}"
            f" ({len(plan.skipped)} already posted).",
            client_id,
        )
        logger.info(
            "Posted %d recurring items into %s, skipped %d",
            len(plan.to_post),
            plan.target_month,
            len(plan.skipped),
        )
        return plan

    # -- derived views -------------------------------------------------

    @locked
    def report(self, filters: ReportFilters, display_currency: str) -> ReportData:
        return build_report(self.window.transactions, filters, display_currency, self.require_rates())

    @locked
    def list_page(self, display_currency: str, client_id: str = LOCAL_CLIENT) -> Page:
        return list_view(
            self.window.transactions,
            self.client(client_id).list_state,
            display_currency,
            self.require_rates(),
            self.config.list_page_size,
        )

    @locked
    def months(self) -> list[str]:
        return available_months(self.window.transactions)

    @locked
    def category_choices(self, txn_type: str) -> list[str]:
        return self.ranker.ordered_categories(txn_type)

    def _absorb(self, doc_ids: list[str], client_id: str | None = None) -> None:
        documents = self._remote(
            "reload written transactions",
            lambda: [self.store.get(self.collection, doc_id) for doc_id in doc_ids],
            client_id,
        )
        self.window.absorb(doc for doc in documents if doc is not None)

    def _remote(
        self, action: str, operation: Callable[[], object], client_id: str | None = None
    ):
        try:
            return operation()
        except (NetworkError, ApiError) as exc:
            logger.error("Failed to %s in %s: %s", action, self.collection, exc)
            self.notify("error", f"Failed to {action}: {exc}", client_id)
            raise
