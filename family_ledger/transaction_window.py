"""
In-memory window over a transaction collection.

The window holds the live months (previous month onwards) kept current by a
store subscription, plus whatever older months were backfilled on request.
Snapshots from the subscription only ever replace live-month records, so a
late snapshot cannot undo a backfill and a late backfill page cannot undo a
snapshot.
"""

from __future__ import annotations

import threading
from datetime import date, tzinfo
from typing import Callable, ContextManager, Iterable

from family_ledger.document_store import Document, DocumentStore, PageCursor
from family_ledger.logger import get_logger
from family_ledger.transactions import Transaction, month_key, parse_month, shift_month

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 25


class TransactionWindow:
    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        tz: tzinfo | None = None,
        lock: ContextManager | None = None,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be greater than zero.")
        self.store = store
        self.collection = collection
        self.page_size = page_size
        self.tz = tz
        # held while a pushed snapshot is applied
        self.lock = lock if lock is not None else threading.RLock()
        self.transactions: list[Transaction] = []
        self.oldest_loaded_month: str | None = None
        self.has_more = True
        self.cursor: PageCursor | None = None
        self.live_start_month: str | None = None

    def fetch_initial(self, today: date) -> int:
        """Load the live months newest first, stopping at the first older record."""
        boundary = month_key(shift_month(today, -1))
        self.live_start_month = boundary
        self.cursor = None
        loaded: list[Transaction] = []

        while True:
            page = self.store.query_page(self.collection, self.page_size, after=self.cursor)
            crossed = False
            for doc in page:
                txn = self._to_transaction(doc)
                if txn is not None and txn.month < boundary:
                    crossed = True
                    break
                self.cursor = PageCursor.after(doc)
                if txn is not None:
                    loaded.append(txn)
            if crossed:
                self.has_more = True
                break
            if len(page) < self.page_size:
                self.has_more = False
                break

        self.transactions = _ordered(loaded)
        self.oldest_loaded_month = boundary
        logger.info(
            "Loaded %d transactions from %s onwards (more=%s)",
            len(loaded),
            boundary,
            self.has_more,
        )
        return len(loaded)

    def fetch_one_more_month(self) -> int:
        """Extend the window by the month before the oldest loaded one."""
        if not self.has_more or self.oldest_loaded_month is None:
            return 0
        target = month_key(shift_month(parse_month(self.oldest_loaded_month), -1))
        added: list[Transaction] = []

        while True:
            page = self.store.query_page(self.collection, self.page_size, after=self.cursor)
            older_seen = False
            for doc in page:
                txn = self._to_transaction(doc)
                if txn is not None and txn.month < target:
                    older_seen = True
                    break
                self.cursor = PageCursor.after(doc)
                if txn is not None and txn.month == target:
                    added.append(txn)
            if older_seen:
                self.has_more = True
                break
            if len(page) < self.page_size:
                self.has_more = False
                break

        self.oldest_loaded_month = target
        self._merge(added)
        logger.info("Backfilled %d transactions for %s", len(added), target)
        return len(added)

    def fetch_all(self) -> int:
        """Page from the cursor to the end of the collection."""
        added: list[Transaction] = []
        while True:
            page = self.store.query_page(self.collection, self.page_size, after=self.cursor)
            for doc in page:
                self.cursor = PageCursor.after(doc)
                txn = self._to_transaction(doc)
                if txn is not None:
                    added.append(txn)
            if len(page) < self.page_size:
                break

        self.has_more = False
        months = [txn.month for txn in added]
        if self.oldest_loaded_month is not None:
            months.append(self.oldest_loaded_month)
        if months:
            self.oldest_loaded_month = min(months)
        self._merge(added)
        logger.info("Backfilled %d transactions to the start of history", len(added))
        return len(added)

    def start_live(
        self,
        today: date,
        on_change: Callable[[list[Transaction]], None] | None = None,
    ) -> Callable[[], None]:
        """Subscribe to the live months; returns the unsubscribe callable."""
        since = shift_month(today, -1)
        self.live_start_month = month_key(since)

        def listener(snapshot: list[Document]) -> None:
            with self.lock:
                self.apply_snapshot(snapshot)
                if on_change is not None:
                    on_change(self.transactions)

        return self.store.subscribe(self.collection, listener, since=since.isoformat())

    def apply_snapshot(self, snapshot: Iterable[Document]) -> None:
        """Replace the live-month records with ``snapshot``; keep older ones."""
        if self.live_start_month is None:
            raise RuntimeError("Live window not started.")
        fresh = [txn for txn in (self._to_transaction(doc) for doc in snapshot) if txn is not None]
        fresh_ids = {txn.id for txn in fresh}
        kept = [
            txn
            for txn in self.transactions
            if txn.month < self.live_start_month and txn.id not in fresh_ids
        ]
        self.transactions = _ordered(kept + fresh)

    def absorb(self, docs: Iterable[Document]) -> None:
        """Merge documents written by this client that fall inside the loaded range.

        Live-month writes also arrive through the subscription; this covers
        writes into backfilled months, which the subscription does not see.
        A record edited to a date before the loaded range leaves the window.
        """
        incoming: list[Transaction] = []
        for doc in docs:
            txn = self._to_transaction(doc)
            if txn is None:
                continue
            outside = self.oldest_loaded_month is not None and txn.month < self.oldest_loaded_month
            if self.has_more and outside:
                self.discard(txn.id)
                continue
            incoming.append(txn)
        self._merge(incoming)

    def discard(self, doc_id: str) -> None:
        self.transactions = [txn for txn in self.transactions if txn.id != doc_id]

    def _merge(self, incoming: Iterable[Transaction]) -> None:
        by_id = {txn.id: txn for txn in self.transactions}
        for txn in incoming:
            by_id[txn.id] = txn
        self.transactions = _ordered(by_id.values())

    def _to_transaction(self, doc: Document) -> Transaction | None:
        try:
            return Transaction.from_document(doc.id, doc.data, tz=self.tz)
        except (KeyError, ValueError, ArithmeticError) as exc:
            logger.warning("Skipping malformed transaction %s: %s", doc.id, exc)
            return None


def _ordered(transactions: Iterable[Transaction]) -> list[Transaction]:
    return sorted(transactions, key=lambda txn: (txn.transaction_date, txn.id), reverse=True)
