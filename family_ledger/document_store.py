"""
Document collection port and its SQLAlchemy implementation.

Documents are JSON payloads addressed by ``(collection, id)``. Queries are
ordered newest first by ``transactionDate`` (ties by id, also descending) and
paged with a cursor naming the last document of the previous page.
Subscribers receive the full result set of their query once on subscribe and
again after every committed write to their collection.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Mapping, Protocol

from sqlalchemy import JSON, Column, DateTime, Index, String, Table, and_, delete, insert, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from family_ledger.db import metadata
from family_ledger.errors import ApiError, TransactionNotFound
from family_ledger.logger import get_logger

logger = get_logger(__name__)

documents = Table(
    "documents",
    metadata,
    Column("collection", String(512), primary_key=True),
    Column("id", String(64), primary_key=True),
    Column("transaction_date", String(40), nullable=False, server_default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("data", JSON, nullable=False),
    Index("ix_documents_collection_date", "collection", "transaction_date", "id"),
)


@dataclass(frozen=True)
class Document:
    id: str
    data: Mapping[str, Any]


@dataclass(frozen=True)
class PageCursor:
    transaction_date: str
    id: str

    @classmethod
    def after(cls, doc: Document) -> "PageCursor":
        return cls(transaction_date=_order_value(doc.data), id=doc.id)


Snapshot = list[Document]
SnapshotListener = Callable[[Snapshot], None]


class DocumentStore(Protocol):
    def add(self, collection: str, data: Mapping[str, Any]) -> str:
        ...

    def add_many(self, collection: str, items: Iterable[Mapping[str, Any]]) -> list[str]:
        ...

    def update(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        ...

    def delete(self, collection: str, doc_id: str) -> None:
        ...

    def delete_all(self, collection: str) -> int:
        ...

    def get(self, collection: str, doc_id: str) -> Document | None:
        ...

    def query_page(
        self,
        collection: str,
        limit: int,
        after: PageCursor | None = None,
        since: str | None = None,
    ) -> list[Document]:
        ...

    def list_documents(self, collection: str) -> list[Document]:
        ...

    def subscribe(
        self, collection: str, listener: SnapshotListener, since: str | None = None
    ) -> Callable[[], None]:
        ...


@dataclass
class _Subscription:
    collection: str
    since: str | None
    listener: SnapshotListener


class SqlDocumentStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._subscriptions: list[_Subscription] = []
        self._subscriptions_lock = threading.Lock()

    def add(self, collection: str, data: Mapping[str, Any]) -> str:
        return self.add_many(collection, [data])[0]

    def add_many(self, collection: str, items: Iterable[Mapping[str, Any]]) -> list[str]:
        now = datetime.now(timezone.utc)
        rows = []
        for data in items:
            payload = dict(data)
            payload.setdefault("createdAt", now.isoformat())
            rows.append(
                {
                    "collection": collection,
                    "id": uuid.uuid4().hex,
                    "transaction_date": _order_value(payload),
                    "created_at": now,
                    "data": payload,
                }
            )
        if not rows:
            return []
        with _store_errors("add documents"):
            with self.engine.begin() as conn:
                conn.execute(insert(documents), rows)
        self._notify(collection)
        return [row["id"] for row in rows]

    def update(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        with _store_errors("update document"):
            with self.engine.begin() as conn:
                current = conn.execute(
                    select(documents.c.data).where(
                        documents.c.collection == collection, documents.c.id == doc_id
                    )
                ).scalar_one_or_none()
                if current is None:
                    raise TransactionNotFound(f"Document {doc_id} not found.")
                merged = {**current, **data}
                conn.execute(
                    update(documents)
                    .where(documents.c.collection == collection, documents.c.id == doc_id)
                    .values(data=merged, transaction_date=_order_value(merged))
                )
        self._notify(collection)

    def delete(self, collection: str, doc_id: str) -> None:
        with _store_errors("delete document"):
            with self.engine.begin() as conn:
                result = conn.execute(
                    delete(documents).where(
                        documents.c.collection == collection, documents.c.id == doc_id
                    )
                )
        if result.rowcount == 0:
            raise TransactionNotFound(f"Document {doc_id} not found.")
        self._notify(collection)

    def delete_all(self, collection: str) -> int:
        with _store_errors("delete collection"):
            with self.engine.begin() as conn:
                result = conn.execute(delete(documents).where(documents.c.collection == collection))
        self._notify(collection)
        return result.rowcount

    def get(self, collection: str, doc_id: str) -> Document | None:
        with _store_errors("get document"):
            with self.engine.begin() as conn:
                row = conn.execute(
                    select(documents.c.id, documents.c.data).where(
                        documents.c.collection == collection, documents.c.id == doc_id
                    )
                ).first()
        if row is None:
            return None
        return Document(id=row.id, data=row.data)

    def query_page(
        self,
        collection: str,
        limit: int | None,
        after: PageCursor | None = None,
        since: str | None = None,
    ) -> list[Document]:
        stmt = select(documents.c.id, documents.c.data).where(documents.c.collection == collection)
        if since is not None:
            stmt = stmt.where(documents.c.transaction_date >= since)
        if after is not None:
            stmt = stmt.where(
                or_(
                    documents.c.transaction_date < after.transaction_date,
                    and_(
                        documents.c.transaction_date == after.transaction_date,
                        documents.c.id < after.id,
                    ),
                )
            )
        stmt = stmt.order_by(documents.c.transaction_date.desc(), documents.c.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with _store_errors("query documents"):
            with self.engine.begin() as conn:
                rows = conn.execute(stmt).all()
        return [Document(id=row.id, data=row.data) for row in rows]

    def list_documents(self, collection: str) -> list[Document]:
        return self.query_page(collection, limit=None)

    def subscribe(
        self, collection: str, listener: SnapshotListener, since: str | None = None
    ) -> Callable[[], None]:
        subscription = _Subscription(collection=collection, since=since, listener=listener)
        with self._subscriptions_lock:
            self._subscriptions.append(subscription)
        self._deliver(subscription)

        def unsubscribe() -> None:
            with self._subscriptions_lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return unsubscribe

    def subscription_count(self, collection: str) -> int:
        with self._subscriptions_lock:
            return sum(1 for item in self._subscriptions if item.collection == collection)

    def _notify(self, collection: str) -> None:
        # listeners run outside the lock; they take their own session lock
        with self._subscriptions_lock:
            targets = [item for item in self._subscriptions if item.collection == collection]
        for subscription in targets:
            self._deliver(subscription)

    def _deliver(self, subscription: _Subscription) -> None:
        snapshot = self.query_page(subscription.collection, limit=None, since=subscription.since)
        subscription.listener(snapshot)


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Document store failed to %s", action, exc_info=exc)
        raise ApiError(f"Failed to {action}.") from exc


def _order_value(data: Mapping[str, Any]) -> str:
    value = data.get("transactionDate")
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping) and "seconds" in value:
        instant = datetime.fromtimestamp(int(value["seconds"]), tz=timezone.utc)
        return instant.isoformat()
    return ""
