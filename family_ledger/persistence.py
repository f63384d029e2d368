"""
Local key-value persistence used by the best-effort caches.

The rate cache and the category usage ranker only need ``get``/``set`` by
string key, so they receive a ``KeyValueStore`` rather than reaching for a
storage backend themselves.
"""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import Column, String, Table, Text, select, update, insert
from sqlalchemy.engine import Engine

from family_ledger.db import metadata

local_storage = Table(
    "local_storage",
    metadata,
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),
)


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class MemoryKeyValueStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


class SqlKeyValueStore:
    """Key-value store on a single SQL table, namespaced by key prefix."""

    def __init__(self, engine: Engine, namespace: str = "") -> None:
        self.engine = engine
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    def get(self, key: str) -> str | None:
        with self.engine.begin() as conn:
            return conn.execute(
                select(local_storage.c.value).where(local_storage.c.key == self._key(key))
            ).scalar_one_or_none()

    def set(self, key: str, value: str) -> None:
        full_key = self._key(key)
        with self.engine.begin() as conn:
            result = conn.execute(
                update(local_storage)
                .where(local_storage.c.key == full_key)
                .values(value=value)
            )
            if result.rowcount == 0:
                conn.execute(insert(local_storage).values(key=full_key, value=value))
