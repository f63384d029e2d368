"""
Per-type category usage counts, used to order the category picker.

Counts are a local convenience: losing them only changes the order in which
categories are offered, and ``rebuild`` restores them from transactions.
"""

from __future__ import annotations

import json
from typing import Iterable

from family_ledger.logger import get_logger
from family_ledger.persistence import KeyValueStore
from family_ledger.transactions import TRANSACTION_TYPES, Transaction, categories_for, normalize_type

logger = get_logger(__name__)

USAGE_KEY = "categoryUsage"
TOP_CATEGORY_COUNT = 5


class CategoryUsageRanker:
    def __init__(self, storage: KeyValueStore, storage_key: str = USAGE_KEY) -> None:
        self.storage = storage
        self.storage_key = storage_key
        self.counts: dict[str, dict[str, int]] = self._load()

    def record_use(self, txn_type: str, category: str) -> None:
        txn_type = normalize_type(txn_type)
        type_counts = self.counts.setdefault(txn_type, {})
        type_counts[category] = type_counts.get(category, 0) + 1
        self._save()

    def count(self, txn_type: str, category: str) -> int:
        return self.counts.get(normalize_type(txn_type), {}).get(category, 0)

    def ordered_categories(self, txn_type: str) -> list[str]:
        """Most used categories first (at most five), then the rest A-Z."""
        txn_type = normalize_type(txn_type)
        categories = categories_for(txn_type)
        type_counts = self.counts.get(txn_type, {})
        used = [name for name in categories if type_counts.get(name, 0) > 0]
        # sorted() is stable, so equal counts keep the fixed list order
        top = sorted(used, key=lambda name: type_counts[name], reverse=True)[:TOP_CATEGORY_COUNT]
        rest = sorted(name for name in categories if name not in top)
        return top + rest

    def rebuild(self, transactions: Iterable[Transaction]) -> None:
        counts: dict[str, dict[str, int]] = {}
        for txn in transactions:
            type_counts = counts.setdefault(txn.type, {})
            type_counts[txn.category] = type_counts.get(txn.category, 0) + 1
        self.counts = counts
        self._save()

    def _load(self) -> dict[str, dict[str, int]]:
        raw = self.storage.get(self.storage_key)
        if not raw:
            return {}
        try:
            payload = json.loads(raw)
            return {
                txn_type: {str(name): int(value) for name, value in payload.get(txn_type, {}).items()}
                for txn_type in TRANSACTION_TYPES
            }
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring corrupt category usage counts: %s", exc)
            return {}

    def _save(self) -> None:
        self.storage.set(self.storage_key, json.dumps(self.counts, sort_keys=True))
