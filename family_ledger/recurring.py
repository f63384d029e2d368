from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Set

from family_ledger.transactions import (
    Transaction,
    TransactionDraft,
    decimal_text,
    month_key,
    parse_instant,
    parse_month,
    validate_draft,
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class RecurringItem:
    id: str
    type: str
    category: str
    original_amount: Decimal
    original_currency: str
    description: str = ""
    created_at: datetime | None = None

    @classmethod
    def from_document(cls, doc_id: str, data: Mapping[str, Any]) -> "RecurringItem":
        return cls(
            id=doc_id,
            type=data["type"],
            category=data["category"],
            original_amount=Decimal(str(data["originalAmount"])),
            original_currency=data["originalCurrency"],
            description=data.get("description") or "",
            created_at=parse_instant(data.get("createdAt")),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "category": self.category,
            "originalAmount": decimal_text(self.original_amount),
            "originalCurrency": self.original_currency,
            "description": self.description,
        }

    def draft_for(self, target_month: str) -> TransactionDraft:
        return validate_draft(
            type=self.type,
            category=self.category,
            amount=self.original_amount,
            currency=self.original_currency,
            transaction_date=parse_month(target_month),
            description=self.description,
        )


@dataclass(frozen=True)
class RecurringPlan:
    target_month: str
    to_post: List[RecurringItem]
    skipped: List[RecurringItem]


def plan_recurring_posts(
    items: Iterable[RecurringItem],
    existing_transactions: Iterable[Transaction],
    target_month: date | str,
) -> RecurringPlan:
    """Decide which recurring items still need posting into ``target_month``.

    An item is skipped when a transaction in the target month already carries
    its description, or when an earlier-created item with the same
    description is being posted in this batch.
    """
    month = target_month if isinstance(target_month, str) else month_key(target_month)
    parse_month(month)
    posted = _descriptions_in_month(existing_transactions, month)

    to_post: List[RecurringItem] = []
    skipped: List[RecurringItem] = []
    for item in sorted(items, key=lambda entry: entry.created_at or _EPOCH):
        key = _normalize_description(item.description)
        if key and key in posted:
            skipped.append(item)
            continue
        to_post.append(item)
        if key:
            posted.add(key)
    return RecurringPlan(target_month=month, to_post=to_post, skipped=skipped)


def _descriptions_in_month(transactions: Iterable[Transaction], month: str) -> Set[str]:
    return {
        _normalize_description(txn.description)
        for txn in transactions
        if txn.month == month and txn.description
    }


def _normalize_description(value: str) -> str:
    return " ".join(value.split()).casefold()
