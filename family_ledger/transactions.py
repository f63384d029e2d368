from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from family_ledger.currency_conversion import (
    SUPPORTED_CURRENCIES,
    RateTable,
    normalize_currency,
    to_base_amount,
)
from family_ledger.errors import ValidationError

EXPENSE = "Expense"
INCOME = "Income"
TRANSACTION_TYPES = (EXPENSE, INCOME)

EXPENSE_CATEGORIES = (
    "Groceries",
    "Utilities",
    "Rent/Mortgage",
    "Transportation",
    "Dining Out",
    "Entertainment",
    "Healthcare",
    "Shopping",
    "Travel",
    "Education",
    "Other",
)
INCOME_CATEGORIES = ("Salary", "Bonus", "Gift", "Freelance", "Investment", "Other")


def categories_for(txn_type: str) -> tuple[str, ...]:
    return EXPENSE_CATEGORIES if normalize_type(txn_type) == EXPENSE else INCOME_CATEGORIES


def normalize_type(value: str) -> str:
    cleaned = (value or "").strip().lower()
    for txn_type in TRANSACTION_TYPES:
        if txn_type.lower() == cleaned:
            return txn_type
    raise ValidationError("Type must be Expense or Income.")


@dataclass(frozen=True)
class Transaction:
    id: str
    type: str
    category: str
    original_amount: Decimal
    original_currency: str
    transaction_date: date
    base_currency: str
    exchange_rate_to_base: Decimal
    amount_in_base_currency: Decimal
    description: str = ""
    created_at: datetime | None = None

    @property
    def month(self) -> str:
        return month_key(self.transaction_date)

    @classmethod
    def from_document(
        cls, doc_id: str, data: Mapping[str, Any], tz: tzinfo | None = None
    ) -> "Transaction":
        return cls(
            id=doc_id,
            type=data["type"],
            category=data["category"],
            original_amount=Decimal(str(data["originalAmount"])),
            original_currency=data["originalCurrency"],
            transaction_date=date.fromisoformat(
                normalize_transaction_date(data["transactionDate"], tz)
            ),
            base_currency=data.get("baseCurrency", "USD"),
            exchange_rate_to_base=Decimal(str(data["exchangeRateToBase"])),
            amount_in_base_currency=Decimal(str(data["amountInBaseCurrency"])),
            description=data.get("description") or "",
            created_at=parse_instant(data.get("createdAt")),
        )


@dataclass(frozen=True)
class TransactionDraft:
    """Validated form input, before rates are applied."""

    type: str
    category: str
    original_amount: Decimal
    original_currency: str
    transaction_date: date
    description: str = ""


def validate_draft(
    *,
    type: str | None,
    category: str | None,
    amount: Decimal | str | float | None,
    currency: str | None,
    transaction_date: date | str | None,
    description: str | None = None,
) -> TransactionDraft:
    if amount is None or str(amount).strip() == "" or not transaction_date:
        raise ValidationError("Please fill out amount and date.")

    txn_type = normalize_type(type or "")
    try:
        parsed_amount = amount if isinstance(amount, Decimal) else Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise ValidationError("Amount must be a number.") from exc
    if not parsed_amount.is_finite() or parsed_amount <= 0:
        raise ValidationError("Amount must be greater than zero.")

    normalized_currency = normalize_currency(currency or "")
    if normalized_currency not in SUPPORTED_CURRENCIES:
        raise ValidationError(f"Unsupported currency: {normalized_currency}")

    allowed = categories_for(txn_type)
    cleaned_category = (category or "").strip()
    if cleaned_category not in allowed:
        raise ValidationError(f"Unknown {txn_type.lower()} category: {cleaned_category or '-'}")

    if isinstance(transaction_date, date):
        parsed_date = transaction_date
    else:
        try:
            parsed_date = date.fromisoformat(transaction_date.strip())
        except ValueError as exc:
            raise ValidationError("Date must be in YYYY-MM-DD format.") from exc

    return TransactionDraft(
        type=txn_type,
        category=cleaned_category,
        original_amount=parsed_amount,
        original_currency=normalized_currency,
        transaction_date=parsed_date,
        description=(description or "").strip(),
    )


def build_document(draft: TransactionDraft, rates: RateTable, base_currency: str) -> dict[str, Any]:
    """Freeze the current rate into a storable transaction payload."""
    rate, amount_in_base = to_base_amount(draft.original_amount, draft.original_currency, rates)
    return {
        "type": draft.type,
        "category": draft.category,
        "originalAmount": decimal_text(draft.original_amount),
        "originalCurrency": draft.original_currency,
        "transactionDate": draft.transaction_date.isoformat(),
        "description": draft.description,
        "baseCurrency": base_currency,
        "exchangeRateToBase": decimal_text(rate),
        "amountInBaseCurrency": decimal_text(amount_in_base),
    }


def decimal_text(value: Decimal) -> str:
    """Plain positional notation, so ``10 / 0.5`` is stored as ``20`` not ``2E+1``."""
    return format(value, "f")


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def parse_month(value: str) -> date:
    try:
        return datetime.strptime(value.strip(), "%Y-%m").date()
    except ValueError as exc:
        raise ValidationError("Invalid month format. Use YYYY-MM.") from exc


def normalize_transaction_date(value: Any, tz: tzinfo | None = None) -> str:
    """Reduce any stored date representation to a ``YYYY-MM-DD`` string.

    Timestamps (``{"seconds": ..., "nanoseconds": ...}`` documents, aware
    datetimes, ISO instants) are read in ``tz``, or the local zone when
    ``tz`` is None, before the calendar date is taken.
    """
    if isinstance(value, datetime):
        return _local_date(value, tz).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping) and "seconds" in value:
        instant = datetime.fromtimestamp(int(value["seconds"]), tz=timezone.utc)
        return _local_date(instant, tz).isoformat()
    if isinstance(value, str):
        cleaned = value.strip()
        if len(cleaned) == 10:
            return date.fromisoformat(cleaned).isoformat()
        return _local_date(_parse_iso_instant(cleaned), tz).isoformat()
    raise ValueError(f"Unrecognised transaction date: {value!r}")


def is_plain_date_string(value: Any) -> bool:
    if not isinstance(value, str) or len(value) != 10:
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _local_date(value: datetime, tz: tzinfo | None) -> date:
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(tz).date()


def _parse_iso_instant(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def parse_instant(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, Mapping) and "seconds" in value:
        return datetime.fromtimestamp(int(value["seconds"]), tz=timezone.utc)
    if isinstance(value, str) and value:
        return _parse_iso_instant(value)
    return None
