from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from family_ledger.errors import ValidationError
from family_ledger.transactions import EXPENSE, INCOME, TransactionDraft, validate_draft


@dataclass(frozen=True)
class ImportRowError:
    row: int
    message: str


@dataclass(frozen=True)
class CSVImportResult:
    drafts: list[TransactionDraft]
    errors: list[ImportRowError]


FIELD_ALIASES: dict[str, list[str]] = {
    "date": ["transaction date", "transactiondate", "date", "posting date"],
    "type": ["type", "kind", "direction"],
    "category": ["category"],
    "amount": ["original amount", "originalamount", "amount", "value"],
    "currency": ["original currency", "originalcurrency", "currency", "ccy"],
    "description": ["description", "comments", "comment", "notes", "details"],
}
REQUIRED_FIELDS = ("date", "category", "amount")

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%d.%m.%Y", "%d %b %Y", "%d %B %Y")


def parse_transactions_csv(contents: str, default_currency: str = "USD") -> CSVImportResult:
    """Parse a CSV export into validated transaction drafts.

    Rows without a type column are classified by sign: negative amounts are
    expenses, positive amounts income. Row numbers in errors count the
    header as row 1.
    """
    reader = csv.reader(io.StringIO(contents))
    rows = list(reader)
    if not rows:
        raise ValidationError("CSV missing header row.")

    fieldnames = rows[0]
    headers = {field: find_header(fieldnames, aliases) for field, aliases in FIELD_ALIASES.items()}
    missing = [field for field in REQUIRED_FIELDS if headers[field] is None]
    if missing:
        raise ValidationError(f"CSV headers missing required fields: {', '.join(missing)}.")

    drafts: list[TransactionDraft] = []
    errors: list[ImportRowError] = []
    for index, raw in enumerate(rows[1:], start=2):
        row = row_to_dict(fieldnames, raw)
        if is_blank_row(row):
            continue
        try:
            drafts.append(parse_row(row, headers, default_currency))
        except ValidationError as exc:
            errors.append(ImportRowError(row=index, message=str(exc)))

    return CSVImportResult(drafts=drafts, errors=errors)


def parse_row(
    row: dict[str, str | None],
    headers: dict[str, str | None],
    default_currency: str,
) -> TransactionDraft:
    amount = parse_decimal(_value(row, headers["amount"]))
    if amount is None or amount == 0:
        raise ValidationError("Amount must be a non-zero number.")

    raw_type = _value(row, headers["type"])
    if raw_type:
        txn_type = raw_type
    else:
        txn_type = EXPENSE if amount < 0 else INCOME

    parsed_date = parse_date(_value(row, headers["date"]))
    if parsed_date is None:
        raise ValidationError("Date is missing or unreadable.")

    return validate_draft(
        type=txn_type,
        category=_value(row, headers["category"]),
        amount=abs(amount),
        currency=_value(row, headers["currency"]) or default_currency,
        transaction_date=parsed_date,
        description=_value(row, headers["description"]),
    )


def _value(row: dict[str, str | None], header: str | None) -> str:
    return clean_text(row.get(header)) if header else ""


def row_to_dict(fieldnames: list[str], row: list[str]) -> dict[str, str | None]:
    if len(row) < len(fieldnames):
        row = row + [""] * (len(fieldnames) - len(row))
    if len(row) > len(fieldnames):
        row = row[: len(fieldnames)]
    return dict(zip(fieldnames, row))


def parse_date(value: str | None) -> date | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def parse_decimal(value: str | None) -> Decimal | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None

    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]

    cleaned = re.sub(r"[$€£]|Ft", "", cleaned).replace(",", "")
    cleaned = re.sub(r"\s+", "", cleaned)

    if cleaned.startswith("-"):
        negative = True
        cleaned = cleaned[1:]
    elif cleaned.startswith("+"):
        cleaned = cleaned[1:]

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None

    return -amount if negative else amount


def find_header(fieldnames: list[str], candidates: list[str]) -> str | None:
    normalized = [(name, normalize_header(name)) for name in fieldnames if name]
    for candidate in candidates:
        cand_norm = normalize_header(candidate)
        for name, norm in normalized:
            if norm == cand_norm:
                return name
    return None


def normalize_header(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", value.strip().lower())


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""


def is_blank_row(row: dict[str, str | None]) -> bool:
    return all(not clean_text(value) for value in row.values())
