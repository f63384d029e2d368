from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from math import ceil
from typing import Iterable, Sequence

from family_ledger.currency_conversion import RateTable, convert_for_display, normalize_currency
from family_ledger.errors import ValidationError
from family_ledger.transactions import EXPENSE, INCOME, Transaction

ZERO = Decimal("0")
SORT_KEYS = ("date", "amount", "category")


@dataclass(frozen=True)
class ReportFilters:
    months: frozenset[str] = frozenset()
    categories: frozenset[str] = frozenset()
    description: str = ""

    @classmethod
    def build(
        cls,
        months: Iterable[str] | None = None,
        categories: Iterable[str] | None = None,
        description: str | None = None,
    ) -> "ReportFilters":
        return cls(
            months=frozenset(value.strip() for value in months or () if value.strip()),
            categories=frozenset(value.strip() for value in categories or () if value.strip()),
            description=(description or "").strip(),
        )


@dataclass(frozen=True)
class CategoryTotal:
    category: str
    amount: Decimal


@dataclass(frozen=True)
class MonthlyTotals:
    month: str
    expense: Decimal
    income: Decimal


@dataclass(frozen=True)
class ReportData:
    display_currency: str
    total_expense: Decimal
    total_income: Decimal
    net_balance: Decimal
    expense_by_category: list[CategoryTotal]
    monthly_trend: list[MonthlyTotals]
    transaction_count: int


@dataclass(frozen=True)
class SortState:
    key: str = "date"
    descending: bool = True

    def select(self, key: str) -> "SortState":
        """Same key flips direction; a new key starts ascending."""
        normalized = _validate_sort_key(key)
        if normalized == self.key:
            return SortState(key=normalized, descending=not self.descending)
        return SortState(key=normalized, descending=False)


@dataclass(frozen=True)
class Page:
    items: list[Transaction]
    page: int
    page_size: int
    total_items: int

    @property
    def total_pages(self) -> int:
        return max(1, ceil(self.total_items / self.page_size))


@dataclass
class ListState:
    """Filter, sort and page selection for the transaction table."""

    filters: ReportFilters = field(default_factory=ReportFilters)
    sort: SortState = field(default_factory=SortState)
    page: int = 1

    def set_filters(self, filters: ReportFilters) -> None:
        if filters != self.filters:
            self.page = 1
        self.filters = filters

    def select_sort(self, key: str) -> None:
        self.sort = self.sort.select(key)

    def go_to_page(self, page: int) -> None:
        if page < 1:
            raise ValidationError("Page must be 1 or greater.")
        self.page = page


def matches(txn: Transaction, filters: ReportFilters) -> bool:
    if filters.months and txn.month not in filters.months:
        return False
    if filters.categories and txn.category not in filters.categories:
        return False
    if filters.description and filters.description.casefold() not in txn.description.casefold():
        return False
    return True


def filter_transactions(transactions: Iterable[Transaction], filters: ReportFilters) -> list[Transaction]:
    return [txn for txn in transactions if matches(txn, filters)]


def display_amount(txn: Transaction, display_currency: str, rates: RateTable) -> Decimal:
    return convert_for_display(
        txn.original_amount,
        txn.original_currency,
        txn.amount_in_base_currency,
        display_currency,
        rates,
    )


def build_report(
    transactions: Iterable[Transaction],
    filters: ReportFilters,
    display_currency: str,
    rates: RateTable,
) -> ReportData:
    display_currency = normalize_currency(display_currency)
    filtered = filter_transactions(transactions, filters)

    total_expense = ZERO
    total_income = ZERO
    by_category: dict[str, Decimal] = {}
    by_month: dict[str, dict[str, Decimal]] = {}
    for txn in filtered:
        amount = display_amount(txn, display_currency, rates)
        bucket = by_month.setdefault(txn.month, {EXPENSE: ZERO, INCOME: ZERO})
        bucket[txn.type] = bucket.get(txn.type, ZERO) + amount
        if txn.type == EXPENSE:
            total_expense += amount
            by_category[txn.category] = by_category.get(txn.category, ZERO) + amount
        elif txn.type == INCOME:
            total_income += amount

    expense_by_category = sorted(
        (CategoryTotal(category=name, amount=value) for name, value in by_category.items()),
        key=lambda item: item.amount,
        reverse=True,
    )
    monthly_trend = [
        MonthlyTotals(month=month, expense=totals[EXPENSE], income=totals[INCOME])
        for month, totals in sorted(by_month.items())
    ]
    return ReportData(
        display_currency=display_currency,
        total_expense=total_expense,
        total_income=total_income,
        net_balance=total_income - total_expense,
        expense_by_category=expense_by_category,
        monthly_trend=monthly_trend,
        transaction_count=len(filtered),
    )


def sort_transactions(
    transactions: Sequence[Transaction],
    sort: SortState,
    display_currency: str,
    rates: RateTable,
) -> list[Transaction]:
    """Sort ascending by the chosen key; descending is the exact reverse."""
    key = _validate_sort_key(sort.key)
    if key == "amount":
        ordered = sorted(transactions, key=lambda txn: display_amount(txn, display_currency, rates))
    elif key == "category":
        ordered = sorted(transactions, key=lambda txn: txn.category.casefold())
    else:
        ordered = sorted(transactions, key=lambda txn: txn.transaction_date)
    if sort.descending:
        ordered.reverse()
    return ordered


def paginate(items: Sequence[Transaction], page: int, page_size: int) -> Page:
    if page_size <= 0:
        raise ValueError("page_size must be greater than zero.")
    total_pages = max(1, ceil(len(items) / page_size))
    current = min(max(page, 1), total_pages)
    start = (current - 1) * page_size
    return Page(
        items=list(items[start : start + page_size]),
        page=current,
        page_size=page_size,
        total_items=len(items),
    )


def list_view(
    transactions: Iterable[Transaction],
    state: ListState,
    display_currency: str,
    rates: RateTable,
    page_size: int,
) -> Page:
    filtered = filter_transactions(transactions, state.filters)
    ordered = sort_transactions(filtered, state.sort, display_currency, rates)
    return paginate(ordered, state.page, page_size)


def available_months(transactions: Iterable[Transaction]) -> list[str]:
    return sorted({txn.month for txn in transactions}, reverse=True)


def _validate_sort_key(key: str) -> str:
    normalized = key.strip().lower()
    if normalized not in SORT_KEYS:
        raise ValidationError("Sort key must be date, amount, or category.")
    return normalized
