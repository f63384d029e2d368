import itertools
import unittest
from datetime import date
from decimal import Decimal

from family_ledger.currency_conversion import RateTable
from family_ledger.errors import ValidationError
from family_ledger.report_engine import (
    CategoryTotal,
    ListState,
    MonthlyTotals,
    ReportFilters,
    SortState,
    available_months,
    build_report,
    display_amount,
    filter_transactions,
    list_view,
    paginate,
    sort_transactions,
)
from family_ledger.transactions import Transaction

RATES = RateTable(
    fetched_on=date(2024, 6, 1),
    rates={
        "USD": Decimal("1"),
        "EUR": Decimal("0.5"),
        "GBP": Decimal("0.8"),
        "HUF": Decimal("400"),
    },
)

_ids = itertools.count(1)


def make_txn(
    txn_type: str,
    category: str,
    amount: str,
    currency: str,
    on: date,
    description: str = "",
) -> Transaction:
    original = Decimal(amount)
    rate = RATES.rates[currency]
    return Transaction(
        id=f"t{next(_ids):03d}",
        type=txn_type,
        category=category,
        original_amount=original,
        original_currency=currency,
        transaction_date=on,
        base_currency="USD",
        exchange_rate_to_base=rate,
        amount_in_base_currency=original / rate,
        description=description,
    )


class BuildReportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transactions = [
            make_txn("Income", "Salary", "3000", "USD", date(2024, 6, 1), "June pay"),
            make_txn("Expense", "Groceries", "50", "EUR", date(2024, 6, 3), "Market"),
            make_txn("Expense", "Utilities", "120", "USD", date(2024, 6, 5), "Power bill"),
            make_txn("Expense", "Groceries", "20000", "HUF", date(2024, 5, 20), "Budapest shop"),
            make_txn("Income", "Gift", "40", "GBP", date(2024, 5, 2), "Birthday"),
            make_txn("Expense", "Travel", "100", "USD", date(2024, 5, 9), "Train"),
        ]

    def test_empty_filters_keep_everything(self) -> None:
        self.assertEqual(
            filter_transactions(self.transactions, ReportFilters()), self.transactions
        )

    def test_totals_in_usd(self) -> None:
        report = build_report(self.transactions, ReportFilters(), "USD", RATES)

        # 50 EUR -> 100 USD, 20000 HUF -> 50 USD, 40 GBP -> 50 USD
        self.assertEqual(report.total_expense, Decimal("370"))
        self.assertEqual(report.total_income, Decimal("3050"))
        self.assertEqual(report.net_balance, Decimal("2680"))
        self.assertEqual(report.transaction_count, 6)

    def test_same_currency_amounts_are_not_round_tripped(self) -> None:
        txn = self.transactions[1]

        self.assertEqual(display_amount(txn, "EUR", RATES), Decimal("50"))
        self.assertEqual(display_amount(txn, "GBP", RATES), Decimal("80.0"))

    def test_expense_by_category_sorted_descending(self) -> None:
        report = build_report(self.transactions, ReportFilters(), "USD", RATES)

        self.assertEqual(
            report.expense_by_category,
            [
                CategoryTotal(category="Groceries", amount=Decimal("150")),
                CategoryTotal(category="Utilities", amount=Decimal("120")),
                CategoryTotal(category="Travel", amount=Decimal("100")),
            ],
        )

    def test_category_ties_keep_input_order(self) -> None:
        transactions = [
            make_txn("Expense", "Travel", "10", "USD", date(2024, 6, 1)),
            make_txn("Expense", "Healthcare", "10", "USD", date(2024, 6, 2)),
        ]

        report = build_report(transactions, ReportFilters(), "USD", RATES)

        self.assertEqual(
            [item.category for item in report.expense_by_category], ["Travel", "Healthcare"]
        )

    def test_monthly_trend_sorted_ascending(self) -> None:
        report = build_report(self.transactions, ReportFilters(), "USD", RATES)

        self.assertEqual(
            report.monthly_trend,
            [
                MonthlyTotals(month="2024-05", expense=Decimal("150"), income=Decimal("50")),
                MonthlyTotals(month="2024-06", expense=Decimal("220"), income=Decimal("3000")),
            ],
        )

    def test_filters_combine(self) -> None:
        filters = ReportFilters.build(months=["2024-05"], categories=["Groceries", "Travel"])

        report = build_report(self.transactions, filters, "USD", RATES)

        self.assertEqual(report.total_expense, Decimal("150"))
        self.assertEqual(report.total_income, Decimal("0"))
        self.assertEqual(report.transaction_count, 2)

    def test_description_filter_is_case_insensitive(self) -> None:
        filters = ReportFilters.build(description="MARKET")

        matched = filter_transactions(self.transactions, filters)

        self.assertEqual([txn.description for txn in matched], ["Market"])

    def test_net_balance_holds_for_every_filter_combination(self) -> None:
        month_choices = [[], ["2024-05"], ["2024-06"], ["2024-05", "2024-06"]]
        category_choices = [[], ["Groceries"], ["Salary", "Travel"], ["Gift"]]
        for months, categories in itertools.product(month_choices, category_choices):
            for currency in ("USD", "EUR", "HUF"):
                filters = ReportFilters.build(months=months, categories=categories)
                report = build_report(self.transactions, filters, currency, RATES)
                self.assertEqual(report.total_income - report.total_expense, report.net_balance)

    def test_available_months_newest_first(self) -> None:
        self.assertEqual(available_months(self.transactions), ["2024-06", "2024-05"])


class SortingAndPagingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.transactions = [
            make_txn("Expense", "Groceries", "50", "EUR", date(2024, 6, 3)),
            make_txn("Expense", "Utilities", "120", "USD", date(2024, 6, 5)),
            make_txn("Expense", "Dining Out", "20000", "HUF", date(2024, 5, 20)),
            make_txn("Expense", "Travel", "100", "USD", date(2024, 5, 9)),
            make_txn("Expense", "Shopping", "100", "USD", date(2024, 5, 10)),
        ]

    def test_amount_sort_uses_display_conversion(self) -> None:
        ordered = sort_transactions(
            self.transactions, SortState(key="amount", descending=False), "USD", RATES
        )

        # 20000 HUF is 50 USD, far below its raw original amount
        self.assertEqual(
            [display_amount(txn, "USD", RATES) for txn in ordered],
            [Decimal("50"), Decimal("100"), Decimal("100"), Decimal("100"), Decimal("120")],
        )
        self.assertEqual(ordered[0].original_currency, "HUF")

    def test_descending_is_exact_reverse_of_ascending(self) -> None:
        for key in ("amount", "date", "category"):
            ascending = sort_transactions(self.transactions, SortState(key=key, descending=False), "EUR", RATES)
            descending = sort_transactions(self.transactions, SortState(key=key, descending=True), "EUR", RATES)
            self.assertEqual(descending, list(reversed(ascending)))

    def test_selecting_sort_key_toggles_direction(self) -> None:
        state = SortState()

        state = state.select("amount")
        self.assertEqual(state, SortState(key="amount", descending=False))
        state = state.select("amount")
        self.assertEqual(state, SortState(key="amount", descending=True))
        state = state.select("category")
        self.assertEqual(state, SortState(key="category", descending=False))

    def test_unknown_sort_key_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            SortState().select("payee")

    def test_paginate_clamps_page(self) -> None:
        page = paginate(self.transactions, page=9, page_size=2)

        self.assertEqual(page.page, 3)
        self.assertEqual(page.total_pages, 3)
        self.assertEqual(len(page.items), 1)

    def test_filter_change_resets_page(self) -> None:
        state = ListState()
        state.go_to_page(3)

        state.set_filters(ReportFilters.build(months=["2024-05"]))

        self.assertEqual(state.page, 1)

    def test_same_filters_keep_page(self) -> None:
        state = ListState(filters=ReportFilters.build(months=["2024-05"]))
        state.go_to_page(2)

        state.set_filters(ReportFilters.build(months=["2024-05"]))

        self.assertEqual(state.page, 2)

    def test_list_view_filters_sorts_and_pages(self) -> None:
        state = ListState()
        state.set_filters(ReportFilters.build(months=["2024-05"]))
        state.select_sort("date")

        page = list_view(self.transactions, state, "USD", RATES, page_size=2)

        self.assertEqual(page.total_items, 3)
        self.assertEqual(
            [txn.transaction_date for txn in page.items], [date(2024, 5, 9), date(2024, 5, 10)]
        )


if __name__ == "__main__":
    unittest.main()
