import unittest
from datetime import date
from decimal import Decimal

from family_ledger.csv_import import parse_decimal, parse_transactions_csv
from family_ledger.errors import ValidationError


class CSVImportTests(unittest.TestCase):
    def test_parses_rows_with_explicit_type(self) -> None:
        contents = "\n".join(
            [
                "Date,Type,Category,Amount,Currency,Description",
                "2024-06-01,Income,Salary,3000,USD,June pay",
                "2024-06-03,expense,Groceries,42.50,eur,Market",
            ]
        )

        result = parse_transactions_csv(contents)

        self.assertEqual(result.errors, [])
        self.assertEqual(len(result.drafts), 2)
        groceries = result.drafts[1]
        self.assertEqual(groceries.type, "Expense")
        self.assertEqual(groceries.original_amount, Decimal("42.50"))
        self.assertEqual(groceries.original_currency, "EUR")
        self.assertEqual(groceries.transaction_date, date(2024, 6, 3))

    def test_type_inferred_from_sign(self) -> None:
        contents = "\n".join(
            [
                "Transaction Date,Category,Amount,Notes",
                "06/02/2024,Dining Out,-25.00,Lunch",
                "06/05/2024,Gift,(10.00),Returned",
                "06/09/2024,Bonus,+500,Q2",
            ]
        )

        result = parse_transactions_csv(contents, default_currency="HUF")

        self.assertEqual([draft.type for draft in result.drafts], ["Expense", "Income"])
        self.assertEqual(result.drafts[0].original_amount, Decimal("25.00"))
        self.assertEqual(result.drafts[0].original_currency, "HUF")
        self.assertEqual(result.drafts[0].description, "Lunch")
        # Gift is an income category, but a negative amount means expense
        self.assertEqual([error.row for error in result.errors], [3])

    def test_row_errors_are_reported_by_row_number(self) -> None:
        contents = "\n".join(
            [
                "date,category,amount,currency",
                "2024-06-01,Groceries,-12,USD",
                "not a date,Groceries,-12,USD",
                ",,,",
                "2024-06-03,Groceries,0,USD",
                "2024-06-04,Groceries,-5,JPY",
            ]
        )

        result = parse_transactions_csv(contents)

        self.assertEqual(len(result.drafts), 1)
        self.assertEqual([error.row for error in result.errors], [3, 5, 6])

    def test_missing_required_headers(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            parse_transactions_csv("date,description\n2024-06-01,coffee\n")

        self.assertIn("category", str(ctx.exception))
        self.assertIn("amount", str(ctx.exception))

    def test_empty_file(self) -> None:
        with self.assertRaises(ValidationError):
            parse_transactions_csv("")

    def test_parse_decimal_strips_symbols(self) -> None:
        self.assertEqual(parse_decimal("£1,234.50"), Decimal("1234.50"))
        self.assertEqual(parse_decimal("-12 000 Ft"), Decimal("-12000"))
        self.assertIsNone(parse_decimal("abc"))


if __name__ == "__main__":
    unittest.main()
