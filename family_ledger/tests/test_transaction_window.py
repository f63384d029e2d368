import unittest
from datetime import date, datetime, timezone

from family_ledger.db import build_engine, init_db
from family_ledger.document_store import SqlDocumentStore
from family_ledger.transaction_window import TransactionWindow
from family_ledger.transactions import normalize_transaction_date

COLLECTION = "artifacts/test/users/u1/transactions"


def transaction_doc(transaction_date, amount="10", description="", category="Groceries") -> dict:
    return {
        "type": "Expense",
        "category": category,
        "originalAmount": amount,
        "originalCurrency": "USD",
        "transactionDate": transaction_date,
        "description": description,
        "baseCurrency": "USD",
        "exchangeRateToBase": "1",
        "amountInBaseCurrency": amount,
    }


class TransactionWindowTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = build_engine("sqlite://")
        init_db(engine)
        self.store = SqlDocumentStore(engine)

    def _seed(self, dates: list[str]) -> None:
        self.store.add_many(COLLECTION, [transaction_doc(value) for value in dates])

    def test_initial_load_keeps_current_and_previous_month(self) -> None:
        self._seed(
            ["2024-04-03", "2024-04-20", "2024-04-28", "2024-05-02", "2024-05-30", "2024-06-01", "2024-06-10"]
        )
        window = TransactionWindow(self.store, COLLECTION, page_size=25)

        loaded = window.fetch_initial(date(2024, 6, 15))

        self.assertEqual(loaded, 4)
        self.assertEqual({txn.month for txn in window.transactions}, {"2024-05", "2024-06"})
        self.assertTrue(window.has_more)
        self.assertEqual(window.oldest_loaded_month, "2024-05")
        self.assertEqual(
            [txn.transaction_date for txn in window.transactions],
            [date(2024, 6, 10), date(2024, 6, 1), date(2024, 5, 30), date(2024, 5, 2)],
        )

    def test_initial_load_pages_until_short_page(self) -> None:
        self._seed(["2024-06-01", "2024-06-02", "2024-06-03", "2024-06-04", "2024-06-05", "2024-05-31"])
        window = TransactionWindow(self.store, COLLECTION, page_size=2)

        loaded = window.fetch_initial(date(2024, 6, 15))

        self.assertEqual(loaded, 6)
        self.assertFalse(window.has_more)

    def test_one_more_month_loads_only_the_target_month(self) -> None:
        self._seed(["2024-03-15", "2024-04-03", "2024-04-28", "2024-05-02", "2024-06-10"])
        window = TransactionWindow(self.store, COLLECTION, page_size=2)
        window.fetch_initial(date(2024, 6, 15))

        added = window.fetch_one_more_month()

        self.assertEqual(added, 2)
        self.assertEqual(window.oldest_loaded_month, "2024-04")
        self.assertTrue(window.has_more)
        self.assertEqual(
            sorted(txn.month for txn in window.transactions),
            ["2024-04", "2024-04", "2024-05", "2024-06"],
        )

        added = window.fetch_one_more_month()

        self.assertEqual(added, 1)
        self.assertEqual(window.oldest_loaded_month, "2024-03")
        self.assertFalse(window.has_more)
        self.assertEqual(window.fetch_one_more_month(), 0)

    def test_one_more_month_moves_past_empty_months(self) -> None:
        self._seed(["2024-01-15", "2024-06-10"])
        window = TransactionWindow(self.store, COLLECTION, page_size=25)
        window.fetch_initial(date(2024, 6, 15))

        added = window.fetch_one_more_month()

        self.assertEqual(added, 0)
        self.assertEqual(window.oldest_loaded_month, "2024-04")
        self.assertTrue(window.has_more)

    def test_fetch_all_loads_everything(self) -> None:
        self._seed(["2023-11-01", "2024-01-15", "2024-02-15", "2024-05-02", "2024-06-10"])
        window = TransactionWindow(self.store, COLLECTION, page_size=2)
        window.fetch_initial(date(2024, 6, 15))

        added = window.fetch_all()

        self.assertEqual(added, 3)
        self.assertEqual(len(window.transactions), 5)
        self.assertFalse(window.has_more)
        self.assertEqual(window.oldest_loaded_month, "2023-11")

    def test_live_snapshot_keeps_backfilled_months(self) -> None:
        self._seed(["2024-03-15", "2024-05-02", "2024-06-10"])
        window = TransactionWindow(self.store, COLLECTION, page_size=25)
        window.fetch_initial(date(2024, 6, 15))
        unsubscribe = window.start_live(date(2024, 6, 15))
        window.fetch_all()

        self.store.add(COLLECTION, transaction_doc("2024-06-12", description="new"))

        months = sorted(txn.month for txn in window.transactions)
        self.assertEqual(months, ["2024-03", "2024-05", "2024-06", "2024-06"])
        self.assertIn("new", [txn.description for txn in window.transactions])
        unsubscribe()

    def test_live_snapshot_drops_deleted_live_records(self) -> None:
        self._seed(["2024-06-10"])
        window = TransactionWindow(self.store, COLLECTION, page_size=25)
        window.fetch_initial(date(2024, 6, 15))
        window.start_live(date(2024, 6, 15))
        doc_id = window.transactions[0].id

        self.store.delete(COLLECTION, doc_id)

        self.assertEqual(window.transactions, [])

    def test_applying_same_snapshot_twice_is_idempotent(self) -> None:
        self._seed(["2024-02-01", "2024-06-10", "2024-05-11"])
        window = TransactionWindow(self.store, COLLECTION, page_size=25)
        window.fetch_initial(date(2024, 6, 15))
        window.start_live(date(2024, 6, 15))
        window.fetch_all()
        snapshot = self.store.query_page(COLLECTION, limit=None, since="2024-05-01")

        window.apply_snapshot(snapshot)
        once = list(window.transactions)
        window.apply_snapshot(snapshot)

        self.assertEqual(window.transactions, once)
        self.assertEqual(len(once), 3)

    def test_timestamp_dates_are_normalized(self) -> None:
        instant = datetime(2024, 6, 3, 22, 30, tzinfo=timezone.utc)
        self.store.add(
            COLLECTION,
            transaction_doc({"seconds": int(instant.timestamp()), "nanoseconds": 0}),
        )
        window = TransactionWindow(self.store, COLLECTION, page_size=25, tz=timezone.utc)

        window.fetch_initial(date(2024, 6, 15))

        self.assertEqual(window.transactions[0].transaction_date, date(2024, 6, 3))

    def test_malformed_documents_are_skipped(self) -> None:
        self._seed(["2024-06-10"])
        self.store.add(COLLECTION, {"transactionDate": "2024-06-11", "type": "Expense"})
        window = TransactionWindow(self.store, COLLECTION, page_size=25)

        window.fetch_initial(date(2024, 6, 15))

        self.assertEqual(len(window.transactions), 1)


class NormalizeTransactionDateTests(unittest.TestCase):
    def test_plain_date_string_is_unchanged(self) -> None:
        self.assertEqual(normalize_transaction_date("2024-06-01"), "2024-06-01")

    def test_iso_instant_is_read_in_given_timezone(self) -> None:
        self.assertEqual(
            normalize_transaction_date("2024-05-31T23:30:00Z", timezone.utc), "2024-05-31"
        )

    def test_date_object(self) -> None:
        self.assertEqual(normalize_transaction_date(date(2024, 1, 9)), "2024-01-09")

    def test_unknown_value_raises(self) -> None:
        with self.assertRaises(ValueError):
            normalize_transaction_date(12345)


if __name__ == "__main__":
    unittest.main()
