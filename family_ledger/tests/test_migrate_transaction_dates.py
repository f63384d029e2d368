import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from family_ledger.db import build_engine, init_db
from family_ledger.document_store import SqlDocumentStore
from family_ledger.migrate_transaction_dates import main, migrate_transaction_dates

COLLECTION = "artifacts/family-finance-tracker-v1/families/shared-family-data/transactions"


class MigrateTransactionDatesTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = build_engine("sqlite://")
        init_db(engine)
        self.store = SqlDocumentStore(engine)

    def test_timestamps_become_local_date_strings(self) -> None:
        budapest = timezone(timedelta(hours=2))
        late_evening = datetime(2024, 5, 31, 22, 30, tzinfo=timezone.utc)
        timestamp_id = self.store.add(
            COLLECTION,
            {"category": "Groceries", "transactionDate": {"seconds": int(late_evening.timestamp()), "nanoseconds": 0}},
        )
        iso_id = self.store.add(
            COLLECTION, {"category": "Travel", "transactionDate": "2024-03-10T08:00:00Z"}
        )
        plain_id = self.store.add(COLLECTION, {"category": "Rent", "transactionDate": "2024-02-01"})

        updated = migrate_transaction_dates(self.store, COLLECTION, tz=budapest)

        self.assertEqual(updated, 2)
        self.assertEqual(self.store.get(COLLECTION, timestamp_id).data["transactionDate"], "2024-06-01")
        self.assertEqual(self.store.get(COLLECTION, iso_id).data["transactionDate"], "2024-03-10")
        self.assertEqual(self.store.get(COLLECTION, plain_id).data["transactionDate"], "2024-02-01")
        self.assertEqual(self.store.get(COLLECTION, timestamp_id).data["category"], "Groceries")

    def test_second_run_changes_nothing(self) -> None:
        self.store.add(COLLECTION, {"transactionDate": "2024-01-05T12:00:00+00:00"})
        migrate_transaction_dates(self.store, COLLECTION, tz=timezone.utc)

        self.assertEqual(migrate_transaction_dates(self.store, COLLECTION, tz=timezone.utc), 0)

    def test_unreadable_dates_are_left_alone(self) -> None:
        doc_id = self.store.add(COLLECTION, {"transactionDate": "sometime in May"})

        updated = migrate_transaction_dates(self.store, COLLECTION, tz=timezone.utc)

        self.assertEqual(updated, 0)
        self.assertEqual(self.store.get(COLLECTION, doc_id).data["transactionDate"], "sometime in May")


class MigrationCommandTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.environ = {"DATABASE_URL": f"sqlite:///{os.path.join(tmp.name, 'ledger.db')}"}
        engine = build_engine(self.environ["DATABASE_URL"])
        self.addCleanup(engine.dispose)
        init_db(engine)
        self.store = SqlDocumentStore(engine)

    def test_runs_without_rate_api_key(self) -> None:
        doc_id = self.store.add(COLLECTION, {"transactionDate": "2024-01-05T12:00:00+00:00"})

        exit_code = main([COLLECTION], environ=self.environ)

        self.assertEqual(exit_code, 0)
        self.assertRegex(self.store.get(COLLECTION, doc_id).data["transactionDate"], r"^2024-01-0[56]$")

    def test_missing_collection_exits_with_error(self) -> None:
        with self.assertLogs("family_ledger.migrate_transaction_dates", level="ERROR") as logs:
            exit_code = main([], environ=self.environ)

        self.assertEqual(exit_code, 1)
        self.assertIn("SHARED_FAMILY_ID", logs.output[0])

    def test_bad_base_currency_exits_with_error(self) -> None:
        environ = dict(self.environ, BASE_CURRENCY="dollars")

        self.assertEqual(main([COLLECTION], environ=environ), 1)


if __name__ == "__main__":
    unittest.main()
