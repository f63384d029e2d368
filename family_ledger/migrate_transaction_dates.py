"""
One-off migration of the ``transactionDate`` field to plain date strings.

Older clients stored ``transactionDate`` as a timestamp (a
``{"seconds", "nanoseconds"}`` document or an ISO instant). Reading those
back in another timezone shifts the calendar day, so every such document is
rewritten as ``YYYY-MM-DD`` taken in the local timezone, which is the
timezone the original entry was made in.

Usage:
    python -m family_ledger.migrate_transaction_dates [collection-path]

Without an argument the shared family collection from the configuration is
migrated (``SHARED_FAMILY_ID`` must then be set).
The storage settings (``DATABASE_URL``, ``APP_ID``) are read as for the
service; ``EXCHANGE_RATE_API_KEY`` is not required.
"""

from __future__ import annotations

import sys
from datetime import tzinfo
from typing import Mapping

from family_ledger.config import load_config
from family_ledger.db import build_engine, init_db
from family_ledger.document_store import DocumentStore, SqlDocumentStore
from family_ledger.errors import ApiError, ConfigurationError
from family_ledger.logger import get_logger
from family_ledger.transactions import is_plain_date_string, normalize_transaction_date

logger = get_logger(__name__)


def migrate_transaction_dates(
    store: DocumentStore, collection_path: str, tz: tzinfo | None = None
) -> int:
    updated = 0
    for doc in store.list_documents(collection_path):
        value = doc.data.get("transactionDate")
        if value is None or is_plain_date_string(value):
            continue
        try:
            date_string = normalize_transaction_date(value, tz)
        except ValueError as exc:
            logger.warning("Skipping %s: %s", doc.id, exc)
            continue
        store.update(collection_path, doc.id, {"transactionDate": date_string})
        updated += 1
        logger.info("Updated %s: %s", doc.id, date_string)

    logger.info("Migration complete. Updated %d documents.", updated)
    return updated


def main(argv: list[str] | None = None, environ: Mapping[str, str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    try:
        config = load_config(environ, require_rate_key=False)
        if args:
            collection_path = args[0]
        elif config.shared_family_id:
            collection_path = config.transactions_path(config.shared_family_id)
        else:
            raise ConfigurationError("Pass a collection path or set SHARED_FAMILY_ID.")

        engine = build_engine(config.database_url)
        init_db(engine)
        migrate_transaction_dates(SqlDocumentStore(engine), collection_path)
    except (ConfigurationError, ApiError) as exc:
        logger.error("Migration failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
