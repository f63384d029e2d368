"""
Configuration for the ledger service.

Values come from the environment (a ``.env`` file is honoured) and are
gathered into a frozen ``LedgerConfig`` that is handed to each component.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from dotenv import load_dotenv

from family_ledger.errors import ConfigurationError

DEFAULT_APP_ID = "family-finance-tracker-v1"
DEFAULT_RATE_API_URL = "https://v6.exchangerate-api.com/v6"


@dataclass(frozen=True)
class LedgerConfig:
    rate_api_key: str
    rate_api_url: str = DEFAULT_RATE_API_URL
    database_url: str = "sqlite:///./family_ledger.db"
    app_id: str = DEFAULT_APP_ID
    shared_family_id: str | None = None
    base_currency: str = "USD"
    fetch_page_size: int = 25
    list_page_size: int = 20
    frontend_origin: str = "http://localhost:3000"

    def scope_root(self, user_id: str) -> str:
        if self.shared_family_id:
            return f"artifacts/{self.app_id}/families/{self.shared_family_id}"
        return f"artifacts/{self.app_id}/users/{user_id}"

    def transactions_path(self, user_id: str) -> str:
        return f"{self.scope_root(user_id)}/transactions"

    def recurring_path(self, user_id: str) -> str:
        return f"{self.scope_root(user_id)}/recurring"


def load_config(
    environ: Mapping[str, str] | None = None, require_rate_key: bool = True
) -> LedgerConfig:
    """Read the configuration; tools that never touch rates pass ``require_rate_key=False``."""
    if environ is None:
        load_dotenv()
        environ = os.environ

    api_key = environ.get("EXCHANGE_RATE_API_KEY", "").strip()
    if not api_key and require_rate_key:
        raise ConfigurationError(
            "Exchange rate configuration is missing. Set EXCHANGE_RATE_API_KEY."
        )

    base_currency = environ.get("BASE_CURRENCY", "USD").strip().upper()
    if len(base_currency) != 3 or not base_currency.isalpha():
        raise ConfigurationError("BASE_CURRENCY must be a 3-letter ISO 4217 code.")

    return LedgerConfig(
        rate_api_key=api_key,
        rate_api_url=environ.get("EXCHANGE_RATE_API_URL", DEFAULT_RATE_API_URL).rstrip("/"),
        database_url=environ.get("DATABASE_URL", "sqlite:///./family_ledger.db"),
        app_id=environ.get("APP_ID", DEFAULT_APP_ID).strip() or DEFAULT_APP_ID,
        shared_family_id=environ.get("SHARED_FAMILY_ID", "").strip() or None,
        base_currency=base_currency,
        fetch_page_size=_positive_int(environ, "FETCH_PAGE_SIZE", 25),
        list_page_size=_positive_int(environ, "LIST_PAGE_SIZE", 20),
        frontend_origin=environ.get("FRONTEND_ORIGIN", "http://localhost:3000"),
    )


def _positive_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer.") from exc
    if value <= 0:
        raise ConfigurationError(f"{name} must be greater than zero.")
    return value
