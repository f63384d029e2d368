from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
import json
from typing import Callable, Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from family_ledger.errors import ApiError, NetworkError, ValidationError
from family_ledger.logger import get_logger
from family_ledger.persistence import KeyValueStore

logger = get_logger(__name__)

SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP", "HUF")
CURRENCY_SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "HUF": "Ft"}
RATE_CACHE_KEY = "exchangeRatesCache"

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "HUF": Decimal("355.40"),
}


@dataclass(frozen=True)
class RateTable:
    """Currency code -> units of that currency per one unit of base currency."""

    fetched_on: date
    rates: Mapping[str, Decimal]

    def rate_for(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        try:
            rate = self.rates[normalized]
        except KeyError as exc:
            raise ValidationError(f"Unsupported currency: {normalized}") from exc
        if rate <= 0:
            raise ValidationError(f"No usable rate for {normalized}.")
        return rate

    def to_payload(self) -> dict:
        return {
            "date": self.fetched_on.isoformat(),
            "rates": {code: str(value) for code, value in self.rates.items()},
        }

    @classmethod
    def from_payload(cls, payload: Mapping) -> "RateTable":
        rates = payload["rates"]
        if not isinstance(rates, Mapping):
            raise ValueError("Cached rates must be a mapping.")
        return cls(
            fetched_on=date.fromisoformat(payload["date"]),
            rates={normalize_currency(code): Decimal(str(value)) for code, value in rates.items()},
        )


class RateProvider(Protocol):
    def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        ...


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates per one unit of base currency."""

    rates: Mapping[str, Decimal] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        return dict(self.rates)


@dataclass(frozen=True)
class ExchangeRateApiProvider:
    api_key: str
    base_url: str = "https://v6.exchangerate-api.com/v6"
    timeout_seconds: float = 8

    def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        base_currency = normalize_currency(base_currency)
        url = f"{self.base_url}/{self.api_key}/latest/{base_currency}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except HTTPError as exc:
            raise ApiError(f"Rate service answered HTTP {exc.code}") from exc
        except (URLError, TimeoutError) as exc:
            raise NetworkError("Rate service unavailable") from exc
        except json.JSONDecodeError as exc:
            raise ApiError("Rate service returned malformed JSON") from exc

        if payload.get("result") != "success":
            raise ApiError(payload.get("error-type") or "API Error")

        rates = payload.get("conversion_rates")
        if not isinstance(rates, dict):
            raise ApiError("Rate service response missing conversion_rates")

        parsed = {normalize_currency(code): Decimal(str(value)) for code, value in rates.items()}
        parsed[base_currency] = Decimal("1")
        return parsed


class RateCache:
    """Daily rate table, fetched at most once per calendar day.

    A stale cached table is reused when the refresh fails; ``on_warning`` is
    told about it. Without any cached table the failure propagates and the
    caller must treat rates as unset.
    """

    def __init__(
        self,
        provider: RateProvider,
        storage: KeyValueStore,
        base_currency: str = "USD",
        cache_key: str = RATE_CACHE_KEY,
        on_warning: Callable[[str], None] | None = None,
    ) -> None:
        self.provider = provider
        self.storage = storage
        self.base_currency = normalize_currency(base_currency)
        self.cache_key = cache_key
        self.on_warning = on_warning

    def get_rates(self, today: date) -> RateTable:
        cached = self._read_cache()
        if cached is not None and cached.fetched_on == today:
            return cached

        try:
            rates = self.provider.fetch_rates(self.base_currency)
        except (NetworkError, ApiError) as exc:
            if cached is None:
                logger.error("Rate lookup failed with no cached table: %s", exc)
                raise
            message = f"Could not update daily rates: {exc}"
            logger.warning("%s; using rates from %s", message, cached.fetched_on)
            if self.on_warning is not None:
                self.on_warning(message)
            return cached

        table = RateTable(fetched_on=today, rates=dict(rates))
        self.storage.set(self.cache_key, json.dumps(table.to_payload()))
        logger.info("Fetched %d rates for %s", len(table.rates), today.isoformat())
        return table

    def _read_cache(self) -> RateTable | None:
        raw = self.storage.get(self.cache_key)
        if not raw:
            return None
        try:
            return RateTable.from_payload(json.loads(raw))
        except (ValueError, KeyError, TypeError, InvalidOperation) as exc:
            logger.warning("Ignoring corrupt rate cache: %s", exc)
            return None


def to_base_amount(original_amount: Decimal, original_currency: str, rates: RateTable) -> tuple[Decimal, Decimal]:
    """Return ``(exchange_rate_to_base, amount_in_base_currency)`` for a write."""
    rate = rates.rate_for(original_currency)
    amount = _coerce_amount(original_amount)
    return rate, amount / rate


def convert_for_display(
    original_amount: Decimal,
    original_currency: str,
    amount_in_base_currency: Decimal,
    display_currency: str,
    rates: RateTable,
) -> Decimal:
    """Convert a stored amount for display.

    Same-currency amounts are returned untouched so no rate round-trip
    creeps into the figure.
    """
    if normalize_currency(original_currency) == normalize_currency(display_currency):
        return _coerce_amount(original_amount)
    return _coerce_amount(amount_in_base_currency) * rates.rate_for(display_currency)


def format_money(value: Decimal, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(normalize_currency(currency), "")
    return f"{symbol}{value:,.2f}"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValidationError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
