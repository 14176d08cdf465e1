"""
Currency conversion with a daily exchange rate cache.

Conversion never fails the caller: any problem with the rate feed or the
cache degrades to showing the USD amount.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, List, Optional, Sequence, Union

from metered_usage.config.logger import get_logger
from metered_usage.sdk.exchange_rates import ExchangeRateClient
from metered_usage.storage.models import ExchangeRateSnapshot, parse_rates
from metered_usage.storage.repository import ExchangeRateCache

LOGGER = get_logger("metered_usage.currency")

BASE_CURRENCY = "USD"

SUPPORTED_CURRENCIES = (
    "USD", "EUR", "GBP", "JPY", "AUD", "CAD", "CHF", "CNY", "INR", "MXN",
    "BRL", "RUB", "KRW", "SGD", "NZD", "TRY", "ZAR", "SEK", "NOK", "DKK",
    "HKD", "TWD", "PHP", "THB", "IDR", "VND", "ILS", "AED", "SAR", "MYR",
    "PLN", "CZK", "HUF", "RON", "BGN", "HRK", "EGP", "QAR", "KWD", "MAD",
)

CURRENCY_SYMBOLS = {
    "USD": "$", "EUR": "€", "GBP": "£", "JPY": "¥", "AUD": "A$",
    "CAD": "C$", "CHF": "CHF", "CNY": "¥", "INR": "₹", "MXN": "Mex$",
    "BRL": "R$", "RUB": "₽", "KRW": "₩", "SGD": "S$", "NZD": "NZ$",
    "TRY": "₺", "ZAR": "R", "SEK": "kr", "NOK": "kr", "DKK": "kr",
    "HKD": "HK$", "TWD": "NT$", "PHP": "₱", "THB": "฿", "IDR": "Rp",
    "VND": "₫", "ILS": "₪", "AED": "د.إ", "SAR": "﷼", "MYR": "RM",
    "PLN": "zł", "CZK": "Kč", "HUF": "Ft", "RON": "lei", "BGN": "лв",
    "HRK": "kn", "EGP": "E£", "QAR": "ر.ق", "KWD": "د.ك", "MAD": "د.م.",
}

# Shown in whole units
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW"})

Amount = Union[Decimal, int, float]


@dataclass(frozen=True)
class ConvertedAmount:
    """An amount in a display currency."""
    value: Amount
    symbol: str
    currency: str = BASE_CURRENCY


def currency_symbol(currency: str) -> str:
    """Symbol for a currency code, or the code itself when unknown."""
    return CURRENCY_SYMBOLS.get(currency.upper(), currency.upper())


def format_currency(amount: Amount, currency: str, decimals: int = 2) -> str:
    """Format an amount with its symbol.

    Zero-decimal currencies round to whole units. The sign goes before the
    symbol, as in ``-$8.00``.
    """
    code = currency.upper()
    value = Decimal(str(amount))
    if code in ZERO_DECIMAL_CURRENCIES:
        rounded = value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        text = f"{abs(rounded)}"
    else:
        rounded = value.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)
        text = f"{abs(rounded):.{decimals}f}"
    sign = "-" if rounded < 0 else ""
    return f"{sign}{currency_symbol(code)}{text}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CurrencyConverter:
    """Converts USD amounts using rates cached for a fixed lifetime.

    Args:
        rate_client: Source of fresh rate payloads
        cache: Persistent snapshot cache
        ttl_hours: Snapshot lifetime
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        rate_client: ExchangeRateClient,
        cache: ExchangeRateCache,
        ttl_hours: int = 24,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.rate_client = rate_client
        self.cache = cache
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock

    def _cached_snapshot(self) -> Optional[ExchangeRateSnapshot]:
        try:
            snapshot = self.cache.load(BASE_CURRENCY)
        except sqlite3.Error as e:
            LOGGER.warning("Exchange rate cache unreadable", extra={"error": str(e)})
            return None
        if snapshot is None:
            return None
        if not snapshot.is_fresh(self._clock(), self.ttl):
            LOGGER.info("Exchange rate cache expired", extra={"fetchedAt": snapshot.fetched_at.isoformat()})
            return None
        return snapshot

    async def get_rates(self) -> ExchangeRateSnapshot:
        """Return a fresh snapshot, fetching one when the cache is stale.

        Raises:
            TransportError: If a fetch was needed and failed
        """
        cached = self._cached_snapshot()
        if cached is not None:
            LOGGER.info("Using cached exchange rates", extra={"date": cached.date})
            return cached

        LOGGER.info("Fetching exchange rates")
        payload = await self.rate_client.fetch_rates()
        raw_rates = payload.get(BASE_CURRENCY.lower())
        if raw_rates is None:
            raw_rates = payload.get("rates")
        date = payload.get("date")
        snapshot = ExchangeRateSnapshot(
            rates=parse_rates(raw_rates),
            fetched_at=self._clock(),
            date=date if isinstance(date, str) else None,
        )
        try:
            self.cache.save(snapshot)
        except sqlite3.Error as e:
            LOGGER.warning("Could not cache exchange rates", extra={"error": str(e)})
        return snapshot

    async def _snapshot_or_none(self, target: str) -> Optional[ExchangeRateSnapshot]:
        try:
            return await self.get_rates()
        except Exception as e:  # noqa: BLE001
            LOGGER.warning("Currency conversion degraded to USD", extra={"target": target, "error": str(e)})
            return None

    def _apply(self, snapshot: Optional[ExchangeRateSnapshot], amount: Amount, target: str) -> ConvertedAmount:
        fallback = ConvertedAmount(value=amount, symbol=currency_symbol(BASE_CURRENCY))
        if snapshot is None:
            return fallback
        rate = snapshot.rate_for(target)
        if not rate:
            LOGGER.warning("Exchange rate not found", extra={"target": target})
            return fallback

        value = Decimal(str(amount)) * rate
        LOGGER.debug("Converted amount", extra={"amount": str(amount), "target": target, "value": str(value)})
        return ConvertedAmount(value=value, symbol=currency_symbol(target), currency=target)

    async def convert(self, amount: Amount, target_currency: str) -> ConvertedAmount:
        """Convert a USD amount, falling back to USD on any failure."""
        return (await self.convert_all([amount], target_currency))[0]

    async def convert_all(self, amounts: Sequence[Amount], target_currency: str) -> List[ConvertedAmount]:
        """Convert several USD amounts against one rate snapshot.

        Rates are looked up at most once per call, so a failing feed costs
        one request however many amounts there are.
        """
        target = target_currency.upper()
        if target == BASE_CURRENCY:
            return [ConvertedAmount(value=amount, symbol=currency_symbol(BASE_CURRENCY)) for amount in amounts]
        if not amounts:
            return []

        snapshot = await self._snapshot_or_none(target)
        return [self._apply(snapshot, amount, target) for amount in amounts]

    async def convert_and_format(self, amount: Amount, target_currency: str, decimals: int = 2) -> str:
        converted = await self.convert(amount, target_currency)
        return format_currency(converted.value, converted.currency, decimals)

    async def format_all(self, amounts: Sequence[Amount], target_currency: str, decimals: int = 2) -> List[str]:
        converted = await self.convert_all(amounts, target_currency)
        return [format_currency(c.value, c.currency, decimals) for c in converted]
