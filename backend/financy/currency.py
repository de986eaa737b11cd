"""Currency detection, exchange-rate lookup and amount conversion."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from time import monotonic
from typing import Any

import httpx

from .config import Settings, get_settings
from .domain.entities import Conversion, ParsedTransaction
from .exceptions import RateUnavailableError

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")

# Multi-character symbols first so "R$" is not read as "$".
CURRENCY_SYMBOL_MAP = {
    "R$": "BRL",
    "C$": "CAD",
    "A$": "AUD",
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "₹": "INR",
    "₽": "RUB",
}

CURRENCY_WORD_MAP = {
    "dollar": "USD",
    "dollars": "USD",
    "real": "BRL",
    "reais": "BRL",
    "euro": "EUR",
    "euros": "EUR",
    "pound": "GBP",
    "pounds": "GBP",
    "rupee": "INR",
    "rupees": "INR",
    "yen": "JPY",
}

KEYED_PROVIDER_URL = "https://v6.exchangerate-api.com/v6/{key}/pair/{from_}/{to}"
FREE_PROVIDER_URL = "https://api.exchangerate-api.com/v4/latest/{from_}"

RateProvider = Callable[[str, str], Awaitable[float]]


@dataclass(slots=True)
class CachedRate:
    rate: float
    fetched_at: float


def round_money(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Not a numeric amount: {value!r}") from exc


class CurrencyNormalizer:
    """Converts amounts between currencies using cached provider rates.

    Rates come from a ranked list of providers: the keyed exchangerate-api
    endpoint (only when a key is configured), then its free endpoint. If both
    fail, the last cached rate is reused even when stale, and if no rate was
    ever obtained the conversion degrades to identity (rate 1.0) so message
    processing never blocks on currency lookups.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        cache_ttl: float | None = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client
        self._client_lock = asyncio.Lock()
        self._cache_ttl = self.settings.rate_cache_ttl if cache_ttl is None else cache_ttl
        self._clock = clock
        self._rates: dict[tuple[str, str], CachedRate] = {}
        self._code_regex = re.compile(
            r"\b(" + "|".join(sorted(self.supported_currencies)) + r")\b",
            re.IGNORECASE,
        )

    @property
    def supported_currencies(self) -> list[str]:
        return list(self.settings.supported_currencies)

    def is_supported(self, currency: str | None) -> bool:
        return bool(currency) and currency.upper() in self.settings.supported_currencies

    def detect_currency(self, text: str) -> str | None:
        """Return the ISO code hinted at by a symbol, code or word in ``text``."""
        for symbol, code in CURRENCY_SYMBOL_MAP.items():
            if symbol in text:
                return code
        match = self._code_regex.search(text)
        if match:
            return match.group(1).upper()
        for word in re.findall(r"[a-z]+", text.lower()):
            if word in CURRENCY_WORD_MAP:
                return CURRENCY_WORD_MAP[word]
        return None

    async def get_rate(self, from_currency: str, to_currency: str) -> float:
        from_code, to_code = from_currency.upper(), to_currency.upper()
        if from_code == to_code:
            return 1.0

        key = (from_code, to_code)
        cached = self._rates.get(key)
        if cached and self._clock() - cached.fetched_at < self._cache_ttl:
            return cached.rate

        for provider in self._providers():
            try:
                rate = await provider(from_code, to_code)
            except RateUnavailableError as exc:
                logger.warning("Exchange rate provider failed: %s", exc)
                continue
            self._rates[key] = CachedRate(rate=rate, fetched_at=self._clock())
            return rate

        if cached:
            logger.warning("Using expired exchange rate for %s to %s", from_code, to_code)
            return cached.rate

        logger.warning("Using fallback rate 1.0 for %s to %s", from_code, to_code)
        return 1.0

    async def convert(
        self,
        amount: Decimal | float | int,
        from_currency: str,
        to_currency: str,
    ) -> Conversion:
        original = to_decimal(amount)
        from_code, to_code = from_currency.upper(), to_currency.upper()
        if from_code == to_code:
            return Conversion(
                converted_amount=original,
                converted_currency=to_code,
                exchange_rate=1.0,
                original_amount=original,
                original_currency=from_code,
            )

        rate = await self.get_rate(from_code, to_code)
        converted = round_money(original * Decimal(str(rate)))
        return Conversion(
            converted_amount=converted,
            converted_currency=to_code,
            exchange_rate=rate,
            original_amount=original,
            original_currency=from_code,
        )

    async def apply(self, transaction: ParsedTransaction, target_currency: str) -> ParsedTransaction:
        """Convert ``transaction`` in place to ``target_currency`` and record provenance."""
        conversion = await self.convert(transaction.amount, transaction.currency, target_currency)
        if conversion.exchange_rate != 1.0 or conversion.original_currency != conversion.converted_currency:
            logger.info(
                "Currency conversion: %s %s = %s %s (rate: %s)",
                conversion.original_amount,
                conversion.original_currency,
                conversion.converted_amount,
                conversion.converted_currency,
                conversion.exchange_rate,
            )
        transaction.amount = conversion.converted_amount
        transaction.currency = conversion.converted_currency
        transaction.original_amount = conversion.original_amount
        transaction.original_currency = conversion.original_currency
        transaction.exchange_rate = conversion.exchange_rate
        return transaction

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    def _providers(self) -> list[RateProvider]:
        providers: list[RateProvider] = []
        if self.settings.exchange_rate_api_key:
            providers.append(self._fetch_keyed_rate)
        providers.append(self._fetch_free_rate)
        return providers

    async def _get_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None or self._client.is_closed:
                self._client = httpx.AsyncClient(timeout=self.settings.rate_provider_timeout)
            return self._client

    async def _fetch_json(self, provider: str, url: str, from_code: str, to_code: str) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.get(url, timeout=self.settings.rate_provider_timeout)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RateUnavailableError(provider, from_code, to_code, str(exc)) from exc
        if not isinstance(payload, dict):
            raise RateUnavailableError(provider, from_code, to_code, "unexpected payload")
        return payload

    async def _fetch_keyed_rate(self, from_code: str, to_code: str) -> float:
        url = KEYED_PROVIDER_URL.format(
            key=self.settings.exchange_rate_api_key, from_=from_code, to=to_code
        )
        payload = await self._fetch_json("exchangerate-api (keyed)", url, from_code, to_code)
        if payload.get("result") != "success":
            raise RateUnavailableError(
                "exchangerate-api (keyed)", from_code, to_code, str(payload.get("error-type") or payload.get("error_type"))
            )
        return _positive_rate("exchangerate-api (keyed)", payload.get("conversion_rate"), from_code, to_code)

    async def _fetch_free_rate(self, from_code: str, to_code: str) -> float:
        url = FREE_PROVIDER_URL.format(from_=from_code)
        payload = await self._fetch_json("exchangerate-api (free)", url, from_code, to_code)
        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateUnavailableError("exchangerate-api (free)", from_code, to_code, "unexpected payload")
        return _positive_rate("exchangerate-api (free)", rates.get(to_code), from_code, to_code)


def _positive_rate(provider: str, value: Any, from_code: str, to_code: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise RateUnavailableError(provider, from_code, to_code, f"invalid rate {value!r}")
    return float(value)
