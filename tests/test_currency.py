from decimal import Decimal

import httpx
import pytest

from financy.currency import CurrencyNormalizer, round_money
from financy.domain.entities import ParsedTransaction


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _free_rates(rates):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json={"base": "USD", "rates": rates})

    return handler, calls


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Paid R$25 for lunch", "BRL"),
        ("Coffee €4", "EUR"),
        ("spent 20 usd on snacks", "USD"),
        ("50 reais for the taxi", "BRL"),
        ("lunch was 12", None),
    ],
)
def test_detect_currency(settings, text, expected):
    assert CurrencyNormalizer(settings).detect_currency(text) == expected


def test_round_money_half_up():
    assert round_money(Decimal("2.345")) == Decimal("2.35")
    assert round_money(Decimal("2.344")) == Decimal("2.34")


@pytest.mark.anyio
async def test_same_currency_needs_no_provider(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("provider should not be called")

    normalizer = CurrencyNormalizer(settings, client=_client(handler))

    conversion = await normalizer.convert(Decimal("12.50"), "usd", "USD")

    assert conversion.converted_amount == Decimal("12.50")
    assert conversion.exchange_rate == 1.0
    assert conversion.original_currency == "USD"


@pytest.mark.anyio
async def test_convert_uses_free_provider_and_caches(settings):
    handler, calls = _free_rates({"BRL": 5.0})
    normalizer = CurrencyNormalizer(settings, client=_client(handler))

    first = await normalizer.convert(10, "USD", "BRL")
    second = await normalizer.convert(3, "USD", "BRL")

    assert first.converted_amount == Decimal("50.00")
    assert first.converted_currency == "BRL"
    assert first.original_amount == Decimal("10")
    assert second.converted_amount == Decimal("15.00")
    assert len(calls) == 1
    assert calls[0].endswith("/latest/USD")


@pytest.mark.anyio
async def test_keyed_provider_is_tried_first(settings):
    keyed_settings = settings.model_copy(update={"exchange_rate_api_key": "secret"})
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json={"result": "success", "conversion_rate": 0.2})

    normalizer = CurrencyNormalizer(keyed_settings, client=_client(handler))

    assert await normalizer.get_rate("BRL", "USD") == 0.2
    assert calls == ["/v6/secret/pair/BRL/USD"]


@pytest.mark.anyio
async def test_keyed_failure_falls_through_to_free_provider(settings):
    keyed_settings = settings.model_copy(update={"exchange_rate_api_key": "secret"})

    def handler(request: httpx.Request) -> httpx.Response:
        if "/pair/" in request.url.path:
            return httpx.Response(500)
        return httpx.Response(200, json={"rates": {"EUR": 0.9}})

    normalizer = CurrencyNormalizer(keyed_settings, client=_client(handler))

    assert await normalizer.get_rate("USD", "EUR") == 0.9


@pytest.mark.anyio
async def test_rate_defaults_to_one_when_every_provider_fails(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    normalizer = CurrencyNormalizer(settings, client=_client(handler))

    conversion = await normalizer.convert(Decimal("8"), "EUR", "USD")

    assert conversion.exchange_rate == 1.0
    assert conversion.converted_amount == Decimal("8.00")
    assert conversion.converted_currency == "USD"


@pytest.mark.anyio
async def test_rejects_non_positive_rate(settings):
    handler, _ = _free_rates({"BRL": -3})
    normalizer = CurrencyNormalizer(settings, client=_client(handler))

    assert await normalizer.get_rate("USD", "BRL") == 1.0


@pytest.mark.anyio
async def test_malformed_rates_payload_degrades_to_identity(settings):
    handler, _ = _free_rates(["BRL"])
    normalizer = CurrencyNormalizer(settings, client=_client(handler))

    conversion = await normalizer.convert(Decimal("10"), "USD", "BRL")

    assert conversion.exchange_rate == 1.0
    assert conversion.converted_amount == Decimal("10.00")


@pytest.mark.anyio
async def test_malformed_payload_falls_back_to_stale_rate(settings, clock):
    responses = iter(
        [
            httpx.Response(200, json={"rates": {"BRL": 5.0}}),
            httpx.Response(200, json={"rates": "unavailable"}),
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    normalizer = CurrencyNormalizer(settings, client=_client(handler), cache_ttl=60, clock=clock)

    assert await normalizer.get_rate("USD", "BRL") == 5.0
    clock.advance(61)
    assert await normalizer.get_rate("USD", "BRL") == 5.0


@pytest.mark.anyio
async def test_stale_rate_used_when_providers_fail(settings, clock):
    responses = iter(
        [
            httpx.Response(200, json={"rates": {"GBP": 0.8}}),
            httpx.Response(503),
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    normalizer = CurrencyNormalizer(settings, client=_client(handler), cache_ttl=60, clock=clock)

    assert await normalizer.get_rate("USD", "GBP") == 0.8
    clock.advance(61)
    assert await normalizer.get_rate("USD", "GBP") == 0.8


@pytest.mark.anyio
async def test_apply_records_conversion_provenance(settings):
    handler, _ = _free_rates({"BRL": 5.0})
    normalizer = CurrencyNormalizer(settings, client=_client(handler))
    transaction = ParsedTransaction(
        amount=Decimal("10"), currency="USD", type="expense", description="books", confidence=0.9
    )

    await normalizer.apply(transaction, "BRL")

    assert transaction.amount == Decimal("50.00")
    assert transaction.currency == "BRL"
    assert transaction.original_amount == Decimal("10")
    assert transaction.original_currency == "USD"
    assert transaction.exchange_rate == 5.0
    assert transaction.was_converted


@pytest.mark.anyio
async def test_apply_same_currency_is_not_a_conversion(settings):
    normalizer = CurrencyNormalizer(settings)
    transaction = ParsedTransaction(
        amount=Decimal("25"), currency="BRL", type="expense", description="lunch", confidence=0.9
    )

    await normalizer.apply(transaction, "BRL")

    assert transaction.amount == Decimal("25")
    assert transaction.exchange_rate == 1.0
    assert not transaction.was_converted


@pytest.mark.anyio
async def test_reciprocal_rates_round_trip(settings):
    handler, _ = _free_rates({"BRL": 5.0, "USD": 0.2})
    normalizer = CurrencyNormalizer(settings, client=_client(handler))

    there = await normalizer.convert(Decimal("12.34"), "USD", "BRL")
    back = await normalizer.convert(there.converted_amount, "BRL", "USD")

    assert abs(back.converted_amount - Decimal("12.34")) <= Decimal("0.01")


def test_is_supported(settings):
    normalizer = CurrencyNormalizer(settings)

    assert normalizer.is_supported("brl")
    assert not normalizer.is_supported("JPY")
    assert not normalizer.is_supported(None)


@pytest.mark.anyio
async def test_aclose_closes_http_client(settings):
    client = _client(lambda request: httpx.Response(200, json={}))
    normalizer = CurrencyNormalizer(settings, client=client)

    await normalizer.aclose()

    assert client.is_closed
