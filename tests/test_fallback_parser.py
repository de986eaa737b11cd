from decimal import Decimal

import pytest

from financy.currency import CurrencyNormalizer
from financy.fallback_parser import (
    REGEX_CONFIDENCE,
    RegexTransactionParser,
    classify_type,
    parse_amount,
)


@pytest.fixture
def parser(settings) -> RegexTransactionParser:
    return RegexTransactionParser(CurrencyNormalizer(settings).detect_currency)


def test_parses_symbol_prefixed_amount(parser):
    [transaction] = parser.parse("Paid R$25 for lunch", "USD")

    assert transaction.amount == Decimal("25")
    assert transaction.currency == "BRL"
    assert transaction.type == "expense"
    assert transaction.category == "Food & Dining"
    assert transaction.description == "lunch"
    assert transaction.confidence == REGEX_CONFIDENCE
    assert transaction.original_text == "Paid R$25 for lunch"


def test_splits_multiple_amounts(parser):
    coffee, gas = parser.parse("Coffee $5 and gas $40", "EUR")

    assert (coffee.amount, coffee.currency, coffee.category) == (Decimal("5"), "USD", "Food & Dining")
    assert (gas.amount, gas.currency, gas.category) == (Decimal("40"), "USD", "Transportation")
    assert coffee.temp_id != gas.temp_id


def test_income_with_thousands_separator(parser):
    [transaction] = parser.parse("Received $1,200 salary", "USD")

    assert transaction.amount == Decimal("1200")
    assert transaction.type == "income"
    assert transaction.description == "salary"


def test_extracts_capitalised_merchant(parser):
    [transaction] = parser.parse("Spent $50 on groceries at Walmart", "USD")

    assert (transaction.amount, transaction.currency, transaction.type) == (Decimal("50"), "USD", "expense")
    assert transaction.merchant_name == "Walmart"
    assert transaction.category == "Food & Dining"


def test_falls_back_to_default_currency(parser):
    [transaction] = parser.parse("lunch 12", "EUR")

    assert transaction.currency == "EUR"
    assert transaction.amount == Decimal("12")


@pytest.mark.parametrize("text", ["", "   ", "hello there", "paid nothing today"])
def test_no_amount_yields_nothing(parser, text):
    assert parser.parse(text, "USD") == []


def test_parse_never_raises():
    def broken_detector(text: str) -> str:
        raise RuntimeError("detector exploded")

    assert RegexTransactionParser(broken_detector).parse("Spent $5 on coffee", "USD") == []


def test_parse_amount_formats():
    assert parse_amount("1,200.50") == Decimal("1200.50")
    assert parse_amount("12,5") == Decimal("12.5")
    assert parse_amount("7") == Decimal("7")


def test_expense_cue_wins_over_income_cue():
    assert classify_type("got paid back for the bill") == "expense"
    assert classify_type("salary came in") == "income"
    assert classify_type("sushi") == "expense"
