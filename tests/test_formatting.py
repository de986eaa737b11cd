from datetime import date
from decimal import Decimal

from financy import formatting
from financy.domain.entities import BatchOutcome, ContextInfo, ParsedTransaction
from financy.schemas import CategoryTotal, CurrencyTotals, PeriodSummary

FAMILY = ContextInfo(id=1, name="Casa", type="family", default_currency="BRL", transaction_permissions="everyone")


def _txn(amount: str, currency: str = "USD", **fields) -> ParsedTransaction:
    fields.setdefault("description", "lunch")
    fields.setdefault("confidence", 0.85)
    return ParsedTransaction(amount=Decimal(amount), currency=currency, type=fields.pop("type", "expense"), **fields)


def _callback_data(markup) -> list[str]:
    return [button.callback_data for row in markup.inline_keyboard for button in row]


def test_confidence_bar():
    assert formatting.confidence_bar(0.85) == "████████░░"
    assert formatting.confidence_bar(1.0) == "██████████"
    assert formatting.confidence_bar(0.0) == "░░░░░░░░░░"


def test_confirmation_shows_conversion_and_escapes_user_text():
    transaction = _txn(
        "125.00",
        "BRL",
        description="<b>dinner</b> & drinks",
        merchant_name="Bar <X>",
        original_amount=Decimal("25"),
        original_currency="USD",
        exchange_rate=5.0,
    )

    text = formatting.transaction_confirmation(transaction, FAMILY)

    assert "125.00 BRL (from 25.00 USD)" in text
    assert "&lt;b&gt;dinner&lt;/b&gt; &amp; drinks" in text
    assert "Bar &lt;X&gt;" in text
    assert "Casa" in text
    assert "85%" in text


def test_transaction_keyboard_carries_temp_id():
    assert _callback_data(formatting.transaction_keyboard("ab12")) == ["confirm_ab12", "edit_ab12", "cancel_ab12"]


def test_batch_confirmation_totals_per_currency():
    text = formatting.batch_confirmation(
        [_txn("5", description="coffee"), _txn("40", description="gas"), _txn("25", "BRL")], FAMILY
    )

    assert "Multiple Transactions Detected (3)" in text
    assert "Total USD: 45.00" in text
    assert "Total BRL: 25.00" in text


def test_batch_keyboard_without_review():
    assert _callback_data(formatting.batch_keyboard("ff", include_review=False)) == [
        "confirm_batch_ff",
        "cancel_batch_ff",
    ]
    assert "review_batch_ff" in _callback_data(formatting.batch_keyboard("ff"))


def test_batch_result_lists_failures():
    saved = _txn("5", description="coffee")
    failed = _txn("40", description="gas")
    outcome = BatchOutcome(total=2, saved=[saved], failed=[(2, failed)])

    text = formatting.batch_result(outcome)

    assert "Successfully saved: 1/2 transactions" in text
    assert "Transaction 2: gas" in text
    assert "USD: 5.00" in text


def test_period_summary():
    summary = PeriodSummary(
        days=30,
        start_date=date(2026, 9, 16),
        transaction_count=3,
        totals_by_currency={"BRL": CurrencyTotals(income=Decimal("1000"), expenses=Decimal("65"))},
        top_categories=[CategoryTotal(category="Transportation", currency="BRL", amount=Decimal("40"))],
    )

    text = formatting.period_summary(summary)

    assert "Last 30 days" in text
    assert "Net: 935.00" in text
    assert "Transportation: 40.00 BRL" in text


def test_empty_period_summary():
    summary = PeriodSummary(
        days=7, start_date=date(2026, 10, 9), transaction_count=0, totals_by_currency={}, top_categories=[]
    )

    assert "No transactions recorded" in formatting.period_summary(summary)


def test_link_failure_reasons():
    assert "invalid or has expired" in formatting.link_failed("Invalid or expired linking token")
    assert "another Financy account" in formatting.link_failed("Telegram account already linked to another user")
