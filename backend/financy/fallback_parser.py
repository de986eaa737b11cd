"""Keyword and pattern based transaction parser used when every model fails."""

from __future__ import annotations

import logging
import re
from decimal import Decimal, InvalidOperation

from .domain.entities import ParsedTransaction, TransactionType

logger = logging.getLogger(__name__)

REGEX_CONFIDENCE = 0.6
MAX_REGEX_DESCRIPTION = 50
DEFAULT_DESCRIPTION = "Transaction"

AMOUNT_PATTERN = re.compile(
    r"(?:[$€£¥₹₽]|R\$|C\$|A\$|\b(?:USD|BRL|EUR|GBP|CAD|AUD)\b)?\s*"
    r"(\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:[.,]\d{1,2})?)"
    r"(?:\s*(?:\b(?:USD|BRL|EUR|GBP|CAD|AUD)\b|dollars?\b|reais\b|euros?\b))?",
    re.IGNORECASE,
)

INCOME_PATTERN = re.compile(
    r"\b(received|earned|got|salary|income|payment|bonus|refund)\b", re.IGNORECASE
)
EXPENSE_PATTERN = re.compile(
    r"\b(spent|paid|bought|purchase|cost|bill|fee|charge)\b", re.IGNORECASE
)

CATEGORY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "Food & Dining",
        re.compile(
            r"\b(food|grocery|groceries|restaurant|lunch|dinner|breakfast|coffee|meal)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "Transportation",
        re.compile(r"\b(gas|fuel|transport|uber|taxi|bus|train|metro)\b", re.IGNORECASE),
    ),
    (
        "Shopping",
        re.compile(r"\b(shopping|store|market|mall|clothes|clothing)\b", re.IGNORECASE),
    ),
    (
        "Bills & Utilities",
        re.compile(
            r"\b(bill|utility|utilities|electric|water|internet|phone|rent)\b",
            re.IGNORECASE,
        ),
    ),
)

MERCHANT_PATTERN = re.compile(r"\bat\s+([A-Z][\w&'.-]*(?:\s+[A-Z][\w&'.-]*)*)")
VERB_PATTERN = re.compile(r"\b(spent|paid|bought|received|earned|got)\b", re.IGNORECASE)
PREPOSITION_PATTERN = re.compile(r"\b(on|for|at|from)\b", re.IGNORECASE)
SEGMENT_SEPARATOR = re.compile(r"\s*[,;]\s+|\s+(?:and|&|plus|then)\s+", re.IGNORECASE)


class RegexTransactionParser:
    """Deterministic last rung of the extraction ladder.

    ``parse`` never raises: it returns one candidate per amount it finds, or an
    empty list when the text carries no usable amount.
    """

    def __init__(self, detect_currency=None):
        self._detect_currency = detect_currency

    def parse(self, text: str, default_currency: str) -> list[ParsedTransaction]:
        try:
            return self._parse(text, default_currency)
        except Exception:
            logger.exception("Regex parsing failed")
            return []

    def _parse(self, text: str, default_currency: str) -> list[ParsedTransaction]:
        if not text or not text.strip():
            return []

        transactions = []
        for segment in self.split_segments(text):
            transaction = self._parse_segment(segment, text, default_currency)
            if transaction is not None:
                transactions.append(transaction)

        if not transactions:
            logger.info("Regex parser found no transaction in %r", text[:80])
        return transactions

    def split_segments(self, text: str) -> list[str]:
        """Split ``text`` so every piece carries at most one amount."""
        if len(AMOUNT_PATTERN.findall(text)) <= 1:
            return [text]
        pieces = [piece for piece in SEGMENT_SEPARATOR.split(text) if piece and piece.strip()]
        with_amounts = [piece for piece in pieces if AMOUNT_PATTERN.search(piece)]
        return with_amounts or [text]

    def _parse_segment(
        self, segment: str, full_text: str, default_currency: str
    ) -> ParsedTransaction | None:
        match = AMOUNT_PATTERN.search(segment)
        if not match:
            return None
        amount = parse_amount(match.group(1))
        if amount is None or amount <= 0:
            return None

        currency = self._currency_for(segment) or self._currency_for(full_text) or default_currency
        return ParsedTransaction(
            amount=amount,
            currency=currency.upper(),
            type=classify_type(segment if _has_type_cue(segment) else full_text),
            description=derive_description(segment, match),
            confidence=REGEX_CONFIDENCE,
            category=classify_category(segment),
            merchant_name=extract_merchant(segment),
            original_text=full_text,
        )

    def _currency_for(self, text: str) -> str | None:
        if self._detect_currency is None:
            return None
        return self._detect_currency(text)


def parse_amount(raw: str) -> Decimal | None:
    cleaned = raw.strip()
    if re.fullmatch(r"\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?", cleaned):
        cleaned = cleaned.replace(",", "")
    else:
        cleaned = cleaned.replace(",", ".")
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def _has_type_cue(text: str) -> bool:
    return bool(INCOME_PATTERN.search(text) or EXPENSE_PATTERN.search(text))


def classify_type(text: str) -> TransactionType:
    if EXPENSE_PATTERN.search(text):
        return "expense"
    if INCOME_PATTERN.search(text):
        return "income"
    return "expense"


def classify_category(text: str) -> str | None:
    for name, pattern in CATEGORY_PATTERNS:
        if pattern.search(text):
            return name
    return None


def extract_merchant(text: str) -> str | None:
    match = MERCHANT_PATTERN.search(text)
    if not match:
        return None
    return match.group(1).strip(" .,'")


def derive_description(segment: str, amount_match: re.Match[str]) -> str:
    description = segment[: amount_match.start()] + " " + segment[amount_match.end() :]
    description = VERB_PATTERN.sub(" ", description)
    description = PREPOSITION_PATTERN.sub(" ", description)
    description = re.sub(r"\s+", " ", description).strip(" ,.;:-")
    return description[:MAX_REGEX_DESCRIPTION].strip() or DEFAULT_DESCRIPTION
