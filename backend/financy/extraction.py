"""Tiered transaction extraction: model ladder first, regex parser last."""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from decimal import Decimal
from typing import Any, Literal

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from .config import Settings, get_settings
from .currency import CurrencyNormalizer
from .domain.entities import ExtractionOutcome, Invalid, ParsedTransaction, Valid
from .exceptions import ExtractionError
from .fallback_parser import RegexTransactionParser
from .prompts import SYSTEM_PROMPT, build_extraction_prompt
from .state import ExpiringStore

logger = logging.getLogger(__name__)

OPENROUTER_HEADERS = {
    "HTTP-Referer": "https://financy-app.com",
    "X-Title": "Financy Transaction Parser",
}

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)

Strategy = Callable[[str, str], Awaitable[ExtractionOutcome]]


class CandidatePayload(BaseModel):
    """Shape a model completion must have to become a candidate."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: float = Field(gt=0)
    currency: str
    type: Literal["income", "expense", "transfer"]
    description: str = Field(min_length=1)
    category: str | None = None
    merchant_name: str | None = Field(default=None, alias="merchantName")
    confidence: float = Field(ge=0, le=1)
    date: dt.date | None = None

    @field_validator("amount", "confidence", mode="before")
    @classmethod
    def require_number(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("must be a JSON number")
        return value

    @field_validator("currency", mode="before")
    @classmethod
    def normalise_currency(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("currency")
    @classmethod
    def require_supported_currency(cls, value: str, info: ValidationInfo) -> str:
        supported = (info.context or {}).get("supported_currencies")
        if supported is not None and value not in supported:
            raise ValueError(f"unsupported currency {value}")
        return value

    @field_validator("description", mode="before")
    @classmethod
    def strip_description(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("category", "merchant_name", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and (not value.strip() or value.strip().lower() == "null"):
            return None
        return value

    @field_validator("date", mode="before")
    @classmethod
    def lenient_date(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return dt.date.fromisoformat(value[:10])
            except ValueError:
                return None
        return value

    def to_transaction(self) -> ParsedTransaction:
        return ParsedTransaction(
            amount=Decimal(str(self.amount)),
            currency=self.currency,
            type=self.type,
            description=self.description,
            confidence=self.confidence,
            category=self.category,
            merchant_name=self.merchant_name,
            date=self.date,
        )


def clean_completion(content: str) -> str:
    """Strip markdown fences and keep the outermost ``{...}`` or ``[...]`` span."""
    cleaned = content.strip()
    fenced = _FENCE_PATTERN.search(cleaned)
    if fenced:
        cleaned = fenced.group(1)
    start = min((index for index in (cleaned.find("{"), cleaned.find("[")) if index != -1), default=-1)
    if start != -1:
        end = cleaned.rfind("}" if cleaned[start] == "{" else "]")
        if end > start:
            cleaned = cleaned[start : end + 1]
    return cleaned


def validate_completion(
    content: str,
    supported_currencies: Sequence[str] | None = None,
    source: str = "",
) -> ExtractionOutcome:
    try:
        payload = json.loads(clean_completion(content))
    except json.JSONDecodeError as exc:
        return Invalid(f"completion is not JSON: {exc}", source=source)

    if isinstance(payload, dict) and "transactions" in payload:
        items = payload["transactions"]
    elif isinstance(payload, list):
        items = payload
    else:
        items = [payload]
    if not isinstance(items, list):
        return Invalid("transactions is not a list", source=source)

    context = {"supported_currencies": list(supported_currencies) if supported_currencies else None}
    transactions: list[ParsedTransaction] = []
    reasons: list[str] = []
    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            reasons.append(f"item {index} is not an object")
            continue
        try:
            candidate = CandidatePayload.model_validate(item, context=context)
        except ValidationError as exc:
            reason = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in exc.errors()
            )
            logger.warning("Discarding invalid candidate %d from %s: %s", index, source or "model", reason)
            reasons.append(f"item {index}: {reason}")
            continue
        transactions.append(candidate.to_transaction())

    if not transactions:
        return Invalid("; ".join(reasons) or "no transactions in completion", source=source)
    return Valid(transactions, source=source)


async def first_success(strategies: Sequence[Strategy], text: str, default_currency: str) -> ExtractionOutcome:
    """Run ``strategies`` in order and return the first ``Valid`` outcome."""
    reasons: list[str] = []
    for strategy in strategies:
        name = getattr(strategy, "name", repr(strategy))
        try:
            outcome = await strategy(text, default_currency)
        except ExtractionError as exc:
            logger.warning("Extraction strategy %s failed: %s", name, exc)
            reasons.append(str(exc))
            continue
        if outcome.ok:
            logger.info("Extraction strategy %s succeeded", name)
            return outcome
        logger.warning("Extraction strategy %s produced no valid result: %s", name, outcome.reason)
        reasons.append(f"{name}: {outcome.reason}")
    return Invalid("; ".join(reasons) or "no extraction strategies configured", source="ladder")


class ModelStrategy:
    """One rung of the model ladder: a single chat completion with its own timeout."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        tier: str,
        timeout: float,
        supported_currencies: Sequence[str] | None = None,
    ) -> None:
        self.client = client
        self.model = model
        self.tier = tier
        self.timeout = timeout
        self.supported_currencies = list(supported_currencies or [])

    @property
    def name(self) -> str:
        return f"{self.tier} ({self.model})"

    async def complete(self, messages: list[dict[str, Any]], max_tokens: int = 200) -> str:
        logger.debug("Trying %s model: %s", self.tier, self.model)
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=0.1,
                top_p=0.9,
                timeout=self.timeout,
                extra_headers=OPENROUTER_HEADERS,
            )
        except OpenAIError as exc:
            raise ExtractionError(self.name, str(exc)) from exc

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content or not content.strip():
            raise ExtractionError(self.name, "empty completion")
        return content.strip()

    async def __call__(self, text: str, default_currency: str) -> ExtractionOutcome:
        content = await self.complete(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": build_extraction_prompt(text, default_currency, self.supported_currencies),
                },
            ]
        )
        return validate_completion(content, self.supported_currencies, source=self.name)


class RegexStrategy:
    name = "regex"

    def __init__(self, parser: RegexTransactionParser) -> None:
        self.parser = parser

    async def __call__(self, text: str, default_currency: str) -> ExtractionOutcome:
        transactions = self.parser.parse(text, default_currency)
        if not transactions:
            return Invalid("no transaction found", source=self.name)
        return Valid(transactions, source=self.name)


class TransactionExtractor:
    """Turns free text into normalised candidates registered in the pending store."""

    def __init__(
        self,
        pending: ExpiringStore[str, ParsedTransaction],
        currency: CurrencyNormalizer,
        settings: Settings | None = None,
        client: AsyncOpenAI | None = None,
        parser: RegexTransactionParser | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.pending = pending
        self.currency = currency
        self._client = client
        self.parser = parser or RegexTransactionParser(currency.detect_currency)

    @property
    def client(self) -> AsyncOpenAI | None:
        if not self.settings.ai_enabled:
            return None
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.openrouter_api_key,
                base_url=self.settings.openrouter_base_url,
                max_retries=0,
                timeout=self.settings.text_model_timeout,
            )
        return self._client

    def strategies(self) -> list[Strategy]:
        ladder: list[Strategy] = []
        client = self.client
        if client is None:
            logger.warning("OpenRouter API key not configured. Using regex fallback.")
        else:
            for tier, model in (
                ("primary", self.settings.primary_model),
                ("secondary", self.settings.secondary_model),
                ("tertiary", self.settings.tertiary_model),
            ):
                ladder.append(
                    ModelStrategy(
                        client,
                        model,
                        tier,
                        self.settings.text_model_timeout,
                        self.settings.supported_currencies,
                    )
                )
        ladder.append(RegexStrategy(self.parser))
        return ladder

    async def extract(self, text: str, default_currency: str) -> list[ParsedTransaction]:
        outcome = await first_success(self.strategies(), text, default_currency)
        if not outcome.ok:
            logger.info("No transaction extracted: %s", outcome.reason)
            return []
        return await self.register(outcome.transactions, default_currency, text)

    async def register(
        self,
        transactions: list[ParsedTransaction],
        default_currency: str,
        original_text: str | None = None,
    ) -> list[ParsedTransaction]:
        """Normalise currency, then hold each candidate in the pending store."""
        for transaction in transactions:
            if transaction.original_text is None:
                transaction.original_text = original_text
            await self.currency.apply(transaction, default_currency)
            self.pending.put(transaction.temp_id, transaction)
        return transactions

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
        await self.currency.aclose()
