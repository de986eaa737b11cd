from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Literal

TransactionType = Literal["income", "expense", "transfer"]
ChatType = Literal["private", "group", "supergroup", "channel"]
SetupStep = Literal["type", "name", "permissions", "currency", "complete"]
PermissionPolicy = Literal["everyone", "admins"]

MAX_DESCRIPTION_LENGTH = 500


def new_token(nbytes: int = 8) -> str:
    """Opaque lowercase-hex handle, safe to embed in callback data."""
    return secrets.token_hex(nbytes)


@dataclass(slots=True)
class ParsedTransaction:
    """A detected financial event awaiting user confirmation."""

    amount: Decimal
    currency: str
    type: TransactionType
    description: str
    confidence: float
    category: str | None = None
    merchant_name: str | None = None
    temp_id: str = field(default_factory=new_token)
    context_id: int | None = None
    date: date | None = None
    original_text: str | None = None
    needs_review: bool = False
    original_amount: Decimal | None = None
    original_currency: str | None = None
    exchange_rate: float | None = None

    def __post_init__(self) -> None:
        self.description = self.description[:MAX_DESCRIPTION_LENGTH]

    @property
    def was_converted(self) -> bool:
        return (
            self.original_currency is not None
            and self.original_amount is not None
            and self.original_currency != self.currency
        )


@dataclass(slots=True)
class Conversion:
    """Outcome of a currency conversion, with its provenance."""

    converted_amount: Decimal
    converted_currency: str
    exchange_rate: float
    original_amount: Decimal
    original_currency: str


@dataclass(slots=True)
class SetupSession:
    """In-progress onboarding state for one group chat."""

    chat_id: int
    user_id: int
    chat_type: ChatType = "group"
    step: SetupStep = "type"
    type: str | None = None
    name: str | None = None
    default_name: str | None = None
    permissions: PermissionPolicy | None = None
    currency: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True)
class BatchTransactionSet:
    """Candidates detected in one message, confirmed or cancelled together."""

    transactions: list[ParsedTransaction]
    batch_id: str = field(default_factory=new_token)

    def __len__(self) -> int:
        return len(self.transactions)


@dataclass(slots=True, frozen=True)
class ContextInfo:
    id: int
    name: str
    type: str
    default_currency: str
    transaction_permissions: PermissionPolicy


@dataclass(slots=True, frozen=True)
class Valid:
    """Validation succeeded; ``transactions`` are ready for normalisation."""

    transactions: list[ParsedTransaction]
    source: str = ""

    @property
    def ok(self) -> bool:
        return True


@dataclass(slots=True, frozen=True)
class Invalid:
    """Validation failed; ``reason`` explains why for the logs."""

    reason: str
    source: str = ""

    @property
    def ok(self) -> bool:
        return False


ExtractionOutcome = Valid | Invalid


@dataclass(slots=True)
class BatchOutcome:
    """Tally of a confirm-all run."""

    total: int
    saved: list[ParsedTransaction] = field(default_factory=list)
    failed: list[tuple[int, ParsedTransaction]] = field(default_factory=list)

    @property
    def saved_count(self) -> int:
        return len(self.saved)

    def saved_totals(self) -> dict[str, Decimal]:
        return sum_by_currency(self.saved)


def sum_by_currency(transactions: list[ParsedTransaction]) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = {}
    for txn in transactions:
        if txn.currency not in totals:
            totals[txn.currency] = Decimal("0")
        totals[txn.currency] += txn.amount
    return totals
