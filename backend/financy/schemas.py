import datetime as dt
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .domain.entities import ParsedTransaction

TransactionType = Literal["income", "expense", "transfer"]
PermissionPolicy = Literal["everyone", "admins"]
ContextTypeName = Literal[
    "personal", "family", "business", "shared_living", "trip", "project", "friends", "shared"
]


class TransactionCreate(BaseModel):
    amount: Decimal = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    date: dt.date
    type: TransactionType
    description: str = Field(min_length=1, max_length=500)
    category: Optional[str] = Field(default=None, max_length=120)
    merchant_name: Optional[str] = Field(default=None, max_length=120)
    context_id: Optional[int] = None
    original_amount: Optional[Decimal] = None
    original_currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    exchange_rate: Optional[float] = Field(default=None, gt=0)
    source_text: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)

    @field_validator("currency", "original_currency")
    @classmethod
    def upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value

    @classmethod
    def from_parsed(cls, transaction: ParsedTransaction) -> "TransactionCreate":
        return cls(
            amount=transaction.amount,
            currency=transaction.currency,
            date=transaction.date or dt.date.today(),
            type=transaction.type,
            description=transaction.description,
            category=transaction.category,
            merchant_name=transaction.merchant_name,
            context_id=transaction.context_id,
            original_amount=transaction.original_amount,
            original_currency=transaction.original_currency,
            exchange_rate=transaction.exchange_rate,
            source_text=transaction.original_text,
            confidence=transaction.confidence,
        )


class ContextCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    type: ContextTypeName
    default_currency: str = Field(default="USD", min_length=3, max_length=3)
    transaction_permissions: PermissionPolicy = "everyone"
    description: Optional[str] = Field(default=None, max_length=500)


class CurrencyTotals(BaseModel):
    income: Decimal = Decimal("0")
    expenses: Decimal = Decimal("0")

    @property
    def net(self) -> Decimal:
        return self.income - self.expenses


class CategoryTotal(BaseModel):
    category: str
    currency: str
    amount: Decimal


class PeriodSummary(BaseModel):
    days: int
    start_date: dt.date
    transaction_count: int
    totals_by_currency: dict[str, CurrencyTotals]
    top_categories: list[CategoryTotal]
