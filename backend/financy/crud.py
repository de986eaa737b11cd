import secrets
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from .exceptions import LinkTokenError
from .models import (
    ChatContextModel,
    ContextMemberModel,
    ContextModel,
    ContextType,
    MemberRole,
    MemberStatus,
    TransactionKind,
    TransactionModel,
    UserModel,
)
from .schemas import CategoryTotal, ContextCreate, CurrencyTotals, PeriodSummary, TransactionCreate

LINK_TOKEN_TTL = timedelta(minutes=15)
TOP_CATEGORY_LIMIT = 5


def create_user(
    db: Session,
    name: str,
    email: str | None = None,
    telegram_user_id: str | None = None,
    default_currency: str = "USD",
) -> UserModel:
    user = UserModel(
        name=name,
        email=email,
        telegram_user_id=telegram_user_id,
        default_currency=default_currency.upper(),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user(db: Session, user_id: int) -> UserModel | None:
    return db.get(UserModel, user_id)


def get_user_by_telegram_id(db: Session, telegram_id: str) -> UserModel | None:
    return db.scalar(select(UserModel).where(UserModel.telegram_user_id == telegram_id))


def issue_link_token(db: Session, user: UserModel, ttl: timedelta = LINK_TOKEN_TTL) -> str:
    token = secrets.token_hex(16)
    user.telegram_link_token = token
    user.telegram_link_expires_at = datetime.now(timezone.utc) + ttl
    db.add(user)
    db.commit()
    return token


def link_telegram_with_token(
    db: Session,
    token: str,
    telegram_user_id: str,
    telegram_username: str | None = None,
) -> UserModel:
    user = db.scalar(select(UserModel).where(UserModel.telegram_link_token == token))
    expires_at = user.telegram_link_expires_at if user else None
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if user is None or expires_at is None or expires_at < datetime.now(timezone.utc):
        raise LinkTokenError("Invalid or expired linking token")

    existing = get_user_by_telegram_id(db, telegram_user_id)
    if existing is not None and existing.id != user.id:
        raise LinkTokenError("Telegram account already linked to another user")

    user.telegram_user_id = telegram_user_id
    user.telegram_username = telegram_username
    user.telegram_link_token = None
    user.telegram_link_expires_at = None
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def create_context(db: Session, owner_id: int, data: ContextCreate) -> ContextModel:
    context = ContextModel(
        name=data.name,
        type=ContextType(data.type),
        description=data.description,
        default_currency=data.default_currency.upper(),
        transaction_permissions=data.transaction_permissions,
        owner_id=owner_id,
    )
    db.add(context)
    db.commit()
    db.refresh(context)
    return context


def get_context(db: Session, context_id: int) -> ContextModel | None:
    return db.get(ContextModel, context_id)


def find_personal_context(db: Session, user_id: int) -> ContextModel | None:
    stmt = (
        select(ContextModel)
        .where(
            ContextModel.owner_id == user_id,
            ContextModel.type == ContextType.PERSONAL,
            ContextModel.is_active.is_(True),
        )
        .order_by(ContextModel.id)
    )
    return db.scalars(stmt).first()


def list_user_contexts(db: Session, user_id: int) -> list[ContextModel]:
    stmt = (
        select(ContextModel)
        .join(ContextMemberModel, ContextMemberModel.context_id == ContextModel.id)
        .where(
            ContextMemberModel.user_id == user_id,
            ContextMemberModel.status == MemberStatus.ACTIVE,
            ContextModel.is_active.is_(True),
        )
        .order_by(ContextModel.name)
    )
    return list(db.scalars(stmt))


def get_membership(db: Session, context_id: int, user_id: int) -> ContextMemberModel | None:
    stmt = select(ContextMemberModel).where(
        ContextMemberModel.context_id == context_id, ContextMemberModel.user_id == user_id
    )
    return db.scalar(stmt)


def has_active_membership(db: Session, user_id: int, context_id: int) -> bool:
    membership = get_membership(db, context_id, user_id)
    return membership is not None and membership.status == MemberStatus.ACTIVE


def add_member(
    db: Session,
    context_id: int,
    user_id: int,
    role: MemberRole = MemberRole.MEMBER,
) -> ContextMemberModel:
    membership = get_membership(db, context_id, user_id)
    if membership is None:
        membership = ContextMemberModel(context_id=context_id, user_id=user_id, role=role)
    else:
        membership.role = role
    membership.status = MemberStatus.ACTIVE
    db.add(membership)
    db.commit()
    db.refresh(membership)
    return membership


def get_chat_mapping(db: Session, chat_id: int, chat_type: str) -> ChatContextModel | None:
    stmt = select(ChatContextModel).where(
        ChatContextModel.chat_id == chat_id, ChatContextModel.chat_type == chat_type
    )
    return db.scalar(stmt)


def upsert_chat_mapping(
    db: Session,
    chat_id: int,
    chat_type: str,
    context_id: int,
    chat_title: str | None = None,
) -> ChatContextModel:
    mapping = get_chat_mapping(db, chat_id, chat_type)
    if mapping is None:
        mapping = ChatContextModel(chat_id=chat_id, chat_type=chat_type, context_id=context_id)
    mapping.context_id = context_id
    if chat_title:
        mapping.chat_title = chat_title
    db.add(mapping)
    db.commit()
    db.refresh(mapping)
    return mapping


def create_transaction(db: Session, user_id: int, data: TransactionCreate) -> TransactionModel:
    transaction = TransactionModel(
        user_id=user_id,
        context_id=data.context_id,
        amount=data.amount,
        currency=data.currency,
        date=data.date,
        category=data.category,
        merchant_name=data.merchant_name,
        kind=TransactionKind(data.type),
        description=data.description,
        original_amount=data.original_amount,
        original_currency=data.original_currency,
        exchange_rate=data.exchange_rate,
        source_text=data.source_text,
        confidence=data.confidence,
    )
    db.add(transaction)
    db.commit()
    db.refresh(transaction)
    return transaction


def list_transactions(
    db: Session,
    user_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
    context_id: int | None = None,
) -> list[TransactionModel]:
    stmt = select(TransactionModel).where(TransactionModel.user_id == user_id)

    if context_id is not None:
        stmt = stmt.where(TransactionModel.context_id == context_id)
    if start_date:
        stmt = stmt.where(TransactionModel.date >= start_date)
    if end_date:
        stmt = stmt.where(TransactionModel.date <= end_date)

    stmt = stmt.order_by(TransactionModel.date.desc(), TransactionModel.id.desc())
    return list(db.scalars(stmt))


def aggregate_transactions(transactions: list[TransactionModel]) -> tuple[dict[str, CurrencyTotals], list[CategoryTotal]]:
    totals: defaultdict[str, CurrencyTotals] = defaultdict(CurrencyTotals)
    category_totals: defaultdict[tuple[str, str], Decimal] = defaultdict(Decimal)

    for tx in transactions:
        currency = tx.currency.upper()
        amount = Decimal(tx.amount)
        if tx.kind == TransactionKind.INCOME:
            totals[currency].income += amount
        elif tx.kind == TransactionKind.EXPENSE:
            totals[currency].expenses += amount
            category_totals[(tx.category or "Uncategorized", currency)] += amount

    ranked = sorted(category_totals.items(), key=lambda item: item[1], reverse=True)
    top_categories = [
        CategoryTotal(category=category, currency=currency, amount=amount)
        for (category, currency), amount in ranked[:TOP_CATEGORY_LIMIT]
    ]
    return dict(sorted(totals.items())), top_categories


def summarize_period(db: Session, user_id: int, days: int, today: date | None = None) -> PeriodSummary:
    end_date = today or date.today()
    start_date = end_date - timedelta(days=days)
    transactions = list_transactions(db, user_id=user_id, start_date=start_date, end_date=end_date)
    totals, top_categories = aggregate_transactions(transactions)
    return PeriodSummary(
        days=days,
        start_date=start_date,
        transaction_count=len(transactions),
        totals_by_currency=totals,
        top_categories=top_categories,
    )
