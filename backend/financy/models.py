import datetime as dt
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class TransactionKind(str, PyEnum):
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class ContextType(str, PyEnum):
    PERSONAL = "personal"
    FAMILY = "family"
    BUSINESS = "business"
    SHARED_LIVING = "shared_living"
    TRIP = "trip"
    PROJECT = "project"
    FRIENDS = "friends"
    SHARED = "shared"


class MemberRole(str, PyEnum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class MemberStatus(str, PyEnum):
    ACTIVE = "active"
    INVITED = "invited"
    SUSPENDED = "suspended"
    LEFT = "left"


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda members: [member.value for member in members])


class UserModel(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    telegram_user_id: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True, index=True)
    telegram_username: Mapped[str | None] = mapped_column(String(120), nullable=True)
    telegram_link_token: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    telegram_link_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    default_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    transactions: Mapped[list["TransactionModel"]] = relationship(
        "TransactionModel", back_populates="user", cascade="all, delete-orphan"
    )
    memberships: Mapped[list["ContextMemberModel"]] = relationship(
        "ContextMemberModel", back_populates="user", cascade="all, delete-orphan"
    )


class ContextModel(Base):
    __tablename__ = "contexts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    type: Mapped[ContextType] = mapped_column(_enum(ContextType, "context_type"), nullable=False)
    default_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    transaction_permissions: Mapped[str] = mapped_column(String(20), nullable=False, default="everyone")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    members: Mapped[list["ContextMemberModel"]] = relationship(
        "ContextMemberModel", back_populates="context", cascade="all, delete-orphan"
    )


class ContextMemberModel(Base):
    __tablename__ = "context_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    context_id: Mapped[int] = mapped_column(ForeignKey("contexts.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[MemberRole] = mapped_column(_enum(MemberRole, "member_role"), nullable=False, default=MemberRole.MEMBER)
    status: Mapped[MemberStatus] = mapped_column(
        _enum(MemberStatus, "member_status"), nullable=False, default=MemberStatus.ACTIVE
    )
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    context: Mapped[ContextModel] = relationship("ContextModel", back_populates="members")
    user: Mapped[UserModel] = relationship("UserModel", back_populates="memberships")

    __table_args__ = (UniqueConstraint("context_id", "user_id", name="uq_context_members_context_user"),)


class ChatContextModel(Base):
    __tablename__ = "chat_contexts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    chat_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    chat_type: Mapped[str] = mapped_column(String(20), nullable=False)
    chat_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    context_id: Mapped[int] = mapped_column(ForeignKey("contexts.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    context: Mapped[ContextModel] = relationship("ContextModel")

    __table_args__ = (UniqueConstraint("chat_id", "chat_type", name="uq_chat_contexts_chat"),)


class TransactionModel(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    context_id: Mapped[int | None] = mapped_column(ForeignKey("contexts.id", ondelete="SET NULL"), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    category: Mapped[str | None] = mapped_column(String(120), nullable=True)
    merchant_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    kind: Mapped[TransactionKind] = mapped_column(_enum(TransactionKind, "transaction_kind"), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    original_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    original_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    exchange_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    source_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    user: Mapped[UserModel] = relationship("UserModel", back_populates="transactions")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
    )
