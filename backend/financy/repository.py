"""Async gateway over the synchronous CRUD layer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy.orm import Session

from . import crud
from .domain.entities import ContextInfo, ParsedTransaction
from .models import ContextModel, MemberRole, MemberStatus
from .schemas import ContextCreate, PeriodSummary, TransactionCreate

logger = logging.getLogger(__name__)

T = TypeVar("T")

PERSONAL_CONTEXT_NAME = "Personal"


@dataclass(frozen=True)
class LinkedUser:
    """A backend account bound to a Telegram user."""

    id: int
    name: str
    default_currency: str


def _context_info(context: ContextModel) -> ContextInfo:
    return ContextInfo(
        id=context.id,
        name=context.name,
        type=context.type.value,
        default_currency=context.default_currency,
        transaction_permissions=context.transaction_permissions,  # type: ignore[arg-type]
    )


class Repository:
    """Runs every CRUD call on a worker thread with its own session."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(self._call, fn, *args, **kwargs)

    def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self.session_factory() as db:
            return fn(db, *args, **kwargs)

    async def find_user(self, telegram_id: int | str) -> LinkedUser | None:
        def _find(db: Session) -> LinkedUser | None:
            user = crud.get_user_by_telegram_id(db, str(telegram_id))
            if user is None:
                return None
            return LinkedUser(id=user.id, name=user.name, default_currency=user.default_currency)

        return await self._run(_find)

    async def link_account(self, token: str, telegram_id: int | str, username: str | None) -> LinkedUser:
        def _link(db: Session) -> LinkedUser:
            user = crud.link_telegram_with_token(db, token, str(telegram_id), username)
            return LinkedUser(id=user.id, name=user.name, default_currency=user.default_currency)

        return await self._run(_link)

    async def mapped_context_id(self, chat_id: int, chat_type: str) -> int | None:
        def _lookup(db: Session) -> int | None:
            mapping = crud.get_chat_mapping(db, chat_id, chat_type)
            return mapping.context_id if mapping else None

        return await self._run(_lookup)

    async def map_chat(self, chat_id: int, chat_type: str, context_id: int, chat_title: str | None = None) -> None:
        def _map(db: Session) -> None:
            crud.upsert_chat_mapping(db, chat_id, chat_type, context_id, chat_title)

        await self._run(_map)

    async def has_active_membership(self, user_id: int, context_id: int) -> bool:
        return await self._run(crud.has_active_membership, user_id, context_id)

    async def membership_role(self, user_id: int, context_id: int) -> str | None:
        """Return the role of an active member, ``None`` otherwise."""

        def _role(db: Session) -> str | None:
            membership = crud.get_membership(db, context_id, user_id)
            if membership is None or membership.status != MemberStatus.ACTIVE:
                return None
            return membership.role.value

        return await self._run(_role)

    async def has_membership_record(self, user_id: int, context_id: int) -> bool:
        def _exists(db: Session) -> bool:
            return crud.get_membership(db, context_id, user_id) is not None

        return await self._run(_exists)

    async def grant_membership(self, user_id: int, context_id: int, role: str = "member") -> None:
        def _grant(db: Session) -> None:
            crud.add_member(db, context_id, user_id, MemberRole(role))

        await self._run(_grant)

    async def ensure_membership(self, user_id: int, context_id: int) -> None:
        """Join ``user_id`` as a plain member unless a membership record already exists."""

        def _ensure(db: Session) -> None:
            if crud.get_membership(db, context_id, user_id) is None:
                crud.add_member(db, context_id, user_id, MemberRole.MEMBER)
                logger.info("Added user %s to context %s as member", user_id, context_id)

        await self._run(_ensure)

    async def ensure_personal_context(self, user_id: int) -> ContextInfo:
        def _ensure(db: Session) -> ContextInfo:
            context = crud.find_personal_context(db, user_id)
            if context is None:
                user = crud.get_user(db, user_id)
                currency = user.default_currency if user else "USD"
                context = crud.create_context(
                    db,
                    user_id,
                    ContextCreate(name=PERSONAL_CONTEXT_NAME, type="personal", default_currency=currency),
                )
                logger.info("Created personal context %s for user %s", context.id, user_id)
            if not crud.has_active_membership(db, user_id, context.id):
                crud.add_member(db, context.id, user_id, MemberRole.OWNER)
            return _context_info(context)

        return await self._run(_ensure)

    async def create_context(
        self,
        owner_id: int,
        name: str,
        context_type: str,
        default_currency: str,
        permissions: str = "everyone",
    ) -> ContextInfo:
        def _create(db: Session) -> ContextInfo:
            context = crud.create_context(
                db,
                owner_id,
                ContextCreate(
                    name=name[:100],
                    type=context_type,
                    default_currency=default_currency,
                    transaction_permissions=permissions,
                    description=f"{context_type} expenses managed via Telegram",
                ),
            )
            return _context_info(context)

        return await self._run(_create)

    async def setup_group_context(
        self,
        user_id: int,
        chat_id: int,
        chat_type: str,
        name: str,
        context_type: str,
        default_currency: str,
        permissions: str,
    ) -> ContextInfo:
        """Create a group context, map the chat to it and make ``user_id`` its admin."""
        info = await self.create_context(user_id, name, context_type, default_currency, permissions)
        await self.map_chat(chat_id, chat_type, info.id, name)
        await self.grant_membership(user_id, info.id, "admin")
        return info

    async def context_info(self, context_id: int) -> ContextInfo | None:
        def _info(db: Session) -> ContextInfo | None:
            context = crud.get_context(db, context_id)
            return _context_info(context) if context else None

        return await self._run(_info)

    async def list_contexts(self, user_id: int) -> list[ContextInfo]:
        def _list(db: Session) -> list[ContextInfo]:
            return [_context_info(context) for context in crud.list_user_contexts(db, user_id)]

        return await self._run(_list)

    async def create_transaction(self, user_id: int, transaction: ParsedTransaction) -> int:
        data = TransactionCreate.from_parsed(transaction)

        def _create(db: Session) -> int:
            return crud.create_transaction(db, user_id, data).id

        return await self._run(_create)

    async def summarize(self, user_id: int, days: int) -> PeriodSummary:
        return await self._run(crud.summarize_period, user_id, days)
