"""Map Telegram chats to persistent financial contexts."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .domain.entities import ContextInfo
from .exceptions import ContextResolutionError
from .repository import Repository

logger = logging.getLogger(__name__)

GROUP_CHAT_TYPES = ("group", "supergroup")
ADMIN_ROLES = ("owner", "admin")


class ContextResolver:
    def __init__(self, repository: Repository, default_currency: str = "USD") -> None:
        self.repository = repository
        self.default_currency = default_currency

    async def resolve_context(self, chat: Any, user_id: int) -> int | None:
        """Return the context id for ``chat`` on behalf of ``user_id``.

        Falls back to the user's personal context when resolution fails, and to
        ``None`` when even that is unavailable.
        """
        try:
            return await self._resolve(chat, user_id)
        except (SQLAlchemyError, ValidationError, ContextResolutionError) as exc:
            logger.error("Error determining context for chat %s: %s", getattr(chat, "id", None), exc)

        try:
            personal = await self.repository.ensure_personal_context(user_id)
        except SQLAlchemyError:
            logger.exception("Could not fall back to personal context for user %s", user_id)
            return None
        return personal.id

    async def _resolve(self, chat: Any, user_id: int) -> int:
        mapped = await self.repository.mapped_context_id(chat.id, chat.type)
        if mapped is not None and await self.repository.has_active_membership(user_id, mapped):
            return mapped

        if chat.type == "private":
            personal = await self.repository.ensure_personal_context(user_id)
            await self.repository.map_chat(chat.id, chat.type, personal.id)
            return personal.id

        if chat.type in GROUP_CHAT_TYPES:
            if mapped is not None:
                await self.repository.ensure_membership(user_id, mapped)
                return mapped
            return await self._create_group_context(chat, user_id)

        raise ContextResolutionError(f"Unsupported chat type {chat.type!r}")

    async def _create_group_context(self, chat: Any, user_id: int) -> int:
        title = getattr(chat, "title", None) or f"Group {chat.id}"
        context_type = "family" if chat.type == "group" else "shared"
        info = await self.repository.create_context(user_id, title, context_type, self.default_currency)
        await self.repository.map_chat(chat.id, chat.type, info.id, title)
        await self.repository.grant_membership(user_id, info.id, "admin")
        logger.info("Created %s context %s for chat %s", context_type, info.id, chat.id)
        return info.id

    async def context_info(self, context_id: int | None) -> ContextInfo | None:
        if context_id is None:
            return None
        try:
            return await self.repository.context_info(context_id)
        except SQLAlchemyError:
            logger.exception("Could not load context %s", context_id)
            return None

    async def can_add_transactions(self, chat: Any, user_id: int) -> bool:
        """Check membership, and admin role when the context restricts entry to admins.

        Chats without a mapping, and newcomers to an "everyone" context, are allowed.
        """
        if chat.type not in GROUP_CHAT_TYPES:
            return True
        try:
            context_id = await self.repository.mapped_context_id(chat.id, chat.type)
            if context_id is None:
                return True
            role = await self.repository.membership_role(user_id, context_id)
            info = await self.repository.context_info(context_id)
            if role is None:
                # Newcomers join on first use unless the context is admin-only; removed members stay out.
                lapsed = await self.repository.has_membership_record(user_id, context_id)
                return not lapsed and (info is None or info.transaction_permissions != "admins")
        except SQLAlchemyError:
            logger.exception("Error checking transaction permission in chat %s", chat.id)
            return False
        if info is not None and info.transaction_permissions == "admins":
            return role in ADMIN_ROLES
        return True
