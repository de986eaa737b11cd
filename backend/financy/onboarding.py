"""Group onboarding wizard: type, name, permissions, currency, complete."""

from __future__ import annotations

import html
import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError
from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from . import callbacks
from .domain.entities import ChatType, SetupSession
from .formatting import CONTEXT_OPTIONS, Reply, context_icon, context_option
from .state import ExpiringStore

if TYPE_CHECKING:
    from .currency import CurrencyNormalizer
    from .repository import Repository

logger = logging.getLogger(__name__)

SESSION_EXPIRED = "Setup session expired. Please add the bot to the group again to restart setup."
NAME_LENGTH_HINT = "Please enter a name between 1 and 50 characters."
SETUP_FAILED = "Error setting up context. Please try again later."
MAX_NAME_LENGTH = 50

WIZARD_CURRENCIES = ("USD", "BRL", "EUR", "GBP", "CAD")
CURRENCY_FLAGS = {"USD": "🇺🇸", "BRL": "🇧🇷", "EUR": "🇪🇺", "GBP": "🇬🇧", "CAD": "🇨🇦"}


class SetupWizard:
    """Drives one group chat through onboarding.

    Sessions live in an expiring store keyed by chat id. Every handler returns
    the reply to send, or ``None`` when the input does not belong to the
    session's current step and is ignored.
    """

    def __init__(
        self,
        sessions: ExpiringStore[int, SetupSession],
        repository: Repository,
        currency: CurrencyNormalizer | None = None,
    ) -> None:
        self.sessions = sessions
        self.repository = repository
        currencies = [code for code in WIZARD_CURRENCIES if currency is None or currency.is_supported(code)]
        self.currencies = tuple(currencies) or WIZARD_CURRENCIES

    def start(
        self,
        chat_id: int,
        user_id: int,
        chat_title: str | None = None,
        chat_type: ChatType = "group",
    ) -> Reply:
        session = SetupSession(
            chat_id=chat_id,
            user_id=user_id,
            chat_type=chat_type,
            default_name=(chat_title or "").strip()[:MAX_NAME_LENGTH] or None,
        )
        self.sessions.put(chat_id, session)
        logger.info("Started context setup for chat %s by user %s", chat_id, user_id)
        return self._type_step()

    def session(self, chat_id: int) -> SetupSession | None:
        return self.sessions.get(chat_id)

    def awaiting_name(self, chat_id: int) -> bool:
        session = self.sessions.get(chat_id)
        return session is not None and session.step == "name"

    async def handle_callback(self, chat_id: int, data: str) -> Reply | None:
        session = self.sessions.get(chat_id)
        if session is None:
            return Reply(SESSION_EXPIRED)

        parsed = callbacks.parse_setup_callback(data)
        if parsed is None:
            logger.debug("Ignoring unknown setup callback %r", data)
            return None

        action, value = parsed.action, parsed.value
        step = session.step

        if step == "type" and action == "type" and context_option(value) is not None:
            session.type = value
            return self._type_confirmation(value)
        if step == "type" and action == "confirm" and context_option(value) is not None:
            session.type = value
            session.step = "name"
            return self._name_step(session)
        if step in ("type", "name") and action == "back" and value == "type":
            session.step = "type"
            return self._type_step()
        if step == "name" and action == "name" and session.default_name:
            return self._accept_name(session, session.default_name)
        if step == "permissions" and action == "perms":
            session.permissions = value  # type: ignore[assignment]
            session.step = "currency"
            return self._currency_step()
        if step == "permissions" and action == "back" and value == "name":
            session.step = "name"
            return self._name_step(session)
        if step == "currency" and action == "currency" and value in self.currencies:
            session.currency = value
            return await self._complete(session)
        if step == "currency" and action == "back" and value == "perms":
            session.step = "permissions"
            return self._permissions_step()

        logger.debug("Ignoring setup callback %r at step %s for chat %s", data, step, chat_id)
        return None

    async def handle_name(self, chat_id: int, text: str) -> Reply | None:
        session = self.sessions.get(chat_id)
        if session is None or session.step != "name" or text.startswith("/"):
            return None
        name = text.strip()
        if not 1 <= len(name) <= MAX_NAME_LENGTH:
            return Reply(NAME_LENGTH_HINT)
        return self._accept_name(session, name)

    def _accept_name(self, session: SetupSession, name: str) -> Reply:
        session.name = name
        session.step = "permissions"
        return self._permissions_step()

    async def _complete(self, session: SetupSession) -> Reply:
        name = session.name or session.default_name or f"{session.type} Context"
        try:
            context = await self.repository.setup_group_context(
                user_id=session.user_id,
                chat_id=session.chat_id,
                chat_type=session.chat_type,
                name=name,
                context_type=session.type or "family",
                default_currency=session.currency or self.currencies[0],
                permissions=session.permissions or "everyone",
            )
        except SQLAlchemyError:
            logger.exception("Error completing context setup for chat %s", session.chat_id)
            return Reply(SETUP_FAILED)

        session.step = "complete"
        self.sessions.remove(session.chat_id)
        logger.info("Context setup completed for chat %s: %s", session.chat_id, context.id)
        return Reply(completion_message(session, name))

    def _type_step(self) -> Reply:
        return Reply(
            "🏦 <b>Welcome to Financy!</b>\n\n"
            "I need to know what type of expenses you'll be tracking in this group "
            "to set up the right context for your financial data.\n\n"
            "Please choose the purpose of this group:",
            type_keyboard(),
        )

    def _type_confirmation(self, context_type: str) -> Reply:
        option = context_option(context_type)
        return Reply(
            f"{option.emoji} <b>{option.name} Context</b>\n\n{option.description}\n\nIs this correct?",
            InlineKeyboardMarkup(
                [
                    [
                        InlineKeyboardButton("✅ Yes, continue", callback_data=callbacks.guard(f"setup_confirm_{context_type}")),
                        InlineKeyboardButton("🔙 Choose different", callback_data="setup_back_type"),
                    ]
                ]
            ),
        )

    def _name_step(self, session: SetupSession) -> Reply:
        icon = context_icon(session.type)
        rows = []
        text = f"{icon} <b>Context Name</b>\n\nWhat would you like to call this context?\n\n"
        if session.default_name:
            text += (
                f'Default: "{html.escape(session.default_name)}"\n\n'
                "You can type a custom name or use the default:"
            )
            rows.append([InlineKeyboardButton("✅ Use this name", callback_data=callbacks.SETUP_NAME_DEFAULT)])
        else:
            text += "Please type a name for this context:"
        rows.append([InlineKeyboardButton("🔙 Back to type selection", callback_data="setup_back_type")])
        return Reply(text, InlineKeyboardMarkup(rows))

    def _permissions_step(self) -> Reply:
        return Reply(
            "👥 <b>Transaction Permissions</b>\n\nWho should be able to add transactions in this group?",
            InlineKeyboardMarkup(
                [
                    [InlineKeyboardButton("👥 Everyone in group", callback_data="setup_perms_everyone")],
                    [InlineKeyboardButton("👑 Only group admins", callback_data="setup_perms_admins")],
                    [InlineKeyboardButton("🔙 Back to name", callback_data="setup_back_name")],
                ]
            ),
        )

    def _currency_step(self) -> Reply:
        buttons = [
            InlineKeyboardButton(
                f"{CURRENCY_FLAGS.get(code, '💱')} {code}", callback_data=f"setup_currency_{code}"
            )
            for code in self.currencies
        ]
        buttons.append(InlineKeyboardButton("🔙 Back to permissions", callback_data="setup_back_perms"))
        rows = [buttons[i : i + 2] for i in range(0, len(buttons), 2)]
        return Reply(
            "💰 <b>Default Currency</b>\n\nWhat currency will you primarily use in this group?",
            InlineKeyboardMarkup(rows),
        )


def type_keyboard() -> InlineKeyboardMarkup:
    buttons = [
        InlineKeyboardButton(f"{option.emoji} {option.name}", callback_data=f"setup_type_{option.type}")
        for option in CONTEXT_OPTIONS
    ]
    return InlineKeyboardMarkup([buttons[i : i + 2] for i in range(0, len(buttons), 2)])


def completion_message(session: SetupSession, name: str) -> str:
    option = context_option(session.type)
    permissions = "Only group admins" if session.permissions == "admins" else "All group members"
    return (
        "✅ <b>Context Setup Complete!</b>\n\n"
        f"{context_icon(session.type)} <b>Name:</b> {html.escape(name)}\n"
        f"🏷️ <b>Type:</b> {option.name if option else session.type}\n"
        f"👥 <b>Permissions:</b> {permissions}\n"
        f"💰 <b>Currency:</b> {session.currency}\n\n"
        "Your group is ready for expense tracking!\n"
        'Try sending: "Spent $50 on groceries"'
    )
