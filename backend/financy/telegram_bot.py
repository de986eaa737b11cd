"""Telegram conversation handling for Financy."""

from __future__ import annotations

import html
import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from telegram import Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from . import callbacks, formatting
from .config import Settings, get_settings
from .context_resolution import GROUP_CHAT_TYPES, ContextResolver
from .currency import CurrencyNormalizer
from .db import SessionLocal, init_db
from .domain.entities import BatchOutcome, BatchTransactionSet, ContextInfo, ParsedTransaction, SetupSession
from .exceptions import LinkTokenError
from .extraction import TransactionExtractor
from .formatting import Reply
from .media import MediaProcessor
from .onboarding import SetupWizard
from .repository import LinkedUser, Repository
from .state import ExpiringStore

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_DAYS = 30
MAX_SUMMARY_DAYS = 365
ALLOWED_UPDATES = ["message", "callback_query"]


class ConversationOrchestrator:
    """Routes every inbound update through onboarding, extraction and confirmation.

    Message dispatch priority, highest first: the bot being added to a group,
    an unidentified sender, a setup session waiting for a name, commands,
    voice, photo, then plain text.
    """

    def __init__(
        self,
        settings: Settings,
        repository: Repository,
        resolver: ContextResolver,
        extractor: TransactionExtractor,
        media: MediaProcessor,
        wizard: SetupWizard,
        pending: ExpiringStore[str, ParsedTransaction],
        batches: ExpiringStore[str, BatchTransactionSet],
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.resolver = resolver
        self.extractor = extractor
        self.media = media
        self.wizard = wizard
        self.pending = pending
        self.batches = batches

    def register(self, application: Application) -> None:
        application.add_handler(CallbackQueryHandler(self.handle_callback))
        application.add_handler(MessageHandler(filters.UpdateType.MESSAGE, self.handle_message))
        application.add_error_handler(self.error_handler)

    async def send(self, bot: Any, chat_id: int, reply: Reply) -> None:
        await bot.send_message(
            chat_id=chat_id,
            text=reply.text,
            parse_mode=ParseMode.HTML,
            reply_markup=reply.keyboard,
        )

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        chat = update.effective_chat
        if message is None or chat is None:
            return
        try:
            await self._dispatch(context.bot, message, chat, update.effective_user)
        except Exception:
            logger.exception("Error processing message in chat %s", chat.id)
            await self._apologise(context.bot, chat.id)

    async def handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        if query is None:
            return
        try:
            await query.answer()
        except TelegramError as exc:
            logger.warning("Could not answer callback query %s: %s", query.id, exc)

        chat = update.effective_chat
        if chat is None:
            return
        try:
            await self._dispatch_callback(context.bot, chat, query.from_user, query.data or "")
        except Exception:
            logger.exception("Error processing callback %r in chat %s", query.data, chat.id)
            await self._apologise(context.bot, chat.id)

    async def error_handler(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error("Unhandled error while processing update %s", update, exc_info=context.error)

    async def aclose(self) -> None:
        """Release the HTTP and model clients held by the pipeline."""
        await self.media.aclose()
        await self.extractor.aclose()

    async def _apologise(self, bot: Any, chat_id: int) -> None:
        try:
            await self.send(bot, chat_id, Reply(formatting.GENERIC_APOLOGY))
        except TelegramError as exc:
            logger.error("Could not deliver apology to chat %s: %s", chat_id, exc)

    async def _dispatch(self, bot: Any, message: Any, chat: Any, sender: Any) -> None:
        if message.new_chat_members and any(member.id == bot.id for member in message.new_chat_members):
            await self._on_bot_added(bot, chat, sender)
            return
        if sender is None:
            return

        text = (message.text or "").strip()
        user = await self.repository.find_user(sender.id)
        if user is None:
            if _command_name(text) == "/link":
                await self._link_command(bot, chat, sender, None, _command_args(text))
            elif chat.type == "private" or text:
                await self.send(bot, chat.id, Reply(formatting.unregistered_user(sender.first_name, self.settings.frontend_url)))
            return

        if text and not text.startswith("/") and self.wizard.awaiting_name(chat.id):
            reply = await self.wizard.handle_name(chat.id, text)
            if reply is not None:
                await self.send(bot, chat.id, reply)
            return

        if text.startswith("/"):
            await self._handle_command(bot, chat, sender, user, text)
            return

        media_or_text = message.voice or message.audio or message.photo or text
        if not media_or_text:
            if chat.type == "private":
                await self.send(bot, chat.id, Reply(formatting.UNSUPPORTED_MESSAGE))
            return

        if chat.type in GROUP_CHAT_TYPES and not await self.resolver.can_add_transactions(chat, user.id):
            await self.send(bot, chat.id, Reply(formatting.PERMISSION_DENIED))
            return

        if message.voice or message.audio:
            await self._handle_voice(bot, chat, user, message.voice or message.audio)
        elif message.photo:
            await self._handle_photo(bot, chat, user, message.photo[-1])
        else:
            await self._handle_text(bot, chat, user, text)

    async def _on_bot_added(self, bot: Any, chat: Any, sender: Any) -> None:
        if chat.type not in GROUP_CHAT_TYPES:
            return
        logger.info("Bot added to group %s (%s) by %s", chat.title, chat.id, getattr(sender, "id", None))
        user = await self.repository.find_user(sender.id) if sender is not None else None
        if user is None:
            await self.send(bot, chat.id, Reply(formatting.group_registration_required(self.settings.frontend_url)))
            return
        await self.send(bot, chat.id, self.wizard.start(chat.id, user.id, chat.title, chat.type))

    async def _handle_command(self, bot: Any, chat: Any, sender: Any, user: LinkedUser, text: str) -> None:
        command = _command_name(text)
        args = _command_args(text)
        if command == "/start":
            await self.send(bot, chat.id, Reply(formatting.WELCOME_MESSAGE))
        elif command == "/help":
            await self.send(bot, chat.id, Reply(formatting.HELP_MESSAGE))
        elif command == "/contexts":
            contexts = await self.repository.list_contexts(user.id)
            await self.send(bot, chat.id, Reply(formatting.contexts_list(contexts)))
        elif command == "/summary":
            summary = await self.repository.summarize(user.id, _summary_days(args))
            await self.send(bot, chat.id, Reply(formatting.period_summary(summary)))
        elif command == "/link":
            await self._link_command(bot, chat, sender, user, args)
        else:
            await self.send(bot, chat.id, Reply(formatting.UNKNOWN_COMMAND))

    async def _link_command(
        self, bot: Any, chat: Any, sender: Any, user: LinkedUser | None, args: list[str]
    ) -> None:
        if user is not None:
            await self.send(bot, chat.id, Reply(formatting.ALREADY_LINKED))
            return
        if not args:
            await self.send(bot, chat.id, Reply(formatting.link_instructions(self.settings.frontend_url)))
            return
        try:
            linked = await self.repository.link_account(args[0], sender.id, sender.username)
        except LinkTokenError as exc:
            logger.warning("Linking failed for Telegram user %s: %s", sender.id, exc)
            await self.send(bot, chat.id, Reply(formatting.link_failed(str(exc))))
            return
        logger.info("Linked Telegram user %s to account %s", sender.id, linked.id)
        await self.send(bot, chat.id, Reply(formatting.LINK_SUCCESS))

    async def _target_context(self, chat: Any, user: LinkedUser) -> tuple[int | None, ContextInfo | None, str]:
        context_id = await self.resolver.resolve_context(chat, user.id)
        info = await self.resolver.context_info(context_id)
        currency = info.default_currency if info else self.settings.default_currency
        return context_id, info, currency

    async def _handle_text(self, bot: Any, chat: Any, user: LinkedUser, text: str) -> None:
        await self.send(bot, chat.id, Reply(formatting.PROCESSING_TEXT))
        context_id, info, currency = await self._target_context(chat, user)
        candidates = await self.extractor.extract(text, currency)
        await self._present(bot, chat.id, candidates, context_id, info, formatting.EXAMPLES_UNCLEAR)

    async def _handle_voice(self, bot: Any, chat: Any, user: LinkedUser, voice: Any) -> None:
        await self.send(bot, chat.id, Reply(formatting.PROCESSING_VOICE))
        telegram_file = await bot.get_file(voice.file_id)
        audio = bytes(await telegram_file.download_as_bytearray())
        transcript = await self.media.transcribe(audio)
        if not transcript:
            await self.send(bot, chat.id, Reply(formatting.VOICE_FAILED))
            return
        await self.send(bot, chat.id, Reply(f'I heard: "{html.escape(transcript)}"'))
        await self._handle_text(bot, chat, user, transcript)

    async def _handle_photo(self, bot: Any, chat: Any, user: LinkedUser, photo: Any) -> None:
        await self.send(bot, chat.id, Reply(formatting.PROCESSING_RECEIPT))
        telegram_file = await bot.get_file(photo.file_id)
        image = bytes(await telegram_file.download_as_bytearray())
        context_id, info, currency = await self._target_context(chat, user)
        candidates = await self.media.extract_receipt(image, currency)
        await self._present(bot, chat.id, candidates, context_id, info, formatting.RECEIPT_UNCLEAR)

    async def _present(
        self,
        bot: Any,
        chat_id: int,
        candidates: list[ParsedTransaction],
        context_id: int | None,
        info: ContextInfo | None,
        unclear_text: str,
    ) -> None:
        if not candidates:
            await self.send(bot, chat_id, Reply(formatting.EXAMPLES_NOT_FOUND))
            return

        threshold = self.settings.confidence_threshold
        confident = [candidate for candidate in candidates if candidate.confidence > threshold]
        for candidate in candidates:
            if candidate.confidence <= threshold:
                self.pending.remove(candidate.temp_id)
        if not confident:
            await self.send(bot, chat_id, Reply(unclear_text))
            return

        for candidate in confident:
            candidate.context_id = context_id

        if len(confident) == 1:
            transaction = confident[0]
            await self.send(
                bot,
                chat_id,
                Reply(
                    formatting.transaction_confirmation(transaction, info),
                    formatting.transaction_keyboard(transaction.temp_id),
                ),
            )
            return

        batch = BatchTransactionSet(confident)
        self.batches.put(batch.batch_id, batch)
        for candidate in confident:
            self.pending.remove(candidate.temp_id)
        logger.info("Stored batch %s with %d transactions", batch.batch_id, len(batch))
        await self.send(
            bot,
            chat_id,
            Reply(formatting.batch_confirmation(confident, info), formatting.batch_keyboard(batch.batch_id)),
        )

    async def _dispatch_callback(self, bot: Any, chat: Any, sender: Any, data: str) -> None:
        if data.startswith(callbacks.SETUP_PREFIX):
            reply = await self.wizard.handle_callback(chat.id, data)
            if reply is not None:
                await self.send(bot, chat.id, reply)
            return

        parsed = callbacks.parse_transaction_callback(data)
        if parsed is None:
            logger.warning("Ignoring unknown callback data %r", data)
            return

        user = await self.repository.find_user(sender.id)
        if user is None:
            await self.send(bot, chat.id, Reply(formatting.unregistered_user(sender.first_name, self.settings.frontend_url)))
            return

        if parsed.is_batch:
            await self._batch_callback(bot, chat.id, user, parsed)
        else:
            await self._transaction_callback(bot, chat.id, user, parsed)

    async def _transaction_callback(
        self, bot: Any, chat_id: int, user: LinkedUser, parsed: callbacks.TransactionCallback
    ) -> None:
        if parsed.action == callbacks.CANCEL:
            self.pending.remove(parsed.token)
            await self.send(bot, chat_id, Reply(formatting.TRANSACTION_CANCELLED))
            return

        if parsed.action == callbacks.EDIT:
            if self.pending.get(parsed.token) is None:
                await self.send(bot, chat_id, Reply(formatting.TRANSACTION_EXPIRED))
                return
            await self.send(bot, chat_id, Reply(formatting.EDIT_INSTRUCTIONS))
            return

        transaction = self.pending.remove(parsed.token)
        if transaction is None:
            await self.send(bot, chat_id, Reply(formatting.TRANSACTION_EXPIRED))
            return
        try:
            transaction_id = await self.repository.create_transaction(user.id, transaction)
        except (SQLAlchemyError, ValidationError):
            logger.exception("Error confirming transaction %s", parsed.token)
            self.pending.put(parsed.token, transaction)
            await self.send(bot, chat_id, Reply(formatting.SAVE_FAILED))
            return
        logger.info("Saved transaction %s for user %s", transaction_id, user.id)
        await self.send(bot, chat_id, Reply(formatting.transaction_saved(transaction)))

    async def _batch_callback(
        self, bot: Any, chat_id: int, user: LinkedUser, parsed: callbacks.TransactionCallback
    ) -> None:
        if parsed.action == callbacks.REVIEW_BATCH:
            batch = self.batches.get(parsed.token)
            if batch is None:
                await self.send(bot, chat_id, Reply(formatting.BATCH_EXPIRED))
                return
            await self.send(
                bot,
                chat_id,
                Reply(
                    formatting.batch_review(batch.transactions),
                    formatting.batch_keyboard(batch.batch_id, include_review=False),
                ),
            )
            return

        batch = self.batches.remove(parsed.token)
        if batch is None:
            await self.send(bot, chat_id, Reply(formatting.BATCH_EXPIRED))
            return
        if parsed.action == callbacks.CANCEL_BATCH:
            await self.send(bot, chat_id, Reply(formatting.BATCH_CANCELLED))
            return

        outcome = await self.confirm_batch(user.id, batch)
        await self.send(bot, chat_id, Reply(formatting.batch_result(outcome)))

    async def confirm_batch(self, user_id: int, batch: BatchTransactionSet) -> BatchOutcome:
        """Save each candidate on its own; failures are tallied, never rolled back."""
        outcome = BatchOutcome(total=len(batch))
        for index, transaction in enumerate(batch.transactions, start=1):
            try:
                await self.repository.create_transaction(user_id, transaction)
            except (SQLAlchemyError, ValidationError) as exc:
                logger.error("Error saving transaction %d of batch %s: %s", index, batch.batch_id, exc)
                outcome.failed.append((index, transaction))
                continue
            outcome.saved.append(transaction)
        logger.info(
            "Batch %s confirmed: %d/%d saved", batch.batch_id, outcome.saved_count, outcome.total
        )
        return outcome


def _command_name(text: str) -> str:
    if not text.startswith("/"):
        return ""
    return text.split()[0].split("@", 1)[0].lower()


def _command_args(text: str) -> list[str]:
    return text.split()[1:]


def _summary_days(args: list[str]) -> int:
    if not args:
        return DEFAULT_SUMMARY_DAYS
    try:
        days = int(args[0])
    except ValueError:
        return DEFAULT_SUMMARY_DAYS
    if days <= 0:
        return DEFAULT_SUMMARY_DAYS
    return min(days, MAX_SUMMARY_DAYS)


def build_orchestrator(settings: Settings | None = None, repository: Repository | None = None) -> ConversationOrchestrator:
    settings = settings or get_settings()
    repository = repository or Repository(SessionLocal)
    pending: ExpiringStore[str, ParsedTransaction] = ExpiringStore("pending", settings.pending_ttl)
    batches: ExpiringStore[str, BatchTransactionSet] = ExpiringStore("batches", settings.pending_ttl)
    sessions: ExpiringStore[int, SetupSession] = ExpiringStore("setup", settings.setup_session_ttl)
    currency = CurrencyNormalizer(settings)
    extractor = TransactionExtractor(pending, currency, settings)
    return ConversationOrchestrator(
        settings=settings,
        repository=repository,
        resolver=ContextResolver(repository, settings.default_currency),
        extractor=extractor,
        media=MediaProcessor(extractor, settings),
        wizard=SetupWizard(sessions, repository, currency),
        pending=pending,
        batches=batches,
    )


async def close_orchestrator(application: Application) -> None:
    orchestrator = application.bot_data.get("orchestrator")
    if orchestrator is not None:
        await orchestrator.aclose()


def build_application(orchestrator: ConversationOrchestrator | None = None) -> Application:
    settings = get_settings()
    if not settings.telegram_bot_token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is missing from configuration.")

    application = (
        ApplicationBuilder()
        .token(settings.telegram_bot_token)
        .post_shutdown(close_orchestrator)
        .build()
    )
    orchestrator = orchestrator or build_orchestrator(settings)
    orchestrator.register(application)
    application.bot_data["orchestrator"] = orchestrator
    return application


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if not settings.telegram_bot_token:
        raise SystemExit("Please set TELEGRAM_BOT_TOKEN in the environment to run the bot.")
    init_db()
    application = build_application()
    logger.info("Starting Telegram bot...")
    application.run_polling(drop_pending_updates=True, allowed_updates=ALLOWED_UPDATES)


if __name__ == "__main__":
    main()
