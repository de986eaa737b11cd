"""HTML message bodies and inline keyboards sent by the bot."""

from __future__ import annotations

import html
from dataclasses import dataclass
from decimal import Decimal

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from . import callbacks
from .domain.entities import BatchOutcome, ContextInfo, ParsedTransaction, sum_by_currency
from .schemas import PeriodSummary


@dataclass(frozen=True)
class Reply:
    """Text to send (HTML parse mode) plus an optional inline keyboard."""

    text: str
    keyboard: InlineKeyboardMarkup | None = None


@dataclass(frozen=True)
class ContextOption:
    type: str
    name: str
    emoji: str
    description: str


CONTEXT_OPTIONS = (
    ContextOption("family", "Family", "👨‍👩‍👧", "Track family expenses and shared household costs"),
    ContextOption("business", "Business", "🏢", "Team expenses, project costs, and business spending"),
    ContextOption("shared_living", "Shared Living", "🏠", "Roommate expenses, shared utilities, and housing costs"),
    ContextOption("trip", "Trip/Event", "✈️", "Travel expenses, vacation costs, or event budgets"),
    ContextOption("friends", "Friends", "👥", "Group activities, shared meals, and friend expenses"),
    ContextOption("project", "Project", "🚀", "Specific project costs, startup expenses, or initiatives"),
)
_OPTIONS_BY_TYPE = {option.type: option for option in CONTEXT_OPTIONS}

CONTEXT_ICONS = {
    "personal": "👤",
    "shared": "🤝",
    **{option.type: option.emoji for option in CONTEXT_OPTIONS},
}

EXAMPLES_UNCLEAR = (
    "🤷‍♀️ I found some transactions but they seem unclear. Please try a clearer format like:\n\n"
    '• "Spent $50 on groceries"\n'
    '• "Coffee $5 and gas $40"\n'
    "• \"Paid R$25 for lunch at McDonald's\"\n"
    '• "Got €200 from freelance work"'
)
EXAMPLES_NOT_FOUND = (
    "🤷‍♀️ I couldn't understand any transactions in that message. Please try a format like:\n\n"
    '• "Spent $50 on groceries"\n'
    '• "Coffee $5 and gas $40"\n'
    '• "Received $1000 salary"\n'
    '• "Paid R$25 for lunch, then $40 for gas"'
)
RECEIPT_UNCLEAR = (
    "I processed the receipt but the confidence was too low. "
    "Please try a clearer image or enter the transaction manually."
)

PROCESSING_TEXT = "🤔 Processing your transactions..."
PROCESSING_VOICE = "🎤 Processing your voice message..."
PROCESSING_RECEIPT = "📷 Processing receipt..."

TRANSACTION_EXPIRED = "Transaction data expired. Please try again."
BATCH_EXPIRED = "Batch data expired. Please try again."
TRANSACTION_CANCELLED = "❌ Transaction cancelled."
BATCH_CANCELLED = "❌ All transactions cancelled."
SAVE_FAILED = "Error saving transaction. Please try again."
PERMISSION_DENIED = (
    "You don't have permission to add transactions in this group. Please contact a group admin."
)
VOICE_FAILED = "Sorry, I couldn't understand the voice message. Please try again or type your transaction."
GENERIC_APOLOGY = "Sorry, I encountered an error processing your message. Please try again."
UNKNOWN_COMMAND = "🤔 Unknown command. Type /help for available commands."
UNSUPPORTED_MESSAGE = "I can process text messages, voice messages, and photos. Please try one of those!"

EDIT_INSTRUCTIONS = (
    "✏️ <b>Edit Transaction</b>\n\n"
    "Please send me the corrected transaction details in this format:\n"
    "• Amount: $50\n"
    "• Description: Groceries\n"
    "• Category: Food &amp; Dining\n"
    "• Merchant: Walmart\n\n"
    "Or just type the complete transaction again:\n"
    '"Spent $50 on groceries at Walmart"'
)

WELCOME_MESSAGE = (
    "🏦 <b>Welcome to Financy!</b>\n\n"
    "I'm your personal financial assistant. Here's what I can do:\n\n"
    "💰 <b>Track Transactions</b>\n"
    "Just tell me what you spent or earned:\n"
    '• "Paid $50 for groceries"\n'
    '• "Received $1000 salary"\n'
    '• "Spent R$25 on lunch"\n\n'
    "🎤 <b>Voice Messages</b>\n"
    "Send me a voice message with your transaction\n\n"
    "📷 <b>Receipt Photos</b>\n"
    "Take a photo of your receipt and I'll extract the details\n\n"
    "📊 <b>Commands</b>\n"
    "/contexts - Manage your financial contexts\n"
    "/summary - View your spending summary\n"
    "/help - Show this help message\n\n"
    "Let's start tracking your finances! 🚀"
)

HELP_MESSAGE = (
    "🆘 <b>Financy Help</b>\n\n"
    "<b>Adding Transactions:</b>\n"
    '• Type naturally: "Bought coffee for $5"\n'
    "• Send voice messages\n"
    "• Take photos of receipts\n\n"
    "<b>Commands:</b>\n"
    "/start - Welcome message\n"
    "/help - This help message\n"
    "/contexts - Manage financial contexts\n"
    "/summary [days] - Spending summary (default: 30 days)\n"
    "/link [token] - Link your Telegram to web account\n\n"
    "<b>Examples:</b>\n"
    '• "Spent $50 on groceries at Walmart"\n'
    '• "Received $1200 salary from work"\n'
    '• "Paid R$35 for dinner"\n'
    '• "Got €200 freelance payment"'
)

ALREADY_LINKED = (
    "✅ Your Telegram account is already linked to Financy!\n\n"
    "You can now track your transactions here."
)

LINK_SUCCESS = (
    "✅ <b>Account Linked Successfully!</b>\n\n"
    "Your Telegram account is now connected to Financy! 🎉\n\n"
    "<b>What you can do now:</b>\n"
    "• Send text messages with transactions\n"
    "• Send voice messages describing expenses\n"
    "• Take photos of receipts for automatic processing\n"
    "• View summaries with /summary\n"
    "• Manage contexts with /contexts\n\n"
    "Start tracking your finances by sending me a message like:\n"
    '"Spent $20 on lunch at Subway"\n\n'
    "Type /help for more information!"
)


def context_icon(context_type: str | None) -> str:
    return CONTEXT_ICONS.get(context_type or "", "📁")


def context_option(context_type: str | None) -> ContextOption | None:
    return _OPTIONS_BY_TYPE.get(context_type or "")


def money(amount: Decimal | float) -> str:
    return f"{Decimal(str(amount)):.2f}"


def confidence_bar(confidence: float) -> str:
    filled = max(0, min(10, int(confidence * 10)))
    return "█" * filled + "░" * (10 - filled)


def amount_display(transaction: ParsedTransaction) -> str:
    display = f"{money(transaction.amount)} {transaction.currency}"
    if transaction.was_converted:
        display += f" (from {money(transaction.original_amount)} {transaction.original_currency})"
    return display


def _type_emoji(transaction: ParsedTransaction) -> str:
    return "💰" if transaction.type == "income" else "💸"


def transaction_confirmation(transaction: ParsedTransaction, context: ContextInfo | None = None) -> str:
    lines = [
        f"{_type_emoji(transaction)} <b>Transaction Detected</b>",
        "",
        f"💵 <b>Amount:</b> {amount_display(transaction)}",
        f"📝 <b>Description:</b> {html.escape(transaction.description)}",
        f"🏷️ <b>Type:</b> {transaction.type}",
    ]
    if transaction.category:
        lines.append(f"📂 <b>Category:</b> {html.escape(transaction.category)}")
    if transaction.merchant_name:
        lines.append(f"🏪 <b>Merchant:</b> {html.escape(transaction.merchant_name)}")
    if context is not None:
        lines.append(f"{context_icon(context.type)} <b>Context:</b> {html.escape(context.name)}")
    lines += [
        "",
        f"🎯 <b>Confidence:</b> {round(transaction.confidence * 100)}% {confidence_bar(transaction.confidence)}",
        "",
        "Please confirm this transaction:",
    ]
    return "\n".join(lines)


def transaction_keyboard(temp_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton("✅ Confirm", callback_data=callbacks.build(callbacks.CONFIRM, temp_id)),
                InlineKeyboardButton("✏️ Edit", callback_data=callbacks.build(callbacks.EDIT, temp_id)),
                InlineKeyboardButton("❌ Cancel", callback_data=callbacks.build(callbacks.CANCEL, temp_id)),
            ]
        ]
    )


def batch_confirmation(transactions: list[ParsedTransaction], context: ContextInfo | None = None) -> str:
    lines = [f"📊 <b>Multiple Transactions Detected ({len(transactions)})</b>", ""]
    for index, transaction in enumerate(transactions, start=1):
        line = (
            f"{index}. {_type_emoji(transaction)} <b>{amount_display(transaction)}</b>"
            f" - {html.escape(transaction.description)}"
        )
        if transaction.category:
            line += f" ({html.escape(transaction.category)})"
        if transaction.merchant_name:
            line += f" at {html.escape(transaction.merchant_name)}"
        lines.append(line)

    lines += ["", "<b>Summary:</b>"]
    for currency, total in sum_by_currency(transactions).items():
        lines.append(f"💵 Total {currency}: {money(total)}")

    if context is not None:
        lines += ["", f"{context_icon(context.type)} <b>Context:</b> {html.escape(context.name)}"]

    lines += ["", f"Please confirm all {len(transactions)} transactions:"]
    return "\n".join(lines)


def batch_keyboard(batch_id: str, include_review: bool = True) -> InlineKeyboardMarkup:
    row = [InlineKeyboardButton("✅ Confirm All", callback_data=callbacks.build(callbacks.CONFIRM_BATCH, batch_id))]
    if include_review:
        row.append(InlineKeyboardButton("✏️ Review", callback_data=callbacks.build(callbacks.REVIEW_BATCH, batch_id)))
    row.append(InlineKeyboardButton("❌ Cancel All", callback_data=callbacks.build(callbacks.CANCEL_BATCH, batch_id)))
    return InlineKeyboardMarkup([row])


def batch_review(transactions: list[ParsedTransaction]) -> str:
    total = len(transactions)
    lines = ["🔍 <b>Review Batch Transactions</b>", ""]
    for index, transaction in enumerate(transactions, start=1):
        lines.append(f"<b>Transaction {index}/{total}</b>")
        lines.append(
            f"{_type_emoji(transaction)} {money(transaction.amount)} {transaction.currency}"
            f" - {html.escape(transaction.description)}"
        )
        if transaction.category:
            lines.append(f"📂 Category: {html.escape(transaction.category)}")
        if transaction.merchant_name:
            lines.append(f"🏪 Merchant: {html.escape(transaction.merchant_name)}")
        lines.append(f"🎯 Confidence: {round(transaction.confidence * 100)}%")
        lines.append("")
    lines.append("You can edit individual transactions by typing them again, or proceed with confirmation.")
    return "\n".join(lines)


def batch_result(outcome: BatchOutcome) -> str:
    lines = [
        "✅ <b>Batch Confirmation Complete!</b>",
        "",
        f"💾 Successfully saved: {outcome.saved_count}/{outcome.total} transactions",
    ]
    if outcome.failed:
        lines += ["", "❌ <b>Failed to save:</b>"]
        for index, transaction in outcome.failed:
            lines.append(f"• Transaction {index}: {html.escape(transaction.description)}")
    totals = outcome.saved_totals()
    if totals:
        lines += ["", "💰 <b>Totals:</b>"]
        for currency, amount in totals.items():
            lines.append(f"{currency}: {money(amount)}")
    return "\n".join(lines)


def transaction_saved(transaction: ParsedTransaction) -> str:
    return (
        "✅ Transaction confirmed!\n\n"
        f"💰 {money(transaction.amount)} {transaction.currency} - {html.escape(transaction.description)}"
    )


def contexts_list(contexts: list[ContextInfo]) -> str:
    if not contexts:
        return "You don't have any financial contexts yet. Create one in the web app!"
    lines = ["📁 <b>Your Financial Contexts:</b>", ""]
    for context in contexts:
        lines.append(f"{context_icon(context.type)} <b>{html.escape(context.name)}</b>")
        lines.append(f"   Type: {context.type}")
        lines.append(f"   Currency: {context.default_currency}")
        lines.append("")
    lines.append("Use the web app to manage contexts and switch between them.")
    return "\n".join(lines)


def period_summary(summary: PeriodSummary) -> str:
    lines = [f"📊 <b>Financial Summary (Last {summary.days} days)</b>", ""]
    if not summary.totals_by_currency:
        lines.append("No transactions recorded in this period.")
    for currency, totals in summary.totals_by_currency.items():
        lines.append(f"<b>{currency}</b>")
        lines.append(f"💰 Income: {money(totals.income)}")
        lines.append(f"💸 Expenses: {money(totals.expenses)}")
        lines.append(f"📈 Net: {money(totals.net)}")
        lines.append("")
    lines.append(f"📝 Transactions: {summary.transaction_count}")
    if summary.top_categories:
        lines += ["", "<b>Top Categories:</b>"]
        for item in summary.top_categories:
            lines.append(f"• {html.escape(item.category)}: {money(item.amount)} {item.currency}")
    return "\n".join(lines)


def link_instructions(frontend_url: str) -> str:
    return (
        "🔗 <b>Link Your Account</b>\n\n"
        "To link your Telegram account with the web app:\n\n"
        "<b>Step 1:</b> Create an account\n"
        f"• Visit: {html.escape(frontend_url)}\n"
        "• Register or log in to your account\n\n"
        "<b>Step 2:</b> Generate linking token\n"
        "• Go to Settings → Telegram Integration\n"
        '• Click "Generate Linking Token"\n'
        "• Copy the token\n\n"
        "<b>Step 3:</b> Use the token\n"
        "• Send: <code>/link YOUR_TOKEN_HERE</code>"
    )


def link_failed(reason: str) -> str:
    message = "❌ <b>Linking Failed</b>\n\n"
    if "already linked" in reason:
        return message + "This Telegram account is already linked to another Financy account."
    if "Invalid or expired" in reason:
        return message + "The linking token is invalid or has expired. Please generate a new token in the web app."
    return message + "An error occurred while linking your account. Please try again or contact support."


def unregistered_user(first_name: str | None, frontend_url: str) -> str:
    greeting = f"👋 Hi {html.escape(first_name)}!" if first_name else "👋 Hi!"
    return (
        f"{greeting}\n\n"
        "To use Financy, you need to create an account first:\n\n"
        f"1. Visit our web app: {html.escape(frontend_url)}\n"
        "2. Create your account\n"
        "3. Go to Settings → Telegram Integration\n"
        "4. Follow the linking instructions, then send <code>/link YOUR_TOKEN</code> here\n\n"
        "Once linked, you can track transactions directly through Telegram! 🚀"
    )


def group_registration_required(frontend_url: str) -> str:
    return (
        "👋 <b>Welcome to Financy!</b>\n\n"
        "To configure this group for expense tracking, you need to have a Financy account first.\n\n"
        "<b>Please follow these steps:</b>\n"
        f"1. Visit: {html.escape(frontend_url)}\n"
        "2. Create your account\n"
        "3. Go to Settings → Telegram Integration\n"
        "4. Link your Telegram account\n"
        "5. Add the bot to this group again to start configuration\n\n"
        "Once you're registered and linked, you'll be able to set up expense tracking for this group! 🚀"
    )
