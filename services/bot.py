import asyncio
import logging
from typing import Any, List, Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ChatType
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)
from telegram.request import HTTPXRequest

import services.commands as commands
from boost_shop.config import get_secret, load_config
from boost_shop.logging import correlation_context
from boost_shop.telegram.commands import help_text
from services.commands_registry import (
    GATE_ANYONE_PRIVATE,
    GATE_GROUP_AUTHORITY,
    GATE_OPERATOR_PRIVATE,
    CommandSpec,
    bind_handlers,
    get_spec,
    known_roots,
    validate_registry,
)
from services.errors import AlreadyDecided, FulfillmentUnavailable, ShopError
from services.ordering import order_status_lines, place_order
from services.recharge import StepKind, StepOutcome
from services.shop import ShopContext, build_context
from services.tg_format import format_money, review_caption, split_for_telegram

logger = logging.getLogger(__name__)

SHOP_KEY = "shop"
CANCEL_CALLBACK = "recharge:cancel"
REVIEW_CALLBACK_PREFIX = "rc"

# Every non-command private message reaches the recharge flow, which re-prompts for
# anything that is not a payment photo.
RECHARGE_MESSAGES = filters.ChatType.PRIVATE & ~filters.COMMAND


def _shop(context: ContextTypes.DEFAULT_TYPE) -> ShopContext:
    return context.application.bot_data[SHOP_KEY]


def _cancel_markup() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[InlineKeyboardButton("Cancel ❌", callback_data=CANCEL_CALLBACK)]])


def _review_markup(review_id: int, party_id: int, amount: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton(
                    f"Confirm ✅ {party_id} {amount}",
                    callback_data=f"{REVIEW_CALLBACK_PREFIX}:ok:{review_id}",
                ),
                InlineKeyboardButton(
                    f"Failed ❌ {party_id} {amount}",
                    callback_data=f"{REVIEW_CALLBACK_PREFIX}:no:{review_id}",
                ),
            ]
        ]
    )


async def _reply(update: Update, text: str, reply_markup: Optional[InlineKeyboardMarkup] = None) -> None:
    message = update.effective_message
    if not message:
        return
    chunks = split_for_telegram(text)
    for index, chunk in enumerate(chunks):
        markup = reply_markup if index == len(chunks) - 1 else None
        await message.reply_text(chunk, reply_markup=markup)


async def _gate_allows(spec: CommandSpec, shop: ShopContext, bot: Any, update: Update) -> bool:
    user = update.effective_user
    chat_obj = update.effective_chat
    if not user or not chat_obj:
        return False
    if spec.gate == GATE_ANYONE_PRIVATE:
        return chat_obj.type == ChatType.PRIVATE
    if spec.gate == GATE_OPERATOR_PRIVATE:
        return shop.access.operator_private(user.id, chat_obj.type)
    if spec.gate == GATE_GROUP_AUTHORITY:
        return await shop.access.group_authority(bot, user.id, chat_obj.id, chat_obj.type)
    return False


async def handle_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.effective_message
    if not message or not message.text:
        return
    req = commands.parse_command(message.text)
    if not req:
        return
    spec = get_spec(req.name)
    if spec is None or spec.handler is None:
        return

    shop = _shop(context)
    with correlation_context(f"upd-{update.update_id}"):
        try:
            if not await _gate_allows(spec, shop, context.bot, update):
                # Unauthorized or wrong chat type: stay silent.
                return
            await spec.handler(update, context, req)
        except ShopError as exc:
            logger.info("/%s rejected: %s", req.name, exc)
            await _reply(update, exc.user_message())
        except Exception as exc:
            logger.exception("/%s failed: %s", req.name, exc)
            await _reply(update, "❌ Command failed.")


# -- account commands ---------------------------------------------------------


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE, req: commands.CommandRequest) -> None:
    shop = _shop(context)
    user = update.effective_user
    username = user.username or "(no username)"
    account, created = shop.ledger.ensure_party(user.id, whitelisted=True, username=user.username)
    if created:
        for admin_id in shop.access.review_recipients():
            try:
                await context.bot.send_message(admin_id, f"👤 New user whitelisted:\nID: {user.id}\nUsername: @{username}")
            except Exception as exc:
                logger.warning("Could not notify %s about new user %s: %s", admin_id, user.id, exc)
        await _reply(update, "🎉 You are now whitelisted.\n\nUse /recharge to add balance.")
        return
    await _reply(update, f"👋 Hello! Your balance: {format_money(account.balance)} {shop.currency}")


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE, req: commands.CommandRequest) -> None:
    shop = _shop(context)
    await _reply(update, help_text(include_operator=shop.access.is_operator(update.effective_user.id)))


async def balance_command(update: Update, context: ContextTypes.DEFAULT_TYPE, req: commands.CommandRequest) -> None:
    shop = _shop(context)
    user_id = update.effective_user.id
    if shop.access.is_privileged(user_id):
        remote = None
        try:
            remote = await asyncio.to_thread(shop.client.get_account_balance)
        except FulfillmentUnavailable as exc:
            logger.warning("Remote balance unavailable: %s", exc)
        text = commands.balance_overview(shop, remote)
        if remote is None:
            text = "⚠️ API balance unavailable.\n\n" + text
        await _reply(update, text)
        return
    await _reply(update, f"💰 Your balance: {format_money(shop.ledger.balance(user_id))} {shop.currency}")


async def recharge_command(update: Update, context: ContextTypes.DEFAULT_TYPE, req: commands.CommandRequest) -> None:
    shop = _shop(context)
    user_id = update.effective_user.id
    shop.ledger.ensure_party(user_id)
    shop.sessions.start(user_id)
    allowed = ", ".join(str(a) for a in shop.sessions.allowed_amounts)
    await _reply(
        update,
        f"Send the amount you want to add.\nAllowed amounts: {allowed} {shop.currency}",
        reply_markup=_cancel_markup(),
    )


# -- group ordering -------------------------------------------------------------


async def add_command(update: Update, context: ContextTypes.DEFAULT_TYPE, req: commands.CommandRequest) -> None:
    shop = _shop(context)
    user_id = update.effective_user.id
    is_operator = shop.access.is_operator(user_id)
    if not is_operator:
        shop.ledger.ensure_party(user_id)
    result = await place_order(
        req.body,
        user_id,
        is_operator=is_operator,
        catalog=shop.catalog,
        ledger=shop.ledger,
        dispatcher=shop.dispatcher,
    )
    await _reply(update, result.receipt(shop.currency, shop.receipt_footer))


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE, req: commands.CommandRequest) -> None:
    if not req.args:
        await _reply(update, "❌ Usage: /status <order_id>")
        return
    shop = _shop(context)
    lines = await order_status_lines(shop.client, req.args[:1], rate=shop.usd_rate(), currency=shop.currency)
    await _reply(update, "📦 " + "\n".join(lines))


async def orders_command(update: Update, context: ContextTypes.DEFAULT_TYPE, req: commands.CommandRequest) -> None:
    ids = [i for i in req.body.replace(" ", ",").split(",") if i.strip()]
    if not ids:
        await _reply(update, "❌ Usage: /orders <id1,id2,...>")
        return
    shop = _shop(context)
    lines = await order_status_lines(shop.client, ids, rate=shop.usd_rate(), currency=shop.currency)
    await _reply(update, "\n".join(lines))


# -- operator commands ------------------------------------------------------------


async def operator_command(update: Update, context: ContextTypes.DEFAULT_TYPE, req: commands.CommandRequest) -> None:
    response = await commands.execute_command(req, _shop(context), actor_id=update.effective_user.id)
    if response.silent or not response.text:
        return
    await _reply(update, response.text)


async def send_command(update: Update, context: ContextTypes.DEFAULT_TYPE, req: commands.CommandRequest) -> None:
    target, _, text = req.body.partition(" ")
    if not target.isdigit() or not text.strip():
        await _reply(update, "Usage: /send <tg_id> <message>")
        return
    await context.bot.send_message(int(target), text.strip())
    await _reply(update, "✅ Message sent.")


async def broadcast_command(update: Update, context: ContextTypes.DEFAULT_TYPE, req: commands.CommandRequest) -> None:
    if not req.body:
        await _reply(update, "❌ Usage: /broadcast <message>")
        return
    shop = _shop(context)
    sent = 0
    for account in shop.ledger.accounts():
        if not account.is_whitelisted:
            continue
        try:
            await context.bot.send_message(account.user_id, f"📢 {req.body}")
            sent += 1
        except Exception as exc:
            logger.warning("Broadcast to %s failed: %s", account.user_id, exc)
    await _reply(update, f"✅ Broadcast sent to {sent} users.")


# -- recharge conversation --------------------------------------------------------


def _proof_file_id(update: Update) -> Optional[str]:
    message = update.effective_message
    if not message:
        return None
    if message.photo:
        return message.photo[-1].file_id
    document = message.document
    if document and str(document.mime_type or "").startswith("image/"):
        return document.file_id
    return None


async def _escalate(update: Update, context: ContextTypes.DEFAULT_TYPE, outcome: StepOutcome) -> None:
    shop = _shop(context)
    review = outcome.review
    caption = review_caption(review_id=review.id, party_id=review.party_id, amount=review.amount, currency=shop.currency)
    recipients: List[int] = [shop.review_chat_id]
    recipients.extend(a for a in shop.access.review_recipients() if a not in recipients)

    delivered = 0
    for chat_id in recipients:
        try:
            await context.bot.send_photo(
                chat_id,
                review.proof_file_id,
                caption=caption,
                reply_markup=_review_markup(review.id, review.party_id, review.amount),
            )
            delivered += 1
        except Exception as exc:
            logger.warning("Could not deliver recharge #%s to %s: %s", review.id, chat_id, exc)
    if not delivered:
        logger.error("Recharge #%s reached no reviewer; it stays pending in /reviews", review.id)
    await _reply(update, "🔔 Payment proof sent to admin for confirmation.")


async def handle_private_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    user = update.effective_user
    message = update.effective_message
    if not user or not message:
        return
    shop = _shop(context)
    with correlation_context(f"upd-{update.update_id}"):
        try:
            outcome = shop.sessions.handle_message(user.id, text=message.text, photo_file_id=_proof_file_id(update))
            if outcome is None:
                return
            if outcome.kind is StepKind.AMOUNT_REJECTED:
                await _reply(update, outcome.error.user_message())
            elif outcome.kind is StepKind.AMOUNT_ACCEPTED:
                text = f"To complete your top-up of {outcome.session.amount} {shop.currency}:"
                if shop.payment_instructions:
                    text += "\n\n" + shop.payment_instructions
                await _reply(update, text, reply_markup=_cancel_markup())
            elif outcome.kind is StepKind.PROOF_REQUIRED:
                await _reply(update, "❌ Please send a photo of payment proof or tap Cancel.")
            elif outcome.kind is StepKind.ESCALATED:
                await _escalate(update, context, outcome)
        except ShopError as exc:
            await _reply(update, exc.user_message())
        except Exception as exc:
            logger.exception("Recharge step failed: %s", exc)
            await _reply(update, "❌ Something went wrong. Please try /recharge again.")


async def handle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if not query or not query.from_user:
        return
    shop = _shop(context)
    data = str(query.data or "")

    with correlation_context(f"upd-{update.update_id}"):
        if data == CANCEL_CALLBACK:
            if shop.sessions.cancel(query.from_user.id):
                await query.answer()
                await query.edit_message_text("Recharge cancelled ❌")
            else:
                await query.answer("No active recharge.")
            return

        parts = data.split(":")
        if len(parts) != 3 or parts[0] != REVIEW_CALLBACK_PREFIX or parts[1] not in {"ok", "no"}:
            await query.answer()
            return
        if not shop.access.is_privileged(query.from_user.id):
            await query.answer("❌ Permission denied.")
            return
        try:
            review_id = int(parts[2])
        except ValueError:
            await query.answer()
            return

        approve = parts[1] == "ok"
        try:
            review = await shop.sessions.decide(review_id, approve=approve, actor_id=query.from_user.id)
        except AlreadyDecided as exc:
            await query.answer(str(exc))
            await query.edit_message_reply_markup(reply_markup=None)
            return
        except ShopError as exc:
            await query.answer(exc.user_message())
            return

        if approve:
            party_text = f"✅ Recharge successful! Your balance has increased by {review.amount} {shop.currency}."
            admin_text = f"✅ Recharge #{review.id} confirmed for user {review.party_id} amount {review.amount} {shop.currency}."
        else:
            party_text = "❌ Recharge failed. Please try again or contact support."
            admin_text = f"❌ Recharge #{review.id} marked failed for user {review.party_id} amount {review.amount} {shop.currency}."
        try:
            await context.bot.send_message(review.party_id, party_text)
        except Exception as exc:
            logger.warning("Could not notify %s about recharge #%s: %s", review.party_id, review.id, exc)
        try:
            await query.edit_message_caption(caption=admin_text, reply_markup=None)
        except Exception as exc:
            logger.warning("Could not update review message #%s: %s", review.id, exc)
        await query.answer("Recharge confirmed." if approve else "Recharge failed marked.")


async def purge_sessions_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    removed = _shop(context).sessions.purge_expired()
    if removed:
        logger.info("Purged %d expired recharge sessions", removed)


HANDLERS = {
    "start": start_command,
    "help": help_command,
    "balance": balance_command,
    "recharge": recharge_command,
    "add": add_command,
    "status": status_command,
    "orders": orders_command,
    "send": send_command,
    "broadcast": broadcast_command,
    **{name: operator_command for name in commands.EXECUTORS},
}


def build_application(shop: ShopContext, token: str) -> Application:
    bind_handlers(HANDLERS)
    for issue in validate_registry():
        logger.error("Command registry issue: %s", issue)

    request = HTTPXRequest(connect_timeout=30, read_timeout=60, write_timeout=60, pool_timeout=30)
    app = Application.builder().token(token).request(request).concurrent_updates(True).build()
    app.bot_data[SHOP_KEY] = shop

    for root in sorted(known_roots()):
        app.add_handler(CommandHandler(root, handle_command))
    app.add_handler(CallbackQueryHandler(handle_callback))
    app.add_handler(MessageHandler(RECHARGE_MESSAGES, handle_private_message))

    if app.job_queue is not None:
        app.job_queue.run_repeating(purge_sessions_job, interval=300, first=60)
    else:
        logger.warning("Job queue unavailable; expired recharge sessions are purged lazily.")
    return app


def run_bot() -> None:
    config = load_config()
    telegram_cfg = config.get("telegram", {}) if isinstance(config.get("telegram"), dict) else {}
    token = get_secret(str(telegram_cfg.get("bot_token_env_var", "BOT_TOKEN")))
    shop = build_context(config)
    logger.info("Shop bot DB path: %s", shop.store.db_path)

    app = build_application(shop, token)
    app.run_polling(close_loop=False)


if __name__ == "__main__":
    run_bot()
