"""Party-facing command handlers: wallets, deals, disputes, evidence and reviews"""

import logging
import re
import time
from datetime import timedelta
from functools import wraps
from typing import Iterable, Optional

from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from config import Config
from models import Deal, DealStatus
from services.authorization import Actor
from services.deal_service import DealService
from utils import deal_messages
from utils.deal_errors import AlreadyBoundError, DealError, InvalidDealInputError
from utils.fee_calculator import FeeCalculator
from utils.helpers import deposit_link, explorer_tx_link, is_deal_code, normalize_deal_code, parse_amount

logger = logging.getLogger(__name__)

PHOTO_CAPTION_PATTERN = re.compile(r"^(DP-\w+)(?:\s+(.*))?$", re.IGNORECASE | re.DOTALL)


def get_deal_service(context: ContextTypes.DEFAULT_TYPE) -> DealService:
    return context.bot_data["deal_service"]


def actor_from_update(update: Update) -> Actor:
    user = update.effective_user
    return Actor(telegram_id=user.id, username=user.username)


def with_warnings(text: str, warnings: Iterable[str]) -> str:
    warnings = list(warnings)
    if not warnings:
        return text
    return text + "\n\n" + "\n".join(f"⚠️ {w}" for w in warnings)


def deal_command(func):
    """Resolve the actor and service, reply with the error text on DealError"""

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not update.effective_user or not update.effective_message:
            return
        service = get_deal_service(context)
        actor = actor_from_update(update)
        try:
            await service.users.touch(actor.telegram_id, actor.username)
            await func(update, context, service, actor)
        except DealError as e:
            logger.info(f"↩️ DEAL_COMMAND_REJECTED: {func.__name__} by {actor.telegram_id}: {e.user_message}")
            await update.effective_message.reply_text(f"❌ {e.user_message}")

    return wrapper


def deal_id_arg(context: ContextTypes.DEFAULT_TYPE, usage: str) -> str:
    """First argument as a deal code, or raise with the usage line"""
    if not context.args or not is_deal_code(context.args[0]):
        raise InvalidDealInputError(f"Usage: {usage}")
    return normalize_deal_code(context.args[0])


def release_window_text(deal: Deal, service: DealService) -> str:
    if not deal.funded_at:
        return ""
    remaining = deal.funded_at + timedelta(hours=service.release_window_hours) - service.clock()
    if remaining.total_seconds() <= 0:
        return f"\n\n⏱️ Release window expired - please /release {deal.deal_id} or /dispute {deal.deal_id}"
    hours, rest = divmod(int(remaining.total_seconds()), 3600)
    return f"\n\n⏱️ Release window: {hours}h {rest // 60}m remaining"


# ============ ONBOARDING ============

async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    param = context.args[0].lower() if context.args else ""
    if param == "newdeal":
        await update.message.reply_text(
            "💰 CREATE A NEW DEAL\n\nStep 1: /wallet 0xYourAddress\n"
            "Step 2: /new @buyer 50 Description\n\nNeed help? /help"
        )
        return
    if param.startswith("dispute_"):
        deal_id = normalize_deal_code(param[len("dispute_"):])
        await update.message.reply_text(f"⚠️ Open Dispute for {deal_id}\n\nCommand: /dispute {deal_id} [reason]")
        return

    await update.message.reply_text(
        f"🔒 {Config.PLATFORM_NAME} - Secure Crypto Escrow\n\n"
        f"{Config.PLATFORM_NAME} acts as a neutral escrow intermediary.\n"
        "Funds are held on-chain and released only by buyer action or admin resolution.\n\n"
        "1. Seller: /new @buyer 50 desc\n2. Buyer: /fund DP-XXXX\n3. Deliver goods\n"
        "4. Buyer: /release DP-XXXX\n\nCommands: /help\n\n"
        "⚠️ Admins will NEVER DM you first.\nOnly interact with admins inside this bot."
    )


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    service = get_deal_service(context)
    role = await service.roster.role_of(update.effective_user.id)
    admin_note = ""
    if role == "superuser":
        admin_note = "\n\n👑 Botmaster: /adminhelp"
    elif role == "arbiter":
        admin_note = "\n\n🛡️ Moderator: /modhelp"

    await update.message.reply_text(
        f"📖 {Config.PLATFORM_NAME} Commands\n\n"
        "SETUP: /wallet 0x...\n\n"
        "DEALS\n/new @buyer 100 desc\n/fund DP-XXXX\n/status DP-XXXX\n/deals\n"
        "/release DP-XXXX\n/cancel DP-XXXX\n\n"
        "DISPUTES\n/dispute DP-XXXX reason\n/evidence DP-XXXX msg\n"
        "📸 Photo: send image with caption DP-XXXX desc\n/viewevidence DP-XXXX\n/canceldispute DP-XXXX\n\n"
        "RATINGS\n/review DP-XXXX 5 Great!\n/rep @user\n\n"
        f"🔐 Safety: {Config.PLATFORM_NAME} admins will never DM you first.{admin_note}"
    )


@deal_command
async def wallet_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    if not context.args:
        user = await service.users.get(actor.telegram_id)
        await update.message.reply_text(
            f"Your wallet: {user.wallet_address}" if user and user.wallet_address else "Usage: /wallet 0xYourAddress"
        )
        return
    user = await service.register_wallet(actor, " ".join(context.args))
    await update.message.reply_text(f"✅ Wallet registered: {user.wallet_address}")


# ============ DEALS ============

@deal_command
async def new_deal_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    args = context.args or []
    if len(args) < 3 or not args[0].startswith("@"):
        raise InvalidDealInputError("Format: /new @buyer 50 description")

    deal = await service.create_deal(actor, args[0], parse_amount(args[1]), " ".join(args[2:]))
    await update.message.reply_text(
        f"✅ Deal Created: {deal.deal_id}\n\n"
        f"Seller: @{deal.seller_username}\nBuyer: @{deal.buyer_username}\n"
        f"Amount: {deal_messages.amount_text(deal)}\n\n"
        f"@{deal.buyer_username} → /fund {deal.deal_id}\n\n"
        "⚠️ Escrow Rules\n• Seller must deliver as agreed\n"
        "• Buyer must release or dispute after delivery\n"
        "• Either party may dispute while funds are held\n"
        "• Unreleased deals may be reviewed by admins"
    )


@deal_command
async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    deal = await service.get_deal(deal_id_arg(context, "/status DP-XXXX"))

    extra = ""
    if deal.deal_status == DealStatus.DISPUTED:
        extra = f"\n\n⚠️ DISPUTED\nReason: {deal.dispute_reason or 'N/A'}"
        extra += "\nStatus: Being reviewed" if deal.assigned_to_username else "\nStatus: Awaiting review"
    elif deal.deal_status == DealStatus.FUNDED:
        extra = release_window_text(deal, service)

    await update.message.reply_text(
        f"{deal_messages.status_emoji(deal.status)} {deal.deal_id} - {deal.status.upper()}\n\n"
        f"Seller: @{deal.seller_username}\nBuyer: @{deal.buyer_username}\n"
        f"Amount: {deal_messages.amount_text(deal)}\nDesc: {deal.description}{extra}"
    )


@deal_command
async def deals_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    deals = await service.list_deals(actor)
    if not deals:
        await update.message.reply_text("No deals. Create: /new")
        return

    lines = ["Your Deals:\n"]
    for deal in deals:
        role = "S" if deal.seller_telegram_id == actor.telegram_id else "B"
        lines.append(
            f"{deal_messages.status_emoji(deal.status)} {deal.deal_id} | {deal_messages.amount_text(deal)} | {role}"
        )
    await update.message.reply_text("\n".join(lines))


@deal_command
async def fund_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    deal_id = deal_id_arg(context, "/fund DP-XXXX")
    try:
        outcome = await service.bind_ledger(
            actor, deal_id, on_create=lambda: update.message.reply_text("Creating on-chain deal..."),
        )
    except AlreadyBoundError as e:
        await update.message.reply_text(f"👇 TAP TO DEPOSIT:\n{deposit_link(e.deal_id)}")
        return

    text = f"✅ Ready!\n\n👇 TAP TO DEPOSIT:\n{deposit_link(outcome.deal.deal_id)}"
    if outcome.deal.tx_hash:
        text = f"Tx: {explorer_tx_link(outcome.deal.tx_hash)}\n\n" + text
    await update.message.reply_text(with_warnings(text, outcome.warnings))


@deal_command
async def release_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    deal_id = deal_id_arg(context, "/release DP-XXXX")
    override = len(context.args) > 1 and context.args[1].lower() == "confirm"
    outcome = await service.release(actor, deal_id, override=override)

    deal = outcome.deal
    await update.message.reply_text(with_warnings(
        f"📤 {deal.deal_id} released.\n\nAmount: {deal_messages.amount_text(deal)}\n"
        f"Seller receives: {FeeCalculator.format_amount(deal.seller_payout)}",
        outcome.warnings,
    ))


@deal_command
async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    outcome = await service.cancel(actor, deal_id_arg(context, "/cancel DP-XXXX"))
    await update.message.reply_text(with_warnings(f"❌ {outcome.deal.deal_id} cancelled.", outcome.warnings))


# ============ DISPUTES ============

@deal_command
async def dispute_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    deal_id = deal_id_arg(context, "/dispute DP-XXXX reason")
    reason = " ".join(context.args[1:])
    outcome = await service.open_dispute(actor, deal_id, reason)

    deal = outcome.deal
    await update.message.reply_text(with_warnings(
        f"⚠️ DISPUTE OPENED\n\nDeal: {deal.deal_id}\nReason: {deal.dispute_reason}\n\n"
        f"Admin Team will review.\n\nSubmit evidence: /evidence {deal.deal_id} [msg]",
        outcome.warnings,
    ))


@deal_command
async def evidence_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    deal_id = deal_id_arg(context, "/evidence DP-XXXX your message")
    evidence = await service.submit_evidence(actor, deal_id, " ".join(context.args[1:]))
    await update.message.reply_text(f"✅ Evidence submitted for {evidence.deal_id}")


@deal_command
async def photo_evidence(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    match = PHOTO_CAPTION_PATTERN.match((update.message.caption or "").strip())
    if not match:
        await update.message.reply_text("📸 Photo evidence: Send with caption DP-XXXX description")
        return

    photo = update.message.photo[-1]
    evidence = await service.submit_evidence(
        actor, match.group(1), match.group(2) or "", file_id=photo.file_id, file_type="photo"
    )
    await update.message.reply_text(f"✅ Photo evidence submitted for {evidence.deal_id}")


@deal_command
async def view_evidence_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService,
                                actor: Actor):
    deal, evidence = await service.view_evidence(actor, deal_id_arg(context, "/viewevidence DP-XXXX"))
    if not evidence:
        await update.message.reply_text(f"No evidence for {deal.deal_id}")
        return

    lines = [f"📋 Evidence: {deal.deal_id}\nReason: {deal.dispute_reason or 'N/A'}\n"]
    for item in evidence:
        icon = "📸" if item.file_type == "photo" else "📝"
        lines.append(f"{icon} [{item.role.title()}] @{item.submitted_by}: \"{item.content}\"\n")
    await update.message.reply_text("\n".join(lines))

    notifier = service.dispatcher.notifier
    for item in evidence:
        if item.file_id:
            await notifier.send_photo(update.effective_chat.id, item.file_id, f"[{item.role.title()}] @{item.submitted_by}")


@deal_command
async def cancel_dispute_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService,
                                 actor: Actor):
    outcome = await service.cancel_dispute(actor, deal_id_arg(context, "/canceldispute DP-XXXX"))
    await update.message.reply_text(
        f"✅ Dispute cancelled. {outcome.deal.deal_id} back to {outcome.deal.status}."
    )


# ============ RATINGS ============

@deal_command
async def review_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    deal_id = deal_id_arg(context, "/review DP-XXXX 5 comment")
    if len(context.args) < 2 or not context.args[1].isdigit():
        raise InvalidDealInputError("Usage: /review DP-XXXX 5 comment")
    rating = int(context.args[1])
    await service.submit_review(actor, deal_id, rating, " ".join(context.args[2:]))
    await update.message.reply_text(f"✅ Review: {'⭐' * rating}")


@deal_command
async def rep_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    target = context.args[0] if context.args else actor.username
    if not target:
        raise InvalidDealInputError("Usage: /rep @username")

    rep = await service.reputation(target)
    text = (
        f"📊 @{rep.username}\n\n{rep.badge}\nDeals: {rep.completed_deals}\n"
        f"Volume: {FeeCalculator.format_amount(rep.volume)}"
    )
    if rep.reviews:
        text += "\n\nReviews:\n" + "\n".join(
            f"{'⭐' * r.rating} by @{r.reviewer}" + (f" - {r.comment}" if r.comment else "") for r in rep.reviews
        )
    await update.message.reply_text(text)


# ============ FALLBACK ============

async def unknown_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Rate-limited hint for free text the bot does not understand"""
    if not update.effective_user or not update.message:
        return
    last_reply = context.bot_data.setdefault("unknown_reply_at", {})
    now = time.monotonic()
    previous: Optional[float] = last_reply.get(update.effective_user.id)
    if previous is not None and now - previous < Config.UNKNOWN_COMMAND_COOLDOWN_SECONDS:
        return
    last_reply[update.effective_user.id] = now
    await update.message.reply_text("Unknown command. Try /help")


def register_deal_handlers(application: Application):
    commands = [
        ("start", start_command),
        ("help", help_command),
        ("wallet", wallet_command),
        ("new", new_deal_command),
        ("status", status_command),
        ("deals", deals_command),
        ("fund", fund_command),
        ("release", release_command),
        ("cancel", cancel_command),
        ("dispute", dispute_command),
        ("evidence", evidence_command),
        ("viewevidence", view_evidence_command),
        ("canceldispute", cancel_dispute_command),
        ("review", review_command),
        ("rep", rep_command),
    ]
    for name, callback in commands:
        application.add_handler(CommandHandler(name, callback))
    application.add_handler(MessageHandler(filters.PHOTO, photo_evidence))
    logger.info(f"✅ Registered {len(commands)} deal commands")


def register_fallback_handlers(application: Application):
    """Must be registered after every other text handler"""
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, unknown_text))
