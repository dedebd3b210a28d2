"""Arbiter and superuser command handlers: roster, dispute queue, resolution, audit"""

import logging

from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes

from models import DisputeResolution
from services.authorization import Actor
from services.deal_service import DealService
from utils import deal_messages
from utils.datetime_helpers import format_utc
from utils.deal_errors import InvalidDealInputError
from utils.helpers import is_deal_code, normalize_deal_code, truncate_text
from handlers.deal_commands import deal_command, deal_id_arg, get_deal_service, with_warnings

logger = logging.getLogger(__name__)


def handle_arg(context: ContextTypes.DEFAULT_TYPE, index: int, usage: str) -> str:
    args = context.args or []
    if len(args) <= index or not args[index].startswith("@") or len(args[index]) < 2:
        raise InvalidDealInputError(f"Usage: {usage}")
    return args[index].lstrip("@")


async def admin_help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    service = get_deal_service(context)
    if not service.roster.is_superuser(update.effective_user.id):
        await update.message.reply_text("Botmaster only.")
        return
    await update.message.reply_text(
        "👑 BOTMASTER COMMANDS\n\n"
        "MOD MANAGEMENT\n/addmod @user\n/removemod @user\n/mods\n\n"
        "DISPUTES\n/disputes - All open disputes\n/assign DP-XXXX @mod\n/unassign DP-XXXX\n"
        "/viewevidence DP-XXXX\n/resolve DP-XXXX release|refund\n\n"
        "COMMUNICATION\n/msg DP-XXXX seller|buyer [msg]\n/broadcast DP-XXXX [msg]\n\n"
        "AUDIT\n/logs\n/logs DP-XXXX"
    )


async def mod_help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    service = get_deal_service(context)
    if await service.roster.role_of(update.effective_user.id) is None:
        await update.message.reply_text("Admin only.")
        return
    await update.message.reply_text(
        "🛡️ MOD COMMANDS\n\n/mydisputes\n/viewevidence DP-XXXX\n"
        "/msg DP-XXXX seller|buyer [msg]\n/resolve DP-XXXX release|refund\n/canceldispute DP-XXXX"
    )


# ============ ROSTER ============

@deal_command
async def add_mod_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    arbiter = await service.add_arbiter(actor, handle_arg(context, 0, "/addmod @username"))
    await update.message.reply_text(f"✅ @{arbiter.username} is now a moderator.")


@deal_command
async def remove_mod_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    arbiter = await service.remove_arbiter(actor, handle_arg(context, 0, "/removemod @username"))
    await update.message.reply_text(f"✅ @{arbiter.username} removed from moderators.")


@deal_command
async def mods_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    arbiters = await service.list_arbiters(actor)
    if not arbiters:
        await update.message.reply_text("No moderators. /addmod @username")
        return
    await update.message.reply_text("🛡️ Moderators:\n\n" + "\n".join(f"@{a.username}" for a in arbiters))


# ============ DISPUTE QUEUE ============

@deal_command
async def disputes_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    deals = await service.list_disputes(actor)
    if not deals:
        await update.message.reply_text("No open disputes.")
        return

    lines = [f"⚠️ Open Disputes ({len(deals)}):\n"]
    for deal in deals:
        assigned = f"@{deal.assigned_to_username}" if deal.assigned_to_username else "❌ Unassigned"
        lines.append(f"{deal.deal_id} | {deal_messages.amount_text(deal)}")
        lines.append(f"  @{deal.seller_username} vs @{deal.buyer_username}")
        lines.append(f"  Assigned: {assigned}")
        lines.append(f"  Reason: {truncate_text(deal.dispute_reason or 'N/A', 30)}\n")
    await update.message.reply_text("\n".join(lines))


@deal_command
async def my_disputes_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService,
                              actor: Actor):
    deals = await service.list_disputes(actor, mine_only=True)
    if not deals:
        await update.message.reply_text("No disputes assigned to you.")
        return

    lines = [f"🛡️ Your Disputes ({len(deals)}):\n"]
    for deal in deals:
        lines.append(
            f"{deal.deal_id} | {deal_messages.amount_text(deal)}\n"
            f"  @{deal.seller_username} vs @{deal.buyer_username}\n"
        )
    await update.message.reply_text("\n".join(lines))


@deal_command
async def assign_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    deal_id = deal_id_arg(context, "/assign DP-XXXX @moderator")
    arbiter = handle_arg(context, 1, "/assign DP-XXXX @moderator")
    outcome = await service.assign_arbiter(actor, deal_id, arbiter)
    await update.message.reply_text(
        f"✅ {outcome.deal.deal_id} assigned to @{outcome.deal.assigned_to_username}"
    )


@deal_command
async def unassign_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    outcome = await service.unassign_arbiter(actor, deal_id_arg(context, "/unassign DP-XXXX"))
    await update.message.reply_text(f"✅ {outcome.deal.deal_id} unassigned.")


# ============ COMMUNICATION ============

@deal_command
async def msg_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    usage = "/msg DP-XXXX seller|buyer message"
    deal_id = deal_id_arg(context, usage)
    if len(context.args) < 3:
        raise InvalidDealInputError(f"Usage: {usage}")
    target = context.args[1].lower()
    sent = await service.message_party(actor, deal_id, target, " ".join(context.args[2:]))
    await update.message.reply_text(f"✅ Sent to {target}." if sent else f"Cannot reach the {target}.")


@deal_command
async def broadcast_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    usage = "/broadcast DP-XXXX message"
    deal_id = deal_id_arg(context, usage)
    if len(context.args) < 2:
        raise InvalidDealInputError(f"Usage: {usage}")
    sent = await service.broadcast(actor, deal_id, " ".join(context.args[1:]))
    await update.message.reply_text(
        "✅ Sent to both parties." if sent == 2 else f"⚠️ Delivered to {sent} of 2 parties."
    )


# ============ RESOLUTION ============

@deal_command
async def resolve_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    usage = "/resolve DP-XXXX release|refund"
    deal_id = deal_id_arg(context, usage)
    try:
        resolution = DisputeResolution(context.args[1].lower())
    except (IndexError, ValueError):
        raise InvalidDealInputError(f"Usage: {usage}") from None

    outcome = await service.resolve(actor, deal_id, resolution)
    verdict = "Released to seller" if resolution == DisputeResolution.RELEASE else "Refunded to buyer"
    await update.message.reply_text(with_warnings(
        f"⚖️ {outcome.deal.deal_id}: {verdict}\n\nStatus updated to: {outcome.deal.status}",
        outcome.warnings,
    ))


# ============ AUDIT ============

@deal_command
async def logs_command(update: Update, context: ContextTypes.DEFAULT_TYPE, service: DealService, actor: Actor):
    deal_id = None
    if context.args:
        if not is_deal_code(context.args[0]):
            raise InvalidDealInputError("Usage: /logs [DP-XXXX]")
        deal_id = normalize_deal_code(context.args[0])

    entries = await service.query_audit(actor, deal_id)
    if not entries:
        await update.message.reply_text("No logs found.")
        return

    lines = [f"📋 Logs{f' for {deal_id}' if deal_id else ''}:\n"]
    for entry in entries:
        line = f"{format_utc(entry.created_at)} @{entry.admin_username}: {entry.action}"
        if entry.deal_id:
            line += f" ({entry.deal_id})"
        if entry.target_user:
            line += f" → {entry.target_user}"
        lines.append(line)
    await update.message.reply_text("\n".join(lines))


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE):
    """Log unexpected handler errors and tell the user something went wrong"""
    logger.error(f"❌ HANDLER_ERROR: {context.error}", exc_info=context.error)
    if isinstance(update, Update) and update.effective_message:
        await update.effective_message.reply_text("⚠️ Something went wrong. Please try again.")


def register_admin_handlers(application: Application):
    commands = [
        ("adminhelp", admin_help_command),
        ("modhelp", mod_help_command),
        ("addmod", add_mod_command),
        ("removemod", remove_mod_command),
        ("mods", mods_command),
        ("disputes", disputes_command),
        ("mydisputes", my_disputes_command),
        ("assign", assign_command),
        ("unassign", unassign_command),
        ("msg", msg_command),
        ("broadcast", broadcast_command),
        ("resolve", resolve_command),
        ("logs", logs_command),
    ]
    for name, callback in commands:
        application.add_handler(CommandHandler(name, callback))
    application.add_error_handler(error_handler)
    logger.info(f"✅ Registered {len(commands)} admin commands")
