"""Notification texts sent to deal parties and arbiters"""

from models import Deal
from utils.fee_calculator import FeeCalculator
from utils.helpers import truncate_text

STATUS_EMOJIS = {
    "pending_deposit": "⏳",
    "funded": "💰",
    "completed": "✅",
    "disputed": "⚠️",
    "cancelled": "❌",
    "refunded": "↩️",
}


def status_emoji(status: str) -> str:
    return STATUS_EMOJIS.get(status, "❓")


def amount_text(deal: Deal) -> str:
    return FeeCalculator.format_amount(deal.amount)


def funded_seller(deal: Deal) -> str:
    return f"💰 {deal.deal_id} FUNDED!\n\n{amount_text(deal)} locked. Deliver as agreed."


def funded_buyer(deal: Deal, window_hours: int) -> str:
    return (
        f"✅ {deal.deal_id} deposited!\n\n"
        f"Please /release {deal.deal_id} or /dispute {deal.deal_id} within {window_hours} hours."
    )


def cancelled(deal: Deal, by_handle: str) -> str:
    return f"❌ {deal.deal_id} was cancelled by @{by_handle}."


def released_seller(deal: Deal, seller_payout, overridden: bool = False) -> str:
    note = "\nThe buyer closed the dispute by releasing." if overridden else ""
    return (
        f"✅ {deal.deal_id}\n\nBuyer released the funds to you!\n"
        f"Payout: {FeeCalculator.format_amount(seller_payout)}{note}\n\n"
        f"Leave a review: /review {deal.deal_id} 5 comment"
    )


def released_buyer(deal: Deal) -> str:
    return (
        f"✅ {deal.deal_id}\n\nDeal completed! Funds released to seller.\n\n"
        f"Leave a review: /review {deal.deal_id} 5 comment"
    )


def ledger_completed_seller(deal: Deal) -> str:
    return f"✅ {deal.deal_id}\n\nFunds released to you!"


def ledger_completed_buyer(deal: Deal) -> str:
    return f"✅ {deal.deal_id}\n\nDeal completed! Funds released to seller."


def dispute_opened_counterparty(deal: Deal, reason: str) -> str:
    return (
        f"⚠️ DISPUTE on {deal.deal_id}\n\nReason: {reason}\n\n"
        f"Submit evidence: /evidence {deal.deal_id} [msg]"
    )


def dispute_opened_arbiters(deal: Deal, by_handle: str, reason: str) -> str:
    return (
        f"🔔 DISPUTE: {deal.deal_id}\n\n{amount_text(deal)}\n"
        f"@{deal.seller_username} vs @{deal.buyer_username}\n"
        f"By: @{by_handle}\nReason: {truncate_text(reason, 200)}\n\n/disputes to view all"
    )


def dispute_cancelled(deal: Deal) -> str:
    return f"✅ Dispute on {deal.deal_id} cancelled. The deal is back to funded."


def resolved_seller(deal: Deal, released: bool) -> str:
    outcome = "✅ Funds released to you!" if released else "❌ Refunded to buyer."
    return f"⚖️ {deal.deal_id}\n\n{outcome}"


def resolved_buyer(deal: Deal, released: bool) -> str:
    outcome = "❌ Released to seller." if released else "✅ Funds refunded to you!"
    return f"⚖️ {deal.deal_id}\n\n{outcome}"


def release_reminder_buyer(deal: Deal, window_hours: int) -> str:
    return (
        f"⏱️ {deal.deal_id} - {window_hours}hr release window has expired.\n\n"
        f"Please /release {deal.deal_id} or /dispute {deal.deal_id}."
    )


def release_reminder_seller(deal: Deal, window_hours: int) -> str:
    return (
        f"⏱️ {deal.deal_id} - {window_hours}hr release window has expired. Buyer has been reminded.\n\n"
        f"You may /dispute {deal.deal_id} if needed."
    )


def assigned_arbiter(deal: Deal) -> str:
    return (
        f"🛡️ Dispute assigned: {deal.deal_id}\n\n{amount_text(deal)}\n"
        f"@{deal.seller_username} vs @{deal.buyer_username}\n\n/viewevidence {deal.deal_id}"
    )


def under_review(deal: Deal) -> str:
    return f"📋 {deal.deal_id}: Now being reviewed by the Admin Team."


def admin_message(deal: Deal, text: str) -> str:
    return f"📨 Admin Team ({deal.deal_id}):\n\n{text}"


def admin_broadcast(deal: Deal, text: str) -> str:
    return f"📢 Admin ({deal.deal_id}):\n\n{text}"
