"""
Telegram handler tests - mocked Update/context around a real deal service
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram import Update

from handlers.admin_commands import (
    add_mod_command, admin_help_command, error_handler, logs_command, register_admin_handlers,
    resolve_command,
)
from handlers.deal_commands import (
    fund_command, new_deal_command, photo_evidence, register_deal_handlers, release_command, rep_command,
    review_command, status_command, unknown_text, view_evidence_command, wallet_command,
)
from models import DealStatus

from tests.deal_test_foundation import BUYER, SELLER, STRANGER, SUPERUSER


def make_update(actor, caption=None):
    update = MagicMock()
    update.effective_user.id = actor.telegram_id
    update.effective_user.username = actor.username
    update.effective_chat.id = actor.telegram_id
    message = MagicMock()
    message.reply_text = AsyncMock()
    message.caption = caption
    update.message = message
    update.effective_message = message
    return update


def make_context(deal_service, *args):
    context = MagicMock()
    context.args = list(args)
    context.bot_data = {"deal_service": deal_service}
    return context


def replies(update):
    return [call.args[0] for call in update.message.reply_text.call_args_list]


class TestDealCommands:

    @pytest.mark.asyncio
    async def test_new_deal(self, deal_service, wallets):
        update = make_update(SELLER)
        await new_deal_command(update, make_context(deal_service, "@bob_buyer", "$50", "Vintage", "camera"))

        [reply] = replies(update)
        assert reply.startswith("✅ Deal Created: DP-")
        assert "Amount: 50 USDC" in reply
        assert "Buyer: @bob_buyer" in reply

    @pytest.mark.asyncio
    async def test_new_deal_format_error(self, deal_service):
        update = make_update(SELLER)
        await new_deal_command(update, make_context(deal_service, "bob_buyer", "50"))
        assert replies(update) == ["❌ Format: /new @buyer 50 description"]

    @pytest.mark.asyncio
    async def test_fund_creates_escrow(self, deal_service, make_deal, wallets):
        deal = await make_deal(bound=False)
        update = make_update(BUYER)

        await fund_command(update, make_context(deal_service, deal.deal_id))

        progress, ready = replies(update)
        assert progress == "Creating on-chain deal..."
        assert f"?deal={deal.deal_id}" in ready

    @pytest.mark.asyncio
    async def test_fund_of_bound_deal_resends_deposit_link(self, deal_service, make_deal, wallets):
        deal = await make_deal()
        update = make_update(BUYER)

        await fund_command(update, make_context(deal_service, deal.deal_id))

        [reply] = replies(update)
        assert reply.startswith("👇 TAP TO DEPOSIT:")
        assert reply.endswith(f"?deal={deal.deal_id}")

    @pytest.mark.asyncio
    async def test_fund_by_stranger_gets_only_the_refusal(self, deal_service, make_deal, wallets):
        deal = await make_deal(bound=False)
        update = make_update(STRANGER)

        await fund_command(update, make_context(deal_service, deal.deal_id))

        [reply] = replies(update)
        assert reply.startswith("❌ Only the buyer")

    @pytest.mark.asyncio
    async def test_wallet_registration_and_lookup(self, deal_service):
        update = make_update(SELLER)
        await wallet_command(update, make_context(deal_service, "0x" + "a" * 40))
        await wallet_command(update, make_context(deal_service))
        assert replies(update) == [
            "✅ Wallet registered: 0x" + "a" * 40,
            "Your wallet: 0x" + "a" * 40,
        ]

    @pytest.mark.asyncio
    async def test_status_of_funded_deal_shows_release_window(self, deal_service, make_deal):
        deal = await make_deal(DealStatus.FUNDED)
        update = make_update(BUYER)

        await status_command(update, make_context(deal_service, deal.deal_id.lower()))

        [reply] = replies(update)
        assert f"{deal.deal_id} - FUNDED" in reply
        assert "Release window: 23h 0m remaining" in reply

    @pytest.mark.asyncio
    async def test_status_needs_deal_code(self, deal_service):
        update = make_update(BUYER)
        await status_command(update, make_context(deal_service, "hello"))
        assert replies(update) == ["❌ Usage: /status DP-XXXX"]

    @pytest.mark.asyncio
    async def test_release_of_disputed_deal_needs_confirm(self, deal_service, make_deal):
        deal = await make_deal(DealStatus.DISPUTED)
        update = make_update(BUYER)

        await release_command(update, make_context(deal_service, deal.deal_id))
        await release_command(update, make_context(deal_service, deal.deal_id, "CONFIRM"))

        first, second = replies(update)
        assert first.startswith("❌ ") and f"/release {deal.deal_id} confirm" in first
        assert second.startswith(f"📤 {deal.deal_id} released.")
        assert "Seller receives: 49.5 USDC" in second

    @pytest.mark.asyncio
    async def test_review_requires_numeric_rating(self, deal_service, make_deal):
        deal = await make_deal(DealStatus.COMPLETED)
        update = make_update(BUYER)

        await review_command(update, make_context(deal_service, deal.deal_id, "five"))
        await review_command(update, make_context(deal_service, deal.deal_id, "5", "Great", "seller"))

        assert replies(update) == ["❌ Usage: /review DP-XXXX 5 comment", "✅ Review: ⭐⭐⭐⭐⭐"]

    @pytest.mark.asyncio
    async def test_rep(self, deal_service, make_deal):
        await make_deal(DealStatus.COMPLETED, buyer_rating=4, buyer_review="Smooth", amount=Decimal("120"))
        update = make_update(BUYER)

        await rep_command(update, make_context(deal_service, "@alice_seller"))

        [reply] = replies(update)
        assert "📊 @alice_seller" in reply
        assert "Deals: 1" in reply
        assert "Volume: 120 USDC" in reply
        assert "⭐⭐⭐⭐ by @bob_buyer - Smooth" in reply

    @pytest.mark.asyncio
    async def test_rep_keeps_fractional_volume(self, deal_service, make_deal):
        await make_deal(DealStatus.COMPLETED, amount=Decimal("12.5"))
        update = make_update(BUYER)

        await rep_command(update, make_context(deal_service, "@alice_seller"))

        [reply] = replies(update)
        assert "Volume: 12.5 USDC" in reply

    @pytest.mark.asyncio
    async def test_photo_evidence_and_viewing(self, deal_service, make_deal, notifier):
        deal = await make_deal(DealStatus.DISPUTED)
        update = make_update(SELLER, caption=f"{deal.deal_id.lower()} shipping label")
        update.message.photo = [MagicMock(file_id="small"), MagicMock(file_id="large")]

        await photo_evidence(update, make_context(deal_service))
        assert replies(update) == [f"✅ Photo evidence submitted for {deal.deal_id}"]

        viewer = make_update(BUYER)
        await view_evidence_command(viewer, make_context(deal_service, deal.deal_id))
        [listing] = replies(viewer)
        assert '[Seller] @alice_seller: "shipping label"' in listing
        assert notifier.photos == [(BUYER.telegram_id, "large")]

    @pytest.mark.asyncio
    async def test_photo_without_deal_caption(self, deal_service):
        update = make_update(SELLER, caption="look at this")
        await photo_evidence(update, make_context(deal_service))
        assert replies(update) == ["📸 Photo evidence: Send with caption DP-XXXX description"]

    @pytest.mark.asyncio
    async def test_unknown_text_is_rate_limited(self, deal_service):
        update = make_update(SELLER)
        context = make_context(deal_service)

        await unknown_text(update, context)
        await unknown_text(update, context)

        assert replies(update) == ["Unknown command. Try /help"]


class TestAdminCommands:

    @pytest.mark.asyncio
    async def test_admin_help_is_superuser_only(self, deal_service):
        update = make_update(SELLER)
        await admin_help_command(update, make_context(deal_service))
        assert replies(update) == ["Botmaster only."]

        update = make_update(SUPERUSER)
        await admin_help_command(update, make_context(deal_service))
        assert replies(update)[0].startswith("👑 BOTMASTER COMMANDS")

    @pytest.mark.asyncio
    async def test_resolve(self, deal_service, make_deal):
        deal = await make_deal(DealStatus.DISPUTED)
        update = make_update(SUPERUSER)

        await resolve_command(update, make_context(deal_service, deal.deal_id, "maybe"))
        await resolve_command(update, make_context(deal_service, deal.deal_id, "Refund"))

        usage, result = replies(update)
        assert usage == "❌ Usage: /resolve DP-XXXX release|refund"
        assert result.startswith(f"⚖️ {deal.deal_id}: Refunded to buyer")
        assert "Status updated to: refunded" in result

    @pytest.mark.asyncio
    async def test_resolve_needs_an_arbiter(self, deal_service, make_deal):
        deal = await make_deal(DealStatus.DISPUTED)

        stranger = make_update(STRANGER)
        await resolve_command(stranger, make_context(deal_service, deal.deal_id, "release"))
        assert replies(stranger)[0].startswith("❌ Only the arbiter can resolve")

        party = make_update(SELLER)
        await resolve_command(party, make_context(deal_service, deal.deal_id, "release"))
        [reply] = replies(party)
        assert reply.startswith("❌ ") and "cannot arbitrate" in reply

    @pytest.mark.asyncio
    async def test_addmod_usage_and_logs(self, deal_service, make_deal):
        update = make_update(SUPERUSER)
        await add_mod_command(update, make_context(deal_service, "carol_mod"))
        assert replies(update) == ["❌ Usage: /addmod @username"]

        deal = await make_deal(DealStatus.DISPUTED)
        await resolve_command(update, make_context(deal_service, deal.deal_id, "release"))
        await logs_command(update, make_context(deal_service, deal.deal_id))
        assert "@root_admin: resolve" in replies(update)[-1]

    @pytest.mark.asyncio
    async def test_error_handler_replies(self):
        update = MagicMock(spec=Update)
        update.effective_message.reply_text = AsyncMock()
        context = MagicMock()
        context.error = RuntimeError("boom")

        await error_handler(update, context)

        update.effective_message.reply_text.assert_awaited_once_with("⚠️ Something went wrong. Please try again.")


def test_handlers_register():
    application = MagicMock()
    register_deal_handlers(application)
    register_admin_handlers(application)
    assert application.add_handler.call_count == 16 + 13
    application.add_error_handler.assert_called_once_with(error_handler)
