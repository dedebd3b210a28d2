"""
Deal Service
============

Orchestrates every deal operation, actor-requested or ledger-observed, along one
path:

    per-deal lock -> load -> authorize -> DealStateMachine -> compare-and-set write
    -> (outside the lock) dispatch effects -> record ledger write outcome

Operations return a ``TransitionOutcome`` or raise exactly one ``DealError``.
Ledger writes that fail after the off-chain commit do not roll anything back:
they leave ``ledger_action_pending`` on the deal, come back to the actor as
warnings, and are settled by the reconciliation job.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, NamedTuple, Optional, Tuple

from config import Config
from models import (
    AdminActionType, AdminLog, Arbiter, Deal, DealStatus, DisputeResolution,
    Evidence, LedgerAction, LedgerStatus, PartyRole, User,
)
from services.arbiter_roster import ArbiterRoster
from services.audit_log import AuditLog
from services.authorization import Actor, DealAction, RoleSnapshot, authorize, is_disputant
from services.deal_store import DealStore
from services.effect_dispatcher import EffectDispatcher
from services.effects import LedgerCall
from services.ledger_client import LedgerClient, LedgerSnapshot, guarded_ledger_call
from services.user_registry import UserRegistry
from utils import deal_messages
from utils.datetime_helpers import get_naive_utc_now
from utils.deal_errors import (
    AlreadyBoundError, DealError, InvalidDealInputError, InvalidTransitionError,
    LedgerUnavailableError, StoreWriteFailedError,
)
from utils.deal_locks import DealLockRegistry
from utils.deal_state_machine import (
    DealStateMachine, Transition, buyer_recipient, seller_recipient,
)
from utils.fee_calculator import FeeCalculator
from utils.helpers import (
    extract_wallet_address, generate_deal_code, normalize_deal_code,
    normalize_handle, validate_username,
)

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 5

BADGE_TIERS = [
    (50, "💎 Elite"),
    (25, "🏆 Pro Trader"),
    (10, "⭐ Proven Trader"),
    (4, "📈 Established"),
    (2, "👤 Active"),
]
NEW_BADGE = "🆕 New"


class TransitionOutcome(NamedTuple):
    """Successful operation: the deal as stored, what changed, and non-fatal warnings"""

    deal: Deal
    transition: Optional[Transition]
    warnings: Tuple[str, ...] = ()


class ReceivedReview(NamedTuple):
    deal_id: str
    rating: int
    comment: Optional[str]
    reviewer: str


class Reputation(NamedTuple):
    username: str
    completed_deals: int
    volume: Decimal
    badge: str
    reviews: List[ReceivedReview]


def badge_for(completed_deals: int) -> str:
    for threshold, badge in BADGE_TIERS:
        if completed_deals >= threshold:
            return badge
    return NEW_BADGE


class DealService:
    def __init__(
        self,
        store: DealStore,
        users: UserRegistry,
        roster: ArbiterRoster,
        audit: AuditLog,
        ledger: LedgerClient,
        dispatcher: EffectDispatcher,
        locks: DealLockRegistry = None,
        clock: Callable[[], datetime] = None,
        release_window_hours: int = None,
    ):
        self.store = store
        self.users = users
        self.roster = roster
        self.audit = audit
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.locks = locks or DealLockRegistry()
        self.clock = clock or get_naive_utc_now
        self.release_window_hours = release_window_hours or Config.RELEASE_WINDOW_HOURS

    # ------------------------------------------------------------------
    # Core path
    # ------------------------------------------------------------------

    async def _apply(
        self,
        deal_id: str,
        action: Optional[DealAction],
        actor: Optional[Actor],
        compute: Callable[[Deal, Optional[PartyRole], datetime], Optional[Transition]],
        roles: RoleSnapshot = None,
    ) -> TransitionOutcome:
        """Run one transition; ``actor`` is None for ledger-driven and scheduled changes"""
        code = normalize_deal_code(deal_id)
        if actor is not None and roles is None:
            roles = await self.roster.snapshot()

        async with self.locks.hold(code):
            deal = await self.store.get(code)
            role = authorize(actor, deal, action, roles) if actor is not None else None
            transition = compute(deal, role, self.clock())
            if transition is None:
                return TransitionOutcome(deal, None)

            changes = dict(transition.changes)
            if role == PartyRole.BUYER and deal.buyer_telegram_id is None:
                # First authenticated buyer action pins the handle to an identity
                changes["buyer_telegram_id"] = actor.telegram_id
                logger.info(f"🔗 BUYER_BOUND: {code} @{deal.buyer_username} -> {actor.telegram_id}")
            updated = await self.store.update(code, changes, deal.version)

        logger.info(
            f"🔄 DEAL_TRANSITION: {code} {transition.from_status} -> {transition.to_status} "
            f"({transition.trigger.value})"
        )
        report = await self.dispatcher.dispatch(transition.effects)
        updated = await self._record_ledger_outcomes(updated, report.ledger_outcomes)
        return TransitionOutcome(updated, transition, tuple(report.warnings))

    async def _record_ledger_outcomes(self, deal: Deal, outcomes) -> Deal:
        for outcome in outcomes:
            if outcome.call.best_effort:
                continue
            try:
                deal = await self._settle_ledger_write(
                    deal.deal_id, outcome.call.action, outcome.confirmed, outcome.tx_hash
                )
            except DealError as e:
                logger.warning(f"⚠️ LEDGER_OUTCOME_NOT_RECORDED: {deal.deal_id}: {e}")
        return deal

    async def _settle_ledger_write(self, deal_id: str, action: LedgerAction, confirmed: bool,
                                   tx_hash: Optional[str]) -> Deal:
        async with self.locks.hold(deal_id):
            deal = await self.store.get(deal_id)
            transition = DealStateMachine.ledger_write_outcome(deal, action, confirmed, tx_hash, self.clock())
            if transition is None:
                return deal
            return await self.store.update(deal.deal_id, transition.changes, deal.version)

    # ------------------------------------------------------------------
    # Creation and ledger binding
    # ------------------------------------------------------------------

    async def create_deal(self, actor: Actor, buyer_username: str, amount: Optional[Decimal],
                          description: str) -> Deal:
        buyer_handle = (buyer_username or "").strip().lstrip("@")
        if not validate_username(buyer_handle):
            raise InvalidDealInputError("Buyer must be a valid Telegram @username.")
        if amount is None or not Config.MIN_DEAL_AMOUNT <= amount <= Config.MAX_DEAL_AMOUNT:
            raise InvalidDealInputError(
                f"Amount: {Config.MIN_DEAL_AMOUNT}-{Config.MAX_DEAL_AMOUNT} {Config.CURRENCY}"
            )
        description = (description or "").strip()
        if not description:
            raise InvalidDealInputError("Add a short description of what is being sold.")

        if normalize_handle(buyer_handle) == normalize_handle(actor.username):
            raise InvalidDealInputError("Can't deal with yourself")
        buyer_user = await self.users.find_by_handle(buyer_handle)
        if buyer_user is not None and buyer_user.telegram_id == actor.telegram_id:
            raise InvalidDealInputError("Can't deal with yourself")

        seller = await self.users.get(actor.telegram_id)
        if seller is None or not seller.wallet_address:
            raise InvalidDealInputError("Register wallet first: /wallet 0xYourAddress")

        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_deal_code()
            if await self.store.find(code) is not None:
                continue
            now = self.clock()
            deal = Deal(
                deal_id=code,
                seller_telegram_id=actor.telegram_id,
                seller_username=actor.handle,
                buyer_username=buyer_handle,
                amount=FeeCalculator.quantize(amount),
                description=description,
                status=DealStatus.PENDING_DEPOSIT.value,
                version=1,
                created_at=now,
                updated_at=now,
                release_reminder_sent=False,
                ledger_action_attempts=0,
            )
            try:
                return await self.store.insert(deal)
            except StoreWriteFailedError as e:
                if e.reason != "duplicate deal code":
                    raise
        logger.error("❌ DEAL_CODE_EXHAUSTED: could not allocate a unique deal code")
        raise StoreWriteFailedError(reason="could not allocate a deal code")

    async def bind_ledger(self, actor: Actor, deal_id: str,
                          on_create: Optional[Callable[[], Awaitable[Any]]] = None) -> TransitionOutcome:
        """
        Create the on-chain escrow for a deal (buyer only, before deposit).

        If the contract already knows the deal code the binding is recorded
        without creating anything. ``on_create`` is awaited just before a new
        escrow is submitted. Ledger failures propagate and nothing is written.
        """
        roles = await self.roster.snapshot()
        deal = await self.store.get(deal_id)
        authorize(actor, deal, DealAction.BIND_LEDGER, roles)
        if deal.is_bound:
            raise AlreadyBoundError(deal.deal_id, deal.contract_deal_id)
        if deal.deal_status != DealStatus.PENDING_DEPOSIT:
            raise InvalidTransitionError("fund", deal.status, deal.deal_id)

        seller_wallet = await self.users.seller_wallet(deal)
        if not seller_wallet:
            raise InvalidDealInputError("Seller needs to register a wallet first.", deal.deal_id)
        buyer = await self.users.get(actor.telegram_id)
        if buyer is None or not buyer.wallet_address:
            raise InvalidDealInputError("Register wallet: /wallet 0xYourAddress", deal.deal_id)

        code = deal.deal_id
        snapshot = await guarded_ledger_call(self.ledger.get_status(code), "get_status", deal_id=code)
        tx_hash = None
        warnings: Tuple[str, ...] = ()
        if snapshot.exists:
            logger.info(f"⛓️ LEDGER_ALREADY_EXISTS: {code} (chain id {snapshot.chain_deal_id}), binding only")
        else:
            if on_create is not None:
                await on_create()
            result = await guarded_ledger_call(
                self.ledger.create_escrow(code, seller_wallet, buyer.wallet_address, deal.amount),
                "create_escrow",
                timeout=Config.LEDGER_TIMEOUT_SECONDS + Config.LEDGER_CONFIRM_TIMEOUT_SECONDS,
                deal_id=code,
            )
            tx_hash = result.tx_hash
            if not result.confirmed:
                warnings = (f"On-chain escrow for {code} was submitted and is awaiting confirmation.",)

        outcome = await self._apply(
            code, DealAction.BIND_LEDGER, actor,
            lambda d, role, now: DealStateMachine.bind_ledger(d, code, tx_hash, now),
            roles=roles,
        )
        return outcome._replace(warnings=outcome.warnings + warnings)

    # ------------------------------------------------------------------
    # Party actions
    # ------------------------------------------------------------------

    async def cancel(self, actor: Actor, deal_id: str) -> TransitionOutcome:
        outcome = await self._apply(
            deal_id, DealAction.CANCEL, actor,
            lambda d, role, now: DealStateMachine.cancel(d, actor, role, now),
        )
        if outcome.transition.from_status == DealStatus.FUNDED.value:
            # No ledger refund is issued; locked funds need an operator on the contract
            logger.warning(
                f"⚠️ DEAL_CANCELLED_WHILE_FUNDED: {outcome.deal.deal_id} by {actor.handle}, "
                f"contract deal {outcome.deal.contract_deal_id} still holds funds"
            )
        return outcome

    async def release(self, actor: Actor, deal_id: str, override: bool = False) -> TransitionOutcome:
        roles = await self.roster.snapshot()
        deal = await self.store.get(deal_id)
        authorize(actor, deal, DealAction.RELEASE, roles)

        ledger_completed = False
        if deal.is_bound and deal.deal_status in (DealStatus.FUNDED, DealStatus.DISPUTED):
            try:
                snapshot = await guarded_ledger_call(
                    self.ledger.get_status(deal.contract_deal_id), "get_status", deal_id=deal.deal_id
                )
                ledger_completed = snapshot.exists and snapshot.status == LedgerStatus.COMPLETED
            except LedgerUnavailableError:
                logger.warning(f"⚠️ RELEASE_LEDGER_READ_FAILED: {deal.deal_id}, requesting release anyway")

        return await self._apply(
            deal_id, DealAction.RELEASE, actor,
            lambda d, role, now: DealStateMachine.release(
                d, actor, now, override=override, ledger_completed=ledger_completed
            ),
            roles=roles,
        )

    async def open_dispute(self, actor: Actor, deal_id: str, reason: Optional[str]) -> TransitionOutcome:
        return await self._apply(
            deal_id, DealAction.DISPUTE, actor,
            lambda d, role, now: DealStateMachine.open_dispute(d, actor, role, reason, now),
        )

    async def cancel_dispute(self, actor: Actor, deal_id: str) -> TransitionOutcome:
        outcome = await self._apply(
            deal_id, DealAction.CANCEL_DISPUTE, actor,
            lambda d, role, now: DealStateMachine.cancel_dispute(d, actor, role, now),
        )
        if not is_disputant(actor, outcome.deal):
            await self.audit.record(AdminActionType.CANCEL_DISPUTE, actor, outcome.deal.deal_id,
                                    details="Dispute cancelled by arbiter")
        return outcome

    async def submit_review(self, actor: Actor, deal_id: str, rating: int,
                            comment: Optional[str] = None) -> TransitionOutcome:
        return await self._apply(
            deal_id, DealAction.REVIEW, actor,
            lambda d, role, now: DealStateMachine.submit_review(d, role, rating, comment, now),
        )

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    async def submit_evidence(self, actor: Actor, deal_id: str, content: Optional[str],
                              file_id: Optional[str] = None, file_type: Optional[str] = None) -> Evidence:
        roles = await self.roster.snapshot()
        deal = await self.store.get(deal_id)
        role = authorize(actor, deal, DealAction.SUBMIT_EVIDENCE, roles)
        if deal.deal_status != DealStatus.DISPUTED:
            raise InvalidTransitionError(
                "submit evidence", deal.status, deal.deal_id,
                user_message=f"Deal not disputed. Status: {deal.status}",
            )
        content = (content or "").strip()
        if not content and not file_id:
            raise InvalidDealInputError(f"Usage: /evidence {deal.deal_id} your message", deal.deal_id)

        evidence = Evidence(
            deal_id=deal.deal_id,
            submitted_by=actor.handle,
            submitter_telegram_id=actor.telegram_id,
            role=role.value,
            content=content or "Photo",
            file_id=file_id,
            file_type=file_type,
            created_at=self.clock(),
        )
        return await self.store.add_evidence(evidence)

    async def view_evidence(self, actor: Actor, deal_id: str) -> Tuple[Deal, List[Evidence]]:
        roles = await self.roster.snapshot()
        deal = await self.store.get(deal_id)
        authorize(actor, deal, DealAction.VIEW_EVIDENCE, roles)
        return deal, await self.store.list_evidence(deal.deal_id)

    # ------------------------------------------------------------------
    # Arbitration
    # ------------------------------------------------------------------

    async def resolve(self, actor: Actor, deal_id: str, resolution: DisputeResolution) -> TransitionOutcome:
        outcome = await self._apply(
            deal_id, DealAction.RESOLVE, actor,
            lambda d, role, now: DealStateMachine.resolve(d, actor, resolution, now),
        )
        await self.audit.record(AdminActionType.RESOLVE, actor, outcome.deal.deal_id, details=resolution.value)
        return outcome

    async def _find_arbiter(self, username: str) -> Actor:
        handle = normalize_handle(username)
        for member in await self.roster.list_active():
            if normalize_handle(member.username) == handle:
                return Actor(member.telegram_id, member.username)
        user = await self.users.find_by_handle(handle)
        if user is not None and self.roster.is_superuser(user.telegram_id):
            return Actor(user.telegram_id, user.username)
        raise InvalidDealInputError(f"@{handle} is not an active arbiter. Use /addmod @{handle} first.")

    async def assign_arbiter(self, actor: Actor, deal_id: str, arbiter_username: str) -> TransitionOutcome:
        roles = await self.roster.snapshot()
        authorize(actor, None, DealAction.ASSIGN, roles)
        arbiter = await self._find_arbiter(arbiter_username)
        outcome = await self._apply(
            deal_id, DealAction.ASSIGN, actor,
            lambda d, role, now: DealStateMachine.assign_arbiter(d, arbiter, actor, now),
            roles=roles,
        )
        await self.audit.record(AdminActionType.ASSIGN, actor, outcome.deal.deal_id,
                                target_user=arbiter.username, details="Assigned")
        return outcome

    async def unassign_arbiter(self, actor: Actor, deal_id: str) -> TransitionOutcome:
        roles = await self.roster.snapshot()
        deal = await self.store.get(deal_id)
        previous = deal.assigned_to_username
        outcome = await self._apply(
            deal_id, DealAction.ASSIGN, actor,
            lambda d, role, now: DealStateMachine.unassign_arbiter(d, now),
            roles=roles,
        )
        await self.audit.record(AdminActionType.UNASSIGN, actor, outcome.deal.deal_id,
                                target_user=previous, details="Unassigned")
        return outcome

    async def message_party(self, actor: Actor, deal_id: str, target: str, text: str) -> bool:
        roles = await self.roster.snapshot()
        deal = await self.store.get(deal_id)
        authorize(actor, deal, DealAction.MESSAGE_PARTY, roles)
        target = (target or "").lower()
        if target not in (PartyRole.SELLER.value, PartyRole.BUYER.value):
            raise InvalidDealInputError(f"Usage: /msg {deal.deal_id} seller|buyer message", deal.deal_id)
        if not (text or "").strip():
            raise InvalidDealInputError(f"Usage: /msg {deal.deal_id} {target} message", deal.deal_id)

        recipient = seller_recipient(deal) if target == PartyRole.SELLER.value else buyer_recipient(deal)
        sent = await self.dispatcher.notify(recipient, deal_messages.admin_message(deal, text.strip()))
        if sent:
            await self.audit.record(AdminActionType.MESSAGE, actor, deal.deal_id, target_user=target, details=text)
        return sent

    async def broadcast(self, actor: Actor, deal_id: str, text: str) -> int:
        """Message both parties of a deal; returns how many deliveries succeeded"""
        roles = await self.roster.snapshot()
        deal = await self.store.get(deal_id)
        authorize(actor, deal, DealAction.BROADCAST, roles)
        if not (text or "").strip():
            raise InvalidDealInputError(f"Usage: /broadcast {deal.deal_id} message", deal.deal_id)

        message = deal_messages.admin_broadcast(deal, text.strip())
        sent = 0
        for recipient in (seller_recipient(deal), buyer_recipient(deal)):
            if await self.dispatcher.notify(recipient, message):
                sent += 1
        await self.audit.record(AdminActionType.BROADCAST, actor, deal.deal_id, target_user="both", details=text)
        return sent

    # ------------------------------------------------------------------
    # Roster and audit (superuser)
    # ------------------------------------------------------------------

    async def add_arbiter(self, actor: Actor, username: str) -> Arbiter:
        roles = await self.roster.snapshot()
        authorize(actor, None, DealAction.MANAGE_ROSTER, roles)
        handle = (username or "").strip().lstrip("@")
        user = await self.users.find_by_handle(handle)
        if user is None:
            raise InvalidDealInputError(f"@{handle} not found. They need to /wallet first.")
        arbiter = await self.roster.add(user.telegram_id, user.username or handle, actor.handle)
        await self.audit.record(AdminActionType.ADD_ARBITER, actor, target_user=handle, details="Added moderator")
        await self.dispatcher.notifier.send(
            user.telegram_id, f"🛡️ You are now a {Config.PLATFORM_NAME} Moderator!\n\n/modhelp for commands."
        )
        return arbiter

    async def remove_arbiter(self, actor: Actor, username: str) -> Arbiter:
        roles = await self.roster.snapshot()
        authorize(actor, None, DealAction.MANAGE_ROSTER, roles)
        handle = (username or "").strip().lstrip("@")
        arbiter = await self.roster.remove(handle)
        if arbiter is None:
            raise InvalidDealInputError(f"@{handle} is not an active moderator.")
        await self.audit.record(AdminActionType.REMOVE_ARBITER, actor, target_user=handle, details="Removed moderator")
        return arbiter

    async def list_arbiters(self, actor: Actor) -> List[Arbiter]:
        roles = await self.roster.snapshot()
        authorize(actor, None, DealAction.MANAGE_ROSTER, roles)
        return await self.roster.list_active()

    async def list_disputes(self, actor: Actor, mine_only: bool = False) -> List[Deal]:
        """Superusers see every open dispute; roster arbiters only their assigned ones"""
        roles = await self.roster.snapshot()
        authorize(actor, None, DealAction.LIST_DISPUTES, roles)
        if mine_only or not roles.is_superuser(actor.telegram_id):
            return await self.store.list_disputes(assigned_to=actor.telegram_id)
        return await self.store.list_disputes()

    async def query_audit(self, actor: Actor, deal_id: Optional[str] = None, limit: int = 15) -> List[AdminLog]:
        roles = await self.roster.snapshot()
        authorize(actor, None, DealAction.QUERY_AUDIT, roles)
        return await self.audit.query(deal_id, limit)

    # ------------------------------------------------------------------
    # Reads and identity
    # ------------------------------------------------------------------

    async def get_deal(self, deal_id: str) -> Deal:
        return await self.store.get(deal_id)

    async def list_deals(self, actor: Actor, limit: int = 15) -> List[Deal]:
        return await self.store.list_for_party(actor.telegram_id, actor.username, limit)

    async def register_wallet(self, actor: Actor, text: str) -> User:
        address = extract_wallet_address(text)
        if address is None:
            raise InvalidDealInputError("Usage: /wallet 0xYourAddress")
        return await self.users.upsert_wallet(actor.telegram_id, actor.username, address)

    async def reputation(self, username: str) -> Reputation:
        handle = (username or "").strip().lstrip("@")
        deals = await self.store.list_completed_for_handle(handle)
        volume = sum((Decimal(str(d.amount)) for d in deals), Decimal("0"))
        reviews = []
        for deal in deals:
            as_seller = normalize_handle(deal.seller_username) == normalize_handle(handle)
            rating = deal.buyer_rating if as_seller else deal.seller_rating
            if not rating:
                continue
            reviews.append(ReceivedReview(
                deal_id=deal.deal_id,
                rating=rating,
                comment=deal.buyer_review if as_seller else deal.seller_review,
                reviewer=deal.buyer_username if as_seller else deal.seller_username,
            ))
        return Reputation(handle, len(deals), volume, badge_for(len(deals)), reviews)

    # ------------------------------------------------------------------
    # Ledger-driven and scheduled operations (no actor)
    # ------------------------------------------------------------------

    async def observe_ledger(self, deal_id: str, snapshot: LedgerSnapshot) -> TransitionOutcome:
        """Feed one ledger read through the lifecycle engine; replays are no-ops"""
        if not snapshot.exists or snapshot.status is None:
            return TransitionOutcome(await self.store.get(deal_id), None)
        return await self._apply(
            deal_id, None, None,
            lambda d, role, now: DealStateMachine.on_ledger_status(
                d, snapshot.status, now, snapshot.completed_at, self.release_window_hours
            ),
        )

    async def send_release_reminder(self, deal_id: str) -> TransitionOutcome:
        """Commit the reminder flag, then notify; a no-op once the flag is set"""
        return await self._apply(
            deal_id, None, None,
            lambda d, role, now: DealStateMachine.mark_release_reminder(d, now, self.release_window_hours),
        )

    async def retry_ledger_action(self, deal_id: str, snapshot: LedgerSnapshot) -> str:
        """
        Settle a pending ledger write against a fresh ledger read.

        Returns 'cleared' when the ledger already reflects the write, 'confirmed'
        or 'retried' after one resubmission, 'stuck' once the retry budget is spent.
        """
        deal = await self.store.get(deal_id)
        if not deal.ledger_action_pending:
            return "cleared"
        action = LedgerAction(deal.ledger_action_pending)

        if snapshot.exists and snapshot.status is not None and DealStateMachine.ledger_action_satisfied(action, snapshot.status):
            await self._settle_ledger_write(deal.deal_id, action, True, None)
            logger.info(f"✅ LEDGER_ACTION_SETTLED: {deal.deal_id} {action.value} already on-chain")
            return "cleared"

        if (deal.ledger_action_attempts or 0) >= Config.LEDGER_MAX_RETRY_ATTEMPTS:
            logger.error(
                f"🚨 LEDGER_ACTION_STUCK: {deal.deal_id} {action.value} after {deal.ledger_action_attempts} attempts "
                f"(ledger status {snapshot.status}) - needs manual review"
            )
            return "stuck"

        outcome = await self.dispatcher.run_ledger_call(LedgerCall(action, deal.deal_id, deal.contract_deal_id))
        await self._settle_ledger_write(deal.deal_id, action, outcome.confirmed, outcome.tx_hash)
        return "confirmed" if outcome.confirmed else "retried"
