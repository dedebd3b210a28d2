"""
Deal Lifecycle State Machine
============================

Validates deal status transitions and computes what a transition changes and which
side effects it requests. Every status change, whether requested by an actor or
observed on the ledger, goes through this module.

The functions here are pure: they read a ``Deal`` but never mutate it, never touch
the database, the chain or Telegram. Each returns a ``Transition`` carrying the
column ``changes`` to write and the ``effects`` to dispatch after the write commits.

    pending_deposit --ledger Funded--> funded
    pending_deposit --cancel---------> cancelled
    funded ---------release----------> completed
    funded ---------dispute----------> disputed
    funded ---------cancel-----------> cancelled
    funded ---------ledger Completed-> completed
    disputed -------release+override-> completed
    disputed -------cancel dispute---> funded
    disputed -------resolve release--> completed
    disputed -------resolve refund---> refunded
"""

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from config import Config
from models import (
    CompletionSource, Deal, DealStatus, DisputeResolution, LedgerAction,
    LedgerStatus, PartyRole,
)
from services.authorization import Actor
from services.effects import Effect, LedgerCall, Notify, NotifyArbiters, Recipient
from utils import deal_messages
from utils.datetime_helpers import release_window_elapsed
from utils.deal_errors import (
    AlreadyBoundError, AlreadyReviewedError, InvalidDealInputError,
    InvalidTransitionError, OverrideRequiredError,
)
from utils.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)


class Trigger(Enum):
    LEDGER_FUNDED = "ledger_funded"
    LEDGER_COMPLETED = "ledger_completed"
    CANCEL = "cancel"
    RELEASE = "release"
    RELEASE_OVERRIDE = "release_override"
    DISPUTE = "dispute"
    CANCEL_DISPUTE = "cancel_dispute"
    RESOLVE_RELEASE = "resolve_release"
    RESOLVE_REFUND = "resolve_refund"
    # Not status transitions; they write fields on a deal in a fixed status
    REVIEW = "review"
    BIND_LEDGER = "bind_ledger"
    RELEASE_REMINDER = "release_reminder"
    ASSIGN = "assign"
    UNASSIGN = "unassign"
    LEDGER_WRITE = "ledger_write"


class Transition(NamedTuple):
    """Result of a validated transition - nothing is applied yet"""

    deal_id: str
    trigger: Trigger
    from_status: str
    to_status: str
    changes: Dict[str, Any]
    effects: List[Effect]

    @property
    def status_changed(self) -> bool:
        return self.from_status != self.to_status


def seller_recipient(deal: Deal) -> Recipient:
    return Recipient(telegram_id=deal.seller_telegram_id, username=deal.seller_username)


def buyer_recipient(deal: Deal) -> Recipient:
    return Recipient(telegram_id=deal.buyer_telegram_id, username=deal.buyer_username)


def counterparty_recipient(deal: Deal, role: PartyRole) -> Recipient:
    return buyer_recipient(deal) if role == PartyRole.SELLER else seller_recipient(deal)


class DealStateMachine:
    """
    Lifecycle engine for deals.

    VALID_TRANSITIONS is the complete table of status changes. Anything an actor
    requests outside it raises InvalidTransitionError; ledger observations outside
    it are ignored (they are replays or belong to a state we already left).
    """

    VALID_TRANSITIONS: Dict[Tuple[DealStatus, Trigger], DealStatus] = {
        (DealStatus.PENDING_DEPOSIT, Trigger.LEDGER_FUNDED): DealStatus.FUNDED,
        (DealStatus.PENDING_DEPOSIT, Trigger.CANCEL): DealStatus.CANCELLED,
        (DealStatus.FUNDED, Trigger.RELEASE): DealStatus.COMPLETED,
        (DealStatus.FUNDED, Trigger.DISPUTE): DealStatus.DISPUTED,
        (DealStatus.FUNDED, Trigger.CANCEL): DealStatus.CANCELLED,
        (DealStatus.FUNDED, Trigger.LEDGER_COMPLETED): DealStatus.COMPLETED,
        (DealStatus.DISPUTED, Trigger.RELEASE_OVERRIDE): DealStatus.COMPLETED,
        (DealStatus.DISPUTED, Trigger.CANCEL_DISPUTE): DealStatus.FUNDED,
        (DealStatus.DISPUTED, Trigger.RESOLVE_RELEASE): DealStatus.COMPLETED,
        (DealStatus.DISPUTED, Trigger.RESOLVE_REFUND): DealStatus.REFUNDED,
    }

    TERMINAL_STATES = {DealStatus.COMPLETED, DealStatus.REFUNDED, DealStatus.CANCELLED}

    REVIEWABLE_STATES = {DealStatus.COMPLETED, DealStatus.REFUNDED}

    # States the reconciler reads ledger status for
    AWAITING_LEDGER_STATES = {DealStatus.PENDING_DEPOSIT, DealStatus.FUNDED}

    @classmethod
    def next_status(cls, from_status: DealStatus, trigger: Trigger) -> Optional[DealStatus]:
        return cls.VALID_TRANSITIONS.get((from_status, trigger))

    @classmethod
    def validate_transition(cls, deal: Deal, trigger: Trigger, action: Optional[str] = None) -> DealStatus:
        """Return the target status or raise InvalidTransitionError carrying the current one"""
        target = cls.next_status(deal.deal_status, trigger)
        if target is None:
            logger.warning(
                f"❌ INVALID_TRANSITION: {deal.deal_id} {deal.status} --{trigger.value}--> rejected"
            )
            raise InvalidTransitionError(action or trigger.value, deal.status, deal.deal_id)
        logger.debug(f"✅ VALID_TRANSITION: {deal.deal_id} {deal.status} --{trigger.value}--> {target.value}")
        return target

    @classmethod
    def _transition(cls, deal: Deal, trigger: Trigger, target: DealStatus,
                    changes: Dict[str, Any], effects: List[Effect], now: datetime) -> Transition:
        changes = dict(changes)
        if target.value != deal.status:
            changes["status"] = target.value
        changes["updated_at"] = now
        return Transition(deal.deal_id, trigger, deal.status, target.value, changes, effects)

    @classmethod
    def _completion_changes(cls, deal: Deal, source: CompletionSource, now: datetime,
                            completed_at: Optional[datetime] = None) -> Dict[str, Any]:
        fee, seller_payout = FeeCalculator.calculate_release_split(Decimal(str(deal.amount)))
        return {
            "completed_at": completed_at or now,
            "completion_source": source.value,
            "fee_amount": fee,
            "seller_payout": seller_payout,
        }

    @classmethod
    def _ledger_write(cls, deal: Deal, action: LedgerAction, changes: Dict[str, Any],
                      effects: List[Effect]) -> None:
        """Request a ledger write and mark it pending until confirmed"""
        if not deal.contract_deal_id:
            logger.warning(f"⚠️ LEDGER_UNBOUND: {deal.deal_id} has no on-chain escrow, skipping {action.value}")
            return
        effects.append(LedgerCall(action, deal.deal_id, deal.contract_deal_id))
        changes["ledger_action_pending"] = action.value
        changes["ledger_action_attempts"] = 0

    # ------------------------------------------------------------------
    # Ledger observations
    # ------------------------------------------------------------------

    @classmethod
    def on_ledger_status(cls, deal: Deal, ledger_status: LedgerStatus, now: datetime,
                         ledger_completed_at: Optional[datetime] = None,
                         release_window_hours: int = None) -> Optional[Transition]:
        """
        Feed a ledger observation through the table.

        Returns None when the observation maps to no row from the current status,
        e.g. Funded seen again on a funded deal. Replays are never errors.
        """
        if ledger_status == LedgerStatus.FUNDED:
            trigger = Trigger.LEDGER_FUNDED
        elif ledger_status == LedgerStatus.COMPLETED:
            trigger = Trigger.LEDGER_COMPLETED
        else:
            return None

        target = cls.next_status(deal.deal_status, trigger)
        if target is None:
            logger.debug(f"🔁 LEDGER_REPLAY_IGNORED: {deal.deal_id} is {deal.status}, ledger says {ledger_status.name}")
            return None

        window = release_window_hours or Config.RELEASE_WINDOW_HOURS
        if trigger == Trigger.LEDGER_FUNDED:
            changes = {"funded_at": now, "release_reminder_sent": False}
            effects = [
                Notify(seller_recipient(deal), deal_messages.funded_seller(deal)),
                Notify(buyer_recipient(deal), deal_messages.funded_buyer(deal, window)),
            ]
        else:
            changes = cls._completion_changes(deal, CompletionSource.LEDGER, now, ledger_completed_at)
            # A buyer release already requested the same write; the ledger now agrees
            changes["ledger_action_pending"] = None
            effects = [
                Notify(seller_recipient(deal), deal_messages.ledger_completed_seller(deal)),
                Notify(buyer_recipient(deal), deal_messages.ledger_completed_buyer(deal)),
            ]
        logger.info(f"⛓️ LEDGER_OBSERVED: {deal.deal_id} {deal.status} -> {target.value}")
        return cls._transition(deal, trigger, target, changes, effects, now)

    # ------------------------------------------------------------------
    # Actor requests
    # ------------------------------------------------------------------

    @classmethod
    def cancel(cls, deal: Deal, actor: Actor, role: PartyRole, now: datetime) -> Transition:
        target = cls.validate_transition(deal, Trigger.CANCEL, "cancel")
        changes = {"cancelled_at": now, "cancelled_by": actor.handle}
        effects = [Notify(counterparty_recipient(deal, role), deal_messages.cancelled(deal, actor.handle))]
        return cls._transition(deal, Trigger.CANCEL, target, changes, effects, now)

    @classmethod
    def release(cls, deal: Deal, actor: Actor, now: datetime, override: bool = False,
                ledger_completed: bool = False) -> Transition:
        """
        Buyer release. A disputed deal needs the explicit override.

        ``ledger_completed`` is set when a ledger read already shows the release,
        in which case no ledger write is requested.
        """
        if deal.deal_status == DealStatus.DISPUTED:
            if not override:
                raise OverrideRequiredError(deal.deal_id)
            trigger, source = Trigger.RELEASE_OVERRIDE, CompletionSource.BUYER_OVERRIDE
        else:
            trigger, source = Trigger.RELEASE, CompletionSource.BUYER_RELEASE

        target = cls.validate_transition(deal, trigger, "release")
        changes = cls._completion_changes(deal, source, now)
        effects: List[Effect] = []
        if not ledger_completed:
            cls._ledger_write(deal, LedgerAction.RELEASE, changes, effects)
        effects.extend([
            Notify(seller_recipient(deal), deal_messages.released_seller(
                deal, changes["seller_payout"], overridden=trigger == Trigger.RELEASE_OVERRIDE)),
            Notify(buyer_recipient(deal), deal_messages.released_buyer(deal)),
        ])
        return cls._transition(deal, trigger, target, changes, effects, now)

    @classmethod
    def open_dispute(cls, deal: Deal, actor: Actor, role: PartyRole, reason: Optional[str],
                     now: datetime) -> Transition:
        target = cls.validate_transition(deal, Trigger.DISPUTE, "dispute")
        reason = (reason or "").strip() or "No reason provided"
        changes = {
            "disputed_by": actor.handle,
            "disputed_by_telegram_id": actor.telegram_id,
            "dispute_reason": reason,
            "disputed_at": now,
            # A new dispute needs its own assignment
            "assigned_to_telegram_id": None,
            "assigned_to_username": None,
        }
        effects: List[Effect] = []
        if deal.contract_deal_id:
            effects.append(LedgerCall(LedgerAction.MARK_DISPUTED, deal.deal_id, deal.contract_deal_id, best_effort=True))
        effects.append(Notify(counterparty_recipient(deal, role), deal_messages.dispute_opened_counterparty(deal, reason)))
        effects.append(NotifyArbiters(
            deal_messages.dispute_opened_arbiters(deal, actor.handle, reason),
            exclude_ids=(actor.telegram_id,),
        ))
        return cls._transition(deal, Trigger.DISPUTE, target, changes, effects, now)

    @classmethod
    def cancel_dispute(cls, deal: Deal, actor: Actor, role: PartyRole, now: datetime) -> Transition:
        target = cls.validate_transition(deal, Trigger.CANCEL_DISPUTE, "cancel dispute")
        changes = {"dispute_cancelled_at": now, "dispute_cancelled_by": actor.handle}
        text = deal_messages.dispute_cancelled(deal)
        if role == PartyRole.ARBITER:
            effects = [Notify(seller_recipient(deal), text), Notify(buyer_recipient(deal), text)]
        else:
            effects = [Notify(counterparty_recipient(deal, role), text)]
        return cls._transition(deal, Trigger.CANCEL_DISPUTE, target, changes, effects, now)

    @classmethod
    def resolve(cls, deal: Deal, actor: Actor, resolution: DisputeResolution, now: datetime) -> Transition:
        released = resolution == DisputeResolution.RELEASE
        trigger = Trigger.RESOLVE_RELEASE if released else Trigger.RESOLVE_REFUND
        target = cls.validate_transition(deal, trigger, f"resolve ({resolution.value})")
        changes: Dict[str, Any] = {
            "resolved_by": actor.handle,
            "resolved_by_telegram_id": actor.telegram_id,
            "resolved_at": now,
            "resolution": resolution.value,
        }
        effects: List[Effect] = []
        if released:
            changes.update(cls._completion_changes(deal, CompletionSource.ARBITER_RELEASE, now))
            cls._ledger_write(deal, LedgerAction.RELEASE, changes, effects)
        else:
            changes["completed_at"] = now
            cls._ledger_write(deal, LedgerAction.REFUND, changes, effects)
        effects.extend([
            Notify(seller_recipient(deal), deal_messages.resolved_seller(deal, released)),
            Notify(buyer_recipient(deal), deal_messages.resolved_buyer(deal, released)),
        ])
        return cls._transition(deal, trigger, target, changes, effects, now)

    # ------------------------------------------------------------------
    # Field writes on a fixed status
    # ------------------------------------------------------------------

    @classmethod
    def submit_review(cls, deal: Deal, role: PartyRole, rating: int, comment: Optional[str],
                      now: datetime) -> Transition:
        if deal.deal_status not in cls.REVIEWABLE_STATES:
            raise InvalidTransitionError(
                "review", deal.status, deal.deal_id,
                user_message=f"Can only review finished deals. Current status: {deal.status}",
            )
        if role not in (PartyRole.SELLER, PartyRole.BUYER):
            raise InvalidDealInputError("Only the seller or buyer can review a deal.", deal.deal_id)
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidDealInputError("Rating must be a whole number from 1 to 5.", deal.deal_id)

        prefix = role.value
        if getattr(deal, f"{prefix}_rating") is not None or getattr(deal, f"{prefix}_review") is not None:
            raise AlreadyReviewedError(deal.deal_id, prefix)

        changes = {
            f"{prefix}_rating": rating,
            f"{prefix}_review": (comment or "").strip() or "No comment",
            f"{prefix}_reviewed_at": now,
        }
        return cls._transition(deal, Trigger.REVIEW, deal.deal_status, changes, [], now)

    @classmethod
    def bind_ledger(cls, deal: Deal, ledger_ref: str, tx_hash: Optional[str], now: datetime) -> Transition:
        if deal.contract_deal_id:
            raise AlreadyBoundError(deal.deal_id, deal.contract_deal_id)
        if deal.deal_status != DealStatus.PENDING_DEPOSIT:
            raise InvalidTransitionError("fund", deal.status, deal.deal_id)
        changes = {"contract_deal_id": ledger_ref}
        if tx_hash:
            changes["tx_hash"] = tx_hash
        return cls._transition(deal, Trigger.BIND_LEDGER, deal.deal_status, changes, [], now)

    @classmethod
    def release_reminder_due(cls, deal: Deal, now: datetime, release_window_hours: int = None) -> bool:
        window = release_window_hours or Config.RELEASE_WINDOW_HOURS
        return (
            deal.deal_status == DealStatus.FUNDED
            and not deal.release_reminder_sent
            and release_window_elapsed(deal.funded_at, window, now)
        )

    @classmethod
    def mark_release_reminder(cls, deal: Deal, now: datetime,
                              release_window_hours: int = None) -> Optional[Transition]:
        """Set the reminder flag and request the one-time reminder; None if not due"""
        window = release_window_hours or Config.RELEASE_WINDOW_HOURS
        if not cls.release_reminder_due(deal, now, window):
            return None
        effects = [
            Notify(buyer_recipient(deal), deal_messages.release_reminder_buyer(deal, window)),
            Notify(seller_recipient(deal), deal_messages.release_reminder_seller(deal, window)),
        ]
        return cls._transition(deal, Trigger.RELEASE_REMINDER, deal.deal_status,
                               {"release_reminder_sent": True}, effects, now)

    @classmethod
    def assign_arbiter(cls, deal: Deal, arbiter: Actor, assigned_by: Actor, now: datetime) -> Transition:
        if deal.deal_status != DealStatus.DISPUTED:
            raise InvalidTransitionError("assign", deal.status, deal.deal_id,
                                         user_message=f"Not disputed. Status: {deal.status}")
        changes = {
            "assigned_to_telegram_id": arbiter.telegram_id,
            "assigned_to_username": arbiter.username,
            "assigned_at": now,
            "assigned_by": assigned_by.handle,
        }
        under_review = deal_messages.under_review(deal)
        effects = [
            Notify(Recipient(arbiter.telegram_id, arbiter.username), deal_messages.assigned_arbiter(deal)),
            Notify(seller_recipient(deal), under_review),
            Notify(buyer_recipient(deal), under_review),
        ]
        return cls._transition(deal, Trigger.ASSIGN, deal.deal_status, changes, effects, now)

    @classmethod
    def unassign_arbiter(cls, deal: Deal, now: datetime) -> Transition:
        """Only an open dispute can lose its arbiter; after resolution the assignment is history"""
        if deal.deal_status != DealStatus.DISPUTED:
            raise InvalidTransitionError("unassign", deal.status, deal.deal_id,
                                         user_message=f"Not disputed. Status: {deal.status}")
        if deal.assigned_to_telegram_id is None:
            raise InvalidDealInputError(f"No arbiter is assigned to {deal.deal_id}.", deal.deal_id)
        changes = {"assigned_to_telegram_id": None, "assigned_to_username": None}
        return cls._transition(deal, Trigger.UNASSIGN, deal.deal_status, changes, [], now)

    @classmethod
    def ledger_write_outcome(cls, deal: Deal, action: LedgerAction, confirmed: bool,
                             tx_hash: Optional[str], now: datetime) -> Optional[Transition]:
        """
        Record the result of a ledger write requested by an earlier transition.

        Confirmed writes clear the pending marker; anything else bumps the attempt
        counter so the reconciler retries. Returns None when the marker no longer
        refers to this action (e.g. the ledger completion was already observed).
        """
        if deal.ledger_action_pending != action.value:
            return None
        if confirmed:
            changes: Dict[str, Any] = {"ledger_action_pending": None}
            if tx_hash and action in (LedgerAction.RELEASE, LedgerAction.REFUND):
                changes["release_tx_hash"] = tx_hash
        else:
            changes = {"ledger_action_attempts": (deal.ledger_action_attempts or 0) + 1}
        return cls._transition(deal, Trigger.LEDGER_WRITE, deal.deal_status, changes, [], now)

    @classmethod
    def ledger_action_satisfied(cls, action: LedgerAction, ledger_status: LedgerStatus) -> bool:
        """Does the ledger already reflect the requested write?"""
        if action == LedgerAction.RELEASE:
            return ledger_status == LedgerStatus.COMPLETED
        if action == LedgerAction.REFUND:
            return ledger_status == LedgerStatus.REFUNDED
        return ledger_status in (LedgerStatus.DISPUTED, LedgerStatus.COMPLETED, LedgerStatus.REFUNDED)
