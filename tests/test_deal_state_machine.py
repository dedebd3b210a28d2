"""
Deal lifecycle engine tests - pure, no database
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from models import (
    CompletionSource, Deal, DealStatus, DisputeResolution, LedgerAction,
    LedgerStatus, PartyRole,
)
from services.effects import LedgerCall, Notify, NotifyArbiters
from utils.deal_errors import (
    AlreadyBoundError, AlreadyReviewedError, InvalidDealInputError,
    InvalidTransitionError, OverrideRequiredError,
)
from utils.deal_state_machine import DealStateMachine, Trigger

from tests.deal_test_foundation import ARBITER, BUYER, NOW, SELLER, SELLER_ID, SUPERUSER


def make(status: DealStatus, bound: bool = True, **fields) -> Deal:
    values = dict(
        deal_id="DP-AB12",
        seller_telegram_id=SELLER_ID,
        seller_username=SELLER.username,
        buyer_username=BUYER.username,
        buyer_telegram_id=None,
        amount=Decimal("50"),
        description="Vintage camera",
        status=status.value,
        version=1,
        contract_deal_id="DP-AB12" if bound else None,
        release_reminder_sent=False,
        ledger_action_attempts=0,
    )
    values.update(fields)
    return Deal(**values)


def ledger_calls(transition):
    return [e for e in transition.effects if isinstance(e, LedgerCall)]


def notified(transition):
    return [e.recipient for e in transition.effects if isinstance(e, Notify)]


class TestTransitionTable:

    @pytest.mark.parametrize("status,trigger,expected", [
        (DealStatus.PENDING_DEPOSIT, Trigger.LEDGER_FUNDED, DealStatus.FUNDED),
        (DealStatus.PENDING_DEPOSIT, Trigger.CANCEL, DealStatus.CANCELLED),
        (DealStatus.FUNDED, Trigger.RELEASE, DealStatus.COMPLETED),
        (DealStatus.FUNDED, Trigger.DISPUTE, DealStatus.DISPUTED),
        (DealStatus.FUNDED, Trigger.CANCEL, DealStatus.CANCELLED),
        (DealStatus.FUNDED, Trigger.LEDGER_COMPLETED, DealStatus.COMPLETED),
        (DealStatus.DISPUTED, Trigger.RELEASE_OVERRIDE, DealStatus.COMPLETED),
        (DealStatus.DISPUTED, Trigger.CANCEL_DISPUTE, DealStatus.FUNDED),
        (DealStatus.DISPUTED, Trigger.RESOLVE_RELEASE, DealStatus.COMPLETED),
        (DealStatus.DISPUTED, Trigger.RESOLVE_REFUND, DealStatus.REFUNDED),
    ])
    def test_valid_rows(self, status, trigger, expected):
        assert DealStateMachine.next_status(status, trigger) == expected

    def test_terminal_states_have_no_exits(self):
        for (status, _), _target in DealStateMachine.VALID_TRANSITIONS.items():
            assert status not in DealStateMachine.TERMINAL_STATES

    @pytest.mark.parametrize("status", [DealStatus.COMPLETED, DealStatus.REFUNDED, DealStatus.CANCELLED])
    def test_cancel_from_terminal_reports_current_status(self, status):
        with pytest.raises(InvalidTransitionError) as exc:
            DealStateMachine.cancel(make(status), SELLER, PartyRole.SELLER, NOW)
        assert exc.value.current_status == status.value
        assert status.value in exc.value.user_message

    def test_dispute_requires_funded(self):
        with pytest.raises(InvalidTransitionError):
            DealStateMachine.open_dispute(make(DealStatus.PENDING_DEPOSIT), BUYER, PartyRole.BUYER, "late", NOW)

    def test_cancel_dispute_requires_disputed(self):
        with pytest.raises(InvalidTransitionError):
            DealStateMachine.cancel_dispute(make(DealStatus.FUNDED), SELLER, PartyRole.SELLER, NOW)


class TestLedgerObservations:

    def test_funded_observation_advances_and_notifies_both(self):
        deal = make(DealStatus.PENDING_DEPOSIT)
        transition = DealStateMachine.on_ledger_status(deal, LedgerStatus.FUNDED, NOW)

        assert transition.to_status == DealStatus.FUNDED.value
        assert transition.changes["status"] == DealStatus.FUNDED.value
        assert transition.changes["funded_at"] == NOW
        assert transition.changes["release_reminder_sent"] is False
        recipients = notified(transition)
        assert {r.telegram_id for r in recipients} == {SELLER_ID, None}
        assert {r.username for r in recipients} == {SELLER.username, BUYER.username}

    def test_funded_replay_is_a_no_op(self):
        assert DealStateMachine.on_ledger_status(make(DealStatus.FUNDED), LedgerStatus.FUNDED, NOW) is None

    def test_unmapped_ledger_status_is_ignored(self):
        assert DealStateMachine.on_ledger_status(make(DealStatus.FUNDED), LedgerStatus.DISPUTED, NOW) is None
        assert DealStateMachine.on_ledger_status(make(DealStatus.PENDING_DEPOSIT), LedgerStatus.PENDING, NOW) is None

    def test_completed_before_funded_observation_is_ignored(self):
        deal = make(DealStatus.PENDING_DEPOSIT)
        assert DealStateMachine.on_ledger_status(deal, LedgerStatus.COMPLETED, NOW) is None

    def test_completed_observation_records_ledger_source(self):
        deal = make(DealStatus.FUNDED, ledger_action_pending=LedgerAction.RELEASE.value)
        completed_at = NOW - timedelta(minutes=5)
        transition = DealStateMachine.on_ledger_status(deal, LedgerStatus.COMPLETED, NOW, completed_at)

        assert transition.to_status == DealStatus.COMPLETED.value
        assert transition.changes["completion_source"] == CompletionSource.LEDGER.value
        assert transition.changes["completed_at"] == completed_at
        assert transition.changes["ledger_action_pending"] is None
        assert not ledger_calls(transition)


class TestRelease:

    def test_release_from_funded_requests_ledger_write(self):
        transition = DealStateMachine.release(make(DealStatus.FUNDED), BUYER, NOW)

        assert transition.trigger == Trigger.RELEASE
        assert transition.changes["completion_source"] == CompletionSource.BUYER_RELEASE.value
        assert transition.changes["fee_amount"] == Decimal("0.5")
        assert transition.changes["seller_payout"] == Decimal("49.5")
        assert transition.changes["ledger_action_pending"] == LedgerAction.RELEASE.value
        assert transition.changes["ledger_action_attempts"] == 0
        [call] = ledger_calls(transition)
        assert call.action == LedgerAction.RELEASE and not call.best_effort

    def test_release_of_disputed_deal_needs_override(self):
        with pytest.raises(OverrideRequiredError) as exc:
            DealStateMachine.release(make(DealStatus.DISPUTED), BUYER, NOW)
        assert "/release DP-AB12 confirm" in exc.value.user_message

    def test_release_override_completes_disputed_deal(self):
        transition = DealStateMachine.release(make(DealStatus.DISPUTED), BUYER, NOW, override=True)
        assert transition.trigger == Trigger.RELEASE_OVERRIDE
        assert transition.to_status == DealStatus.COMPLETED.value
        assert transition.changes["completion_source"] == CompletionSource.BUYER_OVERRIDE.value

    def test_release_skips_write_when_ledger_already_completed(self):
        transition = DealStateMachine.release(make(DealStatus.FUNDED), BUYER, NOW, ledger_completed=True)
        assert not ledger_calls(transition)
        assert "ledger_action_pending" not in transition.changes

    def test_release_of_unbound_deal_makes_no_ledger_call(self):
        transition = DealStateMachine.release(make(DealStatus.FUNDED, bound=False), BUYER, NOW)
        assert not ledger_calls(transition)
        assert "ledger_action_pending" not in transition.changes

    def test_release_from_pending_is_rejected(self):
        with pytest.raises(InvalidTransitionError):
            DealStateMachine.release(make(DealStatus.PENDING_DEPOSIT), BUYER, NOW)


class TestDisputes:

    def test_open_dispute_effects(self):
        transition = DealStateMachine.open_dispute(make(DealStatus.FUNDED), BUYER, PartyRole.BUYER, "  ", NOW)

        assert transition.changes["dispute_reason"] == "No reason provided"
        assert transition.changes["disputed_by_telegram_id"] == BUYER.telegram_id
        [call] = ledger_calls(transition)
        assert call.action == LedgerAction.MARK_DISPUTED and call.best_effort
        assert "ledger_action_pending" not in transition.changes
        assert notified(transition) == [transition.effects[1].recipient]
        assert transition.effects[1].recipient.telegram_id == SELLER_ID
        fanout = [e for e in transition.effects if isinstance(e, NotifyArbiters)]
        assert fanout and BUYER.telegram_id in fanout[0].exclude_ids

    def test_new_dispute_drops_previous_assignment(self):
        deal = make(DealStatus.FUNDED, assigned_to_telegram_id=ARBITER.telegram_id,
                    assigned_to_username=ARBITER.username, assigned_by=SUPERUSER.username)

        transition = DealStateMachine.open_dispute(deal, SELLER, PartyRole.SELLER, "Again", NOW)

        assert transition.changes["assigned_to_telegram_id"] is None
        assert transition.changes["assigned_to_username"] is None
        assert "assigned_by" not in transition.changes

    def test_arbiter_cancelling_dispute_notifies_both_parties(self):
        transition = DealStateMachine.cancel_dispute(make(DealStatus.DISPUTED), ARBITER, PartyRole.ARBITER, NOW)
        assert transition.to_status == DealStatus.FUNDED.value
        assert len(notified(transition)) == 2
        assert transition.changes["dispute_cancelled_by"] == ARBITER.username

    def test_disputant_cancelling_notifies_counterparty_only(self):
        transition = DealStateMachine.cancel_dispute(make(DealStatus.DISPUTED), SELLER, PartyRole.SELLER, NOW)
        [recipient] = notified(transition)
        assert recipient.username == BUYER.username

    def test_resolve_release(self):
        transition = DealStateMachine.resolve(make(DealStatus.DISPUTED), SUPERUSER, DisputeResolution.RELEASE, NOW)
        assert transition.to_status == DealStatus.COMPLETED.value
        assert transition.changes["completion_source"] == CompletionSource.ARBITER_RELEASE.value
        assert transition.changes["resolution"] == "release"
        assert ledger_calls(transition)[0].action == LedgerAction.RELEASE

    def test_resolve_refund(self):
        transition = DealStateMachine.resolve(make(DealStatus.DISPUTED), SUPERUSER, DisputeResolution.REFUND, NOW)
        assert transition.to_status == DealStatus.REFUNDED.value
        assert transition.changes["completed_at"] == NOW
        assert transition.changes["ledger_action_pending"] == LedgerAction.REFUND.value
        assert ledger_calls(transition)[0].action == LedgerAction.REFUND
        assert len(notified(transition)) == 2

    def test_resolve_non_disputed_is_rejected(self):
        with pytest.raises(InvalidTransitionError):
            DealStateMachine.resolve(make(DealStatus.FUNDED), SUPERUSER, DisputeResolution.REFUND, NOW)

    def test_assign_and_unassign(self):
        deal = make(DealStatus.DISPUTED)
        transition = DealStateMachine.assign_arbiter(deal, ARBITER, SUPERUSER, NOW)
        assert transition.changes["assigned_to_telegram_id"] == ARBITER.telegram_id
        assert transition.changes["assigned_by"] == SUPERUSER.username
        assert len(notified(transition)) == 3
        assert transition.status_changed is False

        assigned = make(DealStatus.DISPUTED, assigned_to_telegram_id=ARBITER.telegram_id,
                        assigned_to_username=ARBITER.username)
        unassigned = DealStateMachine.unassign_arbiter(assigned, NOW)
        assert unassigned.changes["assigned_to_telegram_id"] is None

    def test_unassign_without_arbiter_is_rejected(self):
        with pytest.raises(InvalidDealInputError, match="No arbiter is assigned"):
            DealStateMachine.unassign_arbiter(make(DealStatus.DISPUTED), NOW)

    def test_unassign_outside_dispute_is_rejected(self):
        with pytest.raises(InvalidTransitionError):
            DealStateMachine.unassign_arbiter(make(DealStatus.COMPLETED), NOW)


class TestReviews:

    def test_review_requires_finished_deal(self):
        with pytest.raises(InvalidTransitionError) as exc:
            DealStateMachine.submit_review(make(DealStatus.FUNDED), PartyRole.BUYER, 5, None, NOW)
        assert "funded" in exc.value.user_message

    @pytest.mark.parametrize("rating", [0, 6, True, "5", 4.5])
    def test_rating_must_be_whole_number_in_range(self, rating):
        with pytest.raises(InvalidDealInputError):
            DealStateMachine.submit_review(make(DealStatus.COMPLETED), PartyRole.BUYER, rating, None, NOW)

    def test_review_defaults_comment(self):
        transition = DealStateMachine.submit_review(make(DealStatus.REFUNDED), PartyRole.SELLER, 4, "", NOW)
        assert transition.changes["seller_rating"] == 4
        assert transition.changes["seller_review"] == "No comment"
        assert "status" not in transition.changes

    def test_second_review_by_same_party_is_rejected(self):
        deal = make(DealStatus.COMPLETED, buyer_rating=5, buyer_review="Great")
        with pytest.raises(AlreadyReviewedError):
            DealStateMachine.submit_review(deal, PartyRole.BUYER, 3, "changed my mind", NOW)
        # the other side can still review
        DealStateMachine.submit_review(deal, PartyRole.SELLER, 5, "Smooth", NOW)


class TestBindingReminderAndLedgerWrites:

    def test_bind_twice_is_rejected(self):
        with pytest.raises(AlreadyBoundError):
            DealStateMachine.bind_ledger(make(DealStatus.PENDING_DEPOSIT), "DP-AB12", None, NOW)

    def test_bind_sets_reference(self):
        transition = DealStateMachine.bind_ledger(make(DealStatus.PENDING_DEPOSIT, bound=False), "DP-AB12", "0xabc", NOW)
        assert transition.changes["contract_deal_id"] == "DP-AB12"
        assert transition.changes["tx_hash"] == "0xabc"

    def test_reminder_only_after_window_and_once(self):
        funded_at = NOW - timedelta(hours=23)
        deal = make(DealStatus.FUNDED, funded_at=funded_at)
        assert DealStateMachine.mark_release_reminder(deal, NOW, 24) is None

        later = funded_at + timedelta(hours=24)
        transition = DealStateMachine.mark_release_reminder(deal, later, 24)
        assert transition.changes["release_reminder_sent"] is True
        assert len(notified(transition)) == 2

        reminded = make(DealStatus.FUNDED, funded_at=funded_at, release_reminder_sent=True)
        assert DealStateMachine.mark_release_reminder(reminded, later, 24) is None

    def test_ledger_write_outcome(self):
        deal = make(DealStatus.COMPLETED, ledger_action_pending="release", ledger_action_attempts=2)

        confirmed = DealStateMachine.ledger_write_outcome(deal, LedgerAction.RELEASE, True, "0xfeed", NOW)
        assert confirmed.changes["ledger_action_pending"] is None
        assert confirmed.changes["release_tx_hash"] == "0xfeed"

        failed = DealStateMachine.ledger_write_outcome(deal, LedgerAction.RELEASE, False, None, NOW)
        assert failed.changes["ledger_action_attempts"] == 3

        assert DealStateMachine.ledger_write_outcome(deal, LedgerAction.REFUND, True, None, NOW) is None

    def test_ledger_action_satisfied(self):
        assert DealStateMachine.ledger_action_satisfied(LedgerAction.RELEASE, LedgerStatus.COMPLETED)
        assert not DealStateMachine.ledger_action_satisfied(LedgerAction.RELEASE, LedgerStatus.DISPUTED)
        assert DealStateMachine.ledger_action_satisfied(LedgerAction.REFUND, LedgerStatus.REFUNDED)
        assert DealStateMachine.ledger_action_satisfied(LedgerAction.MARK_DISPUTED, LedgerStatus.DISPUTED)
