"""
Deal Reconciliation
Periodically mirrors the escrow contract into the deal store: advances deals the
ledger has funded or completed, sends the one-time release reminder and settles
ledger writes left pending by earlier actions
"""

import asyncio
import logging
import time
from typing import Any, Dict

from config import Config
from models import DealStatus
from services.deal_service import DealService
from services.ledger_client import LedgerClient, LedgerSnapshot, guarded_ledger_call
from utils.deal_errors import DealError, LedgerUnavailableError
from utils.deal_state_machine import DealStateMachine

logger = logging.getLogger(__name__)


class ReconciliationResult:
    """Result object for one reconciliation tick"""

    def __init__(self):
        self.tick_skipped = False
        self.deals_checked = 0
        self.deals_advanced = 0
        self.deals_skipped = 0
        self.reminders_sent = 0
        self.ledger_actions_checked = 0
        self.ledger_actions_settled = 0
        self.ledger_actions_retried = 0
        self.ledger_actions_stuck = 0
        self.execution_time_ms = 0
        self.transitions = []
        self.errors = []

    def add_transition(self, deal_id: str, from_status: str, to_status: str):
        self.deals_advanced += 1
        self.transitions.append({"deal_id": deal_id, "from": from_status, "to": to_status})

    def add_skip(self, deal_id: str, reason: str):
        self.deals_skipped += 1
        logger.warning(f"⏭️ RECONCILIATION_SKIP: {deal_id}: {reason}")

    def add_error(self, error: str):
        self.errors.append(error)
        logger.error(f"RECONCILIATION_ERROR: {error}")

    def get_summary(self) -> Dict[str, Any]:
        return {
            "tick_skipped": self.tick_skipped,
            "deals_checked": self.deals_checked,
            "deals_advanced": self.deals_advanced,
            "deals_skipped": self.deals_skipped,
            "reminders_sent": self.reminders_sent,
            "ledger_actions_checked": self.ledger_actions_checked,
            "ledger_actions_settled": self.ledger_actions_settled,
            "ledger_actions_retried": self.ledger_actions_retried,
            "ledger_actions_stuck": self.ledger_actions_stuck,
            "execution_time_ms": self.execution_time_ms,
            "error_count": len(self.errors),
        }


class DealReconciler:
    """
    Ledger -> store reconciliation loop.

    Ticks never overlap: a tick that starts while the previous one is still
    running is skipped. A deal whose ledger read fails or times out is skipped
    for this tick and retried on the next one.
    """

    def __init__(self, service: DealService, ledger: LedgerClient = None, read_timeout: float = None):
        self.service = service
        self.ledger = ledger or service.ledger
        self.read_timeout = read_timeout or Config.LEDGER_TIMEOUT_SECONDS
        self._tick_lock = asyncio.Lock()

    async def _read(self, deal) -> LedgerSnapshot:
        return await guarded_ledger_call(
            self.ledger.get_status(deal.contract_deal_id), "get_status",
            timeout=self.read_timeout, deal_id=deal.deal_id,
        )

    async def run_tick(self) -> ReconciliationResult:
        result = ReconciliationResult()
        if self._tick_lock.locked():
            result.tick_skipped = True
            logger.warning("🔁 RECONCILIATION_TICK_SKIPPED: previous tick still running")
            return result

        async with self._tick_lock:
            start_time = time.monotonic()
            try:
                await self._reconcile_statuses(result)
                await self._send_release_reminders(result)
                await self._settle_pending_ledger_actions(result)
            except Exception as e:
                result.add_error(f"tick aborted: {e}")
                logger.exception("❌ RECONCILIATION_TICK_FAILED")
            result.execution_time_ms = int((time.monotonic() - start_time) * 1000)

        if result.deals_advanced or result.reminders_sent or result.ledger_actions_checked or result.errors:
            logger.info(f"📊 RECONCILIATION_SUMMARY: {result.get_summary()}")
        else:
            logger.debug(f"📊 RECONCILIATION_SUMMARY: {result.get_summary()}")
        return result

    async def _reconcile_statuses(self, result: ReconciliationResult):
        deals = await self.service.store.list_by_status(DealStateMachine.AWAITING_LEDGER_STATES, bound_only=True)
        for deal in deals:
            result.deals_checked += 1
            try:
                snapshot = await self._read(deal)
            except LedgerUnavailableError as e:
                result.add_skip(deal.deal_id, e.reason or str(e))
                continue

            if not snapshot.exists:
                logger.warning(f"⚠️ LEDGER_MISSING: {deal.deal_id} is bound but not found on the contract")
                continue

            try:
                outcome = await self.service.observe_ledger(deal.deal_id, snapshot)
            except DealError as e:
                result.add_error(f"{deal.deal_id}: {e}")
                continue
            if outcome.transition is not None and outcome.transition.status_changed:
                result.add_transition(deal.deal_id, outcome.transition.from_status, outcome.transition.to_status)

    async def _send_release_reminders(self, result: ReconciliationResult):
        now = self.service.clock()
        window = self.service.release_window_hours
        for deal in await self.service.store.list_by_status([DealStatus.FUNDED]):
            if not DealStateMachine.release_reminder_due(deal, now, window):
                continue
            try:
                outcome = await self.service.send_release_reminder(deal.deal_id)
            except DealError as e:
                result.add_error(f"{deal.deal_id} reminder: {e}")
                continue
            if outcome.transition is not None:
                result.reminders_sent += 1
                logger.info(f"⏰ RELEASE_REMINDER_SENT: {deal.deal_id}")

    async def _settle_pending_ledger_actions(self, result: ReconciliationResult):
        for deal in await self.service.store.list_pending_ledger_actions():
            result.ledger_actions_checked += 1
            try:
                snapshot = await self._read(deal)
            except LedgerUnavailableError as e:
                result.add_skip(deal.deal_id, e.reason or str(e))
                continue

            try:
                state = await self.service.retry_ledger_action(deal.deal_id, snapshot)
            except DealError as e:
                result.add_error(f"{deal.deal_id} ledger retry: {e}")
                continue
            if state in ("cleared", "confirmed"):
                result.ledger_actions_settled += 1
            elif state == "retried":
                result.ledger_actions_retried += 1
            elif state == "stuck":
                result.ledger_actions_stuck += 1

