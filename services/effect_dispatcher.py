"""
Effect dispatcher

Executes the effects a committed transition requested: ledger writes first, then
notifications. Nothing here raises to the caller. Notification failures are
swallowed by the notifier; ledger failures come back as outcomes and warnings so
the deal service can record a pending ledger action.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from models import LedgerAction
from services.arbiter_roster import ArbiterRoster
from services.effects import Effect, LedgerCall, Notify, NotifyArbiters, Recipient
from services.ledger_client import LedgerClient, LedgerWriteResult
from services.user_registry import UserRegistry
from utils.deal_errors import LedgerUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class LedgerCallOutcome:
    call: LedgerCall
    result: Optional[LedgerWriteResult] = None
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.result is not None and self.result.confirmed

    @property
    def tx_hash(self) -> Optional[str]:
        return self.result.tx_hash if self.result else None


@dataclass
class DispatchReport:
    notifications_sent: int = 0
    notifications_failed: int = 0
    ledger_outcomes: List[LedgerCallOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class EffectDispatcher:
    def __init__(self, ledger: LedgerClient, notifier, users: UserRegistry, roster: ArbiterRoster):
        self.ledger = ledger
        self.notifier = notifier
        self.users = users
        self.roster = roster

    async def dispatch(self, effects: Iterable[Effect]) -> DispatchReport:
        effects = list(effects)
        report = DispatchReport()

        for effect in effects:
            if isinstance(effect, LedgerCall):
                outcome = await self.run_ledger_call(effect)
                report.ledger_outcomes.append(outcome)
                warning = self._ledger_warning(outcome)
                if warning:
                    report.warnings.append(warning)

        for effect in effects:
            if isinstance(effect, Notify):
                self._count(report, await self.notify(effect.recipient, effect.text))
            elif isinstance(effect, NotifyArbiters):
                for telegram_id in sorted(await self.roster.notification_targets()):
                    if telegram_id in effect.exclude_ids:
                        continue
                    self._count(report, await self.notifier.send(telegram_id, effect.text))

        return report

    @staticmethod
    def _count(report: DispatchReport, sent: bool):
        if sent:
            report.notifications_sent += 1
        else:
            report.notifications_failed += 1

    async def notify(self, recipient: Recipient, text: str) -> bool:
        """Deliver to a party, resolving a handle-only buyer through the user registry"""
        try:
            telegram_id = await self.users.resolve_telegram_id(recipient.telegram_id, recipient.username)
        except Exception as e:
            logger.error(f"❌ NOTIFY_LOOKUP_FAILED: {recipient.describe()}: {e}")
            return False
        if telegram_id is None:
            logger.info(f"📭 NOTIFY_UNRESOLVED: {recipient.describe()} has not started the bot")
            return False
        return await self.notifier.send(telegram_id, text)

    async def run_ledger_call(self, call: LedgerCall) -> LedgerCallOutcome:
        try:
            if call.action == LedgerAction.RELEASE:
                result = await self.ledger.resolve_release(call.ledger_ref)
            elif call.action == LedgerAction.REFUND:
                result = await self.ledger.resolve_refund(call.ledger_ref)
            else:
                result = await self.ledger.mark_disputed(call.ledger_ref)
        except LedgerUnavailableError as e:
            log = logger.warning if call.best_effort else logger.error
            log(f"⚠️ LEDGER_WRITE_FAILED: {call.action.value} {call.deal_id}: {e.reason or e}")
            return LedgerCallOutcome(call, error=e.reason or str(e))
        except Exception as e:
            logger.error(f"❌ LEDGER_WRITE_UNEXPECTED: {call.action.value} {call.deal_id}: {e}", exc_info=True)
            return LedgerCallOutcome(call, error=str(e))

        if result.confirmed:
            logger.info(f"✅ LEDGER_WRITE_CONFIRMED: {call.action.value} {call.deal_id} tx={result.tx_hash}")
        else:
            logger.warning(f"⏳ LEDGER_WRITE_PENDING: {call.action.value} {call.deal_id} tx={result.tx_hash}")
        return LedgerCallOutcome(call, result=result)

    @staticmethod
    def _ledger_warning(outcome: LedgerCallOutcome) -> Optional[str]:
        call = outcome.call
        if outcome.confirmed:
            return None
        if call.best_effort:
            if outcome.error:
                return f"On-chain dispute marker for {call.deal_id} could not be recorded. The dispute is tracked by the bot."
            return None
        if outcome.error:
            return (
                f"On-chain {call.action.value} for {call.deal_id} failed ({outcome.error}). "
                f"It will be retried automatically."
            )
        return f"On-chain {call.action.value} for {call.deal_id} was submitted and is awaiting confirmation."
