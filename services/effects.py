"""
Side effects requested by deal transitions

The lifecycle engine never talks to Telegram or the chain. It returns these value
objects and ``EffectDispatcher`` performs them after the store write commits.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from models import LedgerAction


@dataclass(frozen=True)
class Recipient:
    """A party to notify; the buyer may only be known by handle"""

    telegram_id: Optional[int] = None
    username: Optional[str] = None

    def describe(self) -> str:
        if self.username:
            return f"@{self.username}"
        return str(self.telegram_id)


@dataclass(frozen=True)
class Notify:
    recipient: Recipient
    text: str


@dataclass(frozen=True)
class NotifyArbiters:
    """Fan out to every superuser and every active roster arbiter"""

    text: str
    exclude_ids: Tuple[int, ...] = ()


@dataclass(frozen=True)
class LedgerCall:
    """
    A ledger write to submit after commit.

    ``best_effort`` calls (mark-disputed) only log on failure; the others leave a
    ``ledger_action_pending`` marker for reconciliation to resolve.
    """

    action: LedgerAction
    deal_id: str
    ledger_ref: str
    best_effort: bool = False


Effect = Union[Notify, NotifyArbiters, LedgerCall]
