"""
Authorization Guard
===================

Pure mapping of (actor, deal, action, roles) to the role the actor acts in, or an
``UnauthorizedError`` naming the role that was required. No I/O: the caller
supplies a ``RoleSnapshot`` taken from the arbiter roster.

Role model:
- seller: Telegram ID matches the deal's seller
- buyer: Telegram ID matches once bound, otherwise case-insensitive handle match
- arbiter: a superuser (unrestricted), or an active roster member who is the
  assigned arbiter of the dispute. Unassigned roster members may only view.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional

from models import Deal, PartyRole
from utils.deal_errors import UnauthorizedError
from utils.helpers import normalize_handle

logger = logging.getLogger(__name__)


class DealAction(Enum):
    CANCEL = "cancel"
    RELEASE = "release"
    DISPUTE = "dispute"
    CANCEL_DISPUTE = "cancel_dispute"
    RESOLVE = "resolve"
    SUBMIT_EVIDENCE = "submit_evidence"
    VIEW_EVIDENCE = "view_evidence"
    REVIEW = "review"
    BIND_LEDGER = "bind_ledger"
    MESSAGE_PARTY = "message_party"
    BROADCAST = "broadcast"
    ASSIGN = "assign"
    MANAGE_ROSTER = "manage_roster"
    QUERY_AUDIT = "query_audit"
    LIST_DISPUTES = "list_disputes"


@dataclass(frozen=True)
class Actor:
    """Whoever issued a request: a Telegram identity plus its current handle"""

    telegram_id: int
    username: Optional[str] = None

    @property
    def handle(self) -> str:
        return self.username or f"user_{self.telegram_id}"


@dataclass(frozen=True)
class RoleSnapshot:
    """Superusers are fixed at startup; arbiter_ids is the active roster at read time"""

    superuser_ids: FrozenSet[int] = field(default_factory=frozenset)
    arbiter_ids: FrozenSet[int] = field(default_factory=frozenset)

    def is_superuser(self, telegram_id: int) -> bool:
        return telegram_id in self.superuser_ids

    def is_roster_arbiter(self, telegram_id: int) -> bool:
        return telegram_id in self.arbiter_ids

    def is_staff(self, telegram_id: int) -> bool:
        return self.is_superuser(telegram_id) or self.is_roster_arbiter(telegram_id)


def is_seller(actor: Actor, deal: Deal) -> bool:
    return actor.telegram_id == deal.seller_telegram_id


def is_buyer(actor: Actor, deal: Deal) -> bool:
    if deal.buyer_telegram_id is not None:
        return actor.telegram_id == deal.buyer_telegram_id
    handle = normalize_handle(actor.username)
    return bool(handle) and handle == normalize_handle(deal.buyer_username)


def is_disputant(actor: Actor, deal: Deal) -> bool:
    if deal.disputed_by_telegram_id is not None:
        return actor.telegram_id == deal.disputed_by_telegram_id
    handle = normalize_handle(actor.username)
    return bool(handle) and handle == normalize_handle(deal.disputed_by)


def is_authorized_arbiter(actor: Actor, deal: Deal, roles: RoleSnapshot) -> bool:
    """Superuser, or active roster member assigned to this deal's dispute"""
    if roles.is_superuser(actor.telegram_id):
        return True
    return (
        roles.is_roster_arbiter(actor.telegram_id)
        and deal.assigned_to_telegram_id is not None
        and deal.assigned_to_telegram_id == actor.telegram_id
    )


def party_role(actor: Actor, deal: Deal) -> Optional[PartyRole]:
    if is_seller(actor, deal):
        return PartyRole.SELLER
    if is_buyer(actor, deal):
        return PartyRole.BUYER
    return None


def _deny(action: DealAction, required_role: str, deal: Optional[Deal], actor: Actor,
          user_message: Optional[str] = None):
    deal_id = deal.deal_id if deal is not None else None
    logger.warning(
        f"🚫 UNAUTHORIZED: {actor.handle} ({actor.telegram_id}) tried {action.value}"
        f"{f' on {deal_id}' if deal_id else ''} - requires {required_role}"
    )
    raise UnauthorizedError(action.value, required_role, deal_id, user_message=user_message)


def _require_arbiter(actor: Actor, deal: Deal, action: DealAction, roles: RoleSnapshot) -> PartyRole:
    if party_role(actor, deal) is not None and not roles.is_superuser(actor.telegram_id):
        _deny(action, "independent arbiter", deal, actor,
              user_message=f"You are a party to {deal.deal_id} and cannot arbitrate it.")
    if is_authorized_arbiter(actor, deal, roles):
        return PartyRole.ARBITER
    if roles.is_roster_arbiter(actor.telegram_id):
        _deny(action, "assigned arbiter", deal, actor,
              user_message=f"Only the arbiter assigned to {deal.deal_id} can do that.")
    _deny(action, "arbiter", deal, actor)


def authorize(actor: Actor, deal: Optional[Deal], action: DealAction, roles: RoleSnapshot) -> Optional[PartyRole]:
    """
    Check that ``actor`` may perform ``action`` on ``deal``.

    Returns the role the actor acts in (None for deal-less superuser actions).
    Raises UnauthorizedError otherwise; never returns a silent "no".
    """
    if action in (DealAction.MANAGE_ROSTER, DealAction.QUERY_AUDIT, DealAction.ASSIGN, DealAction.BROADCAST):
        if not roles.is_superuser(actor.telegram_id):
            _deny(action, "superuser", deal, actor)
        return PartyRole.ARBITER if deal is not None else None

    if action == DealAction.LIST_DISPUTES:
        if not roles.is_staff(actor.telegram_id):
            _deny(action, "arbiter", deal, actor)
        return None

    if deal is None:
        raise ValueError(f"Action {action.value} requires a deal")

    role = party_role(actor, deal)

    if action in (DealAction.RELEASE, DealAction.BIND_LEDGER):
        if role != PartyRole.BUYER:
            _deny(action, "buyer", deal, actor)
        return PartyRole.BUYER

    if action in (DealAction.CANCEL, DealAction.DISPUTE, DealAction.REVIEW):
        if role is None:
            _deny(action, "seller or buyer", deal, actor)
        return role

    if action == DealAction.CANCEL_DISPUTE:
        if role is not None and is_disputant(actor, deal):
            return role
        if is_authorized_arbiter(actor, deal, roles) and (role is None or roles.is_superuser(actor.telegram_id)):
            return PartyRole.ARBITER
        _deny(action, "original disputant or assigned arbiter", deal, actor)

    if action in (DealAction.RESOLVE, DealAction.MESSAGE_PARTY):
        return _require_arbiter(actor, deal, action, roles)

    if action == DealAction.SUBMIT_EVIDENCE:
        if role is not None:
            return role
        if is_authorized_arbiter(actor, deal, roles):
            return PartyRole.ARBITER
        _deny(action, "seller, buyer or assigned arbiter", deal, actor)

    if action == DealAction.VIEW_EVIDENCE:
        if role is not None:
            return role
        if roles.is_staff(actor.telegram_id):
            return PartyRole.ARBITER
        _deny(action, "party or arbiter", deal, actor)

    raise ValueError(f"Unknown action {action}")
