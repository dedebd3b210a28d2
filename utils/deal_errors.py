"""
Deal error taxonomy

Every failure a deal operation can report to an actor. Each error carries a
``user_message`` that handlers send back verbatim, so it must be specific enough
for the actor to self-correct (current status, required role, or "already done").
"""

from typing import Optional


class DealError(Exception):
    """Base class for all deal operation failures"""

    def __init__(self, user_message: str, deal_id: Optional[str] = None):
        super().__init__(user_message)
        self.user_message = user_message
        self.deal_id = deal_id


class InvalidTransitionError(DealError):
    """Requested action is not valid from the deal's current status"""

    def __init__(self, action: str, current_status: str, deal_id: Optional[str] = None,
                 user_message: Optional[str] = None):
        self.action = action
        self.current_status = current_status
        message = user_message or (
            f"Cannot {action.replace('_', ' ')} {deal_id or 'this deal'}: status is {current_status}."
        )
        super().__init__(message, deal_id)


class OverrideRequiredError(InvalidTransitionError):
    """Buyer tried to release a disputed deal without the explicit override"""

    def __init__(self, deal_id: str, current_status: str = "disputed"):
        super().__init__(
            "release",
            current_status,
            deal_id,
            user_message=(
                f"{deal_id} is under dispute. To release anyway and close the dispute, "
                f"use /release {deal_id} confirm"
            ),
        )


class UnauthorizedError(DealError):
    """Actor lacks the role or assignment required for the action"""

    def __init__(self, action: str, required_role: str, deal_id: Optional[str] = None,
                 user_message: Optional[str] = None):
        self.action = action
        self.required_role = required_role
        super().__init__(
            user_message or f"Only the {required_role} can {action.replace('_', ' ')}"
            + (f" on {deal_id}." if deal_id else "."),
            deal_id,
        )


class DealNotFoundError(DealError):
    def __init__(self, deal_id: str):
        super().__init__(f"Deal {deal_id} not found.", deal_id)


class AlreadyReviewedError(DealError):
    def __init__(self, deal_id: str, party: str):
        self.party = party
        super().__init__(f"You already reviewed {deal_id}.", deal_id)


class AlreadyBoundError(DealError):
    """Deal already has its on-chain escrow"""

    def __init__(self, deal_id: str, contract_deal_id: Optional[str] = None):
        self.contract_deal_id = contract_deal_id
        super().__init__(f"{deal_id} is already on-chain.", deal_id)


class LedgerUnavailableError(DealError):
    """Transient ledger failure - safe to try again"""

    def __init__(self, operation: str, reason: str = "", deal_id: Optional[str] = None):
        self.operation = operation
        self.reason = reason
        super().__init__("Blockchain is not reachable right now. Please try again in a minute.", deal_id)


class StoreWriteFailedError(DealError):
    def __init__(self, deal_id: Optional[str] = None, reason: str = "",
                 user_message: str = "Could not save the deal. Please try again."):
        self.reason = reason
        super().__init__(user_message, deal_id)


class ConcurrentUpdateError(StoreWriteFailedError):
    """Compare-and-set lost: the deal changed since it was read"""

    def __init__(self, deal_id: str, expected_version: int):
        self.expected_version = expected_version
        super().__init__(
            deal_id,
            reason=f"version {expected_version} is stale",
            user_message=f"{deal_id} was just updated by someone else. Check /status {deal_id} and try again.",
        )


class InvalidDealInputError(DealError):
    """Bad amount, self-deal, bad rating, missing wallet and similar input problems"""
    pass
