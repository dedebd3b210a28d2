"""
Deal Store
==========

Async SQLAlchemy access to deals and their evidence. No business rules live
here: status changes are computed by ``DealStateMachine`` and written through
``update`` with a compare-and-set on ``version``.

Deal codes are stored upper-case and every lookup normalizes its input, so
``dp-ab12`` and ``DP-AB12`` address the same deal.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session
from models import Deal, DealStatus, Evidence
from utils.deal_errors import ConcurrentUpdateError, DealNotFoundError, StoreWriteFailedError
from utils.helpers import normalize_deal_code, normalize_handle

logger = logging.getLogger(__name__)


class DealStore:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def find(self, deal_id: str) -> Optional[Deal]:
        code = normalize_deal_code(deal_id)
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(select(Deal).where(Deal.deal_id == code))
            return result.scalar_one_or_none()

    async def get(self, deal_id: str) -> Deal:
        deal = await self.find(deal_id)
        if deal is None:
            raise DealNotFoundError(normalize_deal_code(deal_id))
        return deal

    async def insert(self, deal: Deal) -> Deal:
        deal.deal_id = normalize_deal_code(deal.deal_id)
        try:
            async with async_managed_session(self.session_factory) as session:
                session.add(deal)
                await session.flush()
        except IntegrityError as e:
            logger.warning(f"⚠️ DEAL_INSERT_CONFLICT: {deal.deal_id}: {e.orig}")
            raise StoreWriteFailedError(deal.deal_id, reason="duplicate deal code") from e
        except SQLAlchemyError as e:
            raise StoreWriteFailedError(deal.deal_id, reason=str(e)) from e
        logger.info(f"🆕 DEAL_CREATED: {deal.deal_id} seller={deal.seller_telegram_id} buyer=@{deal.buyer_username}")
        return deal

    async def update(self, deal_id: str, changes: Dict[str, Any], expected_version: int) -> Deal:
        """
        Apply ``changes`` only if the stored version still equals ``expected_version``.

        Raises ConcurrentUpdateError when another writer got there first; nothing
        is applied in that case.
        """
        code = normalize_deal_code(deal_id)
        values = dict(changes)
        values["version"] = Deal.version + 1
        try:
            async with async_managed_session(self.session_factory) as session:
                result = await session.execute(
                    update(Deal)
                    .where(Deal.deal_id == code, Deal.version == expected_version)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    exists = await session.scalar(select(func.count(Deal.id)).where(Deal.deal_id == code))
                    if not exists:
                        raise DealNotFoundError(code)
                    logger.warning(f"🔒 CAS_CONFLICT: {code} expected version {expected_version}")
                    raise ConcurrentUpdateError(code, expected_version)
                refreshed = await session.execute(select(Deal).where(Deal.deal_id == code))
                return refreshed.scalar_one()
        except SQLAlchemyError as e:
            logger.error(f"❌ DEAL_UPDATE_FAILED: {code}: {e}")
            raise StoreWriteFailedError(code, reason=str(e)) from e

    async def list_by_status(self, statuses: Iterable[DealStatus], bound_only: bool = False) -> List[Deal]:
        stmt = select(Deal).where(Deal.status.in_([s.value for s in statuses]))
        if bound_only:
            stmt = stmt.where(Deal.contract_deal_id.is_not(None))
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(stmt.order_by(Deal.created_at, Deal.id))
            return list(result.scalars().all())

    async def list_pending_ledger_actions(self) -> List[Deal]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Deal)
                .where(Deal.ledger_action_pending.is_not(None), Deal.contract_deal_id.is_not(None))
                .order_by(Deal.updated_at, Deal.id)
            )
            return list(result.scalars().all())

    async def list_for_party(self, telegram_id: int, username: Optional[str], limit: int = 15) -> List[Deal]:
        conditions = [Deal.seller_telegram_id == telegram_id, Deal.buyer_telegram_id == telegram_id]
        handle = normalize_handle(username)
        if handle:
            conditions.append(func.lower(Deal.buyer_username) == handle)
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Deal).where(or_(*conditions)).order_by(Deal.created_at.desc(), Deal.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def list_disputes(self, assigned_to: Optional[int] = None) -> List[Deal]:
        stmt = select(Deal).where(Deal.status == DealStatus.DISPUTED.value)
        if assigned_to is not None:
            stmt = stmt.where(Deal.assigned_to_telegram_id == assigned_to)
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(stmt.order_by(Deal.created_at.desc(), Deal.id.desc()))
            return list(result.scalars().all())

    async def list_completed_for_handle(self, username: str) -> List[Deal]:
        handle = normalize_handle(username)
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Deal)
                .where(
                    Deal.status == DealStatus.COMPLETED.value,
                    or_(func.lower(Deal.seller_username) == handle, func.lower(Deal.buyer_username) == handle),
                )
                .order_by(Deal.completed_at.desc(), Deal.id.desc())
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Evidence (append-only)
    # ------------------------------------------------------------------

    async def add_evidence(self, evidence: Evidence) -> Evidence:
        evidence.deal_id = normalize_deal_code(evidence.deal_id)
        try:
            async with async_managed_session(self.session_factory) as session:
                session.add(evidence)
                await session.flush()
        except SQLAlchemyError as e:
            logger.error(f"❌ EVIDENCE_INSERT_FAILED: {evidence.deal_id}: {e}")
            raise StoreWriteFailedError(evidence.deal_id, reason=str(e)) from e
        logger.info(f"📎 EVIDENCE_ADDED: {evidence.deal_id} by {evidence.role} {evidence.submitter_telegram_id}")
        return evidence

    async def list_evidence(self, deal_id: str) -> List[Evidence]:
        code = normalize_deal_code(deal_id)
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Evidence).where(Evidence.deal_id == code).order_by(Evidence.created_at, Evidence.id)
            )
            return list(result.scalars().all())
