"""
Arbiter roster

Two tiers of arbiters: superusers, fixed at startup from ADMIN_TELEGRAM_IDS and
never stored, and a revocable roster persisted in the ``arbiters`` table. The
roster object is built once in main.py and passed to whoever needs it.
"""

import logging
from typing import FrozenSet, Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session
from models import Arbiter
from services.authorization import RoleSnapshot
from utils.datetime_helpers import get_naive_utc_now
from utils.helpers import normalize_handle

logger = logging.getLogger(__name__)


class ArbiterRoster:
    def __init__(self, session_factory: async_sessionmaker, superuser_ids: Iterable[int]):
        self.session_factory = session_factory
        self.superuser_ids: FrozenSet[int] = frozenset(superuser_ids)

    def is_superuser(self, telegram_id: int) -> bool:
        return telegram_id in self.superuser_ids

    async def active_ids(self) -> FrozenSet[int]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(select(Arbiter.telegram_id).where(Arbiter.is_active.is_(True)))
            return frozenset(result.scalars().all())

    async def snapshot(self) -> RoleSnapshot:
        return RoleSnapshot(superuser_ids=self.superuser_ids, arbiter_ids=await self.active_ids())

    async def role_of(self, telegram_id: int) -> Optional[str]:
        """'superuser', 'arbiter' or None - used for help texts"""
        if self.is_superuser(telegram_id):
            return "superuser"
        if telegram_id in await self.active_ids():
            return "arbiter"
        return None

    async def add(self, telegram_id: int, username: Optional[str], added_by: Optional[str]) -> Arbiter:
        """Add or re-activate a roster member"""
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(select(Arbiter).where(Arbiter.telegram_id == telegram_id))
            arbiter = result.scalar_one_or_none()
            if arbiter is None:
                arbiter = Arbiter(telegram_id=telegram_id, username=username, added_by=added_by, is_active=True)
                session.add(arbiter)
            else:
                arbiter.is_active = True
                arbiter.username = username or arbiter.username
                arbiter.added_by = added_by
                arbiter.updated_at = get_naive_utc_now()
            await session.flush()
        logger.info(f"🛡️ ARBITER_ADDED: @{username} ({telegram_id}) by @{added_by}")
        return arbiter

    async def remove(self, username: str) -> Optional[Arbiter]:
        """Deactivate by handle; returns None when no active member has that handle"""
        handle = normalize_handle(username)
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Arbiter).where(func.lower(Arbiter.username) == handle, Arbiter.is_active.is_(True))
            )
            arbiter = result.scalar_one_or_none()
            if arbiter is None:
                return None
            arbiter.is_active = False
            arbiter.updated_at = get_naive_utc_now()
        logger.info(f"🛡️ ARBITER_REMOVED: @{arbiter.username} ({arbiter.telegram_id})")
        return arbiter

    async def list_active(self) -> List[Arbiter]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(Arbiter).where(Arbiter.is_active.is_(True)).order_by(Arbiter.created_at, Arbiter.id)
            )
            return list(result.scalars().all())

    async def notification_targets(self) -> FrozenSet[int]:
        """Everyone who hears about new disputes"""
        return self.superuser_ids | await self.active_ids()
