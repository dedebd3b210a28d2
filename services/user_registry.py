"""Telegram identity to payout wallet bindings"""

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session
from models import Deal, User
from utils.datetime_helpers import get_naive_utc_now
from utils.helpers import normalize_handle

logger = logging.getLogger(__name__)


class UserRegistry:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def upsert_wallet(self, telegram_id: int, username: Optional[str], wallet_address: str) -> User:
        """One wallet per identity; registering again overwrites it"""
        wallet_address = wallet_address.lower()
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(select(User).where(User.telegram_id == telegram_id))
            user = result.scalar_one_or_none()
            if user is None:
                user = User(telegram_id=telegram_id, username=username, wallet_address=wallet_address)
                session.add(user)
            else:
                user.wallet_address = wallet_address
                if username:
                    user.username = username
                user.updated_at = get_naive_utc_now()
            await session.flush()
        logger.info(f"👛 WALLET_REGISTERED: {telegram_id} (@{username})")
        return user

    async def touch(self, telegram_id: int, username: Optional[str]) -> None:
        """Keep the stored handle current so handle lookups find the right identity"""
        if not username:
            return
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(select(User).where(User.telegram_id == telegram_id))
            user = result.scalar_one_or_none()
            if user is not None and user.username != username:
                user.username = username
                user.updated_at = get_naive_utc_now()

    async def get(self, telegram_id: int) -> Optional[User]:
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(select(User).where(User.telegram_id == telegram_id))
            return result.scalar_one_or_none()

    async def find_by_handle(self, username: Optional[str]) -> Optional[User]:
        """Case-insensitive handle lookup; the most recently updated row wins if handles collide"""
        handle = normalize_handle(username)
        if not handle:
            return None
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(
                select(User).where(func.lower(User.username) == handle).order_by(User.updated_at.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    async def resolve_telegram_id(self, telegram_id: Optional[int], username: Optional[str]) -> Optional[int]:
        if telegram_id is not None:
            return telegram_id
        user = await self.find_by_handle(username)
        return user.telegram_id if user else None

    async def seller_wallet(self, deal: Deal) -> Optional[str]:
        user = await self.get(deal.seller_telegram_id)
        return user.wallet_address if user else None

    async def buyer_wallet(self, deal: Deal) -> Optional[str]:
        if deal.buyer_telegram_id is not None:
            user = await self.get(deal.buyer_telegram_id)
        else:
            user = await self.find_by_handle(deal.buyer_username)
        return user.wallet_address if user else None
