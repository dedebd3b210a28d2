"""
Per-deal serialization

All writes to one deal go through ``DealLockRegistry.hold(deal_id)``. Actor
requests and reconciliation ticks share the registry, so an actor release and a
ledger-observed completion on the same deal are totally ordered.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

logger = logging.getLogger(__name__)


class DealLockRegistry:
    """Lazily created asyncio.Lock per deal code, dropped when no one holds or waits on it"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, deal_id: str):
        key = deal_id.upper()
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            if lock.locked():
                logger.debug(f"⏳ DEAL_LOCK_WAIT: {key}")
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, deal_id: str) -> bool:
        lock = self._locks.get(deal_id.upper())
        return lock is not None and lock.locked()

    def __len__(self):
        return len(self._locks)
