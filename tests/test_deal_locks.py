"""
Per-deal lock registry tests
"""

import asyncio

import pytest

from utils.deal_locks import DealLockRegistry


class TestDealLockRegistry:

    @pytest.mark.asyncio
    async def test_same_deal_is_serialized(self):
        locks = DealLockRegistry()
        events = []

        async def writer(name):
            async with locks.hold("DP-AB12"):
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{name}-end")

        await asyncio.gather(writer("a"), writer("b"))

        assert events == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_deals_run_concurrently(self):
        locks = DealLockRegistry()
        events = []

        async def writer(deal_id):
            async with locks.hold(deal_id):
                events.append(f"{deal_id}-start")
                await asyncio.sleep(0.01)
                events.append(f"{deal_id}-end")

        await asyncio.gather(writer("DP-AB12"), writer("DP-CD34"))

        assert events[:2] == ["DP-AB12-start", "DP-CD34-start"]

    @pytest.mark.asyncio
    async def test_codes_are_case_insensitive_and_locks_released(self):
        locks = DealLockRegistry()

        async with locks.hold("dp-ab12"):
            assert locks.is_locked("DP-AB12")
            assert len(locks) == 1

        assert not locks.is_locked("DP-AB12")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = DealLockRegistry()

        with pytest.raises(RuntimeError):
            async with locks.hold("DP-AB12"):
                raise RuntimeError("write failed")

        assert len(locks) == 0
        async with locks.hold("DP-AB12"):
            pass
