"""
Shared fixtures for the DealPact test suite

Key components:
1. In-memory sqlite+aiosqlite database, created fresh per test
2. Services wired around FakeLedger and RecordingNotifier
3. A deal factory for seeding rows in any status
"""

import os

# Must be set before config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import logging
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from database import build_session_factory, create_tables
from models import Deal, DealStatus
from services.arbiter_roster import ArbiterRoster
from services.audit_log import AuditLog
from services.deal_service import DealService
from services.deal_store import DealStore
from services.effect_dispatcher import EffectDispatcher
from services.user_registry import UserRegistry
from tests.deal_test_foundation import (
    ARBITER, ARBITER_ID, BUYER, BUYER_ID, BUYER_WALLET, NOW, OTHER_ARBITER,
    OTHER_ARBITER_ID, SELLER, SELLER_ID, SELLER_WALLET, SUPERUSER, SUPERUSER_ID,
    Clock, FakeLedger, RecordingNotifier,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    assert await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def store(session_factory):
    return DealStore(session_factory)


@pytest.fixture
def users(session_factory):
    return UserRegistry(session_factory)


@pytest.fixture
def roster(session_factory):
    return ArbiterRoster(session_factory, {SUPERUSER_ID})


@pytest.fixture
def audit(session_factory):
    return AuditLog(session_factory)


@pytest.fixture
def dispatcher(ledger, notifier, users, roster):
    return EffectDispatcher(ledger, notifier, users, roster)


@pytest.fixture
def deal_service(store, users, roster, audit, ledger, dispatcher, clock):
    return DealService(store, users, roster, audit, ledger, dispatcher, clock=clock, release_window_hours=24)


@pytest_asyncio.fixture
async def wallets(users):
    """Seller and buyer have both registered wallets"""
    await users.upsert_wallet(SELLER_ID, SELLER.username, SELLER_WALLET)
    await users.upsert_wallet(BUYER_ID, BUYER.username, BUYER_WALLET)


@pytest_asyncio.fixture
async def arbiter_on_roster(users, roster):
    await users.upsert_wallet(ARBITER_ID, ARBITER.username, "0x" + "c" * 40)
    await roster.add(ARBITER_ID, ARBITER.username, SUPERUSER.username)
    await roster.add(OTHER_ARBITER_ID, OTHER_ARBITER.username, SUPERUSER.username)


@pytest.fixture
def make_deal(store):
    """Insert a deal directly in any status; bound to the ledger unless told otherwise"""
    counter = {"n": 0}

    async def factory(status: DealStatus = DealStatus.PENDING_DEPOSIT, bound: bool = True,
                      buyer_known: bool = False, **overrides) -> Deal:
        counter["n"] += 1
        deal_id = overrides.pop("deal_id", f"DP-T{counter['n']:03d}")
        fields = dict(
            deal_id=deal_id,
            seller_telegram_id=SELLER_ID,
            seller_username=SELLER.username,
            buyer_username=BUYER.username,
            buyer_telegram_id=BUYER_ID if buyer_known else None,
            amount=Decimal("50"),
            description="Vintage camera",
            status=status.value,
            version=1,
            created_at=NOW - timedelta(hours=1),
            updated_at=NOW - timedelta(hours=1),
            contract_deal_id=deal_id if bound else None,
            release_reminder_sent=False,
            ledger_action_attempts=0,
        )
        if status in (DealStatus.FUNDED, DealStatus.DISPUTED):
            fields["funded_at"] = NOW - timedelta(hours=1)
        if status == DealStatus.DISPUTED:
            fields.update(
                disputed_by=SELLER.username,
                disputed_by_telegram_id=SELLER_ID,
                dispute_reason="Item not paid for",
                disputed_at=NOW - timedelta(minutes=30),
            )
        fields.update(overrides)
        return await store.insert(Deal(**fields))

    return factory
