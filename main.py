#!/usr/bin/env python3
"""
DealPact Escrow Bot - deterministic startup

Startup sequence:
1. Validate configuration (fail fast)
2. Create the Telegram application and register handlers
3. post_init: create tables, wire services, start the reconciliation scheduler
4. Poll until stopped
"""

import logging
import sys

from telegram import Bot, Update
from telegram.ext import Application

from config import Config
from database import AsyncSessionLocal, async_engine, create_tables, test_connection
from handlers.admin_commands import register_admin_handlers
from handlers.deal_commands import register_deal_handlers, register_fallback_handlers
from jobs.deal_reconciliation import DealReconciler
from jobs.scheduler import DealScheduler
from services.arbiter_roster import ArbiterRoster
from services.audit_log import AuditLog
from services.deal_service import DealService
from services.deal_store import DealStore
from services.effect_dispatcher import EffectDispatcher
from services.ledger_client import Web3EscrowLedger
from services.notifier import TelegramNotifier
from services.user_registry import UserRegistry

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def build_deal_service(bot: Bot, session_factory=None) -> DealService:
    """Wire the deal service and its collaborators"""
    session_factory = session_factory or AsyncSessionLocal
    store = DealStore(session_factory)
    users = UserRegistry(session_factory)
    roster = ArbiterRoster(session_factory, Config.SUPERUSER_IDS)
    audit = AuditLog(session_factory)
    ledger = Web3EscrowLedger()
    dispatcher = EffectDispatcher(ledger, TelegramNotifier(bot), users, roster)
    return DealService(store, users, roster, audit, ledger, dispatcher)


async def post_init(application: Application):
    logger.info("🗄️ Initializing database...")
    if not await test_connection():
        raise RuntimeError("Database connection test failed")
    if not await create_tables():
        raise RuntimeError("Table creation failed")

    service = build_deal_service(application.bot)
    scheduler = DealScheduler(DealReconciler(service))
    application.bot_data["deal_service"] = service
    application.bot_data["scheduler"] = scheduler

    scheduler.start()
    logger.info(f"🎉 {Config.PLATFORM_NAME} bot startup complete!")


async def post_shutdown(application: Application):
    scheduler = application.bot_data.get("scheduler")
    if scheduler is not None:
        scheduler.stop()
    await async_engine.dispose()
    logger.info("👋 Shutdown complete")


def create_application() -> Application:
    application = (
        Application.builder()
        .token(Config.BOT_TOKEN)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )
    register_deal_handlers(application)
    register_admin_handlers(application)
    register_fallback_handlers(application)
    return application


def main():
    logger.info(f"🚀 Starting {Config.PLATFORM_NAME} bot...")
    Config.validate_bot_configuration()
    Config.log_environment_config()

    application = create_application()
    logger.info("📡 Starting in polling mode...")
    application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("👋 Bot stopped by user")
    except Exception as e:
        logger.critical(f"❌ Fatal error: {e}")
        sys.exit(1)
