"""Configuration management for the DealPact Escrow Bot"""

import os
import logging
from decimal import Decimal
from typing import FrozenSet

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _parse_id_list(raw: str) -> FrozenSet[int]:
    """Parse a comma separated list of Telegram IDs, ignoring blanks"""
    ids = set()
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            ids.add(int(chunk))
        except ValueError:
            logger.error(f"❌ Ignoring invalid Telegram ID in ADMIN_TELEGRAM_IDS: {chunk!r}")
    return frozenset(ids)


class Config:
    """Application configuration"""

    PLATFORM_NAME = os.getenv("PLATFORM_NAME", "DealPact")

    # Bot token
    BOT_TOKEN = os.getenv("BOT_TOKEN") or os.getenv("TELEGRAM_BOT_TOKEN")

    # Database - async drivers only (aiosqlite locally, asyncpg in production)
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./dealpact.db")
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)
    if DATABASE_URL.startswith("postgresql://"):
        DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        # asyncpg uses 'ssl' instead of 'sslmode'
        DATABASE_URL = DATABASE_URL.replace("sslmode=", "ssl=")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Ledger (escrow contract on Base)
    RPC_URL = os.getenv("RPC_URL", "https://sepolia.base.org")
    CHAIN_ID = int(os.getenv("CHAIN_ID", "84532"))
    CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS")
    PRIVATE_KEY = os.getenv("PRIVATE_KEY")
    TOKEN_DECIMALS = int(os.getenv("TOKEN_DECIMALS", "6"))
    LEDGER_GAS_LIMIT = int(os.getenv("LEDGER_GAS_LIMIT", "400000"))
    LEDGER_TIMEOUT_SECONDS = float(os.getenv("LEDGER_TIMEOUT_SECONDS", "20"))
    LEDGER_CONFIRM_TIMEOUT_SECONDS = float(os.getenv("LEDGER_CONFIRM_TIMEOUT_SECONDS", "120"))
    LEDGER_MAX_RETRY_ATTEMPTS = int(os.getenv("LEDGER_MAX_RETRY_ATTEMPTS", "10"))

    # Superusers (botmasters) - Telegram IDs are immutable, usernames are not
    SUPERUSER_IDS: FrozenSet[int] = _parse_id_list(os.getenv("ADMIN_TELEGRAM_IDS", ""))

    # Links
    FRONTEND_URL = os.getenv("FRONTEND_URL", "https://nobrakesnft.github.io/DealPact")
    EXPLORER_TX_URL = os.getenv("EXPLORER_TX_URL", "https://sepolia.basescan.org/tx/")

    # Deal terms
    DEAL_ID_PREFIX = "DP"
    CURRENCY = os.getenv("DEAL_CURRENCY", "USDC")
    MIN_DEAL_AMOUNT = Decimal(os.getenv("MIN_DEAL_AMOUNT", "1"))
    MAX_DEAL_AMOUNT = Decimal(os.getenv("MAX_DEAL_AMOUNT", "500"))
    ESCROW_FEE_PERCENTAGE = Decimal(os.getenv("ESCROW_FEE_PERCENTAGE", "1.0"))

    # Reconciliation
    RECONCILIATION_INTERVAL_SECONDS = int(os.getenv("RECONCILIATION_INTERVAL_SECONDS", "30"))
    RELEASE_WINDOW_HOURS = int(os.getenv("RELEASE_WINDOW_HOURS", "24"))

    # Notifications and chat
    NOTIFY_TIMEOUT_SECONDS = float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "10"))
    UNKNOWN_COMMAND_COOLDOWN_SECONDS = float(os.getenv("UNKNOWN_COMMAND_COOLDOWN_SECONDS", "5"))

    @staticmethod
    def log_environment_config():
        """Log current configuration for debugging (no secrets)"""
        logger.info("🔧 DealPact Configuration:")
        logger.info(f"   Database: {Config.DATABASE_URL.split('://')[0]}")
        logger.info(f"   RPC: {Config.RPC_URL} (chain {Config.CHAIN_ID})")
        logger.info(f"   Contract: {Config.CONTRACT_ADDRESS}")
        logger.info(f"   Superusers: {len(Config.SUPERUSER_IDS)} configured")
        logger.info(f"   Deal range: {Config.MIN_DEAL_AMOUNT}-{Config.MAX_DEAL_AMOUNT} {Config.CURRENCY}")
        logger.info(f"   Fee: {Config.ESCROW_FEE_PERCENTAGE}% (advisory)")
        logger.info(
            f"   Reconciliation every {Config.RECONCILIATION_INTERVAL_SECONDS}s, "
            f"release window {Config.RELEASE_WINDOW_HOURS}h"
        )

    @staticmethod
    def validate_bot_configuration():
        """Validate required configuration and fail fast with a helpful message"""
        required = {
            "BOT_TOKEN": Config.BOT_TOKEN,
            "CONTRACT_ADDRESS": Config.CONTRACT_ADDRESS,
            "PRIVATE_KEY": Config.PRIVATE_KEY,
            "ADMIN_TELEGRAM_IDS": Config.SUPERUSER_IDS,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            logger.critical(f"❌ FATAL: Missing required configuration: {', '.join(missing)}")
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")

        if Config.MIN_DEAL_AMOUNT <= 0 or Config.MIN_DEAL_AMOUNT > Config.MAX_DEAL_AMOUNT:
            logger.critical(
                f"❌ FATAL: Invalid deal bounds {Config.MIN_DEAL_AMOUNT}-{Config.MAX_DEAL_AMOUNT}"
            )
            raise ValueError("MIN_DEAL_AMOUNT must be positive and not exceed MAX_DEAL_AMOUNT")

        return True
