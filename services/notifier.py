"""
Telegram notifier

Fire-and-forget delivery of deal notifications. ``send`` never raises: a user who
blocked the bot or a Telegram outage must not fail the lifecycle action that
triggered the message.
"""

import asyncio
import logging
from typing import Optional

from telegram import Bot
from telegram.error import BadRequest, Forbidden, TelegramError

from config import Config

logger = logging.getLogger(__name__)


class TelegramNotifier:
    def __init__(self, bot: Bot, timeout: float = None):
        self.bot = bot
        self.timeout = timeout or Config.NOTIFY_TIMEOUT_SECONDS

    async def send(self, telegram_id: Optional[int], text: str) -> bool:
        """Send a plain-text message; True if Telegram accepted it"""
        if not telegram_id:
            logger.info("📭 NOTIFY_SKIPPED: no Telegram ID for recipient")
            return False
        try:
            await asyncio.wait_for(self.bot.send_message(chat_id=telegram_id, text=text), timeout=self.timeout)
            logger.info(f"✅ TELEGRAM_SENT: user={telegram_id}")
            return True
        except Forbidden:
            logger.info(f"User {telegram_id} has blocked the bot")
        except BadRequest as e:
            logger.info(f"Bad request for user {telegram_id}: {e}")
        except TelegramError as e:
            logger.error(f"❌ TELEGRAM_ERROR: user={telegram_id}, error={e}")
        except asyncio.TimeoutError:
            logger.error(f"❌ TELEGRAM_TIMEOUT: user={telegram_id} after {self.timeout}s")
        except Exception as e:
            logger.error(f"❌ TELEGRAM_UNEXPECTED: user={telegram_id}, error={e}")
        return False

    async def send_photo(self, telegram_id: int, file_id: str, caption: Optional[str] = None) -> bool:
        try:
            await asyncio.wait_for(
                self.bot.send_photo(chat_id=telegram_id, photo=file_id, caption=caption), timeout=self.timeout
            )
            return True
        except (TelegramError, asyncio.TimeoutError) as e:
            logger.error(f"❌ TELEGRAM_PHOTO_ERROR: user={telegram_id}, error={e}")
            return False
