"""Telegram bot delivery of digests and operator notifications."""

from __future__ import annotations

import asyncio

import structlog
from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from channeldigest.config import AppConfig
from channeldigest.errors import PosterError

logger = structlog.get_logger(__name__)

MAX_MESSAGE_LENGTH = 4096
MAX_CAPTION_LENGTH = 1024


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split on line boundaries so no part exceeds ``limit``; overlong lines are cut hard."""
    if len(text) <= limit:
        return [text]

    parts: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > limit:
            if current:
                parts.append(current)
                current = ""
            parts.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) > limit:
            parts.append(current)
            current = ""
        current += line
    if current:
        parts.append(current)
    return [part for part in parts if part.strip()]


class TelegramPoster:
    """Posts digests to a chat and notifications to the admin chat."""

    def __init__(self, bot_token: str, admin_chat_id: int = 0) -> None:
        if not bot_token:
            raise ValueError("TELEGRAM_BOT_TOKEN not configured. Check .env file.")
        self.bot_token = bot_token
        self.admin_chat_id = admin_chat_id

    @classmethod
    def from_config(cls, config: AppConfig) -> "TelegramPoster":
        return cls(config.telegram_bot_token, config.admin_chat_id)

    async def send_digest_async(self, chat_id: int, text: str, digest_id: str) -> int:
        """Send the digest text; returns the id of the first message."""
        bot = Bot(token=self.bot_token)
        first_id = 0
        try:
            for part in split_message(text):
                message = await bot.send_message(
                    chat_id=chat_id,
                    text=part,
                    parse_mode=ParseMode.HTML,
                    disable_web_page_preview=True,
                )
                first_id = first_id or message.message_id
        except TelegramError as e:
            logger.error("telegram_send_failed", error=str(e), chat_id=chat_id, digest_id=digest_id)
            raise PosterError(f"telegram send failed: {e}") from e

        logger.info("telegram_sent", chat_id=chat_id, digest_id=digest_id, message_id=first_id)
        return first_id

    async def send_digest_with_image_async(self, chat_id: int, text: str, digest_id: str, image: bytes) -> int:
        """Send a cover image; short digests ride in the caption, longer ones follow as text."""
        bot = Bot(token=self.bot_token)
        try:
            if len(text) <= MAX_CAPTION_LENGTH:
                message = await bot.send_photo(chat_id=chat_id, photo=image, caption=text, parse_mode=ParseMode.HTML)
                logger.info("telegram_sent", chat_id=chat_id, digest_id=digest_id, message_id=message.message_id)
                return message.message_id
            photo = await bot.send_photo(chat_id=chat_id, photo=image)
        except TelegramError as e:
            logger.error("telegram_photo_failed", error=str(e), chat_id=chat_id, digest_id=digest_id)
            raise PosterError(f"telegram photo send failed: {e}") from e

        message_id = await self.send_digest_async(chat_id, text, digest_id)
        return message_id or photo.message_id

    async def send_notification_async(self, text: str) -> None:
        if not self.admin_chat_id:
            logger.warning("telegram_notification_skipped", reason="admin chat not configured")
            return
        bot = Bot(token=self.bot_token)
        try:
            for part in split_message(text):
                await bot.send_message(
                    chat_id=self.admin_chat_id,
                    text=part,
                    parse_mode=ParseMode.HTML,
                    disable_web_page_preview=True,
                )
        except TelegramError as e:
            logger.error("telegram_notification_failed", error=str(e), chat_id=self.admin_chat_id)
            raise PosterError(f"telegram notification failed: {e}") from e

    def send_digest(self, chat_id: int, text: str, digest_id: str) -> int:
        """Sync wrapper."""
        return asyncio.run(self.send_digest_async(chat_id, text, digest_id))

    def send_digest_with_image(self, chat_id: int, text: str, digest_id: str, image: bytes) -> int:
        """Sync wrapper."""
        return asyncio.run(self.send_digest_with_image_async(chat_id, text, digest_id, image))

    def send_notification(self, text: str) -> None:
        """Sync wrapper."""
        asyncio.run(self.send_notification_async(text))
