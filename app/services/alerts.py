from __future__ import annotations

import logging
from typing import Iterable

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

logger = logging.getLogger(__name__)


class AdminNotifier:
    """Delivers operator alerts to Telegram admin chats; logs only when no bot is configured."""

    def __init__(self, bot: Bot | None = None, admin_ids: Iterable[int] = ()):
        self._bot = bot
        self._admin_ids = list(admin_ids)

    async def notify(self, message: str) -> None:
        logger.warning("Admin alert: %s", message)
        if not self._bot:
            return
        for admin_id in self._admin_ids:
            try:
                await self._bot.send_message(admin_id, message)
            except TelegramAPIError:
                logger.exception("Failed to deliver admin alert: admin_id=%s", admin_id)

    async def close(self) -> None:
        if self._bot:
            await self._bot.session.close()
