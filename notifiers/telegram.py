# notifiers/telegram.py
import logging
from typing import List, Optional

from telegram import Bot, LinkPreviewOptions
from telegram.error import TelegramError

from models.config import TelegramSection
from notifiers.base import BaseNotifier, IncomingMessage

logger = logging.getLogger(__name__)


class TelegramNotifier(BaseNotifier):
    """Bot API sink. Failures are logged and reported as ``None``, never raised."""

    def __init__(self, config: TelegramSection, bot: Optional[Bot] = None):
        self.chat_id = config.chat_id
        self.parse_mode = config.parse_mode
        self.enabled = bool(config.enabled and config.token and config.chat_id)
        self.bot = bot
        if self.enabled and self.bot is None:
            self.bot = Bot(token=config.token)

    async def start(self) -> None:
        if not self.enabled or self.bot is None:
            return
        try:
            await self.bot.initialize()
            # quick sanity-check
            me = await self.bot.get_me()
            logger.info("Telegram bot ready: @%s", getattr(me, "username", "?"))
        except TelegramError as exc:
            logger.warning("Telegram init failed – disabling backend: %s", exc)
            self.enabled = False

    async def send(self, text: str, chat_id: Optional[str] = None) -> Optional[int]:
        if not self.enabled or self.bot is None:
            return None
        try:
            message = await self.bot.send_message(
                chat_id=chat_id or self.chat_id,
                text=text,
                parse_mode=self.parse_mode,
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )
        except TelegramError as exc:
            logger.warning("Telegram send failed: %s", exc)
            return None
        return getattr(message, "message_id", None)

    async def get_updates(self, offset: int) -> List[IncomingMessage]:
        if not self.enabled or self.bot is None:
            return []
        try:
            updates = await self.bot.get_updates(offset=offset, timeout=0, allowed_updates=["message"])
        except TelegramError as exc:
            logger.warning("Telegram getUpdates failed: %s", exc)
            return []

        out: List[IncomingMessage] = []
        for upd in updates:
            message = upd.message
            text = message.text if message is not None else None
            chat = message.chat if message is not None else None
            out.append(IncomingMessage(
                update_id=upd.update_id,
                chat_id=str(chat.id) if chat is not None else "",
                text=text or "",
            ))
        return out

    async def close(self) -> None:
        if self.bot is None:
            return
        try:
            await self.bot.shutdown()
        except TelegramError as exc:
            logger.warning("Telegram shutdown failed: %s", exc)
