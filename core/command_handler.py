"""
command_handler.py
==================
Telegram command surface for the paper engine.

Polls bot updates on a :class:`Scheduler`, persists the update offset before
acting on a batch (a crash never replays a command) and answers:

/status, /xsp   open positions + live totals
/scan           run a manual cycle through the shared cycle guard
/alerts         replay the last 5 stored alerts, oldest first
/help, /start   command list
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional

from core.scheduler import Scheduler
from models.config import AppConfig
from module.persistence.sqlite import PaperStore
from modules.engine import PaperEngine
from notifiers import messages
from notifiers.base import BaseNotifier, IncomingMessage
from utils.time import now_ms

ALERT_REPLAY_COUNT = 5


def normalize_command(text: str) -> str:
    """``/Scan@my_bot extra`` -> ``/scan``; empty for non-commands."""
    if not text or not text.startswith("/"):
        return ""
    return text.split()[0].split("@", 1)[0].lower()


class CommandService:
    def __init__(
        self,
        config: AppConfig,
        engine: PaperEngine,
        store: PaperStore,
        notifier: BaseNotifier,
        logger: Optional[logging.Logger] = None,
        *,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.config = config
        self.engine = engine
        self.store = store
        self.notifier = notifier
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.clock = clock or now_ms
        self.offset_key = f"{config.strategy.id}:telegram_offset"
        self.allowed_chat = str(config.telegram.chat_id) if config.telegram.chat_id else None
        self.scheduler = Scheduler(
            config.telegram.command_poll_ms, self.poll_once, self.logger, name="telegram-commands"
        )
        self.handlers: Dict[str, Callable[[IncomingMessage], Awaitable[None]]] = {
            "/status": self._status,
            "/xsp": self._status,
            "/scan": self._scan,
            "/alerts": self._alerts,
            "/help": self._help,
            "/start": self._help,
        }

    def start(self) -> None:
        if not self.notifier.enabled:
            self.logger.info("Telegram disabled – command service not started")
            return
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    async def poll_once(self) -> int:
        """Fetch and handle one batch of updates; returns how many were handled."""
        offset = self.store.get_runtime_int(self.offset_key)
        updates = await self.notifier.get_updates(offset)
        if not updates:
            return 0

        next_offset = max(u.update_id for u in updates) + 1
        self.store.set_runtime_value(self.offset_key, str(next_offset))

        handled = 0
        for msg in sorted(updates, key=lambda u: u.update_id):
            if self.allowed_chat and msg.chat_id != self.allowed_chat:
                self.logger.debug("ignoring update %s from chat %s", msg.update_id, msg.chat_id)
                continue
            handler = self.handlers.get(normalize_command(msg.text))
            if handler is None:
                continue
            try:
                await handler(msg)
                handled += 1
            except Exception:
                self.logger.exception("command %r failed", msg.text)
        return handled

    # ------------------------------------------------------------------ #
    async def _status(self, msg: IncomingMessage) -> None:
        strat = self.config.strategy
        summary = self.store.get_summary(strat.starting_equity_usd)
        rows = self.store.get_open_positions()
        text = messages.format_status_command(strat.title, summary, rows, self.clock())
        await self.notifier.send(text, msg.chat_id)

    async def _scan(self, msg: IncomingMessage) -> None:
        await self.notifier.send("Manual scan requested. Running now...", msg.chat_id)
        result = await self.engine.run_cycle("manual")
        if result.executed:
            await self.notifier.send("Manual scan complete.", msg.chat_id)
        else:
            await self.notifier.send(f"Manual scan skipped ({result.reason or 'unknown'}).", msg.chat_id)

    async def _alerts(self, msg: IncomingMessage) -> None:
        alerts = self.store.get_recent_alerts(ALERT_REPLAY_COUNT)
        if not alerts:
            await self.notifier.send("No alerts found in DB yet.", msg.chat_id)
            return
        plural = "" if len(alerts) == 1 else "s"
        await self.notifier.send(f"Resending last {len(alerts)} alert{plural}...", msg.chat_id)
        for alert in reversed(alerts):
            text = alert.message_text.replace("<=", "≤").replace(">=", "≥")
            await self.notifier.send(text, msg.chat_id)

    async def _help(self, msg: IncomingMessage) -> None:
        await self.notifier.send(messages.format_help(self.config.strategy.title), msg.chat_id)
