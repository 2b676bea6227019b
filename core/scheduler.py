"""
core/scheduler.py
-----------------
Fixed-interval asyncio ticker.  ``stop()`` lets an in-flight call finish;
it never cancels it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional


class Scheduler:
    def __init__(
        self,
        every_ms: int,
        fn: Callable[[], Awaitable[object]],
        logger: Optional[logging.Logger] = None,
        *,
        name: str = "scheduler",
        run_immediately: bool = False,
    ) -> None:
        self.every_s = every_ms / 1000
        self.fn = fn
        self.name = name
        self.run_immediately = run_immediately
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=self.name)
        self.logger.info("⏱️ %s started (every %.1fs)", self.name, self.every_s)

    async def _loop(self) -> None:
        if self.run_immediately:
            await self._tick()
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.every_s)
            except asyncio.TimeoutError:
                await self._tick()

    async def _tick(self) -> None:
        try:
            await self.fn()
        except Exception:
            self.logger.exception("%s tick failed", self.name)

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
            self.logger.info("%s stopped", self.name)
