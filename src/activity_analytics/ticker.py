"""Fixed-interval background ticks."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTick:
    """Invoke an async callback every ``interval`` until stopped."""

    def __init__(
        self, name: str, interval: timedelta, callback: Callable[[], Awaitable[None]]
    ) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task[None]] = None

    def is_running(self) -> bool:
        return bool(self._task and not self._task.done())

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event), name=f"tick-{self.name}")
        logger.debug("Started %s tick every %.1fs", self.name, self.interval.total_seconds())

    async def stop(self) -> None:
        task, stop_event = self._task, self._stop_event
        self._task = None
        self._stop_event = None
        if task is None or stop_event is None:
            return
        stop_event.set()
        await task
        logger.debug("Stopped %s tick", self.name)

    async def _run(self, stop_event: asyncio.Event) -> None:
        seconds = self.interval.total_seconds()
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=seconds)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self._callback()
            except Exception:
                logger.exception("Error during %s tick", self.name)
