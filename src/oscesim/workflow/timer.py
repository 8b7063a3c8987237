"""
Countdown — The per-run exam clock.

Each run owns one Countdown: an asyncio task that sleeps until the
monotonic deadline and then fires the expiry callback once. The handle is
cancelled on every terminal transition.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class Countdown:
    """Cancellable, single-shot countdown bound to a monotonic deadline."""

    def __init__(self, seconds: float, on_expire: Callable[[], Awaitable[object]]):
        self.seconds = max(0.0, float(seconds))
        self._deadline = time.monotonic() + self.seconds
        self._on_expire = on_expire
        self._task: asyncio.Task | None = None
        self.fired = False

    def start(self) -> Countdown:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self

    def remaining(self) -> float:
        """Seconds left; never negative."""
        if self.fired:
            return 0.0
        return max(0.0, self._deadline - time.monotonic())

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        """Stop the clock. Safe to call repeatedly and from the expiry callback."""
        task = self._task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()

    async def wait(self) -> None:
        """Wait until the countdown has fired or been cancelled."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        await asyncio.sleep(self.remaining())
        self.fired = True
        try:
            await self._on_expire()
        except Exception:
            logger.exception("Countdown expiry handler failed")
