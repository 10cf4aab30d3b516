"""
Cancellable periodic/one-shot timers driven by an injectable clock.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .clock import Clock, system_clock

logger = logging.getLogger(__name__)


class Ticker:
    """
    Runs `callback` every `interval_sec` on its own asyncio task until stopped.
    With repeat=False the callback runs once after the delay.
    """

    def __init__(
        self,
        interval_sec: float,
        callback: Callable[[], Awaitable[None]],
        clock: Optional[Clock] = None,
        name: str = "ticker",
        repeat: bool = True,
    ):
        if interval_sec <= 0:
            raise ValueError("interval_sec must be positive")
        self.interval_sec = interval_sec
        self.callback = callback
        self.clock = clock or system_clock
        self.name = name
        self.repeat = repeat
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None
        self._in_callback: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stopped.is_set()

    def start(self):
        if self.running:
            return
        self._stopped = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def stop(self):
        """
        Stop ticking. A sleeping loop is cancelled right away; a callback that
        is already running finishes first and the loop exits after it.
        """
        self._stopped.set()
        task = self._task
        if task is None or task.done():
            return
        if task is not self._in_callback:
            task.cancel()

    async def wait_stopped(self):
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self):
        stopped = self._stopped
        while not stopped.is_set():
            await self.clock.sleep(self.interval_sec)
            if stopped.is_set():
                break
            self.ticks += 1
            task = asyncio.current_task()
            self._in_callback = task
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[TICKER] {self.name} callback error: {e}")
            finally:
                if self._in_callback is task:
                    self._in_callback = None
            if not self.repeat:
                stopped.set()
