import asyncio
import time
from datetime import datetime, timezone


class Clock:
    """Wall-clock time plus an awaitable sleep. Tests substitute a virtual clock."""

    def time(self) -> float:
        return time.time()

    async def sleep(self, seconds: float):
        await asyncio.sleep(seconds)

    def utc_date_key(self) -> str:
        return datetime.fromtimestamp(self.time(), tz=timezone.utc).strftime("%Y-%m-%d")


system_clock = Clock()
