"""
Wallet log subscription: `logsSubscribe` over the RPC websocket for one
address, publishing confirmed, successful, de-duplicated signatures into a
shared queue.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional

import websockets

from .clock import Clock, system_clock

logger = logging.getLogger(__name__)

MAX_SEEN_SIGNATURES = 5000
RECONNECT_DELAY_SEC = 2.0


@dataclass(frozen=True)
class LogEvent:
    target_id: str
    signature: str


class LogSubscription:
    def __init__(
        self,
        target_id: str,
        address: str,
        ws_url: str,
        queue: "asyncio.Queue[LogEvent]",
        clock: Optional[Clock] = None,
        connect: Optional[Callable[..., Any]] = None,
        commitment: str = "confirmed",
    ):
        self.target_id = target_id
        self.address = address
        self.ws_url = ws_url
        self.queue = queue
        self.clock = clock or system_clock
        self.commitment = commitment
        self._connect = connect or websockets.connect
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self.events_received = 0
        self.events_published = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"logs-{self.address[:8]}"
        )

    def stop(self):
        self._running = False
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()

    async def _run(self):
        logger.info(f"[COPY] Subscribing to logs of {self.address[:8]}...")
        while self._running:
            try:
                await self._connect_and_listen()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[COPY] Log stream error for {self.address[:8]}...: {e}")
            if self._running:
                await self.clock.sleep(RECONNECT_DELAY_SEC)

    async def _connect_and_listen(self):
        async with self._connect(
            self.ws_url,
            ping_interval=20,
            ping_timeout=10,
            max_size=10_000_000,
        ) as ws:
            self._ws = ws
            await ws.send(json.dumps(self.subscribe_request()))
            async for message in ws:
                if not self._running:
                    break
                self.handle_message(message)

    def subscribe_request(self) -> dict:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "logsSubscribe",
            "params": [{"mentions": [self.address]}, {"commitment": self.commitment}],
        }

    def handle_message(self, message: str) -> Optional[LogEvent]:
        """Parse one websocket frame; publishes and returns the event, if any."""
        try:
            data = json.loads(message)
        except (TypeError, ValueError):
            return None
        if data.get("method") != "logsNotification":
            if "result" in data and "id" in data:
                logger.debug(f"[COPY] Subscription {data['result']} active for {self.address[:8]}...")
            return None

        value = ((data.get("params") or {}).get("result") or {}).get("value") or {}
        signature = value.get("signature")
        if not signature or value.get("err") is not None:
            return None
        self.events_received += 1
        if signature in self._seen:
            return None
        self._seen[signature] = None
        if len(self._seen) > MAX_SEEN_SIGNATURES:
            self._seen.popitem(last=False)

        event = LogEvent(target_id=self.target_id, signature=signature)
        self.queue.put_nowait(event)
        self.events_published += 1
        return event
