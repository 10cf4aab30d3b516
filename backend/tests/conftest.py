"""Shared fixtures for trading engine tests."""

from __future__ import annotations

import asyncio
import heapq
from unittest.mock import AsyncMock, MagicMock

import pytest

from jupiter_api import SOL_MINT
from trading.clock import Clock
from trading.config import EngineSettings, SafetyConfig
from trading.swap import SwapQuote, SwapResult

TOKEN_MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
OTHER_MINT = "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN"
WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"

# 2023-11-14 22:13:20 UTC
START_TS = 1_700_000_000.0


class VirtualClock(Clock):
    """Deterministic clock: sleepers wake only when the test advances time."""

    def __init__(self, start: float = START_TS):
        self.now = start
        self._sleepers: list = []
        self._seq = 0

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        fut = asyncio.get_running_loop().create_future()
        self._seq += 1
        heapq.heappush(self._sleepers, (self.now + seconds, self._seq, fut))
        await fut

    async def settle(self, rounds: int = 20):
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float):
        target = self.now + seconds
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, fut = heapq.heappop(self._sleepers)
            self.now = max(self.now, deadline)
            if not fut.done():
                fut.set_result(None)
            await self.settle()
        self.now = target
        await self.settle()

    @property
    def pending(self) -> int:
        return sum(1 for _, _, fut in self._sleepers if not fut.done())


# --- Quote helpers ---


def make_quote(
    input_mint: str = SOL_MINT,
    output_mint: str = TOKEN_MINT,
    in_amount: int = 100_000_000,
    out_amount: int = 1_000_000,
    slippage_bps: int = 300,
) -> SwapQuote:
    return SwapQuote(
        input_mint=input_mint,
        output_mint=output_mint,
        in_amount=in_amount,
        out_amount=out_amount,
        slippage_bps=slippage_bps,
        raw={"inputMint": input_mint, "outputMint": output_mint},
    )


def quoting(out_amount: int = 1_000_000):
    """get_quote side effect echoing the requested pair and amount."""

    async def _quote(input_mint, output_mint, amount, slippage_bps=300, only_direct_routes=False):
        return make_quote(input_mint, output_mint, amount, out_amount, slippage_bps)

    return _quote


async def executing(quote: SwapQuote) -> SwapResult:
    return SwapResult(signature="5igSig", input_amount=quote.in_amount, output_amount=quote.out_amount)


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def safety_config() -> SafetyConfig:
    return SafetyConfig(
        daily_loss_limit_sol=2.0,
        max_drawdown_pct=25.0,
        max_concentration_pct=50.0,
        max_daily_trades=200,
        cooldown_sec=3600,
        max_order_size_sol=5.0,
        max_total_exposure_sol=20.0,
        day_roll_check_sec=60,
    )


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        rpc_url="http://127.0.0.1:8899",
        wallet_encryption_secret="test-secret",
        trigger_poll_sec=10,
    )


@pytest.fixture
def swap() -> MagicMock:
    executor = MagicMock()
    executor.public_key = WALLET
    executor.get_quote = AsyncMock(side_effect=quoting())
    executor.execute = AsyncMock(side_effect=executing)
    return executor


@pytest.fixture
def recorder() -> MagicMock:
    return MagicMock()
