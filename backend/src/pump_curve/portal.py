"""
Pre-graduation trading through PumpPortal's trade-local endpoint: the
service builds an unsigned transaction, we sign and submit it ourselves.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional, Union

import aiohttp
from solana.rpc.async_api import AsyncClient
from solders.keypair import Keypair

from trading.errors import PumpPortalError
from trading.wallet import sign_and_send
from .cache import CurveCache
from .curve_math import TokenPriceInfo, token_price_info
from .curve_parser import BondingCurveState, fetch_curve_state

logger = logging.getLogger(__name__)

PUMPPORTAL_API = "https://pumpportal.fun/api/trade-local"
DEFAULT_SLIPPAGE_PCT = 10
DEFAULT_PRIORITY_FEE_SOL = 0.005


@dataclass(frozen=True)
class PumpTradeResult:
    signature: str
    action: str
    mint: str
    amount: Union[float, str]


class PumpPortalClient:
    def __init__(self, api_url: Optional[str] = None, timeout_sec: float = 10.0):
        self.api_url = api_url or os.getenv("PUMPPORTAL_API_URL", PUMPPORTAL_API)
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)

    async def build_trade_transaction(
        self,
        public_key: str,
        action: str,
        mint: str,
        amount: Union[float, str],
        denominated_in_sol: bool = True,
        slippage_pct: float = DEFAULT_SLIPPAGE_PCT,
        priority_fee_sol: float = DEFAULT_PRIORITY_FEE_SOL,
        pool: str = "auto",
    ) -> bytes:
        """Returns the unsigned serialized VersionedTransaction."""
        payload = {
            "publicKey": public_key,
            "action": action,
            "mint": mint,
            "amount": amount,
            "denominatedInSol": "true" if denominated_in_sol else "false",
            "slippage": slippage_pct,
            "priorityFee": priority_fee_sol,
            "pool": pool,
        }
        status, body = await self._post(payload)
        if status != 200:
            raise PumpPortalError(f"PumpPortal {action} failed: {status} {body!r}", status=status)
        return body

    async def _post(self, payload: dict) -> tuple[int, Union[bytes, str]]:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(self.api_url, json=payload) as resp:
                if resp.status != 200:
                    return resp.status, await resp.text()
                return resp.status, await resp.read()


class PumpTrader:
    def __init__(
        self,
        rpc: AsyncClient,
        keypair: Keypair,
        portal: Optional[PumpPortalClient] = None,
        cache: Optional[CurveCache] = None,
    ):
        self.rpc = rpc
        self.keypair = keypair
        self.portal = portal or PumpPortalClient()
        self.cache = cache or CurveCache()

    async def buy(
        self,
        mint: str,
        sol_amount: float,
        slippage_pct: float = DEFAULT_SLIPPAGE_PCT,
        priority_fee_sol: float = DEFAULT_PRIORITY_FEE_SOL,
    ) -> PumpTradeResult:
        return await self._trade("buy", mint, sol_amount, True, slippage_pct, priority_fee_sol)

    async def sell(
        self,
        mint: str,
        token_amount: Union[float, str],
        slippage_pct: float = DEFAULT_SLIPPAGE_PCT,
        priority_fee_sol: float = DEFAULT_PRIORITY_FEE_SOL,
    ) -> PumpTradeResult:
        # token_amount may be a percentage string such as "100%"
        return await self._trade("sell", mint, token_amount, False, slippage_pct, priority_fee_sol)

    async def get_curve_state(self, mint: str, use_cache: bool = True) -> Optional[BondingCurveState]:
        if use_cache:
            cached = self.cache.get(mint)
            if cached is not None:
                return cached
        state = await fetch_curve_state(self.rpc, mint)
        if state is not None:
            self.cache.set(mint, state, hot=not state.complete)
        return state

    async def get_token_price_info(self, mint: str, sol_price_usd: float = 0.0) -> Optional[TokenPriceInfo]:
        state = await self.get_curve_state(mint)
        if state is None:
            return None
        return token_price_info(state, sol_price_usd)

    async def _trade(
        self,
        action: str,
        mint: str,
        amount: Union[float, str],
        denominated_in_sol: bool,
        slippage_pct: float,
        priority_fee_sol: float,
    ) -> PumpTradeResult:
        tx_bytes = await self.portal.build_trade_transaction(
            public_key=str(self.keypair.pubkey()),
            action=action,
            mint=mint,
            amount=amount,
            denominated_in_sol=denominated_in_sol,
            slippage_pct=slippage_pct,
            priority_fee_sol=priority_fee_sol,
        )
        signature = await sign_and_send(self.rpc, self.keypair, tx_bytes)
        self.cache.invalidate(mint)
        logger.info(f"[PUMP] {action.upper()} {mint[:8]}... amount={amount} sig={signature[:16]}...")
        return PumpTradeResult(signature=signature, action=action, mint=mint, amount=amount)
