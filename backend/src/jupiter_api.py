"""
Jupiter Aggregator Integration
Swap quotes, swap transaction building and batch spot prices
"""

from __future__ import annotations

import base64
import logging
import os
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from trading.errors import PriceFeedError, QuoteError, SwapError

logger = logging.getLogger(__name__)

JUPITER_SWAP_API = "https://lite-api.jup.ag/swap/v1"
JUPITER_PRICE_API = "https://api.jup.ag/price/v2"

SOL_MINT = "So11111111111111111111111111111111111111112"

# price API accepts a bounded id list per request
PRICE_BATCH_SIZE = 100


class JupiterAPI:
    def __init__(
        self,
        swap_url: Optional[str] = None,
        price_url: Optional[str] = None,
        timeout_sec: float = 10.0,
    ):
        self.swap_url = (swap_url or os.getenv("JUPITER_API_URL", JUPITER_SWAP_API)).rstrip("/")
        self.price_url = price_url or os.getenv("JUPITER_PRICE_API_URL", JUPITER_PRICE_API)
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int = 300,
        only_direct_routes: bool = False,
    ) -> Dict[str, Any]:
        """
        Fetch a full quote (raw response) for swap construction.
        Raises QuoteError on any non-200 response.
        """
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount)),
            "slippageBps": str(int(slippage_bps)),
        }
        if only_direct_routes:
            params["onlyDirectRoutes"] = "true"
        status, body = await self._request("GET", f"{self.swap_url}/quote", params=params)
        if status != 200:
            raise QuoteError(f"Jupiter quote failed: {status} {body}", status=status)
        return body

    async def build_swap_transaction(
        self,
        quote_response: Dict[str, Any],
        user_public_key: str,
        priority_fee_lamports: int = 50_000,
    ) -> bytes:
        """
        Ask Jupiter to build the swap transaction for a quote.
        Returns the unsigned serialized VersionedTransaction.
        """
        payload = {
            "quoteResponse": quote_response,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": True,
            "prioritizationFeeLamports": priority_fee_lamports,
            "dynamicComputeUnitLimit": True,
        }
        status, body = await self._request("POST", f"{self.swap_url}/swap", json_body=payload)
        if status != 200:
            raise SwapError(f"Jupiter swap failed: {status} {body}", status=status)
        swap_tx = body.get("swapTransaction") if isinstance(body, dict) else None
        if not swap_tx:
            raise SwapError("Jupiter swap response missing swapTransaction")
        return base64.b64decode(swap_tx)

    async def get_price(self, mint: str) -> Optional[float]:
        prices = await self.get_prices([mint])
        return prices.get(mint)

    async def get_prices(self, mints: Iterable[str]) -> Dict[str, float]:
        """
        Batch spot price lookup. Mints without a price are omitted from the result.
        """
        mints = list(dict.fromkeys(mints))
        prices: Dict[str, float] = {}
        for i in range(0, len(mints), PRICE_BATCH_SIZE):
            batch = mints[i : i + PRICE_BATCH_SIZE]
            status, body = await self._request("GET", self.price_url, params={"ids": ",".join(batch)})
            if status != 200:
                raise PriceFeedError(f"Jupiter price failed: {status} {body}", status=status)
            prices.update(parse_price_response(body, batch))
        return prices

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> tuple[int, Any]:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.request(method, url, params=params, json=json_body) as resp:
                if resp.status != 200:
                    return resp.status, await resp.text()
                return resp.status, await resp.json()


def parse_price_response(body: Any, mints: List[str]) -> Dict[str, float]:
    data = body.get("data") if isinstance(body, dict) else None
    data = data or {}
    prices: Dict[str, float] = {}
    for mint in mints:
        entry = data.get(mint) or {}
        raw = entry.get("price") if isinstance(entry, dict) else None
        try:
            price = float(raw) if raw is not None else 0.0
        except (TypeError, ValueError):
            logger.debug(f"[JUPITER] Unparseable price for {mint[:8]}...: {raw!r}")
            continue
        if price > 0:
            prices[mint] = price
    return prices
