"""
Aggregated swap path: Jupiter quote -> build -> sign -> submit -> confirm.

No retries here; quote and submission errors propagate to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from solana.rpc.async_api import AsyncClient
from solders.keypair import Keypair

from jupiter_api import JupiterAPI, SOL_MINT
from .wallet import LAMPORTS_PER_SOL, sign_and_send

logger = logging.getLogger(__name__)


@dataclass
class SwapQuote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    slippage_bps: int
    price_impact_pct: float = 0.0
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_buy(self) -> bool:
        return self.input_mint == SOL_MINT and self.output_mint != SOL_MINT

    @property
    def sol_amount(self) -> float:
        """SOL leg of the swap (input for buys, output for sells)."""
        if self.input_mint == SOL_MINT:
            return self.in_amount / LAMPORTS_PER_SOL
        if self.output_mint == SOL_MINT:
            return self.out_amount / LAMPORTS_PER_SOL
        return 0.0

    @classmethod
    def from_response(cls, body: Dict[str, Any], slippage_bps: int) -> "SwapQuote":
        return cls(
            input_mint=body.get("inputMint", ""),
            output_mint=body.get("outputMint", ""),
            in_amount=int(body.get("inAmount") or 0),
            out_amount=int(body.get("outAmount") or 0),
            slippage_bps=int(body.get("slippageBps", slippage_bps)),
            price_impact_pct=float(body.get("priceImpactPct") or 0.0),
            raw=body,
        )


@dataclass(frozen=True)
class SwapResult:
    signature: str
    input_amount: int
    output_amount: int


class SwapExecutor:
    def __init__(
        self,
        rpc: AsyncClient,
        keypair: Keypair,
        jupiter: Optional[JupiterAPI] = None,
        priority_fee_lamports: int = 50_000,
    ):
        self.rpc = rpc
        self.keypair = keypair
        self.jupiter = jupiter or JupiterAPI()
        self.priority_fee_lamports = priority_fee_lamports

    @property
    def public_key(self) -> str:
        return str(self.keypair.pubkey())

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int = 300,
        only_direct_routes: bool = False,
    ) -> SwapQuote:
        body = await self.jupiter.get_quote(
            input_mint=input_mint,
            output_mint=output_mint,
            amount=amount,
            slippage_bps=slippage_bps,
            only_direct_routes=only_direct_routes,
        )
        quote = SwapQuote.from_response(body, slippage_bps)
        # echo the request when the aggregator omits mints
        quote.input_mint = quote.input_mint or input_mint
        quote.output_mint = quote.output_mint or output_mint
        return quote

    async def execute(self, quote: SwapQuote) -> SwapResult:
        tx_bytes = await self.jupiter.build_swap_transaction(
            quote.raw,
            user_public_key=self.public_key,
            priority_fee_lamports=self.priority_fee_lamports,
        )
        signature = await sign_and_send(self.rpc, self.keypair, tx_bytes)
        logger.info(
            f"[SWAP] {quote.input_mint[:8]}... -> {quote.output_mint[:8]}... "
            f"in={quote.in_amount} out={quote.out_amount} sig={signature[:16]}..."
        )
        return SwapResult(signature=signature, input_amount=quote.in_amount, output_amount=quote.out_amount)
