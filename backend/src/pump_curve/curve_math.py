from dataclasses import dataclass
from typing import Optional

from .curve_parser import BondingCurveState

LAMPORTS_PER_SOL = 1_000_000_000
TOKEN_DECIMALS = 6
TOKEN_UNIT = 10**TOKEN_DECIMALS
TOTAL_SUPPLY_TOKENS = 1_000_000_000
BONDING_SUPPLY_TOKENS = 800_000_000
DEFAULT_FEE_BPS = 100
BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class BuyQuote:
    tokens_out: float
    sol_cost: float
    fee: float
    price_per_token: float
    price_impact: float


@dataclass(frozen=True)
class SellQuote:
    sol_out: float
    fee: float
    price_impact: float
    token_amount: float


@dataclass(frozen=True)
class TokenPriceInfo:
    price_in_sol: float
    price_in_usd: float
    market_cap_sol: float
    market_cap_usd: float
    bonding_progress: float
    graduated: bool
    liquidity_sol: float
    tokens_remaining: float

    def to_dict(self) -> dict:
        return dict(self.__dict__)


def calculate_price(state: Optional[BondingCurveState]) -> float:
    """
    Spot price in SOL per whole token.
    """
    if not state or state.virtual_token_reserves == 0:
        return 0.0
    sol_reserves = state.virtual_sol_reserves / LAMPORTS_PER_SOL
    token_reserves = state.virtual_token_reserves / TOKEN_UNIT
    return sol_reserves / token_reserves


def calculate_buy_quote(
    state: Optional[BondingCurveState], sol_amount: float, fee_bps: int = DEFAULT_FEE_BPS
) -> Optional[BuyQuote]:
    """
    Constant product with the protocol fee taken from the SOL input:
    tokens_out = V_token * net_sol / (V_sol + net_sol)
    """
    if not state:
        return None
    sol_lamports = int(sol_amount * LAMPORTS_PER_SOL)
    fee = sol_lamports * fee_bps // BPS_DENOMINATOR
    net_sol = sol_lamports - fee
    denominator = state.virtual_sol_reserves + net_sol
    tokens_out_raw = state.virtual_token_reserves * net_sol // denominator if denominator else 0
    tokens_out = tokens_out_raw / TOKEN_UNIT
    price_per_token = sol_amount / tokens_out if tokens_out > 0 else 0.0

    old_price = calculate_price(state)
    price_impact = (price_per_token - old_price) / old_price * 100 if old_price > 0 else 0.0
    return BuyQuote(
        tokens_out=tokens_out,
        sol_cost=sol_amount,
        fee=fee / LAMPORTS_PER_SOL,
        price_per_token=price_per_token,
        price_impact=price_impact,
    )


def calculate_sell_quote(
    state: Optional[BondingCurveState], token_amount: float, fee_bps: int = DEFAULT_FEE_BPS
) -> Optional[SellQuote]:
    """
    Constant product with the protocol fee taken from the SOL output:
    sol_out = V_sol * tokens / (V_token + tokens) - fee
    """
    if not state:
        return None
    token_raw = int(token_amount * TOKEN_UNIT)
    denominator = state.virtual_token_reserves + token_raw
    sol_out = state.virtual_sol_reserves * token_raw // denominator if denominator else 0
    fee = sol_out * fee_bps // BPS_DENOMINATOR
    net_sol = sol_out - fee

    old_price = calculate_price(state)
    new_token_reserves = denominator / TOKEN_UNIT
    new_sol_reserves = (state.virtual_sol_reserves - sol_out) / LAMPORTS_PER_SOL
    new_price = new_sol_reserves / new_token_reserves if new_token_reserves > 0 else 0.0
    price_impact = (old_price - new_price) / old_price * 100 if old_price > 0 else 0.0
    return SellQuote(
        sol_out=net_sol / LAMPORTS_PER_SOL,
        fee=fee / LAMPORTS_PER_SOL,
        price_impact=price_impact,
        token_amount=token_amount,
    )


def bonding_progress(state: Optional[BondingCurveState]) -> float:
    """Fraction of the bonding supply already sold, clamped to [0, 1]."""
    if not state:
        return 0.0
    bonding_supply = BONDING_SUPPLY_TOKENS * TOKEN_UNIT
    sold = bonding_supply - state.real_token_reserves
    return min(1.0, max(0.0, sold / bonding_supply))


def token_price_info(state: BondingCurveState, sol_price_usd: float = 0.0) -> TokenPriceInfo:
    price_in_sol = calculate_price(state)
    price_in_usd = price_in_sol * sol_price_usd
    return TokenPriceInfo(
        price_in_sol=price_in_sol,
        price_in_usd=price_in_usd,
        market_cap_sol=price_in_sol * TOTAL_SUPPLY_TOKENS,
        market_cap_usd=price_in_usd * TOTAL_SUPPLY_TOKENS,
        bonding_progress=bonding_progress(state),
        graduated=state.complete,
        liquidity_sol=state.real_sol_reserves / LAMPORTS_PER_SOL,
        tokens_remaining=state.real_token_reserves / TOKEN_UNIT,
    )
