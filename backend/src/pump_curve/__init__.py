from .curve_parser import (
    BONDING_CURVE_LAYOUT,
    PUMP_PROGRAM_ID,
    BondingCurveState,
    derive_curve_address,
    fetch_curve_state,
    parse_curve_account,
)
from .curve_math import (
    BuyQuote,
    SellQuote,
    TokenPriceInfo,
    bonding_progress,
    calculate_buy_quote,
    calculate_price,
    calculate_sell_quote,
    token_price_info,
)
from .cache import CurveCache
from .portal import PumpPortalClient, PumpTradeResult, PumpTrader

__all__ = [
    "BONDING_CURVE_LAYOUT",
    "PUMP_PROGRAM_ID",
    "BondingCurveState",
    "derive_curve_address",
    "fetch_curve_state",
    "parse_curve_account",
    "BuyQuote",
    "SellQuote",
    "TokenPriceInfo",
    "bonding_progress",
    "calculate_buy_quote",
    "calculate_price",
    "calculate_sell_quote",
    "token_price_info",
    "CurveCache",
    "PumpPortalClient",
    "PumpTradeResult",
    "PumpTrader",
]
