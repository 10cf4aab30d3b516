from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class CheckRule(Enum):
    KILLED = "killed"
    COOLDOWN = "cooldown"
    MAX_ORDER_SIZE = "max_order_size"
    DAILY_TRADE_LIMIT = "daily_trade_limit"
    DAILY_LOSS = "daily_loss"
    EXPOSURE = "exposure"
    CONCENTRATION = "concentration"


@dataclass(frozen=True)
class TradeCheck:
    allowed: bool
    reason: Optional[str] = None
    rule: Optional[CheckRule] = None

    def __bool__(self) -> bool:
        return self.allowed

    def to_dict(self) -> dict:
        d = {"allowed": self.allowed}
        if self.reason:
            d["reason"] = self.reason
        if self.rule:
            d["rule"] = self.rule.value
        return d


ALLOWED = TradeCheck(allowed=True)


class TradingError(Exception):
    pass


class UpstreamError(TradingError):
    """Quote, swap, price-feed or RPC failure reported by an external service."""

    service = "upstream"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class QuoteError(UpstreamError):
    service = "jupiter_quote"


class SwapError(UpstreamError):
    service = "jupiter_swap"


class PriceFeedError(UpstreamError):
    service = "jupiter_price"


class PumpPortalError(UpstreamError):
    service = "pumpportal"


class PolicyRejected(TradingError):
    def __init__(self, check: TradeCheck):
        super().__init__(check.reason or "rejected by safety policy")
        self.check = check


class NotFoundError(TradingError):
    pass


class WalletError(TradingError):
    pass
