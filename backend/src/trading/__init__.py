# Trading engine package
from .errors import (
    CheckRule,
    TradeCheck,
    TradingError,
    UpstreamError,
    QuoteError,
    SwapError,
    PriceFeedError,
    PumpPortalError,
    PolicyRejected,
    NotFoundError,
    WalletError,
)
from .config import EngineSettings, SafetyConfig, configure_logging
from .clock import Clock, system_clock
from .ticker import Ticker
from .records import Position, TradeJournal, TradeRecord
from .safety import SafetyManager, SafetyState
from .triggers import (
    PriceAbove,
    PriceBelow,
    PriceCross,
    Trigger,
    TriggerManager,
    TriggerOrder,
    TriggerResult,
    TriggerStatus,
    condition_from_dict,
    evaluate_condition,
)

__all__ = [
    "CheckRule",
    "TradeCheck",
    "TradingError",
    "UpstreamError",
    "QuoteError",
    "SwapError",
    "PriceFeedError",
    "PumpPortalError",
    "PolicyRejected",
    "NotFoundError",
    "WalletError",
    "EngineSettings",
    "SafetyConfig",
    "configure_logging",
    "Clock",
    "system_clock",
    "Ticker",
    "Position",
    "TradeJournal",
    "TradeRecord",
    "SafetyManager",
    "SafetyState",
    "PriceAbove",
    "PriceBelow",
    "PriceCross",
    "Trigger",
    "TriggerManager",
    "TriggerOrder",
    "TriggerResult",
    "TriggerStatus",
    "condition_from_dict",
    "evaluate_condition",
]
