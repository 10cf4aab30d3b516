"""
Environment-driven settings for the trading engine.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"


def env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    return int(float(raw)) if raw.strip() else default


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    return float(raw) if raw.strip() else default


def ws_url_from_rpc(rpc_url: str) -> str:
    if rpc_url.startswith("https://"):
        return "wss://" + rpc_url[len("https://"):]
    if rpc_url.startswith("http://"):
        return "ws://" + rpc_url[len("http://"):]
    return rpc_url


def configure_logging(level: Optional[str] = None):
    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dataclass
class EngineSettings:
    rpc_url: str = DEFAULT_RPC_URL
    ws_url: str = ""
    jupiter_api_url: str = "https://lite-api.jup.ag/swap/v1"
    jupiter_price_url: str = "https://api.jup.ag/price/v2"
    pumpportal_url: str = "https://pumpportal.fun/api/trade-local"
    request_timeout_sec: float = 10.0
    priority_fee_lamports: int = 50_000
    wallet_encryption_secret: str = ""
    trigger_poll_sec: float = 10.0
    trade_journal_path: str = ""
    alert_chat_id: str = ""
    notify_trades: bool = False

    def __post_init__(self):
        if not self.ws_url:
            self.ws_url = ws_url_from_rpc(self.rpc_url)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        rpc_url = os.getenv("SOLANA_RPC_URL", DEFAULT_RPC_URL)
        return cls(
            rpc_url=rpc_url,
            ws_url=os.getenv("SOLANA_WS_URL", "") or ws_url_from_rpc(rpc_url),
            jupiter_api_url=os.getenv("JUPITER_API_URL", "https://lite-api.jup.ag/swap/v1"),
            jupiter_price_url=os.getenv("JUPITER_PRICE_API_URL", "https://api.jup.ag/price/v2"),
            pumpportal_url=os.getenv("PUMPPORTAL_API_URL", "https://pumpportal.fun/api/trade-local"),
            request_timeout_sec=env_float("REQUEST_TIMEOUT_SECONDS", 10.0),
            priority_fee_lamports=env_int("PRIORITY_FEE_LAMPORTS", 50_000),
            wallet_encryption_secret=os.getenv("WALLET_ENCRYPTION_SECRET", ""),
            trigger_poll_sec=env_float("TRIGGER_POLL_SECONDS", 10.0),
            trade_journal_path=os.getenv("TRADE_JOURNAL_LOG", ""),
            alert_chat_id=os.getenv("TELEGRAM_ALERT_CHAT_ID", os.getenv("TELEGRAM_CHAT_ID", "")),
            notify_trades=env_bool("TELEGRAM_TRADE_NOTIFICATIONS"),
        )


@dataclass
class SafetyConfig:
    daily_loss_limit_sol: float = 2.0
    max_drawdown_pct: float = 25.0
    max_concentration_pct: float = 50.0
    max_daily_trades: int = 200
    cooldown_sec: float = 4 * 60 * 60
    max_order_size_sol: float = 5.0
    max_total_exposure_sol: float = 20.0
    day_roll_check_sec: float = 60.0

    @classmethod
    def from_env(cls) -> "SafetyConfig":
        return cls(
            daily_loss_limit_sol=env_float("DAILY_LOSS_LIMIT_SOL", 2.0),
            max_drawdown_pct=env_float("MAX_DRAWDOWN_PCT", 25.0),
            max_concentration_pct=env_float("MAX_CONCENTRATION_PCT", 50.0),
            max_daily_trades=env_int("MAX_DAILY_TRADES", 200),
            cooldown_sec=env_float("SAFETY_COOLDOWN_SEC", 4 * 60 * 60),
            max_order_size_sol=env_float("MAX_ORDER_SIZE_SOL", 5.0),
            max_total_exposure_sol=env_float("MAX_TOTAL_EXPOSURE_SOL", 20.0),
            day_roll_check_sec=env_float("DAY_ROLL_CHECK_SEC", 60.0),
        )
