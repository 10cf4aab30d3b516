"""
Per-account circuit breaker: trade validation, daily loss / drawdown limits,
cooldowns and the manual kill switch.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Iterable, Optional

from .clock import Clock, system_clock
from .config import SafetyConfig
from .errors import ALLOWED, CheckRule, TradeCheck
from .ticker import Ticker

logger = logging.getLogger(__name__)

MAX_ALERTS = 100
MAX_TRADE_LOG = 500


@dataclass
class SafetyState:
    is_killed: bool = False
    kill_reason: Optional[str] = None
    is_cooldown: bool = False
    cooldown_until: Optional[float] = None
    daily_pnl_sol: float = 0.0
    daily_trades: int = 0
    peak_value_sol: float = 0.0
    current_value_sol: float = 0.0
    alerts: Deque[dict] = field(default_factory=lambda: deque(maxlen=MAX_ALERTS))
    trade_log: Deque[dict] = field(default_factory=lambda: deque(maxlen=MAX_TRADE_LOG))
    last_reset_date: str = ""


def _position_value(position) -> float:
    if isinstance(position, dict):
        return float(position.get("value_sol", position.get("valueSol", 0)) or 0)
    return float(getattr(position, "value_sol", 0) or 0)


def _position_mint(position) -> Optional[str]:
    if isinstance(position, dict):
        return position.get("mint")
    return getattr(position, "mint", None)


class SafetyManager:
    def __init__(
        self,
        config: Optional[SafetyConfig] = None,
        clock: Optional[Clock] = None,
        on_alert: Optional[Callable[[dict], None]] = None,
    ):
        self.config = config or SafetyConfig.from_env()
        self.clock = clock or system_clock
        self.on_alert = on_alert
        self.state = SafetyState(last_reset_date=self.clock.utc_date_key())
        self._lock = threading.RLock()
        self._cooldown_timer: Optional[Ticker] = None
        self._day_roll_timer: Optional[Ticker] = None
        # alerts raised under the lock, handed to on_alert after it is released
        self._pending_alerts: list = []

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def start(self):
        """Start the UTC day-roll timer. Requires a running event loop."""
        if self._day_roll_timer and self._day_roll_timer.running:
            return
        self._day_roll_timer = Ticker(
            self.config.day_roll_check_sec,
            self._on_day_roll_tick,
            clock=self.clock,
            name="safety-day-roll",
        )
        self._day_roll_timer.start()

    def close(self):
        if self._day_roll_timer:
            self._day_roll_timer.stop()
            self._day_roll_timer = None
        if self._cooldown_timer:
            self._cooldown_timer.stop()
            self._cooldown_timer = None

    # ------------------------------------------------------------------ #
    # Checks
    # ------------------------------------------------------------------ #
    def can_trade(self) -> TradeCheck:
        check = self._check_tradeable()
        self._deliver_alerts()
        return check

    def _check_tradeable(self) -> TradeCheck:
        with self._lock:
            s = self.state
            if s.is_killed:
                return TradeCheck(False, f"Kill switch active: {s.kill_reason}", CheckRule.KILLED)
            if s.is_cooldown:
                if s.cooldown_until is not None and self.clock.time() < s.cooldown_until:
                    until = datetime.fromtimestamp(s.cooldown_until, tz=timezone.utc).isoformat()
                    return TradeCheck(False, f"Cooldown active until {until}", CheckRule.COOLDOWN)
                self._end_cooldown()
            return ALLOWED

    def validate_trade(
        self,
        action: str,
        sol_amount: float,
        mint: Optional[str] = None,
        positions: Iterable = (),
    ) -> TradeCheck:
        check = self._validate(action, sol_amount, mint, positions)
        self._deliver_alerts()
        return check

    def _validate(self, action: str, sol_amount: float, mint: Optional[str], positions: Iterable) -> TradeCheck:
        with self._lock:
            self._roll_day_if_needed()
            tradeable = self._check_tradeable()
            if not tradeable.allowed:
                return tradeable

            cfg = self.config
            s = self.state
            if sol_amount > cfg.max_order_size_sol:
                return TradeCheck(
                    False,
                    f"Order size {sol_amount} SOL exceeds max {cfg.max_order_size_sol} SOL",
                    CheckRule.MAX_ORDER_SIZE,
                )

            if s.daily_trades >= cfg.max_daily_trades:
                return TradeCheck(
                    False,
                    f"Daily trade limit reached ({cfg.max_daily_trades})",
                    CheckRule.DAILY_TRADE_LIMIT,
                )

            if self._daily_loss_breached():
                self._trip_breaker(
                    "daily_loss",
                    f"Daily loss of {abs(s.daily_pnl_sol):.4f} SOL exceeds limit",
                )
                return TradeCheck(False, "Daily loss limit breached", CheckRule.DAILY_LOSS)

            if action == "buy":
                positions = list(positions or ())
                total_exposure = sum(_position_value(p) for p in positions) + sol_amount
                if total_exposure > cfg.max_total_exposure_sol:
                    return TradeCheck(
                        False,
                        f"Total exposure {total_exposure:.4f} SOL would exceed max "
                        f"{cfg.max_total_exposure_sol} SOL",
                        CheckRule.EXPOSURE,
                    )
                if mint and s.current_value_sol > 0:
                    mint_exposure = sum(
                        _position_value(p) for p in positions if _position_mint(p) == mint
                    ) + sol_amount
                    concentration_pct = mint_exposure / s.current_value_sol * 100
                    if concentration_pct > cfg.max_concentration_pct:
                        return TradeCheck(
                            False,
                            f"Position in {mint[:8]}... would be {concentration_pct:.1f}% of portfolio "
                            f"(max {cfg.max_concentration_pct}%)",
                            CheckRule.CONCENTRATION,
                        )

            return ALLOWED

    # ------------------------------------------------------------------ #
    # Bookkeeping
    # ------------------------------------------------------------------ #
    def record_trade(self, pnl_sol: float = 0.0, sol_amount: float = 0.0):
        with self._lock:
            self._roll_day_if_needed()
            s = self.state
            s.daily_trades += 1
            s.daily_pnl_sol += pnl_sol
            s.trade_log.append(
                {"pnl_sol": pnl_sol, "sol_amount": sol_amount, "timestamp": self.clock.time()}
            )
            if self._daily_loss_breached():
                self._trip_breaker(
                    "daily_loss",
                    f"Daily loss limit reached: {abs(s.daily_pnl_sol):.4f} SOL",
                )
        self._deliver_alerts()

    def update_portfolio_value(self, value_sol: float):
        with self._lock:
            s = self.state
            s.current_value_sol = value_sol
            if value_sol > s.peak_value_sol:
                s.peak_value_sol = value_sol
            if s.peak_value_sol > 0:
                drawdown_pct = (s.peak_value_sol - value_sol) / s.peak_value_sol * 100
                if drawdown_pct >= self.config.max_drawdown_pct:
                    self._trip_breaker(
                        "drawdown",
                        f"Drawdown {drawdown_pct:.1f}% exceeds max {self.config.max_drawdown_pct}%",
                    )
        self._deliver_alerts()

    def kill_switch(self, reason: str = "Manual kill switch"):
        with self._lock:
            self.state.is_killed = True
            self.state.kill_reason = reason
            self._queue_alert("kill_switch", reason, "critical")
        self._deliver_alerts()
        logger.error(f"[SAFETY] KILL SWITCH: {reason}")

    def resume_trading(self) -> bool:
        with self._lock:
            s = self.state
            was_halted = s.is_killed or s.is_cooldown
            s.is_killed = False
            s.kill_reason = None
            s.is_cooldown = False
            s.cooldown_until = None
            if self._cooldown_timer:
                self._cooldown_timer.stop()
                self._cooldown_timer = None
            self._queue_alert("resume", "Trading manually resumed", "info")
        self._deliver_alerts()
        logger.info(f"[SAFETY] Trading resumed manually (was_halted={was_halted})")
        return was_halted

    def add_alert(self, category: str, message: str, severity: str = "warning") -> dict:
        alert = self._queue_alert(category, message, severity)
        self._deliver_alerts()
        return alert

    def get_alerts(self, limit: int = 50) -> list:
        with self._lock:
            alerts = list(self.state.alerts)
        return alerts[-limit:] if limit > 0 else []

    def get_state(self) -> dict:
        allowed = self.can_trade().allowed
        with self._lock:
            s = self.state
            return {
                "is_killed": s.is_killed,
                "kill_reason": s.kill_reason,
                "is_cooldown": s.is_cooldown,
                "cooldown_until": s.cooldown_until,
                "daily_pnl_sol": s.daily_pnl_sol,
                "daily_trades": s.daily_trades,
                "peak_value_sol": s.peak_value_sol,
                "current_value_sol": s.current_value_sol,
                "alerts": list(s.alerts),
                "trade_log": list(s.trade_log),
                "last_reset_date": s.last_reset_date,
                "config": dict(self.config.__dict__),
                "can_trade": allowed,
            }

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _queue_alert(self, category: str, message: str, severity: str) -> dict:
        alert = {
            "category": category,
            "message": message,
            "severity": severity,
            "timestamp": self.clock.time(),
        }
        with self._lock:
            self.state.alerts.append(alert)
            self._pending_alerts.append(alert)
        return alert

    def _deliver_alerts(self):
        """Hand queued alerts to on_alert. Callers must not hold the state lock."""
        with self._lock:
            pending, self._pending_alerts = self._pending_alerts, []
        if not self.on_alert:
            return
        for alert in pending:
            try:
                self.on_alert(alert)
            except Exception as e:
                logger.error(f"[SAFETY] Alert callback error: {e}")

    def _daily_loss_breached(self) -> bool:
        pnl = self.state.daily_pnl_sol
        return pnl < 0 and abs(pnl) >= self.config.daily_loss_limit_sol

    def _trip_breaker(self, category: str, reason: str):
        s = self.state
        s.is_cooldown = True
        s.cooldown_until = self.clock.time() + self.config.cooldown_sec
        self._queue_alert(category, reason, "critical")
        logger.error(f"[SAFETY] Circuit breaker tripped: {category} | {reason}")
        self._schedule_cooldown_expiry()

    def _schedule_cooldown_expiry(self):
        if self._cooldown_timer:
            self._cooldown_timer.stop()
            self._cooldown_timer = None
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # no loop: can_trade() clears the cooldown lazily once it has elapsed
            return
        self._cooldown_timer = Ticker(
            self.config.cooldown_sec,
            self._on_cooldown_timer,
            clock=self.clock,
            name="safety-cooldown",
            repeat=False,
        )
        self._cooldown_timer.start()

    async def _on_cooldown_timer(self):
        with self._lock:
            if self.state.is_cooldown:
                self._end_cooldown()
            self._cooldown_timer = None
        self._deliver_alerts()

    def _end_cooldown(self):
        self.state.is_cooldown = False
        self.state.cooldown_until = None
        self._queue_alert("recovery", "Cooldown expired, trading resumed", "info")
        logger.info("[SAFETY] Cooldown expired, trading resumed")

    async def _on_day_roll_tick(self):
        self._roll_day_if_needed()

    def _roll_day_if_needed(self):
        today = self.clock.utc_date_key()
        with self._lock:
            s = self.state
            if s.last_reset_date == today:
                return
            logger.info(
                f"[SAFETY] UTC day rolled {s.last_reset_date} -> {today}; "
                f"resetting daily pnl={s.daily_pnl_sol:.4f} trades={s.daily_trades}"
            )
            s.daily_pnl_sol = 0.0
            s.daily_trades = 0
            s.alerts.clear()
            s.last_reset_date = today
