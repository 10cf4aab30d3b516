"""
Per-account trading context. Owns one Safety Manager, swap executor, DCA
manager, Copy Trader, Trigger Manager and bonding-curve trader, all wired
to the same signing key and trade recorder.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from solana.rpc.async_api import AsyncClient
from solders.keypair import Keypair

from jupiter_api import JupiterAPI, SOL_MINT
from pump_curve import PumpPortalClient, PumpTradeResult, PumpTrader
from telegram_service import TelegramBot
from .clock import Clock, system_clock
from .config import EngineSettings, SafetyConfig
from .copytrade import CopyTarget, CopyTrader
from .dca import DCAOrder, DCAOrderManager
from .errors import PolicyRejected, TradeCheck, WalletError
from .records import Position, TradeJournal, TradeRecord, TradeRecorder
from .safety import SafetyManager
from .swap import SwapExecutor, SwapQuote, SwapResult
from .triggers import Trigger, TriggerManager, TriggerResult
from .wallet import LAMPORTS_PER_SOL, get_encryption_key, get_sol_balance, load_keypair

logger = logging.getLogger(__name__)


class AccountContext:
    def __init__(
        self,
        account_id: str,
        rpc: AsyncClient,
        keypair: Keypair,
        settings: Optional[EngineSettings] = None,
        safety_config: Optional[SafetyConfig] = None,
        clock: Optional[Clock] = None,
        jupiter: Optional[JupiterAPI] = None,
        recorder: Optional[TradeRecorder] = None,
        telegram: Optional[TelegramBot] = None,
        copy_subscription_factory=None,
        owns_rpc: bool = False,
    ):
        self.account_id = account_id
        self.rpc = rpc
        self.keypair = keypair
        self.settings = settings or EngineSettings.from_env()
        self.clock = clock or system_clock
        self.recorder: TradeRecorder = recorder or TradeJournal(self.settings.trade_journal_path or None)
        self.telegram = telegram
        self.positions: Dict[str, Position] = {}
        self._owns_rpc = owns_rpc

        self.jupiter = jupiter or JupiterAPI(
            swap_url=self.settings.jupiter_api_url,
            price_url=self.settings.jupiter_price_url,
            timeout_sec=self.settings.request_timeout_sec,
        )
        self.safety = SafetyManager(safety_config, clock=self.clock, on_alert=self._on_alert)
        self.swap = SwapExecutor(
            rpc, keypair, jupiter=self.jupiter, priority_fee_lamports=self.settings.priority_fee_lamports
        )
        self.dca = DCAOrderManager(
            self.swap,
            safety=self.safety,
            recorder=self._on_trade,
            clock=self.clock,
            positions_provider=self.current_positions,
        )
        self.copy = CopyTrader(
            rpc,
            self.swap,
            self.settings.ws_url,
            safety=self.safety,
            recorder=self._on_trade,
            clock=self.clock,
            subscription_factory=copy_subscription_factory,
            positions_provider=self.current_positions,
        )
        self.triggers = TriggerManager(
            self.jupiter,
            executor=self._execute_trigger,
            poll_interval_sec=self.settings.trigger_poll_sec,
            clock=self.clock,
        )
        self.pump = PumpTrader(
            rpc,
            keypair,
            portal=PumpPortalClient(self.settings.pumpportal_url, timeout_sec=self.settings.request_timeout_sec),
        )

    @classmethod
    def from_encrypted(
        cls,
        account_id: str,
        encrypted_keypair: str,
        settings: Optional[EngineSettings] = None,
        **kwargs,
    ) -> "AccountContext":
        """Decrypt the account key with the per-account secret and open an RPC client."""
        settings = settings or EngineSettings.from_env()
        if not settings.wallet_encryption_secret:
            raise WalletError("WALLET_ENCRYPTION_SECRET is not configured")
        secret = get_encryption_key(settings.wallet_encryption_secret, account_id)
        keypair = load_keypair(encrypted_keypair, secret)
        rpc = AsyncClient(settings.rpc_url)
        return cls(account_id, rpc, keypair, settings=settings, owns_rpc=True, **kwargs)

    @property
    def public_key(self) -> str:
        return str(self.keypair.pubkey())

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def start(self):
        self.safety.start()
        logger.info(f"[ACCOUNT] {self.account_id} started ({self.public_key[:8]}...)")

    async def close(self):
        self.copy.close()
        self.dca.close()
        self.triggers.close()
        self.safety.close()
        if self._owns_rpc:
            await self.rpc.close()
        logger.info(f"[ACCOUNT] {self.account_id} closed")

    async def __aenter__(self) -> "AccountContext":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def kill(self, reason: str = "Manual kill switch"):
        """Halt every bot on this account: kill switch, copy stop, DCA cancel, triggers stop."""
        self.safety.kill_switch(reason)
        self.copy.stop()
        self.dca.cancel_all()
        self.triggers.stop_all()

    def resume(self) -> bool:
        return self.safety.resume_trading()

    # ------------------------------------------------------------------ #
    # Safety passthrough
    # ------------------------------------------------------------------ #
    def current_positions(self) -> List[Position]:
        return list(self.positions.values())

    def update_position(self, mint: str, value_sol: float):
        if value_sol <= 0:
            self.positions.pop(mint, None)
        else:
            self.positions[mint] = Position(mint=mint, value_sol=value_sol)

    def validate_trade(self, action: str, sol_amount: float, mint: Optional[str] = None,
                       positions: Optional[Iterable] = None) -> TradeCheck:
        return self.safety.validate_trade(
            action, sol_amount, mint, self.current_positions() if positions is None else positions
        )

    def record_trade(self, pnl_sol: float = 0.0, sol_amount: float = 0.0):
        self.safety.record_trade(pnl_sol=pnl_sol, sol_amount=sol_amount)

    def get_state(self) -> dict:
        return self.safety.get_state()

    async def get_sol_balance(self) -> float:
        return await get_sol_balance(self.rpc, self.public_key)

    # ------------------------------------------------------------------ #
    # Direct swaps
    # ------------------------------------------------------------------ #
    async def get_quote(self, input_mint: str, output_mint: str, amount: int,
                        slippage_bps: int = 300) -> SwapQuote:
        return await self.swap.get_quote(input_mint, output_mint, amount, slippage_bps)

    async def execute_swap(self, quote: SwapQuote) -> SwapResult:
        """Execute a quoted swap. Buys must pass the safety checks first."""
        action = "buy" if quote.is_buy else "sell"
        mint = quote.output_mint if quote.is_buy else quote.input_mint
        if quote.is_buy:
            self._require_allowed("buy", quote.sol_amount, mint)
        try:
            result = await self.swap.execute(quote)
        except Exception as e:
            self._record("swap", action, mint, quote.in_amount, None, error=str(e))
            raise
        self._record("swap", action, mint, result.input_amount, result.output_amount, result.signature)
        self.safety.record_trade(pnl_sol=0.0, sol_amount=quote.sol_amount)
        return result

    # ------------------------------------------------------------------ #
    # Bonding-curve trades
    # ------------------------------------------------------------------ #
    async def pump_buy(self, mint: str, sol_amount: float, slippage_pct: float = 10,
                       priority_fee_sol: float = 0.005) -> PumpTradeResult:
        self._require_allowed("buy", sol_amount, mint)
        lamports = int(sol_amount * LAMPORTS_PER_SOL)
        try:
            result = await self.pump.buy(mint, sol_amount, slippage_pct, priority_fee_sol)
        except Exception as e:
            self._record("pump", "buy", mint, lamports, None, error=str(e))
            raise
        self._record("pump", "buy", mint, lamports, None, result.signature)
        self.safety.record_trade(pnl_sol=0.0, sol_amount=sol_amount)
        return result

    async def pump_sell(self, mint: str, token_amount: Union[float, str], slippage_pct: float = 10,
                        priority_fee_sol: float = 0.005) -> PumpTradeResult:
        try:
            result = await self.pump.sell(mint, token_amount, slippage_pct, priority_fee_sol)
        except Exception as e:
            self._record("pump", "sell", mint, None, None, error=str(e))
            raise
        self._record("pump", "sell", mint, None, None, result.signature)
        self.safety.record_trade(pnl_sol=0.0)
        return result

    # ------------------------------------------------------------------ #
    # Strategy passthrough
    # ------------------------------------------------------------------ #
    def create_dca(self, input_mint: str, output_mint: str, total_amount_lamports: int,
                   amount_per_cycle_lamports: int, cycle_interval_sec: float, **kwargs) -> DCAOrder:
        return self.dca.create(
            input_mint, output_mint, total_amount_lamports, amount_per_cycle_lamports, cycle_interval_sec, **kwargs
        )

    def list_dca(self) -> List[dict]:
        return self.dca.list_orders()

    def cancel_dca(self, order_id: str) -> DCAOrder:
        return self.dca.cancel(order_id)

    def follow(self, address: str, **config) -> CopyTarget:
        return self.copy.add_target(address, **config)

    def unfollow(self, target_id: str) -> CopyTarget:
        return self.copy.remove_target(target_id)

    def start_copy(self):
        self.copy.start()

    def stop_copy(self):
        self.copy.stop()

    def list_copy_targets(self) -> List[dict]:
        return self.copy.list_targets()

    def create_trigger(self, mint: str, condition, order, expires_at: Optional[float] = None,
                       one_shot: bool = True) -> Trigger:
        return self.triggers.create(mint, condition, order, expires_at=expires_at, one_shot=one_shot)

    def list_triggers(self) -> List[dict]:
        return self.triggers.list()

    def cancel_trigger(self, trigger_id: str) -> Trigger:
        return self.triggers.cancel(trigger_id)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    async def _execute_trigger(self, trigger: Trigger) -> TriggerResult:
        order = trigger.order
        action = f"trigger_{order.action}"
        quote = await self.swap.get_quote(order.input_mint, order.output_mint, order.amount, order.slippage_bps)
        if order.input_mint == SOL_MINT:
            check = self.validate_trade("buy", quote.sol_amount, order.output_mint)
            if not check.allowed:
                return TriggerResult(success=False, error=check.reason, details={"rule": check.rule.value if check.rule else None})
        try:
            result = await self.swap.execute(quote)
        except Exception as e:
            self._record("trigger", action, trigger.mint, quote.in_amount, None, error=str(e))
            raise
        self._record("trigger", action, trigger.mint, result.input_amount, result.output_amount, result.signature)
        self.safety.record_trade(pnl_sol=0.0, sol_amount=quote.sol_amount)
        return TriggerResult(
            success=True,
            signature=result.signature,
            details={"input_amount": result.input_amount, "output_amount": result.output_amount},
        )

    def _require_allowed(self, action: str, sol_amount: float, mint: Optional[str]):
        check = self.validate_trade(action, sol_amount, mint)
        if not check.allowed:
            logger.warning(f"[ACCOUNT] {self.account_id} {action} rejected: {check.reason}")
            raise PolicyRejected(check)

    def _record(self, source: str, action: str, mint: Optional[str], amount_in: Optional[int],
                amount_out: Optional[int], signature: Optional[str] = None, error: Optional[str] = None):
        self._on_trade(
            TradeRecord(
                source=source,
                action=action,
                mint=mint,
                amount_in=amount_in,
                amount_out=amount_out,
                signature=signature,
                error=error,
                timestamp=self.clock.time(),
            )
        )

    def _on_trade(self, record: TradeRecord):
        """
        Sink for every trade on this account, strategies included. Journals the
        record, keeps the position book in step with executed trades and sends
        the Telegram trade notice when enabled.
        """
        try:
            self.recorder(record)
        except Exception as e:
            logger.error(f"[ACCOUNT] Trade recorder error: {e}")
        if record.success:
            self._apply_to_positions(record)
        self._notify_trade(record)

    def _apply_to_positions(self, record: TradeRecord):
        # positions are carried at SOL cost; a sell with unknown proceeds closes the position
        if not record.mint or record.mint == SOL_MINT:
            return
        side = record.action.rsplit("_", 1)[-1]
        held = self.positions.get(record.mint)
        value = held.value_sol if held else 0.0
        if side == "buy" and record.amount_in:
            self.update_position(record.mint, value + record.amount_in / LAMPORTS_PER_SOL)
        elif side == "sell":
            if record.amount_out is None:
                self.update_position(record.mint, 0.0)
            else:
                self.update_position(record.mint, value - record.amount_out / LAMPORTS_PER_SOL)

    def _notify_trade(self, record: TradeRecord):
        chat_id = self.settings.alert_chat_id
        if not (self.settings.notify_trades and self.telegram and self.telegram.enabled and chat_id):
            return
        self._send_telegram(self.telegram.send_trade, chat_id, record.to_dict())

    def _on_alert(self, alert: Dict[str, Any]):
        chat_id = self.settings.alert_chat_id
        if not (self.telegram and self.telegram.enabled and chat_id):
            return
        if alert.get("severity") != "critical" and alert.get("category") not in ("recovery", "resume"):
            return
        self._send_telegram(self.telegram.send_safety_alert, chat_id, alert, self.account_id)

    @staticmethod
    def _send_telegram(send, *args):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            send(*args)
            return
        loop.run_in_executor(None, send, *args)
