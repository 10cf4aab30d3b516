"""
Copy trading: watch target wallets, classify their swaps from balance
deltas and mirror them through the aggregated swap path.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.pubkey import Pubkey
from solders.signature import Signature

from jupiter_api import SOL_MINT
from .clock import Clock, system_clock
from .errors import NotFoundError
from .log_stream import LogEvent, LogSubscription
from .records import TradeRecord, TradeRecorder
from .safety import SafetyManager
from .swap import SwapExecutor
from .wallet import LAMPORTS_PER_SOL, get_token_balance

logger = logging.getLogger(__name__)

MAX_HISTORY = 500


@dataclass
class CopyTarget:
    id: str
    address: str
    name: str = ""
    multiplier: float = 1.0
    max_position_sol: float = 0.5
    min_trade_sol: float = 0.01
    copy_buys: bool = True
    copy_sells: bool = True
    slippage_bps: int = 500
    delay_sec: float = 2.0
    allowed_mints: Optional[Set[str]] = None
    blocked_mints: Set[str] = field(default_factory=set)
    is_paused: bool = False
    trades_copied: int = 0
    added_at: float = 0.0

    def __post_init__(self):
        self.name = self.name or self.address[:8]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "address": self.address,
            "name": self.name,
            "multiplier": self.multiplier,
            "max_position_sol": self.max_position_sol,
            "min_trade_sol": self.min_trade_sol,
            "copy_buys": self.copy_buys,
            "copy_sells": self.copy_sells,
            "slippage_bps": self.slippage_bps,
            "delay_sec": self.delay_sec,
            "allowed_mints": sorted(self.allowed_mints) if self.allowed_mints is not None else None,
            "blocked_mints": sorted(self.blocked_mints),
            "is_paused": self.is_paused,
            "trades_copied": self.trades_copied,
            "added_at": self.added_at,
        }


@dataclass(frozen=True)
class DetectedTrade:
    action: str  # buy|sell
    mint: str
    sol_amount: float
    token_amount: float
    token_amount_raw: int


def _account_keys(tx: dict) -> List[str]:
    message = ((tx.get("transaction") or {}).get("message")) or {}
    keys = message.get("accountKeys") or []
    return [k.get("pubkey", "") if isinstance(k, dict) else str(k) for k in keys]


def _ui_amount(balance: dict) -> float:
    ui = balance.get("uiTokenAmount") or {}
    raw = ui.get("uiAmountString")
    if raw is None:
        raw = ui.get("uiAmount")
    try:
        return float(raw or 0)
    except (TypeError, ValueError):
        return 0.0


def _raw_amount(balance: dict) -> int:
    try:
        return int((balance.get("uiTokenAmount") or {}).get("amount") or 0)
    except (TypeError, ValueError):
        return 0


def _owned_balances(entries: Iterable[dict], address: str) -> Dict[str, dict]:
    owned = {}
    for entry in entries or ():
        mint = entry.get("mint")
        if entry.get("owner") == address and mint and mint != SOL_MINT:
            owned[mint] = entry
    return owned


def detect_trade(address: str, tx: Optional[dict]) -> Optional[DetectedTrade]:
    """
    Classify a parsed transaction from the point of view of `address`.

    The primary asset is the token with the largest absolute balance change
    among accounts owned by the address (wrapped SOL excluded). Buy when that
    token grew while native SOL shrank, sell on the inverse; anything else is
    not a trade.
    """
    if not tx:
        return None
    if "result" in tx and "meta" not in tx:
        tx = tx["result"] or {}
    meta = tx.get("meta")
    if not meta or meta.get("err") is not None:
        return None

    keys = _account_keys(tx)
    if address not in keys:
        return None
    idx = keys.index(address)
    pre_native = meta.get("preBalances") or []
    post_native = meta.get("postBalances") or []
    pre_lamports = pre_native[idx] if idx < len(pre_native) else 0
    post_lamports = post_native[idx] if idx < len(post_native) else 0
    native_delta = (post_lamports - pre_lamports) / LAMPORTS_PER_SOL

    pre_tokens = _owned_balances(meta.get("preTokenBalances"), address)
    post_tokens = _owned_balances(meta.get("postTokenBalances"), address)
    best_mint, best_delta, best_raw = None, 0.0, 0
    for mint in set(pre_tokens) | set(post_tokens):
        pre, post = pre_tokens.get(mint, {}), post_tokens.get(mint, {})
        delta = _ui_amount(post) - _ui_amount(pre)
        if abs(delta) > abs(best_delta):
            best_mint, best_delta = mint, delta
            best_raw = _raw_amount(post) - _raw_amount(pre)
    if best_mint is None:
        return None

    if best_delta > 0 and native_delta < 0:
        action = "buy"
    elif best_delta < 0 and native_delta > 0:
        action = "sell"
    else:
        return None
    return DetectedTrade(
        action=action,
        mint=best_mint,
        sol_amount=abs(native_delta),
        token_amount=abs(best_delta),
        token_amount_raw=abs(best_raw),
    )


class CopyTrader:
    def __init__(
        self,
        rpc: AsyncClient,
        swap: SwapExecutor,
        ws_url: str,
        safety: Optional[SafetyManager] = None,
        recorder: Optional[TradeRecorder] = None,
        clock: Optional[Clock] = None,
        max_history: int = MAX_HISTORY,
        subscription_factory: Optional[Callable[..., Any]] = None,
        positions_provider: Optional[Callable[[], Iterable]] = None,
    ):
        self.rpc = rpc
        self.swap = swap
        self.ws_url = ws_url
        self.safety = safety
        self.recorder = recorder
        self.clock = clock or system_clock
        self.positions_provider = positions_provider
        self.targets: Dict[str, CopyTarget] = {}
        self.history: Deque[dict] = deque(maxlen=max_history)
        self.stats = {
            "total_trades_copied": 0,
            "success_count": 0,
            "fail_count": 0,
            "rejected_count": 0,
        }
        self.is_running = False
        self.queue: "asyncio.Queue[LogEvent]" = asyncio.Queue()
        self._subscription_factory = subscription_factory or LogSubscription
        self._subscriptions: Dict[str, Any] = {}
        self._consumer: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()  # tasks between quote and confirmed swap

    # ------------------------------------------------------------------ #
    # Targets
    # ------------------------------------------------------------------ #
    def add_target(
        self,
        address: str,
        name: str = "",
        multiplier: float = 1.0,
        max_position_sol: float = 0.5,
        min_trade_sol: float = 0.01,
        copy_buys: bool = True,
        copy_sells: bool = True,
        slippage_bps: int = 500,
        delay_sec: float = 2.0,
        allowed_mints: Optional[Iterable[str]] = None,
        blocked_mints: Iterable[str] = (),
    ) -> CopyTarget:
        Pubkey.from_string(address)  # raises ValueError for malformed addresses
        target = CopyTarget(
            id=f"ct_{uuid.uuid4().hex[:12]}",
            address=address,
            name=name,
            multiplier=multiplier,
            max_position_sol=max_position_sol,
            min_trade_sol=min_trade_sol,
            copy_buys=copy_buys,
            copy_sells=copy_sells,
            slippage_bps=slippage_bps,
            delay_sec=delay_sec,
            allowed_mints=set(allowed_mints) if allowed_mints is not None else None,
            blocked_mints=set(blocked_mints or ()),
            added_at=self.clock.time(),
        )
        self.targets[target.id] = target
        if self.is_running:
            self._subscribe(target)
        logger.info(f"[COPY] Following {target.name} ({address[:8]}...) x{multiplier} cap {max_position_sol} SOL")
        return target

    def get_target(self, target_id: str) -> CopyTarget:
        target = self.targets.get(target_id)
        if target is None:
            raise NotFoundError(f"Copy target {target_id} not found")
        return target

    def remove_target(self, target_id: str) -> CopyTarget:
        target = self.get_target(target_id)
        self._unsubscribe(target_id)
        del self.targets[target_id]
        logger.info(f"[COPY] Unfollowed {target.name}")
        return target

    def pause_target(self, target_id: str) -> CopyTarget:
        target = self.get_target(target_id)
        target.is_paused = True
        return target

    def resume_target(self, target_id: str) -> CopyTarget:
        target = self.get_target(target_id)
        target.is_paused = False
        return target

    def list_targets(self) -> List[dict]:
        return [t.to_dict() for t in self.targets.values()]

    def get_history(self, limit: int = 50) -> List[dict]:
        history = list(self.history)
        return history[-limit:] if limit > 0 else []

    def get_stats(self) -> dict:
        settled = self.stats["success_count"] + self.stats["fail_count"]
        return {
            **self.stats,
            "success_rate": round(self.stats["success_count"] / settled * 100, 1) if settled else 0.0,
            "total_targets": len(self.targets),
            "active_targets": sum(1 for t in self.targets.values() if not t.is_paused),
            "is_running": self.is_running,
        }

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def start(self):
        if self.is_running:
            return
        self.is_running = True
        self._consumer = asyncio.get_running_loop().create_task(self._consume(), name="copy-consumer")
        for target in self.targets.values():
            self._subscribe(target)
        logger.info(f"[COPY] Started with {len(self.targets)} targets")

    def stop(self):
        if not self.is_running:
            return
        self.is_running = False
        for target_id in list(self._subscriptions):
            self._unsubscribe(target_id)
        consumer, self._consumer = self._consumer, None
        # a consumer mid-swap finishes that event and then exits its loop
        busy = consumer in self._in_flight or consumer is asyncio.current_task()
        if consumer and not consumer.done() and not busy:
            consumer.cancel()
        logger.info("[COPY] Stopped")

    def close(self):
        self.stop()

    def _subscribe(self, target: CopyTarget):
        if target.id in self._subscriptions:
            return
        sub = self._subscription_factory(
            target_id=target.id,
            address=target.address,
            ws_url=self.ws_url,
            queue=self.queue,
            clock=self.clock,
        )
        self._subscriptions[target.id] = sub
        sub.start()

    def _unsubscribe(self, target_id: str):
        sub = self._subscriptions.pop(target_id, None)
        if sub:
            sub.stop()

    async def _consume(self):
        task = asyncio.current_task()
        while self.is_running and self._consumer is task:
            event = await self.queue.get()
            try:
                target = self.targets.get(event.target_id)
                if target is None or target.is_paused:
                    continue
                await self.handle_event(target, event.signature)
            finally:
                self.queue.task_done()

    # ------------------------------------------------------------------ #
    # Event handling
    # ------------------------------------------------------------------ #
    async def handle_event(self, target: CopyTarget, signature: str) -> Optional[dict]:
        """
        Process one observed signature for a target. Returns the history
        entry when a mirror was attempted, None when the event was filtered.
        """
        trade: Optional[DetectedTrade] = None
        try:
            tx = await self._fetch_transaction(signature)
            trade = detect_trade(target.address, tx)
            if trade is None or not self._passes_filters(target, trade):
                return None

            if target.delay_sec > 0:
                await self.clock.sleep(target.delay_sec)

            copy_sol = min(trade.sol_amount * target.multiplier, target.max_position_sol)
            if self.safety:
                positions = self.positions_provider() if self.positions_provider else ()
                check = self.safety.validate_trade(trade.action, copy_sol, trade.mint, positions)
                if not check.allowed:
                    self.stats["rejected_count"] += 1
                    logger.info(f"[COPY] {target.name} {trade.action} {trade.mint[:8]}... rejected: {check.reason}")
                    return self._add_history(target, trade, copy_sol, success=False, skipped=True, error=check.reason)

            if trade.action == "buy":
                input_mint, output_mint = SOL_MINT, trade.mint
                amount = int(copy_sol * LAMPORTS_PER_SOL)
            else:
                input_mint, output_mint = trade.mint, SOL_MINT
                proportion = copy_sol / trade.sol_amount if trade.sol_amount > 0 else 0.0
                amount = math.floor(trade.token_amount_raw * proportion)
                held = await get_token_balance(self.rpc, self.swap.public_key, trade.mint)
                amount = min(amount, held)
                if amount <= 0:
                    logger.debug(f"[COPY] {target.name} sold {trade.mint[:8]}... but we hold none")
                    return None

            task = asyncio.current_task()
            self._in_flight.add(task)
            try:
                quote = await self.swap.get_quote(input_mint, output_mint, amount, target.slippage_bps)
                result = await self.swap.execute(quote)
            finally:
                self._in_flight.discard(task)
        except Exception as e:
            self.stats["fail_count"] += 1
            logger.error(f"[COPY] Failed to copy {signature[:16]}... from {target.name}: {e}")
            entry = self._add_history(target, trade, 0.0, success=False, error=str(e), signature=None)
            self._record(trade, None, None, None, error=str(e))
            return entry

        target.trades_copied += 1
        self.stats["total_trades_copied"] += 1
        self.stats["success_count"] += 1
        if self.safety:
            self.safety.record_trade(pnl_sol=0.0, sol_amount=copy_sol)
        self._record(trade, result.input_amount, result.output_amount, result.signature)
        logger.info(
            f"[COPY] Mirrored {target.name} {trade.action} {trade.mint[:8]}... "
            f"{copy_sol:.4f} SOL sig={result.signature[:16]}..."
        )
        return self._add_history(target, trade, copy_sol, success=True, signature=result.signature)

    def _passes_filters(self, target: CopyTarget, trade: DetectedTrade) -> bool:
        if trade.action == "buy" and not target.copy_buys:
            return False
        if trade.action == "sell" and not target.copy_sells:
            return False
        if trade.mint in target.blocked_mints:
            return False
        if target.allowed_mints is not None and trade.mint not in target.allowed_mints:
            return False
        if trade.sol_amount < target.min_trade_sol:
            return False
        return True

    async def _fetch_transaction(self, signature: str) -> Optional[dict]:
        resp = await self.rpc.get_transaction(
            Signature.from_string(signature),
            encoding="jsonParsed",
            commitment=Confirmed,
            max_supported_transaction_version=0,
        )
        if getattr(resp, "value", None) is None:
            return None
        return json.loads(resp.to_json()).get("result")

    def _add_history(
        self,
        target: CopyTarget,
        trade: Optional[DetectedTrade],
        sol_amount: float,
        success: bool,
        signature: Optional[str] = None,
        error: Optional[str] = None,
        skipped: bool = False,
    ) -> dict:
        entry = {
            "target": target.id,
            "action": trade.action if trade else "unknown",
            "mint": trade.mint if trade else None,
            "sol_amount": sol_amount,
            "signature": signature,
            "success": success,
            "skipped": skipped,
            "error": error,
            "timestamp": self.clock.time(),
        }
        self.history.append(entry)
        return entry

    def _record(
        self,
        trade: Optional[DetectedTrade],
        amount_in: Optional[int],
        amount_out: Optional[int],
        signature: Optional[str],
        error: Optional[str] = None,
    ):
        if not self.recorder:
            return
        try:
            self.recorder(
                TradeRecord(
                    source="copy",
                    action=trade.action if trade else "unknown",
                    mint=trade.mint if trade else "",
                    amount_in=amount_in,
                    amount_out=amount_out,
                    signature=signature,
                    error=error,
                    timestamp=self.clock.time(),
                )
            )
        except Exception as e:
            logger.error(f"[COPY] Trade recorder error: {e}")
