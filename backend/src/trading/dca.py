"""
Dollar-cost averaging: fixed-interval partial buys until the budget or the
cycle count is exhausted. Each order runs on its own ticker.
"""

from __future__ import annotations

import logging
import math
import uuid
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Callable, Deque, Dict, Iterable, List, Optional

from jupiter_api import SOL_MINT
from .clock import Clock, system_clock
from .errors import NotFoundError
from .records import TradeRecord, TradeRecorder
from .safety import SafetyManager
from .swap import SwapExecutor
from .ticker import Ticker
from .wallet import LAMPORTS_PER_SOL

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 5
MAX_HISTORY = 50
RECENT_HISTORY = 10


class DCAStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class CycleOutcome:
    cycle: int
    timestamp: float
    amount_in: Optional[int] = None
    amount_out: Optional[int] = None
    signature: Optional[str] = None
    skipped: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.signature is not None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class DCAOrder:
    id: str
    input_mint: str
    output_mint: str
    total_amount_lamports: int
    amount_per_cycle_lamports: int
    cycle_interval_sec: float
    slippage_bps: int = 300
    max_cycles: int = 0
    max_price: Optional[float] = None
    invested_lamports: int = 0
    total_tokens_received: int = 0
    cycles_completed: int = 0
    consecutive_failures: int = 0
    status: DCAStatus = DCAStatus.ACTIVE
    created_at: float = 0.0
    last_cycle_at: Optional[float] = None
    history: Deque[CycleOutcome] = field(default_factory=lambda: deque(maxlen=MAX_HISTORY))

    @property
    def remaining_lamports(self) -> int:
        return max(0, self.total_amount_lamports - self.invested_lamports)

    @property
    def is_exhausted(self) -> bool:
        return self.cycles_completed >= self.max_cycles or self.invested_lamports >= self.total_amount_lamports

    @property
    def is_buy(self) -> bool:
        return self.input_mint == SOL_MINT


class DCAOrderManager:
    def __init__(
        self,
        swap: SwapExecutor,
        safety: Optional[SafetyManager] = None,
        recorder: Optional[TradeRecorder] = None,
        clock: Optional[Clock] = None,
        positions_provider: Optional[Callable[[], Iterable]] = None,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
    ):
        self.swap = swap
        self.safety = safety
        self.recorder = recorder
        self.clock = clock or system_clock
        self.positions_provider = positions_provider
        self.max_consecutive_failures = max_consecutive_failures
        self.orders: Dict[str, DCAOrder] = {}
        self._tickers: Dict[str, Ticker] = {}

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def create(
        self,
        input_mint: str,
        output_mint: str,
        total_amount_lamports: int,
        amount_per_cycle_lamports: int,
        cycle_interval_sec: float,
        slippage_bps: int = 300,
        max_cycles: Optional[int] = None,
        max_price: Optional[float] = None,
    ) -> DCAOrder:
        if not input_mint or not output_mint:
            raise ValueError("input_mint and output_mint are required")
        if total_amount_lamports <= 0 or amount_per_cycle_lamports <= 0:
            raise ValueError("amounts must be positive")
        if cycle_interval_sec <= 0:
            raise ValueError("cycle_interval_sec must be positive")

        order = DCAOrder(
            id=f"dca_{uuid.uuid4().hex[:12]}",
            input_mint=input_mint,
            output_mint=output_mint,
            total_amount_lamports=int(total_amount_lamports),
            amount_per_cycle_lamports=int(amount_per_cycle_lamports),
            cycle_interval_sec=cycle_interval_sec,
            slippage_bps=slippage_bps,
            max_cycles=max_cycles or math.ceil(total_amount_lamports / amount_per_cycle_lamports),
            max_price=max_price or None,
            created_at=self.clock.time(),
        )
        self.orders[order.id] = order
        self._start_ticker(order)
        logger.info(
            f"[DCA] Created {order.id}: {order.input_mint[:8]}... -> {order.output_mint[:8]}... "
            f"{order.amount_per_cycle_lamports}/{order.total_amount_lamports} every {cycle_interval_sec}s "
            f"({order.max_cycles} cycles)"
        )
        return order

    def get(self, order_id: str) -> DCAOrder:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError(f"DCA order {order_id} not found")
        return order

    def pause(self, order_id: str) -> DCAOrder:
        order = self.get(order_id)
        if order.status == DCAStatus.ACTIVE:
            order.status = DCAStatus.PAUSED
            self._stop_ticker(order.id)
            logger.info(f"[DCA] Paused {order.id}")
        return order

    def resume(self, order_id: str) -> DCAOrder:
        order = self.get(order_id)
        if order.status == DCAStatus.PAUSED:
            order.status = DCAStatus.ACTIVE
            order.consecutive_failures = 0
            self._start_ticker(order)
            logger.info(f"[DCA] Resumed {order.id}")
        return order

    def cancel(self, order_id: str) -> DCAOrder:
        order = self.get(order_id)
        if order.status != DCAStatus.COMPLETED:
            order.status = DCAStatus.CANCELLED
        self._stop_ticker(order.id)
        logger.info(f"[DCA] Cancelled {order.id} after {order.cycles_completed} cycles")
        return order

    def cancel_all(self):
        for order_id in list(self.orders):
            order = self.orders[order_id]
            if order.status in (DCAStatus.ACTIVE, DCAStatus.PAUSED):
                self.cancel(order_id)

    def close(self):
        for order_id in list(self._tickers):
            self._stop_ticker(order_id)

    def get_info(self, order_id: str) -> dict:
        order = self.get(order_id)
        return {
            "id": order.id,
            "input_mint": order.input_mint,
            "output_mint": order.output_mint,
            "status": order.status.value,
            "total_amount_lamports": order.total_amount_lamports,
            "amount_per_cycle_lamports": order.amount_per_cycle_lamports,
            "cycle_interval_sec": order.cycle_interval_sec,
            "slippage_bps": order.slippage_bps,
            "max_price": order.max_price,
            "invested_lamports": order.invested_lamports,
            "total_tokens_received": order.total_tokens_received,
            "cycles_completed": order.cycles_completed,
            "max_cycles": order.max_cycles,
            "cycles_remaining": max(0, order.max_cycles - order.cycles_completed),
            "consecutive_failures": order.consecutive_failures,
            "created_at": order.created_at,
            "last_cycle_at": order.last_cycle_at,
            "recent_history": [h.to_dict() for h in list(order.history)[-RECENT_HISTORY:]],
        }

    def list_orders(self) -> List[dict]:
        return [self.get_info(order_id) for order_id in self.orders]

    # ------------------------------------------------------------------ #
    # Cycle execution
    # ------------------------------------------------------------------ #
    async def run_cycle(self, order_id: str):
        order = self.get(order_id)
        if order.status in (DCAStatus.CANCELLED, DCAStatus.COMPLETED):
            self._stop_ticker(order.id)
            return
        if order.status != DCAStatus.ACTIVE:
            return
        if order.is_exhausted:
            self._complete(order)
            return

        cycle = order.cycles_completed + 1
        cycle_amount = min(order.amount_per_cycle_lamports, order.remaining_lamports)

        if self.safety and order.is_buy:
            positions = self.positions_provider() if self.positions_provider else ()
            check = self.safety.validate_trade(
                "buy", cycle_amount / LAMPORTS_PER_SOL, order.output_mint, positions
            )
            if not check.allowed:
                self._skip(order, cycle, check.reason or "rejected by safety")
                return

        try:
            quote = await self.swap.get_quote(
                order.input_mint, order.output_mint, cycle_amount, order.slippage_bps
            )
            if order.max_price and quote.out_amount > 0:
                price = cycle_amount / quote.out_amount
                if price > order.max_price:
                    self._skip(order, cycle, f"Price {price:.10g} exceeds max {order.max_price:.10g}")
                    return
            if order.status != DCAStatus.ACTIVE:
                logger.info(f"[DCA] {order.id} cycle {cycle} dropped: order {order.status.value} while quoting")
                return
            result = await self.swap.execute(quote)
        except Exception as e:
            self._fail(order, cycle, cycle_amount, e)
            return

        now = self.clock.time()
        order.invested_lamports += cycle_amount
        order.total_tokens_received += result.output_amount
        order.cycles_completed += 1
        order.consecutive_failures = 0
        order.last_cycle_at = now
        order.history.append(
            CycleOutcome(
                cycle=order.cycles_completed,
                timestamp=now,
                amount_in=cycle_amount,
                amount_out=result.output_amount,
                signature=result.signature,
            )
        )
        self._record(order, cycle_amount, result.output_amount, signature=result.signature)
        if self.safety:
            self.safety.record_trade(pnl_sol=0.0, sol_amount=cycle_amount / LAMPORTS_PER_SOL if order.is_buy else 0.0)
        logger.info(
            f"[DCA] {order.id} cycle {order.cycles_completed}/{order.max_cycles} "
            f"in={cycle_amount} out={result.output_amount}"
        )
        if order.is_exhausted and order.status == DCAStatus.ACTIVE:
            self._complete(order)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _start_ticker(self, order: DCAOrder):
        self._stop_ticker(order.id)

        async def tick(order_id=order.id):
            await self.run_cycle(order_id)

        ticker = Ticker(order.cycle_interval_sec, tick, clock=self.clock, name=f"dca-{order.id}")
        self._tickers[order.id] = ticker
        ticker.start()

    def _stop_ticker(self, order_id: str):
        ticker = self._tickers.pop(order_id, None)
        if ticker:
            ticker.stop()

    def _complete(self, order: DCAOrder):
        order.status = DCAStatus.COMPLETED
        self._stop_ticker(order.id)
        logger.info(
            f"[DCA] {order.id} completed: invested={order.invested_lamports} "
            f"tokens={order.total_tokens_received} cycles={order.cycles_completed}"
        )

    def _skip(self, order: DCAOrder, cycle: int, reason: str):
        order.history.append(CycleOutcome(cycle=cycle, timestamp=self.clock.time(), skipped=True, reason=reason))
        logger.info(f"[DCA] {order.id} cycle {cycle} skipped: {reason}")

    def _fail(self, order: DCAOrder, cycle: int, cycle_amount: int, error: Exception):
        order.consecutive_failures += 1
        order.history.append(CycleOutcome(cycle=cycle, timestamp=self.clock.time(), error=str(error)))
        self._record(order, cycle_amount, None, error=str(error))
        logger.warning(
            f"[DCA] {order.id} cycle {cycle} failed "
            f"({order.consecutive_failures}/{self.max_consecutive_failures}): {error}"
        )
        if order.consecutive_failures >= self.max_consecutive_failures and order.status == DCAStatus.ACTIVE:
            order.status = DCAStatus.PAUSED
            self._stop_ticker(order.id)
            message = f"Order {order.id} auto-paused after {order.consecutive_failures} consecutive failures"
            logger.error(f"[DCA] {message}")
            if self.safety:
                self.safety.add_alert("dca", message, "critical")

    def _record(
        self,
        order: DCAOrder,
        amount_in: int,
        amount_out: Optional[int],
        signature: Optional[str] = None,
        error: Optional[str] = None,
    ):
        if not self.recorder:
            return
        try:
            self.recorder(
                TradeRecord(
                    source="dca",
                    action="buy" if order.is_buy else "swap",
                    mint=order.output_mint,
                    amount_in=amount_in,
                    amount_out=amount_out,
                    signature=signature,
                    error=error,
                    timestamp=self.clock.time(),
                )
            )
        except Exception as e:
            logger.error(f"[DCA] Trade recorder error: {e}")
