"""
Conditional orders: poll spot prices on a shared ticker and fire the
attached order when a price condition is met.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .clock import Clock, system_clock
from .errors import NotFoundError
from .ticker import Ticker

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SEC = 10.0


@dataclass(frozen=True)
class PriceAbove:
    price: float
    type = "price_above"


@dataclass(frozen=True)
class PriceBelow:
    price: float
    type = "price_below"


@dataclass(frozen=True)
class PriceCross:
    price: float
    type = "price_cross"


Condition = Union[PriceAbove, PriceBelow, PriceCross]

CONDITION_TYPES = {cls.type: cls for cls in (PriceAbove, PriceBelow, PriceCross)}


def condition_from_dict(data: Dict[str, Any]) -> Condition:
    """Build a condition from its wire form, e.g. {"type": "price_above", "price": 1.5}."""
    kind = data.get("type")
    cls = CONDITION_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown trigger condition type: {kind!r}")
    price = float(data.get("price", 0))
    if price <= 0:
        raise ValueError("Trigger price must be positive")
    return cls(price=price)


def condition_to_dict(condition: Condition) -> Dict[str, Any]:
    return {"type": condition.type, "price": condition.price}


def evaluate_condition(condition: Condition, current: float, previous: Optional[float]) -> bool:
    if isinstance(condition, PriceAbove):
        return current >= condition.price
    if isinstance(condition, PriceBelow):
        return current <= condition.price
    if isinstance(condition, PriceCross):
        if previous is None:
            return False
        target = condition.price
        return (previous < target <= current) or (previous > target >= current)
    raise TypeError(f"Unsupported condition: {condition!r}")


class TriggerStatus(Enum):
    ACTIVE = "active"
    FIRED = "fired"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    STOPPED = "stopped"


@dataclass(frozen=True)
class TriggerOrder:
    action: str  # buy|sell
    input_mint: str
    output_mint: str
    amount: int
    slippage_bps: int = 300

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass(frozen=True)
class TriggerResult:
    success: bool
    signature: Optional[str] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d: Dict[str, Any] = {"success": self.success, **self.details}
        if self.signature:
            d["signature"] = self.signature
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class Trigger:
    id: str
    mint: str
    condition: Condition
    order: TriggerOrder
    expires_at: Optional[float] = None
    one_shot: bool = True
    status: TriggerStatus = TriggerStatus.ACTIVE
    previous_price: Optional[float] = None
    created_at: float = 0.0
    fired_at: Optional[float] = None
    fire_count: int = 0
    result: Optional[TriggerResult] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "mint": self.mint,
            "condition": condition_to_dict(self.condition),
            "order": self.order.to_dict(),
            "status": self.status.value,
            "created_at": self.created_at,
            "fired_at": self.fired_at,
            "expires_at": self.expires_at,
            "one_shot": self.one_shot,
            "fire_count": self.fire_count,
            "result": self.result.to_dict() if self.result else None,
        }


TriggerExecutor = Callable[[Trigger], Awaitable[Union[TriggerResult, Dict[str, Any], None]]]


class TriggerManager:
    def __init__(
        self,
        price_source,
        executor: Optional[TriggerExecutor] = None,
        poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
        clock: Optional[Clock] = None,
    ):
        self.price_source = price_source
        self.executor = executor
        self.poll_interval_sec = poll_interval_sec
        self.clock = clock or system_clock
        self.triggers: Dict[str, Trigger] = {}
        self._ticker: Optional[Ticker] = None

    @property
    def polling(self) -> bool:
        return self._ticker is not None and self._ticker.running

    def set_executor(self, executor: TriggerExecutor):
        self.executor = executor

    def create(
        self,
        mint: str,
        condition: Union[Condition, Dict[str, Any]],
        order: Union[TriggerOrder, Dict[str, Any]],
        expires_at: Optional[float] = None,
        one_shot: bool = True,
    ) -> Trigger:
        if not mint:
            raise ValueError("mint is required")
        if isinstance(condition, dict):
            condition = condition_from_dict(condition)
        if isinstance(order, dict):
            order = TriggerOrder(**order)
        trigger = Trigger(
            id=f"trig_{uuid.uuid4().hex[:12]}",
            mint=mint,
            condition=condition,
            order=order,
            expires_at=expires_at,
            one_shot=one_shot,
            created_at=self.clock.time(),
        )
        self.triggers[trigger.id] = trigger
        self._ensure_polling()
        logger.info(
            f"[TRIGGER] Created {trigger.id}: {mint[:8]}... {condition.type} {condition.price} "
            f"-> {order.action} {order.amount}"
        )
        return trigger

    def get(self, trigger_id: str) -> Trigger:
        trigger = self.triggers.get(trigger_id)
        if trigger is None:
            raise NotFoundError(f"Trigger {trigger_id} not found")
        return trigger

    def cancel(self, trigger_id: str) -> Trigger:
        trigger = self.get(trigger_id)
        if trigger.status in (TriggerStatus.ACTIVE, TriggerStatus.FIRED):
            trigger.status = TriggerStatus.CANCELLED
            logger.info(f"[TRIGGER] Cancelled {trigger.id}")
        self._stop_if_idle()
        return trigger

    def stop_all(self):
        for trigger in self.triggers.values():
            if trigger.status in (TriggerStatus.ACTIVE, TriggerStatus.FIRED):
                trigger.status = TriggerStatus.STOPPED
        self._stop_polling()

    def close(self):
        self.stop_all()

    def list(self) -> List[dict]:
        return [t.to_dict() for t in self.triggers.values()]

    def get_active(self) -> List[Trigger]:
        return [t for t in self.triggers.values() if t.status == TriggerStatus.ACTIVE]

    async def poll(self):
        """One polling round over every active trigger."""
        active = self.get_active()
        if not active:
            self._stop_if_idle()
            return

        mints = list(dict.fromkeys(t.mint for t in active))
        try:
            prices = await self.price_source.get_prices(mints)
        except Exception as e:
            logger.warning(f"[TRIGGER] Price fetch failed, skipping round: {e}")
            prices = None

        now = self.clock.time()
        for trigger in active:
            if trigger.status != TriggerStatus.ACTIVE:
                continue
            if trigger.expires_at is not None and now >= trigger.expires_at:
                trigger.status = TriggerStatus.EXPIRED
                logger.info(f"[TRIGGER] {trigger.id} expired")
                continue
            if prices is None:
                continue
            current = prices.get(trigger.mint)
            if current is None:
                continue

            should_fire = evaluate_condition(trigger.condition, current, trigger.previous_price)
            trigger.previous_price = current
            if should_fire:
                await self._fire(trigger, current)

        self._stop_if_idle()

    async def _fire(self, trigger: Trigger, price: float):
        trigger.status = TriggerStatus.FIRED
        trigger.fired_at = self.clock.time()
        trigger.fire_count += 1
        logger.info(f"[TRIGGER] {trigger.id} fired at {price} ({trigger.condition.type} {trigger.condition.price})")
        if self.executor:
            try:
                outcome = await self.executor(trigger)
                trigger.result = _as_result(outcome)
            except Exception as e:
                logger.error(f"[TRIGGER] {trigger.id} execution failed: {e}")
                trigger.result = TriggerResult(success=False, error=str(e))
        # cancel()/stop_all() while the executor ran wins over re-arming
        if trigger.status == TriggerStatus.FIRED:
            trigger.status = TriggerStatus.COMPLETED if trigger.one_shot else TriggerStatus.ACTIVE

    def _ensure_polling(self):
        if self.polling:
            return
        self._ticker = Ticker(self.poll_interval_sec, self.poll, clock=self.clock, name="trigger-poll")
        self._ticker.start()

    def _stop_if_idle(self):
        # a firing trigger keeps the poll task alive until its executor returns
        busy = any(t.status in (TriggerStatus.ACTIVE, TriggerStatus.FIRED) for t in self.triggers.values())
        if not busy:
            self._stop_polling()

    def _stop_polling(self):
        ticker, self._ticker = self._ticker, None
        if ticker:
            ticker.stop()


def _as_result(outcome: Union[TriggerResult, Dict[str, Any], None]) -> TriggerResult:
    if isinstance(outcome, TriggerResult):
        return outcome
    details = dict(outcome or {})
    return TriggerResult(
        success=bool(details.pop("success", True)),
        signature=details.pop("signature", None),
        error=details.pop("error", None),
        details=details,
    )
