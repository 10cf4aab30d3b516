from typing import Any, Callable, Dict, Optional, Tuple

from trading.clock import Clock, system_clock


class CurveCache:
    """Bonding-curve state cache; hot entries (actively traded mints) expire sooner."""

    def __init__(
        self,
        ttl_ms_hot: int = 2000,
        ttl_ms_cold: int = 15000,
        max_size: int = 256,
        clock: Optional[Clock] = None,
    ):
        self.ttl_ms_hot = ttl_ms_hot
        self.ttl_ms_cold = ttl_ms_cold
        self.max_size = max_size
        self._now: Callable[[], float] = (clock or system_clock).time
        self._cache: Dict[str, Tuple[float, Any]] = {}  # mint -> (expires_at_ms, state)

    def __len__(self) -> int:
        return len(self._cache)

    def get(self, mint: str) -> Optional[Any]:
        entry = self._cache.get(mint)
        if not entry:
            return None
        expires_at, value = entry
        if self._now() * 1000 > expires_at:
            self._cache.pop(mint, None)
            return None
        return value

    def set(self, mint: str, value: Any, hot: bool = True):
        ttl = self.ttl_ms_hot if hot else self.ttl_ms_cold
        if mint not in self._cache and len(self._cache) >= self.max_size:
            # evict the entry closest to expiry
            oldest = min(self._cache.items(), key=lambda kv: kv[1][0])[0]
            self._cache.pop(oldest, None)
        self._cache[mint] = (self._now() * 1000 + ttl, value)

    def invalidate(self, mint: str):
        self._cache.pop(mint, None)
