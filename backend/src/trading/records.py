"""
Trade audit trail: immutable trade records and the default recording sink.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from collections import deque
from dataclasses import dataclass, field, asdict
from time import time
from typing import Callable, Deque, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeRecord:
    source: str  # dca|copy|trigger|swap|pump
    action: str
    mint: Optional[str]
    amount_in: Optional[int] = None
    amount_out: Optional[int] = None
    signature: Optional[str] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time)
    id: str = field(default_factory=lambda: f"t_{uuid.uuid4().hex[:12]}")

    @property
    def success(self) -> bool:
        return self.signature is not None and self.error is None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["success"] = self.success
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


TradeRecorder = Callable[[TradeRecord], None]


@dataclass(frozen=True)
class Position:
    """Open position value used for exposure checks."""

    mint: str
    value_sol: float


class TradeJournal:
    """Bounded in-memory trade history with optional JSONL persistence."""

    def __init__(self, path: Optional[str] = None, max_records: int = 1000):
        self.path = path or None
        self.max_records = max_records
        self._records: Deque[TradeRecord] = deque(maxlen=max_records)
        self.total_recorded = 0
        self.failed = 0

    def __call__(self, record: TradeRecord):
        self.record(record)

    def __len__(self) -> int:
        return len(self._records)

    def record(self, record: TradeRecord):
        self._records.append(record)
        self.total_recorded += 1
        if not record.success:
            self.failed += 1
        if self.path:
            self._write(record)
        logger.info(
            f"[JOURNAL] {record.source}/{record.action} "
            f"{(record.mint or '?')[:8]}... | "
            f"{'✓' if record.success else '✗'} | "
            f"{record.signature or record.error}"
        )

    def recent(self, limit: int = 50) -> List[TradeRecord]:
        if limit <= 0:
            return []
        return list(self._records)[-limit:]

    def _write(self, record: TradeRecord):
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(record.to_json() + "\n")
        except OSError as e:
            logger.error(f"[JOURNAL] Failed to write trade record: {e}")
