"""
Position: signed net size per symbol with entry-price weighting, built from fills.

apply_fill is idempotent per trade id so a fill delivered twice (websocket
replay, REST backfill, restart) moves the position exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from hlgrid.core.models import Fill
from hlgrid.core.utils import BoundedSet

log = logging.getLogger("gridbot")

_EPS = 1e-12


@dataclass(frozen=True)
class PositionSnapshot:
    symbol: str
    size: float
    avg_entry: float
    realized_pnl: float


class Position:
    def __init__(
        self,
        symbol: str,
        size: float = 0.0,
        avg_entry: float = 0.0,
        realized_pnl: float = 0.0,
        max_tracked_trades: int = 10000,
    ) -> None:
        self.symbol = symbol
        self.size = size
        self.avg_entry = avg_entry
        self.realized_pnl = realized_pnl
        self._seen = BoundedSet(maxlen=max_tracked_trades)

    def has_seen(self, trade_id: str) -> bool:
        return trade_id in self._seen

    def apply_fill(self, fill: Fill) -> bool:
        """Apply a fill once. Returns False when the trade id was already applied."""
        if not self._seen.add(fill.trade_id):
            return False

        delta = fill.signed_size
        if abs(self.size) < _EPS or (self.size > 0) == (delta > 0):
            total = abs(self.size) + fill.size
            self.avg_entry = (abs(self.size) * self.avg_entry + fill.size * fill.price) / total
            self.size += delta
        else:
            closing = min(abs(self.size), fill.size)
            direction = 1.0 if self.size > 0 else -1.0
            self.realized_pnl += closing * (fill.price - self.avg_entry) * direction
            new_size = self.size + delta
            if abs(new_size) < _EPS:
                self.size = 0.0
                self.avg_entry = 0.0
            elif (new_size > 0) != (self.size > 0):
                # Flipped through zero: remainder opened at the fill price
                self.size = new_size
                self.avg_entry = fill.price
            else:
                self.size = new_size
        return True

    def unrealized_pnl(self, mark: Optional[float]) -> float:
        if not mark or abs(self.size) < _EPS:
            return 0.0
        return self.size * (mark - self.avg_entry)

    def snapshot(self) -> PositionSnapshot:
        return PositionSnapshot(self.symbol, self.size, self.avg_entry, self.realized_pnl)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "size": self.size,
            "avg_entry": self.avg_entry,
            "realized_pnl": self.realized_pnl,
            "trade_ids": list(self._seen.deque),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        pos = cls(
            symbol=str(data.get("symbol", "")),
            size=float(data.get("size", 0.0)),
            avg_entry=float(data.get("avg_entry", 0.0)),
            realized_pnl=float(data.get("realized_pnl", 0.0)),
        )
        pos.mark_seen(data.get("trade_ids") or [])
        return pos

    def mark_seen(self, trade_ids: Iterable[str]) -> None:
        for tid in trade_ids:
            self._seen.add(str(tid))
