"""
Shared value types: grid levels, order intents, fills and price ticks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from hlgrid.core.utils import now_ms


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def is_buy(self) -> bool:
        return self is Side.BUY

    @property
    def sign(self) -> int:
        return 1 if self is Side.BUY else -1

    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY

    @classmethod
    def parse(cls, raw: Any) -> "Side":
        """Accept 'buy'/'sell', Hyperliquid's 'B'/'A', or a Side."""
        if isinstance(raw, Side):
            return raw
        val = str(raw).strip().lower()
        if val in ("buy", "b", "bid"):
            return cls.BUY
        if val in ("sell", "a", "s", "ask"):
            return cls.SELL
        raise ValueError(f"unknown side: {raw!r}")


@dataclass(frozen=True)
class GridLevel:
    """One rung of the ladder. Negative index is below center (buy), positive above (sell)."""
    index: int
    price: float

    @property
    def side(self) -> Side:
        return Side.BUY if self.index < 0 else Side.SELL


class OrderType(Enum):
    """Closed set of order types the engine may submit."""
    LIMIT_GTC = "Gtc"
    LIMIT_ALO = "Alo"
    LIMIT_IOC = "Ioc"

    @classmethod
    def parse(cls, raw: str) -> "OrderType":
        for member in cls:
            if raw.lower() in (member.value.lower(), member.name.lower()):
                return member
        raise ValueError(f"unknown order type: {raw!r}")


@dataclass(frozen=True)
class OrderIntent:
    """Fully specified order to submit. The client order id is the idempotency key."""
    symbol: str
    side: Side
    price: float
    size: float
    client_order_id: str
    order_type: OrderType = OrderType.LIMIT_GTC
    reduce_only: bool = False

    @property
    def signed_size(self) -> float:
        return self.size * self.side.sign

    def to_wire(self) -> Dict[str, Any]:
        """Exchange order-type payload."""
        return {"limit": {"tif": self.order_type.value}}


@dataclass(frozen=True)
class Fill:
    """Execution report. trade_id is the exchange-assigned dedup key."""
    order_id: Optional[int]
    symbol: str
    price: float
    size: float
    side: Side
    trade_id: str
    timestamp_ms: int = field(default_factory=now_ms)
    client_order_id: Optional[str] = None

    @property
    def signed_size(self) -> float:
        return self.size * self.side.sign

    @classmethod
    def from_hyperliquid(cls, raw: Dict[str, Any]) -> "Fill":
        """Build from a userFills entry: {coin, px, sz, side, time, oid, tid, cloid?}."""
        oid = raw.get("oid")
        return cls(
            order_id=int(oid) if oid is not None else None,
            symbol=str(raw.get("coin", "")),
            price=float(raw["px"]),
            size=float(raw["sz"]),
            side=Side.parse(raw.get("side", "")),
            trade_id=str(raw.get("tid") or raw.get("hash") or f"{oid}_{raw.get('time')}"),
            timestamp_ms=int(raw.get("time") or now_ms()),
            client_order_id=raw.get("cloid"),
        )


@dataclass(frozen=True)
class PriceTick:
    symbol: str
    price: float
    timestamp_ms: int = field(default_factory=now_ms)
    # True for the snapshot emitted at start and after every reconnect
    resync: bool = False
