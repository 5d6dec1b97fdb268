"""
Order State Machine - explicit ManagedOrder lifecycle.

    (Desired) ──place──> PENDING ──ack──> RESTING ──┬──> FILLED
        ^                   │                       ├──> CANCELLED
        └──── failure ──────┘                       └──> REPLACED (rebalance/reprice)

"Desired" is implicit: a level the strategy wants occupied with no live order.
A failed placement removes the order from the book (PENDING -> Desired).
Terminal states have no outgoing transitions; an invalid transition is
blocked, counted and logged instead of raised so a late or duplicated exchange
event can never corrupt bookkeeping.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from hlgrid.core.models import OrderIntent, OrderType, Side
from hlgrid.core.utils import now_ms, to_int_safe
from hlgrid.infra.logging_cfg import log_event

log = logging.getLogger("gridbot")


class OrderStatus(Enum):
    PENDING = "pending"      # sent to the gateway, not yet acknowledged
    RESTING = "resting"      # acknowledged, on the book
    FILLED = "filled"
    CANCELLED = "cancelled"
    REPLACED = "replaced"

    @property
    def is_live(self) -> bool:
        return self in (OrderStatus.PENDING, OrderStatus.RESTING)


VALID_TRANSITIONS: Dict[OrderStatus, List[OrderStatus]] = {
    OrderStatus.PENDING: [
        OrderStatus.RESTING,
        OrderStatus.FILLED,      # fill observed before the ack came back
        OrderStatus.CANCELLED,   # status query found it cancelled
    ],
    OrderStatus.RESTING: [
        OrderStatus.FILLED,
        OrderStatus.CANCELLED,
        OrderStatus.REPLACED,
    ],
    OrderStatus.FILLED: [],
    OrderStatus.CANCELLED: [],
    OrderStatus.REPLACED: [],
}


@dataclass
class StateTransition:
    from_state: OrderStatus
    to_state: OrderStatus
    timestamp_ms: int
    reason: Optional[str] = None


@dataclass
class ManagedOrder:
    """The mutable unit of work. Owned by exactly one lifecycle manager."""
    level_index: int
    side: Side
    price: float
    size: float
    client_order_id: str
    symbol: str = ""
    exchange_order_id: Optional[int] = None
    status: OrderStatus = OrderStatus.PENDING
    filled_size: float = 0.0
    created_at_ms: int = field(default_factory=now_ms)
    updated_at_ms: int = 0
    # Set while a cancel is in flight: "stop", "pause", "halt", "rebalance", "reprice", "narrowed"
    cancel_reason: Optional[str] = None
    transitions: List[StateTransition] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.updated_at_ms:
            self.updated_at_ms = self.created_at_ms

    @property
    def is_live(self) -> bool:
        return self.status.is_live

    @property
    def remaining(self) -> float:
        return max(0.0, self.size - self.filled_size)

    @property
    def signed_remaining(self) -> float:
        return self.remaining * self.side.sign

    def intent(self, order_type: OrderType = OrderType.LIMIT_GTC) -> OrderIntent:
        return OrderIntent(
            symbol=self.symbol,
            side=self.side,
            price=self.price,
            size=self.size,
            client_order_id=self.client_order_id,
            order_type=order_type,
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "level_index": self.level_index,
            "side": self.side.value,
            "price": self.price,
            "size": self.size,
            "client_order_id": self.client_order_id,
            "exchange_order_id": self.exchange_order_id,
            "status": self.status.value,
            "filled_size": self.filled_size,
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
            "cancel_reason": self.cancel_reason,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any], symbol: str = "") -> "ManagedOrder":
        return cls(
            level_index=int(data["level_index"]),
            side=Side.parse(data["side"]),
            price=float(data["price"]),
            size=float(data["size"]),
            client_order_id=str(data["client_order_id"]),
            symbol=symbol,
            exchange_order_id=to_int_safe(data.get("exchange_order_id")),
            status=OrderStatus(data.get("status", OrderStatus.PENDING.value)),
            filled_size=float(data.get("filled_size", 0.0)),
            created_at_ms=int(data.get("created_at_ms") or now_ms()),
            updated_at_ms=int(data.get("updated_at_ms") or 0),
            cancel_reason=data.get("cancel_reason"),
        )


class OrderStateMachine:
    """
    Index of ManagedOrders by client id, exchange id and level, with guarded
    transitions. Single-task use only: the grid worker is the only caller.
    """

    def __init__(self, grid_id: str = "") -> None:
        self.grid_id = grid_id
        self._by_cloid: Dict[str, ManagedOrder] = {}
        self._by_oid: Dict[int, ManagedOrder] = {}
        self._live_by_level: Dict[int, ManagedOrder] = {}
        self._stats = {
            "created": 0,
            "filled": 0,
            "cancelled": 0,
            "replaced": 0,
            "failed": 0,
            "invalid_transitions_blocked": 0,
        }

    # ---- indexing -------------------------------------------------------

    def add(self, order: ManagedOrder) -> ManagedOrder:
        """Track a new order. A level may hold only one live order."""
        if order.is_live:
            current = self._live_by_level.get(order.level_index)
            if current is not None and current is not order:
                raise ValueError(
                    f"level {order.level_index} already holds live order {current.client_order_id}"
                )
            self._live_by_level[order.level_index] = order
        self._by_cloid[order.client_order_id] = order
        if order.exchange_order_id is not None:
            self._by_oid[order.exchange_order_id] = order
        self._stats["created"] += 1
        log.debug("order_created grid=%s cloid=%s level=%s side=%s px=%s sz=%s",
                  self.grid_id, order.client_order_id, order.level_index,
                  order.side.value, order.price, order.size)
        return order

    def get(self, client_order_id: Optional[str] = None, exchange_order_id: Optional[int] = None) -> Optional[ManagedOrder]:
        if exchange_order_id is not None and exchange_order_id in self._by_oid:
            return self._by_oid[exchange_order_id]
        if client_order_id and client_order_id in self._by_cloid:
            return self._by_cloid[client_order_id]
        return None

    def live_at(self, level_index: int) -> Optional[ManagedOrder]:
        return self._live_by_level.get(level_index)

    def live_orders(self) -> List[ManagedOrder]:
        return sorted(self._live_by_level.values(), key=lambda o: o.price)

    def all_orders(self) -> Iterable[ManagedOrder]:
        return self._by_cloid.values()

    def set_exchange_id(self, order: ManagedOrder, exchange_order_id: int) -> None:
        order.exchange_order_id = exchange_order_id
        self._by_oid[exchange_order_id] = order
        order.updated_at_ms = now_ms()

    # ---- transitions ----------------------------------------------------

    def transition(self, order: ManagedOrder, to_state: OrderStatus, reason: Optional[str] = None) -> bool:
        from_state = order.status
        if to_state not in VALID_TRANSITIONS.get(from_state, []):
            self._stats["invalid_transitions_blocked"] += 1
            log_event(
                log,
                "order_invalid_transition",
                level=logging.WARNING,
                grid_id=self.grid_id,
                cloid=order.client_order_id,
                from_state=from_state.value,
                to_state=to_state.value,
                reason=reason,
            )
            return False

        ts = now_ms()
        order.transitions.append(StateTransition(from_state, to_state, ts, reason))
        order.status = to_state
        order.updated_at_ms = ts
        if not to_state.is_live:
            order.cancel_reason = None
            if self._live_by_level.get(order.level_index) is order:
                del self._live_by_level[order.level_index]
        if to_state is OrderStatus.FILLED:
            self._stats["filled"] += 1
        elif to_state is OrderStatus.CANCELLED:
            self._stats["cancelled"] += 1
        elif to_state is OrderStatus.REPLACED:
            self._stats["replaced"] += 1

        if from_state is OrderStatus.PENDING and to_state is OrderStatus.RESTING:
            log.debug("order_ack grid=%s cloid=%s oid=%s", self.grid_id, order.client_order_id, order.exchange_order_id)
        else:
            log_event(
                log,
                "order_transition",
                grid_id=self.grid_id,
                cloid=order.client_order_id,
                oid=order.exchange_order_id,
                level_index=order.level_index,
                side=order.side.value,
                px=order.price,
                from_state=from_state.value,
                to_state=to_state.value,
                reason=reason,
            )
        return True

    def acknowledge(self, order: ManagedOrder, exchange_order_id: int) -> bool:
        self.set_exchange_id(order, exchange_order_id)
        return self.transition(order, OrderStatus.RESTING, reason="exchange_ack")

    def fail(self, order: ManagedOrder, reason: str) -> bool:
        """PENDING -> Desired: forget an order whose placement definitively failed."""
        if order.status is not OrderStatus.PENDING:
            self._stats["invalid_transitions_blocked"] += 1
            return False
        self.forget(order)
        self._stats["failed"] += 1
        log_event(
            log,
            "order_placement_abandoned",
            level=logging.WARNING,
            grid_id=self.grid_id,
            cloid=order.client_order_id,
            level_index=order.level_index,
            side=order.side.value,
            px=order.price,
            reason=reason,
        )
        return True

    def forget(self, order: ManagedOrder) -> None:
        self._by_cloid.pop(order.client_order_id, None)
        if order.exchange_order_id is not None:
            self._by_oid.pop(order.exchange_order_id, None)
        if self._live_by_level.get(order.level_index) is order:
            del self._live_by_level[order.level_index]

    def prune_terminal(self, max_age_ms: int = 300_000) -> int:
        """Drop terminal orders older than max_age_ms to keep memory bounded."""
        cutoff = now_ms() - max_age_ms
        stale = [o for o in self._by_cloid.values() if not o.is_live and o.updated_at_ms < cutoff]
        for order in stale:
            self.forget(order)
        return len(stale)

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "live": len(self._live_by_level)}

    def clear(self) -> None:
        self._by_cloid.clear()
        self._by_oid.clear()
        self._live_by_level.clear()
