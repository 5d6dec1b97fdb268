"""
OrderLifecycleManager - keeps the live order set of one grid equal to the
desired ladder.

Handles:
- Reconciliation by level index: place into empty levels, cancel levels the
  grid no longer wants, cancel+replace levels whose price moved
- Fill ingestion: position update, level vacated, counter order one grid line
  away in the opposite direction
- Placement with an idempotency key recorded before the call, per-call
  timeout, status query after a timeout, exponential backoff on retryable
  errors
- Cancellation with an authoritative status query when the exchange does not
  know the order
- Fills for orders not yet acknowledged: parked until the order id is known

All bookkeeping methods are synchronous and called by the grid worker task
only. Gateway calls run as separate tasks and report back through `post`, so
results are applied in the worker's order together with ticks and fills.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from hlgrid.config.grid_config import GridConfig
from hlgrid.core.incidents import Incident, IncidentKind
from hlgrid.core.models import Fill, GridLevel, Side
from hlgrid.core.utils import backoff_delay, new_client_order_id
from hlgrid.execution.order_gateway import (
    CancelOutcome,
    CancelResult,
    ExchangeOrderStatus,
    GatewayError,
    GatewayErrorKind,
    OrderGateway,
    OrderStatusReport,
    PlaceResult,
)
from hlgrid.execution.order_state_machine import ManagedOrder, OrderStateMachine, OrderStatus
from hlgrid.infra.logging_cfg import log_event
from hlgrid.risk.risk import RiskManager
from hlgrid.strategy.grid_engine import GridStrategyEngine

log = logging.getLogger("gridbot")

_SIZE_EPS = 1e-9

# Cancel reasons that hand the level to a successor order once confirmed
_REPLACING_REASONS = frozenset({"reprice", "rebalance", "side_flip"})
# Cancel finished without closing the order; only the exchange can settle it now
_AWAITING_EXCHANGE = frozenset({"await_fill", "unknown_to_exchange"})


@dataclass
class LifecycleSettings:
    gateway_timeout: float = 10.0
    place_max_attempts: int = 4
    cancel_max_attempts: int = 3
    # Status queries after a placement timeout before the outcome is declared unknown
    status_max_attempts: int = 4
    retry_base_sec: float = 0.5
    retry_max_sec: float = 8.0
    # A level whose placement failed is not retried before this many seconds
    failed_level_cooldown_sec: float = 5.0


# ---- results posted back to the worker queue --------------------------------


@dataclass(frozen=True)
class PlacementDone:
    client_order_id: str
    result: PlaceResult
    attempts: int = 1


class CancelVerdict(Enum):
    CANCELLED = "cancelled"
    FILLED = "filled"      # the cancel lost a race with a fill
    UNKNOWN = "unknown"    # exchange has no record of the order
    FAILED = "failed"


@dataclass(frozen=True)
class CancelDone:
    client_order_id: str
    verdict: CancelVerdict
    error: Optional[GatewayError] = None
    attempts: int = 1


@dataclass(frozen=True)
class StatusDone:
    """Answer to a status query about an exchange order id we could not match."""
    exchange_order_id: int
    report: OrderStatusReport


@dataclass(frozen=True)
class PlacementUnresolved:
    """A placement timed out and no status query got an answer."""
    client_order_id: str
    message: str
    attempts: int = 1


@dataclass(frozen=True)
class VerifyStatusDone:
    client_order_id: str
    report: OrderStatusReport


LifecycleResult = (PlacementDone, PlacementUnresolved, CancelDone, StatusDone, VerifyStatusDone)


# ---- fill overrides ----------------------------------------------------------


class SlotKind(Enum):
    VACANT = "vacant"
    COUNTER = "counter"


@dataclass(frozen=True)
class SlotOverride:
    """What a level holds after fills, until the next full rebalance."""
    kind: SlotKind
    side: Optional[Side] = None
    size: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "side": self.side.value if self.side else None,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SlotOverride":
        side = data.get("side")
        return cls(
            kind=SlotKind(data["kind"]),
            side=Side.parse(side) if side else None,
            size=float(data.get("size") or 0.0),
        )


class FillOutcome(Enum):
    APPLIED = "applied"
    COMPLETED = "completed"   # applied and the order is now fully filled
    DUPLICATE = "duplicate"
    PARKED = "parked"
    IGNORED = "ignored"


@dataclass(frozen=True)
class DesiredOrder:
    side: Side
    price: float
    size: float


class OrderLifecycleManager:
    def __init__(
        self,
        grid_id: str,
        config: GridConfig,
        gateway: OrderGateway,
        risk: RiskManager,
        strategy: GridStrategyEngine,
        post: Callable[[Any], None],
        on_incident: Optional[Callable[[Incident], None]] = None,
        settings: Optional[LifecycleSettings] = None,
        metrics: Any = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.grid_id = grid_id
        self.config = config
        self.gateway = gateway
        self.risk = risk
        self.strategy = strategy
        self.settings = settings or LifecycleSettings()
        self.metrics = metrics
        self._post = post
        self._on_incident = on_incident
        self._sleep = sleep

        self.orders = OrderStateMachine(grid_id)
        self.overrides: Dict[int, SlotOverride] = {}
        self.levels: List[GridLevel] = []
        self.center: Optional[float] = None
        self.spacing: Optional[float] = None
        # Cleared on pause/stop/halt; no new orders are created while False
        self.accepting = True
        # Levels left empty by the risk check, with the deny reason
        self.capped: Dict[int, str] = {}

        self._placing: Dict[str, asyncio.Task] = {}
        self._cancelling: Dict[str, asyncio.Task] = {}
        self._querying: Dict[int, asyncio.Task] = {}
        self._verifying: Dict[str, asyncio.Task] = {}
        # PENDING orders whose placement outcome is still unknown to us
        self._unresolved: Set[str] = set()
        self._parked: Dict[int, List[Fill]] = {}
        self._cooldown_until: Dict[int, float] = {}

    # ---- desired state ----------------------------------------------------

    @property
    def position(self):
        return self.risk.position

    def desired_orders(self) -> Dict[int, DesiredOrder]:
        """Ladder from the last plan with fill overrides applied, by level index."""
        desired: Dict[int, DesiredOrder] = {
            lvl.index: DesiredOrder(lvl.side, lvl.price, self.config.order_size) for lvl in self.levels
        }
        if self.center is None:
            return desired
        for index, override in self.overrides.items():
            if override.kind is SlotKind.VACANT:
                desired.pop(index, None)
                continue
            px = self.strategy.line_price(self.center, index, self.spacing)
            if px <= 0:
                desired.pop(index, None)
                continue
            desired[index] = DesiredOrder(override.side, px, override.size or self.config.order_size)
        return desired

    def set_grid(self, levels: Iterable[GridLevel], center: float, spacing: float) -> None:
        self.levels = list(levels)
        self.center = center
        self.spacing = spacing

    # ---- reconciliation ---------------------------------------------------

    def reconcile(self) -> None:
        """Diff live orders against the desired ladder and issue gateway calls."""
        if self.center is None:
            return
        desired = self.desired_orders()
        threshold = self.config.reprice_threshold

        for order in self.orders.live_orders():
            if order.cancel_reason:
                continue
            want = desired.get(order.level_index)
            if want is None:
                self.request_cancel(order, "narrowed")
            elif want.side is not order.side:
                self.request_cancel(order, "side_flip")
            elif order.status is OrderStatus.RESTING and _moved(order.price, want.price) > threshold:
                self.request_cancel(order, "reprice")

        for oid in list(self._parked):
            if oid not in self._querying:
                self._query_unknown(oid)

        if not self.accepting:
            return
        self.capped = {k: v for k, v in self.capped.items() if k in desired}
        for index in sorted(desired, key=lambda i: (abs(i), i)):
            if self.orders.live_at(index) is None:
                self._place(index, desired[index])

    def rebalance(self) -> None:
        """Full rebalance: fill overrides are dropped and every live order is replaced."""
        self.overrides.clear()
        self.capped.clear()
        for order in self.orders.live_orders():
            if order.cancel_reason not in ("stop", "pause", "halt", *_AWAITING_EXCHANGE):
                self.request_cancel(order, "rebalance", force=True)
        self.reconcile()

    # ---- placement --------------------------------------------------------

    def _same_side_exposure(self, side: Side) -> float:
        return sum(o.signed_remaining for o in self.orders.live_orders() if o.side is side)

    def _place(self, index: int, want: DesiredOrder) -> Optional[ManagedOrder]:
        now = time.monotonic()
        if self._cooldown_until.get(index, 0.0) > now:
            return None

        order = ManagedOrder(
            level_index=index,
            side=want.side,
            price=want.price,
            size=want.size,
            client_order_id=new_client_order_id(),
            symbol=self.config.symbol,
        )
        decision = self.risk.check_placement(
            order,
            self.position,
            self.config,
            open_exposure=self._same_side_exposure(want.side),
        )
        if not decision:
            if self.capped.get(index) != decision.reason:
                log_event(
                    log,
                    "risk_cap_level",
                    level=logging.WARNING,
                    grid_id=self.grid_id,
                    index=index,
                    side=want.side.value,
                    px=want.price,
                    reason=decision.reason,
                    position=self.position.size,
                )
            self.capped[index] = decision.reason or "denied"
            return None
        self.capped.pop(index, None)

        # Idempotency key is on the books before the gateway sees the order
        self.orders.add(order)
        self._metric("order_event", self.grid_id, "submitted")
        intent = order.intent(self.config.order_type)
        self._placing[order.client_order_id] = asyncio.create_task(
            self._place_task(intent), name=f"place-{self.grid_id}-{index}"
        )
        return order

    async def _place_task(self, intent) -> None:
        cfg = self.settings
        cloid = intent.client_order_id
        last_error: Optional[GatewayError] = None
        attempt = 0
        try:
            while attempt < cfg.place_max_attempts:
                attempt += 1
                started = time.monotonic()
                try:
                    result = await asyncio.wait_for(self.gateway.place_order(intent), cfg.gateway_timeout)
                except asyncio.TimeoutError:
                    self._metric("gateway_latency", "place", time.monotonic() - started)
                    # Outcome unknown: ask the exchange before sending again
                    report = await self._status_after_timeout(intent.symbol, cloid)
                    if report.error is not None:
                        self._post(PlacementUnresolved(cloid, report.error.message, attempt))
                        return
                    resolved = _placement_from_report(cloid, report)
                    if resolved is not None:
                        self._post(PlacementDone(cloid, resolved, attempt))
                        return
                    last_error = GatewayError(GatewayErrorKind.RETRYABLE, "timeout")
                else:
                    self._metric("gateway_latency", "place", time.monotonic() - started)
                    if result.ok or (result.error is not None and not result.error.retryable):
                        self._post(PlacementDone(cloid, result, attempt))
                        return
                    last_error = result.error or GatewayError(GatewayErrorKind.RETRYABLE, "no order id")

                log_event(
                    log,
                    "placement_retry",
                    level=logging.WARNING,
                    grid_id=self.grid_id,
                    cloid=cloid,
                    attempt=attempt,
                    error=last_error.message,
                )
                if attempt < cfg.place_max_attempts:
                    await self._sleep(backoff_delay(attempt - 1, cfg.retry_base_sec, cfg.retry_max_sec))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.exception("placement_task_error grid=%s cloid=%s", self.grid_id, cloid)
            last_error = GatewayError(GatewayErrorKind.TERMINAL, f"{type(exc).__name__}: {exc}")
            self._post(PlacementDone(cloid, PlaceResult(cloid, error=last_error), attempt))
            return

        message = f"retries exhausted after {attempt} attempts: {last_error.message if last_error else 'unknown'}"
        self._post(PlacementDone(cloid, PlaceResult(cloid, error=GatewayError(GatewayErrorKind.RETRYABLE, message)), attempt))

    def on_placement_done(self, done: PlacementDone) -> None:
        self._placing.pop(done.client_order_id, None)
        order = self.orders.get(client_order_id=done.client_order_id)
        result = done.result
        if order is None:
            return
        if order.status is not OrderStatus.PENDING:
            # A fill or status query got there first
            if result.exchange_order_id is not None and order.exchange_order_id is None:
                self.orders.set_exchange_id(order, result.exchange_order_id)
            return

        if result.ok:
            self.orders.acknowledge(order, result.exchange_order_id)
            self._metric("order_event", self.grid_id, "acknowledged")
            self._replay_parked(result.exchange_order_id)
            if order.is_live and order.cancel_reason:
                self._launch_cancel(order)
            return

        error = result.error or GatewayError(GatewayErrorKind.TERMINAL, "unknown")
        self.orders.fail(order, error.message)
        self._metric("order_event", self.grid_id, "failed")
        self._cooldown_until[order.level_index] = time.monotonic() + self.settings.failed_level_cooldown_sec
        if error.kind is GatewayErrorKind.SESSION:
            self._incident(IncidentKind.SESSION_EXPIRED, error.message, cloid=order.client_order_id)
        else:
            self._incident(
                IncidentKind.PLACEMENT_FAILED,
                error.message,
                cloid=order.client_order_id,
                level_index=order.level_index,
                side=order.side.value,
                px=order.price,
                attempts=done.attempts,
            )

    def on_placement_unresolved(self, done: PlacementUnresolved) -> None:
        self._placing.pop(done.client_order_id, None)
        order = self.orders.get(client_order_id=done.client_order_id)
        if order is None or order.status is not OrderStatus.PENDING:
            return
        # Not resent and not failed: the order may be resting on the exchange
        self._unresolved.add(order.client_order_id)
        self._incident(
            IncidentKind.DATA_INCONSISTENCY,
            "placement outcome unknown",
            cloid=order.client_order_id,
            level_index=order.level_index,
            error=done.message,
            attempts=done.attempts,
        )

    # ---- cancellation -----------------------------------------------------

    def request_cancel(self, order: ManagedOrder, reason: str, force: bool = False) -> None:
        """
        Mark an order for cancellation. PENDING orders are cancelled as soon as
        their acknowledgment arrives. `force` overwrites an earlier reason.
        """
        if not order.is_live:
            return
        if order.cancel_reason and not force:
            return
        order.cancel_reason = reason
        if order.status is OrderStatus.RESTING:
            self._launch_cancel(order)

    def cancel_all(self, reason: str) -> int:
        """Cancel every live order; returns how many are still live."""
        live = self.orders.live_orders()
        for order in live:
            if order.cancel_reason in _AWAITING_EXCHANGE:
                continue
            self.request_cancel(order, reason, force=True)
        return len(live)

    def _launch_cancel(self, order: ManagedOrder) -> None:
        cloid = order.client_order_id
        if cloid in self._cancelling or order.exchange_order_id is None:
            return
        self._cancelling[cloid] = asyncio.create_task(
            self._cancel_task(cloid, order.exchange_order_id),
            name=f"cancel-{self.grid_id}-{order.level_index}",
        )

    async def _cancel_task(self, cloid: str, oid: int) -> None:
        cfg = self.settings
        symbol = self.config.symbol
        last_error: Optional[GatewayError] = None
        attempt = 0
        try:
            while attempt < cfg.cancel_max_attempts:
                attempt += 1
                started = time.monotonic()
                try:
                    result = await asyncio.wait_for(self.gateway.cancel_order(symbol, oid), cfg.gateway_timeout)
                except asyncio.TimeoutError:
                    result = CancelResult(CancelOutcome.ERROR, GatewayError(GatewayErrorKind.RETRYABLE, "timeout"))
                self._metric("gateway_latency", "cancel", time.monotonic() - started)

                if result.outcome is CancelOutcome.OK:
                    self._post(CancelDone(cloid, CancelVerdict.CANCELLED, attempts=attempt))
                    return

                error = result.error
                if result.outcome is CancelOutcome.NOT_FOUND or (error is not None and error.message == "timeout"):
                    report = await self._status(symbol, exchange_order_id=oid)
                    verdict = _cancel_verdict_from_report(report)
                    if verdict is not None:
                        self._post(CancelDone(cloid, verdict, attempts=attempt))
                        return
                    if report.status is ExchangeOrderStatus.OPEN:
                        error = GatewayError(GatewayErrorKind.RETRYABLE, "still open after cancel")
                    else:
                        error = report.error or error

                last_error = error or GatewayError(GatewayErrorKind.RETRYABLE, "cancel failed")
                if not last_error.retryable:
                    self._post(CancelDone(cloid, CancelVerdict.FAILED, last_error, attempt))
                    return
                log_event(
                    log,
                    "cancel_retry",
                    level=logging.WARNING,
                    grid_id=self.grid_id,
                    cloid=cloid,
                    oid=oid,
                    attempt=attempt,
                    error=last_error.message,
                )
                if attempt < cfg.cancel_max_attempts:
                    await self._sleep(backoff_delay(attempt - 1, cfg.retry_base_sec, cfg.retry_max_sec))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.exception("cancel_task_error grid=%s cloid=%s", self.grid_id, cloid)
            last_error = GatewayError(GatewayErrorKind.TERMINAL, f"{type(exc).__name__}: {exc}")
        self._post(CancelDone(cloid, CancelVerdict.FAILED, last_error, attempt))

    def on_cancel_done(self, done: CancelDone) -> None:
        self._cancelling.pop(done.client_order_id, None)
        order = self.orders.get(client_order_id=done.client_order_id)
        if order is None or not order.is_live:
            return
        reason = order.cancel_reason

        if done.verdict is CancelVerdict.CANCELLED:
            self._metric("order_event", self.grid_id, "cancelled")
            self._retire(order, reason)
        elif done.verdict is CancelVerdict.FILLED:
            # Keep the order; the fill stream settles it
            order.cancel_reason = "await_fill"
            log_event(log, "cancel_raced_fill", grid_id=self.grid_id, cloid=order.client_order_id, oid=order.exchange_order_id)
        elif done.verdict is CancelVerdict.UNKNOWN:
            # Kept live so the level is not re-placed; a fill or a later verify settles it
            order.cancel_reason = "unknown_to_exchange"
            self._incident(
                IncidentKind.DATA_INCONSISTENCY,
                "exchange has no record of a live order",
                cloid=order.client_order_id,
                oid=order.exchange_order_id,
            )
        else:
            error = done.error or GatewayError(GatewayErrorKind.TERMINAL, "cancel failed")
            # Cleared so the next pass can ask again
            order.cancel_reason = None
            if error.kind is GatewayErrorKind.SESSION:
                self._incident(IncidentKind.SESSION_EXPIRED, error.message, cloid=order.client_order_id)
            else:
                self._incident(
                    IncidentKind.CANCEL_FAILED,
                    error.message,
                    cloid=order.client_order_id,
                    oid=order.exchange_order_id,
                    reason=reason,
                    attempts=done.attempts,
                )

    def _retire(self, order: ManagedOrder, reason: Optional[str]) -> None:
        """Confirmed cancel: hand the level to its successor in the same step when replacing."""
        index = order.level_index
        if reason in _REPLACING_REASONS and self.accepting:
            want = self.desired_orders().get(index)
            if want is not None:
                status = OrderStatus.REPLACED if reason == "rebalance" else OrderStatus.CANCELLED
                self.orders.transition(order, status, reason=reason)
                self._place(index, want)
                return
        self.orders.transition(order, OrderStatus.CANCELLED, reason=reason)

    # ---- fills ------------------------------------------------------------

    def on_fill(self, fill: Fill) -> FillOutcome:
        if fill.symbol and fill.symbol != self.config.symbol:
            return FillOutcome.IGNORED
        if self.position.has_seen(fill.trade_id):
            log.debug("fill_duplicate grid=%s tid=%s", self.grid_id, fill.trade_id)
            return FillOutcome.DUPLICATE

        order = self.orders.get(client_order_id=fill.client_order_id, exchange_order_id=fill.order_id)
        if order is None:
            parked = self._parked.setdefault(fill.order_id, [])
            if all(f.trade_id != fill.trade_id for f in parked):
                parked.append(fill)
            log_event(log, "fill_parked", grid_id=self.grid_id, oid=fill.order_id, tid=fill.trade_id)
            if fill.order_id not in self._querying:
                self._query_unknown(fill.order_id)
            return FillOutcome.PARKED

        if not order.is_live and order.remaining <= _SIZE_EPS:
            # Already settled from a status query; this is the same execution
            self.position.mark_seen([fill.trade_id])
            log_event(log, "fill_after_complete", level=logging.WARNING, grid_id=self.grid_id, oid=fill.order_id, tid=fill.trade_id)
            return FillOutcome.DUPLICATE
        if order.exchange_order_id is None:
            self.orders.set_exchange_id(order, fill.order_id)
        if not self.risk.apply_fill(fill):
            return FillOutcome.DUPLICATE
        order.filled_size += fill.size
        self._metric("fill_applied", self.grid_id, fill.side.value)
        log_event(
            log,
            "fill",
            grid_id=self.grid_id,
            oid=fill.order_id,
            tid=fill.trade_id,
            level_index=order.level_index,
            side=fill.side.value,
            px=fill.price,
            sz=fill.size,
            filled=order.filled_size,
            position=self.position.size,
        )
        if order.remaining > _SIZE_EPS or not order.is_live:
            return FillOutcome.APPLIED
        if not self.orders.transition(order, OrderStatus.FILLED, reason="fill"):
            return FillOutcome.APPLIED
        self._advance_after_fill(order)
        return FillOutcome.COMPLETED

    def _advance_after_fill(self, order: ManagedOrder) -> None:
        index = order.level_index
        counter_side = order.side.opposite()
        target = index + 1 if order.side is Side.BUY else index - 1
        self.overrides[index] = SlotOverride(SlotKind.VACANT)
        self.overrides[target] = SlotOverride(SlotKind.COUNTER, counter_side, order.size)
        self._cooldown_until.pop(target, None)

        existing = self.orders.live_at(target)
        if existing is not None:
            if existing.side is not counter_side:
                self.request_cancel(existing, "side_flip")
            return
        if not self.accepting or self.center is None:
            return
        want = self.desired_orders().get(target)
        if want is None:
            return
        placed = self._place(target, want)
        if placed is not None:
            log_event(
                log,
                "counter_order",
                grid_id=self.grid_id,
                filled_level=index,
                level_index=target,
                side=counter_side.value,
                px=want.price,
                sz=want.size,
            )

    def _replay_parked(self, oid: Optional[int]) -> None:
        if oid is None:
            return
        for fill in self._parked.pop(oid, []):
            self.on_fill(fill)

    def _query_unknown(self, oid: int) -> None:
        async def _run() -> None:
            report = await self._status(self.config.symbol, exchange_order_id=oid)
            self._post(StatusDone(oid, report))

        self._querying[oid] = asyncio.create_task(_run(), name=f"status-{self.grid_id}-{oid}")

    def on_status_done(self, done: StatusDone) -> None:
        oid = done.exchange_order_id
        self._querying.pop(oid, None)
        report = done.report
        if oid not in self._parked:
            return
        order = None
        if report.client_order_id:
            order = self.orders.get(client_order_id=report.client_order_id)
        if order is not None:
            if order.exchange_order_id is None:
                self.orders.set_exchange_id(order, oid)
            if order.status is OrderStatus.PENDING and report.status in (ExchangeOrderStatus.OPEN, ExchangeOrderStatus.FILLED):
                self.orders.transition(order, OrderStatus.RESTING, reason="status_query")
            self._replay_parked(oid)
            return
        if report.error is not None:
            # Query failed; the next reconcile pass asks again
            return
        dropped = self._parked.pop(oid, [])
        log_event(
            log,
            "fill_foreign_order",
            level=logging.WARNING,
            grid_id=self.grid_id,
            oid=oid,
            fills=len(dropped),
        )

    # ---- status queries ---------------------------------------------------

    async def _status(
        self,
        symbol: str,
        exchange_order_id: Optional[int] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderStatusReport:
        try:
            return await asyncio.wait_for(
                self.gateway.get_order_status(
                    symbol,
                    exchange_order_id=exchange_order_id,
                    client_order_id=client_order_id,
                ),
                self.settings.gateway_timeout,
            )
        except asyncio.TimeoutError:
            error = GatewayError(GatewayErrorKind.RETRYABLE, "status timeout")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = GatewayError(GatewayErrorKind.RETRYABLE, f"{type(exc).__name__}: {exc}")
        return OrderStatusReport(
            ExchangeOrderStatus.UNKNOWN,
            exchange_order_id=exchange_order_id,
            client_order_id=client_order_id,
            error=error,
        )

    async def _status_after_timeout(self, symbol: str, cloid: str) -> OrderStatusReport:
        """Status by client id, asked again while the query itself fails."""
        cfg = self.settings
        report = await self._status(symbol, client_order_id=cloid)
        attempt = 1
        while report.error is not None and attempt < cfg.status_max_attempts:
            log_event(
                log,
                "status_query_retry",
                level=logging.WARNING,
                grid_id=self.grid_id,
                cloid=cloid,
                attempt=attempt,
                error=report.error.message,
            )
            await self._sleep(backoff_delay(attempt - 1, cfg.retry_base_sec, cfg.retry_max_sec))
            attempt += 1
            report = await self._status(symbol, client_order_id=cloid)
        return report

    # ---- restore ----------------------------------------------------------

    def verify_live_orders(self) -> int:
        """
        Query the exchange for every live order (after a restore or a fill-stream
        gap); answers arrive as VerifyStatusDone.
        """
        return self._verify(self.orders.live_orders())

    def verify_unresolved(self) -> int:
        """Ask again about placements whose outcome is still unknown."""
        pending = [self.orders.get(client_order_id=c) for c in sorted(self._unresolved)]
        pending = [o for o in pending if o is not None and o.is_live]
        self._unresolved = {o.client_order_id for o in pending}
        return self._verify(pending)

    @property
    def unresolved(self) -> int:
        return len(self._unresolved)

    def _verify(self, candidates: Iterable[ManagedOrder]) -> int:
        orders = [
            o for o in candidates
            if o.is_live and o.client_order_id not in self._placing and o.client_order_id not in self._verifying
        ]
        for order in orders:
            async def _run(o: ManagedOrder = order) -> None:
                report = await self._status(
                    self.config.symbol,
                    exchange_order_id=o.exchange_order_id,
                    client_order_id=o.client_order_id,
                )
                self._post(VerifyStatusDone(o.client_order_id, report))

            self._verifying[order.client_order_id] = asyncio.create_task(
                _run(), name=f"verify-{self.grid_id}-{order.level_index}"
            )
        return len(orders)

    def on_verify_status(self, done: VerifyStatusDone) -> None:
        self._verifying.pop(done.client_order_id, None)
        order = self.orders.get(client_order_id=done.client_order_id)
        if order is None or not order.is_live:
            return
        report = done.report
        if report.error is None:
            self._unresolved.discard(order.client_order_id)
        if report.exchange_order_id is not None and order.exchange_order_id is None:
            self.orders.set_exchange_id(order, report.exchange_order_id)

        if report.status is ExchangeOrderStatus.OPEN:
            if order.status is OrderStatus.PENDING:
                self.orders.transition(order, OrderStatus.RESTING, reason="restore")
            order.filled_size = max(order.filled_size, report.filled_size)
            if order.cancel_reason and order.status is OrderStatus.RESTING:
                self._launch_cancel(order)
        elif report.status is ExchangeOrderStatus.FILLED:
            missing = order.size - order.filled_size
            if missing > _SIZE_EPS and order.exchange_order_id is not None:
                # Filled during a gap in the fill stream; it will not be replayed
                self.on_fill(
                    Fill(
                        order_id=order.exchange_order_id,
                        symbol=self.config.symbol,
                        price=order.price,
                        size=missing,
                        side=order.side,
                        trade_id=f"restore:{order.exchange_order_id}",
                        client_order_id=order.client_order_id,
                    )
                )
            elif order.status is OrderStatus.PENDING:
                self.orders.transition(order, OrderStatus.FILLED, reason="restore")
        elif report.error is not None:
            log_event(
                log,
                "restore_status_unavailable",
                level=logging.WARNING,
                grid_id=self.grid_id,
                cloid=order.client_order_id,
                error=report.error.message,
            )
        else:
            # Cancelled, rejected, or never reached the exchange
            if order.status is OrderStatus.PENDING:
                self.orders.forget(order)
            else:
                self.orders.transition(order, OrderStatus.CANCELLED, reason="restore")

    def handle(self, event: Any) -> bool:
        """Dispatch a posted result. Returns False for events this manager does not own."""
        if isinstance(event, PlacementDone):
            self.on_placement_done(event)
        elif isinstance(event, PlacementUnresolved):
            self.on_placement_unresolved(event)
        elif isinstance(event, CancelDone):
            self.on_cancel_done(event)
        elif isinstance(event, StatusDone):
            self.on_status_done(event)
        elif isinstance(event, VerifyStatusDone):
            self.on_verify_status(event)
        else:
            return False
        return True

    # ---- bookkeeping ------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return len(self._placing) + len(self._cancelling) + len(self._verifying)

    def is_drained(self) -> bool:
        return not self.orders.live_orders() and self.in_flight == 0

    async def close(self) -> None:
        """Cancel outstanding gateway tasks (used after drain or on timeout)."""
        tasks = [
            *self._placing.values(),
            *self._cancelling.values(),
            *self._querying.values(),
            *self._verifying.values(),
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._placing.clear()
        self._cancelling.clear()
        self._querying.clear()
        self._verifying.clear()

    def open_orders(self) -> List[ManagedOrder]:
        return self.orders.live_orders()

    def to_record(self) -> Dict[str, Any]:
        return {
            "center": self.center,
            "spacing": self.spacing,
            "levels": [[lvl.index, lvl.price] for lvl in self.levels],
            "overrides": {str(k): v.to_dict() for k, v in self.overrides.items()},
            "orders": [o.to_record() for o in self.orders.live_orders()],
        }

    def restore(self, record: Dict[str, Any]) -> None:
        self.center = record.get("center")
        self.spacing = record.get("spacing")
        self.levels = [GridLevel(int(i), float(px)) for i, px in record.get("levels") or []]
        self.overrides = {int(k): SlotOverride.from_dict(v) for k, v in (record.get("overrides") or {}).items()}
        self.orders.clear()
        for data in record.get("orders") or []:
            order = ManagedOrder.from_record(data, symbol=self.config.symbol)
            if order.is_live:
                # A cancel in flight at shutdown is re-evaluated on the next pass
                order.cancel_reason = None
                self.orders.add(order)
        if self.spacing:
            self.strategy.active_spacing = self.spacing

    def _incident(self, kind: IncidentKind, message: str, **details: Any) -> None:
        incident = Incident(kind=kind, grid_id=self.grid_id, message=message, details=details)
        if self._on_incident is not None:
            self._on_incident(incident)

    def _metric(self, name: str, *args: Any) -> None:
        if self.metrics is None:
            return
        fn = getattr(self.metrics, name, None)
        if fn is not None:
            fn(*args)


def _moved(current: float, target: float) -> float:
    if target <= 0:
        return float("inf")
    return abs(current - target) / target


def _placement_from_report(cloid: str, report: OrderStatusReport) -> Optional[PlaceResult]:
    """Turn a post-timeout status query into a placement result, or None to retry."""
    if report.status in (ExchangeOrderStatus.OPEN, ExchangeOrderStatus.FILLED):
        if report.exchange_order_id is None:
            return None
        return PlaceResult(
            cloid,
            exchange_order_id=report.exchange_order_id,
            filled=report.status is ExchangeOrderStatus.FILLED,
        )
    if report.status in (ExchangeOrderStatus.CANCELLED, ExchangeOrderStatus.REJECTED):
        return PlaceResult(
            cloid,
            error=GatewayError(GatewayErrorKind.TERMINAL, f"order {report.status.name.lower()} by exchange"),
        )
    return None


def _cancel_verdict_from_report(report: OrderStatusReport) -> Optional[CancelVerdict]:
    if report.status is ExchangeOrderStatus.FILLED:
        return CancelVerdict.FILLED
    if report.status in (ExchangeOrderStatus.CANCELLED, ExchangeOrderStatus.REJECTED):
        return CancelVerdict.CANCELLED
    if report.status is ExchangeOrderStatus.UNKNOWN and report.error is None:
        return CancelVerdict.UNKNOWN
    return None
