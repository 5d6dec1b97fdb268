"""
GridWorker: the single logical worker behind one grid.

Everything that mutates a grid (price ticks, fills, gateway results, commands)
goes through one asyncio.Queue and is applied by one task, in order. Gateway
calls and feeds run in their own tasks and only ever enqueue.

Grid states:

    RUNNING <──resume── PAUSED
       │  └──pause──────>│
       ├──halt──> HALTED <┘
       └──stop──> STOPPING ──drained──> STOPPED   (HALTED and PAUSED may stop too)

HALTED is terminal for trading: orders are cancelled, bookkeeping is kept for
inspection, and only stop is accepted.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from hlgrid.config.grid_config import CenterSource, GridConfig
from hlgrid.core.errors import FeedDataError, FeedDisconnected, GridStateError, SessionExpiredError
from hlgrid.core.incidents import Incident, IncidentKind
from hlgrid.core.models import Fill, GridLevel, PriceTick
from hlgrid.core.utils import backoff_delay, now_ms
from hlgrid.core.wallet import WalletSession
from hlgrid.execution.lifecycle_manager import (
    LifecycleResult,
    LifecycleSettings,
    OrderLifecycleManager,
)
from hlgrid.execution.order_gateway import OrderGateway
from hlgrid.infra.logging_cfg import log_event
from hlgrid.market_data.price_feed import PriceFeedAdapter
from hlgrid.risk.position import Position
from hlgrid.risk.risk import RiskManager
from hlgrid.state.state_atomic import AtomicStateStore
from hlgrid.strategy.grid_engine import GridStrategyEngine
from hlgrid.strategy.volatility import VolatilityModel

log = logging.getLogger("gridbot")


class GridState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    STOPPED = "stopped"
    HALTED = "halted"


VALID_GRID_TRANSITIONS: Dict[GridState, List[GridState]] = {
    GridState.RUNNING: [GridState.PAUSED, GridState.STOPPING, GridState.HALTED],
    GridState.PAUSED: [GridState.RUNNING, GridState.STOPPING, GridState.HALTED],
    GridState.HALTED: [GridState.STOPPING],
    GridState.STOPPING: [GridState.STOPPED],
    GridState.STOPPED: [],
}


@dataclass
class WorkerSettings:
    drain_timeout: float = 30.0
    housekeeping_interval: float = 1.0
    persist_interval: float = 5.0
    margin_refresh_interval: float = 30.0
    fill_backoff_base: float = 1.0
    fill_backoff_max: float = 30.0
    prune_after_ms: int = 300_000
    lifecycle: LifecycleSettings = field(default_factory=LifecycleSettings)


class CommandKind(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    HALT = "halt"


@dataclass
class Command:
    kind: CommandKind
    future: asyncio.Future
    reason: Optional[str] = None


@dataclass(frozen=True)
class _Housekeeping:
    pass


@dataclass(frozen=True)
class _MarginUpdate:
    utilization: Optional[float]


@dataclass(frozen=True)
class _FillStreamResync:
    pass


@dataclass(frozen=True)
class _FatalSession:
    message: str


@dataclass(frozen=True)
class _FeedFailed:
    message: str


@dataclass(frozen=True)
class OrderView:
    level_index: int
    side: str
    price: float
    size: float
    filled_size: float
    status: str
    client_order_id: str
    exchange_order_id: Optional[int]


@dataclass(frozen=True)
class GridStatus:
    grid_id: str
    user_id: str
    symbol: str
    state: GridState
    levels: List[GridLevel]
    open_orders: List[OrderView]
    position: float
    avg_entry: float
    realized_pnl: float
    unrealized_pnl: float
    center: Optional[float] = None
    spacing: Optional[float] = None
    last_price: Optional[float] = None
    halt_reason: Optional[str] = None
    capped_levels: Dict[int, str] = field(default_factory=dict)


class GridWorker:
    def __init__(
        self,
        grid_id: str,
        user_id: str,
        config: GridConfig,
        session: WalletSession,
        gateway: OrderGateway,
        feed: PriceFeedAdapter,
        store: Optional[AtomicStateStore] = None,
        on_incident: Optional[Callable[[Incident], None]] = None,
        settings: Optional[WorkerSettings] = None,
        metrics: Any = None,
        position: Optional[Position] = None,
    ) -> None:
        self.grid_id = grid_id
        self.user_id = user_id
        self.config = config
        self.session = session
        self.gateway = gateway
        self.feed = feed
        self.store = store
        self.settings = settings or WorkerSettings()
        self.metrics = metrics
        self._on_incident = on_incident

        self.queue: asyncio.Queue = asyncio.Queue()
        self.state = GridState.RUNNING
        self.halt_reason: Optional[str] = None
        self.last_price: Optional[float] = None

        self.strategy = GridStrategyEngine(config)
        self.risk = RiskManager(config, position)
        self.volatility = VolatilityModel(config.dynamic.lookback) if config.dynamic else None
        self.lifecycle = OrderLifecycleManager(
            grid_id,
            config,
            gateway,
            self.risk,
            self.strategy,
            post=self.queue.put_nowait,
            on_incident=self._incident,
            settings=self.settings.lifecycle,
            metrics=metrics,
        )

        self._pumps: List[asyncio.Task] = []
        self._task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()
        self._drain_deadline: Optional[float] = None
        self._dirty = False
        self._last_persist = 0.0
        self._last_margin_refresh = 0.0
        self._last_save: Optional[asyncio.Task] = None
        self._margin_task: Optional[asyncio.Task] = None
        self._discard_state = False

    # ---- public surface (called by the supervisor) -------------------------

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=f"grid-{self.grid_id}")
        return self._task

    def submit(self, kind: CommandKind, reason: Optional[str] = None) -> asyncio.Future:
        """Enqueue a command; the future resolves once the worker has applied it."""
        future = asyncio.get_running_loop().create_future()
        if self._closed.is_set():
            future.set_exception(GridStateError(f"grid {self.grid_id} is closed"))
            return future
        self.queue.put_nowait(Command(kind, future, reason))
        return future

    async def wait_closed(self) -> None:
        await self._closed.wait()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def status(self) -> GridStatus:
        pos = self.risk.position
        return GridStatus(
            grid_id=self.grid_id,
            user_id=self.user_id,
            symbol=self.config.symbol,
            state=self.state,
            levels=list(self.lifecycle.levels),
            open_orders=[
                OrderView(
                    level_index=o.level_index,
                    side=o.side.value,
                    price=o.price,
                    size=o.size,
                    filled_size=o.filled_size,
                    status=o.status.value,
                    client_order_id=o.client_order_id,
                    exchange_order_id=o.exchange_order_id,
                )
                for o in self.lifecycle.open_orders()
            ],
            position=pos.size,
            avg_entry=pos.avg_entry,
            realized_pnl=pos.realized_pnl,
            unrealized_pnl=pos.unrealized_pnl(self.last_price),
            center=self.lifecycle.center,
            spacing=self.lifecycle.spacing,
            last_price=self.last_price,
            halt_reason=self.halt_reason,
            capped_levels=dict(self.lifecycle.capped),
        )

    def restore(self, record: Dict[str, Any]) -> None:
        """Load a persisted snapshot before start(); live orders get verified once running."""
        self.lifecycle.restore(record.get("lifecycle") or {})
        state = GridState(record.get("state", GridState.RUNNING.value))
        if state is GridState.HALTED:
            self.state = GridState.HALTED
            self.halt_reason = record.get("halt_reason")
            self.risk.halted = True
            self.risk.halt_reason = self.halt_reason
            self.lifecycle.accepting = False
        elif state is not GridState.RUNNING:
            # Paused, or a stop that timed out with orders still live: cancel, do not trade
            self.state = GridState.PAUSED
            self.lifecycle.accepting = False

    # ---- main loop ---------------------------------------------------------

    async def run(self) -> None:
        log_event(log, "grid_worker_start", grid_id=self.grid_id, symbol=self.config.symbol, state=self.state.value)
        self._set_metric_state()
        self._pumps = [
            asyncio.create_task(self._pump_prices(), name=f"prices-{self.grid_id}"),
            asyncio.create_task(self._pump_fills(), name=f"fills-{self.grid_id}"),
            asyncio.create_task(self._housekeeping_timer(), name=f"housekeeping-{self.grid_id}"),
        ]
        if self.lifecycle.open_orders():
            self.lifecycle.verify_live_orders()
        if self.state in (GridState.PAUSED, GridState.HALTED):
            self.lifecycle.cancel_all("pause" if self.state is GridState.PAUSED else "halt")
        try:
            while self.state is not GridState.STOPPED:
                event = await self.queue.get()
                try:
                    self._dispatch(event)
                except Exception:
                    log.exception("grid_event_error grid=%s event=%s", self.grid_id, type(event).__name__)
                    if isinstance(event, Command) and not event.future.done():
                        event.future.set_exception(GridStateError(f"command {event.kind.value} failed"))
                if self.state is GridState.STOPPING:
                    self._check_drain()
        finally:
            await self._teardown()

    def _dispatch(self, event: Any) -> None:
        if isinstance(event, PriceTick):
            self._on_tick(event)
        elif isinstance(event, Fill):
            self._on_fill(event)
        elif isinstance(event, LifecycleResult):
            self.lifecycle.handle(event)
            self._dirty = True
        elif isinstance(event, Command):
            self._on_command(event)
        elif isinstance(event, _Housekeeping):
            self._housekeeping()
        elif isinstance(event, _MarginUpdate):
            self.risk.update_margin_utilization(event.utilization)
        elif isinstance(event, _FillStreamResync):
            self.lifecycle.verify_live_orders()
        elif isinstance(event, _FeedFailed):
            self._incident(Incident(IncidentKind.FEED_DATA_ERROR, self.grid_id, event.message, {"feed": "stopped"}))
        elif isinstance(event, _FatalSession):
            self._incident(Incident(IncidentKind.SESSION_EXPIRED, self.grid_id, event.message))
        else:
            log.warning("grid_unknown_event grid=%s type=%s", self.grid_id, type(event).__name__)

    # ---- ticks -------------------------------------------------------------

    def _on_tick(self, tick: PriceTick) -> None:
        price = tick.price
        if price is None or not math.isfinite(price) or price <= 0:
            self._incident(Incident(
                IncidentKind.FEED_DATA_ERROR,
                self.grid_id,
                f"invalid price {price!r}",
                {"symbol": tick.symbol, "resync": tick.resync},
            ))
            return
        self.last_price = price
        hint = self.volatility.step(price) if self.volatility is not None else None

        if self.state is GridState.RUNNING:
            try:
                self._replan(price, hint, resync=tick.resync)
            except FeedDataError as exc:
                self._incident(Incident(IncidentKind.FEED_DATA_ERROR, self.grid_id, str(exc)))
                return
        self._check_drawdown()

    def _replan(self, price: float, hint: Optional[float], resync: bool = False) -> None:
        cfg = self.config
        lc = self.lifecycle
        if cfg.center_source is CenterSource.FIXED:
            center = cfg.center_price
            recenter = False
        elif lc.center is None:
            center = price
            recenter = False
        else:
            drift = abs(price - lc.center) / lc.center
            recenter = drift > cfg.effective_recenter_threshold(lc.center)
            center = price if recenter else lc.center

        first = lc.center is None
        plan = self.strategy.plan(center, hint)
        lc.set_grid(plan.levels, plan.center, plan.spacing)
        if self.metrics is not None:
            self.metrics.set_grid(self.grid_id, plan.center, plan.spacing)

        if not first and (recenter or plan.full_rebalance):
            reason = "recenter" if recenter else (plan.reason or "spacing_shift")
            if plan.full_rebalance and not recenter and cfg.center_source is CenterSource.MID:
                # New spacing is anchored on the current mid
                plan = self.strategy.plan(price, hint)
                lc.set_grid(plan.levels, plan.center, plan.spacing)
            log_event(
                log,
                "grid_rebalance",
                grid_id=self.grid_id,
                reason=reason,
                center=plan.center,
                spacing=plan.spacing,
                resync=resync,
            )
            if self.metrics is not None:
                self.metrics.rebalance(self.grid_id, reason)
            lc.rebalance()
        else:
            lc.reconcile()
        self._dirty = True

    def _check_drawdown(self) -> None:
        if self.state is GridState.HALTED or self.risk.halted:
            return
        pos = self.risk.position
        unrealized = pos.unrealized_pnl(self.last_price)
        check = self.risk.check_drawdown(pos, unrealized, self.config)
        if self.metrics is not None:
            self.metrics.set_position(self.grid_id, pos.size, pos.realized_pnl, unrealized)
            self.metrics.set_risk(self.grid_id, self.risk.margin_utilization, check.loss)
        if check.should_halt:
            self._incident(Incident(
                IncidentKind.RISK_BREACH,
                self.grid_id,
                "max drawdown exceeded",
                {"loss": round(check.loss, 6), "limit": round(check.limit, 6)},
            ))

    # ---- fills -------------------------------------------------------------

    def _on_fill(self, fill: Fill) -> None:
        # Bookkeeping is applied in every state; only RUNNING re-places
        self.lifecycle.on_fill(fill)
        self._dirty = True
        if self.state is GridState.RUNNING:
            self.lifecycle.reconcile()
        self._check_drawdown()

    # ---- commands ----------------------------------------------------------

    def _on_command(self, cmd: Command) -> None:
        if cmd.future.done():
            return
        try:
            if cmd.kind is CommandKind.PAUSE:
                self._pause()
            elif cmd.kind is CommandKind.RESUME:
                self._resume()
            elif cmd.kind is CommandKind.STOP:
                self._stop(cmd.reason or "stop")
            elif cmd.kind is CommandKind.HALT:
                self._halt(cmd.reason or "halt")
        except GridStateError as exc:
            cmd.future.set_exception(exc)
            return
        cmd.future.set_result(self.state)

    def _transition(self, to_state: GridState, reason: Optional[str] = None) -> None:
        if to_state not in VALID_GRID_TRANSITIONS[self.state]:
            raise GridStateError(f"grid {self.grid_id} cannot go from {self.state.value} to {to_state.value}")
        log_event(
            log,
            "grid_state",
            grid_id=self.grid_id,
            from_state=self.state.value,
            to_state=to_state.value,
            reason=reason,
        )
        self.state = to_state
        self._dirty = True
        self._set_metric_state()

    def _pause(self) -> None:
        if self.state is GridState.PAUSED:
            return
        self._transition(GridState.PAUSED, "pause")
        self.lifecycle.accepting = False
        self.lifecycle.cancel_all("pause")

    def _resume(self) -> None:
        if self.state is GridState.RUNNING:
            return
        if self.state is GridState.HALTED:
            raise GridStateError(f"grid {self.grid_id} is halted ({self.halt_reason}); stop it instead")
        self._transition(GridState.RUNNING, "resume")
        self.lifecycle.accepting = True
        if self.last_price is not None:
            hint = self.volatility.hint() if self.volatility is not None else None
            self._replan(self.last_price, hint)
        else:
            self.lifecycle.reconcile()

    def _halt(self, reason: str) -> None:
        if self.state in (GridState.HALTED, GridState.STOPPING, GridState.STOPPED):
            return
        self._transition(GridState.HALTED, reason)
        self.halt_reason = reason
        self.risk.halt(reason)
        self.lifecycle.accepting = False
        self.lifecycle.cancel_all("halt")

    def _stop(self, reason: str) -> None:
        if self.state in (GridState.STOPPING, GridState.STOPPED):
            return
        self._transition(GridState.STOPPING, reason)
        self.lifecycle.accepting = False
        self.lifecycle.cancel_all("stop")
        self._drain_deadline = time.monotonic() + self.settings.drain_timeout
        self._discard_state = True

    def _check_drain(self) -> None:
        lc = self.lifecycle
        if lc.is_drained():
            self._transition(GridState.STOPPED, "drained")
            return
        # Orders acknowledged after the stop still need their cancel
        lc.cancel_all("stop")
        if self._drain_deadline is not None and time.monotonic() >= self._drain_deadline:
            orphans = [o.client_order_id for o in lc.open_orders()]
            self._incident(Incident(
                IncidentKind.DATA_INCONSISTENCY,
                self.grid_id,
                "drain timeout with live orders",
                {"orders": orphans, "in_flight": lc.in_flight},
            ))
            # Keep the snapshot so a restore can find these orders
            self._discard_state = False
            self._transition(GridState.STOPPED, "drain_timeout")

    # ---- housekeeping ------------------------------------------------------

    def _housekeeping(self) -> None:
        now = time.monotonic()
        lc = self.lifecycle
        if self.metrics is not None:
            self.metrics.set_book(self.grid_id, len(lc.open_orders()), len(lc.capped))
        lc.orders.prune_terminal(self.settings.prune_after_ms)

        if (
            self.state is GridState.RUNNING
            and now - self._last_margin_refresh >= self.settings.margin_refresh_interval
            and hasattr(self.gateway, "get_margin_utilization")
        ):
            self._last_margin_refresh = now
            if self._margin_task is None or self._margin_task.done():
                self._margin_task = asyncio.create_task(self._refresh_margin(), name=f"margin-{self.grid_id}")
        if lc.unresolved:
            lc.verify_unresolved()

        if self._dirty and now - self._last_persist >= self.settings.persist_interval:
            self._persist()

    async def _refresh_margin(self) -> None:
        try:
            util = await asyncio.wait_for(
                self.gateway.get_margin_utilization(),
                self.settings.lifecycle.gateway_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(log, "margin_refresh_error", level=logging.WARNING, grid_id=self.grid_id, err=str(exc))
            return
        self.queue.put_nowait(_MarginUpdate(util))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "grid_id": self.grid_id,
            "user_id": self.user_id,
            "config": self.config.to_dict(),
            "state": self.state.value,
            "halt_reason": self.halt_reason,
            "position": self.risk.position.to_dict(),
            "lifecycle": self.lifecycle.to_record(),
            "saved_at_ms": now_ms(),
        }

    def _persist(self) -> None:
        if self.store is None:
            return
        record = self.snapshot()
        self._dirty = False
        self._last_persist = time.monotonic()
        self._last_save = asyncio.create_task(self._save(record), name=f"persist-{self.grid_id}")

    async def _save(self, record: Dict[str, Any]) -> None:
        started = time.monotonic()
        await self.store.save(record)
        if self.metrics is not None:
            self.metrics.state_save_duration_sec.observe(time.monotonic() - started)

    # ---- pumps -------------------------------------------------------------

    async def _pump_prices(self) -> None:
        try:
            async for tick in self.feed.ticks():
                if tick.symbol == self.config.symbol:
                    self.queue.put_nowait(tick)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # The adapter reconnects on its own; anything reaching here is a bug
            log.exception("price_pump_failed grid=%s", self.grid_id)
            self.queue.put_nowait(_FeedFailed(f"{type(exc).__name__}: {exc}"))

    async def _pump_fills(self) -> None:
        attempt = 0
        while True:
            try:
                async for fill in self.gateway.stream_fills(self.session.account_id):
                    attempt = 0
                    if fill.symbol == self.config.symbol:
                        self.queue.put_nowait(fill)
                raise FeedDisconnected("fill stream ended")
            except asyncio.CancelledError:
                raise
            except SessionExpiredError as exc:
                self.queue.put_nowait(_FatalSession(str(exc)))
                return
            except Exception as exc:
                delay = backoff_delay(attempt, self.settings.fill_backoff_base, self.settings.fill_backoff_max)
                attempt += 1
                log_event(
                    log,
                    "fill_stream_reconnect",
                    level=logging.WARNING,
                    grid_id=self.grid_id,
                    attempt=attempt,
                    delay_sec=delay,
                    err=str(exc),
                )
                await asyncio.sleep(delay)
                # Fills during the gap are not replayed; ask the exchange directly
                self.queue.put_nowait(_FillStreamResync())

    async def _housekeeping_timer(self) -> None:
        while True:
            await asyncio.sleep(self.settings.housekeeping_interval)
            self.queue.put_nowait(_Housekeeping())

    async def _teardown(self) -> None:
        tasks = list(self._pumps)
        if self._margin_task is not None:
            tasks.append(self._margin_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.lifecycle.close()

        # Commands that arrived after the stop
        while not self.queue.empty():
            event = self.queue.get_nowait()
            if isinstance(event, Command) and not event.future.done():
                event.future.set_exception(GridStateError(f"grid {self.grid_id} is stopped"))

        if self._last_save is not None:
            await asyncio.gather(self._last_save, return_exceptions=True)
        if self.store is not None:
            if self._discard_state and self.state is GridState.STOPPED:
                await self.store.delete()
            else:
                await self.store.save(self.snapshot())
        self._closed.set()
        log_event(log, "grid_worker_stopped", grid_id=self.grid_id, state=self.state.value)

    # ---- incidents -----------------------------------------------------------

    def _incident(self, incident: Incident) -> None:
        log_event(
            log,
            "grid_incident",
            level=logging.WARNING,
            grid_id=self.grid_id,
            kind=incident.kind.value,
            message=incident.message,
            details=incident.details,
        )
        if self.metrics is not None:
            self.metrics.incident(self.grid_id, incident.kind.value)
        if self._on_incident is not None:
            self._on_incident(incident)

    def _set_metric_state(self) -> None:
        if self.metrics is not None:
            self.metrics.set_grid_state(self.grid_id, self.state.value)
