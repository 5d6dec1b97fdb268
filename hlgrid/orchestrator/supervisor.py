"""
GridSupervisor: owns one GridWorker per active (user, symbol) grid.

The supervisor is the only component that decides what an incident means:

- RISK_BREACH, SESSION_EXPIRED  -> halt the grid (terminal), critical alert
- PLACEMENT_FAILED, CANCEL_FAILED, FEED_DATA_ERROR, DATA_INCONSISTENCY
                                -> alert and keep trading

Commands (pause/resume/stop) are enqueued on the grid's worker and return once
the worker has applied them, not once every resulting gateway call finished.
"""

from __future__ import annotations

import asyncio
import logging
import math
import secrets
from typing import Callable, Dict, List, Optional, Tuple

from hlgrid.config.grid_config import GridConfig
from hlgrid.core.errors import FeedDataError, GridNotFoundError, GridStateError
from hlgrid.core.incidents import Incident, IncidentKind
from hlgrid.core.wallet import WalletSession, WalletSessionProvider
from hlgrid.execution.order_gateway import OrderGateway
from hlgrid.infra.logging_cfg import log_event
from hlgrid.market_data.price_feed import PriceFeedAdapter
from hlgrid.monitoring.alerting import Alert, AlertManager, AlertSeverity, AlertType
from hlgrid.orchestrator.grid_worker import CommandKind, GridState, GridStatus, GridWorker, WorkerSettings
from hlgrid.risk.position import Position
from hlgrid.state.state_atomic import AtomicStateStore

log = logging.getLogger("gridbot")

GatewayFactory = Callable[[WalletSession], OrderGateway]
# (symbol, on_reconnect) -> adapter; each grid gets its own adapter
FeedFactory = Callable[[str, Optional[Callable[[int], None]]], PriceFeedAdapter]

_HALTING = {
    IncidentKind.RISK_BREACH: "risk_breach",
    IncidentKind.SESSION_EXPIRED: "session_expired",
}

_ALERTS: Dict[IncidentKind, Tuple[AlertType, AlertSeverity, str]] = {
    IncidentKind.RISK_BREACH: (AlertType.GRID_HALTED, AlertSeverity.CRITICAL, "Grid halted: risk limit"),
    IncidentKind.SESSION_EXPIRED: (AlertType.SESSION_EXPIRED, AlertSeverity.CRITICAL, "Grid halted: session expired"),
    IncidentKind.PLACEMENT_FAILED: (AlertType.PLACEMENT_FAILED, AlertSeverity.WARNING, "Order placement failed"),
    IncidentKind.CANCEL_FAILED: (AlertType.CANCEL_FAILED, AlertSeverity.WARNING, "Order cancel failed"),
    IncidentKind.FEED_DATA_ERROR: (AlertType.FEED_DATA_ERROR, AlertSeverity.WARNING, "Price feed data error"),
    IncidentKind.DATA_INCONSISTENCY: (AlertType.DATA_INCONSISTENCY, AlertSeverity.WARNING, "Order state inconsistency"),
}


def _consume(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class GridSupervisor:
    def __init__(
        self,
        gateway_factory: GatewayFactory,
        feed_factory: FeedFactory,
        session_provider: Optional[WalletSessionProvider] = None,
        state_dir: Optional[str] = None,
        alerts: Optional[AlertManager] = None,
        metrics=None,
        worker_settings: Optional[WorkerSettings] = None,
    ) -> None:
        self._gateway_factory = gateway_factory
        self._feed_factory = feed_factory
        self._session_provider = session_provider
        self._state_dir = state_dir
        self._alerts = alerts
        self._metrics = metrics
        self._worker_settings = worker_settings or WorkerSettings()
        self._workers: Dict[str, GridWorker] = {}
        self._background: List[asyncio.Task] = []
        self.incidents: List[Incident] = []

    # ---- lifecycle commands --------------------------------------------------

    async def start_grid(self, user_id: str, symbol: str, config: GridConfig) -> str:
        """Start a grid for user_id with a session from the provider."""
        if self._session_provider is None:
            raise GridStateError("no wallet session provider configured")
        if config.symbol != symbol:
            config = GridConfig.from_dict({**config.to_dict(), "symbol": symbol})
        session = self._session_provider.get_active_session(user_id)
        return await self.start(config, session, user_id=user_id)

    async def start(self, config: GridConfig, session: WalletSession, user_id: Optional[str] = None) -> str:
        """
        Validate, check the session, take a snapshot price and launch the worker.

        Raises:
            ConfigError: invalid config
            SessionExpiredError: session already expired
            FeedDataError: snapshot price missing or non-positive
            GridStateError: the user already runs a grid on this symbol
        """
        config.validate()
        session.ensure_active()
        owner = user_id or session.account_id
        for worker in self._workers.values():
            if not worker.closed and worker.user_id == owner and worker.config.symbol == config.symbol:
                raise GridStateError(f"{owner} already runs grid {worker.grid_id} on {config.symbol}")

        grid_id = f"{config.symbol}-{secrets.token_hex(4)}"
        feed = self._make_feed(grid_id, config.symbol)
        snapshot = await feed.get_snapshot_price()
        if snapshot is None or not math.isfinite(snapshot) or snapshot <= 0:
            raise FeedDataError(config.symbol, snapshot, reason="bad_snapshot")

        worker = self._build_worker(grid_id, owner, config, session, feed)
        worker.start()
        log_event(
            log,
            "grid_started",
            grid_id=grid_id,
            user_id=owner,
            symbol=config.symbol,
            snapshot=snapshot,
            levels_per_side=config.levels_per_side,
            spacing=config.spacing,
        )
        self._alert(Alert(
            AlertType.GRID_STARTED,
            AlertSeverity.INFO,
            "Grid started",
            f"{config.symbol} grid started at {snapshot}",
            grid_id=grid_id,
        ))
        return grid_id

    async def restore_grid(self, grid_id: str, session: WalletSession) -> str:
        """Rebuild a grid from its persisted snapshot; live orders are re-verified on start."""
        if grid_id in self._workers and not self._workers[grid_id].closed:
            raise GridStateError(f"grid {grid_id} is already running")
        if self._state_dir is None:
            raise GridNotFoundError(grid_id)
        record = await AtomicStateStore(grid_id, self._state_dir).load()
        if not record:
            raise GridNotFoundError(grid_id)
        session.ensure_active()
        config = GridConfig.from_dict(record["config"]).validate()
        position = Position.from_dict(record.get("position") or {"symbol": config.symbol})
        feed = self._make_feed(grid_id, config.symbol)
        worker = self._build_worker(
            grid_id,
            record.get("user_id") or session.account_id,
            config,
            session,
            feed,
            position=position,
        )
        worker.restore(record)
        worker.start()
        log_event(
            log,
            "grid_restored",
            grid_id=grid_id,
            state=worker.state.value,
            open_orders=len(worker.lifecycle.open_orders()),
            position=position.size,
        )
        return grid_id

    async def pause_grid(self, grid_id: str) -> GridState:
        return await self._command(grid_id, CommandKind.PAUSE)

    async def resume_grid(self, grid_id: str) -> GridState:
        return await self._command(grid_id, CommandKind.RESUME)

    async def stop_grid(self, grid_id: str) -> GridState:
        return await self._command(grid_id, CommandKind.STOP)

    pause = pause_grid
    resume = resume_grid
    stop = stop_grid

    def get_grid_status(self, grid_id: str) -> GridStatus:
        return self._worker(grid_id).status()

    def list_grids(self) -> List[str]:
        return [gid for gid, w in self._workers.items() if not w.closed]

    async def wait_closed(self, grid_id: str) -> None:
        await self._worker(grid_id).wait_closed()

    async def shutdown(self) -> None:
        """Stop every grid and wait for each to drain."""
        workers = [w for w in self._workers.values() if not w.closed]
        for worker in workers:
            future = worker.submit(CommandKind.STOP, reason="shutdown")
            future.add_done_callback(_consume)
        if workers:
            await asyncio.gather(*(w.wait_closed() for w in workers), return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._alerts is not None:
            await self._alerts.close()
        log_event(log, "supervisor_shutdown", grids=len(workers))

    # ---- incident policy -------------------------------------------------------

    def handle_incident(self, incident: Incident) -> None:
        self.incidents.append(incident)
        worker = self._workers.get(incident.grid_id)
        reason = _HALTING.get(incident.kind)
        if reason is not None and worker is not None and not worker.closed:
            log_event(
                log,
                "grid_halt_requested",
                level=logging.ERROR,
                grid_id=incident.grid_id,
                kind=incident.kind.value,
                message=incident.message,
            )
            future = worker.submit(CommandKind.HALT, reason=reason)
            future.add_done_callback(_consume)

        mapped = _ALERTS.get(incident.kind)
        if mapped is not None:
            alert_type, severity, title = mapped
            self._alert(Alert(
                alert_type,
                severity,
                title,
                incident.message,
                details=dict(incident.details),
                grid_id=incident.grid_id,
            ))

    # ---- internals -------------------------------------------------------------

    def _worker(self, grid_id: str) -> GridWorker:
        worker = self._workers.get(grid_id)
        if worker is None:
            raise GridNotFoundError(grid_id)
        return worker

    async def _command(self, grid_id: str, kind: CommandKind) -> GridState:
        worker = self._worker(grid_id)
        state = await worker.submit(kind)
        log_event(log, "grid_command", grid_id=grid_id, command=kind.value, state=state.value)
        if kind is CommandKind.STOP:
            self._alert(Alert(
                AlertType.GRID_STOPPED,
                AlertSeverity.INFO,
                "Grid stopping",
                f"{worker.config.symbol} grid stop requested",
                grid_id=grid_id,
            ))
        return state

    def _make_feed(self, grid_id: str, symbol: str) -> PriceFeedAdapter:
        on_reconnect = None
        if self._metrics is not None:
            def on_reconnect(attempt: int) -> None:
                self._metrics.feed_reconnect(grid_id)
        return self._feed_factory(symbol, on_reconnect)

    def _build_worker(
        self,
        grid_id: str,
        user_id: str,
        config: GridConfig,
        session: WalletSession,
        feed: PriceFeedAdapter,
        position: Optional[Position] = None,
    ) -> GridWorker:
        store = AtomicStateStore(grid_id, self._state_dir) if self._state_dir else None
        worker = GridWorker(
            grid_id=grid_id,
            user_id=user_id,
            config=config,
            session=session,
            gateway=self._gateway_factory(session),
            feed=feed,
            store=store,
            on_incident=self.handle_incident,
            settings=self._worker_settings,
            metrics=self._metrics,
            position=position,
        )
        self._workers[grid_id] = worker
        return worker

    def _alert(self, alert: Alert) -> None:
        if self._alerts is None:
            return
        task = asyncio.create_task(self._alerts.send_alert(alert))
        self._background.append(task)
        task.add_done_callback(self._background.remove)
