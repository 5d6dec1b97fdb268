"""
Integration tests for GridSupervisor and GridWorker against the fake gateway
and price source: start, pause/resume, stop with drain, halt on a drawdown
breach, and restore from a persisted snapshot.
"""

import asyncio
import time

import pytest

from conftest import FakePriceSource, make_config, no_sleep, wait_until
from hlgrid.core.errors import FeedDataError, GridNotFoundError, GridStateError, SessionExpiredError
from hlgrid.core.incidents import Incident, IncidentKind
from hlgrid.core.models import Fill, Side
from hlgrid.core.wallet import WalletSession
from hlgrid.execution.lifecycle_manager import LifecycleSettings
from hlgrid.execution.order_gateway import ExchangeOrderStatus, OrderStatusReport
from hlgrid.market_data.price_feed import PriceFeedAdapter
from hlgrid.orchestrator.grid_worker import GridState, WorkerSettings
from hlgrid.orchestrator.supervisor import GridSupervisor
from hlgrid.state.state_store import StateStore


def _settings():
    return WorkerSettings(
        drain_timeout=2.0,
        housekeeping_interval=0.01,
        persist_interval=0.01,
        margin_refresh_interval=3600.0,
        fill_backoff_base=0.01,
        fill_backoff_max=0.05,
        lifecycle=LifecycleSettings(
            gateway_timeout=1.0,
            retry_base_sec=0.001,
            retry_max_sec=0.002,
            failed_level_cooldown_sec=0.0,
        ),
    )


@pytest.fixture
def source():
    return FakePriceSource(snapshot=100.0)


@pytest.fixture
def supervisor(gateway, source, tmp_path):
    def feed_factory(symbol, on_reconnect):
        return PriceFeedAdapter(source, symbol, jitter=0.0, on_reconnect=on_reconnect, sleep=no_sleep)

    return GridSupervisor(
        gateway_factory=lambda session: gateway,
        feed_factory=feed_factory,
        state_dir=str(tmp_path),
        worker_settings=_settings(),
    )


def _resting(sup, grid_id):
    return [o for o in sup.get_grid_status(grid_id).open_orders if o.status == "resting"]


async def _stop(sup, grid_id):
    await sup.stop_grid(grid_id)
    await asyncio.wait_for(sup.wait_closed(grid_id), 5.0)


# ─────────────────────────────────────────────────────────────────────────────
# Start / pause / resume / stop
# ─────────────────────────────────────────────────────────────────────────────


class TestGridLifecycle:
    @pytest.mark.asyncio
    async def test_start_places_ladder(self, supervisor, session):
        grid_id = await supervisor.start(make_config(), session)
        try:
            await wait_until(lambda: len(_resting(supervisor, grid_id)) == 4)
            status = supervisor.get_grid_status(grid_id)
            assert status.state is GridState.RUNNING
            assert status.center == 100.0
            assert sorted(o.price for o in status.open_orders) == [98.0, 99.0, 101.0, 102.0]
            assert supervisor.list_grids() == [grid_id]
        finally:
            await _stop(supervisor, grid_id)

    @pytest.mark.asyncio
    async def test_pause_cancels_and_resume_replaces(self, supervisor, session, gateway):
        grid_id = await supervisor.start(make_config(), session)
        await wait_until(lambda: len(_resting(supervisor, grid_id)) == 4)

        assert await supervisor.pause_grid(grid_id) is GridState.PAUSED
        await wait_until(lambda: supervisor.get_grid_status(grid_id).open_orders == [])
        assert len(gateway.cancelled) == 4

        assert await supervisor.resume_grid(grid_id) is GridState.RUNNING
        await wait_until(lambda: len(_resting(supervisor, grid_id)) == 4)
        assert len(gateway.placed) == 8
        await _stop(supervisor, grid_id)

    @pytest.mark.asyncio
    async def test_stop_drains_and_removes_state(self, supervisor, session, gateway, tmp_path):
        grid_id = await supervisor.start(make_config(), session)
        await wait_until(lambda: len(_resting(supervisor, grid_id)) == 4)
        await wait_until(lambda: any(tmp_path.glob("grid_*.json")))

        assert await supervisor.stop_grid(grid_id) is GridState.STOPPING
        await asyncio.wait_for(supervisor.wait_closed(grid_id), 5.0)

        status = supervisor.get_grid_status(grid_id)
        assert status.state is GridState.STOPPED
        assert status.open_orders == []
        assert len(gateway.cancelled) == 4
        assert supervisor.list_grids() == []
        assert list(tmp_path.glob("grid_*.json")) == []
        with pytest.raises(GridStateError):
            await supervisor.pause_grid(grid_id)

    @pytest.mark.asyncio
    async def test_second_grid_on_same_symbol_rejected(self, supervisor, session):
        grid_id = await supervisor.start(make_config(), session)
        try:
            with pytest.raises(GridStateError):
                await supervisor.start(make_config(), session)
        finally:
            await _stop(supervisor, grid_id)

    @pytest.mark.asyncio
    async def test_bad_snapshot_rejected(self, supervisor, session, source):
        source.snapshot = 0.0
        with pytest.raises(FeedDataError):
            await supervisor.start(make_config(), session)
        assert supervisor.list_grids() == []

    @pytest.mark.asyncio
    async def test_expired_session_rejected(self, supervisor):
        expired = WalletSession(account_id="0xabc", wallet=None, expires_at=time.time() - 1)
        with pytest.raises(SessionExpiredError):
            await supervisor.start(make_config(), expired)

    def test_unknown_grid(self, supervisor):
        with pytest.raises(GridNotFoundError):
            supervisor.get_grid_status("ETH-missing")


# ─────────────────────────────────────────────────────────────────────────────
# Incidents
# ─────────────────────────────────────────────────────────────────────────────


class TestIncidents:
    @pytest.mark.asyncio
    async def test_drawdown_breach_halts_grid(self, supervisor, session, gateway, source):
        cfg = make_config(order_size=1.0, max_position=10.0, allocated_capital=100.0, max_drawdown_pct=0.01)
        grid_id = await supervisor.start(cfg, session)
        await wait_until(lambda: len(_resting(supervisor, grid_id)) == 4)
        worker = supervisor._workers[grid_id]

        buy = worker.lifecycle.orders.live_at(-1)
        gateway.fills.put_nowait(
            Fill(order_id=buy.exchange_order_id, symbol="ETH", price=99.0, size=1.0, side=Side.BUY, trade_id="t1")
        )
        await wait_until(lambda: worker.risk.position.size == 1.0)
        source.stream.put_nowait(97.0)

        await wait_until(lambda: supervisor.get_grid_status(grid_id).state is GridState.HALTED)
        await wait_until(lambda: supervisor.get_grid_status(grid_id).open_orders == [])
        assert supervisor.get_grid_status(grid_id).halt_reason == "risk_breach"
        assert IncidentKind.RISK_BREACH in [i.kind for i in supervisor.incidents]

        with pytest.raises(GridStateError):
            await supervisor.resume_grid(grid_id)
        await _stop(supervisor, grid_id)

    @pytest.mark.asyncio
    async def test_non_fatal_incident_keeps_trading(self, supervisor, session):
        grid_id = await supervisor.start(make_config(), session)
        await wait_until(lambda: len(_resting(supervisor, grid_id)) == 4)

        supervisor.handle_incident(Incident(IncidentKind.PLACEMENT_FAILED, grid_id, "rejected"))
        await asyncio.sleep(0.05)

        assert supervisor.get_grid_status(grid_id).state is GridState.RUNNING
        await _stop(supervisor, grid_id)

    @pytest.mark.asyncio
    async def test_invalid_price_tick_reported(self, supervisor, session, source):
        grid_id = await supervisor.start(make_config(), session)
        await wait_until(lambda: len(_resting(supervisor, grid_id)) == 4)

        source.stream.put_nowait(-1.0)
        await wait_until(lambda: any(i.kind is IncidentKind.FEED_DATA_ERROR for i in supervisor.incidents))

        status = supervisor.get_grid_status(grid_id)
        assert status.state is GridState.RUNNING
        assert status.last_price == 100.0
        assert len(status.open_orders) == 4
        await _stop(supervisor, grid_id)


# ─────────────────────────────────────────────────────────────────────────────
# Restore
# ─────────────────────────────────────────────────────────────────────────────


def _order(level_index, side, price, cloid, oid):
    return {
        "level_index": level_index,
        "side": side,
        "price": price,
        "size": 0.01,
        "client_order_id": cloid,
        "exchange_order_id": oid,
        "status": "resting",
        "filled_size": 0.0,
        "cancel_reason": None,
    }


class TestRestore:
    @pytest.mark.asyncio
    async def test_restore_verifies_orders_and_applies_missed_fill(self, supervisor, session, gateway, tmp_path):
        grid_id = "ETH-restored"
        record = {
            "grid_id": grid_id,
            "user_id": "u1",
            "config": make_config().to_dict(),
            "state": "running",
            "halt_reason": None,
            "position": {"symbol": "ETH", "size": 0.0, "avg_entry": 0.0, "realized_pnl": 0.0, "trade_ids": []},
            "lifecycle": {
                "center": 100.0,
                "spacing": 0.01,
                "levels": [[-2, 98.0], [-1, 99.0], [1, 101.0], [2, 102.0]],
                "overrides": {},
                "orders": [
                    _order(-1, "buy", 99.0, "0x" + "01" * 16, 500),
                    _order(1, "sell", 101.0, "0x" + "02" * 16, 501),
                ],
            },
        }
        StateStore(grid_id, str(tmp_path)).save(record)
        gateway.statuses[500] = OrderStatusReport(ExchangeOrderStatus.OPEN, exchange_order_id=500)
        gateway.statuses[501] = OrderStatusReport(ExchangeOrderStatus.FILLED, exchange_order_id=501)

        assert await supervisor.restore_grid(grid_id, session) == grid_id
        worker = supervisor._workers[grid_id]

        await wait_until(lambda: worker.risk.position.size == pytest.approx(-0.01))
        await wait_until(lambda: {o.level_index for o in _resting(supervisor, grid_id)} == {-2, -1, 0, 2})

        status = supervisor.get_grid_status(grid_id)
        assert status.user_id == "u1"
        by_level = {o.level_index: o for o in status.open_orders}
        assert by_level[0].side == "buy"
        assert by_level[0].price == 100.0
        assert by_level[-1].exchange_order_id == 500
        await _stop(supervisor, grid_id)

    @pytest.mark.asyncio
    async def test_restore_unknown_grid(self, supervisor, session):
        with pytest.raises(GridNotFoundError):
            await supervisor.restore_grid("ETH-nothing", session)

    @pytest.mark.asyncio
    async def test_restored_halted_grid_cannot_resume(self, supervisor, session, gateway, tmp_path):
        grid_id = "ETH-halted"
        record = {
            "grid_id": grid_id,
            "user_id": "u1",
            "config": make_config().to_dict(),
            "state": "halted",
            "halt_reason": "risk_breach",
            "position": {"symbol": "ETH"},
            "lifecycle": {"center": 100.0, "spacing": 0.01, "levels": [], "overrides": {}, "orders": []},
        }
        StateStore(grid_id, str(tmp_path)).save(record)

        await supervisor.restore_grid(grid_id, session)
        assert supervisor.get_grid_status(grid_id).state is GridState.HALTED
        with pytest.raises(GridStateError):
            await supervisor.resume_grid(grid_id)
        await asyncio.sleep(0.05)
        assert gateway.placed == []
        await _stop(supervisor, grid_id)
