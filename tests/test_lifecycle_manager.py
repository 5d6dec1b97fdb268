"""
Tests for OrderLifecycleManager.

Tests cover:
- Initial placement of the ladder
- Fill -> vacated level + counter order one grid line away
- Duplicate and partial fills
- Placement timeout resolved by a status query (no resend), also when the
  query itself fails for a while
- Retry exhaustion and terminal rejections
- Cancel races (not found -> filled / cancelled / unknown)
- Cancel-then-replace on reprice
- Fills for orders the manager has not matched yet
- Risk-capped levels
"""

import pytest

from conftest import HANG, FakeGateway, LifecycleHarness, make_config, wait_until
from hlgrid.core.incidents import IncidentKind
from hlgrid.core.models import Fill, Side
from hlgrid.execution.lifecycle_manager import FillOutcome, SlotKind
from hlgrid.execution.order_gateway import (
    CancelOutcome,
    CancelResult,
    ExchangeOrderStatus,
    GatewayError,
    GatewayErrorKind,
    OrderStatusReport,
    PlaceResult,
)
from hlgrid.execution.order_state_machine import OrderStatus


def _prices(h):
    return {idx: (o.side, o.price) for idx, o in h.live().items()}


class StatusOutageGateway(FakeGateway):
    """Status queries fail with a retryable error until `failures` runs out."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def get_order_status(self, symbol, exchange_order_id=None, client_order_id=None):
        if self.failures > 0:
            self.failures -= 1
            self.status_queries.append({"oid": exchange_order_id, "cloid": client_order_id})
            return OrderStatusReport(
                ExchangeOrderStatus.UNKNOWN,
                client_order_id=client_order_id,
                error=GatewayError(GatewayErrorKind.RETRYABLE, "503"),
            )
        return await super().get_order_status(symbol, exchange_order_id, client_order_id)


# ─────────────────────────────────────────────────────────────────────────────
# Placement and fills
# ─────────────────────────────────────────────────────────────────────────────


class TestLadder:
    @pytest.mark.asyncio
    async def test_initial_ladder_is_placed(self):
        h = LifecycleHarness(make_config(), FakeGateway())
        h.plant(100.0)
        await h.settle()

        assert _prices(h) == {
            -2: (Side.BUY, 98.0),
            -1: (Side.BUY, 99.0),
            1: (Side.SELL, 101.0),
            2: (Side.SELL, 102.0),
        }
        assert all(o.status is OrderStatus.RESTING for o in h.lm.open_orders())
        assert len(h.gateway.placed) == 4

    @pytest.mark.asyncio
    async def test_reconcile_is_idempotent(self):
        h = LifecycleHarness(make_config(), FakeGateway())
        h.plant(100.0)
        await h.settle()
        h.lm.reconcile()
        await h.settle()
        assert len(h.gateway.placed) == 4
        assert h.gateway.cancelled == []

    @pytest.mark.asyncio
    async def test_buy_fill_places_counter_sell_one_line_up(self):
        h = LifecycleHarness(make_config(), FakeGateway())
        h.plant(100.0)
        await h.settle()

        outcome = h.lm.on_fill(h.fill(-1, "t1"))
        await h.settle()

        assert outcome is FillOutcome.COMPLETED
        assert h.lm.position.size == pytest.approx(0.01)
        assert _prices(h) == {
            -2: (Side.BUY, 98.0),
            0: (Side.SELL, 100.0),
            1: (Side.SELL, 101.0),
            2: (Side.SELL, 102.0),
        }
        assert h.lm.overrides[-1].kind is SlotKind.VACANT
        assert h.lm.overrides[0].kind is SlotKind.COUNTER

    @pytest.mark.asyncio
    async def test_round_trip_realizes_one_spacing(self):
        h = LifecycleHarness(make_config(), FakeGateway())
        h.plant(100.0)
        await h.settle()

        h.lm.on_fill(h.fill(-1, "t1"))
        await h.settle()
        h.lm.on_fill(h.fill(0, "t2"))
        await h.settle()

        assert h.lm.position.size == pytest.approx(0.0)
        assert h.lm.position.realized_pnl == pytest.approx(0.01)
        # Buy re-armed at the level it was taken from
        assert _prices(h)[-1] == (Side.BUY, 99.0)
        assert 0 not in h.live()

    @pytest.mark.asyncio
    async def test_duplicate_fill_applied_once(self):
        h = LifecycleHarness(make_config(), FakeGateway())
        h.plant(100.0)
        await h.settle()

        fill = h.fill(1, "t1")
        assert h.lm.on_fill(fill) is FillOutcome.COMPLETED
        assert h.lm.on_fill(fill) is FillOutcome.DUPLICATE
        await h.settle()

        assert h.lm.position.size == pytest.approx(-0.01)
        at_center = [i for i in h.gateway.placed if i.price == 100.0]
        assert len(at_center) == 1

    @pytest.mark.asyncio
    async def test_partial_fills_complete_the_order(self):
        h = LifecycleHarness(make_config(), FakeGateway())
        h.plant(100.0)
        await h.settle()

        assert h.lm.on_fill(h.fill(-1, "p1", size=0.004)) is FillOutcome.APPLIED
        assert h.lm.orders.live_at(-1) is not None
        assert h.lm.on_fill(h.fill(-1, "p2", size=0.006)) is FillOutcome.COMPLETED
        await h.settle()

        assert h.lm.position.size == pytest.approx(0.01)
        assert h.live()[0].side is Side.SELL

    @pytest.mark.asyncio
    async def test_fill_for_other_symbol_ignored(self):
        h = LifecycleHarness(make_config(), FakeGateway())
        h.plant(100.0)
        await h.settle()
        fill = Fill(order_id=1000, symbol="BTC", price=99.0, size=0.01, side=Side.BUY, trade_id="x")
        assert h.lm.on_fill(fill) is FillOutcome.IGNORED
        assert h.lm.position.size == 0.0


# ─────────────────────────────────────────────────────────────────────────────
# Placement failures
# ─────────────────────────────────────────────────────────────────────────────


class TestPlacementFailures:
    @pytest.mark.asyncio
    async def test_timeout_resolved_by_status_query_without_resend(self):
        gw = FakeGateway()
        gw.place_script = [HANG]
        h = LifecycleHarness(make_config(levels_per_side=1), gw)
        h.plant(100.0)

        await wait_until(lambda: len(gw.placed) >= 1)
        cloid = gw.placed[0].client_order_id
        gw.statuses[cloid] = OrderStatusReport(
            ExchangeOrderStatus.OPEN, exchange_order_id=555, client_order_id=cloid
        )
        await h.settle()

        order = h.lm.orders.get(client_order_id=cloid)
        assert order.status is OrderStatus.RESTING
        assert order.exchange_order_id == 555
        assert [i.client_order_id for i in gw.placed].count(cloid) == 1
        assert {"oid": None, "cloid": cloid} in gw.status_queries

    @pytest.mark.asyncio
    async def test_failed_status_query_is_asked_again_not_resent(self):
        gw = StatusOutageGateway(failures=2)
        gw.place_script = [HANG]
        h = LifecycleHarness(make_config(levels_per_side=1), gw)
        h.plant(100.0)

        await wait_until(lambda: len(gw.placed) >= 1)
        cloid = gw.placed[0].client_order_id
        gw.statuses[cloid] = OrderStatusReport(
            ExchangeOrderStatus.OPEN, exchange_order_id=777, client_order_id=cloid
        )
        await h.settle()

        assert [i.client_order_id for i in gw.placed].count(cloid) == 1
        assert len(gw.status_queries) == 3
        assert h.lm.orders.get(client_order_id=cloid).status is OrderStatus.RESTING
        assert h.incidents == []

    @pytest.mark.asyncio
    async def test_status_outage_keeps_order_pending_until_verified(self):
        gw = StatusOutageGateway(failures=100)
        gw.place_script = [HANG]
        h = LifecycleHarness(make_config(levels_per_side=1), gw)
        h.plant(100.0)

        await wait_until(lambda: len(gw.placed) >= 1)
        cloid = gw.placed[0].client_order_id
        await h.settle()

        order = h.lm.orders.get(client_order_id=cloid)
        assert order.status is OrderStatus.PENDING
        assert [i.client_order_id for i in gw.placed].count(cloid) == 1
        assert len(gw.status_queries) == h.lm.settings.status_max_attempts
        assert [i.kind for i in h.incidents] == [IncidentKind.DATA_INCONSISTENCY]
        assert h.incidents[0].message == "placement outcome unknown"
        assert h.lm.unresolved == 1

        # Nothing new goes to the level while the outcome is unknown
        h.lm.reconcile()
        await h.settle()
        assert len(gw.placed) == 2

        gw.failures = 0
        gw.statuses[cloid] = OrderStatusReport(
            ExchangeOrderStatus.OPEN, exchange_order_id=778, client_order_id=cloid
        )
        assert h.lm.verify_unresolved() == 1
        await h.settle()
        assert order.status is OrderStatus.RESTING
        assert order.exchange_order_id == 778
        assert h.lm.unresolved == 0

    @pytest.mark.asyncio
    async def test_retryable_errors_exhaust_and_report(self):
        gw = FakeGateway()
        busy = PlaceResult("x", error=GatewayError(GatewayErrorKind.RETRYABLE, "rate limited"))
        gw.place_script = [busy] * 8
        h = LifecycleHarness(make_config(levels_per_side=1), gw)
        h.plant(100.0)
        await h.settle()

        assert len(gw.placed) == 8
        assert h.live() == {}
        kinds = [i.kind for i in h.incidents]
        assert kinds == [IncidentKind.PLACEMENT_FAILED, IncidentKind.PLACEMENT_FAILED]
        assert "retries exhausted" in h.incidents[0].message

    @pytest.mark.asyncio
    async def test_terminal_rejection_is_not_retried(self):
        gw = FakeGateway()
        gw.place_script = [PlaceResult("x", error=GatewayError(GatewayErrorKind.TERMINAL, "Order has invalid price"))]
        h = LifecycleHarness(make_config(levels_per_side=1), gw)
        h.plant(100.0)
        await h.settle()

        assert len(gw.placed) == 2
        assert list(h.live()) == [1]
        assert len(h.incidents) == 1
        incident = h.incidents[0]
        assert incident.kind is IncidentKind.PLACEMENT_FAILED
        assert incident.details["level_index"] == -1
        # Level returns to desired and is placed on the next pass
        h.lm.reconcile()
        await h.settle()
        assert sorted(h.live()) == [-1, 1]

    @pytest.mark.asyncio
    async def test_session_error_raises_session_incident(self):
        gw = FakeGateway()
        gw.place_script = [PlaceResult("x", error=GatewayError(GatewayErrorKind.SESSION, "session_expired"))]
        h = LifecycleHarness(make_config(levels_per_side=1), gw)
        h.plant(100.0)
        await h.settle()
        assert h.incidents[0].kind is IncidentKind.SESSION_EXPIRED


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_not_found_but_filled_waits_for_fill(self):
        gw = FakeGateway()
        h = LifecycleHarness(make_config(), gw)
        h.plant(100.0)
        await h.settle()

        order = h.lm.orders.live_at(1)
        gw.cancel_script = [CancelResult(CancelOutcome.NOT_FOUND)]
        gw.statuses[order.exchange_order_id] = OrderStatusReport(
            ExchangeOrderStatus.FILLED, exchange_order_id=order.exchange_order_id
        )
        h.lm.request_cancel(order, "narrowed")
        await h.settle()

        assert order.is_live
        assert order.cancel_reason == "await_fill"
        # A stop sweep does not cancel it again or overwrite the reason
        h.lm.accepting = False
        assert h.lm.cancel_all("stop") == 4
        await h.settle()
        assert gw.cancelled.count(order.exchange_order_id) == 1
        assert order.cancel_reason == "await_fill"
        assert h.lm.on_fill(h.fill(1, "late")) is FillOutcome.COMPLETED
        assert order.status is OrderStatus.FILLED
        await h.settle()

    @pytest.mark.asyncio
    async def test_cancel_not_found_and_cancelled_retires_order(self):
        gw = FakeGateway()
        h = LifecycleHarness(make_config(), gw)
        h.plant(100.0)
        await h.settle()

        order = h.lm.orders.live_at(2)
        gw.cancel_script = [CancelResult(CancelOutcome.NOT_FOUND)]
        gw.statuses[order.exchange_order_id] = OrderStatusReport(ExchangeOrderStatus.CANCELLED)
        h.lm.request_cancel(order, "narrowed")
        await h.settle()

        assert order.status is OrderStatus.CANCELLED
        assert h.incidents == []

    @pytest.mark.asyncio
    async def test_cancel_of_order_unknown_to_exchange_is_kept_and_flagged(self):
        gw = FakeGateway()
        h = LifecycleHarness(make_config(), gw)
        h.plant(100.0)
        await h.settle()

        order = h.lm.orders.live_at(-2)
        gw.cancel_script = [CancelResult(CancelOutcome.NOT_FOUND)]
        h.lm.request_cancel(order, "narrowed")
        await h.settle()

        assert order.status is OrderStatus.RESTING
        assert order.cancel_reason == "unknown_to_exchange"
        assert [i.kind for i in h.incidents] == [IncidentKind.DATA_INCONSISTENCY]

        # Not cancelled again, and the level is not re-placed next to it
        placed = len(gw.placed)
        h.lm.reconcile()
        h.lm.accepting = False
        h.lm.cancel_all("pause")
        await h.settle()
        assert gw.cancelled.count(order.exchange_order_id) == 1
        assert len(gw.placed) == placed
        assert h.lm.orders.live_at(-2) is order

        # A late fill settles it
        h.lm.on_fill(h.fill(-2, "t-late"))
        assert order.status is OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_terminal_cancel_error_reports_and_keeps_order(self):
        gw = FakeGateway()
        h = LifecycleHarness(make_config(), gw)
        h.plant(100.0)
        await h.settle()

        order = h.lm.orders.live_at(-1)
        gw.cancel_script = [CancelResult(CancelOutcome.ERROR, GatewayError(GatewayErrorKind.TERMINAL, "bad request"))]
        h.lm.request_cancel(order, "narrowed")
        await h.settle()

        assert order.status is OrderStatus.RESTING
        assert order.cancel_reason is None
        assert h.incidents[0].kind is IncidentKind.CANCEL_FAILED

    @pytest.mark.asyncio
    async def test_reprice_keeps_old_order_until_cancel_confirmed(self):
        gw = FakeGateway()
        h = LifecycleHarness(make_config(), gw)
        h.plant(100.0)
        await h.settle()
        old = h.lm.orders.live_at(-1)

        plan = h.strategy.plan(100.5)
        h.lm.set_grid(plan.levels, plan.center, plan.spacing)
        h.lm.reconcile()

        assert h.lm.orders.live_at(-1) is old
        assert old.cancel_reason == "reprice"
        await h.settle()

        assert old.status is OrderStatus.CANCELLED
        expected = {lvl.index: lvl.price for lvl in plan.levels}
        assert {idx: o.price for idx, o in h.live().items()} == expected
        assert len(gw.cancelled) == 4

    @pytest.mark.asyncio
    async def test_full_rebalance_replaces_every_level(self):
        gw = FakeGateway()
        h = LifecycleHarness(make_config(), gw)
        h.plant(100.0)
        await h.settle()
        old = list(h.lm.orders.live_orders())

        plan = h.strategy.plan(110.0)
        h.lm.set_grid(plan.levels, plan.center, plan.spacing)
        h.lm.rebalance()
        await h.settle()

        assert all(o.status is OrderStatus.REPLACED for o in old)
        expected = {lvl.index: lvl.price for lvl in plan.levels}
        assert {idx: o.price for idx, o in h.live().items()} == expected

    @pytest.mark.asyncio
    async def test_cancel_all_empties_book(self):
        gw = FakeGateway()
        h = LifecycleHarness(make_config(), gw)
        h.plant(100.0)
        await h.settle()

        h.lm.accepting = False
        assert h.lm.cancel_all("stop") == 4
        await h.settle()
        assert h.lm.is_drained()


# ─────────────────────────────────────────────────────────────────────────────
# Unmatched fills
# ─────────────────────────────────────────────────────────────────────────────


class TestUnmatchedFills:
    @pytest.mark.asyncio
    async def test_fill_for_foreign_order_is_dropped_after_query(self):
        gw = FakeGateway()
        h = LifecycleHarness(make_config(), gw)
        h.plant(100.0)
        await h.settle()

        fill = Fill(order_id=9999, symbol="ETH", price=99.0, size=0.01, side=Side.BUY, trade_id="f1")
        assert h.lm.on_fill(fill) is FillOutcome.PARKED
        await h.settle()

        assert h.lm.position.size == 0.0
        assert {"oid": 9999, "cloid": None} in gw.status_queries
        assert h.lm._parked == {}

    @pytest.mark.asyncio
    async def test_fill_before_ack_is_replayed_on_ack(self):
        gw = FakeGateway()
        h = LifecycleHarness(make_config(levels_per_side=1), gw)
        h.plant(100.0)
        # Gateway answered but the result has not been applied yet
        await wait_until(lambda: len(h.posted) == 2)
        buy = next(i for i in gw.placed if i.side is Side.BUY)
        oid = gw.oid_by_cloid[buy.client_order_id]
        gw.statuses[oid] = OrderStatusReport(
            ExchangeOrderStatus.OPEN, exchange_order_id=oid, client_order_id=buy.client_order_id
        )

        fill = Fill(order_id=oid, symbol="ETH", price=99.0, size=0.01, side=Side.BUY, trade_id="early")
        assert h.lm.on_fill(fill) is FillOutcome.PARKED
        await h.settle()

        assert h.lm.position.size == pytest.approx(0.01)
        assert h.lm.orders.get(client_order_id=buy.client_order_id).status is OrderStatus.FILLED
        assert h.live()[0].side is Side.SELL


# ─────────────────────────────────────────────────────────────────────────────
# Risk caps and persistence
# ─────────────────────────────────────────────────────────────────────────────


class TestRiskAndRecord:
    @pytest.mark.asyncio
    async def test_levels_beyond_max_position_stay_empty(self):
        gw = FakeGateway()
        h = LifecycleHarness(make_config(max_position=0.015), gw)
        h.plant(100.0)
        await h.settle()

        assert sorted(h.live()) == [-1, 1]
        assert h.lm.capped == {-2: "max_position", 2: "max_position"}

    @pytest.mark.asyncio
    async def test_record_restores_book_without_cancel_reasons(self):
        gw = FakeGateway()
        h = LifecycleHarness(make_config(), gw)
        h.plant(100.0)
        await h.settle()
        h.lm.on_fill(h.fill(-1, "t1"))
        await h.settle()
        h.lm.orders.live_at(2).cancel_reason = "narrowed"

        record = h.lm.to_record()
        other = LifecycleHarness(make_config(), FakeGateway())
        other.lm.restore(record)

        assert {o.level_index for o in other.lm.open_orders()} == {-2, 0, 1, 2}
        assert all(o.cancel_reason is None for o in other.lm.open_orders())
        assert other.lm.overrides[0].side is Side.SELL
        assert other.lm.center == 100.0

    @pytest.mark.asyncio
    async def test_verify_filled_order_applies_missing_fill(self):
        gw = FakeGateway()
        h = LifecycleHarness(make_config(), gw)
        h.plant(100.0)
        await h.settle()

        order = h.lm.orders.live_at(1)
        gw.statuses[order.exchange_order_id] = OrderStatusReport(
            ExchangeOrderStatus.FILLED, exchange_order_id=order.exchange_order_id
        )
        for other in h.lm.open_orders():
            if other is not order:
                gw.statuses[other.exchange_order_id] = OrderStatusReport(
                    ExchangeOrderStatus.OPEN, exchange_order_id=other.exchange_order_id
                )
        assert h.lm.verify_live_orders() == 4
        await h.settle()

        assert order.status is OrderStatus.FILLED
        assert h.lm.position.size == pytest.approx(-0.01)
        assert h.live()[0].side is Side.BUY
        # The real fill arriving later is not applied twice
        late = Fill(order_id=order.exchange_order_id, symbol="ETH", price=101.0, size=0.01, side=Side.SELL, trade_id="real")
        assert h.lm.on_fill(late) is FillOutcome.DUPLICATE
        assert h.lm.position.size == pytest.approx(-0.01)
        await h.settle()
