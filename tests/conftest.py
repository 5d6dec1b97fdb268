"""
Pytest configuration and shared fakes.

FakeGateway and FakePriceSource stand in for Hyperliquid so lifecycle, worker
and supervisor tests run against scripted exchange behaviour.
"""

import asyncio
import itertools
from typing import Any, Dict, List, Optional, Union

import pytest

from hlgrid.config.grid_config import CenterSource, GridConfig
from hlgrid.core.models import Fill, OrderIntent, PriceTick
from hlgrid.core.wallet import WalletSession
from hlgrid.execution.lifecycle_manager import LifecycleSettings, OrderLifecycleManager
from hlgrid.execution.order_gateway import (
    CancelOutcome,
    CancelResult,
    ExchangeOrderStatus,
    OrderStatusReport,
    PlaceResult,
)
from hlgrid.risk.risk import RiskManager
from hlgrid.strategy.grid_engine import GridStrategyEngine

HANG = "hang"


class FakeGateway:
    """
    Scripted OrderGateway.

    place_script / cancel_script entries are consumed one per call:
    a PlaceResult/CancelResult is returned as-is (client id patched in),
    HANG blocks until cancelled. With an empty script calls succeed.
    """

    def __init__(self) -> None:
        self.placed: List[OrderIntent] = []
        self.cancelled: List[int] = []
        self.status_queries: List[Dict[str, Any]] = []
        self.place_script: List[Union[PlaceResult, str]] = []
        self.cancel_script: List[Union[CancelResult, str]] = []
        self.statuses: Dict[Union[int, str], OrderStatusReport] = {}
        self.oid_by_cloid: Dict[str, int] = {}
        self.fills: asyncio.Queue = asyncio.Queue()
        self.margin_utilization: Optional[float] = None
        self._oids = itertools.count(1000)

    async def place_order(self, intent: OrderIntent) -> PlaceResult:
        self.placed.append(intent)
        if self.place_script:
            step = self.place_script.pop(0)
            if step == HANG:
                await asyncio.sleep(3600)
            if isinstance(step, PlaceResult):
                return PlaceResult(
                    intent.client_order_id,
                    exchange_order_id=step.exchange_order_id,
                    error=step.error,
                    filled=step.filled,
                )
        oid = next(self._oids)
        self.oid_by_cloid[intent.client_order_id] = oid
        return PlaceResult(intent.client_order_id, exchange_order_id=oid)

    async def cancel_order(self, symbol: str, exchange_order_id: int) -> CancelResult:
        self.cancelled.append(exchange_order_id)
        if self.cancel_script:
            step = self.cancel_script.pop(0)
            if step == HANG:
                await asyncio.sleep(3600)
            return step
        return CancelResult(CancelOutcome.OK)

    async def get_order_status(
        self,
        symbol: str,
        exchange_order_id: Optional[int] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderStatusReport:
        self.status_queries.append({"oid": exchange_order_id, "cloid": client_order_id})
        if exchange_order_id is not None and exchange_order_id in self.statuses:
            return self.statuses[exchange_order_id]
        if client_order_id is not None and client_order_id in self.statuses:
            return self.statuses[client_order_id]
        return OrderStatusReport(ExchangeOrderStatus.UNKNOWN)

    async def get_margin_utilization(self) -> Optional[float]:
        return self.margin_utilization

    async def stream_fills(self, account_id: str):
        while True:
            yield await self.fills.get()

    def live_intents(self) -> List[OrderIntent]:
        """Placed intents whose exchange id was not cancelled."""
        cancelled = set(self.cancelled)
        return [i for i in self.placed if self.oid_by_cloid.get(i.client_order_id) not in cancelled]


class FakePriceSource:
    """Snapshot price plus a stream fed from a queue. None in the queue ends the stream."""

    def __init__(self, snapshot: float = 100.0) -> None:
        self.snapshot = snapshot
        self.snapshot_calls = 0
        self.stream: asyncio.Queue = asyncio.Queue()

    async def get_snapshot_price(self, symbol: str) -> float:
        self.snapshot_calls += 1
        return self.snapshot

    async def stream_mid_price(self, symbol: str):
        while True:
            price = await self.stream.get()
            if price is None:
                return
            yield PriceTick(symbol, price)


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


def make_config(**overrides) -> GridConfig:
    params = dict(
        symbol="ETH",
        spacing=0.01,
        levels_per_side=2,
        order_size=0.01,
        max_position=1.0,
        center_source=CenterSource.MID,
        price_decimals=6,
    )
    params.update(overrides)
    return GridConfig(**params).validate()


class LifecycleHarness:
    """Lifecycle manager driven by hand: posted results are applied on settle()."""

    def __init__(self, config: GridConfig, gateway: FakeGateway, settings: Optional[LifecycleSettings] = None):
        self.config = config
        self.gateway = gateway
        self.posted: List[Any] = []
        self.incidents: List[Any] = []
        self.strategy = GridStrategyEngine(config)
        self.risk = RiskManager(config)
        self.lm = OrderLifecycleManager(
            "grid-test",
            config,
            gateway,
            self.risk,
            self.strategy,
            post=self.posted.append,
            on_incident=self.incidents.append,
            settings=settings or LifecycleSettings(
                gateway_timeout=0.05,
                retry_base_sec=0.001,
                retry_max_sec=0.002,
                failed_level_cooldown_sec=0.0,
            ),
            sleep=no_sleep,
        )

    def plant(self, center: float = 100.0) -> None:
        plan = self.strategy.plan(center)
        self.lm.set_grid(plan.levels, plan.center, plan.spacing)
        self.lm.reconcile()

    async def settle(self, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            await asyncio.sleep(0.001)
            while self.posted:
                self.lm.handle(self.posted.pop(0))
            if not self.posted and self.lm.in_flight == 0 and not self.lm._querying:
                return
            if loop.time() > deadline:
                raise AssertionError("lifecycle did not settle")

    def live(self) -> Dict[int, Any]:
        return {o.level_index: o for o in self.lm.open_orders()}

    def fill(self, level_index: int, trade_id: str, size: Optional[float] = None, price: Optional[float] = None) -> Fill:
        order = self.lm.orders.live_at(level_index)
        return Fill(
            order_id=order.exchange_order_id,
            symbol=self.config.symbol,
            price=price if price is not None else order.price,
            size=size if size is not None else order.size,
            side=order.side,
            trade_id=trade_id,
        )


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def session():
    return WalletSession(account_id="0xabc", wallet=None)
