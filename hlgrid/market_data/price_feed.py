"""
Price feed adapter: one ordered stream of mid-price ticks per symbol.

The stream starts with a snapshot and, after every disconnect, reconnects with
exponential backoff and emits a fresh snapshot (resync=True) before resuming
streamed ticks, so the grid never reasons about a center price that went stale
while the connection was down.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol

import httpx

from hlgrid.core.errors import FeedDataError, FeedDisconnected
from hlgrid.core.models import PriceTick
from hlgrid.core.utils import backoff_delay
from hlgrid.infra.logging_cfg import log_event

log = logging.getLogger("gridbot")

RECONNECTABLE_ERRORS = (
    FeedDisconnected,
    FeedDataError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
    httpx.HTTPError,
)


class PriceSource(Protocol):
    def stream_mid_price(self, symbol: str) -> AsyncIterator[PriceTick]:
        """Streaming mid prices. Ends or raises FeedDisconnected when the connection drops."""
        ...

    async def get_snapshot_price(self, symbol: str) -> float:
        ...


class PriceFeedAdapter:
    """
    Lazy, infinite tick sequence for one symbol.

    ticks() may be iterated once; a consumed adapter is not restarted in place,
    a new adapter must be built instead.
    """

    def __init__(
        self,
        source: PriceSource,
        symbol: str,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        jitter: float = 0.2,
        on_reconnect: Optional[Callable[[int], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.source = source
        self.symbol = symbol
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._jitter = jitter
        self._on_reconnect = on_reconnect
        self._sleep = sleep
        self._started = False
        self.reconnects = 0
        self.last_tick: Optional[PriceTick] = None

    async def get_snapshot_price(self) -> float:
        return await self.source.get_snapshot_price(self.symbol)

    async def ticks(self) -> AsyncIterator[PriceTick]:
        if self._started:
            raise RuntimeError(f"price feed for {self.symbol} already consumed; build a new adapter")
        self._started = True

        attempt = 0
        while True:
            try:
                snapshot = await self.source.get_snapshot_price(self.symbol)
                tick = PriceTick(self.symbol, snapshot, resync=True)
                self.last_tick = tick
                yield tick
                stream = self.source.stream_mid_price(self.symbol)
                try:
                    async for tick in stream:
                        attempt = 0
                        self.last_tick = tick
                        yield tick
                finally:
                    aclose = getattr(stream, "aclose", None)
                    if aclose is not None:
                        await aclose()
                raise FeedDisconnected(f"{self.symbol} price stream ended")
            except RECONNECTABLE_ERRORS as exc:
                delay = backoff_delay(attempt, self._backoff_base, self._backoff_max)
                delay += random.uniform(0, delay * self._jitter)
                attempt += 1
                self.reconnects += 1
                log_event(
                    log,
                    "feed_reconnect",
                    level=logging.WARNING,
                    symbol=self.symbol,
                    attempt=attempt,
                    delay_sec=round(delay, 3),
                    err=str(exc),
                )
                if self._on_reconnect:
                    self._on_reconnect(attempt)
                await self._sleep(delay)
