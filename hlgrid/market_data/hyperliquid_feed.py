"""
Hyperliquid price source: websocket allMids stream plus REST snapshot.

The SDK delivers websocket messages on its own thread; ticks are handed to the
event loop with call_soon_threadsafe. A stream that stays silent for longer
than stale_after raises FeedDisconnected so the adapter reconnects and resyncs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

from hyperliquid.info import Info

from hlgrid.core.errors import FeedDataError, FeedDisconnected
from hlgrid.core.models import PriceTick
from hlgrid.infra.logging_cfg import log_event
from hlgrid.market_data.info_client import AsyncInfo

log = logging.getLogger("gridbot")


def _extract_mids(msg: Any) -> Dict[str, Any]:
    data = msg.get("data", {}) if isinstance(msg, dict) else {}
    mids = data.get("mids") or data.get("allMids") or {}
    return mids if isinstance(mids, dict) else {}


class HyperliquidPriceSource:
    def __init__(
        self,
        info: Info,
        async_info: AsyncInfo,
        dex: str = "",
        stale_after: float = 20.0,
        max_queue: int = 1000,
    ) -> None:
        self.info = info
        self.async_info = async_info
        self.dex = dex
        self.stale_after = stale_after
        self.max_queue = max_queue

    async def get_snapshot_price(self, symbol: str) -> float:
        mids = await self.async_info.all_mids(self.dex or None)
        raw = mids.get(symbol) if isinstance(mids, dict) else None
        if raw is None:
            raise FeedDataError(symbol, 0.0, reason="missing_from_snapshot")
        return float(raw)

    async def stream_mid_price(self, symbol: str) -> AsyncIterator[PriceTick]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[PriceTick] = asyncio.Queue(maxsize=self.max_queue)

        def _offer(tick: PriceTick) -> None:
            # Keep the freshest ticks when the consumer lags
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(tick)

        def _on_mids(msg: Any) -> None:
            raw = _extract_mids(msg).get(symbol)
            if raw is None:
                return
            try:
                tick = PriceTick(symbol, float(raw))
            except (TypeError, ValueError):
                log_event(log, "feed_bad_mid", level=logging.WARNING, symbol=symbol, raw=raw)
                return
            loop.call_soon_threadsafe(_offer, tick)

        subscription: Dict[str, Any] = {"type": "allMids"}
        if self.dex:
            subscription["dex"] = self.dex
        sub_id: Optional[int] = self.info.subscribe(subscription, _on_mids)
        log_event(log, "feed_subscribed", level=logging.DEBUG, symbol=symbol, sub_id=sub_id)
        try:
            while True:
                try:
                    tick = await asyncio.wait_for(queue.get(), timeout=self.stale_after)
                except asyncio.TimeoutError:
                    raise FeedDisconnected(f"{symbol} mid stream stale for {self.stale_after}s") from None
                yield tick
        finally:
            if sub_id is not None:
                try:
                    self.info.unsubscribe(subscription, sub_id)
                except Exception as exc:
                    log_event(log, "feed_unsubscribe_error", level=logging.DEBUG, symbol=symbol, err=str(exc))
