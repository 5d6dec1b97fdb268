"""
Async wrapper around the blocking Hyperliquid Exchange using a shared thread pool.

No retries happen here: a timed-out placement has an unknown outcome and only
the lifecycle manager, after a status query, may decide to resend it.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from hyperliquid.utils.types import Cloid


class AsyncExchange:
    def __init__(self, exchange, timeout: Optional[float] = None, max_workers: int = 8) -> None:
        self._exchange = exchange
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="hl-exec")

    async def order(
        self,
        coin: str,
        is_buy: bool,
        sz: float,
        limit_px: float,
        order_type: dict,
        reduce_only: bool = False,
        cloid: Optional[str] = None,
    ) -> Any:
        hl_cloid = Cloid.from_str(cloid) if cloid else None
        return await self._call(
            lambda: self._exchange.order(coin, is_buy, sz, limit_px, order_type, reduce_only, cloid=hl_cloid)
        )

    async def cancel(self, coin: str, oid: int) -> Any:
        return await self._call(lambda: self._exchange.cancel(coin, oid))

    async def cancel_by_cloid(self, coin: str, cloid: str) -> Any:
        return await self._call(lambda: self._exchange.cancel_by_cloid(coin, Cloid.from_str(cloid)))

    async def close(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    async def _call(self, fn: Callable[[], Any]) -> Any:
        loop = asyncio.get_running_loop()
        fut = loop.run_in_executor(self._executor, fn)
        if self._timeout:
            return await asyncio.wait_for(fut, timeout=self._timeout)
        return await fut
