"""
Minimal async HTTP client for Hyperliquid info endpoints using HTTP/2.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx


class AsyncInfo:
    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        # A shared client passed in is not closed by close()
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def all_mids(self, dex: Optional[str] = None) -> Any:
        payload: dict[str, Any] = {"type": "allMids"}
        if dex:
            payload["dex"] = dex
        return await self._post_info(payload)

    async def user_state(self, account: str, dex: Optional[str] = None) -> Any:
        payload: dict[str, Any] = {"type": "clearinghouseState", "user": account}
        if dex:
            payload["dex"] = dex
        return await self._post_info(payload)

    async def query_order_by_oid(self, account: str, oid: int) -> Any:
        """SDK equivalent: info.query_order_by_oid(user, oid)."""
        payload: dict[str, Any] = {"type": "orderStatus", "user": account, "oid": oid}
        return await self._post_info(payload)

    async def query_order_by_cloid(self, account: str, cloid: str) -> Any:
        """SDK equivalent: info.query_order_by_cloid(user, cloid). The endpoint takes the cloid in "oid"."""
        payload: dict[str, Any] = {"type": "orderStatus", "user": account, "oid": cloid}
        return await self._post_info(payload)

    async def _post_info(self, payload: dict[str, Any]) -> Any:
        resp = await self.client.post("/info", json=payload)
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict):
            if "response" in data and isinstance(data["response"], dict):
                data = data["response"]
            if "data" in data and isinstance(data["data"], dict):
                data = data["data"]
            if "allMids" in data and isinstance(data["allMids"], dict):
                data = data["allMids"]
        return data
