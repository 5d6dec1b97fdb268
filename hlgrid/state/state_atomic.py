"""
Async wrapper around StateStore.

File IO runs in the default executor and an asyncio.Lock serializes access so
two snapshots of the same grid never interleave.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict

from hlgrid.state.state_store import StateStore


class AtomicStateStore:
    def __init__(self, grid_id: str, state_dir: str) -> None:
        self._store = StateStore(grid_id, state_dir)
        self._lock = asyncio.Lock()

    @property
    def path(self):
        return self._store.path

    async def load(self) -> Dict[str, Any]:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._store.load)

    async def save(self, data: Dict[str, Any]) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: self._store.save(data))

    async def delete(self) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._store.delete)
