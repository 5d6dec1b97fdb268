"""
Utility helpers.
"""

from __future__ import annotations

import math
import secrets
import time
from collections import deque
from typing import Any, Deque, Optional, Set


def now_ms() -> int:
    return int(time.time() * 1000)


def new_client_order_id() -> str:
    """128-bit hex client order id, the format Hyperliquid accepts as a cloid."""
    return f"0x{secrets.token_hex(16)}"


def to_int_safe(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def tick_to_decimals(tick: float) -> int:
    if tick <= 0:
        return 2
    s = f"{tick:.10f}".rstrip("0")
    if "." in s:
        return max(0, len(s.split(".")[1]))
    return 0


def hl_round_price(px: float, sz_decimals: int, is_perp: bool = True) -> float:
    """
    Hyperliquid price rounding per docs:
    - Perps: up to 5 significant figures, and at most (6 - szDecimals) decimals.
    - Spot:   up to 5 significant figures, and at most (8 - szDecimals) decimals.
    - If px > 100_000, round to int.
    """
    if px > 100_000:
        return round(px)
    max_decimals = (6 - sz_decimals) if is_perp else (8 - sz_decimals)
    max_decimals = max(0, max_decimals)
    sig_5 = float(f"{px:.5g}")
    return round(sig_5, max_decimals)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential delay for a zero-based attempt number, capped."""
    return min(cap, base * math.pow(2, attempt))


class BoundedSet:
    """Dedup with bounded memory."""

    def __init__(self, maxlen: int = 5000) -> None:
        self.maxlen = maxlen
        self.deque: Deque[str] = deque(maxlen=maxlen)
        self.set: Set[str] = set()

    def add(self, key: str) -> bool:
        if key in self.set:
            return False
        if len(self.deque) == self.maxlen:
            old = self.deque.popleft()
            self.set.discard(old)
        self.deque.append(key)
        self.set.add(key)
        return True

    def __contains__(self, key: object) -> bool:
        return key in self.set

    def __len__(self) -> int:
        return len(self.set)
