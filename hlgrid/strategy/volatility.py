"""
Average true range over a rolling window of tick-to-tick moves.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Optional


class VolatilityModel:
    def __init__(self, lookback: int) -> None:
        self.lookback = lookback
        self.window: Deque[float] = deque(maxlen=lookback)
        self.prev: Optional[float] = None

    @property
    def ready(self) -> bool:
        return len(self.window) >= self.lookback

    @property
    def atr(self) -> float:
        if not self.window:
            return 0.0
        return sum(self.window) / len(self.window)

    def step(self, price: float) -> float:
        """Feed one price; returns the current ATR (0.0 until two prices are seen)."""
        if price <= 0:
            return self.atr
        if self.prev is not None:
            self.window.append(abs(price - self.prev))
        self.prev = price
        return self.atr

    def hint(self) -> Optional[float]:
        """ATR once the window is full, otherwise None so callers fall back to static spacing."""
        return self.atr if self.ready else None

    def reset(self) -> None:
        self.window.clear()
        self.prev = None
