"""
Error taxonomy for the grid engine.

Components raise these for conditions that cross a component boundary.
Gateway results use typed outcomes (see execution.order_gateway) rather than
exceptions so the supervisor can decide between "halt" and "log and continue".
"""

from __future__ import annotations

from typing import Optional


class GridEngineError(Exception):
    """Base class for all engine errors."""


class ConfigError(GridEngineError, ValueError):
    """Invalid GridConfig. Raised at grid start, never at runtime."""


class FeedDataError(GridEngineError):
    """Price feed produced an unusable value (e.g. non-positive price)."""

    def __init__(self, symbol: str, price: float, reason: str = "non_positive_price") -> None:
        super().__init__(f"{symbol}: {reason} ({price})")
        self.symbol = symbol
        self.price = price
        self.reason = reason


class FeedDisconnected(GridEngineError, ConnectionError):
    """Streaming source dropped or went stale; the adapter reconnects."""


class SessionExpiredError(GridEngineError):
    """Wallet session expired or revoked. Fatal for the grid using it."""

    def __init__(self, account_id: str, expires_at: Optional[float] = None) -> None:
        super().__init__(f"wallet session expired for {account_id}")
        self.account_id = account_id
        self.expires_at = expires_at


class GridNotFoundError(GridEngineError, KeyError):
    """Unknown grid id."""


class GridStateError(GridEngineError):
    """Command not valid in the grid's current state (e.g. resume after halt)."""
