"""
Core value types, errors and the wallet session capability.
"""

from hlgrid.core.errors import (
    ConfigError,
    FeedDataError,
    FeedDisconnected,
    GridEngineError,
    GridNotFoundError,
    GridStateError,
    SessionExpiredError,
)
from hlgrid.core.incidents import Incident, IncidentKind
from hlgrid.core.models import Fill, GridLevel, OrderIntent, OrderType, PriceTick, Side
from hlgrid.core.wallet import EnvWalletSessionProvider, WalletSession, WalletSessionProvider

__all__ = [
    "ConfigError",
    "FeedDataError",
    "FeedDisconnected",
    "GridEngineError",
    "GridNotFoundError",
    "GridStateError",
    "SessionExpiredError",
    "Incident",
    "IncidentKind",
    "Fill",
    "GridLevel",
    "OrderIntent",
    "OrderType",
    "PriceTick",
    "Side",
    "EnvWalletSessionProvider",
    "WalletSession",
    "WalletSessionProvider",
]
