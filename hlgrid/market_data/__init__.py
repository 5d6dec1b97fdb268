"""
Market data package.

Price feed adapter (reconnect + resync) and the Hyperliquid price source.
"""

from hlgrid.market_data.info_client import AsyncInfo
from hlgrid.market_data.price_feed import PriceFeedAdapter, PriceSource

__all__ = [
    "AsyncInfo",
    "PriceFeedAdapter",
    "PriceSource",
]
