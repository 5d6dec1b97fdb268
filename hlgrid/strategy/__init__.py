"""
Strategy package: grid ladder computation and volatility estimation.
"""

from hlgrid.strategy.grid_engine import GridPlan, GridStrategyEngine, grid_line_price
from hlgrid.strategy.volatility import VolatilityModel

__all__ = [
    "GridPlan",
    "GridStrategyEngine",
    "VolatilityModel",
    "grid_line_price",
]
