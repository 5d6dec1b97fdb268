"""
Configuration package.

Process-wide Settings loaded from the environment and the immutable per-grid
GridConfig.
"""

from hlgrid.config.grid_config import CenterSource, DynamicSpacing, GridConfig, SpacingMode
from hlgrid.config.settings import Settings

__all__ = [
    "CenterSource",
    "DynamicSpacing",
    "GridConfig",
    "Settings",
    "SpacingMode",
]
