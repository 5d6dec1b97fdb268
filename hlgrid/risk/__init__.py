"""
Risk package: per-grid position view and limit checks.
"""

from hlgrid.risk.position import Position, PositionSnapshot
from hlgrid.risk.risk import DrawdownCheck, DrawdownVerdict, RiskDecision, RiskManager

__all__ = [
    "DrawdownCheck",
    "DrawdownVerdict",
    "Position",
    "PositionSnapshot",
    "RiskDecision",
    "RiskManager",
]
