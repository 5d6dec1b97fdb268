"""
Risk manager enforcing position, margin and drawdown limits for one grid.

Checks are pure: they look only at the arguments they are handed. The manager
owns the authoritative Position for its grid (the strategy and lifecycle
manager read it), and records the halt, which is terminal for the grid.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional

from hlgrid.config.grid_config import GridConfig
from hlgrid.core.models import Fill
from hlgrid.infra.logging_cfg import log_event
from hlgrid.risk.position import Position

log = logging.getLogger("gridbot")

_EPS = 1e-9


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed

    @classmethod
    def allow(cls) -> "RiskDecision":
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> "RiskDecision":
        return cls(False, reason)


class DrawdownVerdict(Enum):
    CONTINUE = auto()
    HALT_GRID = auto()


@dataclass(frozen=True)
class DrawdownCheck:
    verdict: DrawdownVerdict
    loss: float = 0.0
    limit: float = 0.0

    @property
    def should_halt(self) -> bool:
        return self.verdict is DrawdownVerdict.HALT_GRID


class RiskManager:
    def __init__(self, config: GridConfig, position: Optional[Position] = None) -> None:
        self.config = config
        self.position = position or Position(config.symbol)
        # Supplied by the account layer; None = unknown, ceiling not enforced
        self.margin_utilization: Optional[float] = None
        self.halted: bool = False
        self.halt_reason: Optional[str] = None

    def apply_fill(self, fill: Fill) -> bool:
        return self.position.apply_fill(fill)

    def update_margin_utilization(self, util: Optional[float]) -> None:
        self.margin_utilization = util

    def check_placement(
        self,
        order: Any,
        position: Position,
        config: Optional[GridConfig] = None,
        open_exposure: float = 0.0,
        margin_utilization: Optional[float] = None,
    ) -> RiskDecision:
        """
        Validate a proposed order.

        Args:
            order: anything with `side` and `size` (OrderIntent, ManagedOrder)
            position: current position view
            config: grid limits (defaults to this manager's config)
            open_exposure: signed size of live orders on the same side, all
                assumed to fill before this one
            margin_utilization: account margin in use, 0..1
        """
        cfg = config or self.config
        if self.halted:
            return RiskDecision.deny("grid_halted")

        signed = order.size * order.side.sign
        projected = position.size + open_exposure + signed
        if abs(projected) > cfg.max_position + _EPS:
            return RiskDecision.deny("max_position")

        util = margin_utilization if margin_utilization is not None else self.margin_utilization
        increases_exposure = abs(projected) > abs(position.size + open_exposure) + _EPS
        if (
            cfg.max_margin_utilization > 0
            and util is not None
            and util > cfg.max_margin_utilization
            and increases_exposure
        ):
            return RiskDecision.deny("margin_ceiling")
        return RiskDecision.allow()

    def check_drawdown(
        self,
        position: Position,
        unrealized_pnl: float,
        config: Optional[GridConfig] = None,
    ) -> DrawdownCheck:
        cfg = config or self.config
        if cfg.max_drawdown_pct <= 0 or cfg.allocated_capital <= 0:
            return DrawdownCheck(DrawdownVerdict.CONTINUE)
        loss = -(position.realized_pnl + unrealized_pnl)
        limit = cfg.max_drawdown_pct * cfg.allocated_capital
        if loss > limit:
            return DrawdownCheck(DrawdownVerdict.HALT_GRID, loss=loss, limit=limit)
        return DrawdownCheck(DrawdownVerdict.CONTINUE, loss=loss, limit=limit)

    def halt(self, reason: str) -> None:
        if self.halted:
            return
        self.halted = True
        self.halt_reason = reason
        log_event(log, "risk_halt", level=logging.CRITICAL, symbol=self.config.symbol, reason=reason)
