"""
GridStrategyEngine - translates a reference price into the desired ladder.

Static grids use the configured spacing. Dynamic grids derive spacing from a
volatility hint (ATR) and, when the new spacing jumps past the configured
threshold relative to the active one, flag a full rebalance instead of moving
levels one by one.

The engine has no side effects; the only state it keeps is the spacing last
committed through plan().
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

from hlgrid.config.grid_config import GridConfig, SpacingMode
from hlgrid.core.errors import FeedDataError
from hlgrid.core.models import GridLevel
from hlgrid.infra.logging_cfg import log_event

log = logging.getLogger("gridbot")


@dataclass(frozen=True)
class GridPlan:
    """Result of one planning step."""
    center: float
    spacing: float
    levels: List[GridLevel] = field(default_factory=list)
    full_rebalance: bool = False
    reason: Optional[str] = None


def grid_line_price(center: float, index: int, spacing: float, mode: SpacingMode, decimals: int) -> float:
    """Price of grid line `index` (0 is the center line)."""
    if mode is SpacingMode.PERCENT:
        px = center * (1 + index * spacing)
    else:
        px = center + index * spacing
    return round(px, decimals)


class GridStrategyEngine:
    def __init__(self, config: GridConfig) -> None:
        self.config = config
        self.active_spacing: Optional[float] = None

    def compute_spacing(
        self,
        reference_price: float,
        config: Optional[GridConfig] = None,
        volatility_hint: Optional[float] = None,
    ) -> float:
        cfg = config or self.config
        dyn = cfg.dynamic
        if dyn is None or not volatility_hint or volatility_hint <= 0:
            return cfg.spacing
        raw = dyn.multiplier * volatility_hint
        if cfg.spacing_mode is SpacingMode.PERCENT:
            raw = raw / reference_price
        spacing = max(raw, dyn.min_spacing) if dyn.min_spacing else raw
        if dyn.max_spacing:
            spacing = min(spacing, dyn.max_spacing)
        if cfg.spacing_mode is SpacingMode.PERCENT:
            # Lowest level must stay above zero
            spacing = min(spacing, 0.99 / cfg.levels_per_side)
        return spacing if spacing > 0 else cfg.spacing

    def recompute_levels(
        self,
        reference_price: float,
        config: Optional[GridConfig] = None,
        volatility_hint: Optional[float] = None,
        spacing: Optional[float] = None,
    ) -> List[GridLevel]:
        """
        Build the ladder around reference_price, sorted by price.

        Raises:
            FeedDataError: reference_price is not a positive finite number.
        """
        cfg = config or self.config
        if reference_price is None or not math.isfinite(reference_price) or reference_price <= 0:
            raise FeedDataError(cfg.symbol, reference_price)
        if spacing is None:
            spacing = self.compute_spacing(reference_price, cfg, volatility_hint)

        n = cfg.levels_per_side
        levels: List[GridLevel] = []
        for i in range(-n, n + 1):
            if i == 0:
                continue
            px = grid_line_price(reference_price, i, spacing, cfg.spacing_mode, cfg.price_decimals)
            if px <= 0:
                log_event(log, "level_below_zero", level=logging.DEBUG, symbol=cfg.symbol, index=i, px=px)
                continue
            levels.append(GridLevel(index=i, price=px))
        levels.sort(key=lambda lvl: lvl.price)
        return levels

    def plan(self, reference_price: float, volatility_hint: Optional[float] = None) -> GridPlan:
        """
        Compute levels at the active spacing. A dynamic grid keeps the spacing
        it was built with until the volatility estimate moves past
        dynamic.rebalance_threshold from it; then the new spacing is committed
        and full_rebalance is set.
        """
        cfg = self.config
        if reference_price is None or not math.isfinite(reference_price) or reference_price <= 0:
            raise FeedDataError(cfg.symbol, reference_price)
        spacing = self.compute_spacing(reference_price, cfg, volatility_hint)

        full_rebalance = False
        reason = None
        prev = self.active_spacing
        if prev is not None and cfg.dynamic is not None and prev > 0:
            change = abs(spacing - prev) / prev
            if change <= cfg.dynamic.rebalance_threshold:
                spacing = prev
            else:
                full_rebalance = True
                reason = "spacing_shift"
                log_event(
                    log,
                    "spacing_rebalance",
                    symbol=cfg.symbol,
                    prev_spacing=prev,
                    new_spacing=spacing,
                    change=round(change, 6),
                )
        self.active_spacing = spacing
        levels = self.recompute_levels(reference_price, cfg, spacing=spacing)
        return GridPlan(
            center=reference_price,
            spacing=spacing,
            levels=levels,
            full_rebalance=full_rebalance,
            reason=reason,
        )

    def line_price(self, center: float, index: int, spacing: Optional[float] = None) -> float:
        cfg = self.config
        sp = spacing if spacing is not None else (self.active_spacing or cfg.spacing)
        return grid_line_price(center, index, sp, cfg.spacing_mode, cfg.price_decimals)
