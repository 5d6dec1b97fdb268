"""
Per-grid immutable configuration.

A GridConfig is created when a grid starts and never changes; a parameter
change means stopping the grid and starting a new one. validate() is the only
place configuration errors are raised, so a running grid never fails on config.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from hlgrid.core.errors import ConfigError
from hlgrid.core.models import OrderType


class CenterSource(str, Enum):
    MID = "mid"      # latest mid at start, re-anchored on drift
    FIXED = "fixed"  # operator supplied, never moves


class SpacingMode(str, Enum):
    PERCENT = "percent"    # spacing is a fraction of the center price
    ABSOLUTE = "absolute"  # spacing is in quote units


@dataclass(frozen=True)
class DynamicSpacing:
    lookback: int = 14
    multiplier: float = 1.0
    # Relative change in spacing that forces a full rebalance
    rebalance_threshold: float = 0.25
    min_spacing: float = 0.0
    max_spacing: float = 0.0  # 0 = unbounded


@dataclass(frozen=True)
class GridConfig:
    symbol: str
    spacing: float
    levels_per_side: int
    order_size: float
    max_position: float
    center_source: CenterSource = CenterSource.MID
    center_price: Optional[float] = None
    spacing_mode: SpacingMode = SpacingMode.PERCENT
    dynamic: Optional[DynamicSpacing] = None
    # Relative move of a level's target before it is cancelled and replaced
    reprice_threshold: float = 0.0005
    # Relative mid drift from center that re-anchors the grid; None = grid half-width
    recenter_threshold: Optional[float] = None
    allocated_capital: float = 0.0
    max_drawdown_pct: float = 0.0  # 0 = drawdown halt disabled
    max_margin_utilization: float = 0.0  # 0 = margin ceiling disabled
    price_decimals: int = 6
    order_type: OrderType = OrderType.LIMIT_GTC
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    def validate(self) -> "GridConfig":
        if not self.symbol:
            raise ConfigError("symbol is required")
        if self.spacing <= 0:
            raise ConfigError(f"spacing must be > 0 (got {self.spacing})")
        if self.levels_per_side <= 0:
            raise ConfigError(f"levels_per_side must be > 0 (got {self.levels_per_side})")
        if self.order_size <= 0:
            raise ConfigError(f"order_size must be > 0 (got {self.order_size})")
        if self.max_position <= 0:
            raise ConfigError(f"max_position must be > 0 (got {self.max_position})")
        if self.spacing_mode is SpacingMode.PERCENT and self.spacing * self.levels_per_side >= 1.0:
            raise ConfigError("percent grid would place its lowest level at or below zero")
        if self.center_source is CenterSource.FIXED:
            if self.center_price is None or self.center_price <= 0:
                raise ConfigError("fixed center requires a positive center_price")
            if (
                self.spacing_mode is SpacingMode.ABSOLUTE
                and self.spacing * self.levels_per_side >= self.center_price
            ):
                raise ConfigError("absolute grid would place its lowest level at or below zero")
        if self.reprice_threshold < 0:
            raise ConfigError("reprice_threshold must be >= 0")
        if self.recenter_threshold is not None and self.recenter_threshold <= 0:
            raise ConfigError("recenter_threshold must be > 0")
        if self.max_drawdown_pct < 0 or self.max_drawdown_pct >= 1:
            raise ConfigError("max_drawdown_pct must be in [0, 1)")
        if self.max_drawdown_pct > 0 and self.allocated_capital <= 0:
            raise ConfigError("drawdown halt requires allocated_capital > 0")
        if self.max_margin_utilization < 0 or self.max_margin_utilization > 1:
            raise ConfigError("max_margin_utilization must be in [0, 1]")
        if self.price_decimals < 0:
            raise ConfigError("price_decimals must be >= 0")
        if self.dynamic is not None:
            dyn = self.dynamic
            if dyn.lookback < 2:
                raise ConfigError("dynamic.lookback must be >= 2")
            if dyn.multiplier <= 0:
                raise ConfigError("dynamic.multiplier must be > 0")
            if dyn.rebalance_threshold <= 0:
                raise ConfigError("dynamic.rebalance_threshold must be > 0")
            if dyn.min_spacing < 0 or dyn.max_spacing < 0:
                raise ConfigError("dynamic spacing bounds must be >= 0")
            if dyn.max_spacing and dyn.min_spacing > dyn.max_spacing:
                raise ConfigError("dynamic.min_spacing must be <= dynamic.max_spacing")
        return self

    def half_width(self, center: float) -> float:
        """Distance from center to the outermost level, relative to center."""
        if self.spacing_mode is SpacingMode.PERCENT:
            return self.spacing * self.levels_per_side
        return self.spacing * self.levels_per_side / max(center, 1e-12)

    def effective_recenter_threshold(self, center: float) -> float:
        if self.recenter_threshold is not None:
            return self.recenter_threshold
        return self.half_width(center)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["center_source"] = self.center_source.value
        data["spacing_mode"] = self.spacing_mode.value
        data["order_type"] = self.order_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GridConfig":
        raw = dict(data)
        dyn = raw.pop("dynamic", None)
        try:
            return cls(
                symbol=str(raw["symbol"]),
                spacing=float(raw["spacing"]),
                levels_per_side=int(raw["levels_per_side"]),
                order_size=float(raw["order_size"]),
                max_position=float(raw["max_position"]),
                center_source=CenterSource(raw.get("center_source", CenterSource.MID.value)),
                center_price=float(raw["center_price"]) if raw.get("center_price") is not None else None,
                spacing_mode=SpacingMode(raw.get("spacing_mode", SpacingMode.PERCENT.value)),
                dynamic=DynamicSpacing(**dyn) if dyn else None,
                reprice_threshold=float(raw.get("reprice_threshold", 0.0005)),
                recenter_threshold=(
                    float(raw["recenter_threshold"]) if raw.get("recenter_threshold") is not None else None
                ),
                allocated_capital=float(raw.get("allocated_capital", 0.0)),
                max_drawdown_pct=float(raw.get("max_drawdown_pct", 0.0)),
                max_margin_utilization=float(raw.get("max_margin_utilization", 0.0)),
                price_decimals=int(raw.get("price_decimals", 6)),
                order_type=OrderType.parse(raw.get("order_type", OrderType.LIMIT_GTC.value)),
                extra=dict(raw.get("extra") or {}),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigError(f"invalid grid config: {exc}") from exc
