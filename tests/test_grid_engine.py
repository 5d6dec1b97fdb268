"""
Tests for GridStrategyEngine and VolatilityModel.
"""

import pytest

from conftest import make_config
from hlgrid.config.grid_config import DynamicSpacing, SpacingMode
from hlgrid.core.errors import FeedDataError
from hlgrid.core.models import Side
from hlgrid.strategy.grid_engine import GridStrategyEngine, grid_line_price
from hlgrid.strategy.volatility import VolatilityModel


class TestStaticLadder:
    def test_percent_ladder_is_symmetric(self):
        engine = GridStrategyEngine(make_config(levels_per_side=3))
        levels = engine.recompute_levels(100.0)

        assert [lvl.price for lvl in levels] == [97.0, 98.0, 99.0, 101.0, 102.0, 103.0]
        assert [lvl.index for lvl in levels] == [-3, -2, -1, 1, 2, 3]
        assert all(lvl.side is Side.BUY for lvl in levels[:3])
        assert all(lvl.side is Side.SELL for lvl in levels[3:])

    def test_absolute_ladder(self):
        cfg = make_config(spacing=2.5, spacing_mode=SpacingMode.ABSOLUTE)
        levels = GridStrategyEngine(cfg).recompute_levels(100.0)
        assert [lvl.price for lvl in levels] == [95.0, 97.5, 102.5, 105.0]

    def test_levels_at_or_below_zero_are_dropped(self):
        cfg = make_config(spacing=40.0, spacing_mode=SpacingMode.ABSOLUTE, levels_per_side=3)
        levels = GridStrategyEngine(cfg).recompute_levels(100.0)
        assert [lvl.index for lvl in levels] == [-2, -1, 1, 2, 3]
        assert min(lvl.price for lvl in levels) == 20.0

    @pytest.mark.parametrize("bad", [0.0, -5.0, float("nan")])
    def test_invalid_reference_price_raises(self, bad):
        engine = GridStrategyEngine(make_config())
        with pytest.raises(FeedDataError):
            engine.recompute_levels(bad)

    def test_static_plan_never_rebalances(self):
        engine = GridStrategyEngine(make_config())
        engine.plan(100.0)
        plan = engine.plan(150.0, volatility_hint=50.0)
        assert plan.full_rebalance is False
        assert plan.spacing == 0.01

    def test_line_price_center_line(self):
        assert grid_line_price(100.0, 0, 0.01, SpacingMode.PERCENT, 6) == 100.0
        engine = GridStrategyEngine(make_config())
        assert engine.line_price(100.0, -1) == 99.0


class TestDynamicSpacing:
    def _engine(self, **dyn):
        params = dict(lookback=3, multiplier=1.0, rebalance_threshold=0.25)
        params.update(dyn)
        return GridStrategyEngine(make_config(dynamic=DynamicSpacing(**params)))

    def test_spacing_follows_volatility(self):
        engine = self._engine()
        # ATR of 2.0 on a 100 reference is 2%
        assert engine.compute_spacing(100.0, volatility_hint=2.0) == pytest.approx(0.02)

    def test_missing_hint_falls_back_to_static(self):
        engine = self._engine()
        assert engine.compute_spacing(100.0, volatility_hint=None) == 0.01

    def test_bounds_are_applied(self):
        engine = self._engine(min_spacing=0.015, max_spacing=0.03)
        assert engine.compute_spacing(100.0, volatility_hint=0.5) == pytest.approx(0.015)
        assert engine.compute_spacing(100.0, volatility_hint=10.0) == pytest.approx(0.03)

    def test_large_spacing_jump_flags_full_rebalance(self):
        engine = self._engine()
        first = engine.plan(100.0, volatility_hint=1.0)
        assert first.full_rebalance is False

        small = engine.plan(100.0, volatility_hint=1.1)
        assert small.full_rebalance is False
        assert small.spacing == pytest.approx(0.01)

        jump = engine.plan(100.0, volatility_hint=2.0)
        assert jump.full_rebalance is True
        assert jump.reason == "spacing_shift"
        assert engine.active_spacing == pytest.approx(0.02)

    def test_creeping_volatility_is_measured_against_built_spacing(self):
        engine = self._engine(max_spacing=0.5)
        built = engine.plan(100.0, volatility_hint=1.0).spacing
        rebalances = 0
        hint = 1.0
        for _ in range(20):
            hint *= 1.1
            plan = engine.plan(100.0, volatility_hint=hint)
            if plan.full_rebalance:
                rebalances += 1
                built = plan.spacing
            else:
                # Below the threshold the ladder stays on the spacing it was built with
                assert plan.spacing == built
            target = engine.compute_spacing(100.0, volatility_hint=hint)
            assert abs(target - built) / built <= 0.25

        # 1.1 ** 20 is about 6.7x; each rebalance absorbs at most a 1.331x step
        assert rebalances >= 6
        assert engine.active_spacing == pytest.approx(built)

    def test_invalid_price_does_not_move_spacing(self):
        engine = self._engine()
        engine.plan(100.0, volatility_hint=1.0)
        with pytest.raises(FeedDataError):
            engine.plan(0.0, volatility_hint=3.0)
        assert engine.active_spacing == pytest.approx(0.01)


class TestVolatilityModel:
    def test_hint_only_when_window_full(self):
        model = VolatilityModel(lookback=2)
        model.step(100.0)
        model.step(101.0)
        assert model.hint() is None
        model.step(99.0)
        assert model.hint() == pytest.approx(1.5)

    def test_non_positive_price_ignored(self):
        model = VolatilityModel(lookback=2)
        model.step(100.0)
        model.step(-1.0)
        model.step(102.0)
        assert model.atr == pytest.approx(2.0)
