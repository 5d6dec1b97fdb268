"""
Tests for GridConfig validation and env-driven Settings.
"""

import pytest

from conftest import make_config
from hlgrid.config.grid_config import CenterSource, DynamicSpacing, GridConfig, SpacingMode
from hlgrid.config.settings import Settings
from hlgrid.core.errors import ConfigError
from hlgrid.core.models import OrderType


class TestGridConfig:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"symbol": ""},
            {"spacing": 0.0},
            {"levels_per_side": 0},
            {"order_size": -1.0},
            {"max_position": 0.0},
            {"spacing": 0.3, "levels_per_side": 4},
            {"center_source": CenterSource.FIXED},
            {
                "center_source": CenterSource.FIXED,
                "center_price": 10.0,
                "spacing_mode": SpacingMode.ABSOLUTE,
                "spacing": 5.0,
            },
            {"max_drawdown_pct": 0.1},
            {"max_margin_utilization": 1.5},
            {"dynamic": DynamicSpacing(lookback=1)},
            {"dynamic": DynamicSpacing(min_spacing=0.05, max_spacing=0.01)},
        ],
    )
    def test_invalid_configs_rejected(self, overrides):
        with pytest.raises(ConfigError):
            make_config(**overrides)

    def test_valid_fixed_center(self):
        cfg = make_config(center_source=CenterSource.FIXED, center_price=2000.0)
        assert cfg.center_price == 2000.0

    def test_dict_round_trip(self):
        cfg = make_config(
            dynamic=DynamicSpacing(lookback=10, multiplier=1.5),
            order_type=OrderType.LIMIT_ALO,
            recenter_threshold=0.05,
        )
        again = GridConfig.from_dict(cfg.to_dict())
        assert again == cfg
        assert again.dynamic.multiplier == 1.5
        assert again.order_type is OrderType.LIMIT_ALO

    def test_from_dict_reports_missing_fields(self):
        with pytest.raises(ConfigError):
            GridConfig.from_dict({"symbol": "ETH", "spacing": 0.01})

    def test_from_dict_rejects_unknown_enum(self):
        data = make_config().to_dict()
        data["spacing_mode"] = "logarithmic"
        with pytest.raises(ConfigError):
            GridConfig.from_dict(data)

    def test_recenter_threshold_defaults_to_half_width(self):
        cfg = make_config(levels_per_side=3)
        assert cfg.effective_recenter_threshold(100.0) == pytest.approx(0.03)
        abs_cfg = make_config(spacing=2.0, spacing_mode=SpacingMode.ABSOLUTE)
        assert abs_cfg.effective_recenter_threshold(100.0) == pytest.approx(0.04)


class TestSettings:
    def test_defaults(self, monkeypatch):
        for key in ("HL_COIN", "HL_GATEWAY_TIMEOUT_SEC", "HL_ALERT_WEBHOOK_TYPE", "HL_PRIVATE_KEY", "HL_AGENT_KEY"):
            monkeypatch.delenv(key, raising=False)
        cfg = Settings.load()
        assert cfg.coin == "BTC"
        assert cfg.gateway_timeout == 10.0
        assert cfg.place_max_attempts == 4

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("HL_COIN", "ETH")
        monkeypatch.setenv("HL_PLACE_MAX_ATTEMPTS", "2")
        monkeypatch.setenv("HL_DRAIN_TIMEOUT_SEC", "5")
        cfg = Settings.load()
        assert cfg.coin == "ETH"
        assert cfg.place_max_attempts == 2
        assert cfg.drain_timeout == 5.0

    def test_invalid_webhook_type(self, monkeypatch):
        monkeypatch.setenv("HL_ALERT_WEBHOOK_TYPE", "pager")
        with pytest.raises(ValueError):
            Settings.load()

    def test_dump_hides_secrets(self, monkeypatch):
        monkeypatch.setenv("HL_PRIVATE_KEY", "0x" + "11" * 32)
        assert Settings.load().dump()["private_key"] == "***"
