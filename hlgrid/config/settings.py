"""
Environment-driven process configuration with validation.

Per-grid parameters live in GridConfig; Settings holds what is shared by every
grid in the process (endpoints, credentials, timeouts, retry policy, storage,
observability) plus the defaults used by the CLI entry point.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    base_url: str
    dex: str
    coin: str
    private_key: str | None
    agent_key: str | None
    user_address: str | None
    session_ttl_sec: float
    http_timeout: float
    # Order gateway retry policy
    gateway_timeout: float
    place_max_attempts: int
    cancel_max_attempts: int
    retry_base_sec: float
    retry_max_sec: float
    # Price feed
    ws_stale_after: float
    feed_backoff_base: float
    feed_backoff_max: float
    # Grid worker
    drain_timeout: float
    # Grid defaults for the CLI entry point
    grid_spacing_pct: float
    grid_levels: int
    grid_order_size: float
    grid_max_position: float
    grid_center_price: float
    grid_allocated_capital: float
    grid_max_drawdown_pct: float
    # Storage / observability
    state_dir: str
    metrics_port: int
    log_level: str
    log_file: str | None
    alert_webhook_url: str | None
    alert_webhook_type: str  # generic, slack, discord
    alert_enabled: bool

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging, secrets removed."""
        data = self.__dict__.copy()
        for key in ("private_key", "agent_key"):
            if data.get(key):
                data[key] = "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            base_url=os.getenv("HL_BASE_URL", "https://api.hyperliquid.xyz"),
            dex=os.getenv("HL_DEX", ""),
            coin=os.getenv("HL_COIN", "BTC"),
            private_key=os.getenv("HL_PRIVATE_KEY"),
            agent_key=os.getenv("HL_AGENT_KEY"),
            user_address=os.getenv("HL_USER_ADDRESS"),
            session_ttl_sec=_float_env("HL_SESSION_TTL_SEC", 0.0),
            http_timeout=_float_env("HL_HTTP_TIMEOUT", 5.0),
            gateway_timeout=_float_env("HL_GATEWAY_TIMEOUT_SEC", 10.0),
            place_max_attempts=_int_env("HL_PLACE_MAX_ATTEMPTS", 4),
            cancel_max_attempts=_int_env("HL_CANCEL_MAX_ATTEMPTS", 3),
            retry_base_sec=_float_env("HL_RETRY_BASE_SEC", 0.5),
            retry_max_sec=_float_env("HL_RETRY_MAX_SEC", 8.0),
            ws_stale_after=_float_env("HL_WS_STALE_AFTER_SEC", 20.0),
            feed_backoff_base=_float_env("HL_FEED_BACKOFF_BASE_SEC", 1.0),
            feed_backoff_max=_float_env("HL_FEED_BACKOFF_MAX_SEC", 60.0),
            drain_timeout=_float_env("HL_DRAIN_TIMEOUT_SEC", 30.0),
            grid_spacing_pct=_float_env("HL_GRID_SPACING_PCT", 0.01),
            grid_levels=_int_env("HL_NUM_GRIDS", 5),
            grid_order_size=_float_env("HL_ORDER_SIZE", 0.001),
            grid_max_position=_float_env("HL_MAX_POSITION_ABS", 0.01),
            grid_center_price=_float_env("HL_CENTER_PRICE", 0.0),
            grid_allocated_capital=_float_env("HL_ALLOCATED_CAPITAL_USD", 1000.0),
            grid_max_drawdown_pct=_float_env("HL_MAX_DRAWDOWN_PCT", 0.12),
            state_dir=os.getenv("HL_STATE_DIR", "state"),
            metrics_port=_int_env("HL_METRICS_PORT", 9095),
            log_level=os.getenv("HL_LOG_LEVEL", "INFO"),
            log_file=os.getenv("HL_LOG_FILE", "gridbot.log") or None,
            alert_webhook_url=os.getenv("HL_ALERT_WEBHOOK_URL"),
            alert_webhook_type=os.getenv("HL_ALERT_WEBHOOK_TYPE", "generic"),
            alert_enabled=env_bool("HL_ALERT_ENABLED", True),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def resolve_account(self) -> str:
        if self.user_address:
            return self.user_address
        if self.private_key:
            from eth_account import Account

            return Account.from_key(self.private_key).address
        raise RuntimeError("Missing HL_USER_ADDRESS or HL_PRIVATE_KEY")

    def resolve_signer(self):
        from eth_account import Account

        if self.private_key:
            return Account.from_key(self.private_key)
        if self.agent_key:
            return Account.from_key(self.agent_key)
        raise RuntimeError("Missing credentials: set HL_PRIVATE_KEY or HL_AGENT_KEY")

    def _validate(self) -> None:
        if self.http_timeout <= 0 or self.gateway_timeout <= 0:
            raise ValueError("HL_HTTP_TIMEOUT and HL_GATEWAY_TIMEOUT_SEC must be > 0")
        if self.place_max_attempts < 1 or self.cancel_max_attempts < 1:
            raise ValueError("Retry attempt counts must be >= 1")
        if self.retry_base_sec <= 0 or self.retry_max_sec < self.retry_base_sec:
            raise ValueError("HL_RETRY_BASE_SEC must be > 0 and <= HL_RETRY_MAX_SEC")
        if self.ws_stale_after <= 0:
            raise ValueError("HL_WS_STALE_AFTER_SEC must be > 0")
        if self.feed_backoff_base <= 0 or self.feed_backoff_max < self.feed_backoff_base:
            raise ValueError("Feed backoff must be > 0 and base <= max")
        if self.drain_timeout <= 0:
            raise ValueError("HL_DRAIN_TIMEOUT_SEC must be > 0")
        if self.alert_webhook_type not in {"generic", "slack", "discord"}:
            raise ValueError("HL_ALERT_WEBHOOK_TYPE must be generic, slack or discord")
        if self.grid_max_drawdown_pct > 0.25:
            logging.getLogger("gridbot").warning(
                f"WARNING: HL_MAX_DRAWDOWN_PCT is {self.grid_max_drawdown_pct:.1%}. "
                "Consider a tighter drawdown limit for capital preservation."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    logger = logging.getLogger("gridbot")
    payload = {
        "event": "config_loaded",
        "base_url": cfg.base_url,
        "coin": cfg.coin,
        "gateway_timeout": cfg.gateway_timeout,
        "place_max_attempts": cfg.place_max_attempts,
        "state_dir": cfg.state_dir,
    }
    logger.info(json.dumps(payload))
