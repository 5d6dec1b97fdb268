"""
Entry point wiring all components: settings, logging, metrics, alerting, the
Hyperliquid SDK clients and the grid supervisor. Runs one grid for HL_COIN
(or restores a persisted one) until SIGINT/SIGTERM, then stops it gracefully.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Dict, Optional

import httpx
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info

from hlgrid.config.grid_config import CenterSource, GridConfig
from hlgrid.config.settings import Settings
from hlgrid.core.wallet import EnvWalletSessionProvider, WalletSession
from hlgrid.execution.lifecycle_manager import LifecycleSettings
from hlgrid.execution.order_gateway import HyperliquidOrderGateway
from hlgrid.infra.async_execution import AsyncExchange
from hlgrid.infra.logging_cfg import build_logger
from hlgrid.market_data.hyperliquid_feed import HyperliquidPriceSource
from hlgrid.market_data.info_client import AsyncInfo
from hlgrid.market_data.price_feed import PriceFeedAdapter
from hlgrid.monitoring.alerting import AlertConfig, AlertManager
from hlgrid.monitoring.metrics import GridMetrics, start_metrics_server
from hlgrid.orchestrator.grid_worker import WorkerSettings
from hlgrid.orchestrator.supervisor import GridSupervisor

log = build_logger("gridbot")


def grid_config_from_settings(cfg: Settings, sz_decimals: Optional[int] = None) -> GridConfig:
    fixed = cfg.grid_center_price > 0
    return GridConfig(
        symbol=cfg.coin,
        spacing=cfg.grid_spacing_pct,
        levels_per_side=cfg.grid_levels,
        order_size=cfg.grid_order_size,
        max_position=cfg.grid_max_position,
        center_source=CenterSource.FIXED if fixed else CenterSource.MID,
        center_price=cfg.grid_center_price if fixed else None,
        allocated_capital=cfg.grid_allocated_capital,
        max_drawdown_pct=cfg.grid_max_drawdown_pct,
        # Perp prices carry at most 6 - szDecimals decimals
        price_decimals=max(0, 6 - sz_decimals) if sz_decimals is not None else 6,
    ).validate()


def worker_settings_from(cfg: Settings) -> WorkerSettings:
    return WorkerSettings(
        drain_timeout=cfg.drain_timeout,
        lifecycle=LifecycleSettings(
            gateway_timeout=cfg.gateway_timeout,
            place_max_attempts=cfg.place_max_attempts,
            cancel_max_attempts=cfg.cancel_max_attempts,
            retry_base_sec=cfg.retry_base_sec,
            retry_max_sec=cfg.retry_max_sec,
        ),
    )


async def _load_sz_decimals(info: Info, dex: str) -> Dict[str, int]:
    meta = await asyncio.to_thread(lambda: info.meta(dex=dex) if dex else info.meta())
    return {u["name"]: int(u["szDecimals"]) for u in (meta or {}).get("universe", [])}


async def main(restore_grid_id: Optional[str] = None) -> None:
    cfg = Settings.load()
    build_logger("gridbot", level=cfg.log_level, file_path=cfg.log_file)

    alerts = AlertManager(AlertConfig.from_settings(cfg))
    metrics = GridMetrics()
    start_metrics_server(metrics, cfg.metrics_port)

    provider = EnvWalletSessionProvider(cfg, session_ttl_sec=cfg.session_ttl_sec)
    session = provider.get_active_session(cfg.resolve_account())

    info = Info(cfg.base_url, skip_ws=False, perp_dexs=[cfg.dex])
    # One shared HTTP/2 client for every Info endpoint
    shared_info_client = httpx.AsyncClient(base_url=cfg.base_url.rstrip("/"), http2=True, timeout=cfg.http_timeout)
    async_info = AsyncInfo(cfg.base_url, timeout=cfg.http_timeout, client=shared_info_client)
    base_exchange = Exchange(session.wallet, cfg.base_url, account_address=session.account_id, perp_dexs=[cfg.dex])
    async_exchange = AsyncExchange(base_exchange, timeout=cfg.http_timeout)
    sz_decimals = await _load_sz_decimals(info, cfg.dex)
    source = HyperliquidPriceSource(info, async_info, dex=cfg.dex, stale_after=cfg.ws_stale_after)

    def gateway_factory(sess: WalletSession) -> HyperliquidOrderGateway:
        return HyperliquidOrderGateway(sess, async_exchange, async_info, info=info, sz_decimals=sz_decimals, dex=cfg.dex)

    def feed_factory(symbol: str, on_reconnect=None) -> PriceFeedAdapter:
        return PriceFeedAdapter(
            source,
            symbol,
            backoff_base=cfg.feed_backoff_base,
            backoff_max=cfg.feed_backoff_max,
            on_reconnect=on_reconnect,
        )

    supervisor = GridSupervisor(
        gateway_factory,
        feed_factory,
        session_provider=provider,
        state_dir=cfg.state_dir,
        alerts=alerts,
        metrics=metrics,
        worker_settings=worker_settings_from(cfg),
    )

    if restore_grid_id:
        grid_id = await supervisor.restore_grid(restore_grid_id, session)
    else:
        grid_cfg = grid_config_from_settings(cfg, sz_decimals.get(cfg.coin))
        grid_id = await supervisor.start(grid_cfg, session, user_id=session.account_id)
    log.info(json.dumps({"event": "startup", "grid_id": grid_id, "coin": cfg.coin}))

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    def request_stop() -> None:
        stop_requested.set()

    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop)
        except NotImplementedError:
            pass

    try:
        waiter = asyncio.create_task(stop_requested.wait())
        closed = asyncio.create_task(supervisor.wait_closed(grid_id))
        await asyncio.wait({waiter, closed}, return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()
        closed.cancel()
        log.info("Shutdown signal received, stopping grids...")
    finally:
        await supervisor.shutdown()
        await async_exchange.close()
        await async_info.close()
        await shared_info_client.aclose()
        try:
            info.disconnect_websocket()
        except Exception as exc:
            log.warning("ws_disconnect_error: %s", exc)
        log.info("Shutdown complete")


def run() -> None:
    parser = argparse.ArgumentParser(description="Hyperliquid grid engine")
    parser.add_argument("--restore", metavar="GRID_ID", help="restore a persisted grid instead of starting a new one")
    args = parser.parse_args()
    try:
        asyncio.run(main(restore_grid_id=args.restore))
    except KeyboardInterrupt:
        print("\nGrid engine stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
