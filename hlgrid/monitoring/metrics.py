"""
Prometheus metrics for grid observability.

Organized into: execution, fills, strategy, risk, operational. Every series is
labelled by grid id so one process can serve many grids.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

GRID_STATE_CODES = {
    "running": 0,
    "paused": 1,
    "stopping": 2,
    "stopped": 3,
    "halted": 4,
}


class GridMetrics:
    """Metric families shared by all grids of one supervisor."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Execution Metrics ===
        self.order_events = Counter(
            'grid_order_events_total',
            'Order lifecycle events (submitted, acknowledged, failed, cancelled)',
            labelnames=['grid', 'event'],
            registry=reg
        )
        self.gateway_latency_sec = Histogram(
            'grid_gateway_latency_seconds',
            'Gateway call latency',
            labelnames=['op'],
            buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10],
            registry=reg
        )
        self.live_orders = Gauge(
            'grid_live_orders',
            'Live (pending or resting) orders',
            labelnames=['grid'],
            registry=reg
        )

        # === Fill Metrics ===
        self.fills_total = Counter(
            'grid_fills_total',
            'Fills applied',
            labelnames=['grid', 'side'],
            registry=reg
        )
        self.position = Gauge(
            'grid_position',
            'Net position (coins)',
            labelnames=['grid'],
            registry=reg
        )
        self.realized_pnl = Gauge(
            'grid_realized_pnl',
            'Realized PnL (quote)',
            labelnames=['grid'],
            registry=reg
        )
        self.unrealized_pnl = Gauge(
            'grid_unrealized_pnl',
            'Unrealized PnL at last mark (quote)',
            labelnames=['grid'],
            registry=reg
        )

        # === Strategy Metrics ===
        self.grid_center = Gauge(
            'grid_center',
            'Grid center price',
            labelnames=['grid'],
            registry=reg
        )
        self.grid_spacing = Gauge(
            'grid_spacing',
            'Active grid spacing (fraction or absolute, per grid mode)',
            labelnames=['grid'],
            registry=reg
        )
        self.rebalances = Counter(
            'grid_rebalances_total',
            'Full grid rebalances',
            labelnames=['grid', 'reason'],
            registry=reg
        )

        # === Risk Metrics ===
        self.levels_capped = Gauge(
            'grid_levels_capped',
            'Levels left empty by a risk limit',
            labelnames=['grid'],
            registry=reg
        )
        self.margin_utilization = Gauge(
            'grid_margin_utilization',
            'Account margin utilization (0..1)',
            labelnames=['grid'],
            registry=reg
        )
        self.drawdown = Gauge(
            'grid_drawdown',
            'Current loss against allocated capital (quote)',
            labelnames=['grid'],
            registry=reg
        )

        # === Operational Metrics ===
        self.grid_state = Gauge(
            'grid_state',
            'Grid state (0=running 1=paused 2=stopping 3=stopped 4=halted)',
            labelnames=['grid'],
            registry=reg
        )
        self.incidents = Counter(
            'grid_incidents_total',
            'Incidents reported to the supervisor',
            labelnames=['grid', 'kind'],
            registry=reg
        )
        self.feed_reconnects = Counter(
            'grid_feed_reconnects_total',
            'Price feed reconnects',
            labelnames=['grid'],
            registry=reg
        )
        self.state_save_duration_sec = Histogram(
            'grid_state_save_seconds',
            'Time to persist grid state',
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry

    # Call sites pass grid ids and plain values; label plumbing stays here.

    def order_event(self, grid_id: str, event: str) -> None:
        self.order_events.labels(grid=grid_id, event=event).inc()

    def gateway_latency(self, op: str, seconds: float) -> None:
        self.gateway_latency_sec.labels(op=op).observe(seconds)

    def fill_applied(self, grid_id: str, side: str) -> None:
        self.fills_total.labels(grid=grid_id, side=side).inc()

    def incident(self, grid_id: str, kind: str) -> None:
        self.incidents.labels(grid=grid_id, kind=kind).inc()

    def feed_reconnect(self, grid_id: str) -> None:
        self.feed_reconnects.labels(grid=grid_id).inc()

    def rebalance(self, grid_id: str, reason: str) -> None:
        self.rebalances.labels(grid=grid_id, reason=reason).inc()

    def set_grid_state(self, grid_id: str, state: str) -> None:
        self.grid_state.labels(grid=grid_id).set(GRID_STATE_CODES.get(state, -1))

    def set_book(self, grid_id: str, live_orders: int, capped: int) -> None:
        self.live_orders.labels(grid=grid_id).set(live_orders)
        self.levels_capped.labels(grid=grid_id).set(capped)

    def set_position(self, grid_id: str, size: float, realized: float, unrealized: float) -> None:
        self.position.labels(grid=grid_id).set(size)
        self.realized_pnl.labels(grid=grid_id).set(realized)
        self.unrealized_pnl.labels(grid=grid_id).set(unrealized)

    def set_grid(self, grid_id: str, center: float, spacing: float) -> None:
        self.grid_center.labels(grid=grid_id).set(center)
        self.grid_spacing.labels(grid=grid_id).set(spacing)

    def set_risk(self, grid_id: str, margin_utilization: Optional[float], drawdown: float) -> None:
        if margin_utilization is not None:
            self.margin_utilization.labels(grid=grid_id).set(margin_utilization)
        self.drawdown.labels(grid=grid_id).set(max(0.0, drawdown))


def start_metrics_server(metrics: GridMetrics, port: int, addr: str = "0.0.0.0") -> None:
    """Expose the registry on http://addr:port/metrics (background thread)."""
    start_http_server(port, addr=addr, registry=metrics.get_registry())
