"""Metrics and alerting."""

from hlgrid.monitoring.alerting import Alert, AlertConfig, AlertManager, AlertSeverity, AlertType
from hlgrid.monitoring.metrics import GridMetrics, start_metrics_server

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "GridMetrics",
    "start_metrics_server",
]
