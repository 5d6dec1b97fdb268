"""
Webhook alerting for grid incidents.

- Send alerts to webhooks (Slack, Discord, generic HTTP)
- Rate limiting per alert type and grid to prevent alert storms
- Alert batching for related events
- Async non-blocking delivery over httpx
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger("gridbot")


class AlertSeverity(Enum):
    """Alert severity levels."""
    CRITICAL = auto()  # Immediate attention required
    WARNING = auto()   # Potential issue
    INFO = auto()      # Informational


class AlertType(Enum):
    GRID_HALTED = auto()
    SESSION_EXPIRED = auto()
    PLACEMENT_FAILED = auto()
    CANCEL_FAILED = auto()
    FEED_DATA_ERROR = auto()
    DATA_INCONSISTENCY = auto()
    GRID_STARTED = auto()
    GRID_STOPPED = auto()
    CUSTOM = auto()


@dataclass
class Alert:
    """An alert to be sent."""
    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    details: Dict[str, Any] = field(default_factory=dict)
    grid_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.alert_type.name,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "timestamp_iso": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.timestamp_ms / 1000)),
            "details": self.details,
            "grid_id": self.grid_id,
        }


@dataclass
class AlertConfig:
    webhook_url: Optional[str] = None
    webhook_type: str = "generic"  # generic, slack, discord
    min_severity: AlertSeverity = AlertSeverity.WARNING
    rate_limit_seconds: int = 60  # Min seconds between same alert type per grid
    batch_window_ms: int = 5000
    enabled: bool = True
    include_details: bool = True
    bot_name: str = "hlgrid"
    timeout_sec: float = 10.0

    @classmethod
    def from_settings(cls, settings: Any) -> "AlertConfig":
        return cls(
            webhook_url=settings.alert_webhook_url,
            webhook_type=settings.alert_webhook_type,
            enabled=settings.alert_enabled,
        )


class WebhookFormatter:
    """Formats alerts for different webhook types."""

    @staticmethod
    def format_generic(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        return alert.to_dict()

    @staticmethod
    def format_slack(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: "#FF0000",
            AlertSeverity.WARNING: "#FFA500",
            AlertSeverity.INFO: "#0000FF",
        }.get(alert.severity, "#808080")

        fields = []
        if alert.grid_id:
            fields.append({"title": "Grid", "value": alert.grid_id, "short": True})
        fields.append({"title": "Type", "value": alert.alert_type.name, "short": True})
        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:5]:
                fields.append({"title": key, "value": str(value), "short": True})

        return {
            "username": config.bot_name,
            "attachments": [{
                "color": color,
                "title": alert.title,
                "text": alert.message,
                "fields": fields,
                "footer": f"{config.bot_name} | {alert.severity.name}",
                "ts": alert.timestamp_ms // 1000,
            }]
        }

    @staticmethod
    def format_discord(alert: Alert, config: AlertConfig) -> Dict[str, Any]:
        color = {
            AlertSeverity.CRITICAL: 0xFF0000,
            AlertSeverity.WARNING: 0xFFA500,
            AlertSeverity.INFO: 0x0000FF,
        }.get(alert.severity, 0x808080)

        fields = []
        if alert.grid_id:
            fields.append({"name": "Grid", "value": alert.grid_id, "inline": True})
        fields.append({"name": "Type", "value": alert.alert_type.name, "inline": True})
        if config.include_details and alert.details:
            for key, value in list(alert.details.items())[:5]:
                fields.append({"name": key, "value": str(value), "inline": True})

        return {
            "username": config.bot_name,
            "embeds": [{
                "title": alert.title,
                "description": alert.message,
                "color": color,
                "fields": fields,
                "footer": {"text": f"{config.bot_name} | {alert.severity.name}"},
                "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(alert.timestamp_ms / 1000)),
            }]
        }


class AlertManager:
    """
    Alert delivery with rate limiting and batching.

    send_alert only queues; delivery happens in a background task after the
    batch window so callers on the trading path never wait on a webhook.
    """

    def __init__(self, config: Optional[AlertConfig] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config or AlertConfig()
        self._last_alert_times: Dict[Tuple[AlertType, Optional[str]], int] = {}
        self._pending_alerts: List[Alert] = []
        self._batch_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._client = client
        self._owns_client = client is None
        self.sent = 0
        self.failed = 0

    async def send_alert(self, alert: Alert) -> bool:
        """Queue an alert. False when disabled, below threshold or rate limited."""
        if not self.config.enabled:
            return False
        if not self.config.webhook_url:
            logger.debug("alert_no_webhook title=%s", alert.title)
            return False
        if alert.severity.value > self.config.min_severity.value:
            return False

        now_ms = int(time.time() * 1000)
        key = (alert.alert_type, alert.grid_id)
        last_time = self._last_alert_times.get(key, 0)
        if now_ms - last_time < self.config.rate_limit_seconds * 1000:
            logger.debug("alert_rate_limited type=%s grid=%s", alert.alert_type.name, alert.grid_id)
            return False

        async with self._lock:
            self._pending_alerts.append(alert)
            self._last_alert_times[key] = now_ms
            if self._batch_task is None or self._batch_task.done():
                self._batch_task = asyncio.create_task(self._batch_deliver())
        return True

    async def _batch_deliver(self) -> None:
        await asyncio.sleep(self.config.batch_window_ms / 1000)
        await self.flush()

    async def flush(self) -> bool:
        """Deliver everything queued now."""
        async with self._lock:
            alerts = self._pending_alerts.copy()
            self._pending_alerts.clear()
        if not alerts:
            return True
        if len(alerts) == 1:
            return await self._http_post(self._format_alert(alerts[0]))
        return await self._http_post(self._format_batch(alerts))

    def _format_batch(self, alerts: List[Alert]) -> Dict[str, Any]:
        if self.config.webhook_type == "slack":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["attachments"].extend(self._format_alert(alert)["attachments"])
            return payload
        if self.config.webhook_type == "discord":
            payload = self._format_alert(alerts[0])
            for alert in alerts[1:]:
                payload["embeds"].extend(self._format_alert(alert)["embeds"])
            return payload
        return {"alerts": [alert.to_dict() for alert in alerts]}

    def _format_alert(self, alert: Alert) -> Dict[str, Any]:
        formatters = {
            "generic": WebhookFormatter.format_generic,
            "slack": WebhookFormatter.format_slack,
            "discord": WebhookFormatter.format_discord,
        }
        formatter = formatters.get(self.config.webhook_type, WebhookFormatter.format_generic)
        return formatter(alert, self.config)

    async def _http_post(self, payload: Dict[str, Any], retries: int = 2) -> bool:
        if not self.config.webhook_url:
            return False
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_sec)
        for attempt in range(retries + 1):
            try:
                resp = await self._client.post(self.config.webhook_url, json=payload)
                if resp.status_code < 300:
                    self.sent += 1
                    return True
                logger.warning("alert_delivery_failed status=%s", resp.status_code)
            except httpx.HTTPError as exc:
                logger.warning("alert_delivery_error attempt=%s error=%s", attempt + 1, exc)
            if attempt < retries:
                await asyncio.sleep(1 * (attempt + 1))
        self.failed += 1
        return False

    async def close(self) -> None:
        """Deliver pending alerts and release the HTTP client."""
        if self._batch_task is not None and not self._batch_task.done():
            self._batch_task.cancel()
            try:
                await self._batch_task
            except asyncio.CancelledError:
                pass
        await self.flush()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
