"""Alert channels and dispatcher for settlement notifications."""
from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import aiohttp

from .logging_config import get_cycle_id

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertKind(str, Enum):
    """Alert types."""
    VERIFICATION_FAILURE = "verification_failure"
    DISCREPANCIES = "discrepancies"
    RECONCILIATION_SUMMARY = "reconciliation_summary"
    SETTLEMENT_ERROR = "settlement_error"


@dataclass
class Alert:
    """Individual alert instance."""
    id: str = field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:16]}")
    kind: AlertKind = AlertKind.SETTLEMENT_ERROR
    severity: AlertSeverity = AlertSeverity.INFO
    message: str = ""
    cycle_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "cycle_id": self.cycle_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }


# Data keys surfaced as fields in chat webhooks
_SUMMARY_FIELDS = (
    "asset",
    "chain_key",
    "transaction_hash",
    "amount",
    "deposit_rate",
    "withdrawal_rate",
    "count",
)


class AlertChannel(ABC):
    """Abstract base class for alert channels."""

    @abstractmethod
    async def send(self, alert: Alert) -> bool:
        """
        Send an alert through this channel.

        Returns:
            True if sent successfully, False otherwise
        """
        pass


class LogChannel(AlertChannel):
    """Writes alerts to the application log."""

    _LEVELS = {
        AlertSeverity.INFO: logging.INFO,
        AlertSeverity.WARNING: logging.WARNING,
        AlertSeverity.CRITICAL: logging.CRITICAL,
    }

    def __init__(self, logger_name: str = "sardis_settlement.alerts") -> None:
        self._logger = logging.getLogger(logger_name)

    async def send(self, alert: Alert) -> bool:
        self._logger.log(
            self._LEVELS.get(alert.severity, logging.INFO),
            alert.message,
            extra={"alert_id": alert.id, "alert_kind": alert.kind.value, "alert_data": alert.data},
        )
        return True


class SlackChannel(AlertChannel):
    """Slack webhook channel for alerts."""

    def __init__(self, webhook_url: str) -> None:
        self.webhook_url = webhook_url

    async def send(self, alert: Alert) -> bool:
        """Send alert to Slack via webhook."""
        color_map = {
            AlertSeverity.INFO: "#36a64f",  # green
            AlertSeverity.WARNING: "#ff9900",  # amber
            AlertSeverity.CRITICAL: "#ff0000",  # red
        }
        attachment = {
            "fallback": alert.message,
            "color": color_map.get(alert.severity, "#808080"),
            "title": alert.kind.value.replace("_", " ").title(),
            "text": alert.message,
            "fields": [
                {"title": "Severity", "value": alert.severity.value.upper(), "short": True},
                {"title": "Alert ID", "value": alert.id, "short": True},
            ],
            "footer": "Sardis Settlement",
            "ts": int(alert.timestamp.timestamp()),
        }
        if alert.cycle_id:
            attachment["fields"].append({"title": "Cycle", "value": alert.cycle_id, "short": True})
        for key in _SUMMARY_FIELDS:
            if key in alert.data:
                attachment["fields"].append({
                    "title": key.replace("_", " ").title(),
                    "value": str(alert.data[key]),
                    "short": True,
                })

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json={"attachments": [attachment]},
                    timeout=aiohttp.ClientTimeout(total=10),
                ) as response:
                    if response.status == 200:
                        logger.info(f"SlackChannel: Sent alert {alert.id}")
                        return True
                    logger.error(
                        f"SlackChannel: Failed to send alert {alert.id}, status={response.status}"
                    )
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"SlackChannel send error: {e}")
            return False


class DiscordChannel(AlertChannel):
    """Discord webhook channel for alerts."""

    def __init__(self, webhook_url: str) -> None:
        self.webhook_url = webhook_url

    async def send(self, alert: Alert) -> bool:
        """Send alert to Discord via webhook."""
        color_map = {
            AlertSeverity.INFO: 3447003,  # blue
            AlertSeverity.WARNING: 16763904,  # amber
            AlertSeverity.CRITICAL: 15158332,  # red
        }
        embed = {
            "title": alert.kind.value.replace("_", " ").title(),
            "description": alert.message,
            "color": color_map.get(alert.severity, 8421504),
            "fields": [
                {"name": "Severity", "value": alert.severity.value.upper(), "inline": True},
                {"name": "Alert ID", "value": alert.id, "inline": True},
            ],
            "footer": {"text": "Sardis Settlement"},
            "timestamp": alert.timestamp.isoformat(),
        }
        if alert.cycle_id:
            embed["fields"].append({"name": "Cycle", "value": alert.cycle_id, "inline": True})
        for key in _SUMMARY_FIELDS:
            if key in alert.data:
                embed["fields"].append({
                    "name": key.replace("_", " ").title(),
                    "value": str(alert.data[key]),
                    "inline": True,
                })

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json={"embeds": [embed]},
                    timeout=aiohttp.ClientTimeout(total=10),
                ) as response:
                    if response.status in (200, 204):
                        logger.info(f"DiscordChannel: Sent alert {alert.id}")
                        return True
                    logger.error(
                        f"DiscordChannel: Failed to send alert {alert.id}, status={response.status}"
                    )
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"DiscordChannel send error: {e}")
            return False


class AlertDispatcher:
    """Routes alerts to registered channels, optionally filtered by severity."""

    def __init__(self) -> None:
        self.channels: dict[str, AlertChannel] = {}
        self._enabled: dict[str, bool] = {}
        self._severity_channel_map: dict[AlertSeverity, list[str]] = {}

    def register_channel(self, name: str, channel: AlertChannel, enabled: bool = True) -> None:
        self.channels[name] = channel
        self._enabled[name] = enabled
        logger.info(f"AlertDispatcher: Registered channel '{name}'")

    def set_channel_enabled(self, name: str, enabled: bool) -> None:
        if name in self._enabled:
            self._enabled[name] = enabled

    def set_severity_channel_map(self, severity_map: dict[str, list[str]]) -> None:
        """Set default channels per alert severity."""
        parsed: dict[AlertSeverity, list[str]] = {}
        for severity_raw, channels in severity_map.items():
            try:
                severity = AlertSeverity(str(severity_raw).strip().lower())
            except ValueError:
                logger.warning("AlertDispatcher: unknown severity key '%s' ignored", severity_raw)
                continue
            parsed[severity] = [str(c).strip() for c in channels if str(c).strip()]
        self._severity_channel_map = parsed

    def _resolve_target_channels(self, alert: Alert, channels: Optional[list[str]]) -> list[str]:
        if channels:
            return channels
        severity_channels = self._severity_channel_map.get(alert.severity)
        if severity_channels:
            return severity_channels
        return list(self.channels.keys())

    async def dispatch(self, alert: Alert, channels: Optional[list[str]] = None) -> dict[str, bool]:
        """
        Dispatch an alert to channels concurrently.

        Returns:
            Dictionary mapping channel names to send success status
        """
        targets = [
            name for name in self._resolve_target_channels(alert, channels)
            if name in self.channels and self._enabled.get(name, False)
        ]
        if not targets:
            return {}

        outcomes = await asyncio.gather(
            *(self._send_with_name(name, self.channels[name], alert) for name in targets),
        )
        return dict(zip(targets, outcomes))

    async def _send_with_name(self, channel_name: str, channel: AlertChannel, alert: Alert) -> bool:
        try:
            return await channel.send(alert)
        except Exception as e:
            logger.error(f"Error sending to channel '{channel_name}': {e}")
            return False

    async def emit(
        self,
        message: str,
        severity: str | AlertSeverity,
        kind: AlertKind = AlertKind.SETTLEMENT_ERROR,
        data: Optional[dict[str, Any]] = None,
    ) -> dict[str, bool]:
        """Build an Alert tagged with the current cycle and dispatch it."""
        alert = Alert(
            kind=kind,
            severity=AlertSeverity(severity),
            message=message,
            cycle_id=get_cycle_id(),
            data=data or {},
        )
        return await self.dispatch(alert)


def build_dispatcher(
    slack_webhook_url: str = "",
    discord_webhook_url: str = "",
) -> AlertDispatcher:
    """Dispatcher with the log channel plus any configured webhooks."""
    dispatcher = AlertDispatcher()
    dispatcher.register_channel("log", LogChannel())
    if slack_webhook_url:
        dispatcher.register_channel("slack", SlackChannel(slack_webhook_url))
    if discord_webhook_url:
        dispatcher.register_channel("discord", DiscordChannel(discord_webhook_url))
    return dispatcher
