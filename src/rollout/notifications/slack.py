"""Deployment notifications.

Notifications are fire-and-forget: a failed delivery is logged and the
controller carries on. Nothing in this module raises on delivery errors.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from loguru import logger


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


SLACK_COLORS = {
    Severity.INFO: "good",
    Severity.WARNING: "warning",
    Severity.CRITICAL: "danger",
}


class NotificationSink(ABC):
    """Destination for deployment events."""

    @abstractmethod
    async def send(
        self,
        message: str,
        severity: Severity = Severity.INFO,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Deliver a notification.

        Returns:
            True if delivered; False on failure (never raises)
        """
        pass


class LogNotifier(NotificationSink):
    """Writes notifications to the log only."""

    async def send(self, message, severity=Severity.INFO, fields=None) -> bool:
        details = ", ".join(f"{k}={v}" for k, v in (fields or {}).items())
        text = f"[notify:{severity.value}] {message}" + (f" ({details})" if details else "")
        if severity == Severity.CRITICAL:
            logger.error(text)
        elif severity == Severity.WARNING:
            logger.warning(text)
        else:
            logger.info(text)
        return True


class SlackNotifier(NotificationSink):
    """Posts attachments to a Slack incoming webhook."""

    def __init__(
        self,
        webhook_url: str,
        default_fields: Optional[Dict[str, Any]] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize Slack notifier.

        Args:
            webhook_url: Slack incoming webhook URL
            default_fields: Fields attached to every message (kind, version,
                metric source, monitoring period)
            timeout: Delivery timeout in seconds
            client: Pre-built client (tests inject a MockTransport)
        """
        self.webhook_url = webhook_url
        self.default_fields = dict(default_fields or {})
        self.timeout = timeout
        self.client = client

    def build_payload(
        self,
        message: str,
        severity: Severity,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        merged = {**self.default_fields, **(fields or {})}
        return {
            "attachments": [{
                "color": SLACK_COLORS[severity],
                "title": "Rollout Controller",
                "text": message,
                "fields": [
                    {"title": key, "value": str(value), "short": True}
                    for key, value in merged.items()
                ],
                "footer": "rollout-controller",
                "ts": int(datetime.now(timezone.utc).timestamp()),
            }]
        }

    async def send(self, message, severity=Severity.INFO, fields=None) -> bool:
        payload = self.build_payload(message, severity, fields)
        try:
            if self.client is not None:
                response = await self.client.post(self.webhook_url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Slack notification: {e}")
            return False

        logger.debug(f"Slack notification sent: {message}")
        return True


def create_notifier(
    webhook_url: Optional[str],
    default_fields: Optional[Dict[str, Any]] = None,
) -> NotificationSink:
    if not webhook_url:
        logger.warning("No Slack webhook configured, notifications go to the log only")
        return LogNotifier()
    return SlackNotifier(webhook_url, default_fields=default_fields)
