"""Notification sinks for deployment events."""

from .slack import (
    NotificationSink,
    SlackNotifier,
    LogNotifier,
    Severity,
    create_notifier,
)

__all__ = [
    "NotificationSink",
    "SlackNotifier",
    "LogNotifier",
    "Severity",
    "create_notifier",
]
