"""Hosting provider adapters."""

from .base import (
    HostingProvider,
    HostingVersion,
    HostingChannel,
    LIVE_CHANNEL,
    CANARY_CHANNEL,
)

from .firebase import FirebaseHosting

__all__ = [
    # Interface
    "HostingProvider",
    "HostingVersion",
    "HostingChannel",
    "LIVE_CHANNEL",
    "CANARY_CHANNEL",
    # Adapters
    "FirebaseHosting",
]
