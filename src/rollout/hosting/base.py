from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from src.rollout.core.errors import HostingError

LIVE_CHANNEL = "live"
CANARY_CHANNEL = "canary"


@dataclass
class HostingVersion:
    version_id: str
    status: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    create_time: Optional[str] = None


@dataclass
class HostingChannel:
    name: str
    version_id: Optional[str] = None
    url: Optional[str] = None


class HostingProvider(ABC):
    @abstractmethod
    def list_versions(self) -> List[HostingVersion]:
        """List deployed versions, newest first."""
        pass

    @abstractmethod
    def clone_version_to_target(self, version_id: str, target: str, traffic_percent: int) -> None:
        """Serve a version from a channel. Raises HostingError on failure."""
        pass

    @abstractmethod
    def list_channels(self) -> List[HostingChannel]:
        """List channels with the version each currently serves."""
        pass

    def current_live_version(self) -> str:
        """Version id behind the live channel (newest version as fallback)."""
        for channel in self.list_channels():
            if channel.name == LIVE_CHANNEL and channel.version_id:
                return channel.version_id
        versions = self.list_versions()
        if not versions:
            raise HostingError("Hosting provider reports no versions")
        return versions[0].version_id

    def canary_version(self) -> Optional[str]:
        """Version id currently deployed as canary, if any."""
        for version in self.list_versions():
            if version.labels.get("environment") == CANARY_CHANNEL:
                return version.version_id
        for channel in self.list_channels():
            if channel.name == CANARY_CHANNEL and channel.version_id:
                return channel.version_id
        return None
