"""Firebase Hosting adapter driven through the ``firebase`` CLI."""
import json
import subprocess
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from src.rollout.core.errors import HostingError
from src.rollout.hosting.base import HostingChannel, HostingProvider, HostingVersion


def _short_name(resource: Optional[str]) -> Optional[str]:
    """``sites/x/versions/abc`` -> ``abc``."""
    if not resource:
        return None
    return resource.rstrip("/").split("/")[-1]


class FirebaseHosting(HostingProvider):
    """Shells out to the Firebase CLI.

    Every command runs with ``--json`` where the CLI supports it; a
    non-zero exit status or unparsable output raises HostingError.
    """

    def __init__(
        self,
        project: Optional[str] = None,
        site: Optional[str] = None,
        binary: str = "firebase",
        timeout: float = 120.0,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        """Initialize adapter.

        Args:
            project: Firebase project id passed as ``--project``
            site: Hosting site id; clones are addressed as ``site@version``
                and ``site:channel`` when set
            binary: CLI executable
            timeout: Seconds before a CLI call is abandoned
            runner: subprocess.run compatible callable
        """
        self.project = project
        self.site = site
        self.binary = binary
        self.timeout = timeout
        self._runner = runner

    def _run(self, args: List[str]) -> str:
        cmd = [self.binary, *args]
        if self.project:
            cmd += ["--project", self.project]
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = self._runner(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise HostingError(f"Failed to run {' '.join(cmd)}: {e}") from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise HostingError(f"{' '.join(cmd)} exited with {result.returncode}: {detail}")
        return result.stdout

    def _run_json(self, args: List[str]) -> Any:
        output = self._run([*args, "--json"])
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise HostingError(f"Unparsable output from firebase {args[0]}: {e}") from e
        if isinstance(data, dict) and data.get("status") == "error":
            raise HostingError(f"firebase {args[0]} failed: {data.get('error')}")
        return data.get("result", data) if isinstance(data, dict) else data

    def list_versions(self) -> List[HostingVersion]:
        result = self._run_json(["hosting:versions:list"])
        items = result.get("versions", []) if isinstance(result, dict) else result

        versions = []
        for item in items or []:
            version_id = item.get("versionId") or _short_name(item.get("name"))
            if not version_id:
                continue
            versions.append(HostingVersion(
                version_id=version_id,
                status=item.get("status", ""),
                labels=item.get("labels") or {},
                create_time=item.get("createTime"),
            ))
        return versions

    def list_channels(self) -> List[HostingChannel]:
        result = self._run_json(["hosting:channel:list"])
        items = result.get("channels", []) if isinstance(result, dict) else result

        channels = []
        for item in items or []:
            release: Dict[str, Any] = item.get("release") or {}
            version = release.get("version") or {}
            channels.append(HostingChannel(
                name=_short_name(item.get("name")) or "",
                version_id=_short_name(version.get("name")),
                url=item.get("url"),
            ))
        return channels

    def clone_version_to_target(self, version_id: str, target: str, traffic_percent: int) -> None:
        if not 0 <= traffic_percent <= 100:
            raise HostingError(f"Traffic percent must be within 0-100, got {traffic_percent}")
        if traffic_percent != 100:
            raise HostingError("Firebase Hosting channels serve a single version; only 100% is supported")

        source = f"{self.site}@{version_id}" if self.site else version_id
        destination = f"{self.site}:{target}" if self.site else target

        logger.info(f"Cloning {source} -> {destination} ({traffic_percent}%)")
        self._run(["hosting:clone", source, destination])
