"""Append-only registry of captured live versions.

Each capture is one file ``backup_<YYYYmmdd_HHMMSS>.version`` holding the
opaque hosting version id. Files are created exclusively and never
rewritten; ordering follows the timestamp in the name.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from src.rollout.core.errors import HostingError
from src.rollout.hosting.base import HostingProvider

BACKUP_FILE = re.compile(r"^backup_(\d{8}_\d{6})(?:_(\d+))?\.version$")
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


@dataclass
class Backup:
    """A captured live version."""
    name: str
    version_id: str
    captured_at: datetime
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "versionId": self.version_id,
            "capturedAt": self.captured_at.isoformat(),
        }


class BackupRegistry:
    """Stores backups as files in one directory."""

    def __init__(self, directory: str, clock: Optional[Callable[[], datetime]] = None):
        self.directory = Path(directory)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def list(self) -> List[Backup]:
        """All backups, oldest first."""
        if not self.directory.is_dir():
            return []

        backups = []
        for path in self.directory.iterdir():
            match = BACKUP_FILE.match(path.name)
            if not match:
                continue
            version_id = path.read_text(encoding="utf-8").strip()
            if not version_id:
                logger.warning(f"Ignoring empty backup file {path.name}")
                continue
            captured_at = datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
            backups.append(Backup(
                name=path.stem,
                version_id=version_id,
                captured_at=captured_at,
                sequence=int(match.group(2) or 0),
            ))
        return sorted(backups, key=lambda b: (b.captured_at, b.sequence))

    def latest(self) -> Optional[Backup]:
        backups = self.list()
        return backups[-1] if backups else None

    def get(self, name: str) -> Optional[Backup]:
        for backup in self.list():
            if backup.name == name:
                return backup
        return None

    def next_name(self) -> str:
        """Name for a capture taken now; suffixed when the second is taken."""
        base = f"backup_{self._clock().strftime(TIMESTAMP_FORMAT)}"
        name, sequence = base, 0
        while (self.directory / f"{name}.version").exists():
            sequence += 1
            name = f"{base}_{sequence}"
        return name

    def record(self, version_id: str, name: Optional[str] = None) -> Backup:
        """Write a backup file for an already-captured version.

        Raises:
            FileExistsError: If a backup with the same name exists
        """
        if not version_id:
            raise ValueError("Backup version id cannot be empty")
        name = name or self.next_name()
        match = BACKUP_FILE.match(f"{name}.version")
        if not match:
            raise ValueError(f"Invalid backup name: {name}")

        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self.directory / f"{name}.version", "x", encoding="utf-8") as f:
            f.write(version_id)

        backup = Backup(
            name=name,
            version_id=version_id,
            captured_at=datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc),
            sequence=int(match.group(2) or 0),
        )
        logger.info(f"💾 Backup {name} -> {version_id}")
        return backup

    def capture(self, hosting: HostingProvider) -> Backup:
        """Clone the current live version to a backup channel and record it.

        Raises:
            HostingError: If the live version cannot be resolved or cloned
        """
        version_id = hosting.current_live_version()
        name = self.next_name()
        hosting.clone_version_to_target(version_id, name, 100)
        try:
            return self.record(version_id, name)
        except OSError as e:
            raise HostingError(f"Backup channel {name} created but not recorded: {e}") from e
