"""JSON audit reports written after each evaluation."""
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from loguru import logger


class ReportWriter:
    """Writes ``<prefix>-<timestamp>.json`` files into a directory."""

    def __init__(self, directory: Optional[str], clock: Optional[Callable[[], datetime]] = None):
        self.directory = Path(directory) if directory else None
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def write(self, prefix: str, payload: Dict[str, Any]) -> Optional[Path]:
        """Write one report.

        Returns:
            Path of the report, or None when reports are disabled or the
            write failed
        """
        if self.directory is None:
            return None

        stamp = self._clock().strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        path = self.directory / f"{prefix}-{stamp}.json"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, default=str)
                f.write("\n")
        except OSError as e:
            logger.error(f"Failed to write report {path}: {e}")
            return None

        logger.debug(f"Report saved to {path}")
        return path
