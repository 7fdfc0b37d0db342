"""JSON-file deployment ledger.

The ledger is the only durable state of the controller. Every mutation
re-reads the file immediately before writing, changes only the field it
owns, and replaces the file atomically. There is no lock: two processes
updating the same record concurrently resolve as last-writer-wins on that
record, but neither can tear the file.
"""
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from pydantic import ValidationError

from src.rollout.core.errors import (
    DeploymentNotFoundError,
    InvalidStatusTransition,
    LedgerError,
    MalformedLedgerError,
)
from src.rollout.models.schemas import (
    Deployment,
    DeploymentKind,
    DeploymentStatus,
    LedgerDocument,
)

# Lookup order when the caller does not name a kind
SEARCH_ORDER = (DeploymentKind.CANARY, DeploymentKind.PRODUCTION)


class DeploymentLedger:
    """Reads and updates deployment records in a JSON file."""

    def __init__(self, path: str):
        self.path = Path(path)

    def list(self, kind: Optional[DeploymentKind] = None) -> List[Deployment]:
        document = self._read()
        kinds = [kind] if kind else list(SEARCH_ORDER)
        return [record for k in kinds for record in document.deployments[k]]

    def find_by_version(
        self,
        version: str,
        kind: Optional[DeploymentKind] = None,
    ) -> Optional[Deployment]:
        """Find a record by version.

        Args:
            version: Exact version string
            kind: Restrict the search to one group; canary is searched
                before production when omitted

        Returns:
            The matching Deployment or None
        """
        return self._locate(self._read(), version, kind)

    def get(self, version: str, kind: Optional[DeploymentKind] = None) -> Deployment:
        """Like find_by_version but raises DeploymentNotFoundError."""
        record = self.find_by_version(version, kind)
        if record is None:
            raise DeploymentNotFoundError(f"No deployment record for version {version}")
        return record

    def create(self, deployment: Deployment) -> Deployment:
        """Append a new record.

        Raises:
            LedgerError: If the version already exists in the same group
        """
        document = self._read()
        group = document.deployments[deployment.kind]
        if any(record.version == deployment.version for record in group):
            raise LedgerError(
                f"Deployment {deployment.version} already recorded as {deployment.kind.value}"
            )
        group.append(deployment)
        self._write(document)
        logger.info(f"📝 Recorded {deployment.kind.value} deployment {deployment.version}")
        return deployment

    def update_metrics(
        self,
        version: str,
        snapshot: Dict[str, Any],
        kind: Optional[DeploymentKind] = None,
    ) -> Deployment:
        """Overwrite the metrics snapshot of a record."""
        return self._mutate(version, kind, lambda record: setattr(record, "metrics", dict(snapshot)))

    def can_transition(
        self,
        version: str,
        status: DeploymentStatus,
        kind: Optional[DeploymentKind] = None,
    ) -> bool:
        return self.get(version, kind).can_transition(status)

    def set_status(
        self,
        version: str,
        status: DeploymentStatus,
        kind: Optional[DeploymentKind] = None,
    ) -> Deployment:
        """Move a record along pending -> monitoring -> success|rolled_back.

        Writing the current status again is a no-op.

        Raises:
            InvalidStatusTransition: For any other transition
            DeploymentNotFoundError: If the version is unknown
        """
        def apply(record: Deployment) -> None:
            if not record.can_transition(status):
                raise InvalidStatusTransition(version, record.status.value, status.value)
            if record.status != status:
                logger.info(f"Deployment {version}: {record.status.value} -> {status.value}")
            record.status = status

        return self._mutate(version, kind, apply)

    def _mutate(
        self,
        version: str,
        kind: Optional[DeploymentKind],
        change: Callable[[Deployment], None],
    ) -> Deployment:
        document = self._read()
        record = self._locate(document, version, kind)
        if record is None:
            raise DeploymentNotFoundError(f"No deployment record for version {version}")
        change(record)
        self._write(document)
        return record

    @staticmethod
    def _locate(
        document: LedgerDocument,
        version: str,
        kind: Optional[DeploymentKind],
    ) -> Optional[Deployment]:
        kinds = [kind] if kind else SEARCH_ORDER
        for k in kinds:
            for record in document.deployments[k]:
                if record.version == version:
                    return record
        return None

    def _read(self) -> LedgerDocument:
        if not self.path.exists():
            return LedgerDocument()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise MalformedLedgerError(f"Ledger {self.path} is not valid JSON: {e}") from e
        except OSError as e:
            raise LedgerError(f"Cannot read ledger {self.path}: {e}") from e

        try:
            return LedgerDocument.model_validate(data)
        except ValidationError as e:
            raise MalformedLedgerError(f"Ledger {self.path} has an unexpected structure: {e}") from e

    def _write(self, document: LedgerDocument) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document.dump(), f, indent=2)
                f.write("\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise LedgerError(f"Cannot write ledger {self.path}: {e}") from e
