"""Registration of a new release in the ledger."""
from datetime import datetime, timezone
from typing import Optional

from loguru import logger
from pydantic import ValidationError

from src.rollout.core.errors import ConfigurationError
from src.rollout.deployment.ledger import DeploymentLedger
from src.rollout.models.schemas import Deployment, DeploymentKind, DeploymentStatus


def release_version(version: str, kind: DeploymentKind, canary_number: Optional[int] = None) -> str:
    """Ledger version string: canaries get a ``-canary.<n>`` suffix."""
    if kind == DeploymentKind.CANARY:
        number = 1 if canary_number is None else canary_number
        if number < 1:
            raise ConfigurationError("Canary number must be >= 1")
        return f"{version}-canary.{number}"
    return version


def prepare_release(
    ledger: DeploymentLedger,
    version: str,
    kind: DeploymentKind = DeploymentKind.PRODUCTION,
    canary_number: Optional[int] = None,
    created_at: Optional[datetime] = None,
) -> Deployment:
    """Create a pending ledger record for a release.

    Args:
        ledger: Deployment ledger
        version: Base semver version (``1.2.0``)
        kind: canary or production
        canary_number: Canary iteration, defaults to 1
        created_at: Creation time, defaults to now

    Returns:
        The created Deployment

    Raises:
        ConfigurationError: If the version is not valid semver
        LedgerError: If the version is already recorded
    """
    full_version = release_version(version, kind, canary_number)
    try:
        deployment = Deployment(
            version=full_version,
            kind=kind,
            created_at=created_at or datetime.now(timezone.utc),
            status=DeploymentStatus.PENDING,
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid release version {full_version!r}: {e}") from e

    ledger.create(deployment)
    logger.info(f"📦 Prepared {kind.value} release {full_version}")
    return deployment
