"""Persisted records of the deployment ledger."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

# Semver with optional pre-release (1.2.0-canary.1) and build metadata
VERSION_PATTERN = r"^v?\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$"


class DeploymentKind(str, Enum):
    CANARY = "canary"
    PRODUCTION = "production"


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    MONITORING = "monitoring"
    SUCCESS = "success"
    ROLLED_BACK = "rolled_back"


ALLOWED_TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.MONITORING},
    DeploymentStatus.MONITORING: {DeploymentStatus.SUCCESS, DeploymentStatus.ROLLED_BACK},
    DeploymentStatus.SUCCESS: set(),
    DeploymentStatus.ROLLED_BACK: set(),
}


class Deployment(BaseModel):
    """One deployed version and the last metrics snapshot taken for it.

    ``kind`` is implied by the ledger group the record lives in and is not
    written back into the record itself. Unknown fields are preserved.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    version: str = Field(pattern=VERSION_PATTERN)
    kind: DeploymentKind = Field(default=DeploymentKind.PRODUCTION, exclude=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        validation_alias=AliasChoices("createdAt", "date", "created_at"),
        serialization_alias="createdAt",
    )
    status: DeploymentStatus = DeploymentStatus.PENDING
    metrics: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value):
        # Older records spell it "rolled back"
        if isinstance(value, str):
            return value.strip().lower().replace(" ", "_")
        return value

    @field_validator("created_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        # Release records carry a bare date ("2025-01-01")
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("metrics", mode="before")
    @classmethod
    def default_metrics(cls, value):
        return {} if value is None else value

    def can_transition(self, status: DeploymentStatus) -> bool:
        return status == self.status or status in ALLOWED_TRANSITIONS[self.status]


class LedgerDocument(BaseModel):
    """Top-level structure of the ledger file."""
    model_config = ConfigDict(extra="allow")

    deployments: Dict[DeploymentKind, List[Deployment]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def assign_kinds(self):
        for kind in DeploymentKind:
            self.deployments.setdefault(kind, [])
        for kind, records in self.deployments.items():
            for record in records:
                record.kind = kind
        return self

    def dump(self) -> Dict[str, Any]:
        """Serialize to the on-disk JSON structure."""
        data = self.model_dump(mode="json", by_alias=True)
        data["deployments"] = {
            kind.value: [record.model_dump(mode="json", by_alias=True) for record in self.deployments[kind]]
            for kind in DeploymentKind
        }
        return data
