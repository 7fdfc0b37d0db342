"""Exception taxonomy for the rollout controller.

Transient signal loss (an unreachable endpoint, a metric with no data) is
never raised: it surfaces as a failed probe or a ``None`` metric value.
Everything below is either an action failure or a configuration/logic
error, and the CLI maps each family to its own exit code.
"""


class RolloutError(Exception):
    """Base class for all controller errors."""


class ConfigurationError(RolloutError):
    """Invalid configuration or operator input. Raised before any mutation."""


class RollbackTargetMissing(ConfigurationError):
    """No explicit rollback target was given and no backup exists."""


class LedgerError(RolloutError):
    """Deployment ledger could not be read or updated."""


class MalformedLedgerError(LedgerError):
    """Ledger file exists but does not match the expected structure."""


class DeploymentNotFoundError(LedgerError):
    """No deployment record matches the requested version."""


class InvalidStatusTransition(LedgerError):
    """Requested status change violates the deployment state machine."""

    def __init__(self, version: str, current: str, requested: str):
        self.version = version
        self.current = current
        self.requested = requested
        super().__init__(
            f"Deployment {version}: cannot move from '{current}' to '{requested}'"
        )


class HostingError(RolloutError):
    """Hosting provider rejected or failed an action."""
