"""Rollback workflow.

Steps, in order:

1. Resolve the target: explicit ``rollback_to`` version, else the latest
   backup, else fail with RollbackTargetMissing.
2. Ask the operator unless running in auto mode. A stop request while
   waiting ends the workflow with no action.
3. Back up the current live version.
4. Clone the target to the live channel at 100%.
5. Mark the deployment ``rolled_back`` and notify.

A dry run performs steps 1-2 and logs what would happen. A failing hosting
action leaves the ledger untouched and is never retried.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger

from src.rollout.core.errors import HostingError, InvalidStatusTransition, RollbackTargetMissing
from src.rollout.deployment.backups import Backup, BackupRegistry
from src.rollout.deployment.confirmation import Confirm, auto_confirm, confirm_unless_stopped, prompt_confirm
from src.rollout.deployment.ledger import DeploymentLedger
from src.rollout.hosting.base import LIVE_CHANNEL, HostingProvider
from src.rollout.models.schemas import Deployment, DeploymentStatus
from src.rollout.monitoring.metrics import record_action
from src.rollout.monitoring.tracing import record_exception, set_span_attributes, tracer
from src.rollout.notifications.slack import NotificationSink, Severity


@dataclass
class RollbackOptions:
    """Operator choices for a rollback."""
    auto: bool = False
    dry_run: bool = False
    rollback_to: Optional[str] = None


class RollbackOutcome(Enum):
    EXECUTED = "executed"
    DECLINED = "declined"
    DRY_RUN = "dry_run"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass
class RollbackResult:
    outcome: RollbackOutcome
    target: Optional[str] = None
    backup: Optional[Backup] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "target": self.target,
            "backup": self.backup.to_dict() if self.backup else None,
            "error": self.error,
        }


class RollbackController:
    """Restores a known-good version on the live channel."""

    def __init__(
        self,
        hosting: HostingProvider,
        backups: BackupRegistry,
        ledger: DeploymentLedger,
        notifier: NotificationSink,
        options: Optional[RollbackOptions] = None,
        confirm: Optional[Confirm] = None,
    ):
        """Initialize rollback controller.

        Args:
            hosting: Hosting provider adapter
            backups: Registry holding captured live versions
            ledger: Deployment ledger
            notifier: Notification sink
            options: Auto/dry-run/explicit target choices
            confirm: Operator prompt; defaults to a terminal prompt
        """
        self.hosting = hosting
        self.backups = backups
        self.ledger = ledger
        self.notifier = notifier
        self.options = options or RollbackOptions()
        self.confirm = confirm or (auto_confirm if self.options.auto else prompt_confirm)
        self._stop = asyncio.Event()

    def stop(self) -> None:
        """Abandon a pending operator confirmation; nothing is changed."""
        self._stop.set()

    def resolve_target(self) -> str:
        """Explicit target first, then the latest backup.

        Raises:
            RollbackTargetMissing: If neither exists
        """
        if self.options.rollback_to:
            return self.options.rollback_to

        latest = self.backups.latest()
        if latest is None:
            raise RollbackTargetMissing(
                "No rollback target: pass --rollback-to or capture a backup first"
            )
        logger.info(f"Using latest backup {latest.name} ({latest.version_id})")
        return latest.version_id

    async def execute(self, deployment: Optional[Deployment] = None, reason: str = "") -> RollbackResult:
        """Run the rollback workflow.

        Args:
            deployment: Ledger record to mark rolled back (None for a manual
                rollback not tied to a record)
            reason: Human-readable trigger, included in notifications

        Returns:
            RollbackResult describing what happened

        Raises:
            RollbackTargetMissing: If no target can be resolved
            InvalidStatusTransition: If the record cannot be rolled back
        """
        version = deployment.version if deployment else None
        with tracer.start_as_current_span("rollback.execute") as span:
            set_span_attributes(span, version=version, dry_run=self.options.dry_run, reason=reason)

            try:
                target = self.resolve_target()
            except RollbackTargetMissing as e:
                logger.error(f"❌ {e}")
                record_action("rollback", "missing_target")
                record_exception(span, e)
                await self.notifier.send(
                    f"🚨 Rollback needed for {version or 'live'} but no target is available",
                    Severity.CRITICAL,
                    {"reason": reason or "manual"},
                )
                raise

            set_span_attributes(span, target=target)

            if deployment is not None and not self.ledger.can_transition(
                deployment.version, DeploymentStatus.ROLLED_BACK, deployment.kind
            ):
                current = self.ledger.get(deployment.version, deployment.kind).status.value
                if not self.options.dry_run:
                    raise InvalidStatusTransition(deployment.version, current, DeploymentStatus.ROLLED_BACK.value)
                logger.warning(f"[DRY RUN] {deployment.version} is '{current}'; a real rollback would be refused")

            logger.warning(f"🔄 Rollback of {version or 'live'} to {target} requested ({reason or 'manual'})")

            if not self.options.auto:
                answer = await confirm_unless_stopped(
                    self.confirm, f"Roll back {version or 'live'} to {target}?", self._stop
                )
                if answer is None:
                    logger.warning(f"Rollback of {version or 'live'} abandoned: stop requested")
                    record_action("rollback", "interrupted")
                    return RollbackResult(outcome=RollbackOutcome.INTERRUPTED, target=target)
                if not answer:
                    logger.info("Rollback declined by operator")
                    record_action("rollback", "declined")
                    await self.notifier.send(
                        f"⚠️ Rollback of {version or 'live'} to {target} declined by operator",
                        Severity.WARNING,
                        {"reason": reason or "manual"},
                    )
                    return RollbackResult(outcome=RollbackOutcome.DECLINED, target=target)

            if self.options.dry_run:
                logger.info(
                    f"[DRY RUN] Would back up the live version and clone {target} to "
                    f"{LIVE_CHANNEL} at 100%"
                )
                record_action("rollback", "dry_run")
                return RollbackResult(outcome=RollbackOutcome.DRY_RUN, target=target)

            try:
                backup = await asyncio.to_thread(self.backups.capture, self.hosting)
                await asyncio.to_thread(self.hosting.clone_version_to_target, target, LIVE_CHANNEL, 100)
            except HostingError as e:
                logger.error(f"❌ Rollback to {target} failed: {e}")
                record_action("rollback", "failed")
                record_exception(span, e)
                await self.notifier.send(
                    f"🚨 Rollback of {version or 'live'} to {target} FAILED: {e}",
                    Severity.CRITICAL,
                    {"reason": reason or "manual", "target": target},
                )
                return RollbackResult(outcome=RollbackOutcome.FAILED, target=target, error=str(e))

            if deployment is not None:
                self.ledger.set_status(deployment.version, DeploymentStatus.ROLLED_BACK, deployment.kind)

            logger.success(f"✅ Rolled back to {target} (previous live saved as {backup.name})")
            record_action("rollback", "executed")
            await self.notifier.send(
                f"🔄 Rolled back {version or 'live'} to {target}",
                Severity.WARNING,
                {"reason": reason or "manual", "target": target, "backup": backup.name},
            )
            return RollbackResult(outcome=RollbackOutcome.EXECUTED, target=target, backup=backup)
