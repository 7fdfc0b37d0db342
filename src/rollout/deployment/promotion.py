"""Canary promotion.

The canary is evaluated over a full window against its own metric
namespace with stricter thresholds than rollback monitoring uses. Only a
passing window (with enough samples) promotes: the current production
version is backed up, the canary version is cloned to the live channel at
100%, and the canary record is marked ``success``.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from src.rollout.core.errors import ConfigurationError, HostingError
from src.rollout.deployment.backups import Backup, BackupRegistry
from src.rollout.deployment.confirmation import Confirm, auto_confirm, confirm_unless_stopped, prompt_confirm
from src.rollout.deployment.evaluator import (
    EvaluationResult,
    EvaluationStatus,
    ThresholdEvaluator,
    Thresholds,
)
from src.rollout.deployment.ledger import DeploymentLedger
from src.rollout.deployment.pipeline import SignalPipeline
from src.rollout.deployment.reports import ReportWriter
from src.rollout.hosting.base import CANARY_CHANNEL, LIVE_CHANNEL, HostingProvider
from src.rollout.models.schemas import Deployment, DeploymentKind, DeploymentStatus
from src.rollout.monitoring.metrics import record_action
from src.rollout.monitoring.tracing import record_exception, set_span_attributes, tracer
from src.rollout.notifications.slack import NotificationSink, Severity

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class PromotionConfig:
    """Settings of one promotion evaluation."""
    version: str
    evaluation_period_minutes: float = 60
    check_interval_seconds: float = 30
    thresholds: Thresholds = field(default_factory=lambda: Thresholds.for_profile("promotion"))
    auto_promote: bool = False
    dry_run: bool = False

    def __post_init__(self):
        if self.evaluation_period_minutes <= 0:
            raise ValueError("Evaluation period must be positive")
        if self.check_interval_seconds <= 0:
            raise ValueError("Check interval must be positive")


class PromotionOutcome(Enum):
    PROMOTED = "promoted"
    REJECTED = "rejected"
    DECLINED = "declined"
    DRY_RUN = "dry_run"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass
class PromotionResult:
    outcome: PromotionOutcome
    evaluation: Optional[EvaluationResult] = None
    canary_version_id: Optional[str] = None
    backup: Optional[Backup] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "evaluation": self.evaluation.to_dict() if self.evaluation else None,
            "canaryVersionId": self.canary_version_id,
            "backup": self.backup.to_dict() if self.backup else None,
            "error": self.error,
        }


class PromotionController:
    """Decides and executes canary promotion."""

    def __init__(
        self,
        config: PromotionConfig,
        hosting: HostingProvider,
        backups: BackupRegistry,
        ledger: DeploymentLedger,
        notifier: NotificationSink,
        confirm: Optional[Confirm] = None,
        reports: Optional[ReportWriter] = None,
    ):
        self.config = config
        self.hosting = hosting
        self.backups = backups
        self.ledger = ledger
        self.notifier = notifier
        self.confirm = confirm or (auto_confirm if config.auto_promote else prompt_confirm)
        self.reports = reports or ReportWriter(None)
        self.evaluator = ThresholdEvaluator(config.thresholds)
        self._stop = asyncio.Event()

    def stop(self) -> None:
        """Stop the evaluation window at the next tick boundary.

        A pending promotion confirmation is abandoned without action.
        """
        self._stop.set()

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def ensure_canary_traffic(self) -> None:
        """Fail early when the hosting provider has no canary channel.

        Raises:
            ConfigurationError: If no canary channel exists
        """
        channels = await asyncio.to_thread(self.hosting.list_channels)
        if not any(channel.name == CANARY_CHANNEL for channel in channels):
            raise ConfigurationError(
                "No canary channel found; deploy the canary before evaluating promotion"
            )

    async def run(
        self,
        pipeline: SignalPipeline,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
    ) -> Optional[PromotionResult]:
        """Collect a full evaluation window and decide.

        Args:
            pipeline: Signal pipeline bound to the canary namespace
            clock: Current time (injected in tests)
            sleep: Wait between ticks (injected in tests)

        Returns:
            PromotionResult, or None when the window was interrupted
        """
        clock = clock or (lambda: datetime.now(timezone.utc))
        sleep = sleep or self._wait

        deployment = self.ledger.get(self.config.version, DeploymentKind.CANARY)
        await self.ensure_canary_traffic()

        if not self.config.dry_run:
            deployment = self.ledger.set_status(
                deployment.version, DeploymentStatus.MONITORING, DeploymentKind.CANARY
            )

        start = clock()
        end = start + timedelta(minutes=self.config.evaluation_period_minutes)
        logger.info(
            f"🐤 Evaluating canary {deployment.version} for "
            f"{self.config.evaluation_period_minutes} minutes"
        )

        with tracer.start_as_current_span("promotion.window") as span:
            set_span_attributes(span, version=deployment.version)
            while clock() < end:
                if self._stop.is_set():
                    logger.warning("Promotion evaluation interrupted; ledger left as last written")
                    return None

                observation = await pipeline.collect((deployment.created_at, clock()))
                logger.info(
                    f"Tick {observation.tick}: {observation.evaluation.status.value} "
                    f"({observation.evaluation.source})"
                )
                self.ledger.update_metrics(deployment.version, observation.snapshot(), DeploymentKind.CANARY)
                await sleep(self.config.check_interval_seconds)

        if self._stop.is_set():
            logger.warning("Promotion evaluation interrupted; ledger left as last written")
            return None

        values, evaluation = pipeline.evaluate_run(self.evaluator)
        self.reports.write("canary-evaluation", {
            "timestamp": clock().isoformat(),
            "version": deployment.version,
            "metrics": values,
            "evaluation": evaluation.to_dict(),
            "signals": pipeline.run_signals(),
            "summary": pipeline.aggregator.summary(),
            "result": evaluation.status.name,
        })
        return await self.decide(deployment, evaluation, values)

    async def decide(
        self,
        deployment: Deployment,
        evaluation: EvaluationResult,
        values: Optional[Dict[str, Optional[float]]] = None,
    ) -> PromotionResult:
        """Promote on a passing evaluation, otherwise record and report why not.

        Args:
            deployment: Canary ledger record (status ``monitoring``)
            evaluation: Whole-window evaluation with promotion thresholds
            values: Aggregated values behind the evaluation

        Returns:
            PromotionResult
        """
        version = deployment.version
        with tracer.start_as_current_span("promotion.execute") as span:
            set_span_attributes(span, version=version, status=evaluation.status.value)

            if not evaluation.passed:
                return await self._reject(deployment, evaluation, values)

            logger.info(f"✅ Canary {version} meets promotion criteria ({evaluation.source} metrics)")

            canary_version_id = await asyncio.to_thread(self.hosting.canary_version)
            if not canary_version_id:
                raise ConfigurationError("Could not find the canary version on the hosting provider")

            if not self.config.auto_promote:
                answer = await confirm_unless_stopped(
                    self.confirm,
                    f"Promote canary {version} ({canary_version_id}) to production?",
                    self._stop,
                )
                if answer is None:
                    logger.warning(f"Promotion of canary {version} abandoned: stop requested")
                    record_action("promotion", "interrupted")
                    return PromotionResult(
                        outcome=PromotionOutcome.INTERRUPTED,
                        evaluation=evaluation,
                        canary_version_id=canary_version_id,
                    )
                if not answer:
                    logger.info("Promotion declined by operator")
                    record_action("promotion", "declined")
                    await self.notifier.send(
                        f"⚠️ Promotion of canary {version} declined by operator",
                        Severity.WARNING,
                    )
                    return PromotionResult(
                        outcome=PromotionOutcome.DECLINED,
                        evaluation=evaluation,
                        canary_version_id=canary_version_id,
                    )

            if self.config.dry_run:
                logger.info(
                    f"[DRY RUN] Would back up production and clone {canary_version_id} to "
                    f"{LIVE_CHANNEL} at 100%"
                )
                record_action("promotion", "dry_run")
                return PromotionResult(
                    outcome=PromotionOutcome.DRY_RUN,
                    evaluation=evaluation,
                    canary_version_id=canary_version_id,
                )

            try:
                backup = await asyncio.to_thread(self.backups.capture, self.hosting)
                await asyncio.to_thread(
                    self.hosting.clone_version_to_target, canary_version_id, LIVE_CHANNEL, 100
                )
            except HostingError as e:
                logger.error(f"❌ Promotion of {version} failed: {e}")
                record_action("promotion", "failed")
                record_exception(span, e)
                await self.notifier.send(
                    f"🚨 Promotion of canary {version} FAILED: {e}",
                    Severity.CRITICAL,
                )
                return PromotionResult(
                    outcome=PromotionOutcome.FAILED,
                    evaluation=evaluation,
                    canary_version_id=canary_version_id,
                    error=str(e),
                )

            self.ledger.set_status(version, DeploymentStatus.SUCCESS, DeploymentKind.CANARY)
            logger.success(f"🚀 Canary {version} promoted to production")
            record_action("promotion", "executed")
            await self.notifier.send(
                f"🚀 Canary {version} promoted to production",
                Severity.INFO,
                {
                    "versionId": canary_version_id,
                    "backup": backup.name,
                    **_check_fields(evaluation),
                },
            )
            return PromotionResult(
                outcome=PromotionOutcome.PROMOTED,
                evaluation=evaluation,
                canary_version_id=canary_version_id,
                backup=backup,
            )

    async def _reject(
        self,
        deployment: Deployment,
        evaluation: EvaluationResult,
        values: Optional[Dict[str, Optional[float]]],
    ) -> PromotionResult:
        reason = (
            "insufficient data"
            if evaluation.status == EvaluationStatus.INSUFFICIENT_DATA
            else "threshold breach"
        )
        logger.warning(f"❌ Canary {deployment.version} not promoted: {reason}")

        self.ledger.update_metrics(
            deployment.version,
            {**(values or {}), "promotion": "rejected", "evaluation": evaluation.to_dict()},
            DeploymentKind.CANARY,
        )

        record_action("promotion", "rejected")
        failing = {
            check.name: f"{check.value} (limit {check.threshold})"
            for check in evaluation.failing_checks
        }
        await self.notifier.send(
            f"❌ Canary {deployment.version} does not meet promotion criteria ({reason})",
            Severity.WARNING,
            {"sampleSize": f"{evaluation.sample_size}/{evaluation.min_sample_size}", **failing},
        )
        return PromotionResult(outcome=PromotionOutcome.REJECTED, evaluation=evaluation)


def _check_fields(evaluation: EvaluationResult) -> Dict[str, str]:
    return {
        check.name: f"{check.value:.4g}" if check.value is not None else "n/a"
        for check in evaluation.checks.values()
    }
