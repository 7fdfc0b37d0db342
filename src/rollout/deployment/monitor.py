"""Deployment monitoring loop.

Ticks run strictly one after another at a fixed interval. Each tick
collects probes and backend metrics, evaluates them, stores the snapshot
on the ledger record and feeds the failure hysteresis. Escalation hands
control to the RollbackController; the loop resumes only if the operator
declines (or in dry-run mode).

Example:
    >>> monitor = DeploymentMonitor(config, pipeline, ledger, rollback, notifier)
    >>> result = await monitor.run()
    >>> result.outcome
    <MonitorOutcome.COMPLETED: 'completed'>
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from src.rollout.deployment.evaluator import EvaluationResult, EvaluationStatus, Thresholds
from src.rollout.deployment.hysteresis import FailureHysteresis
from src.rollout.deployment.ledger import DeploymentLedger
from src.rollout.deployment.pipeline import SignalPipeline, TickObservation
from src.rollout.deployment.promotion import PromotionController, PromotionOutcome, PromotionResult
from src.rollout.deployment.reports import ReportWriter
from src.rollout.deployment.rollback import (
    RollbackController,
    RollbackOptions,
    RollbackOutcome,
    RollbackResult,
)
from src.rollout.models.schemas import Deployment, DeploymentKind, DeploymentStatus
from src.rollout.monitoring.metrics import CONSECUTIVE_FAILURES, push_metrics
from src.rollout.monitoring.tracing import set_span_attributes, tracer
from src.rollout.notifications.slack import NotificationSink, Severity

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class MonitorConfig:
    """Settings of one monitoring run."""
    version: str
    kind: DeploymentKind = DeploymentKind.PRODUCTION
    monitoring_period_minutes: float = 30
    check_interval_seconds: float = 30
    thresholds: Optional[Thresholds] = None
    escalation_threshold: int = 3
    window_ticks: Optional[int] = 1
    rollback: RollbackOptions = field(default_factory=RollbackOptions)
    promote: bool = False
    pushgateway_url: Optional[str] = None

    def __post_init__(self):
        """Fill in the kind's threshold preset and validate timing."""
        if self.thresholds is None:
            self.thresholds = Thresholds.for_profile(self.kind.value)
        if self.monitoring_period_minutes <= 0:
            raise ValueError("Monitoring period must be positive")
        if self.check_interval_seconds <= 0:
            raise ValueError("Check interval must be positive")
        if self.escalation_threshold < 1:
            raise ValueError("Escalation threshold must be >= 1")
        if self.promote and self.kind != DeploymentKind.CANARY:
            raise ValueError("Only canary deployments can be promoted")


class MonitorOutcome(Enum):
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    PROMOTED = "promoted"
    PROMOTION_FAILED = "promotion_failed"
    INTERRUPTED = "interrupted"


class WindowVerdict(Enum):
    """End-of-window classification of the cumulative endpoint error rate."""
    CLEAN = "clean"
    ACCEPTABLE = "acceptable"
    DEGRADED = "degraded"
    INSUFFICIENT = "insufficient"


def classify_window(
    errors: int,
    requests: int,
    error_threshold: float,
    min_requests: int = 0,
) -> WindowVerdict:
    """No errors is clean; up to half the threshold is acceptable.

    A window with no probe requests, or fewer than ``min_requests``, is
    insufficient whatever its error count.
    """
    if requests == 0 or requests < min_requests:
        return WindowVerdict.INSUFFICIENT
    if errors == 0:
        return WindowVerdict.CLEAN
    if errors / requests <= error_threshold / 2:
        return WindowVerdict.ACCEPTABLE
    return WindowVerdict.DEGRADED


@dataclass
class MonitorResult:
    outcome: MonitorOutcome
    ticks: int = 0
    verdict: Optional[WindowVerdict] = None
    last_evaluation: Optional[EvaluationResult] = None
    rollback: Optional[RollbackResult] = None
    promotion: Optional[PromotionResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "ticks": self.ticks,
            "verdict": self.verdict.value if self.verdict else None,
            "lastEvaluation": self.last_evaluation.to_dict() if self.last_evaluation else None,
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "promotion": self.promotion.to_dict() if self.promotion else None,
        }


class DeploymentMonitor:
    """Runs the monitoring window for one deployment."""

    def __init__(
        self,
        config: MonitorConfig,
        pipeline: SignalPipeline,
        ledger: DeploymentLedger,
        rollback: RollbackController,
        notifier: NotificationSink,
        promotion: Optional[PromotionController] = None,
        reports: Optional[ReportWriter] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleep] = None,
    ):
        """Initialize monitor.

        Args:
            config: Run settings
            pipeline: Signal pipeline bound to the deployment namespace
            ledger: Deployment ledger
            rollback: Controller invoked on escalation
            notifier: Notification sink
            promotion: Controller consulted at the end of a canary window
                when ``config.promote`` is set
            reports: Per-tick audit report writer
            clock: Current time (injected in tests)
            sleep: Wait between ticks (injected in tests)
        """
        self.config = config
        self.pipeline = pipeline
        self.ledger = ledger
        self.rollback = rollback
        self.notifier = notifier
        self.promotion = promotion
        self.reports = reports or ReportWriter(None)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep or self._wait
        self._stop = asyncio.Event()
        self.hysteresis = FailureHysteresis(config.escalation_threshold)

    @property
    def dry_run(self) -> bool:
        return self.config.rollback.dry_run

    def stop(self) -> None:
        """Stop scheduling ticks; the current tick finishes first.

        A rollback or promotion waiting for the operator is abandoned.
        """
        self._stop.set()
        self.rollback.stop()
        if self.promotion is not None:
            self.promotion.stop()

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> MonitorResult:
        """Monitor until the window ends, a rollback runs, or a stop is requested.

        Returns:
            MonitorResult

        Raises:
            DeploymentNotFoundError: If the version has no ledger record
            InvalidStatusTransition: If the record is already terminal
            RollbackTargetMissing: If escalation finds nothing to roll back to
        """
        config = self.config
        kind = config.kind.value
        deployment = self.ledger.get(config.version, config.kind)

        if not self.dry_run:
            deployment = self.ledger.set_status(deployment.version, DeploymentStatus.MONITORING, config.kind)

        start = self._clock()
        end = start + timedelta(minutes=config.monitoring_period_minutes)

        logger.info(
            f"🚀 Monitoring {kind} deployment {deployment.version} for "
            f"{config.monitoring_period_minutes} minutes (every {config.check_interval_seconds}s)"
        )
        await self.notifier.send(
            f"🔍 Monitoring started for {kind} deployment {deployment.version}",
            Severity.INFO,
            {
                "Monitoring Period": f"{config.monitoring_period_minutes} minutes",
                "Check Interval": f"{config.check_interval_seconds} seconds",
                "Auto Rollback": "enabled" if config.rollback.auto else "disabled",
            },
        )

        ticks = 0
        last_evaluation: Optional[EvaluationResult] = None

        while self._clock() < end:
            if self._stop.is_set():
                return self._interrupted(ticks, last_evaluation)

            ticks += 1
            observation = await self._tick(deployment)
            last_evaluation = observation.evaluation

            escalated = self.hysteresis.observe(observation.evaluation.status)
            CONSECUTIVE_FAILURES.labels(kind=kind).set(self.hysteresis.consecutive_failures)
            if config.pushgateway_url:
                await asyncio.to_thread(
                    push_metrics,
                    config.pushgateway_url,
                    grouping_key={"kind": kind, "version": deployment.version},
                )

            if observation.evaluation.status == EvaluationStatus.FAIL:
                await self._notify_failure(deployment, observation)

            if escalated:
                reason = (
                    f"{self.hysteresis.consecutive_failures} consecutive failed checks: "
                    + ", ".join(check.name for check in observation.evaluation.failing_checks)
                )
                result = await self.rollback.execute(deployment, reason=reason)

                if result.outcome == RollbackOutcome.EXECUTED:
                    return MonitorResult(
                        outcome=MonitorOutcome.ROLLED_BACK,
                        ticks=ticks,
                        last_evaluation=last_evaluation,
                        rollback=result,
                    )
                if result.outcome == RollbackOutcome.FAILED:
                    return MonitorResult(
                        outcome=MonitorOutcome.ROLLBACK_FAILED,
                        ticks=ticks,
                        last_evaluation=last_evaluation,
                        rollback=result,
                    )
                if result.outcome == RollbackOutcome.INTERRUPTED:
                    interrupted = self._interrupted(ticks, last_evaluation)
                    interrupted.rollback = result
                    return interrupted
                if result.outcome == RollbackOutcome.DECLINED:
                    self.hysteresis.decline()
                    CONSECUTIVE_FAILURES.labels(kind=kind).set(0)

            await self._sleep(config.check_interval_seconds)

        if self._stop.is_set():
            return self._interrupted(ticks, last_evaluation)

        return await self._finish(deployment, ticks, last_evaluation)

    async def _tick(self, deployment: Deployment) -> TickObservation:
        with tracer.start_as_current_span("monitor.tick") as span:
            observation = await self.pipeline.collect((deployment.created_at, self._clock()))
            evaluation = observation.evaluation
            set_span_attributes(
                span,
                tick=observation.tick,
                version=deployment.version,
                status=evaluation.status.value,
                source=evaluation.source,
            )

            healthy = sum(1 for result in observation.probes if result.success)
            logger.info(
                f"Tick {observation.tick}: {evaluation.status.value.upper()} | "
                f"endpoints {healthy}/{len(observation.probes)} healthy | "
                f"samples {evaluation.sample_size} | source {evaluation.source}"
            )

            self.ledger.update_metrics(deployment.version, observation.snapshot(), deployment.kind)
            self.reports.write(f"{deployment.kind.value}-monitoring", {
                "version": deployment.version,
                "kind": deployment.kind.value,
                "consecutiveFailures": self.hysteresis.consecutive_failures,
                **observation.to_dict(),
            })
            return observation

    async def _notify_failure(self, deployment: Deployment, observation: TickObservation) -> None:
        fields: Dict[str, Any] = {
            check.name: f"{check.value} (limit {check.threshold})"
            for check in observation.evaluation.failing_checks
        }
        for result in observation.failed_endpoints:
            fields[result.name] = result.error or "failed"
        fields["Consecutive Failures"] = f"{self.hysteresis.consecutive_failures}/{self.hysteresis.threshold}"

        await self.notifier.send(
            f"⚠️ Health check failed for {deployment.kind.value} deployment {deployment.version}",
            Severity.WARNING,
            fields,
        )

    def _interrupted(self, ticks: int, last_evaluation: Optional[EvaluationResult]) -> MonitorResult:
        logger.warning("⏹️  Monitoring interrupted; ledger status left as last written")
        return MonitorResult(outcome=MonitorOutcome.INTERRUPTED, ticks=ticks, last_evaluation=last_evaluation)

    async def _finish(
        self,
        deployment: Deployment,
        ticks: int,
        last_evaluation: Optional[EvaluationResult],
    ) -> MonitorResult:
        aggregator = self.pipeline.aggregator
        limits = self.config.thresholds.limits
        error_threshold = limits.get("error_rate", limits.get("endpoint_error_rate", 0.0))
        min_requests = self.config.thresholds.min_sample_size
        verdict = classify_window(aggregator.total_errors, aggregator.total_requests, error_threshold, min_requests)
        if last_evaluation is None or last_evaluation.status == EvaluationStatus.INSUFFICIENT_DATA:
            verdict = WindowVerdict.INSUFFICIENT

        summary = aggregator.summary()
        logger.info(
            f"📊 Summary: {summary['requests']} probes, {summary['errors']} errors "
            f"({summary['error_rate']:.2%}), p95 {summary['latency_p95']:.0f}ms -> {verdict.value}"
        )
        for name, stats in summary["endpoints"].items():
            logger.info(
                f"  {name}: {stats['requests']} requests, {stats['error_rate']:.2%} errors, "
                f"p95 {stats['latency_p95']:.0f}ms"
            )

        self.reports.write(f"{deployment.kind.value}-summary", {
            "version": deployment.version,
            "kind": deployment.kind.value,
            "verdict": verdict.value,
            "summary": summary,
            "signals": self.pipeline.run_signals(),
            "lastEvaluation": last_evaluation.to_dict() if last_evaluation else None,
        })

        result = MonitorResult(
            outcome=MonitorOutcome.COMPLETED,
            ticks=ticks,
            verdict=verdict,
            last_evaluation=last_evaluation,
        )

        if deployment.kind == DeploymentKind.CANARY:
            if self.config.promote and self.promotion is not None:
                values, evaluation = self.pipeline.evaluate_run(self.promotion.evaluator)
                promotion = await self.promotion.decide(deployment, evaluation, values)
                result.promotion = promotion
                if promotion.outcome == PromotionOutcome.PROMOTED:
                    result.outcome = MonitorOutcome.PROMOTED
                elif promotion.outcome == PromotionOutcome.FAILED:
                    result.outcome = MonitorOutcome.PROMOTION_FAILED
                elif promotion.outcome == PromotionOutcome.INTERRUPTED:
                    result.outcome = MonitorOutcome.INTERRUPTED
            else:
                logger.info(
                    f"Canary {deployment.version} monitoring finished ({verdict.value}); "
                    f"run `promote --version {deployment.version}` to evaluate promotion"
                )
                await self.notifier.send(
                    f"✅ Canary monitoring completed for {deployment.version} ({verdict.value})",
                    Severity.INFO if verdict in (WindowVerdict.CLEAN, WindowVerdict.ACCEPTABLE) else Severity.WARNING,
                    {"Error Rate": f"{summary['error_rate']:.2%}"},
                )
            return result

        if verdict == WindowVerdict.INSUFFICIENT:
            logger.warning(
                f"⚠️  {deployment.version} finished the window without enough data to judge it "
                f"({aggregator.total_requests}/{min_requests} probe requests); status unchanged"
            )
            await self.notifier.send(
                f"⚠️ Production deployment {deployment.version} finished monitoring without enough data",
                Severity.WARNING,
                {
                    "Sample Size": f"{aggregator.total_requests}/{min_requests}",
                    "Last Evaluation": last_evaluation.status.value if last_evaluation else "none",
                },
            )
            return result

        if verdict == WindowVerdict.DEGRADED:
            logger.error(f"❌ {deployment.version} finished the window with a high error rate")
            await self.notifier.send(
                f"🚨 Production deployment {deployment.version} finished monitoring with a high error rate",
                Severity.CRITICAL,
                {"Error Rate": f"{summary['error_rate']:.2%}", "Threshold": f"{error_threshold:.2%}"},
            )
            return result

        if not self.dry_run:
            self.ledger.set_status(deployment.version, DeploymentStatus.SUCCESS, deployment.kind)
        severity = Severity.INFO if verdict == WindowVerdict.CLEAN else Severity.WARNING
        await self.notifier.send(
            f"✅ Production deployment {deployment.version} monitoring completed ({verdict.value})",
            severity,
            {"Error Rate": f"{summary['error_rate']:.2%}"},
        )
        return result
