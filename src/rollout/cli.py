"""Command line entry point.

Usage:
    python -m src.rollout monitor --version 1.2.0 --auto-rollback
    python -m src.rollout monitor --kind canary --version 1.2.0-canary.1 --promote
    python -m src.rollout promote --version 1.2.0-canary.1 --auto-promote
    python -m src.rollout rollback --rollback-to abc123 --dry-run
    python -m src.rollout release --version 1.2.0 --type canary --canary-number 1
    python -m src.rollout status

Exit codes: 0 completed, 1 rollback executed by the monitor, 2 hosting
action failed, 3 configuration or logic error, 130 interrupted.
"""
import argparse
import asyncio
import json
import signal
import sys
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from pydantic import ValidationError

from src.rollout.core.circuit_breaker import create_breaker
from src.rollout.core.config import Settings
from src.rollout.core.errors import ConfigurationError, HostingError, RolloutError
from src.rollout.core.logging import setup_logging
from src.rollout.deployment.backups import BackupRegistry
from src.rollout.deployment.evaluator import ThresholdEvaluator, Thresholds
from src.rollout.deployment.ledger import DeploymentLedger
from src.rollout.deployment.monitor import DeploymentMonitor, MonitorConfig, MonitorOutcome
from src.rollout.deployment.pipeline import SignalPipeline
from src.rollout.deployment.promotion import PromotionConfig, PromotionController, PromotionOutcome
from src.rollout.deployment.release import prepare_release
from src.rollout.deployment.reports import ReportWriter
from src.rollout.deployment.rollback import RollbackController, RollbackOptions, RollbackOutcome
from src.rollout.hosting.firebase import FirebaseHosting
from src.rollout.models.schemas import DeploymentKind
from src.rollout.monitoring.aggregator import Aggregator
from src.rollout.monitoring.metric_source import MetricSource, build_metric_source
from src.rollout.monitoring.probe import EndpointProbe, EndpointTarget
from src.rollout.monitoring.tracing import setup_tracing, shutdown_tracing
from src.rollout.notifications.slack import NotificationSink, create_notifier


class ExitCode(IntEnum):
    OK = 0
    ROLLED_BACK = 1
    ACTION_FAILED = 2
    CONFIG_ERROR = 3
    INTERRUPTED = 130


# metric name -> (flag, help)
THRESHOLD_FLAGS = {
    "error_rate": ("--threshold-error-rate", "maximum error rate as a fraction (0.02 = 2%%)"),
    "latency_p95": ("--threshold-p95-latency", "maximum p95 latency in ms"),
    "latency_p99": ("--threshold-p99-latency", "maximum p99 latency in ms"),
    "cpu_usage": ("--threshold-cpu", "maximum CPU usage in percent"),
    "memory_usage": ("--threshold-memory", "maximum memory usage in percent"),
    "rate_5xx": ("--threshold-5xx", "maximum 5xx rate as a fraction"),
    "rate_4xx": ("--threshold-4xx", "maximum 4xx rate as a fraction"),
    "endpoint_error_rate": (
        "--threshold-endpoint-error-rate",
        "maximum share of failed endpoint probes per window",
    ),
}

PROBE_TIMEOUTS = {DeploymentKind.CANARY: 5.0, DeploymentKind.PRODUCTION: 10.0}

MONITOR_EXIT_CODES = {
    MonitorOutcome.COMPLETED: ExitCode.OK,
    MonitorOutcome.PROMOTED: ExitCode.OK,
    MonitorOutcome.ROLLED_BACK: ExitCode.ROLLED_BACK,
    MonitorOutcome.ROLLBACK_FAILED: ExitCode.ACTION_FAILED,
    MonitorOutcome.PROMOTION_FAILED: ExitCode.ACTION_FAILED,
    MonitorOutcome.INTERRUPTED: ExitCode.INTERRUPTED,
}


def _add_threshold_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("thresholds")
    for metric, (flag, help_text) in THRESHOLD_FLAGS.items():
        group.add_argument(flag, dest=f"threshold_{metric}", type=float, metavar="VALUE", help=help_text)
    group.add_argument("--min-sample-size", type=int, help="probes required before any decision")


def threshold_overrides(args: argparse.Namespace) -> Dict[str, Optional[float]]:
    return {metric: getattr(args, f"threshold_{metric}", None) for metric in THRESHOLD_FLAGS}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--verbose", "-v", action="store_true", help="debug logging")

    parser = argparse.ArgumentParser(
        prog="rollout",
        description="Monitor deployments, promote canaries and roll back failing releases.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    monitor = commands.add_parser("monitor", parents=[common], help="monitor a deployment")
    monitor.add_argument("--version", required=True, help="ledger version to monitor")
    monitor.add_argument("--kind", choices=[k.value for k in DeploymentKind], default="production")
    monitor.add_argument("--monitoring-period", type=float, metavar="MINUTES")
    monitor.add_argument("--check-interval", type=float, metavar="SECONDS")
    monitor.add_argument("--escalation-threshold", type=int, default=3, metavar="N",
                         help="consecutive failing checks before rollback")
    monitor.add_argument("--probe-timeout", type=float, metavar="SECONDS")
    monitor.add_argument("--auto-rollback", action="store_true", help="roll back without asking")
    monitor.add_argument("--rollback-to", metavar="VERSION_ID", help="explicit rollback target")
    monitor.add_argument("--promote", action="store_true", help="evaluate canary promotion at the end")
    monitor.add_argument("--auto-promote", action="store_true", help="promote without asking")
    monitor.add_argument("--dry-run", action="store_true", help="never touch the hosting provider")
    _add_threshold_args(monitor)

    promote = commands.add_parser("promote", parents=[common], help="evaluate and promote a canary")
    promote.add_argument("--version", required=True, help="canary ledger version")
    promote.add_argument("--evaluation-period", type=float, metavar="MINUTES")
    promote.add_argument("--check-interval", type=float, metavar="SECONDS")
    promote.add_argument("--probe-timeout", type=float, metavar="SECONDS")
    promote.add_argument("--auto-promote", action="store_true", help="promote without asking")
    promote.add_argument("--dry-run", action="store_true", help="never touch the hosting provider")
    _add_threshold_args(promote)

    rollback = commands.add_parser("rollback", parents=[common], help="roll back the live channel")
    rollback.add_argument("--version", help="ledger version to mark rolled back")
    rollback.add_argument("--kind", choices=[k.value for k in DeploymentKind])
    rollback.add_argument("--rollback-to", metavar="VERSION_ID", help="explicit rollback target")
    rollback.add_argument("--auto-rollback", action="store_true", help="do not ask for confirmation")
    rollback.add_argument("--dry-run", action="store_true", help="only report the target")

    release = commands.add_parser("release", parents=[common], help="register a release in the ledger")
    release.add_argument("--version", required=True, help="semver version, e.g. 1.2.0")
    release.add_argument("--type", dest="kind", choices=[k.value for k in DeploymentKind], default="production")
    release.add_argument("--canary-number", type=int, default=1)

    status = commands.add_parser("status", parents=[common], help="show ledger records")
    status.add_argument("--version")
    status.add_argument("--kind", choices=[k.value for k in DeploymentKind])

    return parser


def _hosting(settings: Settings) -> FirebaseHosting:
    return FirebaseHosting(
        project=settings.FIREBASE_PROJECT,
        site=settings.FIREBASE_SITE,
        binary=settings.FIREBASE_BIN,
    )


def _probe(settings: Settings, kind: DeploymentKind, timeout: Optional[float]) -> EndpointProbe:
    targets = [EndpointTarget(name=name, url=url) for name, url in settings.endpoints_for(kind.value)]
    return EndpointProbe(
        targets,
        timeout=timeout or PROBE_TIMEOUTS[kind],
        params={"canary": "1"} if kind == DeploymentKind.CANARY else None,
    )


def _metric_source(settings: Settings, kind: DeploymentKind) -> MetricSource:
    return build_metric_source(settings, kind.value, breaker=create_breaker(f"metrics_{kind.value}"))


def _notifier(settings: Settings, source: Optional[MetricSource], **fields: Any) -> NotificationSink:
    default_fields = {key.replace("_", " ").title(): value for key, value in fields.items() if value is not None}
    if source is not None:
        default_fields["Metrics Source"] = source.origin
    return create_notifier(settings.SLACK_WEBHOOK_URL, default_fields)


def _install_signal_handlers(stop: Callable[[], None]) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop))


def _thresholds(profile: str, args: argparse.Namespace) -> Thresholds:
    try:
        return Thresholds.for_profile(profile).with_overrides(
            threshold_overrides(args), min_sample_size=args.min_sample_size
        )
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


async def run_monitor(args: argparse.Namespace, settings: Settings) -> int:
    kind = DeploymentKind(args.kind)
    try:
        config = MonitorConfig(
            version=args.version,
            kind=kind,
            monitoring_period_minutes=args.monitoring_period or settings.MONITORING_DURATION,
            check_interval_seconds=args.check_interval or settings.CHECK_INTERVAL,
            thresholds=_thresholds(kind.value, args),
            escalation_threshold=args.escalation_threshold,
            rollback=RollbackOptions(
                auto=args.auto_rollback,
                dry_run=args.dry_run,
                rollback_to=args.rollback_to,
            ),
            promote=args.promote,
            pushgateway_url=settings.PUSHGATEWAY_URL,
        )
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    source = _metric_source(settings, kind)
    probe = _probe(settings, kind, args.probe_timeout)
    notifier = _notifier(
        settings,
        source,
        kind=kind.value,
        version=config.version,
        monitoring_period=f"{config.monitoring_period_minutes} minutes",
        check_interval=f"{config.check_interval_seconds} seconds",
    )
    ledger = DeploymentLedger(settings.LEDGER_PATH)
    backups = BackupRegistry(settings.BACKUPS_DIR)
    hosting = _hosting(settings)
    reports = ReportWriter(settings.REPORTS_DIR)

    promotion = None
    if config.promote:
        promotion = PromotionController(
            PromotionConfig(
                version=config.version,
                check_interval_seconds=config.check_interval_seconds,
                auto_promote=args.auto_promote,
                dry_run=args.dry_run,
            ),
            hosting, backups, ledger, notifier,
            reports=reports,
        )

    monitor = DeploymentMonitor(
        config,
        SignalPipeline(probe, source, Aggregator(config.window_ticks), ThresholdEvaluator(config.thresholds), kind.value),
        ledger,
        RollbackController(hosting, backups, ledger, notifier, config.rollback),
        notifier,
        promotion=promotion,
        reports=reports,
    )
    _install_signal_handlers(monitor.stop)

    try:
        result = await monitor.run()
    finally:
        await probe.aclose()
        source.close()

    return MONITOR_EXIT_CODES[result.outcome]


async def run_promote(args: argparse.Namespace, settings: Settings) -> int:
    try:
        config = PromotionConfig(
            version=args.version,
            evaluation_period_minutes=args.evaluation_period or settings.EVALUATION_PERIOD,
            check_interval_seconds=args.check_interval or settings.CHECK_INTERVAL,
            thresholds=_thresholds("promotion", args),
            auto_promote=args.auto_promote,
            dry_run=args.dry_run,
        )
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    kind = DeploymentKind.CANARY
    source = _metric_source(settings, kind)
    probe = _probe(settings, kind, args.probe_timeout)
    notifier = _notifier(
        settings,
        source,
        kind=kind.value,
        version=config.version,
        evaluation_period=f"{config.evaluation_period_minutes} minutes",
    )
    controller = PromotionController(
        config,
        _hosting(settings),
        BackupRegistry(settings.BACKUPS_DIR),
        DeploymentLedger(settings.LEDGER_PATH),
        notifier,
        reports=ReportWriter(settings.REPORTS_DIR),
    )
    pipeline = SignalPipeline(probe, source, Aggregator(None), controller.evaluator, kind.value)
    _install_signal_handlers(controller.stop)

    try:
        result = await controller.run(pipeline)
    finally:
        await probe.aclose()
        source.close()

    if result is None or result.outcome == PromotionOutcome.INTERRUPTED:
        return ExitCode.INTERRUPTED
    if result.outcome == PromotionOutcome.FAILED:
        return ExitCode.ACTION_FAILED
    return ExitCode.OK


async def run_rollback(args: argparse.Namespace, settings: Settings) -> int:
    ledger = DeploymentLedger(settings.LEDGER_PATH)
    kind = DeploymentKind(args.kind) if args.kind else None
    deployment = ledger.get(args.version, kind) if args.version else None

    controller = RollbackController(
        _hosting(settings),
        BackupRegistry(settings.BACKUPS_DIR),
        ledger,
        _notifier(settings, None, version=args.version),
        RollbackOptions(auto=args.auto_rollback, dry_run=args.dry_run, rollback_to=args.rollback_to),
    )
    _install_signal_handlers(controller.stop)
    result = await controller.execute(deployment, reason="manual rollback")

    if result.outcome == RollbackOutcome.FAILED:
        return ExitCode.ACTION_FAILED
    if result.outcome == RollbackOutcome.INTERRUPTED:
        return ExitCode.INTERRUPTED
    return ExitCode.OK


async def run_release(args: argparse.Namespace, settings: Settings) -> int:
    deployment = prepare_release(
        DeploymentLedger(settings.LEDGER_PATH),
        args.version,
        DeploymentKind(args.kind),
        canary_number=args.canary_number,
    )
    print(deployment.version)
    return ExitCode.OK


async def run_status(args: argparse.Namespace, settings: Settings) -> int:
    ledger = DeploymentLedger(settings.LEDGER_PATH)
    kind = DeploymentKind(args.kind) if args.kind else None

    if args.version:
        records = [ledger.get(args.version, kind)]
    else:
        records = ledger.list(kind)

    output: List[Dict[str, Any]] = [
        {"kind": record.kind.value, **record.model_dump(mode="json", by_alias=True)}
        for record in records
    ]
    print(json.dumps(output, indent=2))
    return ExitCode.OK


COMMANDS = {
    "monitor": run_monitor,
    "promote": run_promote,
    "rollback": run_rollback,
    "release": run_release,
    "status": run_status,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings()
    except ValidationError as e:
        logger.error(f"❌ Invalid environment configuration: {e}")
        return ExitCode.CONFIG_ERROR

    long_running = args.command in ("monitor", "promote", "rollback")
    setup_logging(
        settings,
        verbose=args.verbose,
        log_name=f"{args.command}.log" if long_running else None,
        context={"command": args.command, "version": getattr(args, "version", None), "kind": getattr(args, "kind", None)},
    )
    provider = setup_tracing(settings)

    try:
        return int(asyncio.run(COMMANDS[args.command](args, settings)))
    except HostingError as e:
        logger.error(f"❌ Hosting action failed: {e}")
        return ExitCode.ACTION_FAILED
    except RolloutError as e:
        logger.error(f"❌ {e}")
        return ExitCode.CONFIG_ERROR
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return ExitCode.INTERRUPTED
    finally:
        shutdown_tracing(provider)


if __name__ == "__main__":
    sys.exit(main())
