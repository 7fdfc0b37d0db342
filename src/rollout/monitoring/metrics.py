"""Prometheus metrics describing what the controller observed and did."""
from typing import Dict, Iterable, Optional

from loguru import logger
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    push_to_gateway,
)

# Dedicated registry so a Pushgateway push only carries controller metrics
REGISTRY = CollectorRegistry()

METRIC_VALUE = Gauge(
    "rollout_metric_value",
    "Last aggregated value of an evaluated metric",
    ["kind", "metric"],
    registry=REGISTRY,
)

METRIC_THRESHOLD = Gauge(
    "rollout_metric_threshold",
    "Configured threshold of an evaluated metric",
    ["kind", "metric"],
    registry=REGISTRY,
)

CONSECUTIVE_FAILURES = Gauge(
    "rollout_consecutive_failures",
    "Consecutive failing evaluations seen by the hysteresis",
    ["kind"],
    registry=REGISTRY,
)

EVALUATIONS = Counter(
    "rollout_evaluations_total",
    "Threshold evaluations by outcome",
    ["kind", "status"],
    registry=REGISTRY,
)

PROBE_LATENCY = Histogram(
    "rollout_probe_latency_seconds",
    "Endpoint probe latency in seconds",
    ["endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)

PROBE_REQUESTS = Counter(
    "rollout_probe_requests_total",
    "Endpoint probes by outcome",
    ["endpoint", "outcome"],
    registry=REGISTRY,
)

ACTIONS = Counter(
    "rollout_actions_total",
    "Rollback and promotion actions by outcome",
    ["action", "outcome"],
    registry=REGISTRY,
)


def record_evaluation(kind: str, evaluation) -> None:
    """Export an EvaluationResult."""
    EVALUATIONS.labels(kind=kind, status=evaluation.status.value).inc()
    for name, check in evaluation.checks.items():
        METRIC_THRESHOLD.labels(kind=kind, metric=name).set(check.threshold)
        if check.value is not None:
            METRIC_VALUE.labels(kind=kind, metric=name).set(check.value)


def record_probe_results(results: Iterable) -> None:
    for result in results:
        outcome = "success" if result.success else "failure"
        PROBE_REQUESTS.labels(endpoint=result.name, outcome=outcome).inc()
        PROBE_LATENCY.labels(endpoint=result.name).observe(result.latency_ms / 1000)


def record_action(action: str, outcome: str) -> None:
    ACTIONS.labels(action=action, outcome=outcome).inc()


def push_metrics(
    gateway_url: Optional[str],
    job: str = "rollout-controller",
    grouping_key: Optional[Dict[str, str]] = None,
) -> bool:
    """Push the controller registry to a Prometheus Pushgateway.

    Push failures are logged and reported through the return value; they
    never interrupt a monitoring run.

    Args:
        gateway_url: Pushgateway address, e.g. ``localhost:9091``. No-op when empty.
        job: Job label for the pushed group
        grouping_key: Extra grouping labels (kind, version)

    Returns:
        True if the metrics were pushed
    """
    if not gateway_url:
        return False

    try:
        push_to_gateway(gateway_url, job=job, registry=REGISTRY, grouping_key=grouping_key or {})
        logger.debug(f"Pushed controller metrics to {gateway_url}")
        return True
    except OSError as e:
        logger.warning(f"⚠️  Failed to push metrics to {gateway_url}: {e}")
        return False
