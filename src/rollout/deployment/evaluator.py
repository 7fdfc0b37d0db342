"""Threshold evaluation of aggregated deployment metrics.

Every configured metric is compared against its limit: a metric passes
only when a value exists and does not exceed the limit. Until the run has
seen ``min_sample_size`` probe requests the evaluator refuses to decide and
reports insufficient data instead.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger

from src.rollout.monitoring.aggregator import PROBE_METRICS
from src.rollout.monitoring.metric_source import METRIC_NAMES

KNOWN_METRICS = METRIC_NAMES + PROBE_METRICS


class EvaluationStatus(Enum):
    """Overall outcome of one evaluation."""
    PASS = "pass"
    FAIL = "fail"
    INSUFFICIENT_DATA = "insufficient_data"


@dataclass
class Thresholds:
    """Upper limits per metric plus the minimum sample size.

    Rates are fractions (0.02 == 2%), latencies milliseconds, resource
    usage percent.
    """
    limits: Dict[str, float]
    min_sample_size: int = 0

    def __post_init__(self):
        """Validate metric names and limits."""
        if not self.limits:
            raise ValueError("At least one threshold is required")
        unknown = sorted(set(self.limits) - set(KNOWN_METRICS))
        if unknown:
            raise ValueError(f"Unknown metrics in thresholds: {', '.join(unknown)}")
        for name, limit in self.limits.items():
            if limit < 0:
                raise ValueError(f"Threshold for {name} cannot be negative")
        if self.min_sample_size < 0:
            raise ValueError("Minimum sample size cannot be negative")

    @property
    def metric_names(self) -> List[str]:
        return list(self.limits)

    @property
    def backend_metrics(self) -> List[str]:
        """Metrics that must be fetched from the metrics backend."""
        return [name for name in self.limits if name not in PROBE_METRICS]

    @classmethod
    def for_profile(cls, profile: str) -> "Thresholds":
        """Build a fresh copy of a named preset.

        Args:
            profile: ``production``, ``canary`` or ``promotion``

        Raises:
            ValueError: If the profile is unknown
        """
        try:
            preset = THRESHOLD_PRESETS[profile]
        except KeyError:
            raise ValueError(f"Unknown threshold profile: {profile}") from None
        return cls(limits=dict(preset["limits"]), min_sample_size=preset["min_sample_size"])

    def with_overrides(
        self,
        overrides: Mapping[str, Optional[float]],
        min_sample_size: Optional[int] = None,
    ) -> "Thresholds":
        """Return a copy with the given limits replaced or added."""
        limits = dict(self.limits)
        limits.update({name: value for name, value in overrides.items() if value is not None})
        return Thresholds(
            limits=limits,
            min_sample_size=self.min_sample_size if min_sample_size is None else min_sample_size,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"limits": dict(self.limits), "min_sample_size": self.min_sample_size}


THRESHOLD_PRESETS: Dict[str, Dict[str, Any]] = {
    "production": {
        "limits": {
            "error_rate": 0.02,
            "latency_p95": 500.0,
            "latency_p99": 1000.0,
            "cpu_usage": 80.0,
            "memory_usage": 80.0,
            "rate_5xx": 0.01,
            "rate_4xx": 0.05,
            "endpoint_error_rate": 0.0,
        },
        "min_sample_size": 50,
    },
    "canary": {
        "limits": {
            "error_rate": 0.05,
            "latency_p95": 500.0,
            "latency_p99": 1000.0,
            "cpu_usage": 80.0,
            "memory_usage": 80.0,
            "endpoint_error_rate": 0.0,
        },
        "min_sample_size": 20,
    },
    "promotion": {
        "limits": {
            "error_rate": 0.01,
            "latency_p95": 300.0,
            "cpu_usage": 70.0,
            "memory_usage": 70.0,
        },
        "min_sample_size": 20,
    },
}


@dataclass
class MetricCheck:
    """Result of comparing one metric with its threshold."""
    name: str
    value: Optional[float]
    threshold: float
    passed: bool

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "value": self.value,
            "threshold": self.threshold,
            "pass": self.passed,
        }


@dataclass
class EvaluationResult:
    """Per-metric checks plus the overall status."""
    status: EvaluationStatus
    checks: Dict[str, MetricCheck]
    sample_size: int
    min_sample_size: int
    source: str = "unknown"
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def passed(self) -> bool:
        return self.status == EvaluationStatus.PASS

    @property
    def failing_checks(self) -> List[MetricCheck]:
        return [check for check in self.checks.values() if not check.passed]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
            "sample_size": self.sample_size,
            "min_sample_size": self.min_sample_size,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
        }


class ThresholdEvaluator:
    """Compares aggregated values against a thresholds table."""

    def __init__(self, thresholds: Thresholds):
        self.thresholds = thresholds

    def evaluate(
        self,
        values: Mapping[str, Optional[float]],
        sample_size: int,
        source: str = "unknown",
    ) -> EvaluationResult:
        """Evaluate one set of aggregated values.

        Args:
            values: Metric name -> aggregated value (None when unavailable)
            sample_size: Number of observations behind the values
            source: Origin of backend values (``datadog``, ``simulated``...)

        Returns:
            EvaluationResult; status is INSUFFICIENT_DATA below the minimum
            sample size regardless of the individual checks
        """
        checks: Dict[str, MetricCheck] = {}
        for name, limit in self.thresholds.limits.items():
            value = values.get(name)
            checks[name] = MetricCheck(
                name=name,
                value=value,
                threshold=limit,
                passed=value is not None and value <= limit,
            )

        if sample_size < self.thresholds.min_sample_size:
            status = EvaluationStatus.INSUFFICIENT_DATA
            logger.info(
                f"Insufficient data: {sample_size}/{self.thresholds.min_sample_size} samples"
            )
        elif all(check.passed for check in checks.values()):
            status = EvaluationStatus.PASS
        else:
            status = EvaluationStatus.FAIL
            failing = ", ".join(
                f"{c.name}={c.value} (limit {c.threshold})" for c in checks.values() if not c.passed
            )
            logger.warning(f"Threshold breach: {failing}")

        return EvaluationResult(
            status=status,
            checks=checks,
            sample_size=sample_size,
            min_sample_size=self.thresholds.min_sample_size,
            source=source,
        )
