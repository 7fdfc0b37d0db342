"""Sample aggregation over the monitoring window.

Probe results and backend metric readings are tagged with the tick that
produced them. ``window_ticks`` bounds how many recent ticks feed the
per-tick snapshot; run-wide totals are kept separately for the sample-size
gate and the end-of-run summary.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from src.rollout.monitoring.probe import ProbeResult

# Metrics derived from endpoint probes rather than fetched from a backend
PROBE_METRICS = (
    "endpoint_error_rate",
    "endpoint_latency_p50",
    "endpoint_latency_p95",
    "endpoint_latency_p99",
)


def percentile(samples: Sequence[float], p: float) -> float:
    """Nearest-rank percentile.

    Sorts ascending and takes index ``ceil(p/100 * n) - 1``, clamped into
    range. An empty sample set yields 0.

    Args:
        samples: Observed values
        p: Percentile in [0, 100]

    Returns:
        The selected sample, or 0.0 when there are none
    """
    if not samples:
        return 0.0
    ordered = sorted(samples)
    index = math.ceil(p / 100 * len(ordered)) - 1
    index = min(max(index, 0), len(ordered) - 1)
    return float(ordered[index])


def average(samples: Sequence[float]) -> float:
    """Arithmetic mean, 0 for an empty sample set."""
    if not samples:
        return 0.0
    return sum(samples) / len(samples)


@dataclass
class MetricSample:
    """One backend reading of one metric."""
    timestamp: datetime
    value: float
    tick: int


@dataclass
class EndpointStats:
    """Run-wide counters for one probed endpoint."""
    requests: int = 0
    errors: int = 0
    latencies: List[float] = field(default_factory=list)

    @property
    def error_rate(self) -> float:
        return self.errors / self.requests if self.requests else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests": self.requests,
            "errors": self.errors,
            "error_rate": round(self.error_rate, 4),
            "latency_p95": round(percentile(self.latencies, 95), 2),
        }


class Aggregator:
    """Collects probe results and metric samples tick by tick."""

    def __init__(self, window_ticks: Optional[int] = None):
        """Initialize aggregator.

        Args:
            window_ticks: Number of most recent ticks kept for snapshots
                (None keeps the whole run)
        """
        if window_ticks is not None and window_ticks < 1:
            raise ValueError("window_ticks must be >= 1 or None")
        self.window_ticks = window_ticks
        self.tick = 0
        self.total_requests = 0
        self.total_errors = 0
        self._probes: List[tuple] = []
        self._samples: Dict[str, List[MetricSample]] = {}
        self._run_sums: Dict[str, List[float]] = {}
        self._endpoints: Dict[str, EndpointStats] = {}

    def advance(self) -> int:
        """Start a new tick and drop samples that fell out of the window."""
        self.tick += 1
        if self.window_ticks is not None:
            oldest = self.tick - self.window_ticks + 1
            self._probes = [(t, r) for t, r in self._probes if t >= oldest]
            for name in self._samples:
                self._samples[name] = [s for s in self._samples[name] if s.tick >= oldest]
        return self.tick

    def record_probes(self, results: Iterable[ProbeResult]) -> None:
        for result in results:
            self._probes.append((self.tick, result))
            self.total_requests += 1
            stats = self._endpoints.setdefault(result.name, EndpointStats())
            stats.requests += 1
            stats.latencies.append(result.latency_ms)
            if not result.success:
                self.total_errors += 1
                stats.errors += 1

    def record_metrics(
        self,
        values: Dict[str, Optional[float]],
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Record backend readings; ``None`` values are missing samples."""
        timestamp = timestamp or datetime.now(timezone.utc)
        for name, value in values.items():
            if value is None:
                continue
            self._samples.setdefault(name, []).append(
                MetricSample(timestamp=timestamp, value=float(value), tick=self.tick)
            )
            # [sum, count] for the run-wide average
            run = self._run_sums.setdefault(name, [0.0, 0])
            run[0] += float(value)
            run[1] += 1

    def snapshot(self, names: Iterable[str], whole_run: bool = False) -> Dict[str, Optional[float]]:
        """Aggregate current values for the requested metrics.

        Args:
            names: Metric names (backend metrics and PROBE_METRICS)
            whole_run: Aggregate over every tick instead of the window

        Returns:
            Mapping of metric name to value, None where no sample exists
        """
        if whole_run:
            latencies = [l for s in self._endpoints.values() for l in s.latencies]
            requests, errors = self.total_requests, self.total_errors
        else:
            results = [r for _, r in self._probes]
            latencies = [r.latency_ms for r in results]
            requests = len(results)
            errors = sum(1 for r in results if not r.success)

        values: Dict[str, Optional[float]] = {}
        for name in names:
            if name in PROBE_METRICS:
                values[name] = self._probe_value(name, requests, errors, latencies)
            elif whole_run:
                run = self._run_sums.get(name)
                values[name] = run[0] / run[1] if run and run[1] else None
            else:
                samples = self._samples.get(name)
                values[name] = average([s.value for s in samples]) if samples else None
        return values

    @staticmethod
    def _probe_value(name: str, requests: int, errors: int, latencies: List[float]) -> Optional[float]:
        if not requests:
            return None
        if name == "endpoint_error_rate":
            return errors / requests
        return percentile(latencies, float(name.rsplit("_p", 1)[1]))

    def endpoint_summary(self) -> Dict[str, Dict[str, Any]]:
        """Per-endpoint breakdown over the whole run."""
        return {name: stats.to_dict() for name, stats in self._endpoints.items()}

    def summary(self) -> Dict[str, Any]:
        """Run totals for the end-of-run log and report."""
        latencies = [l for s in self._endpoints.values() for l in s.latencies]
        return {
            "ticks": self.tick,
            "requests": self.total_requests,
            "errors": self.total_errors,
            "error_rate": self.total_errors / self.total_requests if self.total_requests else 0.0,
            "latency_p50": percentile(latencies, 50),
            "latency_p95": percentile(latencies, 95),
            "latency_p99": percentile(latencies, 99),
            "endpoints": self.endpoint_summary(),
        }
