"""Signal collection: endpoint probes, backend metrics and aggregation."""

from .probe import (
    EndpointProbe,
    EndpointTarget,
    ProbeResult,
)

from .aggregator import (
    Aggregator,
    percentile,
    average,
    PROBE_METRICS,
)

from .metric_source import (
    MetricSource,
    MetricsBackend,
    DatadogBackend,
    PrometheusBackend,
    SimulatedBackend,
    build_metric_source,
    METRIC_NAMES,
    SIGNAL_NAMES,
)

__all__ = [
    # Probes
    "EndpointProbe",
    "EndpointTarget",
    "ProbeResult",
    # Aggregation
    "Aggregator",
    "percentile",
    "average",
    "PROBE_METRICS",
    # Metric sources
    "MetricSource",
    "MetricsBackend",
    "DatadogBackend",
    "PrometheusBackend",
    "SimulatedBackend",
    "build_metric_source",
    "METRIC_NAMES",
    "SIGNAL_NAMES",
]
