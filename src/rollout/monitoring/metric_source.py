"""Metric retrieval from an external monitoring backend.

A MetricSource resolves logical metric names (``error_rate``,
``latency_p95``...) into backend queries scoped to a deployment namespace
(``canary`` or ``production``) and reduces each returned series to its
mean. A metric that cannot be fetched comes back as ``None``; it is never
an exception.

Example:
    >>> source = MetricSource(DatadogBackend(api_key, app_key), namespace="canary")
    >>> values = await source.fetch(["error_rate", "latency_p95"], (start, end))
    >>> values
    {'error_rate': 0.004, 'latency_p95': 212.5}
"""
import asyncio
import math
import random
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import httpx
import pybreaker
from loguru import logger

from src.rollout.core.config import Settings
from src.rollout.core.errors import ConfigurationError
from src.rollout.monitoring.aggregator import average

# Logical metrics a backend can serve
METRIC_NAMES = (
    "error_rate",
    "latency_p95",
    "latency_p99",
    "cpu_usage",
    "memory_usage",
    "rate_5xx",
    "rate_4xx",
)

# Informational product signals; recorded with every snapshot, never thresholded
SIGNAL_NAMES = (
    "performance",
    "user_satisfaction",
    "bot_detection_accuracy",
    "fingerprint_generation_time",
    "blocked_attempts",
    "sessions",
    "bounce_rate",
    "avg_session_duration",
)

Point = Tuple[float, Optional[float]]


class MetricsBackend(ABC):
    """Adapter for one monitoring backend."""

    origin: str = "unknown"

    @abstractmethod
    def build_query(self, metric: str, namespace: str) -> str:
        """Translate a logical metric name into a backend query."""

    @abstractmethod
    def query(self, query: str, start: datetime, end: datetime) -> List[Point]:
        """Run a query over [start, end] and return (timestamp, value) points.

        Raises:
            httpx.HTTPError: If the backend request fails
            ValueError: If the response payload is unusable
        """

    def close(self) -> None:
        pass


class DatadogBackend(MetricsBackend):
    """Datadog v1 timeseries query API."""

    origin = "datadog"

    QUERIES = {
        "error_rate": "avg:{prefix}.{ns}.error_rate{{env:{ns}}}",
        "latency_p95": "avg:{prefix}.{ns}.latency.p95{{env:{ns}}}",
        "latency_p99": "avg:{prefix}.{ns}.latency.p99{{env:{ns}}}",
        "cpu_usage": "avg:{prefix}.{ns}.cpu_usage{{env:{ns}}}",
        "memory_usage": "avg:{prefix}.{ns}.memory_usage{{env:{ns}}}",
        "rate_5xx": (
            "sum:{prefix}.{ns}.errors.5xx{{env:{ns}}}.as_rate() / "
            "sum:{prefix}.{ns}.requests{{env:{ns}}}.as_rate()"
        ),
        "rate_4xx": (
            "sum:{prefix}.{ns}.errors.4xx{{env:{ns}}}.as_rate() / "
            "sum:{prefix}.{ns}.requests{{env:{ns}}}.as_rate()"
        ),
        "performance": "avg:{prefix}.{ns}.performance.score{{env:{ns}}}",
        "user_satisfaction": "avg:{prefix}.{ns}.user.satisfaction{{env:{ns}}}",
        "bot_detection_accuracy": "avg:{prefix}.{ns}.bot_detection.accuracy{{env:{ns}}}",
        "fingerprint_generation_time": "avg:{prefix}.{ns}.fingerprint.generation_time{{env:{ns}}}",
        "blocked_attempts": "sum:{prefix}.{ns}.security.blocked_attempts{{env:{ns}}}.as_count()",
        "sessions": "sum:{prefix}.{ns}.engagement.sessions{{env:{ns}}}.as_count()",
        "bounce_rate": "avg:{prefix}.{ns}.engagement.bounce_rate{{env:{ns}}}",
        "avg_session_duration": "avg:{prefix}.{ns}.engagement.session_duration{{env:{ns}}}",
    }

    def __init__(
        self,
        api_key: str,
        app_key: Optional[str] = None,
        site: str = "https://api.datadoghq.com",
        prefix: str = "widget",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.site = site.rstrip("/")
        self.prefix = prefix
        headers = {"DD-API-KEY": api_key}
        if app_key:
            headers["DD-APPLICATION-KEY"] = app_key
        self.headers = headers
        self.client = client or httpx.Client(timeout=timeout)

    def build_query(self, metric: str, namespace: str) -> str:
        return self.QUERIES[metric].format(prefix=self.prefix, ns=namespace)

    def query(self, query: str, start: datetime, end: datetime) -> List[Point]:
        response = self.client.get(
            f"{self.site}/api/v1/query",
            params={
                "from": int(start.timestamp()),
                "to": int(end.timestamp()),
                "query": query,
            },
            headers=self.headers,
        )
        response.raise_for_status()

        data = response.json()
        if data.get("status") == "error":
            raise ValueError(f"Datadog query failed: {data.get('error')}")

        series = data.get("series") or []
        if not series:
            return []
        return [(point[0], point[1]) for point in series[0].get("pointlist", [])]

    def close(self) -> None:
        self.client.close()


class PrometheusBackend(MetricsBackend):
    """Prometheus range query API."""

    origin = "prometheus"

    QUERIES = {
        "error_rate": (
            'sum(rate(http_requests_total{{deployment="{ns}",status=~"5.."}}[5m])) / '
            'sum(rate(http_requests_total{{deployment="{ns}"}}[5m]))'
        ),
        "latency_p95": (
            'histogram_quantile(0.95, sum(rate(http_request_duration_seconds_bucket'
            '{{deployment="{ns}"}}[5m])) by (le)) * 1000'
        ),
        "latency_p99": (
            'histogram_quantile(0.99, sum(rate(http_request_duration_seconds_bucket'
            '{{deployment="{ns}"}}[5m])) by (le)) * 1000'
        ),
        "cpu_usage": 'avg(rate(container_cpu_usage_seconds_total{{deployment="{ns}"}}[5m])) * 100',
        "memory_usage": (
            'avg(container_memory_working_set_bytes{{deployment="{ns}"}} / '
            'container_spec_memory_limit_bytes{{deployment="{ns}"}}) * 100'
        ),
        "rate_5xx": (
            'sum(rate(http_requests_total{{deployment="{ns}",status=~"5.."}}[5m])) / '
            'sum(rate(http_requests_total{{deployment="{ns}"}}[5m]))'
        ),
        "rate_4xx": (
            'sum(rate(http_requests_total{{deployment="{ns}",status=~"4.."}}[5m])) / '
            'sum(rate(http_requests_total{{deployment="{ns}"}}[5m]))'
        ),
        "performance": 'avg(widget_performance_score{{deployment="{ns}"}})',
        "user_satisfaction": 'avg(widget_user_satisfaction{{deployment="{ns}"}})',
        "bot_detection_accuracy": 'avg(widget_bot_detection_accuracy{{deployment="{ns}"}})',
        "fingerprint_generation_time": 'avg(widget_fingerprint_generation_ms{{deployment="{ns}"}})',
        "blocked_attempts": 'sum(increase(widget_security_blocked_attempts_total{{deployment="{ns}"}}[5m]))',
        "sessions": 'sum(increase(widget_sessions_total{{deployment="{ns}"}}[5m]))',
        "bounce_rate": 'avg(widget_bounce_rate{{deployment="{ns}"}})',
        "avg_session_duration": 'avg(widget_session_duration_seconds{{deployment="{ns}"}})',
    }

    def __init__(
        self,
        url: str,
        step_seconds: int = 30,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url.rstrip("/")
        self.step_seconds = step_seconds
        self.client = client or httpx.Client(timeout=timeout)

    def build_query(self, metric: str, namespace: str) -> str:
        return self.QUERIES[metric].format(ns=namespace)

    def query(self, query: str, start: datetime, end: datetime) -> List[Point]:
        response = self.client.get(
            f"{self.url}/api/v1/query_range",
            params={
                "query": query,
                "start": start.timestamp(),
                "end": end.timestamp(),
                "step": f"{self.step_seconds}s",
            },
        )
        response.raise_for_status()

        data = response.json()
        if data.get("status") != "success":
            raise ValueError(f"Prometheus query failed: {data.get('error', data)}")

        result = data["data"]["result"]
        if not result:
            return []

        points = []
        for timestamp, raw in result[0].get("values", []):
            value = float(raw)
            points.append((float(timestamp), None if math.isnan(value) else value))
        return points

    def close(self) -> None:
        self.client.close()


# Signal ranges are the same in every namespace
SIMULATED_SIGNAL_RANGES: Dict[str, Tuple[float, float]] = {
    "performance": (90.0, 100.0),
    "user_satisfaction": (4.0, 5.0),
    "bot_detection_accuracy": (90.0, 100.0),
    "fingerprint_generation_time": (50.0, 100.0),
    "blocked_attempts": (0.0, 10.0),
    "sessions": (50.0, 150.0),
    "bounce_rate": (0.0, 30.0),
    "avg_session_duration": (60.0, 240.0),
}

# Plausible ranges for synthetic readings, per namespace
SIMULATED_RANGES: Dict[str, Dict[str, Tuple[float, float]]] = {
    "production": {
        "error_rate": (0.0, 0.03),
        "latency_p95": (300.0, 600.0),
        "latency_p99": (600.0, 1200.0),
        "cpu_usage": (60.0, 90.0),
        "memory_usage": (60.0, 90.0),
        "rate_5xx": (0.0, 0.02),
        "rate_4xx": (0.0, 0.06),
        **SIMULATED_SIGNAL_RANGES,
    },
    "canary": {
        "error_rate": (0.0, 0.02),
        "latency_p95": (200.0, 400.0),
        "latency_p99": (400.0, 800.0),
        "cpu_usage": (50.0, 80.0),
        "memory_usage": (50.0, 80.0),
        "rate_5xx": (0.0, 0.01),
        "rate_4xx": (0.0, 0.03),
        **SIMULATED_SIGNAL_RANGES,
    },
}


class SimulatedBackend(MetricsBackend):
    """Synthetic readings used when no real backend is configured.

    Every value produced here is tagged with origin ``simulated`` so that
    decisions made on synthetic data are never mistaken for real ones.
    """

    origin = "simulated"

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def build_query(self, metric: str, namespace: str) -> str:
        if metric not in SIMULATED_RANGES["production"]:
            raise KeyError(metric)
        return f"{namespace}:{metric}"

    def query(self, query: str, start: datetime, end: datetime) -> List[Point]:
        namespace, metric = query.split(":", 1)
        ranges = SIMULATED_RANGES.get(namespace, SIMULATED_RANGES["production"])
        low, high = ranges[metric]
        return [(end.timestamp(), self.rng.uniform(low, high))]


class MetricSource:
    """Fetches logical metrics for one deployment namespace."""

    def __init__(
        self,
        backend: MetricsBackend,
        namespace: str,
        breaker: Optional[pybreaker.CircuitBreaker] = None,
    ):
        """Initialize metric source.

        Args:
            backend: Backend adapter answering the queries
            namespace: Deployment namespace (``canary`` or ``production``)
            breaker: Circuit breaker wrapped around backend calls
        """
        self.backend = backend
        self.namespace = namespace
        self.breaker = breaker

    @property
    def origin(self) -> str:
        return self.backend.origin

    async def fetch(
        self,
        names: Iterable[str],
        window: Tuple[datetime, datetime],
    ) -> Dict[str, Optional[float]]:
        """Fetch the mean of each metric over the window.

        Args:
            names: Logical metric names
            window: (start, end) of the query range

        Returns:
            Mapping of metric name to mean value, None where unavailable
        """
        names = list(names)
        start, end = window
        values = await asyncio.gather(*(self._fetch_one(name, start, end) for name in names))
        return dict(zip(names, values))

    async def _fetch_one(self, name: str, start: datetime, end: datetime) -> Optional[float]:
        try:
            query = self.backend.build_query(name, self.namespace)
        except KeyError:
            logger.error(f"Metric {name} is not served by the {self.origin} backend")
            return None

        try:
            if self.breaker is not None:
                points = await asyncio.to_thread(self.breaker.call, self.backend.query, query, start, end)
            else:
                points = await asyncio.to_thread(self.backend.query, query, start, end)
        except pybreaker.CircuitBreakerError as e:
            logger.warning(f"⚠️  Metrics backend circuit open, {name} unavailable: {e}")
            return None
        except (httpx.HTTPError, ValueError, KeyError, TypeError, IndexError) as e:
            logger.error(f"Failed to fetch {name} from {self.origin}: {e}")
            return None

        readings = [value for _, value in points if value is not None]
        if not readings:
            logger.debug(f"No data for {name} ({self.origin}) in window")
            return None

        value = average(readings)
        logger.debug(f"{name} ({self.namespace}, {self.origin}): {value}")
        return value

    def close(self) -> None:
        self.backend.close()


def build_metric_source(
    settings: Settings,
    namespace: str,
    breaker: Optional[pybreaker.CircuitBreaker] = None,
    rng: Optional[random.Random] = None,
) -> MetricSource:
    """Select a backend from settings.

    ``METRICS_BACKEND=auto`` prefers Datadog, then Prometheus, and degrades
    to simulated readings when neither is configured. The degradation is
    logged and visible through ``MetricSource.origin``.

    Raises:
        ConfigurationError: If an explicitly requested backend lacks credentials
    """
    choice = settings.METRICS_BACKEND.lower()
    if choice not in ("auto", "datadog", "prometheus", "simulated"):
        raise ConfigurationError(f"Unknown METRICS_BACKEND: {settings.METRICS_BACKEND}")

    if choice == "datadog" or (choice == "auto" and settings.DATADOG_API_KEY):
        if not settings.DATADOG_API_KEY:
            raise ConfigurationError("METRICS_BACKEND=datadog requires DATADOG_API_KEY")
        backend: MetricsBackend = DatadogBackend(
            api_key=settings.DATADOG_API_KEY,
            app_key=settings.DATADOG_APP_KEY,
            site=settings.DATADOG_SITE,
            prefix=settings.METRIC_PREFIX,
            timeout=settings.BACKEND_TIMEOUT,
        )
    elif choice == "prometheus" or (choice == "auto" and settings.PROMETHEUS_URL):
        if not settings.PROMETHEUS_URL:
            raise ConfigurationError("METRICS_BACKEND=prometheus requires PROMETHEUS_URL")
        backend = PrometheusBackend(
            url=settings.PROMETHEUS_URL,
            step_seconds=max(int(settings.CHECK_INTERVAL), 1),
            timeout=settings.BACKEND_TIMEOUT,
        )
    else:
        if choice == "auto":
            logger.warning(
                "⚠️  No metrics backend credentials configured; using SIMULATED metrics. "
                "Decisions in this run are based on synthetic data."
            )
        backend = SimulatedBackend(rng=rng)
        breaker = None

    logger.info(f"Metrics backend: {backend.origin} (namespace={namespace})")
    return MetricSource(backend, namespace=namespace, breaker=breaker)
