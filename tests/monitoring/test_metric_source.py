"""Unit tests for metric backends and the metric source."""
import random
from datetime import datetime, timedelta, timezone

import httpx
import pybreaker
import pytest

from src.rollout.core.circuit_breaker import create_breaker
from src.rollout.core.config import Settings
from src.rollout.core.errors import ConfigurationError
from src.rollout.monitoring.metric_source import (
    DatadogBackend,
    MetricSource,
    MetricsBackend,
    PrometheusBackend,
    SIGNAL_NAMES,
    SIMULATED_RANGES,
    SimulatedBackend,
    build_metric_source,
)

END = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
WINDOW = (END - timedelta(minutes=5), END)


class FakeBackend(MetricsBackend):
    origin = "fake"

    def __init__(self, points=None, failing=()):
        self.points = points or {}
        self.failing = set(failing)
        self.calls = 0

    def build_query(self, metric, namespace):
        return metric

    def query(self, query, start, end):
        self.calls += 1
        if query in self.failing:
            raise httpx.ConnectError("backend down")
        return self.points.get(query, [])


def _settings(**overrides):
    values = {
        "METRICS_BACKEND": "auto",
        "DATADOG_API_KEY": None,
        "DATADOG_APP_KEY": None,
        "PROMETHEUS_URL": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestMetricSource:
    """Test fetch, reduction and failure isolation."""

    @pytest.mark.asyncio
    async def test_fetch_returns_series_mean(self):
        """Test that each metric reduces to the mean of its points."""
        backend = FakeBackend(points={"error_rate": [(1, 0.01), (2, 0.03)], "cpu_usage": [(1, 40.0)]})
        source = MetricSource(backend, namespace="canary")

        values = await source.fetch(["error_rate", "cpu_usage"], WINDOW)

        assert values["error_rate"] == pytest.approx(0.02)
        assert values["cpu_usage"] == 40.0
        assert source.origin == "fake"

    @pytest.mark.asyncio
    async def test_null_points_are_dropped(self):
        """Test that null points do not drag the mean down."""
        backend = FakeBackend(points={"latency_p95": [(1, None), (2, 200.0), (3, 300.0)]})
        source = MetricSource(backend, namespace="production")

        values = await source.fetch(["latency_p95"], WINDOW)

        assert values["latency_p95"] == 250.0

    @pytest.mark.asyncio
    async def test_empty_series_is_none(self):
        """Test that a metric without data is None."""
        source = MetricSource(FakeBackend(points={"error_rate": [(1, None)]}), namespace="canary")

        values = await source.fetch(["error_rate", "cpu_usage"], WINDOW)

        assert values == {"error_rate": None, "cpu_usage": None}

    @pytest.mark.asyncio
    async def test_failure_isolated_to_one_metric(self):
        """Test that one failing query does not stop the others."""
        backend = FakeBackend(points={"cpu_usage": [(1, 55.0)]}, failing={"error_rate"})
        source = MetricSource(backend, namespace="canary")

        values = await source.fetch(["error_rate", "cpu_usage"], WINDOW)

        assert values["error_rate"] is None
        assert values["cpu_usage"] == 55.0

    @pytest.mark.asyncio
    async def test_open_breaker_short_circuits(self):
        """Test that an open circuit returns None without calling the backend."""
        backend = FakeBackend(failing={"error_rate", "cpu_usage"})
        breaker = pybreaker.CircuitBreaker(fail_max=1, reset_timeout=60)
        source = MetricSource(backend, namespace="canary", breaker=breaker)

        first = await source.fetch(["error_rate"], WINDOW)
        second = await source.fetch(["cpu_usage"], WINDOW)

        assert first["error_rate"] is None
        assert second["cpu_usage"] is None
        assert backend.calls == 1
        assert breaker.current_state == pybreaker.STATE_OPEN

    @pytest.mark.asyncio
    async def test_unknown_metric_for_backend(self):
        """Test that a metric the backend cannot build is None."""
        source = MetricSource(SimulatedBackend(), namespace="canary")

        values = await source.fetch(["endpoint_error_rate"], WINDOW)

        assert values["endpoint_error_rate"] is None


class TestDatadogBackend:
    """Test Datadog query construction and parsing."""

    def test_signal_queries(self):
        """Test that informational signals map to namespaced Datadog queries."""
        backend = DatadogBackend(api_key="dd-api", client=httpx.Client(transport=httpx.MockTransport(
            lambda r: httpx.Response(200, json={"series": []})
        )))

        assert backend.build_query("bot_detection_accuracy", "production") == (
            "avg:widget.production.bot_detection.accuracy{env:production}"
        )
        assert backend.build_query("sessions", "canary") == (
            "sum:widget.canary.engagement.sessions{env:canary}.as_count()"
        )
        for name in SIGNAL_NAMES:
            assert "{env:canary}" in backend.build_query(name, "canary")

    def test_query_and_pointlist(self):
        """Test request params, auth headers and pointlist parsing."""
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["query"] = request.url.params["query"]
            seen["from"] = request.url.params["from"]
            seen["api_key"] = request.headers["DD-API-KEY"]
            seen["app_key"] = request.headers["DD-APPLICATION-KEY"]
            return httpx.Response(200, json={
                "status": "ok",
                "series": [{"pointlist": [[1000, 0.01], [2000, None]]}],
            })

        backend = DatadogBackend(
            api_key="dd-api",
            app_key="dd-app",
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        query = backend.build_query("error_rate", "canary")

        points = backend.query(query, *WINDOW)

        assert query == "avg:widget.canary.error_rate{env:canary}"
        assert seen["path"] == "/api/v1/query"
        assert seen["query"] == query
        assert seen["from"] == str(int(WINDOW[0].timestamp()))
        assert seen["api_key"] == "dd-api"
        assert seen["app_key"] == "dd-app"
        assert points == [(1000, 0.01), (2000, None)]

    def test_empty_series(self):
        """Test that a response without series yields no points."""
        backend = DatadogBackend(
            api_key="k",
            client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"series": []}))),
        )
        assert backend.query("q", *WINDOW) == []

    def test_http_error_raises(self):
        """Test that a non-2xx response raises for the caller to handle."""
        backend = DatadogBackend(
            api_key="k",
            client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(403))),
        )
        with pytest.raises(httpx.HTTPStatusError):
            backend.query("q", *WINDOW)


class TestPrometheusBackend:
    """Test Prometheus range query parsing."""

    def test_values_parsed_and_nan_dropped(self):
        """Test that string values become floats and NaN becomes None."""
        def handler(request):
            assert request.url.path == "/api/v1/query_range"
            assert request.url.params["step"] == "30s"
            return httpx.Response(200, json={
                "status": "success",
                "data": {"result": [{"values": [[1000, "0.5"], [1030, "NaN"]]}]},
            })

        backend = PrometheusBackend(
            url="http://prom:9090/",
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )

        points = backend.query(backend.build_query("cpu_usage", "canary"), *WINDOW)

        assert points == [(1000.0, 0.5), (1030.0, None)]

    def test_error_status_raises(self):
        """Test that a failed query is a ValueError."""
        backend = PrometheusBackend(
            url="http://prom:9090",
            client=httpx.Client(transport=httpx.MockTransport(
                lambda r: httpx.Response(200, json={"status": "error", "error": "bad query"})
            )),
        )
        with pytest.raises(ValueError, match="bad query"):
            backend.query("q", *WINDOW)


class TestSimulatedBackend:
    """Test synthetic readings."""

    def test_values_within_namespace_ranges(self):
        """Test that every simulated value stays inside its range."""
        backend = SimulatedBackend(rng=random.Random(7))
        for namespace, ranges in SIMULATED_RANGES.items():
            for metric, (low, high) in ranges.items():
                [(_, value)] = backend.query(backend.build_query(metric, namespace), *WINDOW)
                assert low <= value <= high

    @pytest.mark.asyncio
    async def test_signals_simulated_in_every_namespace(self):
        """Test that every informational signal has synthetic readings."""
        for namespace in ("canary", "production"):
            source = MetricSource(SimulatedBackend(rng=random.Random(3)), namespace=namespace)
            values = await source.fetch(SIGNAL_NAMES, WINDOW)
            assert all(value is not None for value in values.values())
            assert 4.0 <= values["user_satisfaction"] <= 5.0


class TestBuildMetricSource:
    """Test backend selection from settings."""

    def test_auto_prefers_datadog(self):
        """Test that a Datadog key selects Datadog."""
        source = build_metric_source(_settings(DATADOG_API_KEY="k"), "canary")
        assert source.origin == "datadog"

    def test_auto_uses_prometheus(self):
        """Test that a Prometheus URL selects Prometheus."""
        source = build_metric_source(_settings(PROMETHEUS_URL="http://prom:9090"), "production")
        assert source.origin == "prometheus"

    def test_auto_falls_back_to_simulated(self):
        """Test that missing credentials degrade to simulated readings without a breaker."""
        source = build_metric_source(_settings(), "canary", breaker=create_breaker("test_simulated"))
        assert source.origin == "simulated"
        assert source.breaker is None

    def test_explicit_backend_without_credentials(self):
        """Test that an explicitly chosen backend must be configured."""
        with pytest.raises(ConfigurationError, match="DATADOG_API_KEY"):
            build_metric_source(_settings(METRICS_BACKEND="datadog"), "canary")

    def test_unknown_backend(self):
        """Test that an unknown backend name is a configuration error."""
        with pytest.raises(ConfigurationError):
            build_metric_source(_settings(METRICS_BACKEND="graphite"), "canary")
