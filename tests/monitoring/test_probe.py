"""Unit tests for HTTP endpoint probes."""
import asyncio

import httpx
import pytest

from src.rollout.monitoring.probe import EndpointProbe, EndpointTarget


def _probe(handler, targets, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EndpointProbe(targets, client=client, **kwargs)


class TestEndpointProbe:
    """Test probe outcomes for healthy and failing endpoints."""

    @pytest.mark.asyncio
    async def test_success(self):
        """Test that a 2xx response is a success."""
        probe = _probe(lambda request: httpx.Response(200), [EndpointTarget("Health", "https://x.test/health")])

        results = await probe.probe_all()

        assert len(results) == 1
        assert results[0].success is True
        assert results[0].status_code == 200
        assert results[0].error is None
        assert results[0].latency_ms >= 0

    @pytest.mark.asyncio
    async def test_server_error_is_failure(self):
        """Test that a 503 is a failure with the status recorded."""
        probe = _probe(lambda request: httpx.Response(503), [EndpointTarget("API", "https://x.test/api")])

        result = (await probe.probe_all())[0]

        assert result.success is False
        assert result.status_code == 503
        assert result.error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_transport_error_is_failure(self):
        """Test that a connection error becomes a failed result, not an exception."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        probe = _probe(handler, [EndpointTarget("Auth", "https://x.test/auth")])

        result = (await probe.probe_all())[0]

        assert result.success is False
        assert result.status_code is None
        assert "connection refused" in result.error

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test that a hanging endpoint fails with the timeout as latency."""
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200)

        probe = _probe(handler, [EndpointTarget("Slow", "https://x.test/slow")], timeout=0.05)

        result = (await probe.probe_all())[0]

        assert result.success is False
        assert result.error == "timeout"
        assert result.latency_ms == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_canary_params_sent(self):
        """Test that configured query params reach every request."""
        seen = []

        def handler(request):
            seen.append(request.url.params.get("canary"))
            return httpx.Response(200)

        probe = _probe(
            handler,
            [EndpointTarget("A", "https://x.test/a"), EndpointTarget("B", "https://x.test/b")],
            params={"canary": "1"},
        )

        await probe.probe_all()

        assert seen == ["1", "1"]

    @pytest.mark.asyncio
    async def test_results_keep_target_order(self):
        """Test that concurrent probing preserves target order."""
        async def handler(request):
            if request.url.path == "/first":
                await asyncio.sleep(0.02)
            return httpx.Response(200)

        targets = [EndpointTarget("first", "https://x.test/first"), EndpointTarget("second", "https://x.test/second")]
        probe = _probe(handler, targets)

        results = await probe.probe_all()

        assert [r.name for r in results] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_no_targets(self):
        """Test that an empty target list yields no results."""
        probe = _probe(lambda request: httpx.Response(200), [])
        assert await probe.probe_all() == []

    def test_invalid_timeout_rejected(self):
        """Test that a non-positive timeout is rejected."""
        with pytest.raises(ValueError):
            EndpointProbe([], timeout=0)
