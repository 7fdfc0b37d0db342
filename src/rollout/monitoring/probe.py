"""HTTP health probes against the deployed endpoints."""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger


@dataclass
class EndpointTarget:
    """A URL probed once per tick."""
    name: str
    url: str


@dataclass
class ProbeResult:
    """Outcome of a single probe.

    A non-2xx status, a transport error and a timeout are all failures;
    ``error`` carries the reason for logs and reports.
    """
    name: str
    url: str
    success: bool
    status_code: Optional[int]
    latency_ms: float
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "url": self.url,
            "success": self.success,
            "status_code": self.status_code,
            "latency_ms": round(self.latency_ms, 2),
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class EndpointProbe:
    """Probes a fixed set of endpoints concurrently.

    Each request is bounded by ``timeout`` seconds in total, so a single
    hanging endpoint cannot stall the tick.
    """

    def __init__(
        self,
        targets: List[EndpointTarget],
        timeout: float = 5.0,
        params: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize probe.

        Args:
            targets: Endpoints to probe each tick
            timeout: Total per-request timeout in seconds
            params: Query parameters added to every request (``canary=1``)
            client: Pre-built client (tests inject a MockTransport)
        """
        if timeout <= 0:
            raise ValueError("Probe timeout must be positive")
        self.targets = list(targets)
        self.timeout = timeout
        self.params = params or {}
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def probe(self, target: EndpointTarget) -> ProbeResult:
        """Probe a single endpoint. Never raises for network failures."""
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self.client.get(target.url, params=self.params),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning(f"⏱️  {target.name}: timed out after {self.timeout}s")
            return ProbeResult(
                name=target.name,
                url=target.url,
                success=False,
                status_code=None,
                latency_ms=self.timeout * 1000,
                error="timeout",
            )
        except httpx.HTTPError as e:
            latency_ms = (time.perf_counter() - start) * 1000
            logger.warning(f"❌ {target.name}: {type(e).__name__}: {e}")
            return ProbeResult(
                name=target.name,
                url=target.url,
                success=False,
                status_code=None,
                latency_ms=latency_ms,
                error=str(e) or type(e).__name__,
            )

        latency_ms = (time.perf_counter() - start) * 1000
        success = response.is_success

        if success:
            logger.debug(f"✅ {target.name}: {response.status_code} ({latency_ms:.0f}ms)")
        else:
            logger.warning(f"❌ {target.name}: HTTP {response.status_code} ({latency_ms:.0f}ms)")

        return ProbeResult(
            name=target.name,
            url=target.url,
            success=success,
            status_code=response.status_code,
            latency_ms=latency_ms,
            error=None if success else f"HTTP {response.status_code}",
        )

    async def probe_all(self) -> List[ProbeResult]:
        """Probe every target concurrently, preserving target order."""
        if not self.targets:
            return []
        return list(await asyncio.gather(*(self.probe(t) for t in self.targets)))

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "EndpointProbe":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
