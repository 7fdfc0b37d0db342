"""Circuit breaker guarding the metrics backend."""
import pybreaker
from prometheus_client import Gauge
from loguru import logger

from src.rollout.monitoring.metrics import REGISTRY

CIRCUIT_STATE = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state: 0=closed, 1=open, 2=half_open",
    ["service"],
    registry=REGISTRY,
)

STATE_VALUES = {
    pybreaker.STATE_CLOSED: 0,
    pybreaker.STATE_OPEN: 1,
    pybreaker.STATE_HALF_OPEN: 2,
}


class StateExportListener(pybreaker.CircuitBreakerListener):
    """Logs state changes and mirrors them into CIRCUIT_STATE."""

    def state_change(self, cb, old_state, new_state):
        name = new_state.name if new_state else "unknown"
        if name == pybreaker.STATE_OPEN:
            logger.error(f"🔴 Circuit OPEN for {cb.name}")
        elif name == pybreaker.STATE_HALF_OPEN:
            logger.warning(f"🟡 Circuit HALF-OPEN for {cb.name}")
        else:
            logger.info(f"🟢 Circuit CLOSED for {cb.name}")
        CIRCUIT_STATE.labels(service=cb.name).set(STATE_VALUES.get(name, 0))


def create_breaker(
    name: str = "metrics_backend",
    fail_max: int = 5,
    reset_timeout: int = 60,
) -> pybreaker.CircuitBreaker:
    """Build a breaker for one backend.

    Args:
        name: Service label used in logs and the state gauge
        fail_max: Consecutive failures before the circuit opens
        reset_timeout: Seconds before a half-open trial call

    Returns:
        Configured pybreaker.CircuitBreaker
    """
    CIRCUIT_STATE.labels(service=name).set(0)
    return pybreaker.CircuitBreaker(
        fail_max=fail_max,
        reset_timeout=reset_timeout,
        name=name,
        listeners=[StateExportListener()],
    )
