"""Consecutive-failure hysteresis in front of the rollback workflow."""
from enum import Enum

from loguru import logger

from src.rollout.deployment.evaluator import EvaluationStatus


class HealthState(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ESCALATED = "escalated"


class FailureHysteresis:
    """Escalates only after ``threshold`` consecutive failing evaluations.

    A passing evaluation resets the counter; an insufficient-data
    evaluation leaves it untouched. Escalation is reported once per run of
    failures: further failures while escalated keep counting but do not
    escalate again until a pass or an operator decline resets the state.
    """

    def __init__(self, threshold: int = 3):
        if threshold < 1:
            raise ValueError("Escalation threshold must be >= 1")
        self.threshold = threshold
        self.consecutive_failures = 0
        self.state = HealthState.HEALTHY

    def observe(self, status: EvaluationStatus) -> bool:
        """Feed one evaluation outcome.

        Args:
            status: Overall status of the latest evaluation

        Returns:
            True exactly when this observation triggers escalation
        """
        if status == EvaluationStatus.INSUFFICIENT_DATA:
            return False

        if status == EvaluationStatus.PASS:
            if self.consecutive_failures:
                logger.info(f"Recovered after {self.consecutive_failures} failing check(s)")
            self.reset()
            return False

        self.consecutive_failures += 1
        if self.state == HealthState.ESCALATED:
            return False

        if self.consecutive_failures >= self.threshold:
            self.state = HealthState.ESCALATED
            logger.error(
                f"🚨 {self.consecutive_failures} consecutive failures, escalating to rollback"
            )
            return True

        self.state = HealthState.DEGRADED
        logger.warning(f"Consecutive failures: {self.consecutive_failures}/{self.threshold}")
        return False

    def decline(self) -> None:
        """Operator declined the rollback; start counting from zero."""
        logger.info("Rollback declined, resetting failure counter")
        self.reset()

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.state = HealthState.HEALTHY
