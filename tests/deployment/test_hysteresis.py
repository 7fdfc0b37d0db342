"""Unit tests for consecutive-failure hysteresis."""
import pytest

from src.rollout.deployment.evaluator import EvaluationStatus
from src.rollout.deployment.hysteresis import FailureHysteresis, HealthState

PASS = EvaluationStatus.PASS
FAIL = EvaluationStatus.FAIL
INSUFFICIENT = EvaluationStatus.INSUFFICIENT_DATA


class TestFailureHysteresis:
    """Test escalation, recovery and decline."""

    def test_escalates_on_threshold(self):
        """Test that the Nth consecutive failure escalates."""
        hysteresis = FailureHysteresis(threshold=3)

        assert [hysteresis.observe(FAIL) for _ in range(3)] == [False, False, True]
        assert hysteresis.state == HealthState.ESCALATED

    def test_pass_resets(self):
        """Test that a pass in between restarts the count."""
        hysteresis = FailureHysteresis(threshold=3)
        for status in (FAIL, FAIL, PASS, FAIL, FAIL):
            assert hysteresis.observe(status) is False
        assert hysteresis.consecutive_failures == 2
        assert hysteresis.state == HealthState.DEGRADED

    def test_insufficient_data_is_neutral(self):
        """Test that insufficient data neither counts nor resets."""
        hysteresis = FailureHysteresis(threshold=2)
        hysteresis.observe(FAIL)
        hysteresis.observe(INSUFFICIENT)

        assert hysteresis.consecutive_failures == 1
        assert hysteresis.observe(FAIL) is True

    def test_escalates_once(self):
        """Test that further failures while escalated do not escalate again."""
        hysteresis = FailureHysteresis(threshold=1)

        assert hysteresis.observe(FAIL) is True
        assert hysteresis.observe(FAIL) is False
        assert hysteresis.consecutive_failures == 2

    def test_decline_rearms(self):
        """Test that a declined rollback restarts counting from zero."""
        hysteresis = FailureHysteresis(threshold=2)
        hysteresis.observe(FAIL)
        hysteresis.observe(FAIL)

        hysteresis.decline()

        assert hysteresis.state == HealthState.HEALTHY
        assert hysteresis.observe(FAIL) is False
        assert hysteresis.observe(FAIL) is True

    def test_invalid_threshold(self):
        """Test that a zero threshold is rejected."""
        with pytest.raises(ValueError):
            FailureHysteresis(threshold=0)
