"""Unit tests for controller metrics export."""
from unittest.mock import patch

from src.rollout.deployment.evaluator import ThresholdEvaluator, Thresholds
from src.rollout.monitoring.metrics import REGISTRY, push_metrics, record_action, record_evaluation


class TestControllerMetrics:
    """Test Prometheus gauges, counters and Pushgateway pushes."""

    def test_record_evaluation(self):
        """Test that values and thresholds are exported per metric."""
        evaluator = ThresholdEvaluator(Thresholds(limits={"error_rate": 0.02, "cpu_usage": 80.0}))
        evaluation = evaluator.evaluate({"error_rate": 0.01, "cpu_usage": None}, sample_size=5)

        record_evaluation("metrics-test", evaluation)

        labels = {"kind": "metrics-test", "metric": "error_rate"}
        assert REGISTRY.get_sample_value("rollout_metric_value", labels) == 0.01
        assert REGISTRY.get_sample_value("rollout_metric_threshold", labels) == 0.02
        assert REGISTRY.get_sample_value(
            "rollout_metric_value", {"kind": "metrics-test", "metric": "cpu_usage"}
        ) is None

    def test_record_action(self):
        """Test action counters."""
        before = REGISTRY.get_sample_value(
            "rollout_actions_total", {"action": "rollback", "outcome": "test"}
        ) or 0.0

        record_action("rollback", "test")

        after = REGISTRY.get_sample_value("rollout_actions_total", {"action": "rollback", "outcome": "test"})
        assert after == before + 1

    def test_push_without_gateway(self):
        """Test that no gateway means no push."""
        assert push_metrics(None) is False

    def test_push_failure_is_reported(self):
        """Test that an unreachable gateway returns False instead of raising."""
        with patch("src.rollout.monitoring.metrics.push_to_gateway", side_effect=OSError("refused")):
            assert push_metrics("localhost:9091") is False

    def test_push(self):
        """Test that the dedicated registry is pushed with the grouping key."""
        with patch("src.rollout.monitoring.metrics.push_to_gateway") as push:
            assert push_metrics("localhost:9091", grouping_key={"kind": "canary"}) is True

        push.assert_called_once_with(
            "localhost:9091", job="rollout-controller", registry=REGISTRY, grouping_key={"kind": "canary"}
        )
