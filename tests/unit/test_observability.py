"""Tests for logging and tracing setup."""
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

from src.rollout.core.config import Settings
from src.rollout.core.logging import json_formatter, logger, setup_logging
from src.rollout.monitoring.tracing import set_span_attributes, setup_tracing


class TestLogging:
    """Test log sinks and the JSON format."""

    def test_json_formatter(self):
        """Test that the JSON line carries bound context and survives braces."""
        level = MagicMock()
        level.name = "INFO"
        record = {
            "time": datetime(2026, 3, 1, tzinfo=timezone.utc),
            "level": level,
            "message": "query avg:widget.canary.error_rate{env:canary}",
            "name": "src.rollout.monitoring.metric_source",
            "exception": None,
            "extra": {"command": "monitor", "version": "1.2.0", "kind": None},
        }

        template = json_formatter(record)
        entry = json.loads(record["extra"]["json"])

        assert template == "{extra[json]}\n"
        assert entry["service"] == "rollout-controller"
        assert entry["message"].endswith("{env:canary}")
        assert entry["command"] == "monitor"
        assert entry["version"] == "1.2.0"
        assert "kind" not in entry
        assert entry["trace_id"] is None

    def test_file_sink(self, tmp_path):
        """Test that a named run log is written under LOG_DIR."""
        settings = Settings(_env_file=None, ENV="dev", LOG_DIR=str(tmp_path))

        setup_logging(settings, log_name="monitor.log")
        logger.info("hello from the monitor")
        logger.remove()

        assert "hello from the monitor" in (tmp_path / "monitor.log").read_text()


class TestTracing:
    """Test tracing setup."""

    def test_disabled_without_endpoint(self):
        """Test that no exporter is installed when the endpoint is 'none'."""
        assert setup_tracing(Settings(_env_file=None)) is None

    def test_span_attributes_skip_none(self):
        """Test that None attributes are not set."""
        span = MagicMock()
        span.is_recording.return_value = True

        set_span_attributes(span, version="1.2.0", target=None)

        span.set_attribute.assert_called_once_with("version", "1.2.0")
