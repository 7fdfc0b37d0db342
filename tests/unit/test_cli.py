"""Tests for the command line entry point."""
import json

import pytest

from src.rollout.cli import ExitCode, build_parser, main, threshold_overrides
from src.rollout.core.errors import ConfigurationError
from src.rollout.deployment.release import release_version
from src.rollout.models.schemas import DeploymentKind

ENV_VARS = [
    "SLACK_WEBHOOK_URL",
    "DATADOG_API_KEY",
    "DATADOG_APP_KEY",
    "PROMETHEUS_URL",
    "METRICS_BACKEND",
    "PUSHGATEWAY_URL",
    "LEDGER_PATH",
    "BACKUPS_DIR",
    "LOG_DIR",
    "REPORTS_DIR",
    "ENV",
]


@pytest.fixture(autouse=True)
def workdir(tmp_path, monkeypatch):
    """Run every command in an empty directory with a clean environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestParser:
    """Test argument parsing."""

    def test_monitor_defaults(self):
        """Test monitor defaults and threshold overrides."""
        args = build_parser().parse_args([
            "monitor", "--version", "1.2.0",
            "--threshold-error-rate", "0.05", "--min-sample-size", "10",
        ])

        assert args.kind == "production"
        assert args.escalation_threshold == 3
        assert args.auto_rollback is False
        assert args.min_sample_size == 10
        overrides = threshold_overrides(args)
        assert overrides["error_rate"] == 0.05
        assert overrides["latency_p95"] is None

    def test_command_required(self):
        """Test that a subcommand is mandatory."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestReleaseAndStatus:
    """Test ledger commands through main()."""

    def test_release_then_status(self, workdir, capsys):
        """Test that a released canary shows up as pending."""
        assert main(["release", "--version", "1.2.0", "--type", "canary", "--canary-number", "2"]) == ExitCode.OK
        assert capsys.readouterr().out.strip() == "1.2.0-canary.2"

        assert main(["status"]) == ExitCode.OK
        records = json.loads(capsys.readouterr().out)

        assert len(records) == 1
        assert records[0]["kind"] == "canary"
        assert records[0]["version"] == "1.2.0-canary.2"
        assert records[0]["status"] == "pending"
        assert (workdir / ".deployment-record.json").exists()

    def test_invalid_version(self):
        """Test that a non-semver release is a configuration error."""
        assert main(["release", "--version", "banana"]) == ExitCode.CONFIG_ERROR

    def test_duplicate_release(self):
        """Test that releasing the same version twice is rejected."""
        assert main(["release", "--version", "1.2.0"]) == ExitCode.OK
        assert main(["release", "--version", "1.2.0"]) == ExitCode.CONFIG_ERROR

    def test_status_unknown_version(self):
        """Test that asking for an unknown version fails."""
        assert main(["status", "--version", "9.9.9"]) == ExitCode.CONFIG_ERROR

    def test_release_version(self):
        """Test canary suffixing and numbering."""
        assert release_version("1.2.0", DeploymentKind.PRODUCTION) == "1.2.0"
        assert release_version("1.2.0", DeploymentKind.CANARY) == "1.2.0-canary.1"
        with pytest.raises(ConfigurationError):
            release_version("1.2.0", DeploymentKind.CANARY, canary_number=0)


class TestActionCommands:
    """Test failure paths of the long-running commands."""

    def test_rollback_without_target(self, workdir):
        """Test that a rollback with no backups and no target exits 3."""
        code = main(["rollback", "--dry-run", "--auto-rollback"])

        assert code == ExitCode.CONFIG_ERROR
        assert (workdir / "logs" / "rollback.log").exists()

    def test_monitor_negative_threshold(self):
        """Test that invalid threshold overrides are rejected up front."""
        code = main(["monitor", "--version", "1.2.0", "--threshold-error-rate", "-1"])
        assert code == ExitCode.CONFIG_ERROR

    def test_monitor_unknown_version(self):
        """Test that monitoring an unrecorded version exits 3."""
        code = main(["monitor", "--version", "9.9.9", "--dry-run"])
        assert code == ExitCode.CONFIG_ERROR
