"""Unit tests for the Firebase Hosting CLI adapter."""
import json
import subprocess

import pytest

from src.rollout.core.errors import HostingError
from src.rollout.hosting.firebase import FirebaseHosting


class FakeRunner:
    """Records commands and replays canned CLI output."""

    def __init__(self, stdout="", returncode=0, stderr=""):
        self.stdout = stdout
        self.returncode = returncode
        self.stderr = stderr
        self.commands = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        return subprocess.CompletedProcess(cmd, self.returncode, stdout=self.stdout, stderr=self.stderr)


VERSIONS = {
    "status": "success",
    "result": {
        "versions": [
            {"name": "sites/widget/versions/abc123", "status": "FINALIZED", "labels": {"environment": "canary"}},
            {"name": "sites/widget/versions/def456", "status": "FINALIZED"},
        ]
    },
}

CHANNELS = {
    "status": "success",
    "result": {
        "channels": [
            {
                "name": "sites/widget/channels/live",
                "url": "https://widget.web.app",
                "release": {"version": {"name": "sites/widget/versions/def456"}},
            },
            {
                "name": "sites/widget/channels/canary",
                "release": {"version": {"name": "sites/widget/versions/abc123"}},
            },
        ]
    },
}


class TestFirebaseHosting:
    """Test command construction and output parsing."""

    def test_list_versions(self):
        """Test that version ids are taken from resource names."""
        runner = FakeRunner(stdout=json.dumps(VERSIONS))
        hosting = FirebaseHosting(project="widget-prod", runner=runner)

        versions = hosting.list_versions()

        assert [v.version_id for v in versions] == ["abc123", "def456"]
        assert versions[0].labels == {"environment": "canary"}
        assert runner.commands[0] == [
            "firebase", "hosting:versions:list", "--json", "--project", "widget-prod",
        ]

    def test_live_and_canary_versions(self):
        """Test live lookup through channels and canary lookup through labels."""
        hosting = FirebaseHosting(runner=FakeRunner(stdout=json.dumps(CHANNELS)))
        assert hosting.current_live_version() == "def456"

        hosting = FirebaseHosting(runner=FakeRunner(stdout=json.dumps(VERSIONS)))
        assert hosting.canary_version() == "abc123"

    def test_clone_with_site(self):
        """Test site-qualified clone arguments."""
        runner = FakeRunner()
        hosting = FirebaseHosting(site="widget", runner=runner)

        hosting.clone_version_to_target("abc123", "live", 100)

        assert runner.commands[0] == ["firebase", "hosting:clone", "widget@abc123", "widget:live"]

    def test_partial_traffic_unsupported(self):
        """Test that split traffic is refused before running anything."""
        runner = FakeRunner()
        hosting = FirebaseHosting(runner=runner)

        with pytest.raises(HostingError, match="100%"):
            hosting.clone_version_to_target("abc123", "live", 50)
        assert runner.commands == []

    def test_non_zero_exit(self):
        """Test that a failing CLI call raises HostingError with its stderr."""
        hosting = FirebaseHosting(runner=FakeRunner(returncode=1, stderr="permission denied"))

        with pytest.raises(HostingError, match="permission denied"):
            hosting.clone_version_to_target("abc123", "live", 100)

    def test_unparsable_output(self):
        """Test that non-JSON output raises HostingError."""
        hosting = FirebaseHosting(runner=FakeRunner(stdout="Error: not logged in"))

        with pytest.raises(HostingError, match="Unparsable"):
            hosting.list_versions()

    def test_missing_binary(self):
        """Test that a missing CLI binary is a hosting error."""
        def runner(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        with pytest.raises(HostingError):
            FirebaseHosting(runner=runner).list_channels()
