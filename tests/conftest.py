import os

import pytest

# Disable OTLP export during tests to prevent connection errors
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = "none"

from src.rollout.deployment.backups import BackupRegistry
from src.rollout.deployment.ledger import DeploymentLedger

from tests.fakes import FakeClock, FakeHosting, RecordingNotifier


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hosting():
    return FakeHosting()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ledger(tmp_path):
    return DeploymentLedger(str(tmp_path / ".deployment-record.json"))


@pytest.fixture
def backups(tmp_path):
    return BackupRegistry(str(tmp_path / "backups"))
