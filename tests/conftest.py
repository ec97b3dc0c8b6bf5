"""
Fleet Guardian - pytest configuration

Shared fixtures for all tests.
"""
import os
import tempfile

# keep log files out of the working tree; must run before the package is imported
os.environ.setdefault("LOG_DIR", os.path.join(tempfile.gettempdir(), "fleet_guardian_test_logs"))

import pytest

from fleet_guardian.config import ConfigStore, MonitorConfig
from fleet_guardian.reports import DistanceHistory
from fleet_guardian.store import MemoryStore
from fleet_guardian.telemetry import VehicleSample
from fleet_guardian.tracker import ReferenceClock


WINDOW_S = 30 * 60


@pytest.fixture
def monitor_config() -> MonitorConfig:
    return MonitorConfig(
        webhook_url="http://fleet.test/webhook",
        vehicle_ids=("KA01", "KA02"),
        speed_limit=80.0,
        stagnation_minutes=30.0,
    )


@pytest.fixture
def configs(monitor_config) -> ConfigStore:
    return ConfigStore(monitor_config)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def history(tmp_path) -> DistanceHistory:
    return DistanceHistory.from_url(f"sqlite:///{tmp_path / 'history.db'}")


def sample(vehicle_id="KA01", speed=0.0, sample_time=None, **kw) -> VehicleSample:
    return VehicleSample(vehicle_id=vehicle_id, speed=speed, sample_time=sample_time, **kw)


class FakeSource:
    """Returns queued batches; an exception in the queue is raised instead."""

    reference = ReferenceClock.WALL_CLOCK

    def __init__(self, *batches, reference=None):
        self.batches = list(batches)
        self.calls = 0
        if reference is not None:
            self.reference = reference

    async def fetch(self, config):
        self.calls += 1
        batch = self.batches.pop(0) if self.batches else []
        if isinstance(batch, Exception):
            raise batch
        return batch


class RecordingNotifier:
    def __init__(self, fail_on=()):
        self.sent = []
        self.fail_on = set(fail_on)

    async def notify(self, alert):
        if alert.vehicle_id in self.fail_on:
            raise RuntimeError("notification backend down")
        self.sent.append(alert)
