"""Shared pytest fixtures for the OpenBio desktop tests."""
from __future__ import annotations

from typing import List, Optional

import pytest

from openbio_desktop.config import settings
from openbio_desktop.config_store import ConfigStore
from openbio_desktop.errors import DiscoveryError, ServiceStartError
from openbio_desktop.models import DiscoveredPeer, LicenseCheckResult, LicenseFailure, TrialResult
from openbio_desktop.orchestrator import Orchestrator


@pytest.fixture(autouse=True)
def isolate_data_dir(tmp_path, monkeypatch):
    """Keep config, databases and logs inside the test's temporary directory."""
    data_dir = tmp_path / "openbio"
    monkeypatch.setattr(settings, "DATA_DIR", str(data_dir))
    monkeypatch.setattr(settings, "SERVICE_START_TIMEOUT", 2.0)
    return data_dir


class FakeServiceHandle:
    def __init__(self, port: int, storage_locator: str, fail_start: bool = False):
        self.port = port
        self.storage_locator = storage_locator
        self.fail_start = fail_start
        self.running = True
        self.stopped = False

    def is_running(self) -> bool:
        return self.running

    def wait_until_started(self, timeout: float) -> None:
        if self.fail_start:
            self.running = False
            raise ServiceStartError(f"Data service on port {self.port} exited during startup: address in use")

    def stop(self, timeout: float = 5.0) -> None:
        self.running = False
        self.stopped = True


class FakeSupervisor:
    def __init__(self):
        self.spawned: List[FakeServiceHandle] = []
        self.fail_next = False

    def spawn(self, port, storage_locator, apply_migrations=True):
        handle = FakeServiceHandle(port, storage_locator, fail_start=self.fail_next)
        self.fail_next = False
        self.spawned.append(handle)
        return handle


class FakeBroadcastHandle:
    def __init__(self, lab_name: str, port: int):
        self.lab_name = lab_name
        self.port = port
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeBroadcaster:
    def __init__(self):
        self.started: List[FakeBroadcastHandle] = []
        self.error: Optional[str] = None

    def start(self, lab_name, port):
        if self.error:
            raise DiscoveryError(self.error)
        handle = FakeBroadcastHandle(lab_name, port)
        self.started.append(handle)
        return handle


class FakeScanner:
    def __init__(self, peers=None, error: Optional[str] = None):
        self.peers = peers or []
        self.error = error
        self.calls = []

    def scan(self, timeout=5.0, poll_interval=0.1):
        self.calls.append((timeout, poll_interval))
        if self.error:
            raise DiscoveryError(self.error)
        return list(self.peers)


class FakeLicenseClient:
    def __init__(self):
        self.result = LicenseCheckResult(valid=True)
        self.checked = []
        self.monitoring = None
        self.was_shutdown = False
        self.server_id = "test-machine"

    async def ensure_entitlement(self, mode, license_key=None):
        self.checked.append((mode, license_key))
        return self.result

    async def check_key(self, license_key):
        return self.result

    async def start_trial(self, email, tier):
        if self.result.valid:
            return TrialResult(success=True, trialLicense="TRIAL-TEST")
        return TrialResult(success=False, error=self.result.reason)

    def reject(self, reason: str, failure: LicenseFailure = LicenseFailure.INVALID) -> None:
        self.result = LicenseCheckResult(valid=False, reason=reason, failure=failure)

    def start_monitor(self, mode, on_failure):
        self.monitoring = (mode, on_failure)

    def stop_monitor(self):
        self.monitoring = None

    def shutdown(self):
        self.was_shutdown = True
        self.monitoring = None


class OrchestratorKit:
    """An orchestrator wired to fakes, plus the fakes and emitted events."""

    def __init__(self, data_dir):
        self.events = []
        self.store = ConfigStore(data_dir / "config.json")
        self.supervisor = FakeSupervisor()
        self.broadcaster = FakeBroadcaster()
        self.scanner = FakeScanner(peers=[DiscoveredPeer(name="Smith Lab", address="http://10.0.0.5:3000")])
        self.license_client = FakeLicenseClient()
        self.port_map = {}

    def find_port(self, preferred: int) -> int:
        return self.port_map.get(preferred, preferred)

    def build(self, notify=None) -> Orchestrator:
        return Orchestrator(
            self.store,
            self.license_client,
            notify or self.events.append,
            supervisor=self.supervisor,
            broadcaster=self.broadcaster,
            scanner=self.scanner,
            storage_locator="sqlite:///test-openbio.db",
            port_finder=self.find_port,
        )


@pytest.fixture
def kit(isolate_data_dir):
    return OrchestratorKit(isolate_data_dir)
