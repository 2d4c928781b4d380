"""Shared fixtures for harness tests."""

import pytest

from repro_harness.capabilities import CapabilityRegistry, StaticFlags
from repro_harness.guards import DependencyGuard, SocketBlocker, ViolationLog
from repro_harness.policy import FEATURE_FLAGS, NETWORK, TELEMETRY
from repro_harness.protocol import Mount

pytest_plugins = ["pytester"]


class RecordingTelemetry:
    """Telemetry client that only remembers what it was sent."""

    def __init__(self):
        self.events = []

    def capture(self, event, **fields):
        self.events.append((event, fields))


@pytest.fixture
def capability_registry():
    """A registry with a real factory for every guarded capability."""
    return CapabilityRegistry({
        NETWORK: lambda: "real-session",
        FEATURE_FLAGS: lambda: StaticFlags({"real": True}),
        TELEMETRY: RecordingTelemetry,
    })


@pytest.fixture
def violations():
    return ViolationLog()


@pytest.fixture
def dependency_guard(capability_registry, violations):
    """A guard bound to its own registry, log and socket blocker."""
    return DependencyGuard(registry=capability_registry, log=violations, blocker=SocketBlocker())


@pytest.fixture
def workspace(tmp_path):
    """Host directory mounted at /work, with a reports/ subdirectory."""
    (tmp_path / "reports").mkdir()
    return tmp_path


@pytest.fixture
def work_mount(workspace):
    return Mount(workspace, "/work")
