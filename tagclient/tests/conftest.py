"""
Test configuration and fixtures for the tag client test suite.

Components are built with fast timings so backoff and health-check paths
complete in milliseconds.
"""

import os

import pytest

os.environ.setdefault("LOGGING_ENVIRONMENT", "unit_test")

from tagclient.anticheat.validator import AntiCheatValidator  # noqa: E402
from tagclient.config.models import AntiCheatConfig, OfflineQueueConfig, RealtimeConfig  # noqa: E402
from tagclient.events.event_bus import EventBus  # noqa: E402
from tagclient.offline.offline_queue import OfflineActionQueue  # noqa: E402
from tagclient.offline.storage import MemoryStore  # noqa: E402
from tagclient.realtime.network_monitor import NetworkMonitor  # noqa: E402

from .fakes import FakeClock, FakeTransport  # noqa: E402


@pytest.fixture
def clock():
    """Manually advanced clock."""
    return FakeClock()


@pytest.fixture
def event_bus():
    """Fresh event bus."""
    return EventBus()


@pytest.fixture
def recorded_events(event_bus):
    """
    Capture published events of the requested types.

    Usage: events = recorded_events(ConnectionStateChanged)
    """

    def _record(*event_types):
        captured = []
        for event_type in event_types:
            event_bus.subscribe(event_type, captured.append)
        return captured

    return _record


@pytest.fixture
def network(event_bus):
    """Network monitor that starts online."""
    return NetworkMonitor(event_bus)


@pytest.fixture
def transport():
    """Scriptable in-memory transport."""
    return FakeTransport()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def fast_realtime_config():
    """Realtime config with millisecond timings and no jitter."""
    return RealtimeConfig(
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.02,
        reconnect_jitter=0.0,
        max_reconnect_attempts=5,
        min_connect_interval=0.0,
        health_check_interval=60.0,
        health_check_timeout=0.05,
        connect_timeout=1.0,
    )


@pytest.fixture
def queue_config():
    return OfflineQueueConfig(capacity=10, degraded_capacity=5, tag_ack_timeout=0.5)


@pytest.fixture
def offline_queue(queue_config, memory_store, event_bus, network, clock):
    """Offline queue backed by memory."""
    return OfflineActionQueue(queue_config, memory_store, event_bus, network, clock)


@pytest.fixture
def validator(event_bus):
    return AntiCheatValidator(AntiCheatConfig(), event_bus)
