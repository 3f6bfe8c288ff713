"""
Unit tests for ConnectionManager.

Tests the lifecycle, reconnect backoff, close classification, network
handling and emit fallbacks against an in-memory transport.
"""

import asyncio

import pytest
import pytest_asyncio

from tagclient.anticheat.models import LocationSample
from tagclient.config.models import OfflineQueueConfig, RealtimeConfig
from tagclient.events.event_types import ConnectionStateChanged, SyncCompleted
from tagclient.exceptions import AuthenticationRejectedError, TransportError
from tagclient.offline.models import LOCATION_EVENT, TAG_EVENT, ActionKind
from tagclient.offline.offline_queue import OfflineActionQueue
from tagclient.realtime.connection_health import ConnectionQuality
from tagclient.realtime.connection_manager import ConnectionManager, EmitOutcome
from tagclient.realtime.connection_state_machine import ConnectionStatus
from tagclient.realtime.transport import CloseReason

from ...fakes import wait_until

TOKEN = "session-token"


def fix(lat_offset=0.0, t=0.0, is_mock=False):
    return LocationSample(
        lat=40.0 + lat_offset,
        lng=-73.0,
        accuracy=5.0,
        timestamp=1_700_000_000.0 + t,
        is_mock=is_mock,
    )


@pytest_asyncio.fixture
async def manager(transport, fast_realtime_config, event_bus, offline_queue, validator, network, clock):
    """Connection manager wired to fakes; shut down after each test."""
    mgr = ConnectionManager(
        transport,
        fast_realtime_config,
        event_bus=event_bus,
        queue=offline_queue,
        validator=validator,
        network=network,
        clock=clock,
    )
    yield mgr
    await mgr.shutdown()


def states(events):
    return [e.state for e in events]


@pytest.mark.asyncio
async def test_connect_success(manager, transport, recorded_events):
    """Test a successful connect passes through connecting to connected."""
    events = recorded_events(ConnectionStateChanged)
    assert await manager.connect(TOKEN) is True
    assert manager.state is ConnectionStatus.CONNECTED
    assert transport.credentials == [TOKEN]
    assert states(events) == ["connecting", "connected"]
    assert manager.quality is ConnectionQuality.GOOD


@pytest.mark.asyncio
async def test_connect_when_connected_is_noop(manager, transport):
    """Test connect() on a connected manager does not reopen."""
    await manager.connect(TOKEN)
    assert await manager.connect(TOKEN) is True
    assert transport.open_calls == 1


@pytest.mark.asyncio
async def test_connect_uses_credential_provider(transport, fast_realtime_config):
    """Test the credential provider is consulted when no credential is passed."""
    mgr = ConnectionManager(transport, fast_realtime_config, credential_provider=lambda: "from-provider")
    try:
        assert await mgr.connect() is True
        assert transport.credentials == ["from-provider"]
    finally:
        await mgr.shutdown()


@pytest.mark.asyncio
async def test_connect_without_credential(manager, transport, recorded_events):
    """Test connect() without a credential stays disconnected and says why."""
    events = recorded_events(ConnectionStateChanged)
    assert await manager.connect() is False
    assert manager.state is ConnectionStatus.DISCONNECTED
    assert transport.open_calls == 0
    assert events[-1].reason == "no credential"


@pytest.mark.asyncio
async def test_connect_is_rate_limited(transport, event_bus, clock):
    """Test attempts closer together than the minimum interval are refused."""
    config = RealtimeConfig(min_connect_interval=2.0, reconnect_base_delay=0.01, reconnect_max_delay=0.02)
    mgr = ConnectionManager(transport, config, event_bus=event_bus, clock=clock)
    try:
        assert await mgr.connect(TOKEN) is True
        await mgr.disconnect()
        assert await mgr.connect(TOKEN) is False
        assert transport.open_calls == 1

        clock.advance(2.0)
        assert await mgr.connect(TOKEN) is True
        assert transport.open_calls == 2
    finally:
        await mgr.shutdown()


@pytest.mark.asyncio
async def test_reconnect_order_critical_then_queue_then_resync(manager, transport, offline_queue):
    """Test buffered critical emits go first, then the offline queue, then the resync request."""
    assert await manager.emit("game:flag_captured", {"flag": 1}, critical=True) is EmitOutcome.BUFFERED
    assert await manager.emit(LOCATION_EVENT, {"lat": 40.0, "lng": -73.0}) is EmitOutcome.QUEUED
    assert manager.buffered_count == 1

    await manager.connect(TOKEN)

    assert transport.emitted_events() == ["game:flag_captured", LOCATION_EVENT, "game:sync"]
    assert "client_action_id" in transport.emitted[1][1]
    assert manager.buffered_count == 0
    assert offline_queue.pending_count == 0


@pytest.mark.asyncio
async def test_auth_rejection_fails_without_retry(manager, transport):
    """Test a rejected credential goes straight to failed."""
    transport.open_errors = [AuthenticationRejectedError("bad token", status_code=401)]
    assert await manager.connect(TOKEN) is False
    assert manager.state is ConnectionStatus.FAILED
    await asyncio.sleep(0.05)
    assert transport.open_calls == 1


@pytest.mark.asyncio
async def test_transient_failures_retry_until_connected(manager, transport):
    """Test failed attempts are retried with backoff and reset on success."""
    transport.open_errors = [TransportError("refused"), TransportError("refused")]
    assert await manager.connect(TOKEN) is False
    assert manager.state is ConnectionStatus.RECONNECTING

    await wait_until(lambda: manager.is_connected)
    assert transport.open_calls == 3
    assert manager.backoff.attempts == 0


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(transport, event_bus, clock):
    """Test the manager fails after the configured number of attempts."""
    config = RealtimeConfig(
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.02,
        reconnect_jitter=0.0,
        max_reconnect_attempts=3,
        min_connect_interval=0.0,
    )
    mgr = ConnectionManager(transport, config, event_bus=event_bus, clock=clock)
    transport.open_errors = [TransportError("refused") for _ in range(10)]
    try:
        await mgr.connect(TOKEN)
        await wait_until(lambda: mgr.state is ConnectionStatus.FAILED)
        await asyncio.sleep(0.05)
        assert transport.open_calls == 3

        transport.open_errors = []
        assert await mgr.connect(TOKEN) is True
    finally:
        await mgr.shutdown()


@pytest.mark.asyncio
async def test_connect_timeout_counts_as_failure(transport, event_bus, clock):
    """Test an open that exceeds the connect timeout is retried."""
    config = RealtimeConfig(
        connect_timeout=0.02,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.02,
        reconnect_jitter=0.0,
        min_connect_interval=0.0,
    )
    mgr = ConnectionManager(transport, config, event_bus=event_bus, clock=clock)
    transport.open_delay = 0.2
    try:
        assert await mgr.connect(TOKEN) is False
        assert mgr.state is ConnectionStatus.RECONNECTING
        transport.open_delay = 0.0
        await wait_until(lambda: mgr.is_connected)
    finally:
        await mgr.shutdown()


@pytest.mark.asyncio
async def test_server_close_does_not_reconnect(manager, transport, recorded_events):
    """Test a server-initiated close ends in disconnected with no retry."""
    await manager.connect(TOKEN)
    events = recorded_events(ConnectionStateChanged)
    transport.simulate_close(CloseReason.SERVER_INITIATED, "evicted")
    await asyncio.sleep(0.05)
    assert manager.state is ConnectionStatus.DISCONNECTED
    assert transport.open_calls == 1
    assert events[-1].reason == "server closed connection"


@pytest.mark.asyncio
async def test_transport_error_close_reconnects(manager, transport):
    """Test an unexpected close is retried."""
    await manager.connect(TOKEN)
    transport.simulate_close(CloseReason.TRANSPORT_ERROR, "connection lost")
    assert manager.state is ConnectionStatus.RECONNECTING
    await wait_until(lambda: manager.is_connected)
    assert transport.open_calls == 2


@pytest.mark.asyncio
async def test_connect_while_offline_waits_for_network(manager, transport, network):
    """Test connecting offline defers until the network returns."""
    network.set_online(False)
    assert await manager.connect(TOKEN) is False
    assert manager.state is ConnectionStatus.DISCONNECTED
    assert transport.open_calls == 0

    network.set_online(True)
    await wait_until(lambda: manager.is_connected)
    assert transport.open_calls == 1


@pytest.mark.asyncio
async def test_lost_connection_while_offline_waits_for_network(manager, transport, network):
    """Test a drop with no network parks in disconnected, then reconnects when it returns."""
    await manager.connect(TOKEN)
    network.set_online(False)
    transport.simulate_close(CloseReason.TRANSPORT_ERROR, "connection lost")
    assert manager.state is ConnectionStatus.DISCONNECTED
    await asyncio.sleep(0.05)
    assert transport.open_calls == 1

    network.set_online(True)
    await wait_until(lambda: manager.is_connected)
    assert transport.open_calls == 2


@pytest.mark.asyncio
async def test_network_loss_cancels_pending_reconnect(manager, transport, network):
    """Test going offline while reconnecting stops the retry loop."""
    await manager.connect(TOKEN)
    transport.open_errors = [TransportError("refused") for _ in range(3)]
    transport.simulate_close(CloseReason.TRANSPORT_ERROR, "connection lost")
    network.set_online(False)
    assert manager.state is ConnectionStatus.DISCONNECTED
    calls = transport.open_calls
    await asyncio.sleep(0.05)
    assert transport.open_calls == calls


@pytest.mark.asyncio
async def test_disconnect_cleans_up(manager, transport):
    """Test disconnect() removes listeners and suppresses reconnect."""
    received = []
    await manager.connect(TOKEN)
    manager.on("game:state", received.append)
    assert transport.handlers["game:state"]

    await manager.disconnect()

    assert manager.state is ConnectionStatus.DISCONNECTED
    assert transport.handlers["game:state"] == []
    assert not transport.is_open
    transport.simulate_close(CloseReason.TRANSPORT_ERROR)
    await asyncio.sleep(0.05)
    assert transport.open_calls == 1
    assert manager.quality is ConnectionQuality.OFFLINE


@pytest.mark.asyncio
async def test_disconnect_during_attempt_discards_it(manager, transport):
    """Test an attempt that completes after disconnect() does not connect."""
    transport.open_delay = 0.05
    attempt = asyncio.create_task(manager.connect(TOKEN))
    await asyncio.sleep(0.01)
    await manager.disconnect()
    assert await attempt is False
    assert manager.state is ConnectionStatus.DISCONNECTED
    assert not transport.is_open


@pytest.mark.asyncio
async def test_emit_when_connected(manager, transport):
    """Test emit() sends on an open channel."""
    await manager.connect(TOKEN)
    assert await manager.emit("chat:send", {"text": "hi"}) is EmitOutcome.SENT
    assert ("chat:send", {"text": "hi"}) in transport.emitted


@pytest.mark.asyncio
async def test_emit_fallbacks_when_disconnected(manager, offline_queue):
    """Test disconnected emits are buffered, queued or dropped by kind."""
    assert await manager.emit("chat:send", {"text": "hi"}) is EmitOutcome.DROPPED
    assert await manager.emit("tag:confirm", {}, critical=True) is EmitOutcome.BUFFERED
    assert await manager.emit(LOCATION_EVENT, {"lat": 40.0, "lng": -73.0}) is EmitOutcome.QUEUED
    # within dedupe distance of the queued one
    assert await manager.emit(LOCATION_EVENT, {"lat": 40.0, "lng": -73.0}) is EmitOutcome.DROPPED
    assert offline_queue.pending_count == 1
    assert offline_queue.items[0].kind is ActionKind.LOCATION


@pytest.mark.asyncio
async def test_critical_buffer_is_bounded(transport):
    """Test the oldest critical emit gives way when the buffer is full."""
    mgr = ConnectionManager(transport, RealtimeConfig(critical_buffer_size=2))
    for n in range(3):
        await mgr.emit("evt", {"n": n}, critical=True)
    assert mgr.buffered_count == 2
    assert [p["n"] for _, p in mgr._critical_buffer] == [1, 2]


@pytest.mark.asyncio
async def test_emit_location_rejects_invalid_sample(manager, transport, offline_queue):
    """Test a sample the validator rejects is neither sent nor queued."""
    await manager.connect(TOKEN)
    transport.emitted.clear()
    assert await manager.emit_location(fix(is_mock=True)) is EmitOutcome.REJECTED
    assert transport.emitted == []
    assert offline_queue.pending_count == 0


@pytest.mark.asyncio
async def test_emit_location_sends_valid_sample(manager, transport):
    """Test a valid sample is sent as a location update."""
    await manager.connect(TOKEN)
    assert await manager.emit_location(fix()) is EmitOutcome.SENT
    assert transport.emitted[-1][0] == LOCATION_EVENT


@pytest.mark.asyncio
async def test_emit_with_ack_requires_connection(manager):
    """Test acknowledged emits raise when not connected."""
    with pytest.raises(TransportError):
        await manager.emit_with_ack("tag:attempt", {})


@pytest.mark.asyncio
async def test_emit_with_ack_returns_server_result(manager, transport):
    """Test acknowledged emits return the server's reply."""
    await manager.connect(TOKEN)
    transport.ack_result = {"tagged": True}
    assert await manager.emit_with_ack("tag:attempt", {"target_id": "p2"}) == {"tagged": True}


@pytest.mark.asyncio
async def test_ping_reports_latency(manager):
    """Test ping() returns a latency while connected."""
    assert await manager.ping() is None
    await manager.connect(TOKEN)
    assert await manager.ping() == 0.0
    assert manager.quality is ConnectionQuality.GOOD


@pytest.mark.asyncio
async def test_health_check_timeout_restarts_channel(manager, transport):
    """Test an unanswered ping restarts the channel."""
    await manager.connect(TOKEN)
    transport.auto_pong = False
    assert await manager.ping() is None
    assert transport.close_calls >= 1
    transport.auto_pong = True
    await wait_until(lambda: manager.is_connected)
    assert transport.open_calls == 2


@pytest.mark.asyncio
async def test_periodic_health_check(transport, event_bus, clock):
    """Test the health loop probes on its interval."""
    config = RealtimeConfig(health_check_interval=0.01, min_connect_interval=0.0)
    mgr = ConnectionManager(transport, config, event_bus=event_bus, clock=clock)
    try:
        await mgr.connect(TOKEN)
        await wait_until(lambda: "ping" in transport.emitted_events())
    finally:
        await mgr.shutdown()


@pytest.mark.asyncio
async def test_foreground_reconnects_after_drop(manager, transport, network):
    """Test returning to the foreground reconnects a channel parked for the network."""
    await manager.connect(TOKEN)
    network.set_online(False)
    transport.simulate_close(CloseReason.TRANSPORT_ERROR)
    network._online = True
    await manager.on_app_foreground()
    assert manager.is_connected


@pytest.mark.asyncio
async def test_foreground_after_intentional_disconnect_stays_down(manager, transport):
    """Test foregrounding does not undo an intentional disconnect."""
    await manager.connect(TOKEN)
    await manager.disconnect()
    await manager.on_app_foreground()
    assert manager.state is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_shutdown_drops_buffer(manager):
    """Test shutdown() discards buffered critical emits."""
    await manager.emit("tag:confirm", {}, critical=True)
    await manager.shutdown()
    assert manager.buffered_count == 0


@pytest.mark.asyncio
async def test_get_stats(manager):
    """Test the stats snapshot."""
    await manager.connect(TOKEN)
    stats = manager.get_stats()
    assert stats["state"] == "connected"
    assert stats["quality"] == "good"
    assert stats["reconnect_attempts"] == 0
    assert stats["machine_total_connections"] == 1


@pytest.mark.asyncio
async def test_concurrent_connects_open_once(manager, transport):
    """Test overlapping connect() calls share a single connection attempt."""
    transport.open_delay = 0.02
    results = await asyncio.gather(*(manager.connect(TOKEN) for _ in range(3)))
    assert results.count(True) == 1
    assert transport.open_calls == 1
    assert manager.is_connected


@pytest.mark.asyncio
async def test_connect_after_disconnect_waits_for_stale_attempt(manager, transport):
    """Test a connect() racing a discarded attempt does not open a second channel alongside it."""
    transport.open_delay = 0.05
    stale = asyncio.create_task(manager.connect(TOKEN))
    await asyncio.sleep(0.01)
    await manager.disconnect()

    assert await manager.connect(TOKEN) is False
    assert transport.open_calls == 1
    assert await stale is False
    assert manager.state is ConnectionStatus.DISCONNECTED
    assert not transport.is_open

    transport.open_delay = 0.0
    assert await manager.connect(TOKEN) is True
    assert transport.open_calls == 2


def retrying_manager(transport, config, event_bus, network, clock, memory_store, sync_interval=0.01):
    queue = OfflineActionQueue(
        OfflineQueueConfig(sync_interval=sync_interval, tag_ack_timeout=0.5), memory_store, event_bus, network, clock
    )
    return ConnectionManager(transport, config, event_bus=event_bus, queue=queue, network=network, clock=clock)


@pytest.mark.asyncio
async def test_retained_tag_retried_while_connected(
    transport, fast_realtime_config, event_bus, network, clock, memory_store
):
    """Test a tag that failed during the reconnect drain is retried without another reconnect."""
    mgr = retrying_manager(transport, fast_realtime_config, event_bus, network, clock, memory_store)
    try:
        await mgr.queue.enqueue(ActionKind.TAG, {"target_id": "p2"})
        transport.ack_errors = [TransportError("send failed", event=TAG_EVENT)]

        await mgr.connect(TOKEN)
        assert mgr.queue.pending_count == 1

        await wait_until(lambda: mgr.queue.pending_count == 0)
        assert [event for event, _ in transport.acked] == [TAG_EVENT]
        assert transport.open_calls == 1
    finally:
        await mgr.shutdown()


@pytest.mark.asyncio
async def test_failing_tag_dropped_after_attempts_while_connected(
    transport, fast_realtime_config, event_bus, network, clock, memory_store, recorded_events
):
    """Test a tag that keeps failing on a live channel is dropped after its attempt limit."""
    events = recorded_events(SyncCompleted)
    mgr = retrying_manager(transport, fast_realtime_config, event_bus, network, clock, memory_store)
    try:
        await mgr.queue.enqueue(ActionKind.TAG, {"target_id": "p2"})
        transport.ack_errors = [TransportError("send failed", event=TAG_EVENT) for _ in range(4)]

        await mgr.connect(TOKEN)
        await wait_until(lambda: mgr.queue.pending_count == 0)

        assert transport.acked == []
        assert sum(e.failed for e in events) == 1
    finally:
        await mgr.shutdown()


@pytest.mark.asyncio
async def test_queue_retry_stops_on_disconnect(
    transport, fast_realtime_config, event_bus, network, clock, memory_store
):
    """Test the retry timer is cancelled when the channel goes down."""
    mgr = retrying_manager(transport, fast_realtime_config, event_bus, network, clock, memory_store, sync_interval=60)
    await mgr.connect(TOKEN)
    retry_task = mgr._sync_task
    assert retry_task is not None

    await mgr.disconnect()
    await wait_until(retry_task.done)
    assert mgr._sync_task is None
    await mgr.shutdown()


@pytest.mark.asyncio
async def test_location_queued_on_live_channel_is_sent_at_once(manager, transport, offline_queue):
    """Test a location that fell back to the queue on an open channel is replayed without waiting."""
    await manager.connect(TOKEN)
    transport.emit_errors = [TransportError("send failed")]

    assert await manager.emit(LOCATION_EVENT, fix().to_payload()) is EmitOutcome.QUEUED

    await wait_until(lambda: offline_queue.pending_count == 0)
    assert LOCATION_EVENT in transport.emitted_events()


@pytest.mark.asyncio
async def test_sync_queue_requires_connection(manager):
    """Test sync_queue() does nothing while disconnected."""
    assert await manager.sync_queue() is None
