"""
Connection manager for the realtime game channel.

Owns exactly one logical channel: its lifecycle state machine, reconnect
backoff, periodic health checks, the in-memory buffer of critical emits,
and the replay of the offline queue once the channel comes back.

Connection failures never propagate to callers. They are recovered inside
the backoff loop and surface only as ConnectionStateChanged events.
"""

import asyncio
import random
from collections import deque
from collections.abc import Callable
from enum import Enum
from typing import Any

from anyio import sleep
from statemachine.exceptions import TransitionNotAllowed

from ..anticheat.models import LocationSample
from ..anticheat.validator import AntiCheatValidator
from ..config.models import RealtimeConfig
from ..events.event_bus import EventBus
from ..events.event_types import ConnectionStateChanged, NetworkStatusChanged
from ..exceptions import AuthenticationRejectedError, TransportError
from ..offline.models import LOCATION_EVENT, ActionKind
from ..offline.offline_queue import OfflineActionQueue, SyncResult
from ..structured_logging.enhanced_logging_config import get_logger
from ..utils.clock import Clock, SystemClock
from .backoff import ReconnectBackoff
from .connection_health import ConnectionHealth, ConnectionQuality
from .connection_state_machine import ConnectionStatus, RealtimeConnectionStateMachine
from .network_monitor import NetworkMonitor
from .transport import CloseReason, MessageHandler, RealtimeTransport

logger = get_logger(__name__)

CredentialProvider = Callable[[], str | None]


class EmitOutcome(str, Enum):
    """What happened to an emit() call."""

    SENT = "sent"
    BUFFERED = "buffered"
    QUEUED = "queued"
    DROPPED = "dropped"
    REJECTED = "rejected"


class ConnectionManager:
    """
    Maintains the single realtime channel and its health.

    On every successful (re)connect the order is fixed: enter Connected,
    replay buffered critical emits, drain the offline queue, then request a
    full state resync.
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        config: RealtimeConfig | dict[str, Any] | None = None,
        event_bus: EventBus | None = None,
        queue: OfflineActionQueue | None = None,
        validator: AntiCheatValidator | None = None,
        network: NetworkMonitor | None = None,
        credential_provider: CredentialProvider | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ):
        if config is None:
            config = RealtimeConfig()
        elif isinstance(config, dict):
            config = RealtimeConfig(**config)
        self.config = config
        self.transport = transport
        self.event_bus = event_bus
        self.queue = queue
        self.validator = validator
        self.network = network
        self.credential_provider = credential_provider
        self.clock: Clock = clock or SystemClock()

        self.state_machine = RealtimeConnectionStateMachine()
        self.backoff = ReconnectBackoff.from_config(config, rng)
        self.health = ConnectionHealth(config, event_bus, self.clock)

        self._critical_buffer: deque[tuple[str, Any]] = deque(maxlen=config.critical_buffer_size)
        self._listeners: list[tuple[str, MessageHandler]] = []
        self._credential: str | None = None
        self._last_attempt_at: float | None = None
        self._attempt_in_flight = False
        self._generation = 0
        self._intentional_disconnect = False
        self._suppress_reconnect = False
        self._waiting_for_network = False
        self._expected_close = False

        self._reconnect_task: asyncio.Task | None = None
        self._health_task: asyncio.Task | None = None
        self._sync_task: asyncio.Task | None = None
        self._background_tasks: set[asyncio.Task] = set()

        self.transport.set_close_handler(self._on_transport_closed)
        self._unsubscribe_network: Callable[[], bool] | None = None
        if event_bus is not None:
            self._unsubscribe_network = event_bus.subscribe(NetworkStatusChanged, self._on_network_status)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionStatus:
        return self.state_machine.status

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionStatus.CONNECTED

    @property
    def quality(self) -> ConnectionQuality:
        return self.health.quality

    @property
    def buffered_count(self) -> int:
        return len(self._critical_buffer)

    def _network_online(self) -> bool:
        return self.network is None or self.network.is_online

    def _transition(self, event: str, reason: str | None = None) -> bool:
        previous = self.state
        try:
            self.state_machine.send(event)
        except TransitionNotAllowed:
            logger.debug("Ignoring invalid connection transition", trigger_event=event, state=previous.value)
            return False

        if self.state is not ConnectionStatus.CONNECTED:
            self.health.mark_offline()

        if self.event_bus is not None:
            self.event_bus.publish(
                ConnectionStateChanged(
                    state=self.state.value,
                    previous_state=previous.value,
                    reason=reason,
                    attempts=self.backoff.attempts,
                )
            )
        return True

    def _notify_without_transition(self, reason: str) -> None:
        """Publish the current state with a reason when no transition applies."""
        if self.event_bus is not None:
            self.event_bus.publish(
                ConnectionStateChanged(
                    state=self.state.value,
                    previous_state=self.state.value,
                    reason=reason,
                    attempts=self.backoff.attempts,
                )
            )

    def _rate_limit_remaining(self) -> float:
        if self._last_attempt_at is None:
            return 0.0
        elapsed = self.clock.monotonic() - self._last_attempt_at
        return max(0.0, self.config.min_connect_interval - elapsed)

    def _spawn(self, coro: Any, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def connect(self, credential: str | None = None) -> bool:
        """
        Open the channel.

        No-op when already connected or while an attempt is in flight.
        Rate-limited to one attempt per min_connect_interval.

        Args:
            credential: Session token; falls back to the last one used, then the provider

        Returns:
            True if the channel is connected when this returns
        """
        if self.is_connected:
            return True
        if self._attempt_in_flight:
            logger.debug("Connection attempt already in progress")
            return False

        credential = credential or self._credential
        if not credential and self.credential_provider is not None:
            credential = self.credential_provider()
        if not credential:
            logger.warning("Cannot connect without a credential")
            if not self._transition("disconnect", reason="no credential"):
                self._notify_without_transition("no credential")
            return False
        self._credential = credential

        if self._rate_limit_remaining() > 0:
            logger.debug("Connection attempt rate limited", retry_in=round(self._rate_limit_remaining(), 3))
            return False

        self._intentional_disconnect = False
        self._suppress_reconnect = False

        if not self._network_online():
            logger.info("Network offline, deferring connection until it returns")
            self._waiting_for_network = True
            if not self._transition("disconnect", reason="network offline"):
                self._notify_without_transition("network offline")
            return False
        self._waiting_for_network = False

        self._cancel_reconnect()
        if self.state is ConnectionStatus.FAILED:
            self.backoff.reset()
        if self.state in (ConnectionStatus.DISCONNECTED, ConnectionStatus.FAILED):
            self._transition("connect", reason="connect requested")

        return await self._attempt()

    async def _attempt(self) -> bool:
        """Run one connection attempt from Connecting or Reconnecting."""
        generation = self._generation
        self._attempt_in_flight = True
        self._last_attempt_at = self.clock.monotonic()
        try:
            await asyncio.wait_for(self.transport.open(self._credential or ""), timeout=self.config.connect_timeout)
        except AuthenticationRejectedError as e:
            if generation == self._generation:
                logger.error("Realtime credential rejected", error=str(e))
                self._transition("give_up", reason="authentication rejected")
            return False
        except (TransportError, TimeoutError, OSError) as e:
            if generation == self._generation:
                reason = "connect timeout" if isinstance(e, TimeoutError) else "transport error"
                logger.warning("Connection attempt failed", reason=reason, error=str(e), attempts=self.backoff.attempts)
                await self._close_transport()
                self._handle_attempt_failure(reason)
            return False
        finally:
            self._attempt_in_flight = False

        if generation != self._generation:
            # Disconnected while the attempt was in flight
            await self._close_transport()
            return False

        await self._on_connected()
        return True

    def _handle_attempt_failure(self, reason: str) -> None:
        delay = self.backoff.record_failure()
        if self.backoff.exhausted:
            logger.error("Maximum reconnection attempts reached", attempts=self.backoff.attempts)
            self._transition("give_up", reason="max reconnect attempts")
            return

        if not self._network_online():
            self._waiting_for_network = True
            self._transition("disconnect", reason="network offline")
            return

        if self.state is ConnectionStatus.CONNECTING:
            self._transition("start_reconnect", reason=reason)
        self._schedule_reconnect(delay)

    def _schedule_reconnect(self, delay: float) -> None:
        delay = max(delay, self._rate_limit_remaining())
        self._cancel_reconnect()
        logger.info("Reconnect scheduled", delay=round(delay, 3), attempt=self.backoff.attempts + 1)
        self._reconnect_task = self._spawn(self._reconnect_after(delay), "realtime-reconnect")

    async def _reconnect_after(self, delay: float) -> None:
        await sleep(delay)
        if self.state is not ConnectionStatus.RECONNECTING or self._intentional_disconnect:
            return
        await self._attempt()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _on_connected(self) -> None:
        self._transition("connection_established", reason="connected")
        self.backoff.reset()
        self.health.mark_online()
        self._start_health_checks()

        await self._flush_critical_buffer()

        if self.queue is not None:
            await self.queue.sync(self.transport)

        if self.is_connected:
            try:
                await self.transport.emit(self.config.resync_event, {})
            except TransportError as e:
                logger.warning("Resync request failed", error=str(e))

    async def _flush_critical_buffer(self) -> None:
        while self._critical_buffer and self.is_connected:
            event, payload = self._critical_buffer[0]
            try:
                await self.transport.emit(event, payload)
            except TransportError as e:
                logger.warning("Critical emit replay failed, keeping buffered", event_type=event, error=str(e))
                return
            self._critical_buffer.popleft()

    async def _close_transport(self) -> None:
        self._expected_close = True
        try:
            await self.transport.close()
        except TransportError as e:
            logger.debug("Error closing transport", error=str(e))
        finally:
            self._expected_close = False

    async def disconnect(self) -> None:
        """
        Intentional teardown.

        Cancels reconnect and health tasks and any pending probe, removes
        listeners registered through the manager, and suppresses
        auto-reconnect until the next explicit connect().
        """
        self._intentional_disconnect = True
        self._waiting_for_network = False
        self._generation += 1

        self._cancel_reconnect()
        self._stop_health_checks()
        self.health.cancel_probe()

        for event, handler in self._listeners:
            self.transport.off(event, handler)
        self._listeners.clear()

        await self._close_transport()
        self._transition("disconnect", reason="client disconnect")
        self.health.mark_offline()
        logger.info("Realtime channel disconnected intentionally")

    async def shutdown(self) -> None:
        """Logout teardown: disconnect and drop everything held in memory."""
        await self.disconnect()
        dropped = len(self._critical_buffer)
        self._critical_buffer.clear()
        if self._unsubscribe_network is not None:
            self._unsubscribe_network()
            self._unsubscribe_network = None
        self.transport.set_close_handler(None)

        tasks = [t for t in self._background_tasks if not t.done() and t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._credential = None
        logger.info("Connection manager shut down", dropped_critical=dropped)

    # ------------------------------------------------------------------
    # Close and network handling
    # ------------------------------------------------------------------

    def _on_transport_closed(self, reason: CloseReason, detail: str | None = None) -> None:
        if self._intentional_disconnect or self._expected_close:
            return
        if not self.is_connected:
            return

        logger.info("Realtime channel closed", close_reason=reason.value, detail=detail)
        self._stop_health_checks()
        self.health.cancel_probe()

        if reason is CloseReason.SERVER_INITIATED:
            self._suppress_reconnect = True
            self._transition("disconnect", reason="server closed connection")
        elif reason is CloseReason.CLIENT_INITIATED:
            self._suppress_reconnect = True
            self._transition("disconnect", reason="client closed connection")
        else:
            self._enter_reconnect(detail or "transport error")

    def _enter_reconnect(self, reason: str) -> None:
        """Channel lost unexpectedly: retry with backoff, or wait for the network."""
        if not self._network_online():
            self._waiting_for_network = True
            self._transition("disconnect", reason="network offline")
            return
        if self._transition("start_reconnect", reason=reason):
            self._schedule_reconnect(self.backoff.calculate_delay(self.backoff.attempts))

    def _on_network_status(self, event: NetworkStatusChanged) -> None:
        if event.online:
            if (
                self._waiting_for_network
                and self.state is ConnectionStatus.DISCONNECTED
                and not self._intentional_disconnect
                and not self._suppress_reconnect
            ):
                logger.info("Network restored, reconnecting")
                self._spawn(self._connect_when_allowed(), "realtime-network-restored")
            return

        if self.state is ConnectionStatus.RECONNECTING:
            self._cancel_reconnect()
            self._waiting_for_network = True
            self._transition("disconnect", reason="network offline")

    async def _connect_when_allowed(self) -> None:
        remaining = self._rate_limit_remaining()
        if remaining > 0:
            await sleep(remaining)
        await self.connect()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _start_health_checks(self) -> None:
        self._stop_health_checks()
        self._health_task = self._spawn(self._health_loop(), "realtime-health")
        if self.queue is not None:
            self._sync_task = self._spawn(self._queue_sync_loop(), "realtime-queue-sync")

    def _stop_health_checks(self) -> None:
        for task in (self._health_task, self._sync_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._health_task = None
        self._sync_task = None

    async def _health_loop(self) -> None:
        while self.is_connected:
            await sleep(self.config.health_check_interval)
            if not self.is_connected:
                break
            await self._run_health_check()

    async def _queue_sync_loop(self) -> None:
        # Retries actions a failed delivery left behind without waiting for a reconnect
        while self.is_connected and self.queue is not None:
            await sleep(self.queue.config.sync_interval)
            if not self.is_connected:
                break
            if self.queue.pending_count:
                await self.sync_queue()

    async def sync_queue(self) -> SyncResult | None:
        """
        Deliver the offline queue now.

        Returns:
            SyncResult, or None when there is no queue or the channel is down
        """
        if self.queue is None or not self.is_connected:
            return None
        return await self.queue.sync(self.transport)

    async def _run_health_check(self) -> float | None:
        latency = await self.health.probe(self.transport)
        if latency is None and self.is_connected and not self._intentional_disconnect:
            logger.warning("Channel unresponsive, restarting connection")
            self._stop_health_checks()
            await self._close_transport()
            self._enter_reconnect("health check timeout")
        return latency

    async def ping(self) -> float | None:
        """
        Run one health probe now.

        Returns:
            Latency in milliseconds, or None if not connected or the probe failed
        """
        if not self.is_connected:
            return None
        return await self._run_health_check()

    async def on_app_foreground(self) -> None:
        """Check the channel immediately, or reconnect if it was lost while backgrounded."""
        if self.is_connected:
            await self._run_health_check()
            return
        if self.state is ConnectionStatus.DISCONNECTED and not (
            self._intentional_disconnect or self._suppress_reconnect
        ):
            await self.connect()

    def on_app_background(self) -> None:
        """Backgrounding keeps the channel and any scheduled reconnect running."""
        logger.debug("App backgrounded", state=self.state.value)

    # ------------------------------------------------------------------
    # Emitting
    # ------------------------------------------------------------------

    async def emit(self, event: str, payload: Any = None, critical: bool = False) -> EmitOutcome:
        """
        Send an event, or fall back when the channel is unavailable.

        Fallbacks, in order: critical events are buffered in memory and
        replayed on reconnect; location updates go to the offline queue;
        anything else is dropped.

        Returns:
            EmitOutcome describing what happened
        """
        if self.is_connected and self.transport.is_open:
            try:
                await self.transport.emit(event, payload)
                return EmitOutcome.SENT
            except TransportError as e:
                logger.warning("Emit failed on open channel, falling back", event_type=event, error=str(e))

        if critical:
            if len(self._critical_buffer) == self._critical_buffer.maxlen:
                dropped_event, _ = self._critical_buffer[0]
                logger.warning("Critical buffer full, dropping oldest", dropped_event=dropped_event)
            self._critical_buffer.append((event, payload))
            return EmitOutcome.BUFFERED

        if event == LOCATION_EVENT and self.queue is not None:
            action = await self.queue.enqueue(ActionKind.LOCATION, payload, event=event)
            if action is not None:
                if self.is_connected:
                    self._spawn(self.sync_queue(), "realtime-queue-sync-now")
                return EmitOutcome.QUEUED
            logger.debug("Location update not queued", event_type=event)
            return EmitOutcome.DROPPED

        logger.info("Emit dropped while disconnected", event_type=event, state=self.state.value)
        return EmitOutcome.DROPPED

    async def emit_location(self, sample: LocationSample) -> EmitOutcome:
        """Validate a GPS sample, then send or queue it as a location update."""
        if self.validator is not None:
            result = self.validator.validate_position(sample)
            if not result.valid:
                logger.info(
                    "Location sample rejected",
                    violations=[v.type.value for v in result.violations],
                    suspicion_score=round(result.suspicion_score, 2),
                )
                return EmitOutcome.REJECTED
        return await self.emit(LOCATION_EVENT, sample.to_payload())

    async def emit_with_ack(self, event: str, payload: Any = None, timeout: float = 5.0) -> Any:
        """
        Send an event and wait for the server's acknowledgment.

        Raises:
            TransportError: If not connected or the send fails
            AckTimeoutError: If no acknowledgment arrives within timeout
        """
        if not self.is_connected:
            raise TransportError("Realtime channel is not connected", event=event)
        return await self.transport.emit_with_ack(event, payload, timeout=timeout)

    def on(self, event: str, handler: MessageHandler) -> None:
        """Register an inbound message handler; removed again by disconnect()."""
        if (event, handler) in self._listeners:
            return
        self._listeners.append((event, handler))
        self.transport.on(event, handler)

    def off(self, event: str, handler: MessageHandler) -> None:
        if (event, handler) not in self._listeners:
            return
        self._listeners.remove((event, handler))
        self.transport.off(event, handler)

    def get_stats(self) -> dict[str, Any]:
        """Read-only status snapshot."""
        return {
            "state": self.state.value,
            "quality": self.health.quality.value,
            "latency_ms": round(self.health.latency_ms, 1) if self.health.latency_ms is not None else None,
            "reconnect_attempts": self.backoff.attempts,
            "max_reconnect_attempts": self.backoff.max_attempts,
            "buffered_critical": len(self._critical_buffer),
            "listeners": len(self._listeners),
            "waiting_for_network": self._waiting_for_network,
            **{f"machine_{k}": v for k, v in self.state_machine.get_stats().items() if k != "current_state"},
        }
