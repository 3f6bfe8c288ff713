"""
Dependency container for the tag client core.

Builds the event bus, network monitor, offline queue, game state cache,
anti-cheat validator, violation reporter, transport and connection manager
explicitly and wires them together, so no module holds ambient global state.

USAGE:
    container = GameClientContainer(credential_provider=session.get_token)
    await container.initialize()
    await container.connection_manager.connect()
    ...
    await container.shutdown()
"""

import asyncio
from dataclasses import dataclass
from typing import Any

from .anticheat.models import LocationSample
from .anticheat.reporter import ViolationReporter
from .anticheat.validator import AntiCheatValidator
from .config import get_config
from .config.models import AppConfig
from .events.event_bus import EventBus
from .exceptions import AckTimeoutError, TransportError
from .offline.game_state_cache import GAME_STATE_EVENT, GameStateCache
from .offline.models import TAG_EVENT, ActionKind
from .offline.offline_queue import OfflineActionQueue
from .offline.storage import JsonFileStore, KeyValueStore
from .realtime.connection_manager import ConnectionManager, CredentialProvider, EmitOutcome
from .realtime.network_monitor import NetworkMonitor
from .realtime.transport import RealtimeTransport
from .realtime.websocket_transport import WebSocketTransport
from .structured_logging.enhanced_logging_config import get_logger, setup_enhanced_logging
from .structured_logging.logging_processors import set_session_id
from .utils.clock import Clock, SystemClock

logger = get_logger(__name__)

REPORT_EVENT = "anticheat:report"


@dataclass
class TagAttemptResult:
    """
    Outcome of attempt_tag().

    status is one of "sent", "queued", "rejected", "timeout" or "dropped".
    """

    status: str
    distance_m: float
    reason: str | None = None
    server_result: Any = None


class GameClientContainer:
    """
    Owns every long-lived component of the client core.

    Components are created in initialize(), not in the constructor, so a
    container can be built without side effects.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        transport: RealtimeTransport | None = None,
        store: KeyValueStore | None = None,
        credential_provider: CredentialProvider | None = None,
        clock: Clock | None = None,
    ):
        self.config = config
        self.clock: Clock = clock or SystemClock()
        self.credential_provider = credential_provider
        self._transport = transport
        self._store = store

        self.event_bus: EventBus | None = None
        self.network: NetworkMonitor | None = None
        self.queue: OfflineActionQueue | None = None
        self.game_state_cache: GameStateCache | None = None
        self.validator: AntiCheatValidator | None = None
        self.reporter: ViolationReporter | None = None
        self.transport: RealtimeTransport | None = None
        self.connection_manager: ConnectionManager | None = None

        self._initialized = False
        self._initialization_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        Build and start all components in dependency order.

        INITIALIZATION ORDER:
        1. Configuration and logging
        2. Event bus and network monitor
        3. Offline queue and game state cache (load persisted data)
        4. Anti-cheat validator and reporter
        5. Transport and connection manager
        """
        async with self._initialization_lock:
            if self._initialized:
                logger.warning("Container already initialized - skipping re-initialization")
                return

            if self.config is None:
                self.config = get_config()
            setup_enhanced_logging(self.config.to_logging_dict())
            config = self.config

            self.event_bus = EventBus()
            self.network = NetworkMonitor(self.event_bus)

            store = self._store if self._store is not None else JsonFileStore(config.offline_queue.storage_dir)
            self.queue = OfflineActionQueue(config.offline_queue, store, self.event_bus, self.network, self.clock)
            self.game_state_cache = GameStateCache(store, config.offline_queue.game_state_key, self.clock)

            self.reporter = ViolationReporter(self._report_violations, config.anticheat, self.event_bus)
            self.validator = AntiCheatValidator(config.anticheat, self.event_bus, self.reporter)

            self.transport = self._transport if self._transport is not None else WebSocketTransport(config.realtime.url)
            self.connection_manager = ConnectionManager(
                self.transport,
                config.realtime,
                event_bus=self.event_bus,
                queue=self.queue,
                validator=self.validator,
                network=self.network,
                credential_provider=self.credential_provider,
                clock=self.clock,
            )

            await self.queue.load()
            await self.game_state_cache.load()
            # Registered on the transport so it outlives manager disconnects
            self.transport.on(GAME_STATE_EVENT, self._on_game_state)
            self.reporter.start()

            self._initialized = True
            logger.info(
                "Game client container initialized",
                realtime_url=config.realtime.url,
                queued_actions=self.queue.pending_count,
            )

    def _require(self) -> tuple[ConnectionManager, OfflineActionQueue, AntiCheatValidator]:
        if not self._initialized or self.connection_manager is None or self.queue is None or self.validator is None:
            raise RuntimeError("GameClientContainer.initialize() must be awaited first")
        return self.connection_manager, self.queue, self.validator

    async def _report_violations(self, payload: dict[str, Any]) -> None:
        """Upstream sink for the violation reporter."""
        manager, _, _ = self._require()
        outcome = await manager.emit(REPORT_EVENT, payload, critical=bool(payload.get("immediate")))
        if outcome is EmitOutcome.DROPPED:
            raise TransportError("Violation report not delivered", event=REPORT_EVENT)

    def start_game_session(self, session_id: str) -> None:
        """Fresh anti-cheat state for a new game; stamps the session onto logs."""
        _, _, validator = self._require()
        validator.reset()
        set_session_id(session_id)
        logger.info("Game session started", session_id=session_id)

    async def end_game_session(self) -> None:
        """Reset anti-cheat state and forget the cached game state."""
        _, _, validator = self._require()
        validator.reset()
        if self.game_state_cache is not None:
            await self.game_state_cache.clear()
        set_session_id(None)

    async def _on_game_state(self, data: Any) -> None:
        if self.game_state_cache is None or not isinstance(data, dict):
            return
        await self.game_state_cache.cache(data)

    async def send_location(self, sample: LocationSample) -> EmitOutcome:
        """Validate and deliver (or queue) a GPS sample."""
        manager, _, _ = self._require()
        return await manager.emit_location(sample)

    async def attempt_tag(
        self,
        target_id: str,
        tagger_pos: LocationSample,
        target_pos: LocationSample,
        max_distance: float | None = None,
    ) -> TagAttemptResult:
        """
        Verify a tag locally, then send it with acknowledgment or queue it.

        A send that fails outright is queued for replay. An acknowledgment
        timeout is reported as such and not queued, since the server may
        already have applied the tag.
        """
        manager, queue, validator = self._require()

        verification = validator.verify_tag(tagger_pos, target_pos, max_distance)
        if not verification.accepted:
            return TagAttemptResult(
                status="rejected",
                distance_m=verification.distance_m,
                reason=verification.reason.value if verification.reason else None,
            )

        payload = {
            "target_id": target_id,
            "tagger": tagger_pos.to_payload(),
            "distance_m": round(verification.distance_m, 2),
        }

        if manager.is_connected:
            try:
                result = await manager.emit_with_ack(TAG_EVENT, payload, timeout=self.config.offline_queue.tag_ack_timeout)
                return TagAttemptResult(status="sent", distance_m=verification.distance_m, server_result=result)
            except AckTimeoutError:
                logger.warning("Tag acknowledgment timed out", target_id=target_id)
                return TagAttemptResult(status="timeout", distance_m=verification.distance_m, reason="timeout")
            except TransportError as e:
                logger.info("Tag send failed, queueing for replay", target_id=target_id, error=str(e))

        action = await queue.enqueue(ActionKind.TAG, payload)
        status = "queued" if action is not None else "dropped"
        if action is not None and manager.is_connected:
            # The channel is up, so retry now instead of waiting for the periodic sync
            await manager.sync_queue()
        return TagAttemptResult(status=status, distance_m=verification.distance_m)

    async def shutdown(self) -> None:
        """Tear everything down in reverse dependency order. Best effort."""
        logger.info("Shutting down game client container...")
        if self.reporter is not None:
            await self.reporter.stop()
        if self.transport is not None:
            self.transport.off(GAME_STATE_EVENT, self._on_game_state)
        if self.connection_manager is not None:
            await self.connection_manager.shutdown()
        if self.event_bus is not None:
            await self.event_bus.shutdown()
        set_session_id(None)
        self._initialized = False
        logger.info("Game client container shutdown complete")
