"""
Offline action queue.

Buffers actions generated while the realtime channel is unavailable,
persists them so they survive restarts, and replays them in their original
order once connectivity returns. The queue is the only owner of its
storage key; the connection manager only ever calls sync().
"""

from collections import Counter
from dataclasses import dataclass
from typing import Any

from anyio import Lock
from pydantic import ValidationError
from pydantic_core import to_jsonable_python

from ..config.models import OfflineQueueConfig
from ..events.event_bus import EventBus
from ..events.event_types import (
    ActionQueued,
    QueueLengthChanged,
    QueueStorageDegraded,
    SyncCompleted,
    SyncStarted,
)
from ..exceptions import QueueStorageError, TransportError
from ..realtime.network_monitor import NetworkMonitor
from ..realtime.transport import RealtimeTransport
from ..structured_logging.enhanced_logging_config import get_logger
from ..utils.clock import Clock, SystemClock
from ..utils.geo import haversine_distance
from .models import DEFAULT_EVENTS, ActionKind, QueuedAction
from .storage import KeyValueStore, MemoryStore

logger = get_logger(__name__)

# Kinds in the order they give way when the queue is full. Tags never do.
_EVICTION_ORDER = (ActionKind.LOCATION, ActionKind.GENERIC)


@dataclass
class SyncResult:
    """Outcome of one sync() call."""

    processed: int = 0
    failed: int = 0
    retained: int = 0
    remaining: int = 0
    skipped: bool = False


class OfflineActionQueue:
    """
    Durable, bounded, ordered buffer of outbound actions.

    Delivery is strictly FIFO: an item that fails but still has attempts
    left stops the drain, so nothing behind it is delivered first.
    """

    def __init__(
        self,
        config: OfflineQueueConfig | dict[str, Any] | None = None,
        store: KeyValueStore | None = None,
        event_bus: EventBus | None = None,
        network: NetworkMonitor | None = None,
        clock: Clock | None = None,
    ):
        if config is None:
            config = OfflineQueueConfig()
        elif isinstance(config, dict):
            config = OfflineQueueConfig(**config)
        self.config = config
        self.store: KeyValueStore = store if store is not None else MemoryStore()
        self.event_bus = event_bus
        self.network = network
        self.clock: Clock = clock or SystemClock()

        self._items: list[QueuedAction] = []
        self._syncing = False
        self._storage_degraded = False
        self._persist_lock = Lock()

    @property
    def pending_count(self) -> int:
        return len(self._items)

    @property
    def items(self) -> tuple[QueuedAction, ...]:
        """Snapshot of the queued actions, oldest first."""
        return tuple(self._items)

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def storage_degraded(self) -> bool:
        return self._storage_degraded

    @property
    def capacity(self) -> int:
        return self.config.degraded_capacity if self._storage_degraded else self.config.capacity

    async def load(self) -> int:
        """
        Restore persisted actions.

        Entries older than the staleness window and records that fail
        validation are discarded.

        Returns:
            Number of actions restored
        """
        try:
            raw = await self.store.get(self.config.storage_key)
        except (QueueStorageError, OSError) as e:
            logger.warning("Could not load offline queue, starting empty", error=str(e), error_type=type(e).__name__)
            raw = None

        if not isinstance(raw, list):
            raw = []

        now = self.clock.now()
        restored: list[QueuedAction] = []
        invalid = stale = 0
        for record in raw:
            try:
                action = QueuedAction.model_validate(record)
            except ValidationError:
                invalid += 1
                continue
            if action.age_seconds(now) > self.config.staleness_window_seconds:
                stale += 1
                continue
            restored.append(action)

        self._items = restored
        overflow = 0
        while len(self._items) > self.config.capacity:
            if not self._evict_one():
                self._items.pop(0)
            overflow += 1

        logger.info(
            "Offline queue loaded",
            restored=len(self._items),
            stale_dropped=stale,
            invalid_dropped=invalid,
            overflow_dropped=overflow,
        )

        if invalid or stale or overflow:
            await self._persist()
        self._publish_length()
        return len(self._items)

    async def enqueue(
        self,
        kind: ActionKind | str,
        payload: dict[str, Any] | None = None,
        event: str | None = None,
    ) -> QueuedAction | None:
        """
        Add an action to the back of the queue.

        Location actions within the dedupe distance of the most recently
        queued location are discarded. When full, the oldest location entry
        gives way first, then the oldest generic entry.

        Args:
            kind: Delivery class of the action
            payload: JSON-serializable message body
            event: Wire event name; defaults per kind

        Returns:
            The queued action, or None if it was deduplicated or refused
        """
        kind = ActionKind(kind)
        # Values JSON cannot represent are stored as their string form
        payload = to_jsonable_python(dict(payload or {}), fallback=str)
        if event is None:
            event = DEFAULT_EVENTS.get(kind)
            if event is None:
                raise ValueError("Generic actions require an event name")

        if kind is ActionKind.LOCATION and self._is_duplicate_location(payload):
            logger.debug("Location update within dedupe distance, discarded")
            return None

        if len(self._items) >= self.capacity and not self._evict_one():
            logger.warning("Offline queue full of unevictable actions, refusing action", kind=kind.value, event_type=event)
            return None

        action = QueuedAction(kind=kind, event=event, payload=payload, created_at=self.clock.now())
        self._items.append(action)
        logger.debug("Action queued", action_id=action.id, kind=kind.value, queue_length=len(self._items))

        await self._persist()
        if self.event_bus is not None:
            self.event_bus.publish(ActionQueued(action_id=action.id, kind=kind.value, queue_length=len(self._items)))
        self._publish_length()
        return action

    def _is_duplicate_location(self, payload: dict[str, Any]) -> bool:
        last = next((a for a in reversed(self._items) if a.kind is ActionKind.LOCATION), None)
        if last is None:
            return False
        try:
            distance = haversine_distance(
                float(last.payload["lat"]), float(last.payload["lng"]), float(payload["lat"]), float(payload["lng"])
            )
        except (KeyError, TypeError, ValueError):
            return False
        return distance < self.config.dedupe_distance_m

    def _evict_one(self) -> bool:
        for kind in _EVICTION_ORDER:
            victim = next((a for a in self._items if a.kind is kind), None)
            if victim is not None:
                self._items.remove(victim)
                logger.info("Queue at capacity, evicted oldest action", action_id=victim.id, kind=kind.value)
                return True
        return False

    def _is_online(self, transport: RealtimeTransport) -> bool:
        if self.network is not None and not self.network.is_online:
            return False
        return transport.is_open

    async def sync(self, transport: RealtimeTransport) -> SyncResult:
        """
        Deliver queued actions in order.

        No-op when offline, empty, or a sync is already running. location
        and generic actions are fire-and-forget; tag actions wait for an
        acknowledgment.

        Args:
            transport: Open channel to deliver over

        Returns:
            SyncResult with delivered, dropped and retained counts
        """
        if self._syncing:
            logger.debug("Sync already in progress, skipping")
            return SyncResult(remaining=len(self._items), skipped=True)
        if not self._items or not self._is_online(transport):
            return SyncResult(remaining=len(self._items), skipped=True)

        self._syncing = True
        result = SyncResult()
        try:
            if self.event_bus is not None:
                self.event_bus.publish(SyncStarted(count=len(self._items)))
            logger.info("Offline queue sync started", count=len(self._items))

            while self._items:
                if not self._is_online(transport):
                    logger.info("Went offline during sync, stopping", remaining=len(self._items))
                    break

                action = self._items[0]
                try:
                    await self._deliver(transport, action)
                except TransportError as e:
                    if not self._is_online(transport):
                        logger.info("Delivery interrupted by lost connectivity", action_id=action.id)
                        break
                    if self._record_failure(action, e):
                        result.failed += 1
                        await self._persist()
                        continue
                    result.retained += 1
                    await self._persist()
                    break

                self._remove(action)
                result.processed += 1
                await self._persist()
        finally:
            self._syncing = False

        result.remaining = len(self._items)
        logger.info(
            "Offline queue sync completed",
            processed=result.processed,
            failed=result.failed,
            retained=result.retained,
            remaining=result.remaining,
        )
        if self.event_bus is not None:
            self.event_bus.publish(
                SyncCompleted(
                    processed=result.processed,
                    failed=result.failed,
                    retained=result.retained,
                    remaining=result.remaining,
                )
            )
        self._publish_length()
        return result

    async def _deliver(self, transport: RealtimeTransport, action: QueuedAction) -> None:
        # The action id lets the server discard replays of an already applied action
        payload = {**action.payload, "client_action_id": action.id}
        if action.kind is ActionKind.TAG:
            await transport.emit_with_ack(action.event, payload, timeout=self.config.tag_ack_timeout)
        else:
            await transport.emit(action.event, payload)

    def _record_failure(self, action: QueuedAction, error: Exception) -> bool:
        """Count a failed delivery. Returns True if the action was dropped."""
        action.attempts += 1
        limit = self.config.tag_max_attempts if action.kind is ActionKind.TAG else self.config.max_attempts
        if action.attempts >= limit:
            self._remove(action)
            logger.warning(
                "Dropping action after exhausting delivery attempts",
                action_id=action.id,
                kind=action.kind.value,
                attempts=action.attempts,
                error=str(error),
            )
            return True

        logger.info(
            "Action delivery failed, retaining for next sync",
            action_id=action.id,
            kind=action.kind.value,
            attempts=action.attempts,
            max_attempts=limit,
            error=str(error),
        )
        return False

    def _remove(self, action: QueuedAction) -> None:
        self._items = [a for a in self._items if a.id != action.id]

    async def clear(self) -> None:
        """Drop every queued action and the persisted copy."""
        self._items = []
        try:
            await self.store.remove(self.config.storage_key)
        except (QueueStorageError, OSError) as e:
            logger.warning("Could not remove persisted offline queue", error=str(e))
        logger.info("Offline queue cleared")
        self._publish_length()

    def get_status(self) -> dict[str, Any]:
        """Read-only snapshot for diagnostics."""
        by_kind = Counter(a.kind.value for a in self._items)
        return {
            "length": len(self._items),
            "capacity": self.capacity,
            "by_kind": dict(by_kind),
            "syncing": self._syncing,
            "storage_degraded": self._storage_degraded,
            "oldest_created_at": self._items[0].created_at.isoformat() if self._items else None,
        }

    async def _persist(self) -> None:
        """Write the ordered list to the store; degrade to memory on failure."""
        async with self._persist_lock:
            snapshot = [a.model_dump(mode="json") for a in self._items]
            try:
                await self.store.set(self.config.storage_key, snapshot)
            except (QueueStorageError, OSError) as e:
                self._degrade(e)
                return

            if self._storage_degraded:
                self._storage_degraded = False
                logger.info("Offline queue persistence recovered", length=len(self._items))

    def _degrade(self, error: Exception) -> None:
        was_degraded = self._storage_degraded
        self._storage_degraded = True

        trimmed = 0
        while len(self._items) > self.config.degraded_capacity:
            if not self._evict_one():
                self._items.pop(0)
            trimmed += 1

        logger.warning(
            "Offline queue persistence failed, continuing in memory",
            error=str(error),
            error_type=type(error).__name__,
            trimmed=trimmed,
            retained=len(self._items),
        )
        if self.event_bus is not None and not was_degraded:
            self.event_bus.publish(QueueStorageDegraded(error=str(error), retained=len(self._items)))
        if trimmed:
            self._publish_length()

    def _publish_length(self) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(QueueLengthChanged(length=len(self._items)))
