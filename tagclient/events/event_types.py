"""
Event types published on the client event bus.

These dataclasses are the closed set of notifications the core emits to UI
and observability collaborators. Wire-protocol messages are not events in
this sense; they stay string-named because that is the protocol.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any


def _default_timestamp() -> datetime:
    """Factory function for default timestamp."""
    return datetime.now(UTC)


@dataclass
class BaseEvent:
    """
    Base class for all client events.

    All events inherit from this class and provide a consistent
    interface for event handling and logging.
    """

    timestamp: datetime = field(default_factory=_default_timestamp, init=False)
    event_type: str = field(default="", init=False)
    sequence_number: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        self.event_type = type(self).__name__


@dataclass
class ConnectionStateChanged(BaseEvent):
    """
    Fired on every connection lifecycle transition.

    This is the only interface UI and telemetry consume for connectivity.
    """

    state: str
    previous_state: str | None = None
    reason: str | None = None
    attempts: int = 0


@dataclass
class ConnectionQualityChanged(BaseEvent):
    """Fired when the measured link quality moves to another tier."""

    quality: str
    latency_ms: float | None = None


@dataclass
class NetworkStatusChanged(BaseEvent):
    """Fired when the device gains or loses network availability."""

    online: bool


@dataclass
class ActionQueued(BaseEvent):
    """Fired when an action is accepted into the offline queue."""

    action_id: str
    kind: str
    queue_length: int


@dataclass
class QueueLengthChanged(BaseEvent):
    """Fired whenever the offline queue length changes."""

    length: int


@dataclass
class SyncStarted(BaseEvent):
    """Fired when the offline queue starts draining."""

    count: int


@dataclass
class SyncCompleted(BaseEvent):
    """
    Fired when a queue drain finishes or stops early.

    failed counts actions dropped after exhausting their delivery attempts;
    retained counts actions that failed but stay queued for the next sync.
    """

    processed: int
    failed: int
    retained: int = 0
    remaining: int = 0


@dataclass
class QueueStorageDegraded(BaseEvent):
    """Fired when persistence fails and the queue falls back to memory."""

    error: str
    retained: int


@dataclass
class ViolationDetected(BaseEvent):
    """Fired when a validation call produced one or more violations."""

    violations: list[Any]
    suspicion_score: float


@dataclass
class ViolationsReported(BaseEvent):
    """Fired after violations were handed to the upstream sink."""

    count: int
    immediate: bool
