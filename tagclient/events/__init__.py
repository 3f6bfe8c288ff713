"""
Events module for the tag client.

Typed notifications the core publishes for UI and observability
collaborators, and the in-memory bus that delivers them.
"""

from .event_bus import EventBus
from .event_types import (
    ActionQueued,
    BaseEvent,
    ConnectionQualityChanged,
    ConnectionStateChanged,
    NetworkStatusChanged,
    QueueLengthChanged,
    QueueStorageDegraded,
    SyncCompleted,
    SyncStarted,
    ViolationDetected,
    ViolationsReported,
)

__all__ = [
    "EventBus",
    "BaseEvent",
    "ActionQueued",
    "ConnectionQualityChanged",
    "ConnectionStateChanged",
    "NetworkStatusChanged",
    "QueueLengthChanged",
    "QueueStorageDegraded",
    "SyncCompleted",
    "SyncStarted",
    "ViolationDetected",
    "ViolationsReported",
]
