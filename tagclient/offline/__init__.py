"""Durable offline buffering of outbound actions."""

from .game_state_cache import GameStateCache
from .models import ActionKind, QueuedAction
from .offline_queue import OfflineActionQueue, SyncResult
from .storage import JsonFileStore, KeyValueStore, MemoryStore

__all__ = [
    "ActionKind",
    "GameStateCache",
    "JsonFileStore",
    "KeyValueStore",
    "MemoryStore",
    "OfflineActionQueue",
    "QueuedAction",
    "SyncResult",
]
