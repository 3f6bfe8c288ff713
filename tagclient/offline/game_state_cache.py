"""
Last known game state.

Keeps the most recent game:state snapshot so the client has something to
render while offline or right after a restart, until the server resync
replaces it.
"""

from typing import Any

from ..exceptions import QueueStorageError
from ..structured_logging.enhanced_logging_config import get_logger
from ..utils.clock import Clock, SystemClock
from .storage import KeyValueStore

logger = get_logger(__name__)

GAME_STATE_EVENT = "game:state"


class GameStateCache:
    """
    Single cached snapshot, held in memory and mirrored to a store.

    A failing store never loses the in-memory copy; it only means the
    snapshot will not survive a restart.
    """

    def __init__(self, store: KeyValueStore, storage_key: str = "tag-game-state", clock: Clock | None = None):
        self.store = store
        self.storage_key = storage_key
        self.clock: Clock = clock or SystemClock()
        self._state: dict[str, Any] | None = None

    @property
    def state(self) -> dict[str, Any] | None:
        return self._state

    async def load(self) -> dict[str, Any] | None:
        """Restore the persisted snapshot, if any."""
        try:
            raw = await self.store.get(self.storage_key)
        except (QueueStorageError, OSError) as e:
            logger.warning("Could not load cached game state", error=str(e), error_type=type(e).__name__)
            return None

        self._state = raw if isinstance(raw, dict) else None
        logger.debug("Cached game state loaded", found=self._state is not None)
        return self._state

    async def cache(self, state: dict[str, Any]) -> None:
        """
        Replace the snapshot.

        Args:
            state: Game state as received from the server
        """
        self._state = {**state, "cached_at": self.clock.now().isoformat()}
        try:
            await self.store.set(self.storage_key, self._state)
        except (QueueStorageError, OSError) as e:
            logger.warning("Could not persist game state, keeping it in memory", error=str(e))

    async def clear(self) -> None:
        self._state = None
        try:
            await self.store.remove(self.storage_key)
        except (QueueStorageError, OSError) as e:
            logger.warning("Could not remove cached game state", error=str(e))
