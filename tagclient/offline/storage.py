"""
Durable key-value stores for the offline queue.

The queue talks to a KeyValueStore and owns everything stored under its key.
JsonFileStore keeps one JSON document per key on disk; MemoryStore is used
where nothing needs to survive a restart.
"""

import json
import re
from pathlib import Path
from typing import Any, Protocol

import aiofiles
import aiofiles.os

from ..exceptions import QueueStorageError
from ..structured_logging.enhanced_logging_config import get_logger

logger = get_logger(__name__)

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]")


class KeyValueStore(Protocol):
    """Async key-value persistence. Values are JSON-serializable."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemoryStore:
    """Process-local store."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        # Serialize so callers cannot mutate stored state through shared references
        try:
            self._data[key] = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            raise QueueStorageError(f"Failed to serialize value for {key}: {e}", operation="write") from e

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """
    One JSON file per key under a base directory.

    Writes go to a temporary file that is then renamed over the target, so a
    crash mid-write leaves the previous document intact.
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)

    def _path_for(self, key: str) -> Path:
        return self.base_dir / f"{_SAFE_KEY.sub('_', key)}.json"

    async def get(self, key: str) -> Any | None:
        path = self._path_for(key)
        if not await aiofiles.os.path.exists(path):
            return None
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
        except OSError as e:
            raise QueueStorageError(f"Failed to read {path}: {e}", operation="read") from e

        if not content.strip():
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning("Discarding corrupt store document", path=str(path), error=str(e))
            return None

    async def set(self, key: str, value: Any) -> None:
        path = self._path_for(key)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            await aiofiles.os.makedirs(self.base_dir, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(value, default=str))
            await aiofiles.os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise QueueStorageError(f"Failed to write {path}: {e}", operation="write") from e

    async def remove(self, key: str) -> None:
        path = self._path_for(key)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise QueueStorageError(f"Failed to remove {path}: {e}", operation="remove") from e
