"""
PersistenceStrategy interface for pluggable key-value storage.

The runtime stores three kinds of state: per-agent memory records, per-agent
dedup windows of processed item IDs, and mention-watcher cursors. All of it
goes through one small key-value contract so the same code runs against a
dict, a directory of JSON files, or any document store that implements it.

Two included implementations:
1. InMemoryPersistence - dict-based, data lost on exit (testing, dry runs)
2. JsonPersistence - one JSON file per key under a base directory

Usage pattern:
    persistence = JsonPersistence("data")
    await persistence.initialize()
    await persistence.put("memory:bot1", record.model_dump(mode="json"))
    ids = await persistence.append_bounded("dedup:bot1", "t1", cap=1000)
    await persistence.close()

Values must be JSON-compatible (dicts, lists, strings, numbers, booleans, None).
"""

import asyncio
import copy
import json
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional


class PersistenceStrategy(ABC):
    """Abstract key-value storage used by the memory store, dedup store and watcher.

    Method categories:
    1. Lifecycle: initialize(), close()
    2. Reads: get()
    3. Writes: put(), append_bounded(), delete()

    Keys are partitioned by agent (``memory:<agent>``, ``dedup:<agent>``), so
    writers for different agents never touch the same key.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (create directories, open connections)."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources. Stored data must survive close()."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value for key, or None when absent."""
        pass

    @abstractmethod
    async def put(self, key: str, value: Any) -> None:
        """Store value under key, replacing any previous value."""
        pass

    @abstractmethod
    async def append_bounded(self, key: str, item: Any, cap: int) -> List[Any]:
        """Append item to the list stored at key, keeping only the newest cap entries.

        A missing key starts an empty list. Returns the stored list after the
        append (oldest first).
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key. Missing keys are ignored."""
        pass


def _bounded(values: List[Any], item: Any, cap: int) -> List[Any]:
    if cap <= 0:
        raise ValueError("cap must be positive")
    values = list(values) + [item]
    if len(values) > cap:
        values = values[len(values) - cap:]
    return values


class InMemoryPersistence(PersistenceStrategy):
    """Dict-backed storage. Values are deep-copied on the way in and out so
    callers cannot mutate stored state by accident."""

    def __init__(self):
        self.data: Dict[str, Any] = {}

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        # Data is kept after close so tests can inspect it.
        pass

    async def get(self, key: str) -> Optional[Any]:
        if key not in self.data:
            return None
        return copy.deepcopy(self.data[key])

    async def put(self, key: str, value: Any) -> None:
        self.data[key] = copy.deepcopy(value)

    async def append_bounded(self, key: str, item: Any, cap: int) -> List[Any]:
        current = self.data.get(key) or []
        if not isinstance(current, list):
            raise TypeError(f"Value at {key!r} is not a list")
        self.data[key] = _bounded(current, copy.deepcopy(item), cap)
        return copy.deepcopy(self.data[key])

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonPersistence(PersistenceStrategy):
    """File-based storage: one pretty-printed JSON document per key.

    Directory structure:
    ```
    {base_path}/
      memory__bot1.json
      dedup__bot1.json
      watcher__bot1__since_id.json
    ```

    All file I/O runs in a worker thread (asyncio.to_thread) so slow disks do
    not stall the event loop. Because those threads really run in parallel,
    writes to one key are serialized with a per-key lock. Writes go to a
    temporary file that is then renamed over the target.
    """

    def __init__(self, base_path: Path | str = "data"):
        self.base_path = Path(base_path)
        self._locks: Dict[str, asyncio.Lock] = {}

    async def initialize(self) -> None:
        await asyncio.to_thread(self.base_path.mkdir, parents=True, exist_ok=True)

    async def close(self) -> None:
        return None

    async def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        async with self._lock(key):
            text = await asyncio.to_thread(path.read_text, "utf-8")
        return json.loads(text)

    async def put(self, key: str, value: Any) -> None:
        async with self._lock(key):
            await asyncio.to_thread(self._write, self._path(key), value)

    async def append_bounded(self, key: str, item: Any, cap: int) -> List[Any]:
        async with self._lock(key):
            return await self._append_bounded(key, item, cap)

    async def _append_bounded(self, key: str, item: Any, cap: int) -> List[Any]:
        path = self._path(key)

        def _append() -> List[Any]:
            current: List[Any] = []
            if path.exists():
                current = json.loads(path.read_text("utf-8"))
                if not isinstance(current, list):
                    raise TypeError(f"Value at {key!r} is not a list")
            updated = _bounded(current, item, cap)
            self._write(path, updated)
            return updated

        return await asyncio.to_thread(_append)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        async with self._lock(key):
            if path.exists():
                await asyncio.to_thread(path.unlink)

    def _lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "__", key)
        return self.base_path / f"{safe}.json"

    def _write(self, path: Path, value: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(value, indent=2), "utf-8")
        tmp.replace(path)
