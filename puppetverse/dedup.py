"""Dedup store: remembers which external items each agent already reacted to.

The at-most-once guarantee rests on claim(): the membership check and the
insert happen synchronously, with no await in between, so two deliveries of
the same item racing through the event loop cannot both pass. Persisting the
claim happens afterwards; the in-memory window is authoritative while the
process runs.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Dict

from .config import Config
from .logging_utils import log_error, log_info
from .persistence import PersistenceStrategy


class DedupStore:
    """Bounded, insertion-ordered set of processed item IDs, one window per agent."""

    def __init__(self, persistence: PersistenceStrategy, *, capacity: int | None = None):
        self.persistence = persistence
        self.capacity = capacity or Config.DEDUP_CAPACITY
        if self.capacity < 1:
            raise ValueError("capacity must be positive")
        self._seen: Dict[str, "OrderedDict[str, None]"] = {}
        self._loaded: set[str] = set()

    @staticmethod
    def key(agent_id: str) -> str:
        return f"dedup:{agent_id}"

    async def load(self, agent_id: str) -> int:
        """Merge the persisted window for agent_id into memory. Returns its size."""
        if agent_id in self._loaded:
            return len(self._window(agent_id))

        stored = await self.persistence.get(self.key(agent_id)) or []
        window = self._window(agent_id)
        # Persisted IDs are older than anything claimed since startup.
        merged: "OrderedDict[str, None]" = OrderedDict((str(i), None) for i in stored)
        for item_id in window:
            merged.pop(item_id, None)
            merged[item_id] = None
        self._seen[agent_id] = merged
        self._trim(agent_id)
        self._loaded.add(agent_id)
        if stored:
            log_info(f"Loaded {len(stored)} processed item IDs for agent {agent_id}")
        return len(merged)

    def contains(self, agent_id: str, item_id: str) -> bool:
        return item_id in self._window(agent_id)

    def size(self, agent_id: str) -> int:
        return len(self._window(agent_id))

    async def claim(self, agent_id: str, item_id: str) -> bool:
        """Mark item_id as processed for agent_id.

        Returns False when it was already claimed. The claim is visible to
        other callers before this coroutine first suspends.
        """
        window = self._window(agent_id)
        if item_id in window:
            return False
        window[item_id] = None
        self._trim(agent_id)

        try:
            await self.persistence.append_bounded(self.key(agent_id), item_id, self.capacity)
        except Exception as exc:
            # The in-memory claim still stands; only durability across restarts is lost.
            log_error(f"Failed to persist processed item {item_id} for {agent_id}: {exc}")
        return True

    def _window(self, agent_id: str) -> "OrderedDict[str, None]":
        if agent_id not in self._seen:
            self._seen[agent_id] = OrderedDict()
        return self._seen[agent_id]

    def _trim(self, agent_id: str) -> None:
        window = self._seen[agent_id]
        while len(window) > self.capacity:
            window.popitem(last=False)
