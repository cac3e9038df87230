"""
Per-agent memory store.

Keeps one MemoryRecord per agent: seeded core memories, importance-ranked
long-term memories and recent events, the agent's own posts, and its
relationships with other accounts. Records are cached in process and written
through to the injected PersistenceStrategy after every mutation.

Capacity rules (invariants after every insert):
- long_term_memories <= memory_limit, lowest-importance entries evicted first
- recent_events <= memory_limit // 2, same eviction order
- recent_posts <= max_recent_posts, newest first
- post_history <= max_post_history, newest first
- relationship.recent_interactions <= 10, newest first
- relationship.notes and shared_experiences <= 20 each, newest first

Seeded post_history entries are marked seeded; last_post_at only looks at
posts the agent actually published.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .config import Config
from .logging_utils import log_error, log_info
from .persistence import PersistenceStrategy
from .schemas import (
    InitialMemory,
    MemoryItem,
    MemoryRecord,
    Relationship,
    utc_now,
)

RECENT_INTERACTIONS_CAP = 10
RELATIONSHIP_NOTES_CAP = 20
SHARED_EXPERIENCES_CAP = 20

# Words too common to count as topics of a post.
_STOPWORDS = frozenset(
    """
    the and a an in on at to for with by about like as from but not or if when
    what why how is are was were be been being have has had do does did will
    would should could this that these those it its it's i you he she we they
    my your his her our their mine yours hers ours theirs just really
    """.split()
)


def _top_by_importance(items: List[MemoryItem], cap: int) -> List[MemoryItem]:
    if len(items) <= cap:
        return items
    # Stable sort keeps insertion order among equal importance.
    return sorted(items, key=lambda m: m.importance, reverse=True)[:cap]


class MemoryStore:
    """Cached, persisted MemoryRecords keyed by agent ID."""

    def __init__(
        self,
        persistence: PersistenceStrategy,
        *,
        memory_limit: Optional[int] = None,
        max_recent_posts: Optional[int] = None,
        max_post_history: Optional[int] = None,
    ) -> None:
        self.persistence = persistence
        self.memory_limit = memory_limit or Config.DEFAULT_AGENT_MEMORY_LIMIT
        self.max_recent_posts = max_recent_posts or Config.MAX_RECENT_POSTS
        self.max_post_history = max_post_history or Config.MAX_POST_HISTORY
        self._records: Dict[str, MemoryRecord] = {}

    @property
    def event_limit(self) -> int:
        return max(self.memory_limit // 2, 1)

    @staticmethod
    def key(agent_id: str) -> str:
        return f"memory:{agent_id}"

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def initialize_agent_memory(
        self, agent_id: str, seed: InitialMemory | Dict[str, Any] | None = None
    ) -> MemoryRecord:
        """Build a fresh record from seed data, replacing anything cached."""
        if isinstance(seed, dict):
            seed = InitialMemory.model_validate(seed)
        seed = seed or InitialMemory()

        record = MemoryRecord(agent_id=agent_id)
        for content in seed.core_memories:
            # Core memories are maximally important and never evicted.
            record.core_memories.append(
                MemoryItem(content=content, memory_type="core", importance=1.0)
            )

        for event in seed.recent_events:
            if isinstance(event, dict):
                item = MemoryItem(
                    content=str(event.get("content", "")),
                    memory_type="event",
                    importance=float(event.get("importance", 0.7)),
                    timestamp=event.get("timestamp") or utc_now(),
                )
            else:
                item = MemoryItem(content=str(event), memory_type="event", importance=0.7)
            record.recent_events.append(item)
        record.recent_events = _top_by_importance(record.recent_events, self.event_limit)

        for target_id, data in seed.relationships.items():
            record.relationships[target_id] = Relationship.model_validate(
                {**data, "target_id": target_id}
            )

        for post in seed.post_history[: self.max_post_history]:
            if isinstance(post, dict):
                item = MemoryItem(
                    content=str(post.get("content", "")),
                    memory_type="post",
                    importance=0.8,
                    timestamp=post.get("timestamp") or utc_now(),
                    metadata={"seeded": True},
                )
            else:
                item = MemoryItem(
                    content=str(post),
                    memory_type="post",
                    importance=0.8,
                    metadata={"seeded": True},
                )
            record.post_history.append(item)

        self._records[agent_id] = record
        await self.save(agent_id)
        return record

    async def get_memory(self, agent_id: str) -> MemoryRecord:
        """Return the cached record, falling back to persistence, then to an empty record."""
        if agent_id in self._records:
            return self._records[agent_id]

        try:
            stored = await self.persistence.get(self.key(agent_id))
        except Exception as exc:
            log_error(f"Error loading memory for agent {agent_id}: {exc}")
            stored = None

        if stored:
            record = MemoryRecord.model_validate(stored)
            self._records[agent_id] = record
            log_info(f"Loaded memory for agent {agent_id}")
            return record

        return await self.initialize_agent_memory(agent_id)

    async def save(self, agent_id: str) -> None:
        record = self._records.get(agent_id)
        if record is None:
            return
        record.last_updated = utc_now()
        await self.persistence.put(self.key(agent_id), record.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_memory(
        self,
        agent_id: str,
        content: str,
        memory_type: str = "general",
        importance: float = 0.5,
        *,
        emotional_valence: float = 0.0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MemoryItem:
        record = await self.get_memory(agent_id)
        item = MemoryItem(
            content=content,
            memory_type=memory_type,
            importance=max(0.0, min(1.0, importance)),
            emotional_valence=max(-1.0, min(1.0, emotional_valence)),
            metadata=metadata or {},
        )

        if memory_type == "core":
            record.core_memories.append(item)
        elif memory_type == "event":
            record.recent_events.append(item)
            record.recent_events = _top_by_importance(record.recent_events, self.event_limit)
        else:
            record.long_term_memories.append(item)
            record.long_term_memories = _top_by_importance(
                record.long_term_memories, self.memory_limit
            )

        await self.save(agent_id)
        return item

    async def record_post(
        self,
        agent_id: str,
        content: str,
        item_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MemoryItem:
        """Remember something the agent published."""
        record = await self.get_memory(agent_id)
        post = MemoryItem(
            content=content,
            memory_type="post",
            importance=0.8,
            metadata={"item_id": item_id, **(metadata or {})},
        )
        record.recent_posts.insert(0, post)
        del record.recent_posts[self.max_recent_posts:]
        record.post_history.insert(0, post)
        del record.post_history[self.max_post_history:]
        await self.save(agent_id)
        return post

    async def update_relationship(
        self,
        agent_id: str,
        target_id: str,
        *,
        sentiment_delta: float = 0.0,
        familiarity_delta: float = 0.0,
        trust_delta: float = 0.0,
        notes: Iterable[str] = (),
        interactions: Iterable[str] = (),
        shared_experiences: Iterable[str] = (),
    ) -> Relationship:
        record = await self.get_memory(agent_id)
        rel = record.relationship(target_id)

        rel.sentiment = max(-1.0, min(1.0, rel.sentiment + sentiment_delta))
        rel.familiarity = max(0.0, min(1.0, rel.familiarity + familiarity_delta))
        rel.trust = max(0.0, min(1.0, rel.trust + trust_delta))
        rel.notes = (list(notes) + rel.notes)[:RELATIONSHIP_NOTES_CAP]
        rel.recent_interactions = (list(interactions) + rel.recent_interactions)[
            :RECENT_INTERACTIONS_CAP
        ]
        rel.shared_experiences = (list(shared_experiences) + rel.shared_experiences)[
            :SHARED_EXPERIENCES_CAP
        ]
        rel.last_interaction_at = utc_now()

        await self.save(agent_id)
        return rel

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def search_memories(
        self, agent_id: str, query: str, *, limit: int = 10, threshold: float = 0.3
    ) -> List[MemoryItem]:
        """Keyword relevance weighted by importance.

        Score = (fraction of query terms present) * importance. Entries at or
        below threshold are dropped.
        """
        record = await self.get_memory(agent_id)
        terms = [t for t in query.lower().split() if t]
        if not terms:
            return []

        candidates = record.core_memories + record.recent_events + record.long_term_memories
        scored: List[tuple[float, MemoryItem]] = []
        for mem in candidates:
            text = mem.content.lower()
            matches = sum(1 for term in terms if term in text)
            score = (matches / len(terms)) * mem.importance
            if score > threshold:
                scored.append((score, mem))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [mem for _, mem in scored[:limit]]

    async def get_recent_posts(self, agent_id: str, limit: int = 10) -> List[MemoryItem]:
        record = await self.get_memory(agent_id)
        return record.post_history[:limit]

    async def has_recently_posted_about(
        self, agent_id: str, topic: str, *, lookback: int = 10
    ) -> bool:
        topic = topic.lower()
        posts = await self.get_recent_posts(agent_id, lookback)
        return any(topic in post.content.lower() for post in posts)

    async def get_recent_topics(self, agent_id: str, *, lookback: int = 15) -> List[str]:
        """Distinct non-trivial words from recent posts, oldest mention order preserved."""
        posts = await self.get_recent_posts(agent_id, lookback)
        topics: Dict[str, None] = {}
        for post in posts:
            words = re.sub(r"[^\w\s]", "", post.content.lower()).split()
            for word in words:
                if len(word) > 3 and word not in _STOPWORDS:
                    topics.setdefault(word, None)
        return list(topics)

    def cached(self, agent_id: str) -> Optional[MemoryRecord]:
        return self._records.get(agent_id)

    def last_post_at(self, agent_id: str) -> Optional[datetime]:
        record = self._records.get(agent_id)
        if record is None:
            return None
        for post in record.post_history:
            if not post.metadata.get("seeded"):
                return post.timestamp
        return None
