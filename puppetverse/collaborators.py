"""
External collaborator interfaces and reference implementations.

The runtime never talks to a social network or a language model directly; it
goes through two abstract collaborators:

- Publisher: fetches items and mentions, publishes posts, likes items
- ContentGenerator: writes replies and posts, suggests reactions, and
  interprets events as memory updates

Both are injected into the Runtime. InMemoryNetwork and
TemplateContentGenerator are complete, offline implementations used for dry
runs and tests; LLMContentGenerator (generator.py) is the model-backed one.
"""

from __future__ import annotations

import asyncio
import itertools
import random
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .errors import DuplicateContentError, NotFoundError, StreamUnavailableError
from .logging_utils import log_error, log_network, preview
from .schemas import (
    AgentProfile,
    Event,
    Item,
    MemoryUpdate,
    ReactionAction,
    ReactionSuggestion,
    TranscriptEntry,
    utc_now,
)

MentionCallback = Callable[[Item], Awaitable[Any]]


# ============================================================================
# Interfaces
# ============================================================================


class MentionStream(ABC):
    """An open push subscription delivering mentions for one agent."""

    @abstractmethod
    async def close(self) -> None:
        """Stop delivering mentions. Safe to call more than once."""
        pass


class Publisher(ABC):
    """Social network access for agents."""

    @abstractmethod
    async def fetch_item(self, item_id: str) -> Item:
        """Return the item, or raise NotFoundError."""
        pass

    @abstractmethod
    async def fetch_mentions_since(
        self, agent_id: str, since_id: Optional[str], limit: int
    ) -> List[Item]:
        """Mentions of agent_id newer than since_id, newest first."""
        pass

    @abstractmethod
    async def publish(
        self,
        agent_id: str,
        content: str,
        *,
        reply_to_id: Optional[str] = None,
        quote_id: Optional[str] = None,
    ) -> Item:
        """Publish content as agent_id. Raises DuplicateContentError or PublishError."""
        pass

    @abstractmethod
    async def like(self, agent_id: str, item_id: str) -> None:
        pass

    @abstractmethod
    async def fetch_user_timeline(self, user_id: str, limit: int) -> List[Item]:
        """Recent items authored by user_id, newest first."""
        pass

    async def open_mention_stream(
        self, agent_id: str, on_mention: MentionCallback
    ) -> MentionStream:
        """Open a push stream of mentions. Publishers without one keep this default."""
        raise StreamUnavailableError(f"Mention streaming is not supported by {type(self).__name__}")


class ContentGenerator(ABC):
    """Writes what agents say. Implementations may be slow (model calls)."""

    @abstractmethod
    async def generate_reply(
        self,
        agent: AgentProfile,
        transcript: List[TranscriptEntry],
        *,
        item: Item,
        avoid_context_questions: bool = False,
    ) -> str:
        pass

    @abstractmethod
    async def generate_tweet(self, agent: AgentProfile, hint: Optional[str] = None) -> str:
        pass

    @abstractmethod
    async def generate_reaction(self, agent: AgentProfile, item: Item) -> ReactionSuggestion:
        pass

    @abstractmethod
    async def generate_memory_update(self, agent: AgentProfile, event: Event) -> MemoryUpdate:
        pass


# ============================================================================
# In-memory social network
# ============================================================================


class _InMemoryStream(MentionStream):
    def __init__(self, network: "InMemoryNetwork", agent_id: str, callback: MentionCallback):
        self.network = network
        self.agent_id = agent_id
        self.callback = callback
        self.closed = False

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.network._streams[self.agent_id].discard(self)


class InMemoryNetwork(Publisher):
    """A small social network held in dicts.

    Accounts are registered with an ID and optional username. An item mentions
    an account when its content contains ``@username`` or ``@id``, or when it
    replies to one of that account's items. Publishing the same text twice
    from one account raises DuplicateContentError, like real networks do.

    Item IDs are ``<author>-<n>`` with n increasing, so string comparison on
    the numeric part gives chronological order.
    """

    def __init__(self, *, streaming: bool = False):
        self.items: Dict[str, Item] = {}
        self.usernames: Dict[str, str] = {}
        self.likes: Dict[str, Set[str]] = defaultdict(set)
        self.published: List[Item] = []
        self.streaming = streaming
        self._mentions: Dict[str, List[Item]] = defaultdict(list)
        self._streams: Dict[str, Set[_InMemoryStream]] = defaultdict(set)
        # Stream callbacks still running.
        self._deliveries: Set[asyncio.Future] = set()
        self._counter = itertools.count(1)

    def register_account(self, user_id: str, username: Optional[str] = None) -> None:
        self.usernames[user_id] = (username or user_id).lstrip("@")

    def add_item(
        self,
        content: str,
        author_id: str,
        *,
        reply_to_id: Optional[str] = None,
        quote_to_id: Optional[str] = None,
        is_direct_mention: bool = False,
    ) -> Item:
        """Insert an item written by anyone (agents or outside users)."""
        number = next(self._counter)
        parent = self.items.get(reply_to_id) if reply_to_id else None
        item = Item(
            id=f"{author_id}-{number}",
            content=content,
            author_id=author_id,
            author_username=self.usernames.get(author_id, author_id),
            created_at=utc_now(),
            reply_to_id=reply_to_id,
            in_reply_to_user_id=parent.author_id if parent is not None else None,
            quote_to_id=quote_to_id,
            is_direct_mention=is_direct_mention,
        )
        self.items[item.id] = item
        for account in self._mentioned_accounts(item):
            self._mentions[account].append(item)
            for stream in list(self._streams[account]):
                delivery = asyncio.ensure_future(stream.callback(item))
                self._deliveries.add(delivery)
                delivery.add_done_callback(self._delivery_done)
        return item

    def _delivery_done(self, delivery: asyncio.Future) -> None:
        self._deliveries.discard(delivery)
        if delivery.cancelled():
            return
        exc = delivery.exception()
        if exc is not None:
            log_error(f"Mention stream callback failed: {exc}")

    async def drain_deliveries(self) -> None:
        """Wait for every stream callback started so far."""
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    def mentions_of(self, user_id: str) -> List[Item]:
        return list(self._mentions[user_id])

    def _mentioned_accounts(self, item: Item) -> Set[str]:
        handles = {name.lower(): uid for uid, name in self.usernames.items()}
        handles.update({uid.lower(): uid for uid in self.usernames})
        accounts = {
            handles[h.lower()] for h in re.findall(r"@(\w+)", item.content) if h.lower() in handles
        }
        if item.in_reply_to_user_id in self.usernames:
            accounts.add(item.in_reply_to_user_id)
        accounts.discard(item.author_id)
        return accounts

    async def fetch_item(self, item_id: str) -> Item:
        try:
            return self.items[item_id]
        except KeyError:
            raise NotFoundError(item_id) from None

    async def fetch_mentions_since(
        self, agent_id: str, since_id: Optional[str], limit: int
    ) -> List[Item]:
        mentions = self._mentions[agent_id]
        if since_id is not None:
            since = _sequence(since_id)
            mentions = [m for m in mentions if _sequence(m.id) > since]
        return list(reversed(mentions))[:limit]

    async def publish(
        self,
        agent_id: str,
        content: str,
        *,
        reply_to_id: Optional[str] = None,
        quote_id: Optional[str] = None,
    ) -> Item:
        if any(p.author_id == agent_id and p.content == content for p in self.published):
            raise DuplicateContentError(content)
        item = self.add_item(content, agent_id, reply_to_id=reply_to_id, quote_to_id=quote_id)
        self.published.append(item)
        log_network(f"{agent_id} published {item.id}: {preview(content)}")
        return item

    async def like(self, agent_id: str, item_id: str) -> None:
        if item_id not in self.items:
            raise NotFoundError(item_id)
        self.likes[agent_id].add(item_id)
        log_network(f"{agent_id} liked {item_id}")

    async def fetch_user_timeline(self, user_id: str, limit: int) -> List[Item]:
        authored = [i for i in self.items.values() if i.author_id == user_id]
        authored.sort(key=lambda i: _sequence(i.id), reverse=True)
        return authored[:limit]

    async def open_mention_stream(
        self, agent_id: str, on_mention: MentionCallback
    ) -> MentionStream:
        if not self.streaming:
            return await super().open_mention_stream(agent_id, on_mention)
        stream = _InMemoryStream(self, agent_id, on_mention)
        self._streams[agent_id].add(stream)
        return stream


def _sequence(item_id: str) -> int:
    tail = item_id.rsplit("-", 1)[-1]
    return int(tail) if tail.isdigit() else -1


# ============================================================================
# Template content generator
# ============================================================================


class TemplateContentGenerator(ContentGenerator):
    """Deterministic, model-free generator.

    Useful for dry runs. Reactions are suggested from the agent's interaction
    probabilities: the most likely action wins, so the policy gates still
    decide whether it happens.
    """

    TWEET_TEMPLATES = (
        "Thinking about {topic} today.",
        "Hot take on {topic}: it matters more than people think.",
        "Can't stop wondering where {topic} goes next.",
    )

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def _topic(self, agent: AgentProfile) -> str:
        interests = agent.personality.get("interests") or []
        if interests:
            return str(self.rng.choice(list(interests)))
        return "the world"

    async def generate_tweet(self, agent: AgentProfile, hint: Optional[str] = None) -> str:
        if hint:
            return f"{hint.strip()} ({agent.name})"
        return self.rng.choice(self.TWEET_TEMPLATES).format(topic=self._topic(agent))

    async def generate_reply(
        self,
        agent: AgentProfile,
        transcript: List[TranscriptEntry],
        *,
        item: Item,
        avoid_context_questions: bool = False,
    ) -> str:
        if avoid_context_questions or len(transcript) <= 1:
            return f"Thanks for the mention! Always happy to talk about {self._topic(agent)}."
        return f"Good point about \"{preview(item.content, 40)}\", I see it a bit differently."

    async def generate_reaction(self, agent: AgentProfile, item: Item) -> ReactionSuggestion:
        patterns = agent.behavior.interaction_patterns
        ranked = sorted(
            (
                (patterns.like_probability, ReactionAction.LIKE),
                (patterns.reply_probability, ReactionAction.REPLY),
                (patterns.quote_probability * 0.5, ReactionAction.QUOTE),
            ),
            key=lambda pair: pair[0],
            reverse=True,
        )
        probability, action = ranked[0]
        if probability <= 0:
            return ReactionSuggestion(action=ReactionAction.IGNORE, reasoning="Not interested")

        content = None
        if action == ReactionAction.REPLY:
            content = f"Interesting take on {self._topic(agent)}."
        elif action == ReactionAction.QUOTE:
            content = f"Worth reading, especially for anyone into {self._topic(agent)}."
        return ReactionSuggestion(
            action=action,
            content=content,
            reasoning=f"{action.value} fits this persona best",
        )

    async def generate_memory_update(self, agent: AgentProfile, event: Event) -> MemoryUpdate:
        headline = event.data.get("headline") or event.data.get("description") or event.type
        return MemoryUpdate(
            memory=f"Heard about: {headline}",
            importance=0.5,
            valence_shift=0.0,
            arousal_shift=0.1,
        )
