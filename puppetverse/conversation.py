"""
Reply-chain resolution.

Walks reply_to_id links upwards from an item and returns the conversation as a
transcript (oldest first) from the point of view of one agent. The walk is
bounded by max_depth and by a visited set, so a cyclic chain terminates.
Fetch failures end the walk early; whatever was gathered so far is returned.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Set

from .config import Config
from .errors import NotFoundError
from .logging_utils import debug_enabled, log_error, log_network
from .schemas import Item, TranscriptEntry

if TYPE_CHECKING:
    from .collaborators import Publisher


class ConversationResolver:
    def __init__(self, publisher: "Publisher", max_depth: Optional[int] = None):
        self.publisher = publisher
        self.max_depth = max_depth if max_depth is not None else Config.CONVERSATION_MAX_DEPTH

    async def resolve(
        self, item_id: str, agent_id: str, max_depth: Optional[int] = None
    ) -> List[TranscriptEntry]:
        """Transcript of item_id and up to max_depth - 1 of its ancestors."""
        limit = self.max_depth if max_depth is None else max_depth
        entries: List[TranscriptEntry] = []
        await self._walk(item_id, agent_id, 0, limit, entries, set())
        # Walked newest to oldest; reversing first keeps chain order for equal timestamps.
        entries.reverse()
        entries.sort(key=lambda e: e.timestamp)
        return entries

    async def resolve_for_item(self, item: Item, agent_id: str) -> List[TranscriptEntry]:
        """Ancestors of an already-fetched item followed by the item itself."""
        transcript: List[TranscriptEntry] = []
        if item.reply_to_id and item.reply_to_id != item.id:
            transcript = await self.resolve(item.reply_to_id, agent_id)
        transcript.append(_entry(item, agent_id))
        return transcript

    async def _walk(
        self,
        item_id: str,
        agent_id: str,
        depth: int,
        limit: int,
        entries: List[TranscriptEntry],
        visited: Set[str],
    ) -> None:
        if depth >= limit or item_id in visited:
            return
        visited.add(item_id)

        try:
            item = await self.publisher.fetch_item(item_id)
        except NotFoundError:
            log_network(f"Conversation item {item_id} is unavailable, stopping here")
            return
        except Exception as exc:
            log_error(f"Error resolving conversation at {item_id}: {exc}")
            return

        if debug_enabled("DEBUG_PIPELINE"):
            log_network(f"Resolved {item_id} at depth {depth}")

        entries.append(_entry(item, agent_id))
        if item.reply_to_id:
            await self._walk(item.reply_to_id, agent_id, depth + 1, limit, entries, visited)


def _entry(item: Item, agent_id: str) -> TranscriptEntry:
    return TranscriptEntry(
        role="agent" if item.author_id == agent_id else "user",
        content=item.content,
        timestamp=item.created_at,
    )
