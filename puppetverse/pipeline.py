"""
Reaction pipeline: one external item, one agent, at most one reaction.

    RECEIVED -> SELF_CHECK -> DEDUP_CHECK -+-> MENTION_PATH -> CONTEXT_RESOLVED
                  |             |          |       -> PUBLISHED -> MEMORY_UPDATED
                  v             v          |
               DROPPED       DROPPED       +-> REACTION_PATH -> ACTION_DECIDED
                                                   -> PUBLISHED | SKIPPED -> MEMORY_UPDATED

DedupStore.claim checks and inserts before it first yields to the event
loop, and nothing before it in process() yields either, so concurrent
deliveries of one item (poll and stream, or two overlapping polls) can never
both reach a publish call. Every failure is contained here: the caller gets a
SKIPPED result carrying the error instead of an exception.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import TYPE_CHECKING, Callable, List, Optional

from .backoff import ApiErrorBackoff
from .conversation import ConversationResolver
from .dedup import DedupStore
from .errors import DuplicateContentError, PublishError, TransientNetworkError
from .logging_utils import (
    debug_enabled,
    log_deterministic,
    log_error,
    log_info,
    log_success,
    preview,
)
from .memory import MemoryStore
from .policy import BehaviorPolicy, is_direct_address
from .schemas import (
    AgentProfile,
    Item,
    PipelineStage,
    ReactionAction,
    ReactionResult,
    TranscriptEntry,
    utc_now,
)

if TYPE_CHECKING:
    from .collaborators import ContentGenerator, Publisher

_LEADING_HANDLES = re.compile(r"^(?:@\w+[\s,:]*)+")

# Errors raised by the social network (as opposed to the generator or our own code).
NETWORK_ERRORS = (TransientNetworkError, PublishError)


def _never_closed() -> bool:
    return False


def strip_leading_handles(text: str) -> str:
    """Remove @handle echoes the generator put at the start of a reply."""
    return _LEADING_HANDLES.sub("", text.strip()).strip()


def asks_for_context(text: str) -> bool:
    """True when a message asks what post or context the agent is talking about."""
    lowered = text.lower()
    return "what" in lowered and (
        "tweet" in lowered or "context" in lowered or "talking about" in lowered
    )


def apply_style(agent: AgentProfile, text: str) -> str:
    text = text.strip()
    if agent.style.force_lowercase:
        text = text.lower()
    return text


def is_self_authored(agent: AgentProfile, item: Item) -> bool:
    if item.author_id == agent.agent_id:
        return True
    if agent.username and item.author_username:
        return agent.username.lstrip("@").lower() == item.author_username.lstrip("@").lower()
    return False


class ReactionPipeline:
    def __init__(
        self,
        publisher: "Publisher",
        generator: "ContentGenerator",
        dedup: DedupStore,
        memory: MemoryStore,
        resolver: ConversationResolver,
        policy: BehaviorPolicy,
        backoff: ApiErrorBackoff,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.publisher = publisher
        self.generator = generator
        self.dedup = dedup
        self.memory = memory
        self.resolver = resolver
        self.policy = policy
        self.backoff = backoff
        self.clock = clock or utc_now

    async def process(
        self,
        agent: AgentProfile,
        item: Item,
        *,
        direct: Optional[bool] = None,
        is_closed: Optional[Callable[[], bool]] = None,
    ) -> ReactionResult:
        """Run one item through the pipeline.

        is_closed is re-checked right before anything is published or liked;
        once it returns True the reaction is abandoned as SKIPPED.
        """
        result = ReactionResult(agent_id=agent.agent_id, item_id=item.id)
        stages = result.stages
        stages.append(PipelineStage.RECEIVED)

        # Nothing below may await until the dedup claim is made.
        if self.backoff.in_cooldown(agent.agent_id, self.clock()):
            return self._skip(result, "agent is cooling down after API errors")

        stages.append(PipelineStage.SELF_CHECK)
        if is_self_authored(agent, item):
            return self._drop(result, "self-authored item")

        stages.append(PipelineStage.DEDUP_CHECK)
        if not await self.dedup.claim(agent.agent_id, item.id):
            return self._drop(result, "already processed")

        if direct is None:
            direct = is_direct_address(agent, item)

        try:
            if direct:
                await self._mention_path(agent, item, result, is_closed or _never_closed)
            else:
                await self._reaction_path(agent, item, result, is_closed or _never_closed)
        except DuplicateContentError as exc:
            log_info(f"{agent.name}: {exc}")
            self._skip(result, "duplicate content")
        except Exception as exc:
            log_error(f"{agent.name}: failed to react to {item.id}: {exc}")
            if isinstance(exc, NETWORK_ERRORS):
                self.backoff.on_error(agent.agent_id, exc)
            result.error = str(exc)
            if PipelineStage.PUBLISHED not in stages:
                result.action = ReactionAction.IGNORE
                stages.append(PipelineStage.SKIPPED)
        return result

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    async def _mention_path(
        self,
        agent: AgentProfile,
        item: Item,
        result: ReactionResult,
        is_closed: Callable[[], bool],
    ) -> None:
        result.stages.append(PipelineStage.MENTION_PATH)
        log_info(f"{agent.name} was mentioned: \"{preview(item.content)}\"")

        transcript = await self.resolver.resolve_for_item(item, agent.agent_id)
        result.stages.append(PipelineStage.CONTEXT_RESOLVED)

        await self._reply(agent, item, transcript, result, is_closed)

    async def _reaction_path(
        self,
        agent: AgentProfile,
        item: Item,
        result: ReactionResult,
        is_closed: Callable[[], bool],
    ) -> None:
        result.stages.append(PipelineStage.REACTION_PATH)

        decision = await self.policy.decide(agent, item, direct=False)
        result.stages.append(PipelineStage.ACTION_DECIDED)
        result.action = decision.action
        self._trace(agent, f"decision {decision.action.value} for {item.id}: {decision.reasoning}")

        if decision.action == ReactionAction.REPLY:
            transcript = await self.resolver.resolve_for_item(item, agent.agent_id)
            result.stages.append(PipelineStage.CONTEXT_RESOLVED)
            await self._reply(agent, item, transcript, result, is_closed)

        elif decision.action == ReactionAction.QUOTE:
            text = decision.content or await self.generator.generate_tweet(
                agent, hint=f"Your take on this post: \"{item.content}\""
            )
            text = apply_style(agent, strip_leading_handles(text))
            if not text:
                self._skip(result, "generator returned empty quote")
                return
            if self._closed(result, is_closed):
                return
            published = await self.publisher.publish(agent.agent_id, text, quote_id=item.id)
            self._published(agent, result, published, "quoted")
            await self.memory.record_post(
                agent.agent_id, text, published.id, {"quote_of": item.id}
            )
            await self.memory.update_relationship(
                agent.agent_id,
                item.author_id,
                familiarity_delta=0.03,
                interactions=[f"Quoted their post: {preview(item.content)}"],
            )
            result.stages.append(PipelineStage.MEMORY_UPDATED)

        elif decision.action == ReactionAction.LIKE:
            if self._closed(result, is_closed):
                return
            await self.publisher.like(agent.agent_id, item.id)
            self.backoff.on_success(agent.agent_id)
            result.stages.append(PipelineStage.PUBLISHED)
            log_success(f"{agent.name} liked {item.id}")
            await self.memory.update_relationship(
                agent.agent_id,
                item.author_id,
                sentiment_delta=0.02,
                familiarity_delta=0.01,
                notes=[f"Liked their post: {preview(item.content)}"],
                interactions=[f"Liked: {preview(item.content)}"],
            )
            result.stages.append(PipelineStage.MEMORY_UPDATED)

        else:
            self._skip(result, decision.reasoning or "ignored")

    async def _reply(
        self,
        agent: AgentProfile,
        item: Item,
        transcript: List[TranscriptEntry],
        result: ReactionResult,
        is_closed: Callable[[], bool],
    ) -> None:
        # Only the item itself means no context could be resolved.
        no_context = len(transcript) <= 1
        avoid = no_context and asks_for_context(item.content)
        if avoid:
            self._trace(agent, f"{item.id} asks for context; replying without it")

        text = await self.generator.generate_reply(
            agent, transcript, item=item, avoid_context_questions=avoid
        )
        text = apply_style(agent, strip_leading_handles(text))
        if not text:
            self._skip(result, "generator returned empty reply")
            return
        if self._closed(result, is_closed):
            return

        result.action = ReactionAction.REPLY
        published = await self.publisher.publish(agent.agent_id, text, reply_to_id=item.id)
        self._published(agent, result, published, f"replied to {item.id}")

        await self.memory.record_post(agent.agent_id, text, published.id, {"reply_to": item.id})
        await self.memory.update_relationship(
            agent.agent_id,
            item.author_id,
            familiarity_delta=0.05,
            interactions=[f"Replied to: {preview(item.content)}"],
        )
        result.stages.append(PipelineStage.MEMORY_UPDATED)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _published(
        self, agent: AgentProfile, result: ReactionResult, published: Item, verb: str
    ) -> None:
        self.backoff.on_success(agent.agent_id)
        result.published = published
        result.stages.append(PipelineStage.PUBLISHED)
        log_success(f"{agent.name} {verb}: \"{preview(published.content)}\"")

    def _skip(self, result: ReactionResult, reason: str) -> ReactionResult:
        result.stages.append(PipelineStage.SKIPPED)
        result.reason = reason
        if PipelineStage.PUBLISHED not in result.stages:
            result.action = ReactionAction.IGNORE
        self._trace_id(result.agent_id, f"skipped {result.item_id}: {reason}")
        return result

    def _closed(self, result: ReactionResult, is_closed: Callable[[], bool]) -> bool:
        if not is_closed():
            return False
        log_info(f"{result.agent_id} stopped, discarding reaction to {result.item_id}")
        self._skip(result, "agent stopped")
        return True

    def _drop(self, result: ReactionResult, reason: str) -> ReactionResult:
        result.stages.append(PipelineStage.DROPPED)
        result.reason = reason
        self._trace_id(result.agent_id, f"dropped {result.item_id}: {reason}")
        return result

    def _trace(self, agent: AgentProfile, message: str) -> None:
        self._trace_id(agent.agent_id, message)

    @staticmethod
    def _trace_id(agent_id: str, message: str) -> None:
        if debug_enabled("DEBUG_PIPELINE"):
            log_deterministic(f"{agent_id}: {message}")
