"""
Mention watching: polling, with an optional push stream in front of it.

For each agent the watcher keeps a since_id cursor (persisted, so a restart
does not re-fetch old mentions), fetches newer mentions every interval and
feeds them oldest first through the reaction pipeline as direct mentions.
Streaming is attempted first when enabled; after stream_retries failed
attempts the agent falls back to polling.

Stopping an agent marks it closed before cancelling its task and any stream
callbacks still running. Anything an in-flight fetch returns for a closed
agent is discarded, and the pipeline re-checks the agent right before it
publishes.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set

from .backoff import ApiErrorBackoff
from .config import Config
from .errors import StreamUnavailableError
from .logging_utils import log_error, log_info, log_network
from .persistence import PersistenceStrategy
from .pipeline import NETWORK_ERRORS, ReactionPipeline, is_self_authored
from .schemas import AgentProfile, Item, ReactionResult

if TYPE_CHECKING:
    from .collaborators import MentionStream, Publisher


class MentionWatcher:
    def __init__(
        self,
        publisher: "Publisher",
        pipeline: ReactionPipeline,
        backoff: ApiErrorBackoff,
        persistence: PersistenceStrategy,
        *,
        interval: Optional[float] = None,
        fetch_limit: Optional[int] = None,
        stream_retries: int = 2,
        stream_retry_delay: float = 5.0,
        use_streaming: Optional[bool] = None,
    ):
        self.publisher = publisher
        self.pipeline = pipeline
        self.backoff = backoff
        self.persistence = persistence
        self.interval = interval or Config.MENTION_POLLING_INTERVAL
        self.fetch_limit = fetch_limit or Config.MENTION_FETCH_LIMIT
        self.stream_retries = stream_retries
        self.stream_retry_delay = stream_retry_delay
        self.use_streaming = Config.USE_MENTION_STREAMING if use_streaming is None else use_streaming

        self._tasks: Dict[str, asyncio.Task] = {}
        self._streams: Dict[str, "MentionStream"] = {}
        self._since: Dict[str, Optional[str]] = {}
        self._closed: Set[str] = set()
        # Stream callbacks currently running, per agent.
        self._callbacks: Dict[str, Set[asyncio.Task]] = {}

    @staticmethod
    def key(agent_id: str) -> str:
        return f"watcher:{agent_id}:since_id"

    def is_watching(self, agent_id: str) -> bool:
        return agent_id in self._tasks or agent_id in self._streams

    async def since_id(self, agent_id: str) -> Optional[str]:
        if agent_id not in self._since:
            self._since[agent_id] = await self.persistence.get(self.key(agent_id))
        return self._since[agent_id]

    def _closed_check(self, agent_id: str) -> Callable[[], bool]:
        return lambda: agent_id in self._closed

    async def _advance(self, agent_id: str, item_id: str) -> None:
        self._since[agent_id] = item_id
        await self.persistence.put(self.key(agent_id), item_id)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_once(self, agent: AgentProfile) -> List[ReactionResult]:
        """Fetch and process new mentions for one agent."""
        agent_id = agent.agent_id
        if agent_id in self._closed:
            return []
        if self.backoff.in_cooldown(agent_id):
            remaining = self.backoff.cooldown_remaining(agent_id)
            log_info(f"Skipping mention check for {agent.name}, cooling down ({remaining})")
            return []

        since = await self.since_id(agent_id)
        try:
            mentions = await self.publisher.fetch_mentions_since(agent_id, since, self.fetch_limit)
        except Exception as exc:
            if agent_id in self._closed:
                return []
            log_error(f"Error checking mentions for {agent.name}: {exc}")
            if isinstance(exc, NETWORK_ERRORS):
                self.backoff.on_error(agent_id, exc)
            return []

        if agent_id in self._closed:
            return []
        self.backoff.on_success(agent_id)
        if not mentions:
            return []

        log_network(f"Found {len(mentions)} new mention(s) for {agent.name}")
        # Newest first from the publisher.
        await self._advance(agent_id, mentions[0].id)

        results: List[ReactionResult] = []
        for mention in reversed(mentions):
            if agent_id in self._closed:
                break
            if is_self_authored(agent, mention):
                continue
            if self.pipeline.dedup.contains(agent_id, mention.id):
                continue
            results.append(
                await self.pipeline.process(
                    agent, mention, direct=True, is_closed=self._closed_check(agent_id)
                )
            )
        return results

    async def _poll_loop(self, agent: AgentProfile) -> None:
        while agent.agent_id not in self._closed:
            try:
                await self.poll_once(agent)
            except Exception as exc:
                log_error(f"Mention polling for {agent.name} failed: {exc}")
            await asyncio.sleep(self.interval)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream_or_poll(self, agent: AgentProfile) -> None:
        agent_id = agent.agent_id

        async def on_mention(item: Item) -> None:
            if agent_id in self._closed or is_self_authored(agent, item):
                return
            task = asyncio.current_task()
            running = self._callbacks.setdefault(agent_id, set())
            if task is not None:
                running.add(task)
            try:
                await self._advance(agent_id, item.id)
                await self.pipeline.process(
                    agent, item, direct=True, is_closed=self._closed_check(agent_id)
                )
            finally:
                running.discard(task)

        for attempt in range(1, self.stream_retries + 2):
            try:
                stream = await self.publisher.open_mention_stream(agent_id, on_mention)
            except StreamUnavailableError as exc:
                log_info(f"{exc}; polling mentions for {agent.name}")
                break
            except Exception as exc:
                log_error(
                    f"Mention stream for {agent.name} failed (attempt {attempt}): {exc}"
                )
                if attempt <= self.stream_retries:
                    await asyncio.sleep(self.stream_retry_delay)
                continue

            if agent_id in self._closed:
                await stream.close()
                return
            self._streams[agent_id] = stream
            log_network(f"Streaming mentions for {agent.name}")
            # Catch up on anything that arrived while no stream was open.
            await self.poll_once(agent)
            return
        else:
            log_error(f"Falling back to polling mentions for {agent.name}")

        await self._poll_loop(agent)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, agent: AgentProfile) -> None:
        agent_id = agent.agent_id
        if self.is_watching(agent_id):
            return
        self._closed.discard(agent_id)
        runner = self._stream_or_poll(agent) if self.use_streaming else self._poll_loop(agent)
        self._tasks[agent_id] = asyncio.create_task(runner, name=f"mentions:{agent_id}")
        log_info(f"Watching mentions for {agent.name}")

    async def stop(self, agent_id: str) -> None:
        self._closed.add(agent_id)
        task = self._tasks.pop(agent_id, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        stream = self._streams.pop(agent_id, None)
        if stream is not None:
            await stream.close()
        current = asyncio.current_task()
        callbacks = [t for t in self._callbacks.pop(agent_id, ()) if t is not current]
        for callback in callbacks:
            callback.cancel()
        if callbacks:
            await asyncio.gather(*callbacks, return_exceptions=True)

    async def stop_all(self) -> None:
        for agent_id in list(set(self._tasks) | set(self._streams)):
            await self.stop(agent_id)
