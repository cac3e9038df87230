"""
Runtime: the explicit context object that owns every agent-facing component.

One Runtime holds the agents map and wires together the stores, the reaction
pipeline, the post scheduler, the mention watcher and the event queue. Nothing
is module-global, so several runtimes (for example one per test) can coexist.

Lifecycle:
    runtime = Runtime(publisher, generator, persistence=JsonPersistence("data"))
    await runtime.load_agents(AgentLoader().load_all())
    await runtime.start()
    ...
    await runtime.stop()
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from .backoff import ApiErrorBackoff
from .collaborators import ContentGenerator, Publisher
from .config import Config
from .conversation import ConversationResolver
from .dedup import DedupStore
from .errors import ConfigurationError, DuplicateContentError
from .events import ALL_EVENTS, EventGenerator, EventQueue
from .loader import AgentDefinition, AgentLoader
from .logging_utils import log_error, log_info, log_llm, log_success, preview
from .memory import MemoryStore
from .persistence import InMemoryPersistence, PersistenceStrategy
from .pipeline import NETWORK_ERRORS, ReactionPipeline, apply_style, strip_leading_handles
from .policy import BehaviorPolicy
from .scheduler import PostScheduler
from .schemas import AgentProfile, Event, Item, ReactionResult, utc_now
from .watcher import MentionWatcher

NEWS_POST_IMPORTANCE = 0.7
NEWS_POST_CHANCE = 0.3
MOOD_EVENT_IMPORTANCE = 0.6
MOOD_POST_AROUSAL = 0.3
MOOD_POST_CHANCE = 0.2
INTERACTION_TIMELINE_LIMIT = 5


class Runtime:
    def __init__(
        self,
        publisher: Publisher,
        generator: ContentGenerator,
        *,
        persistence: Optional[PersistenceStrategy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        memory_limit: Optional[int] = None,
        dedup_capacity: Optional[int] = None,
        conversation_max_depth: Optional[int] = None,
        tick_seconds: Optional[float] = None,
        first_post_delay: Optional[float] = None,
        polling_interval: Optional[float] = None,
        use_streaming: Optional[bool] = None,
        enable_random_events: Optional[bool] = None,
        watch_mentions: bool = True,
    ):
        self.publisher = publisher
        self.generator = generator
        self.persistence = persistence or InMemoryPersistence()
        self.clock = clock or utc_now
        self.rng = rng or random.Random()
        self.tick_seconds = tick_seconds or Config.SCHEDULER_TICK_SECONDS
        self.first_post_delay = timedelta(
            seconds=Config.FIRST_POST_DELAY_SECONDS if first_post_delay is None else first_post_delay
        )
        self.enable_random_events = (
            Config.ENABLE_RANDOM_EVENTS if enable_random_events is None else enable_random_events
        )
        self.watch_mentions = watch_mentions

        self.agents: Dict[str, AgentProfile] = {}
        self.dedup = DedupStore(self.persistence, capacity=dedup_capacity)
        self.memory = MemoryStore(self.persistence, memory_limit=memory_limit)
        self.backoff = ApiErrorBackoff(clock=self.clock)
        self.resolver = ConversationResolver(publisher, max_depth=conversation_max_depth)
        self.policy = BehaviorPolicy(generator, rng=self.rng)
        self.pipeline = ReactionPipeline(
            publisher,
            generator,
            self.dedup,
            self.memory,
            self.resolver,
            self.policy,
            self.backoff,
            clock=self.clock,
        )
        self.events = EventQueue(clock=self.clock)
        self.event_generator = EventGenerator(self.events, rng=self.rng)
        self.scheduler = PostScheduler(
            self._scheduled_post,
            tick_seconds=self.tick_seconds,
            clock=self.clock,
            rng=self.rng,
            should_skip=self.backoff.in_cooldown,
        )
        self.watcher = MentionWatcher(
            publisher,
            self.pipeline,
            self.backoff,
            self.persistence,
            interval=polling_interval,
            use_streaming=use_streaming,
        )

        self.running = False
        self._event_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def get_agent(self, agent_id: str) -> AgentProfile:
        try:
            return self.agents[agent_id]
        except KeyError:
            raise KeyError(f"Unknown agent: {agent_id}") from None

    async def register_agent(
        self, definition: AgentDefinition | AgentProfile | Dict[str, Any]
    ) -> AgentProfile:
        """Add one agent. Raises ConfigurationError for an invalid definition."""
        if isinstance(definition, dict):
            definition = AgentLoader().parse(definition)
        elif isinstance(definition, AgentProfile):
            definition = AgentDefinition(profile=definition)

        agent = definition.profile
        if agent.agent_id in self.agents:
            raise ConfigurationError(
                f"Agent '{agent.agent_id}' is already registered", source=definition.source
            )

        existing = await self.persistence.get(MemoryStore.key(agent.agent_id))
        if existing:
            await self.memory.get_memory(agent.agent_id)
        else:
            await self.memory.initialize_agent_memory(agent.agent_id, definition.initial_memory)
        if agent.last_post_time is None:
            agent.last_post_time = self.memory.last_post_at(agent.agent_id)
        await self.dedup.load(agent.agent_id)

        self.agents[agent.agent_id] = agent
        log_success(f"Registered agent {agent.name} ({agent.agent_id})")

        if self.running:
            self._activate(agent)
        return agent

    async def load_agents(
        self, definitions: Iterable[AgentDefinition | AgentProfile | Dict[str, Any]]
    ) -> List[AgentProfile]:
        """Register every definition that is valid. Fails only when none is."""
        loaded: List[AgentProfile] = []
        for definition in definitions:
            try:
                loaded.append(await self.register_agent(definition))
            except ConfigurationError as exc:
                log_error(f"Skipping agent: {exc}")

        if not loaded:
            raise ConfigurationError(
                "No agents could be loaded. Check the agent definitions directory "
                f"({Config.AGENTS_DIR}) and the errors above."
            )
        return loaded

    async def unregister_agent(self, agent_id: str) -> None:
        self.get_agent(agent_id)
        self.scheduler.unregister(agent_id)
        await self.watcher.stop(agent_id)
        del self.agents[agent_id]

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    async def create_post(
        self,
        agent_id: str,
        *,
        hint: Optional[str] = None,
        ignore_time_constraint: bool = False,
    ) -> Optional[Item]:
        """Generate and publish an autonomous post. Returns None when nothing was posted."""
        agent = self.get_agent(agent_id)
        now = self.clock()

        if not ignore_time_constraint and agent.last_post_time is not None:
            min_gap = timedelta(hours=agent.behavior.post_frequency.min_hours_between_posts)
            if now - agent.last_post_time < min_gap:
                log_info(f"{agent.name} posted recently, not posting again yet")
                return None

        if self.backoff.in_cooldown(agent_id, now):
            log_info(f"{agent.name} is cooling down, not posting")
            return None

        if hint is None and agent.style.prompt_as_hint and agent.style.custom_prompt:
            hint = agent.style.custom_prompt

        try:
            log_llm(f"Generating post for {agent.name}")
            text = await self.generator.generate_tweet(agent, hint)
            text = apply_style(agent, strip_leading_handles(text))
            if not text:
                log_error(f"{agent.name}: generator returned an empty post")
                return None

            item = await self.publisher.publish(agent_id, text)
            self.backoff.on_success(agent_id)
            agent.last_post_time = self.clock()
            await self.memory.record_post(agent_id, text, item.id, {"hint": hint} if hint else None)
            log_success(f"{agent.name} posted: \"{preview(text)}\"")
            return item
        except DuplicateContentError as exc:
            log_info(f"{agent.name}: {exc}")
            return None
        except Exception as exc:
            log_error(f"Error creating post for {agent.name}: {exc}")
            if isinstance(exc, NETWORK_ERRORS):
                self.backoff.on_error(agent_id, exc)
            return None

    async def _scheduled_post(self, agent: AgentProfile) -> Optional[Item]:
        return await self.create_post(agent.agent_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def process_agent_event(
        self, agent_id: str, event: Event
    ) -> Optional[Item | ReactionResult]:
        """Let one agent react to a world event.

        Returns the post or reaction it caused, if any.
        """
        agent = self.get_agent(agent_id)
        if not event.targets(agent_id):
            return None

        if event.type == "news":
            update = await self.generator.generate_memory_update(agent, event)
            if update.memory:
                await self.memory.add_memory(
                    agent_id,
                    update.memory,
                    "event",
                    update.importance,
                    emotional_valence=update.valence_shift,
                    metadata={"event_id": event.id, "event_type": event.type},
                )
            agent.current_mood.shift(
                update.valence_shift, update.arousal_shift, update.dominance_shift
            )
            if update.importance > NEWS_POST_IMPORTANCE or self.rng.random() < NEWS_POST_CHANCE:
                headline = event.data.get("headline", "")
                return await self.create_post(
                    agent_id, hint=f"Share your reaction to this news: {headline}"
                )
            return None

        if event.type == "mood_shift":
            name = event.data.get("name", "a change of mood")
            arousal_shift = float(event.data.get("arousal_shift", 0.0))
            await self.memory.add_memory(
                agent_id,
                f"Experienced {name}",
                "event",
                MOOD_EVENT_IMPORTANCE,
                emotional_valence=max(-1.0, min(1.0, float(event.data.get("valence_shift", 0.0)))),
                metadata={"event_id": event.id, "event_type": event.type},
            )
            agent.current_mood.shift(
                float(event.data.get("valence_shift", 0.0)),
                arousal_shift,
                float(event.data.get("dominance_shift", 0.0)),
            )
            if arousal_shift > MOOD_POST_AROUSAL or self.rng.random() < MOOD_POST_CHANCE:
                return await self.create_post(agent_id)
            return None

        if event.type == "interaction_prompt":
            if event.data.get("initiator") != agent_id:
                return None
            return await self._interact(agent, event)

        return None

    async def _interact(self, agent: AgentProfile, event: Event) -> ReactionResult:
        target = str(event.data.get("target", ""))
        topic = event.data.get("topic", "something")
        log_info(f"{agent.name} is checking out {target}'s posts about {topic}")

        timeline: List[Item] = []
        try:
            timeline = await self.publisher.fetch_user_timeline(target, INTERACTION_TIMELINE_LIMIT)
        except Exception as exc:
            log_error(f"Could not fetch timeline of {target}: {exc}")

        if timeline:
            item = self.rng.choice(timeline)
        else:
            item = Item(
                id=f"synthetic-{event.id}",
                content=f"This is a post about {topic}",
                author_id=target,
                created_at=self.clock(),
            )
        return await self.pipeline.process(agent, item, direct=False)

    async def _on_event(self, event: Event) -> None:
        for agent_id in list(self.agents):
            try:
                await self.process_agent_event(agent_id, event)
            except Exception as exc:
                log_error(f"Error processing {event.type} event for {agent_id}: {exc}")

    async def _event_loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            if self.events.check_scheduled():
                await self.events.drain()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _activate(self, agent: AgentProfile) -> None:
        self.scheduler.register(agent, initial_delay=self.first_post_delay)
        if self.watch_mentions:
            self.watcher.start(agent)

    async def start(self) -> None:
        if self.running:
            return
        await self.persistence.initialize()
        self.events.add_listener(ALL_EVENTS, self._on_event)
        self.running = True

        for agent in self.agents.values():
            self._activate(agent)
        self.scheduler.start()
        self._event_task = asyncio.create_task(self._event_loop(), name="events:scheduled")

        if self.enable_random_events:
            self.event_generator.start(lambda: list(self.agents))
        log_success(f"Runtime started with {len(self.agents)} agent(s)")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        await self.event_generator.stop()
        await self.scheduler.stop()
        await self.watcher.stop_all()
        if self._event_task is not None:
            self._event_task.cancel()
            await asyncio.gather(self._event_task, return_exceptions=True)
            self._event_task = None
        await self.events.close()
        self.events.remove_listener(ALL_EVENTS, self._on_event)
        await self.persistence.close()
        log_info("Runtime stopped")
