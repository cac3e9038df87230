"""
Prioritized event queue and the synthetic world-event generator.

EventQueue
    Immediate events are kept in a heap keyed by (-priority rank, sequence),
    so higher priority always goes first and equal priority keeps insertion
    order. Scheduled events wait in a due-time ordered list until
    check_scheduled() promotes them. drain() empties the queue, dispatching
    each event to the listeners registered for its type plus the "all"
    listeners; listeners run concurrently and a failure in one is logged
    without affecting the others.

EventGenerator
    Produces news, mood_shift and interaction_prompt events on recurring
    timers so agents have something to react to between mentions.
"""

from __future__ import annotations

import asyncio
import bisect
import heapq
import itertools
import random
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from .logging_utils import log_deterministic, log_error, log_info, preview
from .schemas import Event, EventPriority, ProcessedEvent, ScheduledEvent, utc_now

Listener = Callable[[Event], Awaitable[Any]]

ALL_EVENTS = "all"


class EventQueue:
    def __init__(
        self,
        history_limit: int = 100,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.clock = clock or utc_now
        self._queue: List[Tuple[int, int, Event]] = []
        self._scheduled: List[Tuple[datetime, int, ScheduledEvent]] = []
        self._sequence = itertools.count()
        self._listeners: Dict[str, List[Listener]] = {}
        self.history: Deque[ProcessedEvent] = deque(maxlen=history_limit)
        self._processing = False
        self._drain_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, event_type: str, callback: Listener) -> None:
        self._listeners.setdefault(event_type, []).append(callback)

    def remove_listener(self, event_type: str, callback: Listener) -> None:
        callbacks = self._listeners.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    # ------------------------------------------------------------------
    # Enqueueing
    # ------------------------------------------------------------------

    def create_event(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        *,
        target_agent_ids: Optional[Sequence[str]] = None,
        priority: EventPriority | str = EventPriority.NORMAL,
    ) -> Event:
        """Enqueue an event for immediate processing.

        When called from inside a running event loop, a drain is started in
        the background; otherwise the caller drains explicitly.
        """
        event = Event(
            type=event_type,
            data=data or {},
            target_agent_ids=list(target_agent_ids or []),
            priority=EventPriority(priority),
            created_at=self.clock(),
        )
        self._push(event)
        log_deterministic(f"Event queued: {event.type} ({event.priority.value})")
        self._kick()
        return event

    def schedule_event(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        delay: timedelta | float = 0,
        *,
        target_agent_ids: Optional[Sequence[str]] = None,
        priority: EventPriority | str = EventPriority.NORMAL,
    ) -> Event:
        """Hold an event until delay has elapsed (seconds or timedelta)."""
        if not isinstance(delay, timedelta):
            delay = timedelta(seconds=delay)
        now = self.clock()
        event = Event(
            type=event_type,
            data=data or {},
            target_agent_ids=list(target_agent_ids or []),
            priority=EventPriority(priority),
            created_at=now,
        )
        entry = ScheduledEvent(event=event, due_at=now + delay)
        bisect.insort(self._scheduled, (entry.due_at, next(self._sequence), entry))
        log_deterministic(f"Event scheduled: {event.type} at {entry.due_at.isoformat()}")
        return event

    def check_scheduled(self, now: Optional[datetime] = None) -> int:
        """Move every scheduled event that is due into the immediate queue."""
        now = now or self.clock()
        moved = 0
        while self._scheduled and self._scheduled[0][0] <= now:
            _, _, entry = self._scheduled.pop(0)
            self._push(entry.event)
            moved += 1
        return moved

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def scheduled(self) -> List[ScheduledEvent]:
        return [entry for _, _, entry in self._scheduled]

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def drain(self) -> int:
        """Process queued events to completion. Returns how many were dispatched.

        Re-entrant calls while a drain is running return 0 immediately; the
        running drain picks up anything enqueued in the meantime.
        """
        if self._processing:
            return 0
        self._processing = True
        processed = 0
        try:
            self.check_scheduled()
            while self._queue:
                _, _, event = heapq.heappop(self._queue)
                await self._dispatch(event)
                self.history.append(ProcessedEvent(event=event, processed_at=self.clock()))
                processed += 1
                self.check_scheduled()
        finally:
            self._processing = False
        return processed

    async def join(self) -> None:
        """Wait for a background drain (if any) to finish."""
        while self._drain_task is not None and not self._drain_task.done():
            await self._drain_task

    async def close(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        self._drain_task = None

    def _push(self, event: Event) -> None:
        heapq.heappush(self._queue, (-event.priority.rank, next(self._sequence), event))

    def _kick(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._processing or (self._drain_task is not None and not self._drain_task.done()):
            return
        self._drain_task = loop.create_task(self.drain())

    async def _dispatch(self, event: Event) -> None:
        callbacks = list(self._listeners.get(event.type, []))
        if event.type != ALL_EVENTS:
            callbacks += self._listeners.get(ALL_EVENTS, [])
        if not callbacks:
            return

        results = await asyncio.gather(
            *(callback(event) for callback in callbacks), return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                log_error(f"Error in event listener for {event.type}: {result}")


# ============================================================================
# Synthetic events
# ============================================================================

NEWS_TOPICS = (
    "technology breakthrough",
    "political development",
    "entertainment news",
    "scientific discovery",
    "business announcement",
    "sports highlight",
    "internet trend",
    "cultural moment",
)

HEADLINE_TEMPLATES = (
    "Breaking: Major {topic} announced today.",
    "Just in: Unexpected {topic} surprises experts.",
    "Trending now: Everyone is talking about the latest {topic}.",
    "Report: New {topic} could change everything.",
    "Update: Developing story on {topic} continues to unfold.",
)

# name -> (valence, arousal, dominance) deltas
MOOD_SHIFTS = {
    "sudden inspiration": (0.3, 0.4, 0.2),
    "mild frustration": (-0.2, 0.3, -0.1),
    "pleasant surprise": (0.4, 0.3, 0.1),
    "brief melancholy": (-0.3, -0.2, -0.1),
    "creative surge": (0.3, 0.4, 0.3),
}

INTERACTION_TEMPLATES = (
    "{agent1} noticed {agent2}'s recent post about {topic}",
    "{agent1} wants to ask {agent2} about {topic}",
    "{agent1} disagrees with {agent2}'s take on {topic}",
    "{agent1} found something {agent2} would like about {topic}",
)

INTERACTION_TOPICS = (
    "current trends",
    "a shared interest",
    "a recent news item",
    "a philosophical question",
    "an industry development",
    "a creative idea",
)

NEWS_INTERVAL = timedelta(hours=6)
MOOD_INTERVAL = timedelta(hours=4)
MOOD_JITTER = timedelta(hours=1)
INTERACTION_INTERVAL = timedelta(hours=8)
RECIPROCAL_PROBABILITY = 0.3


class EventGenerator:
    """Feeds an EventQueue with news, mood shifts and interaction prompts."""

    def __init__(self, queue: EventQueue, rng: Optional[random.Random] = None):
        self.queue = queue
        self.rng = rng or random.Random()
        self._tasks: List[asyncio.Task] = []

    def news_event(self) -> Event:
        topic = self.rng.choice(NEWS_TOPICS)
        headline = self.rng.choice(HEADLINE_TEMPLATES).format(topic=topic)
        log_info(f"News: {preview(headline, 80)}")
        return self.queue.create_event(
            "news",
            {"headline": headline, "topic": topic},
            priority=EventPriority.NORMAL,
        )

    def mood_event(self, agent_id: str) -> Event:
        name = self.rng.choice(list(MOOD_SHIFTS))
        valence, arousal, dominance = MOOD_SHIFTS[name]
        return self.queue.create_event(
            "mood_shift",
            {
                "name": name,
                "valence_shift": valence,
                "arousal_shift": arousal,
                "dominance_shift": dominance,
            },
            target_agent_ids=[agent_id],
            priority=EventPriority.LOW,
        )

    def interaction_events(self, agent_ids: Sequence[str]) -> List[Event]:
        """Prompt random pairs of agents to engage with each other."""
        ids = list(agent_ids)
        if len(ids) < 2:
            return []

        pairs = 1 if len(ids) < 4 else self.rng.randint(1, 3)
        events: List[Event] = []
        for _ in range(pairs):
            initiator, target = self.rng.sample(ids, 2)
            events.append(self.interaction_event(initiator, target))
            if self.rng.random() < RECIPROCAL_PROBABILITY:
                events.append(self.interaction_event(target, initiator))
        return events

    def interaction_event(self, initiator: str, target: str) -> Event:
        topic = self.rng.choice(INTERACTION_TOPICS)
        description = self.rng.choice(INTERACTION_TEMPLATES).format(
            agent1=initiator, agent2=target, topic=topic
        )
        return self.queue.create_event(
            "interaction_prompt",
            {
                "initiator": initiator,
                "target": target,
                "topic": topic,
                "description": description,
            },
            target_agent_ids=[initiator],
            priority=EventPriority.NORMAL,
        )

    def start(
        self,
        agent_ids: Callable[[], Sequence[str]] | Sequence[str],
        *,
        news_interval: timedelta = NEWS_INTERVAL,
        mood_interval: timedelta = MOOD_INTERVAL,
        interaction_interval: timedelta = INTERACTION_INTERVAL,
    ) -> None:
        """Start the recurring generator tasks. Must run inside an event loop."""
        if self._tasks:
            return
        current = agent_ids if callable(agent_ids) else (lambda: list(agent_ids))

        async def news_loop() -> None:
            while True:
                await asyncio.sleep(news_interval.total_seconds())
                self.news_event()

        async def mood_loop() -> None:
            while True:
                jitter = self.rng.uniform(0, MOOD_JITTER.total_seconds())
                await asyncio.sleep(mood_interval.total_seconds() + jitter)
                ids = list(current())
                if ids:
                    self.mood_event(self.rng.choice(ids))

        async def interaction_loop() -> None:
            while True:
                await asyncio.sleep(interaction_interval.total_seconds())
                self.interaction_events(current())

        self._tasks = [
            asyncio.create_task(news_loop(), name="events:news"),
            asyncio.create_task(mood_loop(), name="events:mood"),
            asyncio.create_task(interaction_loop(), name="events:interaction"),
        ]
        log_info("Random event generation started")

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
