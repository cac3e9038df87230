"""
Autonomous post scheduling.

Each registered agent has one entry in a deadline table: the time its next
autonomous post is due. A single driver task wakes every tick, runs the post
callback for every agent whose deadline has passed and immediately computes
the next deadline, whether or not the post succeeded.

Intervals are jittered: uniform between the agent's min and max hours, shorter
during its peak hours and longer outside them, with an occasional few extra
minutes, always kept within [min, max].
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from .config import Config
from .logging_utils import log_deterministic, log_error, log_info
from .schemas import AgentProfile, utc_now

PostCallback = Callable[[AgentProfile], Awaitable[object]]

PEAK_FACTOR = (0.70, 0.90)
OFF_PEAK_FACTOR = (1.10, 1.30)
EXTRA_JITTER_PROBABILITY = 0.5
EXTRA_JITTER_MAX = timedelta(minutes=5)


def next_post_interval(
    agent: AgentProfile,
    *,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> timedelta:
    """Time until the agent's next autonomous post."""
    rng = rng or random.Random()
    now = now or utc_now()
    frequency = agent.behavior.post_frequency
    low = frequency.min_hours_between_posts * 3600
    high = frequency.max_hours_between_posts * 3600

    seconds = rng.uniform(low, high)
    # Peak hours are in the local wall clock.
    if now.astimezone().hour in frequency.peak_posting_hours:
        seconds *= rng.uniform(*PEAK_FACTOR)
    else:
        seconds *= rng.uniform(*OFF_PEAK_FACTOR)

    if rng.random() < EXTRA_JITTER_PROBABILITY:
        seconds += rng.uniform(0, EXTRA_JITTER_MAX.total_seconds())

    return timedelta(seconds=min(max(seconds, low), high))


class PostScheduler:
    """Deadline table plus the recurring task that fires due posts."""

    def __init__(
        self,
        post_callback: PostCallback,
        *,
        tick_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        should_skip: Optional[Callable[[str], bool]] = None,
    ):
        self.post_callback = post_callback
        self.tick_seconds = tick_seconds or Config.SCHEDULER_TICK_SECONDS
        self.clock = clock or utc_now
        self.rng = rng or random.Random()
        self.should_skip = should_skip
        self._agents: Dict[str, AgentProfile] = {}
        self._due: Dict[str, datetime] = {}
        self._task: Optional[asyncio.Task] = None

    def register(self, agent: AgentProfile, initial_delay: Optional[timedelta] = None) -> datetime:
        """Add an agent. Its first post is due after initial_delay, or a normal interval."""
        self._agents[agent.agent_id] = agent
        if initial_delay is None:
            return self.schedule_next(agent)
        due = self.clock() + initial_delay
        self._due[agent.agent_id] = due
        return due

    def unregister(self, agent_id: str) -> None:
        self._agents.pop(agent_id, None)
        self._due.pop(agent_id, None)

    def schedule_next(self, agent: AgentProfile) -> datetime:
        now = self.clock()
        interval = next_post_interval(agent, now=now, rng=self.rng)
        due = now + interval
        self._due[agent.agent_id] = due
        log_deterministic(
            f"Next post for {agent.name} in {interval.total_seconds() / 3600:.2f}h"
        )
        return due

    def due_at(self, agent_id: str) -> Optional[datetime]:
        return self._due.get(agent_id)

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """Fire every due post. Returns how many callbacks ran."""
        now = now or self.clock()
        fired = 0
        for agent_id, agent in list(self._agents.items()):
            due = self._due.get(agent_id)
            if due is None:
                self.schedule_next(agent)
                continue
            if due > now:
                continue

            # Clear first so a slow callback cannot fire twice.
            del self._due[agent_id]
            try:
                if self.should_skip is not None and self.should_skip(agent_id):
                    log_info(f"Skipping scheduled post for {agent.name} (cooling down)")
                else:
                    await self.post_callback(agent)
                    fired += 1
            except Exception as exc:
                log_error(f"Scheduled post for {agent.name} failed: {exc}")
            finally:
                if agent_id in self._agents:
                    self.schedule_next(agent)
        return fired

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="post-scheduler")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await self.run_due()
            await asyncio.sleep(self.tick_seconds)
