"""Tests for mention polling, streaming and watcher teardown."""

import asyncio
import itertools
import random

import pytest

from puppetverse.backoff import ApiErrorBackoff
from puppetverse.collaborators import ContentGenerator, InMemoryNetwork
from puppetverse.conversation import ConversationResolver
from puppetverse.dedup import DedupStore
from puppetverse.errors import TransientNetworkError
from puppetverse.memory import MemoryStore
from puppetverse.persistence import InMemoryPersistence
from puppetverse.pipeline import ReactionPipeline
from puppetverse.policy import BehaviorPolicy
from puppetverse.schemas import AgentProfile, MemoryUpdate, ReactionAction, ReactionSuggestion
from puppetverse.watcher import MentionWatcher


class CountingGenerator(ContentGenerator):
    def __init__(self):
        self._counter = itertools.count(1)
        self.replied_to: list[str] = []

    async def generate_reply(self, agent, transcript, *, item, avoid_context_questions=False):
        self.replied_to.append(item.id)
        return f"reply {next(self._counter)}"

    async def generate_tweet(self, agent, hint=None):
        return f"post {next(self._counter)}"

    async def generate_reaction(self, agent, item):
        return ReactionSuggestion(action=ReactionAction.IGNORE)

    async def generate_memory_update(self, agent, event):
        return MemoryUpdate()


class FailingMentionsNetwork(InMemoryNetwork):
    async def fetch_mentions_since(self, agent_id, since_id, limit):
        raise TransientNetworkError("timeout")


class BlockingMentionsNetwork(InMemoryNetwork):
    """fetch_mentions_since waits until released, to simulate an in-flight call."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()
        self.started = asyncio.Event()

    async def fetch_mentions_since(self, agent_id, since_id, limit):
        self.started.set()
        await self.release.wait()
        return await super().fetch_mentions_since(agent_id, since_id, limit)


class FlakyStreamNetwork(InMemoryNetwork):
    def __init__(self):
        super().__init__()
        self.stream_attempts = 0
        self.polls = 0

    async def open_mention_stream(self, agent_id, on_mention):
        self.stream_attempts += 1
        raise ConnectionError("stream refused")

    async def fetch_mentions_since(self, agent_id, since_id, limit):
        self.polls += 1
        return await super().fetch_mentions_since(agent_id, since_id, limit)


AGENT = AgentProfile(agent_id="bot", name="Bot", username="the_bot")


def build(network, *, use_streaming=False, persistence=None):
    persistence = persistence or InMemoryPersistence()
    generator = CountingGenerator()
    backoff = ApiErrorBackoff()
    pipeline = ReactionPipeline(
        network,
        generator,
        DedupStore(persistence, capacity=100),
        MemoryStore(persistence),
        ConversationResolver(network, max_depth=5),
        BehaviorPolicy(generator, rng=random.Random(0)),
        backoff,
    )
    watcher = MentionWatcher(
        network,
        pipeline,
        backoff,
        persistence,
        interval=0.01,
        fetch_limit=10,
        stream_retry_delay=0,
        use_streaming=use_streaming,
    )
    return watcher, generator


def make_network(cls=InMemoryNetwork, **kwargs):
    network = cls(**kwargs)
    network.register_account("bot", "the_bot")
    network.register_account("alice", "alice")
    return network


@pytest.mark.asyncio
async def test_poll_once_processes_oldest_first_and_advances_cursor():
    network = make_network()
    watcher, generator = build(network)
    first = network.add_item("@the_bot one", "alice")
    second = network.add_item("@the_bot two", "alice")

    results = await watcher.poll_once(AGENT)

    assert [r.item_id for r in results] == [first.id, second.id]
    assert generator.replied_to == [first.id, second.id]
    assert await watcher.persistence.get(MentionWatcher.key("bot")) == second.id

    assert await watcher.poll_once(AGENT) == []
    third = network.add_item("@the_bot three", "alice")
    assert [r.item_id for r in await watcher.poll_once(AGENT)] == [third.id]


@pytest.mark.asyncio
async def test_cursor_survives_restart():
    persistence = InMemoryPersistence()
    network = make_network()
    network.add_item("@the_bot old", "alice")

    watcher, _ = build(network, persistence=persistence)
    await watcher.poll_once(AGENT)

    restarted, generator = build(network, persistence=persistence)
    assert await restarted.poll_once(AGENT) == []
    assert generator.replied_to == []


@pytest.mark.asyncio
async def test_fetch_failure_feeds_backoff_and_next_poll_waits():
    network = make_network(FailingMentionsNetwork)
    watcher, _ = build(network)

    assert await watcher.poll_once(AGENT) == []
    assert watcher.backoff.error_count("bot") == 1
    assert watcher.backoff.in_cooldown("bot")
    # Cooling down: no second fetch attempt is counted.
    assert await watcher.poll_once(AGENT) == []
    assert watcher.backoff.error_count("bot") == 1


@pytest.mark.asyncio
async def test_stopped_agent_discards_in_flight_results():
    network = make_network(BlockingMentionsNetwork)
    watcher, generator = build(network)
    network.add_item("@the_bot are you there?", "alice")

    poll = asyncio.create_task(watcher.poll_once(AGENT))
    await network.started.wait()
    await watcher.stop("bot")
    network.release.set()

    assert await poll == []
    assert generator.replied_to == []
    assert network.published == []


@pytest.mark.asyncio
async def test_polling_loop_start_and_stop():
    network = make_network()
    watcher, generator = build(network)
    mention = network.add_item("@the_bot hi", "alice")

    watcher.start(AGENT)
    assert watcher.is_watching("bot")
    for _ in range(50):
        if generator.replied_to:
            break
        await asyncio.sleep(0.01)
    await watcher.stop_all()

    assert generator.replied_to == [mention.id]
    assert not watcher.is_watching("bot")


@pytest.mark.asyncio
async def test_streaming_delivers_mentions():
    network = make_network(streaming=True)
    watcher, generator = build(network, use_streaming=True)

    watcher.start(AGENT)
    await asyncio.sleep(0.02)
    mention = network.add_item("@the_bot streaming?", "alice")
    for _ in range(50):
        if generator.replied_to:
            break
        await asyncio.sleep(0.01)
    await watcher.stop("bot")

    assert generator.replied_to == [mention.id]
    assert len(network.published) == 1


@pytest.mark.asyncio
async def test_stream_failures_fall_back_to_polling():
    network = make_network(FlakyStreamNetwork)
    watcher, _ = build(network, use_streaming=True)

    watcher.start(AGENT)
    for _ in range(50):
        if network.polls:
            break
        await asyncio.sleep(0.01)
    await watcher.stop("bot")

    assert network.stream_attempts == 3
    assert network.polls >= 1


@pytest.mark.asyncio
async def test_unsupported_stream_polls_immediately():
    network = make_network()  # streaming disabled on the network
    watcher, generator = build(network, use_streaming=True)
    mention = network.add_item("@the_bot hi", "alice")

    watcher.start(AGENT)
    for _ in range(50):
        if generator.replied_to:
            break
        await asyncio.sleep(0.01)
    await watcher.stop("bot")

    assert generator.replied_to == [mention.id]


class BlockingReplyGenerator(CountingGenerator):
    """generate_reply waits until released, to hold a reaction in flight."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate_reply(self, agent, transcript, *, item, avoid_context_questions=False):
        self.started.set()
        await self.release.wait()
        return await super().generate_reply(agent, transcript, item=item)


@pytest.mark.asyncio
async def test_stop_discards_stream_reaction_in_flight():
    network = make_network(streaming=True)
    generator = BlockingReplyGenerator()
    persistence = InMemoryPersistence()
    backoff = ApiErrorBackoff()
    pipeline = ReactionPipeline(
        network,
        generator,
        DedupStore(persistence, capacity=100),
        MemoryStore(persistence),
        ConversationResolver(network, max_depth=5),
        BehaviorPolicy(generator, rng=random.Random(0)),
        backoff,
    )
    watcher = MentionWatcher(
        network, pipeline, backoff, persistence, interval=0.01, use_streaming=True
    )

    watcher.start(AGENT)
    await asyncio.sleep(0.02)
    network.add_item("@the_bot hello", "alice")
    await asyncio.wait_for(generator.started.wait(), timeout=1)

    await watcher.stop("bot")
    generator.release.set()
    await network.drain_deliveries()

    assert network.published == []
    assert generator.replied_to == []
