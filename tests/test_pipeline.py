"""Scenario tests for the reaction pipeline."""

import asyncio
import itertools
import random
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from puppetverse.backoff import ApiErrorBackoff
from puppetverse.collaborators import ContentGenerator, InMemoryNetwork
from puppetverse.conversation import ConversationResolver
from puppetverse.dedup import DedupStore
from puppetverse.errors import RateLimitError
from puppetverse.memory import MemoryStore
from puppetverse.persistence import InMemoryPersistence
from puppetverse.pipeline import ReactionPipeline, asks_for_context, strip_leading_handles
from puppetverse.policy import BehaviorPolicy
from puppetverse.schemas import (
    AgentBehavior,
    AgentProfile,
    InteractionPatterns,
    Item,
    MemoryUpdate,
    PipelineStage,
    ReactionAction,
    ReactionSuggestion,
    StyleSettings,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedGenerator(ContentGenerator):
    """Returns scripted text and records every request."""

    def __init__(self, *, reply: Optional[str] = None, suggestion: ReactionAction = ReactionAction.IGNORE):
        self.reply = reply
        self.suggestion = suggestion
        self.reply_calls: List[dict] = []
        self._counter = itertools.count(1)

    async def generate_reply(self, agent, transcript, *, item, avoid_context_questions=False):
        self.reply_calls.append(
            {"item": item, "transcript": transcript, "avoid": avoid_context_questions}
        )
        return self.reply or f"@{item.author_id} reply number {next(self._counter)}"

    async def generate_tweet(self, agent, hint=None):
        return f"quote number {next(self._counter)}"

    async def generate_reaction(self, agent, item):
        return ReactionSuggestion(action=self.suggestion, reasoning="scripted")

    async def generate_memory_update(self, agent, event):
        return MemoryUpdate()


class SlowNetwork(InMemoryNetwork):
    """Yields to the event loop inside publish so concurrent calls interleave."""

    async def publish(self, agent_id, content, *, reply_to_id=None, quote_id=None):
        await asyncio.sleep(0.01)
        return await super().publish(agent_id, content, reply_to_id=reply_to_id, quote_id=quote_id)


class RateLimitedNetwork(InMemoryNetwork):
    async def publish(self, agent_id, content, *, reply_to_id=None, quote_id=None):
        raise RateLimitError()


def make_agent(**patterns) -> AgentProfile:
    return AgentProfile(
        agent_id="bot",
        name="Bot",
        username="the_bot",
        behavior=AgentBehavior(interaction_patterns=InteractionPatterns(**patterns)),
    )


def build(network, generator, *, clock=None):
    clock = clock or FakeClock()
    persistence = InMemoryPersistence()
    backoff = ApiErrorBackoff(clock=clock)
    pipeline = ReactionPipeline(
        network,
        generator,
        DedupStore(persistence, capacity=100),
        MemoryStore(persistence, memory_limit=10),
        ConversationResolver(network, max_depth=5),
        BehaviorPolicy(generator, rng=random.Random(0)),
        backoff,
        clock=clock,
    )
    return pipeline


def make_network(cls=InMemoryNetwork) -> InMemoryNetwork:
    network = cls()
    network.register_account("bot", "the_bot")
    network.register_account("alice", "alice")
    return network


@pytest.mark.asyncio
async def test_direct_mention_gets_contextual_reply():
    network = make_network()
    generator = ScriptedGenerator()
    pipeline = build(network, generator)
    agent = make_agent()

    original = network.add_item("Robots are overrated", "alice")
    mine = network.add_item("Strongly disagree", "bot", reply_to_id=original.id)
    mention = network.add_item("@the_bot why though?", "alice", reply_to_id=mine.id)

    result = await pipeline.process(agent, mention)

    assert PipelineStage.MENTION_PATH in result.stages
    assert result.final_stage == PipelineStage.MEMORY_UPDATED
    assert result.action == ReactionAction.REPLY
    assert len(network.published) == 1
    reply = network.published[0]
    assert reply.reply_to_id == mention.id
    assert reply.content == "reply number 1"

    transcript = generator.reply_calls[0]["transcript"]
    assert [entry.content for entry in transcript] == [
        "Robots are overrated",
        "Strongly disagree",
        "@the_bot why though?",
    ]
    assert [entry.role for entry in transcript] == ["user", "agent", "user"]

    record = await pipeline.memory.get_memory("bot")
    assert record.recent_posts[0].content == "reply number 1"
    assert record.relationships["alice"].recent_interactions


@pytest.mark.asyncio
async def test_same_item_is_reacted_to_at_most_once():
    network = make_network()
    pipeline = build(network, ScriptedGenerator())
    agent = make_agent()
    mention = network.add_item("@the_bot hello", "alice")

    first = await pipeline.process(agent, mention)
    second = await pipeline.process(agent, mention)

    assert PipelineStage.PUBLISHED in first.stages
    assert second.dropped
    assert second.reason == "already processed"
    assert len(network.published) == 1


@pytest.mark.asyncio
async def test_concurrent_deliveries_publish_once():
    network = make_network(SlowNetwork)
    pipeline = build(network, ScriptedGenerator())
    agent = make_agent()
    mention = network.add_item("@the_bot hello", "alice")

    results = await asyncio.gather(*(pipeline.process(agent, mention) for _ in range(5)))

    assert len(network.published) == 1
    assert sum(1 for r in results if r.dropped) == 4


@pytest.mark.asyncio
async def test_self_mentions_are_dropped():
    network = make_network()
    pipeline = build(network, ScriptedGenerator())
    agent = make_agent()

    own = network.add_item("talking to myself @the_bot", "bot")
    by_handle = Item(
        id="x-1",
        content="@the_bot",
        author_id="some-other-id",
        author_username="THE_BOT",
        is_direct_mention=True,
    )

    for item in (own, by_handle):
        result = await pipeline.process(agent, item)
        assert result.dropped
        assert result.reason == "self-authored item"

    assert network.published == []


@pytest.mark.asyncio
async def test_passive_item_liked_when_only_likes_are_allowed():
    network = make_network()
    pipeline = build(network, ScriptedGenerator(suggestion=ReactionAction.LIKE))
    agent = make_agent(like_probability=1.0, reply_probability=0.0, quote_probability=0.0)
    post = network.add_item("Sunsets are great", "alice")

    result = await pipeline.process(agent, post, direct=False)

    assert PipelineStage.REACTION_PATH in result.stages
    assert result.action == ReactionAction.LIKE
    assert network.likes["bot"] == {post.id}
    assert network.published == []
    record = await pipeline.memory.get_memory("bot")
    assert record.relationships["alice"].notes[0].startswith("Liked their post")


@pytest.mark.asyncio
async def test_passive_item_ignored_when_gate_rejects():
    network = make_network()
    pipeline = build(network, ScriptedGenerator(suggestion=ReactionAction.LIKE))
    agent = make_agent(like_probability=0.0)
    post = network.add_item("Sunsets are great", "alice")

    result = await pipeline.process(agent, post, direct=False)

    assert result.action == ReactionAction.IGNORE
    assert result.final_stage == PipelineStage.SKIPPED
    assert network.likes["bot"] == set()


@pytest.mark.asyncio
async def test_context_question_without_context_requests_context_free_reply():
    network = make_network()
    generator = ScriptedGenerator()
    pipeline = build(network, generator)
    mention = network.add_item("@the_bot what tweet are you talking about?", "alice")

    await pipeline.process(make_agent(), mention)

    assert generator.reply_calls[0]["avoid"] is True


@pytest.mark.asyncio
async def test_context_question_with_context_keeps_normal_reply():
    network = make_network()
    generator = ScriptedGenerator()
    pipeline = build(network, generator)
    mine = network.add_item("Big news today", "bot")
    mention = network.add_item("@the_bot what context?", "alice", reply_to_id=mine.id)

    await pipeline.process(make_agent(), mention)

    assert generator.reply_calls[0]["avoid"] is False


@pytest.mark.asyncio
async def test_cooldown_skips_without_consuming_the_item():
    clock = FakeClock()
    network = make_network()
    pipeline = build(network, ScriptedGenerator(), clock=clock)
    agent = make_agent()
    mention = network.add_item("@the_bot hi", "alice")
    pipeline.backoff.on_error("bot", RateLimitError())

    skipped = await pipeline.process(agent, mention)

    assert skipped.final_stage == PipelineStage.SKIPPED
    assert not pipeline.dedup.contains("bot", mention.id)

    clock.advance(minutes=16)
    retried = await pipeline.process(agent, mention)
    assert PipelineStage.PUBLISHED in retried.stages


@pytest.mark.asyncio
async def test_network_error_is_contained_and_feeds_backoff():
    network = make_network(RateLimitedNetwork)
    pipeline = build(network, ScriptedGenerator())
    mention = network.add_item("@the_bot hi", "alice")

    result = await pipeline.process(make_agent(), mention)

    assert result.final_stage == PipelineStage.SKIPPED
    assert result.error
    assert pipeline.backoff.error_count("bot") == 1
    assert pipeline.backoff.in_cooldown("bot")


@pytest.mark.asyncio
async def test_duplicate_content_is_a_plain_skip():
    network = make_network()
    pipeline = build(network, ScriptedGenerator(reply="same words"))
    agent = make_agent()

    first = await pipeline.process(agent, network.add_item("@the_bot one", "alice"))
    second = await pipeline.process(agent, network.add_item("@the_bot two", "alice"))

    assert PipelineStage.PUBLISHED in first.stages
    assert second.final_stage == PipelineStage.SKIPPED
    assert second.reason == "duplicate content"
    assert pipeline.backoff.error_count("bot") == 0


@pytest.mark.asyncio
async def test_force_lowercase_style_is_applied():
    network = make_network()
    pipeline = build(network, ScriptedGenerator(reply="LOUD Reply"))
    agent = make_agent()
    agent.style = StyleSettings(force_lowercase=True)

    await pipeline.process(agent, network.add_item("@the_bot hey", "alice"))

    assert network.published[0].content == "loud reply"


def test_strip_leading_handles():
    assert strip_leading_handles("@alice @bob hello there") == "hello there"
    assert strip_leading_handles("@alice, thanks!") == "thanks!"
    assert strip_leading_handles("thanks @alice") == "thanks @alice"
    assert strip_leading_handles("@alice") == ""


def test_asks_for_context():
    assert asks_for_context("What tweet?")
    assert asks_for_context("what are you talking about")
    assert asks_for_context("what context is this")
    assert not asks_for_context("what a day")
    assert not asks_for_context("nice tweet")


class ClosingGenerator(ScriptedGenerator):
    """Marks the agent stopped while its reply is being written."""

    def __init__(self, closed: set):
        super().__init__()
        self.closed = closed

    async def generate_reply(self, agent, transcript, *, item, avoid_context_questions=False):
        self.closed.add(agent.agent_id)
        return await super().generate_reply(
            agent, transcript, item=item, avoid_context_questions=avoid_context_questions
        )


@pytest.mark.asyncio
async def test_agent_stopped_during_generation_publishes_nothing():
    closed: set = set()
    network = make_network()
    pipeline = build(network, ClosingGenerator(closed))
    mention = network.add_item("@the_bot hello", "alice")

    result = await pipeline.process(
        make_agent(), mention, direct=True, is_closed=lambda: "bot" in closed
    )

    assert network.published == []
    assert result.final_stage == PipelineStage.SKIPPED
    assert result.reason == "agent stopped"
    assert result.action == ReactionAction.IGNORE


@pytest.mark.asyncio
async def test_agent_stopped_before_like_does_not_like():
    network = make_network()
    pipeline = build(network, ScriptedGenerator(suggestion=ReactionAction.LIKE))
    post = network.add_item("Robots are neat", "alice")

    result = await pipeline.process(make_agent(like_probability=1.0), post, is_closed=lambda: True)

    assert dict(network.likes) == {}
    assert result.reason == "agent stopped"


def test_replies_carry_the_parent_author():
    network = make_network()
    mine = network.add_item("Strongly disagree", "bot")
    reply = network.add_item("why though?", "alice", reply_to_id=mine.id)

    assert reply.in_reply_to_user_id == "bot"
    assert network.mentions_of("bot") == [reply]
    assert network.add_item("no parent", "alice", reply_to_id="missing-1").in_reply_to_user_id is None
