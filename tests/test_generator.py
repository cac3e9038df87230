"""Tests for the LLM-backed content generator, with the model call stubbed out."""

from datetime import datetime, timezone

import pytest

from puppetverse.generator import GeneratedPost, LLMContentGenerator, persona_prompt
from puppetverse.memory import MemoryStore
from puppetverse.persistence import InMemoryPersistence
from puppetverse.schemas import (
    AgentProfile,
    Event,
    Item,
    MemoryUpdate,
    ReactionAction,
    ReactionSuggestion,
    StyleSettings,
    TranscriptEntry,
)

AGENT = AgentProfile(
    agent_id="bot",
    name="Bot",
    description="A friendly robot.",
    personality={"traits": ["curious"], "interests": ["robots", "tea"]},
    style=StyleSettings(voice="casual", topics_to_avoid=["politics"]),
)

ITEM = Item(id="alice-1", content="@bot what do you think?", author_id="alice", author_username="alice")


class StubLLM:
    """Replaces mirascope's llm.call; answers with canned model instances."""

    def __init__(self, responses):
        self.responses = responses
        self.prompts: list[str] = []
        self.models: list[type] = []

    def install(self, monkeypatch):
        def fake_decorator(*, provider, model, response_model):
            def wrapper(fn):
                async def inner(prompt: str):
                    self.prompts.append(prompt)
                    self.models.append(response_model)
                    return self.responses[response_model]

                return inner

            return wrapper

        monkeypatch.setattr("puppetverse.llm_utils.llm.call", fake_decorator)
        return self


def test_persona_prompt_includes_style_and_mood():
    prompt = persona_prompt(AGENT)

    assert prompt.startswith("You are Bot. A friendly robot.")
    assert "Interests: robots, tea." in prompt
    assert "Never talk about: politics." in prompt
    assert "Current mood: valence 0.0, arousal 0.0, dominance 0.5." in prompt


def test_persona_prompt_leaves_hint_prompt_out():
    agent = AGENT.model_copy(
        update={"style": StyleSettings(custom_prompt="Only talk about rain", prompt_as_hint=True)}
    )
    assert "Only talk about rain" not in persona_prompt(agent)

    agent = AGENT.model_copy(update={"style": StyleSettings(custom_prompt="Only talk about rain")})
    assert "Only talk about rain" in persona_prompt(agent)


@pytest.mark.asyncio
async def test_generate_tweet_mentions_hint_and_recent_topics(monkeypatch):
    stub = StubLLM({GeneratedPost: GeneratedPost(content="Tea time!")}).install(monkeypatch)
    memory = MemoryStore(InMemoryPersistence())
    await memory.record_post("bot", "Robots brewing coffee", "bot-1")
    generator = LLMContentGenerator(llm_provider="openai", llm_model="gpt-5-nano", memory=memory)

    text = await generator.generate_tweet(AGENT, "tea")

    assert text == "Tea time!"
    assert "Write a post about: tea" in stub.prompts[0]
    assert "Avoid repeating these recent topics:" in stub.prompts[0]
    assert "robots" in stub.prompts[0]


@pytest.mark.asyncio
async def test_generate_reply_without_context_avoids_context_questions(monkeypatch):
    stub = StubLLM({GeneratedPost: GeneratedPost(content="Robots are great")}).install(monkeypatch)
    generator = LLMContentGenerator(llm_provider="openai", llm_model="gpt-5-nano")
    transcript = [TranscriptEntry(role="user", content=ITEM.content, timestamp=ITEM.created_at)]

    await generator.generate_reply(AGENT, transcript, item=ITEM, avoid_context_questions=True)

    prompt = stub.prompts[0]
    assert 'alice wrote to you: "@bot what do you think?"' in prompt
    assert "Do NOT ask what post or conversation they mean." in prompt


@pytest.mark.asyncio
async def test_generate_reply_with_history_and_relationship(monkeypatch):
    stub = StubLLM({GeneratedPost: GeneratedPost(content="Indeed")}).install(monkeypatch)
    memory = MemoryStore(InMemoryPersistence())
    await memory.update_relationship("bot", "alice", sentiment_delta=0.4, familiarity_delta=0.2)
    generator = LLMContentGenerator(llm_provider="openai", llm_model="gpt-5-nano", memory=memory)
    when = datetime(2024, 1, 1, tzinfo=timezone.utc)
    transcript = [
        TranscriptEntry(role="agent", content="Robots are neat", timestamp=when),
        TranscriptEntry(role="user", content=ITEM.content, timestamp=when),
    ]

    await generator.generate_reply(AGENT, transcript, item=ITEM)

    prompt = stub.prompts[0]
    assert '1. You: "Robots are neat"' in prompt
    assert '2. alice: "@bot what do you think?"' in prompt
    assert "Do NOT ask" not in prompt
    assert "sentiment 0.4, familiarity 0.2" in prompt


@pytest.mark.asyncio
async def test_generate_reaction_returns_structured_suggestion(monkeypatch):
    suggestion = ReactionSuggestion(action=ReactionAction.QUOTE, content="So true", reasoning="relatable")
    stub = StubLLM({ReactionSuggestion: suggestion}).install(monkeypatch)
    generator = LLMContentGenerator(llm_provider="anthropic", llm_model="claude-haiku")

    result = await generator.generate_reaction(AGENT, ITEM)

    assert result.action == ReactionAction.QUOTE
    assert stub.models == [ReactionSuggestion]


@pytest.mark.asyncio
async def test_generate_memory_update_bounds_mood_shifts(monkeypatch):
    update = MemoryUpdate(
        memory="Robots won the election",
        importance=0.8,
        valence_shift=0.9,
        arousal_shift=-0.8,
        dominance_shift=0.2,
    )
    stub = StubLLM({MemoryUpdate: update}).install(monkeypatch)
    generator = LLMContentGenerator(llm_provider="openai", llm_model="gpt-5-nano")
    event = Event(type="news", data={"headline": "Robots win election"})

    result = await generator.generate_memory_update(AGENT, event)

    assert result.valence_shift == 0.5
    assert result.arousal_shift == -0.5
    assert result.dominance_shift == 0.2
    assert result.importance == 0.8
    assert 'Given the following event: "Robots win election"' in stub.prompts[0]
