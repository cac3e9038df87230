"""
LLM-backed ContentGenerator.

Every call goes through call_llm_with_retries with a pydantic response model,
so malformed output is retried with validation feedback instead of being
parsed by hand. Prompts are assembled from the agent profile and, when a
MemoryStore is supplied, from what the agent remembers about the people it
is talking to.
"""

from __future__ import annotations

import json
from typing import List, Optional

from pydantic import BaseModel, Field

from .collaborators import ContentGenerator
from .config import Config
from .llm_utils import call_llm_with_retries
from .logging_utils import log_llm, preview
from .memory import MemoryStore
from .schemas import (
    AgentProfile,
    Event,
    Item,
    MemoryUpdate,
    ReactionSuggestion,
    TranscriptEntry,
)

MAX_POST_CHARS = 280
MAX_MOOD_SHIFT = 0.5


class GeneratedPost(BaseModel):
    """A single post or reply."""

    content: str = Field(..., min_length=1, max_length=MAX_POST_CHARS)


def persona_prompt(agent: AgentProfile) -> str:
    """System prompt describing who the agent is and how it writes."""
    lines = [f"You are {agent.name}. {agent.description}".strip()]

    traits = agent.personality.get("traits")
    if traits:
        lines.append(f"Personality traits: {', '.join(map(str, traits))}.")
    interests = agent.personality.get("interests")
    if interests:
        lines.append(f"Interests: {', '.join(map(str, interests))}.")

    style = agent.style
    if style.voice:
        lines.append(f"Voice: {style.voice}")
    if style.tone:
        lines.append(f"Tone: {style.tone}")
    if style.topics_to_avoid:
        lines.append(f"Never talk about: {', '.join(style.topics_to_avoid)}.")
    if style.force_lowercase:
        lines.append("Write in lowercase only, with minimal punctuation.")
    if style.custom_prompt and not style.prompt_as_hint:
        lines.append(style.custom_prompt)

    mood = agent.current_mood
    lines.append(
        f"Current mood: valence {mood.valence:.1f}, arousal {mood.arousal:.1f}, "
        f"dominance {mood.dominance:.1f}."
    )
    lines.append(f"Every post must be {MAX_POST_CHARS} characters or less.")
    return "\n".join(lines)


class LLMContentGenerator(ContentGenerator):
    def __init__(
        self,
        *,
        llm_provider: Optional[str] = None,
        llm_model: Optional[str] = None,
        memory: Optional[MemoryStore] = None,
        max_attempts: int = 3,
    ):
        self.llm_provider = llm_provider or Config.LLM_PROVIDER
        self.llm_model = llm_model or Config.LLM_MODEL
        self.memory = memory
        self.max_attempts = max_attempts

    async def _call(self, agent: AgentProfile, user_prompt: str, response_model):
        return await call_llm_with_retries(
            system_prompt=persona_prompt(agent),
            user_prompt=user_prompt,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            response_model=response_model,
            max_attempts=self.max_attempts,
        )

    async def generate_tweet(self, agent: AgentProfile, hint: Optional[str] = None) -> str:
        sections = ["### Task: Create a New Post"]
        if hint:
            sections.append(f"Write a post about: {hint}")
        else:
            sections.append(
                "Write a post about something interesting given your persona and current state."
            )

        if self.memory is not None:
            topics = await self.memory.get_recent_topics(agent.agent_id)
            if topics:
                sections.append(
                    "Avoid repeating these recent topics: " + ", ".join(topics[:15]) + "."
                )

        log_llm(f"Generating post for {agent.name}")
        result = await self._call(agent, "\n\n".join(sections), GeneratedPost)
        return result.content

    async def generate_reply(
        self,
        agent: AgentProfile,
        transcript: List[TranscriptEntry],
        *,
        item: Item,
        avoid_context_questions: bool = False,
    ) -> str:
        author = item.author_username or item.author_id
        sections = ["### Task: Reply"]

        if len(transcript) > 1:
            history = "\n".join(
                f"{i}. {'You' if entry.role == 'agent' else author}: \"{entry.content}\""
                for i, entry in enumerate(transcript, start=1)
            )
            sections.append(f"Conversation so far (oldest first):\n{history}")
            sections.append(
                "Continue this conversation naturally and answer the latest message. "
                "Do not ask which post or context is being discussed."
            )
        else:
            sections.append(f"{author} wrote to you: \"{item.content}\"")
            sections.append("Respond directly to what they said.")

        if avoid_context_questions:
            sections.append(
                "Do NOT ask what post or conversation they mean. Share something "
                "interesting or ask an open-ended question related to your persona instead."
            )

        if self.memory is not None:
            record = await self.memory.get_memory(agent.agent_id)
            rel = record.relationships.get(item.author_id)
            if rel is not None:
                sections.append(
                    f"Your relationship with this user: sentiment {rel.sentiment:.1f}, "
                    f"familiarity {rel.familiarity:.1f}."
                )

        sections.append(f"Do not mention {author}'s username in your reply.")
        log_llm(f"Generating reply for {agent.name} to {item.id}")
        result = await self._call(agent, "\n\n".join(sections), GeneratedPost)
        return result.content

    async def generate_reaction(self, agent: AgentProfile, item: Item) -> ReactionSuggestion:
        author = item.author_username or item.author_id
        prompt = (
            f"You've just seen this post from {author}: \"{item.content}\"\n\n"
            "Decide what to do: reply, quote, like or ignore. For reply and quote, "
            "draft the text in `content`. Explain briefly in `reasoning`.\n"
            f"Output JSON matching the {ReactionSuggestion.__name__} schema."
        )
        log_llm(f"Generating reaction for {agent.name} to \"{preview(item.content)}\"")
        return await self._call(agent, prompt, ReactionSuggestion)

    async def generate_memory_update(self, agent: AgentProfile, event: Event) -> MemoryUpdate:
        description = (
            event.data.get("description")
            or event.data.get("headline")
            or json.dumps(event.data, default=str)
        )
        prompt = (
            f"Given the following event: \"{description}\"\n"
            f"How would {agent.name} remember it and how does it change their mood?\n"
            "importance is 0.0-1.0; every *_shift is between -0.5 and 0.5.\n"
            f"Output JSON matching the {MemoryUpdate.__name__} schema."
        )
        log_llm(f"Interpreting {event.type} event for {agent.name}")
        update = await self._call(agent, prompt, MemoryUpdate)
        return update.model_copy(
            update={
                "valence_shift": _bounded_shift(update.valence_shift),
                "arousal_shift": _bounded_shift(update.arousal_shift),
                "dominance_shift": _bounded_shift(update.dominance_shift),
            }
        )


def _bounded_shift(value: float) -> float:
    return max(-MAX_MOOD_SHIFT, min(MAX_MOOD_SHIFT, value))
