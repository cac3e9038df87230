"""
Pydantic schemas for the agent runtime.

All data structures shared between the scheduler, event queue, reaction
pipeline and stores are defined here.

Design Philosophy:
- Agents are configuration plus a small amount of mutable runtime state
  (last post time, mood). Everything else an agent "knows" lives in its
  MemoryRecord so it can be persisted independently.
- Items coming from the social network are frozen: the pipeline never edits
  what it fetched.
- Memory collections carry their caps as invariants enforced by the store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


# ============================================================================
# Agent Schemas
# ============================================================================


class Mood(BaseModel):
    """Pleasure-arousal-dominance mood vector."""

    valence: float = Field(0.0, ge=-1.0, le=1.0, description="Negative to positive")
    arousal: float = Field(0.0, ge=0.0, le=1.0, description="Calm to excited")
    dominance: float = Field(0.5, ge=0.0, le=1.0, description="Submissive to dominant")

    def shift(
        self,
        valence_shift: float = 0.0,
        arousal_shift: float = 0.0,
        dominance_shift: float = 0.0,
    ) -> "Mood":
        """Apply deltas in place, clamping every axis into its range."""
        self.valence = _clamp(self.valence + valence_shift, -1.0, 1.0)
        self.arousal = _clamp(self.arousal + arousal_shift, 0.0, 1.0)
        self.dominance = _clamp(self.dominance + dominance_shift, 0.0, 1.0)
        return self


class PostFrequency(BaseModel):
    min_hours_between_posts: float = Field(3.0, gt=0)
    max_hours_between_posts: float = Field(12.0, gt=0)
    # Hours (local wall clock) where the agent posts more often.
    peak_posting_hours: Set[int] = Field(default_factory=set)

    @field_validator("peak_posting_hours")
    @classmethod
    def _hours_in_range(cls, hours: Set[int]) -> Set[int]:
        bad = sorted(h for h in hours if not 0 <= h <= 23)
        if bad:
            raise ValueError(f"peak_posting_hours must be within 0-23, got {bad}")
        return hours

    @model_validator(mode="after")
    def _min_not_above_max(self) -> "PostFrequency":
        if self.min_hours_between_posts > self.max_hours_between_posts:
            raise ValueError(
                "min_hours_between_posts must not exceed max_hours_between_posts"
            )
        return self


class InteractionPatterns(BaseModel):
    reply_probability: float = Field(0.5, ge=0.0, le=1.0)
    quote_probability: float = Field(0.3, ge=0.0, le=1.0)
    like_probability: float = Field(0.7, ge=0.0, le=1.0)


class ContentPreferences(BaseModel):
    max_thread_length: int = Field(3, ge=1)
    typical_post_length: int = Field(240, ge=1)
    link_sharing_frequency: float = Field(0.2, ge=0.0, le=1.0)


class AgentBehavior(BaseModel):
    post_frequency: PostFrequency = Field(default_factory=PostFrequency)
    interaction_patterns: InteractionPatterns = Field(default_factory=InteractionPatterns)
    content_preferences: ContentPreferences = Field(default_factory=ContentPreferences)


class StyleSettings(BaseModel):
    """Per-persona output formatting, resolved generically by the runtime."""

    force_lowercase: bool = Field(False, description="Lowercase every generated post")
    # When set, custom_prompt is handed to the generator as the post hint
    # instead of being folded into a wrapper prompt.
    prompt_as_hint: bool = False
    custom_prompt: Optional[str] = None
    voice: str = ""
    tone: str = ""
    topics_to_avoid: List[str] = Field(default_factory=list)


class AgentProfile(BaseModel):
    """A configured persona: identity, behavior configuration, runtime state."""

    agent_id: str = Field(..., min_length=1, description="Unique agent identifier")
    name: str = Field(..., description="Display name")
    description: str = ""
    # Network handle used for case-insensitive self-mention filtering.
    username: Optional[str] = None
    personality: Dict[str, Any] = Field(default_factory=dict)
    behavior: AgentBehavior = Field(default_factory=AgentBehavior)
    style: StyleSettings = Field(default_factory=StyleSettings)

    # Runtime state (mutated throughout the process lifetime)
    last_post_time: Optional[datetime] = None
    current_mood: Mood = Field(default_factory=Mood)

    def handles(self) -> Set[str]:
        """Lowercased names this agent can be addressed by (without '@')."""
        names = {self.agent_id.lower(), self.name.lower().replace(" ", "")}
        if self.username:
            names.add(self.username.lower().lstrip("@"))
        return {n for n in names if n}


# ============================================================================
# Network Items
# ============================================================================


class Item(BaseModel):
    """A post or mention fetched from (or published to) the social network."""

    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    author_id: str
    author_username: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    reply_to_id: Optional[str] = None
    # Author of the replied-to item, as reported by the network.
    in_reply_to_user_id: Optional[str] = None
    quote_to_id: Optional[str] = None
    is_direct_mention: bool = False


class TranscriptEntry(BaseModel):
    role: Literal["agent", "user"]
    content: str
    timestamp: datetime


# ============================================================================
# Memory Schemas
# ============================================================================


class MemoryItem(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    content: str
    # core | event | general | interaction | post
    memory_type: str = "general"
    timestamp: datetime = Field(default_factory=utc_now)
    importance: float = Field(0.5, ge=0.0, le=1.0)
    emotional_valence: float = Field(0.0, ge=-1.0, le=1.0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Relationship(BaseModel):
    """How an agent feels about another account. Lives inside the owner's memory."""

    target_id: str
    sentiment: float = Field(0.0, ge=-1.0, le=1.0)
    familiarity: float = Field(0.0, ge=0.0, le=1.0)
    trust: float = Field(0.0, ge=0.0, le=1.0)
    last_interaction_at: Optional[datetime] = None
    # Newest first.
    recent_interactions: List[str] = Field(default_factory=list)
    shared_experiences: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)


class MemoryRecord(BaseModel):
    """Everything one agent remembers. Collections are bounded by MemoryStore."""

    agent_id: str
    core_memories: List[MemoryItem] = Field(default_factory=list)
    long_term_memories: List[MemoryItem] = Field(default_factory=list)
    recent_events: List[MemoryItem] = Field(default_factory=list)
    # Both newest first.
    recent_posts: List[MemoryItem] = Field(default_factory=list)
    post_history: List[MemoryItem] = Field(default_factory=list)
    relationships: Dict[str, Relationship] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=utc_now)

    def relationship(self, target_id: str) -> Relationship:
        """Get or lazily create the relationship with target_id."""
        if target_id not in self.relationships:
            self.relationships[target_id] = Relationship(target_id=target_id)
        return self.relationships[target_id]


class InitialMemory(BaseModel):
    """Seed memory declared in an agent definition."""

    core_memories: List[str] = Field(default_factory=list)
    recent_events: List[Any] = Field(default_factory=list)
    relationships: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    post_history: List[Any] = Field(default_factory=list)


# ============================================================================
# Events
# ============================================================================


class EventPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    EventPriority.LOW: 0,
    EventPriority.NORMAL: 1,
    EventPriority.HIGH: 2,
    EventPriority.CRITICAL: 3,
}


class Event(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    # news | mood_shift | interaction_prompt | custom types
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    # Empty means broadcast to all agents.
    target_agent_ids: List[str] = Field(default_factory=list)
    priority: EventPriority = EventPriority.NORMAL
    created_at: datetime = Field(default_factory=utc_now)

    def targets(self, agent_id: str) -> bool:
        return not self.target_agent_ids or agent_id in self.target_agent_ids


class ScheduledEvent(BaseModel):
    event: Event
    due_at: datetime


class ProcessedEvent(BaseModel):
    event: Event
    processed_at: datetime


# ============================================================================
# Reactions
# ============================================================================


class ReactionAction(str, Enum):
    REPLY = "reply"
    QUOTE = "quote"
    LIKE = "like"
    IGNORE = "ignore"


class ReactionSuggestion(BaseModel):
    """What the content generator thinks the agent should do with a passive item."""

    action: ReactionAction
    content: Optional[str] = Field(None, description="Draft text for reply/quote")
    reasoning: str = ""


class ReactionDecision(BaseModel):
    """Final action after probability gates were applied."""

    action: ReactionAction
    content: Optional[str] = None
    reasoning: str = ""
    suggested: Optional[ReactionAction] = None


class PipelineStage(str, Enum):
    RECEIVED = "received"
    SELF_CHECK = "self_check"
    DEDUP_CHECK = "dedup_check"
    DROPPED = "dropped"
    MENTION_PATH = "mention_path"
    REACTION_PATH = "reaction_path"
    CONTEXT_RESOLVED = "context_resolved"
    ACTION_DECIDED = "action_decided"
    PUBLISHED = "published"
    SKIPPED = "skipped"
    MEMORY_UPDATED = "memory_updated"


class ReactionResult(BaseModel):
    agent_id: str
    item_id: str
    stages: List[PipelineStage] = Field(default_factory=list)
    action: ReactionAction = ReactionAction.IGNORE
    published: Optional[Item] = None
    reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def final_stage(self) -> Optional[PipelineStage]:
        return self.stages[-1] if self.stages else None

    @property
    def dropped(self) -> bool:
        return PipelineStage.DROPPED in self.stages


# ============================================================================
# Generator outputs
# ============================================================================


class MemoryUpdate(BaseModel):
    """How an event changes an agent's memory and mood."""

    memory: Optional[str] = None
    importance: float = Field(0.5, ge=0.0, le=1.0)
    valence_shift: float = Field(0.0, ge=-1.0, le=1.0)
    arousal_shift: float = Field(0.0, ge=-1.0, le=1.0)
    dominance_shift: float = Field(0.0, ge=-1.0, le=1.0)
