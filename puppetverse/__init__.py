"""
Puppetverse - autonomous social media personas on a cooperative event loop.

Agents post on jittered schedules, react to mentions and to each other, and
remember what they said. The social network and the content generator are
injected collaborators; no global state lives in the library.
"""

__version__ = "0.1.0"

# Main runtime
from .runtime import Runtime

# Components
from .backoff import ApiErrorBackoff, COOLDOWN_SCHEDULE_MINUTES
from .conversation import ConversationResolver
from .dedup import DedupStore
from .events import EventGenerator, EventQueue
from .memory import MemoryStore
from .pipeline import ReactionPipeline, asks_for_context, strip_leading_handles
from .policy import BehaviorPolicy, is_direct_address
from .scheduler import PostScheduler, next_post_interval
from .watcher import MentionWatcher

# Collaborators
from .collaborators import (
    ContentGenerator,
    InMemoryNetwork,
    MentionStream,
    Publisher,
    TemplateContentGenerator,
)
from .generator import LLMContentGenerator
from .persistence import InMemoryPersistence, JsonPersistence, PersistenceStrategy

# Schemas
from .schemas import (
    AgentBehavior,
    AgentProfile,
    Event,
    EventPriority,
    InitialMemory,
    Item,
    MemoryItem,
    MemoryRecord,
    MemoryUpdate,
    Mood,
    PipelineStage,
    ReactionAction,
    ReactionDecision,
    ReactionResult,
    ReactionSuggestion,
    Relationship,
    StyleSettings,
    TranscriptEntry,
)

# Loading and errors
from .loader import AgentDefinition, AgentLoader
from .errors import (
    ConfigurationError,
    DuplicateContentError,
    NotFoundError,
    PublishError,
    PuppetverseError,
    RateLimitError,
    StreamUnavailableError,
    TransientNetworkError,
)

__all__ = [
    "Runtime",
    "ApiErrorBackoff",
    "COOLDOWN_SCHEDULE_MINUTES",
    "ConversationResolver",
    "DedupStore",
    "EventGenerator",
    "EventQueue",
    "MemoryStore",
    "ReactionPipeline",
    "asks_for_context",
    "strip_leading_handles",
    "BehaviorPolicy",
    "is_direct_address",
    "PostScheduler",
    "next_post_interval",
    "MentionWatcher",
    "ContentGenerator",
    "InMemoryNetwork",
    "MentionStream",
    "Publisher",
    "TemplateContentGenerator",
    "LLMContentGenerator",
    "InMemoryPersistence",
    "JsonPersistence",
    "PersistenceStrategy",
    "AgentBehavior",
    "AgentProfile",
    "Event",
    "EventPriority",
    "InitialMemory",
    "Item",
    "MemoryItem",
    "MemoryRecord",
    "MemoryUpdate",
    "Mood",
    "PipelineStage",
    "ReactionAction",
    "ReactionDecision",
    "ReactionResult",
    "ReactionSuggestion",
    "Relationship",
    "StyleSettings",
    "TranscriptEntry",
    "AgentDefinition",
    "AgentLoader",
    "ConfigurationError",
    "DuplicateContentError",
    "NotFoundError",
    "PublishError",
    "PuppetverseError",
    "RateLimitError",
    "StreamUnavailableError",
    "TransientNetworkError",
]
