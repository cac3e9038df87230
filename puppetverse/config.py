"""
Puppetverse Configuration

Loads configuration from environment variables with sensible defaults.
Runtime components take explicit arguments; these values are only their defaults.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

from .errors import ConfigurationError

# Load .env file if it exists
load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration loaded from environment variables."""

    # LLM Provider Configuration
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "openai")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "gpt-4o-mini")

    # API Keys
    ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")
    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")

    # Storage
    DATA_DIR: Path = Path(os.getenv("DATA_DIR", "data"))
    AGENTS_DIR: Path = Path(os.getenv("AGENTS_DIR", "config/agents"))

    # Memory bounds
    DEFAULT_AGENT_MEMORY_LIMIT: int = int(os.getenv("DEFAULT_AGENT_MEMORY_LIMIT", "100"))
    MAX_RECENT_POSTS: int = int(os.getenv("MAX_RECENT_POSTS", "20"))
    MAX_POST_HISTORY: int = int(os.getenv("MAX_POST_HISTORY", "50"))
    DEDUP_CAPACITY: int = int(os.getenv("DEDUP_CAPACITY", "1000"))

    # Conversation resolution
    CONVERSATION_MAX_DEPTH: int = int(os.getenv("CONVERSATION_MAX_DEPTH", "5"))

    # Scheduling
    SCHEDULER_TICK_SECONDS: float = float(os.getenv("SCHEDULER_TICK_SECONDS", "60"))
    FIRST_POST_DELAY_SECONDS: float = float(os.getenv("FIRST_POST_DELAY_SECONDS", "10"))

    # Mention watching
    MENTION_POLLING_INTERVAL: float = float(os.getenv("MENTION_POLLING_INTERVAL", "60"))
    MENTION_FETCH_LIMIT: int = int(os.getenv("MENTION_FETCH_LIMIT", "10"))
    USE_MENTION_STREAMING: bool = _env_flag("USE_MENTION_STREAMING")

    # Synthetic world events (news, mood shifts, interaction prompts)
    ENABLE_RANDOM_EVENTS: bool = _env_flag("ENABLE_RANDOM_EVENTS")

    @classmethod
    def validate(cls) -> None:
        """Raise ConfigurationError when the selected LLM provider has no credentials."""
        if cls.LLM_PROVIDER == "anthropic" and not cls.ANTHROPIC_API_KEY:
            raise ConfigurationError(
                "ANTHROPIC_API_KEY is required when using the 'anthropic' provider"
            )

        if cls.LLM_PROVIDER == "openai" and not cls.OPENAI_API_KEY:
            raise ConfigurationError(
                "OPENAI_API_KEY is required when using the 'openai' provider"
            )

        if cls.DEFAULT_AGENT_MEMORY_LIMIT < 2:
            raise ConfigurationError("DEFAULT_AGENT_MEMORY_LIMIT must be at least 2")

        if cls.DEDUP_CAPACITY < 1:
            raise ConfigurationError("DEDUP_CAPACITY must be positive")

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        lines = [
            "Puppetverse Configuration:",
            f"  LLM Provider: {cls.LLM_PROVIDER}",
            f"  LLM Model: {cls.LLM_MODEL}",
            f"  Data Dir: {cls.DATA_DIR}",
            f"  Agents Dir: {cls.AGENTS_DIR}",
            f"  Mention Polling: every {cls.MENTION_POLLING_INTERVAL:g}s"
            + (" (streaming preferred)" if cls.USE_MENTION_STREAMING else ""),
            f"  Scheduler Tick: {cls.SCHEDULER_TICK_SECONDS:g}s",
            f"  Random Events: {'on' if cls.ENABLE_RANDOM_EVENTS else 'off'}",
        ]
        return "\n".join(lines)
