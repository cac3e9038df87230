"""
Agent definition loading from JSON files.

Each file in the agents directory describes one persona. Keys are snake_case:

```json
{
  "id": "techie",
  "name": "Tech Enthusiast",
  "username": "techie_bot",
  "description": "Always excited about the next gadget",
  "personality": {"traits": ["curious"], "interests": ["AI", "gadgets"]},
  "style_guide": {"voice": "casual", "tone": "upbeat", "topics_to_avoid": ["politics"]},
  "style": {"force_lowercase": false, "prompt_as_hint": false},
  "custom_system_prompt": "...",
  "behavior": {
    "post_frequency": {"min_hours_between_posts": 3, "max_hours_between_posts": 12,
                       "peak_posting_hours": [9, 12, 18]},
    "interaction_patterns": {"reply_probability": 0.5, "quote_tweet_probability": 0.3,
                             "like_probability": 0.7},
    "content_preferences": {"max_thread_length": 3, "typical_post_length": 240}
  },
  "initial_memory": {"core_memories": ["..."], "recent_events": [], "relationships": {}}
}
```

Usage:
    loader = AgentLoader(Path("config/agents"))
    definitions = loader.load_all()
    await runtime.load_agents(definitions)
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from .config import Config
from .errors import ConfigurationError
from .logging_utils import log_error, log_info
from .schemas import AgentProfile, InitialMemory


class AgentDefinition(BaseModel):
    """A loaded agent: its profile plus the memory it starts with."""

    profile: AgentProfile
    initial_memory: InitialMemory = Field(default_factory=InitialMemory)
    source: Optional[str] = None


class AgentLoader:
    """Reads ``*.json`` agent definitions from a directory.

    Validation failures raise ConfigurationError naming the file, so one broken
    definition never hides which persona needs fixing.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = Path(config_dir) if config_dir is not None else Config.AGENTS_DIR

    def load_all(self) -> List[AgentDefinition]:
        """Load every definition in the directory, skipping (and logging) bad files."""
        if not self.config_dir.exists():
            log_error(f"Agent config directory not found: {self.config_dir}")
            return []

        definitions: List[AgentDefinition] = []
        for path in sorted(self.config_dir.glob("*.json")):
            try:
                definitions.append(self.load_file(path))
            except ConfigurationError as exc:
                log_error(str(exc))
        log_info(f"Loaded {len(definitions)} agent definition(s) from {self.config_dir}")
        return definitions

    def load_file(self, path: Path) -> AgentDefinition:
        try:
            data = json.loads(Path(path).read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Could not read agent definition: {exc}", source=path) from exc
        return self.parse(data, source=str(path))

    def parse(self, data: Dict[str, Any], *, source: Optional[str] = None) -> AgentDefinition:
        """Convert one raw definition dict into an AgentDefinition."""
        if not isinstance(data, dict):
            raise ConfigurationError("Agent definition must be a JSON object", source=source)

        agent_id = data.get("id") or data.get("agent_id")
        if not agent_id:
            raise ConfigurationError("Agent definition is missing 'id'", source=source)

        style_guide = data.get("style_guide") or {}
        style = dict(data.get("style") or {})
        style.setdefault("voice", style_guide.get("voice", ""))
        style.setdefault("tone", style_guide.get("tone", ""))
        style.setdefault("topics_to_avoid", style_guide.get("topics_to_avoid", []))
        if data.get("custom_system_prompt") and "custom_prompt" not in style:
            style["custom_prompt"] = data["custom_system_prompt"]

        behavior = dict(data.get("behavior") or {})
        patterns = dict(behavior.get("interaction_patterns") or {})
        # Older definitions spell it quote_tweet_probability.
        if "quote_tweet_probability" in patterns:
            patterns.setdefault("quote_probability", patterns.pop("quote_tweet_probability"))
        behavior["interaction_patterns"] = patterns

        try:
            profile = AgentProfile(
                agent_id=agent_id,
                name=data.get("name") or agent_id,
                description=data.get("description", ""),
                username=data.get("username"),
                personality=data.get("personality") or {},
                behavior=behavior,
                style=style,
            )
            initial_memory = InitialMemory.model_validate(data.get("initial_memory") or {})
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid agent definition for '{agent_id}': {exc}", source=source
            ) from exc

        return AgentDefinition(profile=profile, initial_memory=initial_memory, source=source)
