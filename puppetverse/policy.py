"""
Behavior policy: turns a stimulus into a concrete action for one agent.

Direct address (a mention, or a reply to one of the agent's posts) always
earns a reply. Anything else is passive: the content generator suggests an
action and the agent's interaction probabilities gate it. Quotes are dampened
to half their configured probability. Every gate draws a fresh random number.
"""

from __future__ import annotations

import random
import re
from typing import TYPE_CHECKING, Optional

from .logging_utils import debug_enabled, log_deterministic, log_llm
from .schemas import AgentProfile, Item, ReactionAction, ReactionDecision

if TYPE_CHECKING:
    from .collaborators import ContentGenerator

QUOTE_DAMPENING = 0.5


def is_direct_address(agent: AgentProfile, item: Item) -> bool:
    """True when the item mentions the agent or replies to it."""
    if item.is_direct_mention:
        return True

    handles = agent.handles()
    for match in re.finditer(r"@(\w+)", item.content):
        if match.group(1).lower() in handles:
            return True

    return item.in_reply_to_user_id is not None and item.in_reply_to_user_id == agent.agent_id


class BehaviorPolicy:
    def __init__(self, generator: "ContentGenerator", rng: Optional[random.Random] = None):
        self.generator = generator
        self.rng = rng or random.Random()

    async def decide(
        self, agent: AgentProfile, item: Item, *, direct: Optional[bool] = None
    ) -> ReactionDecision:
        if direct is None:
            direct = is_direct_address(agent, item)

        if direct:
            return ReactionDecision(
                action=ReactionAction.REPLY,
                reasoning="Directly addressed",
                suggested=ReactionAction.REPLY,
            )

        log_llm(f"{agent.name} considering item {item.id}")
        suggestion = await self.generator.generate_reaction(agent, item)
        decision = self.gate(agent, suggestion.action)
        decision.content = suggestion.content if decision.action == suggestion.action else None
        decision.reasoning = " ".join(
            part for part in (suggestion.reasoning, decision.reasoning) if part
        )

        if debug_enabled("DEBUG_PIPELINE"):
            log_deterministic(
                f"{agent.agent_id}: suggested {suggestion.action.value}, "
                f"decided {decision.action.value}"
            )
        return decision

    def gate(self, agent: AgentProfile, suggested: ReactionAction) -> ReactionDecision:
        """Apply the agent's interaction probabilities to a suggested action."""
        patterns = agent.behavior.interaction_patterns
        threshold = {
            ReactionAction.QUOTE: patterns.quote_probability * QUOTE_DAMPENING,
            ReactionAction.REPLY: patterns.reply_probability,
            ReactionAction.LIKE: patterns.like_probability,
        }.get(suggested)

        if threshold is None:
            return ReactionDecision(action=ReactionAction.IGNORE, suggested=suggested)

        # random() is in [0, 1): a probability of 0 never passes, 1 always does.
        if self.rng.random() < threshold:
            return ReactionDecision(action=suggested, suggested=suggested)

        return ReactionDecision(
            action=ReactionAction.IGNORE,
            reasoning=f"(downgraded from {suggested.value} by probability gate)",
            suggested=suggested,
        )
