"""Per-agent cooldown after consecutive social-network errors."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .errors import is_rate_limit
from .logging_utils import log_error, log_info
from .schemas import utc_now

# Minutes of cooldown by consecutive error count (1st, 2nd, ...), capped at the last.
COOLDOWN_SCHEDULE_MINUTES = (1, 5, 15, 30, 60)
RATE_LIMIT_FLOOR_MINUTES = 15


class ApiErrorBackoff:
    """Tracks consecutive API errors per agent and the cooldown they impose.

    A success resets the counter. Rate-limit errors never cool down for less
    than RATE_LIMIT_FLOOR_MINUTES, whatever the count.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utc_now
        self._errors: Dict[str, int] = {}
        self._cooldown_until: Dict[str, datetime] = {}

    def on_error(self, agent_id: str, error: BaseException) -> timedelta:
        count = self._errors.get(agent_id, 0) + 1
        self._errors[agent_id] = count

        index = min(count, len(COOLDOWN_SCHEDULE_MINUTES)) - 1
        minutes = COOLDOWN_SCHEDULE_MINUTES[index]
        rate_limited = is_rate_limit(error)
        if rate_limited:
            minutes = max(minutes, RATE_LIMIT_FLOOR_MINUTES)

        cooldown = timedelta(minutes=minutes)
        self._cooldown_until[agent_id] = self.clock() + cooldown
        kind = "rate limit" if rate_limited else "API error"
        log_error(
            f"{agent_id}: {kind} #{count} ({error}); cooling down for {minutes} min"
        )
        return cooldown

    def on_success(self, agent_id: str) -> None:
        if self._errors.pop(agent_id, 0):
            log_info(f"{agent_id}: API calls healthy again, error count reset")
        self._cooldown_until.pop(agent_id, None)

    def in_cooldown(self, agent_id: str, now: Optional[datetime] = None) -> bool:
        until = self._cooldown_until.get(agent_id)
        if until is None:
            return False
        return (now or self.clock()) < until

    def cooldown_remaining(self, agent_id: str, now: Optional[datetime] = None) -> timedelta:
        until = self._cooldown_until.get(agent_id)
        if until is None:
            return timedelta(0)
        return max(until - (now or self.clock()), timedelta(0))

    def error_count(self, agent_id: str) -> int:
        return self._errors.get(agent_id, 0)
