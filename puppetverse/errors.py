"""Exception taxonomy for the agent runtime.

Per-item and per-agent failures are caught at the pipeline, watcher, scheduler
and event-listener boundaries and logged. Only configuration errors are allowed
to reach the caller that is loading agents.
"""

from __future__ import annotations

from typing import Any, Optional


class PuppetverseError(Exception):
    """Base class for all runtime errors."""


class TransientNetworkError(PuppetverseError):
    """A network or provider call failed in a way that may succeed later."""

    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        self.code = code
        super().__init__(message)


class RateLimitError(TransientNetworkError):
    """The social network rejected a call because of rate limiting."""

    def __init__(self, message: str = "Rate limit exceeded", *, code: int = 429) -> None:
        super().__init__(message, code=code)


class NotFoundError(PuppetverseError):
    """An item requested by ID does not exist (deleted, protected, or never existed)."""

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Item not found: {item_id}")


class PublishError(PuppetverseError):
    """Publishing content was rejected by the network."""

    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        self.code = code
        super().__init__(message)


class DuplicateContentError(PublishError):
    """Publish rejected because the content matches a prior post."""

    def __init__(self, content: str, *, code: int = 187) -> None:
        self.content = content
        preview = content if len(content) <= 60 else content[:57] + "..."
        super().__init__(f"Duplicate content rejected: {preview!r}", code=code)


class StreamUnavailableError(PuppetverseError):
    """The publisher cannot open a push stream of mentions (polling is the fallback)."""


class ConfigurationError(PuppetverseError):
    """Missing or invalid agent configuration.

    Fatal for the agent being registered. Other agents keep loading.
    """

    def __init__(self, message: str, *, source: Optional[Any] = None) -> None:
        self.source = source
        if source is not None:
            # Agent definition problems get pointers to the usual culprits.
            message = (
                f"{message} (source: {source})\n\n"
                "Remediation tips:\n"
                "  - Every agent definition needs a non-empty 'id'\n"
                "  - min_hours_between_posts must not exceed max_hours_between_posts\n"
                "  - Probabilities must be within [0, 1]"
            )
        super().__init__(message)


def is_rate_limit(error: BaseException) -> bool:
    """Return True for rate-limit-class errors (HTTP 429 or legacy code 88)."""

    if isinstance(error, RateLimitError):
        return True
    if getattr(error, "code", None) == 429:
        return True
    nested = getattr(error, "errors", None)
    if isinstance(nested, (list, tuple)):
        for entry in nested:
            code = entry.get("code") if isinstance(entry, dict) else getattr(entry, "code", None)
            if code == 88:
                return True
    return False


__all__ = [
    "PuppetverseError",
    "TransientNetworkError",
    "RateLimitError",
    "NotFoundError",
    "PublishError",
    "DuplicateContentError",
    "StreamUnavailableError",
    "ConfigurationError",
    "is_rate_limit",
]
