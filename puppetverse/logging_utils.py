"""Console logging utilities for the agent runtime.

Color-codes output by where the work happens: pure scheduling/policy
computation, LLM generation, social-network I/O, errors and successes.
"""

import os
from enum import Enum


class Color(Enum):
    """ANSI color codes for terminal output."""

    BLUE = "\033[94m"      # Deterministic work (scheduling, policy, dedup)
    YELLOW = "\033[93m"    # LLM generation
    MAGENTA = "\033[95m"   # Social network calls
    RED = "\033[91m"       # Errors and cooldowns
    GREEN = "\033[92m"     # Published / completed
    CYAN = "\033[96m"      # Info/metadata

    BOLD = "\033[1m"
    RESET = "\033[0m"


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap text in ANSI color codes unless PUPPETVERSE_NO_COLOR is set."""
    if os.getenv("PUPPETVERSE_NO_COLOR"):
        return text

    prefix = color.value
    if bold:
        prefix = Color.BOLD.value + prefix

    return f"{prefix}{text}{Color.RESET.value}"


# Tags prefixed to every line (readable without color)
LOG_TAG_DETERMINISTIC = "[•]"
LOG_TAG_LLM = "[LLM]"
LOG_TAG_NETWORK = "[NET]"
LOG_TAG_ERROR = "[!]"
LOG_TAG_SUCCESS = "[✓]"
LOG_TAG_INFO = "[i]"


def log_deterministic(message: str) -> None:
    print(colored(f"{LOG_TAG_DETERMINISTIC} {message}", Color.BLUE))


def log_llm(message: str) -> None:
    print(colored(f"{LOG_TAG_LLM} {message}", Color.YELLOW))


def log_network(message: str) -> None:
    print(colored(f"{LOG_TAG_NETWORK} {message}", Color.MAGENTA))


def log_error(message: str) -> None:
    print(colored(f"{LOG_TAG_ERROR} {message}", Color.RED))


def log_success(message: str) -> None:
    print(colored(f"{LOG_TAG_SUCCESS} {message}", Color.GREEN))


def log_info(message: str) -> None:
    print(colored(f"{LOG_TAG_INFO} {message}", Color.CYAN))


def debug_enabled(flag: str) -> bool:
    """Return True when a DEBUG_* environment flag is switched on."""
    return os.getenv(flag, "").lower() in ("1", "true", "yes")


def preview(text: str, limit: int = 50) -> str:
    """Shorten text for single-line log output."""
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
