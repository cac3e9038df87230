"""Tests for the console log tags printed by the runtime.

These tests assert that:
- Each log helper prefixes its tag and wraps the line in its color
- PUPPETVERSE_NO_COLOR strips the ANSI codes but keeps the tags
- Posting prints [LLM] for generation and [✓] once published
"""

from __future__ import annotations

import contextlib
import io
import random

import pytest

from puppetverse.collaborators import InMemoryNetwork, TemplateContentGenerator
from puppetverse.logging_utils import (
    Color,
    log_error,
    log_llm,
    log_network,
    log_success,
    preview,
)
from puppetverse.persistence import InMemoryPersistence
from puppetverse.runtime import Runtime
from puppetverse.schemas import AgentProfile


def _capture(fn, *args) -> str:
    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        fn(*args)
    return buf.getvalue()


def test_tags_are_colored(monkeypatch):
    monkeypatch.delenv("PUPPETVERSE_NO_COLOR", raising=False)

    out = _capture(log_llm, "Generating post")

    assert out.startswith(Color.YELLOW.value + "[LLM] Generating post")
    assert out.rstrip("\n").endswith(Color.RESET.value)
    assert Color.MAGENTA.value in _capture(log_network, "Fetching mentions")


def test_no_color_keeps_plain_tags(monkeypatch):
    monkeypatch.setenv("PUPPETVERSE_NO_COLOR", "1")

    assert _capture(log_error, "boom") == "[!] boom\n"
    assert _capture(log_success, "done") == "[✓] done\n"


def test_preview_collapses_whitespace_and_truncates():
    assert preview("hello\n  world") == "hello world"
    assert preview("x" * 60, limit=10) == "xxxxxxx..."


@pytest.mark.asyncio
async def test_post_logs_generation_and_publish(monkeypatch):
    monkeypatch.setenv("PUPPETVERSE_NO_COLOR", "1")
    runtime = Runtime(
        InMemoryNetwork(),
        TemplateContentGenerator(rng=random.Random(1)),
        persistence=InMemoryPersistence(),
        rng=random.Random(1),
        watch_mentions=False,
    )
    await runtime.register_agent(AgentProfile(agent_id="alpha", name="Alpha"))

    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        await runtime.create_post("alpha")
    out = buf.getvalue()

    assert "[LLM] Generating post for Alpha" in out
    assert "[✓] Alpha posted:" in out
