"""Tests for agent definition loading via AgentLoader."""

import json
from pathlib import Path

import pytest

from puppetverse.errors import ConfigurationError
from puppetverse.loader import AgentLoader

TECHIE = {
    "id": "techie",
    "name": "Tech Enthusiast",
    "username": "techie_bot",
    "personality": {"traits": ["curious"], "interests": ["AI"]},
    "style_guide": {"voice": "casual", "tone": "upbeat", "topics_to_avoid": ["politics"]},
    "custom_system_prompt": "Always mention a gadget.",
    "behavior": {
        "post_frequency": {
            "min_hours_between_posts": 2,
            "max_hours_between_posts": 6,
            "peak_posting_hours": [9, 18],
        },
        "interaction_patterns": {
            "reply_probability": 0.4,
            "quote_tweet_probability": 0.2,
            "like_probability": 0.9,
        },
    },
    "initial_memory": {"core_memories": ["I love gadgets"]},
}


def _write(directory: Path, name: str, payload) -> Path:
    path = directory / name
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload))
    return path


def test_parse_maps_definition_fields():
    definition = AgentLoader().parse(TECHIE, source="techie.json")
    profile = definition.profile

    assert profile.agent_id == "techie"
    assert profile.style.voice == "casual"
    assert profile.style.topics_to_avoid == ["politics"]
    assert profile.style.custom_prompt == "Always mention a gadget."
    assert profile.behavior.interaction_patterns.quote_probability == 0.2
    assert profile.behavior.post_frequency.peak_posting_hours == {9, 18}
    assert definition.initial_memory.core_memories == ["I love gadgets"]
    assert definition.source == "techie.json"


def test_parse_defaults_name_and_memory():
    definition = AgentLoader().parse({"id": "minimal"})

    assert definition.profile.name == "minimal"
    assert definition.initial_memory.core_memories == []


def test_missing_id_names_the_source():
    with pytest.raises(ConfigurationError) as excinfo:
        AgentLoader().parse({"name": "Nobody"}, source="nobody.json")

    assert "missing 'id'" in str(excinfo.value)
    assert "nobody.json" in str(excinfo.value)
    assert excinfo.value.source == "nobody.json"


def test_invalid_probability_is_a_configuration_error():
    data = dict(TECHIE, behavior={"interaction_patterns": {"like_probability": 1.5}})

    with pytest.raises(ConfigurationError) as excinfo:
        AgentLoader().parse(data)

    assert "techie" in str(excinfo.value)


def test_load_all_skips_broken_files(tmp_path):
    _write(tmp_path, "a_techie.json", TECHIE)
    _write(tmp_path, "b_broken.json", "{not json")
    _write(tmp_path, "c_no_id.json", {"name": "Anonymous"})
    _write(tmp_path, "notes.txt", "ignored")

    definitions = AgentLoader(tmp_path).load_all()

    assert [d.profile.agent_id for d in definitions] == ["techie"]
    assert definitions[0].source == str(tmp_path / "a_techie.json")


def test_load_all_missing_directory_returns_nothing(tmp_path):
    assert AgentLoader(tmp_path / "missing").load_all() == []


def test_load_file_reports_unreadable_json(tmp_path):
    path = _write(tmp_path, "bad.json", "[1, 2")

    with pytest.raises(ConfigurationError):
        AgentLoader(tmp_path).load_file(path)
