"""Capability mode policies."""

import pytest

from errors import ValidationError
from modes import (
    AGENT, ASK, CODE, DEBUG, EFFECT_FILE_CREATE, EFFECT_FILE_DELETE, EFFECT_READ,
    EFFECT_TERMINAL, MODES, SHELL, get_mode, mode_names,
)


def test_lookup_is_case_insensitive():
    assert get_mode("Agent") is AGENT
    assert get_mode(" code ") is CODE


def test_unknown_mode_is_a_validation_error():
    with pytest.raises(ValidationError):
        get_mode("turbo")
    with pytest.raises(ValidationError):
        get_mode("")


def test_ask_is_read_only():
    assert ASK.allows_tool("readFile")
    assert not ASK.allows_tool("createFile")
    assert ASK.allows_effect(EFFECT_READ)
    assert not ASK.allows_effect(EFFECT_TERMINAL)


def test_agent_allows_everything_and_is_autonomous():
    assert AGENT.allows_tool("anything")
    assert AGENT.allows_effect(EFFECT_FILE_DELETE)
    assert AGENT.autonomous
    assert not any(m.autonomous for m in MODES.values() if m is not AGENT)


def test_debug_and_shell_limits():
    assert DEBUG.allows_tool("runTests")
    assert not DEBUG.allows_effect(EFFECT_FILE_CREATE)
    assert SHELL.allows_effect(EFFECT_FILE_CREATE)
    assert not SHELL.allows_tool("deleteFile")


def test_to_dict_and_names():
    assert mode_names() == ["ask", "code", "debug", "architect", "agent", "shell"]
    data = ASK.to_dict()
    assert data["allowed_tools"] == ["analyzeProject", "readFile", "searchCodebase"]
    assert AGENT.to_dict()["allowed_effects"] == "all"
