"""Tests for agent type detection, aliases, models and agent names."""

from __future__ import annotations

import pytest

from pane_orchestrator.agents import (
    NATO_ALPHABET,
    AgentNameMap,
    AgentType,
    context_limit,
    detect_model,
    detect_type,
    detect_type_from_content,
    pane_title,
    resolve_agent_type,
)


class TestDetectType:
    @pytest.mark.parametrize(
        "title, expected",
        [
            ("proj__cc_1", AgentType.CLAUDE),
            ("proj__cod_2", AgentType.CODEX),
            ("proj__gmi_1", AgentType.GEMINI),
            ("proj__user", AgentType.USER),
            ("Claude session", AgentType.CLAUDE),
            ("my-codex-pane", AgentType.CODEX),
            ("aider", AgentType.AIDER),
        ],
    )
    def test_titles(self, title: str, expected: AgentType) -> None:
        assert detect_type(title) is expected

    @pytest.mark.parametrize("title", ["success_test", "decode_pane", "vim", ""])
    def test_short_forms_need_word_boundaries(self, title: str) -> None:
        """Short forms embedded in other words do not match."""
        assert detect_type(title) is AgentType.UNKNOWN

    def test_detect_from_banner(self) -> None:
        assert detect_type_from_content(["Welcome to Claude Code"]) is AgentType.CLAUDE
        assert detect_type_from_content(["plain shell output"]) is AgentType.UNKNOWN


class TestResolveAgentType:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("claude", AgentType.CLAUDE),
            ("cc", AgentType.CLAUDE),
            ("Claude-Code", AgentType.CLAUDE),
            ("cod", AgentType.CODEX),
            ("gmi", AgentType.GEMINI),
            (" gemini ", AgentType.GEMINI),
            ("user", AgentType.USER),
        ],
    )
    def test_known_names(self, name: str, expected: AgentType) -> None:
        assert resolve_agent_type(name) is expected

    def test_unknown_name(self) -> None:
        assert resolve_agent_type("emacs") is None


class TestAgentTypeProperties:
    def test_is_agent(self) -> None:
        assert AgentType.CLAUDE.is_agent
        assert not AgentType.USER.is_agent
        assert not AgentType.UNKNOWN.is_agent

    def test_short_forms(self) -> None:
        assert AgentType.CLAUDE.short == "cc"
        assert AgentType.CODEX.short == "cod"
        assert AgentType.UNKNOWN.short == "unknown"


def test_pane_title() -> None:
    """Titles follow {session}__{short}_{n}; the user pane has no ordinal."""
    assert pane_title("proj", AgentType.CLAUDE, 2) == "proj__cc_2"
    assert pane_title("proj", AgentType.USER) == "proj__user"
    assert detect_type(pane_title("proj", AgentType.GEMINI, 1)) is AgentType.GEMINI


class TestModels:
    def test_model_from_title(self) -> None:
        assert detect_model(AgentType.CLAUDE, "proj__cc_1 opus") == "opus"

    def test_model_default_per_type(self) -> None:
        assert detect_model(AgentType.CLAUDE, "proj__cc_1") == "sonnet"
        assert detect_model(AgentType.CODEX, "proj__cod_1") == "gpt4"

    def test_context_limits(self) -> None:
        assert context_limit("sonnet") == 200_000
        assert context_limit("gemini") == 1_000_000
        assert context_limit("mystery") == 128_000


class TestAgentNameMap:
    def test_custom_names_first(self) -> None:
        names = AgentNameMap("proj", ["reviewer", " ", "builder"])
        assert names.assign_new(AgentType.CLAUDE, "1.2") == "reviewer"
        assert names.assign_new(AgentType.CLAUDE, "1.3") == "builder"
        assert names.assign_new(AgentType.CODEX, "1.4") == "codex-alpha"

    def test_lookup_both_ways(self) -> None:
        names = AgentNameMap("proj")
        name = names.assign_new(AgentType.GEMINI, "1.5")
        assert name == "gemini-alpha"
        assert names.pane_for(name) == "1.5"
        assert names.name_for("1.5") == name
        assert names.pane_for("nobody") is None

    def test_alphabet_wraps_with_cycle_suffix(self) -> None:
        names = AgentNameMap("proj")
        assigned = [names.assign_new(AgentType.CLAUDE, f"1.{i}") for i in range(len(NATO_ALPHABET) + 1)]
        assert assigned[-2] == "claude-zulu"
        assert assigned[-1] == "claude-alpha-2"
        assert len(set(assigned)) == len(assigned)
