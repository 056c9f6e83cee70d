"""Tests for the command catalog and the built-in docs."""

from __future__ import annotations

import pytest

from pane_orchestrator import __version__
from pane_orchestrator.catalog import (
    CATEGORY_ORDER,
    COMMANDS,
    Command,
    Param,
    capabilities,
    find_command,
    sorted_commands,
)
from pane_orchestrator.cli import HANDLERS
from pane_orchestrator.docs import EXIT_CODES, TOPICS, docs
from pane_orchestrator.envelope import ErrorCode


class TestCatalog:
    def test_names_are_unique(self) -> None:
        names = [command.name for command in COMMANDS]
        assert len(names) == len(set(names))

    def test_every_command_has_a_handler(self) -> None:
        assert set(HANDLERS) == {command.name for command in COMMANDS}

    def test_sorted_by_category_then_name(self) -> None:
        ordered = sorted_commands()
        assert ordered[0].name == "activity"
        assert ordered[-1].name == "version"
        categories = [command.category for command in ordered]
        assert categories == sorted(categories, key=CATEGORY_ORDER.index)

    def test_flags(self) -> None:
        send = find_command("send")
        assert send is not None
        assert send.flag == "paneorch send"
        flags = {p.name: p.flag for p in send.params}
        assert flags["session"] == "<session>"
        assert flags["dry-run"] == "--dry-run"
        assert Param("dry-run").dest == "dry_run"

    def test_find_unknown(self) -> None:
        assert find_command("teleport") is None

    def test_invalid_definitions(self) -> None:
        with pytest.raises(ValueError, match="unknown parameter type"):
            Param("x", "date")
        with pytest.raises(ValueError, match="unknown category"):
            Command("x", "misc", "nothing")


class TestCapabilities:
    def test_output(self) -> None:
        result = capabilities()
        assert result.success
        assert result.tool_version == __version__
        assert result.categories == list(CATEGORY_ORDER)
        assert len(result.commands) == len(COMMANDS)
        assert result.meta.command == "capabilities"

    def test_parameters_listed(self) -> None:
        wait = next(c for c in capabilities().commands if c.name == "wait")
        until = next(p for p in wait.parameters if p.name == "until")
        assert (until.flag, until.type, until.default) == ("--until", "string", "idle")
        assert wait.examples == ["paneorch wait proj --until idle --timeout 10m"]

    def test_dict_uses_aliases(self) -> None:
        payload = capabilities().to_dict()
        assert list(payload)[0] == "success"
        assert payload["_meta"]["command"] == "capabilities"


class TestDocs:
    def test_index(self) -> None:
        result = docs()
        assert result.success
        assert result.topic == ""
        assert [t.name for t in result.topics] == list(TOPICS)
        assert result.content is None

    @pytest.mark.parametrize("topic", list(TOPICS))
    def test_every_topic_has_content(self, topic: str) -> None:
        result = docs(topic)
        assert result.success
        assert result.content is not None
        assert result.content.title

    def test_topic_is_normalized(self) -> None:
        assert docs(" Exit-Codes ").topic == "exit-codes"

    def test_exit_codes(self) -> None:
        codes = docs("exit-codes").content.exit_codes
        assert codes == list(EXIT_CODES)
        assert [c.code for c in codes][:3] == [0, 1, 2]

    def test_commands_grouped(self) -> None:
        sections = docs("commands").content.sections
        assert [s.heading for s in sections] == list(CATEGORY_ORDER)
        assert "terse: One-line state per session" in sections[0].body

    def test_unknown_topic(self) -> None:
        result = docs("tutorial")
        assert result.error_code == ErrorCode.INVALID_FLAG.value
        assert "quickstart" in result.hint
        assert result.topics
