"""Tests for the send history store and the history and tokens operations."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from pane_orchestrator.agents import AgentType
from pane_orchestrator.envelope import ErrorCode, format_timestamp
from pane_orchestrator.history import HistoryEntry, HistoryStore, HistoryTarget, history, parse_since, tokens

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _entry(prompt: str, *, hours_ago: float = 0, session: str = "proj", pane: str = "1.2",
           agent_type: str = "claude", success: bool = True) -> HistoryEntry:
    return HistoryEntry(
        timestamp=format_timestamp(NOW - timedelta(hours=hours_ago)),
        session=session,
        prompt=prompt,
        targets=[HistoryTarget(pane=pane, agent_type=agent_type)],
        success=success,
    )


@pytest.fixture
def store(tmp_path: Path) -> HistoryStore:
    store = HistoryStore.in_dir(tmp_path / "state")
    store.append(_entry("a" * 40, hours_ago=3))
    store.append(_entry("b" * 80, hours_ago=2, pane="1.4", agent_type="codex"))
    store.append(_entry("c" * 20, hours_ago=1, session="other"))
    store.append(_entry("d" * 400, hours_ago=0.5, success=False))
    return store


class TestHistoryStore:
    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        assert HistoryStore(tmp_path / "none.jsonl").read_all() == []

    def test_append_creates_directories(self, store: HistoryStore) -> None:
        assert store.path.name == "history.jsonl"
        assert len(store.read_all()) == 4

    def test_malformed_lines_skipped(self, store: HistoryStore) -> None:
        with store.path.open("a", encoding="utf-8") as f:
            f.write('{"session": "proj"}\n\n')
        assert len(store.read_all()) == 4


class TestHistory:
    def test_newest_first(self, store: HistoryStore) -> None:
        result = history(store)
        assert result.success
        assert result.total == 4
        assert [e.prompt[0] for e in result.entries] == ["d", "c", "b", "a"]
        assert result.pagination is None

    def test_filters(self, store: HistoryStore) -> None:
        assert history(store, "proj").filtered == 3
        assert [e.prompt[0] for e in history(store, "proj", pane="1.4").entries] == ["b"]
        assert [e.prompt[0] for e in history(store, agent_type=AgentType.CODEX).entries] == ["b"]

    def test_since_timestamp(self, store: HistoryStore) -> None:
        since = format_timestamp(NOW - timedelta(hours=1, minutes=30))
        assert [e.prompt[0] for e in history(store, since=since).entries] == ["d", "c"]

    def test_pagination(self, store: HistoryStore) -> None:
        result = history(store, limit=3, offset=0)
        assert len(result.entries) == 3
        assert result.pagination.has_more
        assert result.agent_hints.next_offset == 3

    def test_invalid_since(self, store: HistoryStore) -> None:
        assert history(store, since="yesterday").error_code == ErrorCode.INVALID_FLAG.value

    def test_negative_limit(self, store: HistoryStore) -> None:
        assert history(store, limit=-1).error_code == ErrorCode.INVALID_FLAG.value


def test_parse_since_duration() -> None:
    assert parse_since("1h", now=NOW) == NOW - timedelta(hours=1)
    assert parse_since("", now=NOW) is None


class TestTokens:
    def test_group_by_agent(self, store: HistoryStore) -> None:
        """Failed sends are not counted; four characters make one token."""
        result = tokens(store, now=NOW)
        assert result.success
        assert result.total_prompts == 3
        assert result.total_tokens == 10 + 20 + 5
        assert [(g.key, g.tokens, g.prompts) for g in result.groups] == [("codex", 20, 1), ("claude", 15, 2)]

    def test_period_and_session(self, store: HistoryStore) -> None:
        result = tokens(store, session="proj", period="150m", group_by="pane", now=NOW)
        assert [(g.key, g.tokens) for g in result.groups] == [("1.4", 20)]

    def test_group_by_day(self, store: HistoryStore) -> None:
        result = tokens(store, group_by="day", now=NOW)
        assert [g.key for g in result.groups] == ["2026-03-10"]

    def test_invalid_group(self, store: HistoryStore) -> None:
        result = tokens(store, group_by="weekday")
        assert result.error_code == ErrorCode.INVALID_FLAG.value
        assert "agent" in result.hint

    def test_invalid_period(self, store: HistoryStore) -> None:
        assert tokens(store, period="forever").error_code == ErrorCode.INVALID_FLAG.value
