"""Tests for the per-pane read views."""

from __future__ import annotations

import pytest

from pane_orchestrator.agents import AgentType
from pane_orchestrator.envelope import ErrorCode
from pane_orchestrator.inspection import (
    activity,
    bead_mention_pattern,
    context,
    find_code_blocks,
    find_mentions,
    inspect_pane,
    tail,
    watch_bead,
)
from pane_orchestrator.tools.backlog import BeadInfo

from conftest import CLAUDE_IDLE, FakeBacklog

NOW = 1_700_000_000.0
RATE_LIMITED = "Error: rate limit exceeded, retry in 30 seconds\n"


# ---------------------------------------------------------------------------
# tail
# ---------------------------------------------------------------------------


class TestTail:
    def test_agent_panes(self, mux, agent_session) -> None:
        result = tail(mux, "proj", panes=[2, 3, 4])
        assert result.success
        assert [(t.pane, t.state) for t in result.panes] == [("1.2", "idle"), ("1.3", "active"), ("1.4", "idle")]
        assert result.panes[0].lines == ["Claude Code v2.0", "", "> "]
        hints = result.agent_hints
        assert hints.idle_agents == ["1.2", "1.4"]
        assert hints.active_agents == ["1.3"]
        assert hints.notes == [
            "2 idle agents available for parallel work",
            "1 agents actively working - wait or check progress",
        ]

    def test_truncated_flag(self, mux, agent_session) -> None:
        result = tail(mux, "proj", lines=3, panes=[2])
        assert result.panes[0].truncated

    def test_capture_failure_stays_on_pane(self, mux, agent_session) -> None:
        mux.fail_on.add("capture")
        result = tail(mux, "proj", panes=[2])
        assert result.success
        assert result.panes[0].error == "capture failed"

    def test_invalid_lines(self, mux, agent_session) -> None:
        assert tail(mux, "proj", lines=0).error_code == ErrorCode.INVALID_FLAG.value

    def test_unknown_pane(self, mux, agent_session) -> None:
        assert tail(mux, "proj", panes=[9]).error_code == ErrorCode.PANE_NOT_FOUND.value


# ---------------------------------------------------------------------------
# watch-bead
# ---------------------------------------------------------------------------


class TestWatchBead:
    def test_mention_pattern_is_whole_word(self) -> None:
        pattern = bead_mention_pattern(" bd-1 ")
        lines = ["Working on bd-1 now", "bd-12 is separate", "xbd-1", "closing BD-1."]
        assert find_mentions(lines, pattern) == [(1, "Working on bd-1 now"), (4, "closing BD-1.")]

    def test_mentions_across_panes(self, mux, agent_session) -> None:
        mux.set_output(agent_session[0], "echo bd-1\n")
        mux.set_output(agent_session[3], "bd-1 done\n")
        mux.set_output(agent_session[1], "Starting bd-1\nstill on bd-1\n")
        result = watch_bead(mux, "proj", "bd-1")
        assert result.success
        assert [(m.pane, m.line_num) for m in result.mentions] == [("1.2", 1), ("1.2", 2), ("1.4", 1)]
        assert result.panes_scanned == 3
        assert result.mentions[2].agent_type == "codex"

    def test_repeat_polls_do_not_duplicate(self, mux, agent_session) -> None:
        mux.set_output(agent_session[1], "Starting bd-1\n")
        result = watch_bead(mux, "proj", "bd-1", panes=[2], interval="10ms", count=3)
        assert result.polls == 3
        assert len(result.mentions) == 1

    def test_bead_status(self, mux, agent_session) -> None:
        backlog = FakeBacklog(beads={"bd-1": BeadInfo(id="bd-1", status="in_progress")})
        assert watch_bead(mux, "proj", "bd-1", backlog=backlog).bead_status == "in_progress"

    def test_status_error_is_reported(self, mux, agent_session, backlog) -> None:
        result = watch_bead(mux, "proj", "bd-1", backlog=backlog)
        assert result.success
        assert result.bead_status == "unknown"
        assert "not found" in result.status_error

    @pytest.mark.parametrize("kwargs", [{"bead_id": " "}, {"bead_id": "bd-1", "interval": "soon"},
                                        {"bead_id": "bd-1", "count": 0}])
    def test_invalid_flags(self, mux, agent_session, kwargs: dict) -> None:
        assert watch_bead(mux, "proj", **kwargs).error_code == ErrorCode.INVALID_FLAG.value


# ---------------------------------------------------------------------------
# inspect-pane
# ---------------------------------------------------------------------------


class TestInspectPane:
    def test_code_blocks(self) -> None:
        lines = ["intro", "```python", "x = 1", "```", "```", "unclosed"]
        blocks = find_code_blocks(lines)
        assert [(b.language, b.line_start, b.line_end) for b in blocks] == [("python", 2, 4), (None, 5, 6)]

    def test_idle_claude_pane(self, mux, agent_session) -> None:
        result = inspect_pane(mux, "proj", 2, include_code=True)
        assert result.success
        assert result.pane == "1.2"
        assert result.pane_id == "%1"
        assert (result.agent.type, result.agent.model, result.agent.state) == ("claude", "sonnet", "idle")
        assert result.agent.process_running
        assert result.output.lines == 3
        assert result.output.code_blocks == []
        assert result.context.usage_level == "Low"

    def test_code_blocks_off_by_default(self, mux, agent_session) -> None:
        assert inspect_pane(mux, "proj", 2).output.code_blocks is None

    def test_rate_limited(self, mux, agent_session) -> None:
        mux.set_output(agent_session[2], RATE_LIMITED)
        result = inspect_pane(mux, "proj", 3)
        assert result.context.rate_limited
        assert result.context.wait_seconds == 30

    def test_capture_failure(self, mux, agent_session) -> None:
        mux.fail_on.add("capture")
        assert inspect_pane(mux, "proj", 2).error_code == ErrorCode.INTERNAL_ERROR.value

    def test_unknown_pane(self, mux, agent_session) -> None:
        assert inspect_pane(mux, "proj", 8).error_code == ErrorCode.PANE_NOT_FOUND.value


# ---------------------------------------------------------------------------
# context and activity
# ---------------------------------------------------------------------------


class TestContext:
    def test_low_usage(self, mux, agent_session) -> None:
        result = context(mux, "proj")
        assert [a.pane for a in result.agents] == ["1.2", "1.3", "1.4"]
        assert result.summary.avg_usage == 6.0
        assert result.summary.high_usage_count == 0
        assert result.agent_hints.summary == "All agents healthy - context usage is low across the board"

    def test_high_usage_warning(self, mux, agent_session) -> None:
        mux.set_output(agent_session[3], "› \n  ? for shortcuts   10% context left\n")
        result = context(mux, "proj")
        assert result.summary.high_usage_count == 1
        assert result.agent_hints.notes == [
            "1 agent(s) have high context usage",
            "2 agent(s) have room for additional work",
        ]
        assert result.agent_hints.warnings == ["pane 1.4 is above 70% context usage"]

    def test_missing_session(self, mux) -> None:
        assert context(mux, "ghost").error_code == ErrorCode.SESSION_NOT_FOUND.value


class TestActivity:
    def test_states(self, mux, agent_session) -> None:
        result = activity(mux, "proj", now=NOW)
        assert result.summary.by_state == {"idle": 2, "active": 1}
        assert result.agents[0].activity is None
        assert result.agent_hints.summary == "2 available, 1 busy, 0 need attention"

    def test_stalled_pane_needs_attention(self, mux) -> None:
        ref = mux.add_session("old", ["old__cc_1"], last_activity=int(NOW) - 500)[0]
        mux.set_output(ref, CLAUDE_IDLE)
        result = activity(mux, "old", now=NOW)
        assert result.agents[0].activity == "stalled"
        assert result.agents[0].seconds_since_output == 500
        assert result.agent_hints.warnings == ["pane 1.1 needs attention"]

    def test_type_filter(self, mux, agent_session) -> None:
        result = activity(mux, "proj", agent_type=AgentType.CODEX, now=NOW)
        assert [a.pane for a in result.agents] == ["1.4"]
