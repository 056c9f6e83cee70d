"""Tests for pane target selection, routing and interrupts."""

from __future__ import annotations

import pytest

from pane_orchestrator.agents import AgentType
from pane_orchestrator.control.interrupt import interrupt
from pane_orchestrator.control.route import RouteStrategy, Router, parse_strategy, route, score_state
from pane_orchestrator.control.targets import (
    TargetFilter,
    build_filter,
    parse_index_list,
    parse_type_filter,
    resolve_targets,
)
from pane_orchestrator.envelope import ErrorCode
from pane_orchestrator.errors import PaneNotFoundError
from pane_orchestrator.events import get_event_buffer
from pane_orchestrator.state import PaneState

# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------


class TestParsing:
    def test_index_list(self) -> None:
        assert parse_index_list("1, 3,,5") == [1, 3, 5]
        assert parse_index_list("-1") == [-1]
        assert parse_index_list("") == []
        assert parse_index_list(None) == []

    def test_index_list_rejects_words(self) -> None:
        with pytest.raises(ValueError, match="invalid pane index 'two'"):
            parse_index_list("1,two")

    def test_type_filter(self) -> None:
        assert parse_type_filter("cc") is AgentType.CLAUDE
        assert parse_type_filter("Codex") is AgentType.CODEX
        assert parse_type_filter("") is None
        with pytest.raises(ValueError, match="unknown agent type"):
            parse_type_filter("vim")

    def test_build_filter_accepts_lists(self) -> None:
        target = build_filter(agent_type="gmi", panes=[2, 3], exclude="3")
        assert target == TargetFilter(AgentType.GEMINI, (2, 3), (3,), False)


class TestResolveTargets:
    def test_default_is_agent_panes(self, mux, agent_session) -> None:
        assert [p.index for p in resolve_targets(mux, "proj", TargetFilter())] == [2, 3, 4]

    def test_include_user(self, mux, agent_session) -> None:
        assert [p.index for p in resolve_targets(mux, "proj", TargetFilter(include_user=True))] == [1, 2, 3, 4]

    def test_type_filter(self, mux, agent_session) -> None:
        assert [p.index for p in resolve_targets(mux, "proj", build_filter(agent_type="cc"))] == [2, 3]

    def test_indices_win_over_type(self, mux, agent_session) -> None:
        target = build_filter(agent_type="cc", panes="1,4")
        assert [p.index for p in resolve_targets(mux, "proj", target)] == [1, 4]

    def test_exclude(self, mux, agent_session) -> None:
        assert [p.index for p in resolve_targets(mux, "proj", build_filter(exclude="3"))] == [2, 4]

    def test_unknown_index(self, mux, agent_session) -> None:
        with pytest.raises(PaneNotFoundError):
            resolve_targets(mux, "proj", build_filter(panes="7"))

    def test_default_skips_control_shell(self, mux) -> None:
        mux.add_session("ops", ["zsh", "ops__cc_1"])
        assert [p.index for p in resolve_targets(mux, "ops", TargetFilter())] == [2]

    def test_explicit_index_reaches_control_pane(self, mux) -> None:
        mux.add_session("ops", ["zsh", "ops__cc_1"])
        assert [p.index for p in resolve_targets(mux, "ops", build_filter(panes="1"))] == [1]

    def test_user_type_reaches_user_pane(self, mux, agent_session) -> None:
        assert [p.index for p in resolve_targets(mux, "proj", build_filter(agent_type="user"))] == [1]


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class TestRoute:
    def test_scores(self) -> None:
        assert score_state(PaneState.IDLE) == (1.0, None)
        assert score_state(PaneState.ACTIVE) == (0.5, None)
        assert score_state(PaneState.UNKNOWN) == (0.25, None)
        assert score_state(PaneState.RATE_LIMITED) == (0.0, "pane is rate_limited")

    def test_parse_strategy(self) -> None:
        assert parse_strategy("") is RouteStrategy.LEAST_LOADED
        with pytest.raises(ValueError):
            parse_strategy("random")

    def test_least_loaded_prefers_lowest_index_on_ties(self, mux, agent_session) -> None:
        result = route(mux, "proj", router=Router())
        assert result.success
        assert result.selected.pane == "1.2"
        assert [c.state for c in result.candidates] == ["idle", "active", "idle"]

    def test_least_loaded_skips_busy_and_limited(self, mux, agent_session) -> None:
        mux.set_output(agent_session[1], "Error: rate limit exceeded\n")
        result = route(mux, "proj", router=Router())
        assert result.selected.pane == "1.4"
        limited = result.candidates[0]
        assert limited.excluded
        assert limited.exclude_reason == "pane is rate_limited"

    def test_first_available_needs_idle(self, mux, agent_session) -> None:
        result = route(mux, "proj", strategy="first-available", target=build_filter(panes="3"), router=Router())
        assert not result.success
        assert result.error_code == ErrorCode.RESOURCE_BUSY.value

    def test_round_robin_cycles(self, mux, agent_session) -> None:
        router = Router()
        picks = [route(mux, "proj", strategy="round-robin", router=router).selected.pane for _ in range(4)]
        assert picks == ["1.2", "1.3", "1.4", "1.2"]

    def test_invalid_strategy(self, mux, agent_session) -> None:
        assert route(mux, "proj", strategy="random").error_code == ErrorCode.INVALID_FLAG.value


# ---------------------------------------------------------------------------
# Interrupt
# ---------------------------------------------------------------------------


class TestInterrupt:
    def test_interrupts_agent_panes(self, mux, agent_session) -> None:
        result = interrupt(mux, "proj")
        assert result.success
        assert result.interrupted == ["1.2", "1.3", "1.4"]
        assert mux.keys() == ["C-c", "C-c", "C-c"]
        assert [c.kind for c in get_event_buffer().since(None)] == ["interrupt"] * 3

    def test_follow_up_message(self, mux, agent_session) -> None:
        result = interrupt(mux, "proj", target=build_filter(panes="3"), message="stop and summarize", settle=0)
        assert result.message_sent == ["1.3"]
        assert result.message_preview == "stop and summarize"
        assert mux.sent_text(agent_session[2]) == ["stop and summarize"]

    def test_dry_run(self, mux, agent_session) -> None:
        result = interrupt(mux, "proj", target=build_filter(agent_type="cod"), dry_run=True)
        assert result.would_interrupt == ["1.4"]
        assert mux.keys() == []

    def test_failures_are_reported(self, mux, agent_session) -> None:
        mux.fail_on.add("send_key")
        result = interrupt(mux, "proj")
        assert not result.success
        assert [f.pane for f in result.failed] == ["1.2", "1.3", "1.4"]

    def test_no_match(self, mux, agent_session) -> None:
        result = interrupt(mux, "proj", target=build_filter(agent_type="gmi"))
        assert result.error_code == ErrorCode.INVALID_FLAG.value
