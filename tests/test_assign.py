"""Tests for work-selection strategies, prompt templates and bulk assignment."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from pane_orchestrator.assign.bulk import allocate, bulk_assign, parse_allocation, parse_skip_panes
from pane_orchestrator.assign.strategies import (
    AssignStrategy,
    WorkItem,
    build_candidates,
    needs_in_progress,
    parse_strategy,
    select_items,
)
from pane_orchestrator.assign.template import (
    DEFAULT_TEMPLATE,
    TemplateError,
    load_template,
    render_template,
    validate_template,
)
from pane_orchestrator.envelope import ErrorCode, code_for_exception
from pane_orchestrator.errors import PaneOrchestratorError, ToolError
from pane_orchestrator.events import get_event_buffer
from pane_orchestrator.mux import resolve_session_panes
from pane_orchestrator.tools.backlog import BeadInfo, BeadInProgress

from conftest import FakeBacklog, triage_payload


@pytest.fixture
def candidates():
    triage = triage_payload(
        {"id": "r1", "type": "bug", "status": "ready", "priority": 2},
        {"id": "r2", "type": "task", "status": "open", "priority": 1},
        {"id": "x", "type": "bug", "status": "blocked", "priority": 0},
        blockers=[
            {"id": "b1", "unblocks_count": 1},
            {"id": "b2", "unblocks_count": 3},
            {"id": "b3", "unblocks_count": 3, "actionable": False},
        ],
    )
    in_progress = [
        BeadInProgress(id="s1", updated_at=datetime(2026, 1, 2)),
        BeadInProgress(id="s2", updated_at=datetime(2026, 1, 1, tzinfo=timezone.utc)),
        BeadInProgress(id="s3"),
    ]
    return build_candidates(triage, in_progress)


def _ids(items: list[WorkItem]) -> list[str]:
    return [item.id for item in items]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class TestStrategies:
    def test_parse_aliases(self) -> None:
        assert parse_strategy(None) is AssignStrategy.IMPACT
        assert parse_strategy("topn") is AssignStrategy.TOP_N
        assert parse_strategy("Dependency") is AssignStrategy.DEPENDENCY_AWARE
        with pytest.raises(ValueError, match="unknown assignment strategy"):
            parse_strategy("lottery")

    def test_impact_orders_by_unblocks_then_id(self, candidates) -> None:
        assert _ids(select_items("impact", candidates)) == ["b2", "b3", "b1"]

    def test_ready_only_ready_or_open(self, candidates) -> None:
        assert _ids(select_items(AssignStrategy.READY, candidates)) == ["r2", "r1"]

    def test_stale_oldest_first_missing_last(self, candidates) -> None:
        """Naive timestamps are read as UTC."""
        assert _ids(select_items("stale", candidates)) == ["s2", "s1", "s3"]

    def test_balanced_round_robin(self, candidates) -> None:
        assert _ids(select_items("balanced", candidates)) == ["b2", "r2", "s2", "b3", "r1", "s1", "b1", "s3"]

    def test_diverse_one_per_type_first(self, candidates) -> None:
        assert _ids(select_items("diverse", candidates)) == ["r1", "r2", "x"]

    def test_dependency_aware_skips_blocked_blockers(self, candidates) -> None:
        assert _ids(select_items("dependency-aware", candidates)) == ["b1", "b2", "r1", "r2", "x"]

    @pytest.mark.parametrize("strategy", ["top-n", "skill-matched"])
    def test_score_order(self, candidates, strategy: str) -> None:
        assert _ids(select_items(strategy, candidates)) == ["r1", "r2", "x"]

    def test_needs_in_progress(self) -> None:
        assert needs_in_progress("stale")
        assert needs_in_progress("balanced")
        assert not needs_in_progress("impact")

    def test_empty_triage(self) -> None:
        assert select_items("balanced", build_candidates(None)) == []

    def test_work_item_needs_id(self) -> None:
        with pytest.raises(ValueError):
            WorkItem(id="")

    def test_blocker_keeps_bead_type(self) -> None:
        triage = triage_payload(
            {"id": "r1", "type": "bug"},
            blockers=[{"id": "b1", "type": "feature", "unblocks_count": 2}, {"id": "r1", "unblocks_count": 1},
                      {"id": "b9"}],
        )
        types = {item.id: item.bead_type for item in build_candidates(triage).impact}
        assert types == {"b1": "feature", "r1": "bug", "b9": ""}


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


class TestTemplate:
    def test_render_defaults(self) -> None:
        prompt = render_template(DEFAULT_TEMPLATE, bead_id="bd-1", bead_title="Fix login")
        assert prompt.startswith("Work on bead bd-1: Fix login\nType: unknown. Depends on: none.")

    def test_render_all_variables(self) -> None:
        prompt = render_template("{session}:{pane} {bead_type} [{bead_deps}]", bead_id="bd-1", bead_type="bug",
                                 bead_deps=["bd-2", "bd-3"], session="proj", pane=2)
        assert prompt == "proj:2 bug [bd-2, bd-3]"

    def test_unknown_variable(self) -> None:
        with pytest.raises(TemplateError, match="unknown template variable"):
            validate_template("Do {bead_id} for {owner}")

    def test_empty_template(self) -> None:
        with pytest.raises(TemplateError, match="empty"):
            validate_template("   ")

    def test_template_error_hierarchy(self) -> None:
        with pytest.raises(PaneOrchestratorError) as info:
            validate_template("{owner}")
        assert isinstance(info.value, ValueError)
        assert code_for_exception(info.value) == ErrorCode.INVALID_FLAG

    def test_load_sources(self, tmp_path: Path) -> None:
        path = tmp_path / "prompt.txt"
        path.write_text("Take {bead_id}", encoding="utf-8")
        assert load_template(path) == "Take {bead_id}"
        assert load_template(path, text="Inline {bead_id}") == "Inline {bead_id}"
        assert load_template() == DEFAULT_TEMPLATE
        with pytest.raises(TemplateError, match="cannot read template"):
            load_template(tmp_path / "missing.txt")


# ---------------------------------------------------------------------------
# Planning helpers
# ---------------------------------------------------------------------------


class TestPlanning:
    def test_parse_skip_panes(self) -> None:
        assert parse_skip_panes("1,,-2 ") == [1, -2]
        assert parse_skip_panes(None) == []
        with pytest.raises(ValueError, match="invalid skip pane"):
            parse_skip_panes("2,b")

    def test_parse_allocation(self) -> None:
        assert parse_allocation('{"3": " bd-2 ", "2": "bd-1"}') == {3: "bd-2", 2: "bd-1"}

    @pytest.mark.parametrize("text", ['["bd-1"]', '{"a": "bd-1"}', '{"2": ""}', "{"])
    def test_parse_allocation_invalid(self, text: str) -> None:
        with pytest.raises(ValueError):
            parse_allocation(text)

    def test_allocate_reports_residue(self, mux, agent_session) -> None:
        panes = resolve_session_panes(mux, "proj", include_user=False)
        plan = allocate(list(reversed(panes)), [WorkItem(id="a"), WorkItem(id="b")])
        assert [(pane.index, item.id) for pane, item in plan.pairs] == [(2, "a"), (3, "b")]
        assert plan.unassigned_panes == (4,)
        assert plan.unassigned_beads == ()


# ---------------------------------------------------------------------------
# Bulk assignment
# ---------------------------------------------------------------------------


class TestBulkAssign:
    def test_top_n_sends_in_pane_order(self, mux, agent_session, backlog) -> None:
        result = bulk_assign(mux, "proj", backlog=backlog, strategy="top-n")
        assert result.success
        assert result.strategy == "top-n"
        assert [(a.pane, a.bead_id, a.status) for a in result.assignments] == [
            ("1.2", "bd-1", "sent"),
            ("1.3", "bd-2", "sent"),
            ("1.4", "bd-3", "sent"),
        ]
        assert mux.sent_text()[0].startswith("Work on bead bd-1: Fix login")
        assert result.summary.sent == 3
        assert [c.kind for c in get_event_buffer().since(None)] == ["assign"] * 3

    def test_dry_run_only_plans(self, mux, agent_session, backlog) -> None:
        result = bulk_assign(mux, "proj", backlog=backlog, strategy="top-n", dry_run=True)
        assert result.dry_run
        assert result.summary.planned == 3
        assert all(a.prompt for a in result.assignments)
        assert mux.sent_text() == []

    def test_skip_panes_leaves_beads_over(self, mux, agent_session, backlog) -> None:
        result = bulk_assign(mux, "proj", backlog=backlog, strategy="top-n", skip_panes="3")
        assert [a.pane for a in result.assignments] == ["1.2", "1.4"]
        assert result.unassigned_beads == ["bd-3"]
        assert result.agent_hints.summary == "2 assignment(s), 1 bead(s) left over"

    def test_control_shell_gets_no_work(self, mux) -> None:
        mux.add_session("ops", ["zsh", "ops__cc_1"])
        backlog = FakeBacklog(triage_payload(
            {"id": "bd-1", "title": "Fix login", "status": "ready", "priority": 1},
            {"id": "bd-2", "title": "Add metrics", "status": "ready", "priority": 2},
        ))
        result = bulk_assign(mux, "ops", backlog=backlog, strategy="ready")
        assert [(a.pane, a.bead_id) for a in result.assignments] == [("1.2", "bd-1")]
        assert result.unassigned_beads == ["bd-2"]
        assert mux.sent_text("ops:1.1") == []

    def test_more_panes_than_beads(self, mux, agent_session) -> None:
        backlog = FakeBacklog(triage_payload({"id": "bd-7", "title": "Only one"}))
        result = bulk_assign(mux, "proj", backlog=backlog, strategy="top-n")
        assert result.unassigned_panes == [3, 4]
        assert result.summary.unassigned_panes == 2

    def test_default_strategy_is_impact(self, mux, agent_session, backlog) -> None:
        result = bulk_assign(mux, "proj", backlog=backlog)
        assert result.strategy == "impact"
        assert result.assignments == []

    def test_claim(self, mux, agent_session, backlog) -> None:
        backlog.fail_claims.add("bd-2")
        result = bulk_assign(mux, "proj", backlog=backlog, strategy="top-n", claim=True)
        assert backlog.claimed == ["bd-1", "bd-3"]
        failed = result.assignments[1]
        assert failed.status == "failed"
        assert failed.error.startswith("claim:")
        assert mux.sent_text(agent_session[2]) == []
        assert result.agent_hints.warnings == [f"1.3: {failed.error}"]

    def test_send_failures_stay_per_entry(self, mux, agent_session, backlog) -> None:
        mux.fail_on.add("send_keys")
        result = bulk_assign(mux, "proj", backlog=backlog, strategy="top-n")
        assert result.success
        assert result.summary.failed == 3

    def test_cancel_keeps_sent_entries(self, mux, agent_session, backlog, monkeypatch: pytest.MonkeyPatch) -> None:
        cancel = threading.Event()
        send_keys = mux.send_keys

        def send_then_cancel(ref, text, *, enter=False):
            send_keys(ref, text, enter=enter)
            cancel.set()

        monkeypatch.setattr(mux, "send_keys", send_then_cancel)
        result = bulk_assign(mux, "proj", backlog=backlog, strategy="top-n", cancel=cancel)
        assert not result.success
        assert result.error_code == ErrorCode.INTERNAL_ERROR.value
        assert [(a.pane, a.status) for a in result.assignments] == [
            ("1.2", "sent"),
            ("1.3", "cancelled"),
            ("1.4", "cancelled"),
        ]
        assert (result.summary.sent, result.summary.cancelled) == (1, 2)
        assert len(mux.sent_text()) == 1

    def test_explicit_allocation(self, mux, agent_session) -> None:
        backlog = FakeBacklog(beads={"bd-9": BeadInfo.model_validate(
            {"id": "bd-9", "title": "Refactor", "type": "chore", "dependencies": ["bd-1"]})})
        result = bulk_assign(mux, "proj", backlog=backlog, allocation='{"4": "bd-9", "7": "bd-1", "2": "bd-404"}')
        assert result.strategy == "explicit"
        by_pane = {a.pane_index: a for a in result.assignments}
        assert by_pane[4].status == "sent"
        assert by_pane[4].bead_type == "chore"
        assert "Depends on: bd-1." in mux.sent_text(agent_session[3])[0]
        assert by_pane[7].error == "pane 7 is not an assignable agent pane"
        assert "not found" in by_pane[2].error
        assert result.unassigned_panes == [3]

    def test_custom_template(self, mux, agent_session, backlog) -> None:
        bulk_assign(mux, "proj", backlog=backlog, strategy="top-n", template="Go: {bead_id} on {pane}")
        assert mux.sent_text() == ["Go: bd-1 on 2", "Go: bd-2 on 3", "Go: bd-3 on 4"]

    @pytest.mark.parametrize("flags", [
        {"strategy": "lottery"},
        {"allocation": "{oops"},
        {"skip_panes": "x"},
        {"template": "{nope}"},
    ])
    def test_invalid_flags(self, mux, agent_session, backlog, flags: dict) -> None:
        assert bulk_assign(mux, "proj", backlog=backlog, **flags).error_code == ErrorCode.INVALID_FLAG.value

    def test_backlog_required_without_allocation(self, mux, agent_session) -> None:
        assert bulk_assign(mux, "proj").error_code == ErrorCode.DEPENDENCY_MISSING.value

    def test_triage_failure(self, mux, agent_session, backlog) -> None:
        backlog.error = ToolError("bv", "database is locked")
        result = bulk_assign(mux, "proj", backlog=backlog)
        assert result.error_code == ErrorCode.INTERNAL_ERROR.value
        assert "backlog triage failed" in result.error

    def test_missing_session(self, mux, backlog) -> None:
        assert bulk_assign(mux, "ghost", backlog=backlog).error_code == ErrorCode.SESSION_NOT_FOUND.value
