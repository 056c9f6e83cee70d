"""Tests for session diagnosis and stuck-pane recovery."""

from __future__ import annotations

from pane_orchestrator.control.restart import RestartTimings
from pane_orchestrator.envelope import ErrorCode
from pane_orchestrator.health import (
    DiagnoseSummary,
    FixAction,
    HealthTag,
    OverallHealth,
    brief_summary,
    build_recommendation,
    determine_overall_health,
    diagnose,
    health_restart_stuck,
)
from pane_orchestrator.indicators import IndicatorOptions, PaneIndicator

from conftest import CLAUDE_BUSY, CLAUDE_IDLE, SHELL_PROMPT

CRASHED = "Process exited with code 1\nuser@host$ \n"
RATE_LIMITED = "Error: rate limit exceeded, retry in 30 seconds\n"
FAST = RestartTimings(soft_exit=0.2, shell=0.2, init=0.2, poll=0.01, settle=0.0)


class TestOverallHealth:
    def test_all_healthy(self) -> None:
        assert determine_overall_health(DiagnoseSummary(total_panes=2, healthy=2)) is OverallHealth.HEALTHY

    def test_empty_session_is_healthy(self) -> None:
        assert determine_overall_health(DiagnoseSummary()) is OverallHealth.HEALTHY

    def test_any_crash_is_critical(self) -> None:
        summary = DiagnoseSummary(total_panes=3, healthy=2, crashed=1)
        assert determine_overall_health(summary) is OverallHealth.CRITICAL

    def test_mostly_unresponsive_is_critical(self) -> None:
        summary = DiagnoseSummary(total_panes=3, healthy=1, unresponsive=2)
        assert determine_overall_health(summary) is OverallHealth.CRITICAL

    def test_partial_is_degraded(self) -> None:
        summary = DiagnoseSummary(total_panes=3, healthy=2, rate_limited=1)
        assert determine_overall_health(summary) is OverallHealth.DEGRADED

    def test_brief_summary(self) -> None:
        summary = DiagnoseSummary(total_panes=4, healthy=3, rate_limited=1)
        assert brief_summary(summary) == "3/4 healthy, 1 rate_limited"


class TestRecommendations:
    def test_healthy_has_none(self) -> None:
        assert build_recommendation("proj", 2, HealthTag.HEALTHY, "") is None

    def test_rate_limit_with_wait(self) -> None:
        rec = build_recommendation("proj", 2, HealthTag.RATE_LIMITED, "", wait_seconds=30)
        assert rec.action == FixAction.WAIT.value
        assert rec.fix_command.startswith("sleep 30 && paneorch diagnose proj")
        assert not rec.auto_fixable

    def test_rate_limit_without_wait(self) -> None:
        rec = build_recommendation("proj", 2, HealthTag.RATE_LIMITED, "")
        assert rec.action == FixAction.WAIT_OR_SWITCH.value

    def test_crash_restarts(self) -> None:
        rec = build_recommendation("proj", 3, HealthTag.CRASHED, "")
        assert rec.action == FixAction.RESTART.value
        assert rec.auto_fixable
        assert rec.fix_command == "paneorch restart-pane proj --panes=3"

    def test_unknown_investigates(self) -> None:
        rec = build_recommendation("proj", 3, HealthTag.UNKNOWN, "")
        assert rec.action == FixAction.INVESTIGATE.value
        assert not rec.auto_fixable


class TestDiagnose:
    def test_healthy_session(self, mux, agent_session) -> None:
        result = diagnose(mux, "proj", now=0)
        assert result.success
        assert result.overall_health == "healthy"
        assert result.summary.total_panes == 3
        assert result.panes.healthy == [2, 3, 4]
        assert result.recommendations == []
        assert result.fixes_applied is None

    def test_mixed_session(self, mux, agent_session) -> None:
        mux.set_output(agent_session[2], CRASHED)
        mux.set_output(agent_session[3], RATE_LIMITED)
        result = diagnose(mux, "proj", now=0)
        assert result.overall_health == "critical"
        assert result.panes.crashed == [3]
        assert result.panes.rate_limited == [4]
        assert [r.action for r in result.recommendations] == ["restart", "wait"]
        assert result.auto_fix_available
        rate_limited = next(d for d in result.details if d.pane == 4)
        assert rate_limited.wait_seconds == 30

    def test_single_pane(self, mux, agent_session) -> None:
        result = diagnose(mux, "proj", pane=4, now=0)
        assert [d.pane for d in result.details] == [4]

    def test_missing_pane(self, mux, agent_session) -> None:
        result = diagnose(mux, "proj", pane=9, now=0)
        assert result.error_code == ErrorCode.PANE_NOT_FOUND.value

    def test_missing_session(self, mux) -> None:
        result = diagnose(mux, "ghost")
        assert result.error_code == ErrorCode.SESSION_NOT_FOUND.value

    def test_brief(self, mux, agent_session) -> None:
        mux.set_output(agent_session[2], CRASHED)
        result = diagnose(mux, "proj", brief=True, now=0)
        assert result.summary == "2/3 healthy, 1 crashed"
        assert result.has_issues
        assert result.fix_available

    def test_fix_interrupts_unresponsive_pane(self, mux) -> None:
        refs = mux.add_session("busy", ["busy__user", "busy__cc_1"], last_activity=1000)
        mux.set_output(refs[1], CLAUDE_BUSY)
        result = diagnose(mux, "busy", fix=True, now=1000 + 301)
        assert result.panes.unresponsive == [2]
        assert result.overall_health == "critical"
        assert [(f.pane, f.action, f.success) for f in result.fixes_applied] == [(2, "interrupt", True)]
        assert mux.keys(refs[1]) == ["C-c"]


class TestRestartStuck:
    def test_threshold_floor(self, mux, agent_session) -> None:
        result = health_restart_stuck(mux, "proj", threshold="10s")
        assert result.error_code == ErrorCode.INVALID_FLAG.value

    def test_bad_threshold(self, mux, agent_session) -> None:
        result = health_restart_stuck(mux, "proj", threshold="soon")
        assert result.error_code == ErrorCode.INVALID_FLAG.value

    def test_dry_run_lists_stuck_panes(self, mux) -> None:
        mux.add_session("old", ["old__user", "old__cc_1", "old__cod_1"], last_activity=1000)
        result = health_restart_stuck(mux, "old", threshold="5m", dry_run=True, now=2000)
        assert result.success
        assert [p.pane for p in result.stuck_panes] == ["1.2", "1.3"]
        assert result.stuck_panes[0].idle_seconds == 1000
        assert result.restarted == []
        assert not [c for c in mux.calls if c[0] == "respawn_pane"]

    def test_unknown_activity_is_not_stuck(self, mux, agent_session) -> None:
        result = health_restart_stuck(mux, "proj", dry_run=True, now=10_000)
        assert result.stuck_panes == []

    def test_indicator_ages_take_precedence(self, mux, agent_session) -> None:
        now = [0.0]
        indicator = PaneIndicator(mux, IndicatorOptions.create("proj", [2]), clock=lambda: now[0])
        indicator.run_once()
        now[0] = 400
        result = health_restart_stuck(mux, "proj", dry_run=True, indicator=indicator, now=0)
        assert [p.pane for p in result.stuck_panes] == ["1.2"]

    def test_restarts_stuck_pane(self, mux) -> None:
        refs = mux.add_session("old", ["old__user", "old__cc_1"], last_activity=1000)
        mux.set_output(refs[1], SHELL_PROMPT, CLAUDE_IDLE)
        result = health_restart_stuck(mux, "old", now=2000, timings=FAST)
        assert result.success
        assert result.restarted == ["1.2"]
        assert result.failed == []
