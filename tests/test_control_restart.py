"""Tests for the phased agent restart."""

from __future__ import annotations

from pane_orchestrator.control.restart import RestartTimings, at_shell_prompt, restart_panes
from pane_orchestrator.envelope import ErrorCode
from pane_orchestrator.tools.backlog import BeadInfo

from conftest import CLAUDE_BUSY, CLAUDE_IDLE, SHELL_PROMPT, FakeBacklog

FAST = RestartTimings(soft_exit=0.1, shell=0.1, init=0.1, poll=0.01, settle=0.0)


def test_at_shell_prompt() -> None:
    assert at_shell_prompt(["output", "user@host:~/proj$ "])
    assert at_shell_prompt(["root# "])
    assert not at_shell_prompt(["> "])
    assert not at_shell_prompt([])


class TestRestartPanes:
    def test_soft_exit_path(self, mux, agent_session) -> None:
        pane = agent_session[1]
        mux.set_output(pane, SHELL_PROMPT, CLAUDE_IDLE)
        result = restart_panes(mux, "proj", [2], timings=FAST)
        assert result.success
        assert result.restarted == ["1.2"]
        restart = result.results[0]
        assert restart.exit_method == "soft_exit"
        assert restart.attempted_actions == ["interrupt", "exit_command:/exit", "launch"]
        assert mux.keys(pane) == ["C-c"]
        assert mux.sent_text(pane) == ["/exit", "claude"]

    def test_prompt_after_ready(self, mux, agent_session) -> None:
        pane = agent_session[1]
        mux.set_output(pane, SHELL_PROMPT, CLAUDE_IDLE)
        result = restart_panes(mux, "proj", [2], prompt="carry on", directory="/work", timings=FAST)
        assert result.results[0].prompt_sent
        assert mux.sent_text(pane) == ["/exit", "cd /work && claude", "carry on"]

    def test_hard_kill_when_soft_exit_fails(self, mux, agent_session) -> None:
        """A pane that never shows a shell prompt is respawned, then fails in post_exit."""
        mux.set_output(agent_session[1], CLAUDE_BUSY)
        result = restart_panes(mux, "proj", [2], timings=FAST)
        assert not result.success
        assert result.failed == ["1.2"]
        assert result.error_code == ErrorCode.SHELL_NOT_RETURNED.value
        assert result.structured_error.phase == "post_exit"
        assert result.structured_error.details.attempted_actions[-1] == "respawn_pane"
        assert result.results[0].exit_method == "hard_kill"

    def test_hard_kill_failure(self, mux, agent_session) -> None:
        mux.set_output(agent_session[1], CLAUDE_BUSY)
        mux.fail_on.add("respawn_pane")
        result = restart_panes(mux, "proj", [2], timings=FAST)
        assert result.error_code == ErrorCode.HARD_KILL_FAILED.value
        assert result.structured_error.phase == "hard_kill"

    def test_init_timeout(self, mux, agent_session) -> None:
        mux.set_output(agent_session[1], SHELL_PROMPT)
        result = restart_panes(mux, "proj", [2], timings=FAST)
        assert result.error_code == ErrorCode.AGENT_INIT_TIMEOUT.value
        assert result.structured_error.phase == "init"
        assert result.structured_error.pane == 2

    def test_user_pane_refused(self, mux, agent_session) -> None:
        result = restart_panes(mux, "proj", [1], timings=FAST)
        assert not result.success
        assert result.failed == ["1.1"]
        assert result.error_code == ErrorCode.INVALID_FLAG.value

    def test_dry_run(self, mux, agent_session) -> None:
        result = restart_panes(mux, "proj", [2, 4], dry_run=True)
        assert result.success
        assert [r.exit_method for r in result.results] == ["planned", "planned"]
        assert mux.sent_text() == []

    def test_no_panes(self, mux, agent_session) -> None:
        assert restart_panes(mux, "proj", []).error_code == ErrorCode.INVALID_FLAG.value

    def test_bead_prompt(self, mux, agent_session) -> None:
        pane = agent_session[1]
        mux.set_output(pane, SHELL_PROMPT, CLAUDE_IDLE)
        backlog = FakeBacklog(beads={"bd-7": BeadInfo(id="bd-7", title="Fix the parser")})
        result = restart_panes(mux, "proj", [2], backlog=backlog, bead="bd-7", timings=FAST)
        assert result.results[0].bead == "bd-7"
        assert "Work on bead bd-7: Fix the parser." in mux.sent_text(pane)[-1]

    def test_unknown_bead(self, mux, agent_session) -> None:
        result = restart_panes(mux, "proj", [2], backlog=FakeBacklog(), bead="bd-404", timings=FAST)
        assert result.error_code == ErrorCode.BEAD_NOT_FOUND.value
        assert result.structured_error.phase == "prompt"
        assert mux.sent_text() == []
