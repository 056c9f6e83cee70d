# SPDX-License-Identifier: MIT
"""Tests for message delivery, secret redaction and acknowledgement polling."""

from __future__ import annotations

from pathlib import Path

import pytest

from pane_orchestrator.control.ack import AckType, ack, detect_acknowledgment
from pane_orchestrator.control.redaction import Category, RedactionMode, apply_redaction, parse_mode, scan
from pane_orchestrator.control.send import send_message
from pane_orchestrator.control.targets import build_filter
from pane_orchestrator.envelope import ErrorCode
from pane_orchestrator.events import get_event_buffer
from pane_orchestrator.history import HistoryStore

from conftest import CLAUDE_IDLE

GITHUB_TOKEN = "ghp_" + "a1B2" * 9
ANTHROPIC_KEY = "sk-ant-" + "x" * 48


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


class TestRedaction:
    def test_clean_text(self) -> None:
        text, summary = apply_redaction("please run the tests", RedactionMode.REDACT)
        assert text == "please run the tests"
        assert summary.findings == 0
        assert summary.action == "none"

    def test_specific_detector_wins_over_generic(self) -> None:
        findings = scan(f"token={GITHUB_TOKEN}")
        assert [f.category for f in findings] == [Category.GITHUB_TOKEN]

    def test_redact_replaces_each_finding(self) -> None:
        text, summary = apply_redaction(f"use {ANTHROPIC_KEY} and {GITHUB_TOKEN}", "redact")
        assert ANTHROPIC_KEY not in text
        assert GITHUB_TOKEN not in text
        assert text.startswith("use [REDACTED:ANTHROPIC_KEY:")
        assert summary.action == "redacted"
        assert summary.categories == ["ANTHROPIC_KEY", "GITHUB_TOKEN"]

    def test_placeholder_is_stable(self) -> None:
        first, _ = apply_redaction(GITHUB_TOKEN, "redact")
        second, _ = apply_redaction(f"again {GITHUB_TOKEN}", "redact")
        assert second == f"again {first}"

    def test_warn_leaves_text(self) -> None:
        text, summary = apply_redaction("password=hunter22", "warn")
        assert text == "password=hunter22"
        assert summary.action == "warned"
        assert summary.categories == ["PASSWORD"]

    def test_off_skips_scanning(self) -> None:
        _, summary = apply_redaction(GITHUB_TOKEN, "off")
        assert summary.findings == 0

    def test_parse_mode(self) -> None:
        assert parse_mode(" Redact ") is RedactionMode.REDACT
        with pytest.raises(ValueError, match="invalid redaction mode"):
            parse_mode("shout")


# ---------------------------------------------------------------------------
# Send
# ---------------------------------------------------------------------------


class TestSendMessage:
    def test_sends_to_agent_panes(self, mux, agent_session) -> None:
        result = send_message(mux, "proj", "run the tests")
        assert result.success
        assert result.successful == ["1.2", "1.3", "1.4"]
        assert mux.sent_text() == ["run the tests"] * 3
        assert all(call[3] is True for call in mux.calls if call[0] == "send_keys")
        assert result.agent_hints.summary == "Sent to 3 pane(s) successfully"
        assert len(get_event_buffer().since(None)) == 3

    def test_no_enter(self, mux, agent_session) -> None:
        send_message(mux, "proj", "draft", target=build_filter(panes="2"), enter=False)
        assert [call[3] for call in mux.calls if call[0] == "send_keys"] == [False]

    def test_type_filter(self, mux, agent_session) -> None:
        result = send_message(mux, "proj", "hi", target=build_filter(agent_type="cod"))
        assert result.targets == ["1.4"]

    def test_dry_run(self, mux, agent_session) -> None:
        result = send_message(mux, "proj", "hi", target=build_filter(include_user=True), dry_run=True)
        assert result.dry_run
        assert result.would_send_to == ["1.1", "1.2", "1.3", "1.4"]
        assert mux.sent_text() == []

    def test_empty_message(self, mux, agent_session) -> None:
        assert send_message(mux, "proj", "").error_code == ErrorCode.INVALID_FLAG.value

    def test_missing_session(self, mux) -> None:
        result = send_message(mux, "ghost", "hi")
        assert result.error_code == ErrorCode.SESSION_NOT_FOUND.value
        assert result.failed[0].pane == "session"

    def test_no_matching_panes(self, mux, agent_session) -> None:
        result = send_message(mux, "proj", "hi", target=build_filter(agent_type="gmi"))
        assert result.error_code == ErrorCode.INVALID_FLAG.value
        assert "no target panes" in result.error

    def test_failures_collected(self, mux, agent_session) -> None:
        mux.fail_on.add("send_keys")
        result = send_message(mux, "proj", "hi")
        assert not result.success
        assert [f.pane for f in result.failed] == ["1.2", "1.3", "1.4"]
        assert result.agent_hints.summary == "All 3 sends failed"

    def test_preview_is_truncated(self, mux, agent_session) -> None:
        result = send_message(mux, "proj", "x" * 80, dry_run=True)
        assert result.message_preview == "x" * 47 + "..."

    def test_redact_mode_sends_placeholder(self, mux, agent_session) -> None:
        result = send_message(mux, "proj", f"token {GITHUB_TOKEN}", target=build_filter(panes="2"),
                              redaction_mode="redact")
        assert result.redaction.action == "redacted"
        assert GITHUB_TOKEN not in mux.sent_text()[0]

    @pytest.mark.parametrize("mode", ["redact", "warn"])
    def test_preview_never_holds_secrets(self, mux, agent_session, mode: str) -> None:
        result = send_message(mux, "proj", "use password=hunter2secret", target=build_filter(panes="2"),
                              redaction_mode=mode)
        assert result.message_preview.startswith("use [REDACTED:PASSWORD:")
        assert "hunter2secret" not in result.message_preview
        assert all("hunter2secret" not in str(c.details) for c in get_event_buffer().since(None))

    def test_default_skips_control_shell(self, mux) -> None:
        mux.add_session("ops", ["zsh", "ops__cc_1"])
        result = send_message(mux, "ops", "run the tests")
        assert result.successful == ["1.2"]
        assert mux.sent_text("ops:1.1") == []

    def test_history_never_holds_secrets(self, mux, agent_session, tmp_path: Path) -> None:
        store = HistoryStore(tmp_path / "history.jsonl")
        send_message(mux, "proj", f"token {GITHUB_TOKEN}", target=build_filter(panes="2"), history=store)
        assert mux.sent_text() == [f"token {GITHUB_TOKEN}"]
        entry = store.read_all()[0]
        assert GITHUB_TOKEN not in entry.prompt
        assert [t.pane for t in entry.targets] == ["1.2"]
        assert entry.targets[0].agent_type == "claude"

    def test_track_waits_for_ack(self, mux, agent_session) -> None:
        pane = agent_session[1]
        mux.set_output(pane, CLAUDE_IDLE, CLAUDE_IDLE + "On it, reading the code\n")
        result = send_message(mux, "proj", "fix the bug", target=build_filter(panes="2"), track=True,
                              ack_timeout_ms=500, ack_poll_ms=10)
        assert result.ack.success
        assert result.ack.confirmations[0].ack_type == "explicit_ack"


# ---------------------------------------------------------------------------
# Acknowledgement
# ---------------------------------------------------------------------------


class TestDetectAcknowledgment:
    def test_unchanged(self) -> None:
        assert detect_acknowledgment("> \n", "> \n") is None

    def test_explicit_phrase(self) -> None:
        assert detect_acknowledgment("> \n", "> \nGot it, starting now\n") is AckType.EXPLICIT_ACK

    def test_echo_then_output(self) -> None:
        ack_type = detect_acknowledgment("> \n", "> \n> fix bug\nreading files\n", "fix bug")
        assert ack_type is AckType.ECHO_DETECTED

    def test_bare_echo_is_not_an_ack(self) -> None:
        assert detect_acknowledgment("> \n", "> \n> fix bug\n", "fix bug") is None

    def test_other_output(self) -> None:
        assert detect_acknowledgment("a\n", "a\ncompiling\n", "fix bug") is AckType.OUTPUT_STARTED

    def test_scrolled_buffer(self) -> None:
        """Lines scrolled off the top still leave only the new tail."""
        assert detect_acknowledgment("a\nb\n", "a\nb2\nc\n") is AckType.OUTPUT_STARTED


class TestAck:
    def test_confirmation(self, mux, agent_session) -> None:
        pane = agent_session[1]
        mux.set_output(pane, CLAUDE_IDLE, CLAUDE_IDLE + "Understood.\n")
        result = ack(mux, "proj", target=build_filter(panes="2"), timeout_ms=500, poll_ms=10)
        assert result.success
        assert [c.pane for c in result.confirmations] == ["1.2"]

    def test_timeout_lists_pending(self, mux, agent_session) -> None:
        mux.set_output(agent_session[1], CLAUDE_IDLE, CLAUDE_IDLE + "Understood.\n")
        result = ack(mux, "proj", target=build_filter(panes="2,4"), timeout_ms=100, poll_ms=10)
        assert not result.success
        assert result.error_code == ErrorCode.TIMEOUT.value
        assert result.timed_out
        assert result.pending == ["1.4"]
        assert [c.pane for c in result.confirmations] == ["1.2"]

    def test_missing_session(self, mux) -> None:
        assert ack(mux, "ghost", timeout_ms=100).error_code == ErrorCode.SESSION_NOT_FOUND.value
