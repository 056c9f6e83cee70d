# SPDX-License-Identifier: MIT
"""Pytest configuration and shared fixtures for the test suite.

This module provides:
- Deterministic test environment setup
- An in-memory multiplexer that records every call and replays capture frames
- An in-memory backlog service with configurable triage and failures
- Isolation of the process-wide event buffer and alerter
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import pytest

from pane_orchestrator.alerts import Alerter, set_alerter
from pane_orchestrator.config import AlertConfig
from pane_orchestrator.errors import BeadNotFoundError, MultiplexerError, SessionNotFoundError, ToolError
from pane_orchestrator.events import EventBuffer, set_event_buffer
from pane_orchestrator.mux import PaneInfo, PaneRef, SessionInfo
from pane_orchestrator.tools.backlog import BeadInfo, BeadInProgress, TriageResponse

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TESTS_DIR = Path(__file__).resolve().parent
ROOT_DIR = TESTS_DIR.parent

CLAUDE_IDLE = "Claude Code v2.0\n\n> \n"
CLAUDE_BUSY = "Reading files...\nThinking (esc to interrupt)\n"
CODEX_IDLE = "OpenAI Codex\n\n› \n  ? for shortcuts   82% context left\n"
SHELL_PROMPT = "user@host:~/proj$ \n"


# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism."""
    deterministic_env = {
        "LC_ALL": "C",
        "LANG": "C",
        "TZ": "UTC",
        "PYTHONHASHSEED": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)


@pytest.fixture(autouse=True)
def isolated_globals():
    """Fresh event buffer and a quiet alerter for every test."""
    set_event_buffer(EventBuffer())
    set_alerter(Alerter(AlertConfig(log_to_stderr=False), channels=[]))
    yield
    set_event_buffer(None)
    set_alerter(None)


# ---------------------------------------------------------------------------
# Fake multiplexer
# ---------------------------------------------------------------------------


class FakeMultiplexer:
    """In-memory multiplexer.

    Panes are created with :meth:`add_session`. Capture output is served from
    per-pane frame queues: each capture pops the next frame and the last frame
    repeats forever.
    """

    def __init__(self, *, available: bool = True) -> None:
        self.available = available
        self.panes: dict[str, list[PaneInfo]] = {}
        self.frames: dict[str, list[str]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.fail_on: set[str] = set()
        self.last_activity: dict[str, int] = {}

    # -- setup -------------------------------------------------------------

    def add_session(self, name: str, titles: list[str], *, window: int = 1, start: int = 1,
                    last_activity: int = 0) -> list[PaneRef]:
        refs = []
        panes = self.panes.setdefault(name, [])
        for offset, title in enumerate(titles):
            ref = PaneRef(name, window, start + offset)
            panes.append(PaneInfo(ref=ref, title=title, pane_id=f"%{len(panes)}", pid=1000 + len(panes),
                                  last_activity=last_activity))
            refs.append(ref)
        return refs

    def set_output(self, target: PaneRef | str, *frames: str) -> None:
        wire = target.wire if isinstance(target, PaneRef) else target
        self.frames[wire] = list(frames)

    def sent_text(self, target: PaneRef | str | None = None) -> list[str]:
        wire = target.wire if isinstance(target, PaneRef) else target
        return [call[2] for call in self.calls if call[0] == "send_keys" and (wire is None or call[1] == wire)]

    def keys(self, target: PaneRef | str | None = None) -> list[str]:
        wire = target.wire if isinstance(target, PaneRef) else target
        return [call[2] for call in self.calls if call[0] == "send_key" and (wire is None or call[1] == wire)]

    def _check(self, op: str) -> None:
        if op in self.fail_on:
            raise MultiplexerError(f"{op} failed")

    def _find(self, ref: PaneRef) -> PaneInfo:
        for pane in self.panes.get(ref.session, []):
            if pane.ref == ref:
                return pane
        raise MultiplexerError(f"can't find pane: {ref.wire}")

    # -- protocol ----------------------------------------------------------

    def is_available(self) -> bool:
        return self.available

    def session_exists(self, session: str) -> bool:
        self._check("session_exists")
        return session in self.panes

    def list_sessions(self) -> list[SessionInfo]:
        self._check("list_sessions")
        return [SessionInfo(name, windows=len({p.ref.window for p in panes}) or 1) for name, panes in
                sorted(self.panes.items())]

    def list_windows(self, session: str) -> list[int]:
        if session not in self.panes:
            raise SessionNotFoundError(session)
        return sorted({pane.ref.window for pane in self.panes[session]}) or [0]

    def list_panes(self, session: str, window: int | None = None) -> list[PaneInfo]:
        self._check("list_panes")
        if session not in self.panes:
            raise SessionNotFoundError(session)
        panes = [pane for pane in self.panes[session] if window is None or pane.ref.window == window]
        return sorted(panes, key=lambda pane: pane.ref)

    def capture(self, ref: PaneRef, lines: int) -> str:
        self.calls.append(("capture", ref.wire, lines))
        self._check("capture")
        self._find(ref)
        queue = self.frames.get(ref.wire)
        if not queue:
            return ""
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]

    def send_keys(self, ref: PaneRef, text: str, *, enter: bool = False) -> None:
        self._check("send_keys")
        self._find(ref)
        self.calls.append(("send_keys", ref.wire, text, enter))

    def send_key(self, ref: PaneRef, key: str) -> None:
        self._check("send_key")
        self.calls.append(("send_key", ref.wire, key))

    def send_interrupt(self, ref: PaneRef) -> None:
        self.send_key(ref, "C-c")

    def create_session(self, session: str, directory: str) -> None:
        self.calls.append(("create_session", session, directory))
        self.add_session(session, [""])

    def split_window(self, session: str, directory: str) -> PaneRef:
        self.calls.append(("split_window", session, directory))
        panes = self.panes[session]
        last = max(pane.ref.index for pane in panes)
        return self.add_session(session, [""], window=panes[0].ref.window, start=last + 1)[0]

    def apply_layout(self, session: str, layout: str) -> None:
        self.calls.append(("apply_layout", session, layout))

    def set_title(self, ref: PaneRef, title: str) -> None:
        self.calls.append(("set_title", ref.wire, title))
        panes = self.panes[ref.session]
        for i, pane in enumerate(panes):
            if pane.ref == ref:
                panes[i] = PaneInfo(ref=ref, title=title, pane_id=pane.pane_id, pid=pane.pid,
                                    last_activity=pane.last_activity)

    def set_border_style(self, ref: PaneRef, color: str) -> None:
        self.calls.append(("set_border_style", ref.wire, color))

    def reset_border_style(self, ref: PaneRef) -> None:
        self.calls.append(("reset_border_style", ref.wire))

    def respawn_pane(self, ref: PaneRef, directory: str | None = None) -> None:
        self._check("respawn_pane")
        self.calls.append(("respawn_pane", ref.wire, directory))


@pytest.fixture
def mux() -> FakeMultiplexer:
    return FakeMultiplexer()


@pytest.fixture
def agent_session(mux: FakeMultiplexer) -> list[PaneRef]:
    """Session ``proj``: user pane 1, Claude panes 2 and 3, Codex pane 4."""
    refs = mux.add_session("proj", ["proj__user", "proj__cc_1", "proj__cc_2", "proj__cod_1"])
    mux.set_output(refs[0], SHELL_PROMPT)
    mux.set_output(refs[1], CLAUDE_IDLE)
    mux.set_output(refs[2], CLAUDE_BUSY)
    mux.set_output(refs[3], CODEX_IDLE)
    return refs


# ---------------------------------------------------------------------------
# Fake backlog
# ---------------------------------------------------------------------------


def triage_payload(*recommendations: dict[str, Any], quick_ref: dict[str, Any] | None = None,
                   blockers: list[dict[str, Any]] | None = None) -> TriageResponse:
    return TriageResponse.model_validate({
        "generated_at": "2026-01-01T00:00:00Z",
        "data_hash": "abc123",
        "triage": {
            "quick_ref": quick_ref or {"open_count": len(recommendations), "actionable_count": len(recommendations)},
            "recommendations": list(recommendations),
            "blockers_to_clear": blockers or [],
        },
    })


class FakeBacklog:
    """In-memory backlog service; records claims and robot calls."""

    def __init__(self, triage: TriageResponse | None = None, *, in_progress: list[BeadInProgress] | None = None,
                 beads: dict[str, BeadInfo] | None = None) -> None:
        self._triage = triage or triage_payload()
        self._in_progress = in_progress or []
        self.beads = beads or {}
        self.claimed: list[str] = []
        self.robot_calls: list[tuple[str, ...]] = []
        self.fail_claims: set[str] = set()
        self.error: ToolError | None = None

    def triage(self) -> TriageResponse:
        if self.error:
            raise self.error
        return self._triage

    def in_progress(self, limit: int = 50) -> list[BeadInProgress]:
        return self._in_progress[:limit]

    def show(self, bead_id: str) -> BeadInfo:
        if bead_id not in self.beads:
            raise BeadNotFoundError("bd", bead_id)
        return self.beads[bead_id]

    def claim(self, bead_id: str) -> None:
        if bead_id in self.fail_claims:
            raise ToolError("bd", f"cannot claim {bead_id}")
        self.claimed.append(bead_id)

    def robot(self, *args: str) -> Any:
        if self.error:
            raise self.error
        self.robot_calls.append(args)
        return {"args": list(args)}


@pytest.fixture
def backlog() -> FakeBacklog:
    return FakeBacklog(triage_payload(
        {"id": "bd-1", "title": "Fix login", "priority": 1, "score": 0.9, "unblocks_ids": ["bd-4", "bd-5"]},
        {"id": "bd-2", "title": "Add metrics", "priority": 2, "score": 0.7},
        {"id": "bd-3", "title": "Write docs", "priority": 3, "score": 0.4},
        quick_ref={"open_count": 5, "actionable_count": 3, "blocked_count": 2, "in_progress_count": 1},
    ))


@pytest.fixture
def project_root() -> Path:
    """Path to the project root directory."""
    return ROOT_DIR
