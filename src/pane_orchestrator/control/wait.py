"""Poll panes until a state condition holds."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum

from pydantic import Field

from ..capture import capture_pane, content_hash
from ..envelope import Envelope, ErrorCode, WireModel, error_from_exception, error_response, success_response
from ..errors import PaneOrchestratorError
from ..mux import Multiplexer, PaneInfo
from ..state import PaneState, classify_pane
from ..timing import Deadline, parse_duration
from .targets import TargetFilter, resolve_targets

logger = logging.getLogger(__name__)

DEFAULT_WAIT_TIMEOUT = "5m"
DEFAULT_WAIT_POLL = "2s"

_FAILED_STATES = (PaneState.ERROR, PaneState.CRASHED)


class WaitCondition(str, Enum):
    IDLE = "idle"
    COMPLETE = "complete"
    GENERATING = "generating"
    HEALTHY = "healthy"


def parse_condition(value: str) -> WaitCondition:
    try:
        return WaitCondition(value.strip().lower())
    except ValueError as exc:
        choices = ", ".join(c.value for c in WaitCondition)
        raise ValueError(f"invalid wait condition {value!r} (expected one of: {choices})") from exc


@dataclass(slots=True)
class _Tracker:
    pane: PaneInfo
    initial: PaneState | None = None
    state: PaneState = PaneState.UNKNOWN
    last_hash: str = ""
    stable: bool = False
    transitioned: bool = False

    def observe(self, state: PaneState, digest: str) -> None:
        if self.initial is None:
            self.initial = state
        elif state != self.initial:
            self.transitioned = True
        self.stable = bool(self.last_hash) and digest == self.last_hash
        self.last_hash = digest
        self.state = state


def condition_met(condition: WaitCondition, state: PaneState, stable: bool = False) -> bool:
    """``complete`` means idle with output unchanged since the previous poll."""
    if condition == WaitCondition.IDLE:
        return state == PaneState.IDLE
    if condition == WaitCondition.GENERATING:
        return state == PaneState.ACTIVE
    if condition == WaitCondition.COMPLETE:
        return state == PaneState.IDLE and stable
    return state in (PaneState.IDLE, PaneState.ACTIVE)


class WaitPaneState(WireModel):
    pane: str
    agent_type: str
    state: PaneState
    met: bool
    transitioned: bool = False


class WaitOutput(Envelope):
    session: str
    condition: WaitCondition
    mode: str = "all"
    met: bool = False
    elapsed_ms: int = 0
    panes: list[WaitPaneState] = Field(default_factory=list)


def wait_until(
    mux: Multiplexer,
    session: str,
    *,
    condition: str = WaitCondition.IDLE.value,
    target: TargetFilter | None = None,
    timeout: str | float = DEFAULT_WAIT_TIMEOUT,
    poll: str | float = DEFAULT_WAIT_POLL,
    any_pane: bool = False,
    exit_on_error: bool = False,
    require_transition: bool = False,
    cancel: threading.Event | None = None,
) -> WaitOutput:
    """Block until ``condition`` holds for all (or, with ``any_pane``, any) targeted panes.

    With ``require_transition`` a pane counts only after its state has changed
    at least once since the first poll.
    """
    started = time.monotonic()
    try:
        wanted = parse_condition(condition)
        timeout_s = parse_duration(timeout)
        poll_s = parse_duration(poll)
    except ValueError as exc:
        return error_response(exc, ErrorCode.INVALID_FLAG, "See 'paneorch docs commands' for wait flags",
                              model=WaitOutput, session=session, condition=WaitCondition.IDLE)
    mode = "any" if any_pane else "all"
    fields = {"session": session, "condition": wanted, "mode": mode}
    if poll_s <= 0:
        return error_response("poll interval must be > 0", ErrorCode.INVALID_FLAG, model=WaitOutput, **fields)

    try:
        panes = resolve_targets(mux, session, target or TargetFilter())
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=WaitOutput, **fields)
    if not panes:
        return error_response("no panes matched the filter criteria", ErrorCode.INVALID_FLAG,
                              "Check --panes or --type", model=WaitOutput, **fields)

    trackers = [_Tracker(pane) for pane in panes]
    deadline = Deadline(timeout_s)

    def report() -> list[WaitPaneState]:
        return [
            WaitPaneState(pane=t.pane.ref.label, agent_type=t.pane.agent_type.value, state=t.state,
                          met=holds(t), transitioned=t.transitioned)
            for t in trackers
        ]

    def holds(tracker: _Tracker) -> bool:
        if require_transition and not tracker.transitioned:
            return False
        return condition_met(wanted, tracker.state, tracker.stable)

    try:
        while True:
            for tracker in trackers:
                raw, lines = capture_pane(mux, tracker.pane.ref)
                detection = classify_pane(lines, tracker.pane.agent_type, tracker.pane.title)
                tracker.observe(PaneState(detection.state), content_hash(raw))

            if exit_on_error:
                broken = [t for t in trackers if t.state in _FAILED_STATES]
                if broken:
                    labels = ", ".join(t.pane.ref.label for t in broken)
                    return error_response(f"pane(s) {labels} entered an error state", ErrorCode.INTERNAL_ERROR,
                                          "Run 'paneorch diagnose' for recovery steps", model=WaitOutput,
                                          command="wait", started=started, elapsed_ms=deadline.elapsed_ms,
                                          panes=report(), **fields)

            satisfied = [holds(t) for t in trackers]
            if (any(satisfied) if any_pane else all(satisfied)):
                logger.info("wait on %s: %s reached after %dms", session, wanted.value, deadline.elapsed_ms)
                return success_response(WaitOutput, command="wait", started=started, met=True,
                                        elapsed_ms=deadline.elapsed_ms, panes=report(), **fields)
            if deadline.expired:
                break
            deadline.sleep(poll_s, cancel)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=WaitOutput, panes=report(), **fields)

    return error_response(
        f"timed out after {timeout_s:g}s waiting for {mode} panes to be {wanted.value}",
        ErrorCode.TIMEOUT,
        "Increase --timeout or check agent state with 'paneorch tail'",
        model=WaitOutput,
        command="wait",
        started=started,
        elapsed_ms=deadline.elapsed_ms,
        panes=report(),
        **fields,
    )
