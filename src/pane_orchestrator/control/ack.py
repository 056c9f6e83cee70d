"""Acknowledgement polling after a send.

A pane acknowledges when its output grows past the baseline captured before
the send with something other than a bare echo of the message:

``explicit_ack``
    The new output contains an acknowledgement phrase ("understood", "let
    me", "working on", ...).
``echo_detected``
    The message was echoed and at least one further line followed it.
``output_started``
    Any other new output.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum

from pydantic import Field

from ..capture import capture_pane, split_lines, strip_ansi
from ..envelope import Envelope, ErrorCode, WireModel, error_from_exception, error_response, success_response
from ..errors import MultiplexerError, PaneOrchestratorError
from ..mux import Multiplexer, PaneInfo
from ..timing import Deadline
from .targets import TargetFilter, resolve_targets

logger = logging.getLogger(__name__)

DEFAULT_ACK_TIMEOUT_MS = 30000
DEFAULT_ACK_POLL_MS = 500
ACK_CAPTURE_LINES = 50

ACK_PHRASES: tuple[str, ...] = (
    "understood",
    "acknowledged",
    "let me",
    "working on",
    "processing",
    "i'll",
    "i will",
    "on it",
    "got it",
    "will do",
    "starting",
)


class AckType(str, Enum):
    EXPLICIT_ACK = "explicit_ack"
    ECHO_DETECTED = "echo_detected"
    OUTPUT_STARTED = "output_started"


def _new_output(initial: str, current: str) -> str:
    if current.startswith(initial):
        return current[len(initial):]
    initial_lines = split_lines(initial)
    current_lines = split_lines(current)
    # Scrolled buffer: drop the longest prefix of lines both captures share
    shared = 0
    for old, new in zip(initial_lines, current_lines):
        if old != new:
            break
        shared += 1
    return "\n".join(current_lines[shared:])


def detect_acknowledgment(initial: str, current: str, message: str = "") -> AckType | None:
    """Classify how a pane reacted to ``message``; ``None`` means no acknowledgement yet."""
    initial = strip_ansi(initial)
    current = strip_ansi(current)
    if initial == current:
        return None
    new_lines = [line.strip() for line in split_lines(_new_output(initial, current)) if line.strip()]
    if not new_lines:
        return None
    lowered = "\n".join(new_lines).lower()
    if any(phrase in lowered for phrase in ACK_PHRASES):
        return AckType.EXPLICIT_ACK
    needle = message.strip().lower()
    if needle:
        for position, line in enumerate(new_lines):
            if needle in line.lower():
                return AckType.ECHO_DETECTED if position < len(new_lines) - 1 else None
    return AckType.OUTPUT_STARTED


class AckConfirmation(WireModel):
    pane: str
    ack_type: AckType
    latency_ms: int


class AckFailure(WireModel):
    pane: str
    error: str


class AckOutput(Envelope):
    session: str
    timeout_ms: int
    poll_ms: int
    confirmations: list[AckConfirmation] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
    failed: list[AckFailure] = Field(default_factory=list)
    timed_out: bool = False


def capture_baselines(mux: Multiplexer, panes: list[PaneInfo]) -> dict[str, str]:
    """Raw captures keyed by pane label, taken before a send."""
    baselines = {}
    for pane in panes:
        try:
            baselines[pane.ref.label], _ = capture_pane(mux, pane.ref, ACK_CAPTURE_LINES)
        except MultiplexerError as exc:
            logger.debug("baseline capture of %s failed: %s", pane.ref.wire, exc)
    return baselines


def wait_for_acks(
    mux: Multiplexer,
    session: str,
    panes: list[PaneInfo],
    baselines: dict[str, str],
    *,
    message: str = "",
    timeout_ms: int = DEFAULT_ACK_TIMEOUT_MS,
    poll_ms: int = DEFAULT_ACK_POLL_MS,
    cancel: threading.Event | None = None,
) -> AckOutput:
    """Poll ``panes`` until each acknowledges or the timeout expires."""
    started = time.monotonic()
    timeout_ms = timeout_ms if timeout_ms > 0 else DEFAULT_ACK_TIMEOUT_MS
    poll_ms = poll_ms if poll_ms > 0 else DEFAULT_ACK_POLL_MS
    fields = {"session": session, "timeout_ms": timeout_ms, "poll_ms": poll_ms}

    deadline = Deadline(timeout_ms / 1000)
    pending = {pane.ref.label: pane for pane in panes}
    confirmations: list[AckConfirmation] = []
    failed: list[AckFailure] = []
    try:
        while pending:
            for label, pane in list(pending.items()):
                try:
                    current, _ = capture_pane(mux, pane.ref, ACK_CAPTURE_LINES)
                except MultiplexerError as exc:
                    failed.append(AckFailure(pane=label, error=str(exc)))
                    del pending[label]
                    continue
                ack_type = detect_acknowledgment(baselines.get(label, ""), current, message)
                if ack_type is not None:
                    confirmations.append(AckConfirmation(pane=label, ack_type=ack_type, latency_ms=deadline.elapsed_ms))
                    del pending[label]
            if not pending or deadline.expired:
                break
            deadline.sleep(poll_ms / 1000, cancel)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=AckOutput, confirmations=confirmations,
                                    pending=sorted(pending), failed=failed, **fields)

    if pending:
        return error_response(
            f"{len(pending)} pane(s) did not acknowledge within {timeout_ms}ms",
            ErrorCode.TIMEOUT,
            "Check the pending panes with 'paneorch tail'",
            model=AckOutput,
            command="ack",
            started=started,
            confirmations=confirmations,
            pending=sorted(pending),
            failed=failed,
            timed_out=True,
            **fields,
        )
    if failed:
        return error_response(f"{len(failed)} pane(s) could not be read", ErrorCode.INTERNAL_ERROR,
                              model=AckOutput, command="ack", started=started, confirmations=confirmations,
                              failed=failed, **fields)
    return success_response(AckOutput, command="ack", started=started, confirmations=confirmations, **fields)


def ack(
    mux: Multiplexer,
    session: str,
    *,
    target: TargetFilter | None = None,
    message: str = "",
    timeout_ms: int = DEFAULT_ACK_TIMEOUT_MS,
    poll_ms: int = DEFAULT_ACK_POLL_MS,
    cancel: threading.Event | None = None,
) -> AckOutput:
    """Wait for the targeted panes to react, using their current output as the baseline."""
    try:
        panes = resolve_targets(mux, session, target or TargetFilter())
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=AckOutput, session=session, timeout_ms=timeout_ms, poll_ms=poll_ms)
    baselines = capture_baselines(mux, panes)
    return wait_for_acks(mux, session, panes, baselines, message=message, timeout_ms=timeout_ms, poll_ms=poll_ms,
                         cancel=cancel)
