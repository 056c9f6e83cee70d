"""Active readiness probes.

Two methods are supported:

``keystroke_echo``
    Type the agent's inert probe keys (never followed by Enter), wait for the
    pane content hash to change, then erase the keys again. A change inside the
    timeout means the agent's input loop is alive.

``interrupt_test``
    Send Ctrl-C and wait for the trailing line to return to an idle prompt.

Panes already showing a rate-limit, error or exit banner are reported as such
without being touched.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum

from pydantic import Field

from .agents import AgentType, profile_for
from .capture import DEFAULT_CAPTURE_LINES, capture_pane, content_hash, last_non_empty
from .envelope import Envelope, ErrorCode, WireModel, error_from_exception, error_response, success_response
from .errors import PaneOrchestratorError
from .mux import Multiplexer, PaneInfo, resolve_session_panes, select_panes
from .state import PaneState, classify_pane, is_prompt_line
from .timing import Deadline

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT_MS = 5000
MIN_PROBE_TIMEOUT_MS = 100
MAX_PROBE_TIMEOUT_MS = 60000
DEFAULT_PROBE_POLL = 0.1

# Used for types without a profile record
FALLBACK_PROBE_KEYS = "."
FALLBACK_PROBE_CLEANUP: tuple[str, ...] = ("BSpace",)


class ProbeMethod(str, Enum):
    KEYSTROKE_ECHO = "keystroke_echo"
    INTERRUPT_TEST = "interrupt_test"


class ProbeStatus(str, Enum):
    RESPONSIVE = "responsive"
    UNRESPONSIVE = "unresponsive"
    RATE_LIMITED = "rate_limited"
    CRASHED = "crashed"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ProbeFlags:
    method: ProbeMethod = ProbeMethod.KEYSTROKE_ECHO
    timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS
    aggressive: bool = False

    def __post_init__(self) -> None:
        if not MIN_PROBE_TIMEOUT_MS <= self.timeout_ms <= MAX_PROBE_TIMEOUT_MS:
            raise ValueError(
                f"probe timeout must be between {MIN_PROBE_TIMEOUT_MS} and {MAX_PROBE_TIMEOUT_MS} ms, "
                f"got {self.timeout_ms}"
            )


def parse_probe_flags(method: str = "", timeout_ms: int = 0, aggressive: bool = False) -> ProbeFlags:
    """Validate probe flags; empty/zero values take the defaults.

    Raises:
        ValueError: On an unknown method or out-of-range timeout.
    """
    try:
        parsed = ProbeMethod(method.strip().lower().replace("-", "_")) if method else ProbeMethod.KEYSTROKE_ECHO
    except ValueError as exc:
        choices = ", ".join(m.value for m in ProbeMethod)
        raise ValueError(f"invalid probe method {method!r} (expected one of: {choices})") from exc
    return ProbeFlags(parsed, timeout_ms or DEFAULT_PROBE_TIMEOUT_MS, aggressive)


class ProbeResult(WireModel):
    pane: str
    agent_type: str
    method: ProbeMethod
    status: ProbeStatus
    responsive: bool
    latency_ms: int = 0
    fallback_used: bool = False
    wait_seconds: int | None = None
    reason: str = ""


class ProbeSummary(WireModel):
    total: int = 0
    responsive: int = 0
    unresponsive: int = 0
    rate_limited: int = 0
    crashed: int = 0
    error: int = 0


class ProbeOutput(Envelope):
    session: str
    method: ProbeMethod
    timeout_ms: int
    aggressive: bool = False
    panes: list[ProbeResult] = Field(default_factory=list)
    summary: ProbeSummary = Field(default_factory=ProbeSummary)


def _pre_check(pane: PaneInfo, lines: list[str], method: ProbeMethod) -> ProbeResult | None:
    detection = classify_pane(lines, pane.agent_type, pane.title)
    status = {
        PaneState.RATE_LIMITED: ProbeStatus.RATE_LIMITED,
        PaneState.CRASHED: ProbeStatus.CRASHED,
        PaneState.ERROR: ProbeStatus.ERROR,
    }.get(detection.state)
    if status is None:
        return None
    return ProbeResult(
        pane=pane.ref.label,
        agent_type=detection.agent_type.value,
        method=method,
        status=status,
        responsive=False,
        wait_seconds=detection.error_check.wait_seconds or None,
        reason=detection.reason,
    )


def probe_keystroke_echo(
    mux: Multiplexer,
    pane: PaneInfo,
    timeout: float,
    *,
    poll_interval: float = DEFAULT_PROBE_POLL,
    cancel: threading.Event | None = None,
) -> ProbeResult:
    """Type inert keys and wait for the pane to echo them."""
    raw, lines = capture_pane(mux, pane.ref, DEFAULT_CAPTURE_LINES)
    pre = _pre_check(pane, lines, ProbeMethod.KEYSTROKE_ECHO)
    if pre is not None:
        return pre

    profile = profile_for(pane.agent_type)
    keys = profile.probe_keys if profile else FALLBACK_PROBE_KEYS
    cleanup = profile.probe_cleanup if profile else FALLBACK_PROBE_CLEANUP
    baseline = content_hash(raw)

    deadline = Deadline(timeout)
    changed = False
    mux.send_keys(pane.ref, keys, enter=False)
    try:
        while not deadline.expired:
            deadline.sleep(poll_interval, cancel)
            current, _ = capture_pane(mux, pane.ref, DEFAULT_CAPTURE_LINES)
            if content_hash(current) != baseline:
                changed = True
                break
    finally:
        for key in cleanup:
            for _ in keys:
                mux.send_key(pane.ref, key)

    return ProbeResult(
        pane=pane.ref.label,
        agent_type=pane.agent_type.value,
        method=ProbeMethod.KEYSTROKE_ECHO,
        status=ProbeStatus.RESPONSIVE if changed else ProbeStatus.UNRESPONSIVE,
        responsive=changed,
        latency_ms=deadline.elapsed_ms,
        reason="keystrokes echoed" if changed else "no content change within timeout",
    )


def probe_interrupt_test(
    mux: Multiplexer,
    pane: PaneInfo,
    timeout: float,
    *,
    poll_interval: float = DEFAULT_PROBE_POLL,
    cancel: threading.Event | None = None,
) -> ProbeResult:
    """Send Ctrl-C and wait for an idle prompt."""
    _, lines = capture_pane(mux, pane.ref, DEFAULT_CAPTURE_LINES)
    pre = _pre_check(pane, lines, ProbeMethod.INTERRUPT_TEST)
    if pre is not None:
        return pre

    deadline = Deadline(timeout)
    mux.send_interrupt(pane.ref)
    returned = False
    while not deadline.expired:
        deadline.sleep(poll_interval, cancel)
        _, lines = capture_pane(mux, pane.ref, DEFAULT_CAPTURE_LINES)
        if is_prompt_line(last_non_empty(lines), pane.agent_type):
            returned = True
            break
        if classify_pane(lines, pane.agent_type, pane.title).state is PaneState.IDLE:
            returned = True
            break

    return ProbeResult(
        pane=pane.ref.label,
        agent_type=pane.agent_type.value,
        method=ProbeMethod.INTERRUPT_TEST,
        status=ProbeStatus.RESPONSIVE if returned else ProbeStatus.UNRESPONSIVE,
        responsive=returned,
        latency_ms=deadline.elapsed_ms,
        reason="returned to prompt" if returned else "prompt did not return within timeout",
    )


def probe_pane(
    mux: Multiplexer,
    pane: PaneInfo,
    flags: ProbeFlags,
    *,
    poll_interval: float = DEFAULT_PROBE_POLL,
    cancel: threading.Event | None = None,
) -> ProbeResult:
    """Probe one pane, cascading to the interrupt test in aggressive mode."""
    timeout = flags.timeout_ms / 1000
    if flags.method is ProbeMethod.INTERRUPT_TEST:
        return probe_interrupt_test(mux, pane, timeout, poll_interval=poll_interval, cancel=cancel)

    result = probe_keystroke_echo(mux, pane, timeout, poll_interval=poll_interval, cancel=cancel)
    if flags.aggressive and result.status == ProbeStatus.UNRESPONSIVE:
        logger.info("pane %s did not echo; falling back to interrupt test", pane.ref.wire)
        fallback = probe_interrupt_test(mux, pane, timeout, poll_interval=poll_interval, cancel=cancel)
        return fallback.model_copy(update={"fallback_used": True})
    return result


def _summarize(results: list[ProbeResult]) -> ProbeSummary:
    summary = ProbeSummary(total=len(results))
    for result in results:
        name = ProbeStatus(result.status).value
        setattr(summary, name, getattr(summary, name) + 1)
    return summary


def probe_session(
    mux: Multiplexer,
    session: str,
    *,
    panes: list[int] | None = None,
    method: str = "",
    timeout_ms: int = 0,
    aggressive: bool = False,
    poll_interval: float = DEFAULT_PROBE_POLL,
    cancel: threading.Event | None = None,
) -> ProbeOutput:
    """Probe agent panes of a session; the user pane is never probed."""
    started = time.monotonic()
    try:
        flags = parse_probe_flags(method, timeout_ms, aggressive)
    except ValueError as exc:
        return error_response(
            exc,
            ErrorCode.INVALID_FLAG,
            "Use --probe-method=keystroke_echo|interrupt_test and --probe-timeout between 100 and 60000",
            model=ProbeOutput,
            command="probe",
            started=started,
            session=session,
            method=ProbeMethod.KEYSTROKE_ECHO,
            timeout_ms=timeout_ms,
        )
    fields = {
        "session": session,
        "method": flags.method,
        "timeout_ms": flags.timeout_ms,
        "aggressive": flags.aggressive,
    }

    try:
        targets = [
            pane for pane in select_panes(resolve_session_panes(mux, session), panes, session)
            if pane.agent_type is not AgentType.USER
        ]
        results = [probe_pane(mux, pane, flags, poll_interval=poll_interval, cancel=cancel) for pane in targets]
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=ProbeOutput, **fields)

    return success_response(
        ProbeOutput,
        command="probe",
        started=started,
        panes=results,
        summary=_summarize(results),
        **fields,
    )
