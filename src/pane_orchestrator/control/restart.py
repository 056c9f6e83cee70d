"""Phased agent restart.

A restart walks these phases and stops at the first failure, reporting it as
a :class:`~pane_orchestrator.envelope.StructuredError` tagged with the phase:

``soft_exit``
    Ctrl-C, then the agent's own exit command; succeeds when a shell prompt
    comes back. A failed soft exit is not fatal, it falls through to a hard
    kill.
``hard_kill``
    Respawn the pane, killing whatever runs in it.
``post_exit``
    Wait for the respawned shell prompt.
``launch``
    Type the agent's launch command.
``init``
    Wait for the agent's idle prompt.
``prompt``
    Optionally send a follow-up prompt (free text or a bead assignment).
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import Field

from ..agents import AgentType, profile_for
from ..alerts import Alerter
from ..capture import capture_pane, last_non_empty
from ..config import OrchestratorConfig
from ..envelope import (
    Envelope,
    ErrorCode,
    ErrorDetails,
    ErrorPhase,
    StructuredError,
    WireModel,
    error_from_exception,
    error_response,
    structured_error_response,
    success_response,
)
from ..errors import BeadNotFoundError, MultiplexerError, PaneOrchestratorError
from ..mux import Multiplexer, PaneInfo, build_launch_command, resolve_session_panes, sanitize_command, select_panes
from ..state import PaneState, classify_pane
from ..timing import Deadline, sleep
from ..tools.backlog import Backlog

logger = logging.getLogger(__name__)

DEFAULT_SOFT_EXIT_TIMEOUT = 5.0
DEFAULT_SHELL_TIMEOUT = 5.0
DEFAULT_RESTART_POLL = 0.25
INTERRUPT_SETTLE = 0.3

_SHELL_PROMPT_RE = re.compile(r"[$%#]\s*$")


def at_shell_prompt(lines: list[str]) -> bool:
    """True when the trailing line is a bare shell prompt."""
    return bool(_SHELL_PROMPT_RE.search(last_non_empty(lines).rstrip()))


def agent_ready(lines: list[str], agent_type: AgentType, title: str = "") -> bool:
    """The agent has replaced the shell and is waiting at its own prompt."""
    return not at_shell_prompt(lines) and classify_pane(lines, agent_type, title).state is PaneState.IDLE


@dataclass(frozen=True, slots=True)
class RestartTimings:
    soft_exit: float = DEFAULT_SOFT_EXIT_TIMEOUT
    shell: float = DEFAULT_SHELL_TIMEOUT
    init: float = 30.0
    poll: float = DEFAULT_RESTART_POLL
    settle: float = INTERRUPT_SETTLE


class RestartResult(WireModel):
    pane: str
    agent_type: str
    success: bool
    exit_method: str = ""
    prompt_sent: bool = False
    bead: str | None = None
    attempted_actions: list[str] = Field(default_factory=list)
    error: StructuredError | None = None


class RestartOutput(Envelope):
    session: str
    dry_run: bool = False
    restarted: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    results: list[RestartResult] = Field(default_factory=list)


class _PhaseFailure(Exception):
    def __init__(self, error: StructuredError) -> None:
        self.error = error
        super().__init__(error.message)


def _wait_for(
    mux: Multiplexer,
    pane: PaneInfo,
    predicate: Callable[[list[str]], bool],
    timeout: float,
    poll: float,
    cancel: threading.Event | None,
) -> tuple[bool, list[str]]:
    deadline = Deadline(timeout)
    lines: list[str] = []
    while True:
        _, lines = capture_pane(mux, pane.ref)
        if predicate(lines):
            return True, lines
        if deadline.expired:
            return False, lines
        deadline.sleep(poll, cancel)


def _fail(
    code: ErrorCode,
    phase: ErrorPhase,
    message: str,
    pane: PaneInfo,
    actions: list[str],
    hint: str,
    last_output: list[str] | None = None,
) -> _PhaseFailure:
    details = ErrorDetails(attempted_actions=list(actions), agent_type=pane.agent_type.value)
    if last_output:
        details = details.with_last_output("\n".join(last_output))
    return _PhaseFailure(
        StructuredError(code=code, message=message, phase=phase, pane=pane.index, details=details, recovery_hint=hint)
    )


def restart_agent(
    mux: Multiplexer,
    pane: PaneInfo,
    launch_command: str,
    *,
    directory: str | None = None,
    exit_command: str = "/exit",
    prompt: str = "",
    timings: RestartTimings | None = None,
    cancel: threading.Event | None = None,
) -> RestartResult:
    """Restart the agent in one pane; see the module docstring for phases."""
    timings = timings or RestartTimings()
    actions: list[str] = []
    exit_method = ""
    prompt_sent = False
    try:
        # soft_exit
        try:
            mux.send_interrupt(pane.ref)
            actions.append("interrupt")
            sleep(timings.settle, cancel)
            mux.send_keys(pane.ref, exit_command, enter=True)
            actions.append(f"exit_command:{exit_command}")
            returned, _ = _wait_for(mux, pane, at_shell_prompt, timings.soft_exit, timings.poll, cancel)
        except MultiplexerError as exc:
            logger.warning("soft exit of %s failed: %s", pane.ref.wire, exc)
            returned = False
        if returned:
            exit_method = "soft_exit"
        else:
            # hard_kill
            try:
                mux.respawn_pane(pane.ref, directory)
                actions.append("respawn_pane")
            except MultiplexerError as exc:
                raise _fail(ErrorCode.HARD_KILL_FAILED, ErrorPhase.HARD_KILL, str(exc), pane, actions,
                            "Kill the pane manually and respawn it") from exc
            exit_method = "hard_kill"
            # post_exit
            returned, lines = _wait_for(mux, pane, at_shell_prompt, timings.shell, timings.poll, cancel)
            if not returned:
                raise _fail(ErrorCode.SHELL_NOT_RETURNED, ErrorPhase.POST_EXIT,
                            "shell prompt did not return after respawn", pane, actions,
                            "Inspect the pane; the shell may be waiting for input", lines)

        # launch
        try:
            command = sanitize_command(launch_command)
            if directory:
                command = build_launch_command(directory, command)
            mux.send_keys(pane.ref, command, enter=True)
            actions.append("launch")
        except (ValueError, MultiplexerError) as exc:
            raise _fail(ErrorCode.AGENT_LAUNCH_FAILED, ErrorPhase.LAUNCH, str(exc), pane, actions,
                        "Check the configured launch command for this agent type") from exc

        # init
        ready, lines = _wait_for(
            mux,
            pane,
            lambda captured: agent_ready(captured, pane.agent_type, pane.title),
            timings.init,
            timings.poll,
            cancel,
        )
        if not ready:
            raise _fail(ErrorCode.AGENT_INIT_TIMEOUT, ErrorPhase.INIT,
                        f"agent did not become ready within {timings.init:g}s", pane, actions,
                        "Increase the ready timeout or inspect the pane output", lines)

        # prompt
        if prompt:
            try:
                mux.send_keys(pane.ref, prompt, enter=True)
                actions.append("prompt")
                prompt_sent = True
            except MultiplexerError as exc:
                raise _fail(ErrorCode.PROMPT_SEND_FAILED, ErrorPhase.PROMPT, str(exc), pane, actions,
                            "The agent restarted; resend the prompt with 'paneorch send'") from exc
    except _PhaseFailure as failure:
        logger.warning("restart of %s failed in %s: %s", pane.ref.wire, failure.error.phase, failure.error.message)
        return RestartResult(
            pane=pane.ref.label,
            agent_type=pane.agent_type.value,
            success=False,
            exit_method=exit_method,
            attempted_actions=actions,
            error=failure.error,
        )

    logger.info("restarted %s via %s", pane.ref.wire, exit_method)
    return RestartResult(
        pane=pane.ref.label,
        agent_type=pane.agent_type.value,
        success=True,
        exit_method=exit_method,
        prompt_sent=prompt_sent,
        attempted_actions=actions,
    )


def _exit_command(pane: PaneInfo) -> str:
    profile = profile_for(pane.agent_type)
    return profile.exit_command if profile else "/exit"


def bead_prompt(bead_id: str, title: str) -> str:
    return f"Work on bead {bead_id}: {title}. Mark it in_progress, implement it, then close it when done."


def restart_panes(
    mux: Multiplexer,
    session: str,
    panes: list[int],
    *,
    config: OrchestratorConfig | None = None,
    backlog: Backlog | None = None,
    bead: str = "",
    prompt: str = "",
    directory: str | None = None,
    dry_run: bool = False,
    alerter: Alerter | None = None,
    timings: RestartTimings | None = None,
    cancel: threading.Event | None = None,
) -> RestartOutput:
    """Restart the agents in ``panes``; user panes are refused.

    With ``bead`` set, the bead's title is fetched from ``backlog`` and an
    assignment prompt is sent once the agent is ready.
    """
    started = time.monotonic()
    config = config or OrchestratorConfig()
    timings = timings or RestartTimings(init=config.spawn.ready_timeout)
    fields = {"session": session, "dry_run": dry_run}
    if not panes:
        return error_response("no panes given", ErrorCode.INVALID_FLAG, "Pass --panes=1,2",
                              model=RestartOutput, **fields)

    if bead:
        if backlog is None:
            return error_response("bead given without a backlog service", ErrorCode.DEPENDENCY_MISSING,
                                  "Install bd to restart with a bead", model=RestartOutput, **fields)
        try:
            info = backlog.show(bead)
        except BeadNotFoundError as exc:
            structured = StructuredError(
                code=ErrorCode.BEAD_NOT_FOUND, message=str(exc), phase=ErrorPhase.PROMPT,
                recovery_hint="Check the bead id with 'bd show'",
            )
            return structured_error_response(structured, model=RestartOutput, **fields)
        except PaneOrchestratorError as exc:
            return error_from_exception(exc, model=RestartOutput, **fields)
        prompt = bead_prompt(bead, info.title)

    try:
        targets = select_panes(resolve_session_panes(mux, session), panes, session)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=RestartOutput, **fields)

    results: list[RestartResult] = []
    for pane in targets:
        if not pane.agent_type.is_agent:
            results.append(RestartResult(
                pane=pane.ref.label,
                agent_type=pane.agent_type.value,
                success=False,
                error=StructuredError(code=ErrorCode.INVALID_FLAG, message="not an agent pane",
                                      pane=pane.index, recovery_hint="Only agent panes can be restarted"),
            ))
            continue
        if dry_run:
            results.append(RestartResult(pane=pane.ref.label, agent_type=pane.agent_type.value, success=True,
                                         exit_method="planned", bead=bead or None))
            continue
        result = restart_agent(
            mux,
            pane,
            config.launch_command(pane.agent_type),
            directory=directory,
            exit_command=_exit_command(pane),
            prompt=prompt,
            timings=timings,
            cancel=cancel,
        )
        if bead:
            result = result.model_copy(update={"bead": bead})
        results.append(result)
        if alerter is not None:
            alerter.send_restart(session, pane.ref.label, pane.agent_type.value, success=result.success)

    restarted = [r.pane for r in results if r.success]
    failed = [r.pane for r in results if not r.success]
    if failed:
        first = next(r.error for r in results if not r.success and r.error is not None)
        return structured_error_response(
            first, model=RestartOutput, restarted=restarted, failed=failed, results=results, **fields
        )
    return success_response(
        RestartOutput, command="restart-pane", started=started,
        restarted=restarted, failed=failed, results=results, **fields,
    )

