"""Message delivery to agent panes."""

from __future__ import annotations

import logging
import threading
import time

from pydantic import Field

from ..agents import detect_model
from ..capture import truncate_message
from ..envelope import (
    AgentHints,
    Envelope,
    ErrorCode,
    WireModel,
    error_from_exception,
    error_response,
    success_response,
    utc_timestamp,
)
from ..errors import MultiplexerError, PaneOrchestratorError, SessionNotFoundError
from ..events import ChangeKind, record_change
from ..history import HistoryEntry, HistoryStore, HistoryTarget
from ..mux import Multiplexer, PaneInfo
from ..timing import sleep
from .ack import DEFAULT_ACK_POLL_MS, DEFAULT_ACK_TIMEOUT_MS, AckOutput, capture_baselines, wait_for_acks
from .redaction import RedactionMode, RedactionSummary, apply_redaction
from .targets import TargetFilter, resolve_targets

logger = logging.getLogger(__name__)


class SendFailure(WireModel):
    pane: str
    error: str


class SendOutput(Envelope):
    session: str
    sent_at: str = Field(default_factory=utc_timestamp)
    targets: list[str] = Field(default_factory=list)
    successful: list[str] = Field(default_factory=list)
    failed: list[SendFailure] = Field(default_factory=list)
    message_preview: str = ""
    redaction: RedactionSummary | None = None
    dry_run: bool = False
    would_send_to: list[str] | None = None
    ack: AckOutput | None = None


def _send_hints(successful: list[str], failed: list[SendFailure]) -> AgentHints:
    if failed and successful:
        return AgentHints(summary=f"Partial success: {len(successful)} sent, {len(failed)} failed",
                          notes=["Retry failed panes individually"])
    if failed:
        return AgentHints(summary=f"All {len(failed)} sends failed",
                          notes=["Check agent states with 'paneorch tail'", "Verify session and pane existence"])
    return AgentHints(summary=f"Sent to {len(successful)} pane(s) successfully",
                      notes=["Confirm receipt with 'paneorch ack' or resend with --track"])


def _history_targets(panes: list[PaneInfo]) -> list[HistoryTarget]:
    return [
        HistoryTarget(pane=pane.ref.label, agent_type=pane.agent_type.value,
                      model=detect_model(pane.agent_type, pane.title))
        for pane in panes
    ]


def send_message(
    mux: Multiplexer,
    session: str,
    message: str,
    *,
    target: TargetFilter | None = None,
    enter: bool = True,
    delay_ms: int = 0,
    dry_run: bool = False,
    track: bool = False,
    ack_timeout_ms: int = DEFAULT_ACK_TIMEOUT_MS,
    ack_poll_ms: int = DEFAULT_ACK_POLL_MS,
    redaction_mode: RedactionMode | str = RedactionMode.WARN,
    history: HistoryStore | None = None,
    cancel: threading.Event | None = None,
) -> SendOutput:
    """Send ``message`` to the panes selected by ``target``, one pane at a time.

    Per-pane failures are collected without stopping delivery to the rest. A
    missing session is reported as a single failure against ``"session"``.
    With ``track`` set, the send is followed by an acknowledgement wait.
    """
    started = time.monotonic()
    outgoing, redaction = apply_redaction(message, redaction_mode)
    # Previews, events and history never hold a raw secret, whatever the send mode
    scrubbed = apply_redaction(message, RedactionMode.REDACT)[0] if redaction.findings else outgoing
    fields = {"session": session, "message_preview": truncate_message(scrubbed), "redaction": redaction}
    if redaction.findings:
        logger.warning("message to %s contains %d possible secret(s) (%s)", session, redaction.findings,
                       redaction.action)

    if not session.strip():
        return error_response("session name is required", ErrorCode.INVALID_FLAG, "Provide a session name",
                              model=SendOutput, failed=[SendFailure(pane="session", error="session name is required")],
                              **fields)
    if not message:
        return error_response("message is required", ErrorCode.INVALID_FLAG, "Pass --msg or --msg-file",
                              model=SendOutput, **fields)
    try:
        panes = resolve_targets(mux, session, target or TargetFilter())
    except SessionNotFoundError as exc:
        return error_from_exception(exc, model=SendOutput, failed=[SendFailure(pane="session", error=str(exc))],
                                    **fields)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=SendOutput, **fields)

    labels = [pane.ref.label for pane in panes]
    if not panes:
        return error_response("no target panes matched the filter criteria", ErrorCode.INVALID_FLAG,
                              "Check --all, --panes or --type", model=SendOutput, dry_run=dry_run, **fields)
    if dry_run:
        return success_response(SendOutput, command="send", started=started, targets=labels, dry_run=True,
                                would_send_to=labels, **fields)

    baselines = capture_baselines(mux, panes) if track else {}
    successful: list[str] = []
    failed: list[SendFailure] = []
    try:
        for position, pane in enumerate(panes):
            if position and delay_ms > 0:
                sleep(delay_ms / 1000, cancel)
            try:
                mux.send_keys(pane.ref, outgoing, enter=enter)
            except MultiplexerError as exc:
                logger.warning("send to %s failed: %s", pane.ref.wire, exc)
                failed.append(SendFailure(pane=pane.ref.label, error=str(exc)))
                continue
            successful.append(pane.ref.label)
            record_change(ChangeKind.SEND, session, pane.ref.label, preview=fields["message_preview"])
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=SendOutput, targets=labels, successful=successful, failed=failed,
                                    **fields)
    logger.info("sent message to %d/%d panes in %s", len(successful), len(panes), session)

    if history is not None:
        history.append(HistoryEntry(
            session=session,
            prompt=scrubbed,
            targets=_history_targets([p for p in panes if p.ref.label in successful]),
            success=not failed,
            error=f"{len(failed)} of {len(panes)} sends failed" if failed else None,
        ))

    ack_output = None
    if track and successful:
        delivered = [pane for pane in panes if pane.ref.label in successful]
        ack_output = wait_for_acks(mux, session, delivered, baselines, message=outgoing,
                                   timeout_ms=ack_timeout_ms, poll_ms=ack_poll_ms, cancel=cancel)

    hints = _send_hints(successful, failed)
    if failed:
        return error_response(
            f"{len(failed)} of {len(panes)} sends failed",
            ErrorCode.INTERNAL_ERROR,
            "Retry failed panes individually",
            model=SendOutput,
            command="send",
            started=started,
            targets=labels,
            successful=successful,
            failed=failed,
            ack=ack_output,
            agent_hints=hints,
            **fields,
        )
    return success_response(
        SendOutput,
        command="send",
        started=started,
        targets=labels,
        successful=successful,
        failed=failed,
        ack=ack_output,
        agent_hints=hints,
        **fields,
    )
