"""Ctrl-C delivery with an optional follow-up message."""

from __future__ import annotations

import logging
import threading
import time

from pydantic import Field

from ..capture import truncate_message
from ..envelope import Envelope, ErrorCode, error_from_exception, error_response, success_response
from ..errors import MultiplexerError, PaneOrchestratorError
from ..events import ChangeKind, record_change
from ..mux import Multiplexer
from ..timing import sleep
from .restart import INTERRUPT_SETTLE
from .send import SendFailure
from .targets import TargetFilter, resolve_targets

logger = logging.getLogger(__name__)


class InterruptOutput(Envelope):
    session: str
    interrupted: list[str] = Field(default_factory=list)
    failed: list[SendFailure] = Field(default_factory=list)
    message_preview: str | None = None
    message_sent: list[str] = Field(default_factory=list)
    dry_run: bool = False
    would_interrupt: list[str] | None = None


def interrupt(
    mux: Multiplexer,
    session: str,
    *,
    target: TargetFilter | None = None,
    message: str = "",
    settle: float = INTERRUPT_SETTLE,
    dry_run: bool = False,
    cancel: threading.Event | None = None,
) -> InterruptOutput:
    """Interrupt every targeted pane, then send ``message`` to those that took the interrupt."""
    started = time.monotonic()
    fields = {"session": session, "dry_run": dry_run, "message_preview": truncate_message(message) if message else None}
    try:
        panes = resolve_targets(mux, session, target or TargetFilter())
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=InterruptOutput, **fields)
    if not panes:
        return error_response("no target panes matched the filter criteria", ErrorCode.INVALID_FLAG,
                              "Check --all, --panes or --type", model=InterruptOutput, **fields)
    if dry_run:
        return success_response(InterruptOutput, command="interrupt", started=started,
                                would_interrupt=[pane.ref.label for pane in panes], **fields)

    interrupted: list[str] = []
    failed: list[SendFailure] = []
    message_sent: list[str] = []
    for pane in panes:
        try:
            mux.send_interrupt(pane.ref)
        except MultiplexerError as exc:
            logger.warning("interrupt of %s failed: %s", pane.ref.wire, exc)
            failed.append(SendFailure(pane=pane.ref.label, error=str(exc)))
            continue
        interrupted.append(pane.ref.label)
        record_change(ChangeKind.INTERRUPT, session, pane.ref.label)

    if message and interrupted:
        try:
            sleep(settle, cancel)
        except PaneOrchestratorError as exc:
            return error_from_exception(exc, model=InterruptOutput, interrupted=interrupted, failed=failed,
                                        **fields)
        for pane in panes:
            if pane.ref.label not in interrupted:
                continue
            try:
                mux.send_keys(pane.ref, message, enter=True)
            except MultiplexerError as exc:
                failed.append(SendFailure(pane=pane.ref.label, error=f"follow-up message: {exc}"))
                continue
            message_sent.append(pane.ref.label)

    logger.info("interrupted %d/%d panes in %s", len(interrupted), len(panes), session)
    if failed:
        return error_response(f"{len(failed)} of {len(panes)} panes failed", ErrorCode.INTERNAL_ERROR,
                              "Retry the failed panes individually", model=InterruptOutput, command="interrupt",
                              started=started, interrupted=interrupted, failed=failed, message_sent=message_sent,
                              **fields)
    return success_response(InterruptOutput, command="interrupt", started=started, interrupted=interrupted,
                            message_sent=message_sent, **fields)
