"""Bulk assignment: pair ranked beads with idle agent panes and dispatch prompts.

Planning is pure: :func:`allocate` zips ordered work items with panes sorted
by index and reports the residue on either side. Dispatch walks the plan in
ascending pane index, rendering the prompt template for each entry. Failures
stay on their own entry and never abort the rest of the plan.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

from pydantic import Field

from ..envelope import (
    AgentHints,
    Envelope,
    ErrorCode,
    WireModel,
    error_from_exception,
    error_response,
    success_response,
)
from ..errors import MultiplexerError, PaneOrchestratorError, ToolError
from ..events import ChangeKind, record_change
from ..mux import Multiplexer, PaneInfo, dispatch_panes
from ..tools.backlog import Backlog
from .strategies import AssignStrategy, WorkItem, build_candidates, needs_in_progress, parse_strategy, select_items
from .template import TemplateError, load_template, render_template

logger = logging.getLogger(__name__)


class AssignStatus(str, Enum):
    PLANNED = "planned"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


def parse_skip_panes(value: str | None) -> list[int]:
    """Parse ``--skip-panes``; empty parts are ignored and negatives allowed.

    Raises:
        ValueError: If any part is not an integer.
    """
    if value is None or not value.strip():
        return []
    skipped = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            skipped.append(int(part))
        except ValueError as exc:
            raise ValueError(f"invalid skip pane {part!r}") from exc
    return skipped


def parse_allocation(text: str) -> dict[int, str]:
    """Parse an explicit ``{"<pane>": "<bead>"}`` allocation.

    Raises:
        ValueError: On malformed JSON, non-integer pane keys or empty bead ids.
    """
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid allocation JSON: {exc.msg}") from exc
    if not isinstance(raw, dict):
        raise ValueError("allocation must be a JSON object mapping pane index to bead id")
    allocation: dict[int, str] = {}
    for key, bead in raw.items():
        try:
            index = int(key)
        except ValueError as exc:
            raise ValueError(f"invalid pane index {key!r} in allocation") from exc
        if not isinstance(bead, str) or not bead.strip():
            raise ValueError(f"pane {index}: bead id must be a non-empty string")
        allocation[index] = bead.strip()
    return allocation


def filter_panes(panes: list[PaneInfo], skip: list[int] | None) -> list[PaneInfo]:
    """Drop the panes whose index is in ``skip``; survivors keep their order."""
    skipped = set(skip or ())
    return [pane for pane in panes if pane.index not in skipped]


@dataclass(frozen=True, slots=True)
class AllocationPlan:
    """Pane/bead pairing; pairs are sorted by pane index."""

    pairs: tuple[tuple[PaneInfo, WorkItem], ...] = ()
    unassigned_beads: tuple[str, ...] = ()
    unassigned_panes: tuple[int, ...] = ()


def allocate(panes: list[PaneInfo], items: list[WorkItem]) -> AllocationPlan:
    """Pair the i-th item with the i-th pane by ascending index."""
    ordered = sorted(panes, key=lambda pane: pane.index)
    count = min(len(ordered), len(items))
    return AllocationPlan(
        pairs=tuple(zip(ordered[:count], items[:count])),
        unassigned_beads=tuple(item.id for item in items[count:]),
        unassigned_panes=tuple(pane.index for pane in ordered[count:]),
    )


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


class Assignment(WireModel):
    pane: str
    pane_index: int
    agent_type: str
    bead_id: str
    bead_title: str = ""
    bead_type: str | None = None
    status: AssignStatus = AssignStatus.PLANNED
    claimed: bool = False
    prompt_sent: bool = False
    prompt: str | None = None
    error: str | None = None


class BulkAssignSummary(WireModel):
    total: int = 0
    planned: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    unassigned_beads: int = 0
    unassigned_panes: int = 0


class BulkAssignOutput(Envelope):
    session: str
    strategy: str | None = None
    dry_run: bool = False
    assignments: list[Assignment] = Field(default_factory=list)
    unassigned_beads: list[str] = Field(default_factory=list)
    unassigned_panes: list[int] = Field(default_factory=list)
    summary: BulkAssignSummary = Field(default_factory=BulkAssignSummary)


def summarize(assignments: list[Assignment], plan: AllocationPlan | None = None) -> BulkAssignSummary:
    counts = {status: 0 for status in AssignStatus}
    for entry in assignments:
        counts[AssignStatus(entry.status)] += 1
    return BulkAssignSummary(
        total=len(assignments),
        planned=counts[AssignStatus.PLANNED],
        sent=counts[AssignStatus.SENT],
        failed=counts[AssignStatus.FAILED],
        cancelled=counts[AssignStatus.CANCELLED],
        unassigned_beads=len(plan.unassigned_beads) if plan else 0,
        unassigned_panes=len(plan.unassigned_panes) if plan else 0,
    )


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def _entry(pane: PaneInfo, item: WorkItem) -> Assignment:
    return Assignment(
        pane=pane.ref.label,
        pane_index=pane.index,
        agent_type=pane.agent_type.value,
        bead_id=item.id,
        bead_title=item.title,
        bead_type=item.bead_type or None,
    )


def _resolve_item(item: WorkItem, backlog: Backlog | None) -> WorkItem:
    """Fill in a missing title from the backlog service.

    Raises:
        ToolError: If the bead cannot be fetched.
    """
    if item.title:
        return item
    if backlog is None:
        raise ToolError("bd", f"no title available for bead '{item.id}'")
    info = backlog.show(item.id)
    return WorkItem(
        id=item.id,
        title=info.title,
        bead_type=item.bead_type or info.issue_type,
        status=item.status or info.status,
        priority=item.priority,
        deps=item.deps or tuple(info.dependencies),
        reasons=item.reasons,
        updated_at=item.updated_at,
    )


@dataclass
class PlannedEntry:
    entry: Assignment
    item: WorkItem | None = None
    pane: PaneInfo | None = None


@dataclass
class DispatchPlan:
    entries: list[PlannedEntry] = field(default_factory=list)
    allocation: AllocationPlan = field(default_factory=AllocationPlan)


def plan_from_items(panes: list[PaneInfo], items: list[WorkItem], backlog: Backlog | None = None) -> DispatchPlan:
    allocation = allocate(panes, items)
    plan = DispatchPlan(allocation=allocation)
    for pane, item in allocation.pairs:
        entry = _entry(pane, item)
        try:
            resolved = _resolve_item(item, backlog)
        except PaneOrchestratorError as exc:
            logger.warning("bead %s for pane %s: %s", item.id, pane.ref.label, exc)
            failed = entry.model_copy(update={"status": AssignStatus.FAILED, "error": str(exc)})
            plan.entries.append(PlannedEntry(failed))
            continue
        plan.entries.append(PlannedEntry(_entry(pane, resolved), resolved, pane))
    return plan


def plan_from_allocation(panes: list[PaneInfo], allocation: dict[int, str], backlog: Backlog | None) -> DispatchPlan:
    """Plan an explicit pane→bead mapping; unknown panes and unfetchable beads fail their entry."""
    by_index = {pane.index: pane for pane in panes}
    plan = DispatchPlan()
    for index in sorted(allocation):
        bead_id = allocation[index]
        pane = by_index.get(index)
        if pane is None:
            plan.entries.append(PlannedEntry(Assignment(
                pane=str(index), pane_index=index, agent_type="unknown", bead_id=bead_id,
                status=AssignStatus.FAILED, error=f"pane {index} is not an assignable agent pane",
            )))
            continue
        item = WorkItem(id=bead_id)
        try:
            resolved = _resolve_item(item, backlog)
        except PaneOrchestratorError as exc:
            logger.warning("bead %s for pane %s: %s", bead_id, pane.ref.label, exc)
            plan.entries.append(PlannedEntry(_entry(pane, item).model_copy(
                update={"status": AssignStatus.FAILED, "error": str(exc)})))
            continue
        plan.entries.append(PlannedEntry(_entry(pane, resolved), resolved, pane))
    assigned = set(allocation)
    plan.allocation = AllocationPlan(unassigned_panes=tuple(p.index for p in panes if p.index not in assigned))
    return plan


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def dispatch(
    mux: Multiplexer,
    session: str,
    plan: DispatchPlan,
    template: str,
    *,
    dry_run: bool = False,
    claim: bool = False,
    backlog: Backlog | None = None,
    cancel: threading.Event | None = None,
) -> list[Assignment]:
    """Render and send each planned entry in ascending pane index.

    Once ``cancel`` is set the entries not yet sent come back ``cancelled``;
    entries already sent keep their results.
    """
    results = []
    for planned in sorted(plan.entries, key=lambda p: p.entry.pane_index):
        entry = planned.entry
        if entry.status == AssignStatus.FAILED or planned.item is None or planned.pane is None:
            results.append(entry)
            continue
        if not dry_run and cancel is not None and cancel.is_set():
            results.append(entry.model_copy(update={"status": AssignStatus.CANCELLED, "error": "cancelled"}))
            continue
        item = planned.item
        prompt = render_template(
            template,
            bead_id=item.id,
            bead_title=item.title,
            bead_type=item.bead_type,
            bead_deps=item.deps,
            session=session,
            pane=planned.pane.index,
        )
        entry = entry.model_copy(update={"prompt": prompt})
        if dry_run:
            results.append(entry)
            continue

        if claim and backlog is not None:
            try:
                backlog.claim(item.id)
            except PaneOrchestratorError as exc:
                logger.warning("claim of %s failed: %s", item.id, exc)
                results.append(entry.model_copy(update={"status": AssignStatus.FAILED, "error": f"claim: {exc}"}))
                continue
            entry = entry.model_copy(update={"claimed": True})

        try:
            mux.send_keys(planned.pane.ref, prompt, enter=True)
        except MultiplexerError as exc:
            logger.warning("assignment prompt to %s failed: %s", planned.pane.ref.wire, exc)
            results.append(entry.model_copy(update={"status": AssignStatus.FAILED, "error": str(exc)}))
            continue
        record_change(ChangeKind.ASSIGN, session, entry.pane, bead=item.id)
        results.append(entry.model_copy(update={"status": AssignStatus.SENT, "prompt_sent": True}))
    return results


def bulk_assign(
    mux: Multiplexer,
    session: str,
    *,
    backlog: Backlog | None = None,
    strategy: str | None = None,
    allocation: str | None = None,
    skip_panes: str | list[int] | None = None,
    template: str | None = None,
    template_path: str | None = None,
    dry_run: bool = False,
    claim: bool = False,
    cancel: threading.Event | None = None,
) -> BulkAssignOutput:
    """Assign backlog work to the session's agent panes.

    Either ``allocation`` (explicit JSON mapping) or ``strategy`` selects the
    beads. Without an explicit allocation the backlog triage is required.
    """
    started = time.monotonic()
    fields = {"session": session, "dry_run": dry_run}
    try:
        skip = parse_skip_panes(skip_panes) if not isinstance(skip_panes, list) else skip_panes
        explicit = parse_allocation(allocation) if allocation else None
        chosen = None if explicit is not None else parse_strategy(strategy)
        prompt_template = load_template(template_path, template)
    except (ValueError, TemplateError) as exc:
        return error_response(exc, ErrorCode.INVALID_FLAG, "See 'paneorch docs commands' for assign flags",
                              model=BulkAssignOutput, **fields)
    fields["strategy"] = "explicit" if chosen is None else chosen.value

    try:
        panes = filter_panes(dispatch_panes(mux, session), skip)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=BulkAssignOutput, **fields)

    if explicit is not None:
        plan = plan_from_allocation(panes, explicit, backlog)
    else:
        if backlog is None:
            return error_response("backlog service is not configured", ErrorCode.DEPENDENCY_MISSING,
                                  "Install bv/bd or pass --allocation", model=BulkAssignOutput, **fields)
        try:
            triage = backlog.triage()
        except PaneOrchestratorError as exc:
            return error_response(f"backlog triage failed: {exc}", ErrorCode.INTERNAL_ERROR,
                                  "Run 'bv --robot-triage' to inspect the failure", model=BulkAssignOutput, **fields)
        in_progress = []
        if needs_in_progress(chosen):
            try:
                in_progress = backlog.in_progress()
            except PaneOrchestratorError as exc:
                return error_response(f"backlog in-progress listing failed: {exc}", ErrorCode.INTERNAL_ERROR,
                                      model=BulkAssignOutput, **fields)
        items = select_items(chosen, build_candidates(triage, in_progress))
        plan = plan_from_items(panes, items, backlog)

    try:
        assignments = dispatch(mux, session, plan, prompt_template, dry_run=dry_run, claim=claim, backlog=backlog,
                               cancel=cancel)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=BulkAssignOutput, **fields)

    summary = summarize(assignments, plan.allocation)
    logger.info("assign %s (%s): %d sent, %d failed, %d planned", session, fields["strategy"], summary.sent,
                summary.failed, summary.planned)
    warnings = [f"{entry.pane}: {entry.error}" for entry in assignments if entry.error]
    hints = AgentHints(
        summary=f"{summary.total} assignment(s), {summary.unassigned_beads} bead(s) left over",
        warnings=warnings or None,
    )
    results = {
        "assignments": assignments,
        "unassigned_beads": list(plan.allocation.unassigned_beads),
        "unassigned_panes": list(plan.allocation.unassigned_panes),
        "summary": summary,
        "agent_hints": hints,
    }
    if summary.cancelled:
        logger.warning("assign %s cancelled with %d of %d entries unsent", session, summary.cancelled, summary.total)
        return error_response(f"assignment cancelled after {summary.sent} send(s)", ErrorCode.INTERNAL_ERROR,
                              "Re-run assign for the cancelled panes", model=BulkAssignOutput, command="assign",
                              started=started, **results, **fields)
    return success_response(
        BulkAssignOutput,
        command="assign",
        started=started,
        **results,
        **fields,
    )


__all__ = [
    "AllocationPlan",
    "AssignStatus",
    "AssignStrategy",
    "Assignment",
    "BulkAssignOutput",
    "BulkAssignSummary",
    "allocate",
    "bulk_assign",
    "dispatch",
    "filter_panes",
    "parse_allocation",
    "parse_skip_panes",
    "plan_from_allocation",
    "plan_from_items",
    "summarize",
]
