"""Session spawning.

A spawn lays out one user pane (unless disabled) followed by every Claude,
then every Codex, then every Gemini agent. The same counts always yield the
same pane plan, titles and names, which is what makes ``would_create``
previews stable across runs.

Orchestrator mode (``assign_work``) hands each spawned agent a bead: the
backlog's triage is ranked with an assignment strategy, each bead is claimed,
and only claimed beads receive a work prompt.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import Field

from .agents import AgentNameMap, AgentType, pane_title
from .assign.strategies import (
    AssignStrategy,
    WorkItem,
    build_candidates,
    needs_in_progress,
    parse_strategy,
    select_items,
)
from .capture import capture_pane
from .config import OrchestratorConfig
from .control.restart import agent_ready
from .envelope import (
    AgentHints,
    Envelope,
    ErrorCode,
    WireModel,
    error_from_exception,
    error_response,
    success_response,
    utc_timestamp,
)
from .errors import MultiplexerError, PaneOrchestratorError
from .events import ChangeKind, record_change
from .handoff import SpawnRecovery, load_recovery
from .mux import Multiplexer, PaneInfo, PaneRef, build_launch_command, validate_session_name
from .mux.session import primary_window
from .recipes import SPAWN_TYPES, find_recipe, load_recipes
from .timing import Deadline
from .tools.backlog import Backlog

logger = logging.getLogger(__name__)

READY_CAPTURE_LINES = 50
PREVIEW_WINDOW = 0
_ORDINAL_RE = re.compile(r"_(\d+)$")


@dataclass(frozen=True, slots=True)
class SpawnOptions:
    """Inputs of one spawn request."""

    session: str
    cc: int = 0
    cod: int = 0
    gmi: int = 0
    preset: str = ""
    no_user: bool = False
    directory: str = ""
    wait_ready: bool = False
    ready_timeout: float = 0.0
    dry_run: bool = False
    safety: bool = False
    assign_work: bool = False
    assign_strategy: str = AssignStrategy.TOP_N.value
    custom_names: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        for name, count in (("cc", self.cc), ("cod", self.cod), ("gmi", self.gmi)):
            if count < 0:
                raise ValueError(f"{name} count must be >= 0, got {count}")
        if self.ready_timeout < 0:
            raise ValueError(f"ready_timeout must be >= 0, got {self.ready_timeout}")

    def counts(self) -> dict[AgentType, int]:
        return {AgentType.CLAUDE: self.cc, AgentType.CODEX: self.cod, AgentType.GEMINI: self.gmi}


@dataclass(frozen=True, slots=True)
class PaneSlot:
    """One pane of the spawn plan; ``ordinal`` is 1-based per type, ``None`` for the user pane."""

    agent_type: AgentType
    ordinal: int | None = None

    def title(self, session: str) -> str:
        return pane_title(session, self.agent_type, self.ordinal)

    def name(self, names: AgentNameMap, label: str) -> str | None:
        """Agent name for this slot; the user pane is never named."""
        if self.agent_type is AgentType.USER:
            return None
        return names.assign_new(self.agent_type, label)


def plan_slots(counts: dict[AgentType, int], *, include_user: bool = True) -> list[PaneSlot]:
    """User first, then Claude, Codex and Gemini agents in that order."""
    slots = [PaneSlot(AgentType.USER)] if include_user else []
    for agent_type in SPAWN_TYPES:
        slots.extend(PaneSlot(agent_type, ordinal) for ordinal in range(1, counts.get(agent_type, 0) + 1))
    return slots


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


class SpawnedAgent(WireModel):
    pane: str
    name: str | None = None
    type: str
    title: str
    ready: bool = False
    startup_ms: int = 0
    error: str | None = None


class SpawnAssignment(WireModel):
    pane: str
    agent_type: str
    bead_id: str
    bead_title: str
    priority: str
    claimed: bool = False
    prompt_sent: bool = False
    claim_error: str | None = None
    prompt_error: str | None = None


class SpawnOutput(Envelope):
    session: str
    created_at: str = Field(default_factory=utc_timestamp)
    preset_used: str | None = None
    working_dir: str = ""
    agents: list[SpawnedAgent] = Field(default_factory=list)
    layout: str = "tiled"
    total_startup_ms: int = 0
    dry_run: bool = False
    would_create: list[SpawnedAgent] | None = None
    mode: str | None = None
    assignments: list[SpawnAssignment] | None = None
    assign_strategy: str | None = None
    recovery: SpawnRecovery | None = None


def preview(session: str, slots: list[PaneSlot], custom_names: tuple[str, ...] = ()) -> list[SpawnedAgent]:
    """The agents a spawn would create, without touching the multiplexer."""
    names = AgentNameMap(session, list(custom_names))
    agents = []
    for index, slot in enumerate(slots):
        label = PaneRef(session, PREVIEW_WINDOW, index).label
        agents.append(SpawnedAgent(
            pane=label,
            name=slot.name(names, label),
            type=slot.agent_type.value,
            title=slot.title(session),
            ready=slot.agent_type is AgentType.USER,
        ))
    return agents


# ---------------------------------------------------------------------------
# Work prompts
# ---------------------------------------------------------------------------


def work_prompt(item: WorkItem) -> str:
    lines = [
        f"Work on bead {item.id}: {item.title}",
        "",
        f"Use `bd show {item.id}` to see full details.",
        "This bead has been marked as in_progress.",
    ]
    if item.reasons:
        lines.extend(["", "Context:", *(f"- {reason}" for reason in item.reasons)])
    lines.extend(["", f'When done, close it with: `bd close {item.id} --reason "Completed"`'])
    return "\n".join(lines)


def assign_work(
    mux: Multiplexer,
    session: str,
    agents: list[SpawnedAgent],
    backlog: Backlog,
    strategy: AssignStrategy,
) -> list[SpawnAssignment]:
    """Claim one bead per agent and prompt the agents whose claim succeeded.

    Raises:
        PaneOrchestratorError: If the backlog cannot be triaged.
    """
    workers = [agent for agent in agents if agent.type != AgentType.USER.value and agent.error is None]
    if not workers:
        return []
    in_progress = backlog.in_progress() if needs_in_progress(strategy) else []
    items = select_items(strategy, build_candidates(backlog.triage(), in_progress))

    assignments = []
    for agent, item in zip(workers, items):
        entry = SpawnAssignment(pane=agent.pane, agent_type=agent.type, bead_id=item.id, bead_title=item.title,
                                priority=f"P{item.priority}")
        try:
            backlog.claim(item.id)
        except PaneOrchestratorError as exc:
            logger.warning("claim of %s for %s failed: %s", item.id, agent.pane, exc)
            assignments.append(entry.model_copy(update={"claim_error": str(exc)}))
            continue
        entry = entry.model_copy(update={"claimed": True})
        try:
            mux.send_keys(PaneRef.parse(agent.pane, session), work_prompt(item), enter=True)
        except MultiplexerError as exc:
            assignments.append(entry.model_copy(update={"prompt_error": str(exc)}))
            continue
        record_change(ChangeKind.ASSIGN, session, agent.pane, bead=item.id)
        assignments.append(entry.model_copy(update={"prompt_sent": True}))
    return assignments


# ---------------------------------------------------------------------------
# Spawn
# ---------------------------------------------------------------------------


def _renumber(slots: list[PaneSlot], running: list[PaneInfo]) -> list[PaneSlot]:
    """Number new agent slots after the highest ordinal already running per type."""
    highest: dict[AgentType, int] = {}
    for pane in running:
        match = _ORDINAL_RE.search(pane.title)
        highest[pane.agent_type] = max(highest.get(pane.agent_type, 0), int(match.group(1)) if match else 0)
    return [
        slot if slot.ordinal is None else PaneSlot(slot.agent_type, slot.ordinal + highest.get(slot.agent_type, 0))
        for slot in slots
    ]


def _ensure_panes(
    mux: Multiplexer,
    session: str,
    directory: str,
    slots: list[PaneSlot],
    layout: str,
) -> list[tuple[PaneInfo, PaneSlot]]:
    """Pair every slot with a pane, creating the session and extra panes as needed.

    Panes already running an agent are never reused. The user slot takes an
    existing user pane; agent slots take panes with no recognised agent, then
    freshly split ones.
    """
    if not mux.session_exists(session):
        mux.create_session(session, directory)
    window = primary_window(mux.list_windows(session))
    existing = sorted(mux.list_panes(session, window), key=lambda pane: pane.index)
    running = [pane for pane in existing if pane.agent_type.is_agent]
    if running:
        logger.info("leaving %d running agent pane(s) in %s untouched", len(running), session)
    slots = _renumber(slots, running)
    user_panes = [pane for pane in existing if pane.agent_type is AgentType.USER]
    blank = [pane for pane in existing if pane.agent_type is AgentType.UNKNOWN]

    pairs: list[tuple[PaneInfo, PaneSlot]] = []
    unplaced: list[PaneSlot] = []
    for slot in slots:
        if slot.agent_type is AgentType.USER and user_panes:
            pairs.append((user_panes.pop(0), slot))
        elif blank:
            pairs.append((blank.pop(0), slot))
        else:
            unplaced.append(slot)
    for _ in unplaced:
        mux.split_window(session, directory)
        mux.apply_layout(session, layout)
    if unplaced:
        # Splits can renumber pane indices; pane ids are stable
        current = sorted(mux.list_panes(session, window), key=lambda pane: pane.index)
        by_id = {pane.pane_id: pane for pane in current}
        pairs = [(by_id.get(pane.pane_id, pane), slot) for pane, slot in pairs]
        known = {pane.pane_id for pane in existing}
        fresh = [pane for pane in current if pane.pane_id not in known]
        if len(fresh) < len(unplaced):
            raise MultiplexerError(f"expected {len(unplaced)} new pane(s) in {session}, found {len(fresh)}")
        pairs.extend(zip(fresh, unplaced))
    mux.apply_layout(session, layout)
    return sorted(pairs, key=lambda pair: pair[0].index)


def _launch(
    mux: Multiplexer,
    pane: PaneInfo,
    slot: PaneSlot,
    session: str,
    name: str | None,
    directory: str,
    command: str,
) -> SpawnedAgent:
    started = time.monotonic()
    agent = SpawnedAgent(pane=pane.ref.label, name=name, type=slot.agent_type.value, title=slot.title(session),
                         ready=slot.agent_type is AgentType.USER)
    mux.set_title(pane.ref, agent.title)
    if slot.agent_type is not AgentType.USER:
        try:
            launch = build_launch_command(directory, command)
        except ValueError as exc:
            return agent.model_copy(update={"error": f"invalid command: {exc}",
                                            "startup_ms": int((time.monotonic() - started) * 1000)})
        mux.send_keys(pane.ref, launch, enter=True)
    return agent.model_copy(update={"startup_ms": int((time.monotonic() - started) * 1000)})


def wait_for_ready(
    mux: Multiplexer,
    session: str,
    agents: list[SpawnedAgent],
    timeout: float,
    poll: float,
    cancel: threading.Event | None = None,
) -> list[SpawnedAgent]:
    """Poll every non-user agent until it is idle at its own prompt or the timeout passes."""
    ready = {agent.pane for agent in agents if agent.ready}
    pending = [agent for agent in agents if agent.pane not in ready and agent.error is None]
    deadline = Deadline(timeout)
    while pending:
        still_pending = []
        for agent in pending:
            try:
                _, lines = capture_pane(mux, PaneRef.parse(agent.pane, session), READY_CAPTURE_LINES)
            except MultiplexerError as exc:
                logger.debug("ready check of %s failed: %s", agent.pane, exc)
                still_pending.append(agent)
                continue
            if agent_ready(lines, AgentType(agent.type), agent.title):
                ready.add(agent.pane)
            else:
                still_pending.append(agent)
        pending = still_pending
        if not pending or deadline.expired:
            break
        deadline.sleep(poll, cancel)
    return [agent.model_copy(update={"ready": agent.pane in ready}) for agent in agents]


def spawn(
    mux: Multiplexer,
    options: SpawnOptions,
    *,
    config: OrchestratorConfig | None = None,
    backlog: Backlog | None = None,
    project_root: Path | None = None,
    cancel: threading.Event | None = None,
) -> SpawnOutput:
    """Create (or extend) a session and launch its agents."""
    started = time.monotonic()
    config = config or OrchestratorConfig()
    session = options.session
    fields: dict = {"session": session, "layout": config.spawn.layout, "preset_used": options.preset or None}

    try:
        validate_session_name(session)
    except ValueError as exc:
        return error_response(f"invalid session name: {exc}", ErrorCode.INVALID_FLAG, "Use a valid session name",
                              model=SpawnOutput, **fields)
    counts = options.counts()
    if options.preset:
        try:
            recipe = find_recipe(options.preset, load_recipes())
        except ValueError as exc:
            return error_response(exc, ErrorCode.INVALID_FLAG, "Check config/recipes.yaml", model=SpawnOutput,
                                  **fields)
        if recipe is None:
            return error_response(f"unknown preset {options.preset!r}", ErrorCode.INVALID_FLAG,
                                  "List presets with 'paneorch recipes'", model=SpawnOutput, **fields)
        counts = {agent_type: recipe.count(agent_type) for agent_type in SPAWN_TYPES}
    try:
        strategy = parse_strategy(options.assign_strategy, AssignStrategy.TOP_N) if options.assign_work else None
    except ValueError as exc:
        return error_response(exc, ErrorCode.INVALID_FLAG, model=SpawnOutput, **fields)

    try:
        if not mux.is_available():
            return error_response("multiplexer is not installed", ErrorCode.DEPENDENCY_MISSING,
                                  "Install tmux to spawn sessions", model=SpawnOutput, **fields)
        if options.safety and mux.session_exists(session):
            return error_response(
                f"session '{session}' already exists (safety mode prevents reuse)",
                ErrorCode.INVALID_FLAG,
                f"Kill it first with 'tmux kill-session -t {session}' or choose a new name",
                model=SpawnOutput,
                **fields,
            )
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=SpawnOutput, **fields)

    directory = options.directory or str(project_root or os.getcwd())
    fields["working_dir"] = directory
    fields["recovery"] = load_recovery(config.handoff_dir(project_root), session)
    if strategy is not None:
        fields["mode"] = "orchestrator"
        fields["assign_strategy"] = strategy.value

    if sum(counts.values()) == 0:
        return error_response("no agents specified (use cc, cod or gmi counts, or a preset)", ErrorCode.INVALID_FLAG,
                              "Specify at least one agent count", model=SpawnOutput, **fields)
    slots = plan_slots(counts, include_user=not options.no_user)
    if options.dry_run:
        return success_response(SpawnOutput, command="spawn", started=started, dry_run=True,
                                would_create=preview(session, slots, options.custom_names), **fields)

    names = AgentNameMap(session, list(options.custom_names))
    agents: list[SpawnedAgent] = []
    try:
        for pane, slot in _ensure_panes(mux, session, directory, slots, config.spawn.layout):
            name = slot.name(names, pane.ref.label)
            agents.append(_launch(mux, pane, slot, session, name, directory, config.launch_command(slot.agent_type)))
    except PaneOrchestratorError as exc:
        logger.warning("spawn of %s failed after %d pane(s): %s", session, len(agents), exc)
        return error_from_exception(exc, model=SpawnOutput, agents=agents, **fields)
    record_change(ChangeKind.SPAWN, session, agents=len(agents))
    logger.info("spawned %d pane(s) in %s", len(agents), session)

    try:
        if options.wait_ready:
            timeout = options.ready_timeout or config.spawn.ready_timeout
            agents = wait_for_ready(mux, session, agents, timeout, config.spawn.ready_poll, cancel)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=SpawnOutput, agents=agents, **fields)

    warnings = [f"{agent.pane}: {agent.error}" for agent in agents if agent.error]
    if strategy is not None:
        assignments: list[SpawnAssignment] = []
        if backlog is None:
            warnings.append("orchestrator mode requested without a backlog service; no work assigned")
        else:
            try:
                assignments = assign_work(mux, session, agents, backlog, strategy)
            except PaneOrchestratorError as exc:
                logger.warning("work assignment for %s skipped: %s", session, exc)
                warnings.append(f"work assignment skipped: {exc}")
        fields["assignments"] = assignments

    hints = AgentHints(
        summary=f"{len(agents)} pane(s) in {session}, {sum(1 for a in agents if a.ready)} ready",
        warnings=warnings or None,
    )
    return success_response(
        SpawnOutput,
        command="spawn",
        started=started,
        agents=agents,
        total_startup_ms=int((time.monotonic() - started) * 1000),
        agent_hints=hints,
        **fields,
    )
