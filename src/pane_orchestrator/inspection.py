"""Per-pane read views: tail, watch-bead, inspect-pane, context and activity."""

from __future__ import annotations

import logging
import re
import threading
import time

from pydantic import Field

from .agents import AgentType, detect_model
from .capture import clean_lines, last_lines
from .config import IndicatorConfig
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
from .indicators import classify_activity
from .mux import Multiplexer, PaneInfo, PaneRef, resolve_session_panes, select_panes
from .state import PaneState
from .survey import PaneSurvey, estimate_context, survey_pane, survey_panes, usage_level
from .timing import humanize_duration, parse_duration, sleep
from .tools.backlog import Backlog

logger = logging.getLogger(__name__)

DEFAULT_TAIL_LINES = 20
DEFAULT_WATCH_LINES = 200
DEFAULT_WATCH_INTERVAL = "30s"
DEFAULT_INSPECT_LINES = 100
DEFAULT_CONTEXT_LINES = 1000
HIGH_USAGE_PERCENT = 70.0
LOW_USAGE_PERCENT = 40.0

_FENCE_RE = re.compile(r"^\s*```\s*([\w+#.-]*)\s*$")


def _session_panes(mux: Multiplexer, session: str, indices: list[int] | None = None) -> list[PaneInfo]:
    """Panes of ``session`` restricted to ``indices``.

    Raises:
        SessionNotFoundError: If the session does not exist.
        PaneNotFoundError: If a requested index is missing.
    """
    return select_panes(resolve_session_panes(mux, session), indices, session)


# ---------------------------------------------------------------------------
# tail
# ---------------------------------------------------------------------------


class PaneTail(WireModel):
    pane: str
    type: str
    state: str
    lines: list[str] = Field(default_factory=list)
    truncated: bool = False
    error: str | None = None


class TailOutput(Envelope):
    session: str
    captured_at: str = Field(default_factory=utc_timestamp)
    panes: list[PaneTail] = Field(default_factory=list)


def tail_hints(tails: list[PaneTail]) -> AgentHints | None:
    """Idle and active pane lists, string-sorted, plus suggestions."""
    idle = sorted(t.pane for t in tails if t.state == PaneState.IDLE)
    active = sorted(t.pane for t in tails if t.state == PaneState.ACTIVE)
    notes = [f"Pane {t.pane} has an error - check output" for t in tails if t.state == PaneState.ERROR]
    if idle and not active:
        notes.append(f"All {len(idle)} agents idle - ready for new prompts")
    elif idle:
        notes.append(f"{len(idle)} idle agents available for parallel work")
    if active:
        notes.append(f"{len(active)} agents actively working - wait or check progress")
    if not (idle or active or notes):
        return None
    return AgentHints(idle_agents=idle, active_agents=active, notes=notes)


def tail(mux: Multiplexer, session: str, *, lines: int = DEFAULT_TAIL_LINES,
         panes: list[int] | None = None) -> TailOutput:
    started = time.monotonic()
    if lines <= 0:
        return error_response(f"lines must be > 0, got {lines}", ErrorCode.INVALID_FLAG, model=TailOutput,
                              session=session)
    try:
        selected = _session_panes(mux, session, panes)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=TailOutput, session=session)

    tails = []
    for survey in survey_panes(mux, selected, lines):
        tails.append(PaneTail(
            pane=survey.pane.ref.label,
            type=survey.agent_type.value,
            state=survey.state.value,
            lines=survey.lines,
            truncated=len(survey.lines) >= lines,
            error=survey.error,
        ))
    return success_response(TailOutput, command="tail", started=started, session=session, panes=tails,
                            agent_hints=tail_hints(tails))


# ---------------------------------------------------------------------------
# watch-bead
# ---------------------------------------------------------------------------


class BeadMention(WireModel):
    pane: str
    agent_type: str
    line: str
    line_num: int
    timestamp: str


class WatchBeadOutput(Envelope):
    session: str
    bead_id: str
    checked_at: str = Field(default_factory=utc_timestamp)
    interval: str = DEFAULT_WATCH_INTERVAL
    polls: int = 0
    panes_scanned: int = 0
    mentions: list[BeadMention] = Field(default_factory=list)
    bead_status: str = "unknown"
    status_error: str | None = None


def bead_mention_pattern(bead_id: str) -> re.Pattern[str]:
    """Whole-word matcher: ``bd-1`` does not match inside ``bd-12`` or ``xbd-1``.

    Raises:
        ValueError: If the id is empty.
    """
    bead_id = bead_id.strip()
    if not bead_id:
        raise ValueError("bead id is required")
    return re.compile(rf"(?<![\w-]){re.escape(bead_id)}(?![\w-])", re.IGNORECASE)


def find_mentions(lines: list[str], pattern: re.Pattern[str]) -> list[tuple[int, str]]:
    """``(line_number, line)`` pairs, 1-based."""
    return [(number, line.strip()) for number, line in enumerate(lines, start=1) if pattern.search(line)]


def watch_bead(
    mux: Multiplexer,
    session: str,
    bead_id: str,
    *,
    panes: list[int] | None = None,
    lines: int = DEFAULT_WATCH_LINES,
    interval: str | float = DEFAULT_WATCH_INTERVAL,
    count: int = 1,
    backlog: Backlog | None = None,
    cancel: threading.Event | None = None,
) -> WatchBeadOutput:
    """Scan agent panes for mentions of ``bead_id`` over ``count`` polls."""
    started = time.monotonic()
    fields = {"session": session, "bead_id": bead_id.strip()}
    try:
        pattern = bead_mention_pattern(bead_id)
        seconds = parse_duration(interval)
    except ValueError as exc:
        return error_response(exc, ErrorCode.INVALID_FLAG, "Provide a bead id and a duration like 30s",
                              model=WatchBeadOutput, **fields)
    if count < 1:
        return error_response(f"count must be >= 1, got {count}", ErrorCode.INVALID_FLAG, model=WatchBeadOutput,
                              **fields)
    try:
        selected = [p for p in _session_panes(mux, session, panes) if p.agent_type is not AgentType.USER]
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=WatchBeadOutput, **fields)

    seen: set[tuple[str, int, str]] = set()
    mentions: list[BeadMention] = []
    scanned: set[str] = set()
    polls = 0
    try:
        for poll in range(count):
            if poll:
                sleep(seconds, cancel)
            polls += 1
            checked = utc_timestamp()
            for pane in selected:
                try:
                    captured = clean_lines(mux.capture(pane.ref, lines))
                except MultiplexerError as exc:
                    logger.debug("capture of %s failed: %s", pane.ref.wire, exc)
                    continue
                scanned.add(pane.ref.label)
                for number, line in find_mentions(captured, pattern):
                    key = (pane.ref.label, number, line)
                    if key in seen:
                        continue
                    seen.add(key)
                    mentions.append(BeadMention(pane=pane.ref.label, agent_type=pane.agent_type.value, line=line,
                                                line_num=number, timestamp=checked))
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=WatchBeadOutput, polls=polls, mentions=mentions, **fields)

    mentions.sort(key=lambda m: (PaneRef.parse(m.pane, session), m.line_num))
    bead_status, status_error = "unknown", None
    if backlog is not None:
        try:
            bead_status = backlog.show(fields["bead_id"]).status or "unknown"
        except PaneOrchestratorError as exc:
            status_error = str(exc)
    return success_response(
        WatchBeadOutput,
        command="watch-bead",
        started=started,
        interval=humanize_duration(seconds),
        polls=polls,
        panes_scanned=len(scanned),
        mentions=mentions,
        bead_status=bead_status,
        status_error=status_error,
        **fields,
    )


# ---------------------------------------------------------------------------
# inspect-pane
# ---------------------------------------------------------------------------


class CodeBlock(WireModel):
    language: str | None = None
    line_start: int
    line_end: int


class InspectAgent(WireModel):
    type: str
    model: str
    title: str
    state: str
    reason: str
    command: str | None = None
    process_running: bool = True


class InspectOutputInfo(WireModel):
    lines: int = 0
    characters: int = 0
    last_lines: list[str] = Field(default_factory=list)
    code_blocks: list[CodeBlock] | None = None
    errors_found: list[str] = Field(default_factory=list)


class InspectContext(WireModel):
    context_percent: float | None = None
    usage_level: str | None = None
    rate_limited: bool = False
    wait_seconds: int | None = None


class InspectPaneOutput(Envelope):
    session: str
    pane_index: int
    pane: str | None = None
    pane_id: str | None = None
    agent: InspectAgent | None = None
    output: InspectOutputInfo | None = None
    context: InspectContext | None = None


def find_code_blocks(lines: list[str]) -> list[CodeBlock]:
    """Fenced code blocks as 1-based inclusive line ranges; an unclosed fence runs to the end."""
    blocks = []
    open_at: int | None = None
    language = ""
    for number, line in enumerate(lines, start=1):
        match = _FENCE_RE.match(line)
        if not match:
            continue
        if open_at is None:
            open_at, language = number, match.group(1)
        else:
            blocks.append(CodeBlock(language=language or None, line_start=open_at, line_end=number))
            open_at = None
    if open_at is not None:
        blocks.append(CodeBlock(language=language or None, line_start=open_at, line_end=len(lines)))
    return blocks


def inspect_pane(
    mux: Multiplexer,
    session: str,
    pane_index: int,
    *,
    lines: int = DEFAULT_INSPECT_LINES,
    include_code: bool = False,
    tail_lines: int = 20,
) -> InspectPaneOutput:
    started = time.monotonic()
    fields = {"session": session, "pane_index": pane_index}
    try:
        pane = _session_panes(mux, session, [pane_index])[0]
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=InspectPaneOutput, **fields)
    survey = survey_pane(mux, pane, lines)
    if survey.detection is None:
        return error_response(f"capture of pane {pane.ref.label} failed: {survey.error}", ErrorCode.INTERNAL_ERROR,
                              "Check the pane with 'paneorch tail'", model=InspectPaneOutput, **fields)

    detection = survey.detection
    agent_type = detection.agent_type
    context = InspectContext(rate_limited=detection.error_check.rate_limited,
                             wait_seconds=detection.error_check.wait_seconds or None)
    if agent_type.is_agent:
        usage = estimate_context(survey.lines, agent_type, pane.title)
        context = context.model_copy(update={"context_percent": usage.percent,
                                             "usage_level": usage_level(usage.percent).value})
    output = InspectOutputInfo(
        lines=len(survey.lines),
        characters=sum(len(line) for line in survey.lines),
        last_lines=last_lines(survey.lines, tail_lines),
        code_blocks=find_code_blocks(survey.lines) if include_code else None,
        errors_found=list(detection.error_check.patterns),
    )
    agent = InspectAgent(
        type=agent_type.value,
        model=detect_model(agent_type, pane.title),
        title=pane.title,
        state=detection.state.value,
        reason=detection.reason,
        command=pane.command or None,
        process_running=not detection.process_check.crashed and not pane.dead,
    )
    return success_response(InspectPaneOutput, command="inspect-pane", started=started, pane=pane.ref.label,
                            pane_id=pane.pane_id or None, agent=agent, output=output, context=context, **fields)


# ---------------------------------------------------------------------------
# context
# ---------------------------------------------------------------------------


class AgentContextInfo(WireModel):
    pane: str
    pane_idx: int
    agent_type: str
    model: str
    estimated_tokens: int
    with_overhead: int
    context_limit: int
    usage_percent: float
    usage_level: str
    confidence: str
    state: str


class ContextSummary(WireModel):
    total_agents: int = 0
    high_usage_count: int = 0
    avg_usage: float = 0.0


class ContextOutput(Envelope):
    session: str
    captured_at: str = Field(default_factory=utc_timestamp)
    agents: list[AgentContextInfo] = Field(default_factory=list)
    summary: ContextSummary = Field(default_factory=ContextSummary)


def context_hints(agents: list[AgentContextInfo]) -> AgentHints | None:
    if not agents:
        return None
    low = sorted(a.pane for a in agents if a.usage_percent < LOW_USAGE_PERCENT)
    high = sorted(a.pane for a in agents if a.usage_percent >= HIGH_USAGE_PERCENT)
    notes = []
    if not high:
        if len(low) == len(agents):
            notes.append("All agents healthy - context usage is low across the board")
        elif low:
            notes.append(f"{len(low)} agent(s) have low usage, others are moderate")
        else:
            notes.append("All agents at moderate context usage - no immediate concerns")
    elif len(high) == len(agents):
        notes.append("All agents have high context usage - consider spawning new sessions")
    else:
        notes.append(f"{len(high)} agent(s) have high context usage")
        if low:
            notes.append(f"{len(low)} agent(s) have room for additional work")
    warnings = [f"pane {pane} is above {HIGH_USAGE_PERCENT:.0f}% context usage" for pane in high]
    return AgentHints(summary=notes[0], notes=notes, warnings=warnings or None)


def context(mux: Multiplexer, session: str, *, lines: int = DEFAULT_CONTEXT_LINES) -> ContextOutput:
    started = time.monotonic()
    try:
        panes = [p for p in _session_panes(mux, session) if p.agent_type.is_agent]
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=ContextOutput, session=session)

    agents = []
    for survey in survey_panes(mux, panes, lines):
        if survey.error:
            continue
        usage = estimate_context(survey.lines, survey.agent_type, survey.pane.title)
        agents.append(AgentContextInfo(
            pane=survey.pane.ref.label,
            pane_idx=survey.pane.index,
            agent_type=survey.agent_type.value,
            model=usage.model,
            estimated_tokens=usage.estimated_tokens,
            with_overhead=usage.with_overhead,
            context_limit=usage.limit,
            usage_percent=usage.percent,
            usage_level=usage.level.value,
            confidence=usage.confidence,
            state=survey.state.value,
        ))
    summary = ContextSummary(
        total_agents=len(agents),
        high_usage_count=sum(1 for a in agents if a.usage_percent >= HIGH_USAGE_PERCENT),
        avg_usage=round(sum(a.usage_percent for a in agents) / len(agents), 1) if agents else 0.0,
    )
    return success_response(ContextOutput, command="context", started=started, session=session, agents=agents,
                            summary=summary, agent_hints=context_hints(agents))


# ---------------------------------------------------------------------------
# activity
# ---------------------------------------------------------------------------


class AgentActivity(WireModel):
    pane: str
    pane_idx: int
    agent_type: str
    state: str
    activity: str | None = None
    seconds_since_output: int | None = None
    reason: str


class ActivitySummary(WireModel):
    total_agents: int = 0
    by_state: dict[str, int] = Field(default_factory=dict)


class ActivityOutput(Envelope):
    session: str
    captured_at: str = Field(default_factory=utc_timestamp)
    agents: list[AgentActivity] = Field(default_factory=list)
    summary: ActivitySummary = Field(default_factory=ActivitySummary)


def _activity(survey: PaneSurvey, thresholds: IndicatorConfig, now: float) -> AgentActivity:
    pane = survey.pane
    age = max(int(now - pane.last_activity), 0) if pane.last_activity > 0 else None
    activity = None
    if age is not None:
        activity = classify_activity(age, thresholds.active_threshold, thresholds.stalled_threshold).value
    return AgentActivity(
        pane=pane.ref.label,
        pane_idx=pane.index,
        agent_type=survey.agent_type.value,
        state=survey.state.value,
        activity=activity,
        seconds_since_output=age,
        reason=survey.detection.reason if survey.detection else survey.error or "capture failed",
    )


def activity(
    mux: Multiplexer,
    session: str,
    *,
    panes: list[int] | None = None,
    agent_type: AgentType | None = None,
    thresholds: IndicatorConfig | None = None,
    now: float | None = None,
) -> ActivityOutput:
    """Agent state plus activity age for each agent pane, with available/busy/problem hints."""
    started = time.monotonic()
    thresholds = thresholds or IndicatorConfig()
    now = time.time() if now is None else now
    try:
        selected = [p for p in _session_panes(mux, session, panes) if p.agent_type.is_agent]
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=ActivityOutput, session=session)
    if agent_type is not None:
        selected = [p for p in selected if p.agent_type is agent_type]

    agents = [_activity(survey, thresholds, now) for survey in survey_panes(mux, selected, DEFAULT_TAIL_LINES)]
    summary = ActivitySummary(total_agents=len(agents))
    for agent in agents:
        summary.by_state[agent.state] = summary.by_state.get(agent.state, 0) + 1

    available = sorted(a.pane for a in agents if a.state == PaneState.IDLE)
    busy = sorted(a.pane for a in agents if a.state == PaneState.ACTIVE)
    problems = sorted(a.pane for a in agents
                      if a.state in (PaneState.ERROR, PaneState.CRASHED, PaneState.RATE_LIMITED)
                      or a.activity == "stalled")
    hints = AgentHints(
        summary=f"{len(available)} available, {len(busy)} busy, {len(problems)} need attention",
        idle_agents=available,
        active_agents=busy,
        warnings=[f"pane {pane} needs attention" for pane in problems] or None,
    )
    return success_response(ActivityOutput, command="activity", started=started, session=session, agents=agents,
                            summary=summary, agent_hints=hints)
