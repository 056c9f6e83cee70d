"""Session-wide views: version, status, snapshot (full or delta) and markdown."""

from __future__ import annotations

import logging
import platform
import sys
import time
from datetime import datetime

from pydantic import Field

from . import __version__
from .agents import AgentType, detect_model
from .alerts import Alerter, get_alerter
from .envelope import (
    AgentHints,
    Envelope,
    ErrorCode,
    PaginationInfo,
    WireModel,
    apply_pagination,
    error_response,
    format_timestamp,
    pagination_hints,
    success_response,
    utc_now,
    utc_timestamp,
)
from .errors import MultiplexerError, PaneOrchestratorError
from .events import EventBuffer, StateChange, get_event_buffer
from .history import parse_since
from .mux import Multiplexer, PaneInfo, SessionInfo
from .state import PaneState
from .survey import PaneSurvey, estimate_context, survey_panes
from .tools.backlog import Backlog

logger = logging.getLogger(__name__)

STATUS_CAPTURE_LINES = 20
CONTEXT_WARNING_PERCENT = 70.0
CONTEXT_CRITICAL_PERCENT = 85.0


# ---------------------------------------------------------------------------
# version
# ---------------------------------------------------------------------------


class SystemInfo(WireModel):
    version: str = __version__
    python_version: str = Field(default_factory=platform.python_version)
    os: str = Field(default_factory=lambda: sys.platform)
    arch: str = Field(default_factory=platform.machine)
    multiplexer_available: bool | None = None


class VersionOutput(Envelope):
    system: SystemInfo = Field(default_factory=SystemInfo)


def version() -> VersionOutput:
    return success_response(VersionOutput, command="version", started=time.monotonic())


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


class AgentStatus(WireModel):
    pane: str
    pane_idx: int
    window: int
    type: str
    model: str
    title: str
    state: str
    is_active: bool = False
    pid: int | None = None
    seconds_since_output: int | None = None
    context_tokens: int | None = None
    context_limit: int | None = None
    context_percent: float | None = None


class SessionStatus(WireModel):
    name: str
    exists: bool = True
    attached: bool = False
    windows: int = 0
    panes: int = 0
    agents: list[AgentStatus] = Field(default_factory=list)


class StatusSummary(WireModel):
    total_sessions: int = 0
    total_agents: int = 0
    attached_count: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)


class StatusAlert(WireModel):
    type: str
    session: str
    pane: str
    usage_percent: float
    context_model: str
    severity: str


class BeadsSummary(WireModel):
    open: int = 0
    ready: int = 0
    in_progress: int = 0
    blocked: int = 0


class StatusOutput(Envelope):
    generated_at: str = Field(default_factory=utc_timestamp)
    system: SystemInfo = Field(default_factory=SystemInfo)
    sessions: list[SessionStatus] = Field(default_factory=list)
    summary: StatusSummary = Field(default_factory=StatusSummary)
    alerts: list[StatusAlert] = Field(default_factory=list)
    beads: BeadsSummary | None = None
    pagination: PaginationInfo | None = None


def _age_seconds(pane: PaneInfo, now: float) -> int | None:
    if pane.last_activity <= 0:
        return None
    return max(int(now - pane.last_activity), 0)


def _agent_status(survey: PaneSurvey, now: float) -> AgentStatus:
    pane = survey.pane
    agent_type = survey.agent_type
    status = AgentStatus(
        pane=pane.ref.label,
        pane_idx=pane.index,
        window=pane.ref.window,
        type=agent_type.value,
        model=detect_model(agent_type, pane.title),
        title=pane.title,
        state=survey.state.value,
        is_active=pane.active,
        pid=pane.pid,
        seconds_since_output=_age_seconds(pane, now),
    )
    if agent_type.is_agent and not survey.error:
        usage = estimate_context(survey.lines, agent_type, pane.title)
        status = status.model_copy(update={
            "context_tokens": usage.with_overhead,
            "context_limit": usage.limit,
            "context_percent": usage.percent,
        })
    return status


def _context_alert(session: str, agent: AgentStatus) -> StatusAlert | None:
    if agent.context_percent is None or agent.context_percent < CONTEXT_WARNING_PERCENT:
        return None
    severity = "critical" if agent.context_percent >= CONTEXT_CRITICAL_PERCENT else "warning"
    return StatusAlert(type="context_warning", session=session, pane=agent.pane,
                       usage_percent=agent.context_percent, context_model=agent.model, severity=severity)


def _beads_summary(backlog: Backlog | None) -> BeadsSummary | None:
    if backlog is None:
        return None
    try:
        quick_ref = backlog.triage().triage.quick_ref
    except PaneOrchestratorError as exc:
        logger.debug("beads summary unavailable: %s", exc)
        return None
    return BeadsSummary(open=quick_ref.open_count, ready=quick_ref.actionable_count,
                        in_progress=quick_ref.in_progress_count, blocked=quick_ref.blocked_count)


def _list_sessions(mux: Multiplexer) -> list[SessionInfo] | None:
    """Running sessions, or ``None`` when no multiplexer server is reachable."""
    if not mux.is_available():
        return None
    try:
        return sorted(mux.list_sessions(), key=lambda info: info.name)
    except MultiplexerError as exc:
        logger.debug("no multiplexer server: %s", exc)
        return None


def collect_session(mux: Multiplexer, info: SessionInfo, *, lines: int = STATUS_CAPTURE_LINES,
                    now: float | None = None) -> SessionStatus:
    panes = sorted(mux.list_panes(info.name), key=lambda pane: pane.ref)
    now = time.time() if now is None else now
    agents = [_agent_status(survey, now) for survey in survey_panes(mux, panes, lines)]
    return SessionStatus(name=info.name, attached=info.attached, windows=info.windows, panes=len(panes),
                         agents=agents)


def status(
    mux: Multiplexer,
    *,
    backlog: Backlog | None = None,
    limit: int = 0,
    offset: int = 0,
    now: float | None = None,
) -> StatusOutput:
    """Every session with its classified panes.

    A missing multiplexer server is not an error: the output simply lists no
    sessions and reports ``multiplexer_available=false``.
    """
    started = time.monotonic()
    if limit < 0 or offset < 0:
        return error_response("limit and offset must be >= 0", ErrorCode.INVALID_FLAG, model=StatusOutput)
    infos = _list_sessions(mux)
    system = SystemInfo(multiplexer_available=infos is not None)
    sessions: list[SessionStatus] = []
    for info in infos or []:
        try:
            sessions.append(collect_session(mux, info, now=now))
        except MultiplexerError as exc:
            logger.warning("skipping session %s: %s", info.name, exc)

    summary = StatusSummary(total_sessions=len(sessions))
    alerts: list[StatusAlert] = []
    for session in sessions:
        summary.attached_count += int(session.attached)
        for agent in session.agents:
            if AgentType(agent.type).is_agent:
                summary.total_agents += 1
                summary.by_type[agent.type] = summary.by_type.get(agent.type, 0) + 1
            alert = _context_alert(session.name, agent)
            if alert is not None:
                alerts.append(alert)

    page, info = apply_pagination(sessions, limit, offset)
    next_offset, pages_remaining = pagination_hints(info)
    hints = None
    if info is not None:
        hints = AgentHints(summary=f"showing {info.count} of {info.total} sessions", next_offset=next_offset,
                           pages_remaining=pages_remaining)
    return success_response(
        StatusOutput,
        command="status",
        started=started,
        system=system,
        sessions=page,
        summary=summary,
        alerts=alerts,
        beads=_beads_summary(backlog),
        pagination=info,
        agent_hints=hints,
    )


# ---------------------------------------------------------------------------
# snapshot
# ---------------------------------------------------------------------------


class SnapshotAgent(WireModel):
    pane: str
    type: str
    model: str
    state: str
    reason: str
    last_output_age_sec: int | None = None
    output_tail_lines: int = 0
    rate_limited: bool = False
    wait_seconds: int | None = None


class SnapshotSession(WireModel):
    name: str
    attached: bool = False
    agents: list[SnapshotAgent] = Field(default_factory=list)


class SnapshotOutput(Envelope):
    ts: str = Field(default_factory=utc_timestamp)
    sessions: list[SnapshotSession] = Field(default_factory=list)
    beads_summary: BeadsSummary | None = None
    alerts: list[str] = Field(default_factory=list)
    pagination: PaginationInfo | None = None


class SnapshotDeltaOutput(Envelope):
    ts: str = Field(default_factory=utc_timestamp)
    since: str
    changes: list[StateChange] = Field(default_factory=list)


def _snapshot_agent(survey: PaneSurvey, now: float) -> SnapshotAgent:
    detection = survey.detection
    error_check = detection.error_check if detection else None
    return SnapshotAgent(
        pane=survey.pane.ref.label,
        type=survey.agent_type.value,
        model=detect_model(survey.agent_type, survey.pane.title),
        state=survey.state.value,
        reason=detection.reason if detection else survey.error or "capture failed",
        last_output_age_sec=_age_seconds(survey.pane, now),
        output_tail_lines=len(survey.lines),
        rate_limited=bool(error_check and error_check.rate_limited),
        wait_seconds=error_check.wait_seconds if error_check and error_check.wait_seconds else None,
    )


def snapshot_delta(since: datetime, *, session: str | None = None,
                   events: EventBuffer | None = None) -> SnapshotDeltaOutput:
    started = time.monotonic()
    changes = (events or get_event_buffer()).since(since, session)
    return success_response(SnapshotDeltaOutput, command="snapshot", started=started,
                            since=format_timestamp(since), changes=changes)


def snapshot(
    mux: Multiplexer,
    *,
    since: str | None = None,
    backlog: Backlog | None = None,
    alerter: Alerter | None = None,
    events: EventBuffer | None = None,
    limit: int = 0,
    offset: int = 0,
    now: float | None = None,
) -> SnapshotOutput | SnapshotDeltaOutput:
    """Full orchestration state, or only the changes newer than ``since``."""
    started = time.monotonic()
    if since:
        try:
            since_at = parse_since(since)
        except ValueError as exc:
            return error_response(exc, ErrorCode.INVALID_FLAG, "Use --since=5m or an RFC3339 timestamp",
                                  model=SnapshotDeltaOutput, since=since)
        return snapshot_delta(since_at or utc_now(), events=events)
    if limit < 0 or offset < 0:
        return error_response("limit and offset must be >= 0", ErrorCode.INVALID_FLAG, model=SnapshotOutput)

    now = time.time() if now is None else now
    sessions: list[SnapshotSession] = []
    idle: list[str] = []
    active: list[str] = []
    for info in _list_sessions(mux) or []:
        try:
            panes = sorted(mux.list_panes(info.name), key=lambda pane: pane.ref)
        except MultiplexerError as exc:
            logger.warning("skipping session %s: %s", info.name, exc)
            continue
        agents = []
        for survey in survey_panes(mux, panes, STATUS_CAPTURE_LINES):
            agents.append(_snapshot_agent(survey, now))
            if not survey.agent_type.is_agent:
                continue
            key = f"{info.name}:{survey.pane.ref.label}"
            if survey.state == PaneState.IDLE:
                idle.append(key)
            elif survey.state == PaneState.ACTIVE:
                active.append(key)
        sessions.append(SnapshotSession(name=info.name, attached=info.attached, agents=agents))

    alerts = [f"[{stored.severity}] {stored.alert.message}"
              for stored in (alerter or get_alerter()).list_alerts()]
    page, info = apply_pagination(sessions, limit, offset)
    next_offset, pages_remaining = pagination_hints(info)
    hints = AgentHints(
        summary=f"{len(idle)} idle, {len(active)} active agents",
        idle_agents=sorted(idle),
        active_agents=sorted(active),
        next_offset=next_offset,
        pages_remaining=pages_remaining,
    )
    return success_response(
        SnapshotOutput,
        command="snapshot",
        started=started,
        sessions=page,
        beads_summary=_beads_summary(backlog),
        alerts=alerts,
        pagination=info,
        agent_hints=hints,
    )


# ---------------------------------------------------------------------------
# markdown
# ---------------------------------------------------------------------------


class MarkdownOutput(Envelope):
    markdown: str = ""


def _cell(value: object) -> str:
    return str(value).replace("|", "\\|") if value not in (None, "") else "-"


def render_markdown(sessions: list[SessionStatus]) -> str:
    """Sessions and agents as markdown tables."""
    if not sessions:
        return "# Sessions\n\nNo sessions running.\n"
    out = [
        "# Sessions",
        "",
        "| Session | Attached | Windows | Panes | Agents |",
        "|---|---|---|---|---|",
    ]
    for session in sessions:
        agents = sum(1 for agent in session.agents if AgentType(agent.type).is_agent)
        out.append(f"| {_cell(session.name)} | {'yes' if session.attached else 'no'} | {session.windows} "
                   f"| {session.panes} | {agents} |")
    for session in sessions:
        out += [
            "",
            f"## {session.name}",
            "",
            "| Pane | Type | Model | State | Context |",
            "|---|---|---|---|---|",
        ]
        for agent in session.agents:
            context = f"{agent.context_percent:.0f}%" if agent.context_percent is not None else "-"
            out.append(f"| {agent.pane} | {agent.type} | {_cell(agent.model)} | {agent.state} | {context} |")
    return "\n".join(out) + "\n"


def markdown(mux: Multiplexer, *, session: str | None = None, now: float | None = None) -> MarkdownOutput:
    started = time.monotonic()
    infos = _list_sessions(mux) or []
    if session:
        infos = [info for info in infos if info.name == session]
        if not infos:
            return error_response(f"session '{session}' not found", ErrorCode.SESSION_NOT_FOUND,
                                  "Use 'paneorch status' to see available sessions", model=MarkdownOutput)
    sessions = []
    for info in infos:
        try:
            sessions.append(collect_session(mux, info, now=now))
        except MultiplexerError as exc:
            logger.warning("skipping session %s: %s", info.name, exc)
    return success_response(MarkdownOutput, command="markdown", started=started, markdown=render_markdown(sessions))
