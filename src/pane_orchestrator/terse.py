"""Single-line session state for token-constrained readers.

Format::

    S:{session}|A:{active}/{total}|W:{working}|I:{idle}|E:{error}|C:{ctx}%|B:R{r}/I{i}/B{b}|M:{mail}|!:{alerts}

The alert segment lists only non-zero counts (``2c``, ``1w``, ``2c,1w``) and
collapses to ``0`` when there are none. :func:`parse_terse` is the exact
inverse of :func:`format_terse`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass

from pydantic import Field

from .agents import AgentType
from .alerts import AlertSeverity, Alerter, get_alerter
from .envelope import Envelope, WireModel, success_response
from .errors import MultiplexerError, PaneOrchestratorError
from .mux import Multiplexer
from .state import PaneState
from .survey import estimate_context, survey_panes
from .tools.backlog import Backlog

logger = logging.getLogger(__name__)

NO_SESSION = "-"
TERSE_CAPTURE_LINES = 20
SEGMENT_SEPARATOR = "|"
SESSION_SEPARATOR = ";"


@dataclass(frozen=True, slots=True)
class TerseState:
    session: str
    active_agents: int = 0
    total_agents: int = 0
    working_agents: int = 0
    idle_agents: int = 0
    error_agents: int = 0
    context_pct: int = 0
    ready_beads: int = 0
    in_progress_beads: int = 0
    blocked_beads: int = 0
    unread_mail: int = 0
    critical_alerts: int = 0
    warning_alerts: int = 0

    def __str__(self) -> str:
        return format_terse(self)


def _alerts_segment(critical: int, warning: int) -> str:
    parts = []
    if critical:
        parts.append(f"{critical}c")
    if warning:
        parts.append(f"{warning}w")
    return ",".join(parts) or "0"


def format_terse(state: TerseState) -> str:
    return SEGMENT_SEPARATOR.join((
        f"S:{state.session}",
        f"A:{state.active_agents}/{state.total_agents}",
        f"W:{state.working_agents}",
        f"I:{state.idle_agents}",
        f"E:{state.error_agents}",
        f"C:{state.context_pct}%",
        f"B:R{state.ready_beads}/I{state.in_progress_beads}/B{state.blocked_beads}",
        f"M:{state.unread_mail}",
        f"!:{_alerts_segment(state.critical_alerts, state.warning_alerts)}",
    ))


def _int(value: str, segment: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise ValueError(f"invalid number {value!r} in terse segment {segment!r}") from exc
    if number < 0:
        raise ValueError(f"negative count in terse segment {segment!r}")
    return number


def parse_terse(text: str) -> TerseState:
    """Parse one terse line.

    Raises:
        ValueError: If a segment is malformed or the session segment is missing.
    """
    fields: dict[str, object] = {}
    for segment in text.strip().split(SEGMENT_SEPARATOR):
        key, sep, value = segment.partition(":")
        if not sep:
            raise ValueError(f"terse segment {segment!r} has no key")
        if key == "S":
            fields["session"] = value
        elif key == "A":
            active, slash, total = value.partition("/")
            if not slash:
                raise ValueError(f"terse segment {segment!r} must be active/total")
            fields["active_agents"] = _int(active, segment)
            fields["total_agents"] = _int(total, segment)
        elif key == "W":
            fields["working_agents"] = _int(value, segment)
        elif key == "I":
            fields["idle_agents"] = _int(value, segment)
        elif key == "E":
            fields["error_agents"] = _int(value, segment)
        elif key == "C":
            fields["context_pct"] = _int(value.removesuffix("%"), segment)
        elif key == "B":
            names = {"R": "ready_beads", "I": "in_progress_beads", "B": "blocked_beads"}
            for part in value.split("/"):
                if not part or part[0] not in names:
                    raise ValueError(f"invalid bead count {part!r} in terse segment {segment!r}")
                fields[names[part[0]]] = _int(part[1:], segment)
        elif key == "M":
            fields["unread_mail"] = _int(value, segment)
        elif key == "!":
            if value == "0":
                continue
            for part in value.split(","):
                if part.endswith("c"):
                    fields["critical_alerts"] = _int(part[:-1], segment)
                elif part.endswith("w"):
                    fields["warning_alerts"] = _int(part[:-1], segment)
                else:
                    raise ValueError(f"invalid alert count {part!r} in terse segment {segment!r}")
        else:
            raise ValueError(f"unknown terse key {key!r}")
    if "session" not in fields:
        raise ValueError("terse line has no S: segment")
    return TerseState(**fields)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Operation
# ---------------------------------------------------------------------------


class TerseStateModel(WireModel):
    session: str
    active_agents: int
    total_agents: int
    working_agents: int
    idle_agents: int
    error_agents: int
    context_pct: int
    ready_beads: int
    in_progress_beads: int
    blocked_beads: int
    unread_mail: int
    critical_alerts: int
    warning_alerts: int


class TerseOutput(Envelope):
    states: list[TerseStateModel] = Field(default_factory=list)
    terse_lines: list[str] = Field(default_factory=list)

    @property
    def line(self) -> str:
        return SESSION_SEPARATOR.join(self.terse_lines)


def _bead_counts(backlog: Backlog | None) -> tuple[int, int, int]:
    if backlog is None:
        return 0, 0, 0
    try:
        quick_ref = backlog.triage().triage.quick_ref
    except PaneOrchestratorError as exc:
        logger.debug("backlog summary unavailable: %s", exc)
        return 0, 0, 0
    return quick_ref.actionable_count, quick_ref.in_progress_count, quick_ref.blocked_count


def session_state(
    mux: Multiplexer,
    session: str,
    *,
    beads: tuple[int, int, int] = (0, 0, 0),
    alerts: tuple[int, int] = (0, 0),
) -> TerseState:
    """Count agent states for one session; the total includes non-agent panes."""
    panes = mux.list_panes(session)
    agents = [pane for pane in panes if pane.agent_type not in (AgentType.USER, AgentType.UNKNOWN)]
    counts = {"working": 0, "idle": 0, "error": 0}
    usages = []
    for survey in survey_panes(mux, agents, TERSE_CAPTURE_LINES):
        if survey.error or survey.state in (PaneState.ACTIVE, PaneState.UNKNOWN):
            counts["working"] += 1
        elif survey.state == PaneState.IDLE:
            counts["idle"] += 1
        else:
            counts["error"] += 1
        if not survey.error:
            usages.append(estimate_context(survey.lines, survey.agent_type, survey.pane.title).percent)
    ready, in_progress, blocked = beads
    return TerseState(
        session=session,
        active_agents=len(agents),
        total_agents=len(panes),
        working_agents=counts["working"],
        idle_agents=counts["idle"],
        error_agents=counts["error"],
        context_pct=round(sum(usages) / len(usages)) if usages else 0,
        ready_beads=ready,
        in_progress_beads=in_progress,
        blocked_beads=blocked,
        critical_alerts=alerts[0],
        warning_alerts=alerts[1],
    )


def terse(mux: Multiplexer, *, backlog: Backlog | None = None, alerter: Alerter | None = None) -> TerseOutput:
    """One terse line per session, or a single ``S:-`` line when none are running."""
    started = time.monotonic()
    stored = (alerter or get_alerter()).list_alerts()
    alerts = (
        sum(1 for a in stored if a.severity == AlertSeverity.CRITICAL),
        sum(1 for a in stored if a.severity == AlertSeverity.WARNING),
    )
    beads = _bead_counts(backlog)
    try:
        sessions = mux.list_sessions() if mux.is_available() else []
    except MultiplexerError as exc:
        logger.debug("listing sessions failed: %s", exc)
        sessions = []
    states = []
    for info in sessions:
        try:
            states.append(session_state(mux, info.name, beads=beads, alerts=alerts))
        except MultiplexerError as exc:
            logger.warning("skipping session %s: %s", info.name, exc)
    if not states:
        ready, in_progress, blocked = beads
        states.append(TerseState(NO_SESSION, ready_beads=ready, in_progress_beads=in_progress,
                                 blocked_beads=blocked, critical_alerts=alerts[0], warning_alerts=alerts[1]))
    return success_response(
        TerseOutput,
        command="terse",
        started=started,
        states=[TerseStateModel(**asdict(s)) for s in states],
        terse_lines=[format_terse(s) for s in states],
    )
