"""Session health diagnosis and stuck-pane recovery.

:func:`diagnose` classifies every agent pane, maps the state onto a health tag,
rolls the tags up into a session verdict and emits one recommendation per
unhealthy pane. With ``fix`` set, auto-fixable recommendations (interrupt and
restart) are executed and reported under ``fixes_applied``.

:func:`health_restart_stuck` restarts panes whose content has not changed for
longer than a threshold.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum

from pydantic import Field

from .agents import AgentType
from .alerts import Alerter
from .capture import capture_pane
from .config import OrchestratorConfig
from .control.restart import RestartTimings, restart_panes
from .envelope import (
    Envelope,
    ErrorCode,
    WireModel,
    error_from_exception,
    error_response,
    success_response,
    utc_timestamp,
)
from .errors import MultiplexerError, PaneOrchestratorError
from .indicators import PaneIndicator
from .mux import Multiplexer, PaneInfo, dispatch_panes, resolve_session_panes, select_panes
from .state import PaneState, StateDetection, classify_pane
from .timing import humanize_duration, parse_duration

logger = logging.getLogger(__name__)

# Busy panes silent for longer than this are unresponsive
UNRESPONSIVE_AFTER_SECONDS = 300
DEFAULT_STUCK_THRESHOLD = "5m"
MIN_STUCK_THRESHOLD_SECONDS = 30.0
CLI_NAME = "paneorch"


class HealthTag(str, Enum):
    HEALTHY = "healthy"
    RATE_LIMITED = "rate_limited"
    UNRESPONSIVE = "unresponsive"
    CRASHED = "crashed"
    UNKNOWN = "unknown"


class OverallHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class FixAction(str, Enum):
    RESTART = "restart"
    INTERRUPT = "interrupt"
    WAIT = "wait"
    WAIT_OR_SWITCH = "wait_or_switch"
    INVESTIGATE = "investigate"


class DiagnoseSummary(WireModel):
    total_panes: int = 0
    healthy: int = 0
    rate_limited: int = 0
    unresponsive: int = 0
    crashed: int = 0
    unknown: int = 0


class DiagnosePanes(WireModel):
    healthy: list[int] = Field(default_factory=list)
    rate_limited: list[int] = Field(default_factory=list)
    unresponsive: list[int] = Field(default_factory=list)
    crashed: list[int] = Field(default_factory=list)
    unknown: list[int] = Field(default_factory=list)


class DiagnoseRecommendation(WireModel):
    pane: int
    status: HealthTag
    action: FixAction
    reason: str
    auto_fixable: bool = False
    fix_command: str = ""


class FixResult(WireModel):
    pane: int
    action: FixAction
    success: bool
    error: str | None = None


class PaneHealth(WireModel):
    pane: int
    agent_type: str
    state: PaneState
    health: HealthTag
    reason: str
    wait_seconds: int | None = None


class DiagnoseOutput(Envelope):
    session: str
    overall_health: OverallHealth = OverallHealth.HEALTHY
    summary: DiagnoseSummary = Field(default_factory=DiagnoseSummary)
    panes: DiagnosePanes = Field(default_factory=DiagnosePanes)
    details: list[PaneHealth] = Field(default_factory=list)
    recommendations: list[DiagnoseRecommendation] = Field(default_factory=list)
    auto_fix_available: bool = False
    fixes_applied: list[FixResult] | None = None


class DiagnoseBriefOutput(Envelope):
    session: str
    overall_health: OverallHealth = OverallHealth.HEALTHY
    summary: str = ""
    has_issues: bool = False
    fix_available: bool = False


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def health_for(detection: StateDetection, pane: PaneInfo, now: float) -> HealthTag:
    """Map a state detection onto a health tag.

    Busy panes whose multiplexer activity stamp is older than
    :data:`UNRESPONSIVE_AFTER_SECONDS` are unresponsive; a dead pane is crashed
    regardless of its output.
    """
    if pane.dead:
        return HealthTag.CRASHED
    state = PaneState(detection.state)
    if state == PaneState.CRASHED:
        return HealthTag.CRASHED
    if state == PaneState.RATE_LIMITED:
        return HealthTag.RATE_LIMITED
    if state == PaneState.ACTIVE:
        if pane.last_activity and now - pane.last_activity > UNRESPONSIVE_AFTER_SECONDS:
            return HealthTag.UNRESPONSIVE
        return HealthTag.HEALTHY
    if state == PaneState.IDLE:
        return HealthTag.HEALTHY
    return HealthTag.UNKNOWN


def determine_overall_health(summary: DiagnoseSummary) -> OverallHealth:
    if summary.crashed > 0 or summary.unresponsive > summary.healthy:
        return OverallHealth.CRITICAL
    if summary.total_panes == 0 or summary.healthy == summary.total_panes:
        return OverallHealth.HEALTHY
    return OverallHealth.DEGRADED


def build_rate_limit_recommendation(session: str, pane: int, wait_seconds: int) -> DiagnoseRecommendation:
    if wait_seconds > 0:
        return DiagnoseRecommendation(
            pane=pane,
            status=HealthTag.RATE_LIMITED,
            action=FixAction.WAIT,
            reason=f"rate limited; retry in about {wait_seconds}s",
            fix_command=f"sleep {wait_seconds} && {CLI_NAME} diagnose {session} --pane={pane}",
        )
    return DiagnoseRecommendation(
        pane=pane,
        status=HealthTag.RATE_LIMITED,
        action=FixAction.WAIT_OR_SWITCH,
        reason="rate limited with no wait hint; wait or switch to another agent",
        fix_command=f"{CLI_NAME} send {session} --type=<other-agent> --msg=<task>",
    )


def build_recommendation(session: str, pane: int, health: HealthTag, reason: str,
                         wait_seconds: int = 0) -> DiagnoseRecommendation | None:
    if health == HealthTag.HEALTHY:
        return None
    if health == HealthTag.RATE_LIMITED:
        return build_rate_limit_recommendation(session, pane, wait_seconds)
    if health == HealthTag.CRASHED:
        return DiagnoseRecommendation(
            pane=pane, status=health, action=FixAction.RESTART, reason=reason or "agent process exited",
            auto_fixable=True, fix_command=f"{CLI_NAME} restart-pane {session} --panes={pane}",
        )
    if health == HealthTag.UNRESPONSIVE:
        return DiagnoseRecommendation(
            pane=pane, status=health, action=FixAction.INTERRUPT,
            reason=reason or f"no output for more than {humanize_duration(UNRESPONSIVE_AFTER_SECONDS)}",
            auto_fixable=True, fix_command=f"{CLI_NAME} interrupt {session} --panes={pane}",
        )
    return DiagnoseRecommendation(
        pane=pane, status=health, action=FixAction.INVESTIGATE, reason=reason or "state could not be determined",
        fix_command=f"{CLI_NAME} inspect-pane {session} --pane={pane}",
    )


def brief_summary(summary: DiagnoseSummary) -> str:
    """``"3/4 healthy, 1 rate_limited"``."""
    parts = [f"{summary.healthy}/{summary.total_panes} healthy"]
    for tag in (HealthTag.RATE_LIMITED, HealthTag.UNRESPONSIVE, HealthTag.CRASHED, HealthTag.UNKNOWN):
        count = getattr(summary, tag.value)
        if count:
            parts.append(f"{count} {tag.value}")
    return ", ".join(parts)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def _apply_fix(
    mux: Multiplexer,
    session: str,
    recommendation: DiagnoseRecommendation,
    *,
    config: OrchestratorConfig,
    alerter: Alerter | None,
    timings: RestartTimings | None,
    cancel: threading.Event | None,
    panes: dict[int, PaneInfo],
) -> FixResult:
    action = FixAction(recommendation.action)
    if action == FixAction.INTERRUPT:
        try:
            mux.send_interrupt(panes[recommendation.pane].ref)
        except MultiplexerError as exc:
            return FixResult(pane=recommendation.pane, action=action, success=False, error=str(exc))
        return FixResult(pane=recommendation.pane, action=action, success=True)

    output = restart_panes(mux, session, [recommendation.pane], config=config, alerter=alerter,
                           timings=timings, cancel=cancel)
    return FixResult(pane=recommendation.pane, action=action, success=output.success, error=output.error)


def diagnose(
    mux: Multiplexer,
    session: str,
    *,
    pane: int = -1,
    fix: bool = False,
    brief: bool = False,
    config: OrchestratorConfig | None = None,
    alerter: Alerter | None = None,
    timings: RestartTimings | None = None,
    now: float | None = None,
    cancel: threading.Event | None = None,
) -> DiagnoseOutput | DiagnoseBriefOutput:
    """Diagnose the agent panes of ``session`` (one pane when ``pane >= 0``)."""
    started = time.monotonic()
    config = config or OrchestratorConfig()
    now = time.time() if now is None else now
    model = DiagnoseBriefOutput if brief else DiagnoseOutput
    try:
        panes = resolve_session_panes(mux, session)
        if pane >= 0:
            panes = select_panes(panes, [pane], session)
        details: list[PaneHealth] = []
        for info in panes:
            if info.agent_type == AgentType.USER:
                continue
            _, lines = capture_pane(mux, info.ref)
            detection = classify_pane(lines, info.agent_type, info.title)
            health = health_for(detection, info, now)
            wait = detection.error_check.wait_seconds
            details.append(PaneHealth(
                pane=info.index,
                agent_type=detection.agent_type.value,
                state=detection.state,
                health=health,
                reason=detection.reason,
                wait_seconds=wait or None,
            ))
            logger.debug("diagnose %s: %s (%s)", info.ref.wire, health.value, detection.reason)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=model, session=session)

    summary = DiagnoseSummary(total_panes=len(details))
    grouped = DiagnosePanes()
    recommendations = []
    for item in details:
        tag = HealthTag(item.health)
        setattr(summary, tag.value, getattr(summary, tag.value) + 1)
        getattr(grouped, tag.value).append(item.pane)
        recommendation = build_recommendation(session, item.pane, tag, item.reason, item.wait_seconds or 0)
        if recommendation is not None:
            recommendations.append(recommendation)
        if alerter is not None and tag != HealthTag.HEALTHY:
            alerter.send_state_change(session, str(item.pane), item.agent_type, "unknown", tag.value, item.reason)

    overall = determine_overall_health(summary)
    auto_fix_available = any(r.auto_fixable for r in recommendations)

    if brief:
        return success_response(
            DiagnoseBriefOutput,
            command="diagnose",
            started=started,
            session=session,
            overall_health=overall,
            summary=brief_summary(summary),
            has_issues=overall != OverallHealth.HEALTHY,
            fix_available=auto_fix_available,
        )

    fixes = None
    if fix:
        by_index = {info.index: info for info in panes}
        fixes = [
            _apply_fix(mux, session, r, config=config, alerter=alerter, timings=timings, cancel=cancel,
                       panes=by_index)
            for r in recommendations if r.auto_fixable
        ]
        logger.info("diagnose %s: applied %d fixes", session, len(fixes))

    return success_response(
        DiagnoseOutput,
        command="diagnose",
        started=started,
        session=session,
        overall_health=overall,
        summary=summary,
        panes=grouped,
        details=details,
        recommendations=recommendations,
        auto_fix_available=auto_fix_available,
        fixes_applied=fixes,
    )


class StuckPane(WireModel):
    pane: str
    agent_type: str
    idle_seconds: int
    idle: str


class RestartStuckOutput(Envelope):
    session: str
    threshold: str
    dry_run: bool = False
    checked_at: str = Field(default_factory=utc_timestamp)
    stuck_panes: list[StuckPane] = Field(default_factory=list)
    restarted: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


def _idle_seconds(pane: PaneInfo, now: float, indicator: PaneIndicator | None) -> float | None:
    if indicator is not None:
        tracked = indicator.seconds_since_change(pane.ref)
        if tracked is not None:
            return tracked
    if pane.last_activity <= 0:
        return None
    return max(now - pane.last_activity, 0.0)


def health_restart_stuck(
    mux: Multiplexer,
    session: str,
    *,
    threshold: str | float = DEFAULT_STUCK_THRESHOLD,
    dry_run: bool = False,
    config: OrchestratorConfig | None = None,
    alerter: Alerter | None = None,
    indicator: PaneIndicator | None = None,
    timings: RestartTimings | None = None,
    now: float | None = None,
    cancel: threading.Event | None = None,
) -> RestartStuckOutput:
    """Restart agent panes idle for longer than ``threshold`` (at least 30s)."""
    started = time.monotonic()
    fields = {"session": session, "threshold": str(threshold), "dry_run": dry_run}
    try:
        limit = parse_duration(threshold)
    except ValueError as exc:
        return error_response(exc, ErrorCode.INVALID_FLAG, "Use a duration such as 5m or 300s",
                              model=RestartStuckOutput, **fields)
    if limit < MIN_STUCK_THRESHOLD_SECONDS:
        return error_response(f"threshold must be at least {MIN_STUCK_THRESHOLD_SECONDS:g}s, got {threshold}",
                              ErrorCode.INVALID_FLAG, "Use --threshold=30s or longer",
                              model=RestartStuckOutput, **fields)

    now = time.time() if now is None else now
    try:
        panes = dispatch_panes(mux, session)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=RestartStuckOutput, **fields)

    stuck: list[StuckPane] = []
    stuck_indices: list[int] = []
    for pane in panes:
        idle = _idle_seconds(pane, now, indicator)
        if idle is None or idle <= limit:
            continue
        stuck.append(StuckPane(pane=pane.ref.label, agent_type=pane.agent_type.value, idle_seconds=int(idle),
                               idle=humanize_duration(idle)))
        stuck_indices.append(pane.index)

    restarted: list[str] = []
    failed: list[str] = []
    if stuck_indices and not dry_run:
        logger.info("restarting %d stuck panes in %s", len(stuck_indices), session)
        output = restart_panes(mux, session, stuck_indices, config=config, alerter=alerter, timings=timings,
                               cancel=cancel)
        restarted = list(output.restarted)
        failed = list(output.failed)

    return success_response(
        RestartStuckOutput,
        command="health-restart-stuck",
        started=started,
        stuck_panes=stuck,
        restarted=restarted,
        failed=failed,
        **fields,
    )
