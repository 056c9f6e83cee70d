"""Pick the best pane for the next piece of work."""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum

from pydantic import Field

from ..capture import capture_pane
from ..envelope import Envelope, ErrorCode, WireModel, error_from_exception, error_response, success_response
from ..errors import PaneOrchestratorError
from ..mux import Multiplexer
from ..state import PaneState, classify_pane
from .targets import TargetFilter, resolve_targets

logger = logging.getLogger(__name__)

STATE_SCORES = {
    PaneState.IDLE: 1.0,
    PaneState.ACTIVE: 0.5,
    PaneState.UNKNOWN: 0.25,
}


class RouteStrategy(str, Enum):
    LEAST_LOADED = "least-loaded"
    FIRST_AVAILABLE = "first-available"
    ROUND_ROBIN = "round-robin"


def parse_strategy(value: str) -> RouteStrategy:
    try:
        return RouteStrategy(value.strip().lower()) if value else RouteStrategy.LEAST_LOADED
    except ValueError as exc:
        choices = ", ".join(s.value for s in RouteStrategy)
        raise ValueError(f"invalid routing strategy {value!r} (expected one of: {choices})") from exc


class RouteCandidate(WireModel):
    pane: str
    pane_index: int
    agent_type: str
    state: PaneState
    score: float = 0.0
    excluded: bool = False
    exclude_reason: str | None = None


def score_state(state: PaneState) -> tuple[float, str | None]:
    """Score in [0, 1]; error, rate-limited and crashed panes are excluded."""
    if state in STATE_SCORES:
        return STATE_SCORES[state], None
    return 0.0, f"pane is {state.value}"


class Router:
    """Strategy selection; keeps the round-robin cursor between calls."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cursor: dict[str, int] = {}

    def select(self, session: str, strategy: RouteStrategy,
               candidates: list[RouteCandidate]) -> RouteCandidate | None:
        available = [c for c in candidates if not c.excluded]
        if not available:
            return None
        if strategy == RouteStrategy.FIRST_AVAILABLE:
            idle = [c for c in available if c.state == PaneState.IDLE]
            return idle[0] if idle else None
        if strategy == RouteStrategy.ROUND_ROBIN:
            with self._lock:
                position = (self._cursor.get(session, -1) + 1) % len(available)
                self._cursor[session] = position
            return available[position]
        # Highest score, lowest pane index on ties
        return max(available, key=lambda c: (c.score, -c.pane_index))


_router = Router()


class RouteOutput(Envelope):
    session: str
    strategy: RouteStrategy
    selected: RouteCandidate | None = None
    candidates: list[RouteCandidate] = Field(default_factory=list)
    reason: str | None = None


def route(
    mux: Multiplexer,
    session: str,
    *,
    strategy: str = RouteStrategy.LEAST_LOADED.value,
    target: TargetFilter | None = None,
    router: Router | None = None,
) -> RouteOutput:
    started = time.monotonic()
    try:
        chosen = parse_strategy(strategy)
    except ValueError as exc:
        return error_response(exc, ErrorCode.INVALID_FLAG, model=RouteOutput, session=session,
                              strategy=RouteStrategy.LEAST_LOADED)
    fields = {"session": session, "strategy": chosen}
    try:
        panes = resolve_targets(mux, session, target or TargetFilter())
        candidates = []
        for pane in panes:
            _, lines = capture_pane(mux, pane.ref)
            state = PaneState(classify_pane(lines, pane.agent_type, pane.title).state)
            score, reason = score_state(state)
            candidates.append(RouteCandidate(
                pane=pane.ref.label, pane_index=pane.index, agent_type=pane.agent_type.value, state=state,
                score=score, excluded=reason is not None, exclude_reason=reason,
            ))
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=RouteOutput, **fields)

    selected = (router or _router).select(session, chosen, candidates)
    if selected is None:
        return error_response("no available agent pane", ErrorCode.RESOURCE_BUSY,
                              "Wait for an agent to go idle with 'paneorch wait'", model=RouteOutput,
                              candidates=candidates, **fields)
    logger.debug("route %s via %s -> %s", session, chosen.value, selected.pane)
    reason = f"{chosen.value}: {selected.state} (score {selected.score:g})"
    return success_response(RouteOutput, command="route", started=started, selected=selected,
                            candidates=candidates, reason=reason, **fields)
