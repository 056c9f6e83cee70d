"""Pane border activity indicators.

A :class:`PaneIndicator` polls the monitored panes of one session, hashes each
captured tail and tracks when the content last changed. The age of that change
is classified as:

- ``active`` when it is at most the active threshold,
- ``stalled`` when it is at least the stalled threshold,
- ``idle`` in between.

The border color is set only on the first observation of a pane and whenever
its classification changes; identical classifications never touch the
multiplexer again.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from pydantic import Field

from .capture import content_hash
from .config import IndicatorConfig
from .envelope import Envelope, WireModel, error_from_exception, success_response
from .errors import MultiplexerError, OperationCancelledError, PaneOrchestratorError, SessionNotFoundError
from .events import ChangeKind, EventBuffer, get_event_buffer
from .mux import Multiplexer, PaneInfo, PaneRef
from .timing import sleep

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 10.0
MIN_POLL_INTERVAL = 1.0
DEFAULT_ACTIVE_THRESHOLD = 30.0
DEFAULT_STALLED_THRESHOLD = 120.0
# Added to the active threshold when the stalled threshold is not above it
THRESHOLD_GAP = 60.0
DEFAULT_INDICATOR_LINES = 20

COLOR_ACTIVE = "#00ff00"
COLOR_IDLE = "#ffff00"
COLOR_STALLED = "#ff0000"


class ActivityStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    STALLED = "stalled"


def classify_activity(since_change: float, active_threshold: float, stalled_threshold: float) -> ActivityStatus:
    if since_change <= active_threshold:
        return ActivityStatus.ACTIVE
    if since_change >= stalled_threshold:
        return ActivityStatus.STALLED
    return ActivityStatus.IDLE


@dataclass(frozen=True, slots=True)
class IndicatorOptions:
    """Normalized loop settings; build with :meth:`create` to apply defaults."""

    session: str
    panes: tuple[int, ...] = ()
    poll_interval: float = DEFAULT_POLL_INTERVAL
    active_threshold: float = DEFAULT_ACTIVE_THRESHOLD
    stalled_threshold: float = DEFAULT_STALLED_THRESHOLD
    capture_lines: int = DEFAULT_INDICATOR_LINES
    color_active: str = COLOR_ACTIVE
    color_idle: str = COLOR_IDLE
    color_stalled: str = COLOR_STALLED

    def __post_init__(self) -> None:
        if not self.session:
            raise ValueError("session is required")
        if self.poll_interval < MIN_POLL_INTERVAL:
            raise ValueError(f"poll_interval must be >= {MIN_POLL_INTERVAL}s, got {self.poll_interval}")
        if self.stalled_threshold <= self.active_threshold:
            raise ValueError("stalled_threshold must be greater than active_threshold")

    @classmethod
    def create(
        cls,
        session: str,
        panes: list[int] | tuple[int, ...] = (),
        *,
        poll_interval: float = 0.0,
        active_threshold: float = 0.0,
        stalled_threshold: float = 0.0,
        capture_lines: int = 0,
    ) -> IndicatorOptions:
        """Fill non-positive values with defaults and repair the thresholds.

        Poll intervals below one second are raised to one second. A stalled
        threshold at or below the active threshold becomes the active threshold
        plus one minute.
        """
        poll = poll_interval if poll_interval > 0 else DEFAULT_POLL_INTERVAL
        active = active_threshold if active_threshold > 0 else DEFAULT_ACTIVE_THRESHOLD
        stalled = stalled_threshold if stalled_threshold > 0 else DEFAULT_STALLED_THRESHOLD
        if active >= stalled:
            stalled = active + THRESHOLD_GAP
        return cls(
            session=session,
            panes=tuple(panes),
            poll_interval=max(poll, MIN_POLL_INTERVAL),
            active_threshold=active,
            stalled_threshold=stalled,
            capture_lines=capture_lines if capture_lines > 0 else DEFAULT_INDICATOR_LINES,
        )

    @classmethod
    def from_config(
        cls, session: str, config: IndicatorConfig, panes: list[int] | tuple[int, ...] = ()
    ) -> IndicatorOptions:
        return cls.create(
            session,
            panes,
            poll_interval=config.poll_interval,
            active_threshold=config.active_threshold,
            stalled_threshold=config.stalled_threshold,
            capture_lines=config.capture_lines,
        )

    def color_for(self, status: ActivityStatus | str) -> str:
        return {
            ActivityStatus.ACTIVE: self.color_active,
            ActivityStatus.IDLE: self.color_idle,
            ActivityStatus.STALLED: self.color_stalled,
        }[ActivityStatus(status)]


@dataclass(slots=True)
class _PaneState:
    ref: PaneRef
    last_hash: str = ""
    last_change: float = 0.0
    status: ActivityStatus | None = None


@dataclass(frozen=True, slots=True)
class IndicatorTransition:
    pane: PaneRef
    previous: ActivityStatus | None
    current: ActivityStatus


@dataclass
class PaneIndicator:
    """Activity indicator loop for one session.

    ``clock`` is a monotonic seconds source; tests substitute a fake to
    simulate content ages.
    """

    mux: Multiplexer
    options: IndicatorOptions
    clock: Callable[[], float] = time.monotonic
    events: EventBuffer | None = None
    _states: dict[PaneRef, _PaneState] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def monitored_panes(self) -> list[PaneInfo]:
        """Explicit pane subset, else every pane except the lowest-index control pane."""
        panes = sorted(self.mux.list_panes(self.options.session), key=lambda pane: pane.ref)
        if self.options.panes:
            wanted = set(self.options.panes)
            return [pane for pane in panes if pane.index in wanted]
        if not panes:
            return []
        control = min(pane.index for pane in panes)
        return [pane for pane in panes if pane.index != control]

    def run_once(self, cancel: threading.Event | None = None) -> list[IndicatorTransition]:
        """Poll every monitored pane once; returns the classifications that changed."""
        try:
            panes = self.monitored_panes()
        except MultiplexerError as exc:
            logger.warning("indicator: cannot list panes of %s: %s", self.options.session, exc)
            return []
        transitions = []
        for pane in panes:
            if cancel is not None and cancel.is_set():
                break
            transition = self._update(pane.ref)
            if transition is not None:
                transitions.append(transition)
        return transitions

    def _update(self, ref: PaneRef) -> IndicatorTransition | None:
        try:
            raw = self.mux.capture(ref, self.options.capture_lines)
        except MultiplexerError as exc:
            logger.debug("indicator: capture of %s failed: %s", ref.wire, exc)
            return None
        now = self.clock()
        digest = content_hash(raw)

        with self._lock:
            state = self._states.get(ref)
            if state is None:
                state = _PaneState(ref=ref, last_hash=digest, last_change=now)
                self._states[ref] = state
            elif digest != state.last_hash:
                state.last_hash = digest
                state.last_change = now
            status = classify_activity(
                now - state.last_change, self.options.active_threshold, self.options.stalled_threshold
            )
            previous = state.status
            if status == previous:
                return None
            state.status = status

        try:
            self.mux.set_border_style(ref, self.options.color_for(status))
        except MultiplexerError as exc:
            logger.warning("indicator: border update for %s failed: %s", ref.wire, exc)
        logger.debug("indicator: %s %s -> %s", ref.wire, previous.value if previous else "new", status.value)
        events = self.events or get_event_buffer()
        events.record(ChangeKind.INDICATOR, ref.session, ref.label, previous=previous.value if previous else None,
                      current=status.value)
        return IndicatorTransition(ref, previous, status)

    def run(self, cancel: threading.Event) -> None:
        """Poll until ``cancel`` is set."""
        logger.info("indicator loop started for %s (every %gs)", self.options.session, self.options.poll_interval)
        try:
            while True:
                self.run_once(cancel)
                sleep(self.options.poll_interval, cancel)
        except OperationCancelledError:
            logger.info("indicator loop for %s stopped", self.options.session)

    def get_status(self, ref: PaneRef) -> ActivityStatus | None:
        with self._lock:
            state = self._states.get(ref)
            return state.status if state else None

    def get_all_statuses(self) -> dict[PaneRef, ActivityStatus]:
        with self._lock:
            return {ref: state.status for ref, state in self._states.items() if state.status is not None}

    def seconds_since_change(self, ref: PaneRef) -> float | None:
        """Age of the last observed content change, or ``None`` for untracked panes."""
        with self._lock:
            state = self._states.get(ref)
            if state is None:
                return None
            return self.clock() - state.last_change

    def reset_all(self) -> list[PaneRef]:
        """Drop all tracked state and restore default borders; returns the panes reset."""
        with self._lock:
            refs = sorted(self._states)
            self._states.clear()
        for ref in refs:
            try:
                self.mux.reset_border_style(ref)
            except MultiplexerError as exc:
                logger.warning("indicator: border reset for %s failed: %s", ref.wire, exc)
        return refs


# ---------------------------------------------------------------------------
# Operation
# ---------------------------------------------------------------------------


class IndicatorPaneStatus(WireModel):
    pane: str
    status: ActivityStatus
    color: str


class IndicatorOutput(Envelope):
    session: str
    poll_interval: float
    active_threshold: float
    stalled_threshold: float
    panes: list[IndicatorPaneStatus] = Field(default_factory=list)
    reset: list[str] = Field(default_factory=list)


def indicator_pass(
    mux: Multiplexer,
    session: str,
    *,
    config: IndicatorConfig | None = None,
    panes: list[int] | None = None,
    reset: bool = False,
    indicator: PaneIndicator | None = None,
) -> IndicatorOutput:
    """One indicator poll (or a reset) reported as an envelope."""
    started = time.monotonic()
    config = config or IndicatorConfig()
    try:
        options = IndicatorOptions.from_config(session, config, panes or ())
    except ValueError as exc:
        return error_from_exception(exc, model=IndicatorOutput, session=session, poll_interval=0.0,
                                    active_threshold=0.0, stalled_threshold=0.0)
    fields = {
        "session": session,
        "poll_interval": options.poll_interval,
        "active_threshold": options.active_threshold,
        "stalled_threshold": options.stalled_threshold,
    }
    indicator = indicator or PaneIndicator(mux, options)
    try:
        if not mux.session_exists(session):
            raise SessionNotFoundError(session)
        if reset:
            refs = indicator.reset_all()
            if not refs:
                # Fresh process: nothing tracked, so reset every monitored border
                refs = [pane.ref for pane in indicator.monitored_panes()]
                for ref in refs:
                    mux.reset_border_style(ref)
            return success_response(IndicatorOutput, command="indicators", started=started,
                                    reset=[ref.label for ref in refs], **fields)
        indicator.run_once()
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=IndicatorOutput, **fields)

    statuses = [
        IndicatorPaneStatus(pane=ref.label, status=status, color=options.color_for(status))
        for ref, status in sorted(indicator.get_all_statuses().items())
    ]
    return success_response(IndicatorOutput, command="indicators", started=started, panes=statuses, **fields)
