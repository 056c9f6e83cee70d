"""Session structure detection: primary window, control pane and agent panes."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..agents import AgentType
from ..errors import PaneNotFoundError, SessionNotFoundError
from .base import Multiplexer, PaneInfo, PaneRef

NTM_WINDOW_INDEX = 1
NTM_CONTROL_PANE = 1
NTM_AGENT_PANE_START = 2


@dataclass(slots=True)
class SessionStructure:
    """Layout facts for one session.

    The control pane is the lowest pane index in the primary window and is never
    an assignment target.
    """

    session: str
    window: int = 0
    window_ids: list[int] = field(default_factory=list)
    control_pane: int = 0
    pane_indices: list[int] = field(default_factory=list)
    agent_panes: list[int] = field(default_factory=list)
    is_ntm_layout: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def total_panes(self) -> int:
        return len(self.pane_indices)

    @property
    def agent_pane_start(self) -> int:
        return self.agent_panes[0] if self.agent_panes else self.control_pane + 1

    @property
    def has_agents(self) -> bool:
        return bool(self.agent_panes)

    def pane_ref(self, index: int) -> PaneRef:
        return PaneRef(self.session, self.window, index)

    @property
    def control_ref(self) -> PaneRef:
        return self.pane_ref(self.control_pane)

    def is_agent_pane(self, index: int) -> bool:
        return index != self.control_pane and index in self.pane_indices

    def to_dict(self) -> dict[str, object]:
        return {
            "session": self.session,
            "window_index": self.window,
            "control_pane": self.control_pane,
            "agent_pane_start": self.agent_pane_start,
            "agent_panes": list(self.agent_panes),
            "total_panes": self.total_panes,
            "is_ntm_layout": self.is_ntm_layout,
            "warnings": list(self.warnings),
        }


def primary_window(window_ids: list[int]) -> int:
    """Window 1 when present, else the lowest window index, else 0."""
    if NTM_WINDOW_INDEX in window_ids:
        return NTM_WINDOW_INDEX
    return min(window_ids) if window_ids else 0


def classify_layout(structure: SessionStructure) -> None:
    warnings: list[str] = []
    if structure.window != NTM_WINDOW_INDEX:
        warnings.append(f"primary window is {structure.window}, expected {NTM_WINDOW_INDEX}")
    if structure.control_pane != NTM_CONTROL_PANE:
        warnings.append(f"control pane is {structure.control_pane}, expected {NTM_CONTROL_PANE}")
    if structure.total_panes <= 1:
        warnings.append("session has no agent panes")
    elif structure.agent_pane_start != NTM_AGENT_PANE_START:
        warnings.append(f"agent panes start at {structure.agent_pane_start}, expected {NTM_AGENT_PANE_START}")
    if len(structure.window_ids) > 1:
        warnings.append(f"session has {len(structure.window_ids)} windows; only window {structure.window} is managed")
    structure.is_ntm_layout = (
        structure.window == NTM_WINDOW_INDEX
        and structure.control_pane == NTM_CONTROL_PANE
        and structure.total_panes > 1
        and structure.agent_pane_start == NTM_AGENT_PANE_START
    )
    structure.warnings = warnings


def detect_session_structure(mux: Multiplexer, session: str) -> SessionStructure:
    """Inspect a live session.

    Raises:
        SessionNotFoundError: If the session does not exist.
    """
    if not mux.session_exists(session):
        raise SessionNotFoundError(session)
    window_ids = mux.list_windows(session)
    window = primary_window(window_ids)
    indices = sorted(pane.index for pane in mux.list_panes(session, window))
    structure = SessionStructure(session=session, window=window, window_ids=window_ids, pane_indices=indices)
    if indices:
        structure.control_pane = indices[0]
        structure.agent_panes = indices[1:]
    classify_layout(structure)
    return structure


def resolve_session_panes(mux: Multiplexer, session: str, *, include_user: bool = True) -> list[PaneInfo]:
    """All panes of a session in (window, index) order.

    Raises:
        SessionNotFoundError: If the session does not exist.
    """
    if not mux.session_exists(session):
        raise SessionNotFoundError(session)
    panes = sorted(mux.list_panes(session), key=lambda pane: pane.ref)
    if include_user:
        return panes
    return [pane for pane in panes if pane.agent_type is not AgentType.USER]


def operator_pane_ref(structure: SessionStructure, panes: list[PaneInfo]) -> PaneRef | None:
    """The control pane reserved for the operator.

    ``None`` only for sessions spawned without a user pane, where the control
    position holds an agent and no operator shell exists.
    """
    if not structure.pane_indices:
        return None
    control = structure.control_ref
    has_user = any(pane.agent_type is AgentType.USER for pane in panes)
    holds_agent = any(pane.ref == control and pane.agent_type.is_agent for pane in panes)
    if holds_agent and not has_user:
        return None
    return control


def dispatch_panes(mux: Multiplexer, session: str) -> list[PaneInfo]:
    """Panes that may be given work: identified agents outside the control pane.

    Raises:
        SessionNotFoundError: If the session does not exist.
    """
    panes = resolve_session_panes(mux, session)
    control = operator_pane_ref(detect_session_structure(mux, session), panes)
    return [pane for pane in panes if pane.agent_type.is_agent and pane.ref != control]


def select_panes(panes: list[PaneInfo], indices: list[int] | None, session: str) -> list[PaneInfo]:
    """Restrict ``panes`` to ``indices`` (all when ``None``), keeping pane order.

    Raises:
        PaneNotFoundError: If a requested index is not present.
    """
    if not indices:
        return list(panes)
    present = {pane.index for pane in panes}
    for index in indices:
        if index not in present:
            raise PaneNotFoundError(session, index)
    wanted = set(indices)
    return [pane for pane in panes if pane.index in wanted]
