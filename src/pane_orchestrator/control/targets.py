"""Target selection shared by send, interrupt, wait, ack and route."""

from __future__ import annotations

from dataclasses import dataclass

from ..agents import AgentType, resolve_agent_type
from ..mux import (
    Multiplexer,
    PaneInfo,
    PaneRef,
    detect_session_structure,
    operator_pane_ref,
    resolve_session_panes,
    select_panes,
)


def parse_index_list(value: str | None) -> list[int]:
    """Parse ``"1, 3,5"`` into ``[1, 3, 5]``.

    Empty parts are skipped and negative values are accepted.

    Raises:
        ValueError: If any part is not an integer.
    """
    if value is None or not value.strip():
        return []
    indices = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            indices.append(int(part))
        except ValueError as exc:
            raise ValueError(f"invalid pane index {part!r}") from exc
    return indices


def parse_type_filter(value: str | None) -> AgentType | None:
    """Resolve a ``--type`` value (canonical name or short form).

    Raises:
        ValueError: For unrecognized types.
    """
    if not value:
        return None
    agent_type = resolve_agent_type(value)
    if agent_type is None:
        raise ValueError(f"unknown agent type {value!r} (expected e.g. claude|cc, codex|cod, gemini|gmi)")
    return agent_type


@dataclass(frozen=True, slots=True)
class TargetFilter:
    """Which panes an operation addresses.

    ``indices`` wins over the type filter; without either, identified agent
    panes are selected. An agent type filter and the default both skip the
    operator's control pane; non-agent panes join only when ``include_user``
    is set or their type is asked for.
    """

    agent_type: AgentType | None = None
    indices: tuple[int, ...] = ()
    exclude: tuple[int, ...] = ()
    include_user: bool = False

    def apply(self, panes: list[PaneInfo], session: str, control: PaneRef | None = None) -> list[PaneInfo]:
        if self.indices:
            selected = select_panes(panes, list(self.indices), session)
        elif self.agent_type is not None:
            selected = [pane for pane in panes if pane.agent_type is self.agent_type
                        and (pane.ref != control or not pane.agent_type.is_agent)]
        elif self.include_user:
            selected = list(panes)
        else:
            selected = [pane for pane in panes if pane.agent_type.is_agent and pane.ref != control]
        excluded = set(self.exclude)
        return [pane for pane in selected if pane.index not in excluded]


def build_filter(
    *,
    agent_type: str | None = None,
    panes: str | list[int] | None = None,
    exclude: str | list[int] | None = None,
    include_user: bool = False,
) -> TargetFilter:
    """Build a :class:`TargetFilter` from raw flag values.

    Raises:
        ValueError: On malformed indices or unknown types.
    """
    indices = parse_index_list(panes) if isinstance(panes, str) or panes is None else list(panes)
    excluded = parse_index_list(exclude) if isinstance(exclude, str) or exclude is None else list(exclude)
    return TargetFilter(parse_type_filter(agent_type), tuple(indices), tuple(excluded), include_user)


def resolve_targets(mux: Multiplexer, session: str, target_filter: TargetFilter) -> list[PaneInfo]:
    """Resolve the filter against the live session, in pane order."""
    panes = resolve_session_panes(mux, session)
    control = operator_pane_ref(detect_session_structure(mux, session), panes)
    return target_filter.apply(panes, session, control)
