"""Session layout save and restore.

A saved layout is a YAML document::

    session: proj
    directory: /work/proj
    saved_at: "2026-01-01T00:00:00Z"
    panes:
      - {pane: "1.1", type: user, title: proj__user}
      - {pane: "1.2", type: claude, title: proj__cc_1, name: reviewer}

Restoring replays the agent counts (and any recorded names) through spawn,
so a restored session gets the same pane order and titles as a fresh one.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError

from .agents import AgentType, resolve_agent_type
from .config import OrchestratorConfig
from .envelope import (
    Envelope,
    ErrorCode,
    WireModel,
    error_from_exception,
    error_response,
    success_response,
    utc_timestamp,
)
from .errors import PaneOrchestratorError
from .mux import Multiplexer, resolve_session_panes
from .recipes import SPAWN_TYPES
from .spawn import SpawnOptions, SpawnOutput, spawn
from .tools.backlog import Backlog

logger = logging.getLogger(__name__)

LAYOUT_SUFFIX = ".yaml"


class LayoutPane(WireModel):
    pane: str
    type: str
    title: str = ""
    name: str | None = None


class SessionLayout(WireModel):
    session: str
    directory: str = ""
    saved_at: str = Field(default_factory=utc_timestamp)
    panes: list[LayoutPane] = Field(default_factory=list)

    def count(self, agent_type: AgentType) -> int:
        return sum(1 for pane in self.panes if pane.type == agent_type.value)

    @property
    def has_user_pane(self) -> bool:
        return any(pane.type == AgentType.USER.value for pane in self.panes)

    def custom_names(self) -> tuple[str, ...]:
        """Recorded names in spawn order (Claude, Codex, Gemini); only complete name sets are replayed."""
        ordered = [pane for agent_type in SPAWN_TYPES for pane in self.panes if pane.type == agent_type.value]
        names = [pane.name for pane in ordered if pane.name]
        return tuple(names) if len(names) == len(ordered) else ()


def default_layout_path(state_dir: Path, session: str) -> Path:
    return state_dir / "layouts" / f"{session}{LAYOUT_SUFFIX}"


def read_layout(path: Path) -> SessionLayout:
    """Load a saved layout.

    Raises:
        ValueError: If the file is not a valid layout document.
        OSError: If the file cannot be read.
    """
    with open(path, encoding="utf-8") as f:
        try:
            data: Any = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValueError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping")
    for pane in data.get("panes") or []:
        if isinstance(pane, dict) and "type" in pane:
            name = str(pane["type"])
            resolved = resolve_agent_type(name)
            if resolved is None and name.strip().lower() != AgentType.UNKNOWN.value:
                raise ValueError(f"{path}: unknown agent type {name!r}")
            pane["type"] = (resolved or AgentType.UNKNOWN).value
    try:
        return SessionLayout.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"invalid layout {path}: {exc.errors()[0]['msg']}") from exc


def write_layout(layout: SessionLayout, path: Path) -> None:
    """Write the layout through a temp file and rename, so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = layout.model_dump(mode="json", exclude_none=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(payload, f, sort_keys=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


class SaveOutput(Envelope):
    session: str
    path: str | None = None
    layout: SessionLayout | None = None


class RestoreOutput(SpawnOutput):
    layout_path: str


def save_layout(
    mux: Multiplexer,
    session: str,
    path: Path,
    *,
    directory: str = "",
    names: dict[str, str] | None = None,
) -> SaveOutput:
    """Write the panes of ``session`` to ``path``; ``names`` maps pane labels to agent names."""
    started = time.monotonic()
    try:
        panes = resolve_session_panes(mux, session)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=SaveOutput, session=session)
    names = names or {}
    layout = SessionLayout(
        session=session,
        directory=directory or os.getcwd(),
        panes=[
            LayoutPane(pane=pane.ref.label, type=pane.agent_type.value, title=pane.title,
                       name=names.get(pane.ref.label))
            for pane in panes
        ],
    )
    try:
        write_layout(layout, path)
    except OSError as exc:
        return error_response(f"cannot write {path}: {exc}", ErrorCode.PERMISSION_DENIED, model=SaveOutput,
                              session=session)
    logger.info("saved %d pane(s) of %s to %s", len(layout.panes), session, path)
    return success_response(SaveOutput, command="save", started=started, session=session, path=str(path),
                            layout=layout)


def restore_layout(
    mux: Multiplexer,
    path: Path,
    *,
    session: str = "",
    dry_run: bool = False,
    config: OrchestratorConfig | None = None,
    backlog: Backlog | None = None,
    project_root: Path | None = None,
    cancel: threading.Event | None = None,
) -> RestoreOutput:
    """Recreate a saved session through spawn; ``session`` overrides the saved name."""
    fields = {"session": session or "", "layout_path": str(path)}
    try:
        layout = read_layout(path)
    except FileNotFoundError:
        return error_response(f"layout file {path} not found", ErrorCode.INVALID_FLAG,
                              "Save one first with 'paneorch save'", model=RestoreOutput, **fields)
    except (OSError, ValueError) as exc:
        return error_response(exc, ErrorCode.INVALID_FLAG, model=RestoreOutput, **fields)

    try:
        options = SpawnOptions(
            session=session or layout.session,
            cc=layout.count(AgentType.CLAUDE),
            cod=layout.count(AgentType.CODEX),
            gmi=layout.count(AgentType.GEMINI),
            no_user=not layout.has_user_pane,
            directory=layout.directory,
            dry_run=dry_run,
            safety=True,
            custom_names=layout.custom_names(),
        )
    except ValueError as exc:
        return error_response(exc, ErrorCode.INVALID_FLAG, model=RestoreOutput, **fields)
    skipped = sorted({pane.type for pane in layout.panes if pane.type not in
                      {t.value for t in (*SPAWN_TYPES, AgentType.USER)}})
    if skipped:
        logger.warning("restore of %s skips pane types spawn cannot launch: %s", options.session, ", ".join(skipped))

    result = spawn(mux, options, config=config, backlog=backlog, project_root=project_root, cancel=cancel)
    payload = result.model_dump(by_alias=True)
    meta = payload.get("_meta")
    if meta:
        meta["command"] = "restore"
    return RestoreOutput.model_validate({**payload, "layout_path": str(path)})
