"""Backlog service adapter (``bv`` planner and ``bd`` tracker CLIs).

``bv --robot-triage`` supplies the ranked view used for bulk assignment;
``bd`` supplies per-bead records and the in-progress claim. Every call goes
through :func:`~pane_orchestrator.tools.retry.call_with_retry`, so transient
lock contention is retried and everything else fails fast.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..envelope import Envelope, ErrorCode, error_from_exception, error_response, success_response
from ..errors import BeadNotFoundError, PaneOrchestratorError, ToolError, ToolNotInstalledError
from .base import ToolRunner
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

BV_BINARY = "bv"
BD_BINARY = "bd"
DEFAULT_IN_PROGRESS_LIMIT = 50


class ToolModel(BaseModel):
    """Base for payloads decoded from collaborator output; unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TriageRecommendation(ToolModel):
    id: str
    title: str = ""
    type: str = ""
    status: str = ""
    priority: int = 0
    score: float = 0.0
    action: str = ""
    reasons: list[str] = Field(default_factory=list)
    unblocks_ids: list[str] = Field(default_factory=list)
    blocked_by: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)


class BlockerToClear(ToolModel):
    id: str
    title: str = ""
    type: str = ""
    unblocks_count: int = 0
    unblocks_ids: list[str] = Field(default_factory=list)
    actionable: bool = True
    blocked_by: list[str] = Field(default_factory=list)


class TriageMeta(ToolModel):
    version: str = ""
    generated_at: str = ""
    phase2_ready: bool = False
    issue_count: int = 0
    compute_time_ms: int = 0


class TriageQuickRef(ToolModel):
    open_count: int = 0
    actionable_count: int = 0
    blocked_count: int = 0
    in_progress_count: int = 0
    top_picks: list[dict[str, Any]] = Field(default_factory=list)


class TriageData(ToolModel):
    meta: TriageMeta | None = None
    quick_ref: TriageQuickRef = Field(default_factory=TriageQuickRef)
    recommendations: list[TriageRecommendation] = Field(default_factory=list)
    quick_wins: list[TriageRecommendation] = Field(default_factory=list)
    blockers_to_clear: list[BlockerToClear] = Field(default_factory=list)


class TriageResponse(ToolModel):
    generated_at: str = ""
    data_hash: str = ""
    triage: TriageData = Field(default_factory=TriageData)


class BeadInProgress(ToolModel):
    id: str
    title: str = ""
    assignee: str = ""
    updated_at: datetime | None = None


class BeadInfo(ToolModel):
    id: str
    title: str = ""
    issue_type: str = Field(default="", alias="type")
    status: str = ""
    priority: int = 0
    dependencies: list[str] = Field(default_factory=list)


def decode_triage(payload: str | bytes) -> TriageResponse:
    """Decode ``bv --robot-triage`` output.

    Raises:
        ToolError: If the payload is not valid triage JSON.
    """
    try:
        return TriageResponse.model_validate_json(payload)
    except ValidationError as exc:
        raise ToolError(BV_BINARY, f"invalid triage payload: {exc.errors()[0]['msg']}") from exc


def _dependency_ids(raw: Any) -> list[str]:
    ids = []
    for dep in raw or []:
        if isinstance(dep, str):
            ids.append(dep)
        elif isinstance(dep, dict):
            dep_id = dep.get("depends_on_id") or dep.get("id")
            if dep_id:
                ids.append(str(dep_id))
    return ids


@runtime_checkable
class Backlog(Protocol):
    """What the orchestrator needs from the backlog service."""

    def triage(self) -> TriageResponse: ...

    def in_progress(self, limit: int = DEFAULT_IN_PROGRESS_LIMIT) -> list[BeadInProgress]: ...

    def show(self, bead_id: str) -> BeadInfo: ...

    def claim(self, bead_id: str) -> None: ...

    def robot(self, *args: str) -> Any: ...


class BacklogClient:
    """:class:`Backlog` backed by the ``bv`` and ``bd`` binaries."""

    def __init__(
        self,
        workdir: str | None = None,
        *,
        policy: RetryPolicy | None = None,
        bv: ToolRunner | None = None,
        bd: ToolRunner | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.bv = bv or ToolRunner(BV_BINARY, cwd=workdir)
        self.bd = bd or ToolRunner(BD_BINARY, cwd=workdir)
        self.cancel = cancel

    def _retry(self, fn, description: str):
        return call_with_retry(fn, policy=self.policy, cancel=self.cancel, description=description)

    def triage(self) -> TriageResponse:
        output = self._retry(lambda: self.bv.run("--robot-triage"), "bv --robot-triage")
        return decode_triage(output)

    def in_progress(self, limit: int = DEFAULT_IN_PROGRESS_LIMIT) -> list[BeadInProgress]:
        data = self._retry(lambda: self.bd.run_json("list", "--status=in_progress", "--json"), "bd list")
        if not isinstance(data, list):
            raise ToolError(BD_BINARY, "expected a JSON list from 'bd list'")
        items = [BeadInProgress.model_validate(item) for item in data if isinstance(item, dict) and item.get("id")]
        return items[:limit] if limit > 0 else items

    def show(self, bead_id: str) -> BeadInfo:
        try:
            data = self._retry(lambda: self.bd.run_json("show", bead_id, "--json"), f"bd show {bead_id}")
        except ToolNotInstalledError:
            raise
        except ToolError as exc:
            if "not found" in str(exc).lower():
                raise BeadNotFoundError(BD_BINARY, bead_id) from exc
            raise
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            raise BeadNotFoundError(BD_BINARY, bead_id)
        record = dict(data)
        record["dependencies"] = _dependency_ids(record.get("dependencies"))
        return BeadInfo.model_validate(record)

    def claim(self, bead_id: str) -> None:
        logger.info("claiming bead %s", bead_id)
        self._retry(lambda: self.bd.run("update", bead_id, "--status", "in_progress"), f"bd update {bead_id}")

    def robot(self, *args: str) -> Any:
        return self._retry(lambda: self.bv.run_json(*args), f"bv {' '.join(args)}")


# ---------------------------------------------------------------------------
# Proxy operations
# ---------------------------------------------------------------------------


def proxy_args(command: str, *, target: str = "", limit: int = 0, threshold: float = 0.0) -> list[str]:
    """Translate a proxy command into ``bv`` arguments.

    Raises:
        ValueError: For unknown commands or a missing required target.
    """
    def needs_target(name: str) -> str:
        if not target:
            raise ValueError(f"'{name}' requires a target")
        return target

    builders = {
        "plan": lambda: ["--robot-plan"],
        "graph": lambda: ["--robot-graph"],
        "forecast": lambda: ["--robot-forecast", needs_target("forecast")],
        "suggest": lambda: ["--robot-suggest"],
        "impact": lambda: ["--robot-impact", needs_target("impact")],
        "search": lambda: ["--robot-search", "--search", needs_target("search")]
        + ([f"--search-limit={limit}"] if limit > 0 else []),
        "label-attention": lambda: ["--robot-label-attention", f"--attention-limit={limit or 5}"],
        "label-flow": lambda: ["--robot-label-flow"],
        "label-health": lambda: ["--robot-label-health"],
        "file-beads": lambda: ["--robot-file-beads", needs_target("file-beads"), f"--file-beads-limit={limit or 20}"],
        "file-hotspots": lambda: ["--robot-file-hotspots", f"--hotspots-limit={limit or 10}"],
        "file-relations": lambda: [
            "--robot-file-relations",
            needs_target("file-relations"),
            f"--relations-limit={limit or 10}",
            f"--relations-threshold={threshold:.2f}",
        ],
    }
    if command not in builders:
        raise ValueError(f"unknown backlog command {command!r} (expected one of: {', '.join(builders)})")
    return builders[command]()


PROXY_COMMANDS: tuple[str, ...] = (
    "plan",
    "graph",
    "forecast",
    "suggest",
    "impact",
    "search",
    "label-attention",
    "label-flow",
    "label-health",
    "file-beads",
    "file-hotspots",
    "file-relations",
)


class BacklogProxyOutput(Envelope):
    backlog_command: str
    available: bool = True
    data: Any = None


class TriageOutput(Envelope):
    generated_at: str = ""
    data_hash: str = ""
    quick_ref: TriageQuickRef = Field(default_factory=TriageQuickRef)
    recommendations: list[TriageRecommendation] = Field(default_factory=list)
    quick_wins: list[TriageRecommendation] = Field(default_factory=list)
    blockers_to_clear: list[BlockerToClear] = Field(default_factory=list)


def run_backlog_command(
    backlog: Backlog,
    command: str,
    *,
    target: str = "",
    limit: int = 0,
    threshold: float = 0.0,
) -> BacklogProxyOutput:
    """Proxy one planning command to the backlog service."""
    started = time.monotonic()
    try:
        args = proxy_args(command, target=target, limit=limit, threshold=threshold)
    except ValueError as exc:
        return error_response(
            exc, ErrorCode.INVALID_FLAG, "See 'paneorch capabilities' for backlog commands",
            model=BacklogProxyOutput, backlog_command=command,
        )
    try:
        data = backlog.robot(*args)
    except ToolNotInstalledError as exc:
        return error_from_exception(exc, "Install beads_viewer (bv) and retry", model=BacklogProxyOutput,
                                    backlog_command=command, available=False)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=BacklogProxyOutput, backlog_command=command)
    return success_response(
        BacklogProxyOutput, command=command, started=started, backlog_command=command, data=data
    )


def get_triage(backlog: Backlog, *, limit: int = 10) -> TriageOutput:
    """Trimmed triage view: the top ``limit`` recommendations plus blockers and quick wins."""
    started = time.monotonic()
    try:
        response = backlog.triage()
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=TriageOutput)
    data = response.triage
    recommendations = data.recommendations[:limit] if limit > 0 else data.recommendations
    return success_response(
        TriageOutput,
        command="triage",
        started=started,
        generated_at=response.generated_at,
        data_hash=response.data_hash,
        quick_ref=data.quick_ref,
        recommendations=recommendations,
        quick_wins=data.quick_wins,
        blockers_to_clear=data.blockers_to_clear,
    )

