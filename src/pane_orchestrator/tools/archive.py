"""Conversation-archive adapter (``cass`` CLI)."""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

from pydantic import Field

from ..envelope import Envelope, ErrorCode, error_from_exception, error_response, success_response
from ..errors import PaneOrchestratorError, ToolError
from .backlog import ToolModel
from .base import ToolRunner
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

ARCHIVE_BINARY = "cass"
DEFAULT_SEARCH_LIMIT = 10


class ArchiveHit(ToolModel):
    source_path: str = ""
    line_number: int = 0
    agent: str = ""
    content: str = ""
    score: float = 0.0


class ArchiveSearchResult(ToolModel):
    total_matches: int = 0
    hits: list[ArchiveHit] = Field(default_factory=list)


class ArchiveClient:
    """Search and health queries against the conversation archive."""

    def __init__(
        self,
        *,
        policy: RetryPolicy | None = None,
        runner: ToolRunner | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.runner = runner or ToolRunner(ARCHIVE_BINARY)
        self.cancel = cancel

    def search(
        self,
        query: str,
        *,
        limit: int = DEFAULT_SEARCH_LIMIT,
        days: int = 0,
        agents: list[str] | None = None,
    ) -> ArchiveSearchResult:
        args = ["search", query, "--json"]
        if limit > 0:
            args += ["--limit", str(limit)]
        if days > 0:
            args += ["--days", str(days)]
        for agent in agents or []:
            args += ["--agent", agent]

        # Exit status 1 with no output means no matches
        output = call_with_retry(
            lambda: self.runner.run(*args, allow_exit=(1,)),
            policy=self.policy,
            cancel=self.cancel,
            description="cass search",
        )
        if not output:
            return ArchiveSearchResult()
        try:
            return ArchiveSearchResult.model_validate(json.loads(output))
        except (json.JSONDecodeError, ValueError) as exc:
            raise ToolError(ARCHIVE_BINARY, f"failed to parse search response: {exc}") from exc

    def status(self) -> dict[str, Any]:
        data = call_with_retry(
            lambda: self.runner.run_json("status", "--json"),
            policy=self.policy,
            cancel=self.cancel,
            description="cass status",
        )
        if not isinstance(data, dict):
            raise ToolError(ARCHIVE_BINARY, "expected a JSON object from 'cass status'")
        return data


class ArchiveSearchOutput(Envelope):
    query: str
    total_matches: int = 0
    hits: list[ArchiveHit] = Field(default_factory=list)


class ArchiveStatusOutput(Envelope):
    available: bool = True
    status: dict[str, Any] = Field(default_factory=dict)


def archive_search(
    client: ArchiveClient,
    query: str,
    *,
    limit: int = DEFAULT_SEARCH_LIMIT,
    days: int = 0,
) -> ArchiveSearchOutput:
    started = time.monotonic()
    if not query.strip():
        return error_response("query is required", ErrorCode.INVALID_FLAG, "Pass a search query",
                              model=ArchiveSearchOutput, query=query)
    try:
        result = client.search(query, limit=limit, days=days)
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=ArchiveSearchOutput, query=query)
    return success_response(
        ArchiveSearchOutput,
        command="archive-search",
        started=started,
        query=query,
        total_matches=result.total_matches,
        hits=result.hits,
    )


def archive_status(client: ArchiveClient) -> ArchiveStatusOutput:
    started = time.monotonic()
    try:
        status = client.status()
    except PaneOrchestratorError as exc:
        return error_from_exception(exc, model=ArchiveStatusOutput, available=False)
    return success_response(ArchiveStatusOutput, command="archive-status", started=started, status=status)
