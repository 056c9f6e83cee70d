"""Send history (JSONL) with filtered, paginated reads and token estimates."""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import Field, ValidationError

from .agents import AgentType
from .capture import estimate_tokens
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
    parse_timestamp,
    success_response,
    utc_now,
)
from .timing import parse_duration

logger = logging.getLogger(__name__)

HISTORY_FILENAME = "history.jsonl"
TOKEN_GROUPS = ("agent", "model", "pane", "day")


class HistoryTarget(WireModel):
    pane: str
    agent_type: str = AgentType.UNKNOWN.value
    model: str = ""


class HistoryEntry(WireModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: str = Field(default_factory=lambda: format_timestamp(utc_now()))
    session: str
    source: str = "send"
    prompt: str
    targets: list[HistoryTarget] = Field(default_factory=list)
    success: bool = True
    error: str | None = None

    @property
    def moment(self) -> datetime:
        return parse_timestamp(self.timestamp)


class HistoryStore:
    """Append-only JSONL file; unreadable lines are skipped with a warning."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    @classmethod
    def in_dir(cls, state_dir: Path) -> HistoryStore:
        return cls(Path(state_dir) / HISTORY_FILENAME)

    def append(self, entry: HistoryEntry) -> None:
        line = json.dumps(entry.model_dump(mode="json", exclude_none=True), ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read_all(self) -> list[HistoryEntry]:
        if not self.path.exists():
            return []
        entries = []
        with self._lock, self.path.open("r", encoding="utf-8") as f:
            for number, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entries.append(HistoryEntry.model_validate_json(line))
                except ValidationError as exc:
                    logger.warning("skipping malformed history line %d in %s: %s", number, self.path,
                                   exc.errors()[0]["msg"])
        return entries


# ---------------------------------------------------------------------------
# history
# ---------------------------------------------------------------------------


class HistoryOutput(Envelope):
    session: str | None = None
    total: int = 0
    filtered: int = 0
    entries: list[HistoryEntry] = Field(default_factory=list)
    pagination: PaginationInfo | None = None


def filter_entries(
    entries: list[HistoryEntry],
    *,
    session: str | None = None,
    pane: str | None = None,
    agent_type: AgentType | None = None,
    since: datetime | None = None,
) -> list[HistoryEntry]:
    """Matching entries, newest first."""
    selected = []
    for entry in entries:
        if session and entry.session != session:
            continue
        if pane and not any(t.pane == pane for t in entry.targets):
            continue
        if agent_type is not None and not any(t.agent_type == agent_type.value for t in entry.targets):
            continue
        if since is not None and entry.moment < since:
            continue
        selected.append(entry)
    return sorted(selected, key=lambda e: e.timestamp, reverse=True)


def parse_since(value: str | None, now: datetime | None = None) -> datetime | None:
    """Accept an RFC3339 timestamp or a duration back from ``now`` (``"1h"``).

    Raises:
        ValueError: If the value is neither.
    """
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return (now or utc_now()) - timedelta(seconds=parse_duration(value))


def history(
    store: HistoryStore,
    session: str | None = None,
    *,
    pane: str | None = None,
    agent_type: AgentType | None = None,
    since: str | None = None,
    limit: int = 0,
    offset: int = 0,
) -> HistoryOutput:
    started = time.monotonic()
    try:
        since_at = parse_since(since)
    except ValueError as exc:
        return error_response(exc, ErrorCode.INVALID_FLAG, "Use --since=1h or an RFC3339 timestamp",
                              model=HistoryOutput, session=session)
    if limit < 0 or offset < 0:
        return error_response("limit and offset must be >= 0", ErrorCode.INVALID_FLAG, model=HistoryOutput,
                              session=session)

    entries = store.read_all()
    matching = filter_entries(entries, session=session, pane=pane, agent_type=agent_type, since=since_at)
    page, info = apply_pagination(matching, limit, offset)
    next_offset, pages_remaining = pagination_hints(info)
    hints = None
    if info is not None:
        hints = AgentHints(
            summary=f"showing {info.count} of {info.total} history entries",
            next_offset=next_offset,
            pages_remaining=pages_remaining,
        )
    return success_response(
        HistoryOutput,
        command="history",
        started=started,
        session=session,
        total=len(entries),
        filtered=len(matching),
        entries=page,
        pagination=info,
        agent_hints=hints,
    )


# ---------------------------------------------------------------------------
# tokens
# ---------------------------------------------------------------------------


class TokenGroup(WireModel):
    key: str
    tokens: int = 0
    prompts: int = 0


class TokensOutput(Envelope):
    period: str
    group_by: str
    session: str | None = None
    total_tokens: int = 0
    total_prompts: int = 0
    groups: list[TokenGroup] = Field(default_factory=list)


def _group_keys(entry: HistoryEntry, group_by: str) -> list[str]:
    if group_by == "day":
        return [entry.moment.strftime("%Y-%m-%d")]
    if not entry.targets:
        return ["unknown"]
    if group_by == "agent":
        return [t.agent_type for t in entry.targets]
    if group_by == "model":
        return [t.model or "unknown" for t in entry.targets]
    return [t.pane for t in entry.targets]


def tokens(
    store: HistoryStore,
    *,
    session: str | None = None,
    period: str = "7d",
    group_by: str = "agent",
    now: datetime | None = None,
) -> TokensOutput:
    """Estimate prompt tokens (about four characters each) sent over ``period``.

    A prompt sent to several panes counts once per target.
    """
    started = time.monotonic()
    fields = {"period": period, "group_by": group_by, "session": session}
    if group_by not in TOKEN_GROUPS:
        return error_response(f"invalid group-by {group_by!r}", ErrorCode.INVALID_FLAG,
                              f"Use one of: {', '.join(TOKEN_GROUPS)}", model=TokensOutput, **fields)
    try:
        window = parse_duration(period)
    except ValueError as exc:
        return error_response(exc, ErrorCode.INVALID_FLAG, "Use --period=1d, 7d or 30d", model=TokensOutput,
                              **fields)

    cutoff = (now or utc_now()) - timedelta(seconds=window)
    totals: dict[str, TokenGroup] = defaultdict(lambda: TokenGroup(key=""))
    total_tokens = 0
    total_prompts = 0
    for entry in filter_entries(store.read_all(), session=session, since=cutoff):
        if not entry.success:
            continue
        estimate = estimate_tokens(entry.prompt)
        for key in _group_keys(entry, group_by):
            group = totals[key]
            group.key = key
            group.tokens += estimate
            group.prompts += 1
            total_tokens += estimate
            total_prompts += 1

    groups = sorted(totals.values(), key=lambda g: (-g.tokens, g.key))
    return success_response(
        TokensOutput,
        command="tokens",
        started=started,
        total_tokens=total_tokens,
        total_prompts=total_prompts,
        groups=groups,
        **fields,
    )
