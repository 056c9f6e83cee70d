"""Versioned response envelope and error taxonomy.

Every public operation returns a pydantic model derived from :class:`Envelope`.
The envelope carries the success flag (always the first key), an RFC3339 UTC
timestamp, the envelope version and output format, optional timing metadata,
the flat ``error``/``error_code``/``hint`` triple, an optional multi-phase
:class:`StructuredError`, and optional :class:`AgentHints`.

Serialization drops ``None`` fields so optional blocks vanish, while list
fields declared with ``default_factory=list`` always serialize as ``[]``.
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    BeadNotFoundError,
    MultiplexerError,
    MultiplexerUnavailableError,
    OperationCancelledError,
    PaneNotFoundError,
    SessionNotFoundError,
    ToolError,
    ToolNotInstalledError,
    WaitTimeoutError,
)

ENVELOPE_VERSION = "1.0.0"

# Longest last_output kept in structured error details
MAX_LAST_OUTPUT = 500
TRUNCATION_SUFFIX = "... [truncated]"

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_UNAVAILABLE = 2


class ErrorCode(str, Enum):
    """Machine-readable error taxonomy."""

    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    PANE_NOT_FOUND = "PANE_NOT_FOUND"
    INVALID_FLAG = "INVALID_FLAG"
    TIMEOUT = "TIMEOUT"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    DEPENDENCY_MISSING = "DEPENDENCY_MISSING"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    RESOURCE_BUSY = "RESOURCE_BUSY"
    SOFT_EXIT_FAILED = "SOFT_EXIT_FAILED"
    HARD_KILL_FAILED = "HARD_KILL_FAILED"
    SHELL_NOT_RETURNED = "SHELL_NOT_RETURNED"
    AGENT_LAUNCH_FAILED = "AGENT_LAUNCH_FAILED"
    AGENT_INIT_TIMEOUT = "AGENT_INIT_TIMEOUT"
    BEAD_NOT_FOUND = "BEAD_NOT_FOUND"
    PROMPT_SEND_FAILED = "PROMPT_SEND_FAILED"


class OutputFormat(str, Enum):
    JSON = "json"
    TOON = "toon"


class ErrorPhase(str, Enum):
    """Phases of multi-step restart and launch flows."""

    SOFT_EXIT = "soft_exit"
    HARD_KILL = "hard_kill"
    POST_EXIT = "post_exit"
    LAUNCH = "launch"
    INIT = "init"
    PROMPT = "prompt"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as RFC3339 in UTC with second precision."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_timestamp() -> str:
    return format_timestamp(utc_now())


def format_unix_millis(ms: int) -> str:
    """Format a unix millisecond timestamp; zero maps to an empty string."""
    if ms == 0:
        return ""
    return format_timestamp(datetime.fromtimestamp(ms / 1000, tz=timezone.utc))


def format_unix_seconds(sec: int) -> str:
    """Format a unix second timestamp; zero maps to an empty string."""
    if sec == 0:
        return ""
    return format_timestamp(datetime.fromtimestamp(sec, tz=timezone.utc))


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC3339 timestamp, accepting a trailing ``Z``."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class WireModel(BaseModel):
    """Base for every serialized payload."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, use_enum_values=True)


class ResponseMeta(WireModel):
    duration_ms: int | None = None
    exit_code: int | None = None
    command: str | None = None


class ErrorDetails(WireModel):
    """Diagnostic context attached to a structured error."""

    child_pid: int | None = None
    process_state: str | None = None
    last_output: str | None = None
    attempted_actions: list[str] | None = None
    agent_type: str | None = None
    exit_method: str | None = None
    duration_ms: int | None = None
    expected_output: str | None = None
    actual_output: str | None = None
    extra: dict[str, Any] | None = None

    def with_last_output(self, output: str, max_len: int = MAX_LAST_OUTPUT) -> ErrorDetails:
        if len(output) > max_len:
            output = output[:max_len] + TRUNCATION_SUFFIX
        return self.model_copy(update={"last_output": output})


class StructuredError(WireModel):
    """Error with phase and recovery context for multi-step failures."""

    code: ErrorCode
    message: str
    phase: ErrorPhase | None = None
    pane: int | None = None
    details: ErrorDetails | None = None
    recovery_hint: str | None = None

    def __str__(self) -> str:
        if self.phase:
            return f"{self.phase}: {self.message}"
        return self.message


class RobotAction(WireModel):
    action: str
    target: str | None = None
    reason: str | None = None
    priority: int = 0
    details: dict[str, Any] | None = None


class AgentHints(WireModel):
    summary: str | None = None
    next_offset: int | None = None
    pages_remaining: int | None = None
    suggested_actions: list[RobotAction] | None = None
    idle_agents: list[str] | None = None
    active_agents: list[str] | None = None
    warnings: list[str] | None = None
    notes: list[str] | None = None


class Envelope(WireModel):
    """Common response wrapper embedded in every operation output."""

    success: bool
    timestamp: str = Field(default_factory=utc_timestamp)
    version: str = ENVELOPE_VERSION
    output_format: OutputFormat = OutputFormat.JSON
    meta: ResponseMeta | None = Field(default=None, alias="_meta")
    error: str | None = None
    error_code: ErrorCode | None = None
    hint: str | None = None
    structured_error: StructuredError | None = None
    agent_hints: AgentHints | None = Field(default=None, alias="_agent_hints")

    @property
    def exit_code(self) -> int:
        if self.success:
            return EXIT_SUCCESS
        if self.error_code == ErrorCode.NOT_IMPLEMENTED.value:
            return EXIT_UNAVAILABLE
        return EXIT_ERROR

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self, *, terse_keys: bool = False, indent: int | None = 2) -> str:
        payload: Any = self.to_dict()
        if terse_keys:
            payload = apply_terse_keys(payload)
        return json.dumps(payload, indent=indent, ensure_ascii=False)


class UnavailableResponse(Envelope):
    feature: str
    planned_version: str | None = None


class PaginationInfo(WireModel):
    limit: int
    offset: int
    count: int
    total: int
    has_more: bool
    next_cursor: int | None = None


E = TypeVar("E", bound=Envelope)


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def _meta(command: str | None, started: float | None, exit_code: int | None = None) -> ResponseMeta | None:
    if command is None and started is None:
        return None
    duration = None if started is None else int((time.monotonic() - started) * 1000)
    return ResponseMeta(duration_ms=duration, exit_code=exit_code, command=command)


def success_response(
    model: type[E] = Envelope,  # type: ignore[assignment]
    *,
    command: str | None = None,
    started: float | None = None,
    **fields: Any,
) -> E:
    """Build a successful envelope, optionally stamping timing metadata.

    Args:
        model: Envelope subclass to instantiate.
        command: Operation name recorded in ``_meta``.
        started: ``time.monotonic()`` value captured when the operation began.
        **fields: Operation-specific payload fields.
    """
    return model(success=True, meta=_meta(command, started, EXIT_SUCCESS if command else None), **fields)


def error_response(
    err: BaseException | str | None,
    code: ErrorCode,
    hint: str = "",
    *,
    model: type[E] = Envelope,  # type: ignore[assignment]
    structured: StructuredError | None = None,
    command: str | None = None,
    started: float | None = None,
    **fields: Any,
) -> E:
    """Build a failed envelope with the flat error triple populated."""
    message = str(err) if err is not None else None
    exit_code = EXIT_UNAVAILABLE if code is ErrorCode.NOT_IMPLEMENTED else EXIT_ERROR
    return model(
        success=False,
        meta=_meta(command, started, exit_code if command else None),
        error=message or None,
        error_code=code,
        hint=hint or None,
        structured_error=structured,
        **fields,
    )


def structured_error_response(
    structured: StructuredError,
    *,
    model: type[E] = Envelope,  # type: ignore[assignment]
    **fields: Any,
) -> E:
    """Build a failed envelope whose flat fields mirror a structured error."""
    return error_response(
        structured.message,
        ErrorCode(structured.code),
        structured.recovery_hint or "",
        model=model,
        structured=structured,
        **fields,
    )


def unavailable_response(feature: str, planned_version: str | None = None, hint: str = "") -> UnavailableResponse:
    """Envelope for a feature that is not available yet (exit code 2)."""
    return error_response(
        f"{feature} is not implemented",
        ErrorCode.NOT_IMPLEMENTED,
        hint,
        model=UnavailableResponse,
        feature=feature,
        planned_version=planned_version,
    )


def code_for_exception(exc: BaseException) -> ErrorCode:
    """Map an internal exception to its taxonomy code."""
    if isinstance(exc, SessionNotFoundError):
        return ErrorCode.SESSION_NOT_FOUND
    if isinstance(exc, PaneNotFoundError):
        return ErrorCode.PANE_NOT_FOUND
    if isinstance(exc, (MultiplexerUnavailableError, ToolNotInstalledError)):
        return ErrorCode.DEPENDENCY_MISSING
    if isinstance(exc, BeadNotFoundError):
        return ErrorCode.BEAD_NOT_FOUND
    if isinstance(exc, ToolError):
        return ErrorCode.RESOURCE_BUSY if exc.transient else ErrorCode.INTERNAL_ERROR
    if isinstance(exc, (WaitTimeoutError, TimeoutError)):
        return ErrorCode.TIMEOUT
    if isinstance(exc, PermissionError):
        return ErrorCode.PERMISSION_DENIED
    if isinstance(exc, (MultiplexerError, OperationCancelledError)):
        return ErrorCode.INTERNAL_ERROR
    if isinstance(exc, ValueError):
        return ErrorCode.INVALID_FLAG
    return ErrorCode.INTERNAL_ERROR


_DEFAULT_HINTS = {
    ErrorCode.SESSION_NOT_FOUND: "Use 'paneorch status' to see available sessions",
    ErrorCode.PANE_NOT_FOUND: "Use 'paneorch status' to list panes in the session",
    ErrorCode.DEPENDENCY_MISSING: "Install the missing tool and retry",
    ErrorCode.TIMEOUT: "Increase the timeout or check agent state with 'paneorch tail'",
    ErrorCode.RESOURCE_BUSY: "Retry shortly; the collaborator reported a transient lock",
}


def error_from_exception(
    exc: BaseException,
    hint: str = "",
    *,
    model: type[E] = Envelope,  # type: ignore[assignment]
    **fields: Any,
) -> E:
    """Convert an exception into a failed envelope."""
    code = code_for_exception(exc)
    structured = None
    if isinstance(exc, WaitTimeoutError) and exc.phase:
        structured = StructuredError(code=code, message=str(exc), phase=ErrorPhase(exc.phase))
    return error_response(exc, code, hint or _DEFAULT_HINTS.get(code, ""), model=model, structured=structured, **fields)


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


def apply_pagination(items: list[Any], limit: int = 0, offset: int = 0) -> tuple[list[Any], PaginationInfo | None]:
    """Slice ``items`` by limit/offset; returns ``None`` info when not paginating."""
    if limit <= 0 and offset <= 0:
        return list(items), None

    total = len(items)
    start = min(max(offset, 0), total)
    size = limit if limit > 0 else total - start
    end = min(start + size, total)
    page = list(items[start:end])
    has_more = end < total
    return page, PaginationInfo(
        limit=size,
        offset=start,
        count=len(page),
        total=total,
        has_more=has_more,
        next_cursor=end if has_more else None,
    )


def pagination_hints(page: PaginationInfo | None) -> tuple[int | None, int | None]:
    """Return ``(next_offset, pages_remaining)`` for agent hints."""
    if page is None or page.limit <= 0 or not page.has_more or page.next_cursor is None:
        return None, None
    remaining = max(page.total - (page.offset + page.count), 0)
    pages = (remaining + page.limit - 1) // page.limit if remaining else 0
    return page.next_cursor, pages


# ---------------------------------------------------------------------------
# Terse key map
# ---------------------------------------------------------------------------

TERSE_KEY_MAP: dict[str, str] = {
    "success": "ok",
    "timestamp": "ts",
    "version": "v",
    "output_format": "of",
    "_meta": "mt",
    "error": "err",
    "error_code": "ec",
    "hint": "h",
    "duration_ms": "dm",
    "exit_code": "ex",
    "command": "cmd",
    "_agent_hints": "ah",
    "sessions": "s",
    "panes": "p",
    "targets": "t",
    "agents": "a",
    "alerts": "al",
    "beads": "b",
    "messages": "m",
    "count": "n",
    "generated_at": "ga",
    "summary": "sum",
    "structured_error": "se",
    "phase": "ph",
    "details": "d",
    "recovery_hint": "rh",
}


def terse_reverse_map(key_map: dict[str, str] | None = None) -> dict[str, str]:
    """Invert the terse key map.

    Raises:
        ValueError: If two long keys share a short alias.
    """
    reverse: dict[str, str] = {}
    for long_key, short_key in (key_map or TERSE_KEY_MAP).items():
        if short_key in reverse:
            raise ValueError(f"duplicate terse key {short_key!r} for {reverse[short_key]!r} and {long_key!r}")
        reverse[short_key] = long_key
    return reverse


def expand_terse_key(short_key: str) -> str | None:
    return terse_reverse_map().get(short_key)


def apply_terse_keys(payload: Any, key_map: dict[str, str] | None = None) -> Any:
    """Recursively rename mapping keys to their short aliases."""
    mapping = key_map or TERSE_KEY_MAP
    if isinstance(payload, dict):
        return {mapping.get(k, k): apply_terse_keys(v, mapping) for k, v in payload.items()}
    if isinstance(payload, list):
        return [apply_terse_keys(item, mapping) for item in payload]
    return payload


def expand_terse_keys(payload: Any) -> Any:
    """Inverse of :func:`apply_terse_keys`."""
    return apply_terse_keys(payload, terse_reverse_map())
