"""External-tool adapters: backlog (bv/bd) and conversation archive (cass)."""

from .archive import ArchiveClient, archive_search, archive_status
from .backlog import (
    PROXY_COMMANDS,
    Backlog,
    BacklogClient,
    BeadInfo,
    BeadInProgress,
    BlockerToClear,
    TriageRecommendation,
    TriageResponse,
    decode_triage,
    get_triage,
    run_backlog_command,
)
from .base import ToolRunner
from .retry import RetryPolicy, call_with_retry, classify

__all__ = [
    "PROXY_COMMANDS",
    "ArchiveClient",
    "Backlog",
    "BacklogClient",
    "BeadInProgress",
    "BeadInfo",
    "BlockerToClear",
    "RetryPolicy",
    "ToolRunner",
    "TriageRecommendation",
    "TriageResponse",
    "archive_search",
    "archive_status",
    "call_with_retry",
    "classify",
    "decode_triage",
    "get_triage",
    "run_backlog_command",
]
