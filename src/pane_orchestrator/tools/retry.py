"""Classified retry for external-tool calls.

Only failures classified as transient (lock contention, busy resources) are
retried; everything else propagates after a single attempt. Classification
happens here, at the adapter boundary, so nothing downstream inspects error
text.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from ..errors import ToolError, TransientKind
from ..timing import sleep

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 0.5
MAX_ATTEMPTS_CAP = 10

TRANSIENT_MARKERS: tuple[tuple[str, TransientKind], ...] = (
    ("database is locked", TransientKind.DATABASE_LOCKED),
    ("resource busy", TransientKind.RESOURCE_BUSY),
)


def classify(text: str) -> TransientKind:
    """Classify collaborator output (usually stderr) into a :class:`TransientKind`."""
    lowered = text.lower()
    for marker, kind in TRANSIENT_MARKERS:
        if marker in lowered:
            return kind
    return TransientKind.PERMANENT


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded attempts with a small fixed backoff."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS

    def __post_init__(self) -> None:
        if not 1 <= self.max_attempts <= MAX_ATTEMPTS_CAP:
            raise ValueError(f"max_attempts must be between 1 and {MAX_ATTEMPTS_CAP}, got {self.max_attempts}")
        if self.backoff_seconds < 0:
            raise ValueError(f"backoff_seconds must be >= 0, got {self.backoff_seconds}")


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy | None = None,
    cancel: threading.Event | None = None,
    description: str = "tool call",
) -> T:
    """Invoke ``fn``, retrying transient :class:`ToolError` failures.

    Args:
        fn: Zero-argument callable performing one attempt.
        policy: Attempt bound and backoff; defaults to :class:`RetryPolicy`.
        cancel: Optional cancellation signal checked during backoff.
        description: Used in log messages.

    Raises:
        ToolError: The last failure once attempts are exhausted, or the first
            non-transient failure.
        OperationCancelledError: If cancelled while backing off.
    """
    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return fn()
        except ToolError as exc:
            if not exc.transient or attempt >= policy.max_attempts:
                raise
            logger.warning(
                "%s failed with %s (attempt %d/%d); retrying in %.2fs",
                description,
                exc.kind.value,
                attempt,
                policy.max_attempts,
                policy.backoff_seconds,
            )
        sleep(policy.backoff_seconds, cancel)
        attempt += 1
