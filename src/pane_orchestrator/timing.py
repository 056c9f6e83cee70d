"""Cancellation-aware sleeping, deadlines and duration parsing."""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field

from .errors import OperationCancelledError

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


def check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError("operation cancelled")


def sleep(seconds: float, cancel: threading.Event | None = None) -> None:
    """Sleep for ``seconds``, returning early with an error when cancelled.

    Raises:
        OperationCancelledError: If ``cancel`` is set before or during the sleep.
    """
    check_cancelled(cancel)
    if seconds <= 0:
        return
    if cancel is None:
        time.sleep(seconds)
        return
    if cancel.wait(seconds):
        raise OperationCancelledError("operation cancelled")


@dataclass
class Deadline:
    """A monotonic deadline for poll loops."""

    timeout: float
    started: float = field(default_factory=time.monotonic)

    @property
    def expired(self) -> bool:
        return self.remaining <= 0

    @property
    def remaining(self) -> float:
        return self.timeout - (time.monotonic() - self.started)

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def sleep(self, interval: float, cancel: threading.Event | None = None) -> None:
        """Sleep one poll interval, never past the deadline."""
        sleep(max(min(interval, self.remaining), 0.0), cancel)


def parse_duration(value: str | float | int) -> float:
    """Parse ``"500ms"``, ``"30s"``, ``"5m"``, ``"2h"`` or ``"7d"`` into seconds.

    Bare numbers are seconds.

    Raises:
        ValueError: If the value is malformed or negative.
    """
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"duration must be >= 0, got {value}")
        return float(value)
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"invalid duration {value!r} (expected e.g. 500ms, 30s, 5m, 2h, 7d)")
    number = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    return number * _UNIT_SECONDS[unit]


def humanize_duration(seconds: float) -> str:
    """Short human form: ``45s``, ``12m``, ``3h``, ``2d``."""
    seconds = max(int(seconds), 0)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"
