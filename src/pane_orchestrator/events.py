"""Process-local ring buffer of state changes, read by ``snapshot --since``."""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from .envelope import WireModel, format_timestamp, utc_now

DEFAULT_EVENT_CAPACITY = 500


class ChangeKind(str, Enum):
    SEND = "send"
    INTERRUPT = "interrupt"
    SPAWN = "spawn"
    ASSIGN = "assign"
    RESTART = "restart"
    INDICATOR = "indicator"


class StateChange(WireModel):
    timestamp: str
    kind: ChangeKind
    session: str
    pane: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class EventBuffer:
    """Bounded, thread-safe record of recent changes; oldest entries fall off."""

    def __init__(self, capacity: int = DEFAULT_EVENT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._lock = threading.Lock()
        self._entries: deque[tuple[datetime, StateChange]] = deque(maxlen=capacity)

    def record(
        self,
        kind: ChangeKind,
        session: str,
        pane: str | None = None,
        *,
        at: datetime | None = None,
        **details: Any,
    ) -> StateChange:
        moment = at or utc_now()
        change = StateChange(timestamp=format_timestamp(moment), kind=kind, session=session, pane=pane,
                             details=details)
        with self._lock:
            self._entries.append((moment, change))
        return change

    def since(self, moment: datetime | None, session: str | None = None) -> list[StateChange]:
        """Changes strictly newer than ``moment`` (all when ``None``), oldest first."""
        with self._lock:
            entries = list(self._entries)
        return [
            change for at, change in entries
            if (moment is None or at > moment) and (session is None or change.session == session)
        ]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


_buffer: EventBuffer | None = None
_buffer_lock = threading.Lock()


def get_event_buffer() -> EventBuffer:
    global _buffer
    with _buffer_lock:
        if _buffer is None:
            _buffer = EventBuffer()
        return _buffer


def set_event_buffer(buffer: EventBuffer | None) -> None:
    """Replace the process buffer; ``None`` makes the next get create a fresh one."""
    global _buffer
    with _buffer_lock:
        _buffer = buffer


def record_change(kind: ChangeKind, session: str, pane: str | None = None, **details: Any) -> StateChange:
    return get_event_buffer().record(kind, session, pane, **details)
