"""Multiplexer boundary: pane identity, listings and the client protocol."""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ..agents import AgentType, detect_type

_SESSION_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True, slots=True, order=True)
class PaneRef:
    """Structured pane identity.

    The wire form ``{session}:{window}.{pane}`` addresses the multiplexer; the
    label ``{window}.{pane}`` appears in output payloads.
    """

    session: str
    window: int
    index: int

    @property
    def wire(self) -> str:
        return f"{self.session}:{self.window}.{self.index}"

    @property
    def label(self) -> str:
        return f"{self.window}.{self.index}"

    @classmethod
    def parse(cls, target: str, default_session: str = "") -> PaneRef:
        """Parse ``session:window.pane`` or ``window.pane``.

        Raises:
            ValueError: If the target is malformed.
        """
        session, sep, rest = target.rpartition(":")
        if not sep:
            session, rest = default_session, target
        window, dot, pane = rest.partition(".")
        if not dot or not session:
            raise ValueError(f"invalid pane target {target!r}")
        try:
            return cls(session, int(window), int(pane))
        except ValueError as exc:
            raise ValueError(f"invalid pane target {target!r}") from exc


@dataclass(frozen=True, slots=True)
class PaneInfo:
    """One pane as listed by the multiplexer."""

    ref: PaneRef
    title: str = ""
    pane_id: str = ""
    command: str = ""
    pid: int | None = None
    active: bool = False
    dead: bool = False
    last_activity: int = 0

    @property
    def index(self) -> int:
        return self.ref.index

    @property
    def agent_type(self) -> AgentType:
        return detect_type(self.title)


@dataclass(frozen=True, slots=True)
class SessionInfo:
    name: str
    windows: int = 1
    attached: bool = False
    created: int = 0


@runtime_checkable
class Multiplexer(Protocol):
    """Raw pane primitives consumed by the orchestration core."""

    def is_available(self) -> bool: ...

    def session_exists(self, session: str) -> bool: ...

    def list_sessions(self) -> list[SessionInfo]: ...

    def list_windows(self, session: str) -> list[int]: ...

    def list_panes(self, session: str, window: int | None = None) -> list[PaneInfo]: ...

    def capture(self, ref: PaneRef, lines: int) -> str: ...

    def send_keys(self, ref: PaneRef, text: str, *, enter: bool = False) -> None: ...

    def send_key(self, ref: PaneRef, key: str) -> None: ...

    def send_interrupt(self, ref: PaneRef) -> None: ...

    def create_session(self, session: str, directory: str) -> None: ...

    def split_window(self, session: str, directory: str) -> PaneRef: ...

    def apply_layout(self, session: str, layout: str) -> None: ...

    def set_title(self, ref: PaneRef, title: str) -> None: ...

    def set_border_style(self, ref: PaneRef, color: str) -> None: ...

    def reset_border_style(self, ref: PaneRef) -> None: ...

    def respawn_pane(self, ref: PaneRef, directory: str | None = None) -> None: ...


INTERRUPT_KEY = "C-c"


def validate_session_name(name: str) -> None:
    """Reject names the multiplexer or the pane-reference format cannot carry.

    Raises:
        ValueError: With a targeted message for the first problem found.
    """
    if not name:
        raise ValueError("session name cannot be empty")
    if "--" in name:
        raise ValueError("session name cannot contain '--'")
    if ":" in name:
        raise ValueError("session name cannot contain ':'")
    if "." in name:
        raise ValueError("session name cannot contain '.'")
    if not _SESSION_NAME_RE.match(name):
        raise ValueError(f"session name {name!r} contains invalid characters (allowed: a-z, A-Z, 0-9, _, -)")


def sanitize_command(command: str) -> str:
    """Reject launch commands carrying newlines or control characters."""
    for char in command:
        if char in "\n\r\x00":
            raise ValueError("command contains disallowed control characters")
        if ord(char) < 0x20 and char not in " \t":
            raise ValueError(f"command contains disallowed control character 0x{ord(char):02x}")
    return command


def build_launch_command(directory: str, command: str) -> str:
    """``cd <dir> && <command>`` with the directory shell-quoted."""
    return f"cd {shlex.quote(directory)} && {sanitize_command(command)}"
