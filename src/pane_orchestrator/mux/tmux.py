"""tmux implementation of the multiplexer protocol."""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from ..errors import MultiplexerError, MultiplexerUnavailableError, SessionNotFoundError
from .base import INTERRUPT_KEY, PaneInfo, PaneRef, SessionInfo, validate_session_name

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 10.0

# Unit separator; pane titles may contain tabs and pipes
FIELD_SEP = "\x1f"

_PANE_FORMAT = FIELD_SEP.join(
    (
        "#{session_name}",
        "#{window_index}",
        "#{pane_index}",
        "#{pane_id}",
        "#{pane_title}",
        "#{pane_current_command}",
        "#{pane_pid}",
        "#{pane_active}",
        "#{pane_dead}",
        "#{pane_last_activity}",
    )
)
_SESSION_FORMAT = FIELD_SEP.join(
    ("#{session_name}", "#{session_windows}", "#{session_attached}", "#{session_created}")
)

Runner = Callable[[Sequence[str], float], "subprocess.CompletedProcess[str]"]


def _default_runner(cmd: Sequence[str], timeout: float) -> subprocess.CompletedProcess[str]:
    return subprocess.run(list(cmd), text=True, capture_output=True, check=False, timeout=timeout)


def _to_int(value: str, default: int = 0) -> int:
    try:
        return int(value)
    except ValueError:
        return default


def parse_pane_line(line: str) -> PaneInfo | None:
    """Parse one ``list-panes`` row produced with the module's pane format."""
    parts = line.split(FIELD_SEP)
    if len(parts) != 10:
        return None
    session, window, index, pane_id, title, command, pid, active, dead, last_activity = parts
    return PaneInfo(
        ref=PaneRef(session, _to_int(window), _to_int(index)),
        pane_id=pane_id,
        title=title,
        command=command,
        pid=_to_int(pid) or None,
        active=active == "1",
        dead=dead == "1",
        last_activity=_to_int(last_activity),
    )


@dataclass
class TmuxMultiplexer:
    """Drive the ``tmux`` binary through ``subprocess``.

    Attributes:
        binary: tmux executable name or path.
        timeout: Per-command timeout in seconds.
        runner: Callable used to execute commands; tests inject fakes here.
    """

    binary: str = "tmux"
    timeout: float = DEFAULT_COMMAND_TIMEOUT
    runner: Runner = field(default=_default_runner, repr=False)

    def run(self, *args: str) -> str:
        """Run one tmux command and return its stripped stdout.

        Raises:
            MultiplexerUnavailableError: If the binary cannot be executed.
            MultiplexerError: If tmux exits non-zero or times out.
        """
        cmd = [self.binary, *args]
        try:
            proc = self.runner(cmd, self.timeout)
        except FileNotFoundError as exc:
            raise MultiplexerUnavailableError(f"{self.binary} not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise MultiplexerError(f"{self.binary} {' '.join(args)}: timed out after {self.timeout}s") from exc
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            raise MultiplexerError(f"{self.binary} {' '.join(args)}: exit {proc.returncode}: {stderr}")
        return (proc.stdout or "").rstrip("\n")

    def is_available(self) -> bool:
        if shutil.which(self.binary) is None:
            return False
        try:
            self.run("-V")
        except MultiplexerError:
            return False
        return True

    def session_exists(self, session: str) -> bool:
        try:
            self.run("has-session", "-t", f"={session}")
        except MultiplexerUnavailableError:
            raise
        except MultiplexerError:
            return False
        return True

    def list_sessions(self) -> list[SessionInfo]:
        try:
            output = self.run("list-sessions", "-F", _SESSION_FORMAT)
        except MultiplexerUnavailableError:
            raise
        except MultiplexerError as exc:
            # No server running means no sessions
            if "no server running" in str(exc) or "no sessions" in str(exc):
                return []
            raise
        sessions = []
        for line in output.splitlines():
            parts = line.split(FIELD_SEP)
            if len(parts) != 4:
                continue
            name, windows, attached, created = parts
            sessions.append(SessionInfo(name, _to_int(windows, 1), attached not in ("", "0"), _to_int(created)))
        return sessions

    def _require_session(self, session: str) -> None:
        if not self.session_exists(session):
            raise SessionNotFoundError(session)

    def list_windows(self, session: str) -> list[int]:
        self._require_session(session)
        output = self.run("list-windows", "-t", session, "-F", "#{window_index}")
        return sorted(_to_int(line) for line in output.splitlines() if line.strip())

    def list_panes(self, session: str, window: int | None = None) -> list[PaneInfo]:
        self._require_session(session)
        if window is None:
            output = self.run("list-panes", "-s", "-t", session, "-F", _PANE_FORMAT)
        else:
            output = self.run("list-panes", "-t", f"{session}:{window}", "-F", _PANE_FORMAT)
        panes = [pane for pane in (parse_pane_line(line) for line in output.splitlines()) if pane]
        return sorted(panes, key=lambda pane: (pane.ref.window, pane.ref.index))

    def capture(self, ref: PaneRef, lines: int) -> str:
        return self.run("capture-pane", "-t", ref.wire, "-p", "-S", f"-{abs(lines)}")

    def send_keys(self, ref: PaneRef, text: str, *, enter: bool = False) -> None:
        if text:
            self.run("send-keys", "-t", ref.wire, "-l", "--", text)
        if enter:
            self.run("send-keys", "-t", ref.wire, "Enter")

    def send_key(self, ref: PaneRef, key: str) -> None:
        self.run("send-keys", "-t", ref.wire, key)

    def send_interrupt(self, ref: PaneRef) -> None:
        self.send_key(ref, INTERRUPT_KEY)

    def create_session(self, session: str, directory: str) -> None:
        validate_session_name(session)
        logger.info("creating tmux session %s in %s", session, directory)
        self.run("new-session", "-d", "-s", session, "-c", directory)

    def split_window(self, session: str, directory: str) -> PaneRef:
        output = self.run(
            "split-window", "-t", session, "-c", directory, "-P", "-F", "#{window_index}.#{pane_index}"
        )
        return PaneRef.parse(output.strip(), default_session=session)

    def apply_layout(self, session: str, layout: str) -> None:
        self.run("select-layout", "-t", session, layout)

    def set_title(self, ref: PaneRef, title: str) -> None:
        self.run("select-pane", "-t", ref.wire, "-T", title)

    def set_border_style(self, ref: PaneRef, color: str) -> None:
        self.run("select-pane", "-t", ref.wire, "-P", f"pane-border-style=fg={color}")

    def reset_border_style(self, ref: PaneRef) -> None:
        self.run("select-pane", "-t", ref.wire, "-P", "pane-border-style=default")

    def respawn_pane(self, ref: PaneRef, directory: str | None = None) -> None:
        args = ["respawn-pane", "-k", "-t", ref.wire]
        if directory:
            args.extend(["-c", directory])
        self.run(*args)
