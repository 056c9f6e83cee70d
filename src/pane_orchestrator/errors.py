"""Exception hierarchy for pane orchestration.

Operations raise these internally and convert them to response envelopes at
their boundary (see :func:`pane_orchestrator.envelope.error_from_exception`).
Nothing outside a tool adapter inspects error text: adapters normalize
collaborator failures into a :class:`TransientKind` when they raise.
"""

from __future__ import annotations

from enum import Enum


class TransientKind(str, Enum):
    """Normalized classification of an external-tool failure."""

    DATABASE_LOCKED = "database_locked"
    RESOURCE_BUSY = "resource_busy"
    PERMANENT = "permanent"

    @property
    def is_transient(self) -> bool:
        return self is not TransientKind.PERMANENT


class PaneOrchestratorError(Exception):
    """Base exception for all orchestration errors."""


class MultiplexerError(PaneOrchestratorError):
    """Raised when a multiplexer command fails."""


class MultiplexerUnavailableError(MultiplexerError):
    """Raised when the multiplexer binary is not installed or not reachable."""


class SessionNotFoundError(MultiplexerError):
    """Raised when a session does not exist."""

    def __init__(self, session: str) -> None:
        self.session = session
        super().__init__(f"session '{session}' not found")


class PaneNotFoundError(MultiplexerError):
    """Raised when a pane index does not exist in a session."""

    def __init__(self, session: str, pane: int | str) -> None:
        self.session = session
        self.pane = pane
        super().__init__(f"pane {pane} not found in session '{session}'")


class ToolError(PaneOrchestratorError):
    """Raised when an external tool (backlog, archive) fails.

    Attributes:
        tool: Name of the tool binary.
        kind: Normalized failure classification.
    """

    def __init__(self, tool: str, message: str, kind: TransientKind = TransientKind.PERMANENT) -> None:
        self.tool = tool
        self.kind = kind
        super().__init__(f"{tool}: {message}")

    @property
    def transient(self) -> bool:
        return self.kind.is_transient


class ToolNotInstalledError(ToolError):
    """Raised when an external tool binary cannot be found."""

    def __init__(self, tool: str) -> None:
        super().__init__(tool, "tool not installed")


class BeadNotFoundError(ToolError):
    """Raised when the backlog service has no record of a bead."""

    def __init__(self, tool: str, bead_id: str) -> None:
        self.bead_id = bead_id
        super().__init__(tool, f"bead '{bead_id}' not found")


class OperationCancelledError(PaneOrchestratorError):
    """Raised when a cancellation signal interrupts a suspension point."""


class WaitTimeoutError(PaneOrchestratorError):
    """Raised when a bounded wait expires.

    Attributes:
        phase: The operation phase that timed out.
    """

    def __init__(self, message: str, phase: str = "") -> None:
        self.phase = phase
        super().__init__(message)
