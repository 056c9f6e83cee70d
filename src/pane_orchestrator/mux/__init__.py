"""Terminal multiplexer boundary."""

from .base import (
    INTERRUPT_KEY,
    Multiplexer,
    PaneInfo,
    PaneRef,
    SessionInfo,
    build_launch_command,
    sanitize_command,
    validate_session_name,
)
from .session import (
    SessionStructure,
    detect_session_structure,
    dispatch_panes,
    operator_pane_ref,
    resolve_session_panes,
    select_panes,
)
from .tmux import TmuxMultiplexer

__all__ = [
    "INTERRUPT_KEY",
    "Multiplexer",
    "PaneInfo",
    "PaneRef",
    "SessionInfo",
    "SessionStructure",
    "TmuxMultiplexer",
    "build_launch_command",
    "detect_session_structure",
    "dispatch_panes",
    "operator_pane_ref",
    "resolve_session_panes",
    "sanitize_command",
    "select_panes",
    "validate_session_name",
]
