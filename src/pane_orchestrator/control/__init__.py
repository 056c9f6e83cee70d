"""Agent control: send, acknowledge, interrupt, wait, route and restart."""

from .ack import AckOutput, AckType, ack, detect_acknowledgment
from .interrupt import InterruptOutput, interrupt
from .redaction import RedactionMode, apply_redaction
from .restart import RestartOutput, restart_panes
from .route import RouteOutput, RouteStrategy, route
from .send import SendOutput, send_message
from .targets import TargetFilter, build_filter, parse_index_list, resolve_targets
from .wait import WaitCondition, WaitOutput, wait_until

__all__ = [
    "AckOutput",
    "AckType",
    "InterruptOutput",
    "RedactionMode",
    "RestartOutput",
    "RouteOutput",
    "RouteStrategy",
    "SendOutput",
    "TargetFilter",
    "WaitCondition",
    "WaitOutput",
    "ack",
    "apply_redaction",
    "build_filter",
    "detect_acknowledgment",
    "interrupt",
    "parse_index_list",
    "resolve_targets",
    "restart_panes",
    "route",
    "send_message",
    "wait_until",
]
