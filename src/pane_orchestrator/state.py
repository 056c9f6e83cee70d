"""Pane state detection.

Classifies the tail of a pane's scroll-back into one of the :class:`PaneState`
tags. Evaluation order, first match wins:

1. Blank buffer: idle for user/unknown panes, active for agent panes (an agent
   that has not printed anything yet is still starting).
2. Agent process gone (exit banner above a bare shell prompt): crashed.
3. Rate-limit signature: rate_limited, with a wait-seconds hint when present.
4. Other error signature (panics, fatal errors, auth, network, lock
   contention): error.
5. Busy footer (``esc to interrupt``): active.
6. Trailing prompt, generic or agent-specific, or a ready banner: idle.
7. Otherwise: active.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from pydantic import Field

from .agents import PROFILES, AgentType, detect_type, detect_type_from_content
from .capture import is_blank, last_non_empty, non_empty_tail
from .envelope import WireModel

logger = logging.getLogger(__name__)

MAX_WAIT_SECONDS = 3600


class PaneState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    ERROR = "error"
    RATE_LIMITED = "rate_limited"
    CRASHED = "crashed"
    UNKNOWN = "unknown"


# Category -> signature regexes (matched case-insensitively)
RATE_LIMIT_SIGNATURES: tuple[str, ...] = (
    r"rate[ -]?limit",
    r"\b(?:http(?:/[\d.]+)?|status|error|code)\D{0,3}429\b",
    r"too many requests",
    r"quota exceeded",
    r"usage limit",
    r"you.ve hit your limit",
    r"resource exhausted",
    r"exceeded .*limit",
)
ERROR_SIGNATURES: dict[str, tuple[str, ...]] = {
    "crash": (r"panic:", r"fatal error", r"\bfatal:", r"segmentation fault", r"stack trace", r"traceback \(most recent call last\)"),
    "auth_error": (r"authentication failed", r"\b(?:http(?:/[\d.]+)?|status|error|code)\D{0,3}401\b", r"unauthorized", r"invalid api key"),
    "network_error": (r"connection refused", r"connection reset", r"network (?:is )?unreachable", r"econnrefused", r"etimedout"),
    "busy": (r"database is locked", r"resource busy"),
}
EXIT_SIGNATURES: tuple[str, ...] = (
    "exit status",
    "exited with",
    "process exited",
    "connection closed",
    "session ended",
    "terminated",
)
BUSY_MARKERS: tuple[str, ...] = ("esc to interrupt", "ctrl+c to interrupt", "ctrl-c to interrupt")

_RATE_LIMIT_RE = re.compile("|".join(RATE_LIMIT_SIGNATURES), re.IGNORECASE)
_ERROR_RES = {category: re.compile("|".join(patterns), re.IGNORECASE) for category, patterns in ERROR_SIGNATURES.items()}
_GENERIC_PROMPT_RE = re.compile(r"(?:>>>|[$%❯›>])\s*$")
_BARE_SHELL_RE = re.compile(r"^(?:\S*[$%]|bash\$|zsh%)$")
_EXIT_CODE_RE = re.compile(r"exited with code|exit code:", re.IGNORECASE)

_WAIT_INDICATORS: tuple[str, ...] = (
    "wait ",
    "retry in ",
    "retry after ",
    "try again in ",
    " second",
    " sec",
    "cooldown",
    "delay",
)
_WAIT_NUMBER_RE = re.compile(r"(\d+)\s*(minutes?|mins?|m\b)?")
_CONTEXT_LEFT_RE = re.compile(r"(\d+)%\s*context\s*left", re.IGNORECASE)
_TOKEN_TOTAL_RE = re.compile(r"Token usage:\s*total=(\d[\d,]*)")


class ErrorCheck(WireModel):
    """Result of scanning a pane tail for error signatures."""

    has_errors: bool = False
    rate_limited: bool = False
    patterns: list[str] = Field(default_factory=list)
    wait_seconds: int = 0
    reason: str | None = None


class ProcessCheck(WireModel):
    running: bool = True
    crashed: bool = False
    exit_status: str | None = None
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class StateDetection:
    """Classification of one pane plus the evidence behind it."""

    state: PaneState
    agent_type: AgentType
    error_check: ErrorCheck
    process_check: ProcessCheck
    reason: str


def parse_rate_limit_wait(text: str) -> int:
    """Extract a wait hint in seconds from rate-limit text, or 0 when absent.

    Looks within ten characters of indicators such as ``retry in`` or
    ``cooldown`` for the first number between 1 and 3600; minute units are
    converted to seconds.
    """
    lowered = text.lower()
    for indicator in _WAIT_INDICATORS:
        idx = lowered.find(indicator)
        if idx < 0:
            continue
        start = max(idx - 10, 0)
        end = min(idx + len(indicator) + 10, len(lowered))
        region = lowered[start:end]
        for match in _WAIT_NUMBER_RE.finditer(region):
            value = int(match.group(1))
            if 0 < value <= MAX_WAIT_SECONDS:
                return value * 60 if match.group(2) else value
    return 0


def check_errors(lines: list[str]) -> ErrorCheck:
    """Scan lines for rate-limit and error signatures."""
    text = "\n".join(lines)
    patterns: list[str] = []
    rate_limited = bool(_RATE_LIMIT_RE.search(text))
    if rate_limited:
        patterns.append("rate_limit")
    for category, regex in _ERROR_RES.items():
        if regex.search(text):
            patterns.append(category)

    if rate_limited:
        return ErrorCheck(
            has_errors=True,
            rate_limited=True,
            patterns=patterns,
            wait_seconds=parse_rate_limit_wait(text),
            reason="rate limit detected",
        )
    if patterns:
        return ErrorCheck(has_errors=True, patterns=patterns, reason="detected: " + ", ".join(patterns))
    return ErrorCheck()


def check_process(lines: list[str], agent_type: AgentType) -> ProcessCheck:
    """Decide whether an agent's process has exited back to the shell."""
    if not agent_type.is_agent or not lines:
        return ProcessCheck()
    lowered = "\n".join(lines).lower()
    trailing = last_non_empty(lines).strip()

    if _EXIT_CODE_RE.search(lowered):
        return ProcessCheck(running=False, crashed=True, reason="exit code detected")
    for signature in EXIT_SIGNATURES:
        if signature in lowered and _BARE_SHELL_RE.match(trailing) and ">" not in trailing:
            return ProcessCheck(
                running=False,
                crashed=True,
                exit_status=signature,
                reason="shell prompt returned after exit banner",
            )
    return ProcessCheck()


def is_prompt_line(line: str, agent_type: AgentType = AgentType.UNKNOWN) -> bool:
    """True when ``line`` looks like an idle prompt for ``agent_type``."""
    text = line.rstrip()
    return bool(_GENERIC_PROMPT_RE.search(text)) or _matches_agent_prompt(text, agent_type)


def _matches_agent_prompt(line: str, agent_type: AgentType) -> bool:
    profile = PROFILES.get(agent_type)
    if profile is None:
        return False
    text = line.rstrip()
    return any(pattern.search(text) for pattern in profile.prompt_patterns)


def _shows_ready(tail: list[str], agent_type: AgentType) -> bool:
    profile = PROFILES.get(agent_type)
    if profile is None or not profile.ready_markers:
        return False
    lowered = "\n".join(tail).lower()
    return any(marker in lowered for marker in profile.ready_markers)


def resolve_pane_type(title: str, lines: list[str], agent_type: AgentType | None = None) -> AgentType:
    if agent_type is not None and agent_type is not AgentType.UNKNOWN:
        return agent_type
    detected = detect_type(title)
    if detected is AgentType.UNKNOWN:
        detected = detect_type_from_content(lines)
    return detected


def classify_pane(lines: list[str], agent_type: AgentType | None = None, title: str = "") -> StateDetection:
    """Classify a pane tail; see the module docstring for the rule order."""
    resolved = resolve_pane_type(title, lines, agent_type)
    errors = check_errors(lines)
    process = check_process(lines, resolved)

    if is_blank(lines):
        state = PaneState.ACTIVE if resolved.is_agent else PaneState.IDLE
        return StateDetection(state, resolved, errors, process, "no output")
    if process.crashed:
        return StateDetection(PaneState.CRASHED, resolved, errors, process, process.reason or "process exited")
    if errors.rate_limited:
        return StateDetection(PaneState.RATE_LIMITED, resolved, errors, process, errors.reason or "rate limited")
    if errors.has_errors:
        return StateDetection(PaneState.ERROR, resolved, errors, process, errors.reason or "error detected")

    tail = non_empty_tail(lines, 5)
    lowered_tail = "\n".join(tail).lower()
    if any(marker in lowered_tail for marker in BUSY_MARKERS):
        return StateDetection(PaneState.ACTIVE, resolved, errors, process, "busy footer")
    if _GENERIC_PROMPT_RE.search(tail[-1].rstrip()):
        return StateDetection(PaneState.IDLE, resolved, errors, process, "prompt")
    # Agent TUIs draw a footer below the input box, so look a few lines up
    if any(_matches_agent_prompt(line, resolved) for line in tail[-3:]) or _shows_ready(tail, resolved):
        return StateDetection(PaneState.IDLE, resolved, errors, process, "agent prompt or banner")
    return StateDetection(PaneState.ACTIVE, resolved, errors, process, "output without prompt")


def detect_state(lines: list[str], agent_type: AgentType | None = None, title: str = "") -> PaneState:
    """Return only the state tag for a pane tail."""
    detection = classify_pane(lines, agent_type, title)
    logger.debug("classified pane %r as %s (%s)", title, detection.state.value, detection.reason)
    return detection.state


def parse_context_remaining(lines: list[str]) -> int | None:
    """Percent of context left as printed by Codex (``NN% context left``)."""
    for line in reversed(lines):
        match = _CONTEXT_LEFT_RE.search(line)
        if match:
            return int(match.group(1))
    return None


def parse_token_total(lines: list[str]) -> int | None:
    """Total tokens from a ``Token usage: total=N`` line."""
    for line in reversed(lines):
        match = _TOKEN_TOTAL_RE.search(line)
        if match:
            return int(match.group(1).replace(",", ""))
    return None
