"""Capture-and-classify passes shared by the read-only state views."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .agents import AgentType, context_limit, detect_model
from .capture import capture_pane, estimate_tokens
from .errors import MultiplexerError
from .mux import Multiplexer, PaneInfo
from .state import PaneState, StateDetection, classify_pane, parse_context_remaining, parse_token_total

logger = logging.getLogger(__name__)

# Scroll-back only shows part of the conversation
CONTEXT_OVERHEAD = 2.5


class UsageLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


def usage_level(percent: float) -> UsageLevel:
    if percent < 40:
        return UsageLevel.LOW
    if percent < 70:
        return UsageLevel.MEDIUM
    if percent < 85:
        return UsageLevel.HIGH
    return UsageLevel.CRITICAL


@dataclass(frozen=True, slots=True)
class ContextUsage:
    model: str
    estimated_tokens: int
    with_overhead: int
    limit: int
    percent: float
    confidence: str

    @property
    def level(self) -> UsageLevel:
        return usage_level(self.percent)


def estimate_context(lines: list[str], agent_type: AgentType, title: str = "") -> ContextUsage:
    """Context usage for one pane.

    A Codex ``NN% context left`` footer or a ``Token usage: total=N`` line is
    trusted as-is; otherwise tokens are estimated from the visible text.
    """
    model = detect_model(agent_type, title)
    limit = context_limit(model)
    remaining = parse_context_remaining(lines)
    if remaining is not None:
        percent = float(max(0, min(100, 100 - remaining)))
        tokens = int(limit * percent / 100)
        return ContextUsage(model, tokens, tokens, limit, percent, "high")
    total = parse_token_total(lines)
    if total is not None:
        return ContextUsage(model, total, total, limit, round(total / limit * 100, 1), "high")
    tokens = estimate_tokens("\n".join(lines))
    with_overhead = int(tokens * CONTEXT_OVERHEAD)
    return ContextUsage(model, tokens, with_overhead, limit, round(with_overhead / limit * 100, 1), "low")


@dataclass(frozen=True, slots=True)
class PaneSurvey:
    """One pane's capture and classification; ``error`` is set when capture failed."""

    pane: PaneInfo
    raw: str
    lines: list[str]
    detection: StateDetection | None
    error: str | None = None

    @property
    def state(self) -> PaneState:
        return self.detection.state if self.detection else PaneState.UNKNOWN

    @property
    def agent_type(self) -> AgentType:
        return self.detection.agent_type if self.detection else self.pane.agent_type


def survey_pane(mux: Multiplexer, pane: PaneInfo, lines: int) -> PaneSurvey:
    try:
        raw, captured = capture_pane(mux, pane.ref, lines)
    except MultiplexerError as exc:
        logger.debug("capture of %s failed: %s", pane.ref.wire, exc)
        return PaneSurvey(pane, "", [], None, str(exc))
    return PaneSurvey(pane, raw, captured, classify_pane(captured, pane.agent_type, pane.title))


def survey_panes(mux: Multiplexer, panes: list[PaneInfo], lines: int) -> list[PaneSurvey]:
    """Survey ``panes`` in the given order; per-pane capture failures are recorded, not raised."""
    return [survey_pane(mux, pane, lines) for pane in panes]
