"""Work-selection strategies over the backlog's triage view.

:func:`build_candidates` projects triage and in-progress listings into
immutable per-track tuples; every ``select_*`` function reads those tuples and
returns a fresh list, so one :class:`Candidates` value can be shared across
threads and reused across strategies.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from ..tools.backlog import BeadInProgress, BlockerToClear, TriageRecommendation, TriageResponse

READY_STATUSES = frozenset({"ready", "open"})

_EPOCH_MAX = datetime.max.replace(tzinfo=timezone.utc)


class AssignStrategy(str, Enum):
    IMPACT = "impact"
    READY = "ready"
    STALE = "stale"
    BALANCED = "balanced"
    TOP_N = "top-n"
    DIVERSE = "diverse"
    DEPENDENCY_AWARE = "dependency-aware"
    # Alias of top-n until agent capability weights exist
    SKILL_MATCHED = "skill-matched"


_STRATEGY_ALIASES = {
    "topn": AssignStrategy.TOP_N,
    "dependency": AssignStrategy.DEPENDENCY_AWARE,
    "skill": AssignStrategy.SKILL_MATCHED,
}


def parse_strategy(value: str | None, default: AssignStrategy = AssignStrategy.IMPACT) -> AssignStrategy:
    """Resolve a strategy name or alias.

    Raises:
        ValueError: For unknown strategy names.
    """
    if value is None or not value.strip():
        return default
    name = value.strip().lower()
    if name in _STRATEGY_ALIASES:
        return _STRATEGY_ALIASES[name]
    try:
        return AssignStrategy(name)
    except ValueError as exc:
        choices = ", ".join(s.value for s in AssignStrategy)
        raise ValueError(f"unknown assignment strategy {value!r} (expected one of: {choices})") from exc


@dataclass(frozen=True, slots=True)
class WorkItem:
    """One bead as a strategy sees it."""

    id: str
    title: str = ""
    bead_type: str = ""
    status: str = ""
    priority: int = 0
    score: float = 0.0
    unblocks: int = 0
    actionable: bool = True
    deps: tuple[str, ...] = ()
    reasons: tuple[str, ...] = ()
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("work item id must be non-empty")

    @classmethod
    def from_recommendation(cls, rec: TriageRecommendation) -> WorkItem:
        return cls(
            id=rec.id,
            title=rec.title,
            bead_type=rec.type,
            status=rec.status,
            priority=rec.priority,
            score=rec.score,
            deps=tuple(rec.blocked_by),
            reasons=tuple(rec.reasons),
        )

    @classmethod
    def from_blocker(cls, blocker: BlockerToClear, bead_type: str = "") -> WorkItem:
        """``bead_type`` fills in when the blocker entry carries no type of its own."""
        return cls(
            id=blocker.id,
            title=blocker.title,
            bead_type=blocker.type or bead_type,
            score=float(blocker.unblocks_count),
            unblocks=blocker.unblocks_count,
            actionable=blocker.actionable,
            deps=tuple(blocker.blocked_by),
            reasons=(f"Unblocks {blocker.unblocks_count} items",),
        )

    @classmethod
    def from_in_progress(cls, bead: BeadInProgress) -> WorkItem:
        updated = bead.updated_at
        if updated is not None and updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        return cls(id=bead.id, title=bead.title, status="in_progress", updated_at=updated)


@dataclass(frozen=True, slots=True)
class Candidates:
    """Per-track candidate lists, each already in its track's order.

    Attributes:
        impact: Blockers by descending unblock count, ties by id.
        ready: Ready/open recommendations by ascending priority.
        stale: In-progress beads, least recently updated first.
        recommendations: All recommendations in triage score order.
        blockers: Blockers in triage order.
    """

    impact: tuple[WorkItem, ...] = ()
    ready: tuple[WorkItem, ...] = ()
    stale: tuple[WorkItem, ...] = ()
    recommendations: tuple[WorkItem, ...] = ()
    blockers: tuple[WorkItem, ...] = ()


def build_candidates(
    triage: TriageResponse | None,
    in_progress: list[BeadInProgress] | None = None,
) -> Candidates:
    """Project collaborator payloads into :class:`Candidates` without touching them."""
    recommendations: tuple[WorkItem, ...] = ()
    blockers: tuple[WorkItem, ...] = ()
    if triage is not None:
        recommendations = tuple(WorkItem.from_recommendation(rec) for rec in triage.triage.recommendations)
        types = {item.id: item.bead_type for item in recommendations}
        blockers = tuple(WorkItem.from_blocker(b, types.get(b.id, "")) for b in triage.triage.blockers_to_clear)

    impact = tuple(sorted(blockers, key=lambda item: (-item.unblocks, item.id)))
    ready = tuple(sorted(
        (item for item in recommendations if item.status.lower() in READY_STATUSES),
        key=lambda item: item.priority,
    ))
    stale_items = [WorkItem.from_in_progress(bead) for bead in in_progress or [] if bead.id]
    stale = tuple(sorted(stale_items, key=lambda item: (item.updated_at or _EPOCH_MAX, item.id)))
    return Candidates(impact=impact, ready=ready, stale=stale, recommendations=recommendations, blockers=blockers)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _dedupe(items) -> list[WorkItem]:
    seen: set[str] = set()
    unique = []
    for item in items:
        if item.id not in seen:
            seen.add(item.id)
            unique.append(item)
    return unique


def select_balanced(candidates: Candidates) -> list[WorkItem]:
    """Round-robin over impact, ready and stale until all three are exhausted."""
    tracks = (candidates.impact, candidates.ready, candidates.stale)
    interleaved = []
    for position in range(max(len(track) for track in tracks)):
        for track in tracks:
            if position < len(track):
                interleaved.append(track[position])
    return _dedupe(interleaved)


def select_diverse(candidates: Candidates) -> list[WorkItem]:
    """One recommendation per distinct type first, then the rest in score order."""
    seen_types: set[str] = set()
    first_pass = []
    for item in candidates.recommendations:
        if item.bead_type not in seen_types:
            seen_types.add(item.bead_type)
            first_pass.append(item)
    return _dedupe([*first_pass, *candidates.recommendations])


def select_dependency_aware(candidates: Candidates) -> list[WorkItem]:
    """Actionable blockers first, then the remaining recommendations."""
    actionable = [item for item in candidates.blockers if item.actionable]
    return _dedupe([*actionable, *candidates.recommendations])


def select_items(strategy: AssignStrategy | str, candidates: Candidates) -> list[WorkItem]:
    """Ordered work items for ``strategy``; allocation decides how many are used."""
    strategy = AssignStrategy(strategy)
    if strategy == AssignStrategy.IMPACT:
        return list(candidates.impact)
    if strategy == AssignStrategy.READY:
        return list(candidates.ready)
    if strategy == AssignStrategy.STALE:
        return list(candidates.stale)
    if strategy == AssignStrategy.BALANCED:
        return select_balanced(candidates)
    if strategy == AssignStrategy.DIVERSE:
        return select_diverse(candidates)
    if strategy == AssignStrategy.DEPENDENCY_AWARE:
        return select_dependency_aware(candidates)
    return list(candidates.recommendations)


def needs_in_progress(strategy: AssignStrategy | str) -> bool:
    return AssignStrategy(strategy) in (AssignStrategy.STALE, AssignStrategy.BALANCED)
