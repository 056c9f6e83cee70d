"""Handoff files: what a previous session achieved and what comes next.

Handoffs live under ``<handoff_dir>/<session>/`` as YAML documents with
``goal``, ``now``, ``status`` and ``outcome`` keys (an optional
``created_at`` RFC3339 timestamp overrides the file's mtime). The newest one
seeds the recovery block of a fresh spawn.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import yaml

from .envelope import WireModel, parse_timestamp, utc_now
from .timing import humanize_duration

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Handoff:
    path: Path
    created_at: datetime
    goal: str = ""
    now: str = ""
    status: str = ""
    outcome: str = ""

    def age_seconds(self, now: datetime | None = None) -> float:
        return ((now or utc_now()) - self.created_at).total_seconds()


class SpawnRecovery(WireModel):
    handoff_path: str
    handoff_age: str
    goal: str | None = None
    now: str | None = None
    status: str | None = None
    outcome: str | None = None
    injected_text: str | None = None


def _created_at(path: Path, data: dict) -> datetime:
    raw = data.get("created_at")
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if isinstance(raw, str) and raw.strip():
        try:
            return parse_timestamp(raw)
        except ValueError:
            logger.debug("ignoring malformed created_at in %s", path)
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


def read_handoff(path: Path) -> Handoff | None:
    """Parse one handoff file; unreadable or malformed files yield ``None``."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("skipping unreadable handoff %s: %s", path, exc)
        return None
    if not isinstance(data, dict):
        logger.warning("skipping handoff %s: not a mapping", path)
        return None
    return Handoff(
        path=path,
        created_at=_created_at(path, data),
        goal=str(data.get("goal") or ""),
        now=str(data.get("now") or ""),
        status=str(data.get("status") or ""),
        outcome=str(data.get("outcome") or ""),
    )


def find_latest_handoff(handoff_dir: Path, session: str) -> Handoff | None:
    """Newest readable handoff for ``session``, or ``None``."""
    directory = handoff_dir / session
    if not directory.is_dir():
        return None
    handoffs = [h for h in (read_handoff(p) for p in directory.glob("*.yaml")) if h is not None]
    if not handoffs:
        return None
    return max(handoffs, key=lambda h: (h.created_at, h.path.name))


def injection_text(handoff: Handoff, now: datetime | None = None) -> str:
    """Context block sent to freshly spawned agents."""
    lines = [f"Resuming from a handoff written {humanize_duration(handoff.age_seconds(now))} ago."]
    if handoff.status:
        status = handoff.status if not handoff.outcome else f"{handoff.status} ({handoff.outcome})"
        lines.append(f"Previous session status: {status}")
    if handoff.goal:
        lines.append(f"Previous session achieved: {handoff.goal}")
    if handoff.now:
        lines.append(f"Next step: {handoff.now}")
    return "\n".join(lines)


def load_recovery(handoff_dir: Path, session: str, now: datetime | None = None) -> SpawnRecovery | None:
    handoff = find_latest_handoff(handoff_dir, session)
    if handoff is None:
        return None
    return SpawnRecovery(
        handoff_path=str(handoff.path),
        handoff_age=humanize_duration(handoff.age_seconds(now)),
        goal=handoff.goal or None,
        now=handoff.now or None,
        status=handoff.status or None,
        outcome=handoff.outcome or None,
        injected_text=injection_text(handoff, now),
    )
