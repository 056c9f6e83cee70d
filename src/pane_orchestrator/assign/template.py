"""Prompt templates for bulk assignment."""

from __future__ import annotations

import re
from pathlib import Path

from ..errors import PaneOrchestratorError

TEMPLATE_VARIABLES = ("bead_id", "bead_title", "bead_type", "bead_deps", "session", "pane")

DEFAULT_TEMPLATE = (
    "Work on bead {bead_id}: {bead_title}\n"
    "Type: {bead_type}. Depends on: {bead_deps}.\n"
    "Use `bd show {bead_id}` for the full description and mark it closed when done."
)

_PLACEHOLDER_RE = re.compile(r"\{([a-z_]+)\}")


class TemplateError(PaneOrchestratorError, ValueError):
    """Raised when a prompt template cannot be loaded or names unknown variables."""


def validate_template(template: str) -> str:
    """Return ``template`` unchanged after checking its placeholders.

    Raises:
        TemplateError: If the template is blank or uses an unknown variable.
    """
    if not template.strip():
        raise TemplateError("prompt template is empty")
    unknown = sorted({name for name in _PLACEHOLDER_RE.findall(template) if name not in TEMPLATE_VARIABLES})
    if unknown:
        raise TemplateError(
            f"unknown template variable(s): {', '.join(unknown)} (available: {', '.join(TEMPLATE_VARIABLES)})"
        )
    return template


def load_template(path: str | Path | None = None, text: str | None = None) -> str:
    """Resolve the template from inline text, a file, or the default.

    Raises:
        TemplateError: If the file cannot be read or the template is invalid.
    """
    if text:
        return validate_template(text)
    if path:
        try:
            return validate_template(Path(path).read_text(encoding="utf-8"))
        except OSError as exc:
            raise TemplateError(f"cannot read template {path}: {exc}") from exc
    return DEFAULT_TEMPLATE


def render_template(
    template: str,
    *,
    bead_id: str,
    bead_title: str = "",
    bead_type: str = "",
    bead_deps: list[str] | tuple[str, ...] | None = None,
    session: str = "",
    pane: int | str = "",
) -> str:
    """Substitute the template variables.

    A missing type renders as ``unknown`` and an empty dependency list as
    ``none``; dependencies are joined with ``", "``.
    """
    values = {
        "bead_id": bead_id,
        "bead_title": bead_title,
        "bead_type": bead_type or "unknown",
        "bead_deps": ", ".join(bead_deps) if bead_deps else "none",
        "session": session,
        "pane": str(pane),
    }
    return _PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), template)
