"""Pane capture parsing: escape stripping, line splitting, hashing, truncation."""

from __future__ import annotations

import hashlib
import re

ANSI_PATTERN = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]|\x1b\][^\a\x1b]*(?:\a|\x1b\\)")

DEFAULT_CAPTURE_LINES = 20
MESSAGE_PREVIEW_RUNES = 50
ELLIPSIS = "..."


def strip_ansi(text: str) -> str:
    """Remove CSI and OSC escape sequences."""
    return ANSI_PATTERN.sub("", text)


def split_lines(text: str) -> list[str]:
    """Split a captured buffer into lines.

    CRLF and lone CR are treated as LF. A single trailing empty line produced by
    a terminating newline is dropped; any further empty trailing lines are kept.
    """
    if not text:
        return []
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = normalized.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def clean_lines(raw: str) -> list[str]:
    """Strip escapes then split."""
    return split_lines(strip_ansi(raw))


def last_lines(lines: list[str], count: int) -> list[str]:
    if count <= 0:
        return []
    return lines[-count:]


def last_non_empty(lines: list[str]) -> str:
    """Return the last line with visible content, or ``""``."""
    for line in reversed(lines):
        if line.strip():
            return line
    return ""


def non_empty_tail(lines: list[str], count: int) -> list[str]:
    """Return up to ``count`` trailing lines that carry visible content."""
    tail = [line for line in lines if line.strip()]
    return tail[-count:] if count > 0 else []


def is_blank(lines: list[str]) -> bool:
    return not any(line.strip() for line in lines)


def content_hash(raw: str) -> str:
    """Hash the visible content of a captured buffer.

    Trailing whitespace on each line is ignored, so padding-only redraws keep
    the same hash, but the number and order of lines always participate.
    """
    lines = [line.rstrip() for line in clean_lines(raw)]
    digest = hashlib.sha256("\n".join(lines).encode("utf-8"))
    digest.update(str(len(lines)).encode("ascii"))
    return digest.hexdigest()[:16]


def truncate_message(message: str, limit: int = MESSAGE_PREVIEW_RUNES) -> str:
    """Truncate to at most ``limit`` characters, ending with an ellipsis when cut."""
    if len(message) <= limit:
        return message
    return message[: limit - len(ELLIPSIS)] + ELLIPSIS


def estimate_tokens(text: str) -> int:
    """Rough token estimate of about four characters per token."""
    return len(text) // 4


def capture_pane(mux, ref, lines: int = DEFAULT_CAPTURE_LINES) -> tuple[str, list[str]]:
    """Capture a pane tail and return ``(raw, cleaned_lines)``."""
    raw = mux.capture(ref, lines)
    return raw, clean_lines(raw)
