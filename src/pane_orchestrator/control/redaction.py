"""Secret detection for outgoing messages.

Detectors run in priority order; a lower-priority match that overlaps an
earlier one is dropped, so ``secret=ghp_...`` reports a GitHub token rather
than a generic secret. In ``redact`` mode every finding is replaced with
``[REDACTED:<CATEGORY>:<hash8>]``, where the hash is derived from the secret so
equal secrets share a placeholder.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from enum import Enum

from pydantic import Field

from ..envelope import WireModel


class RedactionMode(str, Enum):
    OFF = "off"
    WARN = "warn"
    REDACT = "redact"


class Category(str, Enum):
    OPENAI_KEY = "OPENAI_KEY"
    ANTHROPIC_KEY = "ANTHROPIC_KEY"
    GITHUB_TOKEN = "GITHUB_TOKEN"
    GOOGLE_API_KEY = "GOOGLE_API_KEY"
    AWS_ACCESS_KEY = "AWS_ACCESS_KEY"
    AWS_SECRET_KEY = "AWS_SECRET_KEY"
    JWT = "JWT"
    BEARER_TOKEN = "BEARER_TOKEN"
    PRIVATE_KEY = "PRIVATE_KEY"
    DATABASE_URL = "DATABASE_URL"
    PASSWORD = "PASSWORD"
    GENERIC_API_KEY = "GENERIC_API_KEY"
    GENERIC_SECRET = "GENERIC_SECRET"


# Highest priority first
DETECTORS: tuple[tuple[Category, re.Pattern[str]], ...] = (
    (Category.ANTHROPIC_KEY, re.compile(r"\bsk-ant-[A-Za-z0-9_-]{40,}")),
    (Category.OPENAI_KEY, re.compile(r"\bsk-(?:proj-[A-Za-z0-9_-]{40,}|[A-Za-z0-9]{16,}T3BlbkFJ[A-Za-z0-9]{16,})")),
    (Category.GITHUB_TOKEN, re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{36,}|github_pat_[A-Za-z0-9_]{60,})")),
    (Category.GOOGLE_API_KEY, re.compile(r"\bAIza[0-9A-Za-z_-]{35}")),
    (Category.AWS_ACCESS_KEY, re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    (Category.AWS_SECRET_KEY, re.compile(r"(?i)aws_?secret(?:_access)?(?:_key)?\s*[=:]\s*['\"]?[A-Za-z0-9/+=]{40}")),
    (Category.JWT, re.compile(r"\beyJ[A-Za-z0-9_-]{10,}\.eyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}")),
    (Category.BEARER_TOKEN, re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]{20,}=*")),
    (Category.PRIVATE_KEY, re.compile(r"-----BEGIN (?:[A-Z]+ )?PRIVATE KEY-----")),
    (Category.DATABASE_URL, re.compile(r"\b(?:postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis)://[^\s:/@]+:[^\s@]+@[^\s]+")),
    (Category.PASSWORD, re.compile(r"(?i)\b(?:password|passwd|pwd)\s*[=:]\s*['\"]?[^\s'\"]{6,}")),
    (Category.GENERIC_API_KEY, re.compile(r"(?i)\bapi[_-]?key\s*[=:]\s*['\"]?[A-Za-z0-9_-]{16,}")),
    (Category.GENERIC_SECRET, re.compile(r"(?i)\b(?:secret|token)\s*[=:]\s*['\"]?[A-Za-z0-9_./+-]{16,}")),
)


@dataclass(frozen=True, slots=True)
class Finding:
    category: Category
    start: int
    end: int
    value: str

    @property
    def placeholder(self) -> str:
        digest = hashlib.sha256(self.value.encode("utf-8")).hexdigest()[:8]
        return f"[REDACTED:{self.category.value}:{digest}]"


class RedactionSummary(WireModel):
    mode: RedactionMode
    findings: int = 0
    action: str = "none"
    categories: list[str] = Field(default_factory=list)


def parse_mode(value: str) -> RedactionMode:
    """Raises ValueError for unknown modes."""
    try:
        return RedactionMode(value.strip().lower())
    except ValueError as exc:
        choices = ", ".join(m.value for m in RedactionMode)
        raise ValueError(f"invalid redaction mode {value!r} (expected one of: {choices})") from exc


def scan(text: str) -> list[Finding]:
    """Return non-overlapping findings ordered by position."""
    findings: list[Finding] = []
    for category, pattern in DETECTORS:
        for match in pattern.finditer(text):
            start, end = match.span()
            if any(start < f.end and f.start < end for f in findings):
                continue
            findings.append(Finding(category, start, end, match.group(0)))
    return sorted(findings, key=lambda f: f.start)


def redact(text: str, findings: list[Finding]) -> str:
    parts = []
    cursor = 0
    for finding in findings:
        parts.append(text[cursor:finding.start])
        parts.append(finding.placeholder)
        cursor = finding.end
    parts.append(text[cursor:])
    return "".join(parts)


def apply_redaction(text: str, mode: RedactionMode | str) -> tuple[str, RedactionSummary]:
    """Scan ``text`` under ``mode``; returns the text to send and its summary.

    ``off`` skips scanning, ``warn`` reports findings and leaves the text
    alone, ``redact`` replaces each finding with its placeholder.
    """
    mode = RedactionMode(mode)
    if mode == RedactionMode.OFF:
        return text, RedactionSummary(mode=mode)
    findings = scan(text)
    categories = sorted({f.category.value for f in findings})
    if not findings:
        return text, RedactionSummary(mode=mode)
    if mode == RedactionMode.WARN:
        return text, RedactionSummary(mode=mode, findings=len(findings), action="warned", categories=categories)
    return redact(text, findings), RedactionSummary(
        mode=mode, findings=len(findings), action="redacted", categories=categories
    )
