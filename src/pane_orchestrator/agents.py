"""Agent identity: canonical types, per-type profiles, title and model inference.

Agent-specific knowledge (prompts, banners, rate-limit phrasing, the inert
probe sequence, launch command) lives in one :class:`AgentProfile` record per
type. Detection code consults the :data:`PROFILES` table instead of branching
on type names.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from enum import Enum


class AgentType(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"
    CURSOR = "cursor"
    WINDSURF = "windsurf"
    AIDER = "aider"
    USER = "user"
    UNKNOWN = "unknown"

    @property
    def is_agent(self) -> bool:
        return self not in (AgentType.USER, AgentType.UNKNOWN)

    @property
    def short(self) -> str:
        profile = PROFILES.get(self)
        return profile.short if profile else self.value


@dataclass(frozen=True, slots=True)
class AgentProfile:
    """Everything the detectors need to know about one agent type.

    Attributes:
        agent_type: Canonical type this record describes.
        short: Short form used in pane titles (``{session}__{short}_{n}``).
        aliases: Extra names accepted by :func:`resolve_agent_type`.
        launch_command: Default command that starts the agent.
        prompt_patterns: Regexes matched against trailing lines when idle.
        ready_markers: Lowercase substrings (banners, greetings, example hints)
            that mean the agent is waiting for input.
        rate_limit_phrases: Lowercase substrings signalling a rate limit.
        probe_keys: Inert keystrokes for the echo probe; typed without Enter.
        probe_cleanup: Named keys that undo ``probe_keys``.
        exit_command: Text that asks the agent to quit on its own.
        default_model: Model family assumed when the title names none.
    """

    agent_type: AgentType
    short: str
    aliases: tuple[str, ...] = ()
    launch_command: str = ""
    prompt_patterns: tuple[re.Pattern[str], ...] = ()
    ready_markers: tuple[str, ...] = ()
    rate_limit_phrases: tuple[str, ...] = ()
    probe_keys: str = "."
    probe_cleanup: tuple[str, ...] = ("BSpace",)
    exit_command: str = "/exit"
    default_model: str = "unknown"
    header_pattern: re.Pattern[str] | None = field(default=None)


def _rx(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p) for p in patterns)


PROFILES: dict[AgentType, AgentProfile] = {
    AgentType.CLAUDE: AgentProfile(
        agent_type=AgentType.CLAUDE,
        short="cc",
        aliases=("claude-code", "claude_code"),
        launch_command="claude",
        prompt_patterns=_rx(r"claude\s?>\s*$", r"Human:\s*$", r"^\s*>\s*$"),
        ready_markers=("claude code v", "welcome back", "bypass permissions", 'try "', "how can i help"),
        rate_limit_phrases=("you've hit your limit", "usage limit", "request limit"),
        exit_command="/exit",
        default_model="sonnet",
        header_pattern=re.compile(r"(?i)\b(opus|claude|sonnet|haiku)\b"),
    ),
    AgentType.CODEX: AgentProfile(
        agent_type=AgentType.CODEX,
        short="cod",
        aliases=("codex-cli", "codex_cli"),
        launch_command="codex",
        prompt_patterns=_rx(r"codex>\s*$", r"\?\s*for\s*shortcuts", r"^\s*›"),
        ready_markers=("openai codex", "context left"),
        rate_limit_phrases=("you've reached your usage limit", "capacity reached", "maximum requests"),
        exit_command="/quit",
        default_model="gpt4",
        header_pattern=re.compile(r"(?i)\b(codex|openai|gpt-\d)\b"),
    ),
    AgentType.GEMINI: AgentProfile(
        agent_type=AgentType.GEMINI,
        short="gmi",
        aliases=("gemini-cli", "gemini_cli"),
        launch_command="gemini",
        prompt_patterns=_rx(r"gemini>\s*$"),
        ready_markers=("type your message", "tips for getting started"),
        rate_limit_phrases=("resource exhausted", "limit reached"),
        exit_command="/quit",
        default_model="gemini",
        header_pattern=re.compile(r"(?i)(gemini.*preview|gemini-\d|google\s+ai)"),
    ),
    AgentType.CURSOR: AgentProfile(
        agent_type=AgentType.CURSOR,
        short="cursor",
        launch_command="cursor-agent",
        prompt_patterns=_rx(r"cursor>\s*$"),
        header_pattern=re.compile(r"(?i)\bcursor\b"),
    ),
    AgentType.WINDSURF: AgentProfile(
        agent_type=AgentType.WINDSURF,
        short="windsurf",
        launch_command="windsurf",
        prompt_patterns=_rx(r"windsurf>\s*$"),
        header_pattern=re.compile(r"(?i)\bwindsurf\b"),
    ),
    AgentType.AIDER: AgentProfile(
        agent_type=AgentType.AIDER,
        short="aider",
        launch_command="aider",
        prompt_patterns=_rx(r"aider>\s*$"),
        exit_command="/exit",
        header_pattern=re.compile(r"(?i)\baider v\d"),
    ),
    AgentType.USER: AgentProfile(agent_type=AgentType.USER, short="user", exit_command="exit"),
}

# Types whose panes are created by spawn, in creation order
SPAWN_ORDER: tuple[AgentType, ...] = (AgentType.CLAUDE, AgentType.CODEX, AgentType.GEMINI)

_LONG_NAMES: tuple[AgentType, ...] = (
    AgentType.CLAUDE,
    AgentType.CODEX,
    AgentType.GEMINI,
    AgentType.CURSOR,
    AgentType.WINDSURF,
    AgentType.AIDER,
)

# "oc" is reserved; it is matched on word boundaries but has no canonical type yet
_SHORT_FORMS: tuple[tuple[str, AgentType], ...] = (
    ("cc", AgentType.CLAUDE),
    ("cod", AgentType.CODEX),
    ("gmi", AgentType.GEMINI),
    ("user", AgentType.USER),
    ("oc", AgentType.UNKNOWN),
)


def _word(token: str) -> re.Pattern[str]:
    # Underscores count as separators so that "proj__cc_1" splits into words
    return re.compile(rf"(?:^|[^a-z0-9]){re.escape(token)}(?:$|[^a-z0-9])")


_SHORT_FORM_PATTERNS = tuple((_word(short), agent) for short, agent in _SHORT_FORMS)


def profile_for(agent_type: AgentType | str) -> AgentProfile | None:
    try:
        return PROFILES.get(AgentType(agent_type))
    except ValueError:
        return None


def detect_type(title: str) -> AgentType:
    """Infer the agent type from a pane title.

    Long names match as case-insensitive substrings; short forms only match
    as whole words, so ``success_test`` is not Claude and ``decode_pane`` is
    not Codex.
    """
    lowered = title.lower()
    for agent in _LONG_NAMES:
        if agent.value in lowered:
            return agent
    for pattern, agent in _SHORT_FORM_PATTERNS:
        if pattern.search(lowered):
            return agent
    return AgentType.UNKNOWN


def detect_type_from_content(lines: list[str]) -> AgentType:
    """Infer the agent type from banner lines when the title is uninformative."""
    text = "\n".join(lines)
    for agent in _LONG_NAMES:
        header = PROFILES[agent].header_pattern
        if header is not None and header.search(text):
            return agent
    return AgentType.UNKNOWN


def resolve_agent_type(name: str) -> AgentType | None:
    """Map a user-supplied type or alias to its canonical type.

    Returns ``None`` for names that are not recognized.
    """
    lowered = name.strip().lower()
    for agent_type, profile in PROFILES.items():
        if lowered in (agent_type.value, profile.short, *profile.aliases):
            return agent_type
    return None


def pane_title(session: str, agent_type: AgentType, ordinal: int | None = None) -> str:
    """Conventional pane title, e.g. ``proj__cc_1`` or ``proj__user``."""
    if agent_type is AgentType.USER or ordinal is None:
        return f"{session}__{agent_type.short}"
    return f"{session}__{agent_type.short}_{ordinal}"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

_MODEL_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("opus", "opus"),
    ("sonnet", "sonnet"),
    ("haiku", "haiku"),
    ("gpt4", "gpt4"),
    ("gpt-4", "gpt4"),
    ("o4-mini", "o4-mini"),
    ("o1", "o1"),
    ("o3", "o3"),
    ("flash", "flash"),
    ("pro", "pro"),
    ("gemini", "gemini"),
)
_MODEL_PATTERNS = tuple((_word(keyword), model) for keyword, model in _MODEL_KEYWORDS)

CONTEXT_LIMITS: dict[str, int] = {
    "opus": 200_000,
    "sonnet": 200_000,
    "haiku": 200_000,
    "gpt4": 128_000,
    "o4-mini": 128_000,
    "o1": 200_000,
    "o3": 200_000,
    "gemini": 1_000_000,
    "pro": 1_000_000,
    "flash": 1_000_000,
}
DEFAULT_CONTEXT_LIMIT = 128_000


def detect_model(agent_type: AgentType, title: str) -> str:
    """Guess the model family from title keywords, else the type default."""
    lowered = title.lower()
    for pattern, model in _MODEL_PATTERNS:
        if pattern.search(lowered):
            return model
    profile = PROFILES.get(agent_type)
    return profile.default_model if profile else "unknown"


def context_limit(model: str) -> int:
    return CONTEXT_LIMITS.get(model, DEFAULT_CONTEXT_LIMIT)


# ---------------------------------------------------------------------------
# Agent names
# ---------------------------------------------------------------------------

NATO_ALPHABET: tuple[str, ...] = (
    "alpha", "bravo", "charlie", "delta", "echo", "foxtrot",
    "golf", "hotel", "india", "juliet", "kilo", "lima",
    "mike", "november", "oscar", "papa", "quebec", "romeo",
    "sierra", "tango", "uniform", "victor", "whiskey", "xray",
    "yankee", "zulu",
)


class AgentNameMap:
    """Stable agent names for a session.

    Custom names are consumed in order first; after that names follow
    ``{type}-{nato}`` with a ``-{cycle}`` suffix once the alphabet wraps.
    """

    def __init__(self, session: str, custom_names: list[str] | None = None) -> None:
        self.session = session
        self._custom = [name for name in (custom_names or []) if name.strip()]
        self._custom_offset = 0
        self._nato_index = 0
        self._name_to_pane: dict[str, str] = {}
        self._pane_to_name: dict[str, str] = {}
        self._lock = threading.Lock()

    def _next_name(self, agent_type: AgentType) -> str:
        if self._custom_offset < len(self._custom):
            name = self._custom[self._custom_offset]
            self._custom_offset += 1
            return name
        cycle, idx = divmod(self._nato_index, len(NATO_ALPHABET))
        word = NATO_ALPHABET[idx] if cycle == 0 else f"{NATO_ALPHABET[idx]}-{cycle + 1}"
        self._nato_index += 1
        return f"{agent_type.value}-{word}"

    def assign_new(self, agent_type: AgentType, pane_label: str) -> str:
        with self._lock:
            name = self._next_name(agent_type)
            self._name_to_pane[name] = pane_label
            self._pane_to_name[pane_label] = name
            return name

    def pane_for(self, name: str) -> str | None:
        with self._lock:
            return self._name_to_pane.get(name)

    def name_for(self, pane_label: str) -> str | None:
        with self._lock:
            return self._pane_to_name.get(pane_label)
