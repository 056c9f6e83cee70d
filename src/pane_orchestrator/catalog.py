"""Machine-readable catalog of the public operation surface.

The registry below is the single description of every ``paneorch``
sub-command: the CLI builds its argument parsers from it and
``paneorch capabilities`` emits it verbatim.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from pydantic import Field

from . import __version__
from .envelope import Envelope, WireModel, success_response

CATALOG_SCHEMA_VERSION = "1.0.0"
CLI_NAME = "paneorch"
CATEGORY_ORDER: tuple[str, ...] = ("state", "control", "spawn", "backlog", "archive", "utility")

PARAM_TYPES = ("string", "int", "float", "bool", "duration", "list")


@dataclass(frozen=True, slots=True)
class Param:
    """One command parameter.

    ``list`` parameters take comma-separated values; ``duration`` parameters
    take values like ``30s`` or ``5m``. Positional parameters have no flag.
    """

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = None
    positional: bool = False

    def __post_init__(self) -> None:
        if self.type not in PARAM_TYPES:
            raise ValueError(f"unknown parameter type {self.type!r}")

    @property
    def flag(self) -> str:
        return f"<{self.name}>" if self.positional else f"--{self.name}"

    @property
    def dest(self) -> str:
        return self.name.replace("-", "_")


@dataclass(frozen=True, slots=True)
class Command:
    name: str
    category: str
    description: str
    params: tuple[Param, ...] = ()
    examples: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.category not in CATEGORY_ORDER:
            raise ValueError(f"unknown category {self.category!r} for {self.name}")

    @property
    def flag(self) -> str:
        return f"{CLI_NAME} {self.name}"


def _session(required: bool = True) -> Param:
    if required:
        return Param("session", description="Session name", required=True, positional=True)
    return Param("session", description="Restrict to one session")


_PANES = Param("panes", "list", "Pane indices, e.g. 1,2,3")
_TYPE = Param("type", description="Agent type filter (claude/cc, codex/cod, gemini/gmi, ...)")
_ALL = Param("all", "bool", "Include the user pane", default=False)
_EXCLUDE = Param("exclude", "list", "Pane indices to skip")
_DRY_RUN = Param("dry-run", "bool", "Report what would happen without acting", default=False)
_LIMIT = Param("limit", "int", "Maximum items to return (0 = all)", default=0)
_OFFSET = Param("offset", "int", "Items to skip before the first returned item", default=0)


COMMANDS: tuple[Command, ...] = (
    # state
    Command("status", "state", "Sessions, panes and agent states", (_LIMIT, _OFFSET),
            ("paneorch status", "paneorch status --limit 5")),
    Command("snapshot", "state", "Full orchestration state, or the changes since a point in time",
            (Param("since", description="RFC3339 timestamp or duration back from now, e.g. 10m"), _LIMIT, _OFFSET),
            ("paneorch snapshot", "paneorch snapshot --since 5m")),
    Command("tail", "state", "Recent output of each pane with idle/active hints",
            (_session(), Param("lines", "int", "Lines to capture per pane", default=20), _PANES),
            ("paneorch tail proj --lines 50",)),
    Command("watch-bead", "state", "Scan panes for mentions of a bead id",
            (_session(), Param("bead", description="Bead id", required=True), _PANES,
             Param("lines", "int", "Lines to scan per pane", default=200),
             Param("interval", "duration", "Time between polls", default="30s"),
             Param("count", "int", "Number of polls", default=1)),
            ("paneorch watch-bead proj --bead bd-42",)),
    Command("inspect-pane", "state", "Detailed view of one pane",
            (_session(), Param("pane", "int", "Pane index", required=True),
             Param("lines", "int", "Lines to capture", default=100),
             Param("code", "bool", "Report fenced code blocks", default=False)),
            ("paneorch inspect-pane proj --pane 2 --code",)),
    Command("context", "state", "Estimated context-window usage per agent",
            (_session(), Param("lines", "int", "Lines to capture per pane", default=1000)),
            ("paneorch context proj",)),
    Command("diagnose", "state", "Per-pane health with prioritized recommendations",
            (_session(), Param("pane", "int", "Single pane to diagnose (-1 = all)", default=-1),
             Param("fix", "bool", "Apply auto-fixable recommendations", default=False),
             Param("brief", "bool", "Summary only", default=False)),
            ("paneorch diagnose proj", "paneorch diagnose proj --fix")),
    Command("health-restart-stuck", "state", "Restart agents whose output has not changed for too long",
            (_session(), Param("threshold", "duration", "Idle time before a pane counts as stuck", default="5m"),
             _DRY_RUN),
            ("paneorch health-restart-stuck proj --threshold 10m --dry-run",)),
    Command("probe", "state", "Actively check that agents respond",
            (_session(), _PANES,
             Param("method", description="keystroke-echo or interrupt-test", default="keystroke-echo"),
             Param("timeout-ms", "int", "Per-pane probe timeout", default=5000),
             Param("aggressive", "bool", "Fall back to interrupt-test when echo fails", default=False)),
            ("paneorch probe proj --method interrupt-test",)),
    Command("activity", "state", "Agent state and output age per pane",
            (_session(), _PANES, _TYPE),
            ("paneorch activity proj --type claude",)),
    Command("indicators", "state", "Run one activity-indicator pass and update pane borders",
            (_session(), _PANES, Param("reset", "bool", "Clear indicator state and border styling", default=False)),
            ("paneorch indicators proj", "paneorch indicators proj --reset")),
    Command("terse", "state", "One-line state per session", (),
            ("paneorch terse",)),
    Command("markdown", "state", "Sessions and agents as markdown tables",
            (_session(required=False), Param("raw", "bool", "Print the markdown text only", default=False)),
            ("paneorch markdown --raw",)),
    Command("history", "state", "Send history, newest first",
            (_session(required=False), Param("pane", description="Pane label, e.g. 1.2"), _TYPE,
             Param("since", description="RFC3339 timestamp or duration, e.g. 1h"), _LIMIT, _OFFSET),
            ("paneorch history --session proj --since 1h --limit 20",)),
    # control
    Command("send", "control", "Send a message to selected panes",
            (_session(), Param("msg", description="Message text"),
             Param("msg-file", description="Read the message from a file"),
             Param("no-enter", "bool", "Type the message without pressing Enter", default=False),
             _TYPE, _ALL, _PANES, _EXCLUDE,
             Param("delay-ms", "int", "Delay between panes", default=0),
             Param("track", "bool", "Wait for acknowledgment after sending", default=False),
             Param("redaction", description="Secret handling: off, warn or redact"),
             _DRY_RUN),
            ("paneorch send proj --msg 'run the tests' --type claude",)),
    Command("ack", "control", "Wait for panes to acknowledge a message",
            (_session(), Param("msg", description="Message whose echo is ignored"),
             Param("timeout-ms", "int", "Overall timeout", default=30000),
             Param("poll-ms", "int", "Poll interval", default=500), _TYPE, _ALL, _PANES),
            ("paneorch ack proj --timeout-ms 10000",)),
    Command("interrupt", "control", "Send Ctrl-C, optionally followed by a message",
            (_session(), Param("msg", description="Follow-up message"), _ALL, _TYPE, _PANES, _EXCLUDE, _DRY_RUN),
            ("paneorch interrupt proj --msg 'stop and summarize'",)),
    Command("restart-pane", "control", "Restart agents in place, optionally with a bead prompt",
            (_session(), Param("panes", "list", "Pane indices to restart", required=True),
             Param("bead", description="Bead to assign after restart"),
             Param("prompt", description="Prompt to send after restart"),
             Param("dir", description="Working directory for the relaunch"), _DRY_RUN),
            ("paneorch restart-pane proj --panes 2 --bead bd-7",)),
    Command("wait", "control", "Wait until panes reach a condition",
            (_session(), Param("until", description="idle, complete, generating or healthy", default="idle"),
             Param("timeout", "duration", "Overall timeout", default="5m"),
             Param("poll", "duration", "Poll interval", default="2s"), _PANES, _TYPE,
             Param("any", "bool", "Stop when any pane matches", default=False),
             Param("exit-on-error", "bool", "Fail as soon as a pane errors", default=False),
             Param("transition", "bool", "Require a state change before matching", default=False)),
            ("paneorch wait proj --until idle --timeout 10m",)),
    Command("route", "control", "Pick the best pane for new work",
            (_session(), Param("strategy", description="least-loaded, first-available or round-robin",
                               default="least-loaded"), _TYPE, _PANES, _EXCLUDE),
            ("paneorch route proj --strategy round-robin",)),
    Command("assign", "control", "Bulk-assign backlog beads to agent panes",
            (_session(), Param("strategy", description="impact, ready, stale or balanced", default="impact"),
             Param("allocation", description='Explicit JSON map {"<pane>": "<bead>"}'),
             Param("skip-panes", "list", "Pane indices to leave alone"),
             Param("template", description="Prompt template text"),
             Param("template-file", description="Prompt template file"),
             Param("claim", "bool", "Claim beads before prompting", default=False), _DRY_RUN),
            ("paneorch assign proj --strategy balanced --dry-run",)),
    # spawn
    Command("spawn", "spawn", "Create a session and launch agents",
            (_session(), Param("cc", "int", "Claude agents", default=0), Param("cod", "int", "Codex agents", default=0),
             Param("gmi", "int", "Gemini agents", default=0), Param("preset", description="Recipe name"),
             Param("no-user", "bool", "Skip the user pane", default=False),
             Param("dir", description="Working directory"),
             Param("wait-ready", "bool", "Wait until agents show their prompt", default=False),
             Param("ready-timeout", "float", "Seconds to wait for readiness", default=0.0), _DRY_RUN,
             Param("safety", "bool", "Refuse to reuse an existing session", default=False),
             Param("assign-work", "bool", "Claim and prompt one bead per agent", default=False),
             Param("strategy", description="Assignment strategy for --assign-work", default="top-n"),
             Param("names", "list", "Custom agent names in spawn order")),
            ("paneorch spawn proj --cc 2 --cod 1", "paneorch spawn proj --preset squad --dry-run")),
    Command("recipes", "spawn", "List spawn presets", (),
            ("paneorch recipes",)),
    # backlog
    Command("triage", "backlog", "Ranked backlog recommendations", (_LIMIT,),
            ("paneorch triage --limit 5",)),
    *(
        Command(name, "backlog", f"Proxy '{name}' to the backlog service",
                (Param("target", description="Bead id, query or file path where the command needs one"),
                 Param("limit", "int", "Result limit where supported", default=0),
                 Param("threshold", "float", "Relation threshold for file-relations", default=0.0)),
                (f"paneorch {name}",))
        for name in ("plan", "graph", "forecast", "suggest", "impact", "search", "label-attention",
                     "label-flow", "label-health", "file-beads", "file-hotspots", "file-relations")
    ),
    # archive
    Command("archive-search", "archive", "Search past agent conversations",
            (Param("query", description="Search text", required=True, positional=True),
             Param("limit", "int", "Maximum hits", default=10),
             Param("days", "int", "Only conversations from the last N days", default=0)),
            ("paneorch archive-search 'migration failure'",)),
    Command("archive-status", "archive", "Conversation archive health", (),
            ("paneorch archive-status",)),
    # utility
    Command("version", "utility", "Version and runtime information", (), ("paneorch version",)),
    Command("capabilities", "utility", "This catalog", (), ("paneorch capabilities",)),
    Command("docs", "utility", "Built-in documentation",
            (Param("topic", description="quickstart, commands, examples or exit-codes", positional=True),),
            ("paneorch docs", "paneorch docs exit-codes")),
    Command("alerts", "utility", "Undismissed alerts, newest first",
            (_session(required=False), Param("severity", description="critical, warning or info"),
             Param("alert-type", description="Alert type filter")),
            ("paneorch alerts --severity critical",)),
    Command("dismiss-alert", "utility", "Dismiss one alert or all alerts of a session",
            (Param("id", description="Alert id, e.g. alert-3"), _session(required=False),
             Param("all", "bool", "Dismiss every matching alert", default=False)),
            ("paneorch dismiss-alert --id alert-3", "paneorch dismiss-alert --all --session proj")),
    Command("tokens", "utility", "Token estimates from send history",
            (_session(required=False), Param("period", "duration", "Look-back window", default="7d"),
             Param("group-by", description="agent, model, pane or day", default="agent")),
            ("paneorch tokens --group-by model",)),
    Command("save", "utility", "Save a session layout to YAML",
            (_session(), Param("output", description="Layout file (default: <state_dir>/layouts/<session>.yaml)"),
             Param("dir", description="Working directory to record")),
            ("paneorch save proj",)),
    Command("restore", "utility", "Recreate a saved session layout through spawn",
            (Param("path", description="Layout file", required=True, positional=True),
             Param("session", description="Override the saved session name"), _DRY_RUN),
            ("paneorch restore .paneorch/layouts/proj.yaml --dry-run",)),
)


def sorted_commands(commands: tuple[Command, ...] = COMMANDS) -> list[Command]:
    """Commands ordered by category (fixed order), then by name."""
    return sorted(commands, key=lambda c: (CATEGORY_ORDER.index(c.category), c.name))


def find_command(name: str) -> Command | None:
    return next((command for command in COMMANDS if command.name == name), None)


# ---------------------------------------------------------------------------
# capabilities
# ---------------------------------------------------------------------------


class ParameterInfo(WireModel):
    name: str
    flag: str
    type: str
    required: bool
    default: Any = None
    description: str


class CommandInfo(WireModel):
    name: str
    flag: str
    category: str
    description: str
    parameters: list[ParameterInfo] = Field(default_factory=list)
    examples: list[str] = Field(default_factory=list)


class CapabilitiesOutput(Envelope):
    tool_version: str = __version__
    schema_version: str = CATALOG_SCHEMA_VERSION
    commands: list[CommandInfo] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)


def command_info(command: Command) -> CommandInfo:
    return CommandInfo(
        name=command.name,
        flag=command.flag,
        category=command.category,
        description=command.description,
        parameters=[
            ParameterInfo(name=p.name, flag=p.flag, type=p.type, required=p.required, default=p.default,
                          description=p.description)
            for p in command.params
        ],
        examples=list(command.examples),
    )


def capabilities() -> CapabilitiesOutput:
    started = time.monotonic()
    return success_response(
        CapabilitiesOutput,
        command="capabilities",
        started=started,
        commands=[command_info(command) for command in sorted_commands()],
        categories=list(CATEGORY_ORDER),
    )
