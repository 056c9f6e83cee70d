"""Built-in documentation served by ``paneorch docs``."""

from __future__ import annotations

import time

from pydantic import Field

from . import __version__
from .catalog import CATALOG_SCHEMA_VERSION, sorted_commands
from .envelope import Envelope, ErrorCode, WireModel, error_response, success_response


class DocsTopic(WireModel):
    name: str
    description: str


class DocsSection(WireModel):
    heading: str
    body: str


class DocsExample(WireModel):
    name: str
    description: str
    command: str
    notes: str | None = None


class ExitCodeInfo(WireModel):
    code: int
    name: str
    description: str
    recoverable: bool


class DocsContent(WireModel):
    title: str
    description: str
    sections: list[DocsSection] = Field(default_factory=list)
    examples: list[DocsExample] = Field(default_factory=list)
    exit_codes: list[ExitCodeInfo] = Field(default_factory=list)


class DocsOutput(Envelope):
    tool_version: str = __version__
    schema_version: str = CATALOG_SCHEMA_VERSION
    topic: str = ""
    topics: list[DocsTopic] = Field(default_factory=list)
    content: DocsContent | None = None


TOPICS: dict[str, str] = {
    "quickstart": "Spawn a session, check state and send work",
    "commands": "Every command grouped by category",
    "examples": "Common orchestration loops",
    "exit-codes": "Process exit codes and whether they are worth retrying",
}

EXIT_CODES: tuple[ExitCodeInfo, ...] = (
    ExitCodeInfo(code=0, name="SUCCESS", description="Operation succeeded", recoverable=True),
    ExitCodeInfo(code=1, name="GENERAL_ERROR", description="Operation failed; see error_code", recoverable=True),
    ExitCodeInfo(code=2, name="UNAVAILABLE", description="Feature not implemented", recoverable=True),
    ExitCodeInfo(code=3, name="SESSION_NOT_FOUND", description="Session does not exist", recoverable=True),
    ExitCodeInfo(code=5, name="PANE_NOT_FOUND", description="Pane does not exist", recoverable=True),
    ExitCodeInfo(code=6, name="TIMEOUT", description="Wait or probe timed out", recoverable=True),
    ExitCodeInfo(code=10, name="BEAD_NOT_FOUND", description="Bead id unknown to the backlog", recoverable=True),
    ExitCodeInfo(code=20, name="TOOL_NOT_FOUND", description="External tool not installed", recoverable=False),
    ExitCodeInfo(code=21, name="TOOL_ERROR", description="External tool failed", recoverable=True),
    ExitCodeInfo(code=30, name="TMUX_NOT_FOUND", description="Multiplexer not installed", recoverable=False),
    ExitCodeInfo(code=31, name="TMUX_ERROR", description="Multiplexer command failed", recoverable=True),
    ExitCodeInfo(code=40, name="CONFIG_ERROR", description="Configuration file invalid", recoverable=True),
    ExitCodeInfo(code=50, name="INTERNAL_ERROR", description="Unexpected internal failure", recoverable=False),
)


def _quickstart() -> DocsContent:
    return DocsContent(
        title="Quickstart",
        description="Drive coding agents running in multiplexer panes from scripts or other agents.",
        sections=[
            DocsSection(heading="Output", body="Every command prints one JSON envelope. 'success' is always the "
                        "first key; failures carry error, error_code and hint. Use --format toon for short keys."),
            DocsSection(heading="Pane targets", body="Panes are addressed as window.pane (e.g. 1.2) in output and "
                        "by index with --panes 1,2 on input. Pane 1 of a session is usually the user pane."),
            DocsSection(heading="Agent hints", body="_agent_hints carries a summary, sorted idle_agents and "
                        "active_agents lists, and paging hints (next_offset, pages_remaining)."),
        ],
        examples=[
            DocsExample(name="spawn", description="Start two Claude agents and one Codex agent",
                        command="paneorch spawn proj --cc 2 --cod 1 --wait-ready"),
            DocsExample(name="status", description="See every session and agent", command="paneorch status"),
            DocsExample(name="send", description="Send a prompt to all Claude agents",
                        command="paneorch send proj --type claude --msg 'run the test suite'"),
        ],
    )


def _commands() -> DocsContent:
    sections: dict[str, list[str]] = {}
    for command in sorted_commands():
        sections.setdefault(command.category, []).append(f"{command.name}: {command.description}")
    return DocsContent(
        title="Commands",
        description="Run 'paneorch capabilities' for the full machine-readable catalog.",
        sections=[DocsSection(heading=category, body="\n".join(lines)) for category, lines in sections.items()],
    )


def _examples() -> DocsContent:
    return DocsContent(
        title="Examples",
        description="Loops that an orchestrating agent typically runs.",
        examples=[
            DocsExample(name="dispatch", description="Find an idle agent and give it the top bead",
                        command="paneorch route proj && paneorch assign proj --strategy impact",
                        notes="assign --dry-run previews the plan without sending prompts"),
            DocsExample(name="wait", description="Block until every agent is idle",
                        command="paneorch wait proj --until idle --timeout 20m"),
            DocsExample(name="recover", description="Restart agents that stopped producing output",
                        command="paneorch health-restart-stuck proj --threshold 10m"),
            DocsExample(name="poll", description="Cheap state line for frequent polling", command="paneorch terse"),
            DocsExample(name="delta", description="Only what changed since the last snapshot",
                        command="paneorch snapshot --since 2026-01-01T00:00:00Z"),
        ],
    )


def _exit_codes() -> DocsContent:
    return DocsContent(
        title="Exit codes",
        description="Commands exit 0 on success, 1 on failure and 2 for unavailable features. The catalogue "
        "below maps error categories to stable codes for callers that need finer distinctions.",
        exit_codes=list(EXIT_CODES),
    )


_BUILDERS = {
    "quickstart": _quickstart,
    "commands": _commands,
    "examples": _examples,
    "exit-codes": _exit_codes,
}


def docs(topic: str = "") -> DocsOutput:
    """Topic index when ``topic`` is empty, otherwise that topic's content."""
    started = time.monotonic()
    topics = [DocsTopic(name=name, description=description) for name, description in TOPICS.items()]
    topic = topic.strip().lower()
    if topic and topic not in _BUILDERS:
        return error_response(
            f"unknown docs topic {topic!r}",
            ErrorCode.INVALID_FLAG,
            f"Valid topics: {', '.join(TOPICS)}",
            model=DocsOutput,
            command="docs",
            started=started,
            topic=topic,
            topics=topics,
        )
    return success_response(
        DocsOutput,
        command="docs",
        started=started,
        topic=topic,
        topics=topics,
        content=_BUILDERS[topic]() if topic else None,
    )
