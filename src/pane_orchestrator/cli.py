"""``paneorch`` command line.

Sub-commands and their flags come from :mod:`pane_orchestrator.catalog`;
each handler calls one operation and the resulting envelope is printed to
stdout as JSON. The process exit code is the envelope's exit code.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from . import __version__
from .alerts import Alerter, dismiss_alert, list_alerts
from .assign import bulk_assign
from .catalog import CLI_NAME, Command, Param, capabilities, sorted_commands
from .config import CONFIG_ENV_VAR, ConfigError, OrchestratorConfig, load_orchestrator_config
from .control import (
    ack,
    build_filter,
    interrupt,
    parse_index_list,
    restart_panes,
    route,
    send_message,
    wait_until,
)
from .control.targets import TargetFilter, parse_type_filter
from .docs import docs
from .envelope import Envelope, ErrorCode, OutputFormat, error_from_exception, error_response
from .errors import PaneOrchestratorError
from .health import diagnose, health_restart_stuck
from .history import HistoryStore, history, tokens
from .indicators import indicator_pass
from .inspection import activity, context, inspect_pane, tail, watch_bead
from .layout import default_layout_path, restore_layout, save_layout
from .mux import TmuxMultiplexer
from .probe import probe_session
from .recipes import list_recipes
from .spawn import SpawnOptions, spawn
from .status import markdown, snapshot, status, version
from .terse import terse
from .tools import (
    PROXY_COMMANDS,
    ArchiveClient,
    BacklogClient,
    RetryPolicy,
    archive_search,
    archive_status,
    get_triage,
    run_backlog_command,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_param(parser: argparse.ArgumentParser, param: Param) -> None:
    if param.positional:
        kwargs: dict = {"help": param.description}
        if not param.required:
            kwargs.update(nargs="?", default=param.default if param.default is not None else "")
        parser.add_argument(param.dest, **kwargs)
        return

    flag = f"--{param.name}"
    if param.type == "bool":
        parser.add_argument(flag, dest=param.dest, action="store_true", help=param.description)
        return
    converters: dict[str, Callable[[str], object]] = {"int": int, "float": float}
    parser.add_argument(
        flag,
        dest=param.dest,
        type=converters.get(param.type, str),
        default=param.default,
        required=param.required,
        help=param.description,
    )


def _add_command(subparsers: argparse._SubParsersAction, command: Command) -> None:
    sub = subparsers.add_parser(command.name, help=command.description, description=command.description)
    for param in command.params:
        _add_param(sub, param)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=CLI_NAME,
        description="Monitor, control and assign work to coding agents in terminal multiplexer panes",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity on stderr (can be repeated)",
    )
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    parser.add_argument(
        "--format",
        dest="output_format",
        choices=[f.value for f in OutputFormat],
        default=OutputFormat.JSON.value,
        help="json, or toon for abbreviated keys",
    )
    parser.add_argument("--config", default=None, help=f"Config file (default: ${CONFIG_ENV_VAR} or "
                        "config/pane_orchestrator.yaml)")
    parser.add_argument("--project-root", default=None, help="Project root (default: working directory)")

    subparsers = parser.add_subparsers(dest="command", required=True)
    for command in sorted_commands():
        _add_command(subparsers, command)
    return parser


# ---------------------------------------------------------------------------
# Runtime collaborators
# ---------------------------------------------------------------------------


@dataclass
class Runtime:
    """Collaborators shared by the handlers of one invocation."""

    config: OrchestratorConfig
    project_root: Path
    mux: TmuxMultiplexer = field(default_factory=TmuxMultiplexer)
    _alerter: Alerter | None = None

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.config.retry.max_attempts,
                           backoff_seconds=self.config.retry.backoff_seconds)

    def backlog(self) -> BacklogClient:
        return BacklogClient(str(self.project_root), policy=self.policy)

    def archive(self) -> ArchiveClient:
        return ArchiveClient(policy=self.policy)

    def alerter(self) -> Alerter:
        if self._alerter is None:
            self._alerter = Alerter(self.config.alerts)
        return self._alerter

    def history_store(self) -> HistoryStore:
        return HistoryStore.in_dir(self.config.state_dir(self.project_root))


def _target(args: argparse.Namespace) -> TargetFilter:
    return build_filter(
        agent_type=getattr(args, "type", None),
        panes=getattr(args, "panes", None),
        exclude=getattr(args, "exclude", None),
        include_user=getattr(args, "all", False),
    )


def _indices(value: str | None) -> list[int] | None:
    return parse_index_list(value) or None


# ---------------------------------------------------------------------------
# Handlers: state
# ---------------------------------------------------------------------------


def _cmd_status(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return status(rt.mux, backlog=rt.backlog(), limit=args.limit, offset=args.offset)


def _cmd_snapshot(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return snapshot(rt.mux, since=args.since, backlog=rt.backlog(), alerter=rt.alerter(), limit=args.limit,
                    offset=args.offset)


def _cmd_tail(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return tail(rt.mux, args.session, lines=args.lines, panes=_indices(args.panes))


def _cmd_watch_bead(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return watch_bead(rt.mux, args.session, args.bead, panes=_indices(args.panes), lines=args.lines,
                      interval=args.interval, count=args.count, backlog=rt.backlog())


def _cmd_inspect_pane(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return inspect_pane(rt.mux, args.session, args.pane, lines=args.lines, include_code=args.code)


def _cmd_context(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return context(rt.mux, args.session, lines=args.lines)


def _cmd_diagnose(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return diagnose(rt.mux, args.session, pane=args.pane, fix=args.fix, brief=args.brief, config=rt.config,
                    alerter=rt.alerter())


def _cmd_health_restart_stuck(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return health_restart_stuck(rt.mux, args.session, threshold=args.threshold, dry_run=args.dry_run,
                                config=rt.config, alerter=rt.alerter())


def _cmd_probe(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return probe_session(rt.mux, args.session, panes=_indices(args.panes), method=args.method,
                         timeout_ms=args.timeout_ms, aggressive=args.aggressive)


def _cmd_activity(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return activity(rt.mux, args.session, panes=_indices(args.panes), agent_type=parse_type_filter(args.type),
                    thresholds=rt.config.indicators)


def _cmd_indicators(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return indicator_pass(rt.mux, args.session, config=rt.config.indicators, panes=_indices(args.panes),
                          reset=args.reset)


def _cmd_terse(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return terse(rt.mux, backlog=rt.backlog(), alerter=rt.alerter())


def _cmd_markdown(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return markdown(rt.mux, session=args.session)


def _cmd_history(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return history(rt.history_store(), args.session, pane=args.pane, agent_type=parse_type_filter(args.type),
                   since=args.since, limit=args.limit, offset=args.offset)


# ---------------------------------------------------------------------------
# Handlers: control
# ---------------------------------------------------------------------------


def _message(args: argparse.Namespace) -> str:
    if args.msg_file:
        with open(args.msg_file, encoding="utf-8") as f:
            return f.read().rstrip("\n")
    return args.msg or ""


def _cmd_send(args: argparse.Namespace, rt: Runtime) -> Envelope:
    text = _message(args)
    if not text:
        return error_response("message is empty", ErrorCode.INVALID_FLAG, "Pass --msg or --msg-file")
    return send_message(
        rt.mux,
        args.session,
        text,
        target=_target(args),
        enter=not args.no_enter,
        delay_ms=args.delay_ms,
        dry_run=args.dry_run,
        track=args.track,
        redaction_mode=args.redaction or rt.config.redaction.mode,
        history=rt.history_store(),
    )


def _cmd_ack(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return ack(rt.mux, args.session, target=_target(args), message=args.msg or "", timeout_ms=args.timeout_ms,
               poll_ms=args.poll_ms)


def _cmd_interrupt(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return interrupt(rt.mux, args.session, target=_target(args), message=args.msg or "", dry_run=args.dry_run)


def _cmd_restart_pane(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return restart_panes(
        rt.mux,
        args.session,
        parse_index_list(args.panes),
        config=rt.config,
        backlog=rt.backlog(),
        bead=args.bead or "",
        prompt=args.prompt or "",
        directory=args.dir,
        dry_run=args.dry_run,
        alerter=rt.alerter(),
    )


def _cmd_wait(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return wait_until(
        rt.mux,
        args.session,
        condition=args.until,
        target=_target(args),
        timeout=args.timeout,
        poll=args.poll,
        any_pane=args.any,
        exit_on_error=args.exit_on_error,
        require_transition=args.transition,
    )


def _cmd_route(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return route(rt.mux, args.session, strategy=args.strategy, target=_target(args))


def _cmd_assign(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return bulk_assign(
        rt.mux,
        args.session,
        backlog=rt.backlog(),
        strategy=args.strategy,
        allocation=args.allocation,
        skip_panes=args.skip_panes,
        template=args.template,
        template_path=args.template_file,
        dry_run=args.dry_run,
        claim=args.claim,
    )


# ---------------------------------------------------------------------------
# Handlers: spawn, backlog, archive
# ---------------------------------------------------------------------------


def _cmd_spawn(args: argparse.Namespace, rt: Runtime) -> Envelope:
    names = tuple(name.strip() for name in (args.names or "").split(",") if name.strip())
    options = SpawnOptions(
        session=args.session,
        cc=args.cc,
        cod=args.cod,
        gmi=args.gmi,
        preset=args.preset or "",
        no_user=args.no_user,
        directory=args.dir or "",
        wait_ready=args.wait_ready,
        ready_timeout=args.ready_timeout,
        dry_run=args.dry_run,
        safety=args.safety,
        assign_work=args.assign_work,
        assign_strategy=args.strategy,
        custom_names=names,
    )
    return spawn(rt.mux, options, config=rt.config, backlog=rt.backlog(), project_root=rt.project_root)


def _cmd_recipes(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return list_recipes(rt.project_root / "config" / "recipes.yaml")


def _cmd_triage(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return get_triage(rt.backlog(), limit=args.limit or 10)


def _cmd_backlog_proxy(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return run_backlog_command(rt.backlog(), args.command, target=args.target or "", limit=args.limit,
                               threshold=args.threshold)


def _cmd_archive_search(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return archive_search(rt.archive(), args.query, limit=args.limit, days=args.days)


def _cmd_archive_status(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return archive_status(rt.archive())


# ---------------------------------------------------------------------------
# Handlers: utility
# ---------------------------------------------------------------------------


def _cmd_version(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return version()


def _cmd_capabilities(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return capabilities()


def _cmd_docs(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return docs(args.topic or "")


def _cmd_alerts(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return list_alerts(rt.alerter(), session=args.session, severity=args.severity, alert_type=args.alert_type)


def _cmd_dismiss_alert(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return dismiss_alert(rt.alerter(), alert_id=args.id, session=args.session, dismiss_all=args.all)


def _cmd_tokens(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return tokens(rt.history_store(), session=args.session, period=args.period, group_by=args.group_by)


def _cmd_save(args: argparse.Namespace, rt: Runtime) -> Envelope:
    path = Path(args.output) if args.output else default_layout_path(
        rt.config.state_dir(rt.project_root), args.session)
    return save_layout(rt.mux, args.session, path, directory=args.dir or "")


def _cmd_restore(args: argparse.Namespace, rt: Runtime) -> Envelope:
    return restore_layout(rt.mux, Path(args.path), session=args.session or "", dry_run=args.dry_run,
                          config=rt.config, backlog=rt.backlog(), project_root=rt.project_root)


Handler = Callable[[argparse.Namespace, Runtime], Envelope]

HANDLERS: dict[str, Handler] = {
    "status": _cmd_status,
    "snapshot": _cmd_snapshot,
    "tail": _cmd_tail,
    "watch-bead": _cmd_watch_bead,
    "inspect-pane": _cmd_inspect_pane,
    "context": _cmd_context,
    "diagnose": _cmd_diagnose,
    "health-restart-stuck": _cmd_health_restart_stuck,
    "probe": _cmd_probe,
    "activity": _cmd_activity,
    "indicators": _cmd_indicators,
    "terse": _cmd_terse,
    "markdown": _cmd_markdown,
    "history": _cmd_history,
    "send": _cmd_send,
    "ack": _cmd_ack,
    "interrupt": _cmd_interrupt,
    "restart-pane": _cmd_restart_pane,
    "wait": _cmd_wait,
    "route": _cmd_route,
    "assign": _cmd_assign,
    "spawn": _cmd_spawn,
    "recipes": _cmd_recipes,
    "triage": _cmd_triage,
    **{name: _cmd_backlog_proxy for name in PROXY_COMMANDS},
    "archive-search": _cmd_archive_search,
    "archive-status": _cmd_archive_status,
    "version": _cmd_version,
    "capabilities": _cmd_capabilities,
    "docs": _cmd_docs,
    "alerts": _cmd_alerts,
    "dismiss-alert": _cmd_dismiss_alert,
    "tokens": _cmd_tokens,
    "save": _cmd_save,
    "restore": _cmd_restore,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _emit(envelope: Envelope, output_format: str, raw_markdown: bool = False) -> None:
    if raw_markdown and envelope.success:
        sys.stdout.write(getattr(envelope, "markdown", "") + "\n")
        return
    toon = output_format == OutputFormat.TOON.value
    if toon:
        envelope = envelope.model_copy(update={"output_format": OutputFormat.TOON.value})
    sys.stdout.write(envelope.to_json(terse_keys=toon) + "\n")


def _load_runtime(args: argparse.Namespace) -> Runtime:
    project_root = Path(args.project_root).resolve() if args.project_root else Path.cwd()
    config_arg = args.config or os.environ.get(CONFIG_ENV_VAR)
    config = load_orchestrator_config(Path(config_arg) if config_arg else None, project_root)
    return Runtime(config=config, project_root=project_root)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``paneorch`` command.

    Args:
        argv: Command line arguments (defaults to sys.argv).

    Returns:
        Exit code of the printed envelope (0 success, 1 error, 2 unavailable).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.WARNING
    if args.verbose >= 1:
        log_level = logging.INFO
    if args.verbose >= 2:
        log_level = logging.DEBUG
    if args.quiet:
        log_level = logging.ERROR
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s", stream=sys.stderr)

    handler = HANDLERS.get(args.command)
    if handler is None:
        parser.error(f"Unknown command: {args.command}")
        return 2

    try:
        runtime = _load_runtime(args)
    except ConfigError as e:
        envelope: Envelope = error_response(e, ErrorCode.INVALID_FLAG, "Fix the configuration file and retry")
        _emit(envelope, args.output_format)
        return envelope.exit_code

    try:
        envelope = handler(args, runtime)
    except (PaneOrchestratorError, ValueError, OSError) as e:
        envelope = error_from_exception(e)
    except KeyboardInterrupt:
        envelope = error_response("interrupted", ErrorCode.INTERNAL_ERROR)
    except Exception as e:
        logger.error("Error: %s", e)
        if args.verbose >= 2:
            import traceback

            traceback.print_exc()
        envelope = error_response(e, ErrorCode.INTERNAL_ERROR)

    _emit(envelope, args.output_format, raw_markdown=args.command == "markdown" and args.raw)
    return envelope.exit_code


if __name__ == "__main__":
    sys.exit(main())
