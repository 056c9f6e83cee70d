"""Orchestrator configuration loader.

Loads ``config/pane_orchestrator.yaml`` and exposes frozen dataclasses for
type-safe access. A missing file yields defaults; every section and key is
optional.

Example::

    indicators:
      poll_interval: 10
      active_threshold: 30
      stalled_threshold: 120
    alerts:
      debounce_seconds: 60
      webhooks:
        - url: https://hooks.example.com/paneorch
          events: [unhealthy, restart_failed]
    agents:
      claude: claude --dangerously-skip-permissions
    redaction:
      mode: redact
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .agents import PROFILES, AgentType, resolve_agent_type
from .errors import PaneOrchestratorError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/pane_orchestrator.yaml")
CONFIG_ENV_VAR = "PANEORCH_CONFIG"

REDACTION_MODES = ("off", "warn", "redact")
DEFAULT_ALERT_ON: tuple[str, ...] = ("unhealthy", "rate_limited", "restart", "restart_failed", "max_restarts")


class ConfigError(PaneOrchestratorError, ValueError):
    """Raised when orchestrator configuration is invalid."""


@dataclass(frozen=True)
class IndicatorConfig:
    """Activity indicator loop settings (seconds)."""

    poll_interval: float = 10.0
    active_threshold: float = 30.0
    stalled_threshold: float = 120.0
    capture_lines: int = 20


@dataclass(frozen=True)
class WebhookConfig:
    url: str
    events: tuple[str, ...] = ()
    max_retries: int = 3
    timeout: float = 10.0


@dataclass(frozen=True)
class DesktopConfig:
    enabled: bool = False
    urgency: str = "normal"


@dataclass(frozen=True)
class AlertConfig:
    """Alerter settings."""

    enabled: bool = True
    debounce_seconds: float = 60.0
    alert_on: tuple[str, ...] = DEFAULT_ALERT_ON
    log_to_stderr: bool = True
    desktop: DesktopConfig = field(default_factory=DesktopConfig)
    webhooks: tuple[WebhookConfig, ...] = ()
    history_size: int = 200


@dataclass(frozen=True)
class SpawnConfig:
    ready_timeout: float = 30.0
    ready_poll: float = 0.5
    layout: str = "tiled"


@dataclass(frozen=True)
class RetryConfig:
    """External-tool retry policy."""

    max_attempts: int = 3
    backoff_seconds: float = 0.5


@dataclass(frozen=True)
class RedactionConfig:
    mode: str = "warn"


@dataclass(frozen=True)
class PathsConfig:
    state_dir: str = ".paneorch"
    handoff_dir: str = ".paneorch/handoffs"


@dataclass(frozen=True)
class OrchestratorConfig:
    """Complete orchestrator configuration."""

    indicators: IndicatorConfig = field(default_factory=IndicatorConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    agents: dict[AgentType, str] = field(default_factory=dict)
    spawn: SpawnConfig = field(default_factory=SpawnConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    redaction: RedactionConfig = field(default_factory=RedactionConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)

    def launch_command(self, agent_type: AgentType) -> str:
        """Configured launch command, else the profile default."""
        if agent_type in self.agents:
            return self.agents[agent_type]
        profile = PROFILES.get(agent_type)
        return profile.launch_command if profile else ""

    def state_dir(self, project_root: Path | None = None) -> Path:
        root = project_root or Path.cwd()
        return root / self.paths.state_dir

    def handoff_dir(self, project_root: Path | None = None) -> Path:
        root = project_root or Path.cwd()
        return root / self.paths.handoff_dir


def load_orchestrator_config(
    config_path: Path | None = None,
    project_root: Path | None = None,
) -> OrchestratorConfig:
    """Load orchestrator configuration from YAML.

    Args:
        config_path: Path to the YAML file. Defaults to
            ``config/pane_orchestrator.yaml`` under ``project_root``.
        project_root: Project root directory. Defaults to the working directory.

    Returns:
        OrchestratorConfig with defaults filled in.

    Raises:
        ConfigError: If the YAML is malformed or a value is invalid.
    """
    root = project_root or Path.cwd()
    path = config_path or (root / DEFAULT_CONFIG_PATH)

    if not path.exists():
        if config_path is not None:
            raise ConfigError(f"Config file not found: {path}")
        return _create_default_config()

    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return _create_default_config()
    if not isinstance(data, dict):
        raise ConfigError(f"Config must be a mapping, got {type(data).__name__}")

    logger.debug("loaded orchestrator config from %s", path)
    return _parse_config(data)


def _create_default_config() -> OrchestratorConfig:
    return OrchestratorConfig()


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Section '{name}' must be a mapping, got {type(value).__name__}")
    return value


def _number(section: dict[str, Any], key: str, default: float, *, minimum: float = 0.0) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    if value < minimum:
        raise ConfigError(f"'{key}' must be >= {minimum}, got {value}")
    return float(value)


def _parse_indicators(data: dict[str, Any]) -> IndicatorConfig:
    section = _section(data, "indicators")
    defaults = IndicatorConfig()
    return IndicatorConfig(
        poll_interval=_number(section, "poll_interval", defaults.poll_interval),
        active_threshold=_number(section, "active_threshold", defaults.active_threshold),
        stalled_threshold=_number(section, "stalled_threshold", defaults.stalled_threshold),
        capture_lines=int(_number(section, "capture_lines", defaults.capture_lines, minimum=1)),
    )


def _parse_alerts(data: dict[str, Any]) -> AlertConfig:
    section = _section(data, "alerts")
    defaults = AlertConfig()

    desktop_data = section.get("desktop") or {}
    if not isinstance(desktop_data, dict):
        raise ConfigError("'alerts.desktop' must be a mapping")
    desktop = DesktopConfig(
        enabled=bool(desktop_data.get("enabled", False)),
        urgency=str(desktop_data.get("urgency", "normal")),
    )

    webhooks = []
    for entry in section.get("webhooks") or []:
        if not isinstance(entry, dict) or not entry.get("url"):
            raise ConfigError(f"Each webhook needs a 'url', got {entry!r}")
        webhooks.append(
            WebhookConfig(
                url=str(entry["url"]),
                events=tuple(str(e) for e in entry.get("events") or ()),
                max_retries=int(_number(entry, "max_retries", 3)),
                timeout=_number(entry, "timeout", 10.0),
            )
        )

    return AlertConfig(
        enabled=bool(section.get("enabled", defaults.enabled)),
        debounce_seconds=_number(section, "debounce_seconds", defaults.debounce_seconds),
        alert_on=tuple(str(t) for t in section.get("alert_on", defaults.alert_on)),
        log_to_stderr=bool(section.get("log_to_stderr", defaults.log_to_stderr)),
        desktop=desktop,
        webhooks=tuple(webhooks),
        history_size=int(_number(section, "history_size", defaults.history_size, minimum=1)),
    )


def _parse_agents(data: dict[str, Any]) -> dict[AgentType, str]:
    section = _section(data, "agents")
    agents: dict[AgentType, str] = {}
    for name, command in section.items():
        agent_type = resolve_agent_type(str(name))
        if agent_type is None:
            raise ConfigError(f"Unknown agent type in 'agents': {name!r}")
        if not isinstance(command, str) or not command.strip():
            raise ConfigError(f"Launch command for {name!r} must be a non-empty string")
        agents[agent_type] = command.strip()
    return agents


def _parse_config(data: dict[str, Any]) -> OrchestratorConfig:
    """Parse configuration from YAML data."""
    spawn_data = _section(data, "spawn")
    retry_data = _section(data, "retry")
    redaction_data = _section(data, "redaction")
    paths_data = _section(data, "paths")

    mode = str(redaction_data.get("mode", "warn")).lower()
    if mode not in REDACTION_MODES:
        raise ConfigError(f"redaction.mode must be one of {REDACTION_MODES}, got {mode!r}")

    return OrchestratorConfig(
        indicators=_parse_indicators(data),
        alerts=_parse_alerts(data),
        agents=_parse_agents(data),
        spawn=SpawnConfig(
            ready_timeout=_number(spawn_data, "ready_timeout", 30.0),
            ready_poll=_number(spawn_data, "ready_poll", 0.5),
            layout=str(spawn_data.get("layout", "tiled")),
        ),
        retry=RetryConfig(
            max_attempts=int(_number(retry_data, "max_attempts", 3, minimum=1)),
            backoff_seconds=_number(retry_data, "backoff_seconds", 0.5),
        ),
        redaction=RedactionConfig(mode=mode),
        paths=PathsConfig(
            state_dir=str(paths_data.get("state_dir", ".paneorch")),
            handoff_dir=str(paths_data.get("handoff_dir", ".paneorch/handoffs")),
        ),
    )
