"""Tests for the orchestrator configuration loader."""

from __future__ import annotations

from pathlib import Path

import pytest

from pane_orchestrator.agents import AgentType
from pane_orchestrator.config import ConfigError, OrchestratorConfig, load_orchestrator_config
from pane_orchestrator.envelope import ErrorCode, code_for_exception
from pane_orchestrator.errors import PaneOrchestratorError


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "pane_orchestrator.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_missing_default_file_gives_defaults(self, tmp_path: Path) -> None:
        """No config/pane_orchestrator.yaml under the root means defaults."""
        config = load_orchestrator_config(project_root=tmp_path)
        assert config == OrchestratorConfig()
        assert config.indicators.active_threshold == 30.0
        assert config.redaction.mode == "warn"

    def test_missing_explicit_file_is_an_error(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            load_orchestrator_config(tmp_path / "nope.yaml")

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        assert load_orchestrator_config(_write(tmp_path, "")) == OrchestratorConfig()

    def test_sections_are_parsed(self, tmp_path: Path) -> None:
        path = _write(tmp_path, """
indicators:
  active_threshold: 15
  stalled_threshold: 90
alerts:
  debounce_seconds: 5
  webhooks:
    - url: https://hooks.example.com/x
      events: [unhealthy]
agents:
  cc: claude --model opus
spawn:
  layout: even-horizontal
retry:
  max_attempts: 5
redaction:
  mode: REDACT
paths:
  state_dir: .state
""")
        config = load_orchestrator_config(path)
        assert config.indicators.active_threshold == 15.0
        assert config.indicators.stalled_threshold == 90.0
        assert config.alerts.debounce_seconds == 5.0
        assert config.alerts.webhooks[0].events == ("unhealthy",)
        assert config.launch_command(AgentType.CLAUDE) == "claude --model opus"
        assert config.launch_command(AgentType.CODEX) == "codex"
        assert config.spawn.layout == "even-horizontal"
        assert config.retry.max_attempts == 5
        assert config.redaction.mode == "redact"
        assert config.state_dir(tmp_path) == tmp_path / ".state"


class TestInvalidConfig:
    @pytest.mark.parametrize(
        "text, message",
        [
            ("- just\n- a list\n", "mapping"),
            ("indicators: [1, 2]\n", "must be a mapping"),
            ("indicators:\n  active_threshold: fast\n", "must be a number"),
            ("indicators:\n  active_threshold: -1\n", ">="),
            ("agents:\n  emacs: emacs\n", "Unknown agent type"),
            ("agents:\n  cc: ''\n", "non-empty"),
            ("redaction:\n  mode: loud\n", "redaction.mode"),
            ("alerts:\n  webhooks:\n    - events: [x]\n", "url"),
            ("indicators: {active_threshold: [\n", "Invalid YAML"),
        ],
    )
    def test_rejected(self, tmp_path: Path, text: str, message: str) -> None:
        with pytest.raises(ConfigError, match=message):
            load_orchestrator_config(_write(tmp_path, text))

    def test_config_error_hierarchy(self) -> None:
        assert issubclass(ConfigError, PaneOrchestratorError)
        assert issubclass(ConfigError, ValueError)
        assert code_for_exception(ConfigError("bad value")) == ErrorCode.INVALID_FLAG
