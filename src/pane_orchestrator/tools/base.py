"""Subprocess runner shared by the external-tool adapters."""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..errors import ToolError, ToolNotInstalledError
from .retry import classify

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 30.0
MAX_OUTPUT_BYTES = 10 * 1024 * 1024

ToolRun = Callable[[Sequence[str], float, "str | None"], "subprocess.CompletedProcess[str]"]


def _default_runner(cmd: Sequence[str], timeout: float, cwd: str | None) -> subprocess.CompletedProcess[str]:
    return subprocess.run(list(cmd), text=True, capture_output=True, check=False, timeout=timeout, cwd=cwd)


@dataclass
class ToolRunner:
    """Run one external CLI and normalize its failures into :class:`ToolError`.

    Attributes:
        binary: Executable name or path.
        timeout: Per-invocation timeout in seconds.
        cwd: Working directory for the tool; ``None`` uses the process cwd.
        runner: Callable used to execute commands; tests inject fakes here.
    """

    binary: str
    timeout: float = DEFAULT_TOOL_TIMEOUT
    cwd: str | None = None
    runner: ToolRun = field(default=_default_runner, repr=False)

    def is_installed(self) -> bool:
        return shutil.which(self.binary) is not None

    def run(self, *args: str, allow_exit: tuple[int, ...] = ()) -> str:
        """Run the tool and return stdout.

        Exit codes listed in ``allow_exit`` are treated as success.

        Raises:
            ToolNotInstalledError: If the binary cannot be executed.
            ToolError: On a non-zero exit, timeout or oversized output; the
                error carries the transient classification of stderr.
        """
        cmd = [self.binary, *args]
        logger.debug("running %s", " ".join(cmd))
        try:
            proc = self.runner(cmd, self.timeout, self.cwd)
        except FileNotFoundError as exc:
            raise ToolNotInstalledError(self.binary) from exc
        except subprocess.TimeoutExpired as exc:
            raise ToolError(self.binary, f"{' '.join(args)} timed out after {self.timeout}s") from exc

        if proc.returncode != 0 and proc.returncode not in allow_exit:
            stderr = (proc.stderr or "").strip()
            raise ToolError(self.binary, f"{' '.join(args)}: exit {proc.returncode}: {stderr}", classify(stderr))
        output = proc.stdout or ""
        if len(output.encode("utf-8")) > MAX_OUTPUT_BYTES:
            raise ToolError(self.binary, f"output exceeded limit of {MAX_OUTPUT_BYTES} bytes")
        return output.strip()

    def run_json(self, *args: str) -> Any:
        """Run the tool and decode its stdout as JSON."""
        output = self.run(*args)
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise ToolError(self.binary, f"invalid JSON output: {exc}") from exc
