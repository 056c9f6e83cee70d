"""Pane orchestrator: monitor, control and assign work to agents in multiplexer panes."""

__version__ = "0.1.0"

__all__ = ["__version__"]
