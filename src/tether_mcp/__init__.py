"""Tether MCP: supervised agent CLI runs with a self-improvement feedback loop."""

__version__ = "0.1.0"
