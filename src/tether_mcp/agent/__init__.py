"""Agent CLI supervision: spawning, stream parsing, and event emission."""

from .events import Event, EventEmitter
from .stream import LineBuffer, parse_line
from .supervisor import (
    AgentNotFoundError,
    AgentRunnerError,
    Execution,
    ExecutionNotFoundError,
    ExecutionRegistry,
    ExecutionSupervisor,
)

__all__ = [
    "AgentNotFoundError",
    "AgentRunnerError",
    "Event",
    "EventEmitter",
    "Execution",
    "ExecutionNotFoundError",
    "ExecutionRegistry",
    "ExecutionSupervisor",
    "LineBuffer",
    "parse_line",
]
