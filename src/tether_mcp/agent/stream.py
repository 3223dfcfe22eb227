"""Parsing of the agent CLI's line-delimited JSON output."""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(slots=True)
class SystemInitMessage:
    """``system/init`` envelope announcing the session."""

    session_id: str | None
    tools: list[str] = field(default_factory=list)
    model: str | None = None
    cwd: str | None = None
    version: str | None = None


@dataclass(slots=True)
class ToolInvocation:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AssistantMessage:
    """Assistant turn carrying text fragments and tool invocation requests."""

    texts: list[str] = field(default_factory=list)
    tool_uses: list[ToolInvocation] = field(default_factory=list)
    model: str | None = None

    @property
    def substantive(self) -> bool:
        return any(text.strip() for text in self.texts) or bool(self.tool_uses)


@dataclass(slots=True)
class ToolResultPayload:
    tool_use_id: str
    content: str
    is_error: bool = False


@dataclass(slots=True)
class UserMessage:
    """User turn carrying tool results keyed by the originating invocation id."""

    tool_results: list[ToolResultPayload] = field(default_factory=list)


@dataclass(slots=True)
class ResultMessage:
    """Terminal envelope reporting usage, duration, and cost."""

    session_id: str | None = None
    usage: dict[str, Any] | None = None
    duration_ms: float | None = None
    cost_usd: float | None = None
    is_error: bool = False
    subtype: str | None = None
    text: str | None = None


Message = Union[SystemInitMessage, AssistantMessage, UserMessage, ResultMessage]


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _flatten_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, dict):
                if "text" in block:
                    parts.append(str(block["text"]))
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    return json.dumps(content)


def _parse_system(payload: dict[str, Any]) -> SystemInitMessage | None:
    if payload.get("subtype") != "init":
        return None
    return SystemInitMessage(
        session_id=payload.get("session_id"),
        tools=[str(tool) for tool in _as_list(payload.get("tools"))],
        model=payload.get("model"),
        cwd=payload.get("cwd"),
        version=payload.get("claude_code_version") or payload.get("version"),
    )


def _parse_assistant(payload: dict[str, Any]) -> AssistantMessage:
    body = payload.get("message") if isinstance(payload.get("message"), dict) else {}
    message = AssistantMessage(model=body.get("model"))
    for block in _as_list(body.get("content")):
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text":
            text = block.get("text") or ""
            if text:
                message.texts.append(str(text))
        elif block.get("type") == "tool_use":
            tool_input = block.get("input")
            message.tool_uses.append(
                ToolInvocation(
                    id=str(block.get("id") or ""),
                    name=str(block.get("name") or ""),
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
            )
    return message


def _parse_user(payload: dict[str, Any]) -> UserMessage:
    body = payload.get("message") if isinstance(payload.get("message"), dict) else {}
    message = UserMessage()
    for block in _as_list(body.get("content")):
        if isinstance(block, dict) and block.get("type") == "tool_result":
            message.tool_results.append(
                ToolResultPayload(
                    tool_use_id=str(block.get("tool_use_id") or ""),
                    content=_flatten_content(block.get("content")),
                    is_error=bool(block.get("is_error", False)),
                )
            )
    return message


def _parse_result(payload: dict[str, Any]) -> ResultMessage:
    # Older CLI builds nest session/usage under "result"; newer ones put them at top level.
    nested = payload.get("result") if isinstance(payload.get("result"), dict) else {}
    text = payload.get("result") if isinstance(payload.get("result"), str) else None
    cost = payload.get("total_cost_usd", payload.get("cost_usd"))
    duration = payload.get("duration_ms")
    return ResultMessage(
        session_id=nested.get("session_id") or payload.get("session_id"),
        usage=nested.get("usage") or payload.get("usage"),
        duration_ms=float(duration) if isinstance(duration, (int, float)) else None,
        cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
        is_error=bool(payload.get("is_error", False)),
        subtype=payload.get("subtype"),
        text=text,
    )


def parse_line(line: str) -> Message | None:
    """Parse one line of agent output.

    Blank lines, non-JSON lines, JSON values that are not objects, and
    envelopes of an unknown type all yield ``None``; the stream interleaves
    incidental output with the structured messages.
    """

    stripped = line.strip()
    if not stripped or not stripped.startswith("{"):
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    kind = payload.get("type")
    if kind == "system":
        return _parse_system(payload)
    if kind == "assistant":
        return _parse_assistant(payload)
    if kind == "user":
        return _parse_user(payload)
    if kind == "result":
        return _parse_result(payload)
    return None


class LineBuffer:
    """Reassemble newline-delimited lines from arbitrary byte chunks."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def decode(self, chunk: bytes) -> str:
        """Decode a chunk, holding back incomplete multi-byte sequences."""

        return self._decoder.decode(chunk)

    def feed(self, text: str) -> list[str]:
        """Append decoded text and return every completed line."""

        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> str | None:
        """Return the trailing partial line, if any, and reset the buffer."""

        remainder = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return remainder if remainder.strip() else None

    @property
    def pending(self) -> str:
        return self._pending


__all__ = [
    "AssistantMessage",
    "LineBuffer",
    "Message",
    "ResultMessage",
    "SystemInitMessage",
    "ToolInvocation",
    "ToolResultPayload",
    "UserMessage",
    "parse_line",
]
