"""Normalized execution events and the emitter that produces them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal

from .stream import AssistantMessage, Message, ResultMessage, SystemInitMessage, UserMessage

EventKind = Literal["init", "text", "tool_use", "tool_result", "result", "error", "stdout"]


@dataclass(slots=True)
class Event:
    """One normalized occurrence within an execution."""

    kind: EventKind
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "data": self.data, "timestamp": self.timestamp.isoformat()}


class EventEmitter:
    """Convert parsed messages into events and hand them to a sink in order.

    A ``result`` event closes the emitter: nothing is emitted after the
    logical end of the run.
    """

    def __init__(
        self,
        sink: Callable[[Event], None],
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sink = sink
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_timestamp: datetime | None = None
        self.closed = False
        self.init_seen = False
        self.result_seen = False
        self.substantive_messages = 0
        self.session_id: str | None = None
        self.last_result: ResultMessage | None = None

    def _next_timestamp(self) -> datetime:
        now = self._clock()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def emit(self, kind: EventKind, data: dict[str, Any]) -> Event | None:
        if self.closed:
            return None
        event = Event(kind=kind, data=data, timestamp=self._next_timestamp())
        if kind == "result":
            self.closed = True
            self.result_seen = True
        self._sink(event)
        return event

    def emit_raw(self, text: str) -> Event | None:
        return self.emit("stdout", {"raw": text})

    def emit_error(self, message: str, **extra: Any) -> Event | None:
        return self.emit("error", {"message": message, **extra})

    def emit_message(self, message: Message) -> list[Event]:
        """Emit the events for one parsed message, in message order."""

        produced: list[Event | None] = []
        if isinstance(message, SystemInitMessage):
            self.init_seen = True
            if message.session_id:
                self.session_id = message.session_id
            produced.append(
                self.emit(
                    "init",
                    {
                        "session_id": message.session_id,
                        "tools": list(message.tools),
                        "model": message.model,
                        "cwd": message.cwd,
                        "version": message.version,
                    },
                )
            )
        elif isinstance(message, AssistantMessage):
            if message.substantive:
                self.substantive_messages += 1
            for text in message.texts:
                produced.append(self.emit("text", {"content": text, "model": message.model}))
            for tool_use in message.tool_uses:
                produced.append(
                    self.emit(
                        "tool_use",
                        {"id": tool_use.id, "name": tool_use.name, "input": tool_use.input},
                    )
                )
        elif isinstance(message, UserMessage):
            for result in message.tool_results:
                produced.append(
                    self.emit(
                        "tool_result",
                        {
                            "tool_use_id": result.tool_use_id,
                            "content": result.content,
                            "is_error": result.is_error,
                        },
                    )
                )
        elif isinstance(message, ResultMessage):
            if message.session_id:
                self.session_id = message.session_id
            self.last_result = message
            produced.append(
                self.emit(
                    "result",
                    {
                        "session_id": message.session_id or self.session_id,
                        "usage": message.usage,
                        "duration_ms": message.duration_ms,
                        "cost_usd": message.cost_usd,
                        "is_error": message.is_error,
                        "text": message.text,
                    },
                )
            )
        return [event for event in produced if event is not None]

    def emit_synthetic_result(self) -> Event | None:
        return self.emit(
            "result",
            {"session_id": self.session_id, "is_error": False, "synthetic": True},
        )


__all__ = ["Event", "EventEmitter", "EventKind"]
