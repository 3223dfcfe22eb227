from __future__ import annotations

import json

from tether_mcp.agent.stream import (
    AssistantMessage,
    LineBuffer,
    ResultMessage,
    SystemInitMessage,
    UserMessage,
    parse_line,
)


def test_parse_line_ignores_noise() -> None:
    assert parse_line("") is None
    assert parse_line("   ") is None
    assert parse_line("Loading MCP servers...") is None
    assert parse_line("{not json") is None
    assert parse_line('{"type": "ping"}') is None
    assert parse_line('{"type": "system", "subtype": "hook"}') is None


def test_parse_system_init() -> None:
    line = json.dumps(
        {
            "type": "system",
            "subtype": "init",
            "session_id": "sess-1",
            "tools": ["Read", "Edit"],
            "model": "sonnet",
            "cwd": "/tmp/work",
            "claude_code_version": "1.2.3",
        }
    )
    message = parse_line(line)
    assert isinstance(message, SystemInitMessage)
    assert message.session_id == "sess-1"
    assert message.tools == ["Read", "Edit"]
    assert message.version == "1.2.3"


def test_parse_assistant_blocks_in_order() -> None:
    line = json.dumps(
        {
            "type": "assistant",
            "message": {
                "model": "sonnet",
                "content": [
                    {"type": "text", "text": "Looking up users"},
                    {"type": "tool_use", "id": "tu_1", "name": "lookup", "input": {"id": 1}},
                    {"type": "text", "text": "Done"},
                ],
            },
        }
    )
    message = parse_line(line)
    assert isinstance(message, AssistantMessage)
    assert message.texts == ["Looking up users", "Done"]
    assert [tool.name for tool in message.tool_uses] == ["lookup"]
    assert message.tool_uses[0].input == {"id": 1}
    assert message.substantive


def test_assistant_without_content_is_not_substantive() -> None:
    message = parse_line(json.dumps({"type": "assistant", "message": {"content": []}}))
    assert isinstance(message, AssistantMessage)
    assert not message.substantive


def test_parse_user_tool_results_flatten_text_blocks() -> None:
    line = json.dumps(
        {
            "type": "user",
            "message": {
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": "tu_1",
                        "content": [{"type": "text", "text": "line one"}, {"type": "text", "text": "line two"}],
                        "is_error": True,
                    }
                ]
            },
        }
    )
    message = parse_line(line)
    assert isinstance(message, UserMessage)
    result = message.tool_results[0]
    assert result.tool_use_id == "tu_1"
    assert result.content == "line one\nline two"
    assert result.is_error is True


def test_parse_result_top_level_and_nested() -> None:
    top = parse_line(
        json.dumps(
            {
                "type": "result",
                "subtype": "success",
                "session_id": "sess-2",
                "duration_ms": 1200,
                "total_cost_usd": 0.05,
                "usage": {"input_tokens": 10},
                "result": "All done",
            }
        )
    )
    assert isinstance(top, ResultMessage)
    assert top.session_id == "sess-2"
    assert top.duration_ms == 1200.0
    assert top.cost_usd == 0.05
    assert top.text == "All done"

    nested = parse_line(
        json.dumps(
            {
                "type": "result",
                "cost_usd": 0.01,
                "result": {"session_id": "sess-3", "usage": {"output_tokens": 4}},
            }
        )
    )
    assert isinstance(nested, ResultMessage)
    assert nested.session_id == "sess-3"
    assert nested.usage == {"output_tokens": 4}
    assert nested.cost_usd == 0.01
    assert nested.text is None


def test_line_buffer_reassembles_split_lines() -> None:
    buffer = LineBuffer()
    assert buffer.feed(buffer.decode(b'{"type": "res')) == []
    lines = buffer.feed(buffer.decode(b'ult"}\r\n{"a"'))
    assert lines == ['{"type": "result"}']
    assert buffer.pending == '{"a"'
    assert buffer.flush() == '{"a"'
    assert buffer.flush() is None


def test_line_buffer_holds_partial_utf8_sequences() -> None:
    buffer = LineBuffer()
    encoded = "héllo\n".encode("utf-8")
    split = encoded.index(b"\xc3") + 1
    first = buffer.decode(encoded[:split])
    second = buffer.decode(encoded[split:])
    assert "�" not in first + second
    assert buffer.feed(first) == []
    assert buffer.feed(second) == ["héllo"]
