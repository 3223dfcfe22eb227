from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import pytest

from tether_mcp.config import TetherSettings


def stream_lines(*payloads: dict[str, Any]) -> str:
    """Shell lines that print each payload as one line of stream JSON."""

    return "".join(f"printf '%s\\n' '{json.dumps(payload)}'\n" for payload in payloads)


def init_line(session_id: str = "sess-1") -> dict[str, Any]:
    return {"type": "system", "subtype": "init", "session_id": session_id, "tools": ["lookup"]}


def tool_use_line(tool_id: str, name: str, tool_input: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "assistant",
        "message": {"content": [{"type": "tool_use", "id": tool_id, "name": name, "input": tool_input}]},
    }


def text_line(text: str) -> dict[str, Any]:
    return {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}


def result_line(session_id: str = "sess-1", **extra: Any) -> dict[str, Any]:
    return {"type": "result", "subtype": "success", "session_id": session_id, "duration_ms": 1500, **extra}


@pytest.fixture
def fake_agent(tmp_path: Path) -> Callable[[str], Path]:
    """Write an executable shell script that drains stdin, then runs ``body``."""

    counter = {"value": 0}

    def _write(body: str) -> Path:
        counter["value"] += 1
        script = tmp_path / f"fake-agent-{counter['value']}"
        script.write_text("#!/bin/sh\ncat >/dev/null\n" + body, encoding="utf-8")
        script.chmod(0o755)
        return script

    return _write


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., TetherSettings]:
    def _make(script: Path | None = None, **overrides: Any) -> TetherSettings:
        values: dict[str, Any] = {
            "agent_cli_path": str(script) if script else str(tmp_path / "missing-agent"),
            "execution_log_dir": tmp_path / "logs",
            "signal_store_path": tmp_path / "signals",
            "profile_paths": (tmp_path / "profiles",),
            "execution_timeout_seconds": 10.0,
            "synthetic_result_min_seconds": 30.0,
        }
        values.update(overrides)
        return TetherSettings(**values)

    return _make
