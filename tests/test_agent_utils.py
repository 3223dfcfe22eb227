from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from tether_mcp.agent.logfile import ExecutionLog, log_file_path
from tether_mcp.agent.utils import build_agent_command, is_reportable_stderr, sanitize_environment


def test_sanitize_environment_strips_python_vars_and_injects(monkeypatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "/tmp/should-not-leak")
    monkeypatch.setenv("HOME", "/home/tester")

    env = sanitize_environment({"TETHER_PROJECT_ID": "proj-1", "TETHER_BASE_URL": None, "EMPTY": ""})

    assert "PYTHONPATH" not in env
    assert env["HOME"] == "/home/tester"
    assert env["TETHER_PROJECT_ID"] == "proj-1"
    assert "TETHER_BASE_URL" not in env
    assert "EMPTY" not in env


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("fatal: permission denied", True),
        ("Error: EACCES opening /etc/shadow", True),
        ("Request failed after 3 attempts", True),
        ("MCP server failed to start", False),
        ("Loading configuration", False),
        ("Connected to 2 tools", False),
        ("warning: deprecated option", False),
    ],
)
def test_stderr_vocabulary(line: str, expected: bool) -> None:
    assert is_reportable_stderr(line) is expected


def test_build_agent_command_full() -> None:
    argv = build_agent_command(
        "/usr/bin/claude",
        flags=["--dangerously-skip-permissions"],
        resume_session_id="sess-1",
        capabilities=["Read", "Edit"],
        model="opus",
    )
    assert argv == [
        "/usr/bin/claude",
        "-p",
        "-",
        "--output-format",
        "stream-json",
        "--verbose",
        "--dangerously-skip-permissions",
        "--model",
        "opus",
        "--allowedTools",
        "Read,Edit",
        "--resume",
        "sess-1",
    ]


def test_build_agent_command_respects_explicit_model_flag() -> None:
    argv = build_agent_command("claude", flags=["--model", "haiku"], model="opus")
    assert argv.count("--model") == 1
    assert "opus" not in argv


def test_log_file_path_sanitizes_id() -> None:
    now = datetime(2025, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
    path = log_file_path(Path("/logs"), "exec/../1 2", now=now)
    assert path == Path("/logs/terminal_exec____1_2_2025-01-02T03-04-05-678000Z.log")


def test_execution_log_writes_channels(tmp_path: Path) -> None:
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    log = ExecutionLog(tmp_path / "nested" / "run.log", clock=lambda: now)
    log.open()
    log.write("started")
    log.write("raw output", "stdout")
    log.close()
    log.write("ignored after close")

    lines = (tmp_path / "nested" / "run.log").read_text(encoding="utf-8").splitlines()
    assert lines == [
        f"[{now.isoformat()}] started",
        f"[{now.isoformat()}] [STDOUT] raw output",
    ]


def test_execution_log_tolerates_unwritable_directory(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    log = ExecutionLog(blocker / "run.log")
    log.open()
    log.write("nothing happens")
    log.close()
    assert not (blocker / "run.log").exists()
