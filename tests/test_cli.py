from __future__ import annotations

import argparse
import importlib.util
import json
import os
import subprocess
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import pytest

from tether_mcp.signals import Category, ImprovementRecord, Severity, Signal, SignalStore, SignalType

REPO_ROOT = Path(__file__).resolve().parents[1]


def load_diag(module_name: str):
    module_path = REPO_ROOT / "scripts" / "tether_diag.py"
    spec = importlib.util.spec_from_file_location(module_name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


@pytest.fixture
def store(tmp_path: Path) -> SignalStore:
    store = SignalStore(tmp_path / "signals")
    now = datetime.now(timezone.utc)
    for fingerprint, age in (("fp-old", timedelta(hours=5)), ("fp-new", timedelta(minutes=5))):
        store.append_signal(
            Signal(
                id=uuid4().hex,
                type=SignalType.RETRY_STORM,
                severity=Severity.HIGH,
                category=Category.PROMPT,
                fingerprint=fingerprint,
                tool_name="fetch",
                error_text="Tool fetch retried 3 times with identical input",
                execution_id="exec-1",
                timestamp=now - age,
            )
        )
    return store


@pytest.fixture
def diag(monkeypatch, store):
    module = load_diag(f"tether_diag_{uuid4().hex}")
    monkeypatch.setattr(module, "load_store", lambda _settings: store)
    return module


def test_diagnostics_cli_rejects_unusable_store(tmp_path: Path) -> None:
    blocker = tmp_path / "signals"
    blocker.write_text("", encoding="utf-8")
    env = os.environ.copy()
    env["PYTHONPATH"] = f"{REPO_ROOT / 'src'}" + os.pathsep + env.get("PYTHONPATH", "")
    env["TETHER_SIGNAL_STORE_PATH"] = str(blocker)
    process = subprocess.run(
        [sys.executable, str(REPO_ROOT / "scripts" / "tether_diag.py"), "signals"],
        cwd=str(tmp_path),
        capture_output=True,
        text=True,
        env=env,
    )
    assert process.returncode != 0
    assert "Signal store unavailable" in process.stdout


def test_signals_since_filter(diag, capsys) -> None:
    since = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    diag.cmd_signals(argparse.Namespace(since=since, unresolved=False, json=True))

    payload = json.loads(capsys.readouterr().out)
    assert [signal["fingerprint"] for signal in payload] == ["fp-new"]


def test_signals_table_output(diag, capsys) -> None:
    diag.cmd_signals(argparse.Namespace(since=None, unresolved=False, json=False))

    lines = capsys.readouterr().out.splitlines()
    assert len(lines) == 2
    assert "retry_storm" in lines[0]
    assert lines[0].startswith("[ ]")


def test_patterns_detect_and_list(diag, store, capsys) -> None:
    diag.cmd_patterns(argparse.Namespace(detect=False, all=False))
    assert json.loads(capsys.readouterr().out) == []

    diag.cmd_patterns(argparse.Namespace(detect=True, all=False))
    detected = json.loads(capsys.readouterr().out)
    assert [pattern["fingerprint"] for pattern in detected] == ["fp-new", "fp-old"]

    store.mark_resolved(["fp-old"])
    diag.cmd_patterns(argparse.Namespace(detect=False, all=False))
    assert [p["fingerprint"] for p in json.loads(capsys.readouterr().out)] == ["fp-new"]
    diag.cmd_patterns(argparse.Namespace(detect=False, all=True))
    assert len(json.loads(capsys.readouterr().out)) == 2


def test_improvements_summary(diag, store, capsys) -> None:
    started = ImprovementRecord(id="imp-1", execution_id="exec-9", pattern_fingerprints=["fp-new"])
    store.append_improvement(started)
    store.append_improvement(
        started.model_copy(update={"completed_at": datetime.now(timezone.utc), "success": True})
    )
    store.append_improvement(ImprovementRecord(id="imp-2", execution_id="exec-10"))

    diag.cmd_improvements(argparse.Namespace())

    summary = json.loads(capsys.readouterr().out)
    assert summary["total"] == 2
    assert summary["completed"] == 1
    assert summary["succeeded"] == 1
    assert summary["pending"] == 1


def test_prompt_limit(diag, capsys) -> None:
    diag.cmd_prompt(argparse.Namespace(limit=1))

    output = capsys.readouterr().out
    assert "(1 pattern, highest priority first)" in output
    assert "### 2." not in output


def test_prompt_without_patterns(diag, store, capsys) -> None:
    store.mark_resolved(["fp-old", "fp-new"])

    diag.cmd_prompt(argparse.Namespace(limit=None))

    assert capsys.readouterr().out.strip() == "No unresolved patterns."


def test_parser_subcommands() -> None:
    parser = load_diag("tether_diag_parser").build_parser()
    args = parser.parse_args(["patterns", "--detect", "--all"])
    assert args.detect and args.all
    args = parser.parse_args(["prompt", "--limit", "3"])
    assert args.limit == 3
    args = parser.parse_args(["signals", "--since", "2025-01-01"])
    assert args.since == "2025-01-01"
