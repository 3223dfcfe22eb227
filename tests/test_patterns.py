from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from tether_mcp.signals import Category, Severity, Signal, SignalStore, SignalType, detect_patterns, refresh_patterns
from tether_mcp.signals.patterns import priority_score, recency_factor, suggest_fix

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_signal(
    fingerprint: str,
    *,
    signal_type: SignalType = SignalType.TOOL_ERROR,
    severity: Severity = Severity.MEDIUM,
    category: Category = Category.TOOLING,
    tool_name: str | None = "db",
    error_text: str | None = "boom",
    age: timedelta = timedelta(minutes=5),
) -> Signal:
    return Signal(
        id=uuid4().hex,
        type=signal_type,
        severity=severity,
        category=category,
        fingerprint=fingerprint,
        tool_name=tool_name,
        error_text=error_text,
        execution_id="exec-1",
        timestamp=NOW - age,
    )


def test_recency_factor_bands() -> None:
    assert recency_factor(NOW - timedelta(minutes=30), NOW) == 2.0
    assert recency_factor(NOW - timedelta(hours=5), NOW) == 1.5
    assert recency_factor(NOW - timedelta(days=3), NOW) == 1.0


def test_priority_score() -> None:
    assert priority_score(Severity.HIGH, 2, NOW, NOW) == 20.0
    assert priority_score(Severity.LOW, 3, NOW - timedelta(days=2), NOW) == 3.0


def test_detect_groups_by_fingerprint_and_sorts_by_score() -> None:
    signals = [
        make_signal("aaa", error_text="first", age=timedelta(minutes=50)),
        make_signal("aaa", error_text="latest", age=timedelta(minutes=10)),
        make_signal(
            "bbb",
            signal_type=SignalType.SCHEMA_MISMATCH,
            severity=Severity.HIGH,
            category=Category.SCHEMA,
            error_text='column "nme" does not exist',
        ),
        make_signal(
            "ccc",
            signal_type=SignalType.PERFORMANCE,
            severity=Severity.LOW,
            category=Category.PERFORMANCE,
            tool_name=None,
            error_text="Execution took 65000ms (threshold 60000ms)",
            age=timedelta(days=2),
        ),
    ]

    patterns = detect_patterns(signals, now=NOW)

    assert [pattern.fingerprint for pattern in patterns] == ["aaa", "bbb", "ccc"]
    grouped = patterns[0]
    assert grouped.count == 2
    assert grouped.error_text == "latest"
    assert grouped.first_seen == NOW - timedelta(minutes=50)
    assert grouped.last_seen == NOW - timedelta(minutes=10)
    assert grouped.score == 12.0
    assert patterns[1].score == 10.0
    assert patterns[2].score == 1.0


def test_detect_is_idempotent() -> None:
    signals = [make_signal("aaa"), make_signal("bbb", age=timedelta(hours=3)), make_signal("aaa")]
    assert detect_patterns(signals, now=NOW) == detect_patterns(signals, now=NOW)


def test_detect_keeps_highest_severity() -> None:
    signals = [
        make_signal("aaa", severity=Severity.HIGH, age=timedelta(minutes=20)),
        make_signal("aaa", severity=Severity.LOW, age=timedelta(minutes=1)),
    ]
    (pattern,) = detect_patterns(signals, now=NOW)
    assert pattern.severity is Severity.HIGH


def test_ties_break_on_recency_then_fingerprint() -> None:
    signals = [
        make_signal("zzz", age=timedelta(minutes=1)),
        make_signal("yyy", age=timedelta(minutes=2)),
        make_signal("xxx", age=timedelta(minutes=2)),
    ]
    patterns = detect_patterns(signals, now=NOW)
    assert [pattern.fingerprint for pattern in patterns] == ["zzz", "xxx", "yyy"]


@pytest.mark.parametrize(
    ("signal_type", "tool", "text", "expected"),
    [
        (SignalType.SCHEMA_MISMATCH, "query_db", 'column "nme" does not exist', "`nme`"),
        (SignalType.SCHEMA_MISMATCH, "query_db", "something odd", "the referenced column"),
        (SignalType.PERFORMANCE, None, "Execution took 65000ms (threshold 60000ms)", "(65s)"),
        (SignalType.PERFORMANCE, None, None, "(60+s)"),
        (SignalType.TOOL_ERROR, "http", None, "an unspecified error"),
        (SignalType.N_PLUS_ONE, "lookup", None, "`lookup` is called repeatedly"),
        (SignalType.TOOL_MISSING, None, None, "`the tool`"),
    ],
)
def test_fix_suggestions(signal_type, tool, text, expected) -> None:
    assert expected in suggest_fix(signal_type, tool, text)


def test_refresh_excludes_resolved_and_old_signals(tmp_path) -> None:
    clock = {"value": NOW - timedelta(minutes=5)}
    store = SignalStore(tmp_path, clock=lambda: clock["value"])
    store.append_signal(make_signal("old", age=timedelta(days=30)))
    store.append_signal(make_signal("fixed", age=timedelta(minutes=10)))
    store.append_signal(make_signal("open", age=timedelta(minutes=10)))
    store.mark_resolved(["fixed"])

    patterns = refresh_patterns(store, lookback_days=7, now=NOW)

    assert [pattern.fingerprint for pattern in patterns] == ["open"]
    assert [pattern.fingerprint for pattern in store.get_patterns()] == ["open"]


def test_refresh_keeps_resolved_history_in_the_table(tmp_path) -> None:
    clock = {"value": NOW - timedelta(minutes=1)}
    store = SignalStore(tmp_path, clock=lambda: clock["value"])
    store.append_signal(make_signal("fixed", age=timedelta(minutes=10)))
    refresh_patterns(store, now=NOW)
    store.mark_resolved(["fixed"])

    assert refresh_patterns(store, now=NOW) == []
    table = store.get_patterns(include_resolved=True)
    assert [(pattern.fingerprint, pattern.resolved) for pattern in table] == [("fixed", True)]
    assert store.get_patterns(include_resolved=False) == []
