"""Aggregate stored signals into scored, deduplicated patterns."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Iterable

from .models import Pattern, Severity, Signal, SignalType

if TYPE_CHECKING:
    from .store import SignalStore

logger = logging.getLogger(__name__)

SEVERITY_WEIGHT: dict[Severity, int] = {Severity.HIGH: 5, Severity.MEDIUM: 3, Severity.LOW: 1}

_COLUMN = re.compile(
    r"column\s+\"?(?P<quoted>[\w.]+)\"?(?:\s+of\s+relation\s+\"?[\w.]+\"?)?\s+does\s+not\s+exist"
    r"|could\s+not\s+find\s+the\s+'?(?P<cached>[\w.]+)'?\s+column"
    r"|relation\s+\"?(?P<relation>[\w.]+)\"?\s+does\s+not\s+exist",
    re.IGNORECASE,
)
_DURATION = re.compile(r"took\s+(\d+)\s*ms", re.IGNORECASE)

_FIX_TEMPLATES: dict[SignalType, str] = {
    SignalType.SCHEMA_MISMATCH: (
        "`{tool}` references `{detail}`, which does not exist in the database schema. "
        "Align the query with the actual schema or add the missing column/relation via a migration."
    ),
    SignalType.TOOL_ERROR: (
        "`{tool}` keeps failing with: {detail}. Validate its inputs before calling it and "
        "handle this failure mode explicitly."
    ),
    SignalType.N_PLUS_ONE: (
        "`{tool}` is called repeatedly for individual items. Batch the lookups into a single "
        "call or add a bulk variant of the tool."
    ),
    SignalType.RETRY_STORM: (
        "`{tool}` is retried with identical input. Stop after the first failure, inspect the "
        "error, and change the input or approach instead of retrying."
    ),
    SignalType.PERFORMANCE: (
        "Executions run long ({detail}s). Narrow the task scope, reduce redundant tool calls, "
        "or cache expensive lookups."
    ),
    SignalType.TOOL_MISSING: (
        "The agent tried to use `{tool}`, which is not available. Add it to the capability "
        "list or update the instructions to use an existing tool."
    ),
}


def recency_factor(last_seen: datetime, now: datetime) -> float:
    age = now - last_seen
    if age <= timedelta(hours=1):
        return 2.0
    if age <= timedelta(days=1):
        return 1.5
    return 1.0


def priority_score(severity: Severity, count: int, last_seen: datetime, now: datetime) -> float:
    return SEVERITY_WEIGHT[severity] * count * recency_factor(last_seen, now)


def _extract_detail(signal_type: SignalType, error_text: str | None) -> str | None:
    if not error_text:
        return None
    if signal_type is SignalType.SCHEMA_MISMATCH:
        match = _COLUMN.search(error_text)
        if match:
            return match.group("quoted") or match.group("cached") or match.group("relation")
        return None
    if signal_type is SignalType.PERFORMANCE:
        match = _DURATION.search(error_text)
        return str(round(int(match.group(1)) / 1000)) if match else None
    if signal_type is SignalType.TOOL_ERROR:
        return error_text[:80]
    return None


_DETAIL_PLACEHOLDER: dict[SignalType, str] = {
    SignalType.SCHEMA_MISMATCH: "the referenced column",
    SignalType.TOOL_ERROR: "an unspecified error",
    SignalType.PERFORMANCE: "60+",
}


def suggest_fix(signal_type: SignalType, tool_name: str | None, error_text: str | None) -> str:
    """Render the fix suggestion for a signal type; extraction misses fall back to placeholders."""

    detail = _extract_detail(signal_type, error_text) or _DETAIL_PLACEHOLDER.get(signal_type, "")
    return _FIX_TEMPLATES[signal_type].format(tool=tool_name or "the tool", detail=detail)


def detect_patterns(signals: Iterable[Signal], *, now: datetime | None = None) -> list[Pattern]:
    """Group signals by fingerprint into patterns sorted by descending priority.

    Callers pass unresolved signals only. The representative tool name and
    error text come from the most recent member of each group.
    """

    reference = now or datetime.now(timezone.utc)
    groups: dict[str, list[Signal]] = {}
    for signal in signals:
        groups.setdefault(signal.fingerprint, []).append(signal)

    patterns: list[Pattern] = []
    for fingerprint, members in groups.items():
        ordered = sorted(members, key=lambda item: item.timestamp)
        latest = ordered[-1]
        severity = max((member.severity for member in ordered), key=lambda item: item.rank)
        tool_name = next((m.tool_name for m in reversed(ordered) if m.tool_name), None)
        error_text = next((m.error_text for m in reversed(ordered) if m.error_text), None)
        patterns.append(
            Pattern(
                fingerprint=fingerprint,
                type=latest.type,
                category=latest.category,
                severity=severity,
                count=len(ordered),
                first_seen=ordered[0].timestamp,
                last_seen=latest.timestamp,
                tool_name=tool_name,
                error_text=error_text,
                suggested_fix=suggest_fix(latest.type, tool_name, error_text),
                score=priority_score(severity, len(ordered), latest.timestamp, reference),
            )
        )

    patterns.sort(key=lambda item: (-item.score, -item.last_seen.timestamp(), item.fingerprint))
    return patterns


def refresh_patterns(
    store: "SignalStore",
    *,
    lookback_days: int = 7,
    now: datetime | None = None,
) -> list[Pattern]:
    """Recompute the pattern table from recent unresolved signals and persist it.

    Resolved patterns already in the table are kept so their history stays visible.
    """

    reference = now or datetime.now(timezone.utc)
    signals = store.list_signals(reference - timedelta(days=lookback_days), unresolved_only=True)
    patterns = detect_patterns(signals, now=reference)
    active = {pattern.fingerprint for pattern in patterns}
    retained = [
        pattern
        for pattern in store.get_patterns()
        if pattern.resolved and pattern.fingerprint not in active
    ]
    store.save_patterns([*patterns, *retained])
    logger.debug(
        "Refreshed pattern table",
        extra={"signals": len(signals), "patterns": len(patterns), "resolved_retained": len(retained)},
    )
    return patterns


__all__ = [
    "SEVERITY_WEIGHT",
    "detect_patterns",
    "priority_score",
    "recency_factor",
    "refresh_patterns",
    "suggest_fix",
]
