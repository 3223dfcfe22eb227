"""Classify execution events into friction signals."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Sequence
from uuid import uuid4

from .models import SIGNAL_CATEGORY, SIGNAL_SEVERITY, Category, Signal, SignalType

if TYPE_CHECKING:
    from ..agent.events import Event
    from .store import SignalStore

logger = logging.getLogger(__name__)

ANALYZED_KINDS = frozenset({"text", "tool_use", "tool_result", "result"})

MAX_NORMALIZED_LENGTH = 200
REPEAT_THRESHOLD = 3
SLOW_RESULT_MS = 60_000

_UUID = re.compile(r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b")
_TIMESTAMP = re.compile(
    r"\b\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2}(?:[.,]\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?"
)
_WHITESPACE = re.compile(r"\s+")

_ERROR_INDICATOR = re.compile(
    r"<tool_use_error>|\berror\b\s*[:=]|\"error\"\s*:|\bexception\b|\bfailed(?:\s+to\b|\s*:|\s+with\b)|\btraceback\b",
    re.IGNORECASE,
)
_SCHEMA_CODE = re.compile(r"\b(42703|42P01|42P10|PGRST\d{3})\b")
_SCHEMA_ERROR = re.compile(
    r"column\s+\"?[\w.]+\"?(?:\s+of\s+relation\s+\"?[\w.]+\"?)?\s+does\s+not\s+exist"
    r"|relation\s+\"?[\w.]+\"?\s+does\s+not\s+exist"
    r"|could\s+not\s+find\s+the\s+'?[\w.]+'?\s+column"
    r"|schema\s+cache",
    re.IGNORECASE,
)
_SCHEMA_CACHE = re.compile(r"schema\s+cache", re.IGNORECASE)
_ERRNO_CODE = re.compile(r"\b(E[A-Z]{3,})\b")
_TOOL_MISSING = re.compile(
    r"(?:tool|function)\s+[`'\"]?(?P<named>[\w.:-]+)[`'\"]?\s+(?:was\s+)?"
    r"(?:not\s+found|is\s+not\s+available|is\s+unavailable|does\s+not\s+exist)"
    r"|(?:no\s+such\s+tool|unknown\s+tool|tool\s+not\s+found)[:\s]+[`'\"]?(?P<trailing>[\w.:-]+)",
    re.IGNORECASE,
)


def normalize_error_text(text: str | None, *, max_length: int = MAX_NORMALIZED_LENGTH) -> str:
    """Strip volatile identifiers so equivalent errors compare equal."""

    if not text:
        return ""
    normalized = _UUID.sub("<uuid>", text)
    normalized = _TIMESTAMP.sub("<timestamp>", normalized)
    normalized = _WHITESPACE.sub(" ", normalized).strip()
    return normalized[:max_length]


def compute_fingerprint(signal_type: SignalType | str, tool_name: str | None, text: str | None) -> str:
    kind = signal_type.value if isinstance(signal_type, SignalType) else str(signal_type)
    material = "|".join([kind, tool_name or "", normalize_error_text(text)])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


def describe_input_shape(tool_input: object) -> str | None:
    if not isinstance(tool_input, dict) or not tool_input:
        return None
    return "{" + ",".join(sorted(str(key) for key in tool_input)) + "}"


def _canonical_input(tool_input: object) -> str:
    return json.dumps(tool_input, sort_keys=True, default=str)


@dataclass(slots=True)
class SignalDraft:
    """Classifier output before ids, timestamps, and fingerprints are assigned."""

    type: SignalType
    tool_name: str | None = None
    error_text: str | None = None
    error_code: str | None = None
    input_shape: str | None = None
    fingerprint_text: str | None = None
    category: Category | None = None


Classifier = Callable[["Event", Sequence["Event"]], "SignalDraft | None"]


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    name: str
    applies: Callable[["Event"], bool]
    classify: Classifier


def _tool_name_for_result(event: Event, window: Sequence[Event]) -> str | None:
    tool_use_id = event.data.get("tool_use_id")
    for candidate in reversed(window):
        if candidate.kind == "tool_use" and candidate.data.get("id") == tool_use_id:
            return candidate.data.get("name") or None
    return None


def _classify_tool_result(event: Event, window: Sequence[Event]) -> SignalDraft | None:
    content = str(event.data.get("content") or "")
    schema_code = _SCHEMA_CODE.search(content)
    flagged = bool(event.data.get("is_error")) or bool(_ERROR_INDICATOR.search(content))
    if not flagged and schema_code is None:
        return None

    tool_name = _tool_name_for_result(event, window)
    if schema_code is not None or _SCHEMA_ERROR.search(content):
        return SignalDraft(
            type=SignalType.SCHEMA_MISMATCH,
            tool_name=tool_name,
            error_text=content,
            error_code=schema_code.group(1) if schema_code else None,
            category=Category.CACHE if _SCHEMA_CACHE.search(content) else None,
        )
    errno = _ERRNO_CODE.search(content)
    return SignalDraft(
        type=SignalType.TOOL_ERROR,
        tool_name=tool_name,
        error_text=content,
        error_code=errno.group(1) if errno else None,
    )


def _classify_n_plus_one(event: Event, window: Sequence[Event]) -> SignalDraft | None:
    name = event.data.get("name")
    if not name:
        return None
    calls = sum(1 for item in window if item.kind == "tool_use" and item.data.get("name") == name)
    if calls < REPEAT_THRESHOLD:
        return None
    return SignalDraft(
        type=SignalType.N_PLUS_ONE,
        tool_name=name,
        error_text=f"Tool {name} called {calls} times within the recent event window",
        fingerprint_text=f"repeated calls to {name}",
        input_shape=describe_input_shape(event.data.get("input")),
    )


def _classify_retry_storm(event: Event, window: Sequence[Event]) -> SignalDraft | None:
    name = event.data.get("name")
    if not name:
        return None
    key = _canonical_input(event.data.get("input"))
    repeats = sum(
        1
        for item in window
        if item.kind == "tool_use"
        and item.data.get("name") == name
        and _canonical_input(item.data.get("input")) == key
    )
    if repeats < REPEAT_THRESHOLD:
        return None
    return SignalDraft(
        type=SignalType.RETRY_STORM,
        tool_name=name,
        error_text=f"Tool {name} retried {repeats} times with identical input",
        fingerprint_text=f"identical retries of {name}",
        input_shape=describe_input_shape(event.data.get("input")),
    )


def _classify_slow_result(event: Event, window: Sequence[Event]) -> SignalDraft | None:
    duration = event.data.get("duration_ms")
    if not isinstance(duration, (int, float)) or duration <= SLOW_RESULT_MS:
        return None
    return SignalDraft(
        type=SignalType.PERFORMANCE,
        error_text=f"Execution took {int(duration)}ms (threshold {SLOW_RESULT_MS}ms)",
        fingerprint_text="execution exceeded duration threshold",
    )


def _classify_missing_tool(event: Event, window: Sequence[Event]) -> SignalDraft | None:
    content = str(event.data.get("content") or "")
    match = _TOOL_MISSING.search(content)
    if match is None:
        return None
    name = match.group("named") or match.group("trailing")
    return SignalDraft(type=SignalType.TOOL_MISSING, tool_name=name, error_text=match.group(0))


# Evaluated top to bottom; the first rule returning a draft wins unless the
# analyzer prefers the strongest match. n_plus_one precedes retry_storm, so
# identical repeated calls surface as n_plus_one in first-match mode.
DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule("tool_result_error", lambda event: event.kind == "tool_result", _classify_tool_result),
    ClassificationRule("n_plus_one", lambda event: event.kind == "tool_use", _classify_n_plus_one),
    ClassificationRule("retry_storm", lambda event: event.kind == "tool_use", _classify_retry_storm),
    ClassificationRule("slow_result", lambda event: event.kind == "result", _classify_slow_result),
    ClassificationRule("missing_tool", lambda event: event.kind == "text", _classify_missing_tool),
)


class SignalAnalyzer:
    """Apply the ordered classification rules to one event at a time."""

    def __init__(
        self,
        rules: Sequence[ClassificationRule] = DEFAULT_RULES,
        *,
        prefer_strongest: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._rules = tuple(rules)
        self._prefer_strongest = prefer_strongest
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def rules(self) -> tuple[ClassificationRule, ...]:
        return self._rules

    def _select(self, event: Event, window: Sequence[Event]) -> SignalDraft | None:
        best: SignalDraft | None = None
        for rule in self._rules:
            if not rule.applies(event):
                continue
            draft = rule.classify(event, window)
            if draft is None:
                continue
            if not self._prefer_strongest:
                return draft
            if best is None or SIGNAL_SEVERITY[draft.type].rank > SIGNAL_SEVERITY[best.type].rank:
                best = draft
        return best

    def analyze(self, event: Event, window: Sequence[Event], execution_id: str) -> Signal | None:
        draft = self._select(event, window)
        if draft is None:
            return None
        return Signal(
            id=uuid4().hex,
            type=draft.type,
            severity=SIGNAL_SEVERITY[draft.type],
            category=draft.category or SIGNAL_CATEGORY[draft.type],
            fingerprint=compute_fingerprint(
                draft.type,
                draft.tool_name,
                draft.fingerprint_text if draft.fingerprint_text is not None else draft.error_text,
            ),
            tool_name=draft.tool_name,
            error_text=normalize_error_text(draft.error_text) or None,
            error_code=draft.error_code,
            input_shape=draft.input_shape,
            execution_id=execution_id,
            timestamp=self._clock(),
        )


class SignalTracker:
    """Feed one execution's events through the analyzer with a sliding window.

    Analysis is best-effort: classifier errors are swallowed and store write
    failures are logged, so telemetry never interrupts the execution.
    """

    def __init__(
        self,
        analyzer: SignalAnalyzer,
        execution_id: str,
        *,
        store: "SignalStore | None" = None,
        window_size: int = 20,
    ) -> None:
        self._analyzer = analyzer
        self._execution_id = execution_id
        self._store = store
        self._window: deque["Event"] = deque(maxlen=window_size)
        self.signals: list[Signal] = []

    @property
    def window(self) -> list["Event"]:
        return list(self._window)

    def observe(self, event: Event) -> Signal | None:
        if event.kind not in ANALYZED_KINDS:
            return None
        self._window.append(event)
        try:
            signal = self._analyzer.analyze(event, tuple(self._window), self._execution_id)
        except Exception:
            logger.debug(
                "Signal analysis failed", exc_info=True, extra={"execution_id": self._execution_id}
            )
            return None
        if signal is None:
            return None

        self.signals.append(signal)
        logger.debug(
            "Detected signal",
            extra={
                "execution_id": self._execution_id,
                "signal_type": signal.type.value,
                "fingerprint": signal.fingerprint,
            },
        )
        if self._store is not None:
            try:
                self._store.append_signal(signal)
            except OSError as exc:
                logger.warning(
                    "Failed to persist signal",
                    extra={"execution_id": self._execution_id, "error": str(exc)},
                )
        return signal


__all__ = [
    "ClassificationRule",
    "DEFAULT_RULES",
    "SignalAnalyzer",
    "SignalDraft",
    "SignalTracker",
    "compute_fingerprint",
    "describe_input_shape",
    "normalize_error_text",
]
