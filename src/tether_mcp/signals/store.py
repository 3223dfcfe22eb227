"""File-backed persistence for signals, patterns, and improvement records.

Layout under the store directory:

* ``signals.jsonl``      append-only signal log, never rewritten
* ``resolutions.jsonl``  append-only ``{fingerprint, resolved_at}`` markers
* ``patterns.json``      derived pattern table, rewritten on every detection pass
* ``improvements.jsonl`` append-only improvement records (started, then completed)
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from pydantic import ValidationError

from .models import ImprovementRecord, Pattern, Signal

logger = logging.getLogger(__name__)


class SignalStore:
    """Persist signal telemetry under a single directory."""

    SIGNALS_FILE = "signals.jsonl"
    RESOLUTIONS_FILE = "resolutions.jsonl"
    PATTERNS_FILE = "patterns.json"
    IMPROVEMENTS_FILE = "improvements.jsonl"

    def __init__(self, path: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._path = Path(path)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def _file(self, name: str) -> Path:
        return self._path / name

    def _append_line(self, name: str, payload: str) -> None:
        with self._lock:
            self._path.mkdir(parents=True, exist_ok=True)
            with self._file(name).open("a", encoding="utf-8") as handle:
                handle.write(payload + "\n")

    def _read_lines(self, name: str) -> Iterator[dict[str, Any]]:
        path = self._file(name)
        with self._lock:
            if not path.exists():
                return iter(())
            lines = path.read_text(encoding="utf-8").splitlines()

        def _decode() -> Iterator[dict[str, Any]]:
            for number, line in enumerate(lines, start=1):
                if not line.strip():
                    continue
                try:
                    document = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping corrupt line", extra={"file": name, "line": number})
                    continue
                if isinstance(document, dict):
                    yield document

        return _decode()

    # Signals -------------------------------------------------------------

    def append_signal(self, signal: Signal) -> Signal:
        self._append_line(self.SIGNALS_FILE, signal.model_dump_json())
        return signal

    def _resolution_times(self) -> dict[str, datetime]:
        latest: dict[str, datetime] = {}
        for document in self._read_lines(self.RESOLUTIONS_FILE):
            fingerprint = document.get("fingerprint")
            raw = document.get("resolved_at")
            if not fingerprint or not isinstance(raw, str):
                continue
            try:
                stamp = datetime.fromisoformat(raw)
            except ValueError:
                continue
            if stamp.tzinfo is None:
                stamp = stamp.replace(tzinfo=timezone.utc)
            if fingerprint not in latest or stamp > latest[fingerprint]:
                latest[fingerprint] = stamp
        return latest

    def list_signals(
        self,
        since: datetime | None = None,
        *,
        unresolved_only: bool = False,
    ) -> list[Signal]:
        """Return stored signals in append order.

        A signal is reported as resolved when its fingerprint was marked
        resolved at or after the signal's own timestamp; later recurrences of
        the same fingerprint are unresolved again.
        """

        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        resolutions = self._resolution_times()
        signals: list[Signal] = []
        for document in self._read_lines(self.SIGNALS_FILE):
            try:
                signal = Signal.model_validate(document)
            except ValidationError:
                logger.debug("Skipping invalid signal record", extra={"record_id": document.get("id")})
                continue
            if since is not None and signal.timestamp < since:
                continue
            resolved_at = resolutions.get(signal.fingerprint)
            if resolved_at is not None and resolved_at >= signal.timestamp:
                signal = signal.model_copy(update={"resolved": True})
            if unresolved_only and signal.resolved:
                continue
            signals.append(signal)
        return signals

    # Patterns ------------------------------------------------------------

    def save_patterns(self, patterns: Iterable[Pattern]) -> list[Pattern]:
        """Replace the pattern table with ``patterns``."""

        items = list(patterns)
        payload = json.dumps([pattern.model_dump(mode="json") for pattern in items], indent=2)
        with self._lock:
            self._path.mkdir(parents=True, exist_ok=True)
            target = self._file(self.PATTERNS_FILE)
            scratch = target.with_suffix(".json.tmp")
            scratch.write_text(payload, encoding="utf-8")
            os.replace(scratch, target)
        return items

    def get_patterns(self, *, include_resolved: bool = True) -> list[Pattern]:
        path = self._file(self.PATTERNS_FILE)
        with self._lock:
            if not path.exists():
                return []
            raw = path.read_text(encoding="utf-8")
        try:
            documents = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Pattern table is unreadable; treating as empty", extra={"path": str(path)})
            return []

        patterns: list[Pattern] = []
        for document in documents if isinstance(documents, list) else []:
            try:
                pattern = Pattern.model_validate(document)
            except ValidationError:
                continue
            if include_resolved or not pattern.resolved:
                patterns.append(pattern)
        return patterns

    def mark_resolved(self, fingerprints: Iterable[str]) -> list[str]:
        """Record ``fingerprints`` as resolved and flag them in the pattern table."""

        unique = list(dict.fromkeys(fp for fp in fingerprints if fp))
        if not unique:
            return []
        stamp = self._clock().isoformat()
        with self._lock:
            for fingerprint in unique:
                self._append_line(
                    self.RESOLUTIONS_FILE,
                    json.dumps({"fingerprint": fingerprint, "resolved_at": stamp}),
                )
            targets = set(unique)
            patterns = self.get_patterns()
            if patterns:
                self.save_patterns(
                    pattern.model_copy(update={"resolved": True})
                    if pattern.fingerprint in targets
                    else pattern
                    for pattern in patterns
                )
        return unique

    # Improvements --------------------------------------------------------

    def append_improvement(self, record: ImprovementRecord) -> ImprovementRecord:
        self._append_line(self.IMPROVEMENTS_FILE, record.model_dump_json())
        return record

    def list_improvements(self) -> list[ImprovementRecord]:
        """Return improvement records, later lines for an id replacing earlier ones."""

        records: dict[str, ImprovementRecord] = {}
        for document in self._read_lines(self.IMPROVEMENTS_FILE):
            try:
                record = ImprovementRecord.model_validate(document)
            except ValidationError:
                continue
            records.pop(record.id, None)
            records[record.id] = record
        return sorted(records.values(), key=lambda record: record.started_at)

    def get_improvement(self, improvement_id: str) -> ImprovementRecord | None:
        for record in self.list_improvements():
            if record.id == improvement_id:
                return record
        return None


__all__ = ["SignalStore"]
