"""Per-execution append-only text log."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, TextIO

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def log_file_path(log_dir: Path, execution_id: str, *, now: datetime | None = None) -> Path:
    """Return the log path for an execution inside ``log_dir``."""

    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    sanitized = _UNSAFE_CHARS.sub("_", execution_id)[:50]
    return Path(log_dir) / f"terminal_{sanitized}_{stamp}.log"


class ExecutionLog:
    """Mirror raw agent I/O and lifecycle markers into a timestamped text file.

    Write failures are logged and otherwise ignored; the log is a diagnostic
    aid, not part of the execution's outcome.
    """

    def __init__(self, path: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._path = Path(path)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handle: TextIO | None = None
        self._closed = False

    @property
    def path(self) -> Path:
        return self._path

    def open(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self._path.open("a", encoding="utf-8")
        except OSError as exc:
            logger.warning("Unable to open execution log", extra={"path": str(self._path), "error": str(exc)})
            self._handle = None

    def write(self, message: str, channel: str | None = None) -> None:
        if self._closed or self._handle is None:
            return
        prefix = f"[{channel.upper()}] " if channel else ""
        try:
            self._handle.write(f"[{self._clock().isoformat()}] {prefix}{message}\n")
            self._handle.flush()
        except OSError as exc:  # pragma: no cover - disk failures
            logger.debug("Execution log write failed", extra={"path": str(self._path), "error": str(exc)})

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._handle is not None:
            try:
                self._handle.close()
            except OSError:  # pragma: no cover - disk failures
                pass
            self._handle = None


__all__ = ["ExecutionLog", "log_file_path"]
