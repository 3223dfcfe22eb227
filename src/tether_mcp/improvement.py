"""Close the loop: turn unresolved patterns into a corrective agent run."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence
from uuid import uuid4

from .agent import Execution, ExecutionSupervisor
from .signals import ImprovementRecord, Pattern, SignalStore, build_improvement_prompt, refresh_patterns

logger = logging.getLogger(__name__)

FILE_WRITING_TOOLS = frozenset({"Edit", "MultiEdit", "Write", "NotebookEdit"})
MAX_SUMMARY_LENGTH = 2000


def modified_artifacts(execution: Execution) -> list[str]:
    """Return paths touched by file-writing tool invocations, in first-seen order."""

    paths: dict[str, None] = {}
    for event in execution.events:
        if event.kind != "tool_use" or event.data.get("name") not in FILE_WRITING_TOOLS:
            continue
        tool_input = event.data.get("input") or {}
        target = tool_input.get("file_path") or tool_input.get("notebook_path") or tool_input.get("path")
        if target:
            paths[str(target)] = None
    return list(paths)


def run_summary(execution: Execution) -> str | None:
    for event in reversed(execution.events):
        if event.kind == "result" and event.data.get("text"):
            return str(event.data["text"])[:MAX_SUMMARY_LENGTH]
        if event.kind == "text" and event.data.get("content"):
            return str(event.data["content"])[:MAX_SUMMARY_LENGTH]
        if event.kind == "error" and event.data.get("message"):
            return str(event.data["message"])[:MAX_SUMMARY_LENGTH]
    return None


def run_succeeded(execution: Execution) -> bool:
    if execution.status != "completed":
        return False
    results = [event for event in execution.events if event.kind == "result"]
    return bool(results) and not results[-1].data.get("is_error")


class ImprovementCoordinator:
    """Launch improvement runs and record their outcome."""

    def __init__(
        self,
        supervisor: ExecutionSupervisor,
        store: SignalStore,
        *,
        lookback_days: int = 7,
        pattern_limit: int = 10,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._store = store
        self._lookback_days = lookback_days
        self._pattern_limit = pattern_limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._watchers: set[asyncio.Task] = set()

    def refresh(self) -> list[Pattern]:
        return refresh_patterns(self._store, lookback_days=self._lookback_days, now=self._clock())

    def select_patterns(
        self,
        fingerprints: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[Pattern]:
        patterns = self.refresh()
        if fingerprints is not None:
            wanted = set(fingerprints)
            patterns = [pattern for pattern in patterns if pattern.fingerprint in wanted]
        return patterns[: limit or self._pattern_limit]

    async def launch(
        self,
        working_dir: str | Path,
        *,
        resume_session_id: str | None = None,
        fingerprints: Sequence[str] | None = None,
        limit: int | None = None,
        capabilities: Sequence[str] | None = None,
        start_options: dict[str, Any] | None = None,
        render_task: Callable[[str], str] | None = None,
    ) -> ImprovementRecord | None:
        """Start an improvement run; returns None when no unresolved pattern qualifies.

        ``render_task`` wraps the generated prompt, e.g. with a profile preamble.
        """

        patterns = self.select_patterns(fingerprints, limit)
        if not patterns:
            logger.info("No unresolved patterns to improve")
            return None

        prompt = build_improvement_prompt(patterns)
        if render_task is not None:
            prompt = render_task(prompt)
        execution_id = await self._supervisor.start(
            working_dir,
            prompt,
            resume_session_id,
            capabilities,
            **(start_options or {}),
        )
        record = ImprovementRecord(
            id=uuid4().hex,
            execution_id=execution_id,
            pattern_fingerprints=[pattern.fingerprint for pattern in patterns],
            started_at=self._clock(),
        )
        self._store.append_improvement(record)
        logger.info(
            "Launched improvement run",
            extra={"improvement_id": record.id, "execution_id": execution_id, "patterns": len(patterns)},
        )

        watcher = asyncio.create_task(self._await_completion(record))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        return record

    async def _await_completion(self, record: ImprovementRecord) -> ImprovementRecord | None:
        try:
            execution = await self._supervisor.wait(record.execution_id)
            return self.complete(record, execution)
        except Exception as exc:
            logger.warning(
                "Failed to record improvement outcome",
                exc_info=True,
                extra={"improvement_id": record.id, "execution_id": record.execution_id, "error": str(exc)},
            )
            return None

    def complete(self, record: ImprovementRecord, execution: Execution) -> ImprovementRecord:
        """Append the completed record; a successful run resolves its patterns."""

        success = run_succeeded(execution)
        completed = record.model_copy(
            update={
                "completed_at": self._clock(),
                "success": success,
                "summary": run_summary(execution),
                "modified_artifacts": modified_artifacts(execution),
                "metadata": {**record.metadata, "status": execution.status},
            }
        )
        self._store.append_improvement(completed)
        if success:
            self._store.mark_resolved(completed.pattern_fingerprints)
        logger.info(
            "Improvement run finished",
            extra={"improvement_id": record.id, "success": success, "status": execution.status},
        )
        return completed

    async def drain(self) -> None:
        """Wait for every pending completion watcher."""

        if self._watchers:
            await asyncio.gather(*list(self._watchers), return_exceptions=True)


__all__ = ["ImprovementCoordinator", "modified_artifacts", "run_succeeded", "run_summary"]
