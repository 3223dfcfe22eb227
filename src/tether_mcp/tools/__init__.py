"""Tool registration for Tether MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastmcp import Context, FastMCP

from ..agent import Execution, ExecutionNotFoundError, ExecutionSupervisor
from ..config import TetherSettings
from ..improvement import ImprovementCoordinator
from ..profiles import AgentProfile, ProfileLoadError, ProfileLoader
from ..signals import SignalStore, build_improvement_prompt

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    start_execution: Any
    get_execution: Any
    abort_execution: Any
    list_active_executions: Any
    cleanup_executions: Any
    list_signals: Any
    list_patterns: Any
    detect_patterns: Any
    resolve_patterns: Any
    build_improvement_prompt: Any
    start_improvement: Any
    list_improvements: Any
    list_profiles: Any


def _parse_since(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"Invalid ISO-8601 timestamp '{value}'") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _launch_options(
    profile: AgentProfile | None,
    task: str,
    capabilities: list[str] | None,
) -> tuple[str, list[str] | None, dict[str, Any]]:
    if profile is None:
        return task, capabilities, {}
    options: dict[str, Any] = {"flags": list(profile.flags), "model": profile.model, "profile_id": profile.id}
    return profile.render_task(task), capabilities or profile.capabilities or None, options


def register_tools(
    server: FastMCP,
    *,
    settings: TetherSettings,
    supervisor: ExecutionSupervisor,
    store: SignalStore,
    coordinator: ImprovementCoordinator,
    profiles: ProfileLoader,
) -> ToolHandles:
    """Register Tether's MCP tools on the server."""

    def _require_execution(execution_id: str) -> Execution:
        try:
            return supervisor.get(execution_id)
        except ExecutionNotFoundError as exc:
            raise ValueError(f"Execution '{execution_id}' not found") from exc

    def _require_profile(profile_id: str | None) -> AgentProfile | None:
        try:
            return profiles.resolve(profile_id)
        except ProfileLoadError as exc:
            raise ValueError(str(exc)) from exc

    async def _start_execution(
        working_dir: str,
        task: str,
        *,
        resume_session_id: str | None = None,
        profile_id: str | None = None,
        capabilities: list[str] | None = None,
        project_id: str | None = None,
        base_url: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start a supervised agent run and return its execution id immediately."""

        if not task.strip():
            raise ValueError("Task text must not be empty")
        profile = _require_profile(profile_id)
        rendered, allowed, options = _launch_options(profile, task, capabilities)
        execution_id = await supervisor.start(
            working_dir,
            rendered,
            resume_session_id,
            allowed,
            project_id=project_id,
            base_url=base_url,
            **options,
        )
        execution = supervisor.get(execution_id)
        _emit_log(
            context,
            "info",
            "Started execution",
            extra={"execution_id": execution_id, "profile_id": profile_id, "working_dir": working_dir},
        )
        return {
            "execution_id": execution_id,
            "status": execution.status,
            "log_path": str(execution.log_path) if execution.log_path else None,
        }

    def _get_execution(
        execution_id: str,
        include_events: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Return the current state of an execution, optionally with its events."""

        execution = _require_execution(execution_id)
        _emit_log(
            context,
            "debug",
            "Fetched execution",
            extra={"execution_id": execution_id, "status": execution.status},
        )
        return execution.to_dict(include_events=include_events)

    def _abort_execution(execution_id: str, context: Context | None = None) -> dict[str, Any]:
        """Abort a running execution; a no-op once it has finished."""

        execution = _require_execution(execution_id)
        aborted = supervisor.abort(execution_id)
        _emit_log(
            context,
            "warning" if aborted else "debug",
            "Abort requested",
            extra={"execution_id": execution_id, "aborted": aborted},
        )
        return {"execution_id": execution_id, "aborted": aborted, "status": execution.status}

    def _list_active_executions(context: Context | None = None) -> list[dict[str, Any]]:
        """List executions that are still running."""

        active = [execution.to_dict() for execution in supervisor.list_active()]
        _emit_log(context, "debug", "Listing active executions", extra={"count": len(active)})
        return active

    def _cleanup_executions(
        max_age_seconds: float | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Evict finished executions older than the retention window."""

        age = max_age_seconds if max_age_seconds is not None else settings.execution_retention_seconds
        evicted = supervisor.cleanup(age)
        _emit_log(context, "info", "Cleaned up executions", extra={"evicted": len(evicted)})
        return {"evicted": evicted, "remaining": len(supervisor.registry)}

    tool_start = server.tool(
        name="start_execution",
        description=(
            "Launch the agent CLI in a working directory with a task. Optional profile, "
            "capability list, and session id to resume. Returns the execution id at once."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "The agent may modify files inside the working directory",
            }
        },
    )(_start_execution)

    tool_get = server.tool(
        name="get_execution",
        description="Fetch execution status, exit code, session id, and optionally its event list.",
    )(_get_execution)

    tool_abort = server.tool(
        name="abort_execution",
        description="Terminate a running execution. Safe to call after completion.",
    )(_abort_execution)

    tool_active = server.tool(
        name="list_active_executions",
        description="List executions that are still running.",
    )(_list_active_executions)

    tool_cleanup = server.tool(
        name="cleanup_executions",
        description="Evict finished executions older than max_age_seconds (default: configured retention).",
    )(_cleanup_executions)

    def _list_signals(
        since: str | None = None,
        *,
        unresolved_only: bool = False,
        limit: int | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List stored signals, optionally only those at or after an ISO timestamp."""

        signals = store.list_signals(_parse_since(since), unresolved_only=unresolved_only)
        if limit is not None and limit > 0:
            signals = signals[-limit:]
        _emit_log(context, "debug", "Listing signals", extra={"count": len(signals)})
        return [signal.model_dump(mode="json") for signal in signals]

    def _list_patterns(
        include_resolved: bool = False,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """Return the stored pattern table."""

        patterns = store.get_patterns(include_resolved=include_resolved)
        _emit_log(context, "debug", "Listing patterns", extra={"count": len(patterns)})
        return [pattern.model_dump(mode="json") for pattern in patterns]

    def _detect_patterns(context: Context | None = None) -> list[dict[str, Any]]:
        """Recompute patterns from recent unresolved signals and persist them."""

        patterns = coordinator.refresh()
        _emit_log(context, "info", "Detected patterns", extra={"count": len(patterns)})
        return [pattern.model_dump(mode="json") for pattern in patterns]

    def _resolve_patterns(
        fingerprints: list[str],
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Mark pattern fingerprints as resolved."""

        resolved = store.mark_resolved(fingerprints)
        _emit_log(context, "info", "Resolved patterns", extra={"count": len(resolved)})
        return {"resolved": resolved}

    def _build_improvement_prompt(
        *,
        fingerprints: list[str] | None = None,
        limit: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Preview the remediation task an improvement run would receive."""

        patterns = coordinator.select_patterns(fingerprints, limit)
        _emit_log(context, "debug", "Built improvement prompt", extra={"patterns": len(patterns)})
        return {
            "fingerprints": [pattern.fingerprint for pattern in patterns],
            "prompt": build_improvement_prompt(patterns) if patterns else None,
        }

    async def _start_improvement(
        working_dir: str,
        *,
        resume_session_id: str | None = None,
        fingerprints: list[str] | None = None,
        limit: int | None = None,
        profile_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Launch a follow-up run that fixes the highest-priority unresolved patterns."""

        profile = _require_profile(profile_id)
        _, allowed, options = _launch_options(profile, "", None)
        record = await coordinator.launch(
            working_dir,
            resume_session_id=resume_session_id,
            fingerprints=fingerprints,
            limit=limit,
            capabilities=allowed,
            start_options=options,
            render_task=profile.render_task if profile is not None else None,
        )
        if record is None:
            _emit_log(context, "info", "No unresolved patterns to fix")
            return {"started": False, "improvement": None}
        _emit_log(
            context,
            "info",
            "Started improvement run",
            extra={"improvement_id": record.id, "execution_id": record.execution_id},
        )
        return {"started": True, "improvement": record.model_dump(mode="json")}

    def _list_improvements(context: Context | None = None) -> list[dict[str, Any]]:
        """List improvement attempts and their outcomes."""

        records = store.list_improvements()
        _emit_log(context, "debug", "Listing improvements", extra={"count": len(records)})
        return [record.model_dump(mode="json") for record in records]

    def _list_profiles(context: Context | None = None) -> list[dict[str, Any]]:
        """List available launch profiles."""

        try:
            loaded = profiles.load_all()
        except ProfileLoadError as exc:
            raise ValueError(str(exc)) from exc
        catalog = [
            {
                "id": profile.id,
                "title": profile.title,
                "description": profile.description,
                "capabilities": profile.capabilities,
                "model": profile.model,
            }
            for profile in loaded.values()
        ]
        _emit_log(context, "debug", "Listing launch profiles", extra={"count": len(catalog)})
        return catalog

    tool_signals = server.tool(
        name="list_signals",
        description="List detected friction signals, optionally since an ISO-8601 timestamp.",
    )(_list_signals)

    tool_patterns = server.tool(
        name="list_patterns",
        description="Return the stored pattern table (set include_resolved=true to include fixed ones).",
    )(_list_patterns)

    tool_detect = server.tool(
        name="detect_patterns",
        description="Recompute and persist patterns from recent unresolved signals.",
    )(_detect_patterns)

    tool_resolve = server.tool(
        name="resolve_patterns",
        description="Mark pattern fingerprints as resolved so they leave future aggregation.",
    )(_resolve_patterns)

    tool_prompt = server.tool(
        name="build_improvement_prompt",
        description="Preview the improvement task generated from the current unresolved patterns.",
    )(_build_improvement_prompt)

    tool_improve = server.tool(
        name="start_improvement",
        description=(
            "Launch an improvement run for the highest-priority unresolved patterns, optionally "
            "resuming an agent session. Patterns are resolved when the run succeeds."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "The improvement run edits code in the working directory",
            }
        },
    )(_start_improvement)

    tool_improvements = server.tool(
        name="list_improvements",
        description="List improvement attempts with their success flag and modified files.",
    )(_list_improvements)

    tool_profiles = server.tool(
        name="list_profiles",
        description="List launch profiles with their capability lists.",
    )(_list_profiles)

    return ToolHandles(
        start_execution=tool_start,
        get_execution=tool_get,
        abort_execution=tool_abort,
        list_active_executions=tool_active,
        cleanup_executions=tool_cleanup,
        list_signals=tool_signals,
        list_patterns=tool_patterns,
        detect_patterns=tool_detect,
        resolve_patterns=tool_resolve,
        build_improvement_prompt=tool_prompt,
        start_improvement=tool_improve,
        list_improvements=tool_improvements,
        list_profiles=tool_profiles,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["register_tools", "ToolHandles"]
