"""FastMCP server bootstrap for Tether."""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .agent import AgentNotFoundError, ExecutionRegistry, ExecutionSupervisor
from .config import TetherSettings, get_settings
from .improvement import ImprovementCoordinator
from .profiles import ProfileLoadError, ProfileLoader
from .signals import SignalStore
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Tether server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[TetherSettings] = None,
    *,
    supervisor: ExecutionSupervisor | None = None,
    store: SignalStore | None = None,
) -> FastMCP:
    """Wire the supervisor, signal store, and tools into a FastMCP server."""

    settings = settings or get_settings()

    profile_loader = ProfileLoader(settings.profile_paths)
    store = store or SignalStore(settings.signal_store_path)
    supervisor = supervisor or ExecutionSupervisor(settings, ExecutionRegistry(), store=store)
    coordinator = ImprovementCoordinator(
        supervisor,
        store,
        lookback_days=settings.pattern_lookback_days,
        pattern_limit=settings.improvement_pattern_limit,
    )

    agent_metadata = {"available": False, "path": None, "error": None}
    try:
        agent_metadata["path"] = str(supervisor.resolve_executable())
        agent_metadata["available"] = True
    except AgentNotFoundError as exc:
        agent_metadata["error"] = str(exc)
        logging.getLogger(__name__).warning("Agent CLI not available", extra={"error": str(exc)})

    server = FastMCP(
        name="Tether MCP",
        version=__version__,
        instructions=(
            "Tether runs the agent CLI as a supervised subprocess, streams its output "
            "as events, and records friction signals. Use the tools to launch and "
            "observe executions, inspect recurring patterns, and start improvement runs."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        supervisor=supervisor,
        store=store,
        coordinator=coordinator,
        profiles=profile_loader,
    )

    @server.resource(
        "resource://tether/status",
        name="tether_status",
        title="Tether MCP Status",
        description="Provides the current runtime status for the Tether MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        try:
            profile_ids = sorted(profile_loader.load_all().keys())
            profile_error: str | None = None
        except ProfileLoadError as exc:
            profile_ids = []
            profile_error = str(exc)

        status_counts: dict[str, int] = {}
        for execution in supervisor.registry.values():
            status_counts[execution.status] = status_counts.get(execution.status, 0) + 1

        storage_error = None
        signal_count = 0
        patterns = []
        improvements = []
        try:
            signal_count = len(store.list_signals())
            patterns = store.get_patterns(include_resolved=True)
            improvements = store.list_improvements()
        except OSError as exc:
            storage_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "profiles": {
                "count": len(profile_ids),
                "ids": profile_ids,
                "error": profile_error,
            },
            "agent": {
                "timeout_seconds": settings.execution_timeout_seconds,
                **agent_metadata,
            },
            "executions": {
                "count": len(supervisor.registry),
                "active": [execution.id for execution in supervisor.list_active()],
                "status_counts": status_counts,
            },
            "signals": {
                "path": str(store.path),
                "count": signal_count,
                "patterns": len(patterns),
                "unresolved_patterns": sum(1 for pattern in patterns if not pattern.resolved),
                "improvements": len(improvements),
                "error": storage_error,
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "profile_loader", profile_loader)
    setattr(server, "supervisor", supervisor)
    setattr(server, "signal_store", store)
    setattr(server, "coordinator", coordinator)
    setattr(server, "agent_metadata", agent_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Tether MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Tether MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "agent_available": getattr(server, "agent_metadata", {}).get("available"),
            "signal_store": str(settings.signal_store_path),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
