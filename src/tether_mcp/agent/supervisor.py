"""Supervised, streaming execution of the agent CLI."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import threading
import time
from dataclasses import dataclass, field
from functools import partial
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Literal, Sequence
from uuid import uuid4

from ..config import TetherSettings
from ..signals.analyzer import SignalAnalyzer, SignalTracker
from ..signals.patterns import refresh_patterns
from ..signals.store import SignalStore
from .events import Event, EventEmitter
from .logfile import ExecutionLog, log_file_path
from .stream import LineBuffer, parse_line
from .utils import build_agent_command, is_reportable_stderr, sanitize_environment

logger = logging.getLogger(__name__)

ExecutionStatus = Literal["running", "completed", "error", "aborted"]
TERMINAL_STATUSES = frozenset({"completed", "error", "aborted"})

DEFAULT_EXECUTABLE = "claude"
READ_CHUNK_SIZE = 65536


class AgentRunnerError(RuntimeError):
    """Base class for agent runner errors."""


class AgentNotFoundError(AgentRunnerError):
    """Raised when the agent CLI executable cannot be located."""


class ExecutionNotFoundError(KeyError):
    """Raised when an execution id is not present in the registry."""


@dataclass(slots=True)
class Execution:
    """One supervised run of the agent CLI."""

    id: str
    working_dir: Path
    task: str
    status: ExecutionStatus = "running"
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: datetime | None = None
    session_id: str | None = None
    events: list[Event] = field(default_factory=list)
    log_path: Path | None = None
    exit_code: int | None = None
    synthetic_result: bool = False
    profile_id: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, *, include_events: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "execution_id": self.id,
            "working_dir": str(self.working_dir),
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "session_id": self.session_id,
            "exit_code": self.exit_code,
            "synthetic_result": self.synthetic_result,
            "profile_id": self.profile_id,
            "log_path": str(self.log_path) if self.log_path else None,
            "event_count": len(self.events),
            "task_preview": self.task[:200],
        }
        if include_events:
            payload["events"] = [event.to_dict() for event in self.events]
        return payload


class ExecutionRegistry:
    """Thread-safe map of executions keyed by id."""

    def __init__(self) -> None:
        self._items: dict[str, Execution] = {}
        self._lock = threading.RLock()

    def register(self, execution: Execution) -> None:
        with self._lock:
            if execution.id in self._items:
                raise ValueError(f"Execution '{execution.id}' is already registered")
            self._items[execution.id] = execution

    def get(self, execution_id: str) -> Execution | None:
        with self._lock:
            return self._items.get(execution_id)

    def remove(self, execution_id: str) -> Execution | None:
        with self._lock:
            return self._items.pop(execution_id, None)

    def values(self) -> list[Execution]:
        with self._lock:
            return list(self._items.values())

    def list_active(self) -> list[Execution]:
        return [execution for execution in self.values() if not execution.terminal]

    def expired(self, max_age: timedelta, now: datetime) -> list[str]:
        return [
            execution.id
            for execution in self.values()
            if execution.terminal and execution.ended_at is not None and now - execution.ended_at > max_age
        ]

    def __contains__(self, execution_id: object) -> bool:
        with self._lock:
            return execution_id in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


@dataclass(slots=True)
class _RunState:
    """Runtime handles for a live execution; never exposed to callers."""

    emitter: EventEmitter
    log: ExecutionLog
    done: asyncio.Event
    started_monotonic: float
    tracker: SignalTracker | None = None
    callback: Callable[[Event], None] | None = None
    process: asyncio.subprocess.Process | None = None
    timer: asyncio.TimerHandle | None = None
    kill_timer: asyncio.TimerHandle | None = None
    task: asyncio.Task | None = None
    subscribers: list[asyncio.Queue] = field(default_factory=list)


class ExecutionSupervisor:
    """Spawn the agent CLI, stream its output into events, and own its lifecycle.

    Every execution has exactly one terminal transition: normal exit, watchdog
    timeout, or explicit abort, whichever happens first. Later attempts are
    no-ops.
    """

    def __init__(
        self,
        settings: TetherSettings,
        registry: ExecutionRegistry | None = None,
        *,
        store: SignalStore | None = None,
        analyzer: SignalAnalyzer | None = None,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._registry = registry if registry is not None else ExecutionRegistry()
        self._store = store
        self._analyzer = analyzer or SignalAnalyzer(prefer_strongest=settings.signal_prefer_strongest)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._monotonic = monotonic
        self._states: dict[str, _RunState] = {}

    @property
    def registry(self) -> ExecutionRegistry:
        return self._registry

    @property
    def store(self) -> SignalStore | None:
        return self._store

    def resolve_executable(self) -> Path:
        explicit = self._settings.agent_cli_path
        if explicit:
            candidate = Path(explicit).expanduser()
            if candidate.exists() and candidate.is_file():
                return candidate
            located = shutil.which(explicit)
            if located is not None:
                return Path(located)
            raise AgentNotFoundError(f"Agent CLI executable not found at {candidate}")

        binary = shutil.which(DEFAULT_EXECUTABLE)
        if binary is None:
            raise AgentNotFoundError(f"Agent CLI executable '{DEFAULT_EXECUTABLE}' not found on PATH")
        return Path(binary)

    # Public operations ---------------------------------------------------

    async def start(
        self,
        working_dir: str | Path,
        task: str,
        resume_session_id: str | None = None,
        capabilities: Sequence[str] | None = None,
        *,
        on_event: Callable[[Event], None] | None = None,
        flags: Sequence[str] = (),
        model: str | None = None,
        project_id: str | None = None,
        base_url: str | None = None,
        profile_id: str | None = None,
    ) -> str:
        """Register an execution and launch the agent in the background.

        The id is registered before the process exists, so callers may
        subscribe immediately. Process-level failures never raise here; they
        surface as the execution's terminal ``error`` event.
        """

        execution_id = f"exec-{int(time.time() * 1000)}-{uuid4().hex[:6]}"
        workdir = Path(working_dir)
        log_dir = self._settings.execution_log_dir or workdir / ".claude" / "logs"
        execution = Execution(
            id=execution_id,
            working_dir=workdir,
            task=task,
            started_at=self._clock(),
            log_path=log_file_path(log_dir, execution_id, now=self._clock()),
            profile_id=profile_id,
        )

        state = _RunState(
            emitter=EventEmitter(lambda event: self._record_event(execution, state, event), clock=self._clock),
            log=ExecutionLog(execution.log_path, clock=self._clock),
            done=asyncio.Event(),
            started_monotonic=self._monotonic(),
            tracker=SignalTracker(
                self._analyzer,
                execution_id,
                store=self._store,
                window_size=self._settings.signal_window_size,
            ),
            callback=on_event,
        )
        self._registry.register(execution)
        self._states[execution_id] = state
        logger.info(
            "Registered execution",
            extra={"execution_id": execution_id, "active": len(self._registry.list_active())},
        )

        argv_options = {
            "flags": [*self._settings.agent_flags, *flags],
            "resume_session_id": resume_session_id,
            "capabilities": list(capabilities) if capabilities else None,
            "model": model,
        }
        env_overrides = {
            self._settings.project_env_var: project_id,
            self._settings.base_url_env_var: base_url,
        }
        state.task = asyncio.create_task(self._run(execution, state, argv_options, env_overrides))
        return execution_id

    def get(self, execution_id: str) -> Execution:
        execution = self._registry.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def abort(self, execution_id: str) -> bool:
        """Terminate a running execution; returns False when there is nothing to abort."""

        execution = self._registry.get(execution_id)
        state = self._states.get(execution_id)
        if execution is None or state is None or execution.terminal:
            return False
        state.log.write("[ABORT] Abort requested, terminating process")
        self._terminate(state, force=False)
        if state.process is not None and state.task is not None:
            state.kill_timer = state.task.get_loop().call_later(
                self._settings.abort_grace_seconds, partial(self._terminate, state, force=True)
            )
        finished = self._finish(execution, state, "aborted", error="Execution aborted")
        if finished:
            logger.info("Execution aborted", extra={"execution_id": execution_id})
        return finished

    def list_active(self) -> list[Execution]:
        return self._registry.list_active()

    def cleanup(self, max_age_seconds: float | None = None) -> list[str]:
        """Evict terminal executions that ended more than ``max_age_seconds`` ago."""

        age = max_age_seconds if max_age_seconds is not None else self._settings.execution_retention_seconds
        evicted = self._registry.expired(timedelta(seconds=age), self._clock())
        for execution_id in evicted:
            self._registry.remove(execution_id)
            self._states.pop(execution_id, None)
        if evicted:
            logger.info("Evicted finished executions", extra={"count": len(evicted)})
        return evicted

    def subscribe(self, execution_id: str) -> asyncio.Queue:
        """Return a queue replaying past events, then live ones, then ``None``."""

        execution = self.get(execution_id)
        queue: asyncio.Queue = asyncio.Queue()
        for event in execution.events:
            queue.put_nowait(event)
        state = self._states.get(execution_id)
        if execution.terminal or state is None:
            queue.put_nowait(None)
        else:
            state.subscribers.append(queue)
        return queue

    async def wait(self, execution_id: str, timeout: float | None = None) -> Execution:
        execution = self.get(execution_id)
        state = self._states.get(execution_id)
        if state is not None and not execution.terminal:
            await asyncio.wait_for(state.done.wait(), timeout)
        return execution

    async def shutdown(self) -> None:
        """Abort every running execution and wait for their run tasks."""

        tasks = []
        for execution in self._registry.list_active():
            self.abort(execution.id)
        for state in list(self._states.values()):
            if state.task is not None and not state.task.done():
                tasks.append(state.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Event plumbing ------------------------------------------------------

    def _record_event(self, execution: Execution, state: _RunState, event: Event) -> None:
        if execution.terminal:
            return
        execution.events.append(event)
        if state.callback is not None:
            try:
                state.callback(event)
            except Exception:
                logger.warning(
                    "Event callback failed", exc_info=True, extra={"execution_id": execution.id}
                )
        for queue in state.subscribers:
            queue.put_nowait(event)
        if state.tracker is not None:
            state.tracker.observe(event)

    def _finish(
        self,
        execution: Execution,
        state: _RunState,
        status: ExecutionStatus,
        *,
        error: str | None = None,
        **details: Any,
    ) -> bool:
        if execution.terminal:
            return False
        if error is not None:
            state.emitter.emit_error(error, **details)
        execution.status = status
        execution.ended_at = self._clock()
        if state.timer is not None:
            state.timer.cancel()
            state.timer = None
        state.done.set()
        for queue in state.subscribers:
            queue.put_nowait(None)
        state.subscribers.clear()
        logger.info(
            "Execution finished",
            extra={"execution_id": execution.id, "status": status, "exit_code": execution.exit_code},
        )
        return True

    def _refresh_patterns(self) -> None:
        if self._store is None:
            return
        try:
            refresh_patterns(self._store, lookback_days=self._settings.pattern_lookback_days)
        except Exception:
            logger.debug("Pattern refresh failed", exc_info=True)

    # Process handling ----------------------------------------------------

    @staticmethod
    def _terminate(state: _RunState, *, force: bool) -> None:
        process = state.process
        if process is None:
            return
        try:
            if os.name == "posix":
                # The agent leads its own session, so its pid is also the group id.
                # Children may outlive the leader while holding the pipes.
                os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
            elif process.returncode is not None:
                return
            elif force:
                process.kill()
            else:
                process.terminate()
        except (ProcessLookupError, PermissionError):
            pass

    @staticmethod
    async def _reap(state: _RunState) -> int:
        process = state.process
        if process.stdin is not None:
            process.stdin.close()
        await process.communicate()
        return process.returncode

    def _on_timeout(self, execution_id: str) -> None:
        execution = self._registry.get(execution_id)
        state = self._states.get(execution_id)
        if execution is None or state is None or execution.terminal:
            return
        state.timer = None
        timeout = self._settings.execution_timeout_seconds
        state.log.write(f"[TIMEOUT] Execution exceeded {timeout:g} seconds, killing process")
        logger.warning("Execution timed out", extra={"execution_id": execution_id, "timeout": timeout})
        self._terminate(state, force=True)
        self._finish(execution, state, "error", error=f"Execution timed out after {timeout:g} seconds")

    async def _run(
        self,
        execution: Execution,
        state: _RunState,
        argv_options: dict[str, Any],
        env_overrides: dict[str, str | None],
    ) -> None:
        log = state.log
        log.open()
        log.write("=== Agent Execution Started ===")
        log.write(f"Execution ID: {execution.id}")
        log.write(f"Working directory: {execution.working_dir}")
        log.write(f"Task length: {len(execution.task)} characters")
        if argv_options.get("resume_session_id"):
            log.write(f"Resume session: {argv_options['resume_session_id']}")

        try:
            try:
                executable = self.resolve_executable()
                argv = build_agent_command(str(executable), **argv_options)
                state.process = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=str(execution.working_dir),
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=sanitize_environment(env_overrides),
                    start_new_session=os.name == "posix",
                )
            except (AgentRunnerError, OSError) as exc:
                log.write(f"[ERROR] {exc}")
                logger.warning(
                    "Agent process failed to start",
                    extra={"execution_id": execution.id, "error": str(exc)},
                )
                self._finish(execution, state, "error", error=str(exc))
                return

            if execution.terminal:
                self._terminate(state, force=True)
                await self._reap(state)
                return

            state.timer = asyncio.get_running_loop().call_later(
                self._settings.execution_timeout_seconds, self._on_timeout, execution.id
            )
            await asyncio.gather(
                self._deliver_task(execution, state),
                self._consume_stdout(execution, state),
                self._consume_stderr(execution, state),
            )
            returncode = await state.process.wait()
            self._on_exit(execution, state, returncode)
        except Exception as exc:
            logger.exception("Execution supervisor failed", extra={"execution_id": execution.id})
            self._terminate(state, force=True)
            self._finish(execution, state, "error", error=f"Supervisor failure: {exc}")
        finally:
            if state.timer is not None:
                state.timer.cancel()
                state.timer = None
            if state.kill_timer is not None:
                state.kill_timer.cancel()
                state.kill_timer = None
            log.write("=== Agent Execution Finished ===")
            log.close()

    async def _deliver_task(self, execution: Execution, state: _RunState) -> None:
        stdin = state.process.stdin if state.process else None
        if stdin is None:
            return
        try:
            stdin.write(execution.task.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Agent closed stdin before the task was delivered", extra={"execution_id": execution.id})
        finally:
            stdin.close()

    def _process_line(self, execution: Execution, state: _RunState, line: str) -> None:
        message = parse_line(line)
        if message is None:
            return
        events = state.emitter.emit_message(message)
        if state.emitter.session_id:
            execution.session_id = state.emitter.session_id
        if any(event.kind == "result" for event in events):
            self._refresh_patterns()

    async def _consume_stdout(self, execution: Execution, state: _RunState) -> None:
        stream = state.process.stdout if state.process else None
        if stream is None:
            return
        buffer = LineBuffer()
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = buffer.decode(chunk)
            if not text:
                continue
            state.log.write(text.rstrip("\n"), "stdout")
            state.emitter.emit_raw(text)
            for line in buffer.feed(text):
                self._process_line(execution, state, line)

        remainder = buffer.flush()
        if remainder is not None:
            state.log.write(remainder.strip(), "stdout-final")
            self._process_line(execution, state, remainder)

    async def _consume_stderr(self, execution: Execution, state: _RunState) -> None:
        stream = state.process.stderr if state.process else None
        if stream is None:
            return
        buffer = LineBuffer()

        def _handle(line: str) -> None:
            text = line.strip()
            if not text:
                return
            state.log.write(text, "stderr")
            if is_reportable_stderr(text):
                state.emitter.emit("error", {"message": text, "source": "stderr"})

        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in buffer.feed(buffer.decode(chunk)):
                _handle(line)
        remainder = buffer.flush()
        if remainder is not None:
            _handle(remainder)

    def _on_exit(self, execution: Execution, state: _RunState, returncode: int) -> None:
        emitter = state.emitter
        duration = self._monotonic() - state.started_monotonic
        execution.exit_code = returncode
        log = state.log
        log.write(f"Process exited with code: {returncode}")
        log.write(f"Duration: {duration * 1000:.0f}ms")
        log.write(
            f"Init received: {emitter.init_seen}, substantive messages: {emitter.substantive_messages}, "
            f"result emitted: {emitter.result_seen}"
        )
        if execution.terminal:
            return

        if returncode != 0:
            self._finish(
                execution,
                state,
                "error",
                error=f"Process exited with code {returncode}",
                exit_code=returncode,
            )
            return

        if emitter.result_seen:
            self._finish(execution, state, "completed")
            return

        min_duration = self._settings.synthetic_result_min_seconds
        if emitter.init_seen and emitter.substantive_messages > 0 and duration > min_duration:
            log.write("[SYNTHETIC] Emitting synthetic result event")
            emitter.emit_synthetic_result()
            execution.synthetic_result = True
            self._refresh_patterns()
            self._finish(execution, state, "completed")
            return

        log.write(
            f"[NO-SYNTHETIC] init={emitter.init_seen}, messages={emitter.substantive_messages}, "
            f"duration={duration * 1000:.0f}ms"
        )
        self._finish(
            execution,
            state,
            "error",
            error="Agent exited without producing a result",
            exit_code=returncode,
        )


__all__ = [
    "AgentNotFoundError",
    "AgentRunnerError",
    "Execution",
    "ExecutionNotFoundError",
    "ExecutionRegistry",
    "ExecutionStatus",
    "ExecutionSupervisor",
    "TERMINAL_STATUSES",
]
