"""Utility helpers for the agent supervisor."""

from __future__ import annotations

import os
import re
from typing import Mapping, Sequence

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

_STDERR_ERROR = re.compile(r"\b(error|fatal|fail(?:ed|ure)?|exception|ENOENT|EACCES|EPERM)\b", re.IGNORECASE)
_STDERR_NOISE = re.compile(r"\b(mcp|loading|loaded|connected|server|version)\b", re.IGNORECASE)


def sanitize_environment(additional: Mapping[str, str | None] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution.

    Entries of ``additional`` whose value is ``None`` or empty are skipped.
    """

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update({key: value for key, value in additional.items() if value})
    return env


def is_reportable_stderr(line: str) -> bool:
    """Return True when a stderr line looks like a real error rather than noise."""

    return bool(_STDERR_ERROR.search(line)) and not _STDERR_NOISE.search(line)


def build_agent_command(
    executable: str,
    *,
    flags: Sequence[str] = (),
    resume_session_id: str | None = None,
    capabilities: Sequence[str] | None = None,
    model: str | None = None,
) -> list[str]:
    """Build the argv for a streaming, stdin-fed agent invocation."""

    args = [executable, "-p", "-", "--output-format", "stream-json", "--verbose", *flags]
    if model and "--model" not in flags:
        args.extend(["--model", model])
    if capabilities:
        args.extend(["--allowedTools", ",".join(capabilities)])
    if resume_session_id:
        args.extend(["--resume", resume_session_id])
    return args


__all__ = ["build_agent_command", "is_reportable_stderr", "sanitize_environment"]
