"""Render detected patterns into a remediation task for a follow-up run."""

from __future__ import annotations

from typing import Iterable

from .models import Category, Pattern

MAX_ERROR_PREVIEW = 300

CATEGORY_GUIDANCE: dict[Category, str] = {
    Category.SCHEMA: (
        "Schema: compare every failing query with the real table definitions. Fix column and "
        "relation names at the call site, or add a migration when the schema is genuinely missing "
        "something. Do not guess names; read the schema first."
    ),
    Category.PROMPT: (
        "Prompt: the agent is repeating itself. Tighten tool descriptions and instructions so a "
        "failed call is inspected and changed instead of retried verbatim."
    ),
    Category.TOOLING: (
        "Tooling: make failing tools validate their inputs and return actionable error messages. "
        "Register any tool the agent expects but cannot find, or correct the instructions that "
        "mention it."
    ),
    Category.CACHE: (
        "Cache: the schema cache is stale. Reload it after migrations and avoid relying on "
        "columns that were added without a cache refresh."
    ),
    Category.PERFORMANCE: (
        "Performance: replace per-item lookups with batched calls and remove redundant work "
        "from long-running flows."
    ),
}

CONSTRAINTS = (
    "Change only what is necessary to fix the issues above; do not refactor unrelated code.",
    "Verify each change (run the relevant tests or re-run the failing call) before reporting success.",
    "If an issue cannot be fixed safely, explain why instead of applying a partial fix.",
    "Finish with a short summary listing every file you modified.",
)

_CATEGORY_ORDER = (Category.SCHEMA, Category.PROMPT, Category.TOOLING, Category.CACHE, Category.PERFORMANCE)


def _truncate(text: str, limit: int = MAX_ERROR_PREVIEW) -> str:
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _pattern_block(index: int, pattern: Pattern) -> str:
    lines = [
        f"### {index}. {pattern.type.value} ({pattern.severity.value} severity, seen {pattern.count}x)"
    ]
    if pattern.tool_name:
        lines.append(f"- Tool: {pattern.tool_name}")
    if pattern.error_text:
        lines.append(f"- Error: {_truncate(pattern.error_text)}")
    lines.append(f"- Suggested fix: {pattern.suggested_fix}")
    return "\n".join(lines)


def build_improvement_prompt(patterns: Iterable[Pattern]) -> str:
    """Build the task text for an improvement run from ``patterns``."""

    items = list(patterns)
    sections = [
        "Recent agent runs hit recurring problems. Fix the underlying causes of the issues "
        f"below ({len(items)} pattern{'s' if len(items) != 1 else ''}, highest priority first).",
        "## Detected issues\n\n" + "\n\n".join(
            _pattern_block(index, pattern) for index, pattern in enumerate(items, start=1)
        ),
    ]

    present = {pattern.category for pattern in items}
    guidance = [CATEGORY_GUIDANCE[category] for category in _CATEGORY_ORDER if category in present]
    if guidance:
        sections.append("## Guidance\n\n" + "\n".join(f"- {line}" for line in guidance))

    sections.append("## Constraints\n\n" + "\n".join(f"- {line}" for line in CONSTRAINTS))
    return "\n\n".join(sections)


__all__ = ["CATEGORY_GUIDANCE", "CONSTRAINTS", "build_improvement_prompt"]
