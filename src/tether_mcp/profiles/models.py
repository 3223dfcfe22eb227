"""Profile models describing how an agent run is launched."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class AgentProfile(BaseModel):
    """Launch configuration for a family of agent runs."""

    id: str = Field(..., description="Unique identifier for the profile.")
    title: str = Field(..., description="Display title for the profile.")
    description: str = Field(default="", description="What runs launched with this profile are for.")
    capabilities: list[str] = Field(
        default_factory=list,
        description="Tool names the agent may call; passed through to the CLI unchanged.",
    )
    flags: list[str] = Field(
        default_factory=list,
        description="Extra command-line flags appended after the configured defaults.",
    )
    model: str | None = Field(default=None, description="Model override for the agent CLI.")
    preamble: str | None = Field(
        default=None,
        description="Instructions prepended to every task launched with this profile.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata for filtering and reporting.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Agent profile id must not be empty")
        return normalized

    @field_validator("capabilities", "flags", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise ValueError("Capabilities and flags must be sequences of strings")

    def render_task(self, task: str) -> str:
        if not self.preamble:
            return task
        return f"{self.preamble.strip()}\n\n{task}"


__all__ = ["AgentProfile"]
