"""Signal, pattern, and improvement record models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class SignalType(str, Enum):
    SCHEMA_MISMATCH = "schema_mismatch"
    TOOL_ERROR = "tool_error"
    N_PLUS_ONE = "n_plus_one"
    RETRY_STORM = "retry_storm"
    PERFORMANCE = "performance"
    TOOL_MISSING = "tool_missing"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


class Category(str, Enum):
    SCHEMA = "schema"
    PROMPT = "prompt"
    PERFORMANCE = "performance"
    CACHE = "cache"
    TOOLING = "tooling"


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}

SIGNAL_SEVERITY: dict[SignalType, Severity] = {
    SignalType.SCHEMA_MISMATCH: Severity.HIGH,
    SignalType.TOOL_ERROR: Severity.MEDIUM,
    SignalType.N_PLUS_ONE: Severity.MEDIUM,
    SignalType.RETRY_STORM: Severity.HIGH,
    SignalType.PERFORMANCE: Severity.LOW,
    SignalType.TOOL_MISSING: Severity.MEDIUM,
}

SIGNAL_CATEGORY: dict[SignalType, Category] = {
    SignalType.SCHEMA_MISMATCH: Category.SCHEMA,
    SignalType.TOOL_ERROR: Category.TOOLING,
    SignalType.N_PLUS_ONE: Category.PERFORMANCE,
    SignalType.RETRY_STORM: Category.PROMPT,
    SignalType.PERFORMANCE: Category.PERFORMANCE,
    SignalType.TOOL_MISSING: Category.TOOLING,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class Signal(BaseModel):
    """A single detected friction occurrence."""

    id: str = Field(..., description="Unique identifier for the signal.")
    type: SignalType
    severity: Severity
    category: Category
    fingerprint: str = Field(..., description="Stable hash over type, tool, and normalized error text.")
    tool_name: str | None = None
    error_text: str | None = None
    error_code: str | None = None
    input_shape: str | None = None
    execution_id: str
    timestamp: datetime = Field(default_factory=_utcnow)
    resolved: bool = False

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return _ensure_aware(value)


class Pattern(BaseModel):
    """Deduplicated aggregation of every unresolved signal sharing a fingerprint."""

    fingerprint: str
    type: SignalType
    category: Category
    severity: Severity
    count: int = Field(..., ge=1)
    first_seen: datetime
    last_seen: datetime
    tool_name: str | None = None
    error_text: str | None = None
    suggested_fix: str
    score: float = 0.0
    resolved: bool = False

    @field_validator("first_seen", "last_seen")
    @classmethod
    def _aware_timestamps(cls, value: datetime) -> datetime:
        return _ensure_aware(value)


class ImprovementRecord(BaseModel):
    """One remediation attempt launched from a batch of patterns."""

    id: str
    execution_id: str
    pattern_fingerprints: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    success: bool | None = None
    summary: str | None = None
    modified_artifacts: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return self.completed_at is not None


__all__ = [
    "Category",
    "ImprovementRecord",
    "Pattern",
    "SIGNAL_CATEGORY",
    "SIGNAL_SEVERITY",
    "Severity",
    "Signal",
    "SignalType",
]
