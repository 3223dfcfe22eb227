"""Friction signal detection, aggregation, and remediation prompts."""

from .analyzer import SignalAnalyzer, SignalTracker, compute_fingerprint, normalize_error_text
from .models import Category, ImprovementRecord, Pattern, Severity, Signal, SignalType
from .patterns import detect_patterns, refresh_patterns
from .prompt import build_improvement_prompt
from .store import SignalStore

__all__ = [
    "Category",
    "ImprovementRecord",
    "Pattern",
    "Severity",
    "Signal",
    "SignalAnalyzer",
    "SignalStore",
    "SignalTracker",
    "SignalType",
    "build_improvement_prompt",
    "compute_fingerprint",
    "detect_patterns",
    "normalize_error_text",
    "refresh_patterns",
]
