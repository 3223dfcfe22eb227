"""Agent profile models and loader exports."""

from .loader import AgentProfile, ProfileLoadError, ProfileLoader, load_profiles

__all__ = [
    "AgentProfile",
    "ProfileLoadError",
    "ProfileLoader",
    "load_profiles",
]
