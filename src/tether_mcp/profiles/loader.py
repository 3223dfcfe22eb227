"""Load launch profiles from YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Iterator

import yaml
from pydantic import ValidationError

from .models import AgentProfile

PROFILE_SUFFIXES = (".yml", ".yaml")


class ProfileLoadError(RuntimeError):
    """Raised when profiles cannot be read or a requested profile is missing."""


def _profile_files(directory: Path) -> Iterator[Path]:
    for path in sorted(directory.iterdir()):
        if path.is_file() and path.suffix in PROFILE_SUFFIXES:
            yield path


def _read_document(path: Path) -> Any:
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:  # pragma: no cover - library type
        raise ProfileLoadError(f"Failed to parse YAML in {path}: {exc}") from exc


class ProfileLoader:
    """Resolve launch profiles from a list of directories.

    A file may hold one profile mapping or a list of them. Directories later
    in the search path override profiles with the same id from earlier ones.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._search_paths = [Path(path) for path in (search_paths or []) if Path(path).is_dir()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, AgentProfile]:
        profiles: dict[str, AgentProfile] = {}
        errors: list[str] = []

        for directory in self._search_paths:
            for path in _profile_files(directory):
                try:
                    document = _read_document(path)
                except ProfileLoadError as exc:
                    errors.append(str(exc))
                    continue

                entries = document if isinstance(document, list) else [document]
                for entry in entries:
                    if entry is None:
                        continue
                    try:
                        profile = AgentProfile.model_validate(entry)
                    except ValidationError as exc:
                        errors.append(f"Profile validation error in {path}: {exc}")
                        continue
                    profiles[profile.id] = profile

        if errors:
            raise ProfileLoadError("; ".join(errors))
        return profiles

    def get(self, profile_id: str) -> AgentProfile:
        profiles = self.load_all()
        if profile_id not in profiles:
            raise ProfileLoadError(f"Profile '{profile_id}' not found in search paths")
        return profiles[profile_id]

    def resolve(self, profile_id: str | None) -> AgentProfile | None:
        """Return the named profile, or None when no profile was requested."""

        return self.get(profile_id) if profile_id else None


def load_profiles(search_paths: Iterable[Path] | None = None) -> dict[str, AgentProfile]:
    return ProfileLoader(search_paths).load_all()


__all__ = ["AgentProfile", "ProfileLoadError", "ProfileLoader", "load_profiles"]
