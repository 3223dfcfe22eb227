from pathlib import Path
import textwrap

import pytest

from tether_mcp.profiles import AgentProfile, ProfileLoadError, ProfileLoader


def write_profile(path: Path, *, title: str, capabilities: str = "[Read, Grep]") -> None:
    path.write_text(
        textwrap.dedent(
            """
            id: reviewer
            title: {title}
            description: Read-only code review
            capabilities: {capabilities}
            model: sonnet
            preamble: Review only; never edit files.
            """
        ).strip().format(title=title, capabilities=capabilities),
        encoding="utf-8",
    )


def test_loader_merges_paths(tmp_path: Path) -> None:
    base = tmp_path / "base"
    base.mkdir()
    override = tmp_path / "override"
    override.mkdir()

    write_profile(base / "reviewer.yaml", title="Base Title")
    write_profile(override / "reviewer.yml", title="Override Title", capabilities="[Read]")

    loader = ProfileLoader([base, override])
    profiles = loader.load_all()

    assert profiles["reviewer"].title == "Override Title"
    assert profiles["reviewer"].capabilities == ["Read"]


def test_loader_reads_profile_lists(tmp_path: Path) -> None:
    (tmp_path / "team.yaml").write_text(
        textwrap.dedent(
            """
            - id: fixer
              title: Fixer
              capabilities: [Read, Edit]
            - id: auditor
              title: Auditor
            """
        ),
        encoding="utf-8",
    )

    profiles = ProfileLoader([tmp_path]).load_all()

    assert sorted(profiles) == ["auditor", "fixer"]
    assert profiles["auditor"].capabilities == []


def test_loader_handles_missing_profiles(tmp_path: Path) -> None:
    assert ProfileLoader([tmp_path]).load_all() == {}
    loader = ProfileLoader([tmp_path / "does-not-exist"])
    assert loader.search_paths == []
    assert loader.load_all() == {}


def test_loader_reports_validation_error(tmp_path: Path) -> None:
    invalid = tmp_path / "invalid"
    invalid.mkdir()
    (invalid / "broken.yaml").write_text("id: \ntitle: test", encoding="utf-8")

    loader = ProfileLoader([invalid])

    with pytest.raises(ProfileLoadError):
        loader.load_all()


def test_loader_reports_yaml_errors(tmp_path: Path) -> None:
    (tmp_path / "bad.yaml").write_text("id: [unterminated", encoding="utf-8")
    with pytest.raises(ProfileLoadError, match="Failed to parse YAML"):
        ProfileLoader([tmp_path]).load_all()


def test_resolve(tmp_path: Path) -> None:
    write_profile(tmp_path / "reviewer.yaml", title="Reviewer")
    loader = ProfileLoader([tmp_path])

    assert loader.resolve(None) is None
    assert loader.resolve("reviewer").model == "sonnet"
    with pytest.raises(ProfileLoadError, match="not found"):
        loader.resolve("ghost")


def test_render_task_prepends_preamble() -> None:
    profile = AgentProfile(id="reviewer", title="Reviewer", preamble="  Be careful.  ")
    assert profile.render_task("Fix the bug") == "Be careful.\n\nFix the bug"
    assert AgentProfile(id="plain", title="Plain").render_task("Fix the bug") == "Fix the bug"


def test_capabilities_must_be_a_sequence() -> None:
    with pytest.raises(ValueError):
        AgentProfile(id="bad", title="Bad", capabilities="Read")
