from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import allure
import pytest

from polyrev.config import ReviewerConfig, ScopeConfig, Settings
from polyrev.discovery import build_jobs, changed_files, discover_files, select_reviewers
from polyrev.errors import ConfigError, DiscoveryError
from polyrev.runner.models import Priority

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("File Discovery"),
]


def _touch(root: Path, *paths: str) -> None:
    for relative in paths:
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"# {relative}\n", "utf-8")


@pytest.fixture()
def repo(tmp_path) -> Path:
    _touch(
        tmp_path,
        "src/a.py",
        "src/b.py",
        "src/sub/c.py",
        "src/migrations/0001.py",
        "src/.hidden/d.py",
        "src/notes.txt",
        "tests/test_a.py",
        ".git/config",
    )
    return tmp_path


def test_discover_applies_include_and_exclude(repo) -> None:
    scope = ScopeConfig(paths=("src",), include=("**/*.py",), exclude=("**/migrations/**",))

    assert discover_files(repo, scope) == ["src/a.py", "src/b.py", "src/sub/c.py"]


def test_discover_without_include_takes_all_visible_files(repo) -> None:
    scope = ScopeConfig(paths=("src", "tests", "missing"))

    files = discover_files(repo, scope)

    assert "src/notes.txt" in files
    assert "tests/test_a.py" in files
    assert all(not part.startswith(".") for path in files for part in path.split("/"))
    assert files == sorted(files)


def test_discover_accepts_single_file_paths_and_dedupes(repo) -> None:
    scope = ScopeConfig(paths=("src/a.py", "src"), include=("*.py",))

    files = discover_files(repo, scope)

    assert files.count("src/a.py") == 1


def test_discover_rejects_missing_target(tmp_path) -> None:
    with pytest.raises(DiscoveryError, match="does not exist"):
        discover_files(tmp_path / "nope", ScopeConfig(paths=(".",)))


def _reviewer(reviewer_id: str, scopes: tuple[str, ...], **overrides) -> ReviewerConfig:
    values = {
        "id": reviewer_id,
        "name": reviewer_id.title(),
        "provider": "claude_cli",
        "scopes": scopes,
        "prompt_file": f"/prompts/{reviewer_id}.md",
    }
    values.update(overrides)
    return ReviewerConfig(**values)


def _settings(repo: Path) -> Settings:
    settings = Settings(
        target=repo,
        scopes={
            "backend": ScopeConfig(paths=("src",), include=("**/*.py",)),
            "tests": ScopeConfig(paths=("tests",)),
            "docs": ScopeConfig(paths=("docs",)),
        },
        reviewers=[
            _reviewer("security", ("backend", "tests"), max_files=2, priority_default=Priority.P0),
            _reviewer("docs", ("docs",)),
            _reviewer("style", ("backend",), enabled=False),
        ],
    )
    settings.runner.timeout_seconds = 90
    return settings


def test_build_jobs_merges_scopes_and_skips_empty_reviewers(repo) -> None:
    plan = build_jobs(_settings(repo))

    assert [job.id for job in plan.jobs] == ["security"]
    job = plan.jobs[0]
    assert job.files == (
        "src/a.py",
        "src/b.py",
        "src/migrations/0001.py",
        "src/sub/c.py",
        "tests/test_a.py",
    )
    assert job.max_files == 2
    assert job.timeout_seconds == 90
    assert job.priority_default == Priority.P0
    assert job.prompt_ref == "/prompts/security.md"
    assert plan.skipped == {"docs": "no files matched"}


def test_select_reviewers_by_id_and_scope(repo) -> None:
    reviewers = _settings(repo).reviewers

    assert [r.id for r in select_reviewers(reviewers, reviewer_ids=("docs",))] == ["docs"]
    assert [r.id for r in select_reviewers(reviewers, scope="tests")] == ["security"]
    with pytest.raises(ConfigError, match="style"):
        select_reviewers(reviewers, reviewer_ids=("style",))


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_diff_base_limits_files_to_changed_ones(repo) -> None:
    def _git(*args: str) -> None:
        subprocess.run(
            ["git", "-c", "user.email=dev@example.com", "-c", "user.name=dev", *args],
            cwd=repo,
            check=True,
            capture_output=True,
        )

    shutil.rmtree(repo / ".git")
    _git("init", "-q")
    _git("add", "-A")
    _git("commit", "-q", "-m", "initial")
    (repo / "src" / "b.py").write_text("changed = True\n", "utf-8")

    assert changed_files(repo, "HEAD") == {"src/b.py"}

    settings = _settings(repo)
    settings.diff_base = "HEAD"
    plan = build_jobs(settings)
    assert plan.jobs[0].files == ("src/b.py",)


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_changed_files_reports_git_errors(tmp_path) -> None:
    with pytest.raises(DiscoveryError, match="git diff"):
        changed_files(tmp_path, "HEAD")
