"""Resolve reviewer scopes to file lists and build jobs."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path

from polyrev.config import ReviewerConfig, ScopeConfig, Settings
from polyrev.errors import ConfigError, DiscoveryError
from polyrev.runner.models import Job

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobPlan:
    """Jobs to schedule plus reviewers left out, with the reason."""

    jobs: list[Job] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)


def discover_files(target: Path, scope: ScopeConfig) -> list[str]:
    """Sorted, de-duplicated target-relative POSIX paths matched by ``scope``.

    Hidden files and directories (``.git``, ``.polyrev``, dotfiles) are never
    returned. Patterns match the whole relative path; ``*`` crosses ``/`` and a
    leading ``**/`` also matches at the top level.
    """

    if not target.is_dir():
        raise DiscoveryError(f"Target directory does not exist: {target}")
    found: set[str] = set()
    for scope_path in scope.paths:
        root = target / scope_path
        if not root.exists():
            logger.debug("Scope path %s does not exist under %s", scope_path, target)
            continue
        candidates = [root] if root.is_file() else sorted(root.rglob("*"))
        for path in candidates:
            if not path.is_file():
                continue
            relative = path.relative_to(target).as_posix()
            if _is_hidden(relative):
                continue
            if scope.include and not _matches_any(relative, scope.include):
                continue
            if _matches_any(relative, scope.exclude):
                continue
            found.add(relative)
    return sorted(found)


def changed_files(target: Path, base: str) -> set[str]:
    """Files changed relative to git ref ``base``."""

    try:
        completed = subprocess.run(  # noqa: S603
            ["git", "diff", "--name-only", base],  # noqa: S607
            cwd=target,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as error:
        raise DiscoveryError(f"Failed to run git diff: {error}") from error
    if completed.returncode != 0:
        raise DiscoveryError(f"git diff --name-only {base} failed: {completed.stderr.strip()}")
    return {line.strip() for line in completed.stdout.splitlines() if line.strip()}


def build_jobs(
    settings: Settings,
    *,
    reviewer_ids: Sequence[str] = (),
    scope: str | None = None,
) -> JobPlan:
    """Turn enabled reviewers into jobs over their discovered files."""

    reviewers = select_reviewers(settings.reviewers, reviewer_ids=reviewer_ids, scope=scope)
    diff = changed_files(settings.target, settings.diff_base) if settings.diff_base else None

    plan = JobPlan()
    for reviewer in reviewers:
        files = _reviewer_files(settings, reviewer)
        if diff is not None:
            files = [path for path in files if path in diff]
        if not files:
            plan.skipped[reviewer.id] = "no files matched"
            logger.info("Reviewer %s matched no files; skipping", reviewer.id)
            continue
        plan.jobs.append(
            Job(
                id=reviewer.id,
                name=reviewer.name,
                files=tuple(files),
                prompt_ref=reviewer.prompt_file,
                timeout_seconds=reviewer.timeout_seconds or settings.runner.timeout_seconds,
                max_files=reviewer.max_files or settings.runner.max_files,
                priority_default=reviewer.priority_default,
                provider=reviewer.provider,
                command_override=reviewer.command_override,
            ),
        )
    return plan


def select_reviewers(
    reviewers: Iterable[ReviewerConfig],
    *,
    reviewer_ids: Sequence[str] = (),
    scope: str | None = None,
) -> list[ReviewerConfig]:
    """Enabled reviewers, optionally narrowed by id and scope."""

    selected = [reviewer for reviewer in reviewers if reviewer.enabled]
    if reviewer_ids:
        known = {reviewer.id for reviewer in selected}
        unknown = [reviewer_id for reviewer_id in reviewer_ids if reviewer_id not in known]
        if unknown:
            raise ConfigError(f"Unknown or disabled reviewer(s): {', '.join(unknown)}")
        selected = [reviewer for reviewer in selected if reviewer.id in reviewer_ids]
    if scope is not None:
        selected = [reviewer for reviewer in selected if scope in reviewer.scopes]
    return selected


def _reviewer_files(settings: Settings, reviewer: ReviewerConfig) -> list[str]:
    files: list[str] = []
    seen: set[str] = set()
    for scope_name in reviewer.scopes:
        for path in discover_files(settings.target, settings.scopes[scope_name]):
            if path not in seen:
                seen.add(path)
                files.append(path)
    return files


def _matches_any(relative: str, patterns: Iterable[str]) -> bool:
    for pattern in patterns:
        if fnmatchcase(relative, pattern):
            return True
        if pattern.startswith("**/") and fnmatchcase(relative, pattern[3:]):
            return True
    return False


def _is_hidden(relative: str) -> bool:
    return any(part.startswith(".") for part in relative.split("/"))
