"""Provider runners and the factory that picks one per job."""

from __future__ import annotations

from pathlib import Path

from polyrev.config import ProviderSettings
from polyrev.errors import ConfigError
from polyrev.provider.base import ProviderClient, ProviderRequest, ProviderResponse
from polyrev.provider.cli_backend import (
    ClaudeCliProvider,
    CliProvider,
    CodexCliProvider,
    CommandTemplateProvider,
)
from polyrev.runner.models import Job

__all__ = [
    "ClaudeCliProvider",
    "CliProvider",
    "CodexCliProvider",
    "CommandTemplateProvider",
    "ProviderClient",
    "ProviderRequest",
    "ProviderResponse",
    "create_provider",
]


def create_provider(job: Job, settings: ProviderSettings, *, working_dir: Path) -> ProviderClient:
    """Build the provider runner a job is configured for."""

    if job.command_override:
        model = ""
        if job.provider == "claude_cli":
            model = settings.claude_cli.model
        elif job.provider == "codex_cli":
            model = settings.codex_cli.model
        return CommandTemplateProvider(
            command_template=job.command_override,
            working_dir=working_dir,
            model=model,
            transient_exit_codes=settings.transient_exit_codes,
        )
    if job.provider == "claude_cli":
        claude = settings.claude_cli
        return ClaudeCliProvider(
            binary=claude.binary,
            model=claude.model,
            tools=claude.tools,
            permission_mode=claude.permission_mode,
            working_dir=working_dir,
            transient_exit_codes=settings.transient_exit_codes,
        )
    if job.provider == "codex_cli":
        return CodexCliProvider(
            binary=settings.codex_cli.binary,
            model=settings.codex_cli.model,
            working_dir=working_dir,
            transient_exit_codes=settings.transient_exit_codes,
        )
    raise ConfigError(f"Unsupported provider for job {job.id}: {job.provider!r}")
