"""Runtime configuration: environment defaults plus the YAML reviewer catalogue."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from polyrev.errors import ConfigError
from polyrev.runner.models import Priority

SUPPORTED_PROVIDERS = ("claude_cli", "codex_cli")
STATE_DIR = ".polyrev"
STATE_DB_NAME = "state.db"


def default_claude_binary() -> str:
    """Prefer the local Claude install, fall back to PATH lookup."""

    home = os.getenv("HOME")
    if home:
        local_path = Path(home) / ".claude" / "local" / "claude"
        if local_path.exists():
            return str(local_path)
    return "claude"


@dataclass(slots=True)
class RunnerSettings:
    """Scheduling knobs shared by all reviewers."""

    concurrency: int = 6
    launch_delay_seconds: float = 0.5
    timeout_seconds: float = 300
    max_files: int = 50


@dataclass(slots=True)
class RetrySettings:
    """Chunk retry policy."""

    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float | None = 60.0


@dataclass(slots=True)
class ClaudeCliSettings:
    """Claude CLI provider settings."""

    binary: str = field(default_factory=default_claude_binary)
    model: str = "sonnet"
    tools: tuple[str, ...] = ("Read", "Grep", "Glob")
    permission_mode: str = "acceptEdits"


@dataclass(slots=True)
class CodexCliSettings:
    """Codex CLI provider settings."""

    binary: str = "codex"
    model: str = "gpt-4.1"


@dataclass(slots=True)
class ProviderSettings:
    """Provider binaries, models and exit code policy."""

    claude_cli: ClaudeCliSettings = field(default_factory=ClaudeCliSettings)
    codex_cli: CodexCliSettings = field(default_factory=CodexCliSettings)
    transient_exit_codes: tuple[int, ...] = (137, 143)


@dataclass(slots=True)
class ScopeConfig:
    """Named set of paths with include/exclude glob patterns."""

    paths: tuple[str, ...]
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()


@dataclass(slots=True)
class ReviewerConfig:
    """One reviewer definition from the catalogue."""

    id: str
    name: str
    provider: str
    scopes: tuple[str, ...]
    prompt_file: str
    enabled: bool = True
    priority_default: Priority = Priority.P1
    max_files: int | None = None
    timeout_seconds: float | None = None
    command_override: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    target: Path = Path(".")
    report_dir: Path = Path("reports")
    db_path: Path | None = None
    diff_base: str | None = None
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    scopes: dict[str, ScopeConfig] = field(default_factory=dict)
    reviewers: list[ReviewerConfig] = field(default_factory=list)

    @property
    def state_db_path(self) -> Path:
        return self.db_path or self.target / STATE_DIR / STATE_DB_NAME

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local development."""

        db_path = os.getenv("POLYREV_DB_PATH")
        backoff_max_ms = os.getenv("POLYREV_RETRY_BACKOFF_MAX_MS", "60000").strip()
        return cls(
            target=Path(os.getenv("POLYREV_TARGET", ".")),
            report_dir=Path(os.getenv("POLYREV_REPORT_DIR", "reports")),
            db_path=Path(db_path) if db_path else None,
            diff_base=os.getenv("POLYREV_DIFF_BASE") or None,
            runner=RunnerSettings(
                concurrency=_env_int("POLYREV_CONCURRENCY", 6),
                launch_delay_seconds=_env_int("POLYREV_LAUNCH_DELAY_MS", 500) / 1000,
                timeout_seconds=_env_int("POLYREV_TIMEOUT_SEC", 300),
                max_files=_env_int("POLYREV_MAX_FILES", 50),
            ),
            retry=RetrySettings(
                max_attempts=_env_int("POLYREV_RETRY_MAX_ATTEMPTS", 3),
                backoff_base_seconds=_env_int("POLYREV_RETRY_BACKOFF_BASE_MS", 1000) / 1000,
                backoff_max_seconds=(
                    _env_int("POLYREV_RETRY_BACKOFF_MAX_MS", 60_000) / 1000
                    if backoff_max_ms
                    else None
                ),
            ),
            providers=ProviderSettings(
                claude_cli=ClaudeCliSettings(
                    binary=os.getenv("POLYREV_CLAUDE_BINARY") or default_claude_binary(),
                    model=os.getenv("POLYREV_CLAUDE_MODEL", "sonnet"),
                ),
                codex_cli=CodexCliSettings(
                    binary=os.getenv("POLYREV_CODEX_BINARY", "codex"),
                    model=os.getenv("POLYREV_CODEX_MODEL", "gpt-4.1"),
                ),
            ),
        )

    @classmethod
    def load(cls, config_path: Path) -> Settings:
        """Environment defaults overlaid with the YAML catalogue at ``config_path``."""

        settings = cls.from_env()
        raw = _read_yaml(config_path)
        settings.apply_yaml(raw, base_dir=config_path.resolve().parent)
        return settings

    def apply_yaml(self, raw: dict[str, Any], *, base_dir: Path) -> None:  # noqa: C901
        """Overlay values from a parsed YAML mapping."""

        if "target" in raw:
            self.target = _resolve(base_dir, _require_str(raw, "target", "config"))
        if "report_dir" in raw:
            self.report_dir = _resolve(base_dir, _require_str(raw, "report_dir", "config"))
        if "diff_base" in raw:
            self.diff_base = raw["diff_base"] or None
        if "concurrency" in raw:
            self.runner.concurrency = _as_int(raw["concurrency"], "concurrency")
        if "timeout_sec" in raw:
            self.runner.timeout_seconds = _as_int(raw["timeout_sec"], "timeout_sec")
        if "max_files" in raw:
            self.runner.max_files = _as_int(raw["max_files"], "max_files")
        if "launch_delay_ms" in raw:
            self.runner.launch_delay_seconds = _as_int(raw["launch_delay_ms"], "launch_delay_ms") / 1000

        retry = _mapping(raw.get("retry"), "retry")
        if "max_attempts" in retry:
            self.retry.max_attempts = _as_int(retry["max_attempts"], "retry.max_attempts")
        if "backoff_base_ms" in retry:
            self.retry.backoff_base_seconds = _as_int(retry["backoff_base_ms"], "retry.backoff_base_ms") / 1000
        if "backoff_max_ms" in retry:
            value = retry["backoff_max_ms"]
            self.retry.backoff_max_seconds = (
                None if value is None else _as_int(value, "retry.backoff_max_ms") / 1000
            )

        providers = _mapping(raw.get("providers"), "providers")
        claude = _mapping(providers.get("claude_cli"), "providers.claude_cli")
        if "binary" in claude:
            self.providers.claude_cli.binary = str(claude["binary"])
        if "model" in claude:
            self.providers.claude_cli.model = str(claude["model"])
        if "tools" in claude:
            self.providers.claude_cli.tools = _str_tuple(claude["tools"], "providers.claude_cli.tools")
        if "permission_mode" in claude:
            self.providers.claude_cli.permission_mode = str(claude["permission_mode"])
        codex = _mapping(providers.get("codex_cli"), "providers.codex_cli")
        if "binary" in codex:
            self.providers.codex_cli.binary = str(codex["binary"])
        if "model" in codex:
            self.providers.codex_cli.model = str(codex["model"])

        for name, scope in _mapping(raw.get("scopes"), "scopes").items():
            self.scopes[str(name)] = _parse_scope(str(name), scope)

        reviewers = raw.get("reviewers") or []
        if not isinstance(reviewers, list):
            raise ConfigError("'reviewers' must be a list.")
        self.reviewers = [
            _parse_reviewer(index, item, base_dir=base_dir) for index, item in enumerate(reviewers)
        ]

    def validate(self) -> None:  # noqa: C901
        """Raise ConfigError if the catalogue cannot be scheduled."""

        if self.runner.concurrency < 1:
            raise ConfigError("concurrency must be >= 1.")
        if self.runner.max_files < 1:
            raise ConfigError("max_files must be >= 1.")
        if self.runner.timeout_seconds <= 0:
            raise ConfigError("timeout_sec must be > 0.")
        if self.runner.launch_delay_seconds < 0:
            raise ConfigError("launch_delay_ms must be >= 0.")
        if self.retry.max_attempts < 1:
            raise ConfigError("retry.max_attempts must be >= 1.")
        if self.retry.backoff_base_seconds < 0:
            raise ConfigError("retry.backoff_base_ms must be >= 0.")

        seen: set[str] = set()
        for reviewer in self.reviewers:
            if reviewer.id in seen:
                raise ConfigError(f"Duplicate reviewer id: {reviewer.id!r}")
            seen.add(reviewer.id)
            if reviewer.provider not in SUPPORTED_PROVIDERS:
                raise ConfigError(
                    f"Reviewer {reviewer.id!r}: unknown provider {reviewer.provider!r}. "
                    f"Expected one of: {', '.join(SUPPORTED_PROVIDERS)}",
                )
            for scope in reviewer.scopes:
                if scope not in self.scopes:
                    raise ConfigError(f"Unknown scope {scope!r} referenced by reviewer {reviewer.id!r}")
            if reviewer.max_files is not None and reviewer.max_files < 1:
                raise ConfigError(f"Reviewer {reviewer.id!r}: max_files must be >= 1.")
            if reviewer.timeout_seconds is not None and reviewer.timeout_seconds <= 0:
                raise ConfigError(f"Reviewer {reviewer.id!r}: timeout_sec must be > 0.")

        if not any(reviewer.enabled for reviewer in self.reviewers):
            raise ConfigError("No reviewers enabled.")


def _read_yaml(config_path: Path) -> dict[str, Any]:
    try:
        content = config_path.read_text("utf-8")
    except OSError as error:
        raise ConfigError(f"Failed to read config file '{config_path}': {error}") from error
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config '{config_path}': {error}") from error
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config '{config_path}' must be a mapping at the top level.")
    return raw


def _parse_scope(name: str, raw: Any) -> ScopeConfig:
    scope = _mapping(raw, f"scopes.{name}")
    if "paths" not in scope:
        raise ConfigError(f"Scope {name!r} must define 'paths'.")
    return ScopeConfig(
        paths=_str_tuple(scope["paths"], f"scopes.{name}.paths"),
        include=_str_tuple(scope.get("include") or [], f"scopes.{name}.include"),
        exclude=_str_tuple(scope.get("exclude") or [], f"scopes.{name}.exclude"),
    )


def _parse_reviewer(index: int, raw: Any, *, base_dir: Path) -> ReviewerConfig:
    where = f"reviewers[{index}]"
    reviewer = _mapping(raw, where)
    priority_raw = reviewer.get("priority_default", Priority.P1.value)
    priority = Priority.parse(priority_raw)
    if priority is None:
        raise ConfigError(f"{where}: unknown priority_default {priority_raw!r}")
    timeout = reviewer.get("timeout_sec")
    max_files = reviewer.get("max_files")
    return ReviewerConfig(
        id=_require_str(reviewer, "id", where),
        name=_require_str(reviewer, "name", where),
        provider=_require_str(reviewer, "provider", where),
        scopes=_str_tuple(reviewer.get("scopes") or [], f"{where}.scopes"),
        prompt_file=str(_resolve(base_dir, _require_str(reviewer, "prompt_file", where))),
        enabled=bool(reviewer.get("enabled", True)),
        priority_default=priority,
        max_files=None if max_files is None else _as_int(max_files, f"{where}.max_files"),
        timeout_seconds=None if timeout is None else _as_int(timeout, f"{where}.timeout_sec"),
        command_override=reviewer.get("command_override") or None,
    )


def _mapping(value: Any, where: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{where}' must be a mapping.")
    return value


def _require_str(raw: dict[str, Any], key: str, where: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{where}: '{key}' is required and must be a non-empty string.")
    return value.strip()


def _str_tuple(value: Any, where: str) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"'{where}' must be a list of strings.")
    return tuple(value)


def _as_int(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'{where}' must be an integer, got {value!r}.")
    return value


def _resolve(base_dir: Path, value: str) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else base_dir / path


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ConfigError(f"Invalid integer value for {name}: {value!r}") from error
