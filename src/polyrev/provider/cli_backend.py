"""Subprocess-based provider runners for CLI agents."""

from __future__ import annotations

import json
import os
import re
import shlex
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO
from uuid import uuid4

from polyrev.errors import (
    ProviderError,
    ProviderFatalError,
    ProviderSpawnError,
    ProviderTimeout,
    ProviderTransientError,
)
from polyrev.provider.base import ProviderRequest, ProviderResponse
from polyrev.runner.failure_classifier import (
    DEFAULT_TRANSIENT_EXIT_CODES,
    classify_provider_failure,
)
from polyrev.runner.models import FailureClass

_SESSION_LINE = re.compile(r"^polyrev-session:\s*(\S+)\s*$", re.MULTILINE)
_STDERR_SUMMARY_CHARS = 500


@dataclass(slots=True)
class CliInvocation:
    """Rendered command line for one attempt."""

    argv: list[str]
    stdin_text: str | None = None
    session_token: str | None = None
    output_path: Path | None = None
    env_overrides: dict[str, str] = field(default_factory=dict)
    env_removals: tuple[str, ...] = ()


@dataclass(slots=True)
class SubprocessOutput:
    """Captured process result."""

    exit_code: int
    timed_out: bool
    stdout: str
    stderr: str
    duration_seconds: float


class CliProvider(ABC):
    """Base runner: renders a command, runs it with a timeout, classifies failures."""

    name = "cli"

    def __init__(
        self,
        *,
        working_dir: Path,
        transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.working_dir = working_dir
        self.transient_exit_codes = transient_exit_codes
        self.poll_interval_seconds = poll_interval_seconds

    @abstractmethod
    def build_invocation(self, request: ProviderRequest, scratch_dir: Path) -> CliInvocation:
        """Render the command line and stdin for one request."""

    def collect_output(
        self,
        invocation: CliInvocation,
        output: SubprocessOutput,
    ) -> tuple[str, str | None]:
        """Return ``(raw_output, session_token)`` for a successful run."""

        return output.stdout, invocation.session_token

    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        with tempfile.TemporaryDirectory(prefix="polyrev-") as scratch:
            invocation = self.build_invocation(request, Path(scratch))
            env = os.environ.copy()
            for name in invocation.env_removals:
                env.pop(name, None)
            env.update(invocation.env_overrides)
            env["POLYREV_CHUNK_SEQUENCE"] = str(request.chunk_sequence)
            env["POLYREV_TOTAL_CHUNKS"] = str(request.total_chunks)

            output = run_subprocess(
                argv=invocation.argv,
                stdin_text=invocation.stdin_text,
                cwd=self.working_dir,
                env=env,
                timeout_seconds=request.timeout_seconds,
                poll_interval_seconds=self.poll_interval_seconds,
            )
            if output.timed_out:
                raise ProviderTimeout(request.timeout_seconds)
            if output.exit_code != 0:
                raise self._failure(output)

            raw_output, session_token = self.collect_output(invocation, output)

        return ProviderResponse(
            raw_output=raw_output,
            session_token=session_token,
            stderr=output.stderr,
            exit_code=output.exit_code,
            duration_seconds=output.duration_seconds,
        )

    def _failure(self, output: SubprocessOutput) -> ProviderError:
        classification = classify_provider_failure(
            provider=self.name,
            exit_code=output.exit_code,
            stdout=output.stdout,
            stderr=output.stderr,
            transient_exit_codes=self.transient_exit_codes,
        )
        error_type = ProviderTransientError if classification.retryable else ProviderFatalError
        summary = output.stderr.strip()[-_STDERR_SUMMARY_CHARS:]
        return error_type(
            f"Process failed with exit code {output.exit_code} "
            f"({classification.reason_code}): {summary}",
            failure_class=classification.failure_class,
            exit_code=output.exit_code,
            stderr=output.stderr,
        )


class ClaudeCliProvider(CliProvider):
    """Claude CLI in print mode; sessions are created with a client-side UUID."""

    name = "claude_cli"

    def __init__(
        self,
        *,
        binary: str,
        model: str,
        tools: tuple[str, ...],
        permission_mode: str,
        working_dir: Path,
        **kwargs,
    ) -> None:
        super().__init__(working_dir=working_dir, **kwargs)
        self.binary = binary
        self.model = model
        self.tools = tools
        self.permission_mode = permission_mode

    def build_invocation(self, request: ProviderRequest, scratch_dir: Path) -> CliInvocation:
        argv = [self.binary]
        session_token = request.session_token
        if session_token:
            argv += ["--resume", session_token]
        elif request.total_chunks > 1:
            session_token = str(uuid4())
            argv += ["--session-id", session_token]

        argv += ["-p", with_file_list(request.prompt, request.files)]
        if self.model:
            argv += ["--model", self.model]
        argv += ["--output-format", "json"]
        if self.tools:
            argv += ["--allowedTools", ",".join(self.tools)]
        if self.permission_mode:
            argv += ["--permission-mode", self.permission_mode]

        # Subscription auth; an exported API key would take precedence.
        return CliInvocation(
            argv=argv,
            session_token=session_token,
            env_removals=("ANTHROPIC_API_KEY",),
        )


class CodexCliProvider(CliProvider):
    """Codex CLI ``exec``; the thread id from the JSON event stream is the session token."""

    name = "codex_cli"

    def __init__(self, *, binary: str, model: str, working_dir: Path, **kwargs) -> None:
        super().__init__(working_dir=working_dir, **kwargs)
        self.binary = binary
        self.model = model

    def build_invocation(self, request: ProviderRequest, scratch_dir: Path) -> CliInvocation:
        prompt = with_file_list(request.prompt, request.files)
        if request.session_token:
            # `exec resume` accepts neither --model nor --json.
            return CliInvocation(
                argv=[self.binary, "exec", "resume", request.session_token, "-"],
                stdin_text=prompt,
                session_token=request.session_token,
            )

        output_path = scratch_dir / "last_message.txt"
        argv = [self.binary, "exec"]
        if self.model:
            argv += ["--model", self.model]
        argv += ["--json", "--output-last-message", str(output_path), "-"]
        return CliInvocation(argv=argv, stdin_text=prompt, output_path=output_path)

    def collect_output(
        self,
        invocation: CliInvocation,
        output: SubprocessOutput,
    ) -> tuple[str, str | None]:
        if invocation.output_path is None:
            return output.stdout, invocation.session_token
        raw_output = ""
        if invocation.output_path.exists():
            raw_output = invocation.output_path.read_text("utf-8", errors="replace")
        return raw_output, _codex_thread_id(output.stdout)


class CommandTemplateProvider(CliProvider):
    """User-supplied command template with ``{prompt}``/``{prompt_file}`` placeholders.

    The agent may print ``polyrev-session: <token>`` on its own line to hand a
    session token to the next chunk; the token is also exported as
    ``POLYREV_SESSION_TOKEN``.
    """

    name = "command"

    def __init__(self, *, command_template: str, working_dir: Path, model: str = "", **kwargs) -> None:
        super().__init__(working_dir=working_dir, **kwargs)
        self.command_template = command_template
        self.model = model

    def build_invocation(self, request: ProviderRequest, scratch_dir: Path) -> CliInvocation:
        prompt = with_file_list(request.prompt, request.files)
        prompt_file = scratch_dir / "prompt.txt"
        prompt_file.write_text(prompt, "utf-8")
        argv = build_run_args(
            command_template=self.command_template,
            model=self.model,
            prompt=prompt,
            prompt_file=prompt_file,
            session_token=request.session_token or "",
        )
        env_overrides = {}
        if request.session_token:
            env_overrides["POLYREV_SESSION_TOKEN"] = request.session_token
        return CliInvocation(
            argv=argv,
            session_token=request.session_token,
            env_overrides=env_overrides,
        )

    def collect_output(
        self,
        invocation: CliInvocation,
        output: SubprocessOutput,
    ) -> tuple[str, str | None]:
        tokens = _SESSION_LINE.findall(output.stdout)
        return output.stdout, tokens[-1] if tokens else invocation.session_token


def with_file_list(prompt: str, files: tuple[str, ...]) -> str:
    """Append the chunk's file list to the prompt."""

    file_list = "\n".join(files)
    return f"{prompt}\n\n## Files to Review\n```\n{file_list}\n```"


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    session_token: str = "",
) -> list[str]:
    """Render a POSIX command template into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise ProviderFatalError(
            "Command template is empty.",
            failure_class=FailureClass.INVALID_INVOCATION,
        )
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ProviderFatalError(
            "Command template must include {prompt} or {prompt_file}.",
            failure_class=FailureClass.INVALID_INVOCATION,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            session_token=shlex.quote(session_token),
        )
    except (KeyError, IndexError) as error:
        raise ProviderFatalError(
            f"Unsupported command template placeholder: {error}",
            failure_class=FailureClass.INVALID_INVOCATION,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProviderFatalError(
            "Command template rendered empty command.",
            failure_class=FailureClass.INVALID_INVOCATION,
        )
    return argv


def run_subprocess(  # noqa: PLR0913
    *,
    argv: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: float,
    stdin_text: str | None = None,
    poll_interval_seconds: float = 0.1,
) -> SubprocessOutput:
    """Run ``argv`` to completion or timeout, capturing output via temp files."""

    with (
        tempfile.TemporaryFile("w+", encoding="utf-8", errors="replace") as stdout_handle,
        tempfile.TemporaryFile("w+", encoding="utf-8", errors="replace") as stderr_handle,
        tempfile.TemporaryFile("w+", encoding="utf-8") as stdin_handle,
    ):
        if stdin_text is not None:
            stdin_handle.write(stdin_text)
            stdin_handle.seek(0)
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=cwd,
                env=env,
                stdin=stdin_handle if stdin_text is not None else subprocess.DEVNULL,
                stdout=stdout_handle,
                stderr=stderr_handle,
                text=True,
            )
        except FileNotFoundError as error:
            raise ProviderFatalError(
                f"Provider command not found: {argv[0]}",
                failure_class=FailureClass.BINARY_MISSING,
            ) from error
        except PermissionError as error:
            raise ProviderFatalError(
                f"Provider command is not executable: {argv[0]}",
                failure_class=FailureClass.INVALID_INVOCATION,
            ) from error
        except OSError as error:
            raise ProviderSpawnError(f"Provider failed to start: {error}") from error

        exit_code, timed_out, duration = _wait_with_timeout(
            process,
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
        )
        return SubprocessOutput(
            exit_code=exit_code,
            timed_out=timed_out,
            stdout=_read_all(stdout_handle),
            stderr=_read_all(stderr_handle),
            duration_seconds=duration,
        )


def _wait_with_timeout(
    process: subprocess.Popen[str],
    *,
    timeout_seconds: float,
    poll_interval_seconds: float,
) -> tuple[int, bool, float]:
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        elapsed = time.monotonic() - start_monotonic
        if returncode is not None:
            return returncode, False, elapsed
        if elapsed >= timeout_seconds:
            _terminate_process(process)
            return 124, True, elapsed
        time.sleep(poll_interval_seconds)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_all(handle: IO[str]) -> str:
    handle.flush()
    handle.seek(0)
    return handle.read()


def _codex_thread_id(stdout: str) -> str | None:
    thread_id: str | None = None
    for raw_line in stdout.splitlines():
        line = raw_line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except ValueError:
            continue
        if isinstance(event, dict) and isinstance(event.get("thread_id"), str):
            thread_id = event["thread_id"]
    return thread_id
