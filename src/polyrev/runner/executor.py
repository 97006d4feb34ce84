"""Run one job: plan chunks, invoke the provider per chunk under retry, parse the final output."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path

from polyrev.errors import ChunkPlanningError, PolyrevError, PromptLoadError, ProviderError
from polyrev.parser.output import parse_findings
from polyrev.provider.base import ProviderClient, ProviderRequest, ProviderResponse
from polyrev.runner.chunking import build_chunk_prompt, plan_chunks
from polyrev.runner.models import (
    AttemptOutcome,
    Chunk,
    ExecutionAttempt,
    FailureClass,
    Job,
    JobResult,
    JobStatus,
)
from polyrev.runner.retry import RetryPolicy
from polyrev.runner.state import Clock, utc_now

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Job], ProviderClient]
PromptLoader = Callable[[str], str]

NO_STRUCTURED_OUTPUT_WARNING = "No structured findings found in final chunk output."


def load_prompt_file(prompt_ref: str) -> str:
    """Read a reviewer prompt from disk."""

    try:
        return Path(prompt_ref).read_text("utf-8")
    except OSError as error:
        raise PromptLoadError(f"Failed to load prompt '{prompt_ref}': {error}") from error


@dataclass(slots=True)
class ChunkRun:
    """Attempts made for one chunk and the response or terminal error."""

    response: ProviderResponse | None
    error: ProviderError | None
    attempts: list[ExecutionAttempt] = field(default_factory=list)


class JobExecutor:
    """Executes the chunks of a job strictly in sequence.

    The session token returned by chunk *i* is handed to chunk *i+1*; a
    provider that returns no new token keeps the previous one. Only the final
    chunk's output is parsed into findings.
    """

    def __init__(
        self,
        *,
        provider_factory: ProviderFactory,
        retry_policy: RetryPolicy | None = None,
        prompt_loader: PromptLoader = load_prompt_file,
        sleep: Callable[[float], None] = time.sleep,
        clock: Clock = utc_now,
    ) -> None:
        self.provider_factory = provider_factory
        self.retry_policy = retry_policy or RetryPolicy()
        self.prompt_loader = prompt_loader
        self.sleep = sleep
        self.clock = clock

    def execute(self, job: Job) -> JobResult:
        start_monotonic = time.monotonic()
        try:
            if not job.files:
                raise ChunkPlanningError(f"Job {job.id}: file set is empty.")
            chunks = plan_chunks(job.id, job.files, job.max_files)
            base_prompt = self.prompt_loader(job.prompt_ref)
            provider = self.provider_factory(job)
        except PolyrevError as error:
            logger.error("Job %s cannot start: %s", job.id, error)
            return JobResult(
                job_id=job.id,
                job_name=job.name,
                status=JobStatus.FAILED,
                error=str(error),
                files_scanned=len(job.files),
                duration_seconds=time.monotonic() - start_monotonic,
            )

        logger.info(
            "Job %s: %d file(s) in %d chunk(s) via %s",
            job.id,
            len(job.files),
            len(chunks),
            provider.name,
        )
        attempts: list[ExecutionAttempt] = []
        warnings: list[str] = []
        partial = False
        session_token: str | None = None
        final_output = ""

        for planned in chunks:
            chunk = replace(planned, session_token=session_token)
            run = self._run_chunk(job, provider, chunk, build_chunk_prompt(base_prompt, chunk))
            attempts.extend(run.attempts)
            if run.error is not None or run.response is None:
                error = run.error
                message = (
                    f"Chunk {chunk.label} failed after {len(run.attempts)} attempt(s) "
                    f"[{error.failure_class.value if error else 'unknown'}]: {error}"
                )
                logger.error("Job %s: %s", job.id, message)
                return JobResult(
                    job_id=job.id,
                    job_name=job.name,
                    status=JobStatus.FAILED,
                    error=message,
                    warnings=warnings,
                    attempts_used=len(attempts),
                    duration_seconds=time.monotonic() - start_monotonic,
                    files_scanned=len(job.files),
                    chunk_count=len(chunks),
                    attempts=attempts,
                )

            session_token = run.response.session_token or session_token
            if chunk.is_final:
                final_output = run.response.raw_output
                continue

            stray = parse_findings(
                run.response.raw_output,
                default_priority=job.priority_default,
                job_id=job.id,
            )
            if stray.findings:
                partial = True
                warnings.append(
                    f"Chunk {chunk.label} returned {len(stray.findings)} finding(s) before the "
                    "final chunk; they were ignored.",
                )

        outcome = parse_findings(
            final_output,
            default_priority=job.priority_default,
            job_id=job.id,
        )
        if outcome.no_structured_output:
            warnings.append(NO_STRUCTURED_OUTPUT_WARNING)
        if outcome.warnings:
            partial = True
            warnings.extend(str(warning) for warning in outcome.warnings)

        status = JobStatus.PARTIAL if partial else JobStatus.SUCCESS
        logger.info(
            "Job %s finished: %s, %d finding(s), %d warning(s)",
            job.id,
            status.value,
            len(outcome.findings),
            len(warnings),
        )
        return JobResult(
            job_id=job.id,
            job_name=job.name,
            status=status,
            findings=outcome.findings,
            warnings=warnings,
            attempts_used=len(attempts),
            duration_seconds=time.monotonic() - start_monotonic,
            files_scanned=len(job.files),
            chunk_count=len(chunks),
            attempts=attempts,
        )

    def _run_chunk(
        self,
        job: Job,
        provider: ProviderClient,
        chunk: Chunk,
        prompt: str,
    ) -> ChunkRun:
        run = ChunkRun(response=None, error=None)
        request = ProviderRequest(
            prompt=prompt,
            files=chunk.files,
            timeout_seconds=job.timeout_seconds,
            session_token=chunk.session_token,
            chunk_sequence=chunk.sequence,
            total_chunks=chunk.total,
            prompt_ref=job.prompt_ref,
        )
        attempt_no = 0
        while True:
            attempt_no += 1
            started_at = self.clock()
            start_monotonic = time.monotonic()
            try:
                response = provider.invoke(request)
            except ProviderError as error:
                run.attempts.append(
                    ExecutionAttempt(
                        chunk_sequence=chunk.sequence,
                        attempt_no=attempt_no,
                        started_at=started_at,
                        outcome=_attempt_outcome(error.failure_class),
                        error=str(error),
                        duration_seconds=time.monotonic() - start_monotonic,
                    ),
                )
                decision = self.retry_policy.decide(
                    attempt_no=attempt_no,
                    failure_class=error.failure_class,
                )
                if not decision.retry:
                    logger.warning(
                        "Job %s chunk %s attempt %d failed, giving up (%s): %s",
                        job.id,
                        chunk.label,
                        attempt_no,
                        decision.reason,
                        error,
                    )
                    run.error = error
                    return run
                logger.info(
                    "Job %s chunk %s attempt %d failed (%s); retrying in %.1fs",
                    job.id,
                    chunk.label,
                    attempt_no,
                    error.failure_class.value,
                    decision.delay_seconds,
                )
                self.sleep(decision.delay_seconds)
                continue

            run.attempts.append(
                ExecutionAttempt(
                    chunk_sequence=chunk.sequence,
                    attempt_no=attempt_no,
                    started_at=started_at,
                    outcome=AttemptOutcome.SUCCESS,
                    raw_output=response.raw_output,
                    duration_seconds=time.monotonic() - start_monotonic,
                ),
            )
            run.response = response
            return run


def _attempt_outcome(failure_class: FailureClass) -> AttemptOutcome:
    if failure_class == FailureClass.TIMEOUT:
        return AttemptOutcome.TIMEOUT
    if failure_class.retryable:
        return AttemptOutcome.TRANSIENT_ERROR
    return AttemptOutcome.FATAL_ERROR
