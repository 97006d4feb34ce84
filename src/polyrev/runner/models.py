"""Domain models for review job scheduling and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from polyrev.parser.finding import Finding


class Priority(str, Enum):
    """Finding priority; p0 is the most severe."""

    P0 = "p0"
    P1 = "p1"
    P2 = "p2"

    @classmethod
    def parse(cls, value: object) -> Priority | None:
        """Map priority spellings used by agents onto the enum, or None."""

        if isinstance(value, Priority):
            return value
        if not isinstance(value, str):
            return None
        return _PRIORITY_ALIASES.get(value.strip().lower())


_PRIORITY_ALIASES: dict[str, Priority] = {
    "p0": Priority.P0,
    "critical": Priority.P0,
    "high": Priority.P0,
    "p1": Priority.P1,
    "medium": Priority.P1,
    "p2": Priority.P2,
    "low": Priority.P2,
}


class JobStatus(str, Enum):
    """Terminal job states."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class AttemptOutcome(str, Enum):
    """Outcome of one provider invocation for one chunk."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    TRANSIENT_ERROR = "transient_error"
    FATAL_ERROR = "fatal_error"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    SPAWN_ERROR = "spawn_error"
    PROVIDER_TRANSIENT = "provider_transient"
    PROVIDER_NON_RETRYABLE = "provider_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    BINARY_MISSING = "binary_missing"
    INVALID_INVOCATION = "invalid_invocation"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_FAILURE_CLASSES


_RETRYABLE_FAILURE_CLASSES = frozenset(
    {FailureClass.TIMEOUT, FailureClass.SPAWN_ERROR, FailureClass.PROVIDER_TRANSIENT},
)


@dataclass(frozen=True, slots=True)
class Job:
    """One reviewer's unit of work against an ordered file set."""

    id: str
    name: str
    files: tuple[str, ...]
    prompt_ref: str
    timeout_seconds: float = 300
    max_files: int = 50
    priority_default: Priority = Priority.P1
    provider: str = "claude_cli"
    command_override: str | None = None


@dataclass(frozen=True, slots=True)
class Chunk:
    """Ordered slice of a job's files; chunks of one job run strictly in sequence."""

    job_id: str
    sequence: int
    total: int
    files: tuple[str, ...]
    session_token: str | None = None

    @property
    def is_final(self) -> bool:
        return self.sequence == self.total - 1

    @property
    def label(self) -> str:
        return f"{self.sequence + 1}/{self.total}"


@dataclass(slots=True)
class ExecutionAttempt:
    """One provider invocation for one chunk."""

    chunk_sequence: int
    attempt_no: int
    started_at: datetime
    outcome: AttemptOutcome
    raw_output: str = ""
    error: str | None = None
    duration_seconds: float = 0.0


@dataclass(frozen=True, slots=True)
class JobResult:
    """Immutable outcome of one job, handed to the report sink."""

    job_id: str
    job_name: str
    status: JobStatus
    findings: list[Finding] = field(default_factory=list)
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    attempts_used: int = 0
    duration_seconds: float = 0.0
    files_scanned: int = 0
    chunk_count: int = 0
    attempts: list[ExecutionAttempt] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status in {JobStatus.SUCCESS, JobStatus.PARTIAL}

    def count_by_priority(self) -> dict[Priority, int]:
        counts = dict.fromkeys(Priority, 0)
        for finding in self.findings:
            counts[finding.priority] += 1
        return counts


@dataclass(slots=True)
class IdempotencyRecord:
    """Marker that a job completed on a calendar date."""

    job_id: str
    run_date: date
    completed_at: datetime
    findings_count: int = 0


@dataclass(slots=True)
class RunReport:
    """Aggregate of one orchestrator run, results in completion order."""

    results: list[JobResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def totals(self) -> dict[Priority, int]:
        totals = dict.fromkeys(Priority, 0)
        for result in self.results:
            for priority, count in result.count_by_priority().items():
                totals[priority] += count
        return totals

    @property
    def failed(self) -> list[JobResult]:
        return [result for result in self.results if result.status == JobStatus.FAILED]
