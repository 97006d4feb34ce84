"""Controllers for polyrev CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

from polyrev.config import Settings
from polyrev.discovery import JobPlan, build_jobs
from polyrev.output.report import MarkdownReportSink, write_summary
from polyrev.provider import create_provider
from polyrev.runner.chunking import plan_chunks
from polyrev.runner.executor import JobExecutor
from polyrev.runner.models import Job, Priority, RunReport
from polyrev.runner.orchestrator import Orchestrator
from polyrev.runner.retry import RetryPolicy
from polyrev.runner.state import IdempotencyStore


@dataclass(slots=True)
class RunCommand:
    """CLI input for a review run."""

    config_path: Path
    reviewer_ids: tuple[str, ...] = ()
    scope: str | None = None
    diff_base: str | None = None
    concurrency: int | None = None
    report_dir: Path | None = None
    db_path: Path | None = None
    force: bool = False
    dry_run: bool = False


@dataclass(slots=True)
class PlanCommand:
    """CLI input for chunk plan inspection."""

    config_path: Path
    reviewer_ids: tuple[str, ...] = ()
    scope: str | None = None
    diff_base: str | None = None
    db_path: Path | None = None


@dataclass(slots=True)
class StateCommand:
    """CLI input for idempotency record listing."""

    config_path: Path | None
    db_path: Path | None = None
    run_date: date | None = None
    job_id: str | None = None


@dataclass(slots=True)
class RunCommandResult:
    """Printable lines plus the process exit code."""

    lines: list[str] = field(default_factory=list)
    exit_code: int = 0


class ReviewCliController:
    """Wires config, discovery, orchestrator and reports for CLI commands."""

    def run(self, command: RunCommand) -> RunCommandResult:
        settings = _load_settings(
            command.config_path,
            diff_base=command.diff_base,
            concurrency=command.concurrency,
            report_dir=command.report_dir,
            db_path=command.db_path,
        )
        plan = build_jobs(settings, reviewer_ids=command.reviewer_ids, scope=command.scope)
        if command.dry_run:
            return RunCommandResult(lines=["Dry run: no providers invoked.", *_plan_lines(plan)])

        executor = JobExecutor(
            provider_factory=lambda job: create_provider(
                job,
                settings.providers,
                working_dir=settings.target,
            ),
            retry_policy=RetryPolicy(
                max_attempts=settings.retry.max_attempts,
                backoff_base_seconds=settings.retry.backoff_base_seconds,
                backoff_max_seconds=settings.retry.backoff_max_seconds,
            ),
        )
        with _store(settings) as store:
            orchestrator = Orchestrator(
                executor=executor,
                store=store,
                sink=MarkdownReportSink(settings.report_dir),
                concurrency=settings.runner.concurrency,
                launch_delay_seconds=settings.runner.launch_delay_seconds,
            )
            report = orchestrator.run(plan.jobs, force=command.force)

        report.skipped.extend(plan.skipped)
        summary = write_summary(settings.report_dir, report, settings.target)
        return RunCommandResult(
            lines=_report_lines(report, plan=plan, report_dir=settings.report_dir),
            exit_code=summary["exit_code"],
        )

    def plan(self, command: PlanCommand) -> list[str]:
        settings = _load_settings(
            command.config_path,
            diff_base=command.diff_base,
            db_path=command.db_path,
        )
        plan = build_jobs(settings, reviewer_ids=command.reviewer_ids, scope=command.scope)
        with _store(settings) as store:
            completed = {job.id for job in plan.jobs if store.has_run_today(job.id)}
        return _plan_lines(plan, completed_today=completed)

    def state(self, command: StateCommand) -> list[str]:
        if command.config_path is not None:
            settings = _load_settings(command.config_path, db_path=command.db_path, validate=False)
        else:
            settings = Settings.from_env()
            if command.db_path is not None:
                settings.db_path = command.db_path
        with _store(settings) as store:
            records = store.list_records(run_date=command.run_date, job_id=command.job_id)
        if not records:
            return ["No idempotency records."]
        return [
            f"{record.run_date.isoformat()} {record.job_id} "
            f"findings={record.findings_count} completed_at={record.completed_at.isoformat()}"
            for record in records
        ]


def _load_settings(  # noqa: PLR0913
    config_path: Path,
    *,
    diff_base: str | None = None,
    concurrency: int | None = None,
    report_dir: Path | None = None,
    db_path: Path | None = None,
    validate: bool = True,
) -> Settings:
    settings = Settings.load(config_path)
    if diff_base is not None:
        settings.diff_base = diff_base
    if concurrency is not None:
        settings.runner.concurrency = concurrency
    if report_dir is not None:
        settings.report_dir = report_dir
    if db_path is not None:
        settings.db_path = db_path
    if validate:
        settings.validate()
    return settings


@contextmanager
def _store(settings: Settings) -> Iterator[IdempotencyStore]:
    store = IdempotencyStore(settings.state_db_path)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


def _plan_lines(plan: JobPlan, *, completed_today: set[str] | None = None) -> list[str]:
    lines: list[str] = []
    for job in plan.jobs:
        chunks = plan_chunks(job.id, job.files, job.max_files)
        state = " (already completed today)" if completed_today and job.id in completed_today else ""
        lines.append(
            f"{job.id}: provider={_provider_label(job)} files={len(job.files)} "
            f"chunks={len(chunks)} max_files={job.max_files}{state}",
        )
    lines.extend(f"{job_id}: skipped ({reason})" for job_id, reason in plan.skipped.items())
    if not lines:
        lines.append("No reviewers selected.")
    return lines


def _report_lines(report: RunReport, *, plan: JobPlan, report_dir: Path) -> list[str]:
    lines = []
    for result in report.results:
        counts = result.count_by_priority()
        line = (
            f"{result.job_id}: {result.status.value} "
            f"p0={counts[Priority.P0]} p1={counts[Priority.P1]} p2={counts[Priority.P2]} "
            f"attempts={result.attempts_used} duration={result.duration_seconds:.1f}s"
        )
        if result.error:
            line += f" error={result.error}"
        lines.append(line)
    for job_id in report.skipped:
        reason = plan.skipped.get(job_id, "already completed today")
        lines.append(f"{job_id}: skipped ({reason})")
    totals = report.totals()
    lines.append(
        f"Totals: p0={totals[Priority.P0]} p1={totals[Priority.P1]} p2={totals[Priority.P2]} "
        f"failed={len(report.failed)} skipped={len(report.skipped)} "
        f"duration={report.duration_seconds:.1f}s",
    )
    lines.append(f"Reports: {report_dir}")
    return lines


def _provider_label(job: Job) -> str:
    return f"{job.provider} (command override)" if job.command_override else job.provider
