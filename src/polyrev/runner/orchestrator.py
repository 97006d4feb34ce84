"""Bounded-concurrency scheduling of review jobs."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor

from polyrev.output.report import ReportSink
from polyrev.runner.executor import JobExecutor
from polyrev.runner.models import Job, JobResult, JobStatus, RunReport
from polyrev.runner.state import IdempotencyStore

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runs jobs with at most ``concurrency`` in flight.

    A job holds one permit for its whole lifetime, chunks included. Launches
    are staggered by ``launch_delay_seconds``. Results reach the sink in
    completion order, one at a time, as soon as each job finishes.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        executor: JobExecutor,
        store: IdempotencyStore | None = None,
        sink: ReportSink | None = None,
        concurrency: int = 6,
        launch_delay_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1.")
        self.executor = executor
        self.store = store
        self.sink = sink
        self.concurrency = concurrency
        self.launch_delay_seconds = launch_delay_seconds
        self.sleep = sleep
        self._sink_lock = threading.Lock()

    def pending_jobs(self, jobs: Sequence[Job], *, force: bool = False) -> tuple[list[Job], list[str]]:
        """Split ``jobs`` into runnable jobs and ids already completed today."""

        if force or self.store is None:
            return list(jobs), []
        pending: list[Job] = []
        skipped: list[str] = []
        for job in jobs:
            if self.store.has_run_today(job.id):
                logger.info("Job %s already completed today; skipping", job.id)
                skipped.append(job.id)
            else:
                pending.append(job)
        return pending, skipped

    def run(self, jobs: Sequence[Job], *, force: bool = False) -> RunReport:
        start_monotonic = time.monotonic()
        pending, skipped = self.pending_jobs(jobs, force=force)
        report = RunReport(skipped=skipped)
        if not pending:
            report.duration_seconds = time.monotonic() - start_monotonic
            return report

        logger.info("Running %d job(s) with concurrency %d", len(pending), self.concurrency)
        permits = threading.BoundedSemaphore(self.concurrency)
        with ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix="polyrev-job",
        ) as pool:
            futures = []
            for index, job in enumerate(pending):
                if index > 0 and self.launch_delay_seconds > 0:
                    self.sleep(self.launch_delay_seconds)
                permits.acquire()
                futures.append(pool.submit(self._run_job, job, permits, report))
            for future in futures:
                future.result()

        report.duration_seconds = time.monotonic() - start_monotonic
        return report

    def _run_job(self, job: Job, permits: threading.BoundedSemaphore, report: RunReport) -> None:
        try:
            result = self.executor.execute(job)
        except Exception as error:
            logger.exception("Job %s raised unexpectedly", job.id)
            result = JobResult(
                job_id=job.id,
                job_name=job.name,
                status=JobStatus.FAILED,
                error=f"Unexpected error: {error}",
                files_scanned=len(job.files),
            )
        finally:
            permits.release()

        self._deliver(result, report)
        if result.succeeded and self.store is not None:
            try:
                self.store.mark_run(job.id, findings_count=len(result.findings))
            except Exception:
                logger.exception("Failed to record completion of job %s", job.id)

    def _deliver(self, result: JobResult, report: RunReport) -> None:
        with self._sink_lock:
            report.results.append(result)
            logger.info(
                "Completed %s: %s, %d finding(s)",
                result.job_id,
                result.status.value,
                len(result.findings),
            )
            if self.sink is None:
                return
            try:
                self.sink.write(result)
            except Exception:
                logger.exception("Failed to write report for job %s", result.job_id)
