"""Per-job markdown/JSON reports and the end-of-run summary."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from polyrev.runner.models import JobResult, JobStatus, Priority, RunReport

PRIORITY_LABELS = {
    Priority.P0: "p0 (Critical)",
    Priority.P1: "p1 (High)",
    Priority.P2: "p2 (Medium)",
}


class ReportSink(Protocol):
    """Receives each JobResult as soon as its job finishes."""

    def write(self, result: JobResult) -> None: ...


class MarkdownReportSink:
    """Writes ``<job_id>.md`` and, when there are findings, ``<job_id>.findings.json``."""

    def __init__(self, report_dir: Path) -> None:
        self.report_dir = report_dir

    def write(self, result: JobResult) -> None:
        self.report_dir.mkdir(parents=True, exist_ok=True)
        report_path = self.report_dir / f"{result.job_id}.md"
        report_path.write_text(render_job_report(result), "utf-8")
        if result.findings:
            findings_path = self.report_dir / f"{result.job_id}.findings.json"
            payload = [
                {**finding.to_dict(), "fingerprint": finding.fingerprint(result.job_id)}
                for finding in result.findings
            ]
            findings_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), "utf-8")


def render_job_report(result: JobResult) -> str:
    lines = [
        f"# {result.job_name}",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Status | {_status_text(result)} |",
        f"| Duration | {result.duration_seconds:.1f}s |",
        f"| Files Scanned | {result.files_scanned} |",
        f"| Chunks | {result.chunk_count} |",
        f"| Attempts | {result.attempts_used} |",
    ]
    counts = result.count_by_priority()
    lines.extend(f"| {PRIORITY_LABELS[priority]} | {counts[priority]} |" for priority in Priority)
    lines += ["", "---", ""]

    if result.warnings:
        lines += ["## Warnings", ""]
        lines.extend(f"- {warning}" for warning in result.warnings)
        lines.append("")

    if not result.findings:
        lines.append("*No findings*")
        return "\n".join(lines) + "\n"

    lines += ["## Findings", ""]
    for finding in result.findings:
        lines += [f"### [{finding.priority.value}] {finding.title}", ""]
        location = f"{finding.file}:{finding.line}" if finding.line else finding.file
        lines.append(f"- **File:** `{location}`")
        if finding.type:
            lines.append(f"- **Type:** `{finding.type}`")
        lines += ["", finding.description, ""]
        if finding.snippet is not None:
            lines += ["**Code:**", "```", finding.snippet, "```", ""]
        lines += [f"**Remediation:** {finding.remediation}", ""]
        if finding.acceptance_criteria:
            lines.append("**Acceptance Criteria:**")
            lines.extend(f"- [ ] {criterion}" for criterion in finding.acceptance_criteria)
            lines.append("")
        if finding.references:
            lines.append("**References:**")
            lines.extend(f"- {reference}" for reference in finding.references)
            lines.append("")
        lines += ["---", ""]
    return "\n".join(lines)


def build_summary(report: RunReport, *, report_dir: Path, target: Path) -> dict[str, Any]:
    """JSON-ready run summary; ``exit_code`` is 1 on any failed job or p0 finding."""

    totals = report.totals()
    reviewers = []
    for result in report.results:
        entry: dict[str, Any] = {
            "id": result.job_id,
            "name": result.job_name,
            "status": result.status.value,
            "duration_sec": round(result.duration_seconds, 3),
            "files_scanned": result.files_scanned,
            "findings": {priority.value: count for priority, count in result.count_by_priority().items()},
        }
        if result.error:
            entry["reason"] = result.error
        elif result.warnings:
            entry["warnings"] = list(result.warnings)
        reviewers.append(entry)
    return {
        "timestamp": datetime.now(tz=UTC).isoformat(),
        "target": str(target),
        "duration_sec": round(report.duration_seconds, 3),
        "reviewers": reviewers,
        "totals": {priority.value: count for priority, count in totals.items()},
        "skipped": list(report.skipped),
        "failed": [result.job_id for result in report.failed],
        "exit_code": run_exit_code(report),
        "report_dir": str(report_dir),
    }


def run_exit_code(report: RunReport) -> int:
    if report.failed or report.totals()[Priority.P0] > 0:
        return 1
    return 0


def write_summary(report_dir: Path, report: RunReport, target: Path) -> dict[str, Any]:
    """Write ``summary.json`` and ``summary.md`` and return the summary payload."""

    report_dir.mkdir(parents=True, exist_ok=True)
    summary = build_summary(report, report_dir=report_dir, target=target)
    (report_dir / "summary.json").write_text(json.dumps(summary, indent=2, ensure_ascii=False), "utf-8")
    (report_dir / "summary.md").write_text(render_summary_markdown(summary), "utf-8")
    return summary


def render_summary_markdown(summary: dict[str, Any]) -> str:
    totals = summary["totals"]
    lines = [
        "# polyrev Summary",
        "",
        f"**Generated:** {summary['timestamp']}",
        f"**Target:** {summary['target']}",
        f"**Report Dir:** {summary['report_dir']}",
        f"**Duration:** {summary['duration_sec']:.1f}s",
        "",
        "## Totals",
        "",
        "| Priority | Count |",
        "|----------|-------|",
    ]
    lines.extend(f"| {PRIORITY_LABELS[priority]} | {totals[priority.value]} |" for priority in Priority)
    lines += [
        "",
        "## Reviewers",
        "",
        "| Reviewer | Status | Findings |",
        "|----------|--------|----------|",
    ]
    for reviewer in summary["reviewers"]:
        status = reviewer["status"]
        if reviewer.get("reason"):
            status = f"{status} ({reviewer['reason']})"
        findings = ", ".join(f"{count} {priority}" for priority, count in reviewer["findings"].items())
        lines.append(f"| {reviewer['name']} | {status} | {findings} |")
    for job_id in summary["skipped"]:
        lines.append(f"| {job_id} | skipped | - |")

    if totals[Priority.P0.value] > 0:
        lines += ["", "## Critical Findings (p0)", "", "See individual reviewer reports for details."]
    return "\n".join(lines) + "\n"


def _status_text(result: JobResult) -> str:
    if result.status == JobStatus.FAILED:
        return f"Failed ({result.error})"
    if result.status == JobStatus.PARTIAL:
        return "Partial"
    return "Success"
