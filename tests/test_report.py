from __future__ import annotations

import dataclasses
import json

import allure
import pytest

from polyrev.output.report import MarkdownReportSink, run_exit_code, write_summary
from polyrev.parser.finding import Finding
from polyrev.runner.models import JobResult, JobStatus, Priority, RunReport

pytestmark = [
    allure.epic("Review Runtime"),
    allure.feature("Reports"),
]


def _finding(finding_id: str, priority: Priority, **overrides) -> Finding:
    values = {
        "id": finding_id,
        "title": f"Issue {finding_id}",
        "file": "src/app.py",
        "description": "Something is off.",
        "remediation": "Fix it.",
        "priority": priority,
    }
    values.update(overrides)
    return Finding(**values)


def _result(job_id: str, status: JobStatus = JobStatus.SUCCESS, findings=(), **overrides) -> JobResult:
    return JobResult(
        job_id=job_id,
        job_name=job_id.title(),
        status=status,
        findings=list(findings),
        files_scanned=3,
        chunk_count=1,
        attempts_used=1,
        duration_seconds=1.25,
        **overrides,
    )


def test_sink_writes_markdown_and_findings_json(tmp_path) -> None:
    sink = MarkdownReportSink(tmp_path / "reports")
    finding = _finding(
        "SEC-1",
        Priority.P0,
        line=12,
        type="security",
        snippet="eval(data)",
        acceptance_criteria=["No eval on input"],
        references=["CWE-95"],
    )

    sink.write(_result("security", findings=[finding], warnings=["Record 1 dropped"]))

    markdown = (tmp_path / "reports" / "security.md").read_text("utf-8")
    assert markdown.startswith("# Security\n")
    assert "| Status | Success |" in markdown
    assert "| p0 (Critical) | 1 |" in markdown
    assert "### [p0] Issue SEC-1" in markdown
    assert "- **File:** `src/app.py:12`" in markdown
    assert "- [ ] No eval on input" in markdown
    assert "- Record 1 dropped" in markdown
    payload = json.loads((tmp_path / "reports" / "security.findings.json").read_text("utf-8"))
    assert payload[0]["id"] == "SEC-1"
    assert payload[0]["priority"] == "p0"
    assert payload[0]["fingerprint"] == finding.fingerprint("security")


def test_sink_skips_findings_json_when_empty(tmp_path) -> None:
    sink = MarkdownReportSink(tmp_path)

    sink.write(_result("perf", status=JobStatus.FAILED, error="Chunk 1/1 failed"))

    markdown = (tmp_path / "perf.md").read_text("utf-8")
    assert "| Status | Failed (Chunk 1/1 failed) |" in markdown
    assert "*No findings*" in markdown
    assert not (tmp_path / "perf.findings.json").exists()


def test_exit_code_rules() -> None:
    clean = RunReport(results=[_result("a", findings=[_finding("A-1", Priority.P1)])])
    critical = RunReport(results=[_result("a", findings=[_finding("A-1", Priority.P0)])])
    failed = RunReport(results=[_result("a"), _result("b", status=JobStatus.FAILED, error="boom")])

    assert run_exit_code(clean) == 0
    assert run_exit_code(critical) == 1
    assert run_exit_code(failed) == 1


def test_write_summary_outputs_json_and_markdown(tmp_path) -> None:
    report = RunReport(
        results=[
            _result("security", findings=[_finding("S-1", Priority.P0), _finding("S-2", Priority.P2)]),
            _result("perf", status=JobStatus.FAILED, error="timeout"),
        ],
        skipped=["style"],
        duration_seconds=3.5,
    )

    summary = write_summary(tmp_path / "out", report, tmp_path)

    on_disk = json.loads((tmp_path / "out" / "summary.json").read_text("utf-8"))
    assert on_disk["totals"] == {"p0": 1, "p1": 0, "p2": 1}
    assert on_disk["failed"] == ["perf"]
    assert on_disk["skipped"] == ["style"]
    assert on_disk["exit_code"] == 1
    assert summary["reviewers"][1]["reason"] == "timeout"
    markdown = (tmp_path / "out" / "summary.md").read_text("utf-8")
    assert "# polyrev Summary" in markdown
    assert "| Security | success | 1 p0, 0 p1, 1 p2 |" in markdown
    assert "| style | skipped | - |" in markdown
    assert "## Critical Findings (p0)" in markdown


def test_job_result_is_frozen() -> None:
    result = _result("quality")

    with pytest.raises(dataclasses.FrozenInstanceError):
        result.status = JobStatus.FAILED
