"""Fallback parser for findings rendered as a markdown table."""

from __future__ import annotations

import re

from polyrev.parser.finding import Finding
from polyrev.runner.models import Priority

# | file | line | severity | type | issue | recommendation |
_TABLE_ROW = re.compile(
    r"^\|\s*([^|]+?)\s*\|\s*(\d+)\s*\|\s*(p[012]|critical|high|medium|low)\s*\|"
    r"\s*([^|]+?)\s*\|\s*([^|]+?)\s*\|\s*([^|]+?)\s*\|",
    re.MULTILINE | re.IGNORECASE,
)


def parse_markdown_table(
    raw: str,
    *,
    job_id: str,
    default_priority: Priority,
) -> list[Finding]:
    """Parse table rows into findings with generated ``<JOB>-<n>`` ids."""

    findings: list[Finding] = []
    for match in _TABLE_ROW.finditer(raw):
        file, line, severity, finding_type, issue, recommendation = (
            group.strip() for group in match.groups()
        )
        if file.lower() == "file":
            continue
        findings.append(
            Finding(
                id=f"{job_id.upper()}-{len(findings) + 1}",
                title=issue,
                file=file,
                description=issue,
                remediation=recommendation,
                priority=Priority.parse(severity) or default_priority,
                type=finding_type,
                line=int(line) or None,
            ),
        )
    return findings
