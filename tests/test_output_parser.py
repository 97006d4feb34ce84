from __future__ import annotations

import json

import allure
import pytest

from polyrev.parser import NO_STRUCTURED_OUTPUT, ParseOutcome, parse_findings
from polyrev.parser.output import SOURCE_FENCED_JSON, SOURCE_JSON_SPAN, SOURCE_MARKDOWN_TABLE
from polyrev.runner.models import Priority

pytestmark = [
    allure.epic("Review Runtime"),
    allure.feature("Output Parsing"),
]


def _record(record_id: str = "SEC-1", **overrides) -> dict:
    record = {
        "id": record_id,
        "title": "SQL built from user input",
        "priority": "p0",
        "file": "app/db.py",
        "line": 42,
        "description": "Query string is concatenated with request data.",
        "remediation": "Use bound parameters.",
    }
    record.update(overrides)
    return record


def test_fenced_json_block_is_preferred() -> None:
    raw = "Here is my review.\n\n```json\n" + json.dumps([_record()]) + "\n```\nThanks!"

    outcome = parse_findings(raw)

    assert outcome.source == SOURCE_FENCED_JSON
    assert [finding.id for finding in outcome.findings] == ["SEC-1"]
    assert outcome.findings[0].priority == Priority.P0
    assert outcome.findings[0].line == 42
    assert outcome.warnings == []


def test_array_embedded_in_prose_is_extracted() -> None:
    raw = "I reviewed the files. Findings: " + json.dumps([_record()]) + " Let me know."

    outcome = parse_findings(raw)

    assert outcome.source == SOURCE_JSON_SPAN
    assert len(outcome.findings) == 1


def test_first_valid_span_wins_over_later_ones() -> None:
    raw = (
        "Notes {not json at all} and numbers [1, 2, 3]. "
        + json.dumps([_record("A-1")])
        + " and also "
        + json.dumps([_record("B-1")])
    )

    outcome = parse_findings(raw)

    assert [finding.id for finding in outcome.findings] == ["A-1"]


def test_truncated_json_yields_no_structured_output() -> None:
    raw = 'Findings: [{"id": "SEC-1", "title": "SQL built from user input", "file": "app'

    outcome = parse_findings(raw)

    assert outcome.no_structured_output
    assert outcome.source == NO_STRUCTURED_OUTPUT
    assert outcome.findings == []


def test_brackets_inside_string_literals_do_not_break_span_matching() -> None:
    record = _record(description='Index expr `items[0]` and "{braces}" are unchecked ] }')
    raw = "Result -> " + json.dumps([record]) + " <- end"

    outcome = parse_findings(raw)

    assert len(outcome.findings) == 1
    assert outcome.findings[0].description.startswith("Index expr `items[0]`")


def test_record_missing_required_field_is_dropped_with_warning() -> None:
    incomplete = _record("SEC-2")
    del incomplete["remediation"]
    raw = json.dumps([_record("SEC-1"), incomplete])

    outcome = parse_findings(raw)

    assert [finding.id for finding in outcome.findings] == ["SEC-1"]
    assert len(outcome.warnings) == 1
    assert "remediation" in outcome.warnings[0].message
    assert outcome.warnings[0].record_id == "SEC-2"


def test_blank_required_field_counts_as_missing() -> None:
    raw = json.dumps([_record(title="   ")])

    outcome = parse_findings(raw)

    assert outcome.findings == []
    assert "title" in outcome.warnings[0].message


def test_recommendation_is_accepted_for_remediation() -> None:
    record = _record()
    record["recommendation"] = record.pop("remediation")

    outcome = parse_findings(json.dumps([record]))

    assert outcome.findings[0].remediation == "Use bound parameters."


def test_single_object_is_treated_as_one_finding() -> None:
    outcome = parse_findings("```json\n" + json.dumps(_record()) + "\n```")

    assert len(outcome.findings) == 1


def test_findings_wrapper_object_is_unwrapped() -> None:
    raw = json.dumps({"summary": "two issues", "findings": [_record("A-1"), _record("A-2")]})

    outcome = parse_findings(raw)

    assert [finding.id for finding in outcome.findings] == ["A-1", "A-2"]


def test_cli_result_envelope_is_unwrapped() -> None:
    inner = "Done.\n```json\n" + json.dumps([_record()]) + "\n```"
    raw = json.dumps({"type": "result", "is_error": False, "result": inner, "session_id": "abc"})

    outcome = parse_findings(raw)

    assert outcome.source == SOURCE_FENCED_JSON
    assert outcome.findings[0].id == "SEC-1"


def test_priority_defaults_and_aliases() -> None:
    missing = _record("A-1")
    del missing["priority"]
    raw = json.dumps([missing, _record("A-2", priority="critical"), _record("A-3", priority="low")])

    outcome = parse_findings(raw, default_priority=Priority.P2)

    assert [finding.priority for finding in outcome.findings] == [Priority.P2, Priority.P0, Priority.P2]
    assert outcome.warnings == []


def test_unknown_priority_falls_back_with_warning() -> None:
    outcome = parse_findings(json.dumps([_record(priority="urgent")]), default_priority=Priority.P1)

    assert outcome.findings[0].priority == Priority.P1
    assert "unknown priority" in outcome.warnings[0].message


def test_duplicate_ids_and_non_objects_are_dropped() -> None:
    raw = json.dumps([_record("A-1"), "stray text", _record("A-1", title="Another")])

    outcome = parse_findings(raw)

    assert [finding.title for finding in outcome.findings] == ["SQL built from user input"]
    messages = [warning.message for warning in outcome.warnings]
    assert any("expected an object" in message for message in messages)
    assert any("duplicate id" in message for message in messages)


def test_empty_array_means_no_findings_without_warnings() -> None:
    outcome = parse_findings("No issues found.\n```json\n[]\n```")

    assert outcome.findings == []
    assert outcome.warnings == []
    assert not outcome.no_structured_output


def test_empty_array_in_prose_does_not_hide_later_findings() -> None:
    raw = "The helper returns [] on empty input.\n" + json.dumps([_record()])

    outcome = parse_findings(raw)

    assert outcome.source == SOURCE_JSON_SPAN
    assert [finding.id for finding in outcome.findings] == ["SEC-1"]
    assert outcome.warnings == []


def test_unrelated_object_in_prose_does_not_hide_later_findings() -> None:
    raw = 'Config sets {"retries": 3} which is low.\n' + json.dumps([_record()])

    outcome = parse_findings(raw)

    assert [finding.id for finding in outcome.findings] == ["SEC-1"]
    assert outcome.warnings == []


def test_bare_empty_array_still_means_no_findings() -> None:
    outcome = parse_findings("Nothing to report: []")

    assert outcome.source == SOURCE_JSON_SPAN
    assert outcome.findings == []
    assert not outcome.no_structured_output


def test_half_open_interval_in_prose_does_not_end_span_scan() -> None:
    raw = "Loop covers [0, n) correctly.\n" + json.dumps([_record()])

    outcome = parse_findings(raw)

    assert outcome.source == SOURCE_JSON_SPAN
    assert [finding.id for finding in outcome.findings] == ["SEC-1"]


def test_markdown_table_is_used_when_no_json_present() -> None:
    raw = "\n".join(
        [
            "| file | line | severity | type | issue | recommendation |",
            "|------|------|----------|------|-------|----------------|",
            "| app/db.py | 42 | high | security | SQL injection | Use bound parameters |",
            "| app/views.py | 7 | low | style | Long function | Split it |",
        ],
    )

    outcome = parse_findings(raw, job_id="sec")

    assert outcome.source == SOURCE_MARKDOWN_TABLE
    assert [finding.id for finding in outcome.findings] == ["SEC-1", "SEC-2"]
    assert outcome.findings[0].priority == Priority.P0
    assert outcome.findings[1].line == 7


def test_optional_fields_are_normalized() -> None:
    record = _record(
        line=0,
        type="security",
        snippet="cursor.execute('SELECT ' +  name)",
        acceptance_criteria=["Query uses parameters", ""],
        references="https://owasp.org/Top10/",
    )

    finding = parse_findings(json.dumps([record])).findings[0]

    assert finding.line is None
    assert finding.type == "security"
    assert finding.acceptance_criteria == ["Query uses parameters"]
    assert finding.references == ["https://owasp.org/Top10/"]


def test_fingerprint_is_stable_across_snippet_whitespace() -> None:
    first = parse_findings(json.dumps([_record(snippet="a  =\n b")])).findings[0]
    second = parse_findings(json.dumps([_record(snippet="a = b")])).findings[0]

    assert first.fingerprint("security") == second.fingerprint("security")
    assert len(first.fingerprint("security")) == 12
    assert first.fingerprint("security") != first.fingerprint("perf")


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "   \n\t",
        "{",
        "}",
        "[[[[",
        "]]]] }}}",
        '{"a": [}',
        "```",
        "```json\n{broken\n```",
        "\x00\xff�",
        "[" * 5000,
        "[" * 3000 + "]" * 3000,
        '"unterminated string [ {',
        json.dumps({"result": 12}),
    ],
)
def test_parser_never_raises_on_garbage(raw: str) -> None:
    outcome = parse_findings(raw)

    assert isinstance(outcome, ParseOutcome)
    assert outcome.findings == []
