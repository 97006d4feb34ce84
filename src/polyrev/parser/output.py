"""Best-effort extraction of findings from free-form agent stdout.

Agents are asked for a JSON array of findings but routinely wrap it in prose,
markdown fences or a CLI envelope. Extraction never raises: malformed input
yields either a (possibly empty) finding list with per-record warnings or the
``no_structured_output`` signal.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from polyrev.parser.finding import REQUIRED_FIELDS, Finding
from polyrev.parser.markdown import parse_markdown_table
from polyrev.runner.models import Priority

OUTPUT_PARSER_VERSION = "v1"

SOURCE_FENCED_JSON = "fenced_json"
SOURCE_JSON_SPAN = "json_span"
SOURCE_MARKDOWN_TABLE = "markdown_table"
NO_STRUCTURED_OUTPUT = "no_structured_output"

_FENCED_BLOCK = re.compile(r"```[A-Za-z0-9_+-]*[ \t]*\n?(.*?)```", re.DOTALL)
_CLOSERS = {"[": "]", "{": "}"}
_SPAN_UNCLOSED = -1
_SPAN_MISMATCHED = -2
_JSON_VALUE_STARTS = frozenset("{[\"]}")
_FINDING_KEYS = frozenset((*REQUIRED_FIELDS, "recommendation"))


@dataclass(slots=True)
class ParseWarning:
    """Per-record validation problem; never escalates to job failure."""

    message: str
    index: int | None = None
    record_id: str | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class ParseOutcome:
    """Validated findings plus warnings and where they were found."""

    findings: list[Finding] = field(default_factory=list)
    warnings: list[ParseWarning] = field(default_factory=list)
    source: str = NO_STRUCTURED_OUTPUT

    @property
    def no_structured_output(self) -> bool:
        return self.source == NO_STRUCTURED_OUTPUT


def parse_findings(
    raw: str,
    *,
    default_priority: Priority = Priority.P1,
    job_id: str | None = None,
) -> ParseOutcome:
    """Extract validated findings from raw agent output."""

    text = _unwrap_envelope(raw or "")
    payload, source = _locate_payload(text)
    if payload is None:
        table = parse_markdown_table(
            text,
            job_id=job_id or "finding",
            default_priority=default_priority,
        )
        if table:
            return ParseOutcome(findings=table, source=SOURCE_MARKDOWN_TABLE)
        return ParseOutcome(source=NO_STRUCTURED_OUTPUT)

    findings, warnings = _validate_candidates(
        _normalize_candidates(payload),
        default_priority=default_priority,
    )
    return ParseOutcome(findings=findings, warnings=warnings, source=source)


def _unwrap_envelope(text: str) -> str:
    """Return the ``result`` text of a CLI JSON envelope, or the text itself."""

    stripped = text.strip()
    if not stripped.startswith("{"):
        return text
    parsed = _try_load(stripped)
    if isinstance(parsed, dict) and isinstance(parsed.get("result"), str):
        return parsed["result"]
    return text


def _locate_payload(text: str) -> tuple[Any, str]:
    # A bare empty array only counts when nothing later holds findings.
    empty: tuple[Any, str] | None = None
    for match in _FENCED_BLOCK.finditer(text):
        payload = _try_load(match.group(1).strip())
        if _is_findings_payload(payload):
            return payload, SOURCE_FENCED_JSON
        if empty is None and payload == []:
            empty = (payload, SOURCE_FENCED_JSON)

    for span in _iter_balanced_spans(text):
        payload = _try_load(span)
        if _is_findings_payload(payload):
            return payload, SOURCE_JSON_SPAN
        if empty is None and payload == []:
            empty = (payload, SOURCE_JSON_SPAN)

    return empty or (None, NO_STRUCTURED_OUTPUT)


def _try_load(raw: str) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (ValueError, RecursionError):
        return None


def _is_findings_payload(payload: Any) -> bool:
    if isinstance(payload, dict):
        if isinstance(payload.get("findings"), list):
            return True
        return any(key in payload for key in _FINDING_KEYS)
    if isinstance(payload, list):
        return any(isinstance(item, dict) for item in payload)
    return False


def _iter_balanced_spans(text: str) -> Iterator[str]:
    """Yield top-level ``[...]``/``{...}`` spans in order of appearance.

    Brackets inside JSON string literals are ignored. An unclosed opener that
    starts a JSON value ends the scan: everything after it belongs to a
    truncated value. Other unclosed openers, like ``[0, n)``, are skipped.
    """

    index = 0
    while True:
        start = _next_opener(text, index)
        if start == -1:
            return
        end = _match_span(text, start)
        if end == _SPAN_UNCLOSED:
            if _opens_json_value(text, start):
                return
            index = start + 1
            continue
        if end == _SPAN_MISMATCHED:
            index = start + 1
            continue
        yield text[start : end + 1]
        index = end + 1


def _opens_json_value(text: str, start: int) -> bool:
    rest = text[start + 1 :].lstrip()
    return bool(rest) and rest[0] in _JSON_VALUE_STARTS


def _next_opener(text: str, index: int) -> int:
    positions = [pos for pos in (text.find("[", index), text.find("{", index)) if pos != -1]
    return min(positions) if positions else -1


def _match_span(text: str, start: int) -> int:
    expected: list[str] = []
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        char = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            expected.append(_CLOSERS[char])
        elif char in "]}":
            if char != expected[-1]:
                return _SPAN_MISMATCHED
            expected.pop()
            if not expected:
                return pos
    return _SPAN_UNCLOSED


def _normalize_candidates(payload: Any) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("findings"), list):
        return payload["findings"]
    return [payload]


def _validate_candidates(
    candidates: list[Any],
    *,
    default_priority: Priority,
) -> tuple[list[Finding], list[ParseWarning]]:
    findings: list[Finding] = []
    warnings: list[ParseWarning] = []
    seen_ids: set[str] = set()

    for index, item in enumerate(candidates):
        if not isinstance(item, dict):
            warnings.append(
                ParseWarning(
                    message=f"Record {index} dropped: expected an object, got {type(item).__name__}",
                    index=index,
                ),
            )
            continue

        finding, record_warnings = _build_finding(item, index=index, default_priority=default_priority)
        warnings.extend(record_warnings)
        if finding is None:
            continue
        if finding.id in seen_ids:
            warnings.append(
                ParseWarning(
                    message=f"Record {index} dropped: duplicate id {finding.id!r}",
                    index=index,
                    record_id=finding.id,
                ),
            )
            continue
        seen_ids.add(finding.id)
        findings.append(finding)

    return findings, warnings


def _build_finding(
    record: dict[str, Any],
    *,
    index: int,
    default_priority: Priority,
) -> tuple[Finding | None, list[ParseWarning]]:
    values = {name: _text(record.get(name)) for name in REQUIRED_FIELDS}
    if values["remediation"] is None:
        values["remediation"] = _text(record.get("recommendation"))
    record_id = values["id"]

    missing = [name for name, value in values.items() if value is None]
    if missing:
        label = f"{index} ({record_id})" if record_id else str(index)
        return None, [
            ParseWarning(
                message=f"Record {label} dropped: missing required field(s): {', '.join(missing)}",
                index=index,
                record_id=record_id,
            ),
        ]

    warnings: list[ParseWarning] = []
    priority = default_priority
    raw_priority = record.get("priority")
    if raw_priority is not None:
        parsed = Priority.parse(raw_priority)
        if parsed is None:
            warnings.append(
                ParseWarning(
                    message=(
                        f"Record {index} ({record_id}): unknown priority {raw_priority!r}, "
                        f"using {default_priority.value}"
                    ),
                    index=index,
                    record_id=record_id,
                ),
            )
        else:
            priority = parsed

    return (
        Finding(
            id=values["id"],
            title=values["title"],
            file=values["file"],
            description=values["description"],
            remediation=values["remediation"],
            priority=priority,
            type=_text(record.get("type")) or _text(record.get("finding_type")) or "",
            line=_line(record.get("line")),
            snippet=record["snippet"] if isinstance(record.get("snippet"), str) else None,
            acceptance_criteria=_string_list(record.get("acceptance_criteria")),
            references=_string_list(record.get("references")),
        ),
        warnings,
    )


def _text(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, int | float):
        return str(value)
    return None


def _line(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [text for text in (_text(item) for item in value) if text is not None]
