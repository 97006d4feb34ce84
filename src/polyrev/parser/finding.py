"""Finding record extracted from agent output."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any

from polyrev.runner.models import Priority

REQUIRED_FIELDS: tuple[str, ...] = ("id", "title", "file", "description", "remediation")


@dataclass(slots=True)
class Finding:
    """One structured issue reported by a reviewer."""

    id: str
    title: str
    file: str
    description: str
    remediation: str
    priority: Priority = Priority.P1
    type: str = ""
    line: int | None = None
    snippet: str | None = None
    acceptance_criteria: list[str] = field(default_factory=list)
    references: list[str] = field(default_factory=list)

    def normalized_snippet(self) -> str:
        """Snippet with whitespace runs collapsed, stable across runs."""

        return " ".join((self.snippet or "").split())

    def fingerprint(self, job_id: str) -> str:
        """Deterministic 12-char fingerprint used for downstream deduplication."""

        raw = "|".join(
            (
                job_id,
                self.file,
                str(self.line or 0),
                self.type,
                self.normalized_snippet(),
            ),
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:12]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "priority": self.priority.value,
            "file": self.file,
            "description": self.description,
            "remediation": self.remediation,
        }
        if self.type:
            payload["type"] = self.type
        if self.line is not None:
            payload["line"] = self.line
        if self.snippet is not None:
            payload["snippet"] = self.snippet
        if self.acceptance_criteria:
            payload["acceptance_criteria"] = list(self.acceptance_criteria)
        if self.references:
            payload["references"] = list(self.references)
        return payload
