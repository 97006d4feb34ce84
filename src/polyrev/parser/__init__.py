"""Finding extraction from agent output."""

from polyrev.parser.finding import REQUIRED_FIELDS, Finding
from polyrev.parser.output import (
    NO_STRUCTURED_OUTPUT,
    ParseOutcome,
    ParseWarning,
    parse_findings,
)

__all__ = [
    "NO_STRUCTURED_OUTPUT",
    "REQUIRED_FIELDS",
    "Finding",
    "ParseOutcome",
    "ParseWarning",
    "parse_findings",
]
