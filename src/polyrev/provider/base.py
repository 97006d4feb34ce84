"""Provider client interface for chunk execution."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True)
class ProviderRequest:
    """Inputs required to execute one chunk attempt."""

    prompt: str
    files: tuple[str, ...]
    timeout_seconds: float
    session_token: str | None = None
    chunk_sequence: int = 0
    total_chunks: int = 1
    prompt_ref: str = ""


@dataclass(slots=True)
class ProviderResponse:
    """Successful execution output.

    ``session_token`` is the continuity handle for the next chunk of the same
    job; ``None`` means the provider issued no new token.
    """

    raw_output: str
    session_token: str | None = None
    stderr: str = ""
    exit_code: int = 0
    duration_seconds: float = 0.0


class ProviderClient(Protocol):
    """Protocol implemented by provider runners.

    Implementations raise ``polyrev.errors.ProviderError`` subclasses on
    failure and must enforce ``request.timeout_seconds`` themselves.
    """

    name: str

    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        """Run one chunk attempt and return its raw output."""
