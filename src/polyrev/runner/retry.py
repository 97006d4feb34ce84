"""Retry decisions for chunk invocations.

The policy is pure: it decides whether another attempt is allowed and how
long to wait before it. Sleeping and invoking the provider are the caller's
job.
"""

from __future__ import annotations

from dataclasses import dataclass

from polyrev.runner.models import FailureClass


@dataclass(frozen=True, slots=True)
class RetryDecision:
    """Whether to retry after a failed attempt, and the delay before it."""

    retry: bool
    delay_seconds: float
    reason: str


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff for transient failures, no retry for fatal ones."""

    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if self.backoff_base_seconds < 0:
            raise ValueError("backoff_base_seconds must be >= 0.")
        if self.backoff_max_seconds is not None and self.backoff_max_seconds < 0:
            raise ValueError("backoff_max_seconds must be >= 0.")

    def backoff_seconds(self, attempt_no: int) -> float:
        """Delay after failed attempt ``attempt_no`` (1-based): base * 2^(n-1)."""

        delay = self.backoff_base_seconds * (2 ** max(attempt_no - 1, 0))
        if self.backoff_max_seconds is not None:
            return min(delay, self.backoff_max_seconds)
        return delay

    def decide(self, *, attempt_no: int, failure_class: FailureClass) -> RetryDecision:
        if not failure_class.retryable:
            return RetryDecision(
                retry=False,
                delay_seconds=0.0,
                reason=f"non_retryable:{failure_class.value}",
            )
        if attempt_no >= self.max_attempts:
            return RetryDecision(
                retry=False,
                delay_seconds=0.0,
                reason="max_attempts_exhausted",
            )
        return RetryDecision(
            retry=True,
            delay_seconds=self.backoff_seconds(attempt_no),
            reason=f"transient:{failure_class.value}",
        )
