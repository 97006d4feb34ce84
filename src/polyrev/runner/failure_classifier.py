"""Deterministic classification of non-zero provider exits for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from polyrev.runner.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1
DEFAULT_TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
    "please run /login",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_INVALID_INVOCATION_PATTERNS: tuple[str, ...] = (
    "unknown option",
    "unexpected argument",
    "unrecognized arguments",
    "invalid value for",
    "usage:",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "stream disconnected",
    "could not resolve host",
    "timed out",
    "502 bad gateway",
    "503 service unavailable",
)


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class.retryable


def classify_provider_failure(
    *,
    provider: str,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
) -> ProviderFailureClassification:
    """Classify a non-timeout provider failure into a deterministic retry class.

    Non-retryable rules win over transient ones: an auth error that also
    mentions "please retry" must not be retried.
    """

    haystack = f"{stderr}\n{stdout}".lower()

    ordered_rules: tuple[tuple[str, tuple[str, ...], FailureClass], ...] = (
        ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS, FailureClass.BILLING_OR_QUOTA),
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, FailureClass.ACCESS_OR_AUTH),
        ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS, FailureClass.MODEL_NOT_AVAILABLE),
        ("invalid_invocation", _INVALID_INVOCATION_PATTERNS, FailureClass.INVALID_INVOCATION),
        ("rate_limit_transient", _RATE_LIMIT_TRANSIENT_PATTERNS, FailureClass.PROVIDER_TRANSIENT),
    )
    for rule, patterns, failure_class in ordered_rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ProviderFailureClassification(
                failure_class=failure_class,
                reason_code=f"{provider}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return ProviderFailureClassification(
            failure_class=FailureClass.PROVIDER_TRANSIENT,
            reason_code=f"{provider}_provider_transient",
            matched_rule=(
                "transient_exit_code"
                if exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return ProviderFailureClassification(
        failure_class=FailureClass.PROVIDER_NON_RETRYABLE,
        reason_code=f"{provider}_provider_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
