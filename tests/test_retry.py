from __future__ import annotations

import allure
import pytest

from polyrev.runner.models import FailureClass
from polyrev.runner.retry import RetryPolicy

pytestmark = [
    allure.epic("Review Runtime"),
    allure.feature("Retry Policy"),
]


def test_backoff_doubles_per_attempt() -> None:
    policy = RetryPolicy(max_attempts=5, backoff_base_seconds=1.5)

    assert [policy.backoff_seconds(n) for n in (1, 2, 3, 4)] == [1.5, 3.0, 6.0, 12.0]


def test_backoff_is_capped() -> None:
    policy = RetryPolicy(max_attempts=10, backoff_base_seconds=1.0, backoff_max_seconds=5.0)

    assert policy.backoff_seconds(2) == 2.0
    assert policy.backoff_seconds(8) == 5.0


@pytest.mark.parametrize(
    "failure_class",
    [FailureClass.TIMEOUT, FailureClass.SPAWN_ERROR, FailureClass.PROVIDER_TRANSIENT],
)
def test_transient_failures_retry_until_max_attempts(failure_class: FailureClass) -> None:
    policy = RetryPolicy(max_attempts=3, backoff_base_seconds=1.0)

    first = policy.decide(attempt_no=1, failure_class=failure_class)
    second = policy.decide(attempt_no=2, failure_class=failure_class)
    third = policy.decide(attempt_no=3, failure_class=failure_class)

    assert (first.retry, first.delay_seconds) == (True, 1.0)
    assert (second.retry, second.delay_seconds) == (True, 2.0)
    assert third.retry is False
    assert third.reason == "max_attempts_exhausted"


@pytest.mark.parametrize(
    "failure_class",
    [
        FailureClass.PROVIDER_NON_RETRYABLE,
        FailureClass.ACCESS_OR_AUTH,
        FailureClass.BILLING_OR_QUOTA,
        FailureClass.MODEL_NOT_AVAILABLE,
        FailureClass.BINARY_MISSING,
        FailureClass.INVALID_INVOCATION,
    ],
)
def test_fatal_failures_never_retry(failure_class: FailureClass) -> None:
    decision = RetryPolicy(max_attempts=5).decide(attempt_no=1, failure_class=failure_class)

    assert decision.retry is False
    assert decision.reason == f"non_retryable:{failure_class.value}"


def test_single_attempt_policy_never_retries() -> None:
    decision = RetryPolicy(max_attempts=1).decide(
        attempt_no=1,
        failure_class=FailureClass.TIMEOUT,
    )

    assert decision.retry is False


def test_policy_rejects_invalid_arguments() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError, match="backoff_base_seconds"):
        RetryPolicy(backoff_base_seconds=-1)
