"""Shared test fixtures."""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from polyrev.provider.base import ProviderRequest, ProviderResponse

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m polyrev.provider.echo_agent --prompt-file {{prompt_file}}"
)

Step = ProviderResponse | Exception | Callable[[ProviderRequest], ProviderResponse]


class ScriptedProvider:
    """Provider fake that replays one scripted step per invocation.

    A step is a response to return, an exception to raise or a callable
    producing a response. The last step repeats once the script runs out.
    """

    name = "scripted"

    def __init__(self, steps: list[Step]) -> None:
        self.steps = list(steps)
        self.requests: list[ProviderRequest] = []
        self._lock = threading.Lock()

    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        with self._lock:
            index = len(self.requests)
            self.requests.append(request)
            step = self.steps[min(index, len(self.steps) - 1)]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(request)
        return step


class FakeClock:
    """Mutable clock for idempotency and attempt timestamps."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2025, 3, 14, 9, 30, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def scripted_provider() -> type[ScriptedProvider]:
    return ScriptedProvider


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def echo_command_template() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE
