"""Error taxonomy shared by config, planning and provider layers."""

from __future__ import annotations

from polyrev.runner.models import FailureClass


class PolyrevError(Exception):
    """Base class for all polyrev errors."""


class ConfigError(PolyrevError, ValueError):
    """Configuration is missing or invalid; aborts before scheduling."""


class DiscoveryError(PolyrevError):
    """File discovery failed for a reviewer scope."""


class ChunkPlanningError(PolyrevError):
    """Job file set cannot be planned into chunks (fatal for one job)."""


class PromptLoadError(PolyrevError):
    """Prompt referenced by a job cannot be loaded (fatal for one job)."""


class ProviderError(PolyrevError):
    """Provider invocation failed; carries a normalized failure class."""

    default_failure_class = FailureClass.PROVIDER_NON_RETRYABLE

    def __init__(
        self,
        message: str,
        *,
        failure_class: FailureClass | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.failure_class = failure_class or self.default_failure_class
        self.exit_code = exit_code
        self.stderr = stderr

    @property
    def transient(self) -> bool:
        return self.failure_class.retryable


class ProviderSpawnError(ProviderError):
    """Process could not be started for a reason that may clear up."""

    default_failure_class = FailureClass.SPAWN_ERROR


class ProviderTimeout(ProviderError):
    """Process exceeded its timeout and was terminated."""

    default_failure_class = FailureClass.TIMEOUT

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Execution timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class ProviderTransientError(ProviderError):
    """Non-zero exit with recognizable transient markers."""

    default_failure_class = FailureClass.PROVIDER_TRANSIENT


class ProviderFatalError(ProviderError):
    """Auth failure, malformed invocation or missing binary; never retried."""

    default_failure_class = FailureClass.PROVIDER_NON_RETRYABLE
