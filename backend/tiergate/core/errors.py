"""
Error taxonomy for the routing core.

- ProviderTransientError: network / timeout / 5xx / rate limit. Retried by
  RetryExecutor and counted by CircuitBreaker.
- ProviderTerminalError: bad request, auth failure, unusable payload. Never
  retried; the orchestrator escalates or fails.
- CircuitOpenError: provider gated; fails fast without using retry budget.
- RetryExhaustedError: wraps the last transient error; triggers escalation.
- InsufficientDataError: experiment has too little data; defers optimization.

Only exhaustion of every tier reaches the caller, as TierRoutingError or
RequestTimeoutError.
"""
from typing import List, Optional


class TierGateError(Exception):
    """Base class for all routing-core errors."""


class ProviderError(TierGateError):
    """An AI provider call failed."""

    def __init__(
        self,
        message: str,
        provider_id: Optional[str] = None,
        tier: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.provider_id = provider_id
        self.tier = tier
        self.status_code = status_code


class ProviderTransientError(ProviderError):
    """Retryable provider failure (timeout, connection error, 5xx, 429)."""


class ProviderTerminalError(ProviderError):
    """Non-retryable provider failure (4xx, auth, malformed payload)."""


class CircuitOpenError(TierGateError):
    """Raised when a provider's circuit is open and the call is rejected."""

    def __init__(self, provider_id: str, retry_after: float = 0.0):
        super().__init__(
            f"Circuit breaker is OPEN for {provider_id}. "
            f"Retry after {retry_after:.1f} seconds."
        )
        self.provider_id = provider_id
        self.retry_after = retry_after


class RetryExhaustedError(TierGateError):
    """All retry attempts failed with transient errors."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"Operation '{operation}' failed after {attempts} attempts")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class InsufficientDataError(TierGateError):
    """Not enough samples to evaluate an experiment."""

    def __init__(self, experiment_id: str, min_sample_size: int, required: int):
        super().__init__(
            f"Experiment {experiment_id} has {min_sample_size} samples in its "
            f"smallest variant, {required} required"
        )
        self.experiment_id = experiment_id
        self.min_sample_size = min_sample_size
        self.required = required


class ExperimentValidationError(TierGateError, ValueError):
    """Experiment definition rejected by the parameter registry."""


class ExperimentNotFoundError(TierGateError, LookupError):
    """No experiment with the given id."""


class RequestTimeoutError(TierGateError):
    """The request deadline passed before an acceptable answer was found."""

    def __init__(self, message: str, escalation_chain: Optional[List[int]] = None):
        super().__init__(message)
        self.escalation_chain = list(escalation_chain or [])


class TierRoutingError(TierGateError):
    """Every eligible tier failed; carries the last tier and provider error."""

    def __init__(
        self,
        message: str,
        last_tier: Optional[int],
        last_error: Optional[BaseException],
        escalation_chain: Optional[List[int]] = None,
    ):
        super().__init__(message)
        self.last_tier = last_tier
        self.last_error = last_error
        self.escalation_chain = list(escalation_chain or [])
