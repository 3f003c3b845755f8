"""
Bounded retry with exponential backoff and jitter.

Delay before retry n (n >= 1): base_delay * 2 ** (n - 1), clamped to
max_delay, then randomized by ±jitter (default 30%). Only transient provider
errors are retried; everything else propagates on the first occurrence.
Total attempts = 1 + max_retries.
"""
import asyncio
import random
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from tiergate.core.errors import ProviderTransientError, RetryExhaustedError
from tiergate.core.logging import get_logger
from tiergate.core.metrics import record_retry, record_retry_exhausted

logger = get_logger(__name__)

DEFAULT_RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (ProviderTransientError,)


class RetryExecutor:
    """Runs an async operation with bounded retries."""

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 32.0,
        jitter: float = 0.3,
        retryable_errors: Tuple[Type[BaseException], ...] = DEFAULT_RETRYABLE_ERRORS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        if not 0.0 <= jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.retryable_errors = retryable_errors
        self._sleep = sleep
        self._rng = rng or random.Random()

    def backoff_delay(
        self,
        attempt: int,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
    ) -> float:
        """Un-jittered delay before retry `attempt` (1-based)."""
        base = self.base_delay if base_delay is None else base_delay
        cap = self.max_delay if max_delay is None else max_delay
        return min(base * (2 ** (attempt - 1)), cap)

    def compute_delay(
        self,
        attempt: int,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
    ) -> float:
        delay = self.backoff_delay(attempt, base_delay, max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay += self._rng.uniform(-spread, spread)
        return max(delay, 0.0)

    def is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, self.retryable_errors)

    async def execute(
        self,
        operation_name: str,
        func: Callable[[], Awaitable[Any]],
        max_retries: int = 3,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
    ) -> Any:
        """
        Run `func` until it succeeds or the retry budget is spent.

        Args:
            operation_name: Label for logs and metrics
            func: Zero-argument coroutine function
            max_retries: Retries after the initial attempt
            base_delay: Per-call override of the backoff base
            max_delay: Per-call override of the backoff cap

        Raises:
            RetryExhaustedError wrapping the last transient error, or the first
            non-retryable error unchanged.
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        total_attempts = max_retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(1, total_attempts + 1):
            try:
                return await func()
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                last_error = e

            if attempt >= total_attempts:
                break

            delay = self.compute_delay(attempt, base_delay, max_delay)
            record_retry(operation_name)
            logger.warning(
                "retry_scheduled",
                operation=operation_name,
                attempt=attempt,
                max_attempts=total_attempts,
                delay_seconds=round(delay, 3),
                error=str(last_error),
                error_type=type(last_error).__name__,
            )
            await self._sleep(delay)

        record_retry_exhausted(operation_name)
        logger.error(
            "retry_exhausted",
            operation=operation_name,
            attempts=total_attempts,
            error=str(last_error),
            error_type=type(last_error).__name__,
        )
        raise RetryExhaustedError(operation_name, total_attempts, last_error)
