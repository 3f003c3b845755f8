"""
Per-provider circuit breaker.

- Consecutive-failure gate: `failure_threshold` failures in a row open the
  circuit (default 5, tunable at runtime).
- Open duration: `cooldown_seconds` (default 60s), then half-open.
- Half-open: a single probe call is let through; success closes the circuit,
  failure reopens it.

One ProviderCircuit exists per provider and is shared by every concurrent
caller. Its lock is held only for state transitions, never across the call.
When a shared key-value store is attached, opening a circuit also publishes a
cool-down key so other processes fail fast for the same provider.
"""
import time
from enum import Enum
from threading import Lock
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from tiergate.core.errors import CircuitOpenError
from tiergate.core.logging import get_logger
from tiergate.core.metrics import record_circuit_rejection, update_circuit_state

if TYPE_CHECKING:
    from tiergate.core.kv_store import KeyValueStore

logger = get_logger(__name__)

SHARED_OPEN_KEY = "circuit:open:{provider}"


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Probing recovery


class ProviderCircuit:
    """Mutable circuit state for a single provider."""

    def __init__(
        self,
        provider_id: str,
        failure_threshold: int,
        cooldown_seconds: float,
        clock: Callable[[], float],
    ):
        self.provider_id = provider_id
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return self._state

    def _refresh(self) -> None:
        """Move open → half-open once the cool-down has elapsed (lock held)."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self.cooldown_seconds:
            self._state = CircuitState.HALF_OPEN
            self._probe_in_flight = False
            update_circuit_state(self.provider_id, self._state.value)
            logger.info(
                "circuit_breaker_half_open",
                provider=self.provider_id,
                state="half_open",
            )

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        remaining = self.cooldown_seconds - (self._clock() - self._opened_at)
        return max(remaining, 0.0)

    def acquire(self) -> None:
        """
        Admit a call or raise CircuitOpenError.

        In half-open state only one probe may be in flight at a time.
        """
        with self._lock:
            self._refresh()
            if self._state == CircuitState.OPEN:
                raise CircuitOpenError(self.provider_id, self._retry_after())
            if self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpenError(self.provider_id, 0.0)
                self._probe_in_flight = True

    def release(self) -> None:
        """Give back a half-open probe slot that ended without a result."""
        with self._lock:
            self._probe_in_flight = False

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._probe_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._state = CircuitState.CLOSED
                self._opened_at = None
                update_circuit_state(self.provider_id, self._state.value)
                logger.info("circuit_breaker_closed", provider=self.provider_id)

    def record_failure(self, error: BaseException) -> bool:
        """
        Count a failure.

        Returns:
            True if this failure opened (or reopened) the circuit
        """
        with self._lock:
            self._consecutive_failures += 1
            self._probe_in_flight = False
            should_open = self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.failure_threshold
            )
            if not should_open:
                logger.debug(
                    "circuit_breaker_failure",
                    provider=self.provider_id,
                    failures=self._consecutive_failures,
                    threshold=self.failure_threshold,
                    error_type=type(error).__name__,
                )
                return False

            reopened = self._state == CircuitState.HALF_OPEN
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            update_circuit_state(self.provider_id, self._state.value)
            logger.warning(
                "circuit_breaker_reopened" if reopened else "circuit_breaker_opened",
                provider=self.provider_id,
                failures=self._consecutive_failures,
                threshold=self.failure_threshold,
                error=str(error),
                error_type=type(error).__name__,
            )
            return True

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None
            self._probe_in_flight = False
            update_circuit_state(self.provider_id, self._state.value)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            self._refresh()
            return {
                "provider": self.provider_id,
                "state": self._state.value,
                "failure_count": self._consecutive_failures,
                "failure_threshold": self.failure_threshold,
                "opened_at": self._opened_at,
                "seconds_until_retry": (
                    self._retry_after() if self._state == CircuitState.OPEN else None
                ),
            }


class CircuitBreaker:
    """
    Registry of per-provider circuits.

    Usage:
        breaker = CircuitBreaker(failure_threshold=5, cooldown_seconds=60)
        result = await breaker.call("openrouter-tier1", invoke_provider)
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        store: Optional["KeyValueStore"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.store = store
        self._clock = clock
        self._circuits: Dict[str, ProviderCircuit] = {}
        self._registry_lock = Lock()

    def _circuit(self, provider_id: str) -> ProviderCircuit:
        with self._registry_lock:
            circuit = self._circuits.get(provider_id)
            if circuit is None:
                circuit = ProviderCircuit(
                    provider_id,
                    failure_threshold=self.failure_threshold,
                    cooldown_seconds=self.cooldown_seconds,
                    clock=self._clock,
                )
                self._circuits[provider_id] = circuit
                update_circuit_state(provider_id, CircuitState.CLOSED.value)
            return circuit

    def state(self, provider_id: str) -> CircuitState:
        return self._circuit(provider_id).state

    def set_failure_threshold(self, failure_threshold: int) -> None:
        """Apply a new threshold to existing and future circuits."""
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        with self._registry_lock:
            self.failure_threshold = failure_threshold
            circuits = list(self._circuits.values())
        for circuit in circuits:
            circuit.failure_threshold = failure_threshold

    async def _shared_open(self, provider_id: str) -> bool:
        if self.store is None:
            return False
        return await self.store.exists(SHARED_OPEN_KEY.format(provider=provider_id))

    async def _publish_open(self, provider_id: str) -> None:
        if self.store is None:
            return
        await self.store.set(
            SHARED_OPEN_KEY.format(provider=provider_id),
            self._clock(),
            ttl=max(int(self.cooldown_seconds), 1),
        )

    async def call(self, provider_id: str, func: Callable, *args, **kwargs) -> Any:
        """
        Execute an async function with circuit breaker protection.

        Returns:
            The function's result
        Raises:
            CircuitOpenError if the circuit is open (func is not called)
        """
        circuit = self._circuit(provider_id)
        try:
            circuit.acquire()
        except CircuitOpenError:
            record_circuit_rejection(provider_id)
            raise

        if circuit.state == CircuitState.CLOSED and await self._shared_open(provider_id):
            record_circuit_rejection(provider_id)
            raise CircuitOpenError(provider_id, self.cooldown_seconds)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if circuit.record_failure(e):
                await self._publish_open(provider_id)
            raise
        except BaseException:
            # Cancellation: no verdict on provider health.
            circuit.release()
            raise
        circuit.record_success()
        return result

    def status(self, provider_id: str) -> Dict[str, Any]:
        """Read-only snapshot: state, failure_count, opened_at, seconds_until_retry."""
        return self._circuit(provider_id).snapshot()

    def all_statuses(self) -> Dict[str, Dict[str, Any]]:
        with self._registry_lock:
            circuits = list(self._circuits.values())
        return {circuit.provider_id: circuit.snapshot() for circuit in circuits}

    async def reset(self, provider_id: str) -> None:
        """Manually close a circuit (also clears the shared cool-down key)."""
        self._circuit(provider_id).reset()
        if self.store is not None:
            await self.store.delete(SHARED_OPEN_KEY.format(provider=provider_id))
        logger.info("circuit_breaker_reset", provider=provider_id)
