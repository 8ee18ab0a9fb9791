"""
Circuit breaker for external AI capabilities.

One breaker instance per capability (embedding, classification, generation)
so a degraded capability never starves the others.

State machine:
- CLOSED: calls run. Failures below the threshold propagate to the caller;
  the failure that reaches the threshold opens the breaker and the caller
  receives the fallback value.
- OPEN: calls are not attempted, the fallback value is returned. Once the
  cooldown since the last failure has elapsed, the next call moves the
  breaker to HALF_OPEN and becomes the trial.
- HALF_OPEN: exactly one trial call runs; concurrent callers get the
  fallback. Success closes the breaker and resets the failure count,
  failure re-opens it and refreshes the failure timestamp.
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Awaitable, Callable, Generic, Optional, Tuple, Type, TypeVar

from agent_router.core.errors import DeliveryFailed
from agent_router.core.logging import get_logger
from agent_router.core.metrics import (
    record_breaker_failure,
    record_breaker_fallback,
    record_breaker_state,
)

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, return fallback
    HALF_OPEN = "half_open"  # Single trial call in flight


@dataclass(frozen=True)
class BreakerResult(Generic[T]):
    """Outcome of a protected call, tagged with whether the fallback was used."""
    value: T
    fallback_used: bool = False


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker for async operations.

    Configuration:
    - failure_threshold: consecutive failures that open the circuit (default 5)
    - cooldown_seconds: time since the last failure before a trial (default 60)
    - call_timeout_seconds: optional per-call timeout, counted as a failure
    - excluded_exceptions: errors that pass through without touching state
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        call_timeout_seconds: Optional[float] = None,
        excluded_exceptions: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")

        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.call_timeout_seconds = call_timeout_seconds
        self.excluded_exceptions = tuple(excluded_exceptions)
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._lock = Lock()
        self._failure_count = 0
        self._last_failure_at: Optional[float] = None
        self._trial_in_flight = False

        record_breaker_state(self.name, self._state.value)

    @property
    def state(self) -> CircuitState:
        """Current state (does not trigger the OPEN -> HALF_OPEN transition)."""
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def _transition(self, new_state: CircuitState) -> None:
        # Caller holds the lock
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        record_breaker_state(self.name, new_state.value)

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"circuit_breaker_{new_state.value}",
            circuit_breaker=self.name,
            previous_state=old_state.value,
            failure_count=self._failure_count,
        )

    def _admit(self) -> bool:
        """Decide whether the next call may run the operation."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                elapsed = (
                    self._clock() - self._last_failure_at
                    if self._last_failure_at is not None
                    else self.cooldown_seconds
                )
                if elapsed < self.cooldown_seconds:
                    return False
                self._transition(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                return True

            # HALF_OPEN: only the trial call runs
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def _record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.OPEN:
                # A straggler admitted before the circuit opened; keep it open
                return
            self._failure_count = 0
            self._trial_in_flight = False
            self._transition(CircuitState.CLOSED)

    def _record_failure(self, exc: BaseException) -> bool:
        """
        Account a failed call.

        Returns:
            True if the caller should receive the fallback instead of the error.
        """
        record_breaker_failure(self.name)
        with self._lock:
            self._failure_count += 1
            self._last_failure_at = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._transition(CircuitState.OPEN)
                return True

            if self._state == CircuitState.OPEN:
                return True

            if self._failure_count >= self.failure_threshold:
                self._transition(CircuitState.OPEN)
                return True

            logger.info(
                "circuit_breaker_failure_recorded",
                circuit_breaker=self.name,
                failure_count=self._failure_count,
                failure_threshold=self.failure_threshold,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

    def _abandon_trial(self) -> None:
        """Trial ended without a verdict (cancelled or excluded error)."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._transition(CircuitState.OPEN)

    async def execute_tagged(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: T,
    ) -> BreakerResult[T]:
        """
        Run an async operation under breaker protection.

        Args:
            operation: Zero-argument callable returning an awaitable
            fallback: Value returned when the call is not attempted or the
                failure is absorbed by the breaker

        Returns:
            BreakerResult with the operation result or the fallback

        Raises:
            The operation's exception while CLOSED and below the threshold,
            and any excluded exception.
        """
        if not self._admit():
            record_breaker_fallback(self.name)
            logger.debug("circuit_breaker_short_circuit", circuit_breaker=self.name)
            return BreakerResult(fallback, fallback_used=True)

        try:
            if self.call_timeout_seconds is not None:
                result = await asyncio.wait_for(operation(), self.call_timeout_seconds)
            else:
                result = await operation()
        except self.excluded_exceptions:
            self._abandon_trial()
            raise
        except Exception as exc:
            if self._record_failure(exc):
                record_breaker_fallback(self.name)
                logger.warning(
                    "circuit_breaker_fallback",
                    circuit_breaker=self.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return BreakerResult(fallback, fallback_used=True)
            raise
        except BaseException:
            self._abandon_trial()
            raise

        self._record_success()
        return BreakerResult(result, fallback_used=False)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: T,
    ) -> T:
        """Run an operation and return its result or the fallback value."""
        result = await self.execute_tagged(operation, fallback)
        return result.value

    def get_metrics(self) -> dict:
        """Get circuit breaker snapshot for monitoring."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "cooldown_seconds": self.cooldown_seconds,
                "last_failure_at": self._last_failure_at,
                "trial_in_flight": self._trial_in_flight,
            }


@dataclass
class CapabilityBreakers:
    """Process-wide breakers, one per external AI capability."""
    embedding: CircuitBreaker
    classification: CircuitBreaker
    generation: CircuitBreaker

    def all(self) -> list:
        return [self.embedding, self.classification, self.generation]


def build_capability_breakers(
    failure_threshold: int = 5,
    cooldown_seconds: float = 60.0,
    clock: Callable[[], float] = time.monotonic,
) -> CapabilityBreakers:
    """
    Build independent breakers for each capability.

    The generation breaker ignores DeliveryFailed: a send failure while
    streaming says nothing about the health of the generation service.
    """
    return CapabilityBreakers(
        embedding=CircuitBreaker(
            "embedding",
            failure_threshold=failure_threshold,
            cooldown_seconds=cooldown_seconds,
            clock=clock,
        ),
        classification=CircuitBreaker(
            "classification",
            failure_threshold=failure_threshold,
            cooldown_seconds=cooldown_seconds,
            clock=clock,
        ),
        generation=CircuitBreaker(
            "generation",
            failure_threshold=failure_threshold,
            cooldown_seconds=cooldown_seconds,
            excluded_exceptions=(DeliveryFailed,),
            clock=clock,
        ),
    )
