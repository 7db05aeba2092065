"""
Circuit breaker guarding calls to the record store.

When the store stops answering, every telemetry report would otherwise
wait for a full request timeout on each of its writes. The breaker opens
after a run of consecutive failures so that later calls fail immediately,
then lets a single trial call through once the recovery timeout has passed.

States:
- CLOSED: Normal operation, calls pass through
- OPEN: Calls are rejected with CircuitOpenException
- HALF_OPEN: One trial call decides between CLOSED and OPEN
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """
    Circuit breaker states.

    - CLOSED -> OPEN: After failure_threshold consecutive failures
    - OPEN -> HALF_OPEN: After recovery_timeout seconds
    - HALF_OPEN -> CLOSED: On a successful trial call
    - HALF_OPEN -> OPEN: On a failed trial call
    """
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """
    Configuration for a circuit breaker.

    Attributes:
        failure_threshold: Consecutive failures before the circuit opens
        recovery_timeout: Seconds to wait before allowing a trial call
        half_open_max_calls: Concurrent trial calls allowed while half-open
    """
    failure_threshold: int = 3
    recovery_timeout: float = 30.0
    half_open_max_calls: int = 1


class CircuitOpenException(Exception):
    """Raised instead of calling the store while the circuit is open."""

    def __init__(self, circuit_name: str, retry_in_seconds: Optional[float] = None):
        self.circuit_name = circuit_name
        self.retry_in_seconds = retry_in_seconds

        message = f"Circuit breaker '{circuit_name}' is open"
        if retry_in_seconds is not None:
            message += f", retry in {int(retry_in_seconds)} seconds"

        super().__init__(message)


class CircuitBreaker:
    """
    Async circuit breaker.

    Example:
        breaker = CircuitBreaker("record_store")
        result = await breaker.execute(do_search)

    Args:
        name: Name used in logs and error details
        config: Thresholds; defaults to CircuitBreakerConfig()
        clock: Monotonic time source in seconds, injectable for tests
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _retry_in(self) -> Optional[float]:
        if self._opened_at is None:
            return None
        remaining = self.config.recovery_timeout - (self._clock() - self._opened_at)
        return remaining if remaining > 0 else None

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        logger.warning(
            f"Circuit breaker '{self.name}' {self._state.value} -> {new_state.value}",
            extra={"extra_data": {
                "circuit_name": self.name,
                "failure_count": self._failure_count,
            }}
        )
        self._state = new_state

    def _on_success(self) -> None:
        self._failure_count = 0
        self._half_open_calls = 0
        self._opened_at = None
        self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
            self._opened_at = self._clock()
            self._transition(CircuitState.OPEN)
            return

        self._failure_count += 1
        if self._failure_count >= self.config.failure_threshold:
            self._opened_at = self._clock()
            self._transition(CircuitState.OPEN)

    async def execute(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any
    ) -> Any:
        """
        Run ``func`` under circuit breaker protection.

        Raises:
            CircuitOpenException: If the circuit is open, or half-open with
                a trial call already in flight
            Exception: Whatever ``func`` raises
        """
        async with self._lock:
            if self._state == CircuitState.OPEN:
                if self._retry_in() is None:
                    self._half_open_calls = 0
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    raise CircuitOpenException(self.name, self._retry_in())

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    raise CircuitOpenException(self.name, self._retry_in())
                self._half_open_calls += 1

        try:
            result = await func(*args, **kwargs)
        except Exception:
            async with self._lock:
                self._on_failure()
            raise

        async with self._lock:
            self._on_success()
        return result

    def reset(self) -> None:
        """Force the circuit closed."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._half_open_calls = 0

    def snapshot(self) -> Dict[str, Any]:
        """State summary for the readiness endpoint."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "retry_in_seconds": self._retry_in(),
        }

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
            f"failure_count={self._failure_count})"
        )
