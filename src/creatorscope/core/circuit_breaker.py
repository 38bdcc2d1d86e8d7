"""
Three-state circuit breaker guarding one external dependency.

CLOSED    calls pass through; failures inside the sliding `monitoring_period`
          window are counted and reaching `failure_threshold` opens the breaker.
OPEN      calls are rejected with `CircuitBreakerOpenError` without touching
          the dependency until `recovery_timeout` has elapsed since the last
          failure.
HALF_OPEN exactly one trial call is let through; success closes the breaker,
          failure re-opens it and restarts the recovery timer.

State changes only happen inside `execute`, under a single lock that is never
held while the protected work is awaited.
"""

import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from ..observability.logging import get_logger
from ..observability.metrics import counter
from .errors import CircuitBreakerOpenError

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure gate for a single dependency, shared by every run that uses it."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        monitoring_period: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")

        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.monitoring_period = monitoring_period
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._last_failure_time: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._failures)

    @property
    def last_failure_time(self) -> float | None:
        return self._last_failure_time

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            self._prune(self._clock())
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": len(self._failures),
                "last_failure_time": self._last_failure_time,
            }

    async def execute(self, work: Callable[[], Awaitable[T]]) -> T:
        """Run `work` through the breaker."""
        is_trial = self._before_call()
        try:
            result = await work()
        except Exception:
            self._on_failure(is_trial)
            raise
        except BaseException:
            # Cancellation is not a dependency failure; just free the trial slot
            if is_trial:
                with self._lock:
                    self._trial_in_flight = False
            raise

        self._on_success(is_trial)
        return result

    def _before_call(self) -> bool:
        """Admit or reject a call. Returns True when the call is the half-open trial."""
        with self._lock:
            if self._state is CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_time or 0.0)
                if elapsed < self.recovery_timeout:
                    counter("circuit_breaker_rejections_total").add(1, {"breaker": self.name})
                    raise CircuitBreakerOpenError(self.name, self.recovery_timeout - elapsed)
                self._set_state(CircuitState.HALF_OPEN)

            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    counter("circuit_breaker_rejections_total").add(1, {"breaker": self.name})
                    raise CircuitBreakerOpenError(self.name)
                self._trial_in_flight = True
                return True

            return False

    def _on_success(self, is_trial: bool) -> None:
        with self._lock:
            if is_trial:
                self._trial_in_flight = False
                self._set_state(CircuitState.CLOSED)
            self._failures.clear()

    def _on_failure(self, is_trial: bool) -> None:
        with self._lock:
            now = self._clock()
            self._failures.append(now)
            self._prune(now)

            if is_trial:
                self._trial_in_flight = False
                self._last_failure_time = now
                self._set_state(CircuitState.OPEN)
                logger.warning(f"Circuit breaker re-opened for {self.name} after failed trial")
            elif (
                self._state is CircuitState.CLOSED
                and len(self._failures) >= self.failure_threshold
            ):
                self._last_failure_time = now
                self._set_state(CircuitState.OPEN)
                logger.warning(
                    f"Circuit breaker opened for {self.name}",
                    failures=len(self._failures),
                    recovery_timeout=self.recovery_timeout,
                )

    def _prune(self, now: float) -> None:
        horizon = now - self.monitoring_period
        while self._failures and self._failures[0] < horizon:
            self._failures.popleft()

    def _set_state(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        counter("circuit_breaker_transitions_total").add(
            1, {"breaker": self.name, "from": self._state.value, "to": new_state.value}
        )
        logger.info(
            "Circuit breaker state change",
            breaker=self.name,
            state_from=self._state.value,
            state_to=new_state.value,
        )
        self._state = new_state
