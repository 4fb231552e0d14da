"""Circuit breaker guarding the shared cache tier."""

import time
from collections.abc import Callable
from enum import Enum

import structlog

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops calling a failing dependency until it has had time to recover."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        half_open_retry_interval: float = 5.0,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening
            reset_timeout: Seconds after the last failure before probing
            half_open_retry_interval: Seconds between half-open trial calls
            now_fn: Optional function to get current timestamp (for testing)
        """
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_retry_interval = half_open_retry_interval
        self._now_fn = now_fn or time.monotonic

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0
        self._last_trial_time = 0.0

    @property
    def state(self) -> CircuitState:
        """Current state."""
        return self._state

    @property
    def failure_count(self) -> int:
        """Consecutive failures recorded."""
        return self._failure_count

    def allow_request(self) -> bool:
        """Check whether a call may be attempted now."""
        now = self._now_fn()

        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if now - self._last_failure_time >= self.reset_timeout:
                self._change_state(CircuitState.HALF_OPEN, "reset timeout elapsed")
                self._last_trial_time = now
                return True
            return False

        # Half-open: one trial call per retry interval
        if now - self._last_trial_time >= self.half_open_retry_interval:
            self._last_trial_time = now
            return True
        return False

    def record_success(self) -> None:
        """Record a successful call."""
        if self._state != CircuitState.CLOSED:
            self._change_state(CircuitState.CLOSED, "trial call succeeded")
        self._failure_count = 0

    def record_failure(self, error: Exception | None = None) -> None:
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = self._now_fn()

        if self._state == CircuitState.HALF_OPEN:
            self._change_state(CircuitState.OPEN, "trial call failed")
        elif (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self.failure_threshold
        ):
            self._change_state(
                CircuitState.OPEN, f"{self._failure_count} consecutive failures"
            )
        else:
            logger.debug(
                "Shared cache failure recorded",
                failures=self._failure_count,
                threshold=self.failure_threshold,
                error=str(error) if error else None,
            )

    def reset(self) -> None:
        """Force the breaker closed."""
        self._change_state(CircuitState.CLOSED, "manual reset")
        self._failure_count = 0

    def _change_state(self, new_state: CircuitState, reason: str) -> None:
        if new_state == self._state:
            return
        logger.warning(
            "Circuit breaker state changed",
            old_state=self._state.value,
            new_state=new_state.value,
            reason=reason,
        )
        self._state = new_state
