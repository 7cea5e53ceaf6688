import logging
import threading
from enum import Enum
from typing import Callable, TypeVar, Any, Optional
from .errors import CircuitBreakerError
from .time import now


T = TypeVar('T')


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Fail-fast guard for storage calls.

    After ``failure_threshold`` consecutive failures the breaker opens and
    every call raises CircuitBreakerError (a StorageError) until
    ``timeout_seconds`` have passed. The next call is then let through in
    HALF_OPEN; ``recovery_threshold`` successes close it again.
    """

    def __init__(
        self,
        name: str = "storage",
        failure_threshold: int = 5,
        timeout_seconds: int = 30,
        recovery_threshold: int = 2,
        on_state_change: Optional[Callable[[str, CircuitBreakerState, CircuitBreakerState], None]] = None,
    ):
        if failure_threshold <= 0:
            raise ValueError("Failure threshold must be positive")
        if timeout_seconds <= 0:
            raise ValueError("Timeout must be positive")
        if recovery_threshold <= 0:
            raise ValueError("Recovery threshold must be positive")

        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self.recovery_threshold = recovery_threshold
        self._on_state_change = on_state_change
        self.logger = logging.getLogger(__name__)

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            return self._state

    def _transition(self, new_state: CircuitBreakerState):
        # caller holds self._lock
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self.logger.warning(
            "Circuit breaker state change",
            extra={"breaker": self.name, "from": old_state.value, "to": new_state.value},
        )
        if self._on_state_change:
            self._on_state_change(self.name, old_state, new_state)

    def _should_attempt_reset(self) -> bool:
        return (
            self._state == CircuitBreakerState.OPEN and
            now() - self._last_failure_time >= self.timeout_seconds
        )

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self._lock:
            if self._should_attempt_reset():
                self._transition(CircuitBreakerState.HALF_OPEN)
                self._success_count = 0

            if self._state == CircuitBreakerState.OPEN:
                raise CircuitBreakerError(f"Circuit breaker '{self.name}' is OPEN")

        try:
            result = func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self):
        with self._lock:
            self._failure_count = 0

            if self._state == CircuitBreakerState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.recovery_threshold:
                    self._transition(CircuitBreakerState.CLOSED)
                    self._success_count = 0

    def _on_failure(self):
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = now()

            if self._state == CircuitBreakerState.HALF_OPEN:
                self._transition(CircuitBreakerState.OPEN)
                self._success_count = 0

            elif self._failure_count >= self.failure_threshold:
                self._transition(CircuitBreakerState.OPEN)

    def reset(self):
        with self._lock:
            self._transition(CircuitBreakerState.CLOSED)
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = 0.0
