"""
Circuit Breaker

Stops hammering a ledger that keeps failing.

STATES:
- closed: calls flow, failures are counted
- open: calls are refused with CircuitOpenError until reset_timeout elapses
- half_open: trial calls flow; success_threshold successes close the
  circuit, a single failure re-opens it

CONFIGURATION (env):
- MATCHPROOF_BREAKER_FAILURE_THRESHOLD (default: 5)
- MATCHPROOF_BREAKER_RESET_TIMEOUT_SECONDS (default: 60)
- MATCHPROOF_BREAKER_SUCCESS_THRESHOLD (default: 2)
"""

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from ..errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Thresholds for the circuit breaker."""
    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    success_threshold: int = 2

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=int(os.environ.get("MATCHPROOF_BREAKER_FAILURE_THRESHOLD", "5")),
            reset_timeout_seconds=float(os.environ.get("MATCHPROOF_BREAKER_RESET_TIMEOUT_SECONDS", "60")),
            success_threshold=int(os.environ.get("MATCHPROOF_BREAKER_SUCCESS_THRESHOLD", "2")),
        )


class CircuitBreaker:
    """
    Guards one downstream service.

    Usage:
        breaker.before_call()      # raises CircuitOpenError when open
        try:
            result = await call()
        except Exception:
            breaker.record_failure()
            raise
        breaker.record_success()
    """

    def __init__(
        self,
        name: str = "ledger",
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._clock() - self._opened_at >= self.config.reset_timeout_seconds
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    def before_call(self) -> None:
        """
        Raises:
            CircuitOpenError: If the circuit is open
        """
        if self.state == CircuitState.OPEN:
            remaining = self.config.reset_timeout_seconds - (self._clock() - self._opened_at)
            raise CircuitOpenError(
                f"Circuit '{self.name}' is open; retry in {max(remaining, 0):.0f}s"
            )

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self.config.success_threshold:
                self._transition(CircuitState.CLOSED)
        else:
            self._failures = 0

    def record_failure(self) -> None:
        state = self.state
        if state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return
        self._failures += 1
        if state == CircuitState.CLOSED and self._failures >= self.config.failure_threshold:
            self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        self._transition(CircuitState.CLOSED)
        self._failures = 0
        self._successes = 0

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        logger.warning(f"Circuit '{self.name}': {self._state.value} -> {new_state.value}")
        self._state = new_state
        self._failures = 0
        self._successes = 0
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()

    def get_status(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self._failures,
            "successes": self._successes,
        }
