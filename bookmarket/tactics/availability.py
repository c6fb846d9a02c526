"""Availability tactics for outbound provider calls.

States:
  CLOSED    - calls flow through
  OPEN      - failure threshold reached, calls rejected until the recovery window passes
  HALF_OPEN - one trial call decides whether to close or re-open
"""
from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from bookmarket.config import Config
from bookmarket.observability import increment_counter, record_event

logger = logging.getLogger(__name__)


class CircuitState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Circuit breaker guarding one downstream service."""

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
    ) -> None:
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
                    logger.info("Circuit breaker %s transitioning OPEN -> HALF_OPEN", self.service_name)
            return self._state

    def allow_request(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info("Circuit breaker %s recovered -> CLOSED", self.service_name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()
            if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        "Circuit breaker %s tripped after %d failures -> OPEN",
                        self.service_name,
                        self._failure_count,
                    )
                    increment_counter("circuit_breaker_trips_total", labels={"service": self.service_name})
                    record_event(
                        "circuit_breaker_opened",
                        {"service": self.service_name, "failures": self._failure_count},
                    )
                self._state = CircuitState.OPEN

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = 0.0

    def execute(self, operation: Callable[[], Any]) -> Tuple[bool, Any]:
        """
        Run ``operation`` through the breaker.
        Returns (True, result) on success or (False, reason) when the call
        failed or the circuit is open.
        """
        if not self.allow_request():
            return False, f"{self.service_name} temporarily unavailable (circuit open)"
        try:
            result = operation()
        except Exception as exc:
            self.record_failure()
            return False, str(exc)
        self.record_success()
        return True, result


_breakers: Dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_circuit_breaker(service_name: str, config: Optional[Dict[str, Any]] = None) -> CircuitBreaker:
    """Breaker state has to outlive the per-request service objects."""
    config = config or {}
    with _registry_lock:
        breaker = _breakers.get(service_name)
        if breaker is None:
            breaker = CircuitBreaker(
                service_name,
                failure_threshold=config.get("failure_threshold", Config.PAYMENT_CIRCUIT_FAILURE_THRESHOLD),
                recovery_timeout=config.get("recovery_timeout", Config.PAYMENT_CIRCUIT_RECOVERY_SECONDS),
            )
            _breakers[service_name] = breaker
        return breaker


def reset_circuit_breakers() -> None:
    """Testing helper."""
    with _registry_lock:
        for breaker in _breakers.values():
            breaker.reset()
