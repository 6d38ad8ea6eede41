"""Per-host circuit breaker for WMS HTTP calls."""

from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock


class CircuitOpenError(RuntimeError):
    def __init__(self, key: str, retry_in: float):
        super().__init__(f"Circuit open for {key}, retry in {retry_in:.0f}s")
        self.key = key
        self.retry_in = retry_in


@dataclass
class _Circuit:
    failure_count: int = 0
    opened_at: float | None = None
    state: str = "closed"  # closed, open, half-open


class CircuitBreaker:
    """Opens a host's circuit after ``failure_threshold`` consecutive failures.

    While open, calls fail fast with CircuitOpenError. After
    ``recovery_timeout`` seconds one trial call is let through (half-open);
    its success closes the circuit and its failure reopens it.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60, clock=time.monotonic):
        self.failure_threshold = max(failure_threshold, 1)
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._circuits: dict[str, _Circuit] = {}
        self._lock = Lock()

    def state(self, key: str) -> str:
        with self._lock:
            circuit = self._circuits.get(key)
            return circuit.state if circuit else "closed"

    def before_call(self, key: str) -> None:
        with self._lock:
            circuit = self._circuits.setdefault(key, _Circuit())
            if circuit.state == "closed":
                return
            elapsed = self._clock() - (circuit.opened_at or 0.0)
            if circuit.state == "open" and elapsed >= self.recovery_timeout:
                circuit.state = "half-open"
                return
            raise CircuitOpenError(key, max(self.recovery_timeout - elapsed, 0.0))

    def record_success(self, key: str) -> None:
        with self._lock:
            self._circuits[key] = _Circuit()

    def record_failure(self, key: str) -> None:
        with self._lock:
            circuit = self._circuits.setdefault(key, _Circuit())
            circuit.failure_count += 1
            if circuit.state == "half-open" or circuit.failure_count >= self.failure_threshold:
                circuit.state = "open"
                circuit.opened_at = self._clock()

    def call(self, key: str, func, *args, **kwargs):
        self.before_call(key)
        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure(key)
            raise
        self.record_success(key)
        return result
