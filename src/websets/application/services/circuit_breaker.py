from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Circuit:
    consecutive_failures: int = 0
    total_failures: int = 0
    open_until: Optional[float] = None
    last_error: Optional[str] = None


class CircuitBreakers:
    """Per-provider circuit breakers.

    A provider's circuit opens after ``failure_threshold`` consecutive failed
    calls and blocks it for ``reset_timeout`` seconds. After that the circuit
    is half-open: calls go through, a success closes it and another failure
    opens it again.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._threshold = max(1, int(failure_threshold))
        self._reset_timeout = max(0.0, float(reset_timeout))
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._circuits: Dict[str, _Circuit] = {}

    def _state(self, circuit: Optional[_Circuit]) -> str:
        if circuit is None or circuit.open_until is None:
            return "closed"
        if self._clock() >= circuit.open_until:
            return "half_open"
        return "open"

    def allow(self, provider_id: str) -> bool:
        with self._lock:
            return self._state(self._circuits.get(provider_id)) != "open"

    def retry_after(self, provider_id: str) -> float:
        with self._lock:
            circuit = self._circuits.get(provider_id)
            if circuit is None or circuit.open_until is None:
                return 0.0
            return max(0.0, circuit.open_until - self._clock())

    def record_success(self, provider_id: str) -> None:
        with self._lock:
            circuit = self._circuits.get(provider_id)
            if circuit is None:
                return
            if circuit.open_until is not None:
                logger.info("circuit for provider %s closed after a successful call", provider_id)
            circuit.consecutive_failures = 0
            circuit.open_until = None
            circuit.last_error = None

    def record_failure(self, provider_id: str, error: str) -> None:
        with self._lock:
            circuit = self._circuits.setdefault(provider_id, _Circuit())
            circuit.consecutive_failures += 1
            circuit.total_failures += 1
            circuit.last_error = error
            if circuit.consecutive_failures >= self._threshold:
                circuit.open_until = self._clock() + self._reset_timeout
                logger.warning(
                    "circuit for provider %s open after %s consecutive failures, blocking for %.0fs",
                    provider_id,
                    circuit.consecutive_failures,
                    self._reset_timeout,
                )

    def reset(self, provider_id: str) -> None:
        with self._lock:
            self._circuits.pop(provider_id, None)

    def status(self, provider_id: str) -> Dict[str, Any]:
        with self._lock:
            circuit = self._circuits.get(provider_id)
            return {
                "provider_id": provider_id,
                "state": self._state(circuit),
                "consecutive_failures": circuit.consecutive_failures if circuit else 0,
                "total_failures": circuit.total_failures if circuit else 0,
                "last_error": circuit.last_error if circuit else None,
            }

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            ids = list(self._circuits)
        return {provider_id: self.status(provider_id) for provider_id in ids}
