"""Per-dependency circuit breaker with timeout-based self-healing."""

import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol


class Clock(Protocol):
    """Clock interface for testable time management."""

    def now(self) -> float:
        """Return current time in seconds."""
        ...


class MonotonicClock:
    """Default clock implementation using time.monotonic."""

    def now(self) -> float:
        """Return current monotonic time in seconds."""
        return time.monotonic()


class CircuitOpenError(Exception):
    """Raised in place of a call that the breaker refused to make."""

    def __init__(self, service: str):
        super().__init__(f"circuit breaker open for {service}")
        self.service = service


@dataclass
class CircuitBreakerState:
    """Internal state for a single circuit breaker."""
    is_open: bool = False
    consecutive_failures: int = 0
    opened_at: Optional[float] = None


class CircuitBreaker:
    """
    Circuit breaker keyed by service name.

    - Opens once ``failure_threshold`` consecutive failures are recorded
    - Rejects calls while open and the timeout has not elapsed
    - Closes unconditionally on the first check after the timeout; there is
      no half-open probe, so the next recorded outcome decides whether it
      opens again
    - Any recorded success resets the failure counter and closes it
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout_seconds: float = 60.0,
        clock: Optional[Clock] = None
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening the circuit
            timeout_seconds: Time an open circuit rejects calls
            clock: Clock interface for time management (defaults to MonotonicClock)
        """
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self.clock = clock or MonotonicClock()
        self._circuits: Dict[str, CircuitBreakerState] = {}

    def _get_circuit(self, service: str) -> CircuitBreakerState:
        """Get or create circuit state for service."""
        if service not in self._circuits:
            self._circuits[service] = CircuitBreakerState()
        return self._circuits[service]

    def is_open(self, service: str) -> bool:
        """
        Check whether calls to ``service`` must be rejected.

        An open circuit whose timeout has elapsed is closed as a side effect.

        Returns:
            True if the circuit is open and still cooling down
        """
        circuit = self._circuits.get(service)
        if circuit is None or not circuit.is_open:
            return False

        elapsed = self.clock.now() - circuit.opened_at
        if elapsed > self.timeout_seconds:
            circuit.is_open = False
            circuit.opened_at = None
            return False

        return True

    def record_success(self, service: str) -> None:
        """Reset the failure counter and close the circuit."""
        circuit = self._get_circuit(service)
        circuit.consecutive_failures = 0
        circuit.is_open = False
        circuit.opened_at = None

    def record_failure(self, service: str) -> bool:
        """
        Record a failed call.

        Returns:
            True if this failure opened the circuit
        """
        circuit = self._get_circuit(service)
        circuit.consecutive_failures += 1

        if not circuit.is_open and circuit.consecutive_failures >= self.failure_threshold:
            circuit.is_open = True
            circuit.opened_at = self.clock.now()
            return True
        return False

    def state(self, service: str) -> CircuitBreakerState:
        """Return a copy of the circuit state for ``service``."""
        circuit = self._circuits.get(service, CircuitBreakerState())
        return CircuitBreakerState(
            is_open=circuit.is_open,
            consecutive_failures=circuit.consecutive_failures,
            opened_at=circuit.opened_at
        )

    def status(self) -> Dict[str, bool]:
        """Open/closed flag for every known service."""
        return {service: circuit.is_open for service, circuit in self._circuits.items()}

    def reset(self, service: Optional[str] = None) -> None:
        """Reset one circuit, or all of them (useful for testing)."""
        if service is None:
            self._circuits.clear()
        elif service in self._circuits:
            self._circuits[service] = CircuitBreakerState()
