"""Error recovery: retries with backoff, circuit breaking and health tracking."""

from .circuit_breaker import CircuitBreaker, CircuitOpenError
from .coordinator import ErrorRecoveryCoordinator, OperationTimeoutError
from .health import ServiceHealthTracker
from .retry_handler import RetryHandler

__all__ = [
    "CircuitBreaker",
    "CircuitOpenError",
    "ErrorRecoveryCoordinator",
    "OperationTimeoutError",
    "RetryHandler",
    "ServiceHealthTracker",
]
