"""Error-recovery coordinator: retry, backoff, fallback and circuit breaking."""

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from site_enrichment.models.config import EnrichmentConfig
from site_enrichment.models.data_models import (
    AlertSeverity,
    ErrorContext,
    ExecutionOutcome,
    RecoveryStrategy,
    ServiceHealth,
    ServiceStatus,
    StrategyType,
)
from site_enrichment.monitoring.logger import StructuredLogger
from site_enrichment.monitoring.metrics import MetricsRecorder
from site_enrichment.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerState,
    CircuitOpenError,
    Clock,
)
from site_enrichment.resilience.health import ServiceHealthTracker
from site_enrichment.resilience.retry_handler import RetryHandler


Operation = Callable[[], Union[Any, Awaitable[Any]]]


class OperationTimeoutError(TimeoutError):
    """A coordinated call exceeded its per-call timeout."""

    def __init__(self, timeout_ms: float):
        super().__init__(f"operation timeout after {timeout_ms:.0f}ms")
        self.timeout_ms = timeout_ms


async def invoke(operation: Operation, timeout_ms: Optional[float] = None) -> Any:
    """Call a sync or async zero-argument operation, bounding async ones by ``timeout_ms``."""
    result = operation()
    if inspect.isawaitable(result):
        if timeout_ms is None:
            return await result
        try:
            return await asyncio.wait_for(result, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(timeout_ms)
    return result


class ErrorRecoveryCoordinator:
    """
    Wraps single operation invocations with resilience patterns.

    Responsibilities:
    - Fail fast while a service's circuit breaker is open
    - Retry retryable failures with exponential backoff and jitter
    - Apply the caller's recovery strategy once attempts are exhausted
    - Track per-service health and error history

    Failures never escape as exceptions; every call returns an ExecutionOutcome.
    """

    def __init__(
        self,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_handler: Optional[RetryHandler] = None,
        health_tracker: Optional[ServiceHealthTracker] = None,
        max_attempts: int = 3,
        metrics: Optional[MetricsRecorder] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize coordinator with resilience components.

        Args:
            circuit_breaker: Per-service breaker (default threshold 5, timeout 60s)
            retry_handler: Backoff calculation and retry classification
            health_tracker: Service health and error history store
            max_attempts: Attempts for retry strategies that do not set their own
            metrics: Optional recorder; every attempt is tracked when given
            logger: Optional structured logger
        """
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.retry_handler = retry_handler or RetryHandler()
        self.health_tracker = health_tracker or ServiceHealthTracker()
        self.max_attempts = max_attempts
        self.metrics = metrics
        self.logger = logger or StructuredLogger("site_enrichment.recovery")

    @classmethod
    def from_config(
        cls,
        config: EnrichmentConfig,
        metrics: Optional[MetricsRecorder] = None,
        logger: Optional[StructuredLogger] = None,
        clock: Optional[Clock] = None,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "ErrorRecoveryCoordinator":
        return cls(
            circuit_breaker=CircuitBreaker(
                failure_threshold=config.circuit_breaker_threshold,
                timeout_seconds=config.circuit_breaker_timeout_ms / 1000,
                clock=clock
            ),
            retry_handler=RetryHandler(
                base_ms=config.retry_backoff_base_ms,
                max_ms=config.retry_max_backoff_ms,
                jitter_ratio=config.retry_jitter_ratio,
                sleeper=sleeper
            ),
            health_tracker=ServiceHealthTracker(error_history_limit=config.error_history_limit),
            max_attempts=config.max_retry_attempts,
            metrics=metrics,
            logger=logger
        )

    async def execute_with_recovery(
        self,
        operation: Operation,
        context: ErrorContext,
        strategy: Optional[RecoveryStrategy] = None,
        timeout_ms: Optional[float] = None,
    ) -> ExecutionOutcome:
        """
        Execute ``operation`` under the recovery ``strategy``.

        Only RETRY strategies make more than one attempt. Once attempts are
        exhausted the strategy decides the outcome: FALLBACK returns its value
        as a successful (recovered) result, SKIP returns a successful empty
        result, anything else fails with the last error.

        Args:
            operation: Zero-argument callable, sync or async
            context: Identifies the service (breaker key) and operation
            strategy: Recovery policy (defaults to RETRY with configured attempts)
            timeout_ms: Optional per-attempt timeout for async operations

        Returns:
            ExecutionOutcome describing data, error, attempts and elapsed time
        """
        strategy = strategy or RecoveryStrategy.retry()
        service = context.service_name
        start = time.perf_counter()

        if self.circuit_breaker.is_open(service):
            return ExecutionOutcome(
                success=False,
                error=CircuitOpenError(service),
                attempts=0,
                elapsed_ms=(time.perf_counter() - start) * 1000
            )

        max_attempts = 1
        if strategy.type == StrategyType.RETRY:
            max_attempts = strategy.max_attempts or self.max_attempts

        attempts = 0
        last_error: Optional[Exception] = None

        while attempts < max_attempts:
            attempts += 1
            self.logger.recovery_attempt(service, context.operation_name, attempts, max_attempts)
            tracking_id = self._start_tracking(context, attempts)

            try:
                result = await invoke(operation, timeout_ms)
            except Exception as e:
                last_error = e
                self._stop_tracking(tracking_id, success=False, error=str(e))
                self.logger.recovery_failure(service, context.operation_name, attempts, str(e))
                self.record_error(context, e)

                if (
                    strategy.type == StrategyType.RETRY
                    and attempts < max_attempts
                    and self.retry_handler.is_retryable(e)
                ):
                    delay_ms = self.retry_handler.delay_for(attempts, strategy.backoff_base_ms)
                    self.logger.retry_scheduled(service, context.operation_name, attempts, delay_ms)
                    await self.retry_handler.sleep(delay_ms)
                    continue
                break
            else:
                self._stop_tracking(tracking_id, success=True)
                self.record_success(service)
                return ExecutionOutcome(
                    success=True,
                    data=result,
                    attempts=attempts,
                    elapsed_ms=(time.perf_counter() - start) * 1000
                )

        return self.apply_strategy(
            last_error,
            context,
            strategy,
            attempts,
            (time.perf_counter() - start) * 1000
        )

    def apply_strategy(
        self,
        error: Exception,
        context: ErrorContext,
        strategy: RecoveryStrategy,
        attempts: int,
        elapsed_ms: float = 0.0,
    ) -> ExecutionOutcome:
        """Turn a final failure into an outcome according to ``strategy``."""
        self.logger.strategy_applied(
            context.service_name,
            context.operation_name,
            strategy.type.value,
            strategy.description
        )

        if strategy.type == StrategyType.FALLBACK:
            return ExecutionOutcome(
                success=True,
                data=strategy.fallback_value,
                error=error,
                strategy_applied=strategy,
                attempts=attempts,
                elapsed_ms=elapsed_ms
            )

        if strategy.type == StrategyType.SKIP:
            return ExecutionOutcome(
                success=True,
                data=None,
                error=error,
                strategy_applied=strategy,
                attempts=attempts,
                elapsed_ms=elapsed_ms
            )

        return ExecutionOutcome(
            success=False,
            error=error,
            strategy_applied=strategy,
            attempts=attempts,
            elapsed_ms=elapsed_ms
        )

    def record_success(self, service: str) -> None:
        self.health_tracker.record_success(service)
        self.circuit_breaker.record_success(service)

    def record_error(self, context: ErrorContext, error: Exception) -> None:
        self.health_tracker.record_error(context, error)
        if self.circuit_breaker.record_failure(context.service_name):
            state = self.circuit_breaker.state(context.service_name)
            self.logger.circuit_breaker_state(context.service_name, "open", state.consecutive_failures)
            if self.metrics:
                self.metrics.create_alert(
                    AlertSeverity.HIGH,
                    f"Circuit breaker opened for {context.service_name}",
                    "circuitBreaker",
                    state.consecutive_failures,
                    self.circuit_breaker.failure_threshold
                )

    def is_circuit_open(self, service: str) -> bool:
        return self.circuit_breaker.is_open(service)

    def circuit_breaker_state(self, service: str) -> CircuitBreakerState:
        return self.circuit_breaker.state(service)

    def get_service_health(self, service: Optional[str] = None) -> Union[ServiceHealth, List[ServiceHealth]]:
        return self.health_tracker.get_service_health(service)

    def get_error_statistics(self) -> Dict[str, Any]:
        errors_by_service = self.health_tracker.error_counts()
        return {
            "total_errors": sum(errors_by_service.values()),
            "errors_by_service": errors_by_service,
            "recent_errors": self.health_tracker.recent_errors(per_service=5, limit=20),
            "circuit_breaker_status": self.circuit_breaker.status(),
        }

    def get_overall_health(self) -> str:
        """healthy, degraded or unhealthy across every known service."""
        statuses = {h.status for h in self.health_tracker.get_service_health()}
        if ServiceStatus.DOWN in statuses or any(self.circuit_breaker.status().values()):
            return "unhealthy"
        if statuses & {ServiceStatus.FAILING, ServiceStatus.DEGRADED}:
            return "degraded"
        return "healthy"

    def reset(self) -> None:
        """Clear all health, history and breaker state (for test isolation)."""
        self.health_tracker.reset()
        self.circuit_breaker.reset()
        self.logger.log("recovery_reset")

    def _start_tracking(self, context: ErrorContext, attempt: int) -> Optional[str]:
        if self.metrics is None:
            return None
        return self.metrics.start_tracking(
            f"{context.service_name}.{context.operation_name}",
            {"attempt": attempt, "request_id": context.request_id}
        )

    def _stop_tracking(self, tracking_id: Optional[str], success: bool, error: Optional[str] = None) -> None:
        if tracking_id is not None:
            self.metrics.stop_tracking(tracking_id, success=success, error=error)
