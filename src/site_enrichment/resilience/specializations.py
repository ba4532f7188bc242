"""Dependency-specific recovery strategy selection.

These helpers only choose a RecoveryStrategy for a failure and hand it to
the coordinator; they keep no state of their own.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

from site_enrichment.models.data_models import (
    ErrorContext,
    ExecutionOutcome,
    RecoveryStrategy,
    StrategyType,
)
from site_enrichment.resilience.coordinator import ErrorRecoveryCoordinator


AI_PROVIDER_SERVICE = "OpenAI"
DATABASE_SERVICE = "Database"

NEUTRAL_NUMERIC_SCORES = {
    "viability": 0.7,
    "competition": 0.6,
    "accessibility": 0.7,
    "market_potential": 0.7,
}


def generate_fallback_ai_response(operation: str) -> Any:
    """Degraded response standing in for an unavailable AI analysis."""
    if operation == "rationale_generation":
        return (
            "Location selected based on population density, proximity to existing "
            "stores, and local market factors."
        )
    if operation == "viability_analysis":
        return {
            "viability_assessment": "Basic viability analysis completed",
            "numeric_scores": dict(NEUTRAL_NUMERIC_SCORES),
        }
    if operation == "pattern_detection":
        return {
            "pattern_detection": "Pattern analysis unavailable - using fallback",
            "geometric_issues": [],
        }
    return {"message": "Fallback response - AI analysis unavailable"}


def classify_ai_provider_error(operation: str, error: BaseException) -> RecoveryStrategy:
    message = str(error).lower()
    if "rate_limit" in message:
        return RecoveryStrategy.retry(
            max_attempts=3,
            backoff_base_ms=2000,
            description="Rate limit exceeded - retry with exponential backoff"
        )
    if "timeout" in message:
        return RecoveryStrategy.retry(
            max_attempts=2,
            backoff_base_ms=1000,
            description="Request timeout - retry"
        )
    if "invalid_request" in message:
        return RecoveryStrategy.fail("Invalid request - cannot recover")
    return RecoveryStrategy.fallback(
        generate_fallback_ai_response(operation),
        description="Unknown AI provider error - use fallback response"
    )


def classify_database_error(error: BaseException) -> RecoveryStrategy:
    message = str(error).lower()
    if "connection" in message or "timeout" in message:
        return RecoveryStrategy.retry(
            max_attempts=3,
            backoff_base_ms=1000,
            description="Database connection issue - retry with backoff"
        )
    if "constraint" in message or "unique" in message:
        return RecoveryStrategy.fail("Data constraint violation - cannot recover")
    return RecoveryStrategy.fallback(None, description="Database error - use cached or default data")


async def _recover(
    coordinator: ErrorRecoveryCoordinator,
    context: ErrorContext,
    strategy: RecoveryStrategy,
    error: Exception,
    retry_operation: Optional[Callable[[], Awaitable[Any]]],
    attempts: int,
) -> ExecutionOutcome:
    """Apply ``strategy``; ``attempts`` counts the calls already made."""
    if strategy.type == StrategyType.RETRY and retry_operation is not None:
        outcome = await coordinator.execute_with_recovery(retry_operation, context, strategy)
        outcome.attempts += attempts
        return outcome
    return coordinator.apply_strategy(error, context, strategy, attempts=attempts)


async def handle_ai_provider_error(
    coordinator: ErrorRecoveryCoordinator,
    operation: str,
    error: Exception,
    retry_operation: Optional[Callable[[], Awaitable[Any]]] = None,
    service_name: str = AI_PROVIDER_SERVICE,
) -> ExecutionOutcome:
    """Recover from a failed AI provider call according to its error text."""
    context = ErrorContext(service_name=service_name, operation_name=operation)
    strategy = classify_ai_provider_error(operation, error)
    return await _recover(coordinator, context, strategy, error, retry_operation, attempts=1)


async def handle_database_error(
    coordinator: ErrorRecoveryCoordinator,
    operation: str,
    error: Exception,
    retry_operation: Optional[Callable[[], Awaitable[Any]]] = None,
    service_name: str = DATABASE_SERVICE,
) -> ExecutionOutcome:
    """Recover from a failed database call according to its error text."""
    context = ErrorContext(service_name=service_name, operation_name=operation)
    strategy = classify_database_error(error)
    return await _recover(coordinator, context, strategy, error, retry_operation, attempts=1)


async def call_ai_provider(
    coordinator: ErrorRecoveryCoordinator,
    operation: str,
    call: Callable[[], Awaitable[Any]],
    service_name: str = AI_PROVIDER_SERVICE,
    request_id: Optional[str] = None,
) -> ExecutionOutcome:
    """Invoke an AI provider call once, then recover through its classifier."""
    context = ErrorContext(service_name=service_name, operation_name=operation, request_id=request_id)
    first = await coordinator.execute_with_recovery(call, context, RecoveryStrategy.fail())
    if first.success:
        return first

    strategy = classify_ai_provider_error(operation, first.error)
    outcome = await _recover(coordinator, context, strategy, first.error, call, attempts=first.attempts)
    outcome.elapsed_ms += first.elapsed_ms
    return outcome


async def call_database(
    coordinator: ErrorRecoveryCoordinator,
    operation: str,
    call: Callable[[], Awaitable[Any]],
    service_name: str = DATABASE_SERVICE,
    request_id: Optional[str] = None,
) -> ExecutionOutcome:
    """Invoke a database call once, then recover through its classifier."""
    context = ErrorContext(service_name=service_name, operation_name=operation, request_id=request_id)
    first = await coordinator.execute_with_recovery(call, context, RecoveryStrategy.fail())
    if first.success:
        return first

    strategy = classify_database_error(first.error)
    outcome = await _recover(coordinator, context, strategy, first.error, call, attempts=first.attempts)
    outcome.elapsed_ms += first.elapsed_ms
    return outcome


def basic_context_analysis() -> Dict[str, Any]:
    return {
        "market_assessment": "Basic market analysis - detailed AI assessment unavailable",
        "competitive_advantages": ["Location accessibility", "Population density"],
        "risk_factors": ["Market competition"],
        "demographic_insights": "Standard demographic profile",
        "accessibility_analysis": "Basic accessibility assessment",
        "unique_selling_points": ["Strategic location"],
        "confidence_score": 0.6,
    }


def basic_viability_score() -> Dict[str, Any]:
    return {
        "viability_assessment": "Basic viability assessment - detailed AI analysis unavailable",
        "competitive_analysis": "Standard competitive analysis",
        "accessibility_insights": "Basic accessibility evaluation",
        "market_potential_analysis": "Standard market potential assessment",
        "risk_assessment": ["Limited analysis available"],
        "confidence_reasoning": "Fallback analysis used",
        "numeric_scores": dict(NEUTRAL_NUMERIC_SCORES),
    }


AI_SERVICE_FALLBACKS: Dict[str, Callable[[], Any]] = {
    "Context Analysis": basic_context_analysis,
    "Rationale Diversification": lambda: "Standard location analysis applied",
    "Expansion Intensity": lambda: {
        "selected_locations": [],
        "selection_reasoning": "Deterministic selection used",
    },
    "Placement Intelligence": basic_viability_score,
}


def classify_ai_service_error(service_name: str, fallback_value: Any = None) -> RecoveryStrategy:
    factory = AI_SERVICE_FALLBACKS.get(service_name)
    if factory is None:
        return RecoveryStrategy.fail("Unknown service - cannot provide fallback")
    value = fallback_value if fallback_value is not None else factory()
    return RecoveryStrategy.fallback(value, description=f"Use basic {service_name.lower()} fallback")


def handle_ai_service_error(
    coordinator: ErrorRecoveryCoordinator,
    service_name: str,
    operation: str,
    error: Exception,
    fallback_value: Any = None,
) -> ExecutionOutcome:
    """
    Record a failed AI sub-service call and report the fallback to use.

    The outcome is a failure carrying the chosen strategy; the caller decides
    whether to substitute ``strategy_applied.fallback_value``.
    """
    context = ErrorContext(service_name=service_name, operation_name=operation)
    coordinator.record_error(context, error)
    return ExecutionOutcome(
        success=False,
        error=error,
        strategy_applied=classify_ai_service_error(service_name, fallback_value),
        attempts=1
    )
