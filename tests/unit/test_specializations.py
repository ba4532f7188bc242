"""Unit tests for AI provider, database and AI service recovery wrappers."""

from unittest.mock import AsyncMock

import pytest

from site_enrichment.models.data_models import StrategyType
from site_enrichment.resilience.specializations import (
    AI_PROVIDER_SERVICE,
    DATABASE_SERVICE,
    NEUTRAL_NUMERIC_SCORES,
    call_ai_provider,
    call_database,
    classify_ai_provider_error,
    classify_ai_service_error,
    classify_database_error,
    generate_fallback_ai_response,
    handle_ai_provider_error,
    handle_ai_service_error,
    handle_database_error,
)


class TestAIProviderClassification:

    def test_rate_limit_retries_with_long_backoff(self):
        strategy = classify_ai_provider_error("rationale_generation", Exception("rate_limit exceeded"))
        assert strategy.type == StrategyType.RETRY
        assert strategy.max_attempts == 3
        assert strategy.backoff_base_ms == 2000

    def test_timeout_retries_twice(self):
        strategy = classify_ai_provider_error("rationale_generation", Exception("Request Timeout"))
        assert strategy.type == StrategyType.RETRY
        assert strategy.max_attempts == 2
        assert strategy.backoff_base_ms == 1000

    def test_invalid_request_fails(self):
        strategy = classify_ai_provider_error("rationale_generation", Exception("invalid_request: bad prompt"))
        assert strategy.type == StrategyType.FAIL

    def test_unknown_error_falls_back(self):
        strategy = classify_ai_provider_error("viability_analysis", Exception("Unknown error"))
        assert strategy.type == StrategyType.FALLBACK
        assert strategy.fallback_value["numeric_scores"] == NEUTRAL_NUMERIC_SCORES


class TestFallbackResponses:

    def test_rationale_is_text(self):
        response = generate_fallback_ai_response("rationale_generation")
        assert isinstance(response, str)
        assert "population density" in response

    def test_viability_has_neutral_scores(self):
        response = generate_fallback_ai_response("viability_analysis")
        assert response["numeric_scores"] == {
            "viability": 0.7,
            "competition": 0.6,
            "accessibility": 0.7,
            "market_potential": 0.7,
        }

    def test_pattern_detection(self):
        response = generate_fallback_ai_response("pattern_detection")
        assert response["geometric_issues"] == []

    def test_default_message(self):
        assert "message" in generate_fallback_ai_response("something_else")


class TestDatabaseClassification:

    @pytest.mark.parametrize("message", ["connection refused", "query timeout"])
    def test_transient_errors_retry(self, message):
        strategy = classify_database_error(Exception(message))
        assert strategy.type == StrategyType.RETRY
        assert strategy.max_attempts == 3
        assert strategy.backoff_base_ms == 1000

    @pytest.mark.parametrize("message", ["check constraint failed", "duplicate key violates unique index"])
    def test_integrity_errors_fail(self, message):
        assert classify_database_error(Exception(message)).type == StrategyType.FAIL

    def test_other_errors_fall_back_to_none(self):
        strategy = classify_database_error(Exception("disk full"))
        assert strategy.type == StrategyType.FALLBACK
        assert strategy.fallback_value is None


class TestHandlers:

    @pytest.mark.asyncio
    async def test_unknown_ai_error_returns_fallback(self, coordinator):
        outcome = await handle_ai_provider_error(coordinator, "viability_analysis", Exception("Unknown error"))

        assert outcome.success is True
        assert outcome.strategy_applied.type == StrategyType.FALLBACK
        assert outcome.data["numeric_scores"]["viability"] == 0.7

    @pytest.mark.asyncio
    async def test_rate_limit_reruns_retry_operation(self, coordinator):
        retry_operation = AsyncMock(side_effect=[Exception("rate_limit"), "rationale"])

        outcome = await handle_ai_provider_error(
            coordinator, "rationale_generation", Exception("rate_limit"), retry_operation
        )

        assert outcome.success is True
        assert outcome.data == "rationale"
        assert retry_operation.await_count == 2
        # Initial failure plus two coordinated attempts
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_retry_without_operation_applies_strategy(self, coordinator):
        outcome = await handle_ai_provider_error(coordinator, "rationale_generation", Exception("timeout"))

        assert outcome.success is False
        assert outcome.strategy_applied.type == StrategyType.RETRY
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_database_constraint_fails(self, coordinator):
        outcome = await handle_database_error(coordinator, "insert_site", Exception("unique constraint"))

        assert outcome.success is False
        assert outcome.strategy_applied.type == StrategyType.FAIL


class TestCallWrappers:

    @pytest.mark.asyncio
    async def test_call_ai_provider_success(self, coordinator):
        call = AsyncMock(return_value="analysis")

        outcome = await call_ai_provider(coordinator, "rationale_generation", call)

        assert outcome.success is True
        assert outcome.data == "analysis"
        call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_call_ai_provider_unknown_error_falls_back(self, coordinator):
        call = AsyncMock(side_effect=Exception("Unknown error"))

        outcome = await call_ai_provider(coordinator, "viability_analysis", call)

        call.assert_awaited_once()
        assert outcome.success is True
        assert outcome.strategy_applied.type == StrategyType.FALLBACK
        assert outcome.data is not None
        assert coordinator.get_service_health(AI_PROVIDER_SERVICE).error_count == 1

    @pytest.mark.asyncio
    async def test_call_ai_provider_retries_rate_limits(self, coordinator):
        call = AsyncMock(side_effect=[Exception("rate_limit"), Exception("rate_limit"), "ok"])

        outcome = await call_ai_provider(coordinator, "rationale_generation", call)

        assert outcome.success is True
        assert outcome.data == "ok"
        assert call.await_count == 3
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_call_database_retries_connection_errors(self, coordinator):
        call = AsyncMock(side_effect=Exception("connection refused"))

        outcome = await call_database(coordinator, "load_sites", call)

        # One initial call, then three coordinated attempts
        assert call.await_count == 4
        assert outcome.success is False
        assert coordinator.get_service_health(DATABASE_SERVICE).error_count == 4


class TestAIServiceFallbacks:

    @pytest.mark.parametrize("service", [
        "Context Analysis",
        "Rationale Diversification",
        "Expansion Intensity",
        "Placement Intelligence",
    ])
    def test_known_services_fall_back(self, service):
        strategy = classify_ai_service_error(service)
        assert strategy.type == StrategyType.FALLBACK
        assert strategy.fallback_value is not None

    def test_unknown_service_fails(self):
        assert classify_ai_service_error("Mystery").type == StrategyType.FAIL

    def test_explicit_fallback_value_wins(self):
        strategy = classify_ai_service_error("Context Analysis", {"custom": True})
        assert strategy.fallback_value == {"custom": True}

    def test_handle_records_error_and_reports_strategy(self, coordinator):
        outcome = handle_ai_service_error(
            coordinator, "Placement Intelligence", "score_site", Exception("model overloaded")
        )

        assert outcome.success is False
        assert outcome.strategy_applied.type == StrategyType.FALLBACK
        assert outcome.strategy_applied.fallback_value["numeric_scores"]["competition"] == 0.6
        assert coordinator.get_service_health("Placement Intelligence").error_count == 1
