"""Unit tests for EnrichmentOrchestrator.

Tests cover:
- Happy path run with priority ordering
- Partial failure handling and the health report
- Cache reuse across runs
- Circuit breaking and the total run timeout
"""

import asyncio
import json

import pytest

from site_enrichment.models.data_models import BatchItem, RecoveryGuard
from site_enrichment.pipeline.orchestrator import EnrichmentOrchestrator
from site_enrichment.scheduler.http_operation import LocationRequestError
from tests.conftest import FakeSleeper
from tests.fixtures.sample_data import get_location_analysis, get_sample_locations


class CountingOperation:
    """Location operation that fails for selected latitudes."""

    def __init__(self, failing=None, error=None):
        self.calls = []
        self.failing = set(failing or [])
        self.error = error or LocationRequestError("invalid_request", "bad coordinates", 400)

    async def __call__(self, lat, lng):
        self.calls.append((lat, lng))
        if lat in self.failing:
            raise self.error
        return get_location_analysis(lat, lng)


def _orchestrator(config) -> EnrichmentOrchestrator:
    return EnrichmentOrchestrator(config, sleeper=FakeSleeper())


@pytest.mark.asyncio
async def test_run_happy_path(sample_config):
    orchestrator = _orchestrator(sample_config)
    operation = CountingOperation()
    items = [BatchItem(40.1, -74.0, 0.3), BatchItem(40.2, -74.0, 0.9), BatchItem(40.3, -74.0, 0.5)]

    run = await orchestrator.run(items, operation, sample_config.batch_options(recovery=RecoveryGuard("LocationAPI")))

    assert [entry.item.priority for entry in run.results] == [0.9, 0.5, 0.3]
    assert all(entry.error is None for entry in run.results)
    assert run.results[0].result["viability_score"] == 0.82
    assert run.metrics.items_processed == 3
    assert run.elapsed_seconds >= 0
    assert run.health_report["overall_health"] == "healthy"


@pytest.mark.asyncio
async def test_run_without_recovery_guard(sample_config):
    orchestrator = _orchestrator(sample_config)
    items = get_sample_locations(7)

    run = await orchestrator.run(items, CountingOperation())

    assert len(run.results) == 7
    assert run.metrics.batches_processed == 2
    assert run.health_report["service_health"] == []


@pytest.mark.asyncio
async def test_partial_failures_are_reported(sample_config):
    orchestrator = _orchestrator(sample_config)
    items = get_sample_locations(4)
    operation = CountingOperation(failing={items[0].lat})

    run = await orchestrator.run(items, operation, sample_config.batch_options(recovery=RecoveryGuard("LocationAPI")))

    failed = [entry for entry in run.results if entry.error is not None]
    assert len(failed) == 1
    assert failed[0].item == items[0]
    assert failed[0].error.startswith("invalid_request")
    # Not retryable: a single call per location
    assert len(operation.calls) == 4

    report = run.health_report
    assert report["overall_health"] == "degraded"
    service = report["service_health"][0]
    assert service["service"] == "LocationAPI"
    assert service["success_count"] == 3
    assert service["error_count"] == 1
    assert service["status"] == "FAILING"
    assert report["error_statistics"]["errors_by_service"] == {"LocationAPI": 1}
    assert report["error_statistics"]["recent_errors"][0]["service"] == "LocationAPI"


@pytest.mark.asyncio
async def test_second_run_served_from_cache(sample_config):
    orchestrator = _orchestrator(sample_config)
    items = get_sample_locations(5)
    operation = CountingOperation()

    await orchestrator.run(items, operation)
    run = await orchestrator.run(items, operation)

    assert len(operation.calls) == 5
    assert all(entry.from_cache for entry in run.results)
    assert run.metrics.cache_hit_rate == 1.0


@pytest.mark.asyncio
async def test_circuit_breaker_stops_calls(sample_config):
    config = sample_config.model_copy(update={"concurrency": 1, "batch_size": 10})
    orchestrator = _orchestrator(config)
    operation = CountingOperation(
        failing={item.lat for item in get_sample_locations(6)},
        error=LocationRequestError("connection", "refused")
    )

    run = await orchestrator.run(
        get_sample_locations(6),
        operation,
        config.batch_options(recovery=RecoveryGuard("LocationAPI"))
    )

    # The first item's three attempts open the breaker, later items fail fast
    assert len(operation.calls) == 3
    assert all(entry.error is not None for entry in run.results)
    assert "circuit breaker open" in run.results[-1].error
    assert run.health_report["overall_health"] == "unhealthy"
    assert run.health_report["error_statistics"]["circuit_breaker_status"] == {"LocationAPI": True}


@pytest.mark.asyncio
async def test_total_timeout(sample_config):
    config = sample_config.model_copy(update={"total_timeout": 0.05})
    orchestrator = _orchestrator(config)

    async def slow_operation(lat, lng):
        await asyncio.sleep(1)
        return {}

    with pytest.raises(asyncio.TimeoutError):
        await orchestrator.run(get_sample_locations(2), slow_operation)


def test_health_report_shape(sample_config):
    orchestrator = _orchestrator(sample_config)

    report = orchestrator.health_report()

    assert set(report) == {"overall_health", "service_health", "error_statistics", "summary"}
    assert report["overall_health"] == "healthy"
    assert report["summary"]["total_services"] == 0
    assert report["summary"]["total_requests"] == 0
    # Plain values only
    json.dumps(report)


def test_components_built_from_config(sample_config):
    orchestrator = _orchestrator(sample_config)

    assert orchestrator.coordinator.max_attempts == 3
    assert orchestrator.coordinator.circuit_breaker.failure_threshold == 3
    assert orchestrator.scheduler.cache is orchestrator.cache
    assert orchestrator.scheduler.metrics is orchestrator.metrics
