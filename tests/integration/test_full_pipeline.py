"""Full enrichment integration tests: HTTP endpoint → scheduler → coordinator → output."""

import json
from collections import Counter

import httpx
import pytest

from site_enrichment.models.data_models import (
    CacheKind,
    RecoveryGuard,
    RecoveryStrategy,
    ServiceStatus,
)
from site_enrichment.pipeline.orchestrator import EnrichmentOrchestrator
from site_enrichment.pipeline.output import JSONOutputFormatter
from site_enrichment.resilience.specializations import call_ai_provider
from site_enrichment.scheduler.http_operation import HTTPLocationOperation
from tests.conftest import FakeSleeper
from tests.fixtures.sample_data import get_location_analysis, get_sample_locations


TEMPLATE = "http://geo.test/analysis?lat={lat}&lng={lng}"


class FlakyEndpoint:
    """Mock endpoint that answers 503 for the first ``failures`` calls per location."""

    def __init__(self, failures=0, always_fail=False):
        self.failures = failures
        self.always_fail = always_fail
        self.calls = Counter()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        lat = float(request.url.params["lat"])
        lng = float(request.url.params["lng"])
        self.calls[lat] += 1

        if self.always_fail or self.calls[lat] <= self.failures:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(200, json=get_location_analysis(lat, lng))


def _guard(service="LocationAPI"):
    return RecoveryGuard(service_name=service, strategy=RecoveryStrategy.retry())


@pytest.mark.integration
@pytest.mark.asyncio
async def test_full_enrichment_run(sample_config, tmp_path):
    """Transient 503s are retried and every location ends up enriched."""
    endpoint = FlakyEndpoint(failures=1)
    config = sample_config.model_copy(update={"circuit_breaker_threshold": 50})
    orchestrator = EnrichmentOrchestrator(config, sleeper=FakeSleeper())
    items = get_sample_locations(12)

    async with HTTPLocationOperation(TEMPLATE, transport=httpx.MockTransport(endpoint)) as operation:
        run = await orchestrator.run(items, operation, config.batch_options(recovery=_guard()))

    assert len(run.results) == 12
    assert all(entry.error is None for entry in run.results)
    assert all(count == 2 for count in endpoint.calls.values())

    priorities = [entry.item.priority for entry in run.results]
    assert priorities == sorted(priorities, reverse=True)
    assert run.metrics.batches_processed == 3

    service = orchestrator.coordinator.get_service_health("LocationAPI")
    assert service.success_count == 12
    assert service.error_count == 12
    assert service.status == ServiceStatus.FAILING

    output_path = tmp_path / "enrichment.json"
    JSONOutputFormatter().save(run, str(output_path))
    data = json.loads(output_path.read_text(encoding='utf-8'))
    assert data["summary"]["succeeded"] == 12
    assert data["results"][0]["result"]["viability_score"] == 0.82
    assert data["health"]["error_statistics"]["errors_by_service"] == {"LocationAPI": 12}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_second_run_uses_cache(sample_config):
    endpoint = FlakyEndpoint()
    orchestrator = EnrichmentOrchestrator(sample_config, sleeper=FakeSleeper())
    items = get_sample_locations(6)

    async with HTTPLocationOperation(TEMPLATE, transport=httpx.MockTransport(endpoint)) as operation:
        await orchestrator.run(items, operation)
        run = await orchestrator.run(items, operation)

    assert sum(endpoint.calls.values()) == 6
    assert all(entry.from_cache for entry in run.results)
    assert orchestrator.cache.get_cache_stats().cache_size == 6


@pytest.mark.integration
@pytest.mark.asyncio
async def test_endpoint_down_trips_breaker(sample_config):
    """A dead endpoint stops being called once the breaker opens."""
    endpoint = FlakyEndpoint(always_fail=True)
    config = sample_config.model_copy(update={"concurrency": 1})
    orchestrator = EnrichmentOrchestrator(config, sleeper=FakeSleeper())

    async with HTTPLocationOperation(TEMPLATE, transport=httpx.MockTransport(endpoint)) as operation:
        run = await orchestrator.run(get_sample_locations(10), operation, config.batch_options(recovery=_guard()))

    assert sum(endpoint.calls.values()) == config.circuit_breaker_threshold
    assert all(entry.error is not None for entry in run.results)
    assert run.health_report["overall_health"] == "unhealthy"

    alerts = orchestrator.metrics.get_recent_alerts()
    assert any(alert.metric == "circuitBreaker" for alert in alerts)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_profiles_over_http(sample_config):
    endpoint = FlakyEndpoint()
    orchestrator = EnrichmentOrchestrator(sample_config, sleeper=FakeSleeper())
    items = get_sample_locations(4)

    async with HTTPLocationOperation(TEMPLATE, transport=httpx.MockTransport(endpoint)) as operation:
        first = await orchestrator.scheduler.batch_process_profiles(items, operation, kind=CacheKind.DEMOGRAPHIC)
        second = await orchestrator.scheduler.batch_process_profiles(items, operation, kind=CacheKind.DEMOGRAPHIC)

    assert first == second
    assert set(first) == {f"{item.lat},{item.lng}" for item in items}
    assert sum(endpoint.calls.values()) == 4


@pytest.mark.integration
@pytest.mark.asyncio
async def test_ai_provider_unknown_error_falls_back(sample_config):
    """An unclassified AI failure degrades to the neutral fallback analysis."""
    orchestrator = EnrichmentOrchestrator(sample_config, sleeper=FakeSleeper())

    async def failing_analysis():
        raise RuntimeError("Unknown error")

    outcome = await call_ai_provider(orchestrator.coordinator, "viability_analysis", failing_analysis)

    assert outcome.success is True
    assert outcome.recovered is True
    assert outcome.data["numeric_scores"]["viability"] == 0.7
    assert outcome.data["numeric_scores"]["competition"] == 0.6

    report = orchestrator.health_report()
    assert report["error_statistics"]["total_errors"] == 1
    assert report["summary"]["total_services"] == 1
