"""Timing-bound checks of the batch scheduler against the real event loop."""

import asyncio
import time
from collections import Counter

import pytest

from site_enrichment.models.data_models import BatchOptions, RecoveryGuard
from site_enrichment.resilience.coordinator import ErrorRecoveryCoordinator
from site_enrichment.scheduler.batch_scheduler import BatchScheduler
from tests.fixtures.sample_data import get_location_analysis, get_sample_locations


class SlowOperation:
    """Operation taking ``delay`` seconds that records peak concurrency."""

    def __init__(self, delay: float):
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.calls = Counter()

    async def __call__(self, lat, lng):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.calls[(lat, lng)] += 1
        try:
            await asyncio.sleep(self.delay)
            return get_location_analysis(lat, lng)
        finally:
            self.active -= 1


@pytest.mark.performance
class TestSchedulerPerformance:
    """Concurrency ceilings and inter-chunk pauses measured in wall-clock time."""

    @pytest.mark.asyncio
    async def test_concurrency_ceiling_holds(self):
        """Ten 100ms requests at concurrency 3 never overlap beyond three."""
        operation = SlowOperation(0.1)
        scheduler = BatchScheduler()
        options = BatchOptions(batch_size=10, concurrency=3, delay_between_batches_ms=0, enable_caching=False)

        start = time.perf_counter()
        results = await scheduler.process_in_parallel(get_sample_locations(10), operation, options)
        elapsed = time.perf_counter() - start

        assert len(results) == 10
        assert operation.peak == 3
        # ceil(10 / 3) waves of 100ms
        assert elapsed >= 0.35, f"10 requests at concurrency 3 took {elapsed:.3f}s"

    @pytest.mark.asyncio
    async def test_chunk_pauses_and_completeness(self):
        """25 items in chunks of 10 run as three chunks separated by two 100ms pauses."""
        operation = SlowOperation(0.01)
        scheduler = BatchScheduler()
        items = get_sample_locations(25)
        options = BatchOptions(batch_size=10, concurrency=10, delay_between_batches_ms=100, enable_caching=False)

        start = time.perf_counter()
        results = await scheduler.process_in_parallel(items, operation, options)
        elapsed = time.perf_counter() - start

        assert scheduler.get_performance_metrics().batches_processed == 3
        assert elapsed >= 0.2, f"three chunks finished in {elapsed:.3f}s"
        assert len(results) == 25
        assert {entry.item for entry in results} == set(items)
        assert all(count == 1 for count in operation.calls.values())

    @pytest.mark.asyncio
    async def test_recovery_overhead_is_small(self):
        """Routing every call through the coordinator keeps parallelism intact."""
        operation = SlowOperation(0.05)
        scheduler = BatchScheduler(coordinator=ErrorRecoveryCoordinator())
        options = BatchOptions(
            batch_size=10,
            concurrency=5,
            delay_between_batches_ms=0,
            enable_caching=False,
            recovery=RecoveryGuard(service_name="LocationAPI")
        )

        start = time.perf_counter()
        results = await scheduler.process_in_parallel(get_sample_locations(10), operation, options)
        elapsed = time.perf_counter() - start

        assert all(entry.error is None for entry in results)
        assert operation.peak == 5
        assert elapsed < 1.0, f"10 guarded requests at concurrency 5 took {elapsed:.3f}s"
