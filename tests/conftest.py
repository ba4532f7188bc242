"""Pytest configuration and shared fixtures."""

import random
from typing import List

import pytest

from site_enrichment.cache.memory_cache import InMemoryCacheGateway
from site_enrichment.models.config import EnrichmentConfig
from site_enrichment.monitoring.metrics import MetricsRecorder
from site_enrichment.resilience.circuit_breaker import CircuitBreaker
from site_enrichment.resilience.coordinator import ErrorRecoveryCoordinator
from site_enrichment.resilience.health import ServiceHealthTracker
from site_enrichment.resilience.retry_handler import RetryHandler


class FakeClock:
    """Fake clock for testing."""

    def __init__(self, initial_time: float = 1_700_000_000.0):
        self._current_time = initial_time

    def now(self) -> float:
        return self._current_time

    def __call__(self) -> float:
        return self._current_time

    def advance(self, seconds: float) -> None:
        self._current_time += seconds


class FakeSleeper:
    """Records requested sleeps (in seconds) and advances an optional clock."""

    def __init__(self, clock: FakeClock = None):
        self.calls: List[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


@pytest.fixture(scope="session")
def deterministic_seed():
    """Set a fixed random seed for deterministic test results."""
    random.seed(42)
    return 42


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_sleeper(fake_clock):
    return FakeSleeper(fake_clock)


@pytest.fixture
def metrics(fake_clock):
    """Recorder on the fake clock with a constant, low memory reading."""
    return MetricsRecorder(now=fake_clock, memory_probe=lambda: 50 * 1024 * 1024)


@pytest.fixture
def coordinator(fake_clock, fake_sleeper):
    """Coordinator with threshold 5, 60s breaker timeout and no real sleeping."""
    return ErrorRecoveryCoordinator(
        circuit_breaker=CircuitBreaker(failure_threshold=5, timeout_seconds=60.0, clock=fake_clock),
        retry_handler=RetryHandler(base_ms=1000, sleeper=fake_sleeper),
        health_tracker=ServiceHealthTracker(now=fake_clock),
        max_attempts=3
    )


@pytest.fixture
def cache(fake_clock):
    return InMemoryCacheGateway(now=fake_clock)


@pytest.fixture
def sample_config():
    """Provide a sample configuration for testing."""
    return EnrichmentConfig(
        circuit_breaker_threshold=3,
        circuit_breaker_timeout_ms=15000,
        max_retry_attempts=3,
        retry_backoff_base_ms=10,
        batch_size=5,
        concurrency=3,
        delay_between_batches_ms=0,
        total_timeout=30.0,
    )
