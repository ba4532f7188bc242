"""Enrichment orchestrator wiring resilience, caching, monitoring and scheduling."""

import asyncio
import dataclasses
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from site_enrichment.cache.gateway import CacheGateway
from site_enrichment.cache.memory_cache import InMemoryCacheGateway
from site_enrichment.models.config import EnrichmentConfig
from site_enrichment.models.data_models import (
    BatchItem,
    BatchOptions,
    EnrichmentRunResult,
    ServiceHealth,
)
from site_enrichment.monitoring.logger import StructuredLogger
from site_enrichment.monitoring.metrics import MetricsRecorder
from site_enrichment.resilience.coordinator import ErrorRecoveryCoordinator
from site_enrichment.scheduler.batch_scheduler import BatchScheduler, LocationOperation


def _service_health_dict(health: ServiceHealth) -> Dict[str, Any]:
    return {
        "service": health.service,
        "status": health.status.value,
        "healthy": health.healthy,
        "success_rate": round(health.success_rate, 3),
        "success_count": health.success_count,
        "error_count": health.error_count,
        "last_error_at": health.last_error_at,
    }


class EnrichmentOrchestrator:
    """
    Builds one coordinator, metrics recorder, cache and scheduler from config.

    Components are created per orchestrator and may be injected for tests;
    nothing is shared through module-level singletons.
    """

    def __init__(
        self,
        config: EnrichmentConfig,
        cache: Optional[CacheGateway] = None,
        metrics: Optional[MetricsRecorder] = None,
        coordinator: Optional[ErrorRecoveryCoordinator] = None,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize orchestrator with enrichment configuration.

        Args:
            config: Enrichment configuration object
            cache: Cache gateway (default: in-memory gateway from config)
            metrics: Metrics recorder (default: recorder from config thresholds)
            coordinator: Recovery coordinator (default: built from config)
            sleeper: Async sleep used for backoff and batch pauses
        """
        self.config = config
        self.logger = StructuredLogger(level=config.log_level)
        self.metrics = metrics or MetricsRecorder(
            thresholds=config.thresholds(),
            max_events=config.max_events_to_keep,
            max_alerts=config.max_alerts_to_keep,
            logger=self.logger
        )
        self.cache = cache or InMemoryCacheGateway(
            ttl=config.cache_ttl,
            max_entries=config.cache_max_entries,
            precision=config.cache_coordinate_precision,
            logger=self.logger
        )
        self.coordinator = coordinator or ErrorRecoveryCoordinator.from_config(
            config,
            metrics=self.metrics,
            logger=self.logger,
            sleeper=sleeper
        )
        self.scheduler = BatchScheduler(
            cache=self.cache,
            coordinator=self.coordinator,
            metrics=self.metrics,
            logger=self.logger,
            sleeper=sleeper,
            max_memory_bytes=config.max_memory_bytes,
            estimated_item_memory_bytes=config.estimated_item_memory_bytes,
            memory_reclaim_pause_ms=config.memory_reclaim_pause_ms
        )

    async def run(
        self,
        items: Sequence[BatchItem],
        operation: LocationOperation,
        options: Optional[BatchOptions] = None,
    ) -> EnrichmentRunResult:
        """
        Run one batch under the configured ``total_timeout``.

        Raises:
            asyncio.TimeoutError: If the run exceeds total_timeout
        """
        try:
            return await asyncio.wait_for(
                self._run_batch(items, operation, options or self.config.batch_options()),
                timeout=self.config.total_timeout
            )
        except asyncio.TimeoutError:
            self.logger.log("enrichment_timeout", timeout=self.config.total_timeout)
            raise

    async def _run_batch(
        self,
        items: Sequence[BatchItem],
        operation: LocationOperation,
        options: BatchOptions,
    ) -> EnrichmentRunResult:
        start = time.perf_counter()
        self.logger.log("enrichment_start", items=len(items))

        results = await self.scheduler.process_in_parallel(items, operation, options)

        elapsed = time.perf_counter() - start
        self.logger.log("enrichment_complete", items=len(results), elapsed_ms=round(elapsed * 1000, 1))
        return EnrichmentRunResult(
            results=results,
            metrics=self.scheduler.get_performance_metrics(),
            health_report=self.health_report(),
            elapsed_seconds=elapsed
        )

    def health_report(self, window_minutes: float = 60) -> Dict[str, Any]:
        """
        Operator-facing health view.

        Returns:
            ``{overall_health, service_health[], error_statistics, summary}``
            built from plain JSON-serializable values
        """
        services = self.coordinator.get_service_health()
        statistics = self.coordinator.get_error_statistics()
        performance = self.metrics.get_performance_summary(window_minutes)

        return {
            "overall_health": self.coordinator.get_overall_health(),
            "service_health": [_service_health_dict(health) for health in services],
            "error_statistics": {
                "total_errors": statistics["total_errors"],
                "errors_by_service": statistics["errors_by_service"],
                "recent_errors": [dataclasses.asdict(record) for record in statistics["recent_errors"]],
                "circuit_breaker_status": statistics["circuit_breaker_status"],
            },
            "summary": {
                "total_services": len(services),
                "healthy_services": sum(1 for health in services if health.healthy),
                "total_requests": performance.total_requests,
                "average_response_time_ms": performance.average_response_time_ms,
                "error_rate": performance.error_rate,
                "cache_hit_rate": performance.cache_hit_rate,
                "memory_usage_bytes": performance.memory_usage_bytes,
                "alerts": len(performance.alerts),
            },
        }
