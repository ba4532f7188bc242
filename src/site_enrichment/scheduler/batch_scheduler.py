"""Priority-ordered, cache-aware, concurrency-bounded batch execution."""

import asyncio
import dataclasses
import gc
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from site_enrichment.cache.gateway import CacheGateway
from site_enrichment.models.data_models import (
    BatchItem,
    BatchMetrics,
    BatchOptions,
    BatchResult,
    CacheKind,
    ErrorContext,
)
from site_enrichment.monitoring.logger import StructuredLogger
from site_enrichment.monitoring.metrics import MetricsRecorder, process_memory_bytes
from site_enrichment.resilience.coordinator import ErrorRecoveryCoordinator, invoke


LocationOperation = Callable[[float, float], Awaitable[Any]]
T = TypeVar("T")

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 10


@dataclass
class _RunStats:
    cache_hits: int = 0
    errors: int = 0
    batches: int = 0


def _clamp_batch_size(size: int) -> int:
    return max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, size))


class BatchScheduler:
    """
    Runs a location operation over many items.

    Items are ordered by priority (highest first, stable for ties), split into
    fixed-size chunks and processed chunk by chunk with a pause in between.
    Inside a chunk at most ``concurrency`` items are in flight. Cached results
    short-circuit the operation and successful results are written back.

    A failing item never aborts the batch: it yields a BatchResult carrying
    the error. Results are returned in dispatch order.
    """

    def __init__(
        self,
        cache: Optional[CacheGateway] = None,
        coordinator: Optional[ErrorRecoveryCoordinator] = None,
        metrics: Optional[MetricsRecorder] = None,
        logger: Optional[StructuredLogger] = None,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
        memory_probe: Callable[[], int] = process_memory_bytes,
        max_memory_bytes: int = 100 * 1024 * 1024,
        estimated_item_memory_bytes: int = 50 * 1024,
        memory_reclaim_pause_ms: float = 500,
    ):
        """
        Initialize scheduler.

        Args:
            cache: Cache gateway; caching is disabled when None
            coordinator: Required only for options that carry a RecoveryGuard
            metrics: Optional recorder for cache lookups and batch runs
            logger: Optional structured logger
            sleeper: Async sleep taking seconds (default: asyncio.sleep)
            memory_probe: Returns current process memory in bytes
            max_memory_bytes: Default ceiling for memory-aware batching
            estimated_item_memory_bytes: Memory assumed per in-flight item
            memory_reclaim_pause_ms: Pause after a chunk that ends above the ceiling
        """
        self.cache = cache
        self.coordinator = coordinator
        self.metrics = metrics
        self.logger = logger or StructuredLogger("site_enrichment.scheduler")
        self._sleep = sleeper
        self._memory_probe = memory_probe
        self.max_memory_bytes = max_memory_bytes
        self.estimated_item_memory_bytes = estimated_item_memory_bytes
        self.memory_reclaim_pause_ms = memory_reclaim_pause_ms
        self._metrics = BatchMetrics()

    async def process_in_parallel(
        self,
        items: Sequence[BatchItem],
        operation: LocationOperation,
        options: Optional[BatchOptions] = None,
    ) -> List[BatchResult]:
        """
        Process ``items`` with ``operation(lat, lng)``.

        Args:
            items: Work items; coordinates are their only identity
            operation: Async callable producing the result for one location
            options: Chunking, concurrency, caching and recovery settings

        Returns:
            One BatchResult per input item, in dispatch order

        Raises:
            ValueError: If options carry a RecoveryGuard but no coordinator is set
        """
        options = options or BatchOptions()
        if options.recovery is not None and self.coordinator is None:
            raise ValueError("recovery options require an ErrorRecoveryCoordinator")

        ordered = list(items)
        if options.prioritize_by_score:
            ordered = sorted(ordered, key=lambda item: item.priority, reverse=True)

        start = time.perf_counter()
        stats = _RunStats()
        results: List[BatchResult] = []
        semaphore = asyncio.Semaphore(options.concurrency)
        tracking_id = self._start_tracking(f"batch.{options.cache_kind.value}", len(ordered))

        self.logger.batch_start(len(ordered), options.batch_size, options.concurrency)

        for offset in range(0, len(ordered), options.batch_size):
            chunk = ordered[offset:offset + options.batch_size]
            chunk_start = time.perf_counter()

            chunk_results = await asyncio.gather(
                *(self._process_item(item, operation, options, semaphore, stats) for item in chunk)
            )
            results.extend(chunk_results)
            stats.batches += 1
            self.logger.chunk_processed(stats.batches, len(chunk), (time.perf_counter() - chunk_start) * 1000)

            if offset + options.batch_size < len(ordered) and options.delay_between_batches_ms > 0:
                await self._sleep(options.delay_between_batches_ms / 1000)

        elapsed_ms = (time.perf_counter() - start) * 1000
        self._update_metrics(len(ordered), elapsed_ms, stats)
        self.logger.batch_complete(len(ordered), stats.cache_hits, stats.errors, elapsed_ms)

        if tracking_id is not None:
            self.metrics.stop_tracking(
                tracking_id,
                success=stats.errors == 0,
                metadata={"cache_hits": stats.cache_hits, "errors": stats.errors, "batches": stats.batches}
            )

        return results

    async def batch_process_profiles(
        self,
        items: Sequence[BatchItem],
        operation: LocationOperation,
        options: Optional[BatchOptions] = None,
        kind: CacheKind = CacheKind.DEMOGRAPHIC,
    ) -> Dict[str, Any]:
        """
        Bulk variant returning results keyed by ``"<lat>,<lng>"``.

        The cache is consulted once for all items; if everything hits no
        operation runs. Fresh results are written back in one bulk call.
        Failed items are absent from the mapping.
        """
        options = options or BatchOptions(cache_kind=kind)
        results: Dict[str, Any] = {}
        pending = list(items)

        if options.enable_caching and self.cache is not None:
            cached = await self._bulk_lookup(kind, pending)
            results.update(cached)
            pending = [item for item in pending if item.key not in cached]

            if not pending:
                self.logger.log("profiles_all_cached", items=len(results))
                return results

        processed = await self.process_in_parallel(
            pending,
            operation,
            dataclasses.replace(options, enable_caching=False, cache_kind=kind)
        )

        to_cache = []
        for entry in processed:
            if entry.result is None:
                continue
            results[entry.item.key] = entry.result
            if not entry.recovered:
                to_cache.append((entry.item.lat, entry.item.lng, entry.result))

        if to_cache and options.enable_caching and self.cache is not None:
            try:
                await self.cache.set_multiple(kind, to_cache)
            except Exception as e:
                self.logger.log("cache_write_failed", level=logging.WARNING, kind=kind.value, error=str(e))

        return results

    async def optimize_with_intelligent_caching(
        self,
        items: Sequence[BatchItem],
        operation: LocationOperation,
        kind: CacheKind = CacheKind.LOCATION_ANALYSIS,
        options: Optional[BatchOptions] = None,
    ) -> List[BatchResult]:
        """
        Split items into cached and uncached up front, then process only the misses.

        The combined result list keeps priority order across cached and
        freshly computed entries.
        """
        options = options or BatchOptions(cache_kind=kind)
        caching = options.enable_caching and self.cache is not None
        ordered = sorted(items, key=lambda item: item.priority, reverse=True)
        results: List[Optional[BatchResult]] = [None] * len(ordered)
        misses: List[int] = []

        for index, item in enumerate(ordered):
            cached = await self._lookup(item, kind, None) if caching else None
            if cached is not None:
                results[index] = BatchResult(item=item, result=cached, from_cache=True)
            else:
                misses.append(index)

        self.logger.log(
            "cache_split",
            items=len(ordered),
            cache_hits=len(ordered) - len(misses),
            misses=len(misses)
        )

        if misses:
            processed = await self.process_in_parallel(
                [ordered[index] for index in misses],
                operation,
                dataclasses.replace(
                    options,
                    batch_size=_clamp_batch_size(min(options.batch_size, len(misses))),
                    cache_kind=kind,
                    prioritize_by_score=False,
                    enable_caching=False
                )
            )
            for index, entry in zip(misses, processed):
                results[index] = entry
                if caching and entry.result is not None and not entry.recovered:
                    await self._store(entry.item, kind, None, entry.result)

        return results

    async def process_with_memory_optimization(
        self,
        items: Sequence[BatchItem],
        operation: LocationOperation,
        max_memory_bytes: Optional[int] = None,
        options: Optional[BatchOptions] = None,
    ) -> List[BatchResult]:
        """
        Process items in chunks sized from the current memory headroom.

        The chunk size is recomputed before every chunk. When memory ends a
        chunk above the ceiling, garbage is collected and the run pauses.
        """
        ceiling = max_memory_bytes if max_memory_bytes is not None else self.max_memory_bytes
        options = options or BatchOptions(concurrency=2)
        pending = list(items)
        results: List[BatchResult] = []

        while pending:
            batch_size = self.calculate_memory_aware_batch_size(ceiling)
            chunk, pending = pending[:batch_size], pending[batch_size:]

            results.extend(
                await self.process_in_parallel(
                    chunk,
                    operation,
                    dataclasses.replace(options, batch_size=batch_size)
                )
            )

            usage = self._memory_probe()
            if usage > ceiling:
                self.logger.log(
                    "memory_ceiling_exceeded",
                    level=logging.WARNING,
                    memory_bytes=usage,
                    ceiling_bytes=ceiling
                )
                gc.collect()
                await self._sleep(self.memory_reclaim_pause_ms / 1000)

        return results

    def calculate_memory_aware_batch_size(self, max_memory_bytes: Optional[int] = None) -> int:
        """Items that fit into the remaining headroom, clamped to [1, 10]."""
        ceiling = max_memory_bytes if max_memory_bytes is not None else self.max_memory_bytes
        available = ceiling - self._memory_probe()
        return _clamp_batch_size(int(available // self.estimated_item_memory_bytes))

    def calculate_optimal_batch_size(
        self,
        total_items: int,
        average_latency_ms: float,
        target_latency_ms: float = 10000,
        max_concurrent_batches: int = 3,
    ) -> int:
        """
        Batch size that keeps a chunk near ``target_latency_ms``.

        Returns:
            floor(target / (latency * concurrent batches)) clamped to [1, 10]
            and never above ``total_items`` (when positive)
        """
        if average_latency_ms <= 0:
            size = MAX_BATCH_SIZE
        else:
            size = int(target_latency_ms // (average_latency_ms * max_concurrent_batches))
        if total_items > 0:
            size = min(size, total_items)
        return _clamp_batch_size(size)

    async def batch_external_requests(
        self,
        requests: Sequence[T],
        api_call: Callable[[List[T]], Awaitable[List[Any]]],
        batch_size: int = 10,
        delay_ms: float = 200,
    ) -> List[Any]:
        """
        Send ``requests`` to a bulk API in slices of ``batch_size``.

        A failing slice is logged and contributes nothing; later slices still run.
        """
        results: List[Any] = []
        for offset in range(0, len(requests), batch_size):
            chunk = list(requests[offset:offset + batch_size])
            try:
                results.extend(await api_call(chunk))
            except Exception as e:
                self.logger.log(
                    "external_batch_failed",
                    level=logging.ERROR,
                    batch=offset // batch_size + 1,
                    items=len(chunk),
                    error=str(e)
                )

            if offset + batch_size < len(requests) and delay_ms > 0:
                await self._sleep(delay_ms / 1000)

        return results

    def get_performance_metrics(self) -> BatchMetrics:
        return dataclasses.replace(self._metrics)

    def reset_metrics(self) -> None:
        self._metrics = BatchMetrics()

    async def _process_item(
        self,
        item: BatchItem,
        operation: LocationOperation,
        options: BatchOptions,
        semaphore: asyncio.Semaphore,
        stats: _RunStats,
    ) -> BatchResult:
        async with semaphore:
            caching = options.enable_caching and self.cache is not None

            if caching:
                cached = await self._lookup(item, options.cache_kind, options.radius)
                if cached is not None:
                    stats.cache_hits += 1
                    return BatchResult(item=item, result=cached, from_cache=True)

            recovered = False
            try:
                if options.recovery is not None:
                    guard = options.recovery
                    outcome = await self.coordinator.execute_with_recovery(
                        lambda: operation(item.lat, item.lng),
                        ErrorContext(service_name=guard.service_name, operation_name=guard.operation_name),
                        guard.strategy,
                        options.operation_timeout_ms
                    )
                    if not outcome.success:
                        stats.errors += 1
                        self.logger.item_error(item.lat, item.lng, outcome.error_message)
                        return BatchResult(item=item, error=outcome.error_message)
                    result = outcome.data
                    recovered = outcome.recovered
                else:
                    result = await invoke(lambda: operation(item.lat, item.lng), options.operation_timeout_ms)
            except Exception as e:
                stats.errors += 1
                self.logger.item_error(item.lat, item.lng, str(e))
                return BatchResult(item=item, error=str(e))

            # Degraded values stand in for one run only
            if caching and result is not None and not recovered:
                await self._store(item, options.cache_kind, options.radius, result)

            return BatchResult(item=item, result=result, recovered=recovered)

    async def _lookup(self, item: BatchItem, kind: CacheKind, radius: Optional[float]) -> Optional[Any]:
        """Cache read that treats gateway failures as misses."""
        tracking_id = self._start_tracking("cache.lookup", 1)
        try:
            value = await self.cache.get(kind, item.lat, item.lng, radius)
        except Exception as e:
            self.logger.log("cache_read_failed", level=logging.WARNING, kind=kind.value, key=item.key, error=str(e))
            value = None
        if tracking_id is not None:
            self.metrics.stop_tracking(tracking_id, metadata={"cache_hit": value is not None, "kind": kind.value})
        return value

    async def _bulk_lookup(self, kind: CacheKind, items: Sequence[BatchItem]) -> Dict[str, Any]:
        try:
            return await self.cache.get_multiple(kind, [item.coordinates for item in items])
        except Exception as e:
            self.logger.log("cache_read_failed", level=logging.WARNING, kind=kind.value, items=len(items), error=str(e))
            return {}

    async def _store(self, item: BatchItem, kind: CacheKind, radius: Optional[float], value: Any) -> None:
        try:
            await self.cache.set(kind, item.lat, item.lng, value, radius)
        except Exception as e:
            self.logger.log("cache_write_failed", level=logging.WARNING, kind=kind.value, key=item.key, error=str(e))

    def _start_tracking(self, operation: str, items: int) -> Optional[str]:
        if self.metrics is None:
            return None
        return self.metrics.start_tracking(operation, {"items": items})

    def _update_metrics(self, items: int, elapsed_ms: float, stats: _RunStats) -> None:
        m = self._metrics
        m.total_processing_time_ms += elapsed_ms
        m.items_processed += items
        m.batches_processed += stats.batches
        m.errors_encountered += stats.errors

        if m.items_processed > 0:
            m.average_time_per_item_ms = m.total_processing_time_ms / m.items_processed
        if items > 0:
            m.cache_hit_rate = stats.cache_hits / items
            sequential_ms = m.average_time_per_item_ms * items
            m.parallel_efficiency = elapsed_ms / sequential_ms if sequential_ms > 0 else 0.0
