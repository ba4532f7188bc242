"""Core data models for the site enrichment core."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class StrategyType(Enum):
    """Recovery strategy variants."""
    RETRY = "retry"
    FALLBACK = "fallback"
    SKIP = "skip"
    FAIL = "fail"


class ServiceStatus(Enum):
    """Health classification derived from a dependency's success rate."""
    OPERATIONAL = "OPERATIONAL"
    DEGRADED = "DEGRADED"
    FAILING = "FAILING"
    DOWN = "DOWN"


class AlertSeverity(Enum):
    """Alert severities raised by the metrics recorder."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CacheKind(Enum):
    """Cache namespaces; the value is the key prefix."""
    DEMOGRAPHIC = "demo"
    LOCATION_INTELLIGENCE = "intel"
    VIABILITY = "viab"
    COMPETITIVE = "comp"
    LOCATION_ANALYSIS = "analysis"


@dataclass
class ErrorContext:
    """Identifies which dependency and which call failed."""
    service_name: str
    operation_name: str
    timestamp: float = field(default_factory=time.time)
    request_id: Optional[str] = None


@dataclass(frozen=True)
class RecoveryStrategy:
    """
    Recovery policy applied to a single coordinated call.

    Use the constructors (``retry``, ``fallback``, ``skip``, ``fail``) rather
    than building instances by hand; only the fields relevant to ``type`` are set.
    """
    type: StrategyType
    description: str = ""
    max_attempts: Optional[int] = None
    backoff_base_ms: Optional[float] = None
    fallback_value: Any = None

    @classmethod
    def retry(
        cls,
        max_attempts: Optional[int] = None,
        backoff_base_ms: Optional[float] = None,
        description: str = "Retry with exponential backoff"
    ) -> "RecoveryStrategy":
        return cls(
            StrategyType.RETRY,
            description=description,
            max_attempts=max_attempts,
            backoff_base_ms=backoff_base_ms
        )

    @classmethod
    def fallback(cls, value: Any, description: str = "Use fallback value") -> "RecoveryStrategy":
        return cls(StrategyType.FALLBACK, description=description, fallback_value=value)

    @classmethod
    def skip(cls, description: str = "Skip failed operation") -> "RecoveryStrategy":
        return cls(StrategyType.SKIP, description=description)

    @classmethod
    def fail(cls, description: str = "Cannot recover") -> "RecoveryStrategy":
        return cls(StrategyType.FAIL, description=description)


@dataclass
class ExecutionOutcome:
    """Authoritative result of one coordinated call."""
    success: bool
    data: Any = None
    error: Optional[Exception] = None
    strategy_applied: Optional[RecoveryStrategy] = None
    attempts: int = 0
    elapsed_ms: float = 0.0

    @property
    def recovered(self) -> bool:
        """True when the data is usable but came from a recovery strategy."""
        return (
            self.success
            and self.strategy_applied is not None
            and self.strategy_applied.type in (StrategyType.FALLBACK, StrategyType.SKIP)
        )

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None


@dataclass
class ErrorRecord:
    """Entry in a service's bounded error history."""
    service: str
    operation: str
    error: str
    timestamp: float
    request_id: Optional[str] = None


@dataclass
class ServiceHealth:
    """Derived health of one dependency; recomputed after every recorded outcome."""
    service: str
    error_count: int = 0
    success_count: int = 0
    last_error_at: Optional[float] = None
    success_rate: float = 1.0
    healthy: bool = True
    status: ServiceStatus = ServiceStatus.OPERATIONAL

    def recompute(self) -> None:
        total = self.success_count + self.error_count
        self.success_rate = self.success_count / total if total > 0 else 1.0
        self.healthy = self.success_rate > 0.9
        if self.success_rate >= 0.95:
            self.status = ServiceStatus.OPERATIONAL
        elif self.success_rate >= 0.80:
            self.status = ServiceStatus.DEGRADED
        elif self.success_rate >= 0.50:
            self.status = ServiceStatus.FAILING
        else:
            self.status = ServiceStatus.DOWN


@dataclass(frozen=True)
class BatchItem:
    """A unit of scheduler work; coordinates are its only identity."""
    lat: float
    lng: float
    priority: float = 0.0

    @property
    def coordinates(self) -> Tuple[float, float]:
        return (self.lat, self.lng)

    @property
    def key(self) -> str:
        """Coordinate key in ``"<lat>,<lng>"`` form."""
        return f"{self.lat},{self.lng}"


@dataclass
class RecoveryGuard:
    """Names the dependency a scheduled operation is coordinated against."""
    service_name: str
    operation_name: str = "process_location"
    strategy: RecoveryStrategy = field(default_factory=RecoveryStrategy.retry)


@dataclass
class BatchOptions:
    """Options for one scheduler invocation."""
    batch_size: int = 5
    concurrency: int = 3
    delay_between_batches_ms: float = 100
    enable_caching: bool = True
    prioritize_by_score: bool = True
    cache_kind: CacheKind = CacheKind.LOCATION_ANALYSIS
    radius: Optional[float] = None
    recovery: Optional[RecoveryGuard] = None
    operation_timeout_ms: Optional[float] = None

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got: {self.batch_size}")
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be positive, got: {self.concurrency}")
        if self.delay_between_batches_ms < 0:
            raise ValueError(
                f"delay_between_batches_ms must be non-negative, got: {self.delay_between_batches_ms}"
            )


@dataclass
class BatchResult:
    """Outcome for one input item."""
    item: BatchItem
    result: Any = None
    error: Optional[str] = None
    from_cache: bool = False
    recovered: bool = False


@dataclass
class BatchMetrics:
    """Cumulative scheduler metrics."""
    total_processing_time_ms: float = 0.0
    average_time_per_item_ms: float = 0.0
    cache_hit_rate: float = 0.0
    parallel_efficiency: float = 0.0
    batches_processed: int = 0
    items_processed: int = 0
    errors_encountered: int = 0


@dataclass
class PerformanceEvent:
    """A completed tracked operation."""
    id: str
    timestamp: float
    operation: str
    duration_ms: float
    success: bool
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


@dataclass
class PerformanceAlert:
    """A threshold breach."""
    id: str
    timestamp: float
    severity: AlertSeverity
    message: str
    metric: str
    value: float
    threshold: float


@dataclass
class PerformanceThresholds:
    """Limits evaluated by the metrics recorder."""
    max_response_time_ms: float = 5000
    max_error_rate: float = 0.05
    min_cache_hit_rate: float = 0.7
    max_memory_bytes: int = 512 * 1024 * 1024
    max_concurrent_requests: int = 50


@dataclass
class OperationStats:
    """Aggregated latency for one operation name."""
    operation: str
    average_time_ms: float
    count: int


@dataclass
class PerformanceSummary:
    """Aggregated view of a trailing time window."""
    time_window: str
    total_requests: int
    average_response_time_ms: float
    error_rate: float
    cache_hit_rate: float
    memory_usage_bytes: int
    concurrent_requests: int
    alerts: List[PerformanceAlert]
    top_slow_operations: List[OperationStats]


@dataclass
class EnrichmentRunResult:
    """Results of one orchestrated batch run plus the operator health report."""
    results: List[BatchResult]
    metrics: BatchMetrics
    health_report: Dict[str, Any]
    elapsed_seconds: float
