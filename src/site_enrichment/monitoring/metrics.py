"""Metrics recorder with sliding-window summaries and threshold alerting."""

import dataclasses
import logging
import time
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

import psutil

from site_enrichment.models.data_models import (
    AlertSeverity,
    OperationStats,
    PerformanceAlert,
    PerformanceEvent,
    PerformanceSummary,
    PerformanceThresholds,
)
from site_enrichment.monitoring.logger import StructuredLogger


ERROR_RATE_WINDOW = 100
ERROR_RATE_MIN_EVENTS = 10
HEALTH_WINDOW_MINUTES = 5


def process_memory_bytes() -> int:
    """Resident set size of the current process."""
    return psutil.Process().memory_info().rss


class MetricsRecorder:
    """
    Records tracked operations and raises alerts when thresholds are exceeded.

    Each tracked id moves STARTED -> STOPPED exactly once; stopping an unknown
    id is logged and ignored so telemetry never breaks the caller. Event and
    alert histories are bounded, oldest entries evicted first.
    """

    def __init__(
        self,
        thresholds: Optional[PerformanceThresholds] = None,
        max_events: int = 10000,
        max_alerts: int = 1000,
        now: Callable[[], float] = time.time,
        memory_probe: Callable[[], int] = process_memory_bytes,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Args:
            thresholds: Alert thresholds (defaults to PerformanceThresholds())
            max_events: Event history size
            max_alerts: Alert history size
            now: Wall clock in seconds
            memory_probe: Returns current process memory in bytes
            logger: Structured logger for alerts and tracking misses
        """
        self.thresholds = thresholds or PerformanceThresholds()
        self._now = now
        self._memory_probe = memory_probe
        self.logger = logger or StructuredLogger("site_enrichment.metrics")

        self._events: Deque[PerformanceEvent] = deque(maxlen=max_events)
        self._alerts: Deque[PerformanceAlert] = deque(maxlen=max_alerts)
        self._active: Dict[str, Tuple[str, float, Optional[Dict[str, Any]]]] = {}

    def start_tracking(self, operation: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Record a start timestamp and return the tracking id."""
        tracking_id = self._generate_id()
        self._active[tracking_id] = (operation, self._now(), metadata)

        if len(self._active) > self.thresholds.max_concurrent_requests:
            self.create_alert(
                AlertSeverity.HIGH,
                "High concurrent request count",
                "concurrentRequests",
                len(self._active),
                self.thresholds.max_concurrent_requests
            )

        return tracking_id

    def stop_tracking(
        self,
        tracking_id: str,
        success: bool = True,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[PerformanceEvent]:
        """
        Close a tracked operation and evaluate thresholds.

        Returns:
            The recorded event, or None if the id is unknown
        """
        active = self._active.pop(tracking_id, None)
        if active is None:
            self.logger.tracking_miss(tracking_id)
            return None

        operation, started_at, start_metadata = active
        timestamp = self._now()

        merged_metadata = None
        if start_metadata or metadata:
            merged_metadata = {**(start_metadata or {}), **(metadata or {})}

        event = PerformanceEvent(
            id=tracking_id,
            timestamp=timestamp,
            operation=operation,
            duration_ms=(timestamp - started_at) * 1000,
            success=success,
            metadata=merged_metadata,
            error=error
        )
        self.record_event(event)
        self._check_thresholds(event)
        return event

    def record_event(self, event: PerformanceEvent) -> None:
        """Append an event directly, bypassing start/stop tracking."""
        self._events.append(event)

        if event.duration_ms > self.thresholds.max_response_time_ms:
            self.logger.log(
                "slow_operation",
                level=logging.WARNING,
                operation=event.operation,
                elapsed_ms=round(event.duration_ms, 1)
            )
        if not event.success and event.error:
            self.logger.log("operation_failed", level=logging.ERROR, operation=event.operation, error=event.error)

    def create_alert(
        self,
        severity: Union[AlertSeverity, str],
        message: str,
        metric: str,
        value: float,
        threshold: float
    ) -> PerformanceAlert:
        severity = AlertSeverity(severity)
        alert = PerformanceAlert(
            id=self._generate_id(),
            timestamp=self._now(),
            severity=severity,
            message=message,
            metric=metric,
            value=value,
            threshold=threshold
        )
        self._alerts.append(alert)
        self.logger.alert(severity.value, message, metric, value, threshold)
        return alert

    def get_performance_summary(self, window_minutes: float = 60) -> PerformanceSummary:
        """Aggregate events and alerts from the trailing window."""
        window_start = self._now() - window_minutes * 60
        events = [e for e in self._events if e.timestamp >= window_start]
        alerts = [a for a in self._alerts if a.timestamp >= window_start]

        total = len(events)
        failures = sum(1 for e in events if not e.success)
        error_rate = failures / total if total > 0 else 0.0
        average = sum(e.duration_ms for e in events) / total if total > 0 else 0.0

        cache_events = [e for e in events if "cache" in e.operation]
        cache_hits = sum(1 for e in cache_events if (e.metadata or {}).get("cache_hit") is True)
        cache_hit_rate = cache_hits / len(cache_events) if cache_events else 0.0

        per_operation: Dict[str, List[float]] = {}
        for event in events:
            per_operation.setdefault(event.operation, []).append(event.duration_ms)
        top_slow = sorted(
            (
                OperationStats(operation=op, average_time_ms=sum(d) / len(d), count=len(d))
                for op, d in per_operation.items()
            ),
            key=lambda stats: stats.average_time_ms,
            reverse=True
        )[:10]

        return PerformanceSummary(
            time_window=f"{window_minutes} minutes",
            total_requests=total,
            average_response_time_ms=round(average, 2),
            error_rate=round(error_rate, 3),
            cache_hit_rate=round(cache_hit_rate, 3),
            memory_usage_bytes=self._memory_probe(),
            concurrent_requests=len(self._active),
            alerts=alerts,
            top_slow_operations=top_slow
        )

    def get_recent_alerts(self, count: int = 50) -> List[PerformanceAlert]:
        """Most recent alerts, newest first."""
        return list(self._alerts)[-count:][::-1]

    def get_active_requests(self) -> List[Dict[str, Any]]:
        now = self._now()
        return [
            {"id": tracking_id, "operation": operation, "duration_ms": (now - started_at) * 1000}
            for tracking_id, (operation, started_at, _) in self._active.items()
        ]

    def update_thresholds(self, **changes) -> PerformanceThresholds:
        self.thresholds = dataclasses.replace(self.thresholds, **changes)
        self.logger.log("thresholds_updated", **dataclasses.asdict(self.thresholds))
        return self.thresholds

    def get_thresholds(self) -> PerformanceThresholds:
        return dataclasses.replace(self.thresholds)

    def cleanup(self, older_than_minutes: float = 1440) -> Tuple[int, int]:
        """
        Drop events and alerts older than the cutoff.

        Returns:
            (events_removed, alerts_removed)
        """
        cutoff = self._now() - older_than_minutes * 60
        events_before, alerts_before = len(self._events), len(self._alerts)

        self._events = deque((e for e in self._events if e.timestamp >= cutoff), maxlen=self._events.maxlen)
        self._alerts = deque((a for a in self._alerts if a.timestamp >= cutoff), maxlen=self._alerts.maxlen)

        removed = (events_before - len(self._events), alerts_before - len(self._alerts))
        if any(removed):
            self.logger.log("metrics_cleanup", events_removed=removed[0], alerts_removed=removed[1])
        return removed

    def export_performance_data(self, window_minutes: float = 60) -> Dict[str, Any]:
        window_start = self._now() - window_minutes * 60
        return {
            "events": [e for e in self._events if e.timestamp >= window_start],
            "alerts": [a for a in self._alerts if a.timestamp >= window_start],
            "summary": self.get_performance_summary(window_minutes),
        }

    def health_check(self) -> Dict[str, Any]:
        """
        Classify recorder health over the last five minutes.

        unhealthy: a critical alert fired; degraded: error rate or average
        latency above threshold; otherwise healthy.
        """
        try:
            summary = self.get_performance_summary(HEALTH_WINDOW_MINUTES)
        except psutil.Error as e:
            self.logger.log("health_check_failed", level=logging.ERROR, error=str(e))
            return {"status": "unhealthy", "details": {"error": str(e)}}

        cutoff = self._now() - HEALTH_WINDOW_MINUTES * 60
        critical = [
            a for a in self._alerts
            if a.severity == AlertSeverity.CRITICAL and a.timestamp >= cutoff
        ]

        status = "healthy"
        if critical:
            status = "unhealthy"
        elif (summary.error_rate > self.thresholds.max_error_rate
              or summary.average_response_time_ms > self.thresholds.max_response_time_ms):
            status = "degraded"

        return {
            "status": status,
            "details": {
                "events_tracked": len(self._events),
                "alerts_generated": len(self._alerts),
                "active_requests": len(self._active),
                "critical_alerts": len(critical),
                "recent_summary": summary,
            }
        }

    def reset(self) -> None:
        self._events.clear()
        self._alerts.clear()
        self._active.clear()

    def _check_thresholds(self, event: PerformanceEvent) -> None:
        if event.duration_ms > self.thresholds.max_response_time_ms:
            self.create_alert(
                AlertSeverity.MEDIUM,
                f"Slow response time for {event.operation}",
                "responseTime",
                event.duration_ms,
                self.thresholds.max_response_time_ms
            )

        memory = self._memory_probe()
        if memory > self.thresholds.max_memory_bytes:
            self.create_alert(
                AlertSeverity.HIGH,
                "High memory usage detected",
                "memoryUsage",
                memory,
                self.thresholds.max_memory_bytes
            )

        recent = list(self._events)[-ERROR_RATE_WINDOW:]
        if len(recent) >= ERROR_RATE_MIN_EVENTS:
            error_rate = sum(1 for e in recent if not e.success) / len(recent)
            if error_rate > self.thresholds.max_error_rate:
                self.create_alert(
                    AlertSeverity.HIGH,
                    "High error rate detected",
                    "errorRate",
                    error_rate,
                    self.thresholds.max_error_rate
                )

    def _generate_id(self) -> str:
        return f"perf_{int(self._now() * 1000)}_{uuid.uuid4().hex[:9]}"
