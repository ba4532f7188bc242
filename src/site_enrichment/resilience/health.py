"""Per-service health and error history tracking."""

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Union

from site_enrichment.models.data_models import ErrorContext, ErrorRecord, ServiceHealth


class ServiceHealthTracker:
    """
    Thread-safe store of service health and bounded error histories.

    Every update is a single read-modify-write under one lock, so concurrent
    callers for the same service never interleave counter updates.
    """

    def __init__(self, error_history_limit: int = 100, now: Callable[[], float] = time.time):
        """
        Args:
            error_history_limit: Errors kept per service (oldest evicted first)
            now: Wall clock used for error timestamps
        """
        self.error_history_limit = error_history_limit
        self._now = now
        self._lock = threading.Lock()
        self._health: Dict[str, ServiceHealth] = {}
        self._history: Dict[str, Deque[ErrorRecord]] = {}

    def _get_health(self, service: str) -> ServiceHealth:
        if service not in self._health:
            self._health[service] = ServiceHealth(service=service)
        return self._health[service]

    def record_success(self, service: str) -> ServiceHealth:
        with self._lock:
            health = self._get_health(service)
            health.success_count += 1
            health.recompute()
            return health

    def record_error(self, context: ErrorContext, error: BaseException) -> ServiceHealth:
        with self._lock:
            timestamp = self._now()
            history = self._history.setdefault(
                context.service_name,
                deque(maxlen=self.error_history_limit)
            )
            history.append(ErrorRecord(
                service=context.service_name,
                operation=context.operation_name,
                error=str(error),
                timestamp=timestamp,
                request_id=context.request_id
            ))

            health = self._get_health(context.service_name)
            health.error_count += 1
            health.last_error_at = timestamp
            health.recompute()
            return health

    def get_service_health(self, service: Optional[str] = None) -> Union[ServiceHealth, List[ServiceHealth]]:
        """
        Health of one service, or of every known service.

        Unknown services report a fully healthy default rather than erroring.
        """
        with self._lock:
            if service is not None:
                health = self._health.get(service)
                if health is None:
                    return ServiceHealth(service=service)
                return ServiceHealth(**vars(health))
            return [ServiceHealth(**vars(h)) for h in self._health.values()]

    def error_counts(self) -> Dict[str, int]:
        with self._lock:
            return {service: len(errors) for service, errors in self._history.items()}

    def recent_errors(self, per_service: int = 5, limit: int = 20) -> List[ErrorRecord]:
        """Last ``per_service`` errors of each service, newest first, at most ``limit``."""
        with self._lock:
            recent = [
                record
                for errors in self._history.values()
                for record in list(errors)[-per_service:]
            ]
        recent.sort(key=lambda record: record.timestamp, reverse=True)
        return recent[:limit]

    def reset(self) -> None:
        with self._lock:
            self._health.clear()
            self._history.clear()
