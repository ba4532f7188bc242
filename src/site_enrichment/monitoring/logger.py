"""Structured logging for resilience and scheduling telemetry."""

import json
import logging
from typing import Optional


class StructuredLogger:
    """Structured logger with uniform schema."""

    def __init__(self, name: str = "site_enrichment", level: str = "INFO"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def log(self, event: str, level: int = logging.INFO, **kwargs) -> None:
        """
        Log structured event.

        Standard keys: event, service, operation, attempt, max_attempts, error,
                      delay_ms, cb_state, strategy, batch, items, elapsed_ms
        """
        log_data = {"event": event, **kwargs}
        self.logger.log(level, json.dumps(log_data, default=str))

    def recovery_attempt(self, service: str, operation: str, attempt: int, max_attempts: int) -> None:
        self.log(
            "recovery_attempt",
            level=logging.DEBUG,
            service=service,
            operation=operation,
            attempt=attempt,
            max_attempts=max_attempts
        )

    def recovery_failure(self, service: str, operation: str, attempt: int, error: str) -> None:
        self.log(
            "recovery_failure",
            level=logging.WARNING,
            service=service,
            operation=operation,
            attempt=attempt,
            error=error
        )

    def retry_scheduled(self, service: str, operation: str, attempt: int, delay_ms: float) -> None:
        self.log("retry_scheduled", service=service, operation=operation, attempt=attempt, delay_ms=round(delay_ms, 1))

    def circuit_breaker_state(self, service: str, state: str, failures: Optional[int] = None) -> None:
        self.log("circuit_breaker", level=logging.WARNING, service=service, cb_state=state, failures=failures)

    def strategy_applied(self, service: str, operation: str, strategy: str, description: str) -> None:
        self.log("strategy_applied", service=service, operation=operation, strategy=strategy, description=description)

    def batch_start(self, items: int, batch_size: int, concurrency: int) -> None:
        self.log("batch_start", items=items, batch_size=batch_size, concurrency=concurrency)

    def chunk_processed(self, batch: int, items: int, elapsed_ms: float) -> None:
        self.log("chunk_processed", level=logging.DEBUG, batch=batch, items=items, elapsed_ms=round(elapsed_ms, 1))

    def batch_complete(self, items: int, cache_hits: int, errors: int, elapsed_ms: float) -> None:
        self.log("batch_complete", items=items, cache_hits=cache_hits, errors=errors, elapsed_ms=round(elapsed_ms, 1))

    def item_error(self, lat: float, lng: float, error: str) -> None:
        self.log("item_error", level=logging.ERROR, lat=lat, lng=lng, error=error)

    def alert(self, severity: str, message: str, metric: str, value: float, threshold: float) -> None:
        level = {
            "critical": logging.ERROR,
            "high": logging.WARNING,
            "medium": logging.WARNING,
        }.get(severity, logging.INFO)
        self.log("alert", level=level, severity=severity, message=message, metric=metric, value=value, threshold=threshold)

    def tracking_miss(self, tracking_id: str) -> None:
        self.log("tracking_miss", level=logging.WARNING, tracking_id=tracking_id)
