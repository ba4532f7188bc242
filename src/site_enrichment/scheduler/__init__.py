"""Batch scheduling of location operations."""

from .batch_scheduler import BatchScheduler
from .http_operation import HTTPLocationOperation, LocationRequestError

__all__ = ["BatchScheduler", "HTTPLocationOperation", "LocationRequestError"]
