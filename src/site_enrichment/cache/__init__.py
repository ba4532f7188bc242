"""Per-location result caching."""

from .gateway import CacheGateway, cache_key, coordinate_key
from .memory_cache import InMemoryCacheGateway

__all__ = ["CacheGateway", "InMemoryCacheGateway", "cache_key", "coordinate_key"]
