"""Cache gateway interface and coordinate key derivation."""

from typing import Any, Dict, Iterable, Optional, Protocol, Tuple

from site_enrichment.models.data_models import CacheKind


Coordinate = Tuple[float, float]


def coordinate_key(lat: float, lng: float) -> str:
    """Mapping key used by bulk lookups: ``"<lat>,<lng>"``."""
    return f"{lat},{lng}"


def cache_key(
    kind: CacheKind,
    lat: float,
    lng: float,
    radius: Optional[float] = None,
    precision: int = 3
) -> str:
    """
    Storage key for a cached result.

    Coordinates are rounded so nearby requests share an entry, e.g.
    ``demo:40.713,-74.006`` or ``comp:40.713,-74.006:r5.0``.
    """
    key = f"{kind.value}:{round(lat, precision)},{round(lng, precision)}"
    if radius is not None:
        key = f"{key}:r{radius}"
    return key


class CacheGateway(Protocol):
    """Key-value store for per-location results, namespaced by CacheKind."""

    async def get(self, kind: CacheKind, lat: float, lng: float, radius: Optional[float] = None) -> Optional[Any]:
        """Return the cached value or None."""
        ...

    async def set(
        self,
        kind: CacheKind,
        lat: float,
        lng: float,
        value: Any,
        radius: Optional[float] = None
    ) -> None:
        ...

    async def get_multiple(self, kind: CacheKind, coordinates: Iterable[Coordinate]) -> Dict[str, Any]:
        """Cached values for the coordinates that hit, keyed by ``coordinate_key``."""
        ...

    async def set_multiple(self, kind: CacheKind, entries: Iterable[Tuple[float, float, Any]]) -> None:
        ...
