"""httpx-backed location operation with recovery-friendly error messages."""

from typing import Any, Dict, Optional

import httpx


class LocationRequestError(Exception):
    """
    A location request failed.

    The message starts with a category the recovery classifiers understand:
    ``rate_limit``, ``connection``, ``timeout``, ``invalid_request`` or
    ``invalid_response``.
    """

    def __init__(self, category: str, detail: str, status_code: Optional[int] = None):
        super().__init__(f"{category}: {detail}")
        self.category = category
        self.status_code = status_code


def categorize_status(status_code: int) -> Optional[str]:
    """Error category for an HTTP status, or None for success codes."""
    if status_code == 429:
        return "rate_limit"
    if status_code >= 500:
        return "connection"
    if status_code >= 400:
        return "invalid_request"
    return None


class HTTPLocationOperation:
    """
    Async callable ``(lat, lng) -> JSON`` over an HTTP endpoint.

    Wraps httpx.AsyncClient with connect/read timeouts. The URL template is
    formatted with ``lat`` and ``lng``, e.g.
    ``http://localhost:8000/analysis?lat={lat}&lng={lng}``.

    Use as an async context manager so the connection pool is closed.
    """

    def __init__(
        self,
        url_template: str,
        connect_timeout: float = 3.0,
        read_timeout: float = 8.0,
        write_timeout: float = 5.0,
        pool_timeout: float = 5.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize operation.

        Args:
            url_template: URL with ``{lat}`` and ``{lng}`` placeholders
            connect_timeout: Connection timeout in seconds
            read_timeout: Read timeout in seconds
            write_timeout: Write timeout in seconds
            pool_timeout: Pool timeout in seconds
            headers: Extra request headers
            transport: Custom httpx transport (e.g. httpx.MockTransport in tests)
        """
        self.url_template = url_template
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.pool_timeout = pool_timeout
        self.headers = headers or {}
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        timeout = httpx.Timeout(
            connect=self.connect_timeout,
            read=self.read_timeout,
            write=self.write_timeout,
            pool=self.pool_timeout
        )
        self._client = httpx.AsyncClient(timeout=timeout, headers=self.headers, transport=self.transport)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._client:
            await self._client.aclose()
            self._client = None

    def url_for(self, lat: float, lng: float) -> str:
        return self.url_template.format(lat=lat, lng=lng)

    async def __call__(self, lat: float, lng: float) -> Any:
        """
        Fetch the result for one location.

        Raises:
            RuntimeError: If used outside ``async with``
            LocationRequestError: On HTTP error status, timeout or transport failure
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        url = self.url_for(lat, lng)
        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as e:
            raise LocationRequestError("timeout", f"{type(e).__name__} for {url}") from e
        except httpx.TransportError as e:
            raise LocationRequestError("connection", f"{type(e).__name__} for {url}") from e

        category = categorize_status(response.status_code)
        if category is not None:
            raise LocationRequestError(category, f"HTTP {response.status_code} from {url}", response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise LocationRequestError("invalid_response", f"non-JSON body from {url}") from e
