"""Base async HTTP client with rate limiting and connection pooling.

HTTP-backed adapters inherit from this base to ensure consistent behavior:
- Async/await for non-blocking I/O
- Connection pooling for performance
- Rate limiting to respect API quotas
- Failures classified into SourceError kinds (no retries here — retry policy
  belongs to the ErrorRecoveryController)

Usage:
    class MyAdapter(BaseAsyncClient):
        def __init__(self, api_key: str, rate_limit: int = 10):
            super().__init__(
                base_url="https://api.example.com",
                headers={"Authorization": f"Bearer {api_key}"},
                rate_limit=rate_limit
            )

        async def get_data(self, metric: str) -> dict:
            return await self.get(f"/data/{metric}")
"""

import asyncio
import logging
from typing import Any

import httpx

from keystone.errors import SourceError, SourceTimeout, SourceUnavailable, TransientNetworkError

logger = logging.getLogger(__name__)

# Status codes worth retrying; everything else >= 400 means the source is unusable
_TRANSIENT_STATUS_CODES = {408, 425, 429, 502, 504}


class RateLimiter:
    """Token bucket shared by every request of one API adapter.

    The metrics API throttles per key and answers 429 once the budget is
    spent; waiting here for a token keeps the adapter under that budget so
    throttling never reaches the recovery path.

    Args:
        rate: Tokens refilled per second (settings.api_rate_limit)
        burst: Bucket size, requests allowed back to back (default: rate)
    """

    def __init__(self, rate: int, burst: int | None = None) -> None:
        if rate <= 0:
            raise ValueError(f"rate must be > 0, got {rate}")
        self.rate = rate
        self.capacity = burst if burst is not None else rate
        self.tokens = float(self.capacity)
        # Set on first acquire; the bucket may be built outside an event loop
        self.updated_at: float | None = None
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        if self.updated_at is not None:
            self.tokens = min(self.capacity, self.tokens + (now - self.updated_at) * self.rate)
        self.updated_at = now

    async def acquire(self) -> None:
        """Take one token, sleeping until the bucket has one."""
        async with self._lock:
            loop = asyncio.get_running_loop()
            self._refill(loop.time())
            while self.tokens < 1:
                await asyncio.sleep((1 - self.tokens) / self.rate)
                self._refill(loop.time())
            self.tokens -= 1


class APIProviderError(SourceError):
    """HTTP-level failure with the response attached."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message, {"status_code": status_code})
        self.status_code = status_code
        self.response_body = response_body


class TransientAPIError(APIProviderError, TransientNetworkError):
    """Retryable HTTP status (429, 502, 504, ...)."""


class UnavailableAPIError(APIProviderError, SourceUnavailable):
    """Non-retryable HTTP status or unparseable response."""


class BaseAsyncClient:
    """Base async HTTP client with rate limiting and connection pooling.

    Args:
        base_url: Base URL for all API requests
        headers: Default headers for all requests
        rate_limit: Maximum requests per second (default: 10)
        timeout: Default request timeout in seconds (default: 30)
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        rate_limit: int = 10,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.timeout = timeout
        self._rate_limiter = RateLimiter(rate=rate_limit)
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "BaseAsyncClient":
        """Async context manager entry."""
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.aclose()

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Make one rate-limited HTTP request and classify any failure.

        Args:
            method: HTTP method (GET, HEAD)
            endpoint: API endpoint path (relative to base_url)
            params: Query parameters
            timeout: Per-request timeout override in seconds

        Returns:
            Parsed JSON response

        Raises:
            SourceTimeout: On client-side timeout
            TransientAPIError: On retryable status codes or network errors
            UnavailableAPIError: On other HTTP errors or invalid JSON
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use async with context manager.")

        # Ensure endpoint starts with /
        if not endpoint.startswith("/"):
            endpoint = f"/{endpoint}"

        await self._rate_limiter.acquire()
        logger.debug("%s %s%s params=%s", method, self.base_url, endpoint, params)

        try:
            response = await self._client.request(
                method=method,
                url=endpoint,
                params=params,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning("Timeout for %s: %s", endpoint, e)
            raise SourceTimeout(f"Request timeout: {e}") from e
        except httpx.NetworkError as e:
            logger.warning("Network error for %s: %s", endpoint, e)
            raise TransientAPIError(f"Network error: {e}") from e
        except httpx.HTTPError as e:
            logger.error("HTTP error for %s: %s", endpoint, e)
            raise UnavailableAPIError(f"HTTP error: {e}") from e

        logger.debug("Response: %d for %s", response.status_code, endpoint)

        if response.status_code >= 400:
            error_body = response.text[:500]
            error_cls = (
                TransientAPIError
                if response.status_code in _TRANSIENT_STATUS_CODES
                else UnavailableAPIError
            )
            logger.warning("API error: %d %s - %s", response.status_code, endpoint, error_body)
            raise error_cls(
                message=f"API request failed: {response.status_code}",
                status_code=response.status_code,
                response_body=error_body,
            )

        try:
            return response.json()
        except ValueError as e:
            logger.error("Failed to parse JSON response: %s", e)
            raise UnavailableAPIError(
                message=f"Invalid JSON response: {e}",
                status_code=response.status_code,
                response_body=response.text[:500],
            ) from e

    async def get(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Convenience method for GET requests."""
        return await self._request("GET", endpoint, params=params, timeout=timeout)
