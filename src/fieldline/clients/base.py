"""Base async HTTP client with rate limiting, retries and connection pooling.

Every upstream adapter inherits from this base to ensure consistent behavior:
- Async/await for non-blocking page fetches
- Connection pooling sized to the fetch concurrency
- Token-bucket rate limiting shared by all concurrent workers
- Automatic retries with capped exponential backoff for transient failures
- Failures normalised to the APIProviderError hierarchy

Usage:
    class MyAdapter(BaseAsyncClient):
        def __init__(self, url: str, rate_limit: int = 10):
            super().__init__(base_url=url, rate_limit=rate_limit)

        async def fetch_page(self, offset: int, limit: int) -> Page:
            body = await self.get("/query", params={"offset": offset})
            ...
"""

import asyncio
import logging
from typing import Any

import httpx


logger = logging.getLogger(__name__)

# Retry configuration
_TOO_MANY_REQUESTS = 429
_MAX_RETRIES = 3
_BASE_BACKOFF = 1.0  # seconds
_MAX_BACKOFF = 30.0  # seconds


def _is_retryable(status_code: int) -> bool:
    return status_code == _TOO_MANY_REQUESTS or status_code >= 500


class RateLimiter:
    """Token bucket rate limiter for async operations.

    Ensures we don't exceed upstream rate limits using a token bucket algorithm.
    Safe to share between concurrent tasks on one event loop.

    Args:
        rate: Maximum requests per second
    """

    def __init__(self, rate: int) -> None:
        self.rate = rate
        self.tokens = rate
        self.updated_at: float = 0.0
        self._initialized: bool = False
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Acquire a token, waiting if necessary."""
        async with self._lock:
            loop = asyncio.get_running_loop()

            if not self._initialized:
                self.updated_at = loop.time()
                self._initialized = True

            while self.tokens < 1:
                now = loop.time()
                elapsed = now - self.updated_at
                self.tokens = min(self.rate, self.tokens + elapsed * self.rate)
                self.updated_at = now

                if self.tokens < 1:
                    wait_time = (1 - self.tokens) / self.rate
                    await asyncio.sleep(wait_time)

            self.tokens -= 1
            self.updated_at = loop.time()


class APIProviderError(Exception):
    """Base exception for upstream API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class TransientFetchError(APIProviderError):
    """Timeout, network error, 429 or 5xx. Retried with backoff."""


class FatalFetchError(APIProviderError):
    """Retry budget exhausted, non-retryable status, or malformed body."""


class BaseAsyncClient:
    """Base async HTTP client with rate limiting and connection pooling.

    Args:
        base_url: Base URL for all requests
        headers: Default headers for all requests
        rate_limit: Maximum requests per second (default: 10)
        timeout: Request timeout in seconds (default: 30)
        max_retries: Retries for transient failures (default: 3)
        base_backoff: First retry delay in seconds, doubled per attempt
        max_backoff: Cap on a single retry delay
        max_connections: Connection pool size (default: 10)
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        rate_limit: int = 10,
        timeout: float = 30.0,
        max_retries: int = _MAX_RETRIES,
        base_backoff: float = _BASE_BACKOFF,
        max_backoff: float = _MAX_BACKOFF,
        max_connections: int = 10,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.max_connections = max_connections
        self._rate_limiter = RateLimiter(rate=rate_limit)
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "BaseAsyncClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout,
            limits=httpx.Limits(
                max_keepalive_connections=self.max_connections,
                max_connections=self.max_connections,
            ),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _backoff(self, attempt: int) -> float:
        return min(self.base_backoff * (2 ** attempt), self.max_backoff)

    async def _send(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> tuple[Any, httpx.Headers]:
        """Make an HTTP request with rate limiting, retries, and error handling.

        Retries on transient failures (429, 5xx, timeouts, network errors)
        with capped exponential backoff. Once the retry budget is spent the
        last transient error is promoted to FatalFetchError. Non-retryable
        statuses and unparseable bodies raise FatalFetchError immediately.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: Path relative to base_url
            params: Query parameters

        Returns:
            Parsed JSON response and the response headers

        Raises:
            FatalFetchError: If the request cannot be completed
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use async with context manager.")

        # Ensure endpoint starts with /
        if not endpoint.startswith("/"):
            endpoint = f"/{endpoint}"

        last_error: TransientFetchError | None = None

        for attempt in range(self.max_retries + 1):
            # Rate limit before each attempt
            await self._rate_limiter.acquire()

            logger.debug(
                "%s %s%s params=%s (attempt %d/%d)",
                method, self.base_url, endpoint, params, attempt + 1, self.max_retries + 1,
            )

            try:
                response = await self._client.request(
                    method=method,
                    url=endpoint,
                    params=params,
                )
            except httpx.TimeoutException as e:
                last_error = TransientFetchError(f"Request timeout: {e}")
            except httpx.TransportError as e:
                last_error = TransientFetchError(f"Network error: {e}")
            except Exception as e:
                logger.error("Unexpected error requesting %s: %s", endpoint, e)
                raise FatalFetchError(f"Unexpected error: {e}") from e
            else:
                logger.debug("Response: %d for %s", response.status_code, endpoint)

                if response.status_code >= 400:
                    error_body = response.text[:500]

                    if not _is_retryable(response.status_code):
                        logger.error(
                            "API error: %d %s - %s",
                            response.status_code, endpoint, error_body,
                        )
                        raise FatalFetchError(
                            message=f"API request failed: {response.status_code}",
                            status_code=response.status_code,
                            response_body=error_body,
                        )

                    last_error = TransientFetchError(
                        message=f"API request failed: {response.status_code}",
                        status_code=response.status_code,
                        response_body=error_body,
                    )
                else:
                    try:
                        return response.json(), response.headers
                    except ValueError as e:
                        logger.error("Failed to parse JSON response: %s", e)
                        raise FatalFetchError(
                            message=f"Invalid JSON response: {e}",
                            status_code=response.status_code,
                            response_body=response.text[:500],
                        ) from e

            if attempt < self.max_retries:
                backoff = self._backoff(attempt)
                logger.warning(
                    "%s for %s, retrying in %.1fs (attempt %d/%d)",
                    last_error, endpoint, backoff, attempt + 1, self.max_retries + 1,
                )
                await asyncio.sleep(backoff)

        # Exhausted retries
        logger.error("Giving up on %s after %d attempts: %s", endpoint, self.max_retries + 1, last_error)
        raise FatalFetchError(
            message=f"Retries exhausted: {last_error}",
            status_code=last_error.status_code if last_error else None,
            response_body=last_error.response_body if last_error else None,
        ) from last_error

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        body, _ = await self._send(method, endpoint, params=params)
        return body

    async def get(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Convenience method for GET requests."""
        return await self._request("GET", endpoint, params=params)

    async def get_with_headers(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> tuple[Any, httpx.Headers]:
        """GET returning the parsed body together with the response headers."""
        return await self._send("GET", endpoint, params=params)
