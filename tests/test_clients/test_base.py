"""Tests for base async client."""

import asyncio

import httpx
import pytest

from fieldline.clients.base import (
    APIProviderError,
    BaseAsyncClient,
    FatalFetchError,
    RateLimiter,
    TransientFetchError,
)


def make_client(**kwargs) -> BaseAsyncClient:
    """Client with instant retries so tests don't sleep."""
    kwargs.setdefault("base_backoff", 0.0)
    kwargs.setdefault("rate_limit", 1000)
    return BaseAsyncClient(base_url="https://api.example.com", **kwargs)


class TestRateLimiter:
    """Tests for token bucket rate limiter."""

    @pytest.mark.asyncio
    async def test_allows_requests_under_limit(self):
        """Rate limiter should allow requests under the limit."""
        limiter = RateLimiter(rate=10)  # 10 req/s

        # Should allow 5 requests immediately
        for _ in range(5):
            await limiter.acquire()

    @pytest.mark.asyncio
    async def test_blocks_when_over_limit(self):
        """Rate limiter should block when over limit."""
        limiter = RateLimiter(rate=2)  # 2 req/s
        loop = asyncio.get_running_loop()

        # First 2 requests should be instant
        start = loop.time()
        await limiter.acquire()
        await limiter.acquire()
        first_duration = loop.time() - start

        # Third request should wait ~0.5s
        start = loop.time()
        await limiter.acquire()
        third_duration = loop.time() - start

        assert first_duration < 0.1  # Nearly instant
        assert third_duration > 0.3  # Had to wait

    def test_init_without_event_loop(self):
        """RateLimiter can be created in synchronous context."""
        limiter = RateLimiter(rate=10)
        assert limiter.rate == 10
        assert limiter.tokens == 10
        assert limiter._initialized is False


class TestErrorHierarchy:
    """Fetch errors share the APIProviderError base."""

    def test_transient_and_fatal_are_provider_errors(self):
        assert issubclass(TransientFetchError, APIProviderError)
        assert issubclass(FatalFetchError, APIProviderError)
        assert not issubclass(TransientFetchError, FatalFetchError)

    def test_carries_status_and_body(self):
        err = FatalFetchError("boom", status_code=404, response_body="Not Found")
        assert str(err) == "boom"
        assert err.status_code == 404
        assert err.response_body == "Not Found"


class TestBaseAsyncClient:
    """Tests for base async HTTP client."""

    @pytest.mark.asyncio
    async def test_context_manager_lifecycle(self, respx_mock):
        """Client should properly initialize and cleanup."""
        respx_mock.get("https://api.example.com/test").mock(
            return_value=httpx.Response(200, json={"status": "ok"})
        )

        async with make_client(headers={"User-Agent": "fieldline-test"}) as client:
            assert client._client is not None
            result = await client.get("/test")
            assert result == {"status": "ok"}

        # Client should be closed after exiting context
        assert client._client is None

    @pytest.mark.asyncio
    async def test_raises_if_used_without_context_manager(self):
        """Client should raise if used without async with."""
        client = make_client()

        with pytest.raises(RuntimeError, match="not initialized"):
            await client.get("/test")

    @pytest.mark.asyncio
    async def test_request_adds_leading_slash(self, respx_mock):
        """Requests should work with or without leading slash."""
        respx_mock.get("https://api.example.com/test").mock(
            return_value=httpx.Response(200, json={"data": "value"})
        )

        async with make_client() as client:
            result1 = await client.get("/test")
            result2 = await client.get("test")  # No leading slash

            assert result1 == {"data": "value"}
            assert result2 == {"data": "value"}

    @pytest.mark.asyncio
    async def test_returns_json_arrays(self, respx_mock):
        """Top-level JSON arrays are returned as lists."""
        respx_mock.get("https://api.example.com/rows").mock(
            return_value=httpx.Response(200, json=[{"a": 1}, {"a": 2}])
        )

        async with make_client() as client:
            assert await client.get("/rows") == [{"a": 1}, {"a": 2}]

    @pytest.mark.asyncio
    async def test_handles_http_errors(self, respx_mock):
        """Non-retryable HTTP errors raise FatalFetchError."""
        respx_mock.get("https://api.example.com/error").mock(
            return_value=httpx.Response(404, text="Not Found")
        )

        async with make_client() as client:
            with pytest.raises(FatalFetchError) as exc_info:
                await client.get("/error")

            assert exc_info.value.status_code == 404
            assert "Not Found" in exc_info.value.response_body

    @pytest.mark.asyncio
    async def test_handles_invalid_json(self, respx_mock):
        """Unparseable bodies are fatal, not retried."""
        route = respx_mock.get("https://api.example.com/invalid").mock(
            return_value=httpx.Response(200, text="not json")
        )

        async with make_client() as client:
            with pytest.raises(FatalFetchError, match="Invalid JSON"):
                await client.get("/invalid")
        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_respects_rate_limit(self, respx_mock):
        """Client should respect rate limiting."""
        respx_mock.get("https://api.example.com/test").mock(
            return_value=httpx.Response(200, json={"ok": True})
        )

        async with make_client(rate_limit=2) as client:  # 2 req/s
            loop = asyncio.get_running_loop()
            start = loop.time()

            await client.get("/test")
            await client.get("/test")
            await client.get("/test")

            duration = loop.time() - start

            # Should take at least ~0.5s due to rate limiting
            assert duration > 0.3

    @pytest.mark.asyncio
    async def test_passes_query_params(self, respx_mock):
        """get() forwards query parameters."""
        route = respx_mock.get("https://api.example.com/data").mock(
            return_value=httpx.Response(200, json={"result": "success"})
        )

        async with make_client() as client:
            result = await client.get("/data", params={"key": "value"})

        assert result == {"result": "success"}
        assert route.calls.last.request.url.params["key"] == "value"

    @pytest.mark.asyncio
    async def test_get_with_headers(self, respx_mock):
        """get_with_headers() exposes cache validators alongside the body."""
        respx_mock.get("https://api.example.com/data").mock(
            return_value=httpx.Response(
                200,
                json={"result": "success"},
                headers={"ETag": '"abc123"', "Last-Modified": "Tue, 06 Oct 2026 08:00:00 GMT"},
            )
        )

        async with make_client() as client:
            body, headers = await client.get_with_headers("/data")

        assert body == {"result": "success"}
        assert headers["etag"] == '"abc123"'
        assert headers.get("last-modified") == "Tue, 06 Oct 2026 08:00:00 GMT"


class TestRetryBehavior:
    """Test retry with exponential backoff in _request()."""

    @pytest.mark.asyncio
    async def test_retries_on_429(self, respx_mock):
        """Client retries on 429 Too Many Requests."""
        route = respx_mock.get("https://api.example.com/rate-limited")
        route.side_effect = [
            httpx.Response(429, text="Too Many Requests"),
            httpx.Response(429, text="Too Many Requests"),
            httpx.Response(200, json={"ok": True}),
        ]

        async with make_client() as client:
            result = await client.get("/rate-limited")
            assert result == {"ok": True}
            assert route.call_count == 3

    @pytest.mark.asyncio
    async def test_retries_on_500(self, respx_mock):
        """Client retries on 500 Internal Server Error."""
        route = respx_mock.get("https://api.example.com/flaky")
        route.side_effect = [
            httpx.Response(500, text="Internal Server Error"),
            httpx.Response(200, json={"recovered": True}),
        ]

        async with make_client() as client:
            result = await client.get("/flaky")
            assert result == {"recovered": True}
            assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_no_retry_on_404(self, respx_mock):
        """Client does NOT retry on 404 Not Found."""
        route = respx_mock.get("https://api.example.com/missing")
        route.mock(return_value=httpx.Response(404, text="Not Found"))

        async with make_client() as client:
            with pytest.raises(FatalFetchError) as exc_info:
                await client.get("/missing")
            assert exc_info.value.status_code == 404
            assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_exhausts_retries(self, respx_mock):
        """Exhausted retries promote the transient error to FatalFetchError."""
        route = respx_mock.get("https://api.example.com/always-fail")
        route.mock(return_value=httpx.Response(503, text="Down"))

        async with make_client() as client:
            with pytest.raises(FatalFetchError) as exc_info:
                await client.get("/always-fail")

        assert exc_info.value.status_code == 503
        assert isinstance(exc_info.value.__cause__, TransientFetchError)
        # 1 initial + 3 retries = 4 total attempts
        assert route.call_count == 4

    @pytest.mark.asyncio
    async def test_custom_retry_budget(self, respx_mock):
        """max_retries bounds the number of attempts."""
        route = respx_mock.get("https://api.example.com/always-fail")
        route.mock(return_value=httpx.Response(502, text="Bad Gateway"))

        async with make_client(max_retries=1) as client:
            with pytest.raises(FatalFetchError):
                await client.get("/always-fail")
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_retries_on_timeout(self, respx_mock):
        """Client retries on timeout exceptions."""
        route = respx_mock.get("https://api.example.com/slow")
        route.side_effect = [
            httpx.ReadTimeout("Connection timed out"),
            httpx.Response(200, json={"slow_but_ok": True}),
        ]

        async with make_client() as client:
            result = await client.get("/slow")
            assert result == {"slow_but_ok": True}

    @pytest.mark.asyncio
    async def test_retries_on_network_error(self, respx_mock):
        """Client retries on connection failures."""
        route = respx_mock.get("https://api.example.com/unreachable")
        route.side_effect = [
            httpx.ConnectError("Connection refused"),
            httpx.Response(200, json={"ok": True}),
        ]

        async with make_client() as client:
            assert await client.get("/unreachable") == {"ok": True}
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_timeout_exhaustion_is_fatal(self, respx_mock):
        """Repeated timeouts end in FatalFetchError without a status code."""
        route = respx_mock.get("https://api.example.com/slow")
        route.side_effect = httpx.ReadTimeout("Connection timed out")

        async with make_client(max_retries=2) as client:
            with pytest.raises(FatalFetchError, match="timeout") as exc_info:
                await client.get("/slow")

        assert exc_info.value.status_code is None
        assert route.call_count == 3

    @pytest.mark.asyncio
    async def test_retries_on_dropped_connection(self, respx_mock):
        """A peer closing the connection mid-response is transient."""
        route = respx_mock.get("https://api.example.com/dropped")
        route.side_effect = [
            httpx.RemoteProtocolError("peer closed connection without sending complete message body"),
            httpx.Response(200, json={"ok": True}),
        ]

        async with make_client() as client:
            assert await client.get("/dropped") == {"ok": True}
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_protocol_error_exhaustion_is_fatal(self, respx_mock):
        """Transport failures never escape as raw httpx exceptions."""
        route = respx_mock.get("https://api.example.com/dropped")
        route.side_effect = httpx.RemoteProtocolError("peer closed")

        async with make_client(max_retries=1) as client:
            with pytest.raises(FatalFetchError, match="Network error"):
                await client.get("/dropped")
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_is_normalised(self, respx_mock):
        """Anything else raised while sending becomes FatalFetchError."""
        route = respx_mock.get("https://api.example.com/broken")
        route.side_effect = RuntimeError("transport exploded")

        async with make_client() as client:
            with pytest.raises(FatalFetchError, match="Unexpected error") as exc_info:
                await client.get("/broken")

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert route.call_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [501, 505, 507, 520, 524])
    async def test_retries_on_any_5xx(self, respx_mock, status):
        """Every 5xx status is retried, not only the common gateway codes."""
        route = respx_mock.get("https://api.example.com/odd-5xx")
        route.side_effect = [
            httpx.Response(status, text="Server Error"),
            httpx.Response(200, json={"ok": True}),
        ]

        async with make_client() as client:
            assert await client.get("/odd-5xx") == {"ok": True}
        assert route.call_count == 2

    @pytest.mark.asyncio
    async def test_no_retry_on_400(self, respx_mock):
        route = respx_mock.get("https://api.example.com/bad")
        route.mock(return_value=httpx.Response(400, text="Bad Request"))

        async with make_client() as client:
            with pytest.raises(FatalFetchError):
                await client.get("/bad")
        assert route.call_count == 1


class TestBackoff:
    """Backoff doubles per attempt and is capped."""

    def test_exponential_growth(self):
        client = BaseAsyncClient(base_url="https://api.example.com", base_backoff=1.0, max_backoff=30.0)
        assert [client._backoff(a) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max(self):
        client = BaseAsyncClient(base_url="https://api.example.com", base_backoff=1.0, max_backoff=5.0)
        assert client._backoff(10) == 5.0
