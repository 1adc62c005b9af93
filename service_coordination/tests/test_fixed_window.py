"""
Unit tests for the fixed-window rate limiter and its middleware.
"""

import math
import time
import pytest
from unittest.mock import AsyncMock, patch

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from service_coordination.app.ratelimit import (
    FixedWindowRateLimiter,
    RateLimitOptions,
    install_rate_limiter,
    with_limits,
)
from service_coordination.app.ratelimit.fixed_window import resolve_attribute
from service_coordination.app.store import MemoryStore
from shared.errors import StoreUnavailableError
from shared.metrics import MetricsCollector


def make_request(path="/graphql", method="POST", client=("203.0.113.7", 5000), headers=None):
    """Build a bare Starlette request."""
    return Request({
        "type": "http",
        "method": method,
        "path": path,
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    })


def make_app(limiter, options=None, path_prefix=None):
    """Build an app with one limited and one open route."""
    app = FastAPI()
    install_rate_limiter(app, limiter, options, path_prefix=path_prefix)

    @app.post("/graphql")
    async def graphql():
        return {"data": {"ok": True}}

    @app.get("/status")
    async def status():
        return {"status": "ok"}

    return app


class TestFixedWindowRateLimiter:
    """Test cases for FixedWindowRateLimiter."""

    @pytest.fixture
    def limiter(self):
        """Create limiter over a MemoryStore."""
        return FixedWindowRateLimiter(MemoryStore())

    @pytest.mark.asyncio
    async def test_hit_counts_down(self, limiter):
        """Test remaining decreases until rejection."""
        decisions = [await limiter.hit("key", 3, 60000) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]
        assert all(d.total == 3 for d in decisions)
        assert decisions[0].retry_after is None
        assert 0 < decisions[3].retry_after <= 60

    @pytest.mark.asyncio
    async def test_remaining_floored(self, limiter):
        """Test the stored counter never goes below -1."""
        for _ in range(10):
            await limiter.hit("key", 1, 60000)

        state = await limiter.store.get("key")
        assert state["remaining"] == -1

    @pytest.mark.asyncio
    async def test_reset_is_window_end_in_seconds(self, limiter):
        """Test reset is the window end as epoch seconds, rounded up."""
        before_ms = int(time.time() * 1000)
        decision = await limiter.hit("key", 3, 60000)
        state = await limiter.store.get("key")

        assert decision.reset == math.ceil(state["reset"] / 1000)
        assert state["reset"] >= before_ms + 60000

    @pytest.mark.asyncio
    async def test_window_rolls_over(self, limiter):
        """Test a new window restores the budget."""
        for _ in range(2):
            await limiter.hit("key", 2, 100)
        assert (await limiter.hit("key", 2, 100)).allowed is False

        time.sleep(0.15)

        decision = await limiter.hit("key", 2, 100)
        assert decision.allowed is True
        assert decision.remaining == 1

    @pytest.mark.asyncio
    async def test_state_written_with_window_ttl(self):
        """Test state is stored with the window as TTL."""
        store = AsyncMock()
        store.get.return_value = None
        limiter = FixedWindowRateLimiter(store)

        await limiter.hit("key", 5, 60000)

        args, kwargs = store.set.call_args
        assert args[0] == "key"
        assert args[1]["total"] == 5
        assert args[1]["remaining"] == 4
        assert kwargs == {"ttl_ms": 60000}

    @pytest.mark.asyncio
    async def test_no_store(self):
        """Test a missing store is reported as unavailable."""
        limiter = FixedWindowRateLimiter(None)

        with pytest.raises(StoreUnavailableError):
            await limiter.hit("key", 1, 1000)

    def test_build_key(self, limiter):
        """Test key layout."""
        request = make_request()
        options = RateLimitOptions(lookup=("client.host",))

        assert limiter.build_key(request, options) == "ratelimit:/graphql:post:client.host:203.0.113.7"

    def test_build_key_with_overrides(self, limiter):
        """Test path and method overrides and several lookups."""
        request = make_request(headers={"X-Api-Key": "abc"})
        options = RateLimitOptions(
            lookup=("client.host", "headers.x-api-key"),
            path="/shared",
            method="GET",
        )

        assert limiter.build_key(request, options) == (
            "ratelimit:/shared:get:client.host:203.0.113.7:headers.x-api-key:abc"
        )

    def test_resolve_attribute(self):
        """Test dotted lookups through attributes and mappings."""
        request = make_request(headers={"Api-Key": "secret"})
        request.state.user_id = 42

        assert resolve_attribute(request, "client.host") == "203.0.113.7"
        assert resolve_attribute(request, "state.user_id") == 42
        assert resolve_attribute(request, "state.personal_token_id") is None
        assert resolve_attribute(request, "headers.api-key") == "secret"
        assert resolve_attribute({"a": {"b": 1}}, "a.b") == 1


class TestRateLimitMiddleware:
    """Test cases for RateLimitMiddleware."""

    @pytest.fixture
    def metrics(self):
        """Create an isolated metrics collector."""
        return MetricsCollector("coordination", CollectorRegistry())

    @pytest.fixture
    def limiter(self, metrics):
        """Create limiter over a MemoryStore."""
        return FixedWindowRateLimiter(MemoryStore(), metrics=metrics)

    def test_rejects_after_total(self, limiter, metrics):
        """Test the call after the budget is rejected with 429."""
        client = TestClient(make_app(limiter, RateLimitOptions(total=3)))

        responses = [client.post("/graphql") for _ in range(4)]

        assert [r.status_code for r in responses] == [200, 200, 200, 429]
        assert responses[3].text == "Rate limit exceeded"
        registry = metrics.registry
        assert registry.get_sample_value("rate_limit_decisions_total", {"decision": "allowed"}) == 3
        assert registry.get_sample_value("rate_limit_decisions_total", {"decision": "rejected"}) == 1

    def test_headers(self, limiter):
        """Test rate limit headers on allowed and rejected calls."""
        client = TestClient(make_app(limiter, RateLimitOptions(total=2)))

        first = client.post("/graphql")
        client.post("/graphql")
        rejected = client.post("/graphql")

        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert int(first.headers["X-RateLimit-Reset"]) >= int(time.time())
        assert "Retry-After" not in first.headers

        assert rejected.headers["X-RateLimit-Remaining"] == "0"
        assert 0 <= int(rejected.headers["Retry-After"]) <= 60

    def test_skip_headers(self, limiter):
        """Test headers can be turned off."""
        client = TestClient(make_app(limiter, RateLimitOptions(total=1, skip_headers=True)))

        client.post("/graphql")
        rejected = client.post("/graphql")

        assert rejected.status_code == 429
        assert "X-RateLimit-Limit" not in rejected.headers
        assert "Retry-After" not in rejected.headers

    def test_window_rolls_over(self, limiter):
        """Test calls go through again after the window."""
        client = TestClient(make_app(limiter, RateLimitOptions(total=1, expire=100)))

        assert client.post("/graphql").status_code == 200
        assert client.post("/graphql").status_code == 429

        time.sleep(0.15)

        assert client.post("/graphql").status_code == 200

    def test_whitelist_skips_store(self):
        """Test whitelisted requests never touch the store."""
        store = AsyncMock()
        limiter = FixedWindowRateLimiter(store)
        options = RateLimitOptions(total=1, whitelist=lambda request: request.headers.get("Api-Key") == "internal")
        client = TestClient(make_app(limiter, options))

        for _ in range(3):
            response = client.post("/graphql", headers={"Api-Key": "internal"})
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

        store.get.assert_not_called()
        store.set.assert_not_called()

    def test_custom_rejection_handler(self, limiter):
        """Test a custom handler renders the rejection."""
        async def on_rate_limited(request, decision):
            return JSONResponse(status_code=429, content={"error": {"message": f"limit {decision.total}"}})

        client = TestClient(make_app(limiter, RateLimitOptions(total=1, on_rate_limited=on_rate_limited)))

        client.post("/graphql")
        rejected = client.post("/graphql")

        assert rejected.status_code == 429
        assert rejected.json() == {"error": {"message": "limit 1"}}
        assert rejected.headers["X-RateLimit-Limit"] == "1"

    def test_lookup_isolates_clients(self, limiter):
        """Test budgets are tracked per lookup value."""
        options = RateLimitOptions(total=1, lookup=("headers.x-client",))
        client = TestClient(make_app(limiter, options))

        assert client.post("/graphql", headers={"X-Client": "a"}).status_code == 200
        assert client.post("/graphql", headers={"X-Client": "a"}).status_code == 429
        assert client.post("/graphql", headers={"X-Client": "b"}).status_code == 200

    def test_lookup_resolver(self, limiter):
        """Test a callable lookup can change limits per request."""
        def lookup(request, options):
            if request.headers.get("X-User"):
                return with_limits(options, lookup=("headers.x-user",), total=3)
            return with_limits(options, lookup=("client.host",))

        client = TestClient(make_app(limiter, RateLimitOptions(total=1, lookup=lookup)))

        user_codes = [client.post("/graphql", headers={"X-User": "7"}).status_code for _ in range(4)]
        anonymous_codes = [client.post("/graphql").status_code for _ in range(2)]

        assert user_codes == [200, 200, 200, 429]
        assert anonymous_codes == [200, 429]

    def test_path_prefix(self, limiter):
        """Test routes outside the prefix are not limited."""
        client = TestClient(make_app(limiter, RateLimitOptions(total=1), path_prefix="/graphql"))

        for _ in range(3):
            response = client.get("/status")
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

    def test_store_unavailable_fails_open(self, metrics):
        """Test requests go through when the store is down."""
        store = AsyncMock()
        store.get.side_effect = StoreUnavailableError()
        limiter = FixedWindowRateLimiter(store, metrics=metrics)
        client = TestClient(make_app(limiter, RateLimitOptions(total=1)))

        with patch("service_coordination.app.ratelimit.fixed_window.RateLimitMiddleware._set_headers") as mock_headers:
            responses = [client.post("/graphql") for _ in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 200]
        mock_headers.assert_not_called()
        assert metrics.registry.get_sample_value("rate_limit_decisions_total", {"decision": "error"}) == 3

    def test_store_unavailable_fails_closed(self):
        """Test 503 when errors are not ignored."""
        store = AsyncMock()
        store.get.side_effect = StoreUnavailableError()
        limiter = FixedWindowRateLimiter(store)
        client = TestClient(make_app(limiter, RateLimitOptions(total=1, ignore_errors=False)))

        response = client.post("/graphql")

        assert response.status_code == 503
        assert response.json()["code"] == "STORE_UNAVAILABLE"
