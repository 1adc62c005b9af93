"""
Coordination service: hosts the shared store handle, the distributed
mutex, rate limiting and the GraphQL response cache.
"""

from typing import Dict

from fastapi import Request
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.errors import AuthorizationError, StoreUnavailableError
from .caching import ResponseCache, ResponseCacheMiddleware
from .locking import Mutex
from .ratelimit import (
    FixedWindowRateLimiter,
    RateLimitDecision,
    RateLimitOptions,
    install_rate_limiter,
    with_limits,
)
from .store import StoreRegistry


class CoordinationService(BaseService):
    """Coordination service implementation."""

    def __init__(self):
        super().__init__("coordination", 8000)

        self.store_registry = StoreRegistry(self.config)
        store = self.store_registry.init()

        self.mutex = Mutex(
            store,
            metrics=self.metrics,
            lock_acquire_timeout_ms=self.config.lock_acquire_timeout_ms,
            unlock_timeout_ms=self.config.lock_unlock_timeout_ms,
            retry_delay_ms=self.config.lock_retry_delay_ms,
        )
        self.response_cache = ResponseCache(
            store,
            ttl_seconds=self.config.graphql_cache_ttl_seconds,
            min_execution_time_ms=self.config.graphql_cache_min_execution_time_ms,
            metrics=self.metrics,
        )
        self.rate_limiter = FixedWindowRateLimiter(store, metrics=self.metrics)

        # Added first so that it runs inside the rate limiter.
        if self.config.graphql_cache_enabled:
            self.app.add_middleware(
                ResponseCacheMiddleware,
                cache=self.response_cache,
                path_prefix=self.config.rate_limit_path_prefix,
                cacheable_operations=self.config.graphql_cache_operations,
            )

        # A disabled store means nothing to count against.
        if self.config.rate_limit_enabled and self.store_registry.enabled:
            install_rate_limiter(
                self.app,
                self.rate_limiter,
                self.rate_limit_options(),
                path_prefix=self.config.rate_limit_path_prefix,
            )

        self._setup_coordination_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.coordination_service = self

    def rate_limit_options(self) -> RateLimitOptions:
        """Per-caller limits: personal token, authenticated user, then IP."""
        authenticated_total = self.config.rate_limit_authenticated_total
        window_ms = self.config.rate_limit_window_ms

        def lookup(request: Request, options: RateLimitOptions) -> RateLimitOptions:
            if getattr(request.state, "personal_token_id", None) is not None:
                return with_limits(options, lookup=("state.personal_token_id",),
                                   total=authenticated_total, expire=window_ms)
            if getattr(request.state, "user_id", None) is not None:
                return with_limits(options, lookup=("state.user_id",),
                                   total=authenticated_total, expire=window_ms)
            return with_limits(options, lookup=("client.host",))

        def on_rate_limited(request: Request, decision: RateLimitDecision) -> JSONResponse:
            if getattr(request.state, "personal_token_id", None) is not None:
                message = "Rate limit exceeded. Contact-us to get higher limits."
            else:
                message = "Rate limit exceeded. Create a Personal Token to get higher limits."
            return JSONResponse(status_code=429, content={"error": {"message": message}})

        return RateLimitOptions(
            total=self.config.rate_limit_anonymous_total,
            expire=window_ms,
            lookup=lookup,
            whitelist=self.has_internal_api_key,
            on_rate_limited=on_rate_limited,
        )

    def _setup_coordination_routes(self):
        """Set up coordination routes."""

        @self.app.delete("/api/v1/cache/{slug}")
        async def invalidate_cache(slug: str, request: Request):
            """Drop cached responses about an account. Internal callers only."""
            if not self.has_internal_api_key(request):
                raise AuthorizationError("Internal API key required", {"slug": slug})
            invalidated = await self.response_cache.invalidate(slug)
            return {"slug": slug, "invalidated": invalidated}

    def has_internal_api_key(self, request: Request) -> bool:
        """Whether the request carries the internal API key (query or header)."""
        internal_api_key = self.config.internal_api_key
        if not internal_api_key:
            return False
        api_key = request.query_params.get("api_key") or request.headers.get("Api-Key")
        return api_key == internal_api_key

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check the shared store."""
        store = self.store_registry.store
        if store is None:
            return {"store": "disabled"}
        try:
            await store.ping()
            return {"store": "ok"}
        except StoreUnavailableError as e:
            self.logger.warning("Shared store health check failed", error=str(e))
            return {"store": "unavailable"}

    async def on_shutdown(self):
        await self.store_registry.close()


def create_app():
    """Create the coordination FastAPI app."""
    service = CoordinationService()
    return service.app


if __name__ == "__main__":
    CoordinationService().run()
