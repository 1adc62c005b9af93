"""
Fixed-window rate limiter for the HTTP boundary.

State per key is one JSON blob ``{"total", "remaining", "reset"}`` (reset
in epoch milliseconds) stored with a TTL equal to the window length.
"""

import inspect
import math
import time
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, Sequence, Union, TYPE_CHECKING

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shared.errors import StoreUnavailableError
from shared.logging import get_logger, set_user_context

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector
    from ..store import SharedStore


KEY_PREFIX = "ratelimit"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one rate limited call, as exposed in response headers."""

    allowed: bool
    total: int
    remaining: int
    reset: int
    retry_after: Optional[float] = None


LookupResolver = Callable[[Request, "RateLimitOptions"], "RateLimitOptions"]
RateLimitedHandler = Callable[[Request, RateLimitDecision], Union[Response, Awaitable[Response]]]


@dataclass(frozen=True)
class RateLimitOptions:
    """Middleware configuration.

    ``lookup`` is either a sequence of dotted attribute paths resolved on the
    request (``client.host``, ``state.user_id``, ``headers.x-api-key``) or a
    callable returning the options to apply to that request, which allows
    per-caller limits.
    """

    total: int = 10
    expire: int = 60 * 1000
    lookup: Union[Sequence[str], LookupResolver] = ("client.host",)
    whitelist: Optional[Callable[[Request], bool]] = None
    on_rate_limited: Optional[RateLimitedHandler] = None
    skip_headers: bool = False
    path: Optional[str] = None
    method: Optional[str] = None
    ignore_errors: bool = True


def resolve_attribute(obj: Any, dotted_path: str) -> Any:
    """Follow `dotted_path` through attributes and mappings, None if anything is missing."""
    current = obj
    for part in dotted_path.split("."):
        if current is None:
            return None
        # Attributes first: a Request is itself a Mapping over the raw ASGI scope.
        value = getattr(current, part, None)
        if value is None and isinstance(current, Mapping):
            value = current.get(part)
        current = value
    return current


def _now_ms() -> int:
    return int(time.time() * 1000)


class FixedWindowRateLimiter:
    """Counts calls per key in fixed windows stored in the shared store."""

    def __init__(self, store: Optional["SharedStore"], *, metrics: Optional["MetricsCollector"] = None):
        self.store = store
        self.metrics = metrics
        self.logger = get_logger("coordination.fixed_window")

    def build_key(self, request: Request, options: RateLimitOptions) -> str:
        """ratelimit:<path>:<method>:<name>:<value>[:<name>:<value>...]"""
        lookups = options.lookup if not callable(options.lookup) else ()
        parts = [f"{item}:{resolve_attribute(request, item)}" for item in lookups]
        path = options.path or request.url.path
        method = (options.method or request.method).lower()
        return ":".join([KEY_PREFIX, path, method, *parts])

    async def hit(self, key: str, total: int, expire_ms: int) -> RateLimitDecision:
        """Count one call against `key` and decide whether it goes through."""
        if self.store is None:
            raise StoreUnavailableError("Shared store not configured")

        now = _now_ms()
        state = await self.store.get(key)
        if not state:
            state = {"total": total, "remaining": total, "reset": now + expire_ms}

        if now > state["reset"]:
            state["reset"] = now + expire_ms
            state["remaining"] = state["total"]

        # Floor at -1 so a burst of rejected calls cannot push the counter further.
        state["remaining"] = max(int(state["remaining"]) - 1, -1)
        await self.store.set(key, state, ttl_ms=expire_ms)

        allowed = state["remaining"] >= 0
        return RateLimitDecision(
            allowed=allowed,
            total=int(state["total"]),
            remaining=max(state["remaining"], 0),
            reset=math.ceil(state["reset"] / 1000),
            retry_after=None if allowed else (state["reset"] - _now_ms()) / 1000,
        )

    def record(self, decision: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("rate_limit_decisions_total", decision=decision)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate limiting middleware for FastAPI."""

    def __init__(self, app, limiter: FixedWindowRateLimiter, options: Optional[RateLimitOptions] = None,
                 path_prefix: Optional[str] = None):
        super().__init__(app)
        self.limiter = limiter
        self.options = options or RateLimitOptions()
        self.path_prefix = path_prefix
        self.logger = get_logger("coordination.rate_limit_middleware")

    async def dispatch(self, request: Request, call_next):
        if self.path_prefix and not request.url.path.startswith(self.path_prefix):
            return await call_next(request)

        options = self.options
        if options.whitelist and options.whitelist(request):
            self.limiter.record("bypassed")
            return await call_next(request)

        user_id = resolve_attribute(request, "state.user_id")
        if user_id is not None:
            set_user_context(str(user_id))

        if callable(options.lookup):
            options = options.lookup(request, options)

        key = self.limiter.build_key(request, options)
        try:
            decision = await self.limiter.hit(key, options.total, options.expire)
        except StoreUnavailableError as e:
            self.limiter.record("error")
            if options.ignore_errors:
                self.logger.warning("Rate limiter store unavailable, allowing request", key=key, error=str(e))
                return await call_next(request)
            self.logger.error("Rate limiter store unavailable, rejecting request", key=key, error=str(e))
            return JSONResponse(status_code=e.status_code, content=e.to_response().model_dump())

        if decision.allowed:
            self.limiter.record("allowed")
            response = await call_next(request)
        else:
            self.limiter.record("rejected")
            self.logger.info("Rate limit exceeded", key=key, total=decision.total)
            response = await self._rejection(request, options, decision)

        if not options.skip_headers:
            self._set_headers(response, decision)
        return response

    async def _rejection(self, request: Request, options: RateLimitOptions,
                         decision: RateLimitDecision) -> Response:
        if options.on_rate_limited is None:
            return PlainTextResponse("Rate limit exceeded", status_code=429)
        response = options.on_rate_limited(request, decision)
        if inspect.isawaitable(response):
            response = await response
        return response

    @staticmethod
    def _set_headers(response: Response, decision: RateLimitDecision) -> None:
        response.headers["X-RateLimit-Limit"] = str(decision.total)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(decision.reset)
        if decision.retry_after is not None:
            response.headers["Retry-After"] = str(max(0, math.ceil(decision.retry_after)))


def install_rate_limiter(app: FastAPI, limiter: FixedWindowRateLimiter,
                         options: Optional[RateLimitOptions] = None, *,
                         path_prefix: Optional[str] = None) -> None:
    """Mount the rate limiting middleware on `app`."""
    app.add_middleware(RateLimitMiddleware, limiter=limiter, options=options, path_prefix=path_prefix)


def with_limits(options: RateLimitOptions, **changes: Any) -> RateLimitOptions:
    """Copy of `options` with `changes` applied; helper for lookup resolvers."""
    return replace(options, **changes)
