"""
Slow-call response cache for anonymous GraphQL requests.
"""

import hashlib
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, TYPE_CHECKING

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from shared.errors import StoreUnavailableError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector
    from ..store import SharedStore


DEFAULT_CACHE_TTL_SECONDS = 300
DEFAULT_MIN_EXECUTION_TIME_MS = 1000

SLUG_INDEX_PREFIX = "graphqlCacheKeys_"
SLUG_VARIABLES = ("slug", "collectiveSlug", "accountSlug")
OPERATION_TYPES = ("query", "mutation", "subscription")

# Strings and comments are matched whole so that braces or keywords inside
# them are never mistaken for document structure.
_GRAPHQL_TOKEN_RE = re.compile(
    r'"""(?:[^"\\]|\\.|"(?!""))*"""'
    r'|"(?:[^"\\\n]|\\.)*"'
    r'|#[^\n\r]*'
    r'|[{}()@]'
    r'|[_A-Za-z][_0-9A-Za-z]*'
)


def operation_type(query: str, operation_name: Optional[str] = None) -> Optional[str]:
    """Type of the operation a GraphQL document would execute.

    Fragment definitions are skipped. With several operations in the
    document, `operation_name` selects one; None when it selects nothing.
    """
    operations = []
    depth = 0
    paren_depth = 0
    pending = None
    expect_name = False

    for match in _GRAPHQL_TOKEN_RE.finditer(query):
        token = match.group()
        if token[0] in "\"#":
            continue
        if token == "{":
            if depth == 0:
                if pending is None:
                    # Shorthand selection set
                    operations.append(("query", None))
                elif pending[0] != "fragment":
                    operations.append(pending)
                pending = None
                expect_name = False
            depth += 1
        elif token == "}":
            depth = max(depth - 1, 0)
        elif depth > 0:
            continue
        elif token == "(":
            paren_depth += 1
            expect_name = False
        elif token == ")":
            paren_depth = max(paren_depth - 1, 0)
        elif token == "@":
            expect_name = False
        elif paren_depth > 0:
            continue
        elif pending is None and token in OPERATION_TYPES + ("fragment",):
            pending = (token, None)
            expect_name = True
        elif pending is not None and expect_name:
            pending = (pending[0], token)
            expect_name = False

    if operation_name:
        selected = [op for op in operations if op[1] == operation_name]
    else:
        selected = operations
    if len(selected) != 1:
        return None
    return selected[0][0]



@dataclass(frozen=True)
class CacheProperties:
    """Where a cacheable request's response is stored."""

    cache_key: str
    cache_slug: Optional[str] = None


def get_cache_properties(
    path: str,
    method: str,
    body: Any,
    *,
    anonymous: bool,
    cacheable_operations: Optional[Sequence[str]] = None,
) -> Optional[CacheProperties]:
    """Fingerprint a request, or None when its response must not be shared.

    Only anonymous POSTed queries qualify. The fingerprint covers the query,
    operation name and variables, never who is asking.
    """
    if not anonymous or method.upper() != "POST" or not isinstance(body, Mapping):
        return None

    query = body.get("query")
    operation_name = body.get("operationName")
    if not isinstance(query, str) or operation_type(query, operation_name) != "query":
        return None

    if cacheable_operations and operation_name not in cacheable_operations:
        return None

    variables = body.get("variables") or {}
    fingerprint_source = json.dumps(
        {"query": query, "operationName": operation_name, "variables": variables},
        sort_keys=True,
    )
    fingerprint = hashlib.md5(fingerprint_source.encode()).hexdigest()

    cache_slug = None
    if isinstance(variables, Mapping):
        cache_slug = next((variables[name] for name in SLUG_VARIABLES if variables.get(name)), None)

    return CacheProperties(cache_key=f"{path}_{fingerprint}", cache_slug=cache_slug)


class ResponseCache:
    """Stores results of expensive anonymous calls.

    No locking: two processes may compute and store the same entry, which is
    harmless since the payloads are identical.
    """

    def __init__(
        self,
        store: Optional["SharedStore"],
        *,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        min_execution_time_ms: int = DEFAULT_MIN_EXECUTION_TIME_MS,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.min_execution_time_ms = min_execution_time_ms
        self.metrics = metrics
        self.logger = get_logger("coordination.response_cache")

    def should_cache(self, cache_key: Optional[str], has_error: bool, execution_time_ms: float) -> bool:
        """Cache only keyed, error-free calls slower than the threshold."""
        return bool(cache_key) and not has_error and execution_time_ms > self.min_execution_time_ms

    async def get(self, cache_key: str) -> Optional[Any]:
        """Get a cached response."""
        if self.store is None:
            return None
        try:
            cached = await self.store.get(cache_key)
        except StoreUnavailableError as e:
            self.logger.warning("Response cache fetch error", cache_key=cache_key, error=str(e))
            return None

        self._record("hit" if cached is not None else "miss")
        return cached

    async def after_response(
        self,
        cache_key: Optional[str],
        result: Any,
        *,
        has_error: bool,
        execution_time_ms: float,
        cache_slug: Optional[str] = None,
    ) -> bool:
        """Store `result` if the call qualifies. Returns whether it was stored."""
        if self.store is None or not self.should_cache(cache_key, has_error, execution_time_ms):
            self._record("skipped")
            return False

        try:
            await self.store.set(cache_key, result, ttl_ms=self.ttl_seconds * 1000)
            if cache_slug:
                await self._index(cache_slug, cache_key)
        except StoreUnavailableError as e:
            self.logger.warning("Response cache write error", cache_key=cache_key, error=str(e))
            return False

        self._record("stored")
        self.logger.debug(
            "Cached slow response",
            cache_key=cache_key,
            execution_time_ms=round(execution_time_ms, 2),
            ttl=self.ttl_seconds,
        )
        return True

    async def invalidate(self, slug: str) -> int:
        """Drop every cached response indexed under `slug`."""
        if self.store is None:
            return 0

        index_key = f"{SLUG_INDEX_PREFIX}{slug}"
        try:
            keys: List[str] = await self.store.get(index_key) or []
            for key in keys:
                await self.store.delete(key)
            await self.store.delete(index_key)
        except StoreUnavailableError as e:
            self.logger.error("Response cache invalidation failed", slug=slug, error=str(e))
            raise

        self.logger.info("Invalidated cached responses", slug=slug, keys_count=len(keys))
        return len(keys)

    async def _index(self, slug: str, cache_key: str) -> None:
        # Read-modify-write: a concurrent writer may drop an entry from the
        # index, which then only lives until its TTL. The index itself never
        # outlives the newest entry it points to.
        index_key = f"{SLUG_INDEX_PREFIX}{slug}"
        keys = await self.store.get(index_key) or []
        if cache_key not in keys:
            keys.append(cache_key)
        await self.store.set(index_key, keys, ttl_ms=self.ttl_seconds * 1000)

    def _record(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("response_cache_total", result=result)


def is_anonymous(request: Request) -> bool:
    """No credentials and no identity resolved by upstream authentication."""
    if request.headers.get("Authorization"):
        return False
    state = request.state
    return getattr(state, "user_id", None) is None and getattr(state, "personal_token_id", None) is None


class ResponseCacheMiddleware(BaseHTTPMiddleware):
    """Serves cached responses and feeds new ones to the cache policy."""

    def __init__(self, app, cache: ResponseCache, path_prefix: str = "/graphql",
                 cacheable_operations: Optional[Sequence[str]] = None):
        super().__init__(app)
        self.cache = cache
        self.path_prefix = path_prefix
        self.cacheable_operations = list(cacheable_operations or [])
        self.logger = get_logger("coordination.response_cache_middleware")

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.path_prefix) or request.method.upper() != "POST":
            return await call_next(request)

        start = time.perf_counter()
        properties = get_cache_properties(
            request.url.path,
            request.method,
            await self._json_body(request),
            anonymous=is_anonymous(request),
            cacheable_operations=self.cacheable_operations,
        )
        if properties is None:
            return await call_next(request)

        cached = await self.cache.get(properties.cache_key)
        if cached is not None:
            return JSONResponse(
                content=cached,
                headers={"GraphQL-Cache": "HIT", "Execution-Time": self._elapsed_ms(start)},
            )

        response = await call_next(request)
        body = b"".join([chunk async for chunk in response.body_iterator])
        execution_time_ms = (time.perf_counter() - start) * 1000

        result = self._decode(body)
        has_error = response.status_code >= 400 or result is None or bool(
            isinstance(result, dict) and result.get("errors")
        )
        await self.cache.after_response(
            properties.cache_key,
            result,
            has_error=has_error,
            execution_time_ms=execution_time_ms,
            cache_slug=properties.cache_slug,
        )

        headers: Dict[str, str] = dict(response.headers)
        headers["GraphQL-Cache"] = "MISS"
        headers["Execution-Time"] = str(round(execution_time_ms))
        return Response(
            content=body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.media_type,
        )

    @staticmethod
    async def _json_body(request: Request) -> Any:
        try:
            return json.loads(await request.body() or b"null")
        except ValueError:
            return None

    @staticmethod
    def _decode(body: bytes) -> Any:
        try:
            return json.loads(body)
        except ValueError:
            return None

    @staticmethod
    def _elapsed_ms(start: float) -> str:
        return str(round((time.perf_counter() - start) * 1000))
