"""
Response caching package.

Anonymous, expensive, error-free responses are memoized in the shared
store under a request fingerprint and indexed by account slug so they can
be invalidated explicitly.
"""

from .response_cache import (
    CacheProperties,
    ResponseCache,
    ResponseCacheMiddleware,
    get_cache_properties,
    is_anonymous,
)

__all__ = [
    "CacheProperties",
    "ResponseCache",
    "ResponseCacheMiddleware",
    "get_cache_properties",
    "is_anonymous",
]
