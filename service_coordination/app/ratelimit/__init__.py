"""
Rate limiting package.

Holds the call counter used by sensitive endpoints and the fixed-window
limiter + middleware that enforce per-identity request budgets at the
HTTP boundary. Both fail open when the shared store is unavailable.
"""

from .counter import ONE_HOUR_IN_SECONDS, RateLimit
from .fixed_window import (
    FixedWindowRateLimiter,
    RateLimitDecision,
    RateLimitMiddleware,
    RateLimitOptions,
    install_rate_limiter,
    with_limits,
)

__all__ = [
    "ONE_HOUR_IN_SECONDS",
    "FixedWindowRateLimiter",
    "RateLimit",
    "RateLimitDecision",
    "RateLimitMiddleware",
    "RateLimitOptions",
    "install_rate_limiter",
    "with_limits",
]
