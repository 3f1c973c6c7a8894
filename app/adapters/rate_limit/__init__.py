"""Rate limiting adapters.

This package provides a small abstraction layer so the storefront can start
with an in-memory limiter and later migrate to Redis or another shared store
without changing the HTTP layer.
"""

from app.adapters.rate_limit.base import (
    UNKNOWN_CLIENT_KEY,
    AbstractRateLimiter,
    ClientWindow,
    RateLimitOptions,
    RateLimitResult,
)
from app.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter

__all__ = [
    "UNKNOWN_CLIENT_KEY",
    "AbstractRateLimiter",
    "ClientWindow",
    "InMemoryFixedWindowRateLimiter",
    "RateLimitOptions",
    "RateLimitResult",
]
