"""
Utilities Package

Shared building blocks for the request layer:
- Per-resource sliding-window and concurrency rate limiting
- TTL/LRU response cache
"""

from .rate_limiter import (
    WINDOW_SECONDS,
    RateLimitRule,
    QueuedRequest,
    ResourceLimiter,
    RateLimiter
)

from .cache import (
    CacheEntry,
    LRUCache,
    ResponseCache
)

__all__ = [
    # Rate limiting
    "WINDOW_SECONDS",
    "RateLimitRule",
    "QueuedRequest",
    "ResourceLimiter",
    "RateLimiter",

    # Caching
    "CacheEntry",
    "LRUCache",
    "ResponseCache"
]
