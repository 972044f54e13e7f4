"""
API response caching.

A process-wide TTL store for JSON response bodies and the decorator that
serves GET routes from it. Mutating routes invalidate key families
explicitly by substring.
"""

from .response_cache import (
    ResponseCache,
    CacheEntry,
    DEFAULT_RESPONSE_TTL,
    DASHBOARD_STATS_TTL,
    CATEGORIES_TTL,
)
from .middleware import ResponseCacheMiddleware

__all__ = [
    "ResponseCache",
    "CacheEntry",
    "ResponseCacheMiddleware",
    "DEFAULT_RESPONSE_TTL",
    "DASHBOARD_STATS_TTL",
    "CATEGORIES_TTL",
]
