"""
Data Fetchers Package

REST fetchers used by the backfill path:
- BaseFetcher: Abstract base class with rate limiting and circuit breaker
- PolygonFetcher: Polygon.io aggregates
"""

from .base_fetcher import (
    BaseFetcher,
    RateLimiter,
    RateLimitConfig,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpenError,
)
from .polygon_io import PolygonFetcher, PolygonAPIError

__all__ = [
    "BaseFetcher",
    "RateLimiter",
    "RateLimitConfig",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerOpenError",
    "PolygonFetcher",
    "PolygonAPIError",
]
