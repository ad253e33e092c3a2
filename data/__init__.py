"""
Polygon Gap-Fill Data Package

Market data acquisition for the gap-fill worker:

- fetchers/: Polygon.io REST client with rate limiting and circuit breaker
- streaming/: Polygon.io websocket client and stream handlers
- backfill/: Gap registry, range resolution and the backfill scheduler
"""

__version__ = "1.0.0"

from .fetchers import BaseFetcher, PolygonFetcher

__all__ = [
    "BaseFetcher",
    "PolygonFetcher"
]
