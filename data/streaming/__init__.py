"""
Data Streaming Package

Live Polygon.io stream components:
- PolygonStreamClient: websocket connection, subscription and reconnection
- PolygonStreamRouter: writes streamed records and reports gaps
"""

from .polygon_stream import PolygonStreamClient, build_subscription, CHANNEL_PREFIXES
from .handlers import PolygonStreamRouter

__all__ = [
    "PolygonStreamClient",
    "PolygonStreamRouter",
    "build_subscription",
    "CHANNEL_PREFIXES",
]
