"""
Polygon.io REST Fetcher

Historical aggregates client used by the backfill path. Requests are paged
through ``next_url`` and throttled by the shared rate limiter, so a backfill
cycle that fans out to many symbols does not burst past the plan's limits.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

import aiohttp
import pandas as pd

from .base_fetcher import BaseFetcher, RateLimitConfig, CircuitBreakerConfig, CircuitBreakerOpenError


logger = logging.getLogger(__name__)


class PolygonAPIError(Exception):
    """Polygon returned an error status or an unusable payload."""
    pass


def _to_millis(value: Union[str, datetime]) -> Union[int, str]:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    return value


class PolygonFetcher(BaseFetcher):
    """
    Polygon.io aggregates fetcher.

    Supports:
    - Minute/hour/day aggregates via ``/v2/aggs``
    - Cursor pagination for ranges larger than one page
    - Market status as a health probe
    """

    BASE_URL = "https://api.polygon.io"
    PAGE_LIMIT = 50000

    def __init__(self,
                 api_key: str,
                 base_url: Optional[str] = None,
                 rate_limit_config: Optional[RateLimitConfig] = None,
                 circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
                 timeout: float = 30.0):
        """
        Initialize Polygon.io fetcher.

        Args:
            api_key: Polygon.io API key
            base_url: Override for a proxied endpoint
            rate_limit_config: Rate limiting configuration
            circuit_breaker_config: Circuit breaker configuration
            timeout: Request timeout
        """
        # Polygon.io rate limits vary by plan - using conservative defaults
        if rate_limit_config is None:
            rate_limit_config = RateLimitConfig(
                requests_per_second=5.0,
                burst_size=20,
                backoff_factor=1.5,
                max_backoff=60.0
            )

        super().__init__(
            api_key=api_key,
            rate_limit_config=rate_limit_config,
            circuit_breaker_config=circuit_breaker_config,
            timeout=timeout
        )
        self.base_url = (base_url or self.BASE_URL).rstrip("/")

        suffix = api_key[-4:] if api_key else "none"
        logger.info(f"PolygonFetcher initialized for {self.base_url} with API key ending in ...{suffix}")

    async def fetch_aggregates(self,
                               symbol: str,
                               start: Union[str, datetime],
                               end: Union[str, datetime],
                               multiplier: int = 1,
                               timespan: str = "minute",
                               adjusted: bool = True) -> pd.DataFrame:
        """
        Fetch aggregate bars for ``[start, end]``.

        Args:
            symbol: Ticker symbol
            start: Range start (datetime or ``YYYY-MM-DD``)
            end: Range end, inclusive on Polygon's side
            multiplier: Size of the timespan multiplier
            timespan: minute, hour, day, week or month

        Returns:
            DataFrame indexed by UTC bar start; empty when there is no data

        Raises:
            PolygonAPIError: On an error status in the payload
            aiohttp.ClientError: On transport or HTTP errors
        """
        url = (f"{self.base_url}/v2/aggs/ticker/{symbol}/range/{multiplier}/{timespan}/"
               f"{_to_millis(start)}/{_to_millis(end)}")
        params: Optional[Dict[str, Any]] = {
            "apiKey": self.api_key,
            "adjusted": "true" if adjusted else "false",
            "sort": "asc",
            "limit": self.PAGE_LIMIT,
        }

        results: List[Dict[str, Any]] = []
        while url:
            data = await self._get_json(url, params=params)
            status = data.get("status")
            if status not in ("OK", "DELAYED"):
                raise PolygonAPIError(
                    f"aggregates request for {symbol} failed: {status} {data.get('error') or data.get('message', '')}"
                )
            results.extend(data.get("results") or [])

            url = data.get("next_url")
            # next_url already carries the cursor and query
            params = {"apiKey": self.api_key} if url else None

        return self._parse_aggregates(results, symbol)

    async def fetch_historical(self,
                               symbol: str,
                               start: Union[str, datetime],
                               end: Union[str, datetime],
                               interval: str = '1min',
                               **kwargs) -> pd.DataFrame:
        multiplier, timespan = self._parse_interval(interval)
        return await self.fetch_aggregates(symbol, start, end, multiplier, timespan,
                                           adjusted=kwargs.get("adjusted", True))

    def _parse_interval(self, interval: str) -> Tuple[int, str]:
        """Parse interval string (1min, 5min, 1hour, 1day) to multiplier and timespan."""
        interval = interval.lower().strip()

        for suffix, timespan in (("min", "minute"), ("hour", "hour"), ("day", "day"),
                                 ("week", "week"), ("month", "month")):
            if interval.endswith(suffix):
                number = interval[:-len(suffix)]
                return (int(number) if number else 1), timespan

        raise ValueError(f"unsupported interval: {interval}")

    def _parse_aggregates(self, results: List[Dict[str, Any]], symbol: str) -> pd.DataFrame:
        """Convert aggregate results to a DataFrame."""
        results = [bar for bar in results if "t" in bar]
        if not results:
            return pd.DataFrame()

        df = pd.DataFrame([{
            "timestamp": pd.to_datetime(bar["t"], unit="ms", utc=True),
            "open": float(bar.get("o", 0)),
            "high": float(bar.get("h", 0)),
            "low": float(bar.get("l", 0)),
            "close": float(bar.get("c", 0)),
            "volume": float(bar.get("v", 0)),
            "transactions": int(bar.get("n", 0) or 0),
            "vwap": float(bar.get("vw", 0) or 0),
        } for bar in results])

        df.set_index("timestamp", inplace=True)
        df = df[~df.index.duplicated(keep="first")].sort_index()
        df["symbol"] = symbol
        return df

    async def health_check(self) -> Dict[str, Any]:
        """Probe the market status endpoint."""
        start_time = time.time()
        try:
            data = await self._get_json(f"{self.base_url}/v1/marketstatus/now",
                                        params={"apiKey": self.api_key})
        except (aiohttp.ClientError, PolygonAPIError, CircuitBreakerOpenError) as e:
            return {"status": "error", "error": str(e)}

        return {
            "status": "ok",
            "latency": time.time() - start_time,
            "market": data.get("market"),
        }
