"""
Bars backfill executor.

Fetches a resolved range of 1-minute aggregates from Polygon and writes them
to the store. Re-running the same range is harmless: the store skips bars it
already has.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

import aiohttp
import pandas as pd
from sqlalchemy.exc import SQLAlchemyError

from data.fetchers.base_fetcher import CircuitBreakerOpenError
from data.fetchers.polygon_io import PolygonAPIError
from .errors import FetchError

# Configure logging
logger = logging.getLogger(__name__)


class BarWriter(Protocol):
    def write_bars(self, records: List[Dict[str, Any]], timeframe: str = '1Min') -> int:
        ...


@dataclass(frozen=True)
class ResolvedRange:
    """A gap to fill; ``end`` of None means up to now."""
    symbol: str
    start: datetime
    end: Optional[datetime] = None

    def __str__(self):
        end = self.end.isoformat() if self.end else "now"
        return f"{self.symbol} [{self.start.isoformat()}, {end})"


class BarsBackfiller:
    """
    Fetch-and-persist primitive for minute bars.

    Large ranges are split into windows so a single request never has to
    page through more than a day of minutes.
    """

    def __init__(self,
                 fetcher,
                 store: BarWriter,
                 add_tick_count: bool = False,
                 window: timedelta = timedelta(days=1),
                 timeframe: str = "1Min"):
        self.fetcher = fetcher
        self.store = store
        self.add_tick_count = add_tick_count
        self.window = window
        self.timeframe = timeframe

    async def fetch_and_persist(self,
                                symbol: str,
                                start: datetime,
                                end: Optional[datetime] = None) -> int:
        """
        Fetch ``[start, end)`` and write it.

        Returns:
            Number of bars newly written

        Raises:
            FetchError: If any window fails to fetch or write
        """
        start = _as_utc(start)
        end = _as_utc(end) if end else datetime.now(timezone.utc)
        if start >= end:
            return 0

        written = 0
        window_start = start
        while window_start < end:
            window_end = min(window_start + self.window, end)
            written += await self._fill_window(symbol, window_start, window_end)
            window_start = window_end

        logger.info(f"[polygon] backfilled {written} bars for {ResolvedRange(symbol, start, end)}")
        return written

    async def _fill_window(self, symbol: str, start: datetime, end: datetime) -> int:
        try:
            df = await self.fetcher.fetch_aggregates(symbol, start, end)
        except (aiohttp.ClientError, asyncio.TimeoutError, PolygonAPIError, CircuitBreakerOpenError) as e:
            raise FetchError(f"fetch failed for {symbol} {start.isoformat()}: {e}", symbol=symbol) from e

        records = self._to_records(symbol, df, start, end)
        if not records:
            return 0

        try:
            return await asyncio.to_thread(self.store.write_bars, records, self.timeframe)
        except SQLAlchemyError as e:
            raise FetchError(f"write failed for {symbol} {start.isoformat()}: {e}", symbol=symbol) from e

    def _to_records(self, symbol: str, df: pd.DataFrame, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        if df is None or df.empty:
            return []

        df = df[(df.index >= pd.Timestamp(start)) & (df.index < pd.Timestamp(end))]

        records = []
        for timestamp, row in df.iterrows():
            record = {
                "symbol": symbol,
                "timeframe": self.timeframe,
                "epoch": int(timestamp.timestamp()),
                "open": float(row["open"]),
                "high": float(row["high"]),
                "low": float(row["low"]),
                "close": float(row["close"]),
                "volume": float(row["volume"]),
                "data_source": "backfill",
            }
            if self.add_tick_count:
                record["tick_count"] = int(row.get("transactions", 0))
            records.append(record)
        return records


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
