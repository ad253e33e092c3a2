"""
Backfill Range Resolver

Works out where a gap starts. Without a configured start time the store is
asked for the last bar written before the gap; with one, the configured time
is parsed and used as is.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from core.database.models import time_bucket_key
from .errors import ConfigurationError, TransientStoreError

# Configure logging
logger = logging.getLogger(__name__)


# Tried in order, first match wins
QUERY_START_LAYOUTS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d",
)

ONE_MINUTE = timedelta(minutes=1)


class LastRecordStore(Protocol):
    """Store capability needed by the resolver."""

    def last_timestamp_before(self, key: str, end: datetime) -> Optional[datetime]:
        ...


def parse_query_start(value: str) -> datetime:
    """
    Parse a configured start time.

    Args:
        value: Date or date+time string, space or ``T`` separated

    Returns:
        Timezone-aware UTC datetime

    Raises:
        ConfigurationError: If no layout matches
    """
    text = (value or "").strip()
    for layout in QUERY_START_LAYOUTS:
        try:
            parsed = datetime.strptime(text, layout)
        except ValueError:
            continue
        return parsed.replace(tzinfo=timezone.utc)

    raise ConfigurationError(f"unparseable query_start: {value!r}")


class RangeResolver:
    """
    Resolve the start of a symbol's gap.

    The end of the range is always open; this class only decides ``from``.
    """

    def __init__(self,
                 store: LastRecordStore,
                 query_start: Optional[str] = None,
                 timeframe: str = "1Min",
                 period: timedelta = ONE_MINUTE):
        """
        Args:
            store: Store used to look up the last written bar
            query_start: Optional fallback start time string
            timeframe: Timeframe segment of the bucket key
            period: Safety margin subtracted from the end time, so the bar
                that revealed the gap is not picked up again
        """
        self.store = store
        self.query_start = query_start
        self.timeframe = timeframe
        self.period = period

    async def resolve(self, symbol: str, end: datetime) -> Optional[datetime]:
        """
        Determine the start of the gap that ends at ``end``.

        Returns:
            The start time, or None when there is nothing to backfill

        Raises:
            ConfigurationError: If the configured start time cannot be parsed
            TransientStoreError: If the store query fails
        """
        if self.query_start:
            return parse_query_start(self.query_start)

        key = time_bucket_key(symbol, self.timeframe)
        try:
            last = await asyncio.to_thread(
                self.store.last_timestamp_before, key, end - self.period
            )
        except SQLAlchemyError as e:
            raise TransientStoreError(f"last record query failed for {key}: {e}") from e

        if last is None:
            logger.debug(f"[polygon] no prior record for {key}, nothing to fill")
            return None

        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return last
