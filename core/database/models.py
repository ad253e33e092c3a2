"""
Market Data Models
SQLAlchemy ORM models for streamed and backfilled bars, quotes and trades
"""

from datetime import datetime, timezone
from typing import Tuple

from sqlalchemy import (
    Column, Integer, BigInteger, String, Float, DateTime,
    Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

# SQLAlchemy base class for all models
Base = declarative_base()


class Bar(Base):
    """
    Bars table for OHLCV time series data
    One row per symbol, timeframe and bar start epoch
    """
    __tablename__ = 'bars'

    id = Column(Integer, primary_key=True, autoincrement=True)

    symbol = Column(String(50), nullable=False,
                    comment="Trading symbol (e.g., AAPL)")
    timeframe = Column(String(10), nullable=False, default='1Min',
                       comment="Bucket timeframe (1Min, 1H, 1D)")
    epoch = Column(BigInteger, nullable=False,
                   comment="Bar start time, seconds since the Unix epoch (UTC)")

    # OHLCV data
    open = Column(Float, nullable=False, comment="Opening price")
    high = Column(Float, nullable=False, comment="Highest price")
    low = Column(Float, nullable=False, comment="Lowest price")
    close = Column(Float, nullable=False, comment="Closing price")
    volume = Column(Float, nullable=False, default=0.0, comment="Trading volume")
    tick_count = Column(Integer, comment="Number of trades in the bar (add_bar_tick_count)")

    data_source = Column(String(20), nullable=False, default='stream',
                         comment="stream or backfill")
    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        # Unique constraint makes re-writes of a range a no-op
        UniqueConstraint('symbol', 'timeframe', 'epoch', name='uq_bar_symbol_timeframe_epoch'),
        CheckConstraint('volume >= 0', name='ck_bar_volume_non_negative'),
        Index('idx_bars_time_series', 'symbol', 'timeframe', 'epoch'),
    )

    def __repr__(self):
        return f"<Bar(symbol='{self.symbol}', timeframe='{self.timeframe}', epoch={self.epoch})>"

    @property
    def timestamp(self) -> datetime:
        return epoch_to_datetime(self.epoch)

    def to_ohlcv_dict(self) -> dict:
        """Convert to dictionary for analysis libraries"""
        return {
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume,
            'tick_count': self.tick_count,
        }


class Quote(Base):
    """
    Quotes table for NBBO updates
    """
    __tablename__ = 'quotes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(50), nullable=False)
    epoch = Column(BigInteger, nullable=False, comment="Seconds since the Unix epoch (UTC)")
    nanos = Column(Integer, nullable=False, default=0, comment="Sub-second part in nanoseconds")

    bid_price = Column(Float, nullable=False)
    ask_price = Column(Float, nullable=False)
    bid_size = Column(Float, nullable=False, default=0.0)
    ask_size = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('symbol', 'epoch', 'nanos', name='uq_quote_symbol_time'),
        Index('idx_quotes_time_series', 'symbol', 'epoch'),
    )

    def __repr__(self):
        return f"<Quote(symbol='{self.symbol}', epoch={self.epoch}, bid={self.bid_price}, ask={self.ask_price})>"


class Trade(Base):
    """
    Trades table for individual prints
    """
    __tablename__ = 'trades'

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(50), nullable=False)
    epoch = Column(BigInteger, nullable=False, comment="Seconds since the Unix epoch (UTC)")
    nanos = Column(Integer, nullable=False, default=0, comment="Sub-second part in nanoseconds")

    price = Column(Float, nullable=False)
    size = Column(Float, nullable=False, default=0.0)
    exchange = Column(Integer, comment="Exchange id")

    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('symbol', 'epoch', 'nanos', 'price', 'size', name='uq_trade_symbol_time_print'),
        Index('idx_trades_time_series', 'symbol', 'epoch'),
    )

    def __repr__(self):
        return f"<Trade(symbol='{self.symbol}', epoch={self.epoch}, price={self.price})>"


# Key and time helpers
def time_bucket_key(symbol: str, timeframe: str = '1Min', group: str = 'OHLCV') -> str:
    """Canonical bucket key, e.g. ``AAPL/1Min/OHLCV``"""
    return f"{symbol}/{timeframe}/{group}"


def parse_time_bucket_key(key: str) -> Tuple[str, str, str]:
    """Split a bucket key into (symbol, timeframe, group)"""
    parts = key.split('/')
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"invalid time bucket key: {key!r}")
    return parts[0], parts[1], parts[2]


def epoch_to_datetime(epoch: int) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def datetime_to_epoch(value: datetime) -> int:
    """Seconds since the epoch; naive datetimes are taken as UTC"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def validate_ohlcv(open_price: float, high: float, low: float, close: float) -> bool:
    """Validate OHLCV data consistency"""
    return (
        high >= max(open_price, close, low) and
        low <= min(open_price, close, high)
    )


def get_supported_data_types() -> list[str]:
    """Return the data types the stream can subscribe to"""
    return ['bars', 'quotes', 'trades']
