"""
Market Data Service
Database operations for bars, quotes and trades
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import and_, asc, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import pandas as pd

from .models import (
    Bar, Quote, Trade, validate_ohlcv, parse_time_bucket_key,
    datetime_to_epoch, epoch_to_datetime
)

logger = logging.getLogger(__name__)


# Bucket key group -> model
GROUP_MODELS = {
    'OHLCV': Bar,
    'QUOTE': Quote,
    'TRADE': Trade,
}


class MarketDataService:
    """Service for market data database operations"""

    def __init__(self,
                 db_session: Optional[Session] = None,
                 session_factory: Optional[Callable[[], Session]] = None):
        """
        Initialize with an optional database session or session factory.
        If neither is provided, the configured SessionLocal is used and a
        session is created per operation.
        """
        self.db_session = db_session
        self._session_provided = db_session is not None
        self._session_factory = session_factory

    def _get_session(self) -> Session:
        """Get database session"""
        if self.db_session:
            return self.db_session
        if self._session_factory is None:
            from config.database import SessionLocal
            self._session_factory = SessionLocal
        return self._session_factory()

    def _close_session(self, session: Session) -> None:
        """Close session if not provided externally"""
        if not self._session_provided:
            session.close()

    # Queries
    def last_timestamp_before(self, key: str, end: datetime) -> Optional[datetime]:
        """
        Timestamp of the most recent record at or before ``end``.

        Args:
            key: Bucket key such as ``AAPL/1Min/OHLCV``
            end: Inclusive upper bound

        Returns:
            UTC datetime, or None when the bucket has no such record
        """
        symbol, timeframe, group = parse_time_bucket_key(key)
        model = GROUP_MODELS.get(group.upper())
        if model is None:
            raise ValueError(f"unsupported bucket group: {group}")

        filters = [model.symbol == symbol, model.epoch <= datetime_to_epoch(end)]
        if model is Bar:
            filters.append(Bar.timeframe == timeframe)

        session = self._get_session()
        try:
            epoch = session.query(func.max(model.epoch)).filter(and_(*filters)).scalar()
        finally:
            self._close_session(session)

        if epoch is None:
            return None
        return epoch_to_datetime(epoch)

    def get_bars(self,
                 symbol: str,
                 start: Optional[datetime] = None,
                 end: Optional[datetime] = None,
                 timeframe: str = '1Min') -> List[Bar]:
        """Bars for a symbol ordered by time, ``end`` exclusive"""
        session = self._get_session()
        try:
            query = session.query(Bar).filter(
                and_(Bar.symbol == symbol, Bar.timeframe == timeframe)
            )
            if start:
                query = query.filter(Bar.epoch >= datetime_to_epoch(start))
            if end:
                query = query.filter(Bar.epoch < datetime_to_epoch(end))
            return query.order_by(asc(Bar.epoch)).all()
        finally:
            self._close_session(session)

    def get_bars_as_dataframe(self,
                              symbol: str,
                              start: Optional[datetime] = None,
                              end: Optional[datetime] = None,
                              timeframe: str = '1Min') -> pd.DataFrame:
        """Bars as a pandas DataFrame indexed by timestamp"""
        bars = self.get_bars(symbol, start, end, timeframe)
        if not bars:
            return pd.DataFrame()

        df = pd.DataFrame([bar.to_ohlcv_dict() for bar in bars])
        df.set_index('timestamp', inplace=True)
        return df

    # Writes
    def write_bars(self, records: Iterable[Dict[str, Any]], timeframe: str = '1Min') -> int:
        """
        Insert bars, skipping ones already stored.
        Returns number of records inserted
        """
        rows = []
        for record in records:
            if not validate_ohlcv(record['open'], record['high'], record['low'], record['close']):
                logger.warning(f"Invalid OHLCV data skipped: {record}")
                continue
            row = dict(record)
            row.setdefault('timeframe', timeframe)
            rows.append(row)

        return self._write(Bar, rows, lambda r: (r['symbol'], r['timeframe'], r['epoch']),
                           lambda m: (m.symbol, m.timeframe, m.epoch))

    def write_quotes(self, records: Iterable[Dict[str, Any]]) -> int:
        """Insert quotes, skipping duplicates"""
        rows = [dict(r) for r in records]
        for row in rows:
            row.setdefault('nanos', 0)
        return self._write(Quote, rows, lambda r: (r['symbol'], r['epoch'], r['nanos']),
                           lambda m: (m.symbol, m.epoch, m.nanos))

    def write_trades(self, records: Iterable[Dict[str, Any]]) -> int:
        """Insert trades, skipping duplicates"""
        rows = [dict(r) for r in records]
        for row in rows:
            row.setdefault('nanos', 0)
        return self._write(
            Trade, rows,
            lambda r: (r['symbol'], r['epoch'], r['nanos'], float(r['price']), float(r.get('size', 0.0))),
            lambda m: (m.symbol, m.epoch, m.nanos, m.price, m.size)
        )

    def _write(self, model, rows: List[Dict[str, Any]], row_key, model_key) -> int:
        if not rows:
            return 0

        # Drop duplicates inside the batch itself
        unique: Dict[tuple, Dict[str, Any]] = {}
        for row in rows:
            unique.setdefault(row_key(row), row)
        rows = list(unique.values())

        session = self._get_session()
        try:
            existing = self._existing_keys(session, model, rows, model_key)
            new_rows = [row for row in rows if row_key(row) not in existing]
            if not new_rows:
                return 0

            batch_size = 1000
            for i in range(0, len(new_rows), batch_size):
                session.bulk_save_objects([model(**row) for row in new_rows[i:i + batch_size]])
            session.commit()
            return len(new_rows)

        except IntegrityError:
            session.rollback()
            # A concurrent writer got there first; insert one by one
            return self._insert_with_duplicate_handling(session, model, new_rows)
        finally:
            self._close_session(session)

    def _existing_keys(self, session: Session, model, rows: List[Dict[str, Any]], model_key) -> set:
        symbols = {row['symbol'] for row in rows}
        epochs = [row['epoch'] for row in rows]
        query = session.query(model).filter(
            and_(
                model.symbol.in_(symbols),
                model.epoch >= min(epochs),
                model.epoch <= max(epochs),
            )
        )
        return {model_key(m) for m in query.all()}

    def _insert_with_duplicate_handling(self, session: Session, model,
                                        rows: List[Dict[str, Any]]) -> int:
        """Insert data with duplicate handling"""
        inserted_count = 0
        for row in rows:
            try:
                session.add(model(**row))
                session.commit()
                inserted_count += 1
            except IntegrityError:
                session.rollback()
                # Skip duplicates silently
                continue
        return inserted_count

    def get_database_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        session = self._get_session()
        try:
            return {
                'bars': session.query(Bar).count(),
                'quotes': session.query(Quote).count(),
                'trades': session.query(Trade).count(),
                'symbols': session.query(func.count(func.distinct(Bar.symbol))).scalar() or 0,
            }
        finally:
            self._close_session(session)
