"""
Test Suite for Market Data Models and MarketDataService

Bucket keys, epoch helpers, idempotent writes and last-record lookups.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from core.database.models import (
    Bar, Quote, Trade, time_bucket_key, parse_time_bucket_key,
    epoch_to_datetime, datetime_to_epoch, validate_ohlcv, get_supported_data_types
)
from core.database.market_data_service import MarketDataService


T = datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)
T_EPOCH = datetime_to_epoch(T)


class TestHelpers:
    """Key and time helpers"""

    def test_bucket_key(self):
        assert time_bucket_key("AAPL") == "AAPL/1Min/OHLCV"
        assert time_bucket_key("AAPL", "1D", "TRADE") == "AAPL/1D/TRADE"

    def test_parse_bucket_key(self):
        assert parse_time_bucket_key("AAPL/1Min/OHLCV") == ("AAPL", "1Min", "OHLCV")

    @pytest.mark.parametrize("key", ["AAPL", "AAPL/1Min", "AAPL//OHLCV", "a/b/c/d"])
    def test_parse_invalid_bucket_key(self, key):
        with pytest.raises(ValueError):
            parse_time_bucket_key(key)

    def test_epoch_conversion(self):
        assert epoch_to_datetime(T_EPOCH) == T
        assert datetime_to_epoch(datetime(2024, 3, 1, 15, 0)) == T_EPOCH

    def test_validate_ohlcv(self):
        assert validate_ohlcv(100.0, 101.0, 99.0, 100.5)
        assert not validate_ohlcv(100.0, 99.0, 98.0, 100.5)
        assert not validate_ohlcv(100.0, 101.0, 100.2, 100.1)

    def test_supported_data_types(self):
        assert get_supported_data_types() == ['bars', 'quotes', 'trades']


class TestBarModel:
    """Bar ORM model"""

    def test_unique_constraint(self, test_session_factory):
        session = test_session_factory()
        bar = dict(symbol="AAPL", timeframe="1Min", epoch=T_EPOCH,
                   open=1.0, high=1.0, low=1.0, close=1.0, volume=10.0)
        session.add(Bar(**bar))
        session.commit()

        session.add(Bar(**bar))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()
        session.close()

    def test_bar_conversions(self):
        bar = Bar(symbol="AAPL", timeframe="1Min", epoch=T_EPOCH,
                  open=1.0, high=2.0, low=0.5, close=1.5, volume=10.0, tick_count=7)

        assert bar.timestamp == T
        assert bar.to_ohlcv_dict()['tick_count'] == 7
        assert "AAPL" in repr(bar)


class TestWrites:
    """Idempotent inserts through MarketDataService"""

    def test_write_bars_counts_new_rows(self, store, bar_factory):
        records = [bar_factory("AAPL", T_EPOCH + 60 * i) for i in range(5)]

        assert store.write_bars(records) == 5
        assert store.write_bars(records) == 0
        assert len(store.get_bars("AAPL")) == 5

    def test_overlapping_batch(self, store, bar_factory):
        store.write_bars([bar_factory("AAPL", T_EPOCH + 60 * i) for i in range(3)])

        written = store.write_bars([bar_factory("AAPL", T_EPOCH + 60 * i, data_source="backfill")
                                    for i in range(1, 6)])

        assert written == 3
        bars = store.get_bars("AAPL")
        assert [b.epoch for b in bars] == [T_EPOCH + 60 * i for i in range(6)]
        assert bars[1].data_source == "stream"

    def test_duplicates_inside_one_batch(self, store, bar_factory):
        record = bar_factory("AAPL", T_EPOCH)

        assert store.write_bars([record, dict(record)]) == 1

    def test_invalid_bar_skipped(self, store, bar_factory):
        bad = bar_factory("AAPL", T_EPOCH, high=50.0)

        assert store.write_bars([bad, bar_factory("AAPL", T_EPOCH + 60)]) == 1

    def test_same_epoch_other_timeframe(self, store, bar_factory):
        store.write_bars([bar_factory("AAPL", T_EPOCH)])

        assert store.write_bars([bar_factory("AAPL", T_EPOCH, timeframe="1H")]) == 1

    def test_write_quotes_and_trades(self, store):
        quote = {"symbol": "AAPL", "epoch": T_EPOCH, "nanos": 5_000_000,
                 "bid_price": 100.0, "ask_price": 100.1, "bid_size": 2, "ask_size": 3}
        trade = {"symbol": "AAPL", "epoch": T_EPOCH, "price": 100.05, "size": 100.0, "exchange": 4}

        assert store.write_quotes([quote]) == 1
        assert store.write_quotes([quote]) == 0
        assert store.write_trades([trade]) == 1
        assert store.write_trades([dict(trade, price=100.06)]) == 1

        stats = store.get_database_stats()
        assert stats['quotes'] == 1
        assert stats['trades'] == 2

    def test_empty_write(self, store):
        assert store.write_bars([]) == 0
        assert store.write_trades([]) == 0

    def test_integrity_error_falls_back_to_row_inserts(self, store, bar_factory, monkeypatch):
        """A row inserted by another writer between check and commit is skipped"""
        store.write_bars([bar_factory("AAPL", T_EPOCH)])
        monkeypatch.setattr(MarketDataService, "_existing_keys", lambda *args: set())

        written = store.write_bars([bar_factory("AAPL", T_EPOCH), bar_factory("AAPL", T_EPOCH + 60)])

        assert written == 1
        assert len(store.get_bars("AAPL")) == 2


class TestQueries:
    """Reads used by the backfill path"""

    def test_last_timestamp_before(self, store, bar_factory):
        store.write_bars([bar_factory("AAPL", T_EPOCH - 600), bar_factory("AAPL", T_EPOCH - 300),
                          bar_factory("AAPL", T_EPOCH)])

        key = "AAPL/1Min/OHLCV"
        assert store.last_timestamp_before(key, T) == T
        assert store.last_timestamp_before(key, T - timedelta(minutes=1)) == T - timedelta(minutes=5)
        assert store.last_timestamp_before(key, T - timedelta(hours=1)) is None

    def test_last_timestamp_for_missing_bucket(self, store):
        assert store.last_timestamp_before("MSFT/1Min/OHLCV", T) is None

    def test_last_timestamp_trade_bucket(self, store):
        store.write_trades([{"symbol": "AAPL", "epoch": T_EPOCH - 30, "price": 1.0, "size": 1.0}])

        assert store.last_timestamp_before("AAPL/1Min/TRADE", T) == T - timedelta(seconds=30)

    def test_unsupported_bucket_group(self, store):
        with pytest.raises(ValueError):
            store.last_timestamp_before("AAPL/1Min/NEWS", T)

    def test_get_bars_end_exclusive(self, store, bar_factory):
        store.write_bars([bar_factory("AAPL", T_EPOCH + 60 * i) for i in range(5)])

        bars = store.get_bars("AAPL", start=T + timedelta(minutes=1), end=T + timedelta(minutes=3))

        assert [b.epoch for b in bars] == [T_EPOCH + 60, T_EPOCH + 120]

    def test_bars_as_dataframe(self, store, bar_factory):
        store.write_bars([bar_factory("AAPL", T_EPOCH + 60 * i, close=100.0 + i) for i in range(3)])

        df = store.get_bars_as_dataframe("AAPL")

        assert len(df) == 3
        assert list(df['close']) == [100.0, 101.0, 102.0]
        assert df.index[0] == T

    def test_empty_dataframe(self, store):
        assert store.get_bars_as_dataframe("AAPL").empty

    def test_explicit_session_kept_open(self, test_session_factory, bar_factory):
        session = test_session_factory()
        service = MarketDataService(db_session=session)

        service.write_bars([bar_factory("AAPL", T_EPOCH)])

        assert session.query(Bar).count() == 1
        assert session.query(Quote).count() == 0
        assert session.query(Trade).count() == 0
        session.close()
