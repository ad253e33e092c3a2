"""
Shared fixtures: an in-memory store that can be used from worker threads
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.database.models import Base
from core.database.market_data_service import MarketDataService


@pytest.fixture(scope="function")
def test_session_factory():
    """Session factory over one shared in-memory SQLite connection"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    Base.metadata.create_all(engine)

    yield sessionmaker(bind=engine)

    engine.dispose()


@pytest.fixture
def store(test_session_factory):
    """MarketDataService creating a session per operation"""
    return MarketDataService(session_factory=test_session_factory)


def make_bar(symbol, epoch, close=100.0, **overrides):
    """Bar record as written by the stream or the backfiller"""
    record = {
        'symbol': symbol,
        'timeframe': '1Min',
        'epoch': epoch,
        'open': close,
        'high': close + 1.0,
        'low': close - 1.0,
        'close': close,
        'volume': 1000.0,
        'data_source': 'stream',
    }
    record.update(overrides)
    return record


@pytest.fixture
def bar_factory():
    """Factory for bar records"""
    return make_bar
