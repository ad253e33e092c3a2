"""
Database configuration and session management

The stream handlers and the backfill tasks hit the store from worker
threads, so every session is short-lived and created per operation.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from config.settings import settings


def _build_engine(url: str, echo: bool = False):
    if not url.startswith("sqlite"):
        # PostgreSQL, MySQL, etc.
        return create_engine(url, echo=echo, pool_pre_ping=True)

    options = {}
    if ":memory:" in url:
        # one shared connection, otherwise each thread sees an empty database
        options["poolclass"] = StaticPool
    return create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 30},
        echo=echo,
        **options
    )


engine = _build_engine(settings.database_url, echo=settings.debug)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    """Create the bars, quotes and trades tables if missing"""
    from core.database.models import Base
    Base.metadata.create_all(bind=engine)


def close_db():
    """Release pooled connections on shutdown"""
    engine.dispose()
