"""
Async database engine, session factory and request-scoped session dependency.
"""

from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


Base = declarative_base()


def _enable_sqlite_write_serialization(engine: AsyncEngine) -> None:
    # SQLite has no SELECT ... FOR UPDATE. Taking the write lock when the
    # transaction starts makes a second writer wait for the first to finish.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine configured for ledger transactions on ``url``."""
    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        engine = create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": float(settings.SQLITE_BUSY_TIMEOUT_SECONDS)},
        )
        _enable_sqlite_write_serialization(engine)
        return engine
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Yield one session per request; uncommitted work is rolled back on close."""
    async with async_session_maker() as session:
        yield session
