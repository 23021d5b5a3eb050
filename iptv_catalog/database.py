import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy import event

from iptv_catalog.models import Base

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000


def _configure_sqlite(dbapi_conn, _) -> None:
    """Let several worker processes share one store file"""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute("PRAGMA synchronous = NORMAL")
    cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


async def init_db(database_path: str) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Open the shared store database and create its schema

    Args:
        database_path: SQLite file path

    Returns:
        Tuple of (engine, session_factory)
    """
    logger.info("Opening shared store at %s", database_path)

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{database_path}",
        echo=False,
        pool_pre_ping=True,
        connect_args={"timeout": 30, "check_same_thread": False},
    )
    event.listen(engine.sync_engine, "connect", _configure_sqlite)

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except BaseException:
        await engine.dispose()
        raise

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    logger.info("Shared store ready")
    return engine, session_factory


async def close_db(engine: AsyncEngine | None) -> None:
    """Dispose of pooled connections"""
    if engine:
        await engine.dispose()
        logger.info("Shared store connections closed")


@asynccontextmanager
async def session_scope(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """
    Session wrapped in one transaction, committed on success and rolled back on error.

    Args:
        session_factory: Factory returned by init_db()
    """
    async with session_factory() as session:
        async with session.begin():
            yield session
