"""
Shared snapshot store

Optional second cache tier shared between worker processes. Every failure is
reported as CacheBackendError so the caller can fall back to local-only caching.
"""
import asyncio
from datetime import datetime, timezone
import logging
import time
from typing import Callable, Protocol

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from iptv_catalog.database import close_db, init_db, session_scope
from iptv_catalog.exceptions import CacheBackendError
from iptv_catalog.models import SnapshotEntry


logger = logging.getLogger(__name__)


class SharedStore(Protocol):
    """Best-effort byte store with per-entry expiry."""

    async def get(self, key: str) -> bytes | None:
        ...

    async def set(self, key: str, payload: bytes, ttl_seconds: int) -> None:
        ...


class SqliteSharedStore:
    """SharedStore backed by a SQLite file through SQLAlchemy's async engine."""

    def __init__(self, database_path: str, *, clock: Callable[[], float] = time.time) -> None:
        self.database_path = database_path
        self._clock = clock
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._open_lock = asyncio.Lock()

    async def open(self) -> None:
        """Create the engine and schema if not done yet."""
        async with self._open_lock:
            if self._session_factory is not None:
                return
            try:
                self._engine, self._session_factory = await init_db(self.database_path)
            except (SQLAlchemyError, OSError) as exc:
                raise CacheBackendError(f"Cannot open shared store {self.database_path}: {exc}") from exc

    async def close(self) -> None:
        await close_db(self._engine)
        self._engine = None
        self._session_factory = None

    async def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            await self.open()
        assert self._session_factory is not None
        return self._session_factory

    async def get(self, key: str) -> bytes | None:
        """
        Read a live entry.

        Returns:
            Stored payload, or None when missing or expired

        Raises:
            CacheBackendError: If the store cannot be read
        """
        factory = await self._factory()
        try:
            async with session_scope(factory) as session:
                result = await session.execute(
                    select(SnapshotEntry.payload).where(
                        SnapshotEntry.key == key,
                        SnapshotEntry.expires_at > self._clock(),
                    )
                )
                return result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as exc:
            raise CacheBackendError(f"Shared store read failed for {key}: {exc}") from exc

    async def set(self, key: str, payload: bytes, ttl_seconds: int) -> None:
        """
        Insert or replace an entry expiring after ttl_seconds.

        Raises:
            CacheBackendError: If the store cannot be written
        """
        factory = await self._factory()
        expires_at = self._clock() + ttl_seconds
        updated_at = datetime.now(timezone.utc)
        stmt = sqlite_insert(SnapshotEntry).values(
            key=key,
            payload=payload,
            expires_at=expires_at,
            updated_at=updated_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[SnapshotEntry.key],
            set_={
                "payload": stmt.excluded.payload,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        try:
            async with session_scope(factory) as session:
                await session.execute(stmt)
        except (SQLAlchemyError, OSError) as exc:
            raise CacheBackendError(f"Shared store write failed for {key}: {exc}") from exc
        logger.debug("Stored %s bytes under %s (ttl %ss)", len(payload), key, ttl_seconds)

    async def purge_expired(self) -> int:
        """
        Delete expired entries.

        Returns:
            Number of deleted entries
        """
        factory = await self._factory()
        try:
            async with session_scope(factory) as session:
                result = await session.execute(
                    delete(SnapshotEntry).where(SnapshotEntry.expires_at <= self._clock())
                )
                deleted = result.rowcount or 0
        except (SQLAlchemyError, OSError) as exc:
            raise CacheBackendError(f"Shared store purge failed: {exc}") from exc
        if deleted:
            logger.info("Purged %s expired shared snapshots", deleted)
        return deleted
