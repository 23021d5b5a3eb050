"""
Snapshot Cache

Two-tier cache of catalog snapshots: a bounded in-process LRU/TTL store plus
an optional shared store, with single-flight builds per fingerprint.
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Generic, TypeVar

from pydantic import ValidationError

from iptv_catalog.config import CustomSettings
from iptv_catalog.exceptions import SourceError
from iptv_catalog.services.catalog_types import CatalogSnapshot, decode_snapshot, encode_snapshot
from iptv_catalog.services.fetch_coordinator import FetchCoordinator
from iptv_catalog.services.shared_store import SharedStore


logger = logging.getLogger(__name__)

V = TypeVar("V")

SHARED_KEY_PREFIX = "catalog:"


@dataclass(slots=True)
class CacheEntry:
    value: Any
    stored_at: float


class BoundedTTLCache(Generic[V]):
    """
    LRU cache with a fixed capacity and per-entry time-to-live.

    Expired entries are kept until replaced or evicted so callers can fall
    back to them; get() only returns live values. All bookkeeping happens
    under one lock that is never held across an await.
    """

    def __init__(
        self,
        max_entries: int,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> V | None:
        """Return a live value and mark it recently used."""
        entry = self.get_entry(key)
        if entry is None or self.is_expired(entry):
            return None
        return entry.value

    def get_entry(self, key: str) -> CacheEntry | None:
        """Return the entry (live or expired) and mark it recently used."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
            return entry

    def peek_entry(self, key: str) -> CacheEntry | None:
        """Return the entry (live or expired) without touching recency."""
        with self._lock:
            return self._entries.get(key)

    def has_entry(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def put(self, key: str, value: V, *, age: float = 0.0) -> None:
        """Insert or replace a value, evicting the least recently used entry when full."""
        entry = CacheEntry(value=value, stored_at=self._clock() - max(0.0, age))
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted_key, _ = self._entries.popitem(last=False)
                logger.debug("Evicted least recently used entry %s", evicted_key[:12])

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Drop every expired entry, returning how many were removed."""
        with self._lock:
            expired = [key for key, entry in self._entries.items() if self.is_expired(entry)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def age(self, entry: CacheEntry) -> float:
        return self._clock() - entry.stored_at

    def is_expired(self, entry: CacheEntry) -> bool:
        return self.age(entry) >= self.ttl_seconds

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
        return entry is not None and not self.is_expired(entry)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


SnapshotBuilder = Callable[[], Awaitable[CatalogSnapshot]]


class SnapshotCache:
    """Serves snapshots by fingerprint, building each at most once at a time."""

    def __init__(
        self,
        *,
        ttl_seconds: int,
        max_entries: int,
        minor_refresh_seconds: int = 0,
        shared_store: SharedStore | None = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.minor_refresh_seconds = minor_refresh_seconds
        self.enabled = enabled
        self._local: BoundedTTLCache[CatalogSnapshot] = BoundedTTLCache(max_entries, ttl_seconds, clock=clock)
        self._shared = shared_store if enabled else None
        self._wall_clock = wall_clock
        self._coordinator = FetchCoordinator()

    @classmethod
    def from_settings(cls, settings: CustomSettings, shared_store: SharedStore | None = None) -> "SnapshotCache":
        return cls(
            ttl_seconds=settings.cache_ttl_sec,
            max_entries=settings.cache_max_entries,
            minor_refresh_seconds=settings.cache_minor_refresh_sec,
            shared_store=shared_store,
            enabled=settings.cache_enabled,
        )

    async def get_or_build(
        self,
        fingerprint: str,
        builder: SnapshotBuilder,
        force_refresh: bool = False,
    ) -> CatalogSnapshot:
        """
        Return the snapshot for a fingerprint, building it when needed.

        A live local entry is returned directly. A forced refresh is ignored
        while the current snapshot is younger than the minor refresh window.
        Concurrent callers for one fingerprint share a single build.

        Args:
            fingerprint: Configuration fingerprint
            builder: Async callable producing a fresh snapshot
            force_refresh: Rebuild even if a live snapshot is cached

        Returns:
            The published snapshot

        Raises:
            SourceError: If the build fails and no earlier snapshot exists
        """
        entry = self._local.get_entry(fingerprint)
        if entry is not None:
            age = self._local.age(entry)
            if not force_refresh and age < self.ttl_seconds:
                logger.debug("Cache hit for %s (age %.0fs)", fingerprint[:12], age)
                return entry.value
            if force_refresh and age < self.minor_refresh_seconds:
                logger.info(
                    "Ignoring refresh for %s: snapshot is only %.0fs old",
                    fingerprint[:12],
                    age,
                )
                return entry.value

        consult_shared = not force_refresh
        return await self._coordinator.run(
            fingerprint,
            lambda: self._load_or_build(fingerprint, builder, consult_shared),
        )

    @property
    def max_entries(self) -> int:
        return self._local.max_entries

    def is_building(self, fingerprint: str) -> bool:
        return self._coordinator.is_fetching(fingerprint)

    def is_fresh(self, fingerprint: str) -> bool:
        """True while the local snapshot is inside the minor refresh window."""
        entry = self._local.peek_entry(fingerprint)
        return entry is not None and self._local.age(entry) < self.minor_refresh_seconds

    def latest(self, fingerprint: str) -> CatalogSnapshot | None:
        """Return the newest local snapshot, even if expired, without building."""
        entry = self._local.peek_entry(fingerprint)
        return entry.value if entry is not None else None

    def holds(self, fingerprint: str) -> bool:
        """True while a snapshot for the fingerprint is held locally, live or expired."""
        return self._local.has_entry(fingerprint)

    def invalidate(self, fingerprint: str) -> bool:
        removed = self._local.invalidate(fingerprint)
        if removed:
            logger.info("Invalidated cached snapshot %s", fingerprint[:12])
        return removed

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._local

    async def _load_or_build(
        self,
        fingerprint: str,
        builder: SnapshotBuilder,
        consult_shared: bool,
    ) -> CatalogSnapshot:
        if consult_shared:
            shared = await self._read_shared(fingerprint)
            if shared is not None:
                return shared

        previous = self._local.get_entry(fingerprint)
        try:
            snapshot = await builder()
        except SourceError as exc:
            if previous is not None:
                logger.error(
                    "Rebuild of %s failed, keeping previous snapshot built at %s: %s",
                    fingerprint[:12],
                    previous.value.built_at.isoformat(),
                    exc,
                )
                return previous.value
            raise

        if self.enabled:
            # Publish by reference swap; readers see the old or the new snapshot
            self._local.put(fingerprint, snapshot)
            await self._write_shared(fingerprint, snapshot)
        return snapshot

    async def _read_shared(self, fingerprint: str) -> CatalogSnapshot | None:
        if self._shared is None:
            return None
        try:
            payload = await self._shared.get(SHARED_KEY_PREFIX + fingerprint)
        except Exception as exc:
            logger.warning("Shared store unavailable, using local cache only: %s", exc)
            return None
        if payload is None:
            return None

        try:
            snapshot = decode_snapshot(payload)
        except ValidationError as exc:
            logger.warning("Discarding undecodable shared snapshot %s: %s", fingerprint[:12], exc)
            return None

        age = (self._wall_clock() - snapshot.built_at).total_seconds()
        if age >= self.ttl_seconds:
            logger.debug("Shared snapshot %s is stale (age %.0fs)", fingerprint[:12], age)
            return None

        logger.info("Loaded snapshot %s from shared store (age %.0fs)", fingerprint[:12], age)
        self._local.put(fingerprint, snapshot, age=age)
        return snapshot

    async def _write_shared(self, fingerprint: str, snapshot: CatalogSnapshot) -> None:
        if self._shared is None:
            return
        try:
            await self._shared.set(
                SHARED_KEY_PREFIX + fingerprint,
                encode_snapshot(snapshot),
                self.ttl_seconds,
            )
        except Exception as exc:
            logger.warning("Could not mirror snapshot %s to shared store: %s", fingerprint[:12], exc)
