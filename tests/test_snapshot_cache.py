"""
Tests for the two-tier snapshot cache and build coalescing.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from iptv_catalog.exceptions import CacheBackendError, SourceError
from iptv_catalog.services.catalog_types import (
    CatalogSnapshot,
    Channel,
    EpgProgramme,
    QualityTier,
    QualityVariant,
    decode_snapshot,
    encode_snapshot,
)
from iptv_catalog.services.shared_store import SqliteSharedStore
from iptv_catalog.services.snapshot_cache import SHARED_KEY_PREFIX, BoundedTTLCache, SnapshotCache


class InMemoryStore:
    """SharedStore double keeping payloads in a dict."""

    def __init__(self):
        self.data: dict[str, bytes] = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, payload, ttl_seconds):
        self.data[key] = payload


class BrokenStore:
    async def get(self, key):
        raise CacheBackendError("store down")

    async def set(self, key, payload, ttl_seconds):
        raise CacheBackendError("store down")


class UnreachableStore:
    """Store whose client raises its own connection errors."""

    async def get(self, key):
        raise ConnectionError("store down")

    async def set(self, key, payload, ttl_seconds):
        raise ConnectionError("store down")


class CountingBuilder:
    """Builder returning fresh snapshots and counting invocations."""

    def __init__(self, make_snapshot, delay: float = 0.0):
        self.make_snapshot = make_snapshot
        self.delay = delay
        self.calls = 0
        self.fail = False
        self.abort = False

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.abort:
            raise asyncio.CancelledError()
        if self.fail:
            raise SourceError("upstream down")
        return self.make_snapshot()


def _cache(clock, **kwargs):
    options = {"ttl_seconds": 3600, "max_entries": 10, "minor_refresh_seconds": 60, "clock": clock}
    options.update(kwargs)
    return SnapshotCache(**options)


class TestBoundedTTLCache:
    """Test cases for the in-process LRU/TTL store."""

    def test_lru_eviction(self, clock):
        cache = BoundedTTLCache(2, 100, clock=clock)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert len(cache) == 2

    def test_expired_entries_are_held_but_not_served(self, clock):
        cache = BoundedTTLCache(2, 100, clock=clock)
        cache.put("a", 1)
        clock.advance(100)

        assert cache.get("a") is None
        assert "a" not in cache
        assert cache.has_entry("a")
        assert cache.get_entry("a").value == 1
        assert cache.purge_expired() == 1
        assert not cache.has_entry("a")

    def test_rejects_non_positive_capacity(self, clock):
        with pytest.raises(ValueError):
            BoundedTTLCache(0, 100, clock=clock)


class TestSnapshotCache:
    """Test cases for snapshot building, reuse and coalescing."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_build(self, clock, make_snapshot):
        cache = _cache(clock)
        builder = CountingBuilder(make_snapshot, delay=0.05)

        results = await asyncio.gather(*(cache.get_or_build("fp", builder) for _ in range(10)))

        assert builder.calls == 1
        assert all(result is results[0] for result in results)
        assert not cache.is_building("fp")

    @pytest.mark.asyncio
    async def test_live_entry_is_reused_until_ttl(self, clock, make_snapshot):
        cache = _cache(clock)
        builder = CountingBuilder(make_snapshot)

        first = await cache.get_or_build("fp", builder)
        clock.advance(3599)
        second = await cache.get_or_build("fp", builder)
        clock.advance(1)
        third = await cache.get_or_build("fp", builder)

        assert first is second
        assert third is not first
        assert builder.calls == 2

    @pytest.mark.asyncio
    async def test_forced_refresh_inside_minor_window_is_ignored(self, clock, make_snapshot):
        cache = _cache(clock)
        builder = CountingBuilder(make_snapshot)

        first = await cache.get_or_build("fp", builder)
        clock.advance(30)
        again = await cache.get_or_build("fp", builder, force_refresh=True)
        clock.advance(31)
        refreshed = await cache.get_or_build("fp", builder, force_refresh=True)

        assert again is first
        assert refreshed is not first
        assert builder.calls == 2

    @pytest.mark.asyncio
    async def test_least_recently_used_fingerprint_is_evicted(self, clock, make_snapshot):
        cache = _cache(clock, max_entries=2)
        builder = CountingBuilder(make_snapshot)

        await cache.get_or_build("a", builder)
        await cache.get_or_build("b", builder)
        await cache.get_or_build("a", builder)
        await cache.get_or_build("c", builder)

        assert "a" in cache
        assert "b" not in cache
        assert not cache.holds("b")

    @pytest.mark.asyncio
    async def test_failed_first_build_raises_and_clears_marker(self, clock, make_snapshot):
        cache = _cache(clock)
        builder = CountingBuilder(make_snapshot)
        builder.fail = True

        with pytest.raises(SourceError):
            await cache.get_or_build("fp", builder)

        assert not cache.is_building("fp")
        builder.fail = False
        assert await cache.get_or_build("fp", builder) is not None
        assert builder.calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_abort_shared_build(self, clock, make_snapshot):
        cache = _cache(clock)
        builder = CountingBuilder(make_snapshot, delay=0.1)
        waiters = [asyncio.create_task(cache.get_or_build("fp", builder)) for _ in range(3)]
        await asyncio.sleep(0.01)

        waiters[0].cancel()
        results = await asyncio.gather(*waiters[1:])

        with pytest.raises(asyncio.CancelledError):
            await waiters[0]
        assert builder.calls == 1
        assert results[0] is results[1]
        assert cache.latest("fp") is results[0]
        assert not cache.is_building("fp")

    @pytest.mark.asyncio
    async def test_aborted_build_clears_marker_and_is_retried(self, clock, make_snapshot):
        cache = _cache(clock)
        builder = CountingBuilder(make_snapshot, delay=0.01)
        builder.abort = True

        with pytest.raises(asyncio.CancelledError):
            await cache.get_or_build("fp", builder)

        assert not cache.is_building("fp")
        assert cache.latest("fp") is None
        builder.abort = False
        assert await cache.get_or_build("fp", builder) is not None
        assert builder.calls == 2

    @pytest.mark.asyncio
    async def test_failed_rebuild_keeps_previous_snapshot(self, clock, make_snapshot):
        cache = _cache(clock)
        builder = CountingBuilder(make_snapshot)

        first = await cache.get_or_build("fp", builder)
        clock.advance(7200)
        builder.fail = True

        assert await cache.get_or_build("fp", builder) is first
        assert cache.latest("fp") is first

    @pytest.mark.asyncio
    async def test_disabled_cache_builds_every_time(self, clock, make_snapshot):
        cache = _cache(clock, enabled=False)
        builder = CountingBuilder(make_snapshot)

        await cache.get_or_build("fp", builder)
        await cache.get_or_build("fp", builder)

        assert builder.calls == 2
        assert not cache.holds("fp")

    @pytest.mark.asyncio
    async def test_invalidate(self, clock, make_snapshot):
        cache = _cache(clock)
        builder = CountingBuilder(make_snapshot)

        await cache.get_or_build("fp", builder)

        assert cache.invalidate("fp")
        assert not cache.invalidate("fp")
        assert cache.latest("fp") is None


class TestSharedTier:
    """Test cases for the optional shared store."""

    @pytest.mark.asyncio
    async def test_build_is_mirrored_to_shared_store(self, clock, make_snapshot):
        store = InMemoryStore()
        cache = _cache(clock, shared_store=store)

        snapshot = await cache.get_or_build("fp", CountingBuilder(make_snapshot))

        assert decode_snapshot(store.data[SHARED_KEY_PREFIX + "fp"]) == snapshot

    @pytest.mark.asyncio
    async def test_fresh_shared_snapshot_skips_the_build(self, clock, make_snapshot):
        store = InMemoryStore()
        stored = make_snapshot()
        store.data[SHARED_KEY_PREFIX + "fp"] = encode_snapshot(stored)
        cache = _cache(clock, shared_store=store)
        builder = CountingBuilder(make_snapshot)

        snapshot = await cache.get_or_build("fp", builder)

        assert builder.calls == 0
        assert snapshot == stored
        assert "fp" in cache

    @pytest.mark.asyncio
    async def test_stale_shared_snapshot_is_rebuilt(self, clock, make_snapshot):
        store = InMemoryStore()
        old = make_snapshot(built_at=datetime.now(timezone.utc) - timedelta(hours=2))
        store.data[SHARED_KEY_PREFIX + "fp"] = encode_snapshot(old)
        cache = _cache(clock, shared_store=store)
        builder = CountingBuilder(make_snapshot)

        await cache.get_or_build("fp", builder)

        assert builder.calls == 1

    @pytest.mark.asyncio
    async def test_undecodable_shared_payload_is_ignored(self, clock, make_snapshot):
        store = InMemoryStore()
        store.data[SHARED_KEY_PREFIX + "fp"] = b'{"not": "a snapshot"}'
        cache = _cache(clock, shared_store=store)
        builder = CountingBuilder(make_snapshot)

        await cache.get_or_build("fp", builder)

        assert builder.calls == 1

    @pytest.mark.asyncio
    async def test_shared_store_failures_are_absorbed(self, clock, make_snapshot):
        cache = _cache(clock, shared_store=BrokenStore())
        builder = CountingBuilder(make_snapshot)

        first = await cache.get_or_build("fp", builder)

        assert await cache.get_or_build("fp", builder) is first
        assert builder.calls == 1

    @pytest.mark.asyncio
    async def test_foreign_store_errors_are_absorbed(self, clock, make_snapshot):
        cache = _cache(clock, shared_store=UnreachableStore())
        builder = CountingBuilder(make_snapshot)

        snapshot = await cache.get_or_build("fp", builder)

        assert cache.latest("fp") is snapshot
        assert builder.calls == 1

    @pytest.mark.asyncio
    async def test_unopenable_sqlite_store_is_absorbed(self, clock, make_snapshot, tmp_path):
        store = SqliteSharedStore(str(tmp_path / "missing" / "dir" / "store.db"))
        cache = _cache(clock, shared_store=store)
        builder = CountingBuilder(make_snapshot)

        try:
            snapshot = await cache.get_or_build("fp", builder)
        finally:
            await store.close()

        assert snapshot is not None
        assert builder.calls == 1


def test_snapshot_codec_preserves_content():
    built_at = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
    channel = Channel(
        id="iptv_1",
        canonical_key="bbc1",
        name="BBC One",
        logo=None,
        category="UK",
        epg_key="bbc1",
        variants=(
            QualityVariant(tier=QualityTier.UHD, url="u2", label="BBC One [4K]"),
            QualityVariant(tier=QualityTier.HD, url="u1", label="BBC One [HD]"),
        ),
    )
    programme = EpgProgramme(
        channel_key="bbc1",
        start=datetime(2024, 1, 1, 11, tzinfo=timezone.utc),
        stop=datetime(2024, 1, 1, 13, tzinfo=timezone.utc),
        title="News",
    )
    snapshot = CatalogSnapshot(
        channels=(channel,),
        movies=(),
        series=(),
        epg={"bbc1": (programme,)},
        built_at=built_at,
    )

    decoded = decode_snapshot(encode_snapshot(snapshot))

    assert decoded == snapshot
    assert decoded.channels[0].variants[0].tier is QualityTier.UHD
    assert decoded.epg["bbc1"] == (programme,)


def test_snapshot_guide_index_is_read_only(make_snapshot):
    guide = {"bbc1": ()}
    snapshot = make_snapshot(epg=guide)

    with pytest.raises(TypeError):
        snapshot.epg["cnn"] = ()
    guide["cnn"] = ()

    assert snapshot.epg == {"bbc1": ()}
