"""
Tests for the catalog service facade, stream resolution and scheduled refresh.
"""
from datetime import datetime, timezone
import json

import httpx
import pytest

from iptv_catalog.exceptions import SourceError
from iptv_catalog.main import lifespan
from iptv_catalog.schemas import parse_source_config
from iptv_catalog.services.catalog_service import CatalogService, resolve_stream
from iptv_catalog.services.catalog_types import (
    CatalogItem,
    CatalogSnapshot,
    Channel,
    ContentType,
    EpgProgramme,
    Episode,
    QualityTier,
    QualityVariant,
)
from iptv_catalog.services.scheduler_service import CatalogRefreshScheduler
from iptv_catalog.services.shared_store import SqliteSharedStore
from iptv_catalog.services.snapshot_cache import SnapshotCache


def _utc(hour):
    return datetime(2024, 1, 1, hour, tzinfo=timezone.utc)


def _snapshot():
    channel = Channel(
        id="iptv_bbc",
        canonical_key="bbc1",
        name="BBC One",
        logo=None,
        category="UK",
        epg_key="bbc1",
        variants=(
            QualityVariant(tier=QualityTier.UHD, url="u-4k", label="BBC One [4K]"),
            QualityVariant(tier=QualityTier.HD, url="u-hd", label="BBC One [HD]"),
        ),
    )
    movie = CatalogItem(id="iptv_vod_10", kind=ContentType.MOVIE, name="Film", url="u-film")
    playlist_series = CatalogItem(
        id="iptv_series_abc",
        kind=ContentType.SERIES,
        name="Show",
        series_ref="abc",
        episodes=(Episode(id="iptv_series_ep_1", title="Show S01E01", season=1, episode=1, url="u-ep1"),),
    )
    provider_series = CatalogItem(id="iptv_series_7", kind=ContentType.SERIES, name="Drama", series_ref="7")
    return CatalogSnapshot(
        channels=(channel,),
        movies=(movie,),
        series=(playlist_series, provider_series),
        epg={"bbc1": (EpgProgramme(channel_key="bbc1", start=_utc(11), stop=_utc(13), title="News"),)},
        built_at=datetime.now(timezone.utc),
    )


class StubPipeline:
    """Pipeline double returning a new snapshot per run."""

    def __init__(self):
        self.runs = 0
        self.fail = False

    async def run(self, config):
        self.runs += 1
        if self.fail:
            raise SourceError("provider down")
        return _snapshot()


@pytest.fixture
def xtream_config():
    return parse_source_config({
        "provider": "xtream",
        "xtream_url": "http://provider.example",
        "xtream_username": "user",
        "xtream_password": "pass",
    })


def _service(settings, pipeline, client=None):
    cache = SnapshotCache(ttl_seconds=3600, max_entries=10, minor_refresh_seconds=0)
    return CatalogService(cache, pipeline, settings, client=client)


class TestResolveStream:
    """Test cases for mapping catalog ids to playable URLs."""

    def test_channel_variants_best_first(self):
        options = resolve_stream(_snapshot(), "iptv_bbc")

        assert [(o.url, o.label) for o in options] == [("u-4k", "BBC One [4K]"), ("u-hd", "BBC One [HD]")]

    def test_movie_and_episode(self):
        snapshot = _snapshot()

        assert [o.url for o in resolve_stream(snapshot, "iptv_vod_10")] == ["u-film"]
        assert [o.url for o in resolve_stream(snapshot, "iptv_series_ep_1")] == ["u-ep1"]

    def test_unknown_id(self):
        assert resolve_stream(_snapshot(), "iptv_missing") is None


class TestCatalogService:
    """Test cases for the service facade."""

    @pytest.mark.asyncio
    async def test_snapshot_is_built_once_per_config(self, test_settings, xtream_config):
        pipeline = StubPipeline()
        service = _service(test_settings, pipeline)

        first = await service.get_or_build(xtream_config)
        again = await service.get_or_build(xtream_config.model_copy(update={"debug": True}))

        assert first is again
        assert pipeline.runs == 1
        assert service.tracked_fingerprints() == [xtream_config.fingerprint()]

    @pytest.mark.asyncio
    async def test_tracked_configs_are_bounded_by_cache_capacity(self, test_settings):
        cache = SnapshotCache(ttl_seconds=3600, max_entries=2)
        service = CatalogService(cache, StubPipeline(), test_settings)
        configs = [
            parse_source_config({"provider": "m3u", "m3u_url": f"http://lists.example/{n}.m3u"})
            for n in range(50)
        ]

        for config in configs:
            await service.get_or_build(config)

        assert service.tracked_fingerprints() == [c.fingerprint() for c in configs[-2:]]

    @pytest.mark.asyncio
    async def test_guide_and_stream_lookups(self, test_settings, xtream_config):
        service = _service(test_settings, StubPipeline())

        current = await service.current_programme(xtream_config, "BBC1", _utc(12))
        upcoming = await service.upcoming_programmes(xtream_config, "bbc1", _utc(10))
        options = await service.resolve_stream(xtream_config, "iptv_bbc")

        assert current.title == "News"
        assert [p.title for p in upcoming] == ["News"]
        assert options[0].url == "u-4k"

    @pytest.mark.asyncio
    async def test_first_build_failure_surfaces(self, test_settings, xtream_config):
        pipeline = StubPipeline()
        pipeline.fail = True
        service = _service(test_settings, pipeline)

        with pytest.raises(SourceError):
            await service.get_or_build(xtream_config)

    @pytest.mark.asyncio
    async def test_playlist_series_episodes_come_from_snapshot(self, test_settings, xtream_config):
        service = _service(test_settings, StubPipeline())

        episodes = await service.series_episodes(xtream_config, "iptv_series_abc")

        assert [e.url for e in episodes] == ["u-ep1"]
        assert await service.series_episodes(xtream_config, "iptv_series_missing") == ()

    @pytest.mark.asyncio
    async def test_provider_series_episodes_are_fetched_once(self, test_settings, xtream_config):
        requests = []

        def handler(request):
            requests.append(request)
            assert request.url.params["action"] == "get_series_info"
            assert request.url.params["series_id"] == "7"
            payload = {
                "episodes": {
                    "1": [
                        {"id": "102", "episode_num": 2, "title": "Second", "container_extension": "mkv"},
                        {"id": "101", "episode_num": 1, "title": "First", "info": {"movie_image": "img"}},
                        {"title": "No id"},
                    ],
                },
            }
            return httpx.Response(200, content=json.dumps(payload).encode())

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            service = _service(test_settings, StubPipeline(), client=client)
            episodes = await service.series_episodes(xtream_config, "iptv_series_7")
            cached = await service.series_episodes(xtream_config, "iptv_series_7")

        assert [(e.season, e.episode, e.title) for e in episodes] == [(1, 1, "First"), (1, 2, "Second")]
        assert episodes[0].url == "http://provider.example/series/user/pass/101.mp4"
        assert episodes[0].thumbnail == "img"
        assert episodes[1].url == "http://provider.example/series/user/pass/102.mkv"
        assert cached == episodes
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_series_info_failure_yields_no_episodes(self, test_settings, xtream_config):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))) as client:
            service = _service(test_settings, StubPipeline(), client=client)

            assert await service.series_episodes(xtream_config, "iptv_series_7") == ()


class TestRefresh:
    """Test cases for refreshing tracked catalogs."""

    @pytest.mark.asyncio
    async def test_refresh_tracked(self, test_settings, xtream_config):
        pipeline = StubPipeline()
        service = _service(test_settings, pipeline)
        fingerprint = xtream_config.fingerprint()
        first = await service.get_or_build(xtream_config)

        assert await service.refresh_tracked() == {fingerprint: "refreshed"}
        assert service.cache.latest(fingerprint) is not first

        pipeline.fail = True
        kept = service.cache.latest(fingerprint)
        assert await service.refresh_tracked() == {fingerprint: "kept"}
        assert service.cache.latest(fingerprint) is kept

        service.cache.invalidate(fingerprint)
        assert await service.refresh_tracked() == {fingerprint: "evicted"}
        assert service.tracked_fingerprints() == []

    @pytest.mark.asyncio
    async def test_recent_snapshot_is_skipped(self, test_settings, xtream_config):
        pipeline = StubPipeline()
        cache = SnapshotCache(ttl_seconds=3600, max_entries=10, minor_refresh_seconds=60)
        service = CatalogService(cache, pipeline, test_settings)
        first = await service.get_or_build(xtream_config)

        assert await service.refresh_tracked() == {xtream_config.fingerprint(): "skipped"}
        assert service.cache.latest(xtream_config.fingerprint()) is first
        assert pipeline.runs == 1

    @pytest.mark.asyncio
    async def test_scheduled_job_refreshes(self, test_settings, xtream_config):
        pipeline = StubPipeline()
        service = _service(test_settings, pipeline)
        await service.get_or_build(xtream_config)
        scheduler = CatalogRefreshScheduler(service, test_settings)

        await scheduler._refresh_job()

        assert pipeline.runs == 2

    @pytest.mark.asyncio
    async def test_scheduler_start_and_shutdown(self, test_settings):
        scheduler = CatalogRefreshScheduler(_service(test_settings, StubPipeline()), test_settings)

        scheduler.start()
        try:
            assert scheduler.get_next_run_time() is not None
        finally:
            scheduler.shutdown()

        assert scheduler.get_next_run_time() is None


@pytest.mark.asyncio
async def test_lifespan_yields_service(test_settings):
    async with lifespan(test_settings, start_scheduler=False) as service:
        assert isinstance(service, CatalogService)
        assert service.tracked_fingerprints() == []


@pytest.mark.asyncio
async def test_purge_expired_removes_stale_shared_entries(test_settings, tmp_path):
    store = SqliteSharedStore(str(tmp_path / "shared.db"))
    cache = SnapshotCache(ttl_seconds=3600, max_entries=10, shared_store=store)
    service = CatalogService(cache, StubPipeline(), test_settings, shared_store=store)
    try:
        await store.set("catalog:stale", b"old", -1)
        await store.set("catalog:fresh", b"new", 3600)

        assert await service.purge_expired() == 1
        assert await store.get("catalog:fresh") == b"new"
    finally:
        await service.close()


@pytest.mark.asyncio
async def test_purge_expired_without_shared_store(test_settings):
    assert await _service(test_settings, StubPipeline()).purge_expired() == 0
