"""
Catalog Service

Entry point for the protocol layer: snapshots by configuration, guide
lookups and stream resolution.
"""
from __future__ import annotations

from collections import OrderedDict
from datetime import datetime
import logging

import httpx

from iptv_catalog.config import CustomSettings, settings as default_settings
from iptv_catalog.exceptions import AuxiliaryFeedError, CacheBackendError, SourceError
from iptv_catalog.schemas import SourceConfig, XtreamSourceConfig
from iptv_catalog.services.catalog_types import CatalogSnapshot, EpgProgramme, Episode, StreamOption
from iptv_catalog.services.epg_query_service import current_programme, upcoming_programmes
from iptv_catalog.services.ingestion_service import IngestionPipeline
from iptv_catalog.services.shared_store import SqliteSharedStore
from iptv_catalog.services.snapshot_cache import BoundedTTLCache, SnapshotCache
from iptv_catalog.services.source_service import XtreamSource
from iptv_catalog.utils.http_client import create_http_client


logger = logging.getLogger(__name__)


def resolve_stream(snapshot: CatalogSnapshot, item_id: str) -> list[StreamOption] | None:
    """
    Playable URLs for a channel, movie or playlist episode

    Args:
        snapshot: Snapshot to search
        item_id: Catalog id

    Returns:
        Channel variants best-first, a single option for other items,
        or None when the id is unknown
    """
    channel = snapshot.find_channel(item_id)
    if channel is not None:
        return [StreamOption(url=variant.url, label=variant.label) for variant in channel.variants]

    movie = snapshot.find_movie(item_id)
    if movie is not None and movie.url:
        return [StreamOption(url=movie.url, label=movie.name)]

    for series in snapshot.series:
        for episode in series.episodes:
            if episode.id == item_id:
                return [StreamOption(url=episode.url, label=episode.title)]

    return None


class CatalogService:
    """Ties the ingestion pipeline to the snapshot cache."""

    def __init__(
        self,
        cache: SnapshotCache,
        pipeline: IngestionPipeline,
        settings: CustomSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        shared_store: SqliteSharedStore | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.cache = cache
        self.pipeline = pipeline
        self._client = client
        self._shared_store = shared_store
        self._series_cache: BoundedTTLCache[tuple[Episode, ...]] = BoundedTTLCache(
            self.settings.series_info_cache_max_entries,
            self.settings.series_info_cache_ttl_sec,
        )
        self._tracked: OrderedDict[str, SourceConfig] = OrderedDict()

    @classmethod
    def from_settings(
        cls,
        settings: CustomSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> "CatalogService":
        """Wire cache, shared store and pipeline from application settings."""
        settings = settings or default_settings
        shared_store = SqliteSharedStore(settings.shared_store_path) if settings.shared_store_path else None
        cache = SnapshotCache.from_settings(settings, shared_store=shared_store)
        pipeline = IngestionPipeline(settings, client=client)
        return cls(cache, pipeline, settings, client=client, shared_store=shared_store)

    async def close(self) -> None:
        if self._shared_store is not None:
            await self._shared_store.close()

    async def purge_expired(self) -> int:
        """Drop expired series info and shared snapshots; returns the shared rows removed."""
        self._series_cache.purge_expired()
        if self._shared_store is None:
            return 0
        try:
            return await self._shared_store.purge_expired()
        except CacheBackendError as exc:
            logger.warning("Shared store purge skipped: %s", exc)
            return 0

    async def get_or_build(self, config: SourceConfig, force_refresh: bool = False) -> CatalogSnapshot:
        """
        Snapshot for a configuration, built on first use

        Raises:
            SourceError: If no snapshot exists and the build fails
        """
        fingerprint = config.fingerprint()
        snapshot = await self.cache.get_or_build(
            fingerprint,
            lambda: self.pipeline.run(config),
            force_refresh=force_refresh,
        )
        self._track(fingerprint, config)
        return snapshot

    def _track(self, fingerprint: str, config: SourceConfig) -> None:
        """Remember the config of a cached catalog; configs leave with their snapshots."""
        if self.cache.holds(fingerprint):
            self._tracked[fingerprint] = config
            self._tracked.move_to_end(fingerprint)
        if len(self._tracked) > self.cache.max_entries:
            for stale in [fp for fp in self._tracked if not self.cache.holds(fp)]:
                del self._tracked[stale]

    def tracked_fingerprints(self) -> list[str]:
        return list(self._tracked)

    async def current_programme(self, config: SourceConfig, epg_key: str, now: datetime) -> EpgProgramme | None:
        snapshot = await self.get_or_build(config)
        return current_programme(snapshot.epg, epg_key, now)

    async def upcoming_programmes(
        self,
        config: SourceConfig,
        epg_key: str,
        now: datetime,
        limit: int = 5,
    ) -> list[EpgProgramme]:
        snapshot = await self.get_or_build(config)
        return upcoming_programmes(snapshot.epg, epg_key, now, limit)

    async def resolve_stream(self, config: SourceConfig, item_id: str) -> list[StreamOption] | None:
        snapshot = await self.get_or_build(config)
        return resolve_stream(snapshot, item_id)

    async def series_episodes(self, config: SourceConfig, series_item_id: str) -> tuple[Episode, ...]:
        """
        Episodes of a series, best-effort

        Playlist series carry their episodes in the snapshot. Provider series
        are looked up on demand and cached; failures yield no episodes.
        """
        snapshot = await self.get_or_build(config)
        series = snapshot.find_series(series_item_id)
        if series is None:
            return ()
        if series.episodes or not isinstance(config, XtreamSourceConfig) or not series.series_ref:
            return series.episodes

        cache_key = f"{config.fingerprint()}:{series.series_ref}"
        cached = self._series_cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            if self._client is not None:
                episodes = await XtreamSource(config, self._client, self.settings).fetch_series_episodes(series.series_ref)
            else:
                async with create_http_client(self.settings.http_user_agent) as client:
                    episodes = await XtreamSource(config, client, self.settings).fetch_series_episodes(series.series_ref)
        except AuxiliaryFeedError as exc:
            logger.warning("Series info unavailable for %s: %s", series.name, exc)
            return ()

        self._series_cache.put(cache_key, episodes)
        logger.info("Fetched %s episodes for series %s", len(episodes), series.name)
        return episodes

    async def refresh_tracked(self) -> dict[str, str]:
        """
        Force a refresh of every catalog still held in the cache

        Fingerprints that dropped out of the cache are forgotten. Snapshots
        still inside the minor refresh window are left alone and reported as
        'skipped'. A rebuild that fails keeps the previous snapshot and
        reports 'kept'.

        Returns:
            Mapping of fingerprint to outcome ('refreshed', 'skipped', 'kept',
            'failed' or 'evicted')
        """
        outcomes: dict[str, str] = {}
        for fingerprint, config in list(self._tracked.items()):
            if not self.cache.holds(fingerprint):
                self._tracked.pop(fingerprint, None)
                outcomes[fingerprint] = "evicted"
                continue
            if self.cache.is_fresh(fingerprint):
                outcomes[fingerprint] = "skipped"
                continue
            previous = self.cache.latest(fingerprint)
            try:
                snapshot = await self.get_or_build(config, force_refresh=True)
                outcomes[fingerprint] = "kept" if snapshot is previous else "refreshed"
            except SourceError as exc:
                logger.error("Scheduled refresh of %s failed: %s", fingerprint[:12], exc)
                outcomes[fingerprint] = "failed"
        return outcomes
