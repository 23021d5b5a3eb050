"""
Catalog Ingestion Service

Coordinates fetching, parsing, merging and assembly of one catalog snapshot.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal, Sequence

import httpx

from iptv_catalog.config import CustomSettings, settings as default_settings
from iptv_catalog.exceptions import AuxiliaryFeedError, SourceError
from iptv_catalog.schemas import SourceConfig
from iptv_catalog.services.catalog_types import (
    CatalogItem,
    CatalogSnapshot,
    ContentType,
    RawRecord,
    SourceKind,
)
from iptv_catalog.services.channel_merge_service import (
    build_movie,
    build_series,
    classify_record,
    fold_playlist_series,
    merge_channels,
)
from iptv_catalog.services.identity_service import resolve
from iptv_catalog.services.source_service import AuxFeeds, CoreFeeds, Source, build_source
from iptv_catalog.services.xmltv_parser_service import parse_xmltv_content
from iptv_catalog.utils.http_client import create_http_client
from iptv_catalog.utils.logging_helpers import log_merge_summary, log_section_end, log_section_start


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FeedSummary:
    name: str
    started_at: datetime
    completed_at: datetime
    status: Literal["success", "failed", "skipped"]
    error: str | None = None

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.completed_at - self.started_at).total_seconds())

    def to_dict(self) -> dict:
        payload = {
            "feed": self.name,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
        }
        if self.error:
            payload["error"] = self.error
        return payload


class IngestionPipeline:
    """Builds catalog snapshots from a source configuration."""

    def __init__(
        self,
        settings: CustomSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.settings = settings or default_settings
        self._client = client
        self._clock = clock

    async def run(self, config: SourceConfig) -> CatalogSnapshot:
        """
        Fetch all feeds of a source and assemble a snapshot.

        Returns:
            A brand new snapshot

        Raises:
            SourceError: If a core feed fails, is malformed or misses its deadline
        """
        if self._client is not None:
            return await self._run(config, self._client)
        async with create_http_client(self.settings.http_user_agent) as client:
            return await self._run(config, client)

    async def _run(self, config: SourceConfig, client: httpx.AsyncClient) -> CatalogSnapshot:
        source = build_source(config, client, self.settings)
        section = f"ingestion of {source.name} catalog {config.fingerprint()[:12]}"
        log_section_start(logger, section)
        started_at = self._clock()

        summaries: list[FeedSummary] = []
        core_task = asyncio.create_task(self._fetch_core(source, summaries))
        aux_task = asyncio.create_task(self._fetch_aux(source, summaries))
        epg_task = asyncio.create_task(self._fetch_epg(source, summaries))

        try:
            core = await core_task
        except BaseException:
            for task in (aux_task, epg_task):
                task.cancel()
            await asyncio.gather(aux_task, epg_task, return_exceptions=True)
            logger.error("Ingestion aborted after %.1fs", (self._clock() - started_at).total_seconds())
            raise

        aux, epg_payload = await asyncio.gather(aux_task, epg_task)

        records = source.records(core, aux)
        snapshot = self.assemble(config, records, epg_payload)

        for summary in sorted(summaries, key=lambda s: s.name):
            logger.debug("Feed summary: %s", summary.to_dict())
        log_section_end(logger, section)
        logger.info(
            "Snapshot built in %.1fs from %s records",
            (snapshot.built_at - started_at).total_seconds(),
            len(records),
        )
        return snapshot

    async def _timed(
        self,
        name: str,
        fetch: Awaitable[Any],
        timeout: float,
        summaries: list[FeedSummary],
    ) -> Any:
        started_at = self._clock()
        try:
            result = await asyncio.wait_for(fetch, timeout=timeout)
        except BaseException as exc:
            status = "skipped" if isinstance(exc, asyncio.CancelledError) else "failed"
            summaries.append(FeedSummary(name, started_at, self._clock(), status, str(exc) or type(exc).__name__))
            raise
        summaries.append(FeedSummary(name, started_at, self._clock(), "success"))
        return result

    async def _fetch_core(self, source: Source, summaries: list[FeedSummary]) -> CoreFeeds:
        timeout = self.settings.core_feed_timeout_sec
        try:
            return await self._timed("core", source.fetch_core_feeds(), timeout, summaries)
        except asyncio.TimeoutError as exc:
            raise SourceError(f"Core feeds of {source.name} source exceeded {timeout:.0f}s deadline") from exc

    async def _fetch_aux(self, source: Source, summaries: list[FeedSummary]) -> AuxFeeds:
        timeout = max(self.settings.aux_feed_timeout_sec, self.settings.series_feed_timeout_sec)
        try:
            return await self._timed("aux", source.fetch_aux_feeds(), timeout, summaries)
        except asyncio.TimeoutError:
            logger.warning("Auxiliary feeds exceeded %.0fs deadline, continuing without them", timeout)
        except (AuxiliaryFeedError, httpx.HTTPError, ValueError) as exc:
            logger.warning("Auxiliary feeds unavailable, continuing without them: %s", exc)
        return AuxFeeds()

    async def _fetch_epg(self, source: Source, summaries: list[FeedSummary]) -> bytes | None:
        timeout = self.settings.epg_feed_timeout_sec
        try:
            return await self._timed("epg", source.fetch_epg_feed(), timeout, summaries)
        except asyncio.TimeoutError:
            logger.warning("EPG feed exceeded %.0fs deadline, continuing without EPG", timeout)
        except (AuxiliaryFeedError, httpx.HTTPError) as exc:
            logger.warning("EPG feed unavailable, continuing without EPG: %s", exc)
        return None

    def assemble(
        self,
        config: SourceConfig,
        records: Sequence[RawRecord],
        epg_payload: bytes | str | None,
    ) -> CatalogSnapshot:
        """
        Turn raw records and guide content into a snapshot.

        Parsing and merging are synchronous; nothing here suspends.
        """
        live: list[RawRecord] = []
        episodes: list[RawRecord] = []
        movies: dict[str, CatalogItem] = {}
        provider_series: dict[str, CatalogItem] = {}

        for record in records:
            content_type = classify_record(record)
            if content_type is ContentType.LIVE:
                if config.include_live:
                    live.append(record)
            elif content_type is ContentType.MOVIE:
                if config.include_movies:
                    movie = build_movie(record)
                    movies.setdefault(movie.id, movie)
            elif config.include_series:
                if record.source_kind is SourceKind.PROVIDER:
                    series = build_series(record)
                    provider_series.setdefault(series.id, series)
                else:
                    episodes.append(record)

        channels = merge_channels((resolve(record), record) for record in live)
        series_items = list(provider_series.values()) + fold_playlist_series(episodes)

        epg = parse_xmltv_content(epg_payload, config.epg_offset_hours) if epg_payload else {}

        log_merge_summary(
            logger,
            len(channels),
            sum(len(channel.variants) for channel in channels),
            len(movies),
            len(series_items),
        )
        if config.debug:
            logger.info("First channels: %s", [channel.name for channel in channels[:10]])

        return CatalogSnapshot(
            channels=tuple(channels),
            movies=tuple(movies.values()),
            series=tuple(series_items),
            epg=epg,
            built_at=self._clock(),
        )
