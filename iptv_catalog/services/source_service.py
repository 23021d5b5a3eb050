"""
Source Service

Provider capabilities used by the ingestion pipeline. Each source fetches its
core feeds (fatal on failure), its auxiliary feeds and guide (best-effort),
and turns the payloads into raw records.
"""
from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from iptv_catalog.config import CustomSettings
from iptv_catalog.exceptions import AuxiliaryFeedError, SourceError
from iptv_catalog.schemas import PlaylistSourceConfig, SourceConfig, XtreamSourceConfig
from iptv_catalog.services.catalog_types import ContentType, Episode, RawRecord
from iptv_catalog.services.playlist_parser_service import (
    build_category_map,
    parse_m3u,
    parse_provider_streams,
)
from iptv_catalog.utils.http_client import fetch_bytes, fetch_json, fetch_text
from iptv_catalog.utils.logging_helpers import sanitize_url


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CoreFeeds:
    """Listings a catalog cannot be built without."""
    playlist: str | None = None
    live_streams: list[Any] = field(default_factory=list)
    vod_streams: list[Any] = field(default_factory=list)


@dataclass(slots=True)
class AuxFeeds:
    """Enrichment listings; any of them may be missing."""
    live_categories: dict[str, str] = field(default_factory=dict)
    vod_categories: dict[str, str] = field(default_factory=dict)
    series_categories: dict[str, str] = field(default_factory=dict)
    series: list[Any] = field(default_factory=list)


class Source(Protocol):
    """Capability the ingestion pipeline needs from a provider."""

    name: str

    async def fetch_core_feeds(self) -> CoreFeeds:
        ...

    async def fetch_aux_feeds(self) -> AuxFeeds:
        ...

    async def fetch_epg_feed(self) -> bytes | None:
        ...

    def records(self, core: CoreFeeds, aux: AuxFeeds) -> list[RawRecord]:
        ...


class _HttpSource:
    """Shared plumbing for HTTP based sources."""

    def __init__(self, client: httpx.AsyncClient, settings: CustomSettings) -> None:
        self._client = client
        self._settings = settings

    def _fetch_options(self, timeout: float) -> dict[str, Any]:
        return {
            "timeout": timeout,
            "max_retries": self._settings.http_max_retries,
            "backoff_factor": self._settings.http_backoff_factor,
        }

    async def _fetch_playlist(self, url: str) -> str:
        try:
            text = await fetch_text(self._client, url, **self._fetch_options(self._settings.core_feed_timeout_sec))
        except httpx.HTTPError as exc:
            raise SourceError(f"Playlist fetch failed for {sanitize_url(url)}: {exc}") from exc
        # Providers answer bad credentials with HTML or JSON error pages
        if not text.lstrip().startswith("#EXTM3U") and "#EXTINF" not in text:
            raise SourceError(f"Response from {sanitize_url(url)} is not a playlist")
        return text

    async def _fetch_guide(self, url: str | None) -> bytes | None:
        if not url:
            logger.debug("No EPG URL configured, skipping guide fetch")
            return None
        try:
            return await fetch_bytes(self._client, url, **self._fetch_options(self._settings.epg_feed_timeout_sec))
        except httpx.HTTPError as exc:
            raise AuxiliaryFeedError(f"EPG fetch failed for {sanitize_url(url)}: {exc}") from exc


class PlaylistSource(_HttpSource):
    """A direct playlist URL with an optional XMLTV guide."""

    name = "m3u"

    def __init__(self, config: PlaylistSourceConfig, client: httpx.AsyncClient, settings: CustomSettings) -> None:
        super().__init__(client, settings)
        self.config = config

    async def fetch_core_feeds(self) -> CoreFeeds:
        return CoreFeeds(playlist=await self._fetch_playlist(self.config.m3u_url))

    async def fetch_aux_feeds(self) -> AuxFeeds:
        return AuxFeeds()

    async def fetch_epg_feed(self) -> bytes | None:
        if not self.config.enable_epg:
            return None
        return await self._fetch_guide(self.config.guide_url())

    def records(self, core: CoreFeeds, aux: AuxFeeds) -> list[RawRecord]:
        return parse_m3u(core.playlist or "")


class XtreamSource(_HttpSource):
    """An Xtream Codes style provider."""

    name = "xtream"

    def __init__(self, config: XtreamSourceConfig, client: httpx.AsyncClient, settings: CustomSettings) -> None:
        super().__init__(client, settings)
        self.config = config

    # --- URLs ---

    def _path_credentials(self) -> str:
        return f"{quote(self.config.xtream_username, safe='')}/{quote(self.config.xtream_password, safe='')}"

    def live_stream_url(self, entry: Mapping[str, Any]) -> str:
        extension = self.config.xtream_output or "m3u8"
        return f"{self.config.xtream_url}/live/{self._path_credentials()}/{entry['stream_id']}.{extension}"

    def movie_url(self, entry: Mapping[str, Any]) -> str:
        extension = entry.get("container_extension") or "mp4"
        return f"{self.config.xtream_url}/movie/{self._path_credentials()}/{entry['stream_id']}.{extension}"

    def episode_url(self, episode_id: Any, extension: str | None) -> str:
        return f"{self.config.xtream_url}/series/{self._path_credentials()}/{episode_id}.{extension or 'mp4'}"

    # --- Feeds ---

    async def _api(self, action: str, timeout: float, **params: str) -> Any:
        query = {**self.config.credential_params(), "action": action, **params}
        return await fetch_json(self._client, self.config.api_url, params=query, **self._fetch_options(timeout))

    async def _core_listing(self, action: str) -> list[Any]:
        try:
            payload = await self._api(action, self._settings.core_feed_timeout_sec)
        except (httpx.HTTPError, ValueError) as exc:
            raise SourceError(f"Xtream {action} failed: {exc}") from exc
        if not isinstance(payload, list):
            raise SourceError(f"Xtream {action} returned {type(payload).__name__}, expected a list")
        return payload

    async def fetch_core_feeds(self) -> CoreFeeds:
        if self.config.xtream_use_m3u:
            return CoreFeeds(playlist=await self._fetch_playlist(self.config.playlist_url()))

        live_task = asyncio.create_task(
            self._core_listing("get_live_streams") if self.config.include_live else _empty_list()
        )
        vod_task = asyncio.create_task(
            self._core_listing("get_vod_streams") if self.config.include_movies else _empty_list()
        )
        try:
            live, vod = await asyncio.gather(live_task, vod_task)
        except BaseException:
            for task in (live_task, vod_task):
                task.cancel()
            await asyncio.gather(live_task, vod_task, return_exceptions=True)
            raise
        return CoreFeeds(live_streams=live, vod_streams=vod)

    async def _aux_listing(self, action: str, timeout: float) -> Any:
        try:
            return await self._api(action, timeout)
        except (httpx.HTTPError, ValueError) as exc:
            raise AuxiliaryFeedError(f"Xtream {action} failed: {exc}") from exc

    async def fetch_aux_feeds(self) -> AuxFeeds:
        if self.config.xtream_use_m3u:
            return AuxFeeds()

        aux_timeout = self._settings.aux_feed_timeout_sec
        requests = {}
        if self.config.include_live:
            requests["live_categories"] = self._aux_listing("get_live_categories", aux_timeout)
        if self.config.include_movies:
            requests["vod_categories"] = self._aux_listing("get_vod_categories", aux_timeout)
        if self.config.include_series:
            requests["series"] = self._aux_listing("get_series", self._settings.series_feed_timeout_sec)
            requests["series_categories"] = self._aux_listing("get_series_categories", aux_timeout)

        results = await asyncio.gather(*requests.values(), return_exceptions=True)

        aux = AuxFeeds()
        for feed_name, result in zip(requests, results):
            if isinstance(result, AuxiliaryFeedError):
                logger.warning("Auxiliary feed %s unavailable: %s", feed_name, result)
                continue
            if isinstance(result, BaseException):
                raise result
            if feed_name == "series":
                if isinstance(result, list):
                    aux.series = result
                else:
                    logger.warning("Auxiliary feed series returned %s, ignoring", type(result).__name__)
            else:
                setattr(aux, feed_name, build_category_map(result))
        return aux

    async def fetch_epg_feed(self) -> bytes | None:
        if not self.config.enable_epg:
            return None
        return await self._fetch_guide(self.config.guide_url())

    def records(self, core: CoreFeeds, aux: AuxFeeds) -> list[RawRecord]:
        if core.playlist is not None:
            return parse_m3u(core.playlist)

        records = parse_provider_streams(core.live_streams, aux.live_categories, ContentType.LIVE, self.live_stream_url)
        records += parse_provider_streams(core.vod_streams, aux.vod_categories, ContentType.MOVIE, self.movie_url)
        records += parse_provider_streams(aux.series, aux.series_categories, ContentType.SERIES, lambda _: "")
        return records

    async def fetch_series_episodes(self, series_id: str) -> tuple[Episode, ...]:
        """
        Fetch the episode list of one series

        Raises:
            AuxiliaryFeedError: If the series info cannot be fetched or read
        """
        info = await self._api_info(series_id)
        episodes_by_season = info.get("episodes") if isinstance(info, Mapping) else None
        if isinstance(episodes_by_season, list):
            # Some panels send a list of season lists instead of a mapping
            episodes_by_season = {str(index): season for index, season in enumerate(episodes_by_season, start=1)}
        if not isinstance(episodes_by_season, Mapping):
            return ()

        episodes: list[Episode] = []
        for season_key, season_episodes in episodes_by_season.items():
            if not isinstance(season_episodes, list):
                continue
            for entry in season_episodes:
                episode = self._episode_from_entry(entry, season_key)
                if episode is not None:
                    episodes.append(episode)

        episodes.sort(key=lambda e: (e.season, e.episode))
        return tuple(episodes)

    async def _api_info(self, series_id: str) -> Any:
        try:
            return await self._api(
                "get_series_info",
                self._settings.series_info_timeout_sec,
                series_id=str(series_id),
            )
        except (httpx.HTTPError, ValueError) as exc:
            raise AuxiliaryFeedError(f"Xtream get_series_info failed for {series_id}: {exc}") from exc

    def _episode_from_entry(self, entry: Any, season_key: str) -> Episode | None:
        if not isinstance(entry, Mapping) or entry.get("id") in (None, ""):
            return None
        info = entry.get("info") if isinstance(entry.get("info"), Mapping) else {}
        episode_number = _as_int(entry.get("episode_num") or entry.get("episode"))
        return Episode(
            id=f"iptv_series_ep_{entry['id']}",
            title=str(entry.get("title") or f"Episode {episode_number}"),
            season=_as_int(entry.get("season") or season_key),
            episode=episode_number,
            url=self.episode_url(entry["id"], entry.get("container_extension")),
            released=entry.get("releasedate") or entry.get("added") or None,
            thumbnail=info.get("movie_image") or info.get("episode_image") or info.get("cover_big") or None,
        )


def build_source(config: SourceConfig, client: httpx.AsyncClient, settings: CustomSettings) -> Source:
    """Create the source matching a validated configuration."""
    if isinstance(config, XtreamSourceConfig):
        return XtreamSource(config, client, settings)
    return PlaylistSource(config, client, settings)


async def _empty_list() -> list[Any]:
    return []


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
