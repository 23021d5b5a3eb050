"""
Shared dataclasses used across the catalog pipeline.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Annotated, Any

from pydantic import TypeAdapter, WrapSerializer


class SourceKind(str, Enum):
    PLAYLIST = "playlist"
    PROVIDER = "provider"


class ContentType(str, Enum):
    LIVE = "live"
    MOVIE = "movie"
    SERIES = "series"


class QualityTier(IntEnum):
    """Stream quality, ordered best first."""
    UHD = 0
    FHD = 1
    HD = 2
    SD = 3

    @property
    def label(self) -> str:
        return "4K" if self is QualityTier.UHD else self.name


@dataclass(frozen=True, slots=True)
class RawRecord:
    """One playlist entry or provider object before normalization."""
    name: str
    url: str
    duration_seconds: int = -1
    attributes: dict[str, str] = field(default_factory=dict)
    source_kind: SourceKind = SourceKind.PLAYLIST
    content_type: ContentType | None = None


@dataclass(frozen=True, slots=True)
class QualityVariant:
    tier: QualityTier
    url: str
    label: str


@dataclass(frozen=True, slots=True)
class Channel:
    """A logical live channel with its quality variants, best first."""
    id: str
    canonical_key: str
    name: str
    logo: str | None
    category: str
    epg_key: str
    variants: tuple[QualityVariant, ...]

    @property
    def default_url(self) -> str:
        return self.variants[0].url


@dataclass(frozen=True, slots=True)
class Episode:
    id: str
    title: str
    season: int
    episode: int
    url: str
    released: str | None = None
    thumbnail: str | None = None


@dataclass(frozen=True, slots=True)
class CatalogItem:
    """A movie or a series entry."""
    id: str
    kind: ContentType
    name: str
    url: str | None = None
    series_ref: str | None = None
    poster: str | None = None
    plot: str | None = None
    category: str = ""
    year: int | None = None
    episodes: tuple[Episode, ...] = ()


@dataclass(frozen=True, slots=True)
class EpgProgramme:
    channel_key: str
    start: datetime
    stop: datetime
    title: str
    description: str | None = None


@dataclass(frozen=True, slots=True)
class StreamOption:
    url: str
    label: str


def _serialize_epg(epg: Mapping[str, Any], handler: Any) -> Any:
    return handler(dict(epg))


GuideIndex = Annotated[Mapping[str, tuple[EpgProgramme, ...]], WrapSerializer(_serialize_epg)]


@dataclass(frozen=True, slots=True)
class CatalogSnapshot:
    """Complete catalog built by one ingestion run. Never mutated once published."""
    channels: tuple[Channel, ...]
    movies: tuple[CatalogItem, ...]
    series: tuple[CatalogItem, ...]
    epg: GuideIndex
    built_at: datetime

    def __post_init__(self) -> None:
        # Guide index of a published snapshot is read-only
        object.__setattr__(self, "epg", MappingProxyType(dict(self.epg)))

    def find_channel(self, item_id: str) -> Channel | None:
        return next((channel for channel in self.channels if channel.id == item_id), None)

    def find_movie(self, item_id: str) -> CatalogItem | None:
        return next((movie for movie in self.movies if movie.id == item_id), None)

    def find_series(self, item_id: str) -> CatalogItem | None:
        return next((series for series in self.series if series.id == item_id), None)


_SNAPSHOT_ADAPTER = TypeAdapter(CatalogSnapshot)


def encode_snapshot(snapshot: CatalogSnapshot) -> bytes:
    """Serialize a snapshot to JSON bytes for the shared store."""
    return _SNAPSHOT_ADAPTER.dump_json(snapshot)


def decode_snapshot(payload: bytes) -> CatalogSnapshot:
    """
    Rebuild a snapshot from JSON bytes.

    Raises:
        pydantic.ValidationError: If the payload does not describe a snapshot
    """
    return _SNAPSHOT_ADAPTER.validate_json(payload)


__all__ = [
    "CatalogItem",
    "CatalogSnapshot",
    "Channel",
    "ContentType",
    "EpgProgramme",
    "Episode",
    "QualityTier",
    "QualityVariant",
    "RawRecord",
    "SourceKind",
    "StreamOption",
    "decode_snapshot",
    "encode_snapshot",
]
