"""
Channel merging

Folds resolved records into channels with ranked quality variants and maps
movie/series records to catalog items.
"""
from __future__ import annotations

from collections.abc import Iterable, MutableMapping
from dataclasses import dataclass, field
import logging
import re
from urllib.parse import urlsplit

from iptv_catalog.services.catalog_types import (
    CatalogItem,
    Channel,
    ContentType,
    Episode,
    QualityVariant,
    RawRecord,
)
from iptv_catalog.services.identity_service import (
    IDENTIFIER_ATTRIBUTE,
    Resolution,
    channel_id,
    normalize_key,
    stable_hash,
)
from iptv_catalog.utils.timezone import year_from_date

logger = logging.getLogger(__name__)

_SEASON_EPISODE_RE = re.compile(r"\bS(\d{1,2})\s*E(\d{1,3})\b", re.IGNORECASE)
_SERIES_MARKER_RE = re.compile(r"[\s\-:|.]*\bS\d{1,2}\s*E\d{1,3}\b.*$", re.IGNORECASE)
_YEAR_RE = re.compile(r"\((\d{4})\)")


@dataclass(slots=True)
class _ChannelDraft:
    """Mutable channel under construction; frozen once the merge pass ends."""
    canonical_key: str
    name: str
    logo: str | None
    category: str
    epg_key: str
    variants: list[QualityVariant] = field(default_factory=list)

    def add_variant(self, variant: QualityVariant) -> None:
        self.variants.append(variant)
        # list.sort is stable: equal tiers keep insertion order
        self.variants.sort(key=lambda v: v.tier)

    @property
    def default_url(self) -> str:
        return self.variants[0].url

    def freeze(self) -> Channel:
        return Channel(
            id=channel_id(self.canonical_key),
            canonical_key=self.canonical_key,
            name=self.name,
            logo=self.logo,
            category=self.category,
            epg_key=self.epg_key,
            variants=tuple(self.variants),
        )


def classify_record(record: RawRecord) -> ContentType:
    """
    Decide whether a record is a live channel, movie or series episode.

    Provider records carry their type; playlist records are classified by
    URL path first, then by season/episode or (year) markers in the name.
    """
    if record.content_type is not None:
        return record.content_type

    path = urlsplit(record.url).path.lower()
    if "/movie/" in path:
        return ContentType.MOVIE
    if "/series/" in path or _SEASON_EPISODE_RE.search(record.name):
        return ContentType.SERIES
    if _YEAR_RE.search(record.name):
        return ContentType.MOVIE
    return ContentType.LIVE


def merge_channels(
    resolved: Iterable[tuple[Resolution, RawRecord]],
    drafts: MutableMapping[str, _ChannelDraft] | None = None,
) -> list[Channel]:
    """
    Merge resolved live records into channels.

    The first record under a key sets the channel's name, logo, category and
    EPG key; every record contributes one variant. Channels are returned in
    order of first appearance.

    Args:
        resolved: (resolution, record) pairs in source order
        drafts: Optional mapping to accumulate into (canonical_key -> draft)

    Returns:
        Frozen channels with variants sorted best-first
    """
    drafts = {} if drafts is None else drafts
    merged_count = 0

    for resolution, record in resolved:
        draft = drafts.get(resolution.canonical_key)
        if draft is None:
            identifier = record.attributes.get(IDENTIFIER_ATTRIBUTE, "")
            draft = _ChannelDraft(
                canonical_key=resolution.canonical_key,
                name=resolution.cleaned_name,
                logo=record.attributes.get("tvg-logo") or None,
                category=record.attributes.get("group-title") or "",
                epg_key=normalize_key(identifier) if identifier.strip() else resolution.canonical_key,
            )
            drafts[resolution.canonical_key] = draft
        else:
            merged_count += 1
            logger.debug(
                "Merging %r into channel %r as %s variant",
                record.name,
                draft.name,
                resolution.quality.label,
            )

        label = f"{draft.name} [{resolution.quality.label}]" if draft.name else resolution.quality.label
        draft.add_variant(QualityVariant(tier=resolution.quality, url=record.url, label=label))

    logger.debug("Merged %s records into existing channels", merged_count)
    return [draft.freeze() for draft in drafts.values()]


def build_movie(record: RawRecord) -> CatalogItem:
    """Map one movie record to a catalog item."""
    attributes = record.attributes
    stream_id = attributes.get("stream-id")
    if stream_id:
        item_id = f"iptv_vod_{stream_id}"
        year = year_from_date(attributes.get("releasedate") or attributes.get("releaseDate"))
    else:
        item_id = f"iptv_{stable_hash(record.name + record.url)}"
        year_match = _YEAR_RE.search(record.name)
        year = int(year_match.group(1)) if year_match else None

    return CatalogItem(
        id=item_id,
        kind=ContentType.MOVIE,
        name=record.name,
        url=record.url,
        poster=attributes.get("tvg-logo") or None,
        plot=attributes.get("plot") or None,
        category=attributes.get("group-title") or "Movies",
        year=year,
    )


def build_series(record: RawRecord) -> CatalogItem:
    """Map one provider series record to a catalog item; episodes are fetched on demand."""
    attributes = record.attributes
    series_id = attributes.get("series-id", "")
    return CatalogItem(
        id=f"iptv_series_{series_id}",
        kind=ContentType.SERIES,
        name=record.name,
        series_ref=series_id,
        poster=attributes.get("tvg-logo") or None,
        plot=attributes.get("plot") or None,
        category=attributes.get("group-title") or "Series",
        year=year_from_date(attributes.get("releasedate") or attributes.get("releaseDate")),
    )


def series_title(name: str) -> str:
    """Strip a trailing season/episode marker from an episode name."""
    return _SERIES_MARKER_RE.sub("", name).strip() or name.strip()


@dataclass(slots=True)
class _SeriesDraft:
    item: CatalogItem
    episodes: dict[tuple[int, int], Episode] = field(default_factory=dict)
    unnumbered: list[RawRecord] = field(default_factory=list)


def _playlist_episode(record: RawRecord, number: tuple[int, int]) -> Episode:
    return Episode(
        id=f"iptv_series_ep_{stable_hash(record.name + record.url)}",
        title=record.name,
        season=number[0],
        episode=number[1],
        url=record.url,
        thumbnail=record.attributes.get("tvg-logo") or None,
    )


def fold_playlist_series(records: Iterable[RawRecord]) -> list[CatalogItem]:
    """
    Fold playlist episode records into one catalog item per derived title.

    The first record seen for a title provides the series metadata. Episodes
    are keyed by (season, episode); the first record wins on duplicates.
    Records without a marker fill the free season 0 numbers in order of
    appearance.
    """
    drafts: dict[str, _SeriesDraft] = {}

    for record in records:
        title = series_title(record.name)
        title_key = normalize_key(title)
        draft = drafts.get(title_key)
        if draft is None:
            ref = stable_hash(title_key, 12)
            draft = _SeriesDraft(item=CatalogItem(
                id=f"iptv_series_{ref}",
                kind=ContentType.SERIES,
                name=title,
                series_ref=ref,
                poster=record.attributes.get("tvg-logo") or None,
                plot=record.attributes.get("plot") or None,
                category=record.attributes.get("group-title") or "Series",
            ))
            drafts[title_key] = draft

        marker = _SEASON_EPISODE_RE.search(record.name)
        if not marker:
            draft.unnumbered.append(record)
            continue

        number = (int(marker.group(1)), int(marker.group(2)))
        if number in draft.episodes:
            logger.debug("Duplicate episode %s of %r, keeping first", number, title)
            continue
        draft.episodes[number] = _playlist_episode(record, number)

    series: list[CatalogItem] = []
    for draft in drafts.values():
        slot = 1
        for record in draft.unnumbered:
            while (0, slot) in draft.episodes:
                slot += 1
            draft.episodes[(0, slot)] = _playlist_episode(record, (0, slot))
        episodes = tuple(draft.episodes[number] for number in sorted(draft.episodes))
        item = draft.item
        series.append(CatalogItem(
            id=item.id,
            kind=item.kind,
            name=item.name,
            series_ref=item.series_ref,
            poster=item.poster,
            plot=item.plot,
            category=item.category,
            episodes=episodes,
        ))

    return series
