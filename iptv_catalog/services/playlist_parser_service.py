"""
Record parsing for playlist text and provider JSON payloads.

Both forms are reduced to RawRecord values; malformed entries are dropped
individually and never fail the whole parse.
"""
from collections.abc import Callable, Iterable, Mapping
import logging
import re
from typing import Any

from iptv_catalog.exceptions import ParseWarning
from iptv_catalog.services.catalog_types import ContentType, RawRecord, SourceKind

logger = logging.getLogger(__name__)

EXTINF_PREFIX = "#EXTINF:"
EXTGRP_PREFIX = "#EXTGRP:"

_DURATION_RE = re.compile(r"\s*(-?\d+(?:\.\d+)?)")
_ATTRIBUTE_RE = re.compile(r'([A-Za-z0-9_][\w.-]*)\s*=\s*"([^"]*)"')

_DEFAULT_CATEGORIES = {
    ContentType.LIVE: "Live",
    ContentType.MOVIE: "Movies",
    ContentType.SERIES: "Series",
}


def parse_attributes(text: str) -> dict[str, str]:
    """Parse key="value" pairs; unknown keys are kept, later duplicates win."""
    return {key: value for key, value in _ATTRIBUTE_RE.findall(text)}


def _parse_extinf(line: str) -> tuple[int, dict[str, str], str]:
    """Split an #EXTINF line into duration, attributes and display name."""
    header = line[len(EXTINF_PREFIX):]

    duration_match = _DURATION_RE.match(header)
    if not duration_match:
        raise ParseWarning(f"Missing duration in metadata line: {line[:80]}")
    duration = int(float(duration_match.group(1)))

    # Attributes run up to the first comma outside a quoted value; the rest is the name.
    attributes: dict[str, str] = {}
    position = duration_match.end()
    length = len(header)
    while position < length:
        char = header[position]
        if char == ",":
            break
        if char.isspace():
            position += 1
            continue
        match = _ATTRIBUTE_RE.match(header, position)
        if match:
            attributes[match.group(1)] = match.group(2)
            position = match.end()
        else:
            position += 1

    name = header[position + 1:].strip() if position < length else ""

    return duration, attributes, name


def parse_m3u(content: str) -> list[RawRecord]:
    """
    Parse line-oriented playlist text into raw records.

    Each #EXTINF metadata line is paired with the next non-comment line,
    which holds the playable address. A metadata line with no address
    before the next metadata line (or end of input) is discarded.

    Args:
        content: Playlist text

    Returns:
        Records in playlist order
    """
    records: list[RawRecord] = []
    pending: tuple[int, dict[str, str], str] | None = None
    pending_group: str | None = None
    dropped = 0

    for line_number, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue

        if line.startswith(EXTINF_PREFIX):
            if pending is not None:
                dropped += 1
                logger.debug("Line %s: metadata line without address, dropping %r", line_number, pending[2])
            try:
                pending = _parse_extinf(line)
            except ParseWarning as warning:
                dropped += 1
                logger.debug("Line %s: %s", line_number, warning)
                pending = None
            pending_group = None
            continue

        if line.startswith(EXTGRP_PREFIX):
            pending_group = line[len(EXTGRP_PREFIX):].strip() or None
            continue

        if line.startswith("#") or pending is None:
            continue

        duration, attributes, name = pending
        if pending_group and not attributes.get("group-title"):
            attributes["group-title"] = pending_group

        records.append(RawRecord(
            name=name,
            url=line,
            duration_seconds=duration,
            attributes=attributes,
            source_kind=SourceKind.PLAYLIST,
        ))
        pending = None
        pending_group = None

    if pending is not None:
        dropped += 1
        logger.debug("Trailing metadata line without address, dropping %r", pending[2])

    if dropped:
        logger.warning("Playlist parse dropped %s malformed entr%s", dropped, "y" if dropped == 1 else "ies")
    logger.info("Parsed %s playlist records", len(records))

    return records


def build_category_map(payload: Any) -> dict[str, str]:
    """
    Build a category_id -> category_name map from a provider category listing.

    Non-list payloads and entries lacking either field are ignored.
    """
    categories: dict[str, str] = {}
    if not isinstance(payload, list):
        if payload is not None:
            logger.debug("Category payload is not a list (%s), ignoring", type(payload).__name__)
        return categories

    for entry in payload:
        if not isinstance(entry, Mapping):
            continue
        category_id = entry.get("category_id")
        category_name = entry.get("category_name")
        if category_id in (None, "") or not category_name:
            continue
        categories[str(category_id)] = str(category_name)

    return categories


def resolve_category(entry: Mapping[str, Any], categories: Mapping[str, str], content_type: ContentType) -> str:
    """Resolve a provider category id, falling back to the raw id string."""
    category_id = entry.get("category_id")
    if category_id not in (None, ""):
        mapped = categories.get(str(category_id))
        if mapped:
            return mapped
    if entry.get("category_name"):
        return str(entry["category_name"])
    if category_id not in (None, ""):
        return str(category_id)
    return _DEFAULT_CATEGORIES[content_type]


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _record_from_provider(
    entry: Any,
    categories: Mapping[str, str],
    content_type: ContentType,
    url_for: Callable[[Mapping[str, Any]], str],
) -> RawRecord:
    if not isinstance(entry, Mapping):
        raise ParseWarning(f"Provider entry is not an object: {type(entry).__name__}")

    name = _text(entry.get("name"))
    if not name:
        raise ParseWarning("Provider entry without name")

    id_field = "series_id" if content_type is ContentType.SERIES else "stream_id"
    item_id = _text(entry.get(id_field))
    if not item_id:
        raise ParseWarning(f"Provider entry {name!r} without {id_field}")

    attributes = {
        "group-title": resolve_category(entry, categories, content_type),
        id_field.replace("_", "-"): item_id,
    }
    logo = _text(entry.get("cover") if content_type is ContentType.SERIES else entry.get("stream_icon"))
    if logo:
        attributes["tvg-logo"] = logo
    epg_channel_id = _text(entry.get("epg_channel_id"))
    if epg_channel_id:
        attributes["tvg-id"] = epg_channel_id
    for key in ("plot", "releasedate", "releaseDate", "rating", "container_extension"):
        value = _text(entry.get(key))
        if value:
            attributes[key] = value

    url = "" if content_type is ContentType.SERIES else url_for(entry)

    return RawRecord(
        name=name,
        url=url,
        duration_seconds=-1,
        attributes=attributes,
        source_kind=SourceKind.PROVIDER,
        content_type=content_type,
    )


def parse_provider_streams(
    payload: Any,
    categories: Mapping[str, str],
    content_type: ContentType,
    url_for: Callable[[Mapping[str, Any]], str],
) -> list[RawRecord]:
    """
    Map provider stream/series objects to raw records.

    Args:
        payload: Decoded JSON list from the provider
        categories: category_id -> name map (may be empty)
        content_type: What the listing contains
        url_for: Builds the playable URL for one provider object

    Returns:
        One record per well-formed provider object
    """
    items: Iterable[Any] = payload if isinstance(payload, list) else []
    records: list[RawRecord] = []
    dropped = 0

    for entry in items:
        try:
            records.append(_record_from_provider(entry, categories, content_type, url_for))
        except ParseWarning as warning:
            dropped += 1
            logger.debug("Dropping provider %s entry: %s", content_type.value, warning)

    if dropped:
        logger.warning("Dropped %s malformed provider %s entries", dropped, content_type.value)
    logger.info("Parsed %s provider %s records", len(records), content_type.value)

    return records
