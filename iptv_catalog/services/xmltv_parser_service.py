from datetime import datetime, timezone, timedelta
from typing import Optional
import logging

from lxml import etree # type: ignore

from iptv_catalog.services.catalog_types import EpgProgramme
from iptv_catalog.services.identity_service import normalize_key
from iptv_catalog.utils.timezone import normalize_offset_hours

logger = logging.getLogger(__name__)

XMLTV_TIME_FORMAT = '%Y%m%d%H%M%S'
XMLTV_TIME_WIDTH = 14


def parse_xmltv_content(
    content: bytes | str,
    offset_hours: float | int | str | None = 0
) -> dict[str, tuple[EpgProgramme, ...]]:
    """
    Parse XMLTV content into a per-channel programme schedule

    Args:
        content: Raw XMLTV document
        offset_hours: Correction applied to timestamps without an explicit UTC offset

    Returns:
        Mapping of case-folded channel id to programmes ordered by start time.
        Empty when the document cannot be parsed.
    """
    if isinstance(content, str):
        content = content.encode('utf-8')

    offset = timedelta(hours=normalize_offset_hours(offset_hours))

    try:
        logger.debug("  Loading XML document...")
        parser = etree.XMLParser(huge_tree=True, resolve_entities=False, no_network=True)
        root = etree.fromstring(content, parser=parser)
        logger.debug(f"  XML document loaded (root tag: {root.tag})")
    except (etree.XMLSyntaxError, ValueError) as e:
        logger.warning(f"  EPG document could not be parsed, continuing without EPG: {e}")
        return {}

    grouped: dict[str, list[EpgProgramme]] = {}
    dropped = 0

    for programme in root.iter('programme'):
        parsed = _parse_single_program(programme, offset)
        if parsed is None:
            dropped += 1
            continue
        grouped.setdefault(parsed.channel_key, []).append(parsed)

    if dropped:
        logger.debug(f"    Dropped {dropped} incomplete programmes")

    epg = {
        channel_key: tuple(sorted(programmes, key=lambda p: p.start))
        for channel_key, programmes in grouped.items()
    }

    logger.info(
        f"XMLTV parsing complete: {len(epg)} channels, {sum(len(p) for p in epg.values())} programs"
    )

    return epg


def _parse_single_program(programme: etree._Element, offset: timedelta) -> Optional[EpgProgramme]:
    """Parse single programme element"""
    # Required fields
    channel_id = programme.get('channel')
    start_str = programme.get('start')
    stop_str = programme.get('stop')
    title_text = _get_text(programme, 'title')

    # Skip if missing required fields
    if not channel_id or not channel_id.strip() or not start_str or not stop_str or title_text is None:
        return None

    # Parse times (skip invalid formats)
    try:
        start_time = parse_xmltv_time(start_str, offset)
        stop_time = parse_xmltv_time(stop_str, offset)
    except (ValueError, IndexError):
        return None

    return EpgProgramme(
        channel_key=normalize_key(channel_id),
        start=start_time,
        stop=stop_time,
        title=title_text,
        description=_get_text(programme, 'desc')
    )


def parse_xmltv_time(time_str: str, offset: timedelta = timedelta(0)) -> datetime:
    """
    Convert XMLTV time format to UTC

    Args:
        time_str: XMLTV time like '20080715003000 -0600' or '20080715003000'
        offset: Shift added to times that carry no UTC offset

    Returns:
        Timezone-aware datetime in UTC

    Raises:
        ValueError: If the timestamp or its offset is malformed
    """
    # Split time and timezone
    parts = time_str.strip().split()
    if not parts:
        raise ValueError("Empty XMLTV time")
    time_part = parts[0][:XMLTV_TIME_WIDTH]  # YYYYMMDDHHMMSS
    tz_part = parts[1] if len(parts) > 1 else None

    # Some feeds glue the offset to the time: 20080715003000+0200
    if tz_part is None and len(parts[0]) > XMLTV_TIME_WIDTH:
        tz_part = parts[0][XMLTV_TIME_WIDTH:]

    # Parse datetime
    dt = datetime.strptime(time_part, XMLTV_TIME_FORMAT)

    if tz_part is None:
        # Naive time: apply the configured correction
        return (dt + offset).replace(tzinfo=timezone.utc)

    # Parse timezone offset (+/-HHMM)
    if len(tz_part) != 5 or tz_part[0] not in '+-' or not tz_part[1:].isdigit():
        raise ValueError(f"Invalid XMLTV UTC offset: {tz_part!r}")
    tz_sign = 1 if tz_part[0] == '+' else -1
    tz_hours = int(tz_part[1:3])
    tz_mins = int(tz_part[3:5])
    tz_offset_minutes = tz_sign * (tz_hours * 60 + tz_mins)

    # Convert to UTC
    dt_utc = dt - timedelta(minutes=tz_offset_minutes)

    return dt_utc.replace(tzinfo=timezone.utc)


def _get_text(element: etree._Element, tag: str, default: Optional[str] = None) -> Optional[str]:
    """Safely extract text from XML element"""
    child = element.find(tag)
    if child is None or not child.text:
        return default
    return child.text.strip()
